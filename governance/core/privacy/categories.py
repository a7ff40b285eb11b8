"""
Governed data categories.

Every subject-keyed table is declared once here; export, erasure, deletion
verification and retention all read the same declarations, so a new table
cannot be exported but forgotten by erasure (or the reverse).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from governance.core.cache.tags import CacheTags

# Placeholder replaced with the anonymized identifier.
ANON = "{anon}"
# Placeholder replaced with the current timestamp.
NOW = "{now}"


@dataclass(frozen=True)
class CategorySpec:
    name: str
    subject_column: str
    columns: Tuple[str, ...]
    export_key: str
    erasure: str  # delete | anonymize
    erase_values: Dict[str, Any] = field(default_factory=dict)
    retention_values: Dict[str, Any] = field(default_factory=dict)
    anonymized_column: Optional[str] = None
    date_fields: Tuple[str, ...] = ("created_at",)
    export_exclude: Tuple[str, ...] = ()
    verify: bool = True
    # Cached views built from this table; invalidated after every committed write.
    cache_tags: Tuple[CacheTags, ...] = ()

    def allows_column(self, column: str) -> bool:
        return column in self.columns


MEMBERS = CategorySpec(
    name="members",
    subject_column="user_id",
    columns=(
        "id",
        "user_id",
        "email",
        "first_name",
        "last_name",
        "phone",
        "address",
        "role",
        "membership_type",
        "membership_status",
        "membership_expires_at",
        "joined_at",
        "created_at",
        "updated_at",
        "anonymized_at",
    ),
    export_key="profile",
    erasure="anonymize",
    erase_values={
        "user_id": ANON,
        "email": ANON + "@{deleted_domain}",
        "first_name": "Deleted",
        "last_name": "User",
        "phone": None,
        "address": None,
        "anonymized_at": NOW,
        "updated_at": NOW,
    },
    retention_values={
        "user_id": ANON,
        "email": ANON + "@anonymized.local",
        "first_name": "Anonymized",
        "last_name": "User",
        "phone": None,
        "address": None,
        "anonymized_at": NOW,
        "updated_at": NOW,
    },
    anonymized_column="anonymized_at",
    date_fields=("membership_expires_at", "created_at", "updated_at"),
    cache_tags=(CacheTags.MEMBERS, CacheTags.DASHBOARD),
)

PRIVACY_SETTINGS = CategorySpec(
    name="privacy_settings",
    subject_column="user_id",
    columns=("id", "user_id", "classification", "profile_visibility", "show_email", "show_phone", "settings_json", "updated_at"),
    export_key="privacy_settings",
    erasure="delete",
    date_fields=("updated_at",),
    cache_tags=(CacheTags.MEMBERS,),
)

CONSENT_RECORDS = CategorySpec(
    name="consent_records",
    subject_column="user_id",
    columns=("id", "user_id", "consent_type", "granted", "ip_address", "user_agent", "recorded_at", "anonymized_at"),
    export_key="consent_history",
    erasure="anonymize",
    erase_values={"user_id": ANON, "ip_address": None, "user_agent": None, "anonymized_at": NOW},
    retention_values={"user_id": ANON, "ip_address": None, "user_agent": None, "anonymized_at": NOW},
    anonymized_column="anonymized_at",
    date_fields=("recorded_at",),
)

EVENT_RSVPS = CategorySpec(
    name="event_rsvps",
    subject_column="user_id",
    columns=("id", "user_id", "event_id", "status", "created_at"),
    export_key="event_registrations",
    erasure="delete",
    cache_tags=(CacheTags.RSVPS, CacheTags.EVENTS, CacheTags.DASHBOARD),
)

VOLUNTEER_SIGNUPS = CategorySpec(
    name="volunteer_signups",
    subject_column="user_id",
    columns=("id", "user_id", "event_id", "role", "status", "created_at"),
    export_key="volunteer_history",
    erasure="delete",
    cache_tags=(CacheTags.VOLUNTEERS, CacheTags.EVENTS, CacheTags.DASHBOARD),
)

PAYMENTS = CategorySpec(
    name="payments",
    subject_column="user_id",
    columns=(
        "id",
        "user_id",
        "amount_cents",
        "currency",
        "status",
        "processor_customer_id",
        "processor_payment_id",
        "created_at",
        "anonymized_at",
    ),
    export_key="payment_history",
    erasure="anonymize",
    erase_values={"user_id": ANON, "processor_customer_id": None, "processor_payment_id": None, "anonymized_at": NOW},
    retention_values={"user_id": ANON, "processor_customer_id": None, "processor_payment_id": None, "anonymized_at": NOW},
    anonymized_column="anonymized_at",
    export_exclude=("processor_customer_id",),
    cache_tags=(CacheTags.PAYMENTS, CacheTags.DASHBOARD),
)

CHILD_ACCOUNTS = CategorySpec(
    name="child_accounts",
    subject_column="parent_id",
    columns=("id", "parent_id", "first_name", "birth_date", "parental_consent_given", "classification", "transitioned_at", "created_at"),
    export_key="child_accounts",
    erasure="anonymize",
    # Children keep their own records; only the link to the erased parent is broken.
    erase_values={"parent_id": ANON},
    date_fields=("created_at", "transitioned_at"),
    cache_tags=(CacheTags.MEMBERS,),
)

COMMUNICATION_PREFERENCES = CategorySpec(
    name="communication_preferences",
    subject_column="user_id",
    columns=(
        "id",
        "user_id",
        "email_enabled",
        "announcements_enabled",
        "events_enabled",
        "payments_enabled",
        "volunteer_enabled",
        "meetings_enabled",
        "unsubscribed_at",
        "unsubscribe_reason",
        "updated_at",
    ),
    export_key="communication_preferences",
    erasure="delete",
    date_fields=("updated_at", "unsubscribed_at"),
    cache_tags=(CacheTags.MEMBERS,),
)

# Export/erasure order; members last so the profile goes after the rows that reference it.
GOVERNED_CATEGORIES: Tuple[CategorySpec, ...] = (
    PRIVACY_SETTINGS,
    CONSENT_RECORDS,
    EVENT_RSVPS,
    VOLUNTEER_SIGNUPS,
    CHILD_ACCOUNTS,
    PAYMENTS,
    COMMUNICATION_PREFERENCES,
    MEMBERS,
)

# Not subject data: retention only.
DATA_SUBJECT_REQUESTS = CategorySpec(
    name="data_subject_requests",
    subject_column="subject_id",
    columns=("id", "subject_id", "kind", "status", "created_at", "expires_at", "completed_at", "claimed_at", "attempts", "error", "metadata_json", "payload_json"),
    export_key="data_subject_requests",
    erasure="delete",
    date_fields=("created_at", "expires_at", "completed_at"),
    verify=False,
)

CATEGORY_BY_NAME: Dict[str, CategorySpec] = {c.name: c for c in GOVERNED_CATEGORIES + (DATA_SUBJECT_REQUESTS,)}


def get_category(name: str) -> CategorySpec:
    try:
        return CATEGORY_BY_NAME[str(name)]
    except KeyError:
        raise ValueError(f"unknown data category: {name}") from None


class SubjectDataHooks(Protocol):
    """
    Hook interface for collaborators that own subject data outside the
    governed store (e.g. an identity provider or a file store).
    """

    def export_subject(self, *, subject_id: str) -> Any: ...
    def erase_subject(self, *, subject_id: str, anonymized_id: str) -> bool: ...
    def has_residue(self, *, subject_id: str) -> bool: ...


class SubjectHooksRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, SubjectDataHooks] = {}

    def register(self, name: str, hooks: SubjectDataHooks) -> None:
        key = str(name)
        if key in CATEGORY_BY_NAME:
            raise ValueError(f"hook name collides with a governed category: {key}")
        self._hooks[key] = hooks

    def list(self) -> List[str]:
        return sorted(self._hooks.keys())

    def iter_hooks(self) -> List[Tuple[str, SubjectDataHooks]]:
        return [(k, self._hooks[k]) for k in sorted(self._hooks.keys())]


def cache_tags_for(categories: Iterable[str]) -> List[str]:
    """Union of the cache tags of `categories`; names outside the governed set carry none."""
    out = set()
    for name in categories:
        spec = CATEGORY_BY_NAME.get(str(name))
        if spec is not None:
            out.update(t.value for t in spec.cache_tags)
    return sorted(out)
