from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from governance.core.clock import DAY_SECONDS, iso_from_epoch


class RetentionAction(str, Enum):
    PURGE = "purge"
    ANONYMIZE = "anonymize"
    ARCHIVE = "archive"
    TRANSITION = "transition"


class Cadence(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class RetentionPolicy(BaseModel):
    """
    Declarative retention rule: records in `data_category` whose `date_field`
    is older than `max_age_days` get `action` applied.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1, max_length=80)
    data_category: str = Field(min_length=1, max_length=80)
    date_field: str = Field(default="created_at", min_length=1, max_length=80)
    max_age_days: int = Field(ge=0, le=36500)
    action: RetentionAction
    condition: Dict[str, Union[str, int, bool]] = Field(default_factory=dict)
    cadence: Cadence = Cadence.DAILY
    ephemeral: bool = False
    batch_size: int = Field(default=100, ge=1, le=10_000)
    description: str = Field(default="", max_length=200)

    def cutoff_iso(self, now: float) -> str:
        return iso_from_epoch(float(now) - int(self.max_age_days) * DAY_SECONDS)


class AgeOutConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    threshold_years: int = Field(default=13, ge=1, le=25)
    require_parental_consent: bool = True
    cadence: Cadence = Cadence.WEEKLY


class RetentionConfigFile(BaseModel):
    """
    config/retention.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    policies: List[RetentionPolicy] = Field(default_factory=list)
    age_out: AgeOutConfig = Field(default_factory=AgeOutConfig)
    notify_admins_on_errors: bool = True
    next_run_hour_utc: int = Field(default=2, ge=0, le=23)

    @model_validator(mode="after")
    def _unique_names(self) -> "RetentionConfigFile":
        seen = set()
        for p in self.policies:
            if p.name in seen:
                raise ValueError(f"duplicate retention policy name: {p.name}")
            if p.action == RetentionAction.TRANSITION:
                raise ValueError(f"{p.name}: transition is handled by the age-out monitor")
            seen.add(p.name)
        return self


def default_retention_config_dict() -> Dict[str, Any]:
    cfg = RetentionConfigFile(
        policies=[
            RetentionPolicy(
                name="inactive_members",
                data_category="members",
                date_field="membership_expires_at",
                max_age_days=365,
                action=RetentionAction.ANONYMIZE,
                condition={"membership_status": "expired"},
                description="Anonymize expired member records after 1 year",
            ),
            RetentionPolicy(
                name="event_registrations",
                data_category="event_rsvps",
                date_field="created_at",
                max_age_days=730,
                action=RetentionAction.PURGE,
                description="Delete old event registrations after 2 years",
            ),
            RetentionPolicy(
                name="volunteer_records",
                data_category="volunteer_signups",
                date_field="created_at",
                max_age_days=1095,
                action=RetentionAction.ARCHIVE,
                description="Archive volunteer records after 3 years",
            ),
            RetentionPolicy(
                name="audit_logs",
                data_category="audit_logs",
                date_field="occurred_at",
                max_age_days=1095,
                action=RetentionAction.ARCHIVE,
                description="Archive audit logs after 3 years",
            ),
            RetentionPolicy(
                name="expired_exports",
                data_category="data_subject_requests",
                date_field="expires_at",
                max_age_days=0,
                action=RetentionAction.PURGE,
                condition={"status": "completed", "kind": "export"},
                cadence=Cadence.HOURLY,
                ephemeral=True,
                description="Delete expired export payloads",
            ),
        ]
    )
    return cfg.model_dump(mode="json")


@dataclass(frozen=True)
class RecordError:
    record_id: str
    error_message: str


@dataclass
class PolicyRunResult:
    policy_name: str
    candidate_count: int = 0
    processed_count: int = 0
    already_handled: int = 0
    errors: List[RecordError] = field(default_factory=list)
    fatal_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fatal_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.policy_name,
            "candidates": self.candidate_count,
            "processed": self.processed_count,
            "already_handled": self.already_handled,
            "errors": [{"record_id": e.record_id, "error": e.error_message} for e in self.errors],
            "fatal_error": self.fatal_error,
        }


@dataclass(frozen=True)
class RetentionRunResult:
    success: bool
    results: List[PolicyRunResult]

    @property
    def processed_total(self) -> int:
        return sum(r.processed_count for r in self.results)

    @property
    def error_total(self) -> int:
        return sum(len(r.errors) + (0 if r.ok else 1) for r in self.results)

    def summary(self) -> str:
        return f"Processed {self.processed_total} items across {len(self.results)} policies, {self.error_total} errors"

    def to_dict(self) -> Dict[str, Any]:
        return {"success": bool(self.success), "results": [r.to_dict() for r in self.results], "summary": self.summary()}
