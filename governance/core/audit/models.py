from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from governance.core.clock import iso_from_epoch


class AuditAction(str, Enum):
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    PRIVACY_SETTINGS_UPDATE = "privacy.settings.update"
    CONSENT_GRANTED = "consent.granted"
    CONSENT_REVOKED = "consent.revoked"
    DATA_EXPORT_REQUESTED = "data.export.requested"
    DATA_EXPORT_COMPLETED = "data.export.completed"
    DATA_EXPORT_FAILED = "data.export.failed"
    DATA_DELETION_REQUESTED = "data.deletion.requested"
    DATA_DELETION_COMPLETED = "data.deletion.completed"
    DATA_DELETION_FAILED = "data.deletion.failed"
    MEMBER_CREATED = "member.created"
    MEMBER_UPDATED = "member.updated"
    MEMBER_DELETED = "member.deleted"
    PAYMENT_CREATED = "payment.created"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_REFUNDED = "payment.refunded"
    EVENT_CREATED = "event.created"
    EVENT_UPDATED = "event.updated"
    EVENT_DELETED = "event.deleted"
    ADMIN_ACCESS = "admin.access"
    ADMIN_EXPORT = "admin.export"
    ADMIN_ROLE_CHANGE = "admin.role.change"
    UNSUBSCRIBE_REQUEST = "unsubscribe.request"
    UNSUBSCRIBE_ALL = "unsubscribe.all"
    RETENTION_PURGE = "retention.purge"
    RETENTION_ANONYMIZE = "retention.anonymize"
    RETENTION_ARCHIVE = "retention.archive"
    COPPA_AGE_OUT = "coppa.age_out"
    CACHE_REVALIDATE = "cache.revalidate"


METADATA_SCHEMA_VERSION = 1

# Required metadata keys per action (version 1). Extra keys are allowed and
# preserved as-is; missing required keys reject the write.
METADATA_SCHEMAS: Dict[AuditAction, Tuple[str, ...]] = {
    AuditAction.DATA_EXPORT_REQUESTED: ("request_id",),
    AuditAction.DATA_EXPORT_COMPLETED: ("request_id", "categories"),
    AuditAction.DATA_EXPORT_FAILED: ("request_id", "error"),
    AuditAction.DATA_DELETION_REQUESTED: ("request_id",),
    AuditAction.DATA_DELETION_COMPLETED: ("request_id", "original_user_id_hash", "deletion_results"),
    AuditAction.DATA_DELETION_FAILED: ("request_id", "error"),
    AuditAction.ADMIN_ACCESS: ("path",),
    AuditAction.ADMIN_EXPORT: ("start_date", "end_date", "record_count"),
    AuditAction.UNSUBSCRIBE_REQUEST: ("category",),
    AuditAction.UNSUBSCRIBE_ALL: (),
    AuditAction.RETENTION_PURGE: ("policy", "records_processed", "cutoff_date", "errors"),
    AuditAction.RETENTION_ANONYMIZE: ("policy", "records_processed", "cutoff_date", "errors"),
    AuditAction.RETENTION_ARCHIVE: ("policy", "records_processed", "cutoff_date", "errors"),
    AuditAction.COPPA_AGE_OUT: ("birth_date", "transition_date"),
    AuditAction.CACHE_REVALIDATE: ("tags",),
}


def validate_metadata(action: AuditAction, metadata: Dict[str, Any]) -> None:
    """Raises ValueError when metadata is not plain JSON or misses required keys."""
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be an object")
    for k in metadata.keys():
        if not isinstance(k, str):
            raise ValueError("metadata keys must be strings")
    try:
        json.dumps(metadata, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"metadata is not serializable: {e}") from e
    missing = [k for k in METADATA_SCHEMAS.get(action, ()) if k not in metadata]
    if missing:
        raise ValueError(f"metadata for {action.value} is missing: {', '.join(missing)}")


class AuditEvent(BaseModel):
    """
    One immutable audit row.

    Attribute names are snake_case; the serialized (by_alias) layout keeps the
    external field names: id, actorId, action, resourceType, resourceId,
    metadata, occurredAt.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1, max_length=64)
    actor_id: Optional[str] = Field(default=None, alias="actorId", max_length=128)
    action: AuditAction
    resource_type: str = Field(alias="resourceType", min_length=1, max_length=80)
    resource_id: Optional[str] = Field(default=None, alias="resourceId", max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: str = Field(default_factory=lambda: iso_from_epoch(time.time(), millis=True), alias="occurredAt")
    metadata_version: int = Field(default=METADATA_SCHEMA_VERSION, alias="metadataVersion", ge=1)

    @field_validator("resource_type")
    @classmethod
    def _strip_resource_type(cls, v: str) -> str:
        v = str(v).strip()
        if not v:
            raise ValueError("resource_type required")
        return v

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AuditFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class AuditAck:
    ok: bool
    event_id: Optional[str] = None
    error: str = ""
    attempts: int = 1


@dataclass(frozen=True)
class AuditStatistics:
    total_events: int
    unique_actors: int
    action_breakdown: Dict[str, int]
    resource_breakdown: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "uniqueUsers": self.unique_actors,
            "actionBreakdown": dict(self.action_breakdown),
            "resourceBreakdown": dict(self.resource_breakdown),
        }
