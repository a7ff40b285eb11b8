from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from governance.core.clock import iso_from_epoch


def _iso_now() -> str:
    return iso_from_epoch(time.time())


class RequestKind(str, Enum):
    EXPORT = "export"
    DELETION = "deletion"


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    # Never stored: reported for completed exports read after expires_at.
    EXPIRED = "expired"


IN_FLIGHT_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING)


class Classification(str, Enum):
    MINOR = "minor"
    STANDARD = "standard"


class CommunicationCategory(str, Enum):
    ANNOUNCEMENTS = "announcements"
    EVENTS = "events"
    PAYMENTS = "payments"
    VOLUNTEER = "volunteer"
    MEETINGS = "meetings"


class DataSubjectRequest(BaseModel):
    """
    One export or deletion request. The serialized (by_alias) layout keeps the
    external field names: subjectId, createdAt, expiresAt, completedAt, resultPayload.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: str = Field(alias="subjectId", min_length=1, max_length=128)
    kind: RequestKind
    status: RequestStatus = RequestStatus.PENDING
    created_at: str = Field(default_factory=_iso_now, alias="createdAt")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    attempts: int = Field(default=0, ge=0)
    error: str = Field(default="", max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    result_payload: Optional[Dict[str, Any]] = Field(default=None, alias="resultPayload")

    def summary(self) -> Dict[str, Any]:
        """Public view without the payload."""
        return self.model_dump(mode="json", by_alias=True, exclude={"result_payload"})


class DownloadOutcome(str, Enum):
    READY = "ready"
    NOT_FOUND = "not_found"
    NOT_READY = "not_ready"
    EXPIRED = "expired"


@dataclass(frozen=True)
class DownloadResult:
    outcome: DownloadOutcome
    request: Optional[DataSubjectRequest] = None
    payload: Optional[Dict[str, Any]] = None
    filename: str = ""


@dataclass(frozen=True)
class DeletionVerification:
    subject_id: str
    remaining_data: List[str] = field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return not self.remaining_data

    def to_dict(self) -> Dict[str, Any]:
        return {"subject_id": self.subject_id, "is_deleted": self.is_deleted, "remaining_data": list(self.remaining_data)}


class PrivacyConfigFile(BaseModel):
    """
    config/privacy.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    export_validity_days: int = Field(default=7, ge=1, le=90)
    export_activity_limit: int = Field(default=100, ge=0, le=10_000)
    unsubscribe_token_ttl_days: int = Field(default=7, ge=1, le=365)
    max_processing_attempts: int = Field(default=3, ge=1, le=20)
    # A processing request whose claim is older than this may be taken over by another worker.
    processing_lease_seconds: int = Field(default=900, ge=30, le=86_400)
    deleted_email_domain: str = Field(default="deleted.local", min_length=1, max_length=120)


def default_privacy_config_dict() -> Dict[str, Any]:
    return PrivacyConfigFile().model_dump(mode="json")
