from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from governance.core.privacy.models import CommunicationCategory


class UnsubscribeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    token: str = Field(min_length=1, max_length=2048)
    category: Optional[CommunicationCategory] = None


class RevalidateRequest(BaseModel):
    tags: List[str] = Field(max_length=100)


class RevalidateResponse(BaseModel):
    revalidated: bool
    tags: List[str]
    timestamp: int


class RequestCreatedResponse(BaseModel):
    success: bool
    request_id: str
    status: str
    already_pending: bool = False


class AuditQueryResponse(BaseModel):
    logs: List[Dict[str, Any]]
    filters: Dict[str, Any]
    pagination: Dict[str, Any]


class DeletionVerifyResponse(BaseModel):
    subject_id: str
    is_deleted: bool
    remaining_data: List[str]


class JobResponse(BaseModel):
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RateLimitResetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    policy: str = Field(min_length=1, max_length=80)
    subject_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    source_address: Optional[str] = Field(default=None, min_length=1, max_length=64)
