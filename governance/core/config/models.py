from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from governance.core.cache.tags import CacheConfigFile
from governance.core.limits.limiter import LimitsConfigFile
from governance.core.privacy.models import PrivacyConfigFile
from governance.core.retention.models import RetentionConfigFile


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    write_retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.05, ge=0.0, le=5.0)
    default_window_days: int = Field(default=30, ge=1, le=3650)
    max_query_limit: int = Field(default=1000, ge=1, le=100_000)


class AppFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    schema_version: int = Field(default=1, ge=1, le=10)
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    busy_timeout_seconds: float = Field(default=5.0, ge=0.1, le=60.0)
    include_tracebacks: bool = False
    audit: AuditConfig = Field(default_factory=AuditConfig)
    backups: Dict[str, int] = Field(default_factory=lambda: {"max_backups_per_file": 10})


class ApiKeyEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")
    id: str = Field(min_length=1, max_length=64)
    key_hash: str = Field(min_length=64, max_length=64, pattern="^[0-9a-f]{64}$")
    subject_id: str = Field(min_length=1, max_length=128)
    roles: List[str] = Field(default_factory=list)


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    schema_version: int = Field(default=1, ge=1, le=10)
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=list)
    trust_forwarded_for: bool = False
    max_request_bytes: int = Field(default=65536, ge=1024, le=10_000_000)
    api_keys: List[ApiKeyEntry] = Field(default_factory=list)


class GovernanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    app: AppFileConfig
    retention: RetentionConfigFile
    limits: LimitsConfigFile
    privacy: PrivacyConfigFile
    cache: CacheConfigFile
    web: WebConfig


def default_app_config_dict() -> Dict[str, Any]:
    return AppFileConfig().model_dump()


def default_web_config_dict() -> Dict[str, Any]:
    return WebConfig().model_dump()
