from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from governance.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class GovernanceError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Core types ----
class ConfigError(GovernanceError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class UnauthorizedError(GovernanceError):
    def __init__(self, user_message: str = "Unauthorized.", **ctx: Any):
        super().__init__("unauthorized", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class PermissionDeniedError(GovernanceError):
    def __init__(self, user_message: str = "Permission denied.", **ctx: Any):
        super().__init__("permission_denied", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class AdminRequiredError(GovernanceError):
    def __init__(self, user_message: str = "Admin required for this action.", **ctx: Any):
        super().__init__("admin_required", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class NotFoundError(GovernanceError):
    def __init__(self, user_message: str = "Not found.", **ctx: Any):
        super().__init__("not_found", user_message, severity=Severity.INFO, recoverable=False, context=ctx)


class RateLimitError(GovernanceError):
    def __init__(self, user_message: str = "Rate limit exceeded.", *, retry_after_seconds: int = 0, **ctx: Any):
        super().__init__("rate_limited", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
        self.retry_after_seconds = int(retry_after_seconds)


class ValidationError(GovernanceError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class InvalidTokenError(GovernanceError):
    def __init__(self, user_message: str = "Invalid or expired unsubscribe link.", **ctx: Any):
        super().__init__("invalid_token", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ExportExpiredError(GovernanceError):
    def __init__(self, user_message: str = "Export has expired.", **ctx: Any):
        super().__init__("export_expired", user_message, severity=Severity.INFO, recoverable=False, context=ctx)


class DependencyUnavailableError(GovernanceError):
    def __init__(self, user_message: str = "A required service is unavailable.", **ctx: Any):
        super().__init__("dependency_unavailable", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class StateTransitionError(GovernanceError):
    def __init__(self, user_message: str = "Internal state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


HTTP_STATUS_BY_CODE: Dict[str, int] = {
    "unauthorized": 401,
    "invalid_token": 400,
    "validation_error": 400,
    "permission_denied": 403,
    "admin_required": 403,
    "not_found": 404,
    "export_not_ready": 202,
    "export_expired": 410,
    "rate_limited": 429,
    "dependency_unavailable": 503,
}
