from __future__ import annotations

import sqlite3
import time
import uuid
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from governance.core.errors import DependencyUnavailableError, GovernanceError, RateLimitError, ValidationError
from governance.core.events import EventLogger
from governance.core.limits.limiter import RateLimiter
from governance.core.security_events import SecurityAuditLogger
from governance.web.auth import Authenticator


def client_ip(request: Request, *, trust_forwarded_for: bool = False) -> Optional[str]:
    if trust_forwarded_for:
        fwd = request.headers.get("X-Forwarded-For", "")
        if fwd:
            return fwd.split(",")[0].strip() or None
    return getattr(getattr(request, "client", None), "host", None)


def _error_response(status: int, err: GovernanceError, *, headers: Optional[dict] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": err.user_message, "code": err.code, **extra}, headers=headers)


def route_policy(method: str, path: str) -> Optional[str]:
    """Rate-limit policy for a route, or None for routes that are not limited."""
    if path == "/health" or path.startswith("/v1/cron/"):
        return None
    if path == "/v1/admin/audit-logs/export":
        return "audit_log_export"
    if path.startswith("/v1/admin/audit-logs"):
        return "audit_log_access"
    if path == "/v1/privacy/export" and method == "POST":
        return "data_export"
    if path == "/v1/privacy/delete" and method == "POST":
        return "data_deletion"
    if path == "/v1/unsubscribe":
        return "unsubscribe"
    if path == "/v1/cache/revalidate":
        return "cache_revalidate"
    return "read_operations"


class GovernanceMiddleware:
    """
    Request chain (order matters):
    1) trace_id + request audit
    2) request size guard
    3) principal resolution (enforcement happens in route dependencies)
    4) per-route rate limit (subject + source address)
    5) audit outcome
    """

    def __init__(
        self,
        *,
        authenticator: Authenticator,
        limiter: RateLimiter,
        event_logger: EventLogger,
        audit_logger: SecurityAuditLogger,
        max_request_bytes: int = 65536,
        trust_forwarded_for: bool = False,
    ):
        self.authenticator = authenticator
        self.limiter = limiter
        self.event_logger = event_logger
        self.audit_logger = audit_logger
        self.max_request_bytes = int(max_request_bytes)
        self.trust_forwarded_for = bool(trust_forwarded_for)

    async def __call__(self, request: Request, call_next):  # noqa: ANN001
        trace_id = uuid.uuid4().hex
        request.state.trace_id = trace_id
        ip = client_ip(request, trust_forwarded_for=self.trust_forwarded_for)
        path = request.url.path
        method = request.method
        t0 = time.time()

        self.audit_logger.log(trace_id=trace_id, severity="INFO", event="web.request", ip=ip, endpoint=path, outcome="received", details={"method": method})

        if method in {"POST", "PUT", "PATCH"}:
            body = await request.body()
            if len(body) > self.max_request_bytes:
                self.audit_logger.log(trace_id=trace_id, severity="WARN", event="web.request_rejected", ip=ip, endpoint=path, outcome="rejected", details={"reason": "too_large"})
                return _error_response(413, ValidationError("Request too large."))

        principal = self.authenticator.authenticate(request)
        request.state.principal = principal
        subject = principal.subject_id if principal is not None else None

        policy = route_policy(method, path)
        if policy is not None:
            try:
                decision = self.limiter.check(subject, policy, ip)
            except sqlite3.Error as e:
                self.event_logger.log(trace_id, "limits.store_unavailable", {"policy": policy, "error": str(e)[:200]})
                return _error_response(503, DependencyUnavailableError())
            if not decision.allowed:
                err = RateLimitError(retry_after_seconds=decision.retry_after_seconds)
                self.audit_logger.log(
                    trace_id=trace_id,
                    severity="WARN",
                    event="web.rate_limited",
                    ip=ip,
                    endpoint=path,
                    outcome="429",
                    subject_id=subject,
                    details={"policy": policy, "scope": decision.scope},
                )
                return _error_response(
                    429,
                    err,
                    retry_after_seconds=err.retry_after_seconds,
                    headers={"Retry-After": str(err.retry_after_seconds), "X-RateLimit-Limit": str(decision.limit), "X-RateLimit-Remaining": "0"},
                )

        try:
            resp = await call_next(request)
        except Exception as e:
            self.audit_logger.log(trace_id=trace_id, severity="ERROR", event="web.exception", ip=ip, endpoint=path, outcome="error", details={"error": str(e)[:200]})
            raise
        self.audit_logger.log(
            trace_id=trace_id,
            severity="INFO",
            event="web.response",
            ip=ip,
            endpoint=path,
            outcome=str(resp.status_code),
            subject_id=subject,
            details={"key_id": getattr(principal, "key_id", None), "ms": int((time.time() - t0) * 1000)},
        )
        resp.headers["X-Trace-Id"] = trace_id
        return resp
