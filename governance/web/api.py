from __future__ import annotations

import json
import time
from typing import Any, Callable, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from governance.core.audit.export import DEFAULT_WINDOW_DAYS, csv_filename, default_window
from governance.core.audit.models import AuditAction, AuditFilters
from governance.core.clock import iso_from_epoch, parse_optional_iso
from governance.core.error_reporter import ErrorReporter
from governance.core.errors import (
    HTTP_STATUS_BY_CODE,
    AdminRequiredError,
    DependencyUnavailableError,
    GovernanceError,
    NotFoundError,
    PermissionDeniedError,
    UnauthorizedError,
    ValidationError,
)
from governance.core.events import EventLogger
from governance.core.privacy.consent import check_required_consents
from governance.core.privacy.models import DownloadOutcome, RequestKind
from governance.core.retention.maintenance import run_daily_maintenance
from governance.core.security_events import SecurityAuditLogger
from governance.core.services import Services
from governance.web.auth import ELEVATED_ROLES, Authenticator, Principal, bearer_matches
from governance.web.middleware import GovernanceMiddleware, client_ip
from governance.web.models import (
    AuditQueryResponse,
    DeletionVerifyResponse,
    JobResponse,
    RateLimitResetRequest,
    RequestCreatedResponse,
    RevalidateRequest,
    RevalidateResponse,
    UnsubscribeRequest,
)


def _trace_id(request: Request) -> str:
    return getattr(getattr(request, "state", None), "trace_id", "web")


def create_app(
    *,
    services: Services,
    authenticator: Authenticator,
    cron_secret: Optional[str],
    event_logger: EventLogger,
    security_logger: Optional[SecurityAuditLogger] = None,
    error_reporter: Optional[ErrorReporter] = None,
    logger: Any = None,
    allowed_origins: list[str] | None = None,
    max_request_bytes: int = 65536,
    trust_forwarded_for: bool = False,
    time_fn: Callable[[], float] = time.time,
) -> FastAPI:
    app = FastAPI(title="Data Governance", version="0.1.0")
    reporter = error_reporter or ErrorReporter()
    sec = security_logger or SecurityAuditLogger()
    audit = services.audit
    max_query_limit = int(services.config.app.audit.max_query_limit)

    if allowed_origins:
        if any(o == "*" for o in allowed_origins):
            raise ValueError("Wildcard CORS origins are not allowed.")
        app.add_middleware(CORSMiddleware, allow_origins=allowed_origins, allow_credentials=False, allow_methods=["GET", "POST"], allow_headers=["*"])

    app.middleware("http")(
        GovernanceMiddleware(
            authenticator=authenticator,
            limiter=services.limiter,
            event_logger=event_logger,
            audit_logger=sec,
            max_request_bytes=max_request_bytes,
            trust_forwarded_for=trust_forwarded_for,
        )
    )

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError):
        status = HTTP_STATUS_BY_CODE.get(exc.code, 500)
        if status >= 500:
            reporter.write_error(exc, trace_id=_trace_id(request), subsystem="web", internal_exc=None)
        return JSONResponse(status_code=status, content={"detail": exc.user_message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    # ---- dependencies ----
    def current_principal(request: Request) -> Principal:
        p = getattr(request.state, "principal", None)
        if p is None:
            sec.log(trace_id=_trace_id(request), severity="WARN", event="web.auth_failed", ip=client_ip(request), endpoint=request.url.path, outcome="denied", details={})
            raise UnauthorizedError()
        return p

    def require_roles(roles: frozenset, denied: Callable[[], GovernanceError] = AdminRequiredError) -> Callable[..., Principal]:
        def dep(request: Request, principal: Principal = Depends(current_principal)) -> Principal:
            if principal.has_any(roles):
                return principal
            audit.record_action(
                action=AuditAction.ADMIN_ACCESS,
                resource_type="admin",
                actor_id=principal.subject_id,
                metadata={"unauthorized": True, "path": request.url.path},
            )
            raise denied()

        return dep

    require_elevated = require_roles(ELEVATED_ROLES)
    require_admin = require_roles(frozenset({"admin"}), PermissionDeniedError)

    def require_cron(request: Request) -> None:
        if not bearer_matches(request.headers.get("Authorization"), cron_secret):
            sec.log(trace_id=_trace_id(request), severity="WARN", event="cron.auth_failed", ip=client_ip(request), endpoint=request.url.path, outcome="denied", details={})
            raise UnauthorizedError()

    def _query_window(start_date: Optional[str], end_date: Optional[str], days: int) -> tuple[float, float]:
        try:
            return default_window(float(time_fn()), days=days, since=parse_optional_iso(start_date), until=parse_optional_iso(end_date))
        except ValueError as e:
            raise ValidationError("Invalid date range.", error=str(e)) from e

    # ---- routes ----
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/v1/admin/audit-logs", response_model=AuditQueryResponse)
    def audit_logs(
        request: Request,
        principal: Principal = Depends(require_elevated),
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = Query(default=100, ge=1),
        offset: int = Query(default=0, ge=0),
    ):
        limit = min(int(limit), max_query_limit)
        since, until = _query_window(start_date, end_date, DEFAULT_WINDOW_DAYS)
        filters = AuditFilters(actor_id=user_id, action=action, resource_type=resource_type, resource_id=resource_id)
        events = audit.query(filters, since=since, until=until, limit=limit, offset=offset)
        total = audit.count(filters, since=since, until=until)
        audit.record_action(action=AuditAction.ADMIN_ACCESS, resource_type="audit_logs", actor_id=principal.subject_id, metadata={"path": request.url.path})
        effective = filters.model_dump()
        effective.update({"start_date": iso_from_epoch(since), "end_date": iso_from_epoch(until)})
        return {
            "logs": [e.to_public() for e in events],
            "filters": effective,
            "pagination": {"limit": limit, "offset": offset, "returned": len(events), "total": total},
        }

    @app.get("/v1/admin/audit-logs/export")
    def audit_logs_export(
        principal: Principal = Depends(require_elevated),
        days: int = Query(default=DEFAULT_WINDOW_DAYS, ge=1, le=3650),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
    ):
        since, until = _query_window(start_date, end_date, days)
        filters = AuditFilters(action=action, resource_type=resource_type)
        count = audit.count(filters, since=since, until=until)
        audit.record_action(
            action=AuditAction.ADMIN_EXPORT,
            resource_type="audit_logs",
            actor_id=principal.subject_id,
            metadata={"start_date": iso_from_epoch(since), "end_date": iso_from_epoch(until), "record_count": count},
        )
        return StreamingResponse(
            audit.iter_csv(filters, since=since, until=until),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{csv_filename(since, until)}"'},
        )

    @app.get("/v1/admin/audit-logs/statistics")
    def audit_statistics(
        request: Request,
        principal: Principal = Depends(require_elevated),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        since, until = _query_window(start_date, end_date, DEFAULT_WINDOW_DAYS)
        stats = audit.statistics(since=since, until=until)
        audit.record_action(action=AuditAction.ADMIN_ACCESS, resource_type="audit_logs", actor_id=principal.subject_id, metadata={"path": request.url.path})
        return {**stats.to_dict(), "start_date": iso_from_epoch(since), "end_date": iso_from_epoch(until)}

    # ---- rate limits ----
    @app.get("/v1/admin/rate-limits")
    def rate_limit_stats(principal: Principal = Depends(require_admin)):
        return {"policies": services.limiter.stats()}

    @app.post("/v1/admin/rate-limits/reset")
    def rate_limit_reset(req: RateLimitResetRequest, request: Request, principal: Principal = Depends(require_admin)):
        if req.policy not in services.limiter.policies:
            raise NotFoundError("Unknown rate limit policy.", policy=req.policy)
        if not req.subject_id and not req.source_address:
            raise ValidationError("subject_id or source_address required.")
        cleared = services.limiter.reset(req.policy, subject_key=req.subject_id, source_address=req.source_address)
        audit.record_action(
            action=AuditAction.ADMIN_ACCESS,
            resource_type="rate_limits",
            actor_id=principal.subject_id,
            resource_id=req.subject_id,
            metadata={"path": request.url.path, "policy": req.policy, "cleared": cleared},
        )
        return {"reset": cleared, "policy": req.policy}

    # ---- scheduled jobs ----
    def _job_response(success: bool, message: str, details: dict) -> JSONResponse:
        body = JobResponse(success=success, message=message, details=details).model_dump()
        return JSONResponse(status_code=200 if success else 500, content=body)

    def daily_maintenance(_: None = Depends(require_cron)):
        result = run_daily_maintenance(services.retention, logger=logger)
        return _job_response(result.success, "Daily maintenance completed" if result.success else "Daily maintenance completed with errors", result.to_dict())

    def data_retention(_: None = Depends(require_cron)):
        run = services.retention.run_all()
        return _job_response(run.success, run.summary(), run.to_dict())

    def temp_cleanup(_: None = Depends(require_cron)):
        run = services.retention.cleanup_temporary_data()
        return _job_response(run.success, run.summary(), run.to_dict())

    def coppa_age_out(_: None = Depends(require_cron)):
        r = services.age_out.process_age_outs()
        return _job_response(r.ok, f"Transitioned {r.processed_count} accounts, {len(r.errors)} errors", r.to_dict())

    for path, handler in (
        ("/v1/cron/daily-maintenance", daily_maintenance),
        ("/v1/cron/data-retention", data_retention),
        ("/v1/cron/temp-cleanup", temp_cleanup),
        ("/v1/cron/coppa-age-out", coppa_age_out),
    ):
        app.add_api_route(path, handler, methods=["GET", "POST"])

    # ---- data subject requests ----
    def _create(kind: RequestKind, principal: Principal, request: Request, background: BackgroundTasks) -> RequestCreatedResponse:
        req, created = services.dsar.create(subject_id=principal.subject_id, kind=kind, metadata={"trace_id": _trace_id(request)})
        if created:
            background.add_task(services.dsar.process, req.id)
        return RequestCreatedResponse(success=True, request_id=req.id, status=req.status.value, already_pending=not created)

    @app.post("/v1/privacy/export", response_model=RequestCreatedResponse)
    def create_export(request: Request, background: BackgroundTasks, principal: Principal = Depends(current_principal)):
        return _create(RequestKind.EXPORT, principal, request, background)

    @app.get("/v1/privacy/export")
    def latest_export(principal: Principal = Depends(current_principal)):
        req = services.dsar.latest(subject_id=principal.subject_id, kind=RequestKind.EXPORT)
        return {"request": req.summary() if req is not None else None}

    @app.get("/v1/privacy/export/{request_id}/download")
    def download_export(request_id: str, principal: Principal = Depends(current_principal)):
        res = services.dsar.download(request_id=request_id, subject_id=principal.subject_id)
        if res.outcome == DownloadOutcome.NOT_FOUND:
            raise NotFoundError("Export request not found.")
        if res.outcome == DownloadOutcome.EXPIRED:
            return JSONResponse(status_code=410, content={"detail": "Export link has expired.", "code": "export_expired"})
        if res.outcome == DownloadOutcome.NOT_READY:
            status = res.request.status.value if res.request is not None else "pending"
            return JSONResponse(status_code=202, content={"detail": "Export not ready yet.", "code": "export_not_ready", "status": status})
        return Response(
            content=json.dumps(res.payload, ensure_ascii=False, indent=2),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{res.filename}"'},
        )

    @app.post("/v1/privacy/delete", response_model=RequestCreatedResponse)
    def create_deletion(request: Request, background: BackgroundTasks, principal: Principal = Depends(current_principal)):
        return _create(RequestKind.DELETION, principal, request, background)

    @app.get("/v1/privacy/delete/verify", response_model=DeletionVerifyResponse)
    def verify_deletion(subject_id: str = Query(min_length=1, max_length=128), principal: Principal = Depends(require_admin)):
        return services.dsar.verify_deletion(subject_id).to_dict()

    @app.get("/v1/privacy/consent/check")
    def consent_check(types: List[str] = Query(default=[]), principal: Principal = Depends(current_principal)):
        if not types or len(types) > 20:
            raise ValidationError("Between 1 and 20 consent types required.")
        return check_required_consents(services.store, principal.subject_id, types).to_dict()

    # ---- unsubscribe ----
    @app.post("/v1/unsubscribe")
    def unsubscribe(req: UnsubscribeRequest):
        if services.unsubscribe is None:
            raise DependencyUnavailableError("Unsubscribe links are not configured.")
        conf = services.unsubscribe.apply_unsubscribe(req.token, req.category.value if req.category is not None else None)
        return conf.to_dict()

    # ---- cache ----
    @app.post("/v1/cache/revalidate", response_model=RevalidateResponse)
    def revalidate(req: RevalidateRequest, principal: Principal = Depends(require_admin)):
        tags = [t for t in req.tags if t]
        ok = services.invalidator.after_write(tags)
        audit.record_action(action=AuditAction.CACHE_REVALIDATE, resource_type="cache", actor_id=principal.subject_id, metadata={"tags": tags, "ok": ok})
        return {"revalidated": True, "tags": tags, "timestamp": int(float(time_fn()) * 1000)}

    return app
