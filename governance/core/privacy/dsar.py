"""
Data subject request workflows (export and deletion).

Lifecycle: pending -> processing -> completed | failed, with processing ->
pending when a recoverable attempt fails. "expired" is never stored: a
completed export read after expires_at is reported as expired.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol, Tuple

from governance.core.audit.models import AuditAction, AuditFilters
from governance.core.cache.tags import CacheInvalidator
from governance.core.clock import DAY_SECONDS, date_from_epoch, epoch_from_iso, iso_from_epoch
from governance.core.error_reporter import normalize_exception
from governance.core.errors import NotFoundError, StateTransitionError
from governance.core.privacy.categories import GOVERNED_CATEGORIES, SubjectHooksRegistry, cache_tags_for
from governance.core.privacy.models import (
    DataSubjectRequest,
    DeletionVerification,
    DownloadOutcome,
    DownloadResult,
    PrivacyConfigFile,
    RequestKind,
    RequestStatus,
)
from governance.core.privacy.store import GovernedStore


class IdentityProvider(Protocol):
    """External account system; removing the login is best-effort."""

    def delete_user(self, *, subject_id: str) -> bool: ...


def anonymized_subject_id() -> str:
    return "DELETED_" + uuid.uuid4().hex[:16]


def subject_hash(subject_id: str) -> str:
    return hashlib.sha256(str(subject_id).encode("utf-8")).hexdigest()


def export_filename(subject_id: str, now: float) -> str:
    return f"data-export-{subject_id}-{date_from_epoch(now)}.json"


class DataSubjectRequestWorkflow:
    def __init__(
        self,
        *,
        store: GovernedStore,
        audit: Any,
        cfg: Optional[PrivacyConfigFile] = None,
        hooks: Optional[SubjectHooksRegistry] = None,
        identity_provider: Optional[IdentityProvider] = None,
        logger: Any = None,
        invalidator: Optional[CacheInvalidator] = None,
        time_fn=time.time,
    ):
        self.store = store
        self.audit = audit
        self.cfg = cfg or PrivacyConfigFile()
        self.hooks = hooks or SubjectHooksRegistry()
        self.identity_provider = identity_provider
        self.invalidator = invalidator or CacheInvalidator()
        self.logger = logger or logging.getLogger("governance.dsar")
        self._time = time_fn

    _REQUESTED = {RequestKind.EXPORT: AuditAction.DATA_EXPORT_REQUESTED, RequestKind.DELETION: AuditAction.DATA_DELETION_REQUESTED}
    _COMPLETED = {RequestKind.EXPORT: AuditAction.DATA_EXPORT_COMPLETED, RequestKind.DELETION: AuditAction.DATA_DELETION_COMPLETED}
    _FAILED = {RequestKind.EXPORT: AuditAction.DATA_EXPORT_FAILED, RequestKind.DELETION: AuditAction.DATA_DELETION_FAILED}

    # ---- create ----
    def create(self, *, subject_id: str, kind: RequestKind, metadata: Optional[Dict[str, Any]] = None) -> Tuple[DataSubjectRequest, bool]:
        """
        Returns (request, created). A second create while one of the same kind is
        in flight returns the existing request with created=False.
        """
        kind = RequestKind(kind)
        req = DataSubjectRequest(subject_id=str(subject_id), kind=kind, created_at=iso_from_epoch(float(self._time())), metadata=dict(metadata or {}))
        stored, created = self.store.create_request(req)
        if created:
            self.audit.record_action(
                action=self._REQUESTED[kind],
                resource_type="data_subject_request",
                resource_id=stored.id,
                actor_id=stored.subject_id,
                metadata={"request_id": stored.id},
            )
        else:
            self.logger.info(f"Coalesced duplicate {kind.value} request for {stored.id}")
        return self._effective(stored), created

    # ---- process ----
    def process(self, request_id: str, *, allow_reclaim: bool = False) -> DataSubjectRequest:
        """
        Claim and run one request. `allow_reclaim` takes over a request left in
        processing only once its claim has outlived the processing lease.
        """
        now = float(self._time())
        stale_before = iso_from_epoch(now - int(self.cfg.processing_lease_seconds)) if allow_reclaim else None
        claimed = self.store.claim_request(request_id=str(request_id), now_iso=iso_from_epoch(now), reclaim_claimed_before=stale_before)
        if claimed is None:
            current = self.store.get_request(str(request_id))
            if current is None:
                raise NotFoundError("Request not found.", request_id=str(request_id))
            # Already terminal or claimed by another worker.
            return self._effective(current)

        try:
            if claimed.kind == RequestKind.EXPORT:
                self._complete_export(claimed)
            else:
                self._complete_deletion(claimed)
        except Exception as e:  # noqa: BLE001
            self._handle_failure(claimed, e)

        final = self.store.get_request(claimed.id)
        if final is None:
            raise StateTransitionError("Request disappeared during processing.", request_id=claimed.id)
        return self._effective(final)

    def process_pending(self, *, limit: int = 10, reclaim_processing: bool = False) -> List[DataSubjectRequest]:
        """
        Background worker entry point. `reclaim_processing` also picks up requests
        left in processing by a worker that died mid-run.
        """
        statuses = [RequestStatus.PENDING] + ([RequestStatus.PROCESSING] if reclaim_processing else [])
        out: List[DataSubjectRequest] = []
        for req in self.store.list_requests(statuses=statuses, limit=limit):
            out.append(self.process(req.id, allow_reclaim=reclaim_processing))
        return out

    def _complete_export(self, req: DataSubjectRequest) -> None:
        now = float(self._time())
        data = self._collect(req.subject_id)
        payload = {"export_date": iso_from_epoch(now), "user_id": req.subject_id, "data": data}
        expires = iso_from_epoch(now + int(self.cfg.export_validity_days) * DAY_SECONDS)
        if not self.store.complete_request(request_id=req.id, completed_at=iso_from_epoch(now), expires_at=expires, payload=payload, attempt=req.attempts):
            raise StateTransitionError("Request left processing before completion.", request_id=req.id)
        self.audit.record_action(
            action=AuditAction.DATA_EXPORT_COMPLETED,
            resource_type="data_subject_request",
            resource_id=req.id,
            actor_id=req.subject_id,
            metadata={"request_id": req.id, "categories": sorted(data.keys()), "expires_at": expires},
        )

    def _collect(self, subject_id: str) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for spec in GOVERNED_CATEGORIES:
            rows = self.store.rows_for_subject(spec.name, subject_id)
            if spec.name == "members":
                data[spec.export_key] = rows[0] if rows else None
            else:
                data[spec.export_key] = rows
        limit = int(self.cfg.export_activity_limit)
        if limit > 0:
            events = self.audit.query(AuditFilters(actor_id=subject_id), limit=limit)
            data["activity_log"] = [e.to_public() for e in events]
        for name, hooks in self.hooks.iter_hooks():
            data[name] = hooks.export_subject(subject_id=subject_id)
        return data

    def _complete_deletion(self, req: DataSubjectRequest) -> None:
        now = float(self._time())
        anon = anonymized_subject_id()
        results: Dict[str, bool] = {}
        failures: List[str] = []
        touched: List[str] = []
        for spec in GOVERNED_CATEGORIES:
            try:
                if self.store.erase_subject(spec.name, req.subject_id, anonymized_id=anon, deleted_domain=self.cfg.deleted_email_domain):
                    touched.append(spec.name)
                results[spec.name] = True
            except Exception as e:  # noqa: BLE001
                results[spec.name] = False
                failures.append(f"{spec.name}: {type(e).__name__}: {e}"[:120])
        for name, hooks in self.hooks.iter_hooks():
            try:
                results[name] = bool(hooks.erase_subject(subject_id=req.subject_id, anonymized_id=anon))
            except Exception as e:  # noqa: BLE001
                results[name] = False
                failures.append(f"{name}: {type(e).__name__}: {e}"[:120])
        if self.identity_provider is not None:
            try:
                results["identity_provider"] = bool(self.identity_provider.delete_user(subject_id=req.subject_id))
            except Exception as e:  # noqa: BLE001
                results["identity_provider"] = False
                self.logger.warning(f"Identity provider deletion failed for request {req.id}: {e}")

        # Erasures that committed stand even if a later category failed.
        self.invalidator.after_write(cache_tags_for(touched))

        if failures:
            raise StateTransitionError("Deletion incomplete.", request_id=req.id, failures="; ".join(failures))

        meta = dict(req.metadata)
        meta["deletion_results"] = results
        if not self.store.complete_request(request_id=req.id, completed_at=iso_from_epoch(now), expires_at=None, payload=None, metadata=meta, attempt=req.attempts):
            raise StateTransitionError("Request left processing before completion.", request_id=req.id)
        self.audit.record_action(
            action=AuditAction.DATA_DELETION_COMPLETED,
            resource_type="data_subject_request",
            resource_id=req.id,
            metadata={"request_id": req.id, "original_user_id_hash": subject_hash(req.subject_id), "deletion_results": results},
        )

    def _handle_failure(self, req: DataSubjectRequest, exc: BaseException) -> None:
        err = normalize_exception(exc, subsystem="dsar", context={"request_id": req.id})
        reason = f"{err.code}: {err.context.get('failures') or err.context.get('error') or err.user_message}"[:500]
        if err.recoverable and req.attempts < int(self.cfg.max_processing_attempts) and err.code == "dependency_unavailable":
            self.logger.warning(f"Request {req.id} attempt {req.attempts} failed, will retry: {reason}")
            if not self.store.release_request(request_id=req.id, error=reason, attempt=req.attempts):
                self.logger.warning(f"Request {req.id} attempt {req.attempts} was taken over by another worker; not released.")
            return
        if not self.store.fail_request(request_id=req.id, error=reason, completed_at=iso_from_epoch(float(self._time())), attempt=req.attempts):
            # Another worker owns the request now; its outcome is the one on record.
            self.logger.warning(f"Request {req.id} attempt {req.attempts} ended after losing its claim: {reason}")
            return
        self.logger.error(f"Request {req.id} failed: {reason}")
        self.audit.record_action(
            action=self._FAILED[req.kind],
            resource_type="data_subject_request",
            resource_id=req.id,
            metadata={"request_id": req.id, "error": reason, "attempts": req.attempts},
        )

    # ---- read side ----
    def _effective(self, req: DataSubjectRequest) -> DataSubjectRequest:
        if req.status == RequestStatus.COMPLETED and req.expires_at and float(self._time()) >= epoch_from_iso(req.expires_at):
            return req.model_copy(update={"status": RequestStatus.EXPIRED})
        return req

    def get(self, request_id: str) -> Optional[DataSubjectRequest]:
        req = self.store.get_request(str(request_id))
        return self._effective(req) if req is not None else None

    def latest(self, *, subject_id: str, kind: RequestKind) -> Optional[DataSubjectRequest]:
        req = self.store.latest_request(subject_id=str(subject_id), kind=RequestKind(kind))
        return self._effective(req) if req is not None else None

    def download(self, *, request_id: str, subject_id: str) -> DownloadResult:
        """
        Only the requesting subject may download. A request owned by someone
        else is reported as not found.
        """
        req = self.store.get_request(str(request_id))
        if req is None or req.subject_id != str(subject_id) or req.kind != RequestKind.EXPORT:
            return DownloadResult(outcome=DownloadOutcome.NOT_FOUND)
        eff = self._effective(req)
        if eff.status == RequestStatus.EXPIRED:
            return DownloadResult(outcome=DownloadOutcome.EXPIRED, request=eff)
        if eff.status != RequestStatus.COMPLETED or eff.result_payload is None:
            return DownloadResult(outcome=DownloadOutcome.NOT_READY, request=eff)
        return DownloadResult(
            outcome=DownloadOutcome.READY,
            request=eff,
            payload=eff.result_payload,
            filename=export_filename(eff.subject_id, float(self._time())),
        )

    def verify_deletion(self, subject_id: str) -> DeletionVerification:
        """Re-scan every governed category for rows still keyed by the original id."""
        remaining: List[str] = []
        for spec in GOVERNED_CATEGORIES:
            if spec.verify and self.store.count_for_subject(spec.name, subject_id) > 0:
                remaining.append(spec.name)
        for name, hooks in self.hooks.iter_hooks():
            try:
                if hooks.has_residue(subject_id=str(subject_id)):
                    remaining.append(name)
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Residue check failed for {name}: {e}")
                remaining.append(name)
        return DeletionVerification(subject_id=str(subject_id), remaining_data=remaining)
