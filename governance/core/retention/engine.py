from __future__ import annotations

import calendar
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol

from governance.core.audit.models import AuditAction
from governance.core.cache.tags import CacheInvalidator
from governance.core.clock import DAY_SECONDS, iso_from_epoch
from governance.core.errors import GovernanceError
from governance.core.privacy.categories import cache_tags_for
from governance.core.retention.models import (
    PolicyRunResult,
    RecordError,
    RetentionAction,
    RetentionPolicy,
    RetentionRunResult,
)


class RetentionTarget(Protocol):
    """Storage side of one or more data categories."""

    def retention_candidates(
        self,
        *,
        category: str,
        date_field: str,
        cutoff_iso: str,
        condition: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        after: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[str]: ...

    def count_records(
        self,
        *,
        category: str,
        date_field: Optional[str] = None,
        cutoff_iso: Optional[str] = None,
        condition: Optional[Dict[str, Any]] = None,
        action: Optional[str] = None,
    ) -> int: ...

    def apply_retention(self, *, category: str, record_id: str, action: str, now_iso: str) -> bool: ...


class AdminNotifier(Protocol):
    def notify_admins(self, *, subject: str, message: str, details: Dict[str, Any]) -> None: ...


_AUDIT_ACTION = {
    RetentionAction.PURGE: AuditAction.RETENTION_PURGE,
    RetentionAction.ANONYMIZE: AuditAction.RETENTION_ANONYMIZE,
    RetentionAction.ARCHIVE: AuditAction.RETENTION_ARCHIVE,
}


class RetentionEngine:
    """
    Runs registered retention policies in registration order.

    Per-record failures are collected into the policy's result and never stop
    the run; a failure to select candidates is fatal to that policy only.
    Both entry points are safe to re-run: records already handled by a previous
    or overlapping run are no longer candidates, or report "already handled".
    """

    def __init__(
        self,
        *,
        policies: Iterable[RetentionPolicy],
        targets: Dict[str, RetentionTarget],
        audit: Any,
        logger: Any = None,
        notifier: Optional[AdminNotifier] = None,
        notify_admins_on_errors: bool = True,
        next_run_hour_utc: int = 2,
        invalidator: Optional[CacheInvalidator] = None,
        time_fn=time.time,
    ):
        self.policies: List[RetentionPolicy] = list(policies)
        self.targets = dict(targets)
        self.audit = audit
        self.logger = logger or logging.getLogger("governance.retention")
        self.notifier = notifier
        self.notify_admins_on_errors = bool(notify_admins_on_errors)
        self.next_run_hour_utc = int(next_run_hour_utc)
        self.invalidator = invalidator or CacheInvalidator()
        self._time = time_fn
        missing = sorted({p.data_category for p in self.policies if p.data_category not in self.targets})
        if missing:
            raise ValueError(f"no retention target for categories: {', '.join(missing)}")

    # ---- entry points ----
    def run_all(self) -> RetentionRunResult:
        return self._run([p for p in self.policies if not p.ephemeral], label="retention")

    def cleanup_temporary_data(self) -> RetentionRunResult:
        return self._run([p for p in self.policies if p.ephemeral], label="temp_cleanup")

    def get_policy(self, name: str) -> RetentionPolicy:
        for p in self.policies:
            if p.name == name:
                return p
        raise KeyError(name)

    def _run(self, policies: List[RetentionPolicy], *, label: str) -> RetentionRunResult:
        results = [self.run_policy(p) for p in policies]
        run = RetentionRunResult(success=all(r.ok for r in results), results=results)
        self.logger.info(f"{label}: {run.summary()}")
        if run.error_total and self.notify_admins_on_errors:
            self._notify(label, run)
        return run

    def run_policy(self, policy: RetentionPolicy) -> PolicyRunResult:
        now = float(self._time())
        now_iso = iso_from_epoch(now)
        cutoff = policy.cutoff_iso(now)
        result = PolicyRunResult(policy_name=policy.name)
        target = self.targets[policy.data_category]

        after: Optional[str] = None
        while True:
            try:
                ids = target.retention_candidates(
                    category=policy.data_category,
                    date_field=policy.date_field,
                    cutoff_iso=cutoff,
                    condition=dict(policy.condition),
                    limit=policy.batch_size,
                    after=after,
                    action=policy.action.value,
                )
            except Exception as e:  # noqa: BLE001
                # Work already committed in earlier batches stays committed.
                result.fatal_error = self._describe(e)
                self.logger.error(f"Retention policy {policy.name} aborted: {result.fatal_error}")
                break
            for rid in ids:
                result.candidate_count += 1
                try:
                    if target.apply_retention(category=policy.data_category, record_id=rid, action=policy.action.value, now_iso=now_iso):
                        result.processed_count += 1
                    else:
                        result.already_handled += 1
                except Exception as e:  # noqa: BLE001
                    result.errors.append(RecordError(record_id=rid, error_message=self._describe(e)))
            if len(ids) < policy.batch_size:
                break
            after = ids[-1]

        if result.processed_count:
            # Batches commit as they go; cached views of the category are stale from the first one.
            self.invalidator.after_write(cache_tags_for([policy.data_category]))
        self.audit.record_action(
            action=_AUDIT_ACTION[policy.action],
            resource_type=policy.data_category,
            metadata={
                "policy": policy.name,
                "records_processed": result.processed_count,
                "cutoff_date": cutoff,
                "errors": len(result.errors),
                "already_handled": result.already_handled,
                "fatal_error": result.fatal_error,
            },
        )
        if result.errors:
            self.logger.warning(f"Retention policy {policy.name}: {len(result.errors)} record errors")
        return result

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, GovernanceError):
            return f"{exc.code}: {exc.user_message}"[:200]
        return f"{type(exc).__name__}: {exc}"[:200]

    def _notify(self, label: str, run: RetentionRunResult) -> None:
        if self.notifier is None:
            return
        details = {"run": label, "summary": run.summary(), "policies": [r.to_dict() for r in run.results if r.errors or not r.ok]}
        try:
            self.notifier.notify_admins(subject=f"Data retention errors ({label})", message=run.summary(), details=details)
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Admin notification failed: {e}")

    # ---- reporting ----
    def next_run_epoch(self, now: Optional[float] = None) -> float:
        t = float(self._time() if now is None else now)
        day_start = calendar.timegm(time.gmtime(t)[:3] + (0, 0, 0, 0, 0, 0))
        return float(day_start + DAY_SECONDS + self.next_run_hour_utc * 3600)

    def status(self) -> Dict[str, Any]:
        now = float(self._time())
        policies: List[Dict[str, Any]] = []
        for p in self.policies:
            item: Dict[str, Any] = {
                "name": p.name,
                "data_category": p.data_category,
                "action": p.action.value,
                "max_age_days": p.max_age_days,
                "ephemeral": p.ephemeral,
                "description": p.description,
            }
            target = self.targets[p.data_category]
            try:
                item["total_records"] = target.count_records(category=p.data_category)
                item["records_to_process"] = target.count_records(
                    category=p.data_category, date_field=p.date_field, cutoff_iso=p.cutoff_iso(now),
                    condition=dict(p.condition),
                    action=p.action.value,
                )
            except Exception as e:  # noqa: BLE001
                item["error"] = self._describe(e)
            policies.append(item)
        return {"policies": policies, "next_run": iso_from_epoch(self.next_run_epoch(now))}


def build_targets(*, store: Any, audit: Any) -> Dict[str, RetentionTarget]:
    """Map every retention category to the store that owns it."""
    targets: Dict[str, RetentionTarget] = {c: store for c in store.RETENTION_CATEGORIES}
    targets[audit.CATEGORY] = audit
    return targets
