from __future__ import annotations

import datetime as _dt
import logging
import time
from typing import Any, Dict, Optional, Protocol

from governance.core.audit.models import AuditAction
from governance.core.cache.tags import CacheInvalidator
from governance.core.clock import iso_from_epoch
from governance.core.privacy.categories import CHILD_ACCOUNTS, PRIVACY_SETTINGS, cache_tags_for
from governance.core.retention.models import AgeOutConfig, PolicyRunResult, RecordError

POLICY_NAME = "coppa_age_out"


class AgeOutNotifier(Protocol):
    def age_out(self, *, child_id: str, parent_id: str, age: int) -> None: ...


def _parse_date(value: str) -> _dt.date:
    return _dt.date.fromisoformat(str(value).strip()[:10])


def age_on(birth_date: str, today: _dt.date) -> int:
    """Completed years on `today`. A 29 February birthday counts from 1 March in common years."""
    born = _parse_date(birth_date)
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return max(0, years)


def _years_before(today: _dt.date, years: int) -> _dt.date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February on a common year.
        return today.replace(year=today.year - years, day=28)


class AgeOutMonitor:
    """
    Moves minors who reached the age threshold to standard data handling.

    Idempotent: the store only transitions rows still classified as minor, so a
    repeated or overlapping run reports the subject as already handled and
    records no second audit event.
    """

    def __init__(
        self,
        *,
        store: Any,
        audit: Any,
        cfg: Optional[AgeOutConfig] = None,
        notifier: Optional[AgeOutNotifier] = None,
        logger: Any = None,
        invalidator: Optional[CacheInvalidator] = None,
        time_fn=time.time,
    ):
        self.store = store
        self.audit = audit
        self.cfg = cfg or AgeOutConfig()
        self.notifier = notifier
        self.invalidator = invalidator or CacheInvalidator()
        self.logger = logger or logging.getLogger("governance.age_out")
        self._time = time_fn

    def process_age_outs(self) -> PolicyRunResult:
        result = PolicyRunResult(policy_name=POLICY_NAME)
        if not self.cfg.enabled:
            return result
        now = float(self._time())
        now_iso = iso_from_epoch(now)
        today = _dt.datetime.fromtimestamp(now, tz=_dt.timezone.utc).date()
        threshold = int(self.cfg.threshold_years)
        latest_birth = _years_before(today, threshold).isoformat()

        try:
            # Upper bound covers both plain dates and full timestamps on the cutoff day.
            children = self.store.list_minor_children(born_on_or_before=latest_birth + "T23:59:59Z", require_consent=self.cfg.require_parental_consent)
        except Exception as e:  # noqa: BLE001
            result.fatal_error = f"{type(e).__name__}: {e}"[:200]
            self.logger.error(f"Age-out scan failed: {result.fatal_error}")
            return result

        for child in children:
            cid = str(child["id"])
            try:
                age = age_on(str(child["birth_date"]), today)
                if age < threshold:
                    continue
                result.candidate_count += 1
                if not self.store.transition_child_to_standard(child_id=cid, now_iso=now_iso):
                    result.already_handled += 1
                    continue
            except Exception as e:  # noqa: BLE001
                result.errors.append(RecordError(record_id=cid, error_message=f"{type(e).__name__}: {e}"[:200]))
                continue
            result.processed_count += 1
            self._after_transition(child, age=age, now_iso=now_iso)

        if result.processed_count or result.errors:
            self.logger.info(f"Age-out: {result.processed_count} transitioned, {len(result.errors)} errors")
        return result

    def _after_transition(self, child: Dict[str, Any], *, age: int, now_iso: str) -> None:
        self.invalidator.after_write(cache_tags_for([CHILD_ACCOUNTS.name, PRIVACY_SETTINGS.name]))
        self.audit.record_action(
            action=AuditAction.COPPA_AGE_OUT,
            resource_type="child_account",
            resource_id=str(child["id"]),
            metadata={"birth_date": str(child["birth_date"]), "transition_date": now_iso, "age": int(age)},
        )
        if self.notifier is None:
            return
        try:
            self.notifier.age_out(child_id=str(child["id"]), parent_id=str(child["parent_id"]), age=int(age))
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Age-out notification failed for {child['id']}: {e}")
