from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from governance.core.retention.models import RetentionRunResult


@dataclass(frozen=True)
class TaskOutcome:
    name: str
    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": bool(self.success), "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class MaintenanceResult:
    tasks: List[TaskOutcome]

    @property
    def success(self) -> bool:
        # AND of sub-tasks; each task stays visible in `tasks`.
        return all(t.success for t in self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "tasks": {t.name: t.to_dict() for t in self.tasks}}


def _run_task(name: str, fn: Callable[[], RetentionRunResult], logger: Any) -> TaskOutcome:
    try:
        run = fn()
    except Exception as e:  # noqa: BLE001
        logger.error(f"Maintenance task {name} failed: {e}")
        return TaskOutcome(name=name, success=False, message=f"{name} failed: {type(e).__name__}: {e}"[:300])
    return TaskOutcome(name=name, success=bool(run.success), message=run.summary(), details=run.to_dict())


def run_daily_maintenance(engine: Any, *, logger: Any = None, age_out: Optional[Any] = None) -> MaintenanceResult:
    """
    Runs retention and temporary-data cleanup (and age-out when given) one after
    the other. A failure in one task never prevents the next from running.
    """
    log = logger or logging.getLogger("governance.maintenance")
    tasks = [
        _run_task("data_retention", engine.run_all, log),
        _run_task("temp_cleanup", engine.cleanup_temporary_data, log),
    ]
    if age_out is not None:

        def _age_out() -> RetentionRunResult:
            r = age_out.process_age_outs()
            return RetentionRunResult(success=r.ok, results=[r])

        tasks.append(_run_task("coppa_age_out", _age_out, log))
    result = MaintenanceResult(tasks=tasks)
    log.info("Daily maintenance: " + "; ".join(f"{t.name}: {t.message}" for t in tasks))
    return result
