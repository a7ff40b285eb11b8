from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from governance.core.events import redact
from governance.core.errors import (
    ConfigError,
    DependencyUnavailableError,
    GovernanceError,
    NotFoundError,
    ValidationError,
)


@dataclass
class ErrorReporterConfig:
    include_tracebacks: bool = False


class ErrorReporter:
    def __init__(self, *, path: str = os.path.join("logs", "errors.jsonl"), cfg: Optional[ErrorReporterConfig] = None):
        self.path = path
        self.cfg = cfg or ErrorReporterConfig()
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def report_exception(self, exc: BaseException, *, trace_id: str, subsystem: str, context: Optional[Dict[str, Any]] = None) -> GovernanceError:
        ge = normalize_exception(exc, subsystem=subsystem, context=context or {})
        self.write_error(ge, trace_id=trace_id, subsystem=subsystem, internal_exc=exc)
        return ge

    def write_error(self, err: GovernanceError, *, trace_id: str, subsystem: str, internal_exc: Optional[BaseException] = None) -> None:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "subsystem": subsystem,
            "error_code": err.code,
            "severity": err.severity.value,
            "recoverable": bool(err.recoverable),
            "user_message": err.user_message,
            "safe_context": redact(err.context or {}),
        }
        if self.cfg.include_tracebacks and internal_exc is not None:
            entry["internal_context"] = {"traceback": "".join(traceback.format_exception(type(internal_exc), internal_exc, internal_exc.__traceback__, limit=30))}
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def tail(self, n: int = 20) -> list[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
            return [json.loads(x) for x in lines[-max(1, int(n)) :]]
        except (OSError, json.JSONDecodeError):
            return []


def normalize_exception(exc: BaseException, *, subsystem: str, context: Dict[str, Any]) -> GovernanceError:
    # Passthrough
    if isinstance(exc, GovernanceError):
        return exc

    msg = str(exc)
    ctx = dict(context or {})

    if isinstance(exc, (sqlite3.OperationalError, sqlite3.DatabaseError, TimeoutError, ConnectionError)):
        return DependencyUnavailableError(subsystem=subsystem, error=msg[:200], **ctx)
    if isinstance(exc, KeyError):
        return NotFoundError(subsystem=subsystem, **ctx)
    if isinstance(exc, ValueError):
        return ValidationError(error=msg[:200], **ctx)
    if subsystem == "config":
        return ConfigError("Configuration error.", error=msg, **ctx)

    # Generic safe error
    return GovernanceError(code="unknown_error", user_message="Something went wrong.", context=ctx)
