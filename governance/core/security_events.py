from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from governance.core.errors import Severity
from governance.core.events import redact


@dataclass(frozen=True)
class SecurityAuditLogger:
    """
    Request-level security trail for the HTTP surface: authentication failures,
    throttling, rejected bodies and response outcomes.

    This is operator telemetry, separate from the compliance audit log kept by
    AuditLogStore; entries here are never used as evidence of data handling.
    """

    path: str = os.path.join("logs", "security.log")
    _lock: threading.Lock = threading.Lock()

    def log(
        self,
        *,
        trace_id: str,
        severity: Union[Severity, str],
        event: str,
        ip: Optional[str],
        endpoint: str,
        outcome: str,
        subject_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "severity": Severity(severity).value,
            "event": event,
            "subject_id": subject_id,
            "ip": ip,
            "endpoint": endpoint,
            "outcome": outcome,
            "details": redact(details or {}),
        }
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def tail(self, n: int = 50, *, event: Optional[str] = None) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            rows = [json.loads(line) for line in f if line.strip()]
        if event is not None:
            rows = [r for r in rows if r.get("event") == event]
        return rows[-max(1, int(n)) :]
