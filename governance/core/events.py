from __future__ import annotations

import json
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


REDACTED = "***REDACTED***"

# Keys whose values never reach a diagnostic log.
REDACT_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "key",
        "authorization",
        "cron_secret",
        "signing_key",
        "email",
        "ip_address",
    }
)

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


def redact(obj: Any) -> Any:
    """
    Copy of `obj` safe for operator logs.

    Values under sensitive keys are replaced wholesale; email addresses embedded
    in any other string (error messages, free-text reasons) are masked in place.
    """
    if isinstance(obj, dict):
        return {k: (REDACTED if str(k).lower() in REDACT_KEYS else redact(v)) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    if isinstance(obj, str) and "@" in obj:
        return _EMAIL_RE.sub(REDACTED, obj)
    return obj


@dataclass(frozen=True)
class EventLogger:
    """
    Operational diagnostics as JSONL (one object per line).

    Used for things that must be visible to operators but are not part of the
    compliance trail, e.g. an audit write that could not be persisted.
    """

    path: str = os.path.join("logs", "events.jsonl")
    _lock: threading.Lock = threading.Lock()

    def log(self, trace_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "event": event_type,
            "details": redact(details or {}),
        }
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def tail(self, n: int = 20, *, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Last `n` parseable records, optionally only those of one event type."""
        if not os.path.exists(self.path):
            return []
        out: List[Dict[str, Any]] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event is None or rec.get("event") == event:
                    out.append(rec)
        return out[-max(1, int(n)) :]
