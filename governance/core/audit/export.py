from __future__ import annotations

import csv
import io
import json
from typing import Iterable, Iterator, List, Optional, Tuple

from governance.core.audit.models import AuditEvent
from governance.core.clock import DAY_SECONDS, date_from_epoch

CSV_COLUMNS: Tuple[str, ...] = ("actorId", "action", "resourceType", "resourceId", "occurredAt", "metadata")
DEFAULT_WINDOW_DAYS = 30


def default_window(now: float, *, days: int = DEFAULT_WINDOW_DAYS, since: Optional[float] = None, until: Optional[float] = None) -> Tuple[float, float]:
    """Fill in whatever side of the range the caller left open (default: last `days` days)."""
    end = float(until) if until is not None else float(now)
    start = float(since) if since is not None else end - max(1, int(days)) * DAY_SECONDS
    if start > end:
        raise ValueError("start of range is after its end")
    return start, end


def csv_filename(since: float, until: float) -> str:
    return f"audit-logs-{date_from_epoch(since)}-to-{date_from_epoch(until)}.csv"


def event_row(ev: AuditEvent) -> List[str]:
    return [
        ev.actor_id or "",
        ev.action.value,
        ev.resource_type,
        ev.resource_id or "",
        ev.occurred_at,
        json.dumps(ev.metadata, ensure_ascii=False, sort_keys=True),
    ]


def iter_csv(events: Iterable[AuditEvent]) -> Iterator[bytes]:
    """
    Stream rows as UTF-8 CSV. Quoting is csv.QUOTE_MINIMAL: a field containing
    the delimiter, a quote or a newline is wrapped in quotes with quotes doubled.
    """
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\r\n")
    w.writerow(CSV_COLUMNS)
    yield buf.getvalue().encode("utf-8")
    for ev in events:
        buf.seek(0)
        buf.truncate(0)
        w.writerow(event_row(ev))
        yield buf.getvalue().encode("utf-8")


def export_csv(events: Iterable[AuditEvent]) -> bytes:
    return b"".join(iter_csv(events))
