from __future__ import annotations

import calendar
import time
from typing import Optional

ISO_FMT = "%Y-%m-%dT%H:%M:%SZ"
DAY_SECONDS = 86400


def iso_from_epoch(ts: float, *, millis: bool = False) -> str:
    """UTC ISO-8601 with a trailing Z. `millis` keeps sub-second ordering for audit rows."""
    base = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(float(ts)))
    if millis:
        ms = int(round((float(ts) - int(ts)) * 1000.0))
        if ms >= 1000:
            return iso_from_epoch(float(int(ts)) + 1.0, millis=True)
        return f"{base}.{ms:03d}Z"
    return base + "Z"


def epoch_from_iso(value: str) -> float:
    """
    Parse the ISO forms written by this package (with or without milliseconds)
    and plain dates (YYYY-MM-DD, midnight UTC).
    """
    s = str(value or "").strip()
    if not s:
        raise ValueError("empty timestamp")
    if len(s) == 10:
        return float(calendar.timegm(time.strptime(s, "%Y-%m-%d")))
    frac = 0.0
    if s.endswith("Z"):
        s = s[:-1]
    elif s.endswith("+00:00"):
        s = s[:-6]
    if "." in s:
        s, _, tail = s.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        if digits:
            frac = float("0." + digits)
    return float(calendar.timegm(time.strptime(s, "%Y-%m-%dT%H:%M:%S"))) + frac


def date_from_epoch(ts: float) -> str:
    return time.strftime("%Y-%m-%d", time.gmtime(float(ts)))


def parse_optional_iso(value: Optional[str]) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    return epoch_from_iso(str(value))
