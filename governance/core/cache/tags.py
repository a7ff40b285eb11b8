from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field


class CacheDurations(int, Enum):
    """Entry lifetimes in seconds; the ceiling on staleness after a missed invalidation."""

    REAL_TIME = 30
    DYNAMIC = 120
    ANALYTICS = 300
    AGGREGATE = 600
    TRENDS = 900
    HISTORICAL = 3600


class CacheTags(str, Enum):
    MEMBERS = "members"
    PAYMENTS = "payments"
    EVENTS = "events"
    RSVPS = "rsvps"
    VOLUNTEERS = "volunteers"
    DASHBOARD = "dashboard"


class CacheConfigFile(BaseModel):
    """
    config/cache.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    max_entries: int = Field(default=2048, ge=16, le=1_000_000)
    revalidate_url: Optional[str] = Field(default=None, max_length=500)
    revalidate_timeout_seconds: float = Field(default=3.0, ge=0.1, le=30.0)


def default_cache_config_dict() -> Dict[str, Any]:
    return CacheConfigFile().model_dump()


@dataclass
class _Entry:
    value: Any
    expires_at: float
    tags: Tuple[str, ...]
    generations: Tuple[int, ...]


class TaggedCache:
    """
    Read-through cache keyed by name, indexed by tag.

    `invalidate(tags)` bumps a per-tag generation counter; an entry recorded
    under an older generation is stale and recomputed on its next read.
    Nothing is recomputed eagerly.
    """

    def __init__(self, *, max_entries: int = 2048, time_fn=time.time):
        self.max_entries = max(1, int(max_entries))
        self._time = time_fn
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._generations: Dict[str, int] = {}

    @staticmethod
    def _norm_tags(tags: Iterable[Any]) -> Tuple[str, ...]:
        return tuple(sorted({(t.value if isinstance(t, Enum) else str(t)) for t in tags}))

    def _fresh(self, e: _Entry, now: float) -> bool:
        if now >= e.expires_at:
            return False
        return all(self._generations.get(t, 0) == g for t, g in zip(e.tags, e.generations))

    def get(self, key: str) -> Tuple[bool, Any]:
        now = float(self._time())
        with self._lock:
            e = self._entries.get(key)
            if e is None or not self._fresh(e, now):
                return False, None
            return True, e.value

    def set(self, key: str, value: Any, *, duration_seconds: int, tags: Iterable[Any] = ()) -> None:
        t = self._norm_tags(tags)
        now = float(self._time())
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = _Entry(value=value, expires_at=now + int(duration_seconds), tags=t, generations=tuple(self._generations.get(x, 0) for x in t))

    def get_or_compute(self, key: str, compute: Callable[[], Any], *, duration_seconds: int, tags: Iterable[Any] = ()) -> Any:
        # Compute runs outside the lock; two concurrent misses may both compute.
        hit, value = self.get(key)
        if hit:
            return value
        value = compute()
        self.set(key, value, duration_seconds=duration_seconds, tags=tags)
        return value

    def invalidate(self, tags: Iterable[Any]) -> List[str]:
        """Mark every entry under any of `tags` stale. Unknown tags are a no-op."""
        t = self._norm_tags(tags)
        with self._lock:
            for x in t:
                self._generations[x] = self._generations.get(x, 0) + 1
        return list(t)

    def _evict(self, now: float) -> None:
        stale = [k for k, e in self._entries.items() if not self._fresh(e, now)]
        for k in stale:
            del self._entries[k]
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries.items(), key=lambda kv: kv[1].expires_at)[0]
            del self._entries[oldest]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RemoteRevalidator:
    """Forwards invalidations to a downstream revalidation endpoint. Never raises."""

    def __init__(self, *, url: str, secret: Optional[str] = None, timeout_seconds: float = 3.0, logger: Any = None, session: Optional[requests.Session] = None):
        self.url = str(url)
        self.secret = secret
        self.timeout_seconds = float(timeout_seconds)
        self.logger = logger or logging.getLogger("governance.cache")
        self._session = session or requests.Session()

    def revalidate(self, tags: Iterable[str]) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        try:
            resp = self._session.post(self.url, json={"tags": list(tags)}, headers=headers, timeout=self.timeout_seconds)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            self.logger.warning(f"Cache revalidation request failed: {e}")
            return False


def invalidate_after_write(cache: Optional[TaggedCache], tags: Iterable[Any], logger: Any = None, *, remote: Optional[RemoteRevalidator] = None, event_logger: Any = None) -> bool:
    """
    Call after a governed write has committed. Failure is logged and reported,
    never raised: the write stands and entries go stale within their duration.
    """
    log = logger or logging.getLogger("governance.cache")
    ok = True
    names: List[str] = list(TaggedCache._norm_tags(tags))
    try:
        if cache is not None:
            cache.invalidate(names)
    except Exception as e:  # noqa: BLE001
        ok = False
        log.warning(f"Cache invalidation failed for {names}: {e}")
    if remote is not None and not remote.revalidate(names):
        ok = False
    if not ok and event_logger is not None:
        try:
            event_logger.log("cache", "cache.invalidate_failed", {"tags": names})
        except OSError:
            pass
    return ok


@dataclass
class CacheInvalidator:
    """
    What a governed writer holds to keep cached views honest: the local cache,
    the optional downstream revalidator and the diagnostics channel.
    """

    cache: Optional[TaggedCache] = None
    remote: Optional[RemoteRevalidator] = None
    event_logger: Any = None
    logger: Any = None

    def after_write(self, tags: Iterable[Any]) -> bool:
        names = list(TaggedCache._norm_tags(tags))
        if not names:
            return True
        return invalidate_after_write(self.cache, names, self.logger, remote=self.remote, event_logger=self.event_logger)
