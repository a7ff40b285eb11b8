from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from governance.core.limits.store import InMemoryWindowStore, WindowStore


class RateLimitPolicy(BaseModel):
    """
    Fixed window: at most `per_subject` requests per subject and `per_source`
    requests per source address within `window_seconds`.
    """

    model_config = ConfigDict(extra="forbid")

    window_seconds: int = Field(default=60, ge=1, le=7 * 86400)
    per_subject: int = Field(ge=1, le=1_000_000)
    per_source: int = Field(ge=2, le=1_000_000)

    @model_validator(mode="after")
    def _source_above_subject(self) -> "RateLimitPolicy":
        # A shared address (NAT, proxy) must not be starved at single-subject rates.
        if self.per_source <= self.per_subject:
            raise ValueError("per_source must be strictly greater than per_subject")
        return self


class LimitsConfigFile(BaseModel):
    """
    config/limits.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    backend: str = Field(default="memory", pattern="^(memory|sqlite)$")
    busy_timeout_seconds: float = Field(default=2.0, ge=0.1, le=30.0)
    policies: Dict[str, RateLimitPolicy] = Field(default_factory=dict)


def _p(window: int, subject: int, source: int) -> RateLimitPolicy:
    return RateLimitPolicy(window_seconds=window, per_subject=subject, per_source=source)


def default_limits_config_dict() -> Dict[str, Any]:
    minute, hour, day = 60, 3600, 86400
    cfg = LimitsConfigFile(
        policies={
            "event_mutation": _p(minute, 5, 10),
            "event_read": _p(minute, 30, 60),
            "rsvp": _p(minute, 10, 20),
            "volunteer": _p(minute, 10, 20),
            "announcements": _p(minute, 5, 10),
            "preferences": _p(minute, 5, 10),
            "unsubscribe": _p(minute, 3, 5),
            "read_operations": _p(minute, 60, 100),
            "data_export": _p(day, 3, 6),
            "data_deletion": _p(day, 1, 3),
            "consent_update": _p(hour, 10, 20),
            "privacy_settings_read": _p(minute, 30, 60),
            "privacy_settings_update": _p(minute, 10, 20),
            "audit_log_access": _p(minute, 20, 40),
            "audit_log_export": _p(hour, 5, 10),
            "cache_revalidate": _p(minute, 10, 20),
        }
    )
    return cfg.model_dump()


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: str = ""
    retry_after_seconds: int = 0
    scope: str = ""
    limit: int = 0
    remaining: int = 0


class RateLimiter:
    """
    Per-subject plus per-source-address limiter for sensitive routes.

    Both counters are incremented on every check; the request is throttled if
    either one is over its ceiling. Counters live in the injected WindowStore.
    """

    def __init__(self, *, policies: Dict[str, RateLimitPolicy], store: Optional[WindowStore] = None, logger: Any = None, time_fn=time.time):
        self.policies = dict(policies)
        self.store: WindowStore = store if store is not None else InMemoryWindowStore()
        self.logger = logger or logging.getLogger("governance.limits")
        self._time = time_fn

    @classmethod
    def from_config(cls, cfg: LimitsConfigFile, *, store: Optional[WindowStore] = None, logger: Any = None, time_fn=time.time) -> "RateLimiter":
        return cls(policies=cfg.policies, store=store, logger=logger, time_fn=time_fn)

    def policy(self, name: str) -> RateLimitPolicy:
        try:
            return self.policies[str(name)]
        except KeyError:
            raise KeyError(f"unknown rate limit policy: {name}") from None

    def _retry_after(self, window_start: float, window_seconds: int, now: float) -> int:
        return max(1, int(math.ceil(window_start + window_seconds - now)))

    def check(self, subject_key: Optional[str], policy_name: str, source_address: Optional[str] = None) -> LimitDecision:
        pol = self.policy(policy_name)
        now = float(self._time())
        throttled: Dict[str, int] = {}
        remaining = pol.per_subject

        if subject_key:
            s = self.store.hit(self._key(policy_name, "subject", subject_key), now=now, window_seconds=pol.window_seconds)
            remaining = max(0, pol.per_subject - s.count)
            if s.count > pol.per_subject:
                throttled["subject"] = self._retry_after(s.window_start, pol.window_seconds, now)
        if source_address:
            a = self.store.hit(self._key(policy_name, "source", source_address), now=now, window_seconds=pol.window_seconds)
            if not subject_key:
                remaining = max(0, pol.per_source - a.count)
            if a.count > pol.per_source:
                throttled["source"] = self._retry_after(a.window_start, pol.window_seconds, now)

        if throttled:
            scope = "subject" if "subject" in throttled else "source"
            return LimitDecision(
                allowed=False,
                reason=f"rate_limited_{scope}",
                retry_after_seconds=max(throttled.values()),
                scope=scope,
                limit=pol.per_subject if scope == "subject" else pol.per_source,
                remaining=0,
            )
        return LimitDecision(allowed=True, reason="ok", scope="ok", limit=pol.per_subject if subject_key else pol.per_source, remaining=remaining)

    def _key(self, policy_name: str, scope: str, identifier: str) -> str:
        return f"{policy_name}:{scope}:{identifier}"

    def reset(self, policy_name: str, *, subject_key: Optional[str] = None, source_address: Optional[str] = None) -> bool:
        """Admin action: clear the counters for one subject and/or address. True if any counter existed."""
        self.policy(policy_name)
        if not subject_key and not source_address:
            raise ValueError("subject_key or source_address required")
        cleared = False
        if subject_key:
            cleared = self.store.reset(self._key(policy_name, "subject", subject_key)) or cleared
        if source_address:
            cleared = self.store.reset(self._key(policy_name, "source", source_address)) or cleared
        if cleared:
            self.logger.info(f"Rate limit counters reset for policy {policy_name}")
        return cleared

    def stats(self) -> List[Dict[str, Any]]:
        """Counters currently held per configured policy (expired windows included until pruned)."""
        held = self.store.stats()
        return [{"policy": name, "window_seconds": p.window_seconds, "active_windows": int(held.get(name, 0))} for name, p in sorted(self.policies.items())]
