from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from governance.core.audit.store import AuditLogStore
from governance.core.cache.tags import CacheInvalidator, RemoteRevalidator, TaggedCache
from governance.core.config.manager import ConfigManager, SecretUnavailable
from governance.core.config.models import GovernanceConfig
from governance.core.config.paths import ConfigFsPaths
from governance.core.events import EventLogger
from governance.core.limits.limiter import RateLimiter
from governance.core.limits.store import InMemoryWindowStore, SqliteWindowStore, WindowStore
from governance.core.privacy.categories import SubjectHooksRegistry
from governance.core.privacy.dsar import DataSubjectRequestWorkflow, IdentityProvider
from governance.core.privacy.store import GovernedStore
from governance.core.privacy.unsubscribe import UnsubscribeHandler, UnsubscribeTokens
from governance.core.retention.age_out import AgeOutMonitor, AgeOutNotifier
from governance.core.retention.engine import AdminNotifier, RetentionEngine, build_targets


@dataclass
class Services:
    config: GovernanceConfig
    audit: AuditLogStore
    store: GovernedStore
    retention: RetentionEngine
    age_out: AgeOutMonitor
    dsar: DataSubjectRequestWorkflow
    limiter: RateLimiter
    cache: TaggedCache
    invalidator: CacheInvalidator
    event_logger: EventLogger
    unsubscribe: Optional[UnsubscribeHandler] = None
    tokens: Optional[UnsubscribeTokens] = None


def build_services(
    *,
    config: GovernanceConfig,
    fs: ConfigFsPaths,
    config_manager: Optional[ConfigManager] = None,
    logger: Any = None,
    event_logger: Optional[EventLogger] = None,
    window_store: Optional[WindowStore] = None,
    admin_notifier: Optional[AdminNotifier] = None,
    age_out_notifier: Optional[AgeOutNotifier] = None,
    identity_provider: Optional[IdentityProvider] = None,
    hooks: Optional[SubjectHooksRegistry] = None,
    time_fn=time.time,
) -> Services:
    """Wire stores and engines from a validated config. Secrets come from the config manager."""
    log = logger or logging.getLogger("governance")
    events = event_logger or EventLogger(path=f"{fs.logs_dir}/events.jsonl")
    busy = float(config.app.busy_timeout_seconds)

    audit = AuditLogStore(
        path=fs.audit_db,
        event_logger=events,
        logger=log,
        retries=config.app.audit.write_retries,
        retry_backoff_seconds=config.app.audit.retry_backoff_seconds,
        busy_timeout_seconds=busy,
        time_fn=time_fn,
    )
    store = GovernedStore(db_path=fs.governed_db, logger=log, busy_timeout_seconds=busy, time_fn=time_fn)

    cache = TaggedCache(max_entries=config.cache.max_entries, time_fn=time_fn)
    remote: Optional[RemoteRevalidator] = None
    if config_manager is not None and config.cache.revalidate_url:
        secret = config_manager.get_secret("revalidate_secret") if config_manager.has_secret("revalidate_secret") else None
        remote = RemoteRevalidator(url=config.cache.revalidate_url, secret=secret, timeout_seconds=config.cache.revalidate_timeout_seconds, logger=log)
    # Every governed writer invalidates through this one object.
    invalidator = CacheInvalidator(cache=cache, remote=remote, event_logger=events, logger=log)

    retention = RetentionEngine(
        policies=config.retention.policies,
        targets=build_targets(store=store, audit=audit),
        audit=audit,
        logger=log,
        notifier=admin_notifier,
        notify_admins_on_errors=config.retention.notify_admins_on_errors,
        next_run_hour_utc=config.retention.next_run_hour_utc,
        invalidator=invalidator,
        time_fn=time_fn,
    )
    age_out = AgeOutMonitor(
        store=store, audit=audit, cfg=config.retention.age_out, notifier=age_out_notifier, logger=log, invalidator=invalidator, time_fn=time_fn
    )
    dsar = DataSubjectRequestWorkflow(
        store=store,
        audit=audit,
        cfg=config.privacy,
        hooks=hooks,
        identity_provider=identity_provider,
        logger=log,
        invalidator=invalidator,
        time_fn=time_fn,
    )

    if window_store is None:
        if config.limits.backend == "sqlite":
            window_store = SqliteWindowStore(path=fs.limits_db, busy_timeout_seconds=config.limits.busy_timeout_seconds)
        else:
            window_store = InMemoryWindowStore()
    limiter = RateLimiter.from_config(config.limits, store=window_store, logger=log, time_fn=time_fn)

    services = Services(
        config=config,
        audit=audit,
        store=store,
        retention=retention,
        age_out=age_out,
        dsar=dsar,
        limiter=limiter,
        cache=cache,
        invalidator=invalidator,
        event_logger=events,
    )

    if config_manager is not None:
        try:
            key = config_manager.get_secret("unsubscribe_signing_key")
            services.tokens = UnsubscribeTokens(signing_key=key.encode("utf-8"), ttl_days=config.privacy.unsubscribe_token_ttl_days, time_fn=time_fn)
            services.unsubscribe = UnsubscribeHandler(
                tokens=services.tokens, store=store, audit=audit, logger=log, invalidator=invalidator, time_fn=time_fn
            )
        except SecretUnavailable:
            log.warning("Unsubscribe signing key not configured; unsubscribe links are disabled.")
    return services
