from __future__ import annotations

import pytest
import requests

from governance.core.cache.tags import CacheDurations, CacheInvalidator, CacheTags, RemoteRevalidator, TaggedCache
from governance.core.clock import iso_from_epoch
from governance.core.events import EventLogger
from governance.core.privacy.categories import cache_tags_for
from governance.core.privacy.dsar import DataSubjectRequestWorkflow
from governance.core.privacy.models import RequestKind, RequestStatus
from governance.core.privacy.unsubscribe import UnsubscribeHandler, UnsubscribeTokens
from governance.core.retention.age_out import AgeOutMonitor
from governance.core.retention.engine import RetentionEngine, build_targets
from governance.core.retention.models import RetentionAction, RetentionPolicy

from .helpers.fakes import FakeSession, QuietLogger


class _Views:
    """Cached reads keyed by tag; `fresh(tag)` is True while the cached value still stands."""

    def __init__(self, cache: TaggedCache, tags) -> None:  # noqa: ANN001
        self.cache = cache
        self.tags = [t.value for t in tags]
        for t in self.tags:
            cache.set(f"view:{t}", t, duration_seconds=CacheDurations.HISTORICAL, tags=[t])

    def fresh(self, tag: str) -> bool:
        return self.cache.get(f"view:{tag}")[0]

    def stale(self) -> list:
        return [t for t in self.tags if not self.fresh(t)]


@pytest.fixture
def cache(clock):
    return TaggedCache(time_fn=clock.time)


@pytest.fixture
def views(cache):
    return _Views(cache, list(CacheTags))


@pytest.fixture
def invalidator(cache):
    return CacheInvalidator(cache=cache, logger=QuietLogger())


def test_category_tags():
    assert cache_tags_for(["members"]) == ["dashboard", "members"]
    assert cache_tags_for(["event_rsvps", "payments"]) == ["dashboard", "events", "payments", "rsvps"]
    assert cache_tags_for(["consent_records", "audit_logs", "data_subject_requests"]) == []


def test_deletion_invalidates_every_erased_category(governed_store, audit_store, clock, invalidator, views):
    governed_store.upsert_member(user_id="u1", email="u1@example.org")
    governed_store.add_payment(user_id="u1", amount_cents=500)
    wf = DataSubjectRequestWorkflow(store=governed_store, audit=audit_store, logger=QuietLogger(), invalidator=invalidator, time_fn=clock.time)

    req, _ = wf.create(subject_id="u1", kind=RequestKind.DELETION)
    assert views.stale() == []
    assert wf.process(req.id).status == RequestStatus.COMPLETED

    assert sorted(views.stale()) == ["dashboard", "members", "payments"]
    assert views.fresh("rsvps") and views.fresh("events")


def test_export_leaves_cached_views_alone(governed_store, audit_store, clock, invalidator, views):
    governed_store.upsert_member(user_id="u1", email="u1@example.org")
    wf = DataSubjectRequestWorkflow(store=governed_store, audit=audit_store, logger=QuietLogger(), invalidator=invalidator, time_fn=clock.time)
    req, _ = wf.create(subject_id="u1", kind=RequestKind.EXPORT)
    wf.process(req.id)
    assert views.stale() == []


def test_retention_invalidates_only_when_rows_changed(governed_store, audit_store, clock, invalidator, views):
    governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=iso_from_epoch(clock.time() - 800 * 86400))
    policy = RetentionPolicy(name="event_registrations", data_category="event_rsvps", max_age_days=730, action=RetentionAction.PURGE)
    engine = RetentionEngine(
        policies=[policy],
        targets=build_targets(store=governed_store, audit=audit_store),
        audit=audit_store,
        logger=QuietLogger(),
        invalidator=invalidator,
        time_fn=clock.time,
    )

    assert engine.run_all().results[0].processed_count == 1
    assert sorted(views.stale()) == ["dashboard", "events", "rsvps"]

    fresh = _Views(invalidator.cache, list(CacheTags))
    assert engine.run_all().results[0].processed_count == 0
    assert fresh.stale() == []


def test_age_out_invalidates_member_views(governed_store, audit_store, clock, invalidator, views):
    governed_store.add_child_account(parent_id="p1", birth_date="2012-06-15", child_id="c1")
    monitor = AgeOutMonitor(store=governed_store, audit=audit_store, logger=QuietLogger(), invalidator=invalidator, time_fn=clock.time)

    assert monitor.process_age_outs().processed_count == 1
    assert views.stale() == ["members"]


def test_unsubscribe_invalidates_only_on_change(governed_store, audit_store, clock, invalidator, views):
    governed_store.upsert_communication_preferences(user_id="u1")
    tokens = UnsubscribeTokens(signing_key=b"k" * 32, time_fn=clock.time)
    handler = UnsubscribeHandler(tokens=tokens, store=governed_store, audit=audit_store, logger=QuietLogger(), invalidator=invalidator, time_fn=clock.time)
    tok = tokens.issue("u1", "u1@example.org")

    handler.apply_unsubscribe(tok)
    assert views.stale() == ["members"]

    again = _Views(invalidator.cache, list(CacheTags))
    assert handler.apply_unsubscribe(tok).already_applied is True
    assert again.stale() == []


def test_invalidator_forwards_to_remote_and_reports_failures(tmp_path, cache):
    events = EventLogger(path=str(tmp_path / "events.jsonl"))
    session = FakeSession(exc=requests.ConnectionError("down"))
    remote = RemoteRevalidator(url="http://site.invalid/revalidate", logger=QuietLogger(), session=session)
    inv = CacheInvalidator(cache=cache, remote=remote, event_logger=events, logger=QuietLogger())

    assert inv.after_write([]) is True
    assert session.posts == []
    assert inv.after_write(["members"]) is False
    assert session.posts[0]["json"] == {"tags": ["members"]}
    assert events.tail(1, event="cache.invalidate_failed")[0]["details"]["tags"] == ["members"]


def test_services_wire_the_shared_cache_into_deletion(services):
    cache = services.cache
    cache.set("members:count", 1, duration_seconds=CacheDurations.AGGREGATE, tags=[CacheTags.MEMBERS])
    services.store.upsert_member(user_id="u1", email="u1@example.org")

    req, _ = services.dsar.create(subject_id="u1", kind=RequestKind.DELETION)
    assert services.dsar.process(req.id).status == RequestStatus.COMPLETED
    assert cache.get("members:count") == (False, None)
