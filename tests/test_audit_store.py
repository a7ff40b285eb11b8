from __future__ import annotations

import csv
import io
import json
import sqlite3

from governance.core.audit.export import CSV_COLUMNS, csv_filename, default_window
from governance.core.audit.models import AuditAction, AuditEvent, AuditFilters
from governance.core.audit.store import AuditLogStore
from governance.core.clock import epoch_from_iso, iso_from_epoch
from governance.core.events import EventLogger

from .helpers.fakes import FakeClock, QuietLogger


class _BrokenAuditStore(AuditLogStore):
    broken = False

    def _conn(self) -> sqlite3.Connection:
        if self.broken:
            raise sqlite3.OperationalError("database is locked")
        return super()._conn()


def test_record_then_query_returns_event_once_with_metadata_intact(audit_store):
    meta = {"b": 1, "a": [1, "x", None], "nested": {"k": "v", "ü": "é"}, "note": "line1\nline2"}
    ack = audit_store.record_action(action=AuditAction.MEMBER_UPDATED, resource_type="member", resource_id="m-1", actor_id="u-1", metadata=meta)
    assert ack.ok is True

    events = audit_store.query(AuditFilters(actor_id="u-1"))
    assert len(events) == 1
    ev = events[0]
    assert ev.id == ack.event_id
    assert ev.metadata == meta
    assert ev.resource_id == "m-1"
    assert audit_store.get(ack.event_id) == ev


def test_public_layout_uses_external_field_names(audit_store):
    audit_store.record_action(action=AuditAction.PAYMENT_CREATED, resource_type="payment", actor_id="u-1")
    pub = audit_store.query()[0].to_public()
    assert set(["id", "actorId", "action", "resourceType", "resourceId", "metadata", "occurredAt"]).issubset(pub.keys())
    assert pub["action"] == "payment.created"


def test_query_orders_newest_first_and_keeps_insertion_order_on_ties(audit_store, clock):
    a = audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event", resource_id="1").event_id
    b = audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event", resource_id="2").event_id
    clock.advance(5)
    c = audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event", resource_id="3").event_id

    assert [e.id for e in audit_store.query()] == [c, b, a]


def test_filters_window_and_pagination(audit_store, clock):
    for i in range(5):
        audit_store.record_action(action=AuditAction.EVENT_UPDATED, resource_type="event", resource_id=str(i), actor_id="u-1")
        clock.advance(1)
    audit_store.record_action(action=AuditAction.PAYMENT_CREATED, resource_type="payment", actor_id="u-2")

    assert audit_store.count(AuditFilters(actor_id="u-1")) == 5
    assert audit_store.count(AuditFilters(action="payment.created")) == 1
    page = audit_store.query(AuditFilters(resource_type="event"), limit=2, offset=1)
    assert [e.resource_id for e in page] == ["3", "2"]
    since = clock.time() - 2.5
    assert {e.resource_id for e in audit_store.query(since=since)} == {"3", "4", None}


def test_missing_required_metadata_is_rejected_and_reported(audit_store, tmp_path):
    ack = audit_store.record_action(action=AuditAction.DATA_EXPORT_COMPLETED, resource_type="data_subject_request", metadata={"request_id": "r1"})
    assert ack.ok is False
    assert "categories" in ack.error
    assert audit_store.count() == 0
    events = EventLogger(path=str(tmp_path / "logs" / "events.jsonl")).tail(5)
    assert events and events[-1]["event"] == "audit.write_failed"


def test_unserializable_metadata_never_raises(audit_store):
    ack = audit_store.record_action(action=AuditAction.USER_UPDATED, resource_type="user", metadata={"when": object()})
    assert ack.ok is False
    assert audit_store.count() == 0


def test_store_failure_is_retried_then_reported_without_raising(tmp_path):
    logger = QuietLogger()
    slept = []
    store = _BrokenAuditStore(
        path=str(tmp_path / "audit.sqlite"),
        event_logger=EventLogger(path=str(tmp_path / "events.jsonl")),
        logger=logger,
        retries=2,
        retry_backoff_seconds=0.01,
        time_fn=FakeClock().time,
        sleep_fn=slept.append,
    )
    store.broken = True

    ack = store.record_action(action=AuditAction.MEMBER_CREATED, resource_type="member", resource_id="m-1")

    assert ack.ok is False
    assert ack.attempts == 3
    assert slept == [0.01, 0.02]
    assert logger.messages("warning")
    assert EventLogger(path=str(tmp_path / "events.jsonl")).tail(1)[0]["details"]["attempts"] == 3


def test_occurred_at_keeps_milliseconds(audit_store, clock):
    clock.advance(0.25)
    audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event")
    ev = audit_store.query()[0]
    assert ev.occurred_at.endswith(".250Z")
    assert abs(epoch_from_iso(ev.occurred_at) - clock.time()) < 0.001


def test_record_accepts_prebuilt_event(audit_store, clock):
    ev = AuditEvent(action=AuditAction.CONSENT_GRANTED, resource_type="consent", actorId="u-9", occurredAt=iso_from_epoch(clock.time(), millis=True))
    assert audit_store.record(ev).ok is True
    assert audit_store.query(AuditFilters(actor_id="u-9"))[0].id == ev.id


def test_csv_export_quotes_fields_and_round_trips_metadata(audit_store):
    meta = {"path": 'a,b "quoted"', "multi": "x\ny"}
    audit_store.record_action(action=AuditAction.ADMIN_ACCESS, resource_type="audit_logs", actor_id="admin, one", metadata=meta)

    text = audit_store.export_csv().decode("utf-8")
    rows = list(csv.reader(io.StringIO(text)))
    assert tuple(rows[0]) == CSV_COLUMNS
    assert rows[1][0] == "admin, one"
    assert rows[1][1] == "admin.access"
    assert json.loads(rows[1][5]) == meta
    assert '"admin, one"' in text


def test_csv_filename_and_default_window(clock):
    since, until = default_window(clock.time(), days=30)
    assert until - since == 30 * 86400
    assert csv_filename(since, until) == "audit-logs-2025-05-16-to-2025-06-15.csv"


def test_archive_moves_rows_out_of_the_live_table(audit_store, clock):
    old = audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event").event_id
    clock.days(10)
    new = audit_store.record_action(action=AuditAction.EVENT_CREATED, resource_type="event").event_id

    moved = audit_store.archive_older_than(cutoff_iso=iso_from_epoch(clock.time() - 5 * 86400), now_iso=iso_from_epoch(clock.time()))

    assert moved == 1
    assert audit_store.get(old) is None
    assert audit_store.get(new) is not None
    assert audit_store.archived_count() == 1
    assert audit_store.apply_retention(category="audit_logs", record_id=old, action="archive", now_iso="x") is False


def test_statistics_break_down_by_action_and_resource(audit_store, clock):
    audit_store.record_action(action=AuditAction.MEMBER_UPDATED, resource_type="member", resource_id="m-1", actor_id="u-1")
    audit_store.record_action(action=AuditAction.MEMBER_UPDATED, resource_type="member", resource_id="m-2", actor_id="u-2")
    audit_store.record_action(action=AuditAction.CONSENT_GRANTED, resource_type="consent", actor_id="u-1")
    audit_store.record_action(action=AuditAction.RETENTION_PURGE, resource_type="retention_policy")
    clock.advance(3600)
    audit_store.record_action(action=AuditAction.ADMIN_ACCESS, resource_type="audit_logs", actor_id="admin-1")

    stats = audit_store.statistics().to_dict()
    assert stats["totalEvents"] == 5
    assert stats["uniqueUsers"] == 3
    assert stats["actionBreakdown"] == {"admin.access": 1, "consent.granted": 1, "member.updated": 2, "retention.purge": 1}
    assert stats["resourceBreakdown"] == {"audit_logs": 1, "consent": 1, "member": 2, "retention_policy": 1}

    earlier = audit_store.statistics(until=clock.time() - 60)
    assert earlier.total_events == 4
    assert earlier.unique_actors == 2
    assert audit_store.statistics(since=clock.time() + 1).to_dict() == {"totalEvents": 0, "uniqueUsers": 0, "actionBreakdown": {}, "resourceBreakdown": {}}
