from __future__ import annotations

import json

import pytest

from governance.core.audit.models import AuditFilters
from governance.core.clock import iso_from_epoch
from governance.core.privacy.models import DataSubjectRequest, RequestKind
from governance.core.retention.engine import RetentionEngine, build_targets
from governance.core.retention.models import RetentionAction, RetentionConfigFile, RetentionPolicy, default_retention_config_dict

from .helpers.fakes import FlakyTarget, QuietLogger, RecordingNotifier


def _days_ago(clock, n: float) -> str:
    return iso_from_epoch(clock.time() - n * 86400)


def _engine(governed_store, audit_store, clock, policies, *, targets=None, notifier=None):
    return RetentionEngine(
        policies=policies,
        targets=targets or build_targets(store=governed_store, audit=audit_store),
        audit=audit_store,
        logger=QuietLogger(),
        notifier=notifier,
        time_fn=clock.time,
    )


RSVP_POLICY = RetentionPolicy(name="event_registrations", data_category="event_rsvps", max_age_days=730, action=RetentionAction.PURGE)


def test_purge_removes_only_expired_rows_and_second_run_is_a_no_op(governed_store, audit_store, clock):
    governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=_days_ago(clock, 800))
    governed_store.add_rsvp(user_id="u1", event_id="e2", created_at=_days_ago(clock, 10))
    engine = _engine(governed_store, audit_store, clock, [RSVP_POLICY])

    first = engine.run_all()
    second = engine.run_all()

    assert first.success is True
    assert first.results[0].processed_count == 1
    assert second.results[0].candidate_count == 0
    assert second.results[0].processed_count == 0
    assert [r["event_id"] for r in governed_store.rows_for_subject("event_rsvps", "u1")] == ["e2"]
    events = audit_store.query(AuditFilters(action="retention.purge"))
    assert len(events) == 2
    assert sorted(e.metadata["records_processed"] for e in events) == [0, 1]
    assert events[0].metadata["policy"] == "event_registrations"
    assert events[0].metadata["cutoff_date"] == _days_ago(clock, 730)


def test_anonymize_expired_members_once(governed_store, audit_store, clock):
    governed_store.upsert_member(user_id="old", email="old@example.org", first_name="Old", membership_status="expired", membership_expires_at=_days_ago(clock, 400))
    governed_store.upsert_member(user_id="recent", email="r@example.org", membership_status="expired", membership_expires_at=_days_ago(clock, 30))
    governed_store.upsert_member(user_id="active", email="a@example.org", membership_status="active", membership_expires_at=_days_ago(clock, 400))
    policy = RetentionPolicy(
        name="inactive_members",
        data_category="members",
        date_field="membership_expires_at",
        max_age_days=365,
        action=RetentionAction.ANONYMIZE,
        condition={"membership_status": "expired"},
    )
    engine = _engine(governed_store, audit_store, clock, [policy])

    r1 = engine.run_all().results[0]
    r2 = engine.run_all().results[0]

    assert r1.processed_count == 1
    assert r2.candidate_count == 0
    assert governed_store.rows_for_subject("members", "old") == []
    assert len(governed_store.rows_for_subject("members", "recent")) == 1
    assert len(governed_store.rows_for_subject("members", "active")) == 1
    assert engine.status()["policies"][0]["records_to_process"] == 0


def test_anonymized_member_keeps_row_without_personal_fields(governed_store, audit_store, clock):
    rid = governed_store.upsert_member(user_id="old", email="old@example.org", phone="555", membership_status="expired", membership_expires_at=_days_ago(clock, 400))
    policy = RetentionPolicy(name="m", data_category="members", date_field="membership_expires_at", max_age_days=365, action=RetentionAction.ANONYMIZE)
    _engine(governed_store, audit_store, clock, [policy]).run_all()

    row = governed_store.get_record("members", rid)
    assert row["user_id"].startswith("ANON_")
    assert row["email"].endswith("@anonymized.local")
    assert row["phone"] is None
    assert row["anonymized_at"] == iso_from_epoch(clock.time())


def test_archive_copies_then_removes(governed_store, audit_store, clock):
    rid = governed_store.add_volunteer_signup(user_id="u1", event_id="e1", role="usher", created_at=_days_ago(clock, 1200))
    policy = RetentionPolicy(name="volunteer_records", data_category="volunteer_signups", max_age_days=1095, action=RetentionAction.ARCHIVE)
    res = _engine(governed_store, audit_store, clock, [policy]).run_all()

    assert res.results[0].processed_count == 1
    assert governed_store.get_record("volunteer_signups", rid) is None
    archived = governed_store.archived("volunteer_signups")
    assert len(archived) == 1
    assert json.loads(archived[0]["record_json"])["role"] == "usher"
    assert audit_store.count(AuditFilters(action="retention.archive")) == 1


def test_record_errors_are_collected_and_the_run_continues(governed_store, audit_store, clock):
    ids = [governed_store.add_rsvp(user_id="u1", event_id=f"e{i}", created_at=_days_ago(clock, 900)) for i in range(3)]
    notifier = RecordingNotifier()
    targets = build_targets(store=governed_store, audit=audit_store)
    targets["event_rsvps"] = FlakyTarget(governed_store, fail_ids={ids[1]})
    engine = _engine(governed_store, audit_store, clock, [RSVP_POLICY], targets=targets, notifier=notifier)

    run = engine.run_all()

    r = run.results[0]
    assert r.candidate_count == 3
    assert r.processed_count == 2
    assert [e.record_id for e in r.errors] == [ids[1]]
    assert r.processed_count + len(r.errors) <= r.candidate_count
    assert run.error_total == 1
    assert len(notifier.calls) == 1
    assert audit_store.query(AuditFilters(action="retention.purge"))[0].metadata["errors"] == 1


def test_candidate_selection_failure_is_fatal_to_that_policy_only(governed_store, audit_store, clock):
    governed_store.add_volunteer_signup(user_id="u1", event_id="e1", created_at=_days_ago(clock, 1200))
    targets = build_targets(store=governed_store, audit=audit_store)
    targets["event_rsvps"] = FlakyTarget(governed_store, fail_select=True)
    archive = RetentionPolicy(name="volunteer_records", data_category="volunteer_signups", max_age_days=1095, action=RetentionAction.ARCHIVE)
    engine = _engine(governed_store, audit_store, clock, [RSVP_POLICY, archive], targets=targets)

    run = engine.run_all()

    assert run.success is False
    assert "OperationalError" in run.results[0].fatal_error
    assert run.results[1].ok is True
    assert run.results[1].processed_count == 1
    purge_event = audit_store.query(AuditFilters(action="retention.purge"))[0]
    assert purge_event.metadata["fatal_error"] == run.results[0].fatal_error


def test_record_already_gone_counts_as_already_handled(governed_store, audit_store, clock):
    governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=_days_ago(clock, 900))
    targets = build_targets(store=governed_store, audit=audit_store)
    targets["event_rsvps"] = FlakyTarget(governed_store, stale_ids=["0" * 32])
    run = _engine(governed_store, audit_store, clock, [RSVP_POLICY], targets=targets).run_all()

    r = run.results[0]
    assert r.candidate_count == 2
    assert r.processed_count == 1
    assert r.already_handled == 1
    assert r.errors == []


def test_large_backlog_is_processed_in_batches(governed_store, audit_store, clock):
    for i in range(7):
        governed_store.add_rsvp(user_id="u1", event_id=f"e{i}", created_at=_days_ago(clock, 900))
    policy = RSVP_POLICY.model_copy(update={"batch_size": 2})
    r = _engine(governed_store, audit_store, clock, [policy]).run_all().results[0]
    assert r.processed_count == 7
    assert governed_store.count_for_subject("event_rsvps", "u1") == 0


def test_audit_event_is_recorded_even_with_nothing_to_do(governed_store, audit_store, clock):
    _engine(governed_store, audit_store, clock, [RSVP_POLICY]).run_all()
    ev = audit_store.query(AuditFilters(action="retention.purge"))
    assert len(ev) == 1
    assert ev[0].metadata["records_processed"] == 0
    assert ev[0].resource_type == "event_rsvps"


def test_temp_cleanup_runs_only_ephemeral_policies(governed_store, audit_store, clock):
    cfg = RetentionConfigFile.model_validate(default_retention_config_dict())
    governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=_days_ago(clock, 900))
    req, _ = governed_store.create_request(DataSubjectRequest(subject_id="u1", kind=RequestKind.EXPORT, created_at=_days_ago(clock, 10)))
    governed_store.claim_request(request_id=req.id)
    governed_store.complete_request(request_id=req.id, completed_at=_days_ago(clock, 10), expires_at=_days_ago(clock, 3), payload={"data": {}})
    engine = _engine(governed_store, audit_store, clock, cfg.policies)

    run = engine.cleanup_temporary_data()

    assert [r.policy_name for r in run.results] == ["expired_exports"]
    assert run.results[0].processed_count == 1
    assert governed_store.get_request(req.id) is None
    assert governed_store.count_for_subject("event_rsvps", "u1") == 1


def test_status_and_next_run(governed_store, audit_store, clock):
    governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=_days_ago(clock, 900))
    governed_store.add_rsvp(user_id="u1", event_id="e2", created_at=_days_ago(clock, 1))
    engine = _engine(governed_store, audit_store, clock, [RSVP_POLICY])

    st = engine.status()

    p = st["policies"][0]
    assert p["total_records"] == 2
    assert p["records_to_process"] == 1
    assert st["next_run"] == "2025-06-16T02:00:00Z"


def test_unknown_category_without_target_is_rejected(governed_store, audit_store, clock):
    policy = RetentionPolicy(name="x", data_category="nope", max_age_days=1, action=RetentionAction.PURGE)
    with pytest.raises(ValueError):
        _engine(governed_store, audit_store, clock, [policy])


def test_config_rejects_transition_and_duplicate_names():
    base = {"name": "a", "data_category": "event_rsvps", "max_age_days": 1, "action": "purge"}
    with pytest.raises(ValueError):
        RetentionConfigFile.model_validate({"policies": [base, dict(base)]})
    with pytest.raises(ValueError):
        RetentionConfigFile.model_validate({"policies": [dict(base, action="transition")]})


def test_notifier_failure_does_not_fail_the_run(governed_store, audit_store, clock):
    ids = [governed_store.add_rsvp(user_id="u1", event_id="e1", created_at=_days_ago(clock, 900))]
    targets = build_targets(store=governed_store, audit=audit_store)
    targets["event_rsvps"] = FlakyTarget(governed_store, fail_ids=set(ids))
    run = _engine(governed_store, audit_store, clock, [RSVP_POLICY], targets=targets, notifier=RecordingNotifier(fail=True)).run_all()
    assert run.success is True
    assert run.error_total == 1
