from __future__ import annotations

from governance.core.audit.models import AuditFilters
from governance.core.privacy.models import RequestKind

from .helpers.web import auth


def test_export_then_download(client, services, clock):
    services.store.upsert_member(user_id="member-1", email="m1@example.org", first_name="Mo")
    r = client.post("/v1/privacy/export", headers=auth("member-key"))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["already_pending"] is False
    rid = body["request_id"]

    latest = client.get("/v1/privacy/export", headers=auth("member-key")).json()["request"]
    assert latest["id"] == rid
    assert latest["status"] == "completed"
    assert "result_payload" not in latest
    assert "resultPayload" not in latest
    assert latest["subjectId"] == "member-1"
    assert latest["createdAt"] == "2025-06-15T12:00:00Z"
    assert latest["expiresAt"] == "2025-06-22T12:00:00Z"
    assert "subject_id" not in latest

    r = client.get(f"/v1/privacy/export/{rid}/download", headers=auth("member-key"))
    assert r.status_code == 200
    assert r.headers["content-disposition"] == 'attachment; filename="data-export-member-1-2025-06-15.json"'
    data = r.json()
    assert data["user_id"] == "member-1"
    assert data["data"]["profile"]["email"] == "m1@example.org"

    clock.days(8)
    r = client.get(f"/v1/privacy/export/{rid}/download", headers=auth("member-key"))
    assert r.status_code == 410
    assert r.json()["code"] == "export_expired"


def test_download_of_someone_elses_export_is_not_found(client):
    rid = client.post("/v1/privacy/export", headers=auth("member-key")).json()["request_id"]
    assert client.get(f"/v1/privacy/export/{rid}/download", headers=auth("other-key")).status_code == 404
    assert client.get("/v1/privacy/export/does-not-exist/download", headers=auth("member-key")).status_code == 404
    assert client.get(f"/v1/privacy/export/{rid}/download").status_code == 401


def test_pending_export_is_accepted_not_ready(client, services):
    req, _ = services.dsar.create(subject_id="member-1", kind=RequestKind.EXPORT)
    r = client.get(f"/v1/privacy/export/{req.id}/download", headers=auth("member-key"))
    assert r.status_code == 202
    assert r.json()["status"] == "pending"

    # A second create while one is pending is coalesced.
    r = client.post("/v1/privacy/export", headers=auth("member-key"))
    assert r.json()["request_id"] == req.id
    assert r.json()["already_pending"] is True


def test_export_purged_by_cleanup_is_not_found(client, services, clock):
    rid = client.post("/v1/privacy/export", headers=auth("member-key")).json()["request_id"]
    clock.days(8)
    services.retention.cleanup_temporary_data()
    assert client.get(f"/v1/privacy/export/{rid}/download", headers=auth("member-key")).status_code == 404


def test_deletion_is_limited_to_one_per_day(client, services):
    services.store.upsert_member(user_id="member-1", email="m1@example.org")
    r = client.post("/v1/privacy/delete", headers=auth("member-key"))
    assert r.status_code == 200
    r = client.post("/v1/privacy/delete", headers=auth("member-key"))
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "86400"
    assert r.json()["code"] == "rate_limited"

    completed = services.audit.query(AuditFilters(action="data.deletion.completed"))
    assert len(completed) == 1


def test_deletion_verification_is_admin_only(client, services):
    services.store.upsert_member(user_id="member-1", email="m1@example.org")
    r = client.get("/v1/privacy/delete/verify", params={"subject_id": "member-1"}, headers=auth("admin-key"))
    assert r.json() == {"subject_id": "member-1", "is_deleted": False, "remaining_data": ["members"]}

    client.post("/v1/privacy/delete", headers=auth("member-key"))
    r = client.get("/v1/privacy/delete/verify", params={"subject_id": "member-1"}, headers=auth("admin-key"))
    assert r.status_code == 200
    assert r.json()["is_deleted"] is True

    r = client.get("/v1/privacy/delete/verify", params={"subject_id": "member-1"}, headers=auth("board-key"))
    assert r.status_code == 403
    assert r.json()["code"] == "permission_denied"


def test_unsubscribe_endpoint(client, services):
    services.store.upsert_communication_preferences(user_id="u9")
    token = services.tokens.issue("u9", "u9@example.org")

    r = client.post("/v1/unsubscribe", json={"token": token, "category": "newsletters"})
    assert r.status_code == 400
    r = client.post("/v1/unsubscribe", json={"token": "forged.token"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_token"
    assert services.store.get_communication_preferences("u9")["email_enabled"] == 1

    r = client.post("/v1/unsubscribe", json={"token": token, "category": "events"})
    assert r.status_code == 200
    assert r.json() == {"success": True, "subject_id": "u9", "category": "events", "already_applied": False}
    assert services.store.get_communication_preferences("u9")["events_enabled"] == 0


def test_unsubscribe_without_signing_key_is_unavailable(client, services):
    services.unsubscribe = None
    r = client.post("/v1/unsubscribe", json={"token": "a.b"})
    assert r.status_code == 503
    assert r.json()["code"] == "dependency_unavailable"


def test_oversized_body_rejected(client):
    r = client.post("/v1/unsubscribe", content=b"x" * 70_000, headers={"Content-Type": "application/json"})
    assert r.status_code == 413


def test_unsubscribe_link_for_a_replaced_address_is_refused(client, services):
    services.store.upsert_member(user_id="u9", email="old@example.org")
    services.store.upsert_communication_preferences(user_id="u9")
    stale = services.tokens.issue("u9", "old@example.org")
    services.store.upsert_member(user_id="u9", email="new@example.org")

    r = client.post("/v1/unsubscribe", json={"token": stale})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_token"
    assert services.store.get_communication_preferences("u9")["email_enabled"] == 1

    fresh = services.tokens.issue("u9", "New@Example.org")
    assert client.post("/v1/unsubscribe", json={"token": fresh}).status_code == 200


def test_consent_check(client, services, clock):
    services.store.add_consent(user_id="member-1", consent_type="terms", granted=True)
    services.store.add_consent(user_id="member-1", consent_type="photos", granted=True)
    clock.advance(60)
    services.store.add_consent(user_id="member-1", consent_type="photos", granted=False)

    r = client.get("/v1/privacy/consent/check", params=[("types", "terms"), ("types", "photos")], headers=auth("member-key"))
    assert r.status_code == 200
    assert r.json() == {"hasAllConsents": False, "missingConsents": ["photos"], "consents": {"photos": False, "terms": True}}

    r = client.get("/v1/privacy/consent/check", params={"types": "terms"}, headers=auth("other-key"))
    assert r.json()["missingConsents"] == ["terms"]

    assert client.get("/v1/privacy/consent/check", headers=auth("member-key")).status_code == 400
    assert client.get("/v1/privacy/consent/check", params={"types": "terms"}).status_code == 401
