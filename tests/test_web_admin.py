from __future__ import annotations

import os

from governance.core.audit.models import AuditAction, AuditFilters
from governance.core.security_events import SecurityAuditLogger

from .helpers.web import auth


def _seed(services, n: int = 3) -> None:
    for i in range(n):
        services.audit.record_action(
            action=AuditAction.UNSUBSCRIBE_REQUEST,
            resource_type="communication_preferences",
            actor_id=f"user-{i}",
            resource_id=f"user-{i}",
            metadata={"category": "events"},
        )


def test_audit_logs_require_authentication(client):
    r = client.get("/v1/admin/audit-logs")
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"
    assert client.get("/v1/admin/audit-logs", headers=auth("not-a-key")).status_code == 401


def test_member_is_refused_and_the_attempt_is_audited(client, services):
    r = client.get("/v1/admin/audit-logs", headers=auth("member-key"))
    assert r.status_code == 403
    assert r.json()["code"] == "admin_required"
    events = services.audit.query(AuditFilters(action="admin.access"))
    assert len(events) == 1
    assert events[0].actor_id == "member-1"
    assert events[0].metadata == {"unauthorized": True, "path": "/v1/admin/audit-logs"}


def test_admin_and_board_can_query_with_pagination(client, services):
    _seed(services, 3)
    r = client.get("/v1/admin/audit-logs", params={"limit": 2}, headers=auth("admin-key"))
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"] == {"limit": 2, "offset": 0, "returned": 2, "total": 3}
    assert [e["actorId"] for e in body["logs"]] == ["user-2", "user-1"]
    assert {"id", "actorId", "action", "resourceType", "resourceId", "metadata", "occurredAt"} <= set(body["logs"][0])
    assert body["filters"]["end_date"] == "2025-06-15T12:00:00Z"
    assert body["filters"]["start_date"] == "2025-05-16T12:00:00Z"

    r = client.get("/v1/admin/audit-logs", params={"user_id": "user-0"}, headers=auth("board-key"))
    assert r.status_code == 200
    assert [e["actorId"] for e in r.json()["logs"]] == ["user-0"]

    access = services.audit.query(AuditFilters(action="admin.access"))
    assert [e.actor_id for e in access] == ["board-1", "admin-1"]


def test_bad_date_range_is_a_validation_error(client):
    r = client.get("/v1/admin/audit-logs", params={"start_date": "2025-06-10T00:00:00Z", "end_date": "2025-06-01T00:00:00Z"}, headers=auth("admin-key"))
    assert r.status_code == 400
    assert client.get("/v1/admin/audit-logs", params={"limit": 0}, headers=auth("admin-key")).status_code == 400


def test_csv_export(client, services):
    _seed(services, 2)
    r = client.get("/v1/admin/audit-logs/export", headers=auth("admin-key"))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert r.headers["content-disposition"] == 'attachment; filename="audit-logs-2025-05-16-to-2025-06-15.csv"'
    lines = r.text.splitlines()
    assert lines[0] == "actorId,action,resourceType,resourceId,occurredAt,metadata"
    assert any(line.startswith("user-1,unsubscribe.request,") for line in lines[1:])
    exported = services.audit.query(AuditFilters(action="admin.export"))
    assert exported[0].metadata["record_count"] == 2


def test_csv_export_refused_for_members(client):
    assert client.get("/v1/admin/audit-logs/export", headers=auth("member-key")).status_code == 403


def test_cache_revalidate(client, services):
    hits = []
    services.cache.get_or_compute("members:list", lambda: hits.append(1) or len(hits), duration_seconds=60, tags=["members"])
    r = client.post("/v1/cache/revalidate", json={"tags": ["members"]}, headers=auth("admin-key"))
    assert r.status_code == 200
    body = r.json()
    assert body["revalidated"] is True
    assert body["tags"] == ["members"]
    assert body["timestamp"] == 1_749_988_800_000
    assert services.cache.get("members:list") == (False, None)
    assert services.audit.query(AuditFilters(action="cache.revalidate"))[0].metadata["tags"] == ["members"]


def test_cache_revalidate_rejects_members_and_bad_bodies(client):
    r = client.post("/v1/cache/revalidate", json={"tags": ["members"]}, headers=auth("member-key"))
    assert r.status_code == 403
    assert r.json()["code"] == "permission_denied"
    assert client.post("/v1/cache/revalidate", json={"tags": "members"}, headers=auth("admin-key")).status_code == 400
    assert client.post("/v1/cache/revalidate", json={}, headers=auth("admin-key")).status_code == 400


def test_rate_limited_response_headers(client):
    codes = [client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key")).status_code for _ in range(11)]
    assert codes[:10] == [200] * 10
    r = client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key"))
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "60"
    assert r.headers["X-RateLimit-Limit"] == "10"
    assert r.headers["X-RateLimit-Remaining"] == "0"


def test_throttled_calls_land_in_the_security_log(client, fs):
    for _ in range(11):
        client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key"))
    rows = SecurityAuditLogger(path=os.path.join(fs.logs_dir, "security.log")).tail(5, event="web.rate_limited")
    assert len(rows) == 1
    assert rows[0]["subject_id"] == "admin-1"
    assert rows[0]["severity"] == "WARN"
    assert rows[0]["details"]["policy"] == "cache_revalidate"


def test_audit_statistics(client, services):
    _seed(services, 3)
    r = client.get("/v1/admin/audit-logs/statistics", headers=auth("board-key"))
    assert r.status_code == 200
    body = r.json()
    assert body["totalEvents"] == 3
    assert body["uniqueUsers"] == 3
    assert body["actionBreakdown"] == {"unsubscribe.request": 3}
    assert body["resourceBreakdown"] == {"communication_preferences": 3}
    assert body["end_date"] == "2025-06-15T12:00:00Z"
    assert services.audit.query(AuditFilters(action="admin.access"))[0].metadata == {"path": "/v1/admin/audit-logs/statistics"}

    assert client.get("/v1/admin/audit-logs/statistics", headers=auth("member-key")).status_code == 403


def test_rate_limit_stats_and_reset(client, services):
    for _ in range(11):
        client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key"))
    assert client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key")).status_code == 429

    stats = client.get("/v1/admin/rate-limits", headers=auth("admin-key")).json()["policies"]
    assert {"policy": "cache_revalidate", "window_seconds": 60, "active_windows": 2} in stats

    r = client.post("/v1/admin/rate-limits/reset", json={"policy": "cache_revalidate", "subject_id": "admin-1"}, headers=auth("admin-key"))
    assert r.status_code == 200
    assert r.json() == {"reset": True, "policy": "cache_revalidate"}
    assert client.post("/v1/cache/revalidate", json={"tags": ["x"]}, headers=auth("admin-key")).status_code == 200

    events = services.audit.query(AuditFilters(resource_type="rate_limits"))
    assert len(events) == 1
    assert events[0].actor_id == "admin-1"
    assert events[0].metadata["cleared"] is True


def test_rate_limit_reset_is_admin_only_and_validated(client):
    body = {"policy": "cache_revalidate", "subject_id": "member-1"}
    assert client.post("/v1/admin/rate-limits/reset", json=body, headers=auth("board-key")).status_code == 403
    assert client.get("/v1/admin/rate-limits", headers=auth("member-key")).status_code == 403
    r = client.post("/v1/admin/rate-limits/reset", json={"policy": "nope", "subject_id": "member-1"}, headers=auth("admin-key"))
    assert r.status_code == 404
    assert client.post("/v1/admin/rate-limits/reset", json={"policy": "cache_revalidate"}, headers=auth("admin-key")).status_code == 400
