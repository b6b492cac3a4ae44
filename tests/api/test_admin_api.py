import csv
import io
import uuid
from datetime import datetime

import pytest

from admin.alerts import window_start
from auth.cache_manager import cache_manager
from store.repository import LogRepository


@pytest.fixture
def reset_settings(client, admin_headers):
    yield
    client.post("/api/settings/reset", headers=admin_headers, json={})


# ==================== SETTINGS ====================

def test_settings_defaults_visible_to_viewers(client, viewer_headers):
    body = client.get("/api/settings", headers=viewer_headers).json()
    assert set(body["settings"]) == {"system", "alerts", "ingestion", "security", "performance"}
    assert body["settings"]["performance"]["cache_ttl"] == 300


def test_update_category(client, admin_headers, reset_settings):
    response = client.put("/api/settings", headers=admin_headers,
                          json={"category": "system", "settings": {"retention_days": 14}})
    assert response.status_code == 200, response.text
    assert response.json()["settings"]["retention_days"] == 14

    category = client.get("/api/settings/system", headers=admin_headers).json()
    assert category["settings"]["retention_days"] == 14
    assert category["settings"]["timezone"] == "UTC"


def test_update_rejects_bad_input(client, admin_headers, viewer_headers):
    assert client.put("/api/settings", headers=admin_headers, json={"category": "system"}).status_code == 400
    wrong_type = client.put("/api/settings", headers=admin_headers,
                            json={"category": "system", "settings": {"retention_days": "thirty"}})
    assert wrong_type.status_code == 400
    unknown = client.put("/api/settings", headers=admin_headers,
                         json={"category": "nope", "settings": {"a": 1}})
    assert unknown.status_code == 400
    forbidden = client.put("/api/settings", headers=viewer_headers,
                           json={"category": "system", "settings": {"retention_days": 1}})
    assert forbidden.status_code == 403


def test_unknown_category_is_404(client, viewer_headers):
    assert client.get("/api/settings/nope", headers=viewer_headers).status_code == 404


def test_update_single_key(client, admin_headers, reset_settings):
    response = client.put("/api/settings/key/security.jwt_expiry", headers=admin_headers, json={"value": "12h"})
    assert response.status_code == 200, response.text
    assert response.json() == {"success": True, "key": "security.jwt_expiry", "value": "12h"}

    assert client.put("/api/settings/key/security", headers=admin_headers, json={"value": 1}).status_code == 400
    assert client.put("/api/settings/key/security.jwt_expiry", headers=admin_headers, json={}).status_code == 400


def test_export_import_and_reset(client, admin_headers, reset_settings):
    exported = client.get("/api/settings/export", headers=admin_headers).json()
    assert exported["version"] == "1.0"
    assert exported["settings"]["system"]["retention_days"] == 30

    imported = client.post("/api/settings/import", headers=admin_headers, json={"settings": {
        "system": {"retention_days": 60, "bogus": True},
        "performance": {"cache_ttl": "fast"},
        "unknown": {"x": 1},
    }}).json()
    assert imported["imported"] == 1
    assert set(imported["skipped"]) == {"system.bogus", "performance.cache_ttl", "unknown"}
    assert client.get("/api/settings/system", headers=admin_headers).json()["settings"]["retention_days"] == 60

    reset = client.post("/api/settings/reset", headers=admin_headers, json={"category": "system"}).json()
    assert reset["reset"] == "system"
    assert client.get("/api/settings/system", headers=admin_headers).json()["settings"]["retention_days"] == 30

    assert client.post("/api/settings/reset", headers=admin_headers,
                       json={"category": "nope"}).status_code == 400
    assert client.post("/api/settings/import", headers=admin_headers, json={"settings": {}}).status_code == 400


def test_zero_cache_ttl_disables_settings_cache(client, admin_headers, reset_settings):
    assert client.get("/api/settings", headers=admin_headers).status_code == 200
    assert cache_manager.get("settings:all") is not None

    response = client.put("/api/settings/key/performance.cache_ttl", json={"value": 0}, headers=admin_headers)
    assert response.status_code == 200, response.text
    assert client.get("/api/settings", headers=admin_headers).json()["settings"]["performance"]["cache_ttl"] == 0
    assert cache_manager.get("settings:all") is None


# ==================== AUDIT TRAIL ====================

def test_audit_trail_records_failed_login(client, admin_headers):
    username = f"ghost-{uuid.uuid4().hex[:6]}"
    client.post("/api/auth/login", json={"username": username, "password": "nope"})

    body = client.get("/api/audit-trail", headers=admin_headers,
                      params={"user": username, "action": "login_failed"}).json()
    assert body["pagination"]["total"] == 1
    assert body["entries"][0]["status"] == "failure"

    events = client.get("/api/audit-trail/security-events", headers=admin_headers).json()["events"]
    assert any(e["action"] == "login_failed" and e["severity"] for e in events)

    found = client.post("/api/audit-trail/search", headers=admin_headers, json={"query": username}).json()
    assert found["total"] >= 1


def test_audit_trail_pagination(client, admin_headers):
    body = client.get("/api/audit-trail", headers=admin_headers, params={"page": 1, "limit": 2}).json()
    assert len(body["entries"]) <= 2
    assert body["pagination"]["limit"] == 2
    assert client.get("/api/audit-trail", headers=admin_headers,
                      params={"startDate": "yesterday"}).status_code == 400


def test_audit_export_csv(client, admin_headers):
    response = client.get("/api/audit-trail/export", headers=admin_headers, params={"format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    header = next(csv.reader(io.StringIO(response.text)))
    assert header[:5] == ["id", "created_at", "user_id", "username", "action"]

    assert client.get("/api/audit-trail/export", headers=admin_headers,
                      params={"format": "xml"}).status_code == 400


def test_audit_stats_and_compliance(client, admin_headers):
    stats = client.get("/api/audit-trail/stats", headers=admin_headers).json()["stats"]
    assert stats["totalEntries"] >= 1
    assert 0 <= stats["successRate"] <= 100

    report = client.get("/api/audit-trail/compliance", headers=admin_headers,
                        params={"period": "7d"}).json()["report"]
    assert report["period"] == "7d"
    assert {f["category"] for f in report["findings"]} == {
        "access_control", "user_management", "system_changes", "data_retention",
    }
    assert client.get("/api/audit-trail/compliance", headers=admin_headers,
                      params={"period": "weekly"}).status_code == 400


def test_audit_cleanup(client, admin_headers):
    response = client.request("DELETE", "/api/audit-trail/cleanup", headers=admin_headers, json={"olderThan": 365})
    assert response.status_code == 200
    assert response.json()["olderThan"] == 365


def test_audit_search_rejects_bad_dates(client, admin_headers):
    for bad in (1e20, "garbage", -1e20):
        response = client.post("/api/audit-trail/search", headers=admin_headers,
                               json={"filters": {"startDate": bad}})
        assert response.status_code == 400, bad
    assert client.post("/api/audit-trail/search", headers=admin_headers,
                       json={"filters": {"endDate": "not-a-date"}}).status_code == 400

    ok = client.post("/api/audit-trail/search", headers=admin_headers,
                     json={"filters": {"startDate": "2020-01-01T00:00:00Z", "endDate": 4102444800}})
    assert ok.status_code == 200
    assert client.get("/api/audit-trail", headers=admin_headers,
                      params={"startDate": "1e20"}).status_code == 400


def test_audit_search_treats_wildcards_literally(client, admin_headers):
    tag = uuid.uuid4().hex[:8]
    client.post("/api/auth/login", json={"username": f"{tag}ab", "password": "nope"})

    assert client.post("/api/audit-trail/search", headers=admin_headers,
                       json={"query": f"{tag}a"}).json()["total"] == 1
    assert client.post("/api/audit-trail/search", headers=admin_headers,
                       json={"query": f"{tag}_b"}).json()["total"] == 0
    assert client.post("/api/audit-trail/search", headers=admin_headers,
                       json={"query": f"{tag}%"}).json()["total"] == 0


def test_audit_cleanup_with_huge_age(client, admin_headers):
    response = client.request("DELETE", "/api/audit-trail/cleanup", headers=admin_headers,
                              json={"olderThan": 10 ** 12})
    assert response.status_code == 200
    assert response.json()["deleted"] == 0


def test_audit_trail_needs_admin(client, analyst_headers):
    assert client.get("/api/audit-trail", headers=analyst_headers).status_code == 403


# ==================== RATE LIMITS ====================

def test_block_and_unblock_ip(client, admin_headers):
    blocked = client.post("/api/rate-limits/block", headers=admin_headers,
                          json={"ip": "203.0.113.9", "reason": "abuse", "duration": 120}).json()
    assert blocked["blocked"]["ip"] == "203.0.113.9"

    listed = client.get("/api/rate-limits/blocked", headers=admin_headers).json()
    assert [b["ip"] for b in listed["blocked"]] == ["203.0.113.9"]

    assert client.post("/api/rate-limits/unblock", headers=admin_headers,
                       json={"ip": "203.0.113.9"}).status_code == 200
    assert client.post("/api/rate-limits/unblock", headers=admin_headers,
                       json={"ip": "203.0.113.9"}).status_code == 404


def test_block_validation(client, admin_headers):
    assert client.post("/api/rate-limits/block", headers=admin_headers, json={}).status_code == 400
    assert client.post("/api/rate-limits/block", headers=admin_headers,
                       json={"ip": "testclient"}).status_code == 400


def test_rate_limit_settings_and_stats(client, admin_headers):
    updated = client.put("/api/rate-limits/settings", headers=admin_headers,
                         json={"window": "general", "max": 500}).json()
    assert updated["settings"]["max"] == 500
    assert client.put("/api/rate-limits/settings", headers=admin_headers,
                      json={"window": "nope", "max": 5}).status_code == 400

    stats = client.get("/api/rate-limits/stats", headers=admin_headers).json()["stats"]
    assert "totalRequests" in stats
    config = client.get("/api/rate-limits/config", headers=admin_headers).json()["config"]
    assert config["windows"]["general"]["max"] == 500

    reset = client.delete("/api/rate-limits/198.51.100.7", headers=admin_headers).json()
    assert reset == {"success": True, "ip": "198.51.100.7", "cleared": 0}


# ==================== BACKUPS ====================

def test_backup_lifecycle(client, admin_headers):
    created = client.post("/api/backups/create", headers=admin_headers)
    assert created.status_code == 200, created.text
    name = created.json()["backup"]["name"]
    assert name.startswith("logdeck-backup-") and name.endswith(".db")

    names = [b["name"] for b in client.get("/api/backups", headers=admin_headers).json()["backups"]]
    assert name in names

    download = client.get(f"/api/backups/{name}/download", headers=admin_headers)
    assert download.status_code == 200
    assert download.content.startswith(b"SQLite format 3")

    assert client.delete(f"/api/backups/{name}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/backups/{name}/download", headers=admin_headers).status_code == 404


def test_backup_rejects_invalid_names(client, admin_headers):
    assert client.get("/api/backups/passwords.txt/download", headers=admin_headers).status_code == 400
    assert client.delete("/api/backups/notes.db", headers=admin_headers).status_code == 400


# ==================== SYSTEM ====================

def test_health_is_public(client):
    response = client.get("/api/system/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] in ("healthy", "degraded")
    assert set(body["checks"]) == {"database", "memory", "cpu", "storage", "ingestion"}
    assert body["checks"]["database"]["status"] == "healthy"


def test_system_stats(client, viewer_headers):
    stats = client.get("/api/system/stats", headers=viewer_headers).json()["stats"]
    assert stats["users"] >= 3
    assert client.get("/api/system/stats").status_code == 401


# ==================== ALERTS ====================

def test_alert_rule_crud(client, analyst_headers, viewer_headers):
    created = client.post("/api/alerts/rules", headers=analyst_headers, json={
        "name": "Disk errors", "level": "error", "pattern": "disk", "threshold": 3, "severity": "high",
    })
    assert created.status_code == 200, created.text
    rule = created.json()["rule"]
    assert rule["enabled"] is True

    assert client.get(f"/api/alerts/rules/{rule['id']}", headers=viewer_headers).status_code == 200
    assert client.post("/api/alerts/rules", headers=viewer_headers, json={"name": "x"}).status_code == 403

    updated = client.put(f"/api/alerts/rules/{rule['id']}", headers=analyst_headers, json={"threshold": 5}).json()
    assert updated["rule"]["threshold"] == 5

    toggled = client.post(f"/api/alerts/rules/{rule['id']}/toggle", headers=analyst_headers).json()
    assert toggled["rule"]["enabled"] is False

    assert client.delete(f"/api/alerts/rules/{rule['id']}", headers=analyst_headers).status_code == 200
    assert client.get(f"/api/alerts/rules/{rule['id']}", headers=viewer_headers).status_code == 404


def test_alert_rule_validation(client, analyst_headers):
    assert client.post("/api/alerts/rules", headers=analyst_headers, json={}).status_code == 400
    assert client.post("/api/alerts/rules", headers=analyst_headers,
                       json={"name": "x", "severity": "apocalyptic"}).status_code == 400
    assert client.post("/api/alerts/rules", headers=analyst_headers,
                       json={"name": "x", "threshold": 0}).status_code == 400


def test_alert_window_is_bounded(client, analyst_headers):
    for window in (0, 7 * 24 * 60 + 1, 10 ** 12):
        response = client.post("/api/alerts/rules", headers=analyst_headers,
                               json={"name": "wide", "window_minutes": window})
        assert response.status_code == 400, window
    created = client.post("/api/alerts/rules", headers=analyst_headers,
                          json={"name": "week", "window_minutes": 7 * 24 * 60}).json()["rule"]
    client.delete(f"/api/alerts/rules/{created['id']}", headers=analyst_headers)


def test_one_failing_rule_does_not_stop_evaluation(client, analyst_headers, monkeypatch):
    marker = f"isolated-{uuid.uuid4().hex[:8]}"
    broken = client.post("/api/alerts/rules", headers=analyst_headers,
                         json={"name": f"{marker}-broken", "pattern": f"{marker}-broken"}).json()["rule"]
    healthy = client.post("/api/alerts/rules", headers=analyst_headers,
                          json={"name": f"{marker}-ok", "pattern": f"{marker}-ok"}).json()["rule"]

    real_count = LogRepository.count_matching

    def count_matching(session, q=None, **kwargs):
        if q == f"{marker}-broken":
            raise OverflowError("date value out of range")
        return real_count(session, q=q, **kwargs)

    monkeypatch.setattr(LogRepository, "count_matching", staticmethod(count_matching))
    try:
        result = client.post("/api/alerts/evaluate", headers=analyst_headers).json()
        by_id = {r["rule_id"]: r for r in result["results"]}
        assert by_id[broken["id"]]["error"] == "date value out of range"
        assert by_id[broken["id"]]["triggered"] is False
        assert by_id[healthy["id"]]["count"] == 0
        assert "error" not in by_id[healthy["id"]]
    finally:
        for rule in (broken, healthy):
            client.delete(f"/api/alerts/rules/{rule['id']}", headers=analyst_headers)


def test_window_start_floors_instead_of_overflowing():
    now = datetime(2024, 1, 1)
    assert window_start(now, 5) == datetime(2023, 12, 31, 23, 55)
    assert window_start(now, 10 ** 12) == datetime.min


def test_alert_evaluation_fires_at_threshold(client, admin_headers, analyst_headers):
    marker = f"evaluate-{uuid.uuid4().hex[:8]}"
    rule = client.post("/api/alerts/rules", headers=analyst_headers, json={
        "name": marker, "pattern": marker, "threshold": 2, "window_minutes": 10,
    }).json()["rule"]

    key = client.post("/api/api-keys", headers=admin_headers,
                      json={"name": marker, "permissions": ["log:write"]}).json()["api_key"]["key"]
    client.post("/api/logs", headers={"X-API-Key": key},
                json=[{"message": f"{marker} one"}, {"message": f"{marker} two"}])

    result = client.post("/api/alerts/evaluate", headers=analyst_headers).json()
    mine = next(r for r in result["results"] if r["rule_id"] == rule["id"])
    assert mine["count"] == 2
    assert mine["triggered"] is True

    fetched = client.get(f"/api/alerts/rules/{rule['id']}", headers=analyst_headers).json()["rule"]
    assert fetched["trigger_count"] == 1
    client.delete(f"/api/alerts/rules/{rule['id']}", headers=analyst_headers)
