import time
import uuid
from datetime import datetime, timedelta, timezone

from admin.retention import RetentionManager
from auth.rate_limiter import rate_limiter
from store.database import get_db_session
from store.models import ActivityLog, LogEntry, User, UserSession, utc_now
from store.repository import LogRepository


def _iso(days_ago):
    return (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat()


def _seed(tag):
    session = get_db_session()
    try:
        LogRepository.bulk_create(session, [
            {"timestamp": _iso(400), "message": f"{tag} ancient", "level": "info", "source": "retention"},
            {"timestamp": _iso(1), "message": f"{tag} recent", "level": "info", "source": "retention"},
        ])
        admin = session.query(User).filter(User.username == "admin").one()
        session.add(UserSession(
            user_id=admin.id, session_token=f"expired-{tag}",
            expires_at=utc_now() - timedelta(hours=1),
        ))
        session.add(ActivityLog(action=f"{tag}_old", created_at=utc_now() - timedelta(days=400)))
        session.commit()
    finally:
        session.close()


def _count(model, *criteria):
    session = get_db_session()
    try:
        return session.query(model).filter(*criteria).count()
    finally:
        session.close()


def test_retention_run_prunes_expired_data(client, admin_headers):
    tag = uuid.uuid4().hex[:8]
    _seed(tag)
    rate_limiter.hit("203.0.113.50", now=1.0)

    response = client.post("/api/system/retention/run", headers=admin_headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["logRetentionDays"] == 30
    assert body["auditRetentionDays"] == 90
    assert body["logsDeleted"] >= 1
    assert body["auditDeleted"] >= 1
    assert body["sessionsDeleted"] >= 1
    assert body["rateLimitEntriesDeleted"] >= 1

    assert _count(LogEntry, LogEntry.message == f"{tag} ancient") == 0
    assert _count(LogEntry, LogEntry.message == f"{tag} recent") == 1
    assert _count(ActivityLog, ActivityLog.action == f"{tag}_old") == 0
    assert _count(UserSession, UserSession.session_token == f"expired-{tag}") == 0
    assert _count(ActivityLog, ActivityLog.action == "data_retention") >= 1

    status = client.get("/api/system/retention", headers=admin_headers).json()["retention"]
    assert status["lastRun"]["logsDeleted"] == body["logsDeleted"]
    assert status["running"] is False


def test_retention_follows_the_retention_setting(client, admin_headers):
    tag = uuid.uuid4().hex[:8]
    session = get_db_session()
    try:
        LogRepository.bulk_create(session, [
            {"timestamp": _iso(3), "message": f"{tag} three days", "level": "info", "source": "retention"},
        ])
    finally:
        session.close()

    response = client.put("/api/settings/key/system.retention_days", json={"value": 2}, headers=admin_headers)
    assert response.status_code == 200, response.text
    try:
        body = client.post("/api/system/retention/run", headers=admin_headers).json()
        assert body["logRetentionDays"] == 2
        assert _count(LogEntry, LogEntry.message == f"{tag} three days") == 0
    finally:
        client.put("/api/settings/key/system.retention_days", json={"value": 30}, headers=admin_headers)


def test_retention_needs_admin(client, viewer_headers, analyst_headers):
    assert client.post("/api/system/retention/run", headers=viewer_headers).status_code == 403
    assert client.post("/api/system/retention/run", headers=analyst_headers).status_code == 403
    assert client.get("/api/system/retention").status_code == 401


def test_disabled_job_does_not_start():
    manager = RetentionManager({"enabled": False})
    assert manager.start() is False
    assert manager.is_running is False


def test_job_thread_runs_until_stopped(client, monkeypatch):
    manager = RetentionManager({"enabled": True, "interval_hours": 24})
    manager.interval = 0.01
    runs = []
    monkeypatch.setattr(manager, "run", lambda: runs.append(1))

    assert manager.start() is True
    deadline = datetime.now() + timedelta(seconds=5)
    while not runs and datetime.now() < deadline:
        time.sleep(0.01)
    manager.stop()

    assert runs
    assert manager.is_running is False
