"""
Scheduled pruning of expired data.

Each run removes log entries older than the ``system.retention_days``
setting, audit rows older than ``retention.audit_days``, expired sessions,
and stale rate-limit and login-failure state. A daemon thread repeats the
run every ``retention.interval_hours``; admins can trigger one on demand.
"""

import threading
import time
from typing import Any, Dict, Optional

from loguru import logger

from admin.settings_manager import settings_manager
from apps.config import platform_config
from auth.auth_manager import auth_manager
from auth.cache_manager import cache_manager
from auth.rate_limiter import rate_limiter
from store.database import get_db_session
from store.models import utc_now
from store.repository import ActivityRepository, LogRepository


def _positive_days(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return None
    return value


class RetentionManager:
    """Prunes expired logs, audit rows, sessions and in-memory counters"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or platform_config.retention
        self.enabled = bool(self.config.get("enabled", True))
        self.interval = float(self.config.get("interval_hours", 24)) * 3600
        self.audit_days = _positive_days(self.config.get("audit_days", 90))
        self.last_run: Optional[Dict[str, Any]] = None
        self.lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ==================== LIFECYCLE ====================

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if not self.enabled:
            logger.info("[RETENTION] Retention job disabled by configuration")
            return False
        if self.is_running:
            return True
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention", daemon=True)
        self._thread.start()
        logger.info(f"[RETENTION] Job scheduled every {self.interval / 3600:g}h")
        return True

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.run()
            except Exception as e:
                logger.error(f"[RETENTION] Run failed: {type(e).__name__}: {e}")

    # ==================== PRUNING ====================

    def log_days(self) -> Optional[int]:
        days = _positive_days(settings_manager.get_value("system.retention_days"))
        if days is None:
            logger.warning("[RETENTION] system.retention_days is not a positive integer, logs kept")
        return days

    @staticmethod
    def _prune(repository, days: Optional[int]) -> int:
        if days is None:
            return 0
        session = get_db_session()
        try:
            return repository.delete_older_than(session, days)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, user: dict = None, ip_address: str = None) -> Dict[str, Any]:
        """Prune everything once; returns what was removed"""
        with self.lock:
            started = time.monotonic()
            log_days = self.log_days()
            result = {
                "logsDeleted": self._prune(LogRepository, log_days),
                "auditDeleted": self._prune(ActivityRepository, self.audit_days),
                "sessionsDeleted": auth_manager.cleanup_expired_sessions(),
                "rateLimitEntriesDeleted": rate_limiter.sweep(),
                "cacheEntriesDeleted": cache_manager.purge_expired(),
                "logRetentionDays": log_days,
                "auditRetentionDays": self.audit_days,
                "ranAt": utc_now().isoformat() + "Z",
            }
            result["durationMs"] = round((time.monotonic() - started) * 1000, 2)
            self.last_run = result

        logger.info(
            f"[RETENTION] Removed {result['logsDeleted']} logs, {result['auditDeleted']} audit rows, "
            f"{result['sessionsDeleted']} sessions"
        )
        auth_manager.log_activity(
            user.get("userId") if user else None, "data_retention",
            resource_type="system", details=result, ip_address=ip_address,
            username=user.get("username") if user else "system",
        )
        return {"success": True, **result}

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.is_running,
            "intervalHours": self.interval / 3600,
            "logRetentionDays": self.log_days(),
            "auditRetentionDays": self.audit_days,
            "lastRun": self.last_run,
        }


# Global instance
retention_manager = RetentionManager()
