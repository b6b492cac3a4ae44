"""
In-memory cache for token revocation, login-failure tracking and small
TTL values (settings snapshots).
Single-instance only; data is lost on restart.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import threading

from loguru import logger

from store.models import utc_now


class InMemoryCacheManager:
    """In-memory cache manager using Python dicts"""

    def __init__(self, failure_window: int = 900):
        self.failure_window = failure_window
        self.blacklist: Dict[str, datetime] = {}  # blacklist:jti -> expiry
        self.values: Dict[str, Tuple[Any, datetime]] = {}  # key -> (value, expiry)
        self.login_failures: Dict[str, List[datetime]] = {}  # login_failures:ip -> timestamps
        self.lock = threading.Lock()
        logger.debug("In-memory cache initialized")

    def _is_expired(self, expiry_time: Optional[datetime]) -> bool:
        if expiry_time is None:
            return False
        return utc_now() > expiry_time

    def _cleanup_expired(self) -> int:
        now = utc_now()
        cutoff = now - timedelta(seconds=self.failure_window)
        before = len(self.blacklist) + len(self.values) + len(self.login_failures)
        self.blacklist = {k: v for k, v in self.blacklist.items() if v > now}
        self.values = {k: v for k, v in self.values.items() if v[1] is None or v[1] > now}
        self.login_failures = {k: v for k, v in self.login_failures.items() if v and v[-1] > cutoff}
        return before - len(self.blacklist) - len(self.values) - len(self.login_failures)

    def purge_expired(self) -> int:
        """Drop expired entries of every kind; returns how many were removed"""
        with self.lock:
            return self._cleanup_expired()

    # ==================== TOKEN BLACKLIST ====================

    def blacklist_token(self, token_id: str, ttl: int = 86400):
        """Blacklist an access token by its jti"""
        with self.lock:
            self.blacklist[f"blacklist:{token_id}"] = utc_now() + timedelta(seconds=ttl)

    def is_token_blacklisted(self, token_id: str) -> bool:
        with self.lock:
            key = f"blacklist:{token_id}"
            if key in self.blacklist:
                if not self._is_expired(self.blacklist[key]):
                    return True
                del self.blacklist[key]
            return False

    # ==================== TTL VALUES ====================

    def set(self, key: str, value: Any, ttl: Optional[int] = 300):
        with self.lock:
            expiry = utc_now() + timedelta(seconds=ttl) if ttl else None
            self.values[key] = (value, expiry)

    def get(self, key: str) -> Any:
        with self.lock:
            if key in self.values:
                value, expiry = self.values[key]
                if not self._is_expired(expiry):
                    return value
                del self.values[key]
            return None

    def delete(self, key: str):
        with self.lock:
            self.values.pop(key, None)

    # ==================== LOGIN FAILURES ====================

    def record_login_failure(self, ip_address: str) -> int:
        """Record a failed login; returns failures within the window"""
        with self.lock:
            self._cleanup_expired()
            now = utc_now()
            cutoff = now - timedelta(seconds=self.failure_window)
            key = f"login_failures:{ip_address}"
            recent = [t for t in self.login_failures.get(key, []) if t > cutoff]
            recent.append(now)
            self.login_failures[key] = recent
            return len(recent)

    def clear_login_failures(self, ip_address: str):
        with self.lock:
            self.login_failures.pop(f"login_failures:{ip_address}", None)

    def clear(self):
        """Drop everything (tests)"""
        with self.lock:
            self.blacklist.clear()
            self.values.clear()
            self.login_failures.clear()


# Global instance
cache_manager = InMemoryCacheManager()
