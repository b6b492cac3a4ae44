"""
Per-IP fixed-window rate limiting with a manual block list.

Windows (general, auth, api) come from the platform configuration and can
be tuned at runtime. Whitelisted IPs are never limited.
"""

import copy
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from apps.config import platform_config

SWEEP_INTERVAL = 60.0


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


class RateLimiter:
    """In-memory rate limiter shared by the middleware and the admin API"""

    def __init__(self, config: Dict[str, Any], max_tracked_ips: int = 10000):
        self._initial = copy.deepcopy(config)
        self.max_tracked_ips = max_tracked_ips
        self.lock = threading.Lock()
        self._load(config)

    def _load(self, config: Dict[str, Any]):
        self.windows: Dict[str, Dict[str, Any]] = copy.deepcopy(config.get("windows", {}))
        self.whitelist = set(config.get("whitelist", []))
        self.auto_unblock_after = int(config.get("auto_unblock_after", 3600))
        self.counters: Dict[Tuple[str, str], Tuple[int, float]] = {}  # (window, ip) -> (count, window_start)
        self.blocked: Dict[str, Dict[str, Any]] = {}
        self.total_requests = 0
        self.blocked_requests = 0
        self.seen_ips: "OrderedDict[str, None]" = OrderedDict()  # most recent last, capped
        self.next_sweep = 0.0

    def _window_seconds(self, window: str) -> float:
        cfg = self.windows.get(window) or self.windows["general"]
        return cfg["window_ms"] / 1000.0

    def _remember(self, ip: str):
        self.seen_ips[ip] = None
        self.seen_ips.move_to_end(ip)
        while len(self.seen_ips) > self.max_tracked_ips:
            self.seen_ips.popitem(last=False)

    def _sweep(self, now: float) -> int:
        """Drop counters whose window has passed and expired blocks; caller holds the lock"""
        expired = [
            key for key, (_, started) in self.counters.items()
            if now - started >= self._window_seconds(key[0])
        ]
        for key in expired:
            del self.counters[key]
        for ip in list(self.blocked):
            self._block_entry(ip, now)
        self.next_sweep = now + SWEEP_INTERVAL
        return len(expired)

    def sweep(self, now: float = None) -> int:
        with self.lock:
            return self._sweep(now or time.time())

    # ==================== CHECKS ====================

    def is_whitelisted(self, ip: str) -> bool:
        return ip in self.whitelist

    def _block_entry(self, ip: str, now: float) -> Optional[Dict[str, Any]]:
        entry = self.blocked.get(ip)
        if entry and entry["expires_at"] <= now:
            del self.blocked[ip]
            logger.info(f"[RATE_LIMIT] Block expired for {ip}")
            return None
        return entry

    def is_blocked(self, ip: str, now: float = None) -> bool:
        with self.lock:
            return self._block_entry(ip, now or time.time()) is not None

    def hit(self, ip: str, window: str = "general", now: float = None) -> Tuple[bool, int, float]:
        """
        Count one request.

        Returns:
            (allowed, remaining, reset_at epoch seconds)
        """
        now = now or time.time()
        cfg = self.windows.get(window) or self.windows["general"]
        window_seconds = cfg["window_ms"] / 1000.0
        limit = int(cfg["max"])

        if self.is_whitelisted(ip):
            return True, limit, now + window_seconds

        with self.lock:
            if now >= self.next_sweep:
                self._sweep(now)
            self.total_requests += 1
            self._remember(ip)

            entry = self._block_entry(ip, now)
            if entry:
                self.blocked_requests += 1
                return False, 0, entry["expires_at"]

            key = (window, ip)
            count, started = self.counters.get(key, (0, now))
            if now - started >= window_seconds:
                count, started = 0, now

            reset_at = started + window_seconds
            if count >= limit:
                self.blocked_requests += 1
                self.counters[key] = (count, started)
                logger.warning(f"[RATE_LIMIT] {ip} exceeded {window} window ({limit})")
                return False, 0, reset_at

            count += 1
            self.counters[key] = (count, started)
            return True, limit - count, reset_at

    def refund(self, ip: str, window: str):
        """Give back one request (successful auth with skip_successful_requests)"""
        with self.lock:
            key = (window, ip)
            if key in self.counters:
                count, started = self.counters[key]
                self.counters[key] = (max(count - 1, 0), started)

    def skips_successful(self, window: str) -> bool:
        return bool(self.windows.get(window, {}).get("skip_successful_requests"))

    # ==================== BLOCK LIST ====================

    def block(self, ip: str, reason: str = "Manual block", duration: Optional[int] = None,
              now: float = None) -> Dict[str, Any]:
        now = now or time.time()
        duration = int(duration or self.auto_unblock_after)
        with self.lock:
            entry = {
                "ip": ip,
                "reason": reason,
                "blocked_at": now,
                "expires_at": now + duration,
                "duration": duration,
            }
            self.blocked[ip] = entry
        logger.warning(f"[RATE_LIMIT] Blocked {ip} for {duration}s: {reason}")
        return self._serialize_block(entry, now)

    def unblock(self, ip: str) -> bool:
        with self.lock:
            removed = self.blocked.pop(ip, None) is not None
        if removed:
            logger.info(f"[RATE_LIMIT] Unblocked {ip}")
        return removed

    def _serialize_block(self, entry: Dict[str, Any], now: float) -> Dict[str, Any]:
        return {
            "ip": entry["ip"],
            "reason": entry["reason"],
            "blocked_at": _iso(entry["blocked_at"]),
            "expires_at": _iso(entry["expires_at"]),
            "remaining_seconds": max(int(entry["expires_at"] - now), 0),
        }

    def blocked_list(self, now: float = None) -> List[Dict[str, Any]]:
        now = now or time.time()
        with self.lock:
            for ip in list(self.blocked):
                self._block_entry(ip, now)
            return [self._serialize_block(e, now) for e in self.blocked.values()]

    # ==================== INSPECTION ====================

    def list_limits(self, now: float = None) -> List[Dict[str, Any]]:
        now = now or time.time()
        rows = []
        with self.lock:
            for (window, ip), (count, started) in self.counters.items():
                cfg = self.windows.get(window, {})
                reset_at = started + cfg.get("window_ms", 0) / 1000.0
                if reset_at <= now:
                    continue
                rows.append({
                    "ip": ip,
                    "window": window,
                    "count": count,
                    "limit": cfg.get("max"),
                    "remaining": max(cfg.get("max", 0) - count, 0),
                    "reset_at": _iso(reset_at),
                    "blocked": ip in self.blocked,
                })
        return sorted(rows, key=lambda r: r["count"], reverse=True)

    def reset(self, ip: str) -> int:
        with self.lock:
            keys = [key for key in self.counters if key[1] == ip]
            for key in keys:
                del self.counters[key]
        return len(keys)

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            total = self.total_requests
            blocked = self.blocked_requests
            return {
                "totalRequests": total,
                "blockedRequests": blocked,
                "blockRate": round(blocked / total * 100, 2) if total else 0.0,
                "uniqueIPs": len(self.seen_ips),
                "blockedIPs": len(self.blocked),
            }

    # ==================== CONFIGURATION ====================

    def update_settings(self, window: str, window_ms: Optional[int] = None,
                        max_requests: Optional[int] = None) -> Dict[str, Any]:
        if window not in self.windows:
            return {"error": f"Unknown window: {window}"}
        if window_ms is not None and window_ms < 1000:
            return {"error": "window_ms must be at least 1000"}
        if max_requests is not None and max_requests < 1:
            return {"error": "max must be at least 1"}

        with self.lock:
            if window_ms is not None:
                self.windows[window]["window_ms"] = int(window_ms)
            if max_requests is not None:
                self.windows[window]["max"] = int(max_requests)
            updated = dict(self.windows[window])
        logger.info(f"[RATE_LIMIT] Updated {window} window: {updated}")
        return {"success": True, "window": window, "settings": updated}

    def config(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "windows": copy.deepcopy(self.windows),
                "whitelist": sorted(self.whitelist),
                "auto_unblock_after": self.auto_unblock_after,
            }

    def clear(self):
        """Restore initial configuration and drop all state (tests)"""
        with self.lock:
            self._load(self._initial)


# Global instance
rate_limiter = RateLimiter(platform_config.rate_limits)
