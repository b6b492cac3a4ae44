import pytest

from auth.rate_limiter import RateLimiter

CONFIG = {
    "whitelist": ["10.0.0.1"],
    "auto_unblock_after": 60,
    "windows": {
        "general": {"window_ms": 60000, "max": 3, "skip_successful_requests": False},
        "auth": {"window_ms": 900000, "max": 2, "skip_successful_requests": True},
    },
}


@pytest.fixture
def limiter():
    return RateLimiter(CONFIG)


def test_allows_up_to_limit_then_rejects(limiter):
    results = [limiter.hit("1.2.3.4", now=1000.0) for _ in range(4)]
    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    assert [remaining for _, remaining, _ in results] == [2, 1, 0, 0]
    assert results[0][2] == 1060.0


def test_window_resets(limiter):
    for _ in range(3):
        limiter.hit("1.2.3.4", now=1000.0)
    assert limiter.hit("1.2.3.4", now=1059.0)[0] is False
    assert limiter.hit("1.2.3.4", now=1060.0)[0] is True


def test_windows_are_independent(limiter):
    for _ in range(3):
        limiter.hit("1.2.3.4", now=1000.0)
    assert limiter.hit("1.2.3.4", window="auth", now=1000.0)[0] is True


def test_whitelisted_ip_is_never_limited(limiter):
    assert all(limiter.hit("10.0.0.1", now=1000.0)[0] for _ in range(10))
    assert limiter.stats()["totalRequests"] == 0


def test_refund(limiter):
    limiter.hit("5.5.5.5", window="auth", now=1000.0)
    limiter.hit("5.5.5.5", window="auth", now=1000.0)
    limiter.refund("5.5.5.5", "auth")
    assert limiter.hit("5.5.5.5", window="auth", now=1000.0)[0] is True
    assert limiter.skips_successful("auth")
    assert not limiter.skips_successful("general")


def test_block_and_expiry(limiter):
    entry = limiter.block("6.6.6.6", reason="abuse", now=1000.0)
    assert entry["remaining_seconds"] == 60
    assert limiter.hit("6.6.6.6", now=1001.0)[0] is False
    assert limiter.is_blocked("6.6.6.6", now=1059.0)
    assert not limiter.is_blocked("6.6.6.6", now=1061.0)
    assert limiter.blocked_list(now=1061.0) == []


def test_unblock(limiter):
    limiter.block("7.7.7.7", duration=600)
    assert limiter.unblock("7.7.7.7") is True
    assert limiter.unblock("7.7.7.7") is False


def test_stats_and_reset(limiter):
    for _ in range(4):
        limiter.hit("8.8.8.8", now=1000.0)
    limiter.hit("9.9.9.9", now=1000.0)
    stats = limiter.stats()
    assert stats["totalRequests"] == 5
    assert stats["blockedRequests"] == 1
    assert stats["blockRate"] == 20.0
    assert stats["uniqueIPs"] == 2

    assert limiter.reset("8.8.8.8") == 1
    assert limiter.hit("8.8.8.8", now=1000.0)[0] is True


def test_update_settings_validation(limiter):
    assert "error" in limiter.update_settings("nope", max_requests=5)
    assert "error" in limiter.update_settings("general", window_ms=10)
    assert "error" in limiter.update_settings("general", max_requests=0)

    result = limiter.update_settings("general", window_ms=30000, max_requests=1)
    assert result["settings"]["max"] == 1
    assert limiter.hit("1.1.1.1", now=1000.0)[0] is True
    assert limiter.hit("1.1.1.1", now=1000.0)[0] is False


def test_clear_restores_initial_config(limiter):
    limiter.update_settings("general", max_requests=50)
    limiter.block("2.2.2.2")
    limiter.clear()
    assert limiter.config()["windows"]["general"]["max"] == 3
    assert limiter.blocked_list() == []


def test_expired_counters_are_swept(limiter):
    for i in range(5000):
        limiter.hit(f"172.16.{i // 256}.{i % 256}", now=1000.0)
    assert len(limiter.counters) == 5000

    limiter.hit("192.0.2.1", now=1061.0)
    assert list(limiter.counters) == [("general", "192.0.2.1")]


def test_sweep_waits_for_interval(limiter):
    limiter.hit("192.0.2.1", now=1000.0)
    limiter.hit("192.0.2.2", window="general", now=1059.0)
    assert len(limiter.counters) == 2
    assert limiter.sweep(now=1200.0) == 2
    assert limiter.counters == {}


def test_sweep_drops_expired_blocks(limiter):
    limiter.block("6.6.6.6", duration=10, now=1000.0)
    limiter.sweep(now=1011.0)
    assert limiter.blocked == {}


def test_seen_ips_are_capped():
    limiter = RateLimiter(CONFIG, max_tracked_ips=100)
    for i in range(250):
        limiter.hit(f"198.51.100.{i % 250}", now=1000.0 + i * 100)
    assert len(limiter.seen_ips) == 100
    assert next(reversed(limiter.seen_ips)) == "198.51.100.249"
    assert limiter.stats()["uniqueIPs"] == 100
