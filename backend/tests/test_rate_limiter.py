"""
Call Escalation Relay - Rate Limiter Tests

Tests for the fixed-window RateLimiter.
These tests verify:
- The boundary: N requests allowed, request N+1 limited
- Window reset after expiry
- Retry-After and X-RateLimit headers
- Per-source isolation and garbage collection

Run with: pytest tests/test_rate_limiter.py -v
"""

from callrelay.core.rate_limiter import InMemoryRateLimitStore, RateLimiter


class TestWindowBoundary:
    """100 requests per 60 s per source."""

    def test_hundred_allowed_then_limited(self):
        limiter = RateLimiter(max_requests=100, window_seconds=60)
        now = 1_000.0

        decisions = [limiter.check("203.0.113.7", now=now + i * 0.1) for i in range(100)]
        assert all(d.allowed for d in decisions)
        assert decisions[-1].remaining == 0

        limited = limiter.check("203.0.113.7", now=now + 10.5)
        assert limited.allowed is False
        assert limited.retry_after == 50

    def test_allowed_again_after_window(self):
        limiter = RateLimiter(max_requests=100, window_seconds=60)
        for _ in range(101):
            limiter.check("203.0.113.7", now=1_000.0)

        assert limiter.check("203.0.113.7", now=1_060.0).allowed is False
        reset = limiter.check("203.0.113.7", now=1_060.5)
        assert reset.allowed is True
        assert reset.remaining == 99

    def test_retry_after_is_at_least_one_second(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.check("src", now=0.0)
        decision = limiter.check("src", now=59.9)
        assert decision.allowed is False
        assert decision.retry_after == 1

    def test_sources_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        assert limiter.check("a", now=0.0).allowed
        assert not limiter.check("a", now=1.0).allowed
        assert limiter.check("b", now=1.0).allowed


class TestHeaders:
    """Decisions render the response headers."""

    def test_allowed_headers(self):
        limiter = RateLimiter(max_requests=100, window_seconds=60)
        headers = limiter.check("src", now=100.0).headers()
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "99"
        assert headers["X-RateLimit-Reset"] == "160"
        assert "Retry-After" not in headers

    def test_limited_headers_include_retry_after(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.check("src", now=100.0)
        headers = limiter.check("src", now=130.0).headers()
        assert headers["Retry-After"] == "30"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestGarbageCollection:
    """Inactive entries are dropped."""

    def test_stale_entries_purged(self):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(max_requests=10, window_seconds=60, store=store)
        limiter.check("old", now=0.0)
        assert len(store) == 1

        # "old" window reset at 60; inactive beyond one more window by 121
        limiter.check("new", now=200.0)
        assert len(store) == 1

    def test_injected_clock_used_by_default(self):
        ticks = iter([10.0, 11.0])
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=lambda: next(ticks))
        assert limiter.check("src").allowed
        decision = limiter.check("src")
        assert not decision.allowed
        assert decision.retry_after == 59
