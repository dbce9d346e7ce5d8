"""
tests/test_ratelimit.py -- Fixed-window rate limiter over limits storage.

Covers:
  - the limit is inclusive and the window resets after window_ms
  - get_status() does not count a request
  - reset() clears a single identifier under one policy
  - a failing storage fails open
  - build_rate_limit_storage() picks Redis only when it answers
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from limits.storage import MemoryStorage

from core.ratelimit import RateLimiter, RateLimitStatus, build_rate_limit_storage


def _limiter():
    return RateLimiter(MemoryStorage())


class TestWindow:
    def test_allows_up_to_limit_then_blocks(self):
        limiter = _limiter()
        assert [limiter.check("signup:1.2.3.4", 3, 60_000) for _ in range(4)] == [True, True, True, False]

    def test_window_resets_after_expiry(self, frozen_time):
        limiter = _limiter()
        for _ in range(3):
            limiter.check("k", 3, 60_000)
        assert limiter.check("k", 3, 60_000) is False
        frozen_time.advance(61)
        assert limiter.check("k", 3, 60_000) is True

    def test_identifiers_are_independent(self):
        limiter = _limiter()
        limiter.check("a", 1, 60_000)
        assert limiter.check("a", 1, 60_000) is False
        assert limiter.check("b", 1, 60_000) is True

    def test_policies_are_independent(self):
        limiter = _limiter()
        limiter.check("k", 1, 60_000)
        assert limiter.check("k", 1, 60_000) is False
        assert limiter.check("k", 5, 900_000) is True


class TestStatus:
    def test_status_does_not_count(self):
        limiter = _limiter()
        limiter.check("k", 5, 60_000)
        for _ in range(3):
            status = limiter.get_status("k", 5, 60_000)
        assert status.remaining == 4

    def test_status_for_unknown_identifier_is_full(self):
        status = _limiter().get_status("nobody", 5, 60_000)
        assert (status.limit, status.remaining) == (5, 5)

    def test_reset_at_is_end_of_window(self, frozen_time):
        limiter = _limiter()
        limiter.check("k", 5, 60_000)
        frozen_time.advance(10)
        status = limiter.get_status("k", 5, 60_000)
        assert abs(status.reset_at - (frozen_time.start + 60) * 1000) < 1000

    def test_remaining_never_negative(self):
        limiter = _limiter()
        for _ in range(5):
            limiter.check("k", 2, 60_000)
        assert limiter.get_status("k", 2, 60_000).remaining == 0

    def test_headers(self):
        status = RateLimitStatus(limit=5, remaining=2, reset_at=1_700_000_000_500)
        assert status.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": "1700000001",
        }


class TestMaintenance:
    def test_reset_clears_one_identifier(self):
        limiter = _limiter()
        limiter.check("a", 1, 60_000)
        limiter.check("b", 1, 60_000)
        limiter.reset("a", 1, 60_000)
        assert limiter.check("a", 1, 60_000) is True
        assert limiter.check("b", 1, 60_000) is False

    def test_storage_failure_fails_open(self):
        broken = MagicMock(spec=MemoryStorage)
        for method in (broken.incr, broken.get, broken.get_expiry, broken.clear):
            method.side_effect = ConnectionError("redis down")
        limiter = RateLimiter(broken)
        assert limiter.check("k", 1, 60_000) is True
        assert limiter.get_status("k", 1, 60_000).remaining == 1
        limiter.reset("k", 1, 60_000)


class TestBuildStorage:
    def test_without_url_is_memory(self):
        assert isinstance(build_rate_limit_storage(""), MemoryStorage)

    def test_unreachable_redis_falls_back_to_memory(self):
        redis_storage = MagicMock()
        redis_storage.check.return_value = False
        with patch("core.ratelimit.storage_from_string", return_value=redis_storage) as factory:
            storage = build_rate_limit_storage("redis://cache:6379/0")
        factory.assert_called_once_with("redis://cache:6379/0")
        assert isinstance(storage, MemoryStorage)

    def test_reachable_redis_is_used(self):
        redis_storage = MagicMock()
        redis_storage.check.return_value = True
        with patch("core.ratelimit.storage_from_string", return_value=redis_storage):
            assert build_rate_limit_storage("redis://cache:6379/0") is redis_storage
