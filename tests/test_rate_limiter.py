"""
Tests for Rate Limiter

Validates token bucket algorithm, blocking waits, endpoint weights and
statistics tracking.
"""
import pytest
from unittest.mock import patch

from infra.rate_limiter import (
    BINANCE_WEIGHTS,
    RateLimiter,
    RateLimitStats,
    TokenBucket,
    configure_rate_limits,
    get_binance_rate_limiter,
    get_hyperliquid_rate_limiter,
)


class TestTokenBucket:
    """Test token bucket implementation"""

    def test_bucket_starts_full(self):
        """Bucket starts with full capacity"""
        bucket = TokenBucket(capacity=10.0, refill_rate=5.0)
        assert bucket.tokens == 10.0

    def test_consume_tokens(self):
        """Consuming tokens decreases bucket"""
        bucket = TokenBucket(capacity=10.0, refill_rate=5.0)
        assert bucket.consume(3.0)
        assert 7.0 <= bucket.tokens < 7.1

    def test_cannot_over_consume(self):
        """Cannot consume more tokens than available"""
        bucket = TokenBucket(capacity=10.0, refill_rate=0.001)
        bucket.consume(10.0)
        assert not bucket.consume(1.0)

    def test_tokens_refill_over_time(self):
        """Tokens refill at specified rate"""
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.consume(10.0)

        bucket.last_refill -= 0.5
        bucket.refill()

        assert 4.5 <= bucket.tokens <= 5.5

    def test_bucket_does_not_exceed_capacity(self):
        """Bucket cannot exceed capacity even with long wait"""
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.last_refill -= 2.0
        bucket.refill()
        assert bucket.tokens == 10.0

    def test_wait_time_calculation(self):
        """Wait time is the deficit divided by the refill rate"""
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.consume(10.0)
        wait_time = bucket.wait_time(5.0)
        assert 0.45 <= wait_time <= 0.5

    def test_zero_wait_when_tokens_available(self):
        """Zero wait time when tokens available"""
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        assert bucket.wait_time(5.0) == 0.0

    @pytest.mark.parametrize("capacity,refill", [(0, 1), (10, 0), (-1, 5)])
    def test_rejects_non_positive_parameters(self, capacity, refill):
        """Capacity and refill rate must be positive"""
        with pytest.raises(ValueError):
            TokenBucket(capacity=capacity, refill_rate=refill)


class TestRateLimitStats:
    """Test statistics tracking"""

    def test_stats_start_at_zero(self):
        """Statistics start at zero"""
        stats = RateLimitStats()
        assert stats.total_requests == 0
        assert stats.total_waits == 0
        assert stats.total_wait_seconds == 0.0

    def test_record_wait(self):
        """Waits are counted and the max is tracked"""
        stats = RateLimitStats()
        stats.record(0.0)
        stats.record(0.3)
        stats.record(0.1)
        assert stats.total_requests == 3
        assert stats.total_waits == 2
        assert stats.total_wait_seconds == pytest.approx(0.4)
        assert stats.max_wait_seconds == pytest.approx(0.3)


class TestRateLimiter:
    """Test blocking limiter behavior"""

    def test_no_wait_when_tokens_available(self):
        """acquire() returns immediately when the bucket has room"""
        limiter = RateLimiter("test", max_tokens=10, refill_rate=10)
        with patch("infra.rate_limiter.time.sleep") as mock_sleep:
            assert limiter.acquire(3) == 0.0
        mock_sleep.assert_not_called()

    def test_waits_for_deficit(self):
        """A short bucket sleeps for deficit / refill_rate, then proceeds"""
        limiter = RateLimiter("test", max_tokens=10, refill_rate=10)
        with patch("infra.rate_limiter.time.sleep") as mock_sleep:
            limiter.acquire(10)
            waited = limiter.acquire(5)

        mock_sleep.assert_called_once()
        slept = mock_sleep.call_args[0][0]
        assert 0.45 <= slept <= 0.5
        assert waited == slept

    def test_tokens_never_negative(self):
        """Tokens stay within [0, max_tokens] under repeated throttling"""
        limiter = RateLimiter("test", max_tokens=5, refill_rate=1)
        with patch("infra.rate_limiter.time.sleep"):
            for _ in range(10):
                limiter.acquire(3)
                assert 0.0 <= limiter.available_tokens() <= 5.0

    def test_oversized_weight_still_proceeds(self):
        """A weight above capacity waits for a refill instead of failing"""
        limiter = RateLimiter("test", max_tokens=2, refill_rate=1)
        with patch("infra.rate_limiter.time.sleep") as mock_sleep:
            waited = limiter.acquire(4)
        assert waited > 0
        mock_sleep.assert_called_once()
        assert limiter.available_tokens() >= 0.0

    def test_zero_weight_is_free(self):
        """Zero weight never consumes or waits"""
        limiter = RateLimiter("test", max_tokens=1, refill_rate=1)
        assert limiter.acquire(0) == 0.0
        assert limiter.get_stats()["total_requests"] == 0

    def test_endpoint_weights(self):
        """Configured endpoint weights apply; unknown endpoints weigh 1"""
        limiter = RateLimiter("binance", max_tokens=60, refill_rate=28, weights=BINANCE_WEIGHTS)
        assert limiter.weight_for("depth") == 5
        assert limiter.weight_for("premiumIndex") == 1
        assert limiter.weight_for("somethingNew") == 1

    def test_acquire_endpoint_consumes_weight(self):
        """acquire_endpoint() consumes the endpoint's weight"""
        limiter = RateLimiter("binance", max_tokens=60, refill_rate=0.001, weights=BINANCE_WEIGHTS)
        limiter.acquire_endpoint("klines")
        assert 54.9 <= limiter.available_tokens() <= 55.1

    def test_stats(self):
        """get_stats() reports counters and configuration"""
        limiter = RateLimiter("test", max_tokens=10, refill_rate=10)
        with patch("infra.rate_limiter.time.sleep"):
            limiter.acquire(10)
            limiter.acquire(1)
        stats = limiter.get_stats()
        assert stats["name"] == "test"
        assert stats["max_tokens"] == 10.0
        assert stats["total_requests"] == 2
        assert stats["total_waits"] == 1


class TestRegistry:
    """Test process-wide limiter registry"""

    def test_same_instance_per_api(self):
        """Each API gets exactly one limiter per process"""
        assert get_binance_rate_limiter() is get_binance_rate_limiter()
        assert get_hyperliquid_rate_limiter() is get_hyperliquid_rate_limiter()
        assert get_binance_rate_limiter() is not get_hyperliquid_rate_limiter()

    def test_defaults(self):
        """Defaults are conservative fractions of the published limits"""
        assert get_binance_rate_limiter().max_tokens == 60.0
        assert get_binance_rate_limiter().refill_rate == 28.0
        assert get_hyperliquid_rate_limiter().max_tokens == 30.0
        assert get_hyperliquid_rate_limiter().refill_rate == 14.0

    def test_configure_overrides_defaults(self):
        """configure_rate_limits() applies before first use"""
        configure_rate_limits({"hyperliquid": {"max_tokens": 12, "refill_rate": 3}, "unknown": {"max_tokens": 1}})
        limiter = get_hyperliquid_rate_limiter()
        assert limiter.max_tokens == 12.0
        assert limiter.refill_rate == 3.0
        assert get_binance_rate_limiter().max_tokens == 60.0
