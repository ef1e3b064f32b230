"""
Rate Limiter with Token Bucket Algorithm

Pre-emptive, blocking rate limiting for the upstream market APIs so we never
collect a 429 (or an IP ban) from the venues.

Each upstream API gets one limiter per process. A request declares a weight;
if the bucket is short, the caller sleeps for exactly the deficit divided by
the refill rate and then proceeds. Requests are never rejected.

Published limits (conservative fractions are used below):
- Binance USD-M futures: 2400 weight/min per IP  -> burst 60, 28 tokens/s
- Hyperliquid info/exchange: 1200 weight/min     -> burst 30, 14 tokens/s

Limits are per process. Two workers sharing one IP each get the full budget,
which over-approximates the real shared quota.
"""
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


BINANCE_WEIGHTS: Dict[str, int] = {
    "premiumIndex": 1,
    "depth": 5,
    "ticker/24hr": 1,
    "klines": 5,
}

HYPERLIQUID_WEIGHTS: Dict[str, int] = {
    "allMids": 1,
    "l2Book": 1,
    "meta": 1,
    "clearinghouseState": 1,
    "order": 2,
    "updateLeverage": 1,
    "spotClearinghouseState": 1,
    "usdClassTransfer": 2,
}


@dataclass
class TokenBucket:
    """
    Token bucket state.

    Tokens replenish continuously at ``refill_rate`` per second, capped at
    ``capacity``. The bucket starts full.
    """
    capacity: float  # Max tokens (burst capacity)
    refill_rate: float  # Tokens per second
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        if self.capacity <= 0 or self.refill_rate <= 0:
            raise ValueError(
                f"capacity and refill_rate must be positive "
                f"(got capacity={self.capacity}, refill_rate={self.refill_rate})"
            )
        self.tokens = self.capacity
        self.last_refill = time.monotonic()

    def refill(self) -> None:
        """Refill tokens based on elapsed time"""
        now = time.monotonic()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens.

        Returns:
            True if tokens were available and consumed, False otherwise
        """
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """
        Seconds until ``tokens`` are available (0 if available now).
        """
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class RateLimitStats:
    """Counters for rate limit monitoring"""
    total_requests: int = 0
    total_waits: int = 0
    total_wait_seconds: float = 0.0
    max_wait_seconds: float = 0.0

    def record(self, wait_seconds: float) -> None:
        self.total_requests += 1
        if wait_seconds > 0:
            self.total_waits += 1
            self.total_wait_seconds += wait_seconds
            self.max_wait_seconds = max(self.max_wait_seconds, wait_seconds)


class RateLimiter:
    """
    Blocking token-bucket limiter for a single upstream API.

    Usage:
        limiter = get_hyperliquid_rate_limiter()
        limiter.acquire_endpoint("allMids")
        # ... make API call ...
    """

    def __init__(
        self,
        name: str,
        max_tokens: float,
        refill_rate: float,
        weights: Optional[Dict[str, int]] = None,
    ):
        """
        Args:
            name: Label used in logs and stats
            max_tokens: Burst capacity
            refill_rate: Tokens added per second
            weights: Endpoint name -> weight table (unknown endpoints weigh 1)
        """
        self.name = name
        self._bucket = TokenBucket(capacity=float(max_tokens), refill_rate=float(refill_rate))
        self._weights = dict(weights or {})
        self._stats = RateLimitStats()
        self._lock = Lock()

        logger.info(
            f"Initialized RateLimiter[{name}]: burst={max_tokens}, refill={refill_rate}/s"
        )

    @property
    def max_tokens(self) -> float:
        return self._bucket.capacity

    @property
    def refill_rate(self) -> float:
        return self._bucket.refill_rate

    def acquire(self, weight: float = 1.0) -> float:
        """
        Take ``weight`` tokens, sleeping for the deficit if the bucket is short.

        The wait happens under the lock, so concurrent callers queue behind
        each other instead of racing for the same refill.

        Returns:
            Seconds slept (0 if no wait was needed)
        """
        weight = float(weight)
        if weight <= 0:
            return 0.0
        if weight > self._bucket.capacity:
            logger.warning(
                f"RateLimiter[{self.name}]: weight {weight} exceeds burst "
                f"{self._bucket.capacity}; request will wait for a full refill"
            )

        with self._lock:
            if self._bucket.consume(weight):
                self._stats.record(0.0)
                return 0.0

            wait_seconds = self._bucket.wait_time(weight)
            logger.debug(f"RateLimiter[{self.name}]: throttling {wait_seconds:.3f}s (weight={weight})")
            time.sleep(wait_seconds)
            self._bucket.refill()
            self._bucket.tokens = max(0.0, self._bucket.tokens - weight)
            self._stats.record(wait_seconds)
            return wait_seconds

    def acquire_endpoint(self, endpoint: str) -> float:
        """Acquire the configured weight for ``endpoint``."""
        return self.acquire(self.weight_for(endpoint))

    def weight_for(self, endpoint: str) -> int:
        return self._weights.get(endpoint, 1)

    def available_tokens(self) -> float:
        with self._lock:
            self._bucket.refill()
            return self._bucket.tokens

    def get_stats(self) -> Dict[str, float]:
        """Snapshot of limiter counters"""
        with self._lock:
            self._bucket.refill()
            return {
                "name": self.name,
                "tokens": round(self._bucket.tokens, 3),
                "max_tokens": self._bucket.capacity,
                "refill_rate": self._bucket.refill_rate,
                "total_requests": self._stats.total_requests,
                "total_waits": self._stats.total_waits,
                "total_wait_seconds": round(self._stats.total_wait_seconds, 3),
                "max_wait_seconds": round(self._stats.max_wait_seconds, 3),
            }


# Process-wide limiters, one per upstream API
_limiters: Dict[str, RateLimiter] = {}
_registry_lock = Lock()

_DEFAULTS = {
    "binance": (60.0, 28.0, BINANCE_WEIGHTS),
    "hyperliquid": (30.0, 14.0, HYPERLIQUID_WEIGHTS),
}


def configure_rate_limits(rate_limits: Optional[Dict[str, Dict[str, float]]]) -> None:
    """
    Override default burst/refill per API from config
    (``exchange.rate_limits.{binance,hyperliquid}.{max_tokens,refill_rate}``).

    Must be called before the first ``get_*_rate_limiter()`` call to take effect.
    """
    for api, cfg in (rate_limits or {}).items():
        if api not in _DEFAULTS or not cfg:
            continue
        max_tokens, refill_rate, weights = _DEFAULTS[api]
        _DEFAULTS[api] = (
            float(cfg.get("max_tokens", max_tokens)),
            float(cfg.get("refill_rate", refill_rate)),
            weights,
        )


def _get_limiter(api: str) -> RateLimiter:
    with _registry_lock:
        limiter = _limiters.get(api)
        if limiter is None:
            max_tokens, refill_rate, weights = _DEFAULTS[api]
            limiter = RateLimiter(api, max_tokens, refill_rate, weights)
            _limiters[api] = limiter
        return limiter


def get_binance_rate_limiter() -> RateLimiter:
    return _get_limiter("binance")


def get_hyperliquid_rate_limiter() -> RateLimiter:
    return _get_limiter("hyperliquid")


def _reset_for_testing() -> None:
    with _registry_lock:
        _limiters.clear()
        _DEFAULTS["binance"] = (60.0, 28.0, BINANCE_WEIGHTS)
        _DEFAULTS["hyperliquid"] = (30.0, 14.0, HYPERLIQUID_WEIGHTS)
