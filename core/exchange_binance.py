"""
perpbot Core: Binance USD-M Futures (public reads)

Reference prices for the spread analysis. Public endpoints only; no keys.
"""

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from core.exceptions import CriticalDataUnavailable
from infra.rate_limiter import RateLimiter, get_binance_rate_limiter

logger = logging.getLogger(__name__)


class BinanceFutures:
    def __init__(
        self,
        base_url: str = "https://fapi.binance.com",
        timeout: float = 10.0,
        limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.limiter = limiter or get_binance_rate_limiter()
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "BinanceFutures":
        exchange_cfg = config.get("exchange", {}) or {}
        return cls(
            base_url=exchange_cfg.get("binance_base_url", "https://fapi.binance.com"),
            timeout=float(exchange_cfg.get("request_timeout_sec", 10.0)),
        )

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, max_retries: int = 3) -> Any:
        """
        GET with exponential backoff.

        Retries on 429, 5xx and network errors; other 4xx raise immediately.
        """
        url = f"{self.base_url}/fapi/v1/{endpoint}"
        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            self.limiter.acquire_endpoint(endpoint)
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.json()
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Binance API client error: {status_code} on {endpoint}")
                    raise CriticalDataUnavailable(f"binance.{endpoint}", e) from e
                logger.warning(f"Binance {status_code} on {endpoint}, attempt {attempt + 1}/{max_retries}")
                last_exception = e
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                time.sleep(backoff)

        raise CriticalDataUnavailable(f"binance.{endpoint}", last_exception)

    def get_premium_index(self, pair: str) -> Dict[str, float]:
        """Mark price and last funding rate for ``pair`` (e.g. BTCUSDT)."""
        data = self._get("premiumIndex", {"symbol": pair})
        return {
            "mark_price": float(data.get("markPrice", 0.0)),
            "index_price": float(data.get("indexPrice", 0.0)),
            "funding_rate": float(data.get("lastFundingRate", 0.0)),
        }
