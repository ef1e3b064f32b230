"""
perpbot Core: Hyperliquid Exchange

Thin wrapper over hyperliquid-python-sdk for the handful of calls the bot
needs: mids, account value, leverage, market entries, reduce-only exits and
USDC moves between the spot (reserve) and perp (margin) accounts.
Every call passes through the process-wide Hyperliquid rate limiter.
"""

import logging
import os
from typing import Any, Dict, Optional, Tuple

from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from core.exceptions import CriticalDataUnavailable, OrderPlacementError, TransferError
from infra.rate_limiter import RateLimiter, get_hyperliquid_rate_limiter

logger = logging.getLogger(__name__)

PRIVATE_KEY_ENV = "HYPERLIQUID_PRIVATE_KEY"
ACCOUNT_ADDRESS_ENV = "HYPERLIQUID_ACCOUNT_ADDRESS"


def parse_order_response(result: Optional[Dict[str, Any]]) -> Tuple[bool, str, float, float, str]:
    """
    Parse an SDK order response.

    Returns:
        (success, order_id, filled_size, avg_price, error)
    """
    if not result:
        return False, "", 0.0, 0.0, "No response from exchange"
    if result.get("status") != "ok":
        return False, "", 0.0, 0.0, str(result.get("response") or result.get("error") or result)

    response = result.get("response", {})
    data = response.get("data", {}) if isinstance(response, dict) else {}
    statuses = data.get("statuses", []) if isinstance(data, dict) else []
    info = statuses[0] if statuses and isinstance(statuses[0], dict) else {}

    if "error" in info:
        return False, "", 0.0, 0.0, str(info["error"])
    if "filled" in info:
        filled = info["filled"]
        return True, str(filled.get("oid", "")), float(filled.get("totalSz", 0)), float(filled.get("avgPx", 0)), ""
    if "resting" in info:
        return True, str(info["resting"].get("oid", "")), 0.0, 0.0, ""
    return True, "", 0.0, 0.0, ""


class HyperliquidExchange:
    """
    Hyperliquid perps access.

    Read-only when no private key is configured: price and balance reads work,
    order placement raises OrderPlacementError.
    """

    def __init__(
        self,
        base_url: str = "https://api.hyperliquid.xyz",
        private_key: Optional[str] = None,
        account_address: Optional[str] = None,
        slippage: float = 0.01,
        limiter: Optional[RateLimiter] = None,
    ):
        self.base_url = base_url
        self.slippage = slippage
        self.limiter = limiter or get_hyperliquid_rate_limiter()
        self.info = Info(base_url, skip_ws=True)

        private_key = private_key or os.getenv(PRIVATE_KEY_ENV)
        self.wallet = Account.from_key(private_key) if private_key else None
        self.account_address = (
            account_address
            or os.getenv(ACCOUNT_ADDRESS_ENV)
            or (self.wallet.address if self.wallet else None)
        )
        self.exchange = (
            Exchange(self.wallet, base_url, account_address=self.account_address)
            if self.wallet
            else None
        )
        logger.info(
            f"HyperliquidExchange ready (base_url={base_url}, "
            f"trading={'enabled' if self.exchange else 'read-only'})"
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "HyperliquidExchange":
        exchange_cfg = config.get("exchange", {}) or {}
        trade_cfg = config.get("trade_agent", {}) or {}
        return cls(
            base_url=exchange_cfg.get("hyperliquid_base_url", "https://api.hyperliquid.xyz"),
            slippage=float(trade_cfg.get("slippage", 0.01)),
        )

    # ----- reads -----
    def get_all_mids(self) -> Dict[str, float]:
        self.limiter.acquire_endpoint("allMids")
        try:
            mids = self.info.all_mids()
        except Exception as e:
            raise CriticalDataUnavailable("hyperliquid.allMids", e) from e
        return {coin: float(px) for coin, px in (mids or {}).items()}

    def get_mid_price(self, symbol: str) -> float:
        """Mid for ``symbol``; 0.0 if the venue does not list it."""
        return self.get_all_mids().get(symbol, 0.0)

    def get_balance(self) -> float:
        """Account value in USDC."""
        if not self.account_address:
            raise CriticalDataUnavailable("hyperliquid.clearinghouseState: no account address")
        self.limiter.acquire_endpoint("clearinghouseState")
        try:
            state = self.info.user_state(self.account_address)
        except Exception as e:
            raise CriticalDataUnavailable("hyperliquid.clearinghouseState", e) from e
        summary = (state or {}).get("marginSummary", {}) or {}
        return float(summary.get("accountValue", 0.0))

    def get_spot_usdc(self) -> float:
        """USDC held in the spot account."""
        if not self.account_address:
            raise CriticalDataUnavailable("hyperliquid.spotClearinghouseState: no account address")
        self.limiter.acquire_endpoint("spotClearinghouseState")
        try:
            state = self.info.spot_user_state(self.account_address)
        except Exception as e:
            raise CriticalDataUnavailable("hyperliquid.spotClearinghouseState", e) from e
        for balance in (state or {}).get("balances", []) or []:
            if str(balance.get("coin") or "").upper() == "USDC":
                return float(balance.get("total") or 0.0)
        return 0.0

    # ----- writes -----
    def _require_trading(self, symbol: str) -> Exchange:
        if self.exchange is None:
            raise OrderPlacementError(symbol, f"no private key configured ({PRIVATE_KEY_ENV})")
        return self.exchange

    def update_leverage(self, symbol: str, leverage: float, is_cross: bool = True) -> None:
        exchange = self._require_trading(symbol)
        self.limiter.acquire_endpoint("updateLeverage")
        try:
            result = exchange.update_leverage(int(leverage), symbol, is_cross)
        except Exception as e:
            raise OrderPlacementError(symbol, f"update_leverage failed: {e}") from e
        if not result or result.get("status") != "ok":
            raise OrderPlacementError(symbol, f"update_leverage rejected: {result}", result)

    def place_market_order(
        self, symbol: str, is_buy: bool, size: float, reduce_only: bool = False
    ) -> Dict[str, Any]:
        """
        Market (aggressive IOC) order. ``reduce_only`` closes against the open
        position and can never flip it.

        Returns:
            {"order_id", "filled_size", "avg_price"}

        Raises:
            OrderPlacementError: On any failure or rejection
        """
        exchange = self._require_trading(symbol)
        self.limiter.acquire_endpoint("order")
        try:
            if reduce_only:
                result = exchange.market_close(symbol, sz=size, slippage=self.slippage)
            else:
                result = exchange.market_open(symbol, is_buy, size, slippage=self.slippage)
        except Exception as e:
            raise OrderPlacementError(symbol, f"order submission failed: {e}") from e

        ok, order_id, filled, avg_px, error = parse_order_response(result)
        if not ok:
            raise OrderPlacementError(symbol, error, result)

        logger.info(
            f"[{symbol}] MARKET {'BUY' if is_buy else 'SELL'} {size:g}"
            f"{' reduce-only' if reduce_only else ''} oid={order_id} filled={filled:g} @ {avg_px:g}"
        )
        return {"order_id": order_id, "filled_size": filled, "avg_price": avg_px}

    def usd_class_transfer(self, amount: float, to_perp: bool) -> Dict[str, Any]:
        """
        Move USDC between spot and perp on the same account.

        Raises:
            TransferError: On any failure or rejection
        """
        if self.exchange is None:
            raise TransferError(f"no private key configured ({PRIVATE_KEY_ENV})")
        self.limiter.acquire_endpoint("usdClassTransfer")
        try:
            result = self.exchange.usd_class_transfer(round(float(amount), 2), to_perp)
        except Exception as e:
            raise TransferError(f"usd_class_transfer failed: {e}") from e
        if not result or result.get("status") != "ok":
            raise TransferError(f"usd_class_transfer rejected: {result}", result)
        logger.info(f"Transferred {amount:.2f} USDC {'spot -> perp' if to_perp else 'perp -> spot'}")
        return result
