"""
perpbot Core: Risk Manager

Trade admission, position sizing, kill switch, trailing stops and the
price-anomaly guard.

NO component (signals, delegate, or human via overrides) can trade past these
checks. Parameters come from strategy.params.resolve_trade_params(), so an
active override always wins over the static defaults.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from infra.status_channel import atomic_write_json, read_json

logger = logging.getLogger(__name__)

MIN_NOTIONAL_USD = 1.0


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    allowed: bool
    reason: Optional[str] = None
    check: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


class RiskManager:
    """
    Stateless apart from the kill-switch marker file; cheap to build per call.

    Args:
        params: Resolved trade parameters (trade_agent shape)
        trade_store: Anything with get_open_trades(), get_today_trade_count()
            and get_today_pnl()
        kill_switch_file: Overrides params["safety"]["kill_switch_file"]
    """

    def __init__(self, params: Dict[str, Any], trade_store=None, kill_switch_file: Optional[str] = None):
        self.params = params
        self.trade_store = trade_store
        safety = params.get("safety", {}) or {}
        self.kill_switch_file = Path(kill_switch_file or safety.get("kill_switch_file", "data/KILL_SWITCH"))

    # ----- parameter access -----
    @property
    def _risk(self) -> Dict[str, Any]:
        return self.params.get("risk", {}) or {}

    @property
    def _trailing(self) -> Dict[str, Any]:
        return self.params.get("trailing_stop", {}) or {}

    @property
    def _safety(self) -> Dict[str, Any]:
        return self.params.get("safety", {}) or {}

    # ----- kill switch -----
    def is_kill_switch_active(self) -> bool:
        """Existence of the marker file is the whole signal."""
        return self.kill_switch_file.exists()

    def kill_switch_info(self) -> Optional[Dict[str, Any]]:
        if not self.is_kill_switch_active():
            return None
        return read_json(self.kill_switch_file) or {"reason": "unknown"}

    def create_kill_switch(self, reason: str) -> None:
        """Trip the kill switch. Clearing is manual (delete the file)."""
        atomic_write_json(
            self.kill_switch_file,
            {"reason": reason, "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        logger.critical(f"KILL SWITCH ACTIVATED: {reason} ({self.kill_switch_file})")

    # ----- admission -----
    def check_can_trade(self) -> RiskCheckResult:
        """Kill switch, then daily trade count, then concurrent positions."""
        if self.is_kill_switch_active():
            info = self.kill_switch_info() or {}
            return RiskCheckResult(False, f"Kill switch active: {info.get('reason', 'unknown')}", "kill_switch")

        if self.trade_store is None:
            return RiskCheckResult(True)

        max_daily = int(self._risk.get("max_daily_trades", 0))
        today_count = self.trade_store.get_today_trade_count()
        if today_count >= max_daily:
            return RiskCheckResult(
                False, f"Daily trade limit reached ({today_count}/{max_daily})", "max_daily_trades"
            )

        max_open = int(self._risk.get("max_concurrent_positions", 0))
        open_count = len(self.trade_store.get_open_trades())
        if open_count >= max_open:
            return RiskCheckResult(
                False, f"Max concurrent positions reached ({open_count}/{max_open})", "max_concurrent_positions"
            )

        return RiskCheckResult(True)

    def check_min_balance(self, balance: float) -> RiskCheckResult:
        minimum = float(self._risk.get("min_balance_usdc", 0))
        if balance < minimum:
            return RiskCheckResult(False, f"Balance ${balance:.2f} below minimum ${minimum:.2f}", "min_balance")
        return RiskCheckResult(True)

    def check_daily_loss(self, current_balance: float, start_balance: float) -> RiskCheckResult:
        """Block once today's realized loss reaches max_daily_loss of the day's starting balance."""
        if self.trade_store is None:
            return RiskCheckResult(True)
        today_pnl = self.trade_store.get_today_pnl()
        if today_pnl >= 0:
            return RiskCheckResult(True)

        base = start_balance if start_balance > 0 else current_balance
        limit = float(self._risk.get("max_daily_loss", 0))
        if base <= 0:
            return RiskCheckResult(False, "Daily loss with no balance to measure against", "daily_loss")

        loss_pct = abs(today_pnl) / base
        if loss_pct >= limit:
            return RiskCheckResult(
                False, f"Daily loss limit hit ({loss_pct:.2%} >= {limit:.2%})", "daily_loss"
            )
        return RiskCheckResult(True)

    def check_signal_confidence(self, confidence: float) -> RiskCheckResult:
        minimum = float(self._risk.get("min_signal_confidence", 0))
        if confidence < minimum:
            return RiskCheckResult(
                False, f"Signal confidence {confidence:.2f} below minimum {minimum:.2f}", "signal_confidence"
            )
        return RiskCheckResult(True)

    def validate_trade(self, balance: float, start_balance: float, confidence: float) -> RiskCheckResult:
        """Run every admission check in fixed order; the first failure wins."""
        checks = (
            self.check_can_trade,
            lambda: self.check_min_balance(balance),
            lambda: self.check_daily_loss(balance, start_balance),
            lambda: self.check_signal_confidence(confidence),
        )
        for check in checks:
            result = check()
            if not result.allowed:
                logger.info(f"Trade blocked: {result.reason}")
                return result
        return RiskCheckResult(True)

    # ----- sizing -----
    def calculate_position_size(
        self, balance: float, entry_price: float, stop_loss: float, leverage: float
    ) -> float:
        """
        Size (in coins) risking risk_per_trade of balance at the stop, capped by
        max_position_pct of balance at ``leverage``.

        Returns:
            0.0 for non-positive inputs, a stop at entry, or notional under $1
        """
        if balance <= 0 or entry_price <= 0 or stop_loss <= 0 or leverage <= 0:
            return 0.0
        stop_distance = abs(entry_price - stop_loss) / entry_price
        if stop_distance == 0:
            return 0.0

        risk_amount = balance * float(self._risk.get("risk_per_trade", 0))
        raw_size = risk_amount / stop_distance / entry_price
        max_size = balance * float(self._risk.get("max_position_pct", 0)) * leverage / entry_price
        size = min(raw_size, max_size)

        if size * entry_price < MIN_NOTIONAL_USD:
            return 0.0
        return size

    def get_leverage(self) -> float:
        leverage = self.params.get("leverage", {}) or {}
        return float(min(leverage.get("default", 1), leverage.get("max", 1)))

    def get_max_leverage(self) -> float:
        return float((self.params.get("leverage", {}) or {}).get("max", 1))

    # ----- trailing stop -----
    def should_activate_trailing_stop(self, peak_pnl_pct: float) -> bool:
        if not self._trailing.get("enabled", True):
            return False
        return peak_pnl_pct >= float(self._trailing.get("activation_pct", 0))

    def should_trigger_trailing_stop(self, current_pnl_pct: float, peak_pnl_pct: float) -> bool:
        """Flat trail: fire when the drawdown from peak reaches trail_pct."""
        return (peak_pnl_pct - current_pnl_pct) >= float(self._trailing.get("trail_pct", 0))

    def _tiers(self) -> List[List[float]]:
        return sorted(
            (list(t) for t in self._trailing.get("tiers", []) or []),
            key=lambda t: t[0],
        )

    def get_progressive_trail_pct(self, peak_pnl_pct: float) -> float:
        """
        Trail width for the highest tier whose profit threshold the peak has
        reached. Below the first tier the flat trail_pct applies.
        """
        trail = float(self._trailing.get("trail_pct", 0))
        for profit_pct, tier_trail in self._tiers():
            if peak_pnl_pct >= profit_pct:
                trail = float(tier_trail)
            else:
                break
        return trail

    def should_trigger_progressive_trailing(self, current_pnl_pct: float, peak_pnl_pct: float) -> bool:
        return (peak_pnl_pct - current_pnl_pct) >= self.get_progressive_trail_pct(peak_pnl_pct)

    def trailing_trigger(self, current_pnl_pct: float, peak_pnl_pct: float) -> bool:
        """Dispatch on trailing_stop.mode (progressive by default)."""
        if self._trailing.get("mode", "progressive") == "flat":
            return self.should_trigger_trailing_stop(current_pnl_pct, peak_pnl_pct)
        return self.should_trigger_progressive_trailing(current_pnl_pct, peak_pnl_pct)

    # ----- data sanity -----
    def is_price_anomaly(self, old_price: float, new_price: float) -> bool:
        """True if the move exceeds price_anomaly_threshold percent."""
        if old_price is None or new_price is None or old_price <= 0:
            return False
        change_pct = abs(new_price - old_price) / old_price * 100.0
        return change_pct >= float(self._safety.get("price_anomaly_threshold", 10.0))

    def max_consecutive_api_errors(self) -> int:
        return int(self._safety.get("max_consecutive_api_errors", 5))
