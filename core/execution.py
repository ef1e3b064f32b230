"""
perpbot Core: Execution Engine (pipeline step "trade")

Turns the current signal file into positions.

Per actionable signal:
1. Skip if the symbol is already held
2. RiskManager.validate_trade() (kill switch, limits, balance, daily loss, confidence)
3. RiskManager.calculate_position_size()
4. Live: set leverage, market order. Paper: record only.
5. Insert the Trade row with its entry fee

One failed order never blocks the rest; a streak of venue failures trips the
kill switch.

Usage:
    python -m core.execution --config-dir config
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import CriticalDataUnavailable, OrderPlacementError
from core.risk import RiskManager
from core.trade_store import Trade, TradeStore
from infra.status_channel import read_json

logger = logging.getLogger(__name__)

VENUE = "hyperliquid"


@dataclass
class ExecutionReport:
    mode: str
    balance: float = 0.0
    stale: bool = False
    executed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    kill_switch_tripped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def signal_age_seconds(collection: Dict[str, Any], now: Optional[datetime] = None) -> Optional[float]:
    """Age since the delegate review (``reviewed_at``) if there was one, else since ``generated_at``."""
    stamp = _parse_timestamp(collection.get("reviewed_at")) or _parse_timestamp(collection.get("generated_at"))
    if stamp is None:
        return None
    return ((now or datetime.now(timezone.utc)) - stamp).total_seconds()


class ExecutionEngine:
    """
    Args:
        params: Resolved trade parameters
        trade_store: TradeStore
        risk: RiskManager built from the same params
        exchange: Venue with get_balance/update_leverage/place_market_order
            (unused in paper mode)
        paper: Record trades without touching the venue
    """

    def __init__(self, params: Dict[str, Any], trade_store: TradeStore, risk: RiskManager,
                 exchange=None, paper: bool = True):
        self.params = params
        self.store = trade_store
        self.risk = risk
        self.exchange = exchange
        self.paper = paper
        self._api_error_streak = 0

    @property
    def mode(self) -> str:
        return "paper" if self.paper else "live"

    def resolve_balance(self) -> float:
        if self.paper:
            return float(self.params.get("paper_balance", 10000.0))
        return float(self.exchange.get_balance())

    def execute(self, collection: Optional[Dict[str, Any]]) -> ExecutionReport:
        report = ExecutionReport(mode=self.mode)
        if not collection or not collection.get("signals"):
            logger.info("No signals to execute")
            return report

        age = signal_age_seconds(collection)
        max_age = float(self.params.get("signal_max_age_seconds", 60))
        if age is None or age > max_age:
            logger.warning(f"Signals are stale (age={age}s, max={max_age}s); skipping execution")
            report.stale = True
            return report

        balance = self.resolve_balance()
        report.balance = balance
        self.store.insert_balance_snapshot(VENUE, balance, self.mode)
        start_balance = self.store.get_day_start_balance(VENUE, self.mode) or balance

        held = {t.symbol for t in self.store.get_open_trades()}
        for signal in collection["signals"]:
            if report.kill_switch_tripped:
                break
            self._execute_signal(signal, balance, start_balance, held, report)

        logger.info(
            f"Execution done ({self.mode}): executed={len(report.executed)} "
            f"skipped={len(report.skipped)} failed={len(report.failed)}"
        )
        return report

    def _execute_signal(self, signal: Dict[str, Any], balance: float, start_balance: float,
                        held: set, report: ExecutionReport) -> None:
        symbol = signal.get("symbol")
        side = signal.get("action")
        if side not in ("LONG", "SHORT"):
            return
        if symbol in held:
            report.skipped.append({"symbol": symbol, "reason": "position already open"})
            return

        confidence = float(signal.get("confidence", 0.0))
        verdict = self.risk.validate_trade(balance, start_balance, confidence)
        if not verdict.allowed:
            report.skipped.append({"symbol": symbol, "reason": verdict.reason})
            return

        entry_price = float(signal.get("entry_price", 0.0))
        stop_loss = float(signal.get("stop_loss", 0.0))
        leverage = self.risk.get_leverage()
        size = round(self.risk.calculate_position_size(balance, entry_price, stop_loss, leverage), 4)
        if size <= 0:
            report.skipped.append({"symbol": symbol, "reason": "position size is zero"})
            return

        fill_price = entry_price
        if not self.paper:
            try:
                self.exchange.update_leverage(symbol, leverage)
                order = self.exchange.place_market_order(symbol, side == "LONG", size)
            except OrderPlacementError as e:
                logger.error(f"[{symbol}] entry failed: {e}")
                report.failed.append({"symbol": symbol, "error": str(e)})
                self._record_api_error(report)
                return
            self._api_error_streak = 0
            fill_price = float(order.get("avg_price") or entry_price)
            size = float(order.get("filled_size") or size)

        fee_rate = float(self.params.get("fee_rate", 0.0005))
        prefix = "paper_" if self.paper else ""
        trade = Trade(
            trade_id=f"{prefix}{symbol}_{int(time.time() * 1000)}",
            symbol=symbol,
            side=side,
            entry_price=fill_price,
            size=size,
            leverage=leverage,
            status="paper" if self.paper else "open",
            stop_loss=stop_loss or None,
            take_profit=float(signal.get("take_profit") or 0.0) or None,
            signal_confidence=confidence,
            fees=round(fill_price * size * fee_rate, 6),
        )
        self.store.insert_trade(trade)
        held.add(symbol)
        report.executed.append({
            "trade_id": trade.trade_id,
            "symbol": symbol,
            "side": side,
            "size": size,
            "entry_price": fill_price,
            "leverage": leverage,
        })

    def _record_api_error(self, report: ExecutionReport) -> None:
        self._api_error_streak += 1
        limit = self.risk.max_consecutive_api_errors()
        if self._api_error_streak >= limit:
            self.risk.create_kill_switch(f"{self._api_error_streak} consecutive order failures")
            report.kill_switch_tripped = True


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Execute trades from the current signal file")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from infra.config import bootstrap
    from strategy.params import resolve_trade_params

    try:
        config = bootstrap(args.config_dir, "execution.log")
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    params = resolve_trade_params(config)
    store = TradeStore((config.get("database", {}) or {}).get("path", "data/trades.db"))
    risk = RiskManager(params, store)
    paper = (config.get("general", {}) or {}).get("mode", "paper") != "live"

    exchange = None
    if not paper:
        from core.exchange_hyperliquid import HyperliquidExchange
        exchange = HyperliquidExchange.from_config(config)

    signal_file = (config.get("analysis", {}) or {}).get("signal_file", "data/signals/latest.json")
    engine = ExecutionEngine(params, store, risk, exchange=exchange, paper=paper)
    try:
        report = engine.execute(read_json(signal_file))
    except CriticalDataUnavailable as e:
        logger.error(f"Execution aborted: {e}")
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    print(json.dumps({"ok": not report.failed, **report.to_dict()}))
    return 0 if not report.failed else 1


if __name__ == "__main__":
    sys.exit(main())
