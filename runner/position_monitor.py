"""
perpbot Runner: Position Monitor

Independent watchdog that closes open trades on stop-loss, take-profit or
trailing-stop. It runs in its own process on a short cadence so exits do not
wait for the (much slower) trading pipeline.

Per trade, per check:
1. Price: live venue mid -> last snapshot -> skip this trade
2. PnL and peak (peak only ever rises)
3. Exit priority: stop_loss > take_profit > trailing_stop
4. On exit: reduce-only market order (live only), then one atomic close

Lifecycle: status published every check; exits after IDLE_EXIT_CYCLES checks
with nothing open; the sleep between checks polls the mailbox, so "stop" ends
the worker and "run-now" starts the next check early. SIGINT/SIGTERM flush a
final "stopped" status.

Usage:
    python -m runner.position_monitor               # continuous
    python -m runner.position_monitor --once        # single check, JSON to stdout
"""

import argparse
import json
import logging
import os
import signal
import sqlite3
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import CriticalDataUnavailable, OrderPlacementError
from core.risk import RiskManager
from core.trade_store import Trade, TradeStore
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.status_channel import COMMAND_RUN_NOW, COMMAND_STOP, StatusChannel, read_json, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 15.0
IDLE_EXIT_CYCLES = 20
# SL/TP fallback distance per ATR multiple when a trade was stored without levels
FALLBACK_VOLATILITY_UNIT = 0.02

EXIT_STOP_LOSS = "stop_loss"
EXIT_TAKE_PROFIT = "take_profit"
EXIT_TRAILING_STOP = "trailing_stop"
EXIT_MANUAL = "manual"
EXIT_EMERGENCY = "emergency"
ALREADY_CLOSED = "already closed"


@dataclass
class MonitorStatus:
    state: str = "running"
    pid: int = field(default_factory=os.getpid)
    started_at: str = field(default_factory=utc_now_iso)
    check_count: int = 0
    closed_count: int = 0
    open_positions: int = 0
    last_check_at: Optional[str] = None
    interval_sec: float = DEFAULT_INTERVAL
    mode: str = "paper"
    stopped_at: Optional[str] = None
    stop_reason: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExitEvaluation:
    pnl: float
    pnl_pct: float
    peak_pnl_pct: float
    trailing_active: bool
    exit_reason: Optional[str] = None


@dataclass
class PositionCheck:
    trade_id: str
    symbol: str
    action: str               # hold | closed | skipped | close_failed | anomaly
    price: Optional[float] = None
    price_source: Optional[str] = None
    pnl_pct: Optional[float] = None
    peak_pnl_pct: Optional[float] = None
    exit_reason: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class CheckResult:
    positions: int = 0
    closed: int = 0
    already_closed: int = 0
    details: List[PositionCheck] = field(default_factory=list)

    def add(self, check: PositionCheck) -> None:
        if check.action == "closed":
            self.closed += 1
        elif check.detail == ALREADY_CLOSED:
            self.already_closed += 1
        self.details.append(check)

    @property
    def remaining_open(self) -> int:
        return self.positions - self.closed - self.already_closed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positions": self.positions,
            "closed": self.closed,
            "already_closed": self.already_closed,
            "details": [asdict(d) for d in self.details],
        }


def exit_levels(trade: Trade, params: Dict[str, Any]) -> Tuple[float, float]:
    """Stored SL/TP, or entry +/- ATR multiple x 2% when missing."""
    direction = trade.direction
    unit = trade.entry_price * FALLBACK_VOLATILITY_UNIT
    stop_loss = trade.stop_loss
    if not stop_loss:
        mult = float((params.get("stop_loss") or {}).get("atr_multiplier", 1.5))
        stop_loss = trade.entry_price - direction * unit * mult
    take_profit = trade.take_profit
    if not take_profit:
        mult = float((params.get("take_profit") or {}).get("atr_multiplier", 3.0))
        take_profit = trade.entry_price + direction * unit * mult
    return stop_loss, take_profit


def evaluate_exit(trade: Trade, price: float, risk: RiskManager, params: Dict[str, Any]) -> ExitEvaluation:
    """
    Pure exit decision for one trade at ``price``. First match wins:
    stop-loss, then take-profit, then trailing drawdown.
    """
    direction = trade.direction
    pnl = (price - trade.entry_price) * direction * trade.size
    pnl_pct = (price - trade.entry_price) / trade.entry_price * direction * 100.0
    peak = max(trade.peak_pnl_pct or 0.0, max(0.0, pnl_pct))
    trailing_active = bool(trade.trailing_activated) or risk.should_activate_trailing_stop(peak)
    evaluation = ExitEvaluation(pnl=pnl, pnl_pct=pnl_pct, peak_pnl_pct=peak, trailing_active=trailing_active)

    stop_loss, take_profit = exit_levels(trade, params)
    if (direction > 0 and price <= stop_loss) or (direction < 0 and price >= stop_loss):
        evaluation.exit_reason = EXIT_STOP_LOSS
    elif (direction > 0 and price >= take_profit) or (direction < 0 and price <= take_profit):
        evaluation.exit_reason = EXIT_TAKE_PROFIT
    elif trailing_active and risk.trailing_trigger(pnl_pct, peak):
        evaluation.exit_reason = EXIT_TRAILING_STOP
    return evaluation


def snapshot_price(snapshot_file: str, symbol: str) -> Optional[float]:
    """Hyperliquid mid, else Binance mark, from the last collection."""
    collection = read_json(snapshot_file) or {}
    for snap in collection.get("snapshots", []) or []:
        if snap.get("symbol") != symbol:
            continue
        for venue, key in (("hyperliquid", "mid_price"), ("binance", "mark_price")):
            try:
                value = float((snap.get(venue) or {}).get(key) or 0.0)
            except (TypeError, ValueError):
                continue
            if value > 0:
                return value
    return None


class PositionMonitor:
    """
    Args:
        config: Validated app config
        trade_store: TradeStore
        exchange: Venue with get_mid_price/place_market_order, or None
        channel: StatusChannel for this worker
        params_provider: Returns the effective trade parameters; called every
            check so overrides apply without restart
    """

    def __init__(
        self,
        config: Dict[str, Any],
        trade_store: TradeStore,
        exchange,
        channel: StatusChannel,
        params_provider: Callable[[], Dict[str, Any]],
        interval_sec: Optional[float] = None,
        metrics: Optional[MetricsRecorder] = None,
        alert_service: Optional[AlertService] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        monitor_cfg = config.get("monitor", {}) or {}
        self.config = config
        self.store = trade_store
        self.exchange = exchange
        self.channel = channel
        self.params_provider = params_provider
        self.paper = (config.get("general", {}) or {}).get("mode", "paper") != "live"
        self.interval_sec = float(interval_sec or monitor_cfg.get("interval_sec", DEFAULT_INTERVAL))
        self.idle_exit_cycles = int(monitor_cfg.get("idle_exit_cycles", IDLE_EXIT_CYCLES))
        self.control_poll_sec = float(monitor_cfg.get("control_poll_sec", 1.0))
        self.snapshot_file = (config.get("market_data", {}) or {}).get(
            "snapshot_file", "data/snapshots/latest.json"
        )
        self.metrics = metrics or MetricsRecorder(enabled=False, worker="monitor")
        self.alert_service = alert_service
        self._sleep = sleep
        self._clock = clock

        self.status = MonitorStatus(interval_sec=self.interval_sec, mode="paper" if self.paper else "live")
        self._last_prices: Dict[str, float] = {}
        self._api_error_streak = 0

    # ----- status -----
    def _publish(self) -> None:
        self.channel.publish(self.status.to_dict())

    def _finish(self, state: str, reason: str) -> None:
        self.status.state = state
        self.status.stop_reason = reason
        self.status.stopped_at = utc_now_iso()
        self._publish()
        logger.info(f"Position monitor {state}: {reason}")

    def _handle_signal(self, signum, _frame):
        name = signal.Signals(signum).name
        logger.warning(f"{name} received - stopping position monitor")
        self._finish("stopped", f"signal {name}")
        raise SystemExit(0)

    def _install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    # ----- venue -----
    def _record_api_error(self, risk: RiskManager, what: str) -> None:
        self._api_error_streak += 1
        limit = risk.max_consecutive_api_errors()
        if self._api_error_streak >= limit and not risk.is_kill_switch_active():
            reason = f"{self._api_error_streak} consecutive API errors (last: {what})"
            risk.create_kill_switch(reason)
            self.metrics.record_kill_switch()
            if self.alert_service:
                self.alert_service.notify(AlertSeverity.CRITICAL, "Kill switch tripped by position monitor", reason)

    def get_current_price(self, symbol: str, risk: RiskManager) -> Tuple[Optional[float], Optional[str]]:
        if self.exchange is not None:
            try:
                price = float(self.exchange.get_mid_price(symbol))
                self._api_error_streak = 0
                if price > 0:
                    return price, "venue"
            except (CriticalDataUnavailable, OSError, ValueError) as e:
                logger.warning(f"[{symbol}] venue price unavailable: {e}")
                self._record_api_error(risk, f"price {symbol}")
        price = snapshot_price(self.snapshot_file, symbol)
        if price:
            return price, "snapshot"
        return None, None

    # ----- checks -----
    def check_positions(self) -> CheckResult:
        params = self.params_provider()
        risk = RiskManager(params, self.store)
        trades = self.store.get_open_trades()
        result = CheckResult(positions=len(trades))
        for trade in trades:
            try:
                check = self._check_trade(trade, risk, params)
            except Exception as e:
                logger.exception(f"[{trade.symbol}] check failed for {trade.trade_id}")
                check = PositionCheck(trade.trade_id, trade.symbol, "skipped", detail=f"error: {e}")
            result.add(check)
        return result

    def _check_trade(self, trade: Trade, risk: RiskManager, params: Dict[str, Any]) -> PositionCheck:
        price, source = self.get_current_price(trade.symbol, risk)
        if price is None or price <= 0:
            logger.warning(f"[{trade.symbol}] no price available; holding {trade.trade_id}")
            return PositionCheck(trade.trade_id, trade.symbol, "skipped", detail="no price")

        previous = self._last_prices.get(trade.symbol)
        self._last_prices[trade.symbol] = price
        if previous is not None and risk.is_price_anomaly(previous, price):
            logger.warning(f"[{trade.symbol}] price anomaly {previous} -> {price}; holding this check")
            return PositionCheck(trade.trade_id, trade.symbol, "anomaly", price=price,
                                 price_source=source, detail=f"{previous} -> {price}")

        evaluation = evaluate_exit(trade, price, risk, params)
        if evaluation.peak_pnl_pct > (trade.peak_pnl_pct or 0.0):
            self.store.raise_peak(trade.trade_id, evaluation.peak_pnl_pct)
        if evaluation.trailing_active and not trade.trailing_activated:
            self.store.latch_trailing(trade.trade_id)
            logger.info(f"[{trade.symbol}] trailing stop armed at peak {evaluation.peak_pnl_pct:.2f}%")

        check = PositionCheck(
            trade.trade_id, trade.symbol, "hold", price=price, price_source=source,
            pnl_pct=round(evaluation.pnl_pct, 4), peak_pnl_pct=round(evaluation.peak_pnl_pct, 4),
        )
        if evaluation.exit_reason is None:
            return check

        return self._close_and_report(trade, price, evaluation, risk, params, check)

    def _close_and_report(self, trade: Trade, price: float, evaluation: ExitEvaluation,
                          risk: RiskManager, params: Dict[str, Any], check: PositionCheck) -> PositionCheck:
        check.exit_reason = evaluation.exit_reason
        try:
            closed = self._close(trade, price, evaluation, risk, params)
        except OrderPlacementError as e:
            logger.error(f"[{trade.symbol}] close failed for {trade.trade_id}: {e}")
            if self.alert_service:
                self.alert_service.notify(AlertSeverity.CRITICAL, f"Close failed for {trade.symbol}", str(e),
                                          {"trade_id": trade.trade_id, "exit_reason": evaluation.exit_reason})
            check.action = "close_failed"
            check.detail = str(e)
            return check
        if not closed:
            check.action = "skipped"
            check.detail = ALREADY_CLOSED
            return check
        check.action = "closed"
        return check

    def _close(self, trade: Trade, price: float, evaluation: ExitEvaluation,
               risk: RiskManager, params: Dict[str, Any]) -> bool:
        """
        Returns:
            False if the row was no longer open (another worker closed it first)
        """
        if not self.paper and trade.status == "open":
            if self.exchange is None:
                raise OrderPlacementError(trade.symbol, "no venue connection")
            try:
                self.exchange.place_market_order(trade.symbol, trade.side == "SHORT", trade.size, reduce_only=True)
            except OrderPlacementError:
                self._record_api_error(risk, f"close {trade.symbol}")
                raise
            self._api_error_streak = 0

        fee_rate = float(params.get("fee_rate", 0.0005))
        total_fees = (trade.fees or 0.0) + price * trade.size * fee_rate
        net_pnl = round(evaluation.pnl - total_fees, 4)
        closed = self.store.close_trade(
            trade.trade_id,
            exit_price=price,
            pnl=net_pnl,
            pnl_pct=round(evaluation.pnl_pct, 4),
            fees=round(total_fees, 6),
            exit_reason=evaluation.exit_reason,
        )
        if closed:
            self.metrics.record_position_closed(evaluation.exit_reason)
            logger.info(
                f"[{trade.symbol}] CLOSED {trade.side} {trade.trade_id} reason={evaluation.exit_reason} "
                f"exit={price} pnl={net_pnl} ({evaluation.pnl_pct:.2f}%)"
            )
        else:
            logger.warning(f"[{trade.symbol}] {trade.trade_id} was already closed elsewhere")
        return closed

    def close_all(self, reason: str = EXIT_MANUAL) -> CheckResult:
        """
        Close every open trade at the current price, ignoring exit levels and
        the anomaly guard. Live trades go out as reduce-only market orders.
        """
        params = self.params_provider()
        risk = RiskManager(params, self.store)
        trades = self.store.get_open_trades()
        result = CheckResult(positions=len(trades))
        logger.warning(f"Closing all {len(trades)} open trades (reason={reason})")
        for trade in trades:
            price, source = self.get_current_price(trade.symbol, risk)
            if price is None or price <= 0:
                # No price: record the exit at entry (zero gross PnL)
                price, source = trade.entry_price, "entry"
            evaluation = evaluate_exit(trade, price, risk, params)
            evaluation.exit_reason = reason
            check = PositionCheck(
                trade.trade_id, trade.symbol, "hold", price=price, price_source=source,
                pnl_pct=round(evaluation.pnl_pct, 4), peak_pnl_pct=round(evaluation.peak_pnl_pct, 4),
            )
            result.add(self._close_and_report(trade, price, evaluation, risk, params, check))
        return result

    # ----- loops -----
    def _wait(self, seconds: float) -> Optional[str]:
        """
        Sleep up to ``seconds`` in control_poll_sec slices.

        Returns:
            The stop or run-now command that cut the wait short, else None
        """
        deadline = self._clock() + max(0.0, seconds)
        while True:
            command = self.channel.consume_command()
            if command in (COMMAND_STOP, COMMAND_RUN_NOW):
                return command
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            self._sleep(min(self.control_poll_sec, remaining))

    def run_once(self) -> Dict[str, Any]:
        return self.check_positions().to_dict()

    def run_forever(self) -> int:
        """
        Returns:
            Process exit code (0 clean stop, 1 fatal error)
        """
        self._install_signal_handlers()
        self.status.state = "running"
        self._publish()
        logger.info(f"Position monitor started (interval={self.interval_sec}s, mode={self.status.mode})")

        idle_cycles = 0
        try:
            while True:
                if self.channel.consume_command() == COMMAND_STOP:
                    self._finish("stopped", "stop command")
                    return 0

                try:
                    result = self.check_positions()
                except sqlite3.Error as e:
                    logger.error(f"Trade store unavailable this check: {e}")
                    self.status.last_error = str(e)
                    result = None

                self.status.check_count += 1
                self.status.last_check_at = utc_now_iso()
                if result is not None:
                    self.status.closed_count += result.closed
                    self.status.open_positions = result.remaining_open
                    self.metrics.record_monitor_check(result.remaining_open)
                    idle_cycles = idle_cycles + 1 if result.remaining_open == 0 else 0
                self._publish()

                if idle_cycles >= self.idle_exit_cycles:
                    self._finish("stopped", "idle_timeout")
                    return 0

                if self._wait(self.interval_sec) == COMMAND_STOP:
                    self._finish("stopped", "stop command")
                    return 0
        except SystemExit:
            raise
        except Exception as e:
            logger.exception("Position monitor crashed")
            self.status.last_error = str(e)
            self._finish("error", f"fatal: {e}")
            return 1


def build_exchange(config: Dict[str, Any]):
    from core.exchange_hyperliquid import HyperliquidExchange
    try:
        return HyperliquidExchange.from_config(config)
    except Exception as e:
        logger.error(f"Venue connection failed ({e}); prices will come from snapshots only")
        return None


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="perpbot position monitor")
    parser.add_argument("--once", action="store_true", help="Run one check, print JSON and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between checks (default: 15)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from infra.config import bootstrap
    from infra.status_channel import channel_for
    from strategy.params import resolve_trade_params

    try:
        config = bootstrap(args.config_dir, "position_monitor.log")
    except ValueError as e:
        logger.error(str(e))
        return 1

    channel = channel_for("monitor", config)
    if not args.once:
        existing = channel.read_status()
        if existing and existing.get("state") in ("running", "idle") and existing.get("pid") != os.getpid():
            logger.info(f"Position monitor already running (pid={existing.get('pid')}); exiting")
            return 0

    monitoring = config.get("monitoring", {}) or {}
    metrics = MetricsRecorder(
        enabled=bool(monitoring.get("metrics_enabled")) and not args.once,
        port=int(monitoring.get("metrics_port", 9100)) + 1,
        worker="monitor",
    )
    metrics.start()

    monitor = PositionMonitor(
        config,
        TradeStore((config.get("database", {}) or {}).get("path", "data/trades.db")),
        build_exchange(config),
        channel,
        params_provider=lambda: resolve_trade_params(config),
        interval_sec=args.interval,
        metrics=metrics,
        alert_service=AlertService.from_config(config.get("alerts")),
    )

    if args.once:
        print(json.dumps(monitor.run_once(), default=str))
        return 0
    return monitor.run_forever()


if __name__ == "__main__":
    sys.exit(main())
