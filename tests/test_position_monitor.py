"""
Tests for the position monitor: exit evaluation, closing, peak/latch
persistence and the worker lifecycle.
"""
import sqlite3
from unittest.mock import MagicMock

import pytest

from core.exceptions import CriticalDataUnavailable, OrderPlacementError
from core.risk import RiskManager
from infra.status_channel import COMMAND_RUN_NOW, COMMAND_STOP, atomic_write_json, channel_for
from runner.position_monitor import PositionMonitor, evaluate_exit, exit_levels, snapshot_price
from strategy.params import resolve_trade_params


class FakeClock:
    """Monotonic clock that only moves when the monitor sleeps."""

    def __init__(self):
        self.now = 500.0
        self.sleeps = []
        self.on_sleep = None

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep(len(self.sleeps))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    ex = MagicMock()
    ex.get_mid_price.return_value = 100.0
    ex.place_market_order.return_value = {"order_id": "1", "filled_size": 1.0, "avg_price": 100.0}
    return ex


@pytest.fixture
def make_monitor(app_config, store, exchange, clock, monkeypatch):
    def _make(config=None, **kwargs):
        config = config or app_config
        monitor = PositionMonitor(
            config,
            kwargs.pop("trade_store", store),
            kwargs.pop("exchange", exchange),
            channel_for("monitor", config),
            params_provider=lambda: resolve_trade_params(config),
            sleep=kwargs.pop("sleep", clock.sleep),
            clock=kwargs.pop("clock", clock.time),
            **kwargs,
        )
        monkeypatch.setattr(monitor, "_install_signal_handlers", lambda: None)
        return monitor
    return _make


class TestExitEvaluation:
    """Test evaluate_exit() decisions"""

    def test_long_stop_loss(self, params, make_trade):
        trade = make_trade(stop_loss=95.0, take_profit=110.0)
        ev = evaluate_exit(trade, 94.0, RiskManager(params), params)
        assert ev.exit_reason == "stop_loss"
        assert ev.pnl == pytest.approx(-6.0)
        assert ev.pnl_pct == pytest.approx(-6.0)

    def test_long_take_profit(self, params, make_trade):
        trade = make_trade(stop_loss=95.0, take_profit=110.0)
        assert evaluate_exit(trade, 110.0, RiskManager(params), params).exit_reason == "take_profit"

    def test_short_levels_mirror(self, params, make_trade):
        trade = make_trade(side="SHORT", stop_loss=105.0, take_profit=90.0)
        risk = RiskManager(params)
        assert evaluate_exit(trade, 105.5, risk, params).exit_reason == "stop_loss"
        assert evaluate_exit(trade, 89.0, risk, params).exit_reason == "take_profit"
        ev = evaluate_exit(trade, 98.0, risk, params)
        assert ev.exit_reason is None
        assert ev.pnl_pct == pytest.approx(2.0)

    def test_stop_loss_has_priority(self, params, make_trade):
        """When both levels match, stop-loss wins"""
        trade = make_trade(stop_loss=105.0, take_profit=95.0)
        assert evaluate_exit(trade, 100.0, RiskManager(params), params).exit_reason == "stop_loss"

    def test_trailing_after_activation(self, params, make_trade):
        """Armed trailing fires on a retrace past the tier trail"""
        trade = make_trade(stop_loss=90.0, take_profit=120.0, peak_pnl_pct=3.0, trailing_activated=1)
        ev = evaluate_exit(trade, 102.5, RiskManager(params), params)
        assert ev.exit_reason == "trailing_stop"

    def test_trailing_not_armed(self, params, make_trade):
        """Below activation a retrace does nothing"""
        trade = make_trade(stop_loss=90.0, take_profit=120.0, peak_pnl_pct=1.0)
        ev = evaluate_exit(trade, 100.2, RiskManager(params), params)
        assert ev.exit_reason is None
        assert not ev.trailing_active

    def test_peak_never_decreases(self, params, make_trade):
        trade = make_trade(stop_loss=90.0, take_profit=120.0, peak_pnl_pct=1.0)
        ev = evaluate_exit(trade, 99.0, RiskManager(params), params)
        assert ev.peak_pnl_pct == 1.0

    def test_fallback_levels(self, params, make_trade):
        """Missing SL/TP derive from the ATR multipliers x 2%"""
        stop, target = exit_levels(make_trade(), params)
        sl_mult = params["stop_loss"]["atr_multiplier"]
        tp_mult = params["take_profit"]["atr_multiplier"]
        assert stop == pytest.approx(100.0 - 2.0 * sl_mult)
        assert target == pytest.approx(100.0 + 2.0 * tp_mult)

        short_stop, short_target = exit_levels(make_trade(side="SHORT"), params)
        assert short_stop == pytest.approx(100.0 + 2.0 * sl_mult)
        assert short_target == pytest.approx(100.0 - 2.0 * tp_mult)


class TestCheckPositions:
    """Test check_positions() side effects"""

    def test_paper_close_records_net_pnl(self, make_monitor, store, exchange, make_trade):
        """Paper trades close in the store without touching the venue"""
        trade = make_trade(status="paper", stop_loss=95.0, take_profit=105.0)
        store.insert_trade(trade)
        exchange.get_mid_price.return_value = 106.0

        result = make_monitor().check_positions()

        assert result.closed == 1
        exchange.place_market_order.assert_not_called()
        closed = store.get_trade(trade.trade_id)
        assert closed.status == "closed"
        assert closed.exit_reason == "take_profit"
        assert closed.exit_price == 106.0
        assert closed.pnl_pct == pytest.approx(6.0)
        assert closed.pnl == pytest.approx(6.0 - 106.0 * 0.0005)

    def test_live_close_is_reduce_only(self, make_monitor, app_config, store, exchange, make_trade):
        """Live exits send a reduce-only order on the opposite side"""
        app_config["general"]["mode"] = "live"
        long_trade = make_trade(stop_loss=95.0, take_profit=105.0)
        short_trade = make_trade(symbol="ETH", side="SHORT", stop_loss=105.0, take_profit=95.0)
        store.insert_trade(long_trade)
        store.insert_trade(short_trade)
        exchange.get_mid_price.return_value = 94.0

        result = make_monitor().check_positions()

        assert result.closed == 2
        exchange.place_market_order.assert_any_call("BTC", False, 1.0, reduce_only=True)
        exchange.place_market_order.assert_any_call("ETH", True, 1.0, reduce_only=True)

    def test_failed_close_keeps_trade_open(self, make_monitor, app_config, store, exchange, make_trade):
        app_config["general"]["mode"] = "live"
        trade = make_trade(stop_loss=95.0, take_profit=105.0)
        store.insert_trade(trade)
        exchange.get_mid_price.return_value = 90.0
        exchange.place_market_order.side_effect = OrderPlacementError("BTC", "rejected")

        alerts = MagicMock()

        result = make_monitor(alert_service=alerts).check_positions()

        assert result.closed == 0
        assert result.details[0].action == "close_failed"
        assert store.get_trade(trade.trade_id).status == "open"
        assert alerts.notify.call_args[0][1] == "Close failed for BTC"

    def test_already_closed_trade_not_counted(self, make_monitor, store, exchange, make_trade):
        """A trade another worker closed first is reported as skipped"""
        trade = make_trade(status="paper", stop_loss=95.0, take_profit=105.0)
        store.insert_trade(trade)
        store.close_trade(trade.trade_id, exit_price=104.0, pnl=4.0, pnl_pct=4.0, fees=0.0, exit_reason="manual")
        stale_view = MagicMock(wraps=store)
        stale_view.get_open_trades.return_value = [trade]
        exchange.get_mid_price.return_value = 106.0
        monitor = make_monitor(trade_store=stale_view)

        result = monitor.check_positions()

        assert result.closed == 0
        assert result.remaining_open == 0
        assert result.details[0].action == "skipped"
        assert result.details[0].detail == "already closed"
        assert store.get_trade(trade.trade_id).exit_reason == "manual"

    def test_peak_and_latch_persisted(self, make_monitor, store, exchange, make_trade):
        """A new peak above activation is stored and the trailing latch set"""
        trade = make_trade(stop_loss=90.0, take_profit=120.0)
        store.insert_trade(trade)
        exchange.get_mid_price.return_value = 103.0

        make_monitor().check_positions()

        stored = store.get_trade(trade.trade_id)
        assert stored.peak_pnl_pct == pytest.approx(3.0)
        assert stored.trailing_activated == 1
        assert stored.status == "open"

    def test_latched_trailing_closes_on_retrace(self, make_monitor, store, exchange, make_trade):
        trade = make_trade(stop_loss=90.0, take_profit=120.0)
        store.insert_trade(trade)
        monitor = make_monitor()

        exchange.get_mid_price.return_value = 103.0
        monitor.check_positions()
        exchange.get_mid_price.return_value = 102.5
        result = monitor.check_positions()

        assert result.details[0].exit_reason == "trailing_stop"
        assert store.get_trade(trade.trade_id).exit_reason == "trailing_stop"

    def test_exits_ignore_kill_switch(self, make_monitor, params, store, exchange, make_trade):
        """Risk-reducing exits proceed while the kill switch is active"""
        RiskManager(params).create_kill_switch("halted")
        trade = make_trade(stop_loss=95.0, take_profit=105.0)
        store.insert_trade(trade)
        exchange.get_mid_price.return_value = 94.0

        assert make_monitor().check_positions().closed == 1

    def test_snapshot_fallback(self, make_monitor, app_config, store, exchange, make_trade):
        """Venue failure falls back to the last snapshot price"""
        atomic_write_json(app_config["market_data"]["snapshot_file"], {
            "snapshots": [{"symbol": "BTC", "hyperliquid": {"mid_price": 101.0}, "binance": {"mark_price": 101.2}}],
        })
        store.insert_trade(make_trade(stop_loss=95.0, take_profit=105.0))
        exchange.get_mid_price.side_effect = CriticalDataUnavailable("hyperliquid.allMids")

        result = make_monitor().check_positions()

        assert result.details[0].price == 101.0
        assert result.details[0].price_source == "snapshot"

    def test_no_price_skips_trade(self, make_monitor, store, exchange, make_trade):
        store.insert_trade(make_trade())
        exchange.get_mid_price.return_value = 0.0

        result = make_monitor().check_positions()

        assert result.details[0].action == "skipped"
        assert result.remaining_open == 1

    def test_price_jump_holds_one_check(self, make_monitor, store, exchange, make_trade):
        """A suspicious jump is held once, then trusted if it persists"""
        trade = make_trade(stop_loss=90.0, take_profit=110.0)
        store.insert_trade(trade)
        exchange.get_mid_price.side_effect = [100.0, 120.0, 121.0]
        monitor = make_monitor()

        monitor.check_positions()
        second = monitor.check_positions()
        third = monitor.check_positions()

        assert second.details[0].action == "anomaly"
        assert third.details[0].action == "closed"
        assert store.get_trade(trade.trade_id).exit_reason == "take_profit"

    def test_api_errors_trip_kill_switch(self, make_monitor, params, store, exchange, make_trade):
        store.insert_trade(make_trade())
        exchange.get_mid_price.side_effect = CriticalDataUnavailable("hyperliquid.allMids")
        monitor = make_monitor()
        risk = RiskManager(params)

        for _ in range(params["safety"]["max_consecutive_api_errors"] - 1):
            monitor.check_positions()
        assert not risk.is_kill_switch_active()
        monitor.check_positions()
        assert risk.is_kill_switch_active()

    def test_one_bad_trade_does_not_block_others(self, make_monitor, store, exchange, make_trade):
        store.insert_trade(make_trade(symbol="BTC", stop_loss=95.0, take_profit=105.0))
        store.insert_trade(make_trade(symbol="ETH", stop_loss=95.0, take_profit=105.0))

        def price(symbol):
            if symbol == "BTC":
                raise RuntimeError("unexpected payload")
            return 106.0
        exchange.get_mid_price.side_effect = price

        result = make_monitor().check_positions()

        actions = {d.symbol: d.action for d in result.details}
        assert actions == {"BTC": "skipped", "ETH": "closed"}


class TestCloseAll:
    """Test close_all() manual exits"""

    def test_closes_regardless_of_levels(self, make_monitor, store, exchange, make_trade):
        store.insert_trade(make_trade(status="paper", stop_loss=90.0, take_profit=120.0))
        exchange.get_mid_price.return_value = 101.0

        result = make_monitor().close_all("manual")

        assert result.closed == 1
        closed = store.get_trade("t1")
        assert closed.exit_reason == "manual"
        assert closed.pnl_pct == pytest.approx(1.0)

    def test_no_price_closes_at_entry(self, make_monitor, store, exchange, make_trade):
        store.insert_trade(make_trade(status="paper"))
        exchange.get_mid_price.return_value = 0.0

        result = make_monitor().close_all("emergency")

        assert result.details[0].price_source == "entry"
        assert store.get_trade("t1").exit_price == 100.0

    def test_ignores_price_anomaly_guard(self, make_monitor, store, exchange, make_trade):
        store.insert_trade(make_trade(status="paper", stop_loss=50.0, take_profit=200.0))
        monitor = make_monitor()
        monitor.check_positions()
        exchange.get_mid_price.return_value = 130.0

        assert monitor.close_all().closed == 1


class TestSnapshotPrice:
    def test_prefers_hyperliquid_mid(self, tmp_path):
        path = tmp_path / "snap.json"
        atomic_write_json(path, {"snapshots": [
            {"symbol": "ETH", "hyperliquid": {"mid_price": 0}, "binance": {"mark_price": 2000.0}},
        ]})
        assert snapshot_price(str(path), "ETH") == 2000.0
        assert snapshot_price(str(path), "BTC") is None


class TestLifecycle:
    """Test run_forever() state transitions"""

    def test_idle_exit(self, make_monitor, app_config, clock):
        """No open trades for idle_exit_cycles checks stops the worker"""
        app_config["monitor"]["idle_exit_cycles"] = 3
        monitor = make_monitor()

        assert monitor.run_forever() == 0

        status = channel_for("monitor", app_config).read_status()
        assert status["state"] == "stopped"
        assert status["stop_reason"] == "idle_timeout"
        assert status["check_count"] == 3
        assert sum(clock.sleeps) == pytest.approx(2 * monitor.interval_sec)
        assert max(clock.sleeps) <= app_config["monitor"]["control_poll_sec"]

    def test_stop_command(self, make_monitor, app_config):
        channel_for("monitor", app_config).send_command(COMMAND_STOP)
        monitor = make_monitor()

        assert monitor.run_forever() == 0
        assert monitor.status.state == "stopped"
        assert monitor.status.stop_reason == "stop command"
        assert monitor.status.check_count == 0

    def test_store_errors_tolerated(self, make_monitor, app_config):
        """A locked database costs one check, not the worker"""
        app_config["monitor"]["idle_exit_cycles"] = 2
        flaky = MagicMock()
        flaky.get_open_trades.side_effect = [sqlite3.OperationalError("database is locked"), [], []]
        monitor = make_monitor(trade_store=flaky)

        assert monitor.run_forever() == 0
        assert monitor.status.check_count == 3
        assert "locked" in monitor.status.last_error

    def test_unexpected_error_sets_error_state(self, make_monitor, app_config):
        broken = MagicMock()
        broken.get_open_trades.side_effect = RuntimeError("boom")
        monitor = make_monitor(trade_store=broken)

        assert monitor.run_forever() == 1
        status = channel_for("monitor", app_config).read_status()
        assert status["state"] == "error"
        assert "boom" in status["stop_reason"]

    def test_stop_during_sleep(self, make_monitor, app_config, clock):
        """A stop sent between checks ends the worker at the next poll"""
        channel = channel_for("monitor", app_config)
        clock.on_sleep = lambda n: channel.send_command(COMMAND_STOP) if n == 1 else None
        monitor = make_monitor()

        assert monitor.run_forever() == 0

        assert monitor.status.stop_reason == "stop command"
        assert monitor.status.check_count == 1
        assert sum(clock.sleeps) <= app_config["monitor"]["control_poll_sec"]

    def test_run_now_during_sleep(self, make_monitor, app_config, clock):
        app_config["monitor"]["idle_exit_cycles"] = 2
        channel = channel_for("monitor", app_config)
        clock.on_sleep = lambda n: channel.send_command(COMMAND_RUN_NOW) if n == 1 else None
        monitor = make_monitor()

        assert monitor.run_forever() == 0

        assert monitor.status.check_count == 2
        assert sum(clock.sleeps) < monitor.interval_sec
