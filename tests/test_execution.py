"""
Tests for the execution engine (pipeline step "trade").
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from core.exceptions import OrderPlacementError
from core.execution import ExecutionEngine, signal_age_seconds
from core.risk import RiskManager


def make_signals(*signals, age_sec=0):
    generated = datetime.now(timezone.utc) - timedelta(seconds=age_sec)
    return {"generated_at": generated.isoformat(), "signals": list(signals)}


def signal(symbol="BTC", action="LONG", confidence=0.8, entry=100.0, stop=96.0, target=105.0):
    return {
        "symbol": symbol,
        "action": action,
        "confidence": confidence,
        "entry_price": entry,
        "stop_loss": stop,
        "take_profit": target,
    }


@pytest.fixture
def exchange():
    ex = MagicMock()
    ex.get_balance.return_value = 5000.0
    ex.place_market_order.return_value = {"order_id": "42", "filled_size": 37.5, "avg_price": 100.5}
    return ex


def make_engine(params, store, exchange=None, paper=True):
    return ExecutionEngine(params, store, RiskManager(params, store), exchange=exchange, paper=paper)


class TestPaperExecution:
    """Test paper-mode entries"""

    def test_records_paper_trade(self, params, store):
        report = make_engine(params, store).execute(make_signals(signal()))

        assert len(report.executed) == 1
        trade = store.get_open_trades()[0]
        assert trade.status == "paper"
        assert trade.trade_id.startswith("paper_BTC_")
        assert trade.side == "LONG"
        assert trade.leverage == params["leverage"]["default"]
        # 3% of 10k at a 4% stop = 75 coins; cap is 15% x 7x = 105
        assert trade.size == pytest.approx(75.0)
        assert trade.fees == pytest.approx(100.0 * 75.0 * params["fee_rate"])
        assert trade.stop_loss == 96.0
        assert trade.take_profit == 105.0
        assert store.get_latest_balance("hyperliquid", "paper") == params["paper_balance"]

    def test_stale_signals_skipped(self, params, store):
        report = make_engine(params, store).execute(make_signals(signal(), age_sec=3600))
        assert report.stale
        assert store.get_open_trades() == []

    def test_slow_review_does_not_stale_signals(self, params, store):
        """Signals generated long ago but just reviewed by the delegate still execute"""
        collection = make_signals(signal(), age_sec=90)
        collection["reviewed_at"] = datetime.now(timezone.utc).isoformat()

        report = make_engine(params, store).execute(collection)

        assert not report.stale
        assert len(report.executed) == 1

    def test_missing_timestamp_is_stale(self, params, store):
        report = make_engine(params, store).execute({"signals": [signal()]})
        assert report.stale

    def test_held_symbol_skipped(self, params, store, make_trade):
        store.insert_trade(make_trade(symbol="BTC", status="paper"))
        report = make_engine(params, store).execute(make_signals(signal()))
        assert report.skipped == [{"symbol": "BTC", "reason": "position already open"}]

    def test_low_confidence_skipped(self, params, store):
        report = make_engine(params, store).execute(make_signals(signal(confidence=0.05)))
        assert report.executed == []
        assert "confidence" in report.skipped[0]["reason"].lower()

    def test_hold_ignored(self, params, store):
        report = make_engine(params, store).execute(make_signals(signal(action="HOLD")))
        assert report.executed == [] and report.skipped == []

    def test_kill_switch_blocks_entries(self, params, store):
        RiskManager(params).create_kill_switch("halt")
        report = make_engine(params, store).execute(make_signals(signal(), signal(symbol="ETH")))
        assert report.executed == []
        assert all("kill switch" in s["reason"].lower() for s in report.skipped)

    def test_one_entry_per_symbol_per_run(self, params, store):
        report = make_engine(params, store).execute(make_signals(signal(), signal(confidence=0.9)))
        assert len(report.executed) == 1
        assert report.skipped[0]["reason"] == "position already open"

    def test_no_signals(self, params, store):
        report = make_engine(params, store).execute(None)
        assert report.executed == [] and not report.stale


class TestLiveExecution:
    """Test live-mode entries against a mocked venue"""

    def test_places_order_and_records_fill(self, params, store, exchange):
        report = make_engine(params, store, exchange, paper=False).execute(make_signals(signal()))

        exchange.update_leverage.assert_called_once_with("BTC", params["leverage"]["default"])
        exchange.place_market_order.assert_called_once_with("BTC", True, pytest.approx(37.5))
        trade = store.get_open_trades()[0]
        assert trade.status == "open"
        assert trade.entry_price == 100.5
        assert trade.size == 37.5
        assert report.balance == 5000.0

    def test_short_sells(self, params, store, exchange):
        make_engine(params, store, exchange, paper=False).execute(
            make_signals(signal(action="SHORT", stop=104.0, target=95.0))
        )
        args = exchange.place_market_order.call_args[0]
        assert args[1] is False

    def test_order_failures_trip_kill_switch(self, params, store, exchange):
        params["safety"]["max_consecutive_api_errors"] = 2
        exchange.place_market_order.side_effect = OrderPlacementError("X", "rejected")

        report = make_engine(params, store, exchange, paper=False).execute(
            make_signals(signal("BTC"), signal("ETH"), signal("SOL"))
        )

        assert [f["symbol"] for f in report.failed] == ["BTC", "ETH"]
        assert report.kill_switch_tripped
        assert RiskManager(params).is_kill_switch_active()
        assert exchange.place_market_order.call_count == 2


class TestSignalAge:
    def test_age(self):
        now = datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)
        assert signal_age_seconds({"generated_at": "2026-01-01T00:00:00Z"}, now=now) == 60.0

    def test_review_time_preferred(self):
        now = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)
        collection = {"generated_at": "2026-01-01T00:00:00Z", "reviewed_at": "2026-01-01T00:04:30Z"}
        assert signal_age_seconds(collection, now=now) == 30.0

    def test_bad_review_time_falls_back(self):
        now = datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)
        collection = {"generated_at": "2026-01-01T00:00:00Z", "reviewed_at": "soon"}
        assert signal_age_seconds(collection, now=now) == 60.0

    def test_unparsable(self):
        assert signal_age_seconds({"generated_at": "yesterday"}) is None
        assert signal_age_seconds({}) is None
