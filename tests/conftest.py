"""
Pytest configuration and fixtures for perpbot tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset process-wide limiters between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.rate_limiter import _reset_for_testing

    _reset_for_testing()
    yield
    _reset_for_testing()


@pytest.fixture
def app_config(tmp_path):
    """Fully defaulted app config with every file path under tmp_path."""
    from tools.config_validator import AppConfigSchema

    config = AppConfigSchema().model_dump()
    config["runtime"]["status_dir"] = str(tmp_path / "run")
    config["logging"]["dir"] = str(tmp_path / "logs")
    config["database"]["path"] = str(tmp_path / "trades.db")
    config["market_data"]["snapshot_file"] = str(tmp_path / "snapshots" / "latest.json")
    config["analysis"]["signal_file"] = str(tmp_path / "signals" / "latest.json")
    config["strategy"]["override_file"] = str(tmp_path / "ai-adjustments.json")
    config["trade_agent"]["safety"]["kill_switch_file"] = str(tmp_path / "KILL_SWITCH")
    return config


@pytest.fixture
def store(app_config):
    from core.trade_store import TradeStore

    return TradeStore(app_config["database"]["path"])


@pytest.fixture
def params(app_config):
    from strategy.params import resolve_trade_params

    return resolve_trade_params(app_config)


@pytest.fixture
def make_trade():
    """Factory for Trade rows with sensible defaults."""
    from core.trade_store import Trade

    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "trade_id": f"t{counter['n']}",
            "symbol": "BTC",
            "side": "LONG",
            "entry_price": 100.0,
            "size": 1.0,
            "leverage": 5.0,
        }
        fields.update(overrides)
        return Trade(**fields)

    return _make
