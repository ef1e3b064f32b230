"""
Configuration Validation Module

Validates config/app.yaml against Pydantic schemas so that bad parameters are
caught before a worker starts trading.

Usage:
    from tools.config_validator import load_app_config

    config = load_app_config("config")   # raises ValueError if invalid
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

STRATEGY_NAMES = ("conservative", "balanced", "aggressive")


# ===== General / runtime =====
class GeneralConfig(BaseModel):
    mode: str = Field(default="paper", pattern="^(paper|live)$", description="paper or live trading")
    strategy: str = Field(default="balanced", description="Strategy preset name")
    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        # Unknown names are tolerated at runtime (fallback to balanced) but flagged here
        if v not in STRATEGY_NAMES:
            logger.warning(f"general.strategy={v!r} is not a known preset; 'balanced' will be used")
        return v


class LoggingConfig(BaseModel):
    level: Optional[str] = Field(default=None, description="Overrides general.log_level")
    dir: str = Field(default="logs", description="Directory for per-worker log files")


class RuntimeConfig(BaseModel):
    status_dir: str = Field(default="data/run", description="Status/control file directory")


# ===== Workers =====
class StepConfig(BaseModel):
    id: str = Field(min_length=1)
    label: Optional[str] = None
    module: Optional[str] = Field(default=None, description="Python module run with -m")
    command: Optional[List[str]] = Field(default=None, description="Explicit argv")
    args: List[str] = Field(default_factory=list)
    critical: bool = False
    timeout_sec: float = Field(default=60.0, gt=0)
    executes_trades: bool = False

    @model_validator(mode="after")
    def validate_target(self) -> "StepConfig":
        if bool(self.module) == bool(self.command):
            raise ValueError(f"step {self.id!r}: exactly one of 'module' or 'command' is required")
        return self


def _default_steps() -> List[StepConfig]:
    return [
        StepConfig(id="collect", label="Collect market data", module="core.market_data", critical=True),
        StepConfig(id="analyze", label="Analyze signals", module="strategy.analyze", critical=True),
        StepConfig(id="rebalance", label="Rebalance collateral", module="core.rebalance"),
        StepConfig(id="trade", label="Execute trades", module="core.execution", executes_trades=True),
    ]


class RunnerConfig(BaseModel):
    interval_sec: float = Field(default=300.0, gt=0)
    max_cycles: int = Field(default=0, ge=0, description="0 = unlimited")
    pause_between_steps_sec: float = Field(default=2.0, ge=0)
    cooldown_on_error_sec: float = Field(default=60.0, ge=0)
    max_consecutive_errors: int = Field(default=10, gt=0)
    control_poll_sec: float = Field(default=2.0, gt=0)
    kill_switch_poll_sec: float = Field(default=10.0, gt=0)
    steps: List[StepConfig] = Field(default_factory=_default_steps)

    @field_validator("steps")
    @classmethod
    def validate_unique_ids(cls, v: List[StepConfig]) -> List[StepConfig]:
        ids = [s.id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate step ids: {ids}")
        return v


class MonitorConfig(BaseModel):
    interval_sec: float = Field(default=15.0, gt=0)
    idle_exit_cycles: int = Field(default=20, gt=0)
    control_poll_sec: float = Field(default=1.0, gt=0)
    autostart: bool = True


class DelegateConfig(BaseModel):
    enabled: bool = False
    command: str = Field(default="openclaw", min_length=1)
    agent_id: str = Field(default="main", min_length=1)
    timeout_sec: float = Field(default=300.0, gt=0)
    after_step: str = Field(default="analyze")


class StrategyOverrideConfig(BaseModel):
    override_file: str = "data/ai-adjustments.json"
    override_max_age_sec: float = Field(default=3600.0, gt=0)


# ===== Trade agent =====
class LeverageConfig(BaseModel):
    default: float = Field(default=5.0, gt=0)
    max: float = Field(default=10.0, gt=0)


class TradeRiskConfig(BaseModel):
    risk_per_trade: float = Field(default=0.02, gt=0, le=1)
    max_position_pct: float = Field(default=0.10, gt=0, le=1)
    max_daily_loss: float = Field(default=0.05, gt=0, le=1)
    max_concurrent_positions: int = Field(default=5, gt=0)
    max_daily_trades: int = Field(default=100, gt=0)
    min_balance_usdc: float = Field(default=100.0, ge=0)
    min_signal_confidence: float = Field(default=0.4, ge=0, le=1)


class TrailingStopConfig(BaseModel):
    enabled: bool = True
    mode: str = Field(default="progressive", pattern="^(progressive|flat)$")
    activation_pct: float = Field(default=1.5, gt=0)
    trail_pct: float = Field(default=0.8, gt=0)
    tiers: List[List[float]] = Field(
        default_factory=lambda: [[1.0, 0.5], [2.0, 0.35], [4.0, 0.2]],
        description="[profit_pct, trail_pct] pairs, ascending by profit",
    )

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v: List[List[float]]) -> List[List[float]]:
        previous = None
        for tier in v:
            if len(tier) != 2 or tier[0] <= 0 or tier[1] <= 0:
                raise ValueError(f"tier {tier} must be [profit_pct > 0, trail_pct > 0]")
            if previous is not None and tier[0] <= previous:
                raise ValueError("tiers must be strictly ascending by profit_pct")
            previous = tier[0]
        return v


class AtrMultiplierConfig(BaseModel):
    atr_multiplier: float = Field(gt=0)


class SafetyConfig(BaseModel):
    kill_switch_file: str = "data/KILL_SWITCH"
    max_consecutive_api_errors: int = Field(default=5, gt=0)
    price_anomaly_threshold: float = Field(default=10.0, gt=0, description="Percent move treated as suspect")


class TradeAgentConfig(BaseModel):
    leverage: LeverageConfig = Field(default_factory=LeverageConfig)
    risk: TradeRiskConfig = Field(default_factory=TradeRiskConfig)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    stop_loss: AtrMultiplierConfig = Field(default_factory=lambda: AtrMultiplierConfig(atr_multiplier=1.5))
    take_profit: AtrMultiplierConfig = Field(default_factory=lambda: AtrMultiplierConfig(atr_multiplier=3.0))
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    fee_rate: float = Field(default=0.0005, ge=0, lt=0.01)
    paper_balance: float = Field(default=10000.0, gt=0)
    signal_max_age_seconds: float = Field(default=60.0, gt=0)
    slippage: float = Field(default=0.01, ge=0, lt=0.5)

    @model_validator(mode="after")
    def validate_leverage(self) -> "TradeAgentConfig":
        if self.leverage.default > self.leverage.max:
            raise ValueError(
                f"leverage.default ({self.leverage.default}) exceeds leverage.max ({self.leverage.max})"
            )
        return self


# ===== Venues / data =====
class RateLimitConfig(BaseModel):
    max_tokens: float = Field(gt=0)
    refill_rate: float = Field(gt=0)


class ExchangeConfig(BaseModel):
    hyperliquid_base_url: str = "https://api.hyperliquid.xyz"
    binance_base_url: str = "https://fapi.binance.com"
    request_timeout_sec: float = Field(default=10.0, gt=0)
    rate_limits: Dict[str, RateLimitConfig] = Field(default_factory=dict)

    @field_validator("rate_limits")
    @classmethod
    def validate_apis(cls, v: Dict[str, RateLimitConfig]) -> Dict[str, RateLimitConfig]:
        unknown = set(v) - {"binance", "hyperliquid"}
        if unknown:
            raise ValueError(f"unknown rate limit APIs: {sorted(unknown)}")
        return v


class SymbolConfig(BaseModel):
    symbol: str = Field(min_length=1)
    binance_pair: str = Field(min_length=1)
    hyperliquid_pair: str = Field(min_length=1)


class MarketDataConfig(BaseModel):
    symbols: List[SymbolConfig] = Field(default_factory=lambda: [
        SymbolConfig(symbol="BTC", binance_pair="BTCUSDT", hyperliquid_pair="BTC"),
        SymbolConfig(symbol="ETH", binance_pair="ETHUSDT", hyperliquid_pair="ETH"),
    ])
    max_workers: int = Field(default=4, gt=0, le=32)
    snapshot_file: str = "data/snapshots/latest.json"


class AnalysisConfig(BaseModel):
    spread_threshold_high: float = Field(default=0.002, gt=0)
    spread_threshold_extreme: float = Field(default=0.005, gt=0)
    spread_noise_floor: float = Field(default=0.001, ge=0)
    signal_file: str = "data/signals/latest.json"

    @model_validator(mode="after")
    def validate_thresholds(self) -> "AnalysisConfig":
        if self.spread_threshold_extreme < self.spread_threshold_high:
            raise ValueError("spread_threshold_extreme must be >= spread_threshold_high")
        return self


class DatabaseConfig(BaseModel):
    path: str = "data/trades.db"


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class WalletConfig(BaseModel):
    """Collateral band for the perp account; spot USDC is the reserve."""
    rebalance_enabled: bool = False
    min_reserve_perp: float = Field(default=500.0, ge=0)
    min_reserve_spot: float = Field(default=100.0, ge=0)
    max_reserve_perp: Optional[float] = Field(default=None, gt=0, description="None = 60% of combined USDC")
    buffer_pct: float = Field(default=0.1, ge=0, le=1)
    withdraw_excess_pct: float = Field(default=0.5, gt=0, le=1)
    max_single_transfer: float = Field(default=1000.0, gt=0)
    max_daily_transfer: float = Field(default=5000.0, gt=0)
    min_transfer: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def validate_band(self) -> "WalletConfig":
        if self.max_reserve_perp is not None and self.max_reserve_perp <= self.min_reserve_perp:
            raise ValueError("max_reserve_perp must be above min_reserve_perp")
        if self.max_single_transfer > self.max_daily_transfer:
            raise ValueError("max_single_transfer cannot exceed max_daily_transfer")
        return self


class AppConfigSchema(BaseModel):
    """Complete app.yaml schema; every section is optional."""
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    delegate: DelegateConfig = Field(default_factory=DelegateConfig)
    strategy: StrategyOverrideConfig = Field(default_factory=StrategyOverrideConfig)
    trade_agent: TradeAgentConfig = Field(default_factory=TradeAgentConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app_config(raw: Dict[str, Any]) -> List[str]:
    """
    Validate a parsed app config.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        AppConfigSchema(**(raw or {}))
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"app.yaml: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"app.yaml: {e}")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """Validate every config file under ``config_dir``."""
    path = Path(config_dir) / "app.yaml"
    try:
        raw = load_yaml_file(path)
    except FileNotFoundError as e:
        return [f"app.yaml: {e}"]
    except yaml.YAMLError as e:
        return [f"app.yaml: Invalid YAML - {e}"]

    errors = validate_app_config(raw)
    if not errors:
        logger.info("app.yaml validation passed")
    else:
        logger.error(f"{len(errors)} validation error(s) found")
    return errors


def load_app_config(config_dir: str = "config") -> Dict[str, Any]:
    """
    Load and validate config/app.yaml, returning a plain dict with every
    default filled in.

    Raises:
        ValueError: If the config is missing or invalid
    """
    errors = validate_all_configs(config_dir)
    if errors:
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        logger.error("=" * 80)
        raise ValueError(f"Invalid configuration: {len(errors)} error(s) found")

    raw = load_yaml_file(Path(config_dir) / "app.yaml")
    return AppConfigSchema(**raw).model_dump()


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    print("\nAll configuration files are valid!\n")
    sys.exit(0)
