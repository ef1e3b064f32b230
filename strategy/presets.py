"""
perpbot Strategy: Presets

Named parameter bundles selected with ``general.strategy``. Each preset has an
``analysis`` part (signal thresholds) and a ``trade`` part that overlays
``trade_agent`` from app.yaml.
"""

import copy
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "balanced"

PRESETS: Dict[str, Dict[str, Any]] = {
    "conservative": {
        "name": "conservative",
        "label": "Conservative",
        "description": "High entry bar, low trade frequency, capital preservation first",
        "analysis": {
            "entry_threshold": 0.5,
            "min_confidence": 0.4,
            "cooldown_seconds": 60,
        },
        "trade": {
            "leverage": {"default": 5, "max": 10},
            "risk": {
                "risk_per_trade": 0.02,
                "max_position_pct": 0.10,
                "max_daily_loss": 0.05,
                "max_concurrent_positions": 5,
                "max_daily_trades": 100,
                "min_signal_confidence": 0.4,
            },
            "stop_loss": {"atr_multiplier": 2.0},
            "take_profit": {"atr_multiplier": 3.0},
            "trailing_stop": {"activation_pct": 1.5, "trail_pct": 0.8},
            "signal_max_age_seconds": 60,
        },
    },
    "balanced": {
        "name": "balanced",
        "label": "Balanced",
        "description": "Selective entries, wide stops, steady win rate",
        "analysis": {
            "entry_threshold": 0.4,
            "min_confidence": 0.35,
            "cooldown_seconds": 30,
        },
        "trade": {
            "leverage": {"default": 7, "max": 15},
            "risk": {
                "risk_per_trade": 0.03,
                "max_position_pct": 0.15,
                "max_daily_loss": 0.08,
                "max_concurrent_positions": 6,
                "max_daily_trades": 150,
                "min_signal_confidence": 0.35,
            },
            "stop_loss": {"atr_multiplier": 2.0},
            "take_profit": {"atr_multiplier": 2.5},
            "trailing_stop": {"activation_pct": 2.0, "trail_pct": 1.0},
            "signal_max_age_seconds": 45,
        },
    },
    "aggressive": {
        "name": "aggressive",
        "label": "Aggressive",
        "description": "High-frequency momentum, higher leverage, high risk",
        "analysis": {
            "entry_threshold": 0.15,
            "min_confidence": 0.1,
            "cooldown_seconds": 10,
        },
        "trade": {
            "leverage": {"default": 10, "max": 20},
            "risk": {
                "risk_per_trade": 0.05,
                "max_position_pct": 0.25,
                "max_daily_loss": 0.15,
                "max_concurrent_positions": 15,
                "max_daily_trades": 500,
                "min_signal_confidence": 0.1,
            },
            "stop_loss": {"atr_multiplier": 1.0},
            "take_profit": {"atr_multiplier": 4.0},
            "trailing_stop": {"activation_pct": 0.7, "trail_pct": 0.3},
            "signal_max_age_seconds": 30,
        },
    },
}


def get_strategy_preset(name: str) -> Dict[str, Any]:
    """Preset by name (deep copy); unknown names fall back to balanced."""
    preset = PRESETS.get(name)
    if preset is None:
        logger.warning(f"Unknown strategy {name!r}, falling back to {DEFAULT_STRATEGY!r}")
        preset = PRESETS[DEFAULT_STRATEGY]
    return copy.deepcopy(preset)


def list_strategies() -> List[Dict[str, Any]]:
    return [copy.deepcopy(p) for p in PRESETS.values()]


def is_valid_strategy(name: str) -> bool:
    return name in PRESETS
