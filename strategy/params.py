"""
perpbot Strategy: Layered Trade Parameters

Resolution order (later wins):
1. base       - trade_agent section of app.yaml
2. preset     - trade part of the general.strategy preset
3. override   - transient adjustment file written after a delegate review,
                ignored once older than strategy.override_max_age_sec

Every consumer resolves through resolve_trade_params() so the order is the
same everywhere.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from infra.config import deep_merge
from infra.status_channel import atomic_write_json, read_json
from strategy.presets import get_strategy_preset

logger = logging.getLogger(__name__)

# Keys an override may touch: risk and exit tuning only, never safety/paths
OVERRIDABLE_KEYS = {
    "leverage": {"default"},
    "risk": {
        "risk_per_trade",
        "max_position_pct",
        "max_concurrent_positions",
        "max_daily_trades",
        "min_signal_confidence",
    },
    "trailing_stop": {"activation_pct", "trail_pct"},
    "stop_loss": {"atr_multiplier"},
    "take_profit": {"atr_multiplier"},
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filter_override(trade: Dict[str, Any]) -> Dict[str, Any]:
    """Drop any key outside OVERRIDABLE_KEYS."""
    clean: Dict[str, Any] = {}
    for section, allowed in OVERRIDABLE_KEYS.items():
        values = trade.get(section)
        if not isinstance(values, dict):
            continue
        kept = {k: v for k, v in values.items() if k in allowed and isinstance(v, (int, float))}
        if kept:
            clean[section] = kept
    dropped = set(trade) - set(OVERRIDABLE_KEYS)
    if dropped:
        logger.warning(f"Ignoring non-overridable parameter sections: {sorted(dropped)}")
    return clean


def load_active_override(
    path: str, max_age_sec: float, now: Optional[datetime] = None
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Returns:
        (trade overlay, reason) if a fresh override exists, else (None, None)
    """
    data = read_json(path)
    if not data:
        return None, None
    stamped = _parse_timestamp(data.get("timestamp"))
    if stamped is None:
        logger.warning(f"Override file {path} has no valid timestamp; ignoring")
        return None, None
    now = now or datetime.now(timezone.utc)
    age = (now - stamped).total_seconds()
    if age > max_age_sec:
        logger.debug(f"Override in {path} expired ({age:.0f}s > {max_age_sec:.0f}s)")
        return None, None
    trade = data.get("trade")
    if not isinstance(trade, dict):
        return None, None
    return filter_override(trade), data.get("reason")


def resolve_trade_params(config: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Effective trade parameters for this instant.

    The result has the shape of the trade_agent config section plus a
    ``_layers`` entry describing what was applied.
    """
    base = config.get("trade_agent", {}) or {}
    strategy_name = (config.get("general", {}) or {}).get("strategy", "balanced")
    preset = get_strategy_preset(strategy_name)

    params = deep_merge(base, preset["trade"])
    layers: Dict[str, Any] = {"strategy": preset["name"], "override": None}

    strategy_cfg = config.get("strategy", {}) or {}
    override, reason = load_active_override(
        strategy_cfg.get("override_file", "data/ai-adjustments.json"),
        float(strategy_cfg.get("override_max_age_sec", 3600)),
        now=now,
    )
    if override:
        params = deep_merge(params, override)
        layers["override"] = {"reason": reason, "keys": sorted(override)}

    # An override must never push leverage past the configured ceiling
    leverage = params.get("leverage", {})
    if leverage.get("default", 0) > leverage.get("max", 0):
        leverage["default"] = leverage["max"]

    params["_layers"] = layers
    return params


def write_override(path: str, trade: Dict[str, Any], reason: str = "") -> bool:
    """
    Record a transient adjustment. Only whitelisted keys are written.

    Returns:
        False if nothing overridable was supplied
    """
    clean = filter_override(trade or {})
    if not clean:
        return False
    atomic_write_json(
        path,
        {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "reason": reason,
            "trade": clean,
        },
    )
    logger.info(f"Parameter override written: {clean} ({reason})")
    return True
