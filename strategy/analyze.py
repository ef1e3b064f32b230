"""
perpbot Strategy: Spread Analyzer (pipeline step "analyze")

Turns the latest snapshot collection into trade signals.

Rule: when Binance marks above the Hyperliquid mid, Hyperliquid is cheap
(LONG); when below, SHORT. Strength grows with the spread, saturating at
``analysis.spread_threshold_extreme``. Strength below the preset's entry
threshold yields HOLD.

Stops and targets use a fixed 2% volatility unit scaled by the preset ATR
multipliers, matching the position monitor's fallback.

Usage:
    python -m strategy.analyze --config-dir config
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from infra.status_channel import atomic_write_json, read_json
from strategy.presets import get_strategy_preset

logger = logging.getLogger(__name__)

VOLATILITY_UNIT = 0.02


def exit_levels(entry_price: float, side: str, sl_mult: float, tp_mult: float):
    """(stop_loss, take_profit) for ``side`` around ``entry_price``."""
    direction = 1 if side == "LONG" else -1
    unit = entry_price * VOLATILITY_UNIT
    return entry_price - direction * unit * sl_mult, entry_price + direction * unit * tp_mult


def spread_strength(pct: float, analysis_cfg: Dict[str, Any]) -> float:
    high = float(analysis_cfg.get("spread_threshold_high", 0.002))
    extreme = float(analysis_cfg.get("spread_threshold_extreme", 0.005))
    floor = float(analysis_cfg.get("spread_noise_floor", 0.001))
    if pct < floor:
        return 0.0
    if pct >= extreme:
        return 1.0
    if pct >= high:
        span = extreme - high
        return 0.5 + 0.5 * ((pct - high) / span if span > 0 else 1.0)
    return 0.5 * pct / high


def analyze_snapshot(snapshot: Dict[str, Any], analysis_cfg: Dict[str, Any],
                     params: Dict[str, Any], entry_threshold: float) -> Dict[str, Any]:
    symbol = snapshot["symbol"]
    entry = float(snapshot["hyperliquid"]["mid_price"])
    spread = snapshot.get("spread", {}) or {}
    pct = float(spread.get("percentage", 0.0))
    strength = spread_strength(pct, analysis_cfg)

    side = "LONG" if spread.get("direction") == "binance_higher" else "SHORT"
    action = side if strength >= entry_threshold and strength > 0 else "HOLD"

    stop_loss, take_profit = exit_levels(
        entry,
        side,
        float((params.get("stop_loss") or {}).get("atr_multiplier", 1.5)),
        float((params.get("take_profit") or {}).get("atr_multiplier", 3.0)),
    )
    return {
        "symbol": symbol,
        "action": action,
        "confidence": round(strength, 4),
        "entry_price": entry,
        "stop_loss": round(stop_loss, 6),
        "take_profit": round(take_profit, 6),
        "reason": f"spread {pct * 100:.4f}% ({spread.get('direction', 'n/a')})",
    }


def build_signals(collection: Dict[str, Any], config: Dict[str, Any], params: Dict[str, Any]) -> Dict[str, Any]:
    strategy_name = (config.get("general", {}) or {}).get("strategy", "balanced")
    preset = get_strategy_preset(strategy_name)
    analysis_cfg = config.get("analysis", {}) or {}
    entry_threshold = float(preset["analysis"]["entry_threshold"])

    signals: List[Dict[str, Any]] = []
    for snap in collection.get("snapshots", []) or []:
        if snap.get("anomaly"):
            logger.warning(f"[{snap.get('symbol')}] skipped: anomalous snapshot")
            continue
        try:
            signals.append(analyze_snapshot(snap, analysis_cfg, params, entry_threshold))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[{snap.get('symbol')}] malformed snapshot: {e}")

    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "strategy": preset["name"],
        "source_collected_at": collection.get("collected_at"),
        "signals": signals,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate trade signals from market snapshots")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from infra.config import bootstrap
    from strategy.params import resolve_trade_params

    try:
        config = bootstrap(args.config_dir, "analyze.log")
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    snapshot_file = (config.get("market_data", {}) or {}).get("snapshot_file", "data/snapshots/latest.json")
    collection = read_json(snapshot_file)
    if not collection or not collection.get("snapshots"):
        logger.error(f"No snapshots in {snapshot_file}")
        print(json.dumps({"ok": False, "error": f"no snapshots in {snapshot_file}"}))
        return 1

    result = build_signals(collection, config, resolve_trade_params(config))
    signal_file = (config.get("analysis", {}) or {}).get("signal_file", "data/signals/latest.json")
    atomic_write_json(signal_file, result)

    actionable = [s["symbol"] for s in result["signals"] if s["action"] != "HOLD"]
    logger.info(f"{len(result['signals'])} signals, actionable: {actionable or 'none'}")
    print(json.dumps({"ok": True, "signals": len(result["signals"]), "actionable": actionable}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
