"""
perpbot Core: Market Data Collection (pipeline step "collect")

Fetches Hyperliquid mids and Binance mark prices for every configured symbol,
computes the cross-venue spread and writes one snapshot collection to
``market_data.snapshot_file``.

A price that jumped more than the anomaly threshold since the previous
snapshot marks the symbol anomalous and fails the step, so the runner halts
the cycle instead of trading on suspect data.

Usage:
    python -m core.market_data --config-dir config
"""

import argparse
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import CriticalDataUnavailable
from core.risk import RiskManager
from infra.status_channel import atomic_write_json, read_json

logger = logging.getLogger(__name__)


def previous_prices(collection: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    """symbol -> {"hyperliquid": mid, "binance": mark} from a prior collection."""
    prices: Dict[str, Dict[str, float]] = {}
    for snap in (collection or {}).get("snapshots", []) or []:
        symbol = snap.get("symbol")
        if not symbol:
            continue
        prices[symbol] = {
            "hyperliquid": float((snap.get("hyperliquid") or {}).get("mid_price") or 0.0),
            "binance": float((snap.get("binance") or {}).get("mark_price") or 0.0),
        }
    return prices


def build_snapshot(
    symbol: str,
    hl_mid: float,
    binance: Dict[str, float],
    previous: Optional[Dict[str, float]],
    risk: RiskManager,
) -> Dict[str, Any]:
    mark = binance.get("mark_price", 0.0)
    spread_abs = mark - hl_mid
    spread_pct = abs(spread_abs) / hl_mid if hl_mid > 0 else 0.0

    anomaly = None
    if previous:
        if risk.is_price_anomaly(previous.get("hyperliquid", 0.0), hl_mid):
            anomaly = f"hyperliquid {previous['hyperliquid']} -> {hl_mid}"
        elif risk.is_price_anomaly(previous.get("binance", 0.0), mark):
            anomaly = f"binance {previous['binance']} -> {mark}"
    if anomaly:
        logger.warning(f"[{symbol}] price anomaly: {anomaly}")

    return {
        "symbol": symbol,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "hyperliquid": {"mid_price": hl_mid},
        "binance": {"mark_price": mark, "funding_rate": binance.get("funding_rate", 0.0)},
        "spread": {
            "absolute": abs(spread_abs),
            "percentage": spread_pct,
            "direction": "binance_higher" if spread_abs >= 0 else "binance_lower",
        },
        "anomaly": anomaly is not None,
        "anomaly_detail": anomaly,
    }


class MarketDataCollector:
    """
    Args:
        hyperliquid: Object with get_all_mids()
        binance: Object with get_premium_index(pair)
        risk: RiskManager used for the anomaly guard
        symbols: [{"symbol", "binance_pair", "hyperliquid_pair"}]
    """

    def __init__(self, hyperliquid, binance, risk: RiskManager, symbols: List[Dict[str, str]],
                 max_workers: int = 4):
        self.hyperliquid = hyperliquid
        self.binance = binance
        self.risk = risk
        self.symbols = symbols
        self.max_workers = max(1, max_workers)

    def collect(self, previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        One snapshot collection.

        Raises:
            CriticalDataUnavailable: If Hyperliquid mids cannot be fetched
        """
        started = time.monotonic()
        mids = self.hyperliquid.get_all_mids()
        prior = previous_prices(previous)

        def fetch(sym_cfg: Dict[str, str]) -> Dict[str, Any]:
            symbol = sym_cfg["symbol"]
            hl_mid = float(mids.get(sym_cfg["hyperliquid_pair"], 0.0))
            try:
                binance = self.binance.get_premium_index(sym_cfg["binance_pair"])
            except CriticalDataUnavailable as e:
                return {"symbol": symbol, "error": f"binance: {e}"}
            if hl_mid <= 0 or binance.get("mark_price", 0.0) <= 0:
                return {"symbol": symbol, "error": "missing price"}
            return build_snapshot(symbol, hl_mid, binance, prior.get(symbol), self.risk)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(fetch, self.symbols))

        snapshots = [r for r in results if "error" not in r]
        errors = {r["symbol"]: r["error"] for r in results if "error" in r}
        for symbol, error in errors.items():
            logger.warning(f"[{symbol}] skipped: {error}")

        return {
            "collected_at": datetime.now(timezone.utc).isoformat(),
            "duration_ms": int((time.monotonic() - started) * 1000),
            "snapshots": snapshots,
            "errors": errors,
            "anomalies": [s["symbol"] for s in snapshots if s["anomaly"]],
        }


def run_collection(config: Dict[str, Any], collector: MarketDataCollector) -> Dict[str, Any]:
    """Collect, persist, and summarize. ``ok`` is False on anomalies or no data."""
    snapshot_file = (config.get("market_data", {}) or {}).get("snapshot_file", "data/snapshots/latest.json")
    collection = collector.collect(previous=read_json(snapshot_file))
    atomic_write_json(snapshot_file, collection)

    ok = bool(collection["snapshots"]) and not collection["anomalies"]
    return {
        "ok": ok,
        "symbols": len(collection["snapshots"]),
        "errors": collection["errors"],
        "anomalies": collection["anomalies"],
        "snapshot_file": snapshot_file,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Collect market data snapshots")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from core.exchange_binance import BinanceFutures
    from core.exchange_hyperliquid import HyperliquidExchange
    from infra.config import bootstrap
    from strategy.params import resolve_trade_params

    try:
        config = bootstrap(args.config_dir, "collect.log")
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    market_cfg = config.get("market_data", {}) or {}
    try:
        collector = MarketDataCollector(
            HyperliquidExchange.from_config(config),
            BinanceFutures.from_config(config),
            RiskManager(resolve_trade_params(config)),
            market_cfg.get("symbols", []),
            max_workers=int(market_cfg.get("max_workers", 4)),
        )
        summary = run_collection(config, collector)
    except CriticalDataUnavailable as e:
        logger.error(f"Market data unavailable: {e}")
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    print(json.dumps(summary))
    return 0 if summary["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
