"""
perpbot Core: Collateral Rebalance (pipeline step "rebalance")

Keeps the perp margin account inside a band by moving USDC to and from the
spot account of the same Hyperliquid wallet, which acts as the reserve.

1. Perp below min_reserve_perp: top it up to min_reserve_perp x (1 + buffer_pct)
   from whatever spot holds above min_reserve_spot
2. Perp above max_reserve_perp and above twice min_reserve_perp: sweep
   withdraw_excess_pct of the excess back to spot

At most one transfer per run. Each is capped by max_single_transfer and by
what is left of max_daily_transfer; anything under min_transfer is dropped.
Paper mode records the transfer and moves the paper balances only.

Usage:
    python -m core.rebalance --config-dir config
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import CriticalDataUnavailable, TransferError
from core.trade_store import TradeStore
from infra.alerting import AlertService, AlertSeverity

logger = logging.getLogger(__name__)

VENUE_PERP = "hyperliquid"
VENUE_SPOT = "hyperliquid_spot"
PAPER_DEFAULT_BALANCE = 5000.0
# Ceiling for the perp account when max_reserve_perp is unset
DEFAULT_MAX_PERP_SHARE = 0.6

SPOT_TO_PERP = "spot_to_perp"
PERP_TO_SPOT = "perp_to_spot"


@dataclass
class RebalancePolicy:
    enabled: bool = False
    min_reserve_perp: float = 500.0
    min_reserve_spot: float = 100.0
    max_reserve_perp: Optional[float] = None
    buffer_pct: float = 0.1
    withdraw_excess_pct: float = 0.5
    max_single_transfer: float = 1000.0
    max_daily_transfer: float = 5000.0
    min_transfer: float = 10.0

    @classmethod
    def from_section(cls, section: Optional[Dict[str, Any]]) -> "RebalancePolicy":
        """Build from the ``wallet`` section of app.yaml."""
        section = section or {}
        max_perp = section.get("max_reserve_perp")
        return cls(
            enabled=bool(section.get("rebalance_enabled", False)),
            min_reserve_perp=float(section.get("min_reserve_perp", 500.0)),
            min_reserve_spot=float(section.get("min_reserve_spot", 100.0)),
            max_reserve_perp=float(max_perp) if max_perp is not None else None,
            buffer_pct=float(section.get("buffer_pct", 0.1)),
            withdraw_excess_pct=float(section.get("withdraw_excess_pct", 0.5)),
            max_single_transfer=float(section.get("max_single_transfer", 1000.0)),
            max_daily_transfer=float(section.get("max_daily_transfer", 5000.0)),
            min_transfer=float(section.get("min_transfer", 10.0)),
        )


@dataclass
class Transfer:
    direction: str
    amount: float
    reason: str

    @property
    def to_perp(self) -> bool:
        return self.direction == SPOT_TO_PERP

    @property
    def venues(self) -> Tuple[str, str]:
        return (VENUE_SPOT, VENUE_PERP) if self.to_perp else (VENUE_PERP, VENUE_SPOT)


@dataclass
class RebalanceReport:
    status: str = "balanced"       # disabled | balanced | rebalanced | failed
    mode: str = "paper"
    perp_balance: Optional[float] = None
    spot_balance: Optional[float] = None
    transferred_today: float = 0.0
    transfers: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def plan_rebalance(perp: float, spot: float, policy: RebalancePolicy,
                   transferred_today: float = 0.0) -> Optional[Transfer]:
    """Pure decision: the one transfer this run should make, or None."""
    cap = min(policy.max_single_transfer, max(0.0, policy.max_daily_transfer - transferred_today))

    if perp < policy.min_reserve_perp:
        needed = policy.min_reserve_perp * (1 + policy.buffer_pct) - perp
        available = spot - policy.min_reserve_spot
        if needed <= policy.min_transfer or available <= policy.min_transfer:
            return None
        amount = round(min(needed, available, cap), 2)
        if amount < policy.min_transfer:
            return None
        return Transfer(SPOT_TO_PERP, amount,
                        f"perp {perp:.2f} below minimum {policy.min_reserve_perp:.2f}")

    max_perp = policy.max_reserve_perp
    if max_perp is None:
        max_perp = (perp + spot) * DEFAULT_MAX_PERP_SHARE
    if perp > max_perp and perp > 2 * policy.min_reserve_perp:
        amount = round(min((perp - max_perp) * policy.withdraw_excess_pct, cap), 2)
        if amount <= policy.min_transfer:
            return None
        return Transfer(PERP_TO_SPOT, amount, f"perp {perp:.2f} above maximum {max_perp:.2f}")
    return None


class Rebalancer:
    """
    Args:
        policy: RebalancePolicy
        trade_store: TradeStore (transfer ledger and balance snapshots)
        exchange: Venue with get_balance/get_spot_usdc/usd_class_transfer
            (unused in paper mode)
        paper: Record transfers without touching the venue
    """

    def __init__(self, policy: RebalancePolicy, trade_store: TradeStore, exchange=None,
                 paper: bool = True, alert_service: Optional[AlertService] = None):
        self.policy = policy
        self.store = trade_store
        self.exchange = exchange
        self.paper = paper
        self.alert_service = alert_service

    @property
    def mode(self) -> str:
        return "paper" if self.paper else "live"

    def balances(self) -> Tuple[float, float]:
        """(perp, spot) USDC."""
        if self.paper:
            perp = self.store.get_latest_balance(VENUE_PERP, "paper")
            spot = self.store.get_latest_balance(VENUE_SPOT, "paper")
            return (PAPER_DEFAULT_BALANCE if perp is None else perp,
                    PAPER_DEFAULT_BALANCE if spot is None else spot)
        return float(self.exchange.get_balance()), float(self.exchange.get_spot_usdc())

    def run(self) -> RebalanceReport:
        report = RebalanceReport(mode=self.mode)
        if not self.policy.enabled:
            report.status = "disabled"
            return report

        perp, spot = self.balances()
        report.perp_balance, report.spot_balance = perp, spot
        report.transferred_today = self.store.get_today_transfer_total()
        transfer = plan_rebalance(perp, spot, self.policy, report.transferred_today)
        if transfer is None:
            logger.info(f"Collateral balanced (perp={perp:.2f}, spot={spot:.2f})")
            return report

        from_venue, to_venue = transfer.venues
        entry = {"direction": transfer.direction, "amount": transfer.amount, "reason": transfer.reason}
        tx_ref = None
        if not self.paper:
            try:
                result = self.exchange.usd_class_transfer(transfer.amount, transfer.to_perp)
            except TransferError as e:
                logger.error(f"Rebalance {transfer.direction} {transfer.amount:.2f} failed: {e}")
                self.store.insert_wallet_transfer(from_venue, to_venue, transfer.amount, status="failed")
                if self.alert_service:
                    self.alert_service.notify(AlertSeverity.WARNING, "Rebalance transfer failed", str(e), entry)
                report.status = "failed"
                report.error = str(e)
                report.transfers.append({**entry, "status": "failed"})
                return report
            tx_ref = str((result or {}).get("response") or "") or None

        self.store.insert_wallet_transfer(from_venue, to_venue, transfer.amount, tx_ref=tx_ref)
        if self.paper:
            delta = transfer.amount if transfer.to_perp else -transfer.amount
            self.store.insert_balance_snapshot(VENUE_PERP, perp + delta, "paper")
            self.store.insert_balance_snapshot(VENUE_SPOT, spot - delta, "paper")

        logger.info(f"Rebalanced ({self.mode}): {transfer.direction} {transfer.amount:.2f} USDC; {transfer.reason}")
        report.status = "rebalanced"
        report.transferred_today += transfer.amount
        report.transfers.append({**entry, "status": "completed"})
        return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Rebalance USDC between the spot reserve and perp margin")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from infra.config import bootstrap

    try:
        config = bootstrap(args.config_dir, "rebalance.log")
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    paper = (config.get("general", {}) or {}).get("mode", "paper") != "live"
    exchange = None
    if not paper:
        from core.exchange_hyperliquid import HyperliquidExchange
        exchange = HyperliquidExchange.from_config(config)

    rebalancer = Rebalancer(
        RebalancePolicy.from_section(config.get("wallet")),
        TradeStore((config.get("database", {}) or {}).get("path", "data/trades.db")),
        exchange=exchange,
        paper=paper,
        alert_service=AlertService.from_config(config.get("alerts")),
    )
    try:
        report = rebalancer.run()
    except CriticalDataUnavailable as e:
        logger.error(f"Rebalance aborted: {e}")
        print(json.dumps({"ok": False, "error": str(e)}))
        return 1

    print(json.dumps({"ok": report.status != "failed", **report.to_dict()}))
    return 0 if report.status != "failed" else 1


if __name__ == "__main__":
    sys.exit(main())
