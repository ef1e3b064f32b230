#!/usr/bin/env python3
"""
Operator control for the runner and position monitor.

Usage:
    python -m tools.botctl status              # both workers
    python -m tools.botctl status monitor
    python -m tools.botctl stop runner
    python -m tools.botctl run-now
    python -m tools.botctl kill "manual halt"
    python -m tools.botctl summary             # today's trades and PnL
    python -m tools.botctl close-all           # close every open trade now
    python -m tools.botctl emergency           # kill switch, then close-all

Commands go through the same status/control files the workers poll, so a
worker picks them up within one control poll interval. close-all and emergency
act directly, through the position monitor's close path.
"""

import argparse
import json
import sys
from typing import List, Optional

from core.risk import RiskManager
from core.trade_store import TradeStore
from infra.alerting import AlertService
from infra.status_channel import COMMAND_RUN_NOW, COMMAND_STOP, channel_for
from runner.position_monitor import EXIT_EMERGENCY, PositionMonitor, build_exchange
from strategy.params import resolve_trade_params

WORKERS = ("runner", "monitor")


def cmd_status(config, args) -> int:
    workers = [args.worker] if args.worker else list(WORKERS)
    report = {}
    for worker in workers:
        report[worker] = channel_for(worker, config).read_status() or {"state": "unknown"}
    risk = RiskManager(resolve_trade_params(config))
    report["kill_switch"] = risk.kill_switch_info()
    print(json.dumps(report, indent=2, default=str))
    return 0


def cmd_stop(config, args) -> int:
    channel = channel_for(args.worker, config)
    if not channel.is_alive():
        print(f"{args.worker} is not running")
        return 1
    channel.send_command(COMMAND_STOP)
    print(f"stop sent to {args.worker}")
    return 0


def cmd_run_now(config, args) -> int:
    channel = channel_for("runner", config)
    if not channel.is_alive():
        print("runner is not running")
        return 1
    channel.send_command(COMMAND_RUN_NOW)
    print("run-now sent to runner")
    return 0


def cmd_kill(config, args) -> int:
    risk = RiskManager(resolve_trade_params(config))
    risk.create_kill_switch(args.reason)
    print(f"kill switch created at {risk.kill_switch_file}")
    return 0


def cmd_summary(config, args) -> int:
    store = _store(config)
    summary = store.get_daily_summary()
    summary["open_trades"] = [t.to_dict() for t in store.get_open_trades()]
    print(json.dumps(summary, indent=2, default=str))
    return 0


def _store(config) -> TradeStore:
    return TradeStore((config.get("database", {}) or {}).get("path", "data/trades.db"))


def _closer(config) -> PositionMonitor:
    """A one-shot monitor whose close path handles manual exits."""
    return PositionMonitor(
        config,
        _store(config),
        build_exchange(config),
        channel_for("monitor", config),
        params_provider=lambda: resolve_trade_params(config),
        alert_service=AlertService.from_config(config.get("alerts")),
    )


def _report_closes(config, reason: str, result, **extra) -> int:
    mode = (config.get("general", {}) or {}).get("mode", "paper")
    print(json.dumps({"mode": mode, "reason": reason, **extra, **result.to_dict()}, indent=2, default=str))
    failed = [d for d in result.details if d.action == "close_failed"]
    return 1 if failed else 0


def cmd_close_all(config, args) -> int:
    return _report_closes(config, args.reason, _closer(config).close_all(args.reason))


def cmd_emergency(config, args) -> int:
    risk = RiskManager(resolve_trade_params(config))
    risk.create_kill_switch(f"emergency: {args.reason}")
    result = _closer(config).close_all(EXIT_EMERGENCY)
    return _report_closes(config, EXIT_EMERGENCY, result, kill_switch=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="perpbot operator control")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show worker status")
    status.add_argument("worker", nargs="?", choices=WORKERS)
    status.set_defaults(func=cmd_status)

    stop = sub.add_parser("stop", help="Ask a worker to stop")
    stop.add_argument("worker", choices=WORKERS)
    stop.set_defaults(func=cmd_stop)

    run_now = sub.add_parser("run-now", help="Skip the runner's inter-cycle wait")
    run_now.set_defaults(func=cmd_run_now)

    kill = sub.add_parser("kill", help="Trip the kill switch")
    kill.add_argument("reason", nargs="?", default="manual")
    kill.set_defaults(func=cmd_kill)

    summary = sub.add_parser("summary", help="Today's trading summary")
    summary.set_defaults(func=cmd_summary)

    close_all = sub.add_parser("close-all", help="Close every open trade at market")
    close_all.add_argument("reason", nargs="?", default="manual")
    close_all.set_defaults(func=cmd_close_all)

    emergency = sub.add_parser("emergency", help="Trip the kill switch and close every open trade")
    emergency.add_argument("reason", nargs="?", default="manual")
    emergency.set_defaults(func=cmd_emergency)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    from tools.config_validator import load_app_config

    try:
        config = load_app_config(args.config_dir)
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    return args.func(config, args)


if __name__ == "__main__":
    sys.exit(main())
