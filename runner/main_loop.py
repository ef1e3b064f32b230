"""
perpbot Runner: Main Loop

Orchestrates the trading pipeline on a fixed cadence.

Flow per cycle:
1. collect  - market data snapshots         (critical)
2. analyze  - signals from snapshots         (critical)
   -> optional decision delegate review of the signal file
3. rebalance - spot <-> perp collateral band  (non-critical)
4. trade    - risk-gated execution           (non-critical)

Between steps the kill switch and the control mailbox are checked. After the
cycle the runner makes sure a position monitor is alive whenever trades are
open. Cycle failures back off on cooldown_on_error_sec; too many in a row
park the runner in a terminal "error" state.

Usage:
    python -m runner.main_loop                # continuous
    python -m runner.main_loop --once         # one cycle
    python -m runner.main_loop --direct       # skip the decision delegate
"""

import argparse
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ai.decision_delegate import DecisionDelegate, apply_decisions, build_summary
from core.risk import RiskManager
from core.trade_store import TradeStore
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder
from infra.status_channel import (
    COMMAND_RUN_NOW,
    COMMAND_STOP,
    StatusChannel,
    atomic_write_json,
    channel_for,
    read_json,
    utc_now_iso,
)
from runner.steps import PipelineStep, StepResult, run_step
from strategy.params import resolve_trade_params, write_override

logger = logging.getLogger(__name__)

WAIT_TIMEOUT = "timeout"
WAIT_STOP = "stop"
WAIT_RUN_NOW = "run-now"
WAIT_KILL_SWITCH = "kill_switch"
WAIT_KILL_SWITCH_CLEARED = "kill_switch_cleared"


@dataclass
class RunnerStatus:
    state: str = "running"
    pid: int = field(default_factory=os.getpid)
    started_at: str = field(default_factory=utc_now_iso)
    cycle_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    consecutive_failures: int = 0
    last_cycle: Optional[Dict[str, Any]] = None
    next_cycle_at: Optional[str] = None
    interval_sec: float = 300.0
    mode: str = "continuous"
    trading_mode: str = "paper"
    direct: bool = False
    paused: bool = False
    stopped_at: Optional[str] = None
    stop_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CycleResult:
    started_at: str
    completed_at: Optional[str] = None
    success: bool = True
    steps: List[StepResult] = field(default_factory=list)
    duration_ms: int = 0
    aborted_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # step outputs can be large; the status file keeps a compact view
        data["steps"] = [
            {k: s[k] for k in ("step_id", "success", "duration_ms", "error", "skipped")}
            for s in data["steps"]
        ]
        return data


class PipelineRunner:
    """
    Pipeline scheduler. Owns its status; talks to the outside world only
    through its StatusChannel, the kill-switch file and the trade store.

    Args:
        config: Validated app config
        config_dir: Re-read every cycle when given (None disables reload)
        once: Run exactly one cycle
        direct: Skip the decision delegate
        interval_sec: Overrides runner.interval_sec
    """

    def __init__(
        self,
        config: Dict[str, Any],
        config_dir: Optional[str] = "config",
        once: bool = False,
        direct: bool = False,
        interval_sec: Optional[float] = None,
        channel: Optional[StatusChannel] = None,
        monitor_channel: Optional[StatusChannel] = None,
        trade_store: Optional[TradeStore] = None,
        delegate: Optional[DecisionDelegate] = None,
        step_runner: Callable[..., StepResult] = run_step,
        monitor_launcher: Optional[Callable[[], None]] = None,
        metrics: Optional[MetricsRecorder] = None,
        alert_service: Optional[AlertService] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.config_dir = config_dir
        self.once = once
        self.direct = direct
        self.interval_override = float(interval_sec) if interval_sec else None

        self.channel = channel or channel_for("runner", config)
        self.monitor_channel = monitor_channel or channel_for("monitor", config)
        self.store = trade_store or TradeStore((config.get("database", {}) or {}).get("path", "data/trades.db"))
        self.delegate = delegate or DecisionDelegate.from_config(config)
        self.step_runner = step_runner
        self.monitor_launcher = monitor_launcher or self._spawn_position_monitor
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.alert_service = alert_service
        self._sleep = sleep
        self._clock = clock

        self._stop_requested = False
        self.status = RunnerStatus(
            interval_sec=self.interval_sec,
            mode="once" if once else "continuous",
            trading_mode=(config.get("general", {}) or {}).get("mode", "paper"),
            direct=direct,
        )

    # ----- config -----
    @property
    def runner_config(self) -> Dict[str, Any]:
        return self.config.get("runner", {}) or {}

    @property
    def interval_sec(self) -> float:
        return self.interval_override or float(self.runner_config.get("interval_sec", 300))

    def _reload_config(self) -> None:
        """Pick up edits to app.yaml between cycles; keep the old config on error."""
        if not self.config_dir:
            return
        from tools.config_validator import load_app_config
        try:
            self.config = load_app_config(self.config_dir)
        except (ValueError, OSError) as e:
            logger.warning(f"Config reload failed, keeping previous config: {e}")
            return
        self.status.interval_sec = self.interval_sec

    def _risk(self) -> RiskManager:
        return RiskManager(resolve_trade_params(self.config), self.store)

    # ----- status -----
    def _publish(self) -> None:
        self.channel.publish(self.status.to_dict())

    def _finish(self, state: str, reason: str) -> None:
        self.status.state = state
        self.status.stop_reason = reason
        self.status.stopped_at = utc_now_iso()
        self.status.next_cycle_at = None
        self._publish()
        logger.info(f"Runner {state}: {reason}")

    def _handle_signal(self, signum, _frame):
        name = signal.Signals(signum).name
        logger.warning("=" * 80)
        logger.warning(f"{name} RECEIVED - stopping runner")
        logger.warning("=" * 80)
        self._finish("stopped", f"signal {name}")
        raise SystemExit(0)

    def _install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _alert(self, severity: AlertSeverity, title: str, message: str) -> None:
        if self.alert_service:
            self.alert_service.notify(severity, title, message, {"pid": self.status.pid})

    # ----- control -----
    def _poll_stop(self) -> bool:
        command = self.channel.consume_command()
        if command == COMMAND_STOP:
            self._stop_requested = True
            return True
        if command == COMMAND_RUN_NOW:
            logger.info("run-now received mid-cycle; ignored")
        return False

    def _wait(self, seconds: float, until_kill_switch_cleared: bool = False) -> str:
        """
        Interruptible sleep, polling the mailbox every control_poll_sec.

        Returns:
            Why the wait ended: timeout, stop, run-now, kill_switch (tripped
            while waiting) or kill_switch_cleared (paused wait only)
        """
        poll = float(self.runner_config.get("control_poll_sec", 2.0))
        deadline = self._clock() + max(0.0, seconds)
        risk = self._risk()
        while True:
            command = self.channel.consume_command()
            if command == COMMAND_STOP:
                return WAIT_STOP
            if command == COMMAND_RUN_NOW:
                logger.info("run-now received; starting next cycle immediately")
                return WAIT_RUN_NOW

            active = risk.is_kill_switch_active()
            if until_kill_switch_cleared and not active:
                return WAIT_KILL_SWITCH_CLEARED
            if not until_kill_switch_cleared and active:
                return WAIT_KILL_SWITCH

            remaining = deadline - self._clock()
            if remaining <= 0:
                return WAIT_TIMEOUT
            self._sleep(min(poll, remaining))

    # ----- cycle -----
    def _steps(self) -> List[PipelineStep]:
        return [PipelineStep.from_config(raw) for raw in self.runner_config.get("steps", []) or []]

    def run_cycle(self) -> CycleResult:
        """Run every step once, in order. Never raises for a step failure."""
        started = self._clock()
        cycle = CycleResult(started_at=utc_now_iso())
        steps = self._steps()
        pause = float(self.runner_config.get("pause_between_steps_sec", 2.0))
        delegate_cfg = self.config.get("delegate", {}) or {}
        logger.info(f"Cycle {self.status.cycle_count + 1} starting ({len(steps)} steps)")

        for index, step in enumerate(steps):
            if step.executes_trades:
                gate = self._risk().check_can_trade()
                if not gate.allowed:
                    logger.info(f"[{step.id}] skipped: {gate.reason}")
                    cycle.steps.append(StepResult(step.id, True, 0, error=gate.reason, skipped=True))
                    continue

            result = self.step_runner(step, self.config_dir)
            cycle.steps.append(result)
            self.metrics.record_step(step.id, result.success, result.duration_ms / 1000.0)

            if not result.success and step.critical:
                cycle.success = False
                cycle.aborted_reason = f"critical step '{step.id}' failed: {result.error}"
                logger.error(cycle.aborted_reason)
                self._alert(AlertSeverity.WARNING, "Cycle aborted", cycle.aborted_reason)
                break

            if (result.success and delegate_cfg.get("enabled") and not self.direct
                    and step.id == delegate_cfg.get("after_step", "analyze")):
                self._delegate_review()

            if index == len(steps) - 1:
                break
            if self._risk().is_kill_switch_active():
                cycle.success = False
                cycle.aborted_reason = "kill switch activated"
                logger.warning("Kill switch active - aborting cycle")
                break
            if self._poll_stop():
                cycle.success = False
                cycle.aborted_reason = "stop requested"
                break
            if pause > 0:
                self._sleep(pause)

        cycle.completed_at = utc_now_iso()
        cycle.duration_ms = int((self._clock() - started) * 1000)
        self.metrics.record_cycle(CycleStats(
            status="ok" if cycle.success else "failed",
            steps_run=len(cycle.steps),
            steps_failed=sum(1 for s in cycle.steps if not s.success),
            duration_seconds=cycle.duration_ms / 1000.0,
        ))
        logger.info(
            f"Cycle finished: success={cycle.success} in {cycle.duration_ms}ms"
            f"{' (aborted: ' + cycle.aborted_reason + ')' if cycle.aborted_reason else ''}"
        )
        return cycle

    def _delegate_review(self) -> None:
        """Let the delegate approve/reject signals; any failure keeps the defaults."""
        signal_file = (self.config.get("analysis", {}) or {}).get("signal_file", "data/signals/latest.json")
        signals = read_json(signal_file)
        if not signals:
            return
        params = resolve_trade_params(self.config)
        summary = build_summary(signals, [t.to_dict() for t in self.store.get_open_trades()], params)
        if not summary["signals"]:
            logger.info("No actionable signals; delegate review skipped")
            return

        response = self.delegate.decide(summary)
        # Execution ages signals from the end of the review
        signals["reviewed_at"] = utc_now_iso()
        if response is None:
            atomic_write_json(signal_file, signals)
            return
        applied = apply_decisions(signals, response)
        atomic_write_json(signal_file, signals)
        logger.info(
            f"Delegate review applied: approved={applied.approved} rejected={applied.rejected} "
            f"unmatched={applied.unmatched}"
        )
        if response.adjustments:
            override_file = (self.config.get("strategy", {}) or {}).get("override_file", "data/ai-adjustments.json")
            write_override(override_file, response.adjustments, reason=response.summary or "delegate review")

    # ----- position monitor supervision -----
    def ensure_position_monitor(self) -> bool:
        """
        Start a position monitor if trades are open and none is alive.

        Returns:
            True if a monitor was launched
        """
        if not (self.config.get("monitor", {}) or {}).get("autostart", True):
            return False
        if not self.store.get_open_trades():
            return False
        if self.monitor_channel.is_alive():
            return False
        logger.info("Open positions without a live position monitor; launching one")
        try:
            self.monitor_launcher()
        except OSError as e:
            logger.error(f"Failed to launch position monitor: {e}")
            return False
        return True

    def _spawn_position_monitor(self) -> None:
        argv = [sys.executable, "-m", "runner.position_monitor"]
        if self.config_dir:
            argv.extend(["--config-dir", str(self.config_dir)])
        # Detached: the monitor outlives a --once runner
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

    # ----- main loop -----
    def _record_cycle(self, cycle: CycleResult) -> None:
        self.status.cycle_count += 1
        if cycle.success:
            self.status.success_count += 1
            self.status.consecutive_failures = 0
        else:
            self.status.fail_count += 1
            self.status.consecutive_failures += 1
        self.status.last_cycle = cycle.to_dict()
        self.metrics.record_consecutive_failures(self.status.consecutive_failures)

    def run_forever(self) -> int:
        """
        Returns:
            Process exit code (0 clean stop, 1 terminal error)
        """
        self._install_signal_handlers()
        self.status.state = "running"
        self._publish()
        logger.info(
            f"Runner started (mode={self.status.mode}, interval={self.interval_sec}s, "
            f"trading={self.status.trading_mode}, direct={self.direct})"
        )

        try:
            while True:
                if self._risk().is_kill_switch_active():
                    if self.once:
                        self._finish("stopped", "kill switch active")
                        return 0
                    if not self.status.paused:
                        logger.warning("Kill switch active - runner paused")
                        self._alert(AlertSeverity.CRITICAL, "Runner paused", "Kill switch file present")
                    self.status.state = "idle"
                    self.status.paused = True
                    self.status.next_cycle_at = None
                    self._publish()
                    poll = float(self.runner_config.get("kill_switch_poll_sec", 10.0))
                    if self._wait(poll, until_kill_switch_cleared=True) == WAIT_STOP:
                        self._finish("stopped", "stop command")
                        return 0
                    continue

                if self.status.paused:
                    logger.info("Kill switch cleared - resuming")
                    self.status.paused = False

                if self.channel.consume_command() == COMMAND_STOP:
                    self._finish("stopped", "stop command")
                    return 0

                self.status.state = "running"
                self.status.next_cycle_at = None
                self._publish()

                cycle = self.run_cycle()
                self._record_cycle(cycle)
                self.ensure_position_monitor()

                if self._stop_requested:
                    self._finish("stopped", "stop command")
                    return 0

                max_errors = int(self.runner_config.get("max_consecutive_errors", 10))
                if self.status.consecutive_failures >= max_errors:
                    reason = f"{self.status.consecutive_failures} consecutive failed cycles"
                    self._alert(AlertSeverity.CRITICAL, "Runner halted", reason)
                    self._finish("error", reason)
                    return 1

                max_cycles = int(self.runner_config.get("max_cycles", 0))
                if self.once:
                    self._finish("stopped", "single cycle complete")
                    return 0 if cycle.success else 1
                if max_cycles and self.status.cycle_count >= max_cycles:
                    self._finish("stopped", f"max cycles reached ({max_cycles})")
                    return 0

                wait = self.interval_sec if cycle.success else float(
                    self.runner_config.get("cooldown_on_error_sec", 60)
                )
                self.status.state = "idle"
                self.status.next_cycle_at = (datetime.now(timezone.utc) + timedelta(seconds=wait)).isoformat()
                self._publish()

                if self._wait(wait) == WAIT_STOP:
                    self._finish("stopped", "stop command")
                    return 0
                self._reload_config()
        except SystemExit:
            raise
        except Exception as e:
            logger.exception("Runner crashed")
            self._alert(AlertSeverity.CRITICAL, "Runner crashed", str(e))
            self._finish("error", f"fatal: {e}")
            return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="perpbot pipeline runner")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: runner.interval_sec)")
    parser.add_argument("--direct", action="store_true", help="Skip the decision delegate")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    from infra.config import bootstrap

    try:
        config = bootstrap(args.config_dir, "runner.log")
    except ValueError as e:
        logger.error(str(e))
        return 1

    channel = channel_for("runner", config)
    existing = channel.read_status()
    if existing and existing.get("state") in ("running", "idle") and existing.get("pid") != os.getpid():
        logger.error(f"Another runner is already live (pid={existing.get('pid')}); refusing to start")
        return 1
    channel.clear_command()

    monitoring = config.get("monitoring", {}) or {}
    metrics = MetricsRecorder(
        enabled=bool(monitoring.get("metrics_enabled")),
        port=int(monitoring.get("metrics_port", 9100)),
    )
    metrics.start()

    runner = PipelineRunner(
        config,
        config_dir=args.config_dir,
        once=args.once,
        direct=args.direct,
        interval_sec=args.interval,
        channel=channel,
        metrics=metrics,
        alert_service=AlertService.from_config(config.get("alerts")),
    )
    return runner.run_forever()


if __name__ == "__main__":
    sys.exit(main())
