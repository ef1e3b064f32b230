"""Prometheus-backed metrics hooks for the runner and the position monitor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    status: str
    steps_run: int
    steps_failed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose worker stats via Prometheus.

    Each recorder owns a private registry, so a runner and a monitor in the
    same test process never collide on metric names. When disabled every
    record_* call is a no-op.
    """

    def __init__(self, enabled: bool = False, port: int = 9100, worker: str = "runner") -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._worker = worker
        self._started = False
        self._last_cycle_stats: Optional[CycleStats] = None
        self.registry = CollectorRegistry()

        if not self._enabled:
            return

        self._cycle_counter = Counter(
            "perpbot_cycles_total", "Pipeline cycles by outcome", ["status"], registry=self.registry
        )
        self._cycle_summary = Summary(
            "perpbot_cycle_duration_seconds", "Pipeline cycle duration", registry=self.registry
        )
        self._step_summary = Summary(
            "perpbot_step_duration_seconds", "Pipeline step duration", ["step"], registry=self.registry
        )
        self._step_failures = Counter(
            "perpbot_step_failures_total", "Failed pipeline steps", ["step"], registry=self.registry
        )
        self._consecutive_failures = Gauge(
            "perpbot_consecutive_failed_cycles", "Consecutive failed cycles", registry=self.registry
        )
        self._monitor_checks = Counter(
            "perpbot_monitor_checks_total", "Position monitor checks", registry=self.registry
        )
        self._positions_closed = Counter(
            "perpbot_positions_closed_total", "Positions closed by exit reason", ["reason"], registry=self.registry
        )
        self._open_positions = Gauge(
            "perpbot_open_positions", "Open positions seen by the monitor", registry=self.registry
        )
        self._kill_switch_trips = Counter(
            "perpbot_kill_switch_trips_total", "Kill switch activations", registry=self.registry
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_cycle_stats(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
            self._started = True
            logger.info(f"Prometheus metrics for {self._worker} on :{self._port}")
        except OSError as exc:
            logger.warning(f"Metrics server for {self._worker} failed to start on :{self._port}: {exc}")

    def record_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        if not self._enabled:
            return
        self._cycle_counter.labels(status=stats.status).inc()
        self._cycle_summary.observe(stats.duration_seconds)

    def record_step(self, step_id: str, success: bool, duration_seconds: float) -> None:
        if not self._enabled:
            return
        self._step_summary.labels(step=step_id).observe(duration_seconds)
        if not success:
            self._step_failures.labels(step=step_id).inc()

    def record_consecutive_failures(self, count: int) -> None:
        if self._enabled:
            self._consecutive_failures.set(count)

    def record_monitor_check(self, open_positions: int) -> None:
        if not self._enabled:
            return
        self._monitor_checks.inc()
        self._open_positions.set(open_positions)

    def record_position_closed(self, reason: str) -> None:
        if self._enabled:
            self._positions_closed.labels(reason=reason).inc()

    def record_kill_switch(self) -> None:
        if self._enabled:
            self._kill_switch_trips.inc()
