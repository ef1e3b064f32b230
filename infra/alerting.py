"""
Webhook alerts for events an operator must see: kill switch trips, halted or
crashed workers, aborted cycles and positions that failed to close.

Alerts are fire-and-forget. A delivery failure is logged and reported via the
return value; it never interrupts the worker that raised the alert.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class AlertSeverity(IntEnum):
    INFO = 1
    WARNING = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, name: Optional[str], fallback: "AlertSeverity" = None) -> "AlertSeverity":
        """Case-insensitive lookup; unknown or empty names give ``fallback`` (WARNING)."""
        try:
            return cls[(name or "").strip().upper()]
        except KeyError:
            return fallback or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0

    @classmethod
    def from_section(cls, section: Optional[Dict[str, Any]]) -> "AlertConfig":
        """Build from the ``alerts`` section of app.yaml."""
        section = section or {}
        url = section.get("webhook_url") or ""
        if "${" in url:
            url = os.path.expandvars(url)
        if not url:
            url = os.environ.get(section.get("webhook_env") or "ALERT_WEBHOOK_URL", "")
        return cls(
            enabled=bool(section.get("enabled", False)),
            webhook_url=url or None,
            min_severity=AlertSeverity.parse(section.get("min_severity")),
            dry_run=bool(section.get("dry_run", False)),
            timeout=float(section.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(section.get("dedupe_seconds", 60.0)),
        )


def format_alert(severity: AlertSeverity, title: str, message: str,
                 context: Optional[Dict[str, Any]] = None) -> str:
    parts = [f"[{severity.name}] {title}"]
    if message:
        parts.append(message)
    if context:
        parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
    return " | ".join(parts)


class AlertService:
    """
    Posts ``{"text": ...}`` to a webhook (Slack/Discord style).

    The same (severity, title, message) is sent at most once per
    ``dedupe_seconds``; a worker stuck in a failing loop does not flood the
    channel.
    """

    def __init__(self, config: AlertConfig) -> None:
        self.config = config
        self._active = config.enabled and bool(config.webhook_url or config.dry_run)
        if config.enabled and not self._active:
            logger.warning("alerts.enabled is set but no webhook URL was found; alerts are off")
        self._last_sent: Dict[Tuple[str, str, str], float] = {}

    @classmethod
    def from_config(cls, section: Optional[Dict[str, Any]]) -> "AlertService":
        return cls(AlertConfig.from_section(section))

    def is_enabled(self) -> bool:
        return self._active

    def _is_duplicate(self, key: Tuple[str, str, str], now: float) -> bool:
        window = self.config.dedupe_seconds
        self._last_sent = {k: t for k, t in self._last_sent.items() if now - t <= window}
        if key in self._last_sent:
            return True
        self._last_sent[key] = now
        return False

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Returns:
            True if the alert went out (or was logged in dry-run mode)
        """
        if not self._active or severity < self.config.min_severity:
            return False
        if self._is_duplicate((severity.name, title, message), time.monotonic()):
            logger.debug(f"Suppressed repeat alert: {title}")
            return False

        text = format_alert(severity, title, message, context)
        if self.config.dry_run:
            logger.info(f"[dry-run alert] {text}")
            return True
        return self._post({"text": text}, title)

    def _post(self, payload: Dict[str, Any], title: str) -> bool:
        request = urllib.request.Request(
            self.config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout):
                return True
        except (urllib.error.URLError, socket.timeout) as e:
            logger.error(f"Alert '{title}' not delivered: {e}")
            return False


__all__ = ["AlertConfig", "AlertService", "AlertSeverity", "format_alert"]
