"""Alerting helpers for webhook notifications (safety-gate trips, fatal cycle errors)."""

from __future__ import annotations

import hashlib
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0  # One page per distinct alert per window


class AlertService:
    """
    Send notifications for orchestrator events.

    Identical alerts (same severity, title and message) are suppressed
    within `dedupe_seconds` of the first occurrence, so a feed that stays
    depegged pages once per window rather than once per cycle.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._clock = clock
        self._first_seen: Dict[str, float] = {}
        self.sent = 0

    @classmethod
    def from_config(cls, monitoring) -> "AlertService":
        """Build from a MonitoringConfig section."""
        return cls(AlertConfig(
            enabled=monitoring.alerts_enabled,
            webhook_url=monitoring.alert_webhook_url,
            dedupe_seconds=monitoring.alert_dedupe_seconds,
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Returns True if the alert was sent (not disabled, filtered or deduped)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = self._clock()
        first_seen = self._first_seen.get(fingerprint)
        if first_seen is not None and now - first_seen <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._first_seen[fingerprint] = now

        self._send(severity, title, message, context)
        self.sent += 1
        return True

    # ===== Orchestrator events =====

    def safety_tripped(self, check: Optional[str], reason: str, price: Optional[float] = None) -> bool:
        """Page when the fleet-wide safety gate skipped a whole cycle."""
        return self.notify(
            AlertSeverity.CRITICAL,
            "Safety gate tripped",
            reason,
            {"check": check or "unknown", "price": price},
        )

    def cycle_aborted(self, reason: str) -> bool:
        """Page when a cycle stopped before any user was processed."""
        return self.notify(AlertSeverity.CRITICAL, "Rebalance cycle aborted", reason)

    def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
