"""Prometheus-backed metrics hooks for the rebalance cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from core.models import CycleResult, UserCycleDetail

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    status: str
    processed: int
    rebalanced: int
    skipped: int
    errors: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose cycle stats via Prometheus.

    Each recorder owns its CollectorRegistry, so tests and multiple
    orchestrators in one process never collide on metric names.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_cycle_stats: Optional[CycleStats] = None
        self._outcome_counts: Dict[str, int] = {}
        self._safety_trips: Dict[str, int] = {}

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._cycle_gauge = None
            self._user_outcome_counter = None
            self._safety_trip_counter = None
            self._budget_denial_counter = None
            self._eligible_gauge = None
            return

        self._cycle_summary = Summary(
            "rebalance_cycle_duration_seconds",
            "Duration of a full rebalance cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            "rebalance_cycle_total",
            "Rebalance cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._cycle_gauge = Gauge(
            "rebalance_cycle_users",
            "Per-cycle user counts (processed, rebalanced, skipped, errors)",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._user_outcome_counter = Counter(
            "rebalance_user_outcomes_total",
            "Per-user outcomes by outcome and reason",
            labelnames=("outcome", "reason"),
            registry=self.registry,
        )
        self._safety_trip_counter = Counter(
            "rebalance_safety_gate_trips_total",
            "Safety gate trips by violated check",
            labelnames=("check",),
            registry=self.registry,
        )
        self._budget_denial_counter = Counter(
            "rebalance_budget_denials_total",
            "Users skipped because their daily operation budget was low",
            registry=self.registry,
        )
        self._eligible_gauge = Gauge(
            "rebalance_eligible_users",
            "Eligible users found at the start of the last cycle",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_cycle_stats(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def outcome_count(self, outcome: str, reason: str) -> int:
        return self._outcome_counts.get(f"{outcome}:{reason}", 0)

    def safety_trip_count(self, check: str) -> int:
        return self._safety_trips.get(check, 0)

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info("Prometheus metrics exporter listening on port %s", self._port)

    def record_eligible(self, count: int) -> None:
        if self._eligible_gauge is not None:
            self._eligible_gauge.set(count)

    def record_user(self, detail: UserCycleDetail) -> None:
        reason = detail.skip_reason.value if detail.skip_reason else detail.outcome.value
        key = f"{detail.outcome.value}:{reason}"
        self._outcome_counts[key] = self._outcome_counts.get(key, 0) + 1

        if self._user_outcome_counter is not None:
            self._user_outcome_counter.labels(outcome=detail.outcome.value, reason=reason).inc()
        if self._budget_denial_counter is not None and reason == "budget_low":
            self._budget_denial_counter.inc()

    def record_safety_trip(self, check: Optional[str]) -> None:
        label = check or "unknown"
        self._safety_trips[label] = self._safety_trips.get(label, 0) + 1
        if self._safety_trip_counter is not None:
            self._safety_trip_counter.labels(check=label).inc()

    def record_cycle(self, result: CycleResult) -> None:
        if result.success:
            status = "ok"
        elif result.abort_reason:
            status = "aborted"
        else:
            status = "error"

        stats = CycleStats(
            status=status,
            processed=result.processed,
            rebalanced=result.rebalanced,
            skipped=result.skipped,
            errors=result.errors,
            duration_seconds=result.duration_seconds,
        )
        self._last_cycle_stats = stats

        if not self._enabled:
            return

        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=status).inc()
        self._cycle_gauge.labels(outcome="processed").set(stats.processed)
        self._cycle_gauge.labels(outcome="rebalanced").set(stats.rebalanced)
        self._cycle_gauge.labels(outcome="skipped").set(stats.skipped)
        self._cycle_gauge.labels(outcome="errors").set(stats.errors)
