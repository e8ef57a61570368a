"""
Rebalance Cycle Orchestrator

One cycle:
1. Safety gate (fleet-wide; a trip aborts with zero users processed)
2. Eligible-user query (a failure aborts the cycle)
3. Batch fan-out through the scheduler (per-user failures never abort)

Used by both the scheduled runner (runner/cron.py) and the trigger
entry point, which is gated by a shared secret compared in constant time.
"""

import hmac
import logging
import time
from typing import Callable, Optional, Sequence

from core.config import OrchestratorConfig
from core.exceptions import UnauthorizedTrigger
from core.models import CycleResult, normalize_address
from core.safety_gate import SafetyGate
from core.scheduler import BatchScheduler
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.user_store import UserStore

logger = logging.getLogger(__name__)


class RebalanceOrchestrator:
    """
    Usage:
        orchestrator = RebalanceOrchestrator(config, users, gate, scheduler)
        result = orchestrator.trigger(presented_secret)
    """

    def __init__(self,
                 config: OrchestratorConfig,
                 users: UserStore,
                 safety_gate: SafetyGate,
                 scheduler: BatchScheduler,
                 metrics: Optional[MetricsRecorder] = None,
                 alerts: Optional[AlertService] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: Immutable orchestrator configuration
            users: User store (eligible-user query)
            safety_gate: Fleet-wide price safety check
            scheduler: Batch scheduler wrapping the per-user pipeline
            metrics: Optional Prometheus recorder
            alerts: Optional webhook alerting
        """
        self.config = config
        self.users = users
        self.safety_gate = safety_gate
        self.scheduler = scheduler
        self.metrics = metrics
        self.alerts = alerts
        self._clock = clock

        mode = "SIMULATION" if config.simulation_mode else "LIVE"
        logger.info(f"Initialized RebalanceOrchestrator (mode={mode})")

    def authorize(self, presented_secret: Optional[str]) -> None:
        """
        Raises:
            UnauthorizedTrigger: on a missing or wrong secret
        """
        expected = self.config.trigger_secret.get_secret_value() if self.config.trigger_secret else ""
        if not expected or not presented_secret:
            raise UnauthorizedTrigger("Missing trigger secret")
        if not hmac.compare_digest(presented_secret.encode("utf-8"), expected.encode("utf-8")):
            raise UnauthorizedTrigger("Invalid trigger secret")

    def trigger(self, presented_secret: Optional[str],
                targeted_vaults: Optional[Sequence[str]] = None) -> CycleResult:
        """Authenticated entry point: check the secret, then run one cycle."""
        try:
            self.authorize(presented_secret)
        except UnauthorizedTrigger:
            logger.warning("Rejected cycle trigger with invalid secret")
            raise
        return self.run_cycle(targeted_vaults=targeted_vaults)

    def _abort(self, result: CycleResult, reason: str, started: float) -> CycleResult:
        result.success = False
        result.abort_reason = reason
        result.duration_seconds = self._clock() - started
        if self.metrics:
            self.metrics.record_cycle(result)
        return result

    def run_cycle(self, targeted_vaults: Optional[Sequence[str]] = None) -> CycleResult:
        started = self._clock()
        targeted = (
            sorted({normalize_address(v) for v in targeted_vaults}) if targeted_vaults else None
        )
        result = CycleResult(success=False, targeted_vaults=targeted)

        mode_tag = "[SIMULATION] " if self.config.simulation_mode else ""
        scope = f"targeted ({len(targeted)} vaults)" if targeted else "full"
        logger.info(f"{mode_tag}Starting {scope} rebalance cycle")

        # Step 1: Safety gate
        safety = self.safety_gate.check()
        if not safety.safe:
            if self.metrics:
                self.metrics.record_safety_trip(safety.violated_check)
            if self.alerts:
                self.alerts.safety_tripped(safety.violated_check, safety.reason or "unknown", safety.price)
            return self._abort(result, f"Safety check failed: {safety.reason}", started)

        # Step 2: Eligible users
        try:
            users = self.users.eligible_users()
        except Exception as e:
            logger.error(f"Eligible-user query failed, aborting cycle: {e}", exc_info=True)
            if self.alerts:
                self.alerts.cycle_aborted(f"Eligible-user query failed: {e}")
            return self._abort(result, f"Eligible-user query failed: {e}", started)

        logger.info(f"Found {len(users)} eligible users")
        if self.metrics:
            self.metrics.record_eligible(len(users))

        # Step 3: Fan out
        for detail in self.scheduler.run(users, targeted_vaults=targeted):
            result.record(detail)
            if self.metrics:
                self.metrics.record_user(detail)

        result.success = True
        result.duration_seconds = self._clock() - started
        if self.metrics:
            self.metrics.record_cycle(result)

        logger.info(
            f"{mode_tag}Cycle complete in {result.duration_seconds:.2f}s: "
            f"processed={result.processed} rebalanced={result.rebalanced} "
            f"skipped={result.skipped} errors={result.errors}"
        )
        return result
