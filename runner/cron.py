"""
vaultpilot Runner: scheduled rebalance cycles

Wires the configured components together and runs cycles either once
(--once, e.g. from an external scheduler) or continuously with jittered
sleeps. --monitor-apy runs the APY change monitor first and starts a
targeted cycle only for the vaults whose yield moved.
"""

import json
import logging
import random
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from core.apy_monitor import ApyChangeMonitor
from core.audit_log import ActionLedger, create_ledger_from_config
from core.config import OrchestratorConfig, load_config
from core.decision_engine import YieldDecisionEngine
from core.exceptions import ConfigurationError
from core.models import CycleResult
from core.orchestrator import RebalanceOrchestrator
from core.pipeline import RebalancePipeline
from core.rate_limiter import OperationBudgetLimiter
from core.safety_gate import SafetyGate
from core.scheduler import BatchScheduler
from core.session_manager import SessionAuthorizationService
from infra.alerting import AlertService
from infra.execution_adapter import ExecutionAdapter, ExecutionResult, HttpExecutionAdapter, RebalanceRequest
from infra.kv_store import KeyValueStore, create_kv_store_from_config
from infra.locks import UserLockRepository
from infra.metrics import MetricsRecorder
from infra.price_feed import ChainlinkPriceFeed, PriceFeed
from infra.revocation import RevocationList
from infra.session_crypto import SessionSealer
from infra.user_store import UserStore, create_user_store_from_config
from infra.vault_source import MorphoVaultClient, VaultDataSource

logger = logging.getLogger(__name__)

DEFAULT_JITTER_PCT = 10.0


class UnconfiguredExecutionAdapter(ExecutionAdapter):
    """Used when no relay endpoint is configured: every execution fails."""

    def execute(self, request: RebalanceRequest, credential: str) -> ExecutionResult:
        return ExecutionResult(success=False, error="No execution endpoint configured")


@dataclass
class Components:
    config: OrchestratorConfig
    kv_store: KeyValueStore
    users: UserStore
    ledger: ActionLedger
    sessions: SessionAuthorizationService
    orchestrator: RebalanceOrchestrator
    monitor: ApyChangeMonitor
    metrics: MetricsRecorder


def build_components(config: OrchestratorConfig,
                     kv_store: Optional[KeyValueStore] = None,
                     users: Optional[UserStore] = None,
                     ledger: Optional[ActionLedger] = None,
                     vault_source: Optional[VaultDataSource] = None,
                     price_feed: Optional[PriceFeed] = None,
                     adapter: Optional[ExecutionAdapter] = None) -> Components:
    """
    Build the orchestrator from configuration. Any collaborator can be
    injected (tests, alternative backends); the rest come from config.
    """
    if config.encryption_key is None:
        raise ConfigurationError("Sealing key is required to build the orchestrator")

    endpoints = config.endpoints
    kv_store = kv_store or create_kv_store_from_config(config.store)
    users = users or create_user_store_from_config(config.store, config.decision)
    ledger = ledger or create_ledger_from_config(config.store)
    vault_source = vault_source or MorphoVaultClient(
        endpoints.vault_api_url,
        timeout=endpoints.request_timeout_seconds,
        cache_seconds=endpoints.vault_cache_seconds,
    )
    price_feed = price_feed or ChainlinkPriceFeed(
        endpoints.rpc_url,
        endpoints.price_feed_address,
        timeout=config.safety.timeout_seconds,
    )
    if adapter is None:
        if endpoints.execution_url:
            adapter = HttpExecutionAdapter(endpoints.execution_url, timeout=endpoints.request_timeout_seconds)
        else:
            if not config.simulation_mode:
                logger.warning("LIVE mode without endpoints.execution_url: every execution will fail")
            adapter = UnconfiguredExecutionAdapter()

    revocations = RevocationList(kv_store, ttl_seconds=config.session.revocation_ttl_seconds)
    sessions = SessionAuthorizationService(
        users,
        SessionSealer(config.encryption_key.get_secret_value()),
        revocations,
        ledger,
        config.session,
    )
    engine = YieldDecisionEngine(
        vault_source,
        config.decision,
        chain_id=endpoints.chain_id,
        asset_symbol=endpoints.asset_symbol,
        asset_decimals=endpoints.asset_decimals,
    )
    budget = OperationBudgetLimiter(
        kv_store,
        daily_limit=config.budget.daily_limit,
        reserve=config.budget.reserve,
        window_seconds=config.budget.window_seconds,
    )
    pipeline = RebalancePipeline(
        sessions,
        engine,
        budget,
        adapter,
        ledger,
        users,
        chain_id=endpoints.chain_id,
        simulation_mode=config.simulation_mode,
    )
    scheduler = BatchScheduler(
        pipeline,
        UserLockRepository(kv_store, ttl_seconds=config.scheduler.lock_ttl_seconds),
        batch_size=config.scheduler.batch_size,
        concurrency=config.scheduler.concurrency,
    )
    metrics = MetricsRecorder(
        enabled=config.monitoring.metrics_enabled,
        port=config.monitoring.metrics_port,
    )
    orchestrator = RebalanceOrchestrator(
        config,
        users,
        SafetyGate(price_feed, config.safety),
        scheduler,
        metrics=metrics,
        alerts=AlertService.from_config(config.monitoring),
    )
    monitor = ApyChangeMonitor(
        vault_source,
        kv_store,
        config.apy_monitor,
        chain_id=endpoints.chain_id,
        asset_symbol=endpoints.asset_symbol,
        vault_fetch_limit=config.decision.vault_fetch_limit,
    )
    return Components(
        config=config,
        kv_store=kv_store,
        users=users,
        ledger=ledger,
        sessions=sessions,
        orchestrator=orchestrator,
        monitor=monitor,
        metrics=metrics,
    )


def setup_logging(config: OrchestratorConfig) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


class CronRunner:
    def __init__(self, components: Components, jitter_pct: float = DEFAULT_JITTER_PCT):
        self.components = components
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))  # Clamp 0-20%
        self._running = True

    def stop(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signum}, stopping after current cycle")
        self._running = False

    def run_once(self, targeted_vaults: Optional[Sequence[str]] = None,
                 monitor_apy: bool = False) -> Optional[CycleResult]:
        """
        Run one cycle. With monitor_apy, the cycle is targeted at the vaults
        whose APY moved, and skipped entirely when none did.
        """
        targeted: Optional[List[str]] = list(targeted_vaults) if targeted_vaults else None
        if monitor_apy:
            changes = self.components.monitor.detect_changes()
            affected = changes.affected_vaults
            if not affected:
                logger.info(f"APY monitor: no significant changes across {changes.checked} vaults, skipping cycle")
                return None
            targeted = sorted(set((targeted or []) + affected))
        return self.components.orchestrator.run_cycle(targeted_vaults=targeted)

    def run_forever(self, interval_seconds: float,
                    targeted_vaults: Optional[Sequence[str]] = None,
                    monitor_apy: bool = False) -> None:
        configured_interval = max(float(interval_seconds), 1.0)
        logger.info(f"Starting continuous loop (interval={configured_interval}s, jitter={self.jitter_pct:.1f}%)")

        while self._running:
            start = time.monotonic()
            try:
                self.run_once(targeted_vaults=targeted_vaults, monitor_apy=monitor_apy)
            except Exception as e:
                logger.error(f"Cycle failed: {e}", exc_info=True)
            elapsed = time.monotonic() - start

            # Jitter keeps multiple runners from hitting shared APIs in lockstep
            jitter = random.uniform(0, self.jitter_pct / 100.0) * configured_interval
            sleep_for = max(1.0, configured_interval - elapsed + jitter)
            logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")

            deadline = time.monotonic() + sleep_for
            while self._running and time.monotonic() < deadline:
                time.sleep(max(0.0, min(1.0, deadline - time.monotonic())))

        logger.info("Rebalance loop stopped cleanly.")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="vaultpilot rebalance runner")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=3600, help="Seconds between cycles (default: 3600)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--targeted-vaults", default="", help="Comma-separated vault addresses for a targeted cycle")
    parser.add_argument("--monitor-apy", action="store_true", help="Run the APY monitor and target changed vaults")
    parser.add_argument("--jitter-pct", type=float, default=DEFAULT_JITTER_PCT, help="Sleep jitter, percent of interval")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config_dir)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config)
    components = build_components(config)
    components.metrics.start()

    runner = CronRunner(components, jitter_pct=args.jitter_pct)
    signal.signal(signal.SIGTERM, runner.stop)
    signal.signal(signal.SIGINT, runner.stop)

    targeted = [v.strip() for v in args.targeted_vaults.split(",") if v.strip()] or None

    if args.once:
        result = runner.run_once(targeted_vaults=targeted, monitor_apy=args.monitor_apy)
        if result is not None:
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.success else 1
        return 0

    runner.run_forever(args.interval, targeted_vaults=targeted, monitor_apy=args.monitor_apy)
    return 0


if __name__ == "__main__":
    sys.exit(main())
