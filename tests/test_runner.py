"""
Tests for the scheduled runner

Validates component wiring, APY-driven targeted cycles and the continuous
loop's stop handling.
"""
from unittest.mock import patch

import pytest

from core.config import DecisionPolicy, EndpointsConfig, OrchestratorConfig
from core.exceptions import ConfigurationError
from core.session_manager import derive_session_key_id
from infra.execution_adapter import HttpExecutionAdapter
from infra.kv_store import InMemoryKeyValueStore
from infra.session_crypto import generate_key
from runner.cron import CronRunner, UnconfiguredExecutionAdapter, build_components, main
from tests.helpers import (
    VAULT_A,
    VAULT_B,
    VAULT_C,
    WALLET_1,
    FakePriceFeed,
    FakeVaultSource,
    make_position,
    make_vault,
)

CREDENTIAL = "0x" + "7a" * 32


def make_config(**overrides):
    return OrchestratorConfig(trigger_secret="s", encryption_key=generate_key(), **overrides)


@pytest.fixture
def source():
    return FakeVaultSource(
        vaults=[make_vault(VAULT_A, 0.03), make_vault(VAULT_B, 0.035), make_vault(VAULT_C, 0.034)],
        positions={WALLET_1: [make_position(VAULT_A, 10_000)]},
    )


@pytest.fixture
def components(source):
    built = build_components(
        make_config(),
        kv_store=InMemoryKeyValueStore(),
        vault_source=source,
        price_feed=FakePriceFeed(),
    )
    built.sessions.register(
        WALLET_1,
        derive_session_key_id(CREDENTIAL),
        CREDENTIAL,
        approved_vaults=[VAULT_A, VAULT_B, VAULT_C],
        expiry=built.sessions._clock() + 86_400,
    )
    return built


class TestBuildComponents:

    def test_requires_sealing_key(self):
        with pytest.raises(ConfigurationError):
            build_components(OrchestratorConfig(trigger_secret="s"))

    def test_without_relay_endpoint_execution_always_fails(self, components):
        adapter = components.orchestrator.scheduler.pipeline.adapter
        assert isinstance(adapter, UnconfiguredExecutionAdapter)
        assert not adapter.execute(None, "").success

    def test_relay_endpoint_configured(self):
        config = make_config(endpoints=EndpointsConfig(execution_url="https://relay.example/rebalance"))
        built = build_components(config, kv_store=InMemoryKeyValueStore(),
                                 vault_source=FakeVaultSource(), price_feed=FakePriceFeed())
        assert isinstance(built.orchestrator.scheduler.pipeline.adapter, HttpExecutionAdapter)

    def test_policy_flows_into_components(self, components):
        scheduler = components.orchestrator.scheduler
        assert scheduler.batch_size == 50
        assert scheduler.concurrency == 10
        assert scheduler.locks.ttl_seconds == 300
        assert scheduler.pipeline.budget.ceiling == 87
        assert scheduler.pipeline.simulation_mode

    def test_decision_defaults_seed_user_strategies(self):
        config = make_config(decision=DecisionPolicy(default_min_apy_gain=0.02))
        built = build_components(config, kv_store=InMemoryKeyValueStore(),
                                 vault_source=FakeVaultSource(), price_feed=FakePriceFeed())

        assert built.users.strategy_for(WALLET_1).min_apy_gain == 0.02


class TestCronRunner:

    def test_run_once_full_cycle(self, components):
        result = CronRunner(components).run_once()
        assert result.success
        assert result.targeted_vaults is None

    def test_monitor_without_changes_skips_cycle(self, components, source):
        runner = CronRunner(components)
        assert runner.run_once(monitor_apy=True) is None
        assert runner.run_once(monitor_apy=True) is None

    def test_monitor_change_triggers_targeted_cycle(self, components, source):
        runner = CronRunner(components)
        runner.run_once(monitor_apy=True)

        source.set_apy(VAULT_C, 0.06)
        result = runner.run_once(monitor_apy=True)

        assert result.targeted_vaults == [VAULT_C]
        (detail,) = result.details
        assert "[TARGETED]" in detail.reason

    def test_jitter_is_clamped(self, components):
        assert CronRunner(components, jitter_pct=75).jitter_pct == 20.0
        assert CronRunner(components, jitter_pct=-1).jitter_pct == 0.0

    def test_run_forever_stops_after_signal(self, components):
        runner = CronRunner(components, jitter_pct=0)
        calls = []

        def fake_run_once(**kwargs):
            calls.append(kwargs)
            runner.stop(signum=15)

        with patch.object(runner, "run_once", side_effect=fake_run_once), patch("runner.cron.time.sleep") as sleep:
            runner.run_forever(interval_seconds=60)

        assert len(calls) == 1
        sleep.assert_not_called()

    def test_run_forever_survives_cycle_exception(self, components):
        runner = CronRunner(components, jitter_pct=0)
        attempts = []

        def flaky(**kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            runner.stop()

        with patch.object(runner, "run_once", side_effect=flaky):
            runner.run_forever(interval_seconds=1)

        assert len(attempts) == 2


def test_main_reports_configuration_errors(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("DATABASE_ENCRYPTION_KEY", raising=False)

    assert main(["--once", "--config-dir", str(tmp_path)]) == 2
    assert "Configuration error" in capsys.readouterr().err
