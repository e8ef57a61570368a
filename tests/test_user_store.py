"""Tests for the user store backends."""
import json

import pytest

from core.config import DecisionPolicy, StoreConfig
from core.exceptions import StoreUnavailable
from core.models import RebalanceStrategy, RiskTier
from infra.user_store import (
    InMemoryUserStore,
    JsonFileUserStore,
    UserRecord,
    create_user_store_from_config,
    default_strategy_from_policy,
)
from tests.helpers import WALLET_1, WALLET_2, WALLET_3

AUTH = {"type": "scoped-session", "session_key_id": "0x01"}


class TestUserStore:

    def test_save_authorization_creates_user_with_strategy(self):
        store = InMemoryUserStore()
        record = store.save_authorization(WALLET_1.upper().replace("0X", "0x"), AUTH, auto_optimize_enabled=True)

        assert record.wallet == WALLET_1
        assert record.agent_registered
        assert record.strategy == RebalanceStrategy()
        assert store.get(WALLET_1).is_eligible

    def test_eligible_users_filtered_and_sorted(self):
        store = InMemoryUserStore()
        store.save_authorization(WALLET_3, AUTH, auto_optimize_enabled=True)
        store.save_authorization(WALLET_1, AUTH, auto_optimize_enabled=True)
        store.save_authorization(WALLET_2, AUTH, auto_optimize_enabled=False)

        assert [u.wallet for u in store.eligible_users()] == [WALLET_1, WALLET_3]

    def test_save_keeps_existing_toggle_when_unspecified(self):
        store = InMemoryUserStore()
        store.save_authorization(WALLET_1, AUTH, auto_optimize_enabled=True)
        store.save_authorization(WALLET_1, {**AUTH, "session_key_id": "0x02"})

        user = store.get(WALLET_1)
        assert user.auto_optimize_enabled
        assert user.authorization["session_key_id"] == "0x02"

    def test_clear_authorization_returns_prior_record(self):
        store = InMemoryUserStore()
        store.save_authorization(WALLET_1, AUTH, auto_optimize_enabled=True)

        prior = store.clear_authorization(WALLET_1)

        assert prior.authorization == AUTH
        assert store.get(WALLET_1).authorization is None
        assert store.clear_authorization(WALLET_2) is None

    def test_strategy_created_lazily(self):
        store = InMemoryUserStore()
        store._write_all({WALLET_1: UserRecord(id="u1", wallet=WALLET_1)})

        assert store.strategy_for(WALLET_1) == RebalanceStrategy()
        assert store.get(WALLET_1).strategy == RebalanceStrategy()

    def test_lazy_strategy_uses_store_default(self):
        default = RebalanceStrategy(min_apy_gain=0.02, max_slippage=0.01)
        store = InMemoryUserStore(default_strategy=default)
        store._write_all({WALLET_1: UserRecord(id="u1", wallet=WALLET_1)})

        assert store.strategy_for(WALLET_1).min_apy_gain == 0.02
        assert store.get(WALLET_1).strategy == default
        assert store.strategy_for(WALLET_2) == default
        assert store.save_authorization(WALLET_3, AUTH).strategy == default

    def test_update_strategy(self):
        store = InMemoryUserStore()
        store.save_authorization(WALLET_1, AUTH)
        store.update_strategy(WALLET_1, RebalanceStrategy(min_apy_gain=0.01, risk_tier=RiskTier.LOW))

        assert store.strategy_for(WALLET_1).risk_tier is RiskTier.LOW

    def test_unavailable_store(self):
        store = InMemoryUserStore()
        store.available = False
        with pytest.raises(StoreUnavailable):
            store.eligible_users()


class TestJsonFileUserStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "users.json"
        JsonFileUserStore(str(path)).save_authorization(WALLET_1, AUTH, auto_optimize_enabled=True)

        reloaded = JsonFileUserStore(str(path))
        user = reloaded.get(WALLET_1)

        assert user.is_eligible
        assert user.authorization == AUTH
        assert user.strategy == RebalanceStrategy()

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        store = JsonFileUserStore(str(tmp_path / "users.json"))
        store.save_authorization(WALLET_1, AUTH)
        store.save_authorization(WALLET_2, AUTH)

        assert [p.name for p in tmp_path.iterdir()] == ["users.json"]
        assert set(json.loads((tmp_path / "users.json").read_text())) == {WALLET_1, WALLET_2}

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileUserStore(str(tmp_path / "nested" / "users.json"))
        assert store.eligible_users() == []

    def test_corrupt_file_is_store_unavailable(self, tmp_path):
        path = tmp_path / "users.json"
        path.write_text("{not json")

        with pytest.raises(StoreUnavailable):
            JsonFileUserStore(str(path)).eligible_users()


def test_factory(tmp_path):
    assert isinstance(create_user_store_from_config(StoreConfig()), InMemoryUserStore)
    store = create_user_store_from_config(StoreConfig(users_path=str(tmp_path / "u.json")))
    assert isinstance(store, JsonFileUserStore)


def test_factory_seeds_policy_defaults(tmp_path):
    policy = DecisionPolicy(default_min_apy_gain=0.02, default_max_slippage=0.003)
    expected = default_strategy_from_policy(policy)
    assert expected == RebalanceStrategy(min_apy_gain=0.02, max_slippage=0.003)

    for store_cfg in (StoreConfig(), StoreConfig(users_path=str(tmp_path / "u.json"))):
        store = create_user_store_from_config(store_cfg, policy)
        store.save_authorization(WALLET_1, AUTH)
        assert store.strategy_for(WALLET_1) == expected
