"""
Tests for the Operation Budget Limiter

Validates the daily ceiling with reserve, UTC-day rollover and fail-closed
behaviour when the counter store is unavailable.
"""
import pytest

from core.exceptions import StoreUnavailable
from core.rate_limiter import OperationBudgetLimiter
from infra.kv_store import InMemoryKeyValueStore
from tests.helpers import FakeClock, WALLET_1, WALLET_2

# 2024-01-01T12:00:00Z
NOON = 1_704_110_400.0


@pytest.fixture
def wall_clock():
    return FakeClock(NOON)


@pytest.fixture
def budget(wall_clock):
    return OperationBudgetLimiter(InMemoryKeyValueStore(), daily_limit=90, reserve=3, clock=wall_clock)


class TestOperationBudget:

    def test_fresh_user_is_allowed(self, budget):
        check = budget.check(WALLET_1)
        assert check.allowed
        assert check.used == 0
        assert check.remaining == 87

    def test_denied_once_only_reserve_is_left(self, budget):
        for _ in range(86):
            budget.record(WALLET_1)
        assert budget.check(WALLET_1).allowed

        budget.record(WALLET_1)
        check = budget.check(WALLET_1)

        assert not check.allowed
        assert check.used == 87
        assert check.remaining == 0
        assert "87/90" in check.reason

    def test_budgets_are_per_wallet(self, budget):
        for _ in range(87):
            budget.record(WALLET_1)
        assert not budget.check(WALLET_1).allowed
        assert budget.check(WALLET_2).allowed

    def test_new_utc_day_resets_usage(self, budget, wall_clock):
        for _ in range(87):
            budget.record(WALLET_1)

        wall_clock.advance(12 * 3600)  # 2024-01-02T00:00:00Z

        assert budget.usage(WALLET_1) == 0
        assert budget.check(WALLET_1).allowed

    def test_fails_closed_when_store_unavailable(self, wall_clock):
        store = InMemoryKeyValueStore()
        budget = OperationBudgetLimiter(store, clock=wall_clock)
        store.available = False

        check = budget.check(WALLET_1)

        assert not check.allowed
        assert check.reason == "Operation budget unavailable (fail closed)"

    def test_record_raises_when_store_unavailable(self, wall_clock):
        store = InMemoryKeyValueStore()
        budget = OperationBudgetLimiter(store, clock=wall_clock)
        store.available = False

        with pytest.raises(StoreUnavailable):
            budget.record(WALLET_1)

    def test_reserve_must_be_below_limit(self):
        with pytest.raises(ValueError):
            OperationBudgetLimiter(InMemoryKeyValueStore(), daily_limit=3, reserve=3)

    def test_ceiling(self, budget):
        assert budget.ceiling == 87
