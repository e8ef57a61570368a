"""
vaultpilot Core: Operation Budget Limiter

Caps on-chain operations per user per UTC day. The orchestrator stops
short of the daily limit by a reserve so that a user always keeps some
operations for manual actions (withdrawals, revocation).

Pattern: one expiring counter per (user, UTC day) in the shared key-value
store. Fails CLOSED: when the counter store cannot be read the operation
is denied.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from core.exceptions import StoreUnavailable
from core.models import normalize_address
from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

BUDGET_KEY_PREFIX = "budget:ops:"


@dataclass(frozen=True)
class BudgetCheck:
    """Result of a budget check for one user"""
    allowed: bool
    used: int
    limit: int
    reserve: int
    reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.reserve - self.used)


class OperationBudgetLimiter:
    """
    Per-user daily operation budget.

    Usage:
        budget = OperationBudgetLimiter(store, daily_limit=90, reserve=3)

        check = budget.check(wallet)
        if not check.allowed:
            skip(check.reason)
        ...execute...
        budget.record(wallet)
    """

    def __init__(self,
                 store: KeyValueStore,
                 daily_limit: int = 90,
                 reserve: int = 3,
                 window_seconds: int = 86_400,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the budget limiter.

        Args:
            store: Shared key-value store holding the counters
            daily_limit: Operations allowed per user per UTC day
            reserve: Operations held back from the orchestrator
            window_seconds: Counter expiry
            clock: Epoch-seconds clock (injectable for tests)
        """
        if reserve >= daily_limit:
            raise ValueError(f"reserve ({reserve}) must be below daily_limit ({daily_limit})")
        self.store = store
        self.daily_limit = daily_limit
        self.reserve = reserve
        self.window_seconds = window_seconds
        self._clock = clock

        logger.info(f"Initialized OperationBudgetLimiter (limit={daily_limit}/day, reserve={reserve})")

    @property
    def ceiling(self) -> int:
        return self.daily_limit - self.reserve

    def _day(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    def _key(self, wallet: str) -> str:
        return f"{BUDGET_KEY_PREFIX}{normalize_address(wallet)}:{self._day()}"

    def check(self, wallet: str) -> BudgetCheck:
        """
        Decide whether the orchestrator may spend one more operation today.

        Denied when used >= limit - reserve, or when the counter store is
        unreachable.
        """
        try:
            raw = self.store.get(self._key(wallet))
        except StoreUnavailable as e:
            logger.error(f"Budget store unavailable for {normalize_address(wallet)}, denying: {e}")
            return BudgetCheck(
                allowed=False,
                used=0,
                limit=self.daily_limit,
                reserve=self.reserve,
                reason="Operation budget unavailable (fail closed)",
            )

        used = int(raw or 0)
        if used >= self.ceiling:
            logger.info(
                f"Budget low for {normalize_address(wallet)}: {used}/{self.daily_limit} used "
                f"(reserve {self.reserve})"
            )
            return BudgetCheck(
                allowed=False,
                used=used,
                limit=self.daily_limit,
                reserve=self.reserve,
                reason=f"Daily operation budget low ({used}/{self.daily_limit} used, {self.reserve} reserved)",
            )

        return BudgetCheck(allowed=True, used=used, limit=self.daily_limit, reserve=self.reserve)

    def record(self, wallet: str) -> int:
        """
        Count one executed operation.

        Returns:
            Operations used today after this one

        Raises:
            StoreUnavailable: if the counter cannot be incremented
        """
        used = self.store.incr(self._key(wallet), self.window_seconds)
        logger.debug(f"Budget for {normalize_address(wallet)}: {used}/{self.daily_limit}")
        return used

    def usage(self, wallet: str) -> int:
        """Operations used today (raises StoreUnavailable if unreachable)."""
        return int(self.store.get(self._key(wallet)) or 0)
