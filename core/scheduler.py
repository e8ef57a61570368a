"""
vaultpilot Core: Batch Scheduler

Fans one cycle out over the eligible users with a two-level throttle:
- users are split into batches (default 50)
- each batch is split into chunks of `concurrency` users (default 10)
- chunks run strictly one after another; users inside a chunk run
  concurrently and the chunk waits for all of them

Per user: non-blocking lock attempt (held -> skipped "in progress"), then
the pipeline inside a scope that always releases the lock. No per-user
failure can escape and abort the cycle.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

from core.models import SKIP_MESSAGES, SkipReason, UserCycleDetail, UserOutcome
from core.pipeline import RebalancePipeline
from infra.locks import UserLockRepository
from infra.user_store import UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    if size <= 0:
        raise ValueError(f"partition size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchScheduler:
    """
    Usage:
        scheduler = BatchScheduler(pipeline, locks, batch_size=50, concurrency=10)
        details = scheduler.run(users, targeted_vaults=None)
    """

    def __init__(self,
                 pipeline: RebalancePipeline,
                 locks: UserLockRepository,
                 batch_size: int = 50,
                 concurrency: int = 10,
                 on_detail: Optional[Callable[[UserCycleDetail], None]] = None):
        if batch_size <= 0 or concurrency <= 0:
            raise ValueError("batch_size and concurrency must be positive")
        self.pipeline = pipeline
        self.locks = locks
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.on_detail = on_detail

    def process_user(self, user: UserRecord, targeted_vaults: Optional[Sequence[str]] = None) -> UserCycleDetail:
        """Lock, run the pipeline, release. Never raises."""
        try:
            lock = self.locks.try_acquire(user.wallet)
        except Exception as e:
            logger.error(f"Lock store error for {user.wallet}: {e}")
            return UserCycleDetail(address=user.wallet, outcome=UserOutcome.ERROR, reason=f"Lock unavailable: {e}")

        if lock is None:
            logger.info(f"Skipped {user.wallet}: rebalance already in progress")
            return UserCycleDetail(
                address=user.wallet,
                outcome=UserOutcome.SKIPPED,
                reason=SKIP_MESSAGES[SkipReason.LOCKED],
                skip_reason=SkipReason.LOCKED,
            )

        with lock:
            try:
                return self.pipeline.run(user, targeted_vaults=targeted_vaults)
            except Exception as e:
                logger.exception(f"Unhandled error processing {user.wallet}")
                return UserCycleDetail(address=user.wallet, outcome=UserOutcome.ERROR, reason=str(e) or type(e).__name__)

    def _run_chunk(self, executor: ThreadPoolExecutor, chunk: List[UserRecord],
                   targeted_vaults: Optional[Sequence[str]]) -> List[UserCycleDetail]:
        futures = [executor.submit(self.process_user, user, targeted_vaults) for user in chunk]
        # Waits for every user in the chunk; order matches the chunk
        return [future.result() for future in futures]

    def run(self, users: Sequence[UserRecord], targeted_vaults: Optional[Sequence[str]] = None) -> List[UserCycleDetail]:
        details: List[UserCycleDetail] = []
        if not users:
            return details

        batches = partition(users, self.batch_size)
        logger.info(
            f"Processing {len(users)} users in {len(batches)} batches "
            f"(batch={self.batch_size}, concurrency={self.concurrency})"
        )

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="rebalance") as executor:
            for batch_index, batch in enumerate(batches, start=1):
                for chunk in partition(batch, self.concurrency):
                    for detail in self._run_chunk(executor, chunk, targeted_vaults):
                        details.append(detail)
                        if self.on_detail:
                            self.on_detail(detail)
                logger.debug(f"Batch {batch_index}/{len(batches)} complete")

        return details
