"""
Per-User Rebalance Lock - Prevent Overlapping Pipelines

At most one pipeline may touch a wallet at a time, even across overlapping
cycles or processes sharing the key-value store:
- Acquire is non-blocking (SET NX with TTL); contention is a normal skip
- Release deletes the key only if it still holds our lock id, so a stale
  holder can never release a lock re-acquired by someone else
- The TTL bounds how long a crashed holder can block the user
"""

import logging
import uuid
from typing import Optional

from core.models import normalize_address
from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:rebalance:"
DEFAULT_LOCK_TTL_SECONDS = 300


def lock_key(wallet: str) -> str:
    return f"{LOCK_KEY_PREFIX}{normalize_address(wallet)}"


class UserLock:
    """
    Handle for a held per-user lock.

    Usage:
        lock = locks.try_acquire(wallet)
        if lock is None:
            # someone else is rebalancing this wallet
            return
        with lock:
            run_pipeline(...)
    """

    def __init__(self, repository: "UserLockRepository", wallet: str, lock_id: str):
        self.repository = repository
        self.wallet = normalize_address(wallet)
        self.lock_id = lock_id
        self.released = False

    def release(self) -> bool:
        """Release the lock (compare-and-delete on our lock id)"""
        if self.released:
            return False
        self.released = True
        return self.repository.release(self.wallet, self.lock_id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.release()
        except Exception as e:
            # Release failure must not mask the pipeline's own exception; the
            # TTL frees the key.
            logger.warning(f"Failed to release lock for {self.wallet}: {e}")
        return False


class UserLockRepository:
    """Narrow repository over the key-value store for per-user locks."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def try_acquire(self, wallet: str) -> Optional[UserLock]:
        """
        Attempt to take the lock without waiting.

        Returns:
            UserLock if acquired, None if another pipeline holds it

        Raises:
            StoreUnavailable: if the key-value store cannot be reached
        """
        lock_id = str(uuid.uuid4())
        if not self.store.set_if_absent(lock_key(wallet), lock_id, self.ttl_seconds):
            logger.debug(f"Lock held for {normalize_address(wallet)}")
            return None
        return UserLock(self, wallet, lock_id)

    def release(self, wallet: str, lock_id: str) -> bool:
        released = self.store.delete_if_equals(lock_key(wallet), lock_id)
        if not released:
            logger.warning(
                f"Lock for {normalize_address(wallet)} was not ours on release "
                f"(expired or re-acquired)"
            )
        return released

    def is_locked(self, wallet: str) -> bool:
        return self.store.get(lock_key(wallet)) is not None
