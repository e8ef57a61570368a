"""
Session Revocation List

Session-key identifiers revoked by their owners. Entries expire after the
maximum session lifetime, after which an expired session is rejected on
expiry alone. Looked up fresh on every check so a revocation made during a
cycle is honored before execution.
"""

import logging
import time
from typing import Optional

from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

REVOCATION_KEY_PREFIX = "session:revoked:"
DEFAULT_REVOCATION_TTL_SECONDS = 7 * 24 * 60 * 60


def revocation_key(session_key_id: str) -> str:
    return f"{REVOCATION_KEY_PREFIX}{session_key_id.strip().lower()}"


class RevocationList:
    """Narrow repository over the key-value store for revoked session keys."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_REVOCATION_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def revoke(self, session_key_id: str, revoked_at: Optional[float] = None) -> None:
        """
        Add a session key to the list.

        Raises:
            StoreUnavailable: if the key-value store cannot be reached
        """
        stamp = revoked_at if revoked_at is not None else time.time()
        self.store.set(revocation_key(session_key_id), str(int(stamp)), ttl_seconds=self.ttl_seconds)
        logger.info(f"Session key {session_key_id.lower()} added to revocation list")

    def is_revoked(self, session_key_id: str) -> bool:
        """
        Raises:
            StoreUnavailable: if the key-value store cannot be reached. Callers
                must treat this as "cannot prove not revoked".
        """
        return self.store.get(revocation_key(session_key_id)) is not None
