"""
vaultpilot Infrastructure: User Store

Users, their stored session authorization and their rebalance strategy.
Users are never hard-deleted here; revocation clears the authorization
and the enabling flags.

Backends:
- InMemoryUserStore: tests and simulation runs
- JsonFileUserStore: JSON document with atomic writes (temp file + rename)
"""

import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

from core.exceptions import StoreUnavailable
from core.models import RebalanceStrategy, normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    id: str
    wallet: str
    auto_optimize_enabled: bool = False
    agent_registered: bool = False
    authorization: Optional[Dict[str, Any]] = field(default=None, repr=False)
    strategy: Optional[RebalanceStrategy] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_eligible(self) -> bool:
        return self.auto_optimize_enabled and self.agent_registered and self.authorization is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet": self.wallet,
            "auto_optimize_enabled": self.auto_optimize_enabled,
            "agent_registered": self.agent_registered,
            "authorization": self.authorization,
            "strategy": self.strategy.to_dict() if self.strategy else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        return cls(
            id=data["id"],
            wallet=normalize_address(data["wallet"]),
            auto_optimize_enabled=bool(data.get("auto_optimize_enabled", False)),
            agent_registered=bool(data.get("agent_registered", False)),
            authorization=data.get("authorization"),
            strategy=RebalanceStrategy.from_dict(data["strategy"]) if data.get("strategy") else None,
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
        )


class UserStore:
    """
    Persistence for user records. Subclasses provide _read_all/_write_all;
    every mutation is a read-modify-write under one re-entrant lock.
    """

    def __init__(self, default_strategy: Optional[RebalanceStrategy] = None):
        self._lock = RLock()
        # Seeded into records that have no strategy yet
        self.default_strategy = default_strategy or RebalanceStrategy()

    def _read_all(self) -> Dict[str, UserRecord]:
        raise NotImplementedError

    def _write_all(self, users: Dict[str, UserRecord]) -> None:
        raise NotImplementedError

    def get(self, wallet: str) -> Optional[UserRecord]:
        with self._lock:
            return self._read_all().get(normalize_address(wallet))

    def eligible_users(self) -> List[UserRecord]:
        """
        Users with auto-optimize on, agent registered and an authorization.

        Raises:
            StoreUnavailable: if the store cannot be read
        """
        with self._lock:
            users = self._read_all()
        return sorted((u for u in users.values() if u.is_eligible), key=lambda u: u.wallet)

    def save_authorization(self,
                           wallet: str,
                           authorization: Dict[str, Any],
                           auto_optimize_enabled: Optional[bool] = None) -> UserRecord:
        """
        Upsert a user with a new authorization (overwrites any previous one)
        and make sure a strategy exists.
        """
        key = normalize_address(wallet)
        now = time.time()
        with self._lock:
            users = self._read_all()
            existing = users.get(key)
            if existing is None:
                existing = UserRecord(id=str(uuid.uuid4()), wallet=key, created_at=now)
            record = replace(
                existing,
                authorization=authorization,
                agent_registered=True,
                auto_optimize_enabled=(
                    existing.auto_optimize_enabled if auto_optimize_enabled is None else auto_optimize_enabled
                ),
                strategy=existing.strategy or self.default_strategy,
                updated_at=now,
            )
            users[key] = record
            self._write_all(users)
        return record

    def clear_authorization(self, wallet: str) -> Optional[UserRecord]:
        """Clear authorization, agent-registered and auto-optimize. Returns the prior record."""
        key = normalize_address(wallet)
        with self._lock:
            users = self._read_all()
            existing = users.get(key)
            if existing is None:
                return None
            users[key] = replace(
                existing,
                authorization=None,
                agent_registered=False,
                auto_optimize_enabled=False,
                updated_at=time.time(),
            )
            self._write_all(users)
        return existing

    def set_auto_optimize(self, wallet: str, enabled: bool) -> Optional[UserRecord]:
        key = normalize_address(wallet)
        with self._lock:
            users = self._read_all()
            existing = users.get(key)
            if existing is None:
                return None
            record = replace(existing, auto_optimize_enabled=enabled, updated_at=time.time())
            users[key] = record
            self._write_all(users)
        return record

    def strategy_for(self, wallet: str) -> RebalanceStrategy:
        """Strategy for a user, created lazily from the store's default strategy."""
        key = normalize_address(wallet)
        with self._lock:
            users = self._read_all()
            existing = users.get(key)
            if existing is None:
                return self.default_strategy
            if existing.strategy is None:
                users[key] = replace(existing, strategy=self.default_strategy, updated_at=time.time())
                self._write_all(users)
                return self.default_strategy
            return existing.strategy

    def update_strategy(self, wallet: str, strategy: RebalanceStrategy) -> Optional[UserRecord]:
        key = normalize_address(wallet)
        with self._lock:
            users = self._read_all()
            existing = users.get(key)
            if existing is None:
                return None
            record = replace(existing, strategy=strategy, updated_at=time.time())
            users[key] = record
            self._write_all(users)
        return record


class InMemoryUserStore(UserStore):
    def __init__(self, default_strategy: Optional[RebalanceStrategy] = None):
        super().__init__(default_strategy)
        self._users: Dict[str, UserRecord] = {}
        self.available = True

    def _read_all(self) -> Dict[str, UserRecord]:
        if not self.available:
            raise StoreUnavailable("read users")
        return dict(self._users)

    def _write_all(self, users: Dict[str, UserRecord]) -> None:
        if not self.available:
            raise StoreUnavailable("write users")
        self._users = dict(users)


class JsonFileUserStore(UserStore):
    """
    JSON document keyed by wallet.

    Features:
    - Atomic writes (temp file + rename)
    - Missing file reads as an empty store
    """

    def __init__(self, users_file: Optional[str] = None,
                 default_strategy: Optional[RebalanceStrategy] = None):
        """
        Args:
            users_file: Path to users JSON file (default: data/users.json)
            default_strategy: Strategy seeded into users that have none
        """
        super().__init__(default_strategy)
        self.users_file = Path(users_file) if users_file else Path("data/users.json")
        self.users_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JsonFileUserStore at {self.users_file}")

    def _read_all(self) -> Dict[str, UserRecord]:
        if not self.users_file.exists():
            return {}
        try:
            with open(self.users_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailable("read users", e) from e

        if not isinstance(data, dict):
            raise StoreUnavailable("read users", ValueError("users file root must be a mapping"))
        return {normalize_address(k): UserRecord.from_dict(v) for k, v in data.items()}

    def _write_all(self, users: Dict[str, UserRecord]) -> None:
        payload = {k: v.to_dict() for k, v in users.items()}
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.users_file.parent,
                prefix=".users_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)

            # Atomic rename
            os.replace(temp_path, self.users_file)
        except OSError as e:
            raise StoreUnavailable("write users", e) from e


def default_strategy_from_policy(policy) -> RebalanceStrategy:
    """Fleet-wide strategy defaults from a DecisionPolicy section."""
    return RebalanceStrategy(
        min_apy_gain=policy.default_min_apy_gain,
        max_slippage=policy.default_max_slippage,
    )


def create_user_store_from_config(store_cfg, decision_policy=None) -> UserStore:
    default_strategy = default_strategy_from_policy(decision_policy) if decision_policy is not None else None
    if store_cfg.users_path:
        return JsonFileUserStore(store_cfg.users_path, default_strategy=default_strategy)
    return InMemoryUserStore(default_strategy=default_strategy)
