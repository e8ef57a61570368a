"""
vaultpilot Core: Action Ledger

Append-only, write-once record of every automated action (rebalances,
simulated rebalances and session lifecycle events) for audit and user
history.

Output format for the file ledger: JSONL (one JSON object per line).
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple, Union

from core.models import normalize_address

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    REBALANCE = "rebalance"
    SESSION_EVENT = "session_event"


class ActionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _to_dec(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


@dataclass(frozen=True)
class RebalanceMetadata:
    """Decision context attached to a rebalance record"""
    from_vault: str
    to_vault: str
    from_apy: Decimal
    to_apy: Decimal
    apy_improvement: Decimal
    estimated_annual_gain: Decimal
    break_even_days: Optional[Decimal]
    reason: str
    shares: int
    assets: int
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": ActionKind.REBALANCE.value,
            "from_vault": self.from_vault,
            "to_vault": self.to_vault,
            "from_apy": _dec(self.from_apy),
            "to_apy": _dec(self.to_apy),
            "apy_improvement": _dec(self.apy_improvement),
            "estimated_annual_gain": _dec(self.estimated_annual_gain),
            "break_even_days": _dec(self.break_even_days),
            "reason": self.reason,
            # Base-unit integers can exceed JSON's safe integer range
            "shares": str(self.shares),
            "assets": str(self.assets),
            "simulated": self.simulated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalanceMetadata":
        return cls(
            from_vault=data["from_vault"],
            to_vault=data["to_vault"],
            from_apy=_to_dec(data["from_apy"]),
            to_apy=_to_dec(data["to_apy"]),
            apy_improvement=_to_dec(data["apy_improvement"]),
            estimated_annual_gain=_to_dec(data["estimated_annual_gain"]),
            break_even_days=_to_dec(data.get("break_even_days")),
            reason=data.get("reason", ""),
            shares=int(data["shares"]),
            assets=int(data["assets"]),
            simulated=bool(data.get("simulated", False)),
        )


@dataclass(frozen=True)
class SessionEventMetadata:
    """Session lifecycle event (issued / revoked)"""
    event: str
    session_key_id: str
    expiry: Optional[int] = None
    approved_vaults: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": ActionKind.SESSION_EVENT.value,
            "event": self.event,
            "session_key_id": self.session_key_id,
            "expiry": self.expiry,
            "approved_vaults": list(self.approved_vaults),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEventMetadata":
        return cls(
            event=data["event"],
            session_key_id=data["session_key_id"],
            expiry=data.get("expiry"),
            approved_vaults=tuple(data.get("approved_vaults") or ()),
        )


ActionMetadata = Union[RebalanceMetadata, SessionEventMetadata]

_METADATA_TYPES = {
    ActionKind.REBALANCE: RebalanceMetadata,
    ActionKind.SESSION_EVENT: SessionEventMetadata,
}


@dataclass(frozen=True)
class ActionRecord:
    """One write-once ledger entry."""
    user_id: str
    wallet: str
    kind: ActionKind
    status: ActionStatus
    metadata: ActionMetadata
    from_vault: Optional[str] = None
    to_vault: Optional[str] = None
    amount: Optional[int] = None
    receipt_id: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        expected = _METADATA_TYPES[self.kind]
        if not isinstance(self.metadata, expected):
            raise TypeError(
                f"{self.kind.value} record requires {expected.__name__}, "
                f"got {type(self.metadata).__name__}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "wallet": self.wallet,
            "kind": self.kind.value,
            "status": self.status.value,
            "from_vault": self.from_vault,
            "to_vault": self.to_vault,
            "amount": None if self.amount is None else str(self.amount),
            "receipt_id": self.receipt_id,
            "error": self.error,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionRecord":
        kind = ActionKind(data["kind"])
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            wallet=data["wallet"],
            kind=kind,
            status=ActionStatus(data["status"]),
            from_vault=data.get("from_vault"),
            to_vault=data.get("to_vault"),
            amount=None if data.get("amount") is None else int(data["amount"]),
            receipt_id=data.get("receipt_id"),
            error=data.get("error"),
            metadata=_METADATA_TYPES[kind].from_dict(data["metadata"]),
            created_at=float(data["created_at"]),
        )


class ActionLedger:
    """Append-only ledger interface."""

    def append(self, record: ActionRecord) -> ActionRecord:
        raise NotImplementedError

    def records_for(self, wallet: str, limit: int = 10) -> List[ActionRecord]:
        """Most recent records for a wallet, newest first."""
        raise NotImplementedError


class InMemoryActionLedger(ActionLedger):
    """Process-local ledger (tests, simulation runs)."""

    def __init__(self):
        self._records: List[ActionRecord] = []
        self._ids = set()
        self._lock = Lock()

    def append(self, record: ActionRecord) -> ActionRecord:
        with self._lock:
            if record.id in self._ids:
                raise ValueError(f"Ledger record {record.id} already written")
            self._ids.add(record.id)
            self._records.append(record)
        return record

    def records_for(self, wallet: str, limit: int = 10) -> List[ActionRecord]:
        key = normalize_address(wallet)
        with self._lock:
            matching = [r for r in self._records if r.wallet == key]
        return list(reversed(matching))[:limit]

    def all_records(self) -> List[ActionRecord]:
        with self._lock:
            return list(self._records)


class JsonlActionLedger(ActionLedger):
    """
    File-backed ledger.

    Each append writes one line; lines are never rewritten. Unlike the
    cycle log, a failed append raises so the caller can surface it.
    """

    def __init__(self, ledger_file: Optional[str] = None):
        """
        Initialize the ledger.

        Args:
            ledger_file: Path to JSONL file (default: logs/ledger.jsonl)
        """
        self.ledger_file = Path(ledger_file) if ledger_file else Path("logs/ledger.jsonl")
        self.ledger_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        logger.info(f"Initialized JsonlActionLedger at {self.ledger_file}")

    def append(self, record: ActionRecord) -> ActionRecord:
        line = json.dumps(record.to_dict())
        with self._lock:
            with open(self.ledger_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug(f"Ledger: {record.kind.value} {record.status.value} for {record.wallet}")
        return record

    def records_for(self, wallet: str, limit: int = 10) -> List[ActionRecord]:
        if not self.ledger_file.exists():
            return []

        key = normalize_address(wallet)
        with self._lock:
            with open(self.ledger_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

        records: List[ActionRecord] = []
        for line in reversed(lines):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if data.get("wallet") != key:
                continue
            records.append(ActionRecord.from_dict(data))
            if len(records) >= limit:
                break
        return records


def create_ledger_from_config(store_cfg) -> ActionLedger:
    """File ledger when store.ledger_path is set, otherwise in-memory."""
    if store_cfg.ledger_path:
        return JsonlActionLedger(store_cfg.ledger_path)
    return InMemoryActionLedger()
