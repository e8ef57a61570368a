"""
vaultpilot Core: Domain Types

Vaults and positions as read from the vault-data source, the Decision
produced by the decision engine, per-user cycle outcomes and the cycle
result returned to the trigger caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def normalize_address(address: str) -> str:
    """Lower-case and strip a wallet or vault address."""
    return (address or "").strip().lower()


@dataclass(frozen=True)
class VaultWarning:
    type: str
    level: str  # "RED" | "YELLOW"


@dataclass(frozen=True)
class Vault:
    """Vault metadata as served by the vault-data source (read-only)."""
    address: str
    name: str
    net_apy: float
    total_assets: int = 0
    total_assets_usd: float = 0.0
    liquidity_usd: Optional[float] = None
    whitelisted: Optional[bool] = None
    curators: Tuple[str, ...] = ()
    performance_fee: float = 0.0
    management_fee: float = 0.0
    warnings: Tuple[VaultWarning, ...] = ()

    @property
    def key(self) -> str:
        return normalize_address(self.address)

    @property
    def liquidity_ratio(self) -> Optional[float]:
        if self.liquidity_usd is None or not self.total_assets_usd:
            return None
        return self.liquidity_usd / self.total_assets_usd


@dataclass(frozen=True)
class Position:
    """A user's holding in one vault. Amounts are integer base units."""
    vault_address: str
    shares: int
    assets: int
    assets_usd: Optional[float] = None


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RebalanceStrategy:
    """Per-user rebalance policy; created lazily with defaults."""
    min_apy_gain: float = 0.005
    max_slippage: float = 0.005
    risk_tier: RiskTier = RiskTier.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_apy_gain": self.min_apy_gain,
            "max_slippage": self.max_slippage,
            "risk_tier": self.risk_tier.value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RebalanceStrategy":
        if not data:
            return cls()
        return cls(
            min_apy_gain=float(data.get("min_apy_gain", cls.min_apy_gain)),
            max_slippage=float(data.get("max_slippage", cls.max_slippage)),
            risk_tier=RiskTier(data.get("risk_tier", RiskTier.MEDIUM.value)),
        )


# ===== Decision =====

class DecisionOutcome(str, Enum):
    REBALANCE = "rebalance"
    NO_OP = "no_op"
    INELIGIBLE = "ineligible"


class ReasonCode(str, Enum):
    REBALANCE = "rebalance"
    NO_POSITION = "no_position"
    CURRENT_VAULT_UNKNOWN = "current_vault_unknown"
    NO_ELIGIBLE_TARGET = "no_eligible_target"
    NOT_TARGETED = "not_targeted"
    ALREADY_OPTIMAL = "already_optimal"
    GAIN_BELOW_THRESHOLD = "gain_below_threshold"
    BREAK_EVEN_UNDEFINED = "break_even_undefined"
    BREAK_EVEN_EXCEEDED = "break_even_exceeded"


@dataclass(frozen=True)
class CurrentVaultSnapshot:
    address: str
    name: str
    apy: Decimal
    shares: int
    assets: int


@dataclass(frozen=True)
class TargetVaultSnapshot:
    address: str
    name: str
    apy: Decimal
    liquidity_usd: float


@dataclass(frozen=True)
class Decision:
    """Output of one decision-engine evaluation for one user."""
    outcome: DecisionOutcome
    reason_code: ReasonCode
    reason: str
    current: Optional[CurrentVaultSnapshot] = None
    target: Optional[TargetVaultSnapshot] = None
    apy_improvement: Decimal = Decimal("0")
    estimated_annual_gain: Decimal = Decimal("0")
    break_even_days: Optional[Decimal] = None

    @property
    def should_rebalance(self) -> bool:
        return self.outcome is DecisionOutcome.REBALANCE


# ===== Cycle outcomes =====

class UserOutcome(str, Enum):
    REBALANCED = "rebalanced"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    LOCKED = "locked"
    NO_AUTHORIZATION = "no_authorization"
    UNSUPPORTED_AUTHORIZATION = "unsupported_authorization"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DECISION_NEGATIVE = "decision_negative"
    SIMULATED = "simulated"
    BUDGET_LOW = "budget_low"


SKIP_MESSAGES: Dict[SkipReason, str] = {
    SkipReason.LOCKED: "Rebalance already in progress (locked)",
    SkipReason.NO_AUTHORIZATION: "No session authorization found",
    SkipReason.UNSUPPORTED_AUTHORIZATION: "Unsupported session authorization type",
    SkipReason.EXPIRED: "Session key expired",
    SkipReason.REVOKED: "Session key has been revoked",
    SkipReason.SIMULATED: "[SIMULATION] Rebalance simulated only",
}


@dataclass
class UserCycleDetail:
    address: str
    outcome: UserOutcome
    reason: str
    skip_reason: Optional[SkipReason] = None
    apy_improvement: Optional[Decimal] = None
    receipt_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "address": self.address,
            "action": self.outcome.value,
            "reason": self.reason,
        }
        if self.apy_improvement is not None:
            payload["apy_improvement"] = float(self.apy_improvement)
        if self.receipt_id:
            payload["receipt_id"] = self.receipt_id
        return payload


@dataclass
class CycleResult:
    """Summary returned to the cycle trigger caller."""
    success: bool
    processed: int = 0
    rebalanced: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[UserCycleDetail] = field(default_factory=list)
    duration_seconds: float = 0.0
    abort_reason: Optional[str] = None
    targeted_vaults: Optional[List[str]] = None

    def record(self, detail: UserCycleDetail) -> None:
        self.details.append(detail)
        if detail.outcome is UserOutcome.REBALANCED:
            self.rebalanced += 1
        elif detail.outcome is UserOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1
        if detail.skip_reason is not SkipReason.LOCKED:
            self.processed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "summary": {
                "processed": self.processed,
                "rebalanced": self.rebalanced,
                "skipped": self.skipped,
                "errors": self.errors,
                "details": [d.to_dict() for d in self.details],
            },
            "duration_seconds": round(self.duration_seconds, 3),
            "abort_reason": self.abort_reason,
        }
