"""
vaultpilot Core: Yield Decision Engine

Decides, for one user, whether moving the largest position to a
higher-yielding vault is worthwhile net of execution cost and risk.

Pipeline:
1. Pick the largest position (by USD value, then asset amount); with no
   position, report the best first-deposit target instead
2. Filter candidates: liquidity floor, risk-tier ceiling, approved scope,
   targeted set
3. Best candidate = highest net APY, ties broken by address
4. Gate on APY improvement >= threshold and break-even <= horizon

APYs are fractions (0.05 = 5%). All threshold math is done in Decimal so
boundary cases compare exactly.
"""

import logging
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence

from core.config import DecisionPolicy
from core.models import (
    CurrentVaultSnapshot,
    Decision,
    DecisionOutcome,
    Position,
    ReasonCode,
    RebalanceStrategy,
    TargetVaultSnapshot,
    Vault,
    normalize_address,
)
from core.risk_scoring import calculate_risk_score
from infra.vault_source import VaultDataSource

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = Decimal(365)
ZERO = Decimal(0)


def to_decimal(value: float) -> Decimal:
    """Float to Decimal via its shortest repr (0.05 -> Decimal('0.05'))."""
    return Decimal(str(value))


def clamp_apy(value: Optional[float]) -> Decimal:
    if value is None:
        return ZERO
    return max(ZERO, to_decimal(value))


def largest_position(positions: Iterable[Position]) -> Optional[Position]:
    candidates = [p for p in positions if p.shares > 0]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda p: (p.assets_usd or 0.0, p.assets, normalize_address(p.vault_address)),
    )


def _pct(value: Decimal) -> str:
    return f"{float(value) * 100:.2f}%"


def _eligible_candidates(vaults: Sequence[Vault],
                         current_key: Optional[str],
                         strategy: RebalanceStrategy,
                         policy: DecisionPolicy,
                         approved_vaults: Optional[Iterable[str]],
                         risk_scorer: Callable[[Vault], float]) -> List[Vault]:
    """Liquidity floor, approved scope and risk-tier ceiling, current vault excluded."""
    ceiling = policy.risk_ceilings[strategy.risk_tier.value]
    scope = None if approved_vaults is None else {normalize_address(v) for v in approved_vaults}

    candidates: List[Vault] = []
    for vault in vaults:
        if vault.key == current_key:
            continue
        if vault.total_assets_usd < policy.min_liquidity_usd:
            continue
        if scope is not None and vault.key not in scope:
            continue
        if risk_scorer(vault) > ceiling:
            continue
        candidates.append(vault)
    return candidates


def _best(candidates: Sequence[Vault]) -> TargetVaultSnapshot:
    # Highest APY first; ties go to the lowest address
    best = min(candidates, key=lambda v: (-clamp_apy(v.net_apy), v.key))
    return TargetVaultSnapshot(
        address=best.address,
        name=best.name,
        apy=clamp_apy(best.net_apy),
        liquidity_usd=best.total_assets_usd,
    )


def _first_deposit(vaults: Sequence[Vault],
                   strategy: RebalanceStrategy,
                   policy: DecisionPolicy,
                   approved_vaults: Optional[Iterable[str]],
                   targeted_vaults: Optional[Iterable[str]],
                   risk_scorer: Callable[[Vault], float]) -> Decision:
    """
    No position: current APY counts as zero and the best eligible vault is
    reported as a first-deposit target. Never a rebalance.
    """
    candidates = _eligible_candidates(vaults, None, strategy, policy, approved_vaults, risk_scorer)
    if targeted_vaults is not None:
        targeted = {normalize_address(v) for v in targeted_vaults}
        candidates = [v for v in candidates if v.key in targeted]

    if not candidates:
        return Decision(
            outcome=DecisionOutcome.INELIGIBLE,
            reason_code=ReasonCode.NO_POSITION,
            reason="No active positions found",
        )

    target = _best(candidates)
    return Decision(
        outcome=DecisionOutcome.INELIGIBLE,
        reason_code=ReasonCode.NO_POSITION,
        reason=f"No active positions found (first deposit target: {target.name} at {_pct(target.apy)})",
        target=target,
        apy_improvement=target.apy,
    )


def decide(position: Optional[Position],
           current_vault: Optional[Vault],
           vaults: Sequence[Vault],
           strategy: RebalanceStrategy,
           policy: DecisionPolicy,
           asset_decimals: int,
           approved_vaults: Optional[Iterable[str]] = None,
           targeted_vaults: Optional[Iterable[str]] = None,
           risk_scorer: Callable[[Vault], float] = calculate_risk_score) -> Decision:
    """
    Pure decision over already-fetched data.

    Args:
        position: The position to evaluate (None when the user holds nothing)
        current_vault: Metadata for the position's vault
        vaults: Candidate vault set for the chain + asset
        strategy: The user's rebalance strategy
        policy: Fleet-wide decision policy
        asset_decimals: Settlement asset decimals (USDC: 6)
        approved_vaults: Session scope; None means unrestricted
        targeted_vaults: Vaults whose APY moved; None means a full cycle

    Returns:
        Decision (exactly one outcome)
    """
    if position is None:
        return _first_deposit(vaults, strategy, policy, approved_vaults, targeted_vaults, risk_scorer)

    if current_vault is None:
        return Decision(
            outcome=DecisionOutcome.INELIGIBLE,
            reason_code=ReasonCode.CURRENT_VAULT_UNKNOWN,
            reason=f"Could not fetch details for current vault {position.vault_address}",
        )

    current_key = normalize_address(position.vault_address)
    current_apy = clamp_apy(current_vault.net_apy)
    current = CurrentVaultSnapshot(
        address=current_vault.address,
        name=current_vault.name,
        apy=current_apy,
        shares=position.shares,
        assets=position.assets,
    )

    candidates = _eligible_candidates(vaults, current_key, strategy, policy, approved_vaults, risk_scorer)
    if not candidates:
        return Decision(
            outcome=DecisionOutcome.NO_OP,
            reason_code=ReasonCode.NO_ELIGIBLE_TARGET,
            reason="No eligible alternative vaults found",
            current=current,
        )

    targeted = None if targeted_vaults is None else {normalize_address(v) for v in targeted_vaults}
    is_targeted = targeted is not None and current_key in targeted
    if targeted is not None and not is_targeted:
        # Current vault unchanged: only the vaults whose yield moved can beat it
        candidates = [v for v in candidates if v.key in targeted]
        if not candidates:
            return Decision(
                outcome=DecisionOutcome.NO_OP,
                reason_code=ReasonCode.NOT_TARGETED,
                reason="No targeted vault is an eligible alternative",
                current=current,
            )

    target = _best(candidates)
    best_apy = target.apy

    improvement = best_apy - current_apy
    position_value = Decimal(position.assets) / (Decimal(10) ** asset_decimals)
    annual_gain = position_value * improvement

    def negative(code: ReasonCode, reason: str, break_even: Optional[Decimal] = None) -> Decision:
        return Decision(
            outcome=DecisionOutcome.NO_OP,
            reason_code=code,
            reason=reason,
            current=current,
            target=target,
            apy_improvement=improvement,
            estimated_annual_gain=annual_gain,
            break_even_days=break_even,
        )

    if improvement <= ZERO:
        return negative(
            ReasonCode.ALREADY_OPTIMAL,
            f"Current vault is already optimal ({_pct(current_apy)} >= {_pct(best_apy)})",
        )

    threshold = to_decimal(strategy.min_apy_gain)
    if improvement < threshold:
        return negative(
            ReasonCode.GAIN_BELOW_THRESHOLD,
            f"APY improvement too small ({_pct(improvement)} < {_pct(threshold)} threshold)",
        )

    if annual_gain <= ZERO:
        return negative(
            ReasonCode.BREAK_EVEN_UNDEFINED,
            "Position too small to recover execution cost",
        )

    cost = to_decimal(policy.estimated_execution_cost)
    # cost / (gain / 365), ordered to stay exact for round inputs
    break_even = cost * DAYS_PER_YEAR / annual_gain
    horizon = to_decimal(policy.max_break_even_days)
    if break_even > horizon:
        return negative(
            ReasonCode.BREAK_EVEN_EXCEEDED,
            f"Break-even {float(break_even):.1f} days exceeds {float(horizon):.0f} day horizon",
            break_even,
        )

    prefix = "[TARGETED] " if targeted is not None else ""
    return Decision(
        outcome=DecisionOutcome.REBALANCE,
        reason_code=ReasonCode.REBALANCE,
        reason=(
            f"{prefix}Found {_pct(improvement)} APY improvement "
            f"({_pct(current_apy)} -> {_pct(best_apy)}). "
            f"Estimated gain: ${float(annual_gain):.2f}/year, break-even {float(break_even):.1f} days."
        ),
        current=current,
        target=target,
        apy_improvement=improvement,
        estimated_annual_gain=annual_gain,
        break_even_days=break_even,
    )


class YieldDecisionEngine:
    """
    Fetches positions and vaults, then applies `decide`.

    Data-source failures propagate as VaultDataUnavailable; the per-user
    pipeline turns them into an error outcome.
    """

    def __init__(self,
                 source: VaultDataSource,
                 policy: DecisionPolicy,
                 chain_id: int,
                 asset_symbol: str = "USDC",
                 asset_decimals: int = 6):
        self.source = source
        self.policy = policy
        self.chain_id = chain_id
        self.asset_symbol = asset_symbol
        self.asset_decimals = asset_decimals

    def evaluate(self,
                 wallet: str,
                 strategy: RebalanceStrategy,
                 approved_vaults: Optional[Iterable[str]] = None,
                 targeted_vaults: Optional[Iterable[str]] = None) -> Decision:
        positions = self.source.fetch_positions(wallet, self.chain_id)
        position = largest_position(positions)
        vaults = self.source.fetch_vaults(
            self.chain_id, self.asset_symbol, self.policy.vault_fetch_limit
        )
        if position is None:
            return decide(
                None,
                None,
                vaults,
                strategy,
                self.policy,
                self.asset_decimals,
                approved_vaults=approved_vaults,
                targeted_vaults=targeted_vaults,
            )

        if len(positions) > 1:
            logger.debug(
                f"{normalize_address(wallet)} holds {len(positions)} positions, "
                f"evaluating largest in {position.vault_address}"
            )

        current_key = normalize_address(position.vault_address)
        current_vault = next((v for v in vaults if v.key == current_key), None)
        if current_vault is None:
            current_vault = self.source.fetch_vault(position.vault_address, self.chain_id)

        decision = decide(
            position,
            current_vault,
            vaults,
            strategy,
            self.policy,
            self.asset_decimals,
            approved_vaults=approved_vaults,
            targeted_vaults=targeted_vaults,
        )
        logger.debug(f"Decision for {normalize_address(wallet)}: {decision.reason_code.value} - {decision.reason}")
        return decision
