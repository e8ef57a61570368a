"""
vaultpilot Core: Per-User Rebalance Pipeline

Runs under the user's lock. Stages, in order:
1. Authorization (type, expiry, revocation)  -> skipped
2. Decision                                  -> skipped when negative
3. Simulation mode                           -> skipped, ledger record
4. Operation budget                          -> skipped when low
5. Execute                                   -> rebalanced | error

Each stage returns a StageResult: either "continue" with a value for the
next stage, or the user's final outcome. Exactly one outcome per user.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from core.audit_log import ActionKind, ActionLedger, ActionRecord, ActionStatus, RebalanceMetadata
from core.authorization import Session, approved_scope
from core.decision_engine import YieldDecisionEngine
from core.exceptions import CredentialError, ExecutionFailed, StoreUnavailable, VaultDataUnavailable
from core.models import (
    SKIP_MESSAGES,
    Decision,
    SkipReason,
    UserCycleDetail,
    UserOutcome,
)
from core.rate_limiter import OperationBudgetLimiter
from core.session_manager import SessionAuthorizationService
from infra.execution_adapter import ExecutionAdapter, RebalanceRequest
from infra.user_store import UserRecord, UserStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageResult:
    """Either a value to pass on (outcome is None) or a final outcome."""
    value: Any = None
    outcome: Optional[UserCycleDetail] = None

    @property
    def done(self) -> bool:
        return self.outcome is not None


def _proceed(value: Any = None) -> StageResult:
    return StageResult(value=value)


def _finish(detail: UserCycleDetail) -> StageResult:
    return StageResult(outcome=detail)


class RebalancePipeline:
    """
    Usage:
        pipeline = RebalancePipeline(sessions, engine, budget, adapter, ledger, users, chain_id=8453)
        detail = pipeline.run(user, targeted_vaults=None)
    """

    def __init__(self,
                 sessions: SessionAuthorizationService,
                 engine: YieldDecisionEngine,
                 budget: OperationBudgetLimiter,
                 adapter: ExecutionAdapter,
                 ledger: ActionLedger,
                 users: UserStore,
                 chain_id: int,
                 simulation_mode: bool = True,
                 clock: Callable[[], float] = time.time):
        self.sessions = sessions
        self.engine = engine
        self.budget = budget
        self.adapter = adapter
        self.ledger = ledger
        self.users = users
        self.chain_id = chain_id
        self.simulation_mode = simulation_mode
        self._clock = clock

    # ===== Helpers =====

    @staticmethod
    def _skipped(user: UserRecord, skip: SkipReason, reason: Optional[str] = None,
                 decision: Optional[Decision] = None, receipt_id: Optional[str] = None) -> UserCycleDetail:
        return UserCycleDetail(
            address=user.wallet,
            outcome=UserOutcome.SKIPPED,
            reason=reason or SKIP_MESSAGES.get(skip, skip.value),
            skip_reason=skip,
            apy_improvement=decision.apy_improvement if decision and decision.target else None,
            receipt_id=receipt_id,
        )

    @staticmethod
    def _error(user: UserRecord, reason: str, decision: Optional[Decision] = None) -> UserCycleDetail:
        return UserCycleDetail(
            address=user.wallet,
            outcome=UserOutcome.ERROR,
            reason=reason,
            apy_improvement=decision.apy_improvement if decision and decision.target else None,
        )

    def _ledger(self, user: UserRecord, decision: Decision, status: ActionStatus,
                receipt_id: Optional[str] = None, error: Optional[str] = None,
                simulated: bool = False) -> None:
        current, target = decision.current, decision.target
        self.ledger.append(ActionRecord(
            user_id=user.id,
            wallet=user.wallet,
            kind=ActionKind.REBALANCE,
            status=status,
            from_vault=current.address,
            to_vault=target.address,
            amount=current.assets,
            receipt_id=receipt_id,
            error=error,
            metadata=RebalanceMetadata(
                from_vault=current.address,
                to_vault=target.address,
                from_apy=current.apy,
                to_apy=target.apy,
                apy_improvement=decision.apy_improvement,
                estimated_annual_gain=decision.estimated_annual_gain,
                break_even_days=decision.break_even_days,
                reason=decision.reason,
                shares=current.shares,
                assets=current.assets,
                simulated=simulated,
            ),
            created_at=self._clock(),
        ))

    # ===== Stages =====

    def _authorize(self, user: UserRecord) -> StageResult:
        try:
            check = self.sessions.validate(user.authorization)
        except StoreUnavailable as e:
            logger.error(f"Cannot verify session for {user.wallet}: {e}")
            return _finish(self._error(user, f"Revocation list unavailable: {e}"))

        if not check.valid:
            logger.info(f"Skipped {user.wallet}: {check.reason}")
            return _finish(self._skipped(user, check.skip_reason, check.reason))
        return _proceed(check.session)

    def _decide(self, user: UserRecord, session: Session,
                targeted_vaults: Optional[Sequence[str]]) -> StageResult:
        try:
            strategy = user.strategy or self.users.strategy_for(user.wallet)
            decision = self.engine.evaluate(
                user.wallet,
                strategy,
                approved_vaults=approved_scope(session),
                targeted_vaults=targeted_vaults,
            )
        except VaultDataUnavailable as e:
            logger.error(f"Vault data unavailable for {user.wallet}: {e}")
            return _finish(self._error(user, f"Vault data unavailable: {e}"))

        if not decision.should_rebalance:
            logger.info(f"Skipped {user.wallet}: {decision.reason}")
            return _finish(self._skipped(user, SkipReason.DECISION_NEGATIVE, decision.reason, decision))
        return _proceed(decision)

    def _simulate(self, user: UserRecord, decision: Decision) -> StageResult:
        receipt_id = f"simulation_{int(self._clock() * 1000)}"
        try:
            self._ledger(user, decision, ActionStatus.SUCCESS, receipt_id=receipt_id, simulated=True)
        except Exception as e:
            logger.error(f"Failed to write simulation record for {user.wallet}: {e}")
        logger.info(f"[SIMULATION] {user.wallet}: {decision.reason}")
        return _finish(self._skipped(
            user,
            SkipReason.SIMULATED,
            f"{SKIP_MESSAGES[SkipReason.SIMULATED]}: {decision.reason}",
            decision,
            receipt_id=receipt_id,
        ))

    def _check_budget(self, user: UserRecord, decision: Decision) -> StageResult:
        check = self.budget.check(user.wallet)
        if not check.allowed:
            return _finish(self._skipped(user, SkipReason.BUDGET_LOW, check.reason, decision))
        return _proceed()

    def _execute(self, user: UserRecord, session: Session, decision: Decision) -> StageResult:
        try:
            # Last look before the credential is unsealed
            if self.sessions.revocations.is_revoked(session.session_key_id):
                logger.warning(f"Session for {user.wallet} revoked mid-cycle, not executing")
                return _finish(self._skipped(user, SkipReason.REVOKED, decision=decision))
        except StoreUnavailable as e:
            return _finish(self._error(user, f"Revocation list unavailable: {e}", decision))

        request = RebalanceRequest(
            wallet=user.wallet,
            from_vault=decision.current.address,
            to_vault=decision.target.address,
            shares=decision.current.shares,
            assets=decision.current.assets,
            session_key_id=session.session_key_id,
            chain_id=self.chain_id,
            approved_vaults=approved_scope(session) or (),
        )

        try:
            credential = self.sessions.unseal(session)
            result = self.adapter.execute(request, credential)
        except (CredentialError, ExecutionFailed) as e:
            return self._failed(user, decision, str(e))

        if not result.success:
            return self._failed(user, decision, result.error or "Execution failed")

        try:
            self._ledger(user, decision, ActionStatus.SUCCESS, receipt_id=result.receipt_id)
        except Exception as e:
            logger.error(f"Rebalance for {user.wallet} executed but ledger write failed: {e}")

        try:
            self.budget.record(user.wallet)
        except StoreUnavailable as e:
            logger.error(f"Failed to count operation for {user.wallet}: {e}")

        logger.info(f"Rebalanced {user.wallet}: {decision.reason} (receipt={result.receipt_id})")
        return _finish(UserCycleDetail(
            address=user.wallet,
            outcome=UserOutcome.REBALANCED,
            reason=decision.reason,
            apy_improvement=decision.apy_improvement,
            receipt_id=result.receipt_id,
        ))

    def _failed(self, user: UserRecord, decision: Decision, error: str) -> StageResult:
        logger.error(f"Rebalance failed for {user.wallet}: {error}")
        try:
            self._ledger(user, decision, ActionStatus.FAILED, error=error)
        except Exception as e:
            logger.error(f"Failed to write failure record for {user.wallet}: {e}")
        return _finish(self._error(user, error, decision))

    # ===== Entry point =====

    def run(self, user: UserRecord, targeted_vaults: Optional[Sequence[str]] = None) -> UserCycleDetail:
        """Run all stages for one user. Caller holds the user's lock."""
        stage = self._authorize(user)
        if stage.done:
            return stage.outcome
        session: Session = stage.value

        stage = self._decide(user, session, targeted_vaults)
        if stage.done:
            return stage.outcome
        decision: Decision = stage.value

        if self.simulation_mode:
            return self._simulate(user, decision).outcome

        stage = self._check_budget(user, decision)
        if stage.done:
            return stage.outcome

        return self._execute(user, session, decision).outcome
