"""
vaultpilot Core: Session Authorization Lifecycle

issue -> (seal at rest) -> validate each cycle -> unseal at use -> revoke

The plaintext credential exists only inside issue()/register() (before
sealing) and inside unseal() (immediately before execution). It is never
returned to callers of issue(), persisted, or logged.
"""

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from core.audit_log import (
    ActionKind,
    ActionLedger,
    ActionRecord,
    ActionStatus,
    SessionEventMetadata,
)
from core.authorization import (
    AuthorizationCheck,
    ScopedSession,
    Session,
    SessionPolicyParams,
    parse_authorization,
    serialize_authorization,
    validate_authorization,
)
from core.config import SessionPolicy
from core.models import normalize_address
from infra.revocation import RevocationList
from infra.session_crypto import SessionSealer
from infra.user_store import UserStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


def derive_session_key_id(credential: str) -> str:
    """Public identifier for a credential (first 20 bytes of its SHA-256)."""
    return "0x" + hashlib.sha256(credential.encode("utf-8")).hexdigest()[:40]


@dataclass(frozen=True)
class IssuedSession:
    """What the caller of issue()/register() gets back: public data only."""
    wallet: str
    session_key_id: str
    expiry: int
    approved_vaults: Tuple[str, ...]


class SessionAuthorizationService:
    """
    Usage:
        sessions = SessionAuthorizationService(users, sealer, revocations, ledger, config.session)
        issued = sessions.issue(wallet, approved_vaults=[vault_a, vault_b])
        ...
        sessions.revoke(wallet)
    """

    def __init__(self,
                 users: UserStore,
                 sealer: SessionSealer,
                 revocations: RevocationList,
                 ledger: ActionLedger,
                 policy: SessionPolicy,
                 clock: Callable[[], float] = time.time):
        self.users = users
        self.sealer = sealer
        self.revocations = revocations
        self.ledger = ledger
        self.policy = policy
        self._clock = clock

    def issue(self,
              wallet: str,
              approved_vaults: Iterable[str],
              ttl_days: Optional[int] = None,
              policy_params: Optional[SessionPolicyParams] = None,
              enable_auto_optimize: bool = True) -> IssuedSession:
        """Generate a fresh credential, seal it and persist the scoped session."""
        credential = "0x" + secrets.token_hex(32)
        ttl = (ttl_days or self.policy.default_ttl_days) * SECONDS_PER_DAY
        expiry = int(self._clock()) + ttl
        return self.register(
            wallet,
            derive_session_key_id(credential),
            credential,
            approved_vaults,
            expiry,
            policy_params=policy_params,
            enable_auto_optimize=enable_auto_optimize,
        )

    def register(self,
                 wallet: str,
                 session_key_id: str,
                 credential: str,
                 approved_vaults: Iterable[str],
                 expiry: int,
                 policy_params: Optional[SessionPolicyParams] = None,
                 enable_auto_optimize: Optional[bool] = True) -> IssuedSession:
        """
        Store a client-created session credential.

        Idempotent: re-registering overwrites the previous authorization.
        """
        owner = normalize_address(wallet)
        if not owner:
            raise ValueError("wallet address is required")
        now = int(self._clock())
        if expiry <= now:
            raise ValueError("session expiry must be in the future")

        vaults = tuple(sorted({normalize_address(v) for v in approved_vaults if v}))
        session = ScopedSession(
            owner=owner,
            session_key_id=normalize_address(session_key_id),
            expiry=int(expiry),
            issued_at=now,
            approved_vaults=vaults,
            policy=policy_params,
            sealed_credential=self.sealer.seal(credential),
        )
        self.users.save_authorization(
            owner,
            serialize_authorization(session),
            auto_optimize_enabled=enable_auto_optimize,
        )
        self._record_event(owner, "issued", session.session_key_id, session.expiry, vaults)

        logger.info(
            f"Session {session.session_key_id} registered for {owner} "
            f"(expiry={session.expiry}, vaults={len(vaults)})"
        )
        return IssuedSession(owner, session.session_key_id, session.expiry, vaults)

    def validate(self, raw_authorization, now: Optional[float] = None) -> AuthorizationCheck:
        """Type, expiry and fresh revocation lookup. Never unseals."""
        return validate_authorization(
            parse_authorization(raw_authorization),
            self.revocations,
            now=self._clock() if now is None else now,
            accept_legacy=self.policy.accept_legacy,
        )

    def unseal(self, session: Session) -> str:
        """
        Raises:
            CredentialError: if the blob is plaintext, malformed or tampered
        """
        return self.sealer.unseal(session.sealed_credential)

    def revoke(self, wallet: str) -> bool:
        """
        Clear the stored authorization and enabling flags, and add the
        session key to the revocation list so in-flight cycles honor it.

        Returns:
            True if a session was revoked
        """
        owner = normalize_address(wallet)
        user = self.users.get(owner)
        if user is None or user.authorization is None:
            logger.info(f"No session to revoke for {owner}")
            return False

        session_key_id = (user.authorization or {}).get("session_key_id")
        if session_key_id:
            # Revocation list first: if this fails the record is left intact
            self.revocations.revoke(session_key_id, revoked_at=self._clock())
        self.users.clear_authorization(owner)
        self._record_event(owner, "revoked", normalize_address(session_key_id or ""), None, ())

        logger.warning(f"Session {session_key_id} revoked for {owner}")
        return True

    def set_auto_optimize(self, wallet: str, enabled: bool) -> bool:
        """Toggle auto-optimize. Only users holding an authorization may toggle."""
        owner = normalize_address(wallet)
        user = self.users.get(owner)
        if user is None or user.authorization is None:
            raise ValueError(f"{owner} has no session authorization; register first")
        self.users.set_auto_optimize(owner, enabled)
        logger.info(f"Auto-optimize {'enabled' if enabled else 'disabled'} for {owner}")
        return enabled

    def _record_event(self, wallet: str, event: str, session_key_id: str,
                      expiry: Optional[int], vaults: Tuple[str, ...]) -> None:
        user = self.users.get(wallet)
        self.ledger.append(ActionRecord(
            user_id=user.id if user else "",
            wallet=wallet,
            kind=ActionKind.SESSION_EVENT,
            status=ActionStatus.SUCCESS,
            metadata=SessionEventMetadata(
                event=event,
                session_key_id=session_key_id,
                expiry=expiry,
                approved_vaults=vaults,
            ),
            created_at=self._clock(),
        ))
