"""
vaultpilot Core: Session Authorization

Tagged variants for what a user record can hold, parsed once at the
storage boundary:

- NoAuthorization: nothing stored
- IncompatibleAuthorization: a record with an unknown type tag
- LegacySession: older session format (raw key material, no vault scope)
- ScopedSession: current format, credential limited to approved vaults

Validation checks type, expiry and the revocation list. It never unseals
the credential.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from core.models import SkipReason, normalize_address
from infra.revocation import RevocationList

logger = logging.getLogger(__name__)

SCOPED_SESSION_TYPE = "scoped-session"
LEGACY_SESSION_TYPE = "legacy-session"


@dataclass(frozen=True)
class SessionPolicyParams:
    """Optional on-chain policy attached to a scoped session."""
    gas_ceiling: Optional[int] = None
    rate_limit_window_seconds: Optional[int] = None
    valid_after: Optional[int] = None
    valid_until: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gas_ceiling": self.gas_ceiling,
            "rate_limit_window_seconds": self.rate_limit_window_seconds,
            "valid_after": self.valid_after,
            "valid_until": self.valid_until,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SessionPolicyParams"]:
        if not data:
            return None
        return cls(
            gas_ceiling=data.get("gas_ceiling"),
            rate_limit_window_seconds=data.get("rate_limit_window_seconds"),
            valid_after=data.get("valid_after"),
            valid_until=data.get("valid_until"),
        )


@dataclass(frozen=True)
class NoAuthorization:
    pass


@dataclass(frozen=True)
class IncompatibleAuthorization:
    type_tag: str


@dataclass(frozen=True)
class LegacySession:
    owner: str
    session_key_id: str
    expiry: int
    issued_at: int
    sealed_credential: str = field(repr=False, default="")


@dataclass(frozen=True)
class ScopedSession:
    owner: str
    session_key_id: str
    expiry: int
    issued_at: int
    approved_vaults: Tuple[str, ...] = ()
    policy: Optional[SessionPolicyParams] = None
    sealed_credential: str = field(repr=False, default="")


Authorization = Union[NoAuthorization, IncompatibleAuthorization, LegacySession, ScopedSession]
Session = Union[LegacySession, ScopedSession]


def parse_authorization(raw: Optional[Dict[str, Any]]) -> Authorization:
    """Parse a stored authorization record into its variant."""
    if not raw:
        return NoAuthorization()

    type_tag = raw.get("type")
    if type_tag not in (SCOPED_SESSION_TYPE, LEGACY_SESSION_TYPE):
        return IncompatibleAuthorization(type_tag=str(type_tag))

    try:
        owner = normalize_address(raw["owner"])
        session_key_id = normalize_address(raw["session_key_id"])
        expiry = int(raw["expiry"])
        issued_at = int(raw.get("issued_at") or 0)
        sealed = raw["sealed_credential"]
    except (KeyError, TypeError, ValueError):
        logger.warning(f"Malformed {type_tag} authorization record")
        return IncompatibleAuthorization(type_tag=str(type_tag))

    if type_tag == LEGACY_SESSION_TYPE:
        return LegacySession(
            owner=owner,
            session_key_id=session_key_id,
            expiry=expiry,
            issued_at=issued_at,
            sealed_credential=sealed,
        )

    return ScopedSession(
        owner=owner,
        session_key_id=session_key_id,
        expiry=expiry,
        issued_at=issued_at,
        approved_vaults=tuple(normalize_address(v) for v in raw.get("approved_vaults") or ()),
        policy=SessionPolicyParams.from_dict(raw.get("policy")),
        sealed_credential=sealed,
    )


def serialize_authorization(auth: Authorization) -> Optional[Dict[str, Any]]:
    """Inverse of parse_authorization for the session variants."""
    if isinstance(auth, NoAuthorization):
        return None
    if isinstance(auth, IncompatibleAuthorization):
        raise ValueError(f"Cannot serialize incompatible authorization ({auth.type_tag})")
    if isinstance(auth, LegacySession):
        return {
            "type": LEGACY_SESSION_TYPE,
            "owner": auth.owner,
            "session_key_id": auth.session_key_id,
            "sealed_credential": auth.sealed_credential,
            "expiry": auth.expiry,
            "issued_at": auth.issued_at,
        }
    if isinstance(auth, ScopedSession):
        return {
            "type": SCOPED_SESSION_TYPE,
            "owner": auth.owner,
            "session_key_id": auth.session_key_id,
            "sealed_credential": auth.sealed_credential,
            "expiry": auth.expiry,
            "issued_at": auth.issued_at,
            "approved_vaults": list(auth.approved_vaults),
            "policy": auth.policy.to_dict() if auth.policy else None,
        }
    raise TypeError(f"Unknown authorization variant: {type(auth).__name__}")


@dataclass(frozen=True)
class AuthorizationCheck:
    """Result of validating a stored authorization."""
    valid: bool
    session: Optional[Session] = None
    skip_reason: Optional[SkipReason] = None
    reason: Optional[str] = None


def _rejected(skip: SkipReason, reason: str) -> AuthorizationCheck:
    return AuthorizationCheck(valid=False, skip_reason=skip, reason=reason)


def validate_authorization(auth: Authorization,
                           revocations: RevocationList,
                           now: Optional[float] = None,
                           accept_legacy: bool = False) -> AuthorizationCheck:
    """
    Check type, expiry and revocation, in that order.

    The revocation list is read on every call. If it cannot be read, the
    StoreUnavailable propagates: the caller cannot prove the session is
    still valid and must not execute.
    """
    now = time.time() if now is None else now

    if isinstance(auth, NoAuthorization):
        return _rejected(SkipReason.NO_AUTHORIZATION, "No session authorization found")

    if isinstance(auth, IncompatibleAuthorization):
        return _rejected(
            SkipReason.UNSUPPORTED_AUTHORIZATION,
            f"Unsupported session authorization type: {auth.type_tag}",
        )

    if isinstance(auth, LegacySession) and not accept_legacy:
        return _rejected(
            SkipReason.UNSUPPORTED_AUTHORIZATION,
            "Legacy session authorization; user must re-register",
        )

    if not isinstance(auth, (LegacySession, ScopedSession)):
        raise TypeError(f"Unknown authorization variant: {type(auth).__name__}")

    if auth.expiry <= now:
        return _rejected(SkipReason.EXPIRED, "Session key expired")

    if isinstance(auth, ScopedSession) and auth.policy:
        if auth.policy.valid_after is not None and now < auth.policy.valid_after:
            return _rejected(SkipReason.EXPIRED, "Session key not yet valid")
        if auth.policy.valid_until is not None and now >= auth.policy.valid_until:
            return _rejected(SkipReason.EXPIRED, "Session key expired")

    if revocations.is_revoked(auth.session_key_id):
        return _rejected(SkipReason.REVOKED, "Session key has been revoked")

    return AuthorizationCheck(valid=True, session=auth)


def approved_scope(session: Session) -> Optional[Tuple[str, ...]]:
    """Vaults the credential may deposit into (None = unrestricted)."""
    if isinstance(session, ScopedSession):
        return session.approved_vaults
    return None
