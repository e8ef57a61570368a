"""
vaultpilot Infrastructure: Session Credential Sealing

AES-256-GCM sealing of session credentials at rest.

Sealed format (all parts base64):
    encrypted:v1:{iv}:{ciphertext}:{tag}

- IV is 12 random bytes per seal
- Tag is the 16-byte GCM authentication tag; any tampering fails unseal
- Values without the prefix are treated as plaintext and rejected
"""

import base64
import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.exceptions import ConfigurationError, CredentialError

logger = logging.getLogger(__name__)

SEALED_PREFIX = "encrypted:v1:"
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_HEX_LENGTH = 64


def generate_key() -> str:
    """Generate a new 256-bit sealing key as 64 hex characters."""
    return secrets.token_hex(32)


def is_sealed(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(SEALED_PREFIX)


class SessionSealer:
    """
    Seal / unseal session credentials with one process-wide key.

    Usage:
        sealer = SessionSealer(os.environ["DATABASE_ENCRYPTION_KEY"])
        blob = sealer.seal(credential)
        credential = sealer.unseal(blob)  # only immediately before use
    """

    def __init__(self, key_hex: str):
        if not key_hex or len(key_hex) != KEY_HEX_LENGTH:
            raise ConfigurationError(
                f"Sealing key must be {KEY_HEX_LENGTH} hex characters (256 bits)"
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigurationError("Sealing key is not valid hex") from e
        self._aead = AESGCM(key)

    def __repr__(self) -> str:
        return "SessionSealer(<key redacted>)"

    def seal(self, plaintext: str) -> str:
        if not plaintext:
            raise CredentialError("Refusing to seal an empty credential")

        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        parts = [base64.b64encode(p).decode("ascii") for p in (iv, ciphertext, tag)]
        return SEALED_PREFIX + ":".join(parts)

    def unseal(self, blob: str) -> str:
        """
        Raises:
            CredentialError: on plaintext input, malformed blobs or failed
                authentication (wrong key or tampered data)
        """
        if not is_sealed(blob):
            raise CredentialError("Credential is not sealed; refusing plaintext")

        parts = blob[len(SEALED_PREFIX):].split(":")
        if len(parts) != 3:
            raise CredentialError("Malformed sealed credential")

        try:
            iv, ciphertext, tag = (base64.b64decode(p, validate=True) for p in parts)
        except ValueError as e:
            raise CredentialError("Malformed sealed credential encoding") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise CredentialError("Malformed sealed credential (iv/tag length)")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise CredentialError("Sealed credential failed authentication") from e

        return plaintext.decode("utf-8")
