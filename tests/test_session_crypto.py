"""Tests for AES-256-GCM sealing of session credentials."""
import base64

import pytest

from core.exceptions import ConfigurationError, CredentialError
from infra.session_crypto import SEALED_PREFIX, SessionSealer, generate_key, is_sealed

CREDENTIAL = "0x" + "5e" * 32


def test_sealed_format_and_unseal():
    sealer = SessionSealer(generate_key())
    blob = sealer.seal(CREDENTIAL)

    assert blob.startswith(SEALED_PREFIX)
    assert CREDENTIAL not in blob
    iv, ciphertext, tag = blob[len(SEALED_PREFIX):].split(":")
    assert len(base64.b64decode(iv)) == 12
    assert len(base64.b64decode(tag)) == 16
    assert sealer.unseal(blob) == CREDENTIAL


def test_each_seal_uses_a_fresh_iv():
    sealer = SessionSealer(generate_key())
    assert sealer.seal(CREDENTIAL) != sealer.seal(CREDENTIAL)


def test_tampered_ciphertext_is_rejected():
    sealer = SessionSealer(generate_key())
    iv, ciphertext, tag = sealer.seal(CREDENTIAL)[len(SEALED_PREFIX):].split(":")
    raw = bytearray(base64.b64decode(ciphertext))
    raw[0] ^= 0x01
    tampered = SEALED_PREFIX + ":".join([iv, base64.b64encode(bytes(raw)).decode(), tag])

    with pytest.raises(CredentialError, match="authentication"):
        sealer.unseal(tampered)


def test_wrong_key_is_rejected():
    blob = SessionSealer(generate_key()).seal(CREDENTIAL)
    with pytest.raises(CredentialError):
        SessionSealer(generate_key()).unseal(blob)


def test_plaintext_is_refused():
    sealer = SessionSealer(generate_key())
    with pytest.raises(CredentialError, match="plaintext"):
        sealer.unseal(CREDENTIAL)


@pytest.mark.parametrize("blob", [
    SEALED_PREFIX + "only:two",
    SEALED_PREFIX + "!!!:@@@:###",
    SEALED_PREFIX + "AAAA:AAAA:AAAA",
])
def test_malformed_blobs_are_rejected(blob):
    with pytest.raises(CredentialError):
        SessionSealer(generate_key()).unseal(blob)


@pytest.mark.parametrize("key", ["", "abc", "zz" * 32])
def test_invalid_keys_fail_at_startup(key):
    with pytest.raises(ConfigurationError):
        SessionSealer(key)


def test_repr_never_shows_key():
    key = generate_key()
    assert key not in repr(SessionSealer(key))


def test_is_sealed():
    assert is_sealed(SEALED_PREFIX + "a:b:c")
    assert not is_sealed(CREDENTIAL)
    assert not is_sealed(None)
