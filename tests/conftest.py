"""
Pytest configuration and fixtures for vaultpilot tests.

This conftest.py provides shared fixtures for all tests. Every store is
in-memory and every external service is faked (see tests/helpers).
"""
import pytest

from core.audit_log import InMemoryActionLedger
from core.config import SessionPolicy
from core.session_manager import SessionAuthorizationService
from infra.kv_store import InMemoryKeyValueStore
from infra.revocation import RevocationList
from infra.session_crypto import SessionSealer, generate_key
from infra.user_store import InMemoryUserStore
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def sealer():
    return SessionSealer(generate_key())


@pytest.fixture
def users():
    return InMemoryUserStore()


@pytest.fixture
def ledger():
    return InMemoryActionLedger()


@pytest.fixture
def revocations(kv_store):
    return RevocationList(kv_store)


@pytest.fixture
def sessions(users, sealer, revocations, ledger, clock):
    return SessionAuthorizationService(users, sealer, revocations, ledger, SessionPolicy(), clock=clock)
