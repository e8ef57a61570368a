"""Test helpers for the vaultpilot test suite"""

from tests.helpers.fakes import (
    USDC,
    VAULT_A,
    VAULT_B,
    VAULT_C,
    VAULT_D,
    WALLET_1,
    WALLET_2,
    WALLET_3,
    FakeClock,
    FakeExecutionAdapter,
    FakePriceFeed,
    FakeVaultSource,
    FakeHttpSession,
    http_response,
    make_position,
    make_vault,
    relay_down,
)

__all__ = [
    "USDC",
    "VAULT_A",
    "VAULT_B",
    "VAULT_C",
    "VAULT_D",
    "WALLET_1",
    "WALLET_2",
    "WALLET_3",
    "FakeClock",
    "FakeExecutionAdapter",
    "FakePriceFeed",
    "FakeVaultSource",
    "FakeHttpSession",
    "http_response",
    "make_position",
    "make_vault",
    "relay_down",
]
