"""
Tests for the Morpho GraphQL vault client

Responses are scripted through a fake HTTP session; no network.
"""
import pytest
import requests

from core.exceptions import VaultDataUnavailable
from infra.vault_source import MorphoVaultClient, parse_vault
from tests.helpers import VAULT_A, VAULT_B, VAULT_C, WALLET_1, FakeHttpSession, http_response


def vault_item(address, apy, symbol="USDC", **extra):
    item = {
        "address": address,
        "name": f"Vault {address[-4:]}",
        "asset": {"address": "0xusdc", "symbol": symbol, "decimals": 6},
        "totalAssets": "5000000000000",
        "totalAssetsUsd": 5_000_000.0,
        "netApy": apy,
        "whitelisted": True,
        "performanceFee": 0.1,
        "managementFee": 0.0,
        "liquidityUsd": 1_000_000.0,
        "warnings": [],
        "curators": {"items": [{"name": "Gauntlet"}]},
    }
    item.update(extra)
    return item


def vaults_page(*items):
    return http_response({"data": {"vaultV2s": {"items": list(items)}}})


def make_client(*responses, **kwargs):
    session = FakeHttpSession(*responses)
    return MorphoVaultClient("https://api.test/graphql", session=session, **kwargs), session


class TestParseVault:

    def test_fields(self):
        vault = parse_vault(vault_item(VAULT_A, 0.052, warnings=[{"type": "short_timelock", "level": "yellow"}]))

        assert vault.net_apy == 0.052
        assert vault.total_assets == 5_000_000_000_000
        assert vault.curators == ("Gauntlet",)
        assert vault.warnings[0].level == "YELLOW"
        assert vault.liquidity_ratio == pytest.approx(0.2)

    def test_negative_apy_is_clamped(self):
        assert parse_vault(vault_item(VAULT_A, -0.01)).net_apy == 0.0

    def test_missing_optional_fields(self):
        vault = parse_vault({"address": VAULT_A})
        assert vault.name == VAULT_A
        assert vault.liquidity_usd is None
        assert vault.curators == ()


class TestFetchVaults:

    def test_filters_by_settlement_asset(self):
        client, _ = make_client(vaults_page(
            vault_item(VAULT_A, 0.05),
            vault_item(VAULT_B, 0.09, symbol="WETH"),
            vault_item(VAULT_C, 0.04, symbol="usdc"),
        ))

        vaults = client.fetch_vaults(8453, "USDC")

        assert [v.address for v in vaults] == [VAULT_A, VAULT_C]

    def test_malformed_entry_is_skipped(self):
        client, _ = make_client(vaults_page(vault_item(VAULT_A, 0.05), vault_item(VAULT_B, "not-a-number")))
        assert [v.address for v in client.fetch_vaults(8453, "USDC")] == [VAULT_A]

    def test_list_is_cached(self):
        client, session = make_client(vaults_page(vault_item(VAULT_A, 0.05)))

        client.fetch_vaults(8453, "USDC")
        client.fetch_vaults(8453, "USDC")

        assert len(session.posts) == 1
        assert session.posts[0]["json"]["variables"] == {"chainId": 8453, "first": 50}

    def test_fresh_bypasses_cache(self):
        client, session = make_client(
            vaults_page(vault_item(VAULT_A, 0.05)),
            vaults_page(vault_item(VAULT_A, 0.07)),
        )

        client.fetch_vaults(8453, "USDC")
        (vault,) = client.fetch_vaults(8453, "USDC", fresh=True)

        assert vault.net_apy == 0.07
        assert len(session.posts) == 2

    def test_zero_ttl_always_refetches(self):
        client, session = make_client(
            vaults_page(vault_item(VAULT_A, 0.05)),
            vaults_page(vault_item(VAULT_A, 0.05)),
            cache_seconds=0,
        )
        client.fetch_vaults(8453, "USDC")
        client.fetch_vaults(8453, "USDC")
        assert len(session.posts) == 2

    def test_graphql_errors_raise(self):
        client, _ = make_client(http_response({"errors": [{"message": "boom"}]}))
        with pytest.raises(VaultDataUnavailable):
            client.fetch_vaults(8453, "USDC")

    def test_transport_failure_raises(self):
        client, _ = make_client(http_response({}, status=500), max_retries=1)
        with pytest.raises(VaultDataUnavailable) as exc:
            client.fetch_vaults(8453, "USDC")
        assert isinstance(exc.value.original, requests.exceptions.HTTPError)


class TestFetchVault:

    def test_known_vault(self):
        client, session = make_client(http_response({"data": {"vaultV2ByAddress": vault_item(VAULT_A, 0.05)}}))

        vault = client.fetch_vault(VAULT_A.upper().replace("0X", "0x"), 8453)

        assert vault.address == VAULT_A
        assert session.posts[0]["json"]["variables"]["address"] == VAULT_A

    def test_unknown_vault(self):
        client, _ = make_client(http_response({"data": {"vaultV2ByAddress": None}}))
        assert client.fetch_vault(VAULT_A, 8453) is None


class TestFetchPositions:

    def test_zero_share_positions_are_dropped(self):
        client, _ = make_client(http_response({"data": {"userByAddress": {"vaultV2Positions": [
            {"shares": "9800000000", "assets": "10000000000", "assetsUsd": 10000.0, "vault": {"address": VAULT_A}},
            {"shares": "0", "assets": "0", "assetsUsd": 0.0, "vault": {"address": VAULT_B}},
        ]}}}))

        (position,) = client.fetch_positions(WALLET_1, 8453)

        assert position.vault_address == VAULT_A
        assert position.shares == 9_800_000_000
        assert position.assets == 10_000_000_000

    def test_unknown_user_has_no_positions(self):
        client, _ = make_client(http_response({"data": {"userByAddress": None}}))
        assert client.fetch_positions(WALLET_1, 8453) == []

    def test_positions_are_never_cached(self):
        empty = {"data": {"userByAddress": {"vaultV2Positions": []}}}
        client, session = make_client(http_response(empty), http_response(empty))

        client.fetch_positions(WALLET_1, 8453)
        client.fetch_positions(WALLET_1, 8453)

        assert len(session.posts) == 2

    def test_malformed_position_raises(self):
        client, _ = make_client(http_response({"data": {"userByAddress": {"vaultV2Positions": [{"shares": "1"}]}}}))
        with pytest.raises(VaultDataUnavailable):
            client.fetch_positions(WALLET_1, 8453)
