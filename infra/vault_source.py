"""
vaultpilot Infrastructure: Vault Data Source

Morpho GraphQL API client for vault metadata and user positions.
Official endpoint: https://api.morpho.org/graphql

The vault list is cached for a short TTL: one cycle evaluates thousands of
users against the same list, so it is fetched once per cycle rather than
once per user. Positions are always fetched fresh.
"""

import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import requests

from core.exceptions import VaultDataUnavailable
from core.models import Position, Vault, VaultWarning, normalize_address
from infra.http_client import post_json

logger = logging.getLogger(__name__)

GET_VAULTS = """
query GetVaults($chainId: Int!, $first: Int!) {
  vaultV2s(first: $first, where: { chainId_in: [$chainId] }, orderBy: NetApy, orderDirection: Desc) {
    items {
      address
      name
      asset { address symbol decimals }
      totalAssets
      totalAssetsUsd
      netApy
      whitelisted
      performanceFee
      managementFee
      liquidityUsd
      warnings { type level }
      curators { items { name } }
    }
  }
}
"""

GET_VAULT = """
query GetVault($address: String!, $chainId: Int!) {
  vaultV2ByAddress(address: $address, chainId: $chainId) {
    address
    name
    asset { address symbol decimals }
    totalAssets
    totalAssetsUsd
    netApy
    whitelisted
    performanceFee
    managementFee
    liquidityUsd
    warnings { type level }
    curators { items { name } }
  }
}
"""

GET_USER_POSITIONS = """
query GetUserPositions($userAddress: String!, $chainId: Int!) {
  userByAddress(address: $userAddress, chainId: $chainId) {
    vaultV2Positions {
      shares
      assets
      assetsUsd
      vault { address name }
    }
  }
}
"""


class VaultDataSource:
    """Read-only vault metadata and position source."""

    def fetch_vaults(self, chain_id: int, asset_symbol: str, first: int = 50,
                     fresh: bool = False) -> List[Vault]:
        raise NotImplementedError

    def fetch_vault(self, address: str, chain_id: int) -> Optional[Vault]:
        raise NotImplementedError

    def fetch_positions(self, wallet: str, chain_id: int) -> List[Position]:
        raise NotImplementedError


def _int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(str(value).split(".")[0])


def _float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    return float(value)


def parse_vault(item: Dict[str, Any]) -> Vault:
    curators = tuple(
        c.get("name") for c in ((item.get("curators") or {}).get("items") or []) if c.get("name")
    )
    warnings = tuple(
        VaultWarning(type=w.get("type", ""), level=(w.get("level") or "").upper())
        for w in (item.get("warnings") or [])
    )
    return Vault(
        address=item["address"],
        name=item.get("name") or item["address"],
        net_apy=max(0.0, _float(item.get("netApy"))),
        total_assets=_int(item.get("totalAssets")),
        total_assets_usd=_float(item.get("totalAssetsUsd")),
        liquidity_usd=None if item.get("liquidityUsd") is None else float(item["liquidityUsd"]),
        whitelisted=item.get("whitelisted"),
        curators=curators,
        performance_fee=_float(item.get("performanceFee")),
        management_fee=_float(item.get("managementFee")),
        warnings=warnings,
    )


def parse_position(item: Dict[str, Any]) -> Position:
    return Position(
        vault_address=item["vault"]["address"],
        shares=_int(item.get("shares")),
        assets=_int(item.get("assets")),
        assets_usd=None if item.get("assetsUsd") is None else float(item["assetsUsd"]),
    )


class MorphoVaultClient(VaultDataSource):
    """
    GraphQL client over requests.

    Usage:
        client = MorphoVaultClient("https://api.morpho.org/graphql")
        vaults = client.fetch_vaults(8453, "USDC")
        positions = client.fetch_positions(wallet, 8453)
    """

    def __init__(self,
                 api_url: str = "https://api.morpho.org/graphql",
                 timeout: float = 10.0,
                 cache_seconds: float = 60.0,
                 max_retries: int = 3,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.max_retries = max_retries
        self._session = session
        self._cache: Dict[Tuple[int, str, int], Tuple[float, List[Vault]]] = {}
        self._cache_lock = Lock()

        logger.info(f"Initialized MorphoVaultClient (url={api_url}, cache={cache_seconds}s)")

    def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = post_json(
                self.api_url,
                {"query": query, "variables": variables},
                timeout=self.timeout,
                max_retries=self.max_retries,
                session=self._session,
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            raise VaultDataUnavailable("vault api", e) from e

        if result.get("errors"):
            raise VaultDataUnavailable(f"vault api graphql errors: {result['errors']}")
        return result.get("data") or {}

    def fetch_vaults(self, chain_id: int, asset_symbol: str, first: int = 50,
                     fresh: bool = False) -> List[Vault]:
        """
        Vaults for one chain + settlement asset, highest net APY first.

        The API cannot filter by asset, so the asset filter is applied here.
        """
        cache_key = (chain_id, asset_symbol.upper(), first)
        now = time.monotonic()
        with self._cache_lock:
            cached = self._cache.get(cache_key)
            if cached and not fresh and now - cached[0] < self.cache_seconds:
                return list(cached[1])

        data = self._query(GET_VAULTS, {"chainId": chain_id, "first": first})
        items = ((data.get("vaultV2s") or {}).get("items")) or []

        vaults = []
        for item in items:
            symbol = ((item.get("asset") or {}).get("symbol") or "").upper()
            if symbol != asset_symbol.upper():
                continue
            try:
                vaults.append(parse_vault(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed vault entry {item.get('address')}: {e}")

        with self._cache_lock:
            self._cache[cache_key] = (now, vaults)

        logger.debug(f"Fetched {len(vaults)} {asset_symbol} vaults on chain {chain_id}")
        return list(vaults)

    def fetch_vault(self, address: str, chain_id: int) -> Optional[Vault]:
        """Single vault by address (None when the API does not know it)."""
        data = self._query(GET_VAULT, {"address": normalize_address(address), "chainId": chain_id})
        item = data.get("vaultV2ByAddress")
        if not item:
            return None
        try:
            return parse_vault(item)
        except (KeyError, TypeError, ValueError) as e:
            raise VaultDataUnavailable("malformed vault", e) from e

    def fetch_positions(self, wallet: str, chain_id: int) -> List[Position]:
        """User positions with non-zero shares."""
        data = self._query(
            GET_USER_POSITIONS,
            {"userAddress": normalize_address(wallet), "chainId": chain_id},
        )
        user = data.get("userByAddress") or {}
        positions = []
        for item in user.get("vaultV2Positions") or []:
            try:
                position = parse_position(item)
            except (KeyError, TypeError, ValueError) as e:
                raise VaultDataUnavailable("malformed position", e) from e
            if position.shares > 0:
                positions.append(position)
        return positions

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
