"""
vaultpilot Core: APY Change Monitor

Polls the vault list and compares each vault's net APY against a stored
baseline. Vaults whose APY moved by at least the threshold (absolute) are
returned so the runner can start a targeted cycle for them.

Baselines live in the shared key-value store and are always refreshed to
the latest value.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List

from core.config import ApyMonitorPolicy
from infra.kv_store import KeyValueStore
from infra.vault_source import VaultDataSource

logger = logging.getLogger(__name__)

BASELINE_KEY_PREFIX = "apy_baseline:"


@dataclass(frozen=True)
class ApyChange:
    vault_address: str
    vault_name: str
    previous_apy: float
    current_apy: float
    change_absolute: float
    change_relative: float
    direction: str  # "up" | "down"
    timestamp: float


@dataclass
class MonitorResult:
    checked: int = 0
    changes: List[ApyChange] = field(default_factory=list)

    @property
    def affected_vaults(self) -> List[str]:
        return [c.vault_address for c in self.changes]


class ApyChangeMonitor:
    def __init__(self,
                 source: VaultDataSource,
                 store: KeyValueStore,
                 policy: ApyMonitorPolicy,
                 chain_id: int,
                 asset_symbol: str = "USDC",
                 vault_fetch_limit: int = 50):
        self.source = source
        self.store = store
        self.policy = policy
        self.chain_id = chain_id
        self.asset_symbol = asset_symbol
        self.vault_fetch_limit = vault_fetch_limit

    @staticmethod
    def _key(address: str) -> str:
        return f"{BASELINE_KEY_PREFIX}{address.lower()}"

    def detect_changes(self) -> MonitorResult:
        """
        Compare current APYs with baselines, then refresh the baselines.

        The first observation of a vault only records its baseline.
        """
        vaults = self.source.fetch_vaults(
            self.chain_id, self.asset_symbol, self.vault_fetch_limit, fresh=True
        )
        result = MonitorResult(checked=len(vaults))

        for vault in vaults:
            key = self._key(vault.address)
            baseline_raw = self.store.get(key)
            current = vault.net_apy

            if baseline_raw is not None:
                baseline = float(baseline_raw)
                change = current - baseline
                if abs(change) >= self.policy.change_threshold:
                    result.changes.append(ApyChange(
                        vault_address=vault.key,
                        vault_name=vault.name,
                        previous_apy=baseline,
                        current_apy=current,
                        change_absolute=change,
                        change_relative=change / baseline if baseline > 0 else 0.0,
                        direction="up" if change > 0 else "down",
                        timestamp=time.time(),
                    ))

            self.store.set(key, repr(current), ttl_seconds=self.policy.baseline_ttl_seconds)

        for change in result.changes:
            logger.info(
                f"APY change {change.vault_name}: {change.previous_apy * 100:.2f}% -> "
                f"{change.current_apy * 100:.2f}% ({change.change_absolute * 100:+.2f}%)"
            )
        if not result.changes:
            logger.debug(f"No significant APY changes across {result.checked} vaults")
        return result

    def reset_baselines(self) -> int:
        vaults = self.source.fetch_vaults(
            self.chain_id, self.asset_symbol, self.vault_fetch_limit, fresh=True
        )
        for vault in vaults:
            self.store.set(self._key(vault.address), repr(vault.net_apy),
                           ttl_seconds=self.policy.baseline_ttl_seconds)
        logger.info(f"Reset APY baselines for {len(vaults)} vaults")
        return len(vaults)
