"""
vaultpilot Core: Vault Risk Scoring

Heuristic 0-1 risk score for a vault from the metadata served by the
vault-data source. Used by the decision engine to drop candidates above
a user's risk-tier ceiling.

Factors:
- Warnings: RED excludes outright (1.0), YELLOW +0.2
- Whitelist: not whitelisted +0.2
- Curator: none +0.15, none of them trusted +0.2
- Fees: performance > 20% +0.1, management > 2% +0.05
- Liquidity ratio: < 10% +0.15, < 30% +0.08
- Size: TVL < $100k +0.1
"""

from dataclasses import dataclass, field
from typing import Dict, List

from core.models import Vault

TRUSTED_CURATORS = (
    "steakhouse",
    "gauntlet",
    "re7",
    "morpho",
    "block analitica",
    "blockanalitica",
)

SMALL_TVL_USD = 100_000.0
MODERATE_TVL_USD = 1_000_000.0

LOW_MAX = 0.3
MEDIUM_MAX = 0.6


@dataclass
class RiskBreakdown:
    score: float
    level: str
    factors: Dict[str, float] = field(default_factory=dict)
    reasoning: List[str] = field(default_factory=list)


def is_trusted_curator(name: str) -> bool:
    if not name:
        return False
    normalized = name.lower()
    return any(trusted in normalized for trusted in TRUSTED_CURATORS)


def _has_level(vault: Vault, level: str) -> bool:
    return any(w.level == level for w in vault.warnings)


def _factors(vault: Vault) -> Dict[str, float]:
    factors = {"warnings": 0.0, "whitelist": 0.0, "curator": 0.0, "fees": 0.0, "liquidity": 0.0, "size": 0.0}

    if _has_level(vault, "YELLOW"):
        factors["warnings"] = 0.2

    if vault.whitelisted is False:
        factors["whitelist"] = 0.2

    if not vault.curators:
        factors["curator"] = 0.15
    elif not any(is_trusted_curator(c) for c in vault.curators):
        factors["curator"] = 0.2

    if vault.performance_fee > 0.2:
        factors["fees"] += 0.1
    if vault.management_fee > 0.02:
        factors["fees"] += 0.05

    ratio = vault.liquidity_ratio
    if ratio is not None:
        if ratio < 0.1:
            factors["liquidity"] = 0.15
        elif ratio < 0.3:
            factors["liquidity"] = 0.08

    if vault.total_assets_usd < SMALL_TVL_USD:
        factors["size"] = 0.1

    return factors


def calculate_risk_score(vault: Vault) -> float:
    if _has_level(vault, "RED"):
        return 1.0
    # Rounded so that e.g. 0.2 + 0.2 + 0.2 compares equal to a 0.6 ceiling
    return round(min(sum(_factors(vault).values()), 1.0), 6)


def risk_level(score: float) -> str:
    if score <= LOW_MAX:
        return "low"
    if score <= MEDIUM_MAX:
        return "medium"
    return "high"


def risk_breakdown(vault: Vault) -> RiskBreakdown:
    """Score, level and per-factor contributions with human-readable reasoning."""
    score = calculate_risk_score(vault)
    factors = _factors(vault)
    reasoning: List[str] = []

    if _has_level(vault, "RED"):
        factors["warnings"] = 1.0
        reasoning.append("Vault has critical warnings")
    elif factors["warnings"]:
        reasoning.append("Vault has warnings to review")

    if vault.whitelisted is False:
        reasoning.append("Vault is not whitelisted")
    elif vault.whitelisted is True:
        reasoning.append("Vault is whitelisted")

    if not vault.curators:
        reasoning.append("Curator information unknown")
    elif factors["curator"]:
        reasoning.append(f"Curator \"{vault.curators[0]}\" is not widely recognized")
    else:
        trusted = next(c for c in vault.curators if is_trusted_curator(c))
        reasoning.append(f"Curated by trusted team: {trusted}")

    fees = []
    if vault.performance_fee > 0.2:
        fees.append(f"{vault.performance_fee * 100:.1f}% performance")
    if vault.management_fee > 0.02:
        fees.append(f"{vault.management_fee * 100:.2f}% annual")
    if fees:
        reasoning.append(f"High fees: {', '.join(fees)}")

    ratio = vault.liquidity_ratio
    if ratio is not None:
        if ratio < 0.1:
            reasoning.append(f"Low liquidity: only {ratio * 100:.0f}% available")
        elif ratio < 0.3:
            reasoning.append(f"Moderate liquidity: {ratio * 100:.0f}% available")
        else:
            reasoning.append(f"Good liquidity: {ratio * 100:.0f}% available")

    tvl = vault.total_assets_usd
    if tvl < SMALL_TVL_USD:
        reasoning.append(f"Small TVL: ${tvl / 1000:.0f}k (less tested)")
    elif tvl < MODERATE_TVL_USD:
        reasoning.append(f"Moderate TVL: ${tvl / 1_000_000:.1f}m")
    else:
        reasoning.append(f"Strong TVL: ${tvl / 1_000_000:.1f}m")

    return RiskBreakdown(score=score, level=risk_level(score), factors=factors, reasoning=reasoning)
