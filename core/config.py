"""
vaultpilot Core: Configuration

One immutable configuration value, built once at process start from
config/app.yaml + config/policy.yaml + environment secrets, then passed by
reference into every component.

Usage:
    from core.config import load_config

    config = load_config("config")
    orchestrator = build_orchestrator(config)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SECRET_ENV = "CRON_SECRET"
ENCRYPTION_KEY_ENV = "DATABASE_ENCRYPTION_KEY"
REDIS_URL_ENV = "REDIS_URL"
SIMULATION_ENV = "AGENT_SIMULATION_MODE"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ===== app.yaml =====

class AppMetadata(_Frozen):
    name: str = Field(default="vaultpilot", min_length=1)
    version: str = Field(default="0.1.0", min_length=1)
    mode: Literal["SIMULATION", "LIVE"] = "SIMULATION"


class LoggingConfig(_Frozen):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str = "logs/vaultpilot.log"


class StoreConfig(_Frozen):
    backend: Literal["memory", "redis"] = "memory"
    users_path: Optional[str] = None
    ledger_path: Optional[str] = None
    redis_url: Optional[str] = None


class MonitoringConfig(_Frozen):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=0)
    alerts_enabled: bool = False
    alert_webhook_url: Optional[str] = None
    alert_dedupe_seconds: float = Field(default=300.0, ge=0)


class EndpointsConfig(_Frozen):
    vault_api_url: str = "https://api.morpho.org/graphql"
    rpc_url: str = "https://mainnet.base.org"
    price_feed_address: str = "0x7e860098F58bBFC8648a4311b374B1D669a2bc6B"
    execution_url: Optional[str] = None
    chain_id: int = Field(default=8453, gt=0)
    asset_symbol: str = Field(default="USDC", min_length=1)
    asset_decimals: int = Field(default=6, ge=0, le=36)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    vault_cache_seconds: float = Field(default=60.0, ge=0)


# ===== policy.yaml =====

class DecisionPolicy(_Frozen):
    min_liquidity_usd: float = Field(default=100_000.0, ge=0, description="TVL floor for candidate vaults")
    estimated_execution_cost: float = Field(default=2.0, ge=0, description="Fixed cost of one rebalance, asset units")
    max_break_even_days: float = Field(default=30.0, gt=0, description="Max holding horizon to recover cost")
    default_min_apy_gain: float = Field(default=0.005, ge=0, le=1)
    default_max_slippage: float = Field(default=0.005, ge=0, le=1)
    vault_fetch_limit: int = Field(default=50, gt=0)
    risk_ceilings: Dict[str, float] = Field(
        default_factory=lambda: {"low": 0.3, "medium": 0.6, "high": 0.99}
    )

    @field_validator("risk_ceilings")
    @classmethod
    def validate_risk_ceilings(cls, v: Dict[str, float]) -> Dict[str, float]:
        missing = {"low", "medium", "high"} - set(v)
        if missing:
            raise ValueError(f"risk_ceilings missing tiers: {sorted(missing)}")
        for tier, ceiling in v.items():
            if ceiling < 0 or ceiling > 1:
                raise ValueError(f"Tier {tier} ceiling must be within [0, 1], got {ceiling}")
        return v


class SchedulerPolicy(_Frozen):
    batch_size: int = Field(default=50, gt=0)
    concurrency: int = Field(default=10, gt=0)
    lock_ttl_seconds: int = Field(default=300, gt=0)


class BudgetPolicy(_Frozen):
    daily_limit: int = Field(default=90, gt=0)
    reserve: int = Field(default=3, ge=0)
    window_seconds: int = Field(default=86_400, gt=0)

    @field_validator("reserve")
    @classmethod
    def validate_reserve(cls, v: int, info) -> int:
        limit = info.data.get("daily_limit", 0)
        if limit and v >= limit:
            raise ValueError(f"reserve ({v}) must be below daily_limit ({limit})")
        return v


class SafetyPolicy(_Frozen):
    staleness_seconds: int = Field(default=3_600, gt=0)
    depeg_threshold: float = Field(default=0.005, gt=0, lt=1)
    peg_price: float = Field(default=1.0, gt=0)
    timeout_seconds: float = Field(default=5.0, gt=0)


class SessionPolicy(_Frozen):
    default_ttl_days: int = Field(default=7, gt=0)
    revocation_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)
    accept_legacy: bool = False


class ApyMonitorPolicy(_Frozen):
    change_threshold: float = Field(default=0.01, gt=0)
    baseline_ttl_seconds: int = Field(default=86_400, gt=0)


class OrchestratorConfig(_Frozen):
    app: AppMetadata = Field(default_factory=AppMetadata)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    decision: DecisionPolicy = Field(default_factory=DecisionPolicy)
    scheduler: SchedulerPolicy = Field(default_factory=SchedulerPolicy)
    budget: BudgetPolicy = Field(default_factory=BudgetPolicy)
    safety: SafetyPolicy = Field(default_factory=SafetyPolicy)
    session: SessionPolicy = Field(default_factory=SessionPolicy)
    apy_monitor: ApyMonitorPolicy = Field(default_factory=ApyMonitorPolicy)

    trigger_secret: Optional[SecretStr] = None
    encryption_key: Optional[SecretStr] = None

    @property
    def simulation_mode(self) -> bool:
        return self.app.mode == "SIMULATION"


class AppFile(_Frozen):
    app: AppMetadata = Field(default_factory=AppMetadata)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)


class PolicyFile(_Frozen):
    decision: DecisionPolicy = Field(default_factory=DecisionPolicy)
    scheduler: SchedulerPolicy = Field(default_factory=SchedulerPolicy)
    budget: BudgetPolicy = Field(default_factory=BudgetPolicy)
    safety: SafetyPolicy = Field(default_factory=SafetyPolicy)
    session: SessionPolicy = Field(default_factory=SessionPolicy)
    apy_monitor: ApyMonitorPolicy = Field(default_factory=ApyMonitorPolicy)


CONFIG_FILES: Dict[str, type[BaseModel]] = {
    "app.yaml": AppFile,
    "policy.yaml": PolicyFile,
}


def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Expected mapping at root of {path}, got {type(data).__name__}")
    return data


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_config(
    config_dir: str = "config",
    env: Optional[Mapping[str, str]] = None,
    require_secrets: bool = True,
) -> OrchestratorConfig:
    """
    Build the immutable orchestrator configuration.

    Args:
        config_dir: Directory holding app.yaml and policy.yaml
        env: Environment mapping (default: os.environ)
        require_secrets: Raise ConfigurationError when the trigger secret or
            sealing key is absent

    Returns:
        OrchestratorConfig
    """
    env = os.environ if env is None else env
    root = Path(config_dir)

    merged: Dict[str, object] = {}
    for filename, model in CONFIG_FILES.items():
        path = root / filename
        if not path.exists():
            logger.warning(f"Config file {path} not found, using defaults")
            continue
        try:
            section = model.model_validate(load_yaml(path))
        except (TypeError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc
        merged.update(section.model_dump())

    app = dict(merged.get("app") or {})
    if _truthy(env.get(SIMULATION_ENV)):
        app["mode"] = "SIMULATION"
    merged["app"] = app

    store = dict(merged.get("store") or {})
    if env.get(REDIS_URL_ENV):
        store["redis_url"] = env[REDIS_URL_ENV]
    merged["store"] = store

    secret = env.get(SECRET_ENV)
    key = env.get(ENCRYPTION_KEY_ENV)
    if require_secrets:
        if not secret:
            raise ConfigurationError(f"{SECRET_ENV} is not set")
        if not key:
            raise ConfigurationError(f"{ENCRYPTION_KEY_ENV} is not set")
    if store.get("backend") == "redis" and not store.get("redis_url"):
        raise ConfigurationError(f"store.backend=redis requires {REDIS_URL_ENV} or store.redis_url")

    merged["trigger_secret"] = secret or None
    merged["encryption_key"] = key or None

    try:
        config = OrchestratorConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    logger.info(
        f"Loaded configuration (mode={config.app.mode}, store={config.store.backend}, "
        f"batch={config.scheduler.batch_size}, concurrency={config.scheduler.concurrency})"
    )
    return config
