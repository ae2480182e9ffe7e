"""
Configuration loading and normalization for the cross-venue arbitrage engine.

YAML files are validated against the pydantic schema and then frozen into
read-only dataclasses that the runtime components receive. Secrets never
live in the YAML: only the names of the environment variables holding them.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config_schema import EngineConfigSchema, validate_engine_config
from .exceptions import ConfigurationError, ValidationError
from .models import Venue


@dataclass(frozen=True)
class PairConfig:
    symbol: str = "ILMT/USDT"
    base_asset: str = "ILMT"
    quote_asset: str = "USDT"
    gas_asset: str = "BNB"


@dataclass(frozen=True)
class CexConfig:
    """Normalized centralized exchange configuration."""

    exchange_id: str = "mexc"
    api_key_env: str = "CEX_API_KEY"
    secret_env: str = "CEX_SECRET_KEY"
    taker_fee: float = 0.002
    maker_fee: float = 0.002
    step_size: float = 0.01
    min_notional: float = 1.0
    timeout_ms: int = 30000
    sandbox: bool = False


@dataclass(frozen=True)
class TokenConfig:
    address: str
    decimals: int = 18


@dataclass(frozen=True)
class DexConfig:
    """Normalized DEX and chain configuration."""

    name: str = "pancakeswap"
    chain_id: int = 56
    rpc_url_env: str = "RPC_URL"
    private_key_env: str = "PRIVATE_KEY"
    router_address: str = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
    pair_address: Optional[str] = None
    base_token: Optional[TokenConfig] = None
    quote_token: Optional[TokenConfig] = None
    swap_fee: float = 0.0025
    gas_limit: int = 300000
    max_gas_price_gwei: float = 10.0
    deadline_minutes: int = 20
    gas_asset_price: float = 600.0


@dataclass(frozen=True)
class DetectionConfig:
    min_spread: float = 0.5
    max_spread: float = 50.0
    min_profit_threshold: float = 1.0
    gas_estimate: float = 0.005
    reference_notional: float = 100.0
    max_cex_trade_estimate: float = 1000.0
    max_dex_trade_estimate: float = 500.0
    staleness_seconds: float = 10.0
    opportunity_timeout_seconds: float = 30.0
    price_update_interval_seconds: float = 5.0
    quote_slippage: float = 0.5


@dataclass(frozen=True)
class RiskConfig:
    """Normalized risk control configuration."""

    max_trade_size: float = 500.0
    max_daily_volume: float = 5000.0
    max_trades_per_hour: int = 20
    cooldown_seconds: float = 5.0
    min_trade_size: float = 5.0
    lot_size: float = 1.0
    max_slippage: float = 0.5
    min_gas_balance: float = 0.01
    circuit_breaker_failures: int = 3
    circuit_breaker_window_seconds: float = 600.0
    recent_trades_buffer: int = 1000


@dataclass(frozen=True)
class VirtualBalance:
    base: float = 10000.0
    quote: float = 1000.0
    gas: float = 1.0


def _default_virtual_balances() -> Dict[Venue, VirtualBalance]:
    return {Venue.CEX: VirtualBalance(), Venue.DEX: VirtualBalance()}


@dataclass(frozen=True)
class ExecutionConfig:
    """Normalized execution configuration."""

    mode: str = "monitoring"
    min_execution_interval_seconds: float = 3.0
    fill_timeout_seconds: float = 30.0
    fill_poll_interval_seconds: float = 1.0
    execution_timeout_seconds: float = 120.0
    scheduler_interval_seconds: float = 5.0
    min_quote_balance: float = 50.0
    trade_buffer_size: int = 1000
    virtual_balances: Dict[Venue, VirtualBalance] = field(
        default_factory=_default_virtual_balances
    )

    @property
    def is_monitoring(self) -> bool:
        return self.mode == "monitoring"


@dataclass(frozen=True)
class StrategyConfig:
    enabled: bool = True
    min_amount: float = 1.0
    max_amount: float = 50.0
    max_holdings_fraction: float = 0.2
    high_divergence: float = 2.0
    balanced_divergence: float = 0.8
    trend_threshold: float = 1.0
    trend_window: int = 5
    history_size: int = 50
    min_quote_share: float = 20.0
    high_sell_fraction: float = 0.10
    balanced_sell_fraction: float = 0.05
    accumulate_fraction: float = 0.03
    safety_delay_seconds: float = 3.0
    max_retries: int = 3
    retry_delay_seconds: float = 2.0


@dataclass(frozen=True)
class BalanceThresholds:
    quote: float = 10.0
    base: float = 1.0
    gas: float = 0.01


@dataclass(frozen=True)
class MonitoringConfig:
    balance_check_interval_seconds: float = 30.0
    alert_buffer_size: int = 100
    balance_thresholds: BalanceThresholds = field(default_factory=BalanceThresholds)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Normalized observability configuration."""

    metrics_enabled: bool = False
    metrics_port: int = 8000
    metrics_path: str = "/metrics"
    log_level: str = "INFO"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable runtime configuration object."""

    name: str = "cross_venue_arbitrage"
    pair: PairConfig = field(default_factory=PairConfig)
    cex: CexConfig = field(default_factory=CexConfig)
    dex: DexConfig = field(default_factory=DexConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")

    if config_dict is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping in {config_path}"
        )

    return config_dict


def _normalize_token(token) -> Optional[TokenConfig]:
    if token is None:
        return None
    return TokenConfig(address=token.address, decimals=token.decimals)


def _normalize_dex_config(schema: EngineConfigSchema) -> DexConfig:
    dex = schema.dex
    values = dex.model_dump(exclude={"base_token", "quote_token"})
    return DexConfig(
        base_token=_normalize_token(dex.base_token),
        quote_token=_normalize_token(dex.quote_token),
        **values,
    )


def _normalize_execution_config(schema: EngineConfigSchema) -> ExecutionConfig:
    execution = schema.execution
    virtual = _default_virtual_balances()
    for venue_name, balance in execution.virtual_balances.items():
        virtual[Venue(venue_name)] = VirtualBalance(**balance.model_dump())

    values = execution.model_dump(exclude={"virtual_balances"})
    return ExecutionConfig(virtual_balances=virtual, **values)


def _normalize_monitoring_config(schema: EngineConfigSchema) -> MonitoringConfig:
    monitoring = schema.monitoring
    return MonitoringConfig(
        balance_check_interval_seconds=monitoring.balance_check_interval_seconds,
        alert_buffer_size=monitoring.alert_buffer_size,
        balance_thresholds=BalanceThresholds(
            **monitoring.balance_thresholds.model_dump()
        ),
    )


def _normalize_observability_config(schema: EngineConfigSchema) -> ObservabilityConfig:
    obs = schema.observability
    return ObservabilityConfig(
        metrics_enabled=obs.metrics.enabled,
        metrics_port=obs.metrics.port,
        metrics_path=obs.metrics.path,
        log_level=obs.logging.level,
    )


def build_engine_config(config_dict: Dict[str, Any]) -> EngineConfig:
    """
    Validate and normalize a raw configuration mapping.

    Raises:
        ValidationError: If the mapping fails schema validation
        ConfigurationError: If normalization fails
    """
    try:
        schema = validate_engine_config(config_dict)
    except PydanticValidationError as e:
        raise ValidationError(f"Configuration validation failed: {e}")
    except TypeError as e:
        raise ValidationError(f"Configuration validation failed: {e}")

    try:
        return EngineConfig(
            name=schema.name,
            pair=PairConfig(**schema.pair.model_dump()),
            cex=CexConfig(**schema.cex.model_dump()),
            dex=_normalize_dex_config(schema),
            detection=DetectionConfig(**schema.detection.model_dump()),
            risk=RiskConfig(**schema.risk.model_dump()),
            execution=_normalize_execution_config(schema),
            strategy=StrategyConfig(**schema.strategy.model_dump()),
            monitoring=_normalize_monitoring_config(schema),
            observability=_normalize_observability_config(schema),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Failed to normalize configuration: {e}")


def load_engine_config(config_path: Union[str, Path]) -> EngineConfig:
    """
    Load and normalize an engine configuration file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Normalized and frozen engine configuration

    Raises:
        ConfigurationError: If the configuration cannot be loaded or is invalid
        ValidationError: If the configuration fails schema validation
    """
    return build_engine_config(load_yaml_config(config_path))


def get_default_config() -> EngineConfig:
    """Get a default configuration for testing or fallback purposes."""
    return EngineConfig()


def resolve_secret(env_name: str, required: bool = True) -> Optional[str]:
    """
    Read a secret from the environment variable named in the configuration.

    Raises:
        ConfigurationError: If required and the variable is unset or empty
    """
    value = os.getenv(env_name)
    if not value and required:
        raise ConfigurationError(
            f"Environment variable {env_name} is not set",
            {"env_var": env_name},
        )
    return value or None
