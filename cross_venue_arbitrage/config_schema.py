"""
Configuration schema validation using Pydantic
"""

from typing import Dict, Literal, Optional
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
_ENV_NAME_PATTERN = r"^[A-Z_][A-Z0-9_]*$"


class _Section(BaseModel):
    model_config = {"extra": "forbid", "validate_assignment": True}


class PairSection(_Section):
    """Traded pair"""

    symbol: str = Field(default="ILMT/USDT", pattern=r"^[A-Z0-9]+/[A-Z0-9]+$")
    base_asset: Optional[str] = None
    quote_asset: Optional[str] = None
    gas_asset: str = Field(default="BNB", min_length=2)

    @model_validator(mode="before")
    @classmethod
    def fill_assets_from_symbol(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        symbol = data.get("symbol", "ILMT/USDT")
        if isinstance(symbol, str) and "/" in symbol:
            base, quote = symbol.split("/", 1)
            data.setdefault("base_asset", base)
            data.setdefault("quote_asset", quote)
            if (data["base_asset"], data["quote_asset"]) != (base, quote):
                raise ValueError(
                    f"base_asset/quote_asset ({data['base_asset']}/{data['quote_asset']}) "
                    f"do not match symbol {symbol}"
                )
        return data


class CexSection(_Section):
    """Centralized exchange connection and fee schedule"""

    exchange_id: str = Field(default="mexc", min_length=1, description="ccxt exchange id")
    api_key_env: str = Field(default="CEX_API_KEY", pattern=_ENV_NAME_PATTERN)
    secret_env: str = Field(default="CEX_SECRET_KEY", pattern=_ENV_NAME_PATTERN)
    taker_fee: float = Field(default=0.002, ge=0, le=0.05)
    maker_fee: float = Field(default=0.002, ge=0, le=0.05)
    step_size: float = Field(default=0.01, gt=0)
    min_notional: float = Field(default=1.0, ge=0)
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)
    sandbox: bool = False


class TokenSection(_Section):
    address: str = Field(pattern=_ADDRESS_PATTERN)
    decimals: int = Field(default=18, ge=0, le=36)


class DexSection(_Section):
    """Constant-product DEX and chain settings"""

    name: str = Field(default="pancakeswap", min_length=1)
    chain_id: int = Field(default=56, ge=1)
    rpc_url_env: str = Field(default="RPC_URL", pattern=_ENV_NAME_PATTERN)
    private_key_env: str = Field(default="PRIVATE_KEY", pattern=_ENV_NAME_PATTERN)
    router_address: str = Field(
        default="0x10ED43C718714eb63d5aA57B78B54704E256024E", pattern=_ADDRESS_PATTERN
    )
    pair_address: Optional[str] = Field(default=None, pattern=_ADDRESS_PATTERN)
    base_token: Optional[TokenSection] = None
    quote_token: Optional[TokenSection] = None
    swap_fee: float = Field(default=0.0025, ge=0, le=0.05)
    gas_limit: int = Field(default=300000, ge=21000, le=5000000)
    max_gas_price_gwei: float = Field(default=10.0, gt=0, le=1000)
    deadline_minutes: int = Field(default=20, ge=1, le=60)
    gas_asset_price: float = Field(
        default=600.0, gt=0, description="Gas asset price in quote units"
    )


class DetectionSection(_Section):
    """Opportunity detection thresholds (percentages unless noted)"""

    min_spread: float = Field(default=0.5, ge=0, le=100)
    max_spread: float = Field(default=50.0, gt=0, le=1000)
    min_profit_threshold: float = Field(default=1.0, ge=0, le=100)
    gas_estimate: float = Field(default=0.005, ge=0, le=0.5, description="Fraction of notional")
    reference_notional: float = Field(default=100.0, gt=0)
    max_cex_trade_estimate: float = Field(default=1000.0, gt=0)
    max_dex_trade_estimate: float = Field(default=500.0, gt=0)
    staleness_seconds: float = Field(default=10.0, gt=0, le=300)
    opportunity_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    price_update_interval_seconds: float = Field(default=5.0, gt=0, le=300)
    quote_slippage: float = Field(default=0.5, ge=0, le=10)

    @model_validator(mode="after")
    def validate_spread_range(self):
        if self.min_spread >= self.max_spread:
            raise ValueError("min_spread must be less than max_spread")
        return self


class RiskSection(_Section):
    """Risk limits and sizing"""

    max_trade_size: float = Field(default=500.0, gt=0)
    max_daily_volume: float = Field(default=5000.0, gt=0)
    max_trades_per_hour: int = Field(default=20, ge=1, le=1000)
    cooldown_seconds: float = Field(default=5.0, ge=0, le=3600)
    min_trade_size: float = Field(default=5.0, ge=0)
    lot_size: float = Field(default=1.0, gt=0)
    max_slippage: float = Field(default=0.5, ge=0, le=10)
    min_gas_balance: float = Field(default=0.01, ge=0)
    circuit_breaker_failures: int = Field(default=3, ge=1, le=100)
    circuit_breaker_window_seconds: float = Field(default=600.0, gt=0)
    recent_trades_buffer: int = Field(default=1000, ge=10)

    @model_validator(mode="after")
    def validate_sizes(self):
        if self.min_trade_size > self.max_trade_size:
            raise ValueError("min_trade_size cannot exceed max_trade_size")
        return self


class VirtualBalanceSection(_Section):
    base: float = Field(default=10000.0, ge=0)
    quote: float = Field(default=1000.0, ge=0)
    gas: float = Field(default=1.0, ge=0)


class ExecutionSection(_Section):
    """Execution mode and timing"""

    mode: Literal["monitoring", "live"] = "monitoring"
    min_execution_interval_seconds: float = Field(default=3.0, ge=0, le=600)
    fill_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    fill_poll_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    execution_timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    scheduler_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    min_quote_balance: float = Field(default=50.0, ge=0)
    trade_buffer_size: int = Field(default=1000, ge=10)
    virtual_balances: Dict[Literal["CEX", "DEX"], VirtualBalanceSection] = Field(
        default_factory=lambda: {
            "CEX": VirtualBalanceSection(),
            "DEX": VirtualBalanceSection(),
        }
    )

    @model_validator(mode="after")
    def validate_poll_interval(self):
        if self.fill_poll_interval_seconds >= self.fill_timeout_seconds:
            raise ValueError(
                "fill_poll_interval_seconds must be less than fill_timeout_seconds"
            )
        return self


class StrategySection(_Section):
    """Inventory-rebalancing strategy parameters"""

    enabled: bool = True
    min_amount: float = Field(default=1.0, gt=0)
    max_amount: float = Field(default=50.0, gt=0)
    max_holdings_fraction: float = Field(default=0.2, gt=0, le=1.0)
    high_divergence: float = Field(default=2.0, gt=0)
    balanced_divergence: float = Field(default=0.8, gt=0)
    trend_threshold: float = Field(default=1.0, gt=0)
    trend_window: int = Field(default=5, ge=1, le=50)
    history_size: int = Field(default=50, ge=2, le=10000)
    min_quote_share: float = Field(default=20.0, ge=0, le=100)
    high_sell_fraction: float = Field(default=0.10, gt=0, le=1.0)
    balanced_sell_fraction: float = Field(default=0.05, gt=0, le=1.0)
    accumulate_fraction: float = Field(default=0.03, gt=0, le=1.0)
    safety_delay_seconds: float = Field(default=3.0, ge=0, le=60)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=2.0, ge=0, le=60)

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.min_amount > self.max_amount:
            raise ValueError("min_amount cannot exceed max_amount")
        if self.balanced_divergence >= self.high_divergence:
            raise ValueError("balanced_divergence must be less than high_divergence")
        if 2 * self.trend_window > self.history_size:
            raise ValueError("history_size must hold two trend windows")
        return self


class BalanceThresholdsSection(_Section):
    quote: float = Field(default=10.0, ge=0)
    base: float = Field(default=1.0, ge=0)
    gas: float = Field(default=0.01, ge=0)


class MonitoringSection(_Section):
    balance_check_interval_seconds: float = Field(default=30.0, gt=0, le=3600)
    alert_buffer_size: int = Field(default=100, ge=1, le=10000)
    balance_thresholds: BalanceThresholdsSection = Field(
        default_factory=BalanceThresholdsSection
    )


class MetricsSection(_Section):
    """Metrics server configuration"""

    enabled: bool = False
    port: int = Field(default=8000, ge=1024, le=65535)
    path: str = Field(default="/metrics", pattern=r"^/[a-zA-Z0-9_/-]*$")


class LoggingSection(_Section):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class ObservabilitySection(_Section):
    metrics: MetricsSection = Field(default_factory=MetricsSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)


class EngineConfigSchema(_Section):
    """Complete engine configuration schema"""

    name: str = Field(default="cross_venue_arbitrage", min_length=1, max_length=100)
    pair: PairSection = Field(default_factory=PairSection)
    cex: CexSection = Field(default_factory=CexSection)
    dex: DexSection = Field(default_factory=DexSection)
    detection: DetectionSection = Field(default_factory=DetectionSection)
    risk: RiskSection = Field(default_factory=RiskSection)
    execution: ExecutionSection = Field(default_factory=ExecutionSection)
    strategy: StrategySection = Field(default_factory=StrategySection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    observability: ObservabilitySection = Field(default_factory=ObservabilitySection)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Engine name cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_live_requirements(self):
        if self.execution.mode == "live":
            missing = [
                name
                for name, value in (
                    ("dex.pair_address", self.dex.pair_address),
                    ("dex.base_token", self.dex.base_token),
                    ("dex.quote_token", self.dex.quote_token),
                )
                if value is None
            ]
            if missing:
                raise ValueError(
                    f"live mode requires {', '.join(missing)} to be configured"
                )
        if self.strategy.max_amount > self.risk.max_trade_size:
            raise ValueError("strategy.max_amount cannot exceed risk.max_trade_size")
        return self


def validate_engine_config(config_dict: Dict) -> EngineConfigSchema:
    """
    Validate an engine configuration dictionary

    Args:
        config_dict: Dictionary representation of the engine config

    Returns:
        Validated EngineConfigSchema object

    Raises:
        pydantic.ValidationError: If configuration is invalid
    """
    return EngineConfigSchema(**config_dict)


def validate_config_file(config_path) -> EngineConfigSchema:
    """
    Validate an engine configuration file

    Raises:
        FileNotFoundError: If config file doesn't exist
        pydantic.ValidationError: If configuration is invalid
        yaml.YAMLError: If YAML parsing fails
    """
    import yaml

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f)

    if config_dict is None:
        raise ValueError("Configuration file is empty or invalid")

    return validate_engine_config(config_dict)
