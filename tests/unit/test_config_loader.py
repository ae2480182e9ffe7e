"""Tests for the config_loader module."""

from dataclasses import FrozenInstanceError
from pathlib import Path
from tempfile import NamedTemporaryFile

import pytest
import yaml

from cross_venue_arbitrage.config_loader import (
    EngineConfig,
    build_engine_config,
    get_default_config,
    load_engine_config,
    load_yaml_config,
    resolve_secret,
)
from cross_venue_arbitrage.exceptions import ConfigurationError, ValidationError
from cross_venue_arbitrage.models import Venue

EXAMPLE_CONFIG = Path(__file__).parents[2] / "config" / "engine.example.yaml"


def test_load_yaml_config_valid():
    """Test loading a valid YAML configuration."""
    config_data = {"name": "test_engine", "pair": {"symbol": "ILMT/USDT"}}

    with NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(config_data, f)
        f.flush()

        result = load_yaml_config(f.name)
        assert result == config_data

    Path(f.name).unlink()


def test_load_yaml_config_file_not_found():
    with pytest.raises(ConfigurationError, match="Configuration file not found"):
        load_yaml_config("/non/existent/file.yaml")


def test_load_yaml_config_empty_file():
    with NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("")
        f.flush()

        with pytest.raises(ConfigurationError, match="Empty configuration file"):
            load_yaml_config(f.name)

    Path(f.name).unlink()


def test_load_yaml_config_invalid_yaml():
    with NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("invalid: yaml: content: [")
        f.flush()

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml_config(f.name)

    Path(f.name).unlink()


def test_load_yaml_config_non_mapping_root():
    with NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("- one\n- two\n")
        f.flush()

        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_yaml_config(f.name)

    Path(f.name).unlink()


def test_default_config_values():
    config = get_default_config()
    assert isinstance(config, EngineConfig)
    assert config.pair.symbol == "ILMT/USDT"
    assert config.cex.taker_fee == 0.002
    assert config.dex.swap_fee == 0.0025
    assert config.detection.gas_estimate == 0.005
    assert config.detection.reference_notional == 100.0
    assert config.detection.staleness_seconds == 10.0
    assert config.detection.opportunity_timeout_seconds == 30.0
    assert config.risk.min_trade_size == 5.0
    assert config.risk.cooldown_seconds == 5.0
    assert config.execution.min_execution_interval_seconds == 3.0
    assert config.execution.execution_timeout_seconds == 120.0
    assert config.execution.is_monitoring is True
    assert config.strategy.max_amount == 50.0


def test_config_is_frozen():
    config = get_default_config()
    with pytest.raises(FrozenInstanceError):
        config.risk.max_trade_size = 1.0


def test_build_engine_config_empty_mapping_uses_defaults():
    assert build_engine_config({}) == get_default_config()


def test_build_engine_config_fills_assets_from_symbol():
    config = build_engine_config({"pair": {"symbol": "FOO/BAR"}})
    assert config.pair.base_asset == "FOO"
    assert config.pair.quote_asset == "BAR"


def test_build_engine_config_virtual_balances():
    config = build_engine_config(
        {"execution": {"virtual_balances": {"CEX": {"quote": 250.0}}}}
    )
    assert config.execution.virtual_balances[Venue.CEX].quote == 250.0
    assert config.execution.virtual_balances[Venue.CEX].base == 10000.0
    assert config.execution.virtual_balances[Venue.DEX].quote == 1000.0


def test_build_engine_config_observability():
    config = build_engine_config(
        {
            "observability": {
                "metrics": {"enabled": True, "port": 9100},
                "logging": {"level": "DEBUG"},
            }
        }
    )
    assert config.observability.metrics_enabled is True
    assert config.observability.metrics_port == 9100
    assert config.observability.log_level == "DEBUG"


def test_build_engine_config_invalid():
    with pytest.raises(ValidationError, match="Configuration validation failed"):
        build_engine_config({"risk": {"max_trade_size": -1}})


def test_load_example_config():
    config = load_engine_config(EXAMPLE_CONFIG)
    assert config.name == "ilmt_usdt_cross_venue"
    assert config.execution.mode == "monitoring"
    assert config.dex.base_token.decimals == 18
    assert config.dex.quote_token.address.startswith("0x")
    assert config.monitoring.balance_thresholds.quote == 10


def test_resolve_secret(monkeypatch):
    monkeypatch.setenv("TEST_CEX_KEY", "abc123")
    assert resolve_secret("TEST_CEX_KEY") == "abc123"


def test_resolve_secret_missing_required(monkeypatch):
    monkeypatch.delenv("TEST_MISSING_KEY", raising=False)
    with pytest.raises(ConfigurationError, match="TEST_MISSING_KEY"):
        resolve_secret("TEST_MISSING_KEY")


def test_resolve_secret_missing_optional(monkeypatch):
    monkeypatch.setenv("TEST_EMPTY_KEY", "")
    assert resolve_secret("TEST_EMPTY_KEY", required=False) is None
