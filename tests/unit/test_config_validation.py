"""
Tests for configuration schema validation
"""

import pytest
from pydantic import ValidationError

from cross_venue_arbitrage.config_schema import (
    DetectionSection,
    EngineConfigSchema,
    ExecutionSection,
    PairSection,
    RiskSection,
    StrategySection,
    validate_config_file,
    validate_engine_config,
)

VALID_ADDRESS = "0x55d398326f99059fF775485246999027B3197955"


class TestPairSection:
    def test_assets_derived_from_symbol(self):
        pair = PairSection(symbol="ILMT/USDT")
        assert pair.base_asset == "ILMT"
        assert pair.quote_asset == "USDT"

    def test_mismatched_assets_rejected(self):
        with pytest.raises(ValidationError, match="do not match symbol"):
            PairSection(symbol="ILMT/USDT", base_asset="BTC")

    def test_invalid_symbol(self):
        with pytest.raises(ValidationError):
            PairSection(symbol="ilmt-usdt")


class TestDetectionSection:
    def test_defaults(self):
        detection = DetectionSection()
        assert detection.min_spread == 0.5
        assert detection.max_spread == 50.0

    def test_min_spread_must_be_below_max(self):
        with pytest.raises(ValidationError, match="min_spread must be less than max_spread"):
            DetectionSection(min_spread=10, max_spread=5)


class TestRiskSection:
    def test_min_trade_size_above_max(self):
        with pytest.raises(ValidationError, match="min_trade_size cannot exceed"):
            RiskSection(min_trade_size=600, max_trade_size=500)

    def test_negative_trade_size(self):
        with pytest.raises(ValidationError):
            RiskSection(max_trade_size=0)


class TestExecutionSection:
    def test_invalid_mode(self):
        with pytest.raises(ValidationError):
            ExecutionSection(mode="paper")

    def test_poll_interval_must_be_below_fill_timeout(self):
        with pytest.raises(ValidationError, match="fill_poll_interval_seconds"):
            ExecutionSection(fill_timeout_seconds=1, fill_poll_interval_seconds=2)

    def test_unknown_venue_in_virtual_balances(self):
        with pytest.raises(ValidationError):
            ExecutionSection(virtual_balances={"AMM": {"quote": 10}})


class TestStrategySection:
    def test_divergence_thresholds_ordered(self):
        with pytest.raises(ValidationError, match="balanced_divergence"):
            StrategySection(high_divergence=1.0, balanced_divergence=2.0)

    def test_history_holds_two_windows(self):
        with pytest.raises(ValidationError, match="two trend windows"):
            StrategySection(trend_window=30, history_size=50)


class TestEngineConfigSchema:
    def test_extra_keys_forbidden(self):
        with pytest.raises(ValidationError):
            validate_engine_config({"risk": {"max_leverage": 3}})

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError, match="Engine name cannot be empty"):
            validate_engine_config({"name": "   "})

    def test_live_mode_requires_pool_configuration(self):
        with pytest.raises(ValidationError, match="live mode requires"):
            validate_engine_config({"execution": {"mode": "live"}})

    def test_live_mode_with_pool_configuration(self):
        schema = validate_engine_config(
            {
                "execution": {"mode": "live"},
                "dex": {
                    "pair_address": VALID_ADDRESS,
                    "base_token": {"address": VALID_ADDRESS, "decimals": 18},
                    "quote_token": {"address": VALID_ADDRESS},
                },
            }
        )
        assert isinstance(schema, EngineConfigSchema)
        assert schema.dex.quote_token.decimals == 18

    def test_invalid_address(self):
        with pytest.raises(ValidationError):
            validate_engine_config({"dex": {"pair_address": "0x1234"}})

    def test_strategy_max_amount_bounded_by_risk(self):
        with pytest.raises(ValidationError, match="strategy.max_amount"):
            validate_engine_config(
                {"risk": {"max_trade_size": 20, "min_trade_size": 5},
                 "strategy": {"max_amount": 50}}
            )


def test_validate_config_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        validate_config_file(tmp_path / "missing.yaml")


def test_validate_config_file(tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text("name: file_engine\nrisk:\n  max_trade_size: 250\n")
    schema = validate_config_file(path)
    assert schema.name == "file_engine"
    assert schema.risk.max_trade_size == 250
