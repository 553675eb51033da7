"""
Unit tests for config/loader.py and config/validate.py.

Tests cover:
- JSON config file loading for every section
- Environment variable overrides with type coercion
- Missing file graceful fallback (empty dict)
- Singleton pattern for ConfigLoader
- Per-file validators (required keys, positive values, ordered thresholds)
- validate_all_configs error aggregation
- Cache management
"""

from __future__ import annotations

import copy
import os
from unittest.mock import MagicMock, patch

import pytest

from conftest import (
    STANDARD_AGENT_CONFIG,
    STANDARD_RISK_CONFIG,
    STANDARD_STRATEGY_CONFIG,
    STANDARD_TRADING_CONFIG,
)
from config.loader import ConfigLoader, get_config, get_env_var
from config.validate import (
    ConfigValidationError,
    validate_agent_config,
    validate_all_configs,
    validate_data_service_config,
    validate_exchange_config,
    validate_risk_config,
    validate_strategy_config,
    validate_trading_config,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_OVERRIDE_VARS = (
    "MAX_POSITION_SIZE",
    "MAX_LEVERAGE",
    "STOP_LOSS_PERCENTAGE",
    "POSITION_LIMIT",
    "MAX_DAILY_LOSS",
    "MAX_DRAWDOWN_PERCENTAGE",
    "RISK_PER_TRADE",
    "DECISION_INTERVAL_SECONDS",
    "DRY_RUN",
)


@pytest.fixture(autouse=True)
def reset_singleton():
    """Reset the ConfigLoader singleton and strip override vars between tests."""
    ConfigLoader._instance = None
    saved = {name: os.environ.pop(name) for name in _OVERRIDE_VARS if name in os.environ}
    yield
    ConfigLoader._instance = None
    os.environ.update(saved)


def _valid_exchange() -> dict:
    return {
        "network": "testnet",
        "base_urls": {"testnet": "https://api.testnet4.lnmarkets.com"},
        "paper": {"starting_balance_sats": 100000},
    }


def _valid_data_service() -> dict:
    return {
        "coingecko": {
            "base_url": "https://api.coingecko.com/api/v3",
            "coin_id": "bitcoin",
            "vs_currency": "usd",
        },
        "poll_interval_seconds": 90,
    }


def _mock_loader(**overrides) -> MagicMock:
    loader = MagicMock()
    loader.get_trading_config.return_value = overrides.get("trading", STANDARD_TRADING_CONFIG)
    loader.get_risk_config.return_value = overrides.get("risk", STANDARD_RISK_CONFIG)
    loader.get_strategy_config.return_value = overrides.get("strategy", STANDARD_STRATEGY_CONFIG)
    loader.get_agent_config.return_value = overrides.get("agent", STANDARD_AGENT_CONFIG)
    loader.get_exchange_config.return_value = overrides.get("exchange", _valid_exchange())
    loader.get_data_service_config.return_value = overrides.get(
        "data_service", _valid_data_service()
    )
    return loader


# ===========================================================================
# ConfigLoader tests
# ===========================================================================


class TestConfigLoaderSingleton:
    def test_get_instance_returns_same_object(self):
        """Singleton pattern should return the same instance."""
        a = ConfigLoader.get_instance()
        b = ConfigLoader.get_instance()
        assert a is b

    def test_get_config_returns_singleton(self):
        cfg = get_config()
        assert cfg is ConfigLoader.get_instance()

    def test_fresh_instance_after_reset(self):
        first = ConfigLoader.get_instance()
        ConfigLoader._instance = None
        second = ConfigLoader.get_instance()
        assert first is not second


class TestConfigLoading:
    def test_get_trading_config(self):
        trading = get_config().get_trading_config()
        assert trading["max_leverage"] == "2"
        assert trading["position_limit"] == 3

    def test_get_risk_config(self):
        risk = get_config().get_risk_config()
        assert "max_daily_loss" in risk

    def test_get_strategy_config(self):
        strategy = get_config().get_strategy_config()
        assert strategy["default"] in ("basic", "enhanced")
        assert "weights" in strategy["basic"]

    def test_get_agent_config(self):
        agent = get_config().get_agent_config()
        assert "dry_run" in agent
        assert agent["decision_interval_seconds"] > 0

    def test_get_exchange_config(self):
        exchange = get_config().get_exchange_config()
        assert exchange["network"] in exchange["base_urls"]

    def test_get_data_service_config(self):
        data = get_config().get_data_service_config()
        assert data["coingecko"]["coin_id"] == "bitcoin"

    def test_get_app_config(self):
        app = get_config().get_app_config()
        assert "logging" in app
        assert "command_bridge" in app

    def test_missing_config_returns_empty_dict(self):
        """Loading a nonexistent config file should return {}."""
        result = get_config().get_config_file("nonexistent_config_xyz")
        assert result == {}


class TestEnvOverrides:
    def test_trading_overrides(self):
        with patch.dict(os.environ, {"MAX_LEVERAGE": "5", "POSITION_LIMIT": "7"}):
            trading = get_config().get_trading_config()
        assert trading["max_leverage"] == "5"
        assert trading["position_limit"] == 7

    def test_risk_override(self):
        with patch.dict(os.environ, {"MAX_DAILY_LOSS": "75"}):
            risk = get_config().get_risk_config()
        assert risk["max_daily_loss"] == "75"

    def test_agent_overrides(self):
        with patch.dict(os.environ, {"DRY_RUN": "false", "DECISION_INTERVAL_SECONDS": "12.5"}):
            agent = get_config().get_agent_config()
        assert agent["dry_run"] is False
        assert agent["decision_interval_seconds"] == pytest.approx(12.5)

    def test_invalid_override_keeps_file_value(self):
        with patch.dict(os.environ, {"POSITION_LIMIT": "many"}):
            trading = get_config().get_trading_config()
        assert trading["position_limit"] == 3

    def test_override_only_touches_its_file(self):
        with patch.dict(os.environ, {"MAX_DAILY_LOSS": "75"}):
            trading = get_config().get_trading_config()
        assert "max_daily_loss" not in trading


class TestCacheManagement:
    def test_cache_produces_same_result(self):
        cfg = get_config()
        assert cfg.get_trading_config() is cfg.get_trading_config()

    def test_clear_cache_picks_up_new_env(self):
        cfg = get_config()
        cfg.clear_cache()
        assert cfg.get_trading_config()["max_leverage"] == "2"
        with patch.dict(os.environ, {"MAX_LEVERAGE": "4"}):
            # still cached
            assert cfg.get_trading_config()["max_leverage"] == "2"
            cfg.clear_cache()
            assert cfg.get_trading_config()["max_leverage"] == "4"
        cfg.clear_cache()


# ===========================================================================
# get_env_var tests
# ===========================================================================


class TestGetEnvVar:
    def test_bool_true_values(self):
        for val in ("true", "True", "TRUE", "1", "yes"):
            with patch.dict(os.environ, {"TEST_BOOL": val}):
                assert get_env_var("TEST_BOOL", False, bool) is True

    def test_bool_false_values(self):
        for val in ("false", "False", "0", "no"):
            with patch.dict(os.environ, {"TEST_BOOL": val}):
                assert get_env_var("TEST_BOOL", True, bool) is False

    def test_int_conversion(self):
        with patch.dict(os.environ, {"TEST_INT": "42"}):
            assert get_env_var("TEST_INT", 0, int) == 42

    def test_missing_var_returns_default(self):
        os.environ.pop("DEFINITELY_NOT_SET_XYZ", None)
        assert get_env_var("DEFINITELY_NOT_SET_XYZ", "fallback", str) == "fallback"

    def test_invalid_int_returns_default(self):
        """Non-numeric value for int should return default."""
        with patch.dict(os.environ, {"TEST_BAD_INT": "abc"}):
            assert get_env_var("TEST_BAD_INT", 99, int) == 99


# ===========================================================================
# Config validation tests
# ===========================================================================


class TestValidateTradingConfig:
    def test_valid(self):
        assert validate_trading_config(STANDARD_TRADING_CONFIG) == []

    def test_missing_keys(self):
        errors = validate_trading_config({})
        assert "max_leverage" in errors
        assert "stop_loss_pct" in errors

    def test_non_positive_size(self):
        cfg = {**STANDARD_TRADING_CONFIG, "max_position_size": "0"}
        errors = validate_trading_config(cfg)
        assert any(e.startswith("max_position_size:") for e in errors)

    def test_leverage_below_one(self):
        cfg = {**STANDARD_TRADING_CONFIG, "default_leverage": "0.5"}
        assert "default_leverage: must be >= 1" in validate_trading_config(cfg)

    def test_default_above_max_leverage(self):
        cfg = {**STANDARD_TRADING_CONFIG, "max_leverage": "2", "default_leverage": "3"}
        assert "default_leverage: must not exceed max_leverage" in validate_trading_config(cfg)


class TestValidateRiskConfig:
    def test_valid(self):
        assert validate_risk_config(STANDARD_RISK_CONFIG) == []

    def test_negative_limit(self):
        cfg = {**STANDARD_RISK_CONFIG, "max_daily_loss": "-1"}
        errors = validate_risk_config(cfg)
        assert errors == ["max_daily_loss: must be a positive number (got '-1')"]


class TestValidateStrategyConfig:
    def test_valid(self):
        assert validate_strategy_config(STANDARD_STRATEGY_CONFIG) == []

    def test_missing_nested_key(self):
        cfg = copy.deepcopy(STANDARD_STRATEGY_CONFIG)
        del cfg["enhanced"]["divergence"]
        assert validate_strategy_config(cfg) == ["enhanced.divergence"]

    def test_enhanced_threshold_must_exceed_basic(self):
        cfg = copy.deepcopy(STANDARD_STRATEGY_CONFIG)
        cfg["enhanced"]["threshold"] = "0.05"
        errors = validate_strategy_config(cfg)
        assert "enhanced.threshold: must be higher than basic.threshold" in errors

    def test_threshold_range(self):
        cfg = copy.deepcopy(STANDARD_STRATEGY_CONFIG)
        cfg["basic"]["threshold"] = "1.5"
        cfg["enhanced"]["threshold"] = "2"
        errors = validate_strategy_config(cfg)
        assert "basic.threshold: must be between 0 and 1" in errors
        assert "enhanced.threshold: must be between 0 and 1" in errors

    def test_unknown_default(self):
        cfg = copy.deepcopy(STANDARD_STRATEGY_CONFIG)
        cfg["default"] = "ml"
        assert "default: must be 'basic' or 'enhanced'" in validate_strategy_config(cfg)


class TestValidateOtherConfigs:
    def test_agent_valid(self):
        assert validate_agent_config(STANDARD_AGENT_CONFIG) == []

    def test_agent_missing_dry_run(self):
        cfg = {k: v for k, v in STANDARD_AGENT_CONFIG.items() if k != "dry_run"}
        assert validate_agent_config(cfg) == ["dry_run"]

    def test_exchange_valid(self):
        assert validate_exchange_config(_valid_exchange()) == []

    def test_exchange_network_without_url(self):
        cfg = {**_valid_exchange(), "network": "mainnet"}
        assert validate_exchange_config(cfg) == ["base_urls: no URL for network 'mainnet'"]

    def test_data_service_missing_coin(self):
        cfg = _valid_data_service()
        del cfg["coingecko"]["coin_id"]
        assert validate_data_service_config(cfg) == ["coingecko.coin_id"]


class TestValidateAllConfigs:
    def test_all_configs_valid(self):
        """validate_all_configs should pass with the shipped config files."""
        validate_all_configs()

    def test_raises_on_empty_configs(self):
        loader = _mock_loader(trading={}, risk={})
        with (
            patch("config.validate.get_config", return_value=loader),
            pytest.raises(ConfigValidationError, match="Config file is empty or not found"),
        ):
            validate_all_configs()

    def test_error_message_includes_details(self):
        trading = {k: v for k, v in STANDARD_TRADING_CONFIG.items() if k != "stop_loss_pct"}
        loader = _mock_loader(trading=trading)
        with pytest.raises(ConfigValidationError) as exc_info:
            with patch("config.validate.get_config", return_value=loader):
                validate_all_configs()
        message = str(exc_info.value)
        assert "trading.json" in message
        assert "missing: stop_loss_pct" in message
        assert "risk.json" not in message
