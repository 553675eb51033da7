"""
Configuration schema validation for the BTC futures trading agent.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from config.loader import get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def _as_decimal(value: Any) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def _check_positive(config: dict[str, Any], keys: list[str]) -> list[str]:
    """Return an error for every present key whose value is not a positive number."""
    errors = []
    for key in keys:
        if key not in config:
            continue
        value = _as_decimal(config[key])
        if value is None or value <= 0:
            errors.append(f"{key}: must be a positive number (got {config[key]!r})")
    return errors


def validate_trading_config(config: dict[str, Any]) -> list[str]:
    """Validate trading.json has required fields."""
    errors = _check_keys(
        config,
        [
            "max_position_size",
            "max_leverage",
            "default_leverage",
            "stop_loss_pct",
            "position_limit",
            "min_trade_size",
        ],
        "trading.json",
    )
    errors += _check_positive(
        config, ["max_position_size", "stop_loss_pct", "position_limit", "min_trade_size"]
    )
    for key in ("max_leverage", "default_leverage"):
        value = _as_decimal(config.get(key, 1))
        if value is None or value < 1:
            errors.append(f"{key}: must be >= 1")
    max_lev = _as_decimal(config.get("max_leverage", 1))
    default_lev = _as_decimal(config.get("default_leverage", 1))
    if max_lev is not None and default_lev is not None and default_lev > max_lev:
        errors.append("default_leverage: must not exceed max_leverage")
    return errors


def validate_risk_config(config: dict[str, Any]) -> list[str]:
    """Validate risk.json has required fields."""
    errors = _check_keys(
        config,
        [
            "max_daily_loss",
            "max_drawdown_pct",
            "risk_per_trade_pct",
            "portfolio_heat_limit_pct",
        ],
        "risk.json",
    )
    errors += _check_positive(
        config,
        ["max_daily_loss", "max_drawdown_pct", "risk_per_trade_pct", "portfolio_heat_limit_pct"],
    )
    return errors


def validate_strategy_config(config: dict[str, Any]) -> list[str]:
    """Validate strategy.json has required fields and ordered thresholds."""
    errors = _check_keys(
        config,
        [
            "default",
            "indicators",
            "basic.threshold",
            "basic.weights",
            "enhanced.threshold",
            "enhanced.weights",
            "enhanced.divergence",
        ],
        "strategy.json",
    )
    if errors:
        return errors

    basic = _as_decimal(config["basic"]["threshold"])
    enhanced = _as_decimal(config["enhanced"]["threshold"])
    for name, value in (("basic.threshold", basic), ("enhanced.threshold", enhanced)):
        if value is None or not Decimal("0") < value < Decimal("1"):
            errors.append(f"{name}: must be between 0 and 1")
    if basic is not None and enhanced is not None and enhanced <= basic:
        errors.append("enhanced.threshold: must be higher than basic.threshold")
    if config["default"] not in ("basic", "enhanced"):
        errors.append("default: must be 'basic' or 'enhanced'")
    return errors


def validate_agent_config(config: dict[str, Any]) -> list[str]:
    """Validate agent.json has required fields."""
    errors = _check_keys(
        config,
        [
            "dry_run",
            "decision_interval_seconds",
            "exchange_timeout_seconds",
            "max_tracking_failures",
        ],
        "agent.json",
    )
    errors += _check_positive(
        config, ["decision_interval_seconds", "exchange_timeout_seconds", "max_tracking_failures"]
    )
    return errors


def validate_exchange_config(config: dict[str, Any]) -> list[str]:
    """Validate exchange.json has required fields."""
    errors = _check_keys(config, ["network", "base_urls", "paper"], "exchange.json")
    if not errors and config["network"] not in config["base_urls"]:
        errors.append(f"base_urls: no URL for network {config['network']!r}")
    return errors


def validate_data_service_config(config: dict[str, Any]) -> list[str]:
    """Validate data_service.json has required fields."""
    return _check_keys(
        config,
        [
            "coingecko.base_url",
            "coingecko.coin_id",
            "coingecko.vs_currency",
            "poll_interval_seconds",
        ],
        "data_service.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "trading.json": (loader.get_trading_config, validate_trading_config),
        "risk.json": (loader.get_risk_config, validate_risk_config),
        "strategy.json": (loader.get_strategy_config, validate_strategy_config),
        "agent.json": (loader.get_agent_config, validate_agent_config),
        "exchange.json": (loader.get_exchange_config, validate_exchange_config),
        "data_service.json": (loader.get_data_service_config, validate_data_service_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                # range errors carry their own "key: detail" text
                lines.append(f"    - {error}" if ":" in error else f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
