"""
Configuration loader for the BTC futures trading agent.

Provides centralized configuration management with .env overrides.

Usage:
    from config.loader import get_config

    config = get_config()
    risk_config = config.get_risk_config()
    interval = config.get_agent_config().get("decision_interval_seconds", 30)
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent

# Environment overrides: env var -> (config file, key, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "MAX_POSITION_SIZE": ("trading", "max_position_size", str),
    "MAX_LEVERAGE": ("trading", "max_leverage", str),
    "STOP_LOSS_PERCENTAGE": ("trading", "stop_loss_pct", str),
    "POSITION_LIMIT": ("trading", "position_limit", int),
    "MAX_DAILY_LOSS": ("risk", "max_daily_loss", str),
    "MAX_DRAWDOWN_PERCENTAGE": ("risk", "max_drawdown_pct", str),
    "RISK_PER_TRADE": ("risk", "risk_per_trade_pct", str),
    "DECISION_INTERVAL_SECONDS": ("agent", "decision_interval_seconds", float),
    "DRY_RUN": ("agent", "dry_run", bool),
}


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


def _apply_env_overrides(config_name: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay the documented environment variables onto a loaded config dict."""
    if not config:
        return config
    merged = dict(config)
    for var_name, (target, key, var_type) in _ENV_OVERRIDES.items():
        if target != config_name or os.getenv(var_name) is None:
            continue
        merged[key] = get_env_var(var_name, merged.get(key), var_type)
    return merged


class ConfigLoader:
    """
    Central configuration manager for the trading agent.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache for performance.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging layout, command bridge files)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_trading_config(self) -> Dict[str, Any]:
        """Load trading limits (position size, leverage, stop loss, position limit)."""
        return _apply_env_overrides("trading", _load_json(self._config_dir / "trading.json"))

    @lru_cache(maxsize=1)
    def get_risk_config(self) -> Dict[str, Any]:
        """Load risk limits (daily loss, drawdown, risk per trade, portfolio heat)."""
        return _apply_env_overrides("risk", _load_json(self._config_dir / "risk.json"))

    @lru_cache(maxsize=1)
    def get_strategy_config(self) -> Dict[str, Any]:
        """Load indicator periods, rule weights and per-strategy thresholds."""
        return _load_json(self._config_dir / "strategy.json")

    @lru_cache(maxsize=1)
    def get_agent_config(self) -> Dict[str, Any]:
        """Load control loop settings (decision interval, timeouts, default strategy)."""
        return _apply_env_overrides("agent", _load_json(self._config_dir / "agent.json"))

    @lru_cache(maxsize=1)
    def get_exchange_config(self) -> Dict[str, Any]:
        """Load exchange connection settings (network, base URLs, paper balance)."""
        return _load_json(self._config_dir / "exchange.json")

    @lru_cache(maxsize=1)
    def get_data_service_config(self) -> Dict[str, Any]:
        """Load price feed settings (source URL, poll interval, cache TTL)."""
        return _load_json(self._config_dir / "data_service.json")

    # ------------------------------------------------------------------
    # Arbitrary config file loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()
