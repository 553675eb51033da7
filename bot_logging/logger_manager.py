"""
Centralized logging for the BTC futures trading agent.

Provides standardized logging with JSON and human-readable formatters,
per-module log files, and a JSON-lines decision journal.

Usage:
    from bot_logging.logger_manager import setup_module_logger, create_module_log_directories

    create_module_log_directories()
    logger = setup_module_logger('agent', 'agent.log', module_folder='Agent_Logs')
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shared.serialization_utils import DecimalEncoder

# Resolve project root
_PROJECT_ROOT = Path(__file__).parent.parent

# Load logging config
try:
    from config.loader import get_config

    _app_config = get_config().get_app_config()
except ImportError:
    _app_config = {}

_LOG_DIR = str(_PROJECT_ROOT / _app_config.get("logging", {}).get("log_dir", "logs"))
_MODULE_FOLDERS = _app_config.get("logging", {}).get(
    "module_folders",
    {
        "main": "Main_Logs",
        "agent": "Agent_Logs",
        "strategy": "Strategy_Logs",
        "signal_engine": "Signal_Engine_Logs",
        "market_data": "Market_Data_Logs",
        "risk_gate": "Risk_Gate_Logs",
        "position_tracker": "Position_Tracker_Logs",
        "pnl_tracker": "PnL_Tracker_Logs",
        "data_service": "Data_Service_Logs",
        "exchange": "Exchange_Logs",
        "command_bridge": "Command_Bridge_Logs",
        "decision_journal": "Decision_Journal_Logs",
    },
)


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        # Include extra fields if present
        for key in (
            "position_id",
            "action",
            "strategy",
            "command",
            "event_type",
            "error",
        ):
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, cls=DecimalEncoder)


class HumanReadableFormatter(logging.Formatter):
    """Pretty-printed log formatter for console and human-readable files."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt=self.DATE_FORMAT)


class RawMessageFormatter(logging.Formatter):
    """Pass-through formatter for pre-formatted JSON lines (decision journal)."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_logger_cache: dict[str, logging.Logger] = {}


def create_module_log_directories() -> dict[str, str]:
    """
    Create organized log directory structure.

    Returns dict mapping folder key to absolute path.
    """
    created = {}
    os.makedirs(_LOG_DIR, exist_ok=True)
    for key, folder_name in _MODULE_FOLDERS.items():
        folder_path = os.path.join(_LOG_DIR, folder_name)
        os.makedirs(folder_path, exist_ok=True)
        created[key] = folder_path
    return created


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
    use_raw_formatter: bool = False,
    console: bool = False,
) -> logging.Logger:
    """
    Create a module-specific logger with file and optional console handlers.

    Args:
        name: Logger name (should be unique per module/component).
        log_file: Log filename (placed inside module_folder if specified).
        level: Logging level (default INFO).
        module_folder: Subfolder within logs/ directory (e.g., 'Agent_Logs').
        use_json_formatter: Use structured JSON format (default False = human-readable).
        use_raw_formatter: Use raw pass-through format (for the decision journal).
        console: Also echo records to stderr.

    Returns:
        Configured logging.Logger instance.
    """
    # Return cached logger if already created
    cache_key = f"{name}:{module_folder}:{log_file}"
    if cache_key in _logger_cache:
        return _logger_cache[cache_key]

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Prevent duplicate handlers
    if logger.handlers:
        _logger_cache[cache_key] = logger
        return logger

    # Determine log file path
    if module_folder:
        log_path = os.path.join(_LOG_DIR, module_folder, log_file)
    else:
        log_path = os.path.join(_LOG_DIR, log_file)
    os.makedirs(os.path.dirname(log_path), exist_ok=True)

    # Select formatter
    formatter: logging.Formatter
    if use_raw_formatter:
        formatter = RawMessageFormatter()
    elif use_json_formatter:
        formatter = JSONFormatter()
    else:
        formatter = HumanReadableFormatter()

    # File handler
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(level)
        stream_handler.setFormatter(HumanReadableFormatter())
        logger.addHandler(stream_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    _logger_cache[cache_key] = logger
    return logger


_journal_logger: logging.Logger | None = None


def get_decision_journal() -> logging.Logger:
    """Get or create the decision journal logger (lazy singleton)."""
    global _journal_logger
    if _journal_logger is None:
        _journal_logger = setup_module_logger(
            "decision_journal",
            "decisions.jsonl",
            module_folder=_MODULE_FOLDERS.get("decision_journal", "Decision_Journal_Logs"),
            use_raw_formatter=True,
        )
    return _journal_logger


# ============================================================================
# STRUCTURED JOURNAL
# ============================================================================


def log_decision_event(event_type: str, source_module: str, data: Any) -> None:
    """
    Append one JSON line to the decision journal.

    Args:
        event_type: DECISION, EXECUTION, TRADE_CLOSED, RECONCILIATION, PANIC ...
        source_module: Component emitting the entry.
        data: Payload (dataclasses, Decimals and enums are encoded).
    """
    get_decision_journal().info(
        json.dumps(
            {
                "event": event_type,
                "source_module": source_module,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            cls=DecimalEncoder,
        )
    )
