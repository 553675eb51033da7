"""
BTC Futures Trading Agent - Main Entrypoint.

Single-process asyncio runner that orchestrates four concurrent tasks:
    1. TradingAgent      - decision cycles and operator commands
    2. PriceDataService  - CoinGecko price feed into the shared PriceHistory
    3. PnLTracker        - persists the agent's outbound events to SQLite
    4. CommandBridge     - relays .agent-command files to the agent inbox

The agent exclusively owns its state; the other tasks talk to it through
its command inbox and its outbound event queue.

Usage:
    python main.py          # dry-run (paper exchange) unless DRY_RUN=false
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from bot_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs

# ---------------------------------------------------------------------------
# Module logger (logs/ root, echoed to stderr)
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", console=True)


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(
    dry_run: bool,
    exchange_name: str,
    network: str,
    strategy: str,
    interval: Any,
    max_leverage: str,
) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("BTC Futures Trading Agent starting")
    _logger.info("=" * 60)
    _logger.info("  dry_run         : %s", dry_run)
    _logger.info("  exchange        : %s (%s)", exchange_name, network)
    _logger.info("  strategy        : %s", strategy)
    _logger.info("  cycle interval  : %ss", interval)
    _logger.info("  max_leverage    : %sx", max_leverage)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback - detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when any core task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and launch the concurrent tasks."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    create_module_log_directories()

    cfg = get_config()
    agent_cfg = cfg.get_agent_config()
    strategy_cfg = cfg.get_strategy_config()
    exchange_cfg = cfg.get_exchange_config()
    trading_cfg = cfg.get_trading_config()

    dry_run: bool = agent_cfg.get("dry_run", True)

    # ------------------------------------------------------------------
    # 2. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    from core.agent import TradingAgent
    from core.command_bridge import CommandBridge
    from core.data_service import PriceDataError, PriceDataService
    from core.market_data import PriceHistory
    from core.pnl_tracker import PnLTracker
    from core.position_tracker import PositionTracker
    from core.risk_gate import RiskGate
    from core.strategy import build_strategies
    from execution.exchange_client import AuthenticationError, ExchangeClient
    from execution.lnmarkets_client import LNMarketsClient
    from execution.paper_exchange import PaperExchange

    history = PriceHistory(capacity=strategy_cfg.get("history_capacity", 1000))

    exchange: ExchangeClient
    if dry_run:
        exchange = PaperExchange(price_source=lambda: history.latest_price)
    else:
        try:
            exchange = LNMarketsClient(
                os.getenv("LNM_API_KEY", ""),
                os.getenv("LNM_API_SECRET", ""),
                os.getenv("LNM_API_PASSPHRASE", ""),
            )
        except AuthenticationError as exc:
            _logger.critical("%s (set LNM_API_KEY, LNM_API_SECRET, LNM_API_PASSPHRASE)", exc)
            sys.exit(1)

    strategies = build_strategies()
    event_queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=agent_cfg.get("event_queue_size", 1000))

    data_service = PriceDataService()
    pnl_tracker = PnLTracker()
    agent = TradingAgent(
        exchange=exchange,
        history=history,
        risk_gate=RiskGate(),
        tracker=PositionTracker(),
        strategies=strategies,
        event_queue=event_queue,
        pnl_tracker=pnl_tracker,
    )
    bridge = CommandBridge(agent)

    _log_banner(
        dry_run,
        exchange.name,
        exchange_cfg.get("network", "testnet"),
        agent.state.strategy_name,
        agent_cfg.get("decision_interval_seconds", 30),
        str(trading_cfg.get("max_leverage", "2")),
    )

    try:
        seeded = await data_service.seed_history(history)
        _logger.info("Price history seeded with %d samples", seeded)
    except PriceDataError as exc:
        _logger.warning("Price history seed failed, starting empty: %s", exc)

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s - initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Launch concurrent tasks
    # ------------------------------------------------------------------
    tasks = [
        asyncio.create_task(agent.run(), name="agent"),
        asyncio.create_task(data_service.run(history), name="price_feed"),
        asyncio.create_task(pnl_tracker.run(event_queue), name="pnl_tracker"),
        asyncio.create_task(bridge.run(), name="command_bridge"),
    ]

    for t in tasks:
        t.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("All tasks launched: %s", ", ".join(t.get_name() for t in tasks))

    # ------------------------------------------------------------------
    # 5. Wait for shutdown signal, let the in-flight cycle finish, then
    #    cancel the remaining tasks
    # ------------------------------------------------------------------
    agent_task = tasks[0]
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down - waiting for the agent loop")

        # An order in flight must be tracked before teardown
        if not agent_task.done():
            await agent.stop_gracefully(agent_task)

        # Signal cooperative stop
        data_service.stop()
        pnl_tracker.stop()
        bridge.stop()

        # Cancel and wait
        _logger.info("Cancelling remaining tasks")
        for t in tasks:
            if not t.done():
                t.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for t, result in zip(tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", t.get_name(), result)

        # Cleanup resources
        await exchange.close()
        await data_service.close()
        pnl_tracker.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
