"""
P&L tracking and trade history for the BTC futures trading agent.

Consumes the agent's outbound event queue and persists closed trades,
execution notifications and decisions in SQLite. Aggregate statistics
(win rate, Sharpe, drawdowns) are computed from the closed-trade table.

Usage:
    from core.pnl_tracker import PnLTracker

    tracker = PnLTracker()
    asyncio.create_task(tracker.run(agent.event_queue))
    stats = await tracker.get_summary_stats()
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import Sequence
from decimal import Decimal
from pathlib import Path
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.serialization_utils import DecimalEncoder
from shared.types import (
    DecisionEvent,
    DecisionRecord,
    ExecutionEvent,
    Position,
    TradeClosedEvent,
    TradingStats,
)

_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_DB_PATH = "data/trades.db"

_SECONDS_PER_HOUR = 3600
_ZERO = Decimal("0")


class PnLTracker:
    """
    SQLite-backed journal of trades, executions and decisions.

    The tracker never drives trading; it only records what the agent
    publishes, so a slow disk can at worst make the event queue drop its
    oldest entries.
    """

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            configured = get_config().get_app_config().get("pnl_db_path", _DEFAULT_DB_PATH)
            db_path = str(_PROJECT_ROOT / configured)

        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._db = sqlite3.connect(db_path)
        self._db.row_factory = sqlite3.Row
        self._create_tables()
        self._running = False

        self._logger = setup_module_logger(
            "pnl_tracker", "pnl_tracker.log", module_folder="PnL_Tracker_Logs"
        )

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS trades (
                position_id TEXT PRIMARY KEY,
                side TEXT NOT NULL,
                entry_price TEXT NOT NULL,
                exit_price TEXT NOT NULL,
                quantity TEXT NOT NULL,
                realized_pnl TEXT NOT NULL,
                opened_at REAL NOT NULL,
                closed_at REAL NOT NULL,
                source TEXT NOT NULL,
                estimated BOOLEAN NOT NULL
            );

            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                action TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                message TEXT NOT NULL,
                position_id TEXT
            );

            CREATE TABLE IF NOT EXISTS decisions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                strategy TEXT NOT NULL,
                action TEXT NOT NULL,
                confidence TEXT NOT NULL,
                reasons TEXT NOT NULL,
                executed BOOLEAN NOT NULL,
                position_id TEXT
            );
        """)
        self._db.commit()

    # ------------------------------------------------------------------
    # Event consumption
    # ------------------------------------------------------------------

    async def run(self, event_queue: asyncio.Queue[Any]) -> None:
        """Consume outbound agent events until stop() is called."""
        self._running = True
        self._logger.info("P&L tracker consuming events (db=%s)", self._db_path)

        while self._running:
            try:
                event = await asyncio.wait_for(event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                raise

            try:
                await self.record_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error(
                    "Failed to persist %s: %s", type(event).__name__, exc, exc_info=True
                )

    def stop(self) -> None:
        self._running = False

    async def record_event(self, event: Any) -> None:
        if isinstance(event, TradeClosedEvent):
            await self.record_trade(event)
        elif isinstance(event, ExecutionEvent):
            await self.record_execution(event)
        elif isinstance(event, DecisionEvent):
            await self.record_decision(event.record)
        else:
            self._logger.warning("Ignoring unknown event type %s", type(event).__name__)

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    async def record_trade(self, event: TradeClosedEvent) -> None:
        """Persist a closed trade. Re-recording the same position is a no-op."""
        cursor = self._db.execute(
            """INSERT OR IGNORE INTO trades
               (position_id, side, entry_price, exit_price, quantity, realized_pnl,
                opened_at, closed_at, source, estimated)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.position_id,
                event.side.value,
                str(event.entry_price),
                str(event.exit_price),
                str(event.quantity),
                str(event.realized_pnl),
                event.opened_at,
                event.closed_at,
                event.source,
                event.estimated,
            ),
        )
        self._db.commit()
        if cursor.rowcount == 0:
            self._logger.debug("Trade %s already recorded", event.position_id)
            return

        self._logger.info(
            "Trade closed: %s %s pnl=$%s source=%s%s",
            event.position_id,
            event.side.value,
            event.realized_pnl,
            event.source,
            " (estimated)" if event.estimated else "",
        )

    async def record_execution(self, event: ExecutionEvent) -> None:
        self._db.execute(
            """INSERT INTO executions (timestamp, action, success, message, position_id)
               VALUES (?, ?, ?, ?, ?)""",
            (event.timestamp, event.action.value, event.success, event.message, event.position_id),
        )
        self._db.commit()

    async def record_decision(self, record: DecisionRecord) -> None:
        self._db.execute(
            """INSERT INTO decisions
               (timestamp, strategy, action, confidence, reasons, executed, position_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.timestamp,
                record.strategy,
                record.action.value,
                str(record.confidence),
                json.dumps(list(record.reasons), cls=DecimalEncoder),
                record.executed,
                record.position_id,
            ),
        )
        self._db.commit()

    # ------------------------------------------------------------------
    # P&L computation
    # ------------------------------------------------------------------

    @staticmethod
    def unrealized_pnl(positions: Sequence[Position], price: Decimal) -> Decimal:
        """Mark-to-market P&L of open positions at `price`."""
        return sum((p.pnl_at(price) for p in positions), _ZERO)

    # ------------------------------------------------------------------
    # Query operations
    # ------------------------------------------------------------------

    async def get_trade_history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Closed trades, most recent first."""
        rows = self._db.execute(
            "SELECT * FROM trades ORDER BY closed_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]

    async def get_recent_decisions(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._db.execute(
            "SELECT * FROM decisions ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["reasons"] = json.loads(item["reasons"])
            result.append(item)
        return result

    async def get_summary_stats(self) -> TradingStats:
        """Aggregate trading statistics over all closed trades."""
        return await self.get_rolling_stats(window_days=None)

    async def get_rolling_stats(
        self, window_days: int | None = 30, now: float | None = None
    ) -> TradingStats:
        """
        Trading statistics for a rolling window.

        Args:
            window_days: Number of days to look back. None = all time.
            now: Reference time (unix seconds), defaults to time.time().
        """
        if window_days is not None:
            cutoff = (now if now is not None else time.time()) - window_days * 86400
            rows = self._db.execute(
                "SELECT * FROM trades WHERE closed_at >= ? ORDER BY closed_at ASC", (cutoff,)
            ).fetchall()
        else:
            rows = self._db.execute("SELECT * FROM trades ORDER BY closed_at ASC").fetchall()

        total_trades = len(rows)
        if total_trades == 0:
            return TradingStats(
                total_trades=0,
                winning_trades=0,
                losing_trades=0,
                total_pnl=_ZERO,
                avg_pnl_per_trade=_ZERO,
                win_rate=_ZERO,
                sharpe_ratio=_ZERO,
                avg_hold_duration_hours=_ZERO,
                current_drawdown_pct=_ZERO,
                max_drawdown_pct=_ZERO,
            )

        pnls = [Decimal(row["realized_pnl"]) for row in rows]
        winning = sum(1 for p in pnls if p > 0)
        losing = sum(1 for p in pnls if p < 0)
        hold_seconds = [row["closed_at"] - row["opened_at"] for row in rows]

        total_pnl = sum(pnls, _ZERO)
        current_dd, max_dd = self._compute_drawdowns(pnls)

        return TradingStats(
            total_trades=total_trades,
            winning_trades=winning,
            losing_trades=losing,
            total_pnl=total_pnl,
            avg_pnl_per_trade=total_pnl / Decimal(total_trades),
            win_rate=Decimal(winning) / Decimal(total_trades),
            sharpe_ratio=self._compute_sharpe(pnls),
            avg_hold_duration_hours=(
                Decimal(str(sum(hold_seconds) / len(hold_seconds))) / _SECONDS_PER_HOUR
            ),
            current_drawdown_pct=current_dd,
            max_drawdown_pct=max_dd,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _compute_sharpe(pnls: list[Decimal]) -> Decimal:
        """Per-trade Sharpe ratio (mean / sample std) of realized P&L."""
        if len(pnls) < 2:
            return _ZERO

        mean_pnl = sum(pnls, _ZERO) / Decimal(len(pnls))
        variance = sum(((p - mean_pnl) ** 2 for p in pnls), _ZERO) / Decimal(len(pnls) - 1)
        if variance <= 0:
            return _ZERO
        return mean_pnl / variance.sqrt()

    @staticmethod
    def _compute_drawdowns(pnls: list[Decimal]) -> tuple[Decimal, Decimal]:
        """
        Current and max drawdown of the cumulative P&L curve.

        Returned as fractions of the running peak (0.15 = 15%); zero while
        the curve has never been above zero.
        """
        cumulative = _ZERO
        peak = _ZERO
        max_drawdown = _ZERO

        for pnl in pnls:
            cumulative += pnl
            if cumulative > peak:
                peak = cumulative
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - cumulative) / peak)

        current_dd = _ZERO
        if peak > 0:
            current_dd = max((peak - cumulative) / peak, _ZERO)
        return current_dd, max_drawdown

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the SQLite database connection."""
        self._db.close()
        self._logger.debug("PnLTracker database closed")
