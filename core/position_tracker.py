"""
Mirrored position map and reconciliation for the BTC futures trading agent.

The exchange owns positions. The tracker keeps a local mirror only to detect
drift between cycles: positions that disappeared (closed externally, e.g.
stop-loss hit on the exchange) and positions that appeared. The mirror is
never used to gate new orders and is replaced wholesale on every reconcile.

Usage:
    tracker = PositionTracker()
    report = tracker.reconcile(fresh_positions, latest_price)
    for closed in report.closed:
        ...settle estimated P&L...
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from bot_logging.logger_manager import setup_module_logger
from shared.types import Position, ReconciliationReport, TradeClosedEvent


class PositionTracker:
    """Single-owner mirror of the exchange's open positions, keyed by id."""

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}
        self._logger = setup_module_logger(
            "position_tracker", "position_tracker.log", module_folder="Position_Tracker_Logs"
        )

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: object) -> bool:
        return position_id in self._positions

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        fresh: Iterable[Position],
        latest_price: Decimal | None,
        now: float | None = None,
    ) -> ReconciliationReport:
        """
        Diff the exchange's list against the mirror, then replace the mirror.

        Args:
            fresh: Positions just fetched from the exchange.
            latest_price: Latest known price, used as the estimated exit for
                externally closed positions. Falls back to entry price.
            now: Close timestamp for settled positions (default: time.time()).

        Returns:
            ReconciliationReport of newly opened and externally closed positions.
        """
        closed_at = time.time() if now is None else now
        fresh_map = {p.id: p for p in fresh}

        opened = tuple(p for pid, p in fresh_map.items() if pid not in self._positions)
        closed: list[TradeClosedEvent] = []
        for pid, position in self._positions.items():
            if pid in fresh_map:
                continue
            exit_price = latest_price if latest_price is not None else position.entry_price
            closed.append(
                TradeClosedEvent(
                    position_id=pid,
                    side=position.side,
                    entry_price=position.entry_price,
                    exit_price=exit_price,
                    quantity=position.quantity,
                    realized_pnl=position.pnl_at(exit_price),
                    opened_at=position.opened_at,
                    closed_at=closed_at,
                    source="external",
                    estimated=True,
                )
            )

        self._positions = fresh_map

        for position in opened:
            self._logger.info(
                "New position on exchange: %s %s $%s @ %s",
                position.id,
                position.side.value,
                position.quantity,
                position.entry_price,
            )
        for event in closed:
            self._logger.warning(
                "Position %s closed externally; estimated exit %s pnl $%s",
                event.position_id,
                event.exit_price,
                event.realized_pnl,
            )
        return ReconciliationReport(opened=opened, closed=tuple(closed))

    def track(self, position: Position) -> None:
        """Mirror a position the engine itself just opened."""
        self._positions[position.id] = position

    def forget(self, position_id: str) -> Position | None:
        """Drop a position the engine itself just closed."""
        return self._positions.pop(position_id, None)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[str, Position]:
        return MappingProxyType(dict(self._positions))

    def get(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def total_exposure(self) -> Decimal:
        return sum((p.quantity for p in self._positions.values()), Decimal("0"))
