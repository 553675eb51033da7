"""
Trading agent control loop for the BTC futures trading agent.

Single owner of AgentState. One asyncio task serializes two sources of work:
    - a fixed-interval timer driving autonomous decision cycles
    - an inbox of operator commands (status, stop, panic, ...)
Commands are handled only between cycles, so a cycle always runs to
completion and nothing else ever mutates the state concurrently.

Each cycle:
    1. Fetch the exchange's authoritative open positions. On failure the
       cycle halts with HOLD "position tracking failure" and the mirror is
       left untouched. There is no cached or synthetic fallback.
    2. Reconcile the mirror against the fresh list; settle externally
       closed positions at the latest price (estimated exit).
    3. Evaluate the active strategy on the current IndicatorSet.
    4. For BUY/SELL: size the trade, ask the risk gate, execute on approval.
    5. Record the decision as last_decision and publish it.

Emergency stop: `panic` snapshots exposure and waits for `confirm-panic`
within panic_timeout_seconds (default 300). Confirmation stops the loop,
closes every position sequentially (tolerating individual failures) and
only then clears the request.

Outbound events (DecisionEvent, ExecutionEvent, TradeClosedEvent) go to a
bounded asyncio.Queue consumed by the P&L tracker; when it is full the
oldest event is dropped.

Usage:
    agent = TradingAgent(exchange, history, RiskGate(), PositionTracker(),
                         build_strategies(), event_queue)
    asyncio.create_task(agent.run())
    result = await agent.submit("status")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import log_decision_event, setup_module_logger
from config.loader import get_config
from core.risk_gate import sats_to_quote
from execution.exchange_client import AuthenticationError, ExchangeTimeoutError
from shared.constants import (
    DEFAULT_DECISION_INTERVAL_SECONDS,
    DEFAULT_DRY_RUN,
    DEFAULT_EVENT_QUEUE_SIZE,
    DEFAULT_EXCHANGE_TIMEOUT_SECONDS,
    DEFAULT_LEVERAGE,
    DEFAULT_MAX_TRACKING_FAILURES,
    PANIC_TIMEOUT_SECONDS,
)
from shared.types import (
    Action,
    AgentState,
    AgentStatus,
    CommandResult,
    DecisionEvent,
    DecisionRecord,
    ExecutionEvent,
    FusedDecision,
    PanicRequest,
    Position,
    PositionHealth,
    PositionSide,
    TradeClosedEvent,
    TradeOutcome,
)

if TYPE_CHECKING:
    from core.market_data import PriceHistory
    from core.pnl_tracker import PnLTracker
    from core.position_tracker import PositionTracker
    from core.risk_gate import RiskGate
    from core.strategy import TradingStrategy
    from execution.exchange_client import ExchangeClient

TRACKING_FAILURE_REASON = "position tracking failure"
_ZERO = Decimal("0")


class AgentCommandError(Exception):
    """Raised when an operator command cannot be carried out."""


class TradingAgent:
    """
    Autonomous decision loop with an operator command inbox.

    States: IDLE -> RUNNING <-> (cycle) -> RUNNING, RUNNING -> STOPPED on
    stop, panic confirmation, authentication failure or repeated position
    tracking failures.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        history: PriceHistory,
        risk_gate: RiskGate,
        tracker: PositionTracker,
        strategies: dict[str, TradingStrategy],
        event_queue: asyncio.Queue[Any] | None = None,
        pnl_tracker: PnLTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not strategies:
            raise ValueError("At least one strategy is required")
        self._exchange = exchange
        self._history = history
        self._risk_gate = risk_gate
        self._tracker = tracker
        self._strategies = strategies
        self._clock = clock
        self._pnl_tracker = pnl_tracker

        cfg = get_config()
        agent_cfg = cfg.get_agent_config()
        strategy_cfg = cfg.get_strategy_config()
        trading_cfg = cfg.get_trading_config()

        self._interval: float = agent_cfg.get(
            "decision_interval_seconds", DEFAULT_DECISION_INTERVAL_SECONDS
        )
        self._exchange_timeout: float = agent_cfg.get(
            "exchange_timeout_seconds", DEFAULT_EXCHANGE_TIMEOUT_SECONDS
        )
        self._max_tracking_failures: int = agent_cfg.get(
            "max_tracking_failures", DEFAULT_MAX_TRACKING_FAILURES
        )
        self._panic_timeout: float = agent_cfg.get("panic_timeout_seconds", PANIC_TIMEOUT_SECONDS)
        self._dry_run: bool = agent_cfg.get("dry_run", DEFAULT_DRY_RUN)
        self._auto_start: bool = agent_cfg.get("auto_start", False)
        self._leverage = Decimal(str(trading_cfg.get("default_leverage", DEFAULT_LEVERAGE)))
        self._indicator_params: dict[str, Any] = strategy_cfg.get("indicators", {})

        default_strategy = strategy_cfg.get("default", "enhanced")
        if default_strategy not in strategies:
            default_strategy = next(iter(strategies))

        self._events: asyncio.Queue[Any] = (
            event_queue
            if event_queue is not None
            else asyncio.Queue(maxsize=agent_cfg.get("event_queue_size", DEFAULT_EVENT_QUEUE_SIZE))
        )
        self._inbox: asyncio.Queue[tuple[str, dict[str, Any], asyncio.Future[CommandResult]] | None]
        self._inbox = asyncio.Queue()

        self._handlers: dict[str, Callable[..., Any]] = {
            "start": self._cmd_start,
            "stop": self._cmd_stop,
            "status": self._cmd_status,
            "force-decision": self._cmd_force_decision,
            "panic": self._cmd_panic,
            "confirm-panic": self._cmd_confirm_panic,
            "close-all": self._cmd_close_all,
            "switch-strategy": self._cmd_switch_strategy,
            "compare-strategies": self._cmd_compare_strategies,
            "daily-limits": self._cmd_daily_limits,
            "pnl": self._cmd_pnl,
        }

        # Mutable state
        self._state = AgentState(strategy_name=default_strategy)
        self._alive = False
        self._consecutive_tracking_failures = 0
        self._current_day: date | None = None
        self._next_cycle_at = 0.0

        self._logger = setup_module_logger("agent", "agent.log", module_folder="Agent_Logs")
        self._logger.info(
            "TradingAgent initialized: strategy=%s interval=%ss leverage=%sx dry_run=%s",
            default_strategy,
            self._interval,
            self._leverage,
            self._dry_run,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        """Read-only copy of the agent state."""
        return replace(
            self._state,
            positions=dict(self._state.positions),
            performance=replace(self._state.performance),
        )

    @property
    def status(self) -> AgentStatus:
        return self._state.status

    @property
    def strategy(self) -> TradingStrategy:
        return self._strategies[self._state.strategy_name]

    @property
    def event_queue(self) -> asyncio.Queue[Any]:
        return self._events

    @property
    def commands(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Control loop - designed to be launched as an asyncio.Task."""
        self._alive = True
        loop = asyncio.get_running_loop()
        if self._auto_start and self._state.status is AgentStatus.IDLE:
            self._start()
        self._logger.info("Agent loop started (status=%s)", self._state.status.value)

        while self._alive:
            timeout: float | None = None
            if self._state.status is AgentStatus.RUNNING:
                timeout = max(0.0, self._next_cycle_at - loop.time())
            try:
                item = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                await self._timed_cycle()
                continue
            except asyncio.CancelledError:
                raise

            if item is None:
                continue
            command, params, future = item
            result = await self.handle_command(command, **params)
            if not future.done():
                future.set_result(result)

        self._logger.info("Agent loop exited")

    async def _timed_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("Decision cycle failed: %s", exc, exc_info=True)
        finally:
            self._next_cycle_at = asyncio.get_running_loop().time() + self._interval

    async def submit(self, command: str, **params: Any) -> CommandResult:
        """Queue a command for the loop and wait for its result."""
        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        await self._inbox.put((command, params, future))
        return await future

    def shutdown(self) -> None:
        """Stop the loop after the current cycle or command."""
        self._alive = False
        self._inbox.put_nowait(None)

    async def stop_gracefully(self, task: asyncio.Task[Any], timeout: float | None = None) -> bool:
        """
        Shut down and wait for the loop task to finish its in-flight cycle.

        An order already sent to the exchange must be tracked and recorded,
        so the task is only cancelled if it is still running after `timeout`
        (default: three exchange timeouts).

        Returns:
            True if the loop exited on its own, False if it had to be cancelled.
        """
        self.shutdown()
        limit = timeout if timeout is not None else self._exchange_timeout * 3
        done, _ = await asyncio.wait({task}, timeout=limit)
        if done:
            return True
        self._logger.error("Agent loop still busy after %.1fs; cancelling", limit)
        task.cancel()
        return False

    # ------------------------------------------------------------------
    # Decision cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> DecisionRecord:
        """Run one fetch -> reconcile -> decide -> execute -> record cycle."""
        perf = self._state.performance
        perf.cycles += 1
        self._check_day_rollover()

        # 1. Authoritative positions
        try:
            positions = await self._call(self._exchange.get_open_positions())
        except Exception as exc:
            return self._tracking_failure(exc)
        self._consecutive_tracking_failures = 0

        # 2. Reconcile mirror against the exchange
        price = self._history.latest_price
        report = self._tracker.reconcile(positions, price, now=self._clock())
        for event in report.closed:
            self._settle(event)
        if not report.is_empty:
            log_decision_event(
                "RECONCILIATION",
                "agent",
                {"opened": [p.id for p in report.opened], "closed": report.closed},
            )
        self._state.positions = dict(self._tracker.snapshot())
        if price is not None:
            self._review_positions(positions, price)

        # 3. Strategy decision
        indicators = self._history.build_indicator_set(self._indicator_params)
        decision = self.strategy.evaluate(indicators)

        # 4. Risk gate + execution
        position_id: str | None = None
        if decision.action is not Action.HOLD:
            decision, position_id = await self._execute(decision, positions)

        # 5. Record
        return self._record(decision, position_id)

    def _tracking_failure(self, exc: Exception) -> DecisionRecord:
        perf = self._state.performance
        perf.tracking_failures += 1
        self._consecutive_tracking_failures += 1
        self._logger.critical(
            "SAFETY HALT: cannot fetch exchange positions (%d/%d): %s",
            self._consecutive_tracking_failures,
            self._max_tracking_failures,
            exc,
        )
        if isinstance(exc, AuthenticationError):
            self._halt(f"authentication failed: {exc}")
        elif self._consecutive_tracking_failures >= self._max_tracking_failures:
            self._halt(f"{self._consecutive_tracking_failures} consecutive tracking failures")

        decision = FusedDecision(
            action=Action.HOLD,
            confidence=_ZERO,
            reasons=(TRACKING_FAILURE_REASON, str(exc)),
            strategy=self._state.strategy_name,
        )
        return self._record(decision, None)

    def _record(self, decision: FusedDecision, position_id: str | None) -> DecisionRecord:
        record = DecisionRecord(
            action=decision.action,
            confidence=decision.confidence,
            reasons=tuple(decision.reasons),
            timestamp=self._clock(),
            strategy=decision.strategy or self._state.strategy_name,
            executed=position_id is not None,
            position_id=position_id,
        )
        self._state.last_decision = record
        self._state.performance.decisions += 1
        self._publish(DecisionEvent(record))
        log_decision_event("DECISION", "agent", record)
        self._logger.info(
            "Decision: %s confidence=%.3f executed=%s reasons=%s",
            record.action.value,
            record.confidence,
            record.executed,
            "; ".join(record.reasons),
        )
        return record

    async def _execute(
        self, decision: FusedDecision, positions: Sequence[Position]
    ) -> tuple[FusedDecision, str | None]:
        """Size, risk-check and place a BUY/SELL decision."""
        price = self._history.latest_price
        if price is None or price <= 0:
            return self._hold(decision, "No market price available"), None

        try:
            balance_sats = await self._call(self._exchange.get_balance())
        except AuthenticationError as exc:
            self._halt(f"authentication failed: {exc}")
            return self._hold(decision, f"Balance unavailable: {exc}"), None
        except Exception as exc:
            self._logger.warning("Balance fetch failed, skipping trade: %s", exc)
            return self._hold(decision, f"Balance unavailable: {exc}"), None

        balance = sats_to_quote(balance_sats, price)
        self._risk_gate.update_balance(balance)

        side = PositionSide.from_action(decision.action)
        size = self._risk_gate.size_for(balance, price=price)
        check = self._risk_gate.can_open(
            side,
            size.quote_amount,
            self._leverage,
            balance=balance,
            open_positions=positions,
        )
        if not check.allowed:
            return self._hold(decision, f"Risk gate: {check.reason}"), None

        stop_loss = self._risk_gate.stop_loss_price(price, side)
        try:
            position = await self._call(
                self._exchange.open_position(side, size.base_quantity, self._leverage, stop_loss)
            )
        except Exception as exc:
            self._state.performance.trades_failed += 1
            message = f"Execution failed: {exc}"
            self._logger.error("Failed to open %s position: %s", side.value, exc)
            self._publish(ExecutionEvent(decision.action, False, message, self._clock()))
            log_decision_event("EXECUTION", "agent", {"success": False, "error": str(exc)})
            if isinstance(exc, AuthenticationError):
                self._halt(f"authentication failed: {exc}")
            return replace(decision, reasons=decision.reasons + (message,)), None

        self._tracker.track(position)
        self._state.positions = dict(self._tracker.snapshot())
        self._state.performance.trades_executed += 1

        message = (
            f"Opened {position.side.value} ${position.quantity:.2f} @ {position.entry_price} "
            f"({position.leverage}x, stop {stop_loss:.2f})"
        )
        self._logger.info("EXECUTED: %s [%s]", message, position.id)
        self._publish(
            ExecutionEvent(decision.action, True, message, self._clock(), position_id=position.id)
        )
        log_decision_event("EXECUTION", "agent", position)
        return decision, position.id

    @staticmethod
    def _hold(decision: FusedDecision, reason: str) -> FusedDecision:
        return replace(decision, action=Action.HOLD, reasons=decision.reasons + (reason,))

    async def _call(self, awaitable: Any) -> Any:
        """Await an exchange call under the per-call timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._exchange_timeout)
        except asyncio.TimeoutError as exc:
            raise ExchangeTimeoutError(
                f"Exchange call timed out after {self._exchange_timeout}s"
            ) from exc

    def _halt(self, reason: str) -> None:
        if self._state.status is not AgentStatus.STOPPED:
            self._logger.critical("Agent stopped: %s", reason)
        self._state.status = AgentStatus.STOPPED

    def _check_day_rollover(self) -> None:
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        if self._current_day is not None and today != self._current_day:
            self._logger.info("UTC day rollover %s -> %s", self._current_day, today)
            self._risk_gate.reset_daily_limits()
        self._current_day = today

    def _review_positions(self, positions: Sequence[Position], price: Decimal) -> None:
        for position in positions:
            report = self._risk_gate.position_health(position, price, now=self._clock())
            if report.health is PositionHealth.CRITICAL:
                self._logger.warning(
                    "Position %s CRITICAL: pnl %.2f%%, %.2f%% from stop",
                    position.id,
                    report.pnl_pct,
                    report.stop_loss_distance_pct,
                )
            advice = self._risk_gate.should_reduce(position, price)
            if advice.reduce:
                self._logger.info(
                    "Position %s: consider reducing %d%% (%s)",
                    position.id,
                    advice.percentage,
                    advice.reason,
                )

    # ------------------------------------------------------------------
    # Closing and settlement
    # ------------------------------------------------------------------

    async def _close(self, position: Position, source: str) -> TradeClosedEvent:
        closed = await self._call(self._exchange.close_position(position.id))
        self._tracker.forget(position.id)
        self._state.positions = dict(self._tracker.snapshot())
        event = TradeClosedEvent(
            position_id=position.id,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=closed.exit_price,
            quantity=position.quantity,
            realized_pnl=closed.realized_pnl,
            opened_at=position.opened_at,
            closed_at=self._clock(),
            source=source,
        )
        self._settle(event)
        return event

    async def _close_all(self, positions: Sequence[Position], source: str) -> dict[str, Any]:
        """Close positions one by one; a failed close does not stop the rest."""
        closed: list[TradeClosedEvent] = []
        failed: list[dict[str, str]] = []
        for position in positions:
            try:
                closed.append(await self._close(position, source))
            except Exception as exc:
                self._logger.error("Failed to close %s: %s", position.id, exc)
                failed.append({"position_id": position.id, "error": str(exc)})
        return {"closed": closed, "failed": failed}

    def _settle(self, event: TradeClosedEvent) -> None:
        """Fold a closed trade into risk, strategy and performance bookkeeping."""
        self._risk_gate.record_outcome(
            TradeOutcome(pnl=event.realized_pnl, quantity=event.quantity, timestamp=event.closed_at)
        )
        for strategy in self._strategies.values():
            strategy.record_outcome(event.realized_pnl)

        perf = self._state.performance
        perf.trades_closed += 1
        perf.total_realized_pnl += event.realized_pnl
        if event.source == "external":
            perf.external_closures += 1

        self._publish(event)
        log_decision_event("TRADE_CLOSED", "agent", event)

    def _publish(self, event: Any) -> None:
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            dropped = self._events.get_nowait()
            self._logger.warning(
                "Event queue full, dropped oldest %s", type(dropped).__name__
            )
            self._events.put_nowait(event)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, command: str, **params: Any) -> CommandResult:
        """Execute one operator command. Called from the loop between cycles."""
        handler = self._handlers.get(command)
        if handler is None:
            return CommandResult(
                command,
                False,
                f"Unknown command: {command}. Available: {', '.join(self._handlers)}",
            )
        self._logger.info("Command: %s %s", command, params or "")
        try:
            return await handler(**params)
        except AgentCommandError as exc:
            self._logger.warning("Command %s rejected: %s", command, exc)
            return CommandResult(command, False, str(exc))
        except TypeError as exc:
            return CommandResult(command, False, f"Invalid parameters: {exc}")
        except Exception as exc:
            self._logger.error("Command %s failed: %s", command, exc, exc_info=True)
            return CommandResult(command, False, f"Command failed: {exc}")

    def _start(self) -> None:
        self._state.status = AgentStatus.RUNNING
        self._consecutive_tracking_failures = 0
        self._next_cycle_at = asyncio.get_running_loop().time()

    async def _cmd_start(self) -> CommandResult:
        if self._state.status is AgentStatus.RUNNING:
            return CommandResult("start", True, "Agent already running")
        self._start()
        return CommandResult("start", True, f"Agent started ({self._state.strategy_name} strategy)")

    async def _cmd_stop(self) -> CommandResult:
        self._state.status = AgentStatus.STOPPED
        return CommandResult("stop", True, "Agent stopped")

    async def _cmd_status(self) -> CommandResult:
        data = self.snapshot()
        if self._pnl_tracker is not None:
            data["pnl"] = await self._pnl_tracker.get_summary_stats()
        return CommandResult("status", True, f"Agent {self._state.status.value}", data)

    async def _cmd_force_decision(self) -> CommandResult:
        record = await self.run_cycle()
        return CommandResult(
            "force-decision",
            True,
            f"{record.action.value} (confidence {record.confidence:.2f})",
            {"decision": record},
        )

    async def _cmd_panic(self) -> CommandResult:
        existing = self._state.panic_request
        if existing is not None and not self._panic_expired(existing):
            remaining = self._panic_timeout - (self._clock() - existing.requested_at)
            raise AgentCommandError(
                f"Panic already requested; send confirm-panic within {remaining:.0f}s"
            )

        try:
            positions = await self._call(self._exchange.get_open_positions())
        except Exception as exc:
            raise AgentCommandError(f"Cannot snapshot positions: {exc}") from exc

        price = self._history.latest_price
        unrealized = sum(
            (
                p.pnl_at(price) if price is not None else p.unrealized_pnl
                for p in positions
            ),
            _ZERO,
        )
        request = PanicRequest(
            requested_at=self._clock(),
            positions=tuple(positions),
            total_exposure=sum((p.quantity for p in positions), _ZERO),
            unrealized_pnl=unrealized,
        )
        self._state.panic_request = request
        self._logger.warning(
            "PANIC requested: %d positions, exposure $%s, unrealized $%s",
            len(positions),
            request.total_exposure,
            request.unrealized_pnl,
        )
        log_decision_event("PANIC_REQUESTED", "agent", request)
        return CommandResult(
            "panic",
            True,
            f"Panic requested: {len(positions)} positions, exposure ${request.total_exposure:.2f}. "
            f"Send confirm-panic within {self._panic_timeout:.0f}s",
            {"request": request},
        )

    def _panic_expired(self, request: PanicRequest) -> bool:
        return self._clock() - request.requested_at > self._panic_timeout

    async def _cmd_confirm_panic(self) -> CommandResult:
        request = self._state.panic_request
        if request is None:
            raise AgentCommandError("No panic request found")
        if self._panic_expired(request):
            self._state.panic_request = None
            raise AgentCommandError(
                f"Panic request expired ({self._panic_timeout:.0f}s timeout); request cleared"
            )

        self._halt("panic confirmed")

        try:
            positions = await self._call(self._exchange.get_open_positions())
        except Exception as exc:
            raise AgentCommandError(
                f"Cannot fetch positions to close ({exc}); panic request kept"
            ) from exc

        outcome = await self._close_all(positions, source="panic")
        self._state.panic_request = None

        closed, failed = outcome["closed"], outcome["failed"]
        log_decision_event("PANIC_CONFIRMED", "agent", outcome)
        message = f"Panic executed: closed {len(closed)}/{len(positions)} positions"
        if failed:
            message += f", {len(failed)} failed"
        return CommandResult(
            "confirm-panic",
            not failed,
            message,
            {**outcome, "partial": bool(failed) and bool(closed)},
        )

    async def _cmd_close_all(self) -> CommandResult:
        try:
            positions = await self._call(self._exchange.get_open_positions())
        except Exception as exc:
            raise AgentCommandError(f"Cannot fetch positions: {exc}") from exc

        outcome = await self._close_all(positions, source="engine")
        closed, failed = outcome["closed"], outcome["failed"]
        message = f"Closed {len(closed)}/{len(positions)} positions"
        if failed:
            message += f", {len(failed)} failed"
        return CommandResult("close-all", not failed, message, outcome)

    async def _cmd_switch_strategy(self, name: str = "") -> CommandResult:
        if name not in self._strategies:
            raise AgentCommandError(
                f"Unknown strategy {name!r}. Available: {', '.join(self._strategies)}"
            )
        previous = self._state.strategy_name
        self._state.strategy_name = name
        return CommandResult(
            "switch-strategy", True, f"Strategy switched: {previous} -> {name}", {"strategy": name}
        )

    async def _cmd_compare_strategies(self) -> CommandResult:
        data = {
            name: {
                "active": name == self._state.strategy_name,
                "metrics": strategy.metrics(),
                "recent_signals": strategy.signal_history(5),
            }
            for name, strategy in self._strategies.items()
        }
        return CommandResult("compare-strategies", True, f"{len(data)} strategies", data)

    async def _cmd_daily_limits(self) -> CommandResult:
        limits = self._risk_gate.daily_limits()
        return CommandResult(
            "daily-limits",
            True,
            f"Daily loss ${abs(limits['daily_loss']):.2f} of ${limits['max_daily_loss']}",
            limits,
        )

    async def _cmd_pnl(self, days: str = "30") -> CommandResult:
        if self._pnl_tracker is None:
            raise AgentCommandError("P&L journal not attached")
        try:
            window = int(days)
        except ValueError as exc:
            raise AgentCommandError(f"days must be a whole number, got {days!r}") from exc
        if window <= 0:
            raise AgentCommandError(f"days must be positive, got {window}")

        summary = await self._pnl_tracker.get_summary_stats()
        price = self._history.latest_price
        positions = list(self._state.positions.values())
        data = {
            "summary": summary,
            "rolling": await self._pnl_tracker.get_rolling_stats(window, now=self._clock()),
            "unrealized_pnl": (
                self._pnl_tracker.unrealized_pnl(positions, price) if price is not None else None
            ),
            "recent_trades": await self._pnl_tracker.get_trade_history(limit=10),
            "recent_decisions": await self._pnl_tracker.get_recent_decisions(limit=10),
        }
        return CommandResult(
            "pnl",
            True,
            f"{summary.total_trades} trades, total P&L ${summary.total_pnl:.2f}, "
            f"win rate {summary.win_rate * 100:.1f}%",
            data,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Full AgentState snapshot plus risk and market metrics."""
        state = self.state
        price = self._history.latest_price
        return {
            "status": state.status,
            "strategy": state.strategy_name,
            "dry_run": self._dry_run,
            "last_decision": state.last_decision,
            "positions": list(state.positions.values()),
            "exposure": self._tracker.total_exposure(),
            "performance": state.performance,
            "panic_request": state.panic_request,
            "risk": self._risk_gate.metrics(),
            "market": self._history.market_metrics(self._indicator_params),
            "position_pnl_pct": {
                pid: p.price_move(price) * 100 for pid, p in state.positions.items()
            }
            if price is not None
            else {},
        }
