"""
Risk gate for the BTC futures trading agent.

Approves or rejects proposed trades against configured limits and computes
safe position sizes. Every amount handled here is in the quote currency
(USD); exchange balances arrive in sats and are converted with
sats_to_quote() before they reach the gate.

can_open() is fail-fast: checks run in a fixed order and the first failing
check's reason is returned.
    (a) open-position count < limit
    (b) size <= max position size
    (c) leverage <= max leverage
    (d) |daily loss| < max daily loss
    (e) balance >= required margin + per-trade risk reserve
    (f) drawdown from the balance high-water mark <= max drawdown
    (g) portfolio heat + this trade's risk <= heat limit

Default-to-safe: if the trading or risk config file is missing entirely the
gate locks down (position limit 0, max size 0) and rejects every trade.

Usage:
    from core.risk_gate import RiskGate, sats_to_quote

    gate = RiskGate()
    balance = sats_to_quote(balance_sats, price)
    check = gate.can_open(PositionSide.LONG, size, leverage,
                          balance=balance, open_positions=positions)
    if not check.allowed:
        print(f"Blocked: {check.reason}")
"""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import (
    DAILY_LOSS_WARNING_RATIO,
    DEFAULT_MAX_DAILY_LOSS,
    DEFAULT_MAX_DRAWDOWN_PCT,
    DEFAULT_MAX_LEVERAGE,
    DEFAULT_MAX_PORTFOLIO_HEAT_PCT,
    DEFAULT_MAX_POSITION_SIZE,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_MIN_TRADE_SIZE,
    DEFAULT_RISK_PER_TRADE_PCT,
    DEFAULT_STOP_LOSS_PCT,
    PARTIAL_PROFIT_PCT,
    SATS_PER_BTC,
    TRADING_DAYS_PER_YEAR,
)
from shared.types import (
    Position,
    PositionHealth,
    PositionHealthReport,
    PositionSide,
    PositionSize,
    ReduceAdvice,
    RiskCheck,
    RiskLimits,
    TradeOutcome,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

LOCKDOWN_LIMITS = RiskLimits(
    max_positions=0,
    max_position_size=_ZERO,
    max_leverage=Decimal("1"),
    max_daily_loss=_ZERO,
    max_drawdown_pct=_ZERO,
    max_portfolio_heat_pct=_ZERO,
    risk_per_trade_pct=_ZERO,
    min_trade_size=_ZERO,
    stop_loss_pct=DEFAULT_STOP_LOSS_PCT,
)


def sats_to_quote(sats: int | Decimal, price: Decimal) -> Decimal:
    """Convert a sats amount to the quote currency at `price` (quote per BTC)."""
    return Decimal(sats) / SATS_PER_BTC * price


def load_risk_limits() -> RiskLimits:
    """
    Build RiskLimits from trading.json and risk.json.

    Two tiers of defaults:
    - Config present but key missing: use DEFAULT_* constants
    - Config file missing/empty: LOCKDOWN_LIMITS
    """
    cfg = get_config()
    trading = cfg.get_trading_config()
    risk = cfg.get_risk_config()
    if not trading or not risk:
        return LOCKDOWN_LIMITS

    return RiskLimits(
        max_positions=int(trading.get("position_limit", DEFAULT_MAX_POSITIONS)),
        max_position_size=Decimal(
            str(trading.get("max_position_size", DEFAULT_MAX_POSITION_SIZE))
        ),
        max_leverage=Decimal(str(trading.get("max_leverage", DEFAULT_MAX_LEVERAGE))),
        max_daily_loss=Decimal(str(risk.get("max_daily_loss", DEFAULT_MAX_DAILY_LOSS))),
        max_drawdown_pct=Decimal(str(risk.get("max_drawdown_pct", DEFAULT_MAX_DRAWDOWN_PCT))),
        max_portfolio_heat_pct=Decimal(
            str(risk.get("portfolio_heat_limit_pct", DEFAULT_MAX_PORTFOLIO_HEAT_PCT))
        ),
        risk_per_trade_pct=Decimal(
            str(risk.get("risk_per_trade_pct", DEFAULT_RISK_PER_TRADE_PCT))
        ),
        min_trade_size=Decimal(str(trading.get("min_trade_size", DEFAULT_MIN_TRADE_SIZE))),
        stop_loss_pct=Decimal(str(trading.get("stop_loss_pct", DEFAULT_STOP_LOSS_PCT))),
    )


class RiskGate:
    """
    Pre-trade limits, position sizing and trade-outcome bookkeeping.

    Limits are immutable for the session. Mutable state: daily loss
    accumulator, daily trade count, balance high-water mark, trade history.
    """

    def __init__(self, limits: RiskLimits | None = None) -> None:
        self._limits = limits if limits is not None else load_risk_limits()

        risk_cfg = get_config().get_risk_config()
        history_size = int(risk_cfg.get("outcome_history_size", 500)) if risk_cfg else 500

        self._daily_loss = _ZERO  # sum of losing trades today (<= 0)
        self._daily_trades = 0
        self._peak_balance = _ZERO
        self._current_balance = _ZERO
        self._trades: deque[TradeOutcome] = deque(maxlen=history_size)

        # Derived metrics, refreshed by record_outcome()
        self._win_rate = _ZERO
        self._avg_win = _ZERO
        self._avg_loss = _ZERO
        self._sharpe_ratio = _ZERO

        self._logger = setup_module_logger(
            "risk_gate", "risk_gate.log", module_folder="Risk_Gate_Logs"
        )
        self._logger.info(
            "RiskGate initialized: positions=%d max_size=$%s max_leverage=%sx "
            "max_daily_loss=$%s max_drawdown=%s%% heat_limit=%s%% risk_per_trade=%s%%",
            self._limits.max_positions,
            self._limits.max_position_size,
            self._limits.max_leverage,
            self._limits.max_daily_loss,
            self._limits.max_drawdown_pct,
            self._limits.max_portfolio_heat_pct,
            self._limits.risk_per_trade_pct,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    @property
    def daily_loss(self) -> Decimal:
        return self._daily_loss

    @property
    def peak_balance(self) -> Decimal:
        return self._peak_balance

    # ------------------------------------------------------------------
    # Gate checks
    # ------------------------------------------------------------------

    def can_open(
        self,
        side: PositionSide,
        size: Decimal,
        leverage: Decimal,
        *,
        balance: Decimal,
        open_positions: Sequence[Position],
    ) -> RiskCheck:
        """
        Check whether a new position can be opened.

        Args:
            side: Proposed direction.
            size: Notional in quote currency.
            leverage: Requested leverage.
            balance: Current account balance in quote currency.
            open_positions: The exchange's live position list.

        Returns:
            RiskCheck with the first failing reason, or allowed=True.
        """
        limits = self._limits
        risk_pct = limits.risk_per_trade_pct

        # (a) position count
        if len(open_positions) >= limits.max_positions:
            return self._reject(
                f"Position limit reached: {len(open_positions)}/{limits.max_positions}"
            )

        # (b) size
        if size <= 0:
            return self._reject(f"Invalid position size ${size}")
        if size > limits.max_position_size:
            return self._reject(
                f"Position size ${size:.2f} exceeds max ${limits.max_position_size}"
            )

        # (c) leverage
        if leverage <= 0:
            return self._reject(f"Invalid leverage {leverage}x")
        if leverage > limits.max_leverage:
            return self._reject(f"Leverage {leverage}x exceeds max {limits.max_leverage}x")

        # (d) daily loss
        if abs(self._daily_loss) >= limits.max_daily_loss:
            return self._reject(
                f"Daily loss limit reached: ${abs(self._daily_loss):.2f}"
                f" >= ${limits.max_daily_loss}"
            )

        # (e) margin + risk reserve
        required = size / leverage + size * risk_pct / _HUNDRED
        if balance < required:
            return self._reject(
                f"Insufficient balance: ${balance:.2f} < required ${required:.2f}"
            )

        # (f) drawdown from high-water mark
        drawdown = self.drawdown_pct(balance)
        if drawdown > limits.max_drawdown_pct:
            return self._reject(
                f"Max drawdown exceeded: {drawdown:.2f}% > {limits.max_drawdown_pct}%"
            )

        # (g) portfolio heat
        heat = self.portfolio_heat(open_positions, balance)
        if heat + risk_pct > limits.max_portfolio_heat_pct:
            return self._reject(
                f"Portfolio heat limit: {heat:.2f}% + {risk_pct}% > "
                f"{limits.max_portfolio_heat_pct}%"
            )

        self._logger.debug("Risk checks passed for %s $%s at %sx", side.value, size, leverage)
        return RiskCheck(allowed=True, reason="All risk checks passed")

    def _reject(self, reason: str) -> RiskCheck:
        self._logger.info("Trade rejected: %s", reason)
        return RiskCheck(allowed=False, reason=reason)

    def drawdown_pct(self, balance: Decimal | None = None) -> Decimal:
        """Percentage decline from the highest observed balance."""
        current = self._current_balance if balance is None else balance
        peak = max(self._peak_balance, current)
        if peak <= 0:
            return _ZERO
        return (peak - current) / peak * _HUNDRED

    def portfolio_heat(self, positions: Sequence[Position], balance: Decimal) -> Decimal:
        """Sum of per-position risk as a percentage of balance."""
        if balance <= 0:
            return _ZERO if not positions else _HUNDRED
        at_risk = sum(
            (p.quantity * self._limits.risk_per_trade_pct / _HUNDRED for p in positions), _ZERO
        )
        return at_risk / balance * _HUNDRED

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def size_for(
        self,
        balance: Decimal,
        risk_pct: Decimal | None = None,
        price: Decimal | None = None,
    ) -> PositionSize:
        """
        Position size for a balance.

        risk amount = balance * risk_pct / 100, clamped to
        [min_trade_size, max_position_size], then converted to base units at
        `price`. A missing or non-positive price yields zero base quantity.
        """
        pct = self._limits.risk_per_trade_pct if risk_pct is None else risk_pct
        amount = balance * pct / _HUNDRED
        amount = max(self._limits.min_trade_size, min(amount, self._limits.max_position_size))
        if price is None or price <= 0:
            return PositionSize(quote_amount=amount, base_quantity=_ZERO)
        return PositionSize(quote_amount=amount, base_quantity=amount / price)

    def stop_loss_price(self, entry_price: Decimal, side: PositionSide) -> Decimal:
        offset = entry_price * self._limits.stop_loss_pct / _HUNDRED
        return entry_price - offset if side is PositionSide.LONG else entry_price + offset

    # ------------------------------------------------------------------
    # State mutations
    # ------------------------------------------------------------------

    def update_balance(self, balance: Decimal) -> None:
        """Record the latest exchange balance and move the high-water mark."""
        self._current_balance = balance
        if balance > self._peak_balance:
            self._peak_balance = balance

    def record_outcome(self, outcome: TradeOutcome) -> None:
        """Fold a closed trade into daily counters, history and derived metrics."""
        self._trades.append(outcome)
        self._daily_trades += 1
        if outcome.pnl < 0:
            self._daily_loss += outcome.pnl

        if self._current_balance > 0:
            self.update_balance(self._current_balance + outcome.pnl)

        self._refresh_metrics()
        self._logger.info(
            "Outcome recorded: pnl=$%s daily_loss=$%s trades=%d win_rate=%.1f%%",
            outcome.pnl,
            self._daily_loss,
            len(self._trades),
            self._win_rate,
        )

        limit = self._limits.max_daily_loss
        if limit > 0 and abs(self._daily_loss) >= limit * DAILY_LOSS_WARNING_RATIO:
            self._logger.warning(
                "Daily loss at %.0f%% of limit ($%s / $%s)",
                abs(self._daily_loss) / limit * _HUNDRED,
                abs(self._daily_loss),
                limit,
            )

    def reset_daily_limits(self) -> None:
        """Explicit day-boundary reset of the daily counters."""
        self._logger.info(
            "Daily limits reset (previous daily loss $%s over %d trades)",
            self._daily_loss,
            self._daily_trades,
        )
        self._daily_loss = _ZERO
        self._daily_trades = 0

    def _refresh_metrics(self) -> None:
        trades = list(self._trades)
        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [t.pnl for t in trades if t.pnl < 0]

        self._win_rate = Decimal(len(wins)) / Decimal(len(trades)) * _HUNDRED if trades else _ZERO
        self._avg_win = sum(wins, _ZERO) / Decimal(len(wins)) if wins else _ZERO
        self._avg_loss = sum(losses, _ZERO) / Decimal(len(losses)) if losses else _ZERO
        self._sharpe_ratio = self._compute_sharpe(trades)

    @staticmethod
    def _compute_sharpe(trades: list[TradeOutcome]) -> Decimal:
        """
        Simplified annualized Sharpe ratio over per-trade returns.

        returns = pnl / quantity; Sharpe = mean / population stdev * sqrt(252).
        """
        returns = [t.pnl / t.quantity for t in trades if t.quantity > 0]
        if len(returns) < 2:
            return _ZERO
        n = Decimal(len(returns))
        mean = sum(returns, _ZERO) / n
        variance = sum(((r - mean) ** 2 for r in returns), _ZERO) / n
        std_dev = RiskGate._decimal_sqrt(variance)
        if std_dev <= 0:
            return _ZERO
        return mean / std_dev * Decimal(str(math.sqrt(TRADING_DAYS_PER_YEAR)))

    @staticmethod
    def _decimal_sqrt(value: Decimal) -> Decimal:
        """Compute square root of a Decimal using Newton's method."""
        if value <= 0:
            return _ZERO
        x = value
        for _ in range(50):
            x_new = (x + value / x) / Decimal("2")
            if abs(x_new - x) < Decimal("1e-18"):
                break
            x = x_new
        return x

    # ------------------------------------------------------------------
    # Position advice
    # ------------------------------------------------------------------

    def should_reduce(self, position: Position, price: Decimal) -> ReduceAdvice:
        """Partial-profit and daily-loss based reduction advice."""
        pnl_pct = position.price_move(price) * _HUNDRED
        if pnl_pct > PARTIAL_PROFIT_PCT:
            return ReduceAdvice(
                reduce=True, percentage=50, reason=f"Take partial profit at {pnl_pct:.2f}%"
            )

        limit = self._limits.max_daily_loss
        if limit > 0 and abs(self._daily_loss) > limit * DAILY_LOSS_WARNING_RATIO:
            return ReduceAdvice(
                reduce=True,
                percentage=75,
                reason=f"Daily loss ${abs(self._daily_loss):.2f} near limit ${limit}",
            )
        return ReduceAdvice(reduce=False)

    def position_health(
        self, position: Position, price: Decimal, now: float | None = None
    ) -> PositionHealthReport:
        """Classify a position by its move relative to the stop distance."""
        pnl_pct = position.price_move(price) * _HUNDRED
        stop_pct = self._limits.stop_loss_pct

        if pnl_pct <= -stop_pct * Decimal("0.8"):
            health = PositionHealth.CRITICAL
        elif pnl_pct <= -stop_pct * Decimal("0.5"):
            health = PositionHealth.WARNING
        elif pnl_pct > PARTIAL_PROFIT_PCT:
            health = PositionHealth.PROFITABLE
        else:
            health = PositionHealth.HEALTHY

        stop = position.stop_loss or self.stop_loss_price(position.entry_price, position.side)
        distance = abs(price - stop) / price * _HUNDRED if price > 0 else _ZERO
        current = time.time() if now is None else now
        return PositionHealthReport(
            health=health,
            pnl_pct=pnl_pct,
            time_open_seconds=max(0.0, current - position.opened_at),
            stop_loss_distance_pct=distance,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def recent_losses(self, n: int = 5) -> int:
        if n <= 0:
            return 0
        return sum(1 for t in list(self._trades)[-n:] if t.pnl < 0)

    def daily_limits(self) -> dict[str, Any]:
        limit = self._limits.max_daily_loss
        used = abs(self._daily_loss)
        return {
            "daily_loss": self._daily_loss,
            "max_daily_loss": limit,
            "remaining": max(_ZERO, limit - used),
            "utilization_pct": used / limit * _HUNDRED if limit > 0 else _HUNDRED,
            "daily_trades": self._daily_trades,
        }

    def metrics(self) -> dict[str, Any]:
        return {
            "limits": self._limits,
            "daily_loss": self._daily_loss,
            "daily_trades": self._daily_trades,
            "peak_balance": self._peak_balance,
            "current_balance": self._current_balance,
            "drawdown_pct": self.drawdown_pct(),
            "total_trades": len(self._trades),
            "recent_losses": self.recent_losses(),
            "win_rate": self._win_rate,
            "avg_win": self._avg_win,
            "avg_loss": self._avg_loss,
            "sharpe_ratio": self._sharpe_ratio,
        }
