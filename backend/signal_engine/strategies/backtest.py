"""Backtest trade simulator.

Walks the candle history once, asking `evaluate_strategy` for a decision on
each closed candle over a trailing window of the same size live monitoring
uses. Tracks cash balance, equity, peak and running max drawdown. A position
still open when the data runs out is closed at the last close so the trade
log always balances.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from ..config import config
from ..domain import Candle, Trade
from ..errors import BacktestError
from .runner import ENTER, EXIT, evaluate_strategy
from .strategy_config import StrategyConfig

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "no market data found for the specified period"


@dataclass(frozen=True)
class BacktestResult:
    initial_balance: float
    final_balance: float
    total_return: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    max_drawdown: float
    profit_factor: float
    avg_win: float
    avg_loss: float
    trades: tuple[Trade, ...]
    balance_history: tuple[tuple[int, float], ...]

    def to_dict(self, include_history: bool = True) -> dict:
        data = {
            "initial_balance": self.initial_balance,
            "final_balance": self.final_balance,
            "total_return": self.total_return,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "max_drawdown": self.max_drawdown,
            "profit_factor": self.profit_factor,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "trades": [t.to_dict() for t in self.trades],
        }
        if include_history:
            data["balance_history"] = [{"time": t, "balance": b} for t, b in self.balance_history]
        return data


class TradeSimulator:
    """Single-position (no pyramiding) long simulator."""

    def __init__(
        self,
        strategy: StrategyConfig,
        *,
        initial_balance: Optional[float] = None,
        fee_percent: float = 0.0,
        window: Optional[int] = None,
    ) -> None:
        self.strategy = strategy
        self.initial_balance = float(initial_balance if initial_balance is not None else strategy.initial_balance)
        self.fee_rate = max(0.0, float(fee_percent)) / 100
        self.window = int(window or config.get("candle_window", 200))

        self.balance = self.initial_balance
        self.peak_equity = self.initial_balance
        self.max_drawdown = 0.0
        self.position: Optional[Trade] = None
        self.trades: list[Trade] = []
        self.history: list[tuple[int, float]] = []

    # ── position handling ────────────────────────────────────────────────────

    def _open(self, price: float, time: int) -> None:
        size_pct = min(max(float(self.strategy.position_size_percent), 0.0), 100.0)
        # value plus entry fee must fit in the allotted cash
        position_value = self.balance * size_pct / 100 / (1 + self.fee_rate)
        if price <= 0 or position_value <= 0:
            return
        quantity = position_value / price
        fee = position_value * self.fee_rate
        self.balance -= position_value + fee
        self.position = Trade(type="buy", entry_price=price, entry_time=time, quantity=quantity)
        logger.debug(f"[BACKTEST] BUY {quantity:.6f} @ {price:.4f} | balance={self.balance:.2f}")

    def _close(self, price: float, time: int, reason: str) -> None:
        pos = self.position
        if pos is None:
            return
        proceeds = pos.quantity * price
        entry_fee = pos.quantity * pos.entry_price * self.fee_rate
        exit_fee = proceeds * self.fee_rate
        profit = proceeds - pos.quantity * pos.entry_price - entry_fee - exit_fee
        self.balance += proceeds - exit_fee
        self.trades.append(replace(pos, exit_price=price, exit_time=time, profit=profit, exit_reason=reason))
        self.position = None
        logger.debug(f"[BACKTEST] SELL @ {price:.4f} ({reason}) | P&L={profit:.2f} balance={self.balance:.2f}")

    def _track_equity(self, candle: Candle) -> None:
        equity = self.balance
        if self.position is not None:
            equity += self.position.quantity * candle.close
        if equity > self.peak_equity:
            self.peak_equity = equity
        if self.peak_equity > 0:
            drawdown = (self.peak_equity - equity) / self.peak_equity * 100
            self.max_drawdown = max(self.max_drawdown, drawdown)
        self.history.append((candle.close_time, equity))

    # ── main loop ────────────────────────────────────────────────────────────

    def run(self, candles: Sequence[Candle]) -> BacktestResult:
        if not candles:
            raise BacktestError(NO_DATA_MESSAGE)

        logger.info(
            f"[BACKTEST] Starting | strategy={self.strategy.name} candles={len(candles)} "
            f"balance={self.initial_balance:.2f} size={self.strategy.position_size_percent}%"
        )

        for i, candle in enumerate(candles):
            window = candles[max(0, i - self.window + 1): i + 1]
            decision = evaluate_strategy(
                self.strategy,
                window,
                position_open=self.position is not None,
                entry_price=self.position.entry_price if self.position else None,
            )
            if decision.action == ENTER and self.position is None:
                self._open(decision.price, candle.close_time)
            elif decision.action == EXIT and self.position is not None:
                self._close(decision.price, candle.close_time, decision.exit_reason or "SELL_SIGNAL")
            self._track_equity(candle)

        if self.position is not None:
            last = candles[-1]
            self._close(last.close, last.close_time, "END_OF_DATA")
            self._track_equity(last)

        return self._results()

    def _results(self) -> BacktestResult:
        trades = tuple(self.trades)
        wins = [t.profit for t in trades if (t.profit or 0.0) > 0]
        losses = [t.profit for t in trades if (t.profit or 0.0) <= 0]
        total = len(trades)
        gross_win = sum(wins)
        gross_loss = abs(sum(losses))

        result = BacktestResult(
            initial_balance=self.initial_balance,
            final_balance=self.balance,
            total_return=(self.balance - self.initial_balance) / self.initial_balance * 100 if self.initial_balance else 0.0,
            total_trades=total,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / total * 100 if total else 0.0,
            max_drawdown=self.max_drawdown,
            profit_factor=gross_win / gross_loss if gross_loss > 0 else gross_win,
            avg_win=gross_win / len(wins) if wins else 0.0,
            avg_loss=sum(losses) / len(losses) if losses else 0.0,
            trades=trades,
            balance_history=tuple(self.history),
        )
        logger.info(
            f"[BACKTEST] Complete | trades={result.total_trades} win_rate={result.win_rate:.1f}% "
            f"return={result.total_return:.2f}% max_dd={result.max_drawdown:.2f}%"
        )
        return result


def run_backtest(strategy: StrategyConfig, candles: Sequence[Candle], **kwargs) -> BacktestResult:
    return TradeSimulator(strategy, **kwargs).run(candles)
