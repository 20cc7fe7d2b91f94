from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..adaptive_parameters import get_adaptive_parameters
from ..domain import AdjustedParameters, Candle, MarketRegime, SignalType
from ..market_regime import detect_market_regime, is_strategy_suitable_for_regime, regime_position_adjustment
from .conditions import Side, conditions_met
from .strategy_config import StrategyConfig

logger = logging.getLogger(__name__)

ENTER = "enter"
EXIT = "exit"
HOLD = "hold"


@dataclass(frozen=True)
class EvaluationDecision:
    action: str  # 'enter' | 'exit' | 'hold'
    price: float
    reason: str
    regime: Optional[MarketRegime] = None
    params: Optional[AdjustedParameters] = None
    candle_close_time: Optional[int] = None
    exit_reason: str = ""  # STOP_LOSS | TAKE_PROFIT | SELL_SIGNAL
    # Entries only: position_size_percent scaled for the regime. The backtest
    # sizes from the strategy setting and ignores this.
    size_percent: Optional[float] = None

    @property
    def signal_type(self) -> Optional[SignalType]:
        if self.action == ENTER:
            return SignalType.BUY
        if self.action == EXIT:
            return SignalType.SELL
        return None


def check_stop_loss_take_profit(
    entry_price: float,
    candle: Candle,
    params: AdjustedParameters,
) -> tuple[Optional[float], str]:
    """Intrabar SL/TP check against the candle range.

    When both levels fall inside the same candle the stop-loss wins.
    """
    if entry_price <= 0:
        return None, ""
    stop_price = entry_price * (1 - params.stop_loss_percent / 100)
    target_price = entry_price * (1 + params.take_profit_percent / 100)

    if candle.low <= stop_price:
        return stop_price, "STOP_LOSS"
    if candle.high >= target_price:
        return target_price, "TAKE_PROFIT"
    return None, ""


def evaluate_strategy(
    strategy: StrategyConfig,
    candles: Sequence[Candle],
    *,
    position_open: bool,
    entry_price: Optional[float] = None,
) -> EvaluationDecision:
    """Decide enter/exit/hold for the latest closed candle.

    Shared by live monitoring and the backtest simulator so both follow the
    same Flat -> Open -> Flat rules.
    """
    if not candles:
        return EvaluationDecision(HOLD, 0.0, "no_data")

    regime = detect_market_regime(candles)
    params = get_adaptive_parameters(candles, strategy, regime)
    last = candles[-1]

    def _decision(
        action: str, price: float, reason: str, exit_reason: str = "", size_percent: Optional[float] = None
    ) -> EvaluationDecision:
        return EvaluationDecision(
            action=action,
            price=float(price),
            reason=reason,
            regime=regime,
            params=params,
            candle_close_time=last.close_time,
            exit_reason=exit_reason,
            size_percent=size_percent,
        )

    if position_open:
        exit_price, level = check_stop_loss_take_profit(float(entry_price or 0.0), last, params)
        if exit_price is not None:
            pct = params.stop_loss_percent if level == "STOP_LOSS" else params.take_profit_percent
            return _decision(EXIT, exit_price, f"{level.replace('_', ' ').title()} hit ({pct:.2f}%)", level)
        if conditions_met(strategy.conditions, Side.SELL, candles, params):
            return _decision(EXIT, last.close, f"Exit conditions met | regime={regime.regime.value}", "SELL_SIGNAL")
        return _decision(HOLD, last.close, "in_position")

    if strategy.regime_filter and not is_strategy_suitable_for_regime(strategy.strategy_type, regime):
        return _decision(HOLD, last.close, f"regime_unsuitable:{regime.regime.value}")

    if conditions_met(strategy.conditions, Side.BUY, candles, params):
        size = float(strategy.position_size_percent) * regime_position_adjustment(regime)
        return _decision(
            ENTER,
            last.close,
            f"Entry conditions met | regime={regime.regime.value} ({regime.direction.value}, "
            f"confidence {regime.confidence:.0f}) | size {size:.1f}%",
            size_percent=size,
        )
    return _decision(HOLD, last.close, "no_entry")
