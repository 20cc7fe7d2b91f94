"""Adaptive parameter adjustment.

Recomputes a strategy's effective thresholds for the current candle from
volatility, trend strength, volume and the detected regime. Pure function of
(candle window, base config, regime). Every output is clamped to its range,
including after the regime overlay.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .domain import AdjustedParameters, Candle, MarketRegime, Regime
from .indicators import atr, ema, rsi

logger = logging.getLogger(__name__)

MIN_CANDLES = 20

RSI_OVERBOUGHT_RANGE = (60.0, 90.0)
RSI_OVERSOLD_RANGE = (10.0, 40.0)
VOLUME_MULTIPLIER_RANGE = (0.5, 3.0)
STOP_LOSS_RANGE = (0.5, 10.0)
TAKE_PROFIT_RANGE = (1.0, 20.0)


@dataclass(frozen=True)
class AdaptiveConfig:
    volatility_multiplier: float = 1.0
    trend_strength_multiplier: float = 1.0
    volume_multiplier: float = 1.0


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    lo, hi = bounds
    if value != value:  # NaN
        return lo
    return max(lo, min(hi, value))


def _trend_strength(closes: Sequence[float], price: float) -> Optional[float]:
    """|EMA20 - EMA50| as a percentage of price; None before EMA50 exists."""
    ema20 = ema(closes, 20)
    ema50 = ema(closes, 50)
    if not ema20 or not ema50 or price <= 0:
        return None
    return abs(ema20[-1] - ema50[-1]) / price * 100


def _atr_percent(candles: Sequence[Candle], price: float) -> Optional[float]:
    atr_series = atr(candles, 14)
    if not atr_series or price <= 0:
        return None
    return atr_series[-1] / price * 100


def adaptive_rsi_levels(
    candles: Sequence[Candle],
    base_overbought: float,
    base_oversold: float,
) -> tuple[float, float]:
    overbought = base_overbought
    oversold = base_oversold

    if len(candles) >= MIN_CANDLES:
        rsi_series = rsi([c.close for c in candles], 14)
        if rsi_series:
            window = rsi_series[-20:]
            dispersion = sum(abs(v - 50) for v in window) / len(window)
            current = rsi_series[-1]

            if dispersion > 15:
                overbought = min(85.0, base_overbought + 5)
                oversold = max(15.0, base_oversold - 5)
            elif dispersion < 8:
                overbought = max(65.0, base_overbought - 5)
                oversold = min(35.0, base_oversold + 5)

            if current > 70:
                overbought *= 0.95
            elif current < 30:
                oversold *= 1.05

    return _clamp(overbought, RSI_OVERBOUGHT_RANGE), _clamp(oversold, RSI_OVERSOLD_RANGE)


def adaptive_volume_multiplier(
    candles: Sequence[Candle],
    base_multiplier: float,
    adaptive: AdaptiveConfig = AdaptiveConfig(),
) -> float:
    multiplier = base_multiplier
    if len(candles) >= MIN_CANDLES:
        volumes = [c.volume for c in candles[-20:]]
        avg_volume = sum(volumes) / len(volumes)
        ratio = volumes[-1] / avg_volume if avg_volume > 0 else 1.0
        if ratio > 2:
            multiplier = base_multiplier * 0.8
        elif ratio < 0.5:
            multiplier = base_multiplier * 1.5
        multiplier *= adaptive.volume_multiplier
    return _clamp(multiplier, VOLUME_MULTIPLIER_RANGE)


def adaptive_stop_loss(
    candles: Sequence[Candle],
    base_stop_loss: float,
    adaptive: AdaptiveConfig = AdaptiveConfig(),
) -> float:
    stop_loss = base_stop_loss
    if len(candles) >= MIN_CANDLES:
        price = candles[-1].close
        atr_pct = _atr_percent(candles, price)
        if atr_pct is not None and atr_pct > stop_loss:
            stop_loss = atr_pct

        strength = _trend_strength([c.close for c in candles], price)
        if strength is not None:
            if strength > 2:
                stop_loss *= 1.2
            elif strength < 0.5:
                stop_loss *= 0.8
        stop_loss *= adaptive.volatility_multiplier
    return _clamp(stop_loss, STOP_LOSS_RANGE)


def adaptive_take_profit(
    candles: Sequence[Candle],
    base_take_profit: float,
    adaptive: AdaptiveConfig = AdaptiveConfig(),
) -> float:
    take_profit = base_take_profit
    if len(candles) >= MIN_CANDLES:
        price = candles[-1].close
        atr_pct = _atr_percent(candles, price)
        if atr_pct is not None and atr_pct * 2 > take_profit:
            take_profit = atr_pct * 2

        strength = _trend_strength([c.close for c in candles], price)
        if strength is not None:
            if strength > 2:
                take_profit *= 1.3
            elif strength < 0.5:
                take_profit *= 0.8
        take_profit *= adaptive.trend_strength_multiplier
    return _clamp(take_profit, TAKE_PROFIT_RANGE)


def get_adaptive_parameters(
    candles: Sequence[Candle],
    base,
    regime: MarketRegime,
    adaptive: AdaptiveConfig = AdaptiveConfig(),
) -> AdjustedParameters:
    """Adjusted thresholds for the latest candle.

    `base` is any object exposing rsi_overbought, rsi_oversold,
    volume_multiplier, stop_loss_percent and take_profit_percent.
    """
    overbought, oversold = adaptive_rsi_levels(
        candles,
        float(base.rsi_overbought or 70),
        float(base.rsi_oversold or 30),
    )
    volume_multiplier = adaptive_volume_multiplier(candles, float(base.volume_multiplier or 1.2), adaptive)
    stop_loss = adaptive_stop_loss(candles, float(base.stop_loss_percent or 2.0), adaptive)
    take_profit = adaptive_take_profit(candles, float(base.take_profit_percent or 4.0), adaptive)

    if regime.regime == Regime.TRENDING:
        volume_multiplier *= 0.9
        take_profit *= 1.2
    elif regime.regime == Regime.RANGING:
        stop_loss *= 0.8
        take_profit *= 0.8
    elif regime.regime == Regime.VOLATILE:
        stop_loss *= 1.5
        volume_multiplier *= 1.3

    return AdjustedParameters(
        rsi_overbought=overbought,
        rsi_oversold=oversold,
        volume_multiplier=_clamp(volume_multiplier, VOLUME_MULTIPLIER_RANGE),
        stop_loss_percent=_clamp(stop_loss, STOP_LOSS_RANGE),
        take_profit_percent=_clamp(take_profit, TAKE_PROFIT_RANGE),
    )
