"""Market regime classification (trending / ranging / volatile).

Derived on every evaluation from the candle window; never cached across ticks.
"""
from __future__ import annotations

import logging
from typing import Sequence

from .domain import Candle, Direction, MarketRegime, Regime
from .indicators import adx, atr, ema

logger = logging.getLogger(__name__)

MIN_CANDLES = 50
ADX_TREND_THRESHOLD = 25.0
VOLATILITY_RATIO_THRESHOLD = 1.5

# Low-confidence placeholder when the window is too short to classify.
DEFAULT_REGIME = MarketRegime(
    regime=Regime.RANGING,
    strength=50.0,
    direction=Direction.SIDEWAYS,
    confidence=30.0,
)

_SUITABLE_REGIMES: dict[str, tuple[Regime, ...]] = {
    "sma_20_200_rsi": (Regime.TRENDING,),
    "mtf_momentum": (Regime.TRENDING, Regime.VOLATILE),
    "ath_guard": (Regime.TRENDING, Regime.VOLATILE),
    "4h_reentry_br": (Regime.TRENDING, Regime.RANGING),
    "mstg": (Regime.TRENDING, Regime.RANGING),
}

_POSITION_ADJUSTMENT = {
    Regime.TRENDING: 1.0,
    Regime.RANGING: 0.7,
    Regime.VOLATILE: 0.5,
}


def classify_regime(
    adx_value: float,
    ema_fast: float,
    ema_slow: float,
    volatility_ratio: float,
) -> MarketRegime:
    """Classify from already computed indicator values.

    Trend strength is checked before volatility: an elevated ADX wins even
    when the ATR ratio is also elevated.
    """
    if adx_value > ADX_TREND_THRESHOLD:
        strength = min(adx_value, 100.0)
        return MarketRegime(
            regime=Regime.TRENDING,
            strength=strength,
            direction=Direction.UP if ema_fast > ema_slow else Direction.DOWN,
            confidence=strength,
        )
    if volatility_ratio > VOLATILITY_RATIO_THRESHOLD:
        return MarketRegime(
            regime=Regime.VOLATILE,
            strength=min(volatility_ratio * 50, 100.0),
            direction=Direction.SIDEWAYS,
            confidence=min(volatility_ratio * 30, 80.0),
        )
    return MarketRegime(
        regime=Regime.RANGING,
        strength=min(adx_value, 100.0),
        direction=Direction.SIDEWAYS,
        confidence=min(100.0 - adx_value, 90.0),
    )


def detect_market_regime(candles: Sequence[Candle]) -> MarketRegime:
    if len(candles) < MIN_CANDLES:
        return DEFAULT_REGIME

    closes = [c.close for c in candles]
    adx_series = adx(candles, 14)
    ema20 = ema(closes, 20)
    ema50 = ema(closes, 50)
    atr_series = atr(candles, 14)

    if not adx_series or not ema20 or not ema50 or not atr_series:
        logger.debug(f"[REGIME] Indicator warm-up incomplete for {len(candles)} candles")
        return DEFAULT_REGIME

    recent_atr = atr_series[-20:]
    avg_atr = sum(recent_atr) / len(recent_atr)
    volatility_ratio = atr_series[-1] / avg_atr if avg_atr > 0 else 1.0

    regime = classify_regime(adx_series[-1], ema20[-1], ema50[-1], volatility_ratio)
    logger.debug(
        f"[REGIME] {regime.regime.value} | ADX={adx_series[-1]:.2f} "
        f"EMA20={ema20[-1]:.4f} EMA50={ema50[-1]:.4f} VolRatio={volatility_ratio:.2f}"
    )
    return regime


def is_strategy_suitable_for_regime(strategy_type: str, regime: MarketRegime) -> bool:
    suitable = _SUITABLE_REGIMES.get(str(strategy_type or ""), (Regime.TRENDING,))
    return regime.regime in suitable


def regime_position_adjustment(regime: MarketRegime) -> float:
    return _POSITION_ADJUSTMENT.get(regime.regime, 0.8)
