# Technical indicators (calculation only)
#
# Every function takes a chronologically ordered sequence and returns a series
# aligned to its end. Inputs shorter than the warm-up period return an empty
# (or shorter) series; nothing here raises on short data. Callers decide which
# neutral default to substitute.
from __future__ import annotations

import logging
from typing import Optional, Sequence

from .domain import Candle

logger = logging.getLogger(__name__)

RSI_LOSS_EPSILON = 0.0001
RSI_NEUTRAL = 50.0


def sma(values: Sequence[float], period: int) -> list[float]:
    """Simple moving average; one value per full window."""
    if period <= 0 or len(values) < period:
        return []
    out = []
    window_sum = sum(values[:period])
    out.append(window_sum / period)
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        out.append(window_sum / period)
    return out


def ema(values: Sequence[float], period: int) -> list[float]:
    """EMA seeded with the SMA of the first `period` values."""
    if period <= 0 or len(values) < period:
        return []
    k = 2 / (period + 1)
    out = [sum(values[:period]) / period]
    for i in range(period, len(values)):
        out.append(values[i] * k + out[-1] * (1 - k))
    return out


def true_ranges(candles: Sequence[Candle]) -> list[float]:
    """True range for every candle after the first."""
    out = []
    for i in range(1, len(candles)):
        cur = candles[i]
        prev_close = candles[i - 1].close
        out.append(max(
            cur.high - cur.low,
            abs(cur.high - prev_close),
            abs(cur.low - prev_close),
        ))
    return out


def atr(candles: Sequence[Candle], period: int = 14) -> list[float]:
    """Average True Range with Wilder smoothing, seeded by a simple average."""
    trs = true_ranges(candles)
    if period <= 0 or len(trs) < period:
        return []
    value = sum(trs[:period]) / period
    out = [value]
    for tr in trs[period:]:
        value = (value * (period - 1) + tr) / period
        out.append(value)
    return out


def rsi(closes: Sequence[float], period: int = 14) -> list[float]:
    """RSI with EMA-smoothed average gain/loss."""
    if period <= 0 or len(closes) < period + 1:
        return []
    gains = []
    losses = []
    for i in range(1, len(closes)):
        change = closes[i] - closes[i - 1]
        gains.append(change if change > 0 else 0.0)
        losses.append(-change if change < 0 else 0.0)

    avg_gains = ema(gains, period)
    avg_losses = ema(losses, period)

    out = []
    for avg_gain, avg_loss in zip(avg_gains, avg_losses):
        if avg_gain == 0 and avg_loss == 0:
            # flat window: no momentum either way
            out.append(RSI_NEUTRAL)
            continue
        rs = avg_gain / max(avg_loss, RSI_LOSS_EPSILON)
        out.append(100 - 100 / (1 + rs))
    return out


def adx(candles: Sequence[Candle], period: int = 14) -> list[float]:
    """Average Directional Index.

    +DM/-DM and true range are EMA-smoothed into DI+/DI-, combined into DX,
    and DX is EMA-smoothed again. Needs roughly 2*period candles before the
    first value appears.
    """
    if period <= 0 or len(candles) < 2:
        return []

    plus_dm = []
    minus_dm = []
    for i in range(1, len(candles)):
        high_diff = candles[i].high - candles[i - 1].high
        low_diff = candles[i - 1].low - candles[i].low
        plus_dm.append(high_diff if high_diff > low_diff and high_diff > 0 else 0.0)
        minus_dm.append(low_diff if low_diff > high_diff and low_diff > 0 else 0.0)
    trs = true_ranges(candles)

    smoothed_plus = ema(plus_dm, period)
    smoothed_minus = ema(minus_dm, period)
    smoothed_tr = ema(trs, period)

    dx_values = []
    for s_plus, s_minus, s_tr in zip(smoothed_plus, smoothed_minus, smoothed_tr):
        if s_tr <= 0:
            dx_values.append(0.0)
            continue
        di_plus = s_plus / s_tr * 100
        di_minus = s_minus / s_tr * 100
        di_sum = di_plus + di_minus
        dx_values.append(abs(di_plus - di_minus) / di_sum * 100 if di_sum > 0 else 0.0)

    return ema(dx_values, period)


def macd(
    closes: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[list[float], list[float], list[float]]:
    """MACD line, signal line and histogram (each aligned to the end of `closes`)."""
    fast_ema = ema(closes, fast)
    slow_ema = ema(closes, slow)
    if not fast_ema or not slow_ema:
        return [], [], []
    n = min(len(fast_ema), len(slow_ema))
    line = [f - s for f, s in zip(fast_ema[-n:], slow_ema[-n:])]
    signal_line = ema(line, signal)
    hist = [m - s for m, s in zip(line[-len(signal_line):], signal_line)] if signal_line else []
    return line, signal_line, hist


def volume_ratio(candles: Sequence[Candle], period: int = 20) -> list[float]:
    """Current volume divided by the average volume of the trailing window (inclusive)."""
    volumes = [c.volume for c in candles]
    averages = sma(volumes, period)
    out = []
    for offset, avg in enumerate(averages):
        current = volumes[period - 1 + offset]
        out.append(current / avg if avg > 0 else 0.0)
    return out


def last(series: Sequence[float], default: Optional[float] = None) -> Optional[float]:
    return series[-1] if series else default
