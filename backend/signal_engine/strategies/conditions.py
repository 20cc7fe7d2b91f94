"""Entry/exit conditions as closed variants.

A condition pairs an indicator operand with an operator and a threshold.
Thresholds are either fixed numbers or references to an adaptive parameter
(`rsi_oversold`, `rsi_overbought`, `volume_multiplier`) resolved against the
adjusted parameters of the current candle.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from ..domain import AdjustedParameters, Candle
from ..indicators import adx, atr, ema, macd, rsi, sma, volume_ratio

EQUALS_TOLERANCE = 0.01

ADAPTIVE_PARAMETERS = ("rsi_overbought", "rsi_oversold", "volume_multiplier")


class Side(str, Enum):
    BUY = "buy"    # entry
    SELL = "sell"  # exit


class Operator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    CROSSES_ABOVE = "crosses_above"
    CROSSES_BELOW = "crosses_below"


# ── operands ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PriceOperand:
    pass


@dataclass(frozen=True)
class VolumeRatioOperand:
    period: int = 20


@dataclass(frozen=True)
class RsiOperand:
    period: int = 14


@dataclass(frozen=True)
class EmaOperand:
    period: int = 20


@dataclass(frozen=True)
class SmaOperand:
    period: int = 20


@dataclass(frozen=True)
class AtrOperand:
    period: int = 14


@dataclass(frozen=True)
class AdxOperand:
    period: int = 14


@dataclass(frozen=True)
class MacdOperand:
    fast: int = 12
    slow: int = 26
    signal: int = 9


Operand = Union[
    PriceOperand, VolumeRatioOperand, RsiOperand, EmaOperand,
    SmaOperand, AtrOperand, AdxOperand, MacdOperand,
]


# ── thresholds ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FixedThreshold:
    value: float


@dataclass(frozen=True)
class AdaptiveThreshold:
    parameter: str

    def __post_init__(self) -> None:
        if self.parameter not in ADAPTIVE_PARAMETERS:
            raise ValueError(f"Unknown adaptive parameter: {self.parameter}")


Threshold = Union[FixedThreshold, AdaptiveThreshold]


@dataclass(frozen=True)
class Condition:
    operand: Operand
    operator: Operator
    threshold: Threshold
    side: Side


# ── evaluation ───────────────────────────────────────────────────────────────

def operand_series(operand: Operand, candles: Sequence[Candle]) -> list[float]:
    if isinstance(operand, PriceOperand):
        return [c.close for c in candles]
    if isinstance(operand, VolumeRatioOperand):
        return volume_ratio(candles, operand.period)
    if isinstance(operand, RsiOperand):
        return rsi([c.close for c in candles], operand.period)
    if isinstance(operand, EmaOperand):
        return ema([c.close for c in candles], operand.period)
    if isinstance(operand, SmaOperand):
        return sma([c.close for c in candles], operand.period)
    if isinstance(operand, AtrOperand):
        return atr(candles, operand.period)
    if isinstance(operand, AdxOperand):
        return adx(candles, operand.period)
    if isinstance(operand, MacdOperand):
        line, _signal, _hist = macd([c.close for c in candles], operand.fast, operand.slow, operand.signal)
        return line
    raise TypeError(f"Unsupported operand: {operand!r}")


def resolve_threshold(threshold: Threshold, params: AdjustedParameters) -> float:
    if isinstance(threshold, FixedThreshold):
        return float(threshold.value)
    if isinstance(threshold, AdaptiveThreshold):
        return float(getattr(params, threshold.parameter))
    raise TypeError(f"Unsupported threshold: {threshold!r}")


def compare(operator: Operator, previous: Optional[float], current: float, target: float) -> bool:
    if operator == Operator.GREATER_THAN:
        return current > target
    if operator == Operator.LESS_THAN:
        return current < target
    if operator == Operator.EQUALS:
        return abs(current - target) < EQUALS_TOLERANCE
    if operator == Operator.CROSSES_ABOVE:
        return previous is not None and previous <= target and current > target
    if operator == Operator.CROSSES_BELOW:
        return previous is not None and previous >= target and current < target
    raise TypeError(f"Unsupported operator: {operator!r}")


def evaluate_condition(condition: Condition, candles: Sequence[Candle], params: AdjustedParameters) -> bool:
    series = operand_series(condition.operand, candles)
    if not series:
        return False
    previous = series[-2] if len(series) >= 2 else None
    target = resolve_threshold(condition.threshold, params)
    return compare(condition.operator, previous, series[-1], target)


def conditions_met(
    conditions: Sequence[Condition],
    side: Side,
    candles: Sequence[Candle],
    params: AdjustedParameters,
) -> bool:
    """True when the side has at least one condition and all of them hold."""
    selected = [c for c in conditions if c.side == side]
    if not selected:
        return False
    return all(evaluate_condition(c, candles, params) for c in selected)


# ── serialisation ────────────────────────────────────────────────────────────

_OPERAND_TYPES = {
    "price": PriceOperand,
    "volume_ratio": VolumeRatioOperand,
    "rsi": RsiOperand,
    "ema": EmaOperand,
    "sma": SmaOperand,
    "atr": AtrOperand,
    "adx": AdxOperand,
    "macd": MacdOperand,
}
_OPERAND_NAMES = {cls: name for name, cls in _OPERAND_TYPES.items()}


def condition_to_dict(condition: Condition) -> dict:
    operand = condition.operand
    data = {
        "indicator_type": _OPERAND_NAMES[type(operand)],
        "operator": condition.operator.value,
        "side": condition.side.value,
    }
    if isinstance(operand, MacdOperand):
        data.update({"fast": operand.fast, "slow": operand.slow, "signal": operand.signal})
    elif not isinstance(operand, PriceOperand):
        data["period"] = operand.period

    if isinstance(condition.threshold, AdaptiveThreshold):
        data["adaptive"] = condition.threshold.parameter
    else:
        data["value"] = condition.threshold.value
    return data


def condition_from_dict(data: dict) -> Condition:
    indicator = str(data.get("indicator_type") or "").strip().lower()
    operand_cls = _OPERAND_TYPES.get(indicator)
    if operand_cls is None:
        raise ValueError(f"Unknown indicator_type: {indicator!r}")

    if operand_cls is PriceOperand:
        operand = PriceOperand()
    elif operand_cls is MacdOperand:
        operand = MacdOperand(
            fast=int(data.get("fast") or 12),
            slow=int(data.get("slow") or 26),
            signal=int(data.get("signal") or 9),
        )
    else:
        period = data.get("period")
        operand = operand_cls(int(period)) if period else operand_cls()

    if data.get("adaptive"):
        threshold = AdaptiveThreshold(str(data["adaptive"]))
    elif data.get("value") is not None:
        threshold = FixedThreshold(float(data["value"]))
    else:
        raise ValueError("Condition needs either 'value' or 'adaptive'")

    return Condition(
        operand=operand,
        operator=Operator(str(data.get("operator") or "")),
        threshold=threshold,
        side=Side(str(data.get("side") or data.get("order_type") or "")),
    )
