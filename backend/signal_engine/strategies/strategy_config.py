from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Optional

from .conditions import Condition, condition_from_dict, condition_to_dict

# Scalar columns persisted on the strategies table, in order.
PARAMETER_FIELDS = (
    "strategy_type",
    "symbol",
    "timeframe",
    "position_size_percent",
    "stop_loss_percent",
    "take_profit_percent",
    "rsi_period",
    "rsi_overbought",
    "rsi_oversold",
    "volume_multiplier",
    "initial_balance",
    "regime_filter",
)


@dataclass(frozen=True)
class StrategyConfig:
    name: str
    user_id: str = "default"
    symbol: str = "BTCUSDT"
    timeframe: str = "1h"
    strategy_type: str = "custom"
    position_size_percent: float = 100.0
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 4.0
    rsi_period: int = 14
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    volume_multiplier: float = 1.2
    initial_balance: float = 1000.0
    regime_filter: bool = False  # skip entries when the regime does not suit strategy_type
    conditions: tuple[Condition, ...] = field(default_factory=tuple)
    id: Optional[int] = None
    version: int = 1
    is_active: bool = False

    def with_updates(self, **changes) -> "StrategyConfig":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "conditions"}
        data["conditions"] = [condition_to_dict(c) for c in self.conditions]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StrategyConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "conditions" and v is not None}
        kwargs["conditions"] = tuple(
            c if isinstance(c, Condition) else condition_from_dict(c) for c in data.get("conditions") or []
        )
        return cls(**kwargs)
