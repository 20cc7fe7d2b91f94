"""Shared domain entities: candles, regime, positions, trades and signals."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Regime(str, Enum):
    TRENDING = "trending"
    RANGING = "ranging"
    VOLATILE = "volatile"


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"
    SIDEWAYS = "sideways"


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float
    volume: float
    open_time: int   # epoch ms
    close_time: int  # epoch ms

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Candle":
        close = float(row["close"])
        if row.get("open_time") is not None:
            open_time = int(row["open_time"])
        else:
            # candle service rows carry ts_epoch in seconds
            open_time = int(float(row.get("ts_epoch") or 0) * 1000)
        close_time = int(row["close_time"]) if row.get("close_time") is not None else open_time

        def _price(key: str) -> float:
            return float(row[key]) if row.get(key) is not None else close

        return cls(
            open=_price("open"),
            high=_price("high"),
            low=_price("low"),
            close=close,
            volume=float(row["volume"]) if row.get("volume") is not None else 0.0,
            open_time=open_time,
            close_time=close_time,
        )


@dataclass(frozen=True)
class MarketRegime:
    regime: Regime
    strength: float    # 0..100
    direction: Direction
    confidence: float  # 0..100

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "strength": self.strength,
            "direction": self.direction.value,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class AdjustedParameters:
    rsi_overbought: float
    rsi_oversold: float
    volume_multiplier: float
    stop_loss_percent: float
    take_profit_percent: float

    def to_dict(self) -> dict:
        return {
            "rsi_overbought": self.rsi_overbought,
            "rsi_oversold": self.rsi_oversold,
            "volume_multiplier": self.volume_multiplier,
            "stop_loss_percent": self.stop_loss_percent,
            "take_profit_percent": self.take_profit_percent,
        }


@dataclass(frozen=True)
class Trade:
    type: str  # 'buy'
    entry_price: float
    entry_time: int
    quantity: float
    exit_price: Optional[float] = None
    exit_time: Optional[int] = None
    profit: Optional[float] = None
    exit_reason: str = ""

    @property
    def is_closed(self) -> bool:
        return self.exit_price is not None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time,
            "quantity": self.quantity,
            "exit_price": self.exit_price,
            "exit_time": self.exit_time,
            "profit": self.profit,
            "exit_reason": self.exit_reason,
        }


@dataclass(frozen=True)
class LiveState:
    """Locally believed position state for one strategy."""
    strategy_id: int
    user_id: str
    symbol: str
    position_open: bool = False
    entry_price: Optional[float] = None
    entry_time: Optional[datetime] = None
    side: Optional[str] = None
    last_price: Optional[float] = None
    # close_time (ms) of the candle the position was opened on
    entry_candle_close_time: Optional[int] = None
    # Joined from the strategy row when listing open states
    strategy_name: str = ""
    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None


@dataclass(frozen=True)
class Signal:
    id: Optional[int]
    strategy_id: int
    user_id: str
    symbol: str
    signal_type: SignalType
    price: float
    reason: str
    status: SignalStatus
    delivery_attempts: int
    last_attempt_at: Optional[datetime]
    created_at: datetime
    dedup_key: str = ""
    candle_close_time: Optional[int] = None
    error_message: str = ""
    strategy_name: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "signal_type": self.signal_type.value,
            "price": self.price,
            "reason": self.reason,
            "status": self.status.value,
            "delivery_attempts": self.delivery_attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "created_at": self.created_at.isoformat(),
            "dedup_key": self.dedup_key,
            "candle_close_time": self.candle_close_time,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class ExchangePosition:
    symbol: str
    size: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float


@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str
    use_testnet: bool = True


@dataclass(frozen=True)
class NotificationTarget:
    bot_token: str
    chat_id: str

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token) and bool(self.chat_id)
