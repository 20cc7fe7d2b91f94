# Pydantic models for API requests/responses
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConditionModel(BaseModel):
    indicator_type: str  # price | volume_ratio | rsi | ema | sma | atr | adx | macd
    operator: str        # greater_than | less_than | equals | crosses_above | crosses_below
    side: str            # buy (entry) | sell (exit)
    period: Optional[int] = Field(default=None, ge=1, le=500)
    fast: Optional[int] = Field(default=None, ge=1, le=500)
    slow: Optional[int] = Field(default=None, ge=1, le=500)
    signal: Optional[int] = Field(default=None, ge=1, le=500)
    value: Optional[float] = None
    adaptive: Optional[str] = None  # rsi_overbought | rsi_oversold | volume_multiplier


class StrategyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=60)
    user_id: str = "default"
    symbol: str = "BTCUSDT"
    timeframe: str = "1h"
    strategy_type: str = "custom"
    position_size_percent: float = Field(default=100.0, gt=0, le=100)
    stop_loss_percent: float = Field(default=2.0, gt=0, le=100)
    take_profit_percent: float = Field(default=4.0, gt=0, le=100)
    rsi_period: int = Field(default=14, ge=2, le=200)
    rsi_overbought: float = Field(default=70.0, ge=0, le=100)
    rsi_oversold: float = Field(default=30.0, ge=0, le=100)
    volume_multiplier: float = Field(default=1.2, gt=0)
    initial_balance: float = Field(default=1000.0, gt=0)
    regime_filter: bool = False
    conditions: List[ConditionModel] = Field(default_factory=list)


class StrategyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=60)
    symbol: Optional[str] = None
    timeframe: Optional[str] = None
    strategy_type: Optional[str] = None
    position_size_percent: Optional[float] = Field(default=None, gt=0, le=100)
    stop_loss_percent: Optional[float] = Field(default=None, gt=0, le=100)
    take_profit_percent: Optional[float] = Field(default=None, gt=0, le=100)
    rsi_period: Optional[int] = Field(default=None, ge=2, le=200)
    rsi_overbought: Optional[float] = Field(default=None, ge=0, le=100)
    rsi_oversold: Optional[float] = Field(default=None, ge=0, le=100)
    volume_multiplier: Optional[float] = Field(default=None, gt=0)
    initial_balance: Optional[float] = Field(default=None, gt=0)
    regime_filter: Optional[bool] = None
    conditions: Optional[List[ConditionModel]] = None


class StrategyClone(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=60)


class BacktestRequest(BaseModel):
    start: datetime
    end: datetime
    fee_percent: float = Field(default=0.0, ge=0, le=5)
    initial_balance: Optional[float] = Field(default=None, gt=0)


class UserSettingsUpdate(BaseModel):
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class OrderRequest(BaseModel):
    user_id: str = "default"
    symbol: str = "BTCUSDT"
    side: str = Field(pattern="^(BUY|SELL|buy|sell)$")
    quantity: float = Field(gt=0)
    price: Optional[float] = Field(default=None, gt=0)  # None places a MARKET order
    reference_price: Optional[float] = Field(default=None, gt=0)


def dump(model: BaseModel) -> Dict[str, Any]:
    """Model fields that were actually set, conditions as plain dicts."""
    return model.model_dump(exclude_unset=True, exclude_none=True)
