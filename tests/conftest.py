import os
import tempfile

# Keep test runs away from the real data/log directories; must happen before
# signal_engine.config is imported.
_TMP = tempfile.mkdtemp(prefix="signal-engine-tests-")
os.environ.setdefault("ENGINE_DB_PATH", os.path.join(_TMP, "engine.db"))
os.environ.setdefault("ENGINE_LOG_DIR", os.path.join(_TMP, "logs"))

import asyncio

import pytest

from signal_engine.clock import ManualClock
from signal_engine.database import StrategyStore
from signal_engine.domain import Candle, ExchangeCredentials, NotificationTarget

HOUR_MS = 3_600_000
T0_MS = 1_735_689_600_000  # 2025-01-01T00:00:00Z


def make_candles(closes, volume=100.0, spread=0.0, step_ms=HOUR_MS, start_ms=T0_MS):
    """Candles with open=close, high/low at +-spread around the close."""
    out = []
    for i, close in enumerate(closes):
        open_time = start_ms + i * step_ms
        out.append(Candle(
            open=float(close),
            high=float(close) + spread,
            low=float(close) - spread,
            close=float(close),
            volume=float(volume),
            open_time=open_time,
            close_time=open_time + step_ms - 1,
        ))
    return out


def trending_candles(n=100, start=100.0, step=1.0):
    closes = [start + i * step for i in range(n)]
    return make_candles(closes, spread=0.5)


class FakeNotifier:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    async def deliver(self, target, message):
        self.calls.append((target, message))
        return self.ok


class SlowNotifier(FakeNotifier):
    async def deliver(self, target, message):
        self.calls.append((target, message))
        await asyncio.sleep(5)
        return True


class FakeCandleSource:
    def __init__(self, candles=None, error=None):
        self.candles = list(candles or [])
        self.error = error
        self.calls = 0

    async def fetch_last_candles(self, symbol, timeframe, limit):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.candles[-limit:]

    async def fetch_candles_range(self, symbol, timeframe, start, end, limit=200000):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.candles)


class FakeExchange:
    def __init__(self, positions_by_key=None):
        self.positions_by_key = positions_by_key or {}
        self.calls = []
        self.orders = []

    async def get_open_positions(self, credentials):
        self.calls.append(credentials.api_key)
        return list(self.positions_by_key.get(credentials.api_key, []))

    async def place_order(self, credentials, symbol, side, quantity, price=None, reference_price=None):
        self.orders.append((credentials.api_key, symbol, side, quantity, price, reference_price))
        return {"order_id": len(self.orders), "status": "NEW"}


CONFIGURED_TARGET = NotificationTarget(bot_token="123:abc", chat_id="42")


async def configured_target(user_id):
    return CONFIGURED_TARGET


async def missing_target(user_id):
    return NotificationTarget(bot_token="", chat_id="")


async def credentials_for(user_id):
    return ExchangeCredentials(api_key=f"key-{user_id}", api_secret="secret", use_testnet=True)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path, clock):
    s = StrategyStore(tmp_path / "engine.db", clock=clock)
    asyncio.run(s.init())
    return s
