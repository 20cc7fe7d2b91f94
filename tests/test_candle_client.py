import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from signal_engine.candle_client import CandleClient, timeframe_seconds, to_candles
from signal_engine.errors import ExternalServiceError


def _row(open_time, close):
    return {"open_time": open_time, "close_time": open_time + 59_999, "open": close, "high": close,
            "low": close, "close": close, "volume": 1}


def test_to_candles_drops_bad_duplicate_and_out_of_order_rows():
    rows = [_row(0, 1), _row(60_000, 2), _row(60_000, 3), _row(30_000, 4), {"open": 1}, _row(120_000, 5)]
    candles = to_candles(rows)
    assert [c.close for c in candles] == [1, 2, 5]


def test_zero_values_are_kept_and_missing_ones_default():
    zero_low = {**_row(0, 5), "high": 6, "low": 0, "volume": 0}
    sparse = {"open_time": 60_000, "close": 7}
    first, second = to_candles([zero_low, sparse])
    assert (first.open, first.high, first.low, first.volume) == (5, 6, 0, 0)
    assert (second.open, second.high, second.low, second.volume) == (7, 7, 7, 0)
    assert second.close_time == 60_000


def test_timeframe_seconds():
    assert timeframe_seconds("1h") == 3600
    assert timeframe_seconds(" 15M ") == 900
    with pytest.raises(ValueError):
        timeframe_seconds("7m")


def test_fetch_last_candles_queries_service():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"candles": [_row(0, 10), _row(60_000, 11)]})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = CandleClient(client=http, base_url="http://candles.test")
    candles = asyncio.run(client.fetch_last_candles("btcusdt", "1m", 2))

    assert [c.close for c in candles] == [10, 11]
    assert seen["path"] == "/candles/last"
    assert seen["params"] == {"symbol": "BTCUSDT", "timeframe_seconds": "60", "limit": "2"}


def test_fetch_range_sends_utc_bounds_and_wraps_errors():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(503)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = CandleClient(client=http, base_url="http://candles.test")
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    end = datetime(2025, 1, 2, tzinfo=timezone.utc)
    with pytest.raises(ExternalServiceError):
        asyncio.run(client.fetch_candles_range("BTCUSDT", "1h", start, end))
    assert seen["params"]["start"] == "2025-01-01T00:00:00Z"
    assert seen["params"]["end"] == "2025-01-02T00:00:00Z"


def test_unconfigured_service_returns_nothing():
    client = CandleClient(base_url="")
    assert asyncio.run(client.fetch_last_candles("BTCUSDT", "1h", 10)) == []
