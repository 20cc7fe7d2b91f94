import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from signal_engine.domain import ExchangeCredentials
from signal_engine.errors import ExternalServiceError, OrderValidationError
from signal_engine.exchange_client import BinanceFuturesClient, SymbolConstraints, round_to_step, validate_order

CREDS = ExchangeCredentials(api_key="k", api_secret="s3cret", use_testnet=True)


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BinanceFuturesClient(client=http, base_url="https://fapi.test")


def test_round_to_step_floors():
    assert round_to_step(0.123456, 0.001) == 0.123
    assert round_to_step(0.3, 0.1) == 0.3
    assert round_to_step(30000.129, 0.01) == 30000.12
    assert round_to_step(5.0, 0) == 5.0


def test_validate_order_rounds_and_rejects():
    assert validate_order(0.0012345, 30000.123) == (0.00123, 30000.12)
    with pytest.raises(OrderValidationError, match="quantity"):
        validate_order(0.0005, 30000)
    with pytest.raises(OrderValidationError, match="notional"):
        validate_order(0.001, 5000)
    with pytest.raises(OrderValidationError):
        validate_order(1, 0)
    loose = SymbolConstraints(step_size=0.1, tick_size=1, min_qty=0.1, min_notional=1)
    assert validate_order(0.25, 10.7, loose) == (0.2, 10)


def test_open_positions_are_signed_and_filtered():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("X-MBX-APIKEY")
        seen["query"] = request.url.query.decode()
        return httpx.Response(200, json=[
            {"symbol": "BTCUSDT", "positionAmt": "0.010", "entryPrice": "30000", "markPrice": "30100",
             "unRealizedProfit": "1.0"},
            {"symbol": "ETHUSDT", "positionAmt": "0.000", "entryPrice": "0", "markPrice": "2000",
             "unRealizedProfit": "0"},
        ])

    positions = asyncio.run(_client(handler).get_open_positions(CREDS))

    assert [p.symbol for p in positions] == ["BTCUSDT"]
    assert positions[0].size == 0.01
    assert seen["path"] == "/fapi/v2/positionRisk"
    assert seen["key"] == "k"
    query, signature = seen["query"].rsplit("&signature=", 1)
    assert signature == hmac.new(b"s3cret", query.encode(), hashlib.sha256).hexdigest()


def test_http_error_becomes_external_service_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(ExternalServiceError, match="HTTP 500"):
        asyncio.run(_client(handler).get_open_positions(CREDS))


def test_non_json_body_becomes_external_service_error():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(ExternalServiceError, match="invalid JSON"):
        asyncio.run(_client(handler).get_open_positions(CREDS))


def test_place_market_order_validates_at_reference_price():
    sent = []

    def handler(request):
        sent.append(dict(httpx.QueryParams(request.url.query.decode())))
        return httpx.Response(200, content=json.dumps({"orderId": 7, "status": "NEW"}))

    client = _client(handler)
    result = asyncio.run(client.place_order(CREDS, "btcusdt", "buy", 0.0012345, reference_price=30000))
    assert result == {"order_id": 7, "status": "NEW"}
    assert sent[0]["type"] == "MARKET"
    assert sent[0]["quantity"] == "0.00123"
    assert sent[0]["symbol"] == "BTCUSDT"

    with pytest.raises(OrderValidationError):
        asyncio.run(client.place_order(CREDS, "BTCUSDT", "BUY", 0.0001, reference_price=30000))
    with pytest.raises(OrderValidationError):
        asyncio.run(client.place_order(CREDS, "BTCUSDT", "BUY", 0.01))
    assert len(sent) == 1
