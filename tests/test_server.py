import pytest
from fastapi.testclient import TestClient

from signal_engine import engine_service
from signal_engine.clock import ManualClock
from signal_engine.config import config
from signal_engine.database import StrategyStore
from signal_engine.engine_service import Engine
from signal_engine.server import app

from conftest import FakeCandleSource, FakeExchange, FakeNotifier, make_candles

STRATEGY = {
    "name": "cross",
    "user_id": "alice",
    "take_profit_percent": 20,
    "conditions": [
        {"indicator_type": "price", "operator": "crosses_above", "side": "buy", "value": 99.5},
        {"indicator_type": "price", "operator": "greater_than", "side": "sell", "value": 109.5},
    ],
}

RANGE = {"start": "2025-01-01T00:00:00Z", "end": "2025-01-02T00:00:00Z"}


@pytest.fixture
def source():
    return FakeCandleSource()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def client(tmp_path, source, exchange):
    clock = ManualClock()
    engine_service.set_engine(Engine(
        store=StrategyStore(tmp_path / "api.db", clock=clock),
        candle_source=source,
        exchange=exchange,
        notifier=FakeNotifier(),
        clock=clock,
    ))
    with TestClient(app) as c:
        yield c
    engine_service.set_engine(None)


def _create(client):
    resp = client.post("/api/strategies", json=STRATEGY)
    assert resp.status_code == 200
    return resp.json()["strategy"]


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["monitor_in_flight"] is False


def test_strategy_crud(client):
    created = _create(client)
    assert created["version"] == 1
    assert len(created["conditions"]) == 2

    resp = client.patch(f"/api/strategies/{created['id']}", json={"stop_loss_percent": 3})
    assert resp.json()["strategy"]["version"] == 2

    clone = client.post(f"/api/strategies/{created['id']}/clone").json()["strategy"]
    assert clone["name"] == "cross (copy)"
    assert clone["is_active"] is False

    activated = client.post(f"/api/strategies/{created['id']}/activate").json()["strategy"]
    assert activated["is_active"] is True

    assert len(client.get("/api/strategies", params={"user_id": "alice"}).json()) == 2
    assert client.delete(f"/api/strategies/{clone['id']}").status_code == 200
    assert client.get(f"/api/strategies/{clone['id']}").status_code == 404


def test_unknown_strategy_is_404(client):
    resp = client.get("/api/strategies/424242")
    assert resp.status_code == 404
    assert resp.json()["status"] == "error"


def test_invalid_payloads_are_400(client):
    assert client.post("/api/strategies", json={"name": ""}).status_code == 400
    bad_condition = {**STRATEGY, "conditions": [{"indicator_type": "bollinger", "operator": "greater_than",
                                                 "side": "buy", "value": 1}]}
    assert client.post("/api/strategies", json=bad_condition).status_code == 400
    assert client.get("/api/signals", params={"status": "lost"}).status_code == 400


def test_backtest_without_data_is_explicit(client):
    strategy = _create(client)
    resp = client.post(f"/api/strategies/{strategy['id']}/backtest", json=RANGE)
    assert resp.status_code == 422
    assert resp.json()["detail"] == "no market data found for the specified period"


def test_backtest_runs_and_reports(client, source):
    source.candles = make_candles([99, 100, 105, 110, 111])
    strategy = _create(client)
    resp = client.post(f"/api/strategies/{strategy['id']}/backtest", json=RANGE)
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["total_trades"] == 1
    assert result["final_balance"] == pytest.approx(1100)
    assert result["candles"] == 5
    assert result["id"] >= 1


def test_backtest_rejects_inverted_range(client):
    strategy = _create(client)
    resp = client.post(f"/api/strategies/{strategy['id']}/backtest", json={"start": RANGE["end"], "end": RANGE["start"]})
    assert resp.status_code == 422


def test_monitor_trigger_and_signal_listing(client, source):
    source.candles = make_candles([99, 100])
    client.put("/api/users/alice/settings", json={"telegram_bot_token": "123:abc", "telegram_chat_id": "42"})
    strategy = _create(client)
    client.post(f"/api/strategies/{strategy['id']}/activate")

    sweep = client.post("/api/monitor/trigger").json()
    assert sweep["skipped"] is False
    assert sweep["signals"] == 1

    signals = client.get("/api/signals", params={"user_id": "alice"}).json()
    assert len(signals) == 1
    assert signals[0]["status"] == "delivered"

    assert client.post("/api/signals/retry").json()["selected"] == 0
    assert client.post("/api/reconcile").json()["errors"] == ["alice: exchange credentials missing"]


def test_user_settings_do_not_echo_token(client):
    resp = client.put("/api/users/alice/settings", json={"telegram_bot_token": "123:abc", "telegram_chat_id": "42"})
    body = resp.json()
    assert body["telegram_bot_token_set"] is True
    assert "123:abc" not in resp.text


def test_order_without_credentials_is_400(client, exchange):
    resp = client.post("/api/orders", json={"user_id": "alice", "side": "buy", "quantity": 0.01,
                                            "reference_price": 30000})
    assert resp.status_code == 400
    assert "credentials missing" in resp.json()["detail"]
    assert exchange.orders == []


def test_order_is_forwarded_with_credentials(client, exchange, monkeypatch):
    monkeypatch.setitem(config, "exchange_api_key", "k")
    monkeypatch.setitem(config, "exchange_api_secret", "s3cret")
    resp = client.post("/api/orders", json={"user_id": "alice", "symbol": "ETHUSDT", "side": "SELL",
                                            "quantity": 0.5, "price": 2000})
    assert resp.status_code == 200
    assert resp.json()["order"] == {"order_id": 1, "status": "NEW"}
    assert exchange.orders == [("k", "ETHUSDT", "SELL", 0.5, 2000.0, None)]

    assert client.post("/api/orders", json={"side": "hold", "quantity": 1}).status_code == 400
