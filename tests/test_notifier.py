import asyncio
import json
from datetime import datetime, timezone

import httpx

from signal_engine.domain import NotificationTarget, Signal, SignalStatus, SignalType
from signal_engine.notifier import TelegramNotifier, format_signal_message

from conftest import CONFIGURED_TARGET


def _notifier(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramNotifier(client=http, api_url="https://telegram.test")


def test_deliver_posts_markdown_message():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    assert asyncio.run(_notifier(handler).deliver(CONFIGURED_TARGET, "hello"))
    assert seen["path"] == "/bot123:abc/sendMessage"
    assert seen["body"] == {"chat_id": "42", "text": "hello", "parse_mode": "Markdown"}


def test_rejections_are_false_not_errors():
    def rejected(request):
        return httpx.Response(200, json={"ok": False, "description": "chat not found"})

    def server_error(request):
        return httpx.Response(502, text="bad gateway")

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (rejected, server_error, unreachable):
        assert asyncio.run(_notifier(handler).deliver(CONFIGURED_TARGET, "hi")) is False


def test_unconfigured_target_sends_nothing():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"ok": True})

    target = NotificationTarget(bot_token="123:abc", chat_id="")
    assert asyncio.run(_notifier(handler).deliver(target, "hi")) is False
    assert calls == []


def test_retry_attempt_is_marked_in_message():
    signal = Signal(
        id=1, strategy_id=3, user_id="u", symbol="BTCUSDT", signal_type=SignalType.SELL, price=101.5,
        reason="Take profit", status=SignalStatus.PENDING, delivery_attempts=1, last_attempt_at=None,
        created_at=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc), strategy_name="swing",
    )
    first = format_signal_message(signal)
    assert "SELL signal" in first
    assert "Strategy: swing" in first
    assert "Retry" not in first
    assert "_Retry attempt 2_" in format_signal_message(signal, attempt=2)
