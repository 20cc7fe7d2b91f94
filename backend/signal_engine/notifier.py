"""Telegram notification transport and message formatting.

`deliver()` returns True/False and never raises for transport problems; the
signal lifecycle owns retry accounting.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import config
from .domain import LiveState, NotificationTarget, Signal, SignalType
from .registry import ClientRegistry

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_url: Optional[str] = None,
    ) -> None:
        self.registry = registry or ClientRegistry()
        self._client = client
        self.api_url = (api_url or config.get("telegram_api_url") or "https://api.telegram.org").rstrip("/")

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await self.registry.get(self.api_url)

    async def deliver(self, target: NotificationTarget, message: str) -> bool:
        if not target.is_configured:
            logger.warning("[NOTIFY] Skipped: notification target not configured")
            return False

        url = f"{self.api_url}/bot{target.bot_token}/sendMessage"
        payload = {"chat_id": target.chat_id, "text": message, "parse_mode": "Markdown"}
        try:
            resp = await (await self._http()).post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"[NOTIFY] Telegram request failed: {type(e).__name__}: {e}")
            return False

        if resp.status_code != 200:
            logger.warning(f"[NOTIFY] Telegram rejected message: HTTP {resp.status_code} {resp.text[:200]}")
            return False
        try:
            ok = bool(resp.json().get("ok", False))
        except ValueError:
            ok = False
        if not ok:
            logger.warning(f"[NOTIFY] Telegram returned ok=false: {resp.text[:200]}")
        return ok


def format_signal_message(signal: Signal, attempt: int = 1) -> str:
    icon = "🟢" if signal.signal_type == SignalType.BUY else "🔴"
    lines = [
        f"{icon} *{signal.signal_type.value} signal* {signal.symbol}",
        f"Strategy: {signal.strategy_name or signal.strategy_id}",
        f"Price: {signal.price:.4f}",
        f"Reason: {signal.reason}",
        f"Time: {signal.created_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
    ]
    if attempt > 1:
        lines.append(f"_Retry attempt {attempt}_")
    return "\n".join(lines)


def format_position_closed_message(state: LiveState, reason: str, reference_price: Optional[float]) -> str:
    lines = [
        f"⚠️ *Position closed on exchange* {state.symbol}",
        f"Strategy: {state.strategy_name or state.strategy_id}",
    ]
    if state.entry_price:
        lines.append(f"Entry: {state.entry_price:.4f}")
    if reference_price and state.entry_price:
        pnl_pct = (reference_price - state.entry_price) / state.entry_price * 100
        lines.append(f"Reference price: {reference_price:.4f} ({pnl_pct:+.2f}%)")
    lines.append(f"Reason: {reason}")
    return "\n".join(lines)
