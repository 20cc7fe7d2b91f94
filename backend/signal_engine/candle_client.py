"""Candle source client for the market-data service.

Rows come back ascending; rows with a duplicate or out-of-order open_time
are dropped so callers always see a strictly increasing series.
"""
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from .config import config
from .domain import Candle
from .errors import ExternalServiceError
from .registry import ClientRegistry

logger = logging.getLogger(__name__)

_TIMEFRAME_SECONDS = {
    "1m": 60, "3m": 180, "5m": 300, "15m": 900, "30m": 1800,
    "1h": 3600, "2h": 7200, "4h": 14400, "6h": 21600, "12h": 43200,
    "1d": 86400, "1w": 604800,
}


def timeframe_seconds(timeframe: str) -> int:
    tf = str(timeframe or "").strip().lower()
    if tf in _TIMEFRAME_SECONDS:
        return _TIMEFRAME_SECONDS[tf]
    raise ValueError(f"Unsupported timeframe: {timeframe!r}")


def to_candles(rows: list[dict[str, Any]]) -> list[Candle]:
    out: list[Candle] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            candle = Candle.from_row(row)
        except (KeyError, TypeError, ValueError):
            continue
        if out and candle.open_time <= out[-1].open_time:
            continue
        out.append(candle)
    dropped = len(rows) - len(out)
    if dropped:
        logger.warning(f"[CANDLES] Dropped {dropped} invalid/duplicate/out-of-order row(s)")
    return out


class CandleClient:
    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.registry = registry or ClientRegistry()
        self._client = client
        self.base_url = (base_url if base_url is not None else config.get("candle_service_url") or "").rstrip("/")

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await self.registry.get(self.base_url)

    async def _get(self, path: str, params: dict) -> list[dict[str, Any]]:
        if not self.base_url:
            logger.warning("[CANDLES] candle_service_url not configured")
            return []
        try:
            resp = await (await self._http()).get(self.base_url + path, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"candle service request failed: {type(e).__name__}: {e}") from e
        payload: dict[str, Any] = resp.json() if resp.content else {}
        candles = payload.get("candles") or []
        if not isinstance(candles, list):
            return []
        return [row for row in candles if isinstance(row, dict)]

    async def fetch_last_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Fetch last N candles (ascending)."""
        limit_i = min(max(int(limit), 1), 20000)
        rows = await self._get("/candles/last", {
            "symbol": str(symbol or "").strip().upper(),
            "timeframe_seconds": timeframe_seconds(timeframe),
            "limit": limit_i,
        })
        return to_candles(rows)

    async def fetch_candles_range(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
        limit: int = 200000,
    ) -> list[Candle]:
        """Fetch candles in a timestamp range (ascending)."""
        rows = await self._get("/candles/range", {
            "symbol": str(symbol or "").strip().upper(),
            "timeframe_seconds": timeframe_seconds(timeframe),
            "start": start.isoformat().replace("+00:00", "Z"),
            "end": end.isoformat().replace("+00:00", "Z"),
            "limit": min(max(int(limit), 1), 200000),
        })
        return to_candles(rows)
