"""Binance USD-M futures client: open positions and validated order placement.

Quantities and prices are rounded to the venue step/tick size. Orders below
the minimum quantity or minimum notional are rejected with
OrderValidationError; they are never adjusted upward.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from .config import BINANCE_FUTURES_TESTNET_URL, BINANCE_FUTURES_URL, config
from .domain import ExchangeCredentials, ExchangePosition
from .errors import ExternalServiceError, OrderValidationError
from .registry import ClientRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolConstraints:
    step_size: float = 0.00001
    tick_size: float = 0.01
    min_qty: float = 0.001
    min_notional: float = 10.0


DEFAULT_CONSTRAINTS = SymbolConstraints()


def _decimals(step: float) -> int:
    text = f"{step:.10f}".rstrip("0")
    return len(text.split(".")[1]) if "." in text else 0


def round_to_step(value: float, step: float) -> float:
    """Round down to a multiple of `step`."""
    if step <= 0:
        return float(value)
    # small epsilon so 0.3/0.1 style float noise does not drop a whole step
    floored = math.floor(float(value) / step + 1e-9) * step
    return round(floored, _decimals(step))


def validate_order(
    quantity: float,
    price: float,
    constraints: SymbolConstraints = DEFAULT_CONSTRAINTS,
) -> tuple[float, float]:
    """Return (quantity, price) rounded to venue precision or raise OrderValidationError."""
    if price <= 0:
        raise OrderValidationError(f"invalid price {price}")
    qty = round_to_step(quantity, constraints.step_size)
    px = round_to_step(price, constraints.tick_size)
    if qty < constraints.min_qty:
        raise OrderValidationError(f"quantity {qty} below minimum {constraints.min_qty}")
    notional = qty * px
    if notional < constraints.min_notional:
        raise OrderValidationError(f"notional {notional:.2f} below minimum {constraints.min_notional}")
    return qty, px


class BinanceFuturesClient:
    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.registry = registry or ClientRegistry()
        self._client = client
        self._base_url = base_url

    def _url(self, credentials: ExchangeCredentials) -> str:
        if self._base_url:
            return self._base_url.rstrip("/")
        if config.get("exchange_base_url"):
            return str(config["exchange_base_url"]).rstrip("/")
        return BINANCE_FUTURES_TESTNET_URL if credentials.use_testnet else BINANCE_FUTURES_URL

    async def _http(self, base_url: str) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await self.registry.get(base_url)

    @staticmethod
    def _sign(params: dict, secret: str) -> str:
        query = urlencode(params)
        signature = hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    async def _signed(self, method: str, path: str, credentials: ExchangeCredentials, params: dict):
        params = {**params, "timestamp": int(time.time() * 1000), "recvWindow": 5000}
        base_url = self._url(credentials)
        url = f"{base_url}{path}?{self._sign(params, credentials.api_secret)}"
        headers = {"X-MBX-APIKEY": credentials.api_key}
        try:
            resp = await (await self._http(base_url)).request(method, url, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"exchange request failed: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise ExternalServiceError(f"exchange HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ExternalServiceError(f"exchange returned invalid JSON: {resp.text[:200]}") from e

    async def get_open_positions(self, credentials: ExchangeCredentials) -> list[ExchangePosition]:
        payload = await self._signed("GET", "/fapi/v2/positionRisk", credentials, {})
        positions: list[ExchangePosition] = []
        for row in payload or []:
            if not isinstance(row, dict):
                continue
            size = float(row.get("positionAmt") or 0.0)
            if size == 0:
                continue
            positions.append(ExchangePosition(
                symbol=str(row.get("symbol") or "").upper(),
                size=size,
                entry_price=float(row.get("entryPrice") or 0.0),
                mark_price=float(row.get("markPrice") or 0.0),
                unrealized_pnl=float(row.get("unRealizedProfit") or 0.0),
            ))
        logger.debug(f"[EXCHANGE] {len(positions)} open position(s)")
        return positions

    async def place_order(
        self,
        credentials: ExchangeCredentials,
        symbol: str,
        side: str,
        quantity: float,
        price: Optional[float] = None,
        reference_price: Optional[float] = None,
        constraints: SymbolConstraints = DEFAULT_CONSTRAINTS,
    ) -> dict:
        """MARKET order when `price` is None (notional checked at `reference_price`), else LIMIT GTC."""
        check_price = price if price is not None else reference_price
        if check_price is None:
            raise OrderValidationError("price or reference_price is required to validate notional")
        qty, px = validate_order(quantity, check_price, constraints)

        params = {"symbol": symbol.upper(), "side": side.upper(), "quantity": qty}
        if price is None:
            params["type"] = "MARKET"
        else:
            params.update({"type": "LIMIT", "price": px, "timeInForce": "GTC"})

        result = await self._signed("POST", "/fapi/v1/order", credentials, params)
        logger.info(f"[EXCHANGE] Order placed {side.upper()} {qty} {symbol} | id={result.get('orderId')}")
        return {"order_id": result.get("orderId"), "status": result.get("status")}

