# Engine Service - interface layer between API routes and the engine components
import asyncio
import logging
from datetime import datetime
from typing import Optional

from .candle_client import CandleClient
from .clock import SystemClock
from .config import config
from .database import StrategyStore
from .domain import ExchangeCredentials, NotificationTarget, SignalStatus
from .errors import BacktestError, ConfigurationMissingError, ExternalServiceError, StrategyNotFoundError
from .exchange_client import BinanceFuturesClient
from .live_monitor import LiveMonitor
from .notifier import TelegramNotifier
from .position_reconciler import PositionReconciler
from .registry import ClientRegistry
from .signal_lifecycle import SignalLifecycleManager
from .strategies.backtest import NO_DATA_MESSAGE, run_backtest
from .strategies.strategy_config import StrategyConfig

logger = logging.getLogger(__name__)


class BacktestService:
    def __init__(self, store, candle_source) -> None:
        self.store = store
        self.candle_source = candle_source
        self.timeout = float(config.get("external_timeout_seconds", 10.0))

    async def run(
        self,
        strategy_id: int,
        start: datetime,
        end: datetime,
        *,
        fee_percent: float = 0.0,
        initial_balance: Optional[float] = None,
    ) -> dict:
        strategy = await self.store.get_strategy(strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
        if end <= start:
            raise BacktestError("end must be after start")

        try:
            candles = await asyncio.wait_for(
                self.candle_source.fetch_candles_range(strategy.symbol, strategy.timeframe, start, end),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("candle service timed out") from e
        if not candles:
            raise BacktestError(NO_DATA_MESSAGE)

        result = run_backtest(strategy, candles, fee_percent=fee_percent, initial_balance=initial_balance)
        data = result.to_dict()
        data["id"] = await self.store.save_backtest_result(strategy_id, data, start, end)
        data["strategy_id"] = strategy_id
        data["candles"] = len(candles)
        return data


class Engine:
    """Dependency root: owns the store, pooled clients and background loops."""

    def __init__(self, store=None, candle_source=None, exchange=None, notifier=None, clock=None) -> None:
        self.clock = clock or SystemClock()
        self.registry = ClientRegistry(clock=self.clock)
        self.store = store or StrategyStore(clock=self.clock)
        self.candle_source = candle_source or CandleClient(registry=self.registry)
        self.exchange = exchange or BinanceFuturesClient(registry=self.registry)
        self.notifier = notifier or TelegramNotifier(registry=self.registry)

        self.lifecycle = SignalLifecycleManager(self.store, self.notifier, self.notification_target, self.clock)
        self.monitor = LiveMonitor(self.store, self.candle_source, self.lifecycle, self.clock)
        self.reconciler = PositionReconciler(
            self.store, self.exchange, self.notifier,
            self.exchange_credentials, self.notification_target, self.clock,
        )
        self.backtests = BacktestService(self.store, self.candle_source)
        self.exchange_timeout = float(config.get("external_timeout_seconds", 10.0))

    async def notification_target(self, user_id: str) -> NotificationTarget:
        settings = await self.store.get_user_settings(user_id) or {}
        return NotificationTarget(
            bot_token=settings.get("telegram_bot_token") or config.get("telegram_bot_token") or "",
            chat_id=settings.get("telegram_chat_id") or config.get("telegram_chat_id") or "",
        )

    async def exchange_credentials(self, user_id: str) -> Optional[ExchangeCredentials]:
        api_key = config.get("exchange_api_key") or ""
        api_secret = config.get("exchange_api_secret") or ""
        if not api_key or not api_secret:
            return None
        return ExchangeCredentials(api_key, api_secret, bool(config.get("exchange_use_testnet", True)))

    async def startup(self) -> None:
        await self.store.init()
        if config.get("auto_start_loops"):
            await self.monitor.start()
            await self.reconciler.start()
        logger.info("[ENGINE] Started")

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.reconciler.stop()
        await self.registry.aclose()
        logger.info("[ENGINE] Stopped")


# Lazy global so routes and tests share one root
_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = Engine()
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    _engine = engine


# ── strategies ───────────────────────────────────────────────────────────────

async def list_strategies(user_id: Optional[str] = None) -> list:
    return [s.to_dict() for s in await get_engine().store.list_strategies(user_id)]


async def get_strategy(strategy_id: int) -> dict:
    strategy = await get_engine().store.get_strategy(strategy_id)
    if strategy is None:
        raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
    return strategy.to_dict()


async def create_strategy(data: dict) -> dict:
    strategy = StrategyConfig.from_dict({k: v for k, v in data.items() if k not in ("id", "version")})
    created = await get_engine().store.create_strategy(strategy)
    logger.info(f"[ENGINE] Strategy created #{created.id} '{created.name}'")
    return created.to_dict()


async def update_strategy(strategy_id: int, changes: dict) -> dict:
    return (await get_engine().store.update_strategy(strategy_id, changes)).to_dict()


async def clone_strategy(strategy_id: int, name: Optional[str] = None) -> dict:
    return (await get_engine().store.clone_strategy(strategy_id, name)).to_dict()


async def set_strategy_active(strategy_id: int, active: bool) -> dict:
    return (await get_engine().store.set_active(strategy_id, active)).to_dict()


async def delete_strategy(strategy_id: int) -> dict:
    if not await get_engine().store.delete_strategy(strategy_id):
        raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
    return {"deleted": True, "id": strategy_id}


# ── backtest / signals / loops ───────────────────────────────────────────────

async def run_strategy_backtest(strategy_id: int, start: datetime, end: datetime, **kwargs) -> dict:
    return await get_engine().backtests.run(strategy_id, start, end, **kwargs)


async def list_signals(
    user_id: Optional[str] = None,
    strategy_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list:
    signals = await get_engine().store.list_signals(
        user_id=user_id,
        strategy_id=strategy_id,
        status=SignalStatus(status) if status else None,
        limit=limit,
    )
    return [s.to_dict() for s in signals]


async def retry_signals() -> dict:
    return (await get_engine().lifecycle.retry_sweep()).to_dict()


async def reconcile_positions() -> dict:
    return (await get_engine().reconciler.reconcile_once()).to_dict()


async def place_order(
    user_id: str,
    symbol: str,
    side: str,
    quantity: float,
    price: Optional[float] = None,
    reference_price: Optional[float] = None,
) -> dict:
    engine = get_engine()
    credentials = await engine.exchange_credentials(user_id)
    if credentials is None:
        raise ConfigurationMissingError(f"exchange credentials missing for user {user_id}")
    try:
        return await asyncio.wait_for(
            engine.exchange.place_order(
                credentials, symbol, side, quantity, price=price, reference_price=reference_price
            ),
            timeout=engine.exchange_timeout,
        )
    except asyncio.TimeoutError as e:
        raise ExternalServiceError("order placement timed out") from e


async def trigger_monitor() -> dict:
    result = await get_engine().monitor.trigger()
    if result is None:
        return {"skipped": True, "reason": "sweep already in flight"}
    return {"skipped": False, **result.to_dict()}


async def update_user_settings(user_id: str, telegram_bot_token: Optional[str], telegram_chat_id: Optional[str]) -> dict:
    settings = await get_engine().store.upsert_user_settings(user_id, telegram_bot_token, telegram_chat_id)
    # never echo the token back
    return {
        "user_id": user_id,
        "telegram_chat_id": settings.get("telegram_chat_id"),
        "telegram_bot_token_set": bool(settings.get("telegram_bot_token")),
    }


def get_status() -> dict:
    engine = get_engine()
    return {
        "monitor_in_flight": engine.monitor.in_flight,
        "monitor_interval_seconds": engine.monitor.current_interval,
        "monitor_skipped_ticks": engine.monitor.skipped_ticks,
        "pooled_clients": len(engine.registry),
        "time": engine.clock.now().isoformat(),
    }
