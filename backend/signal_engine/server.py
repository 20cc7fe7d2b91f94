"""FastAPI Server - Thin Controller Layer
Only handles API routes, request validation, and responses.
All business logic is delegated to engine_service and the engine components.
"""
import logging
from contextlib import asynccontextmanager
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from . import engine_service
from .config import LOG_DIR, config
from .errors import (
    BacktestError,
    ConfigurationMissingError,
    ExternalServiceError,
    OrderValidationError,
    StrategyNotFoundError,
)
from .models import (
    BacktestRequest,
    OrderRequest,
    StrategyClone,
    StrategyCreate,
    StrategyUpdate,
    UserSettingsUpdate,
    dump,
)


# Configure logging: daily rotating file, secrets masked
# The SecretMaskingFilter redacts exchange keys and bot tokens if they ever appear in a log line.
class _SecretMaskingFilter(logging.Filter):
    """Redact known secrets from log messages before they hit any handler."""
    _MASK = "***REDACTED***"
    _SECRET_KEYS = ("exchange_api_key", "exchange_api_secret", "telegram_bot_token")

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = {
            str(v)
            for k, v in config.items()
            if k in self._SECRET_KEYS and v and len(str(v)) > 4
        }
        if not secrets:
            return True
        msg = record.getMessage()
        masked = msg
        for secret in secrets:
            masked = masked.replace(secret, self._MASK)
        if masked != msg:
            record.msg = masked
            record.args = None
        return True


def configure_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    mask_filter = _SecretMaskingFilter()
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = TimedRotatingFileHandler(
        filename=str(LOG_DIR / 'engine.log'),
        when='midnight',
        interval=1,
        backupCount=7,
        encoding='utf-8',
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(mask_filter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(mask_filter)
    logging.basicConfig(level=logging.INFO, handlers=[console_handler, file_handler])

    # Reduce noisy per-request logs from http clients (candle polling, notifications).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)


# Lifespan context manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = engine_service.get_engine()
    await engine.startup()
    logger.info(f"[STARTUP] Engine ready | auto_start_loops={config.get('auto_start_loops')}")
    try:
        yield
    finally:
        await engine.shutdown()
        logger.info("[SHUTDOWN] Server shut down")


app = FastAPI(lifespan=lifespan)
api_router = APIRouter(prefix="/api")


# ==================== Error mapping ====================

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "detail": str(exc)})


@app.exception_handler(StrategyNotFoundError)
async def _not_found(request: Request, exc: StrategyNotFoundError):
    return _error(404, exc)


@app.exception_handler(BacktestError)
async def _backtest_failed(request: Request, exc: BacktestError):
    return _error(422, exc)


@app.exception_handler(ExternalServiceError)
async def _upstream_failed(request: Request, exc: ExternalServiceError):
    logger.warning(f"[API] Upstream failure on {request.url.path}: {exc}")
    return _error(502, exc)


@app.exception_handler(ValueError)
async def _bad_value(request: Request, exc: ValueError):
    return _error(400, exc)


@app.exception_handler(OrderValidationError)
async def _order_rejected(request: Request, exc: OrderValidationError):
    return _error(400, exc)


@app.exception_handler(ConfigurationMissingError)
async def _config_missing(request: Request, exc: ConfigurationMissingError):
    return _error(400, exc)


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"status": "error", "detail": exc.errors()})


# ==================== API Routes ====================

@api_router.get("/health")
async def health():
    return {"status": "ok", **engine_service.get_status()}


# ==================== Strategies ====================

@api_router.get("/strategies")
async def get_strategies(user_id: Optional[str] = None):
    return await engine_service.list_strategies(user_id)


@api_router.post("/strategies")
async def create_strategy(payload: StrategyCreate):
    result = await engine_service.create_strategy(dump(payload))
    return {"status": "success", "strategy": result}


@api_router.get("/strategies/{strategy_id}")
async def get_strategy(strategy_id: int):
    return await engine_service.get_strategy(strategy_id)


@api_router.patch("/strategies/{strategy_id}")
async def update_strategy(strategy_id: int, payload: StrategyUpdate):
    result = await engine_service.update_strategy(strategy_id, dump(payload))
    return {"status": "success", "strategy": result}


@api_router.delete("/strategies/{strategy_id}")
async def remove_strategy(strategy_id: int):
    await engine_service.delete_strategy(strategy_id)
    return {"status": "success"}


@api_router.post("/strategies/{strategy_id}/clone")
async def clone_strategy(strategy_id: int, payload: Optional[StrategyClone] = None):
    result = await engine_service.clone_strategy(strategy_id, payload.name if payload else None)
    return {"status": "success", "strategy": result}


@api_router.post("/strategies/{strategy_id}/activate")
async def activate_strategy(strategy_id: int):
    return {"status": "success", "strategy": await engine_service.set_strategy_active(strategy_id, True)}


@api_router.post("/strategies/{strategy_id}/deactivate")
async def deactivate_strategy(strategy_id: int):
    return {"status": "success", "strategy": await engine_service.set_strategy_active(strategy_id, False)}


@api_router.post("/strategies/{strategy_id}/backtest")
async def backtest_strategy(strategy_id: int, payload: BacktestRequest):
    result = await engine_service.run_strategy_backtest(
        strategy_id,
        payload.start,
        payload.end,
        fee_percent=payload.fee_percent,
        initial_balance=payload.initial_balance,
    )
    return {"status": "success", "result": result}


# ==================== Signals / loops ====================

@api_router.get("/signals")
async def get_signals(
    user_id: Optional[str] = None,
    strategy_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    return await engine_service.list_signals(user_id, strategy_id, status, limit)


@api_router.post("/signals/retry")
async def retry_signals():
    return await engine_service.retry_signals()


@api_router.post("/reconcile")
async def reconcile():
    return await engine_service.reconcile_positions()


@api_router.post("/monitor/trigger")
async def trigger_monitor():
    return await engine_service.trigger_monitor()


@api_router.post("/orders")
async def place_order(payload: OrderRequest):
    result = await engine_service.place_order(
        payload.user_id,
        payload.symbol,
        payload.side,
        payload.quantity,
        price=payload.price,
        reference_price=payload.reference_price,
    )
    return {"status": "success", "order": result}


@api_router.put("/users/{user_id}/settings")
async def update_user_settings(user_id: str, payload: UserSettingsUpdate):
    return await engine_service.update_user_settings(user_id, payload.telegram_bot_token, payload.telegram_chat_id)


# Include router and middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
