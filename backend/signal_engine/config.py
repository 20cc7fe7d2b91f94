# Configuration for the strategy/signal engine
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


config = {
    # Signal delivery lifecycle
    "signal_max_delivery_attempts": 5,
    "signal_retry_cooldown_seconds": _env_int("SIGNAL_RETRY_COOLDOWN_SECONDS", 120),
    "signal_max_age_seconds": _env_int("SIGNAL_MAX_AGE_SECONDS", 24 * 60 * 60),
    "signal_retry_page_size": _env_int("SIGNAL_RETRY_PAGE_SIZE", 50),
    "signal_delivery_delay_seconds": _env_float("SIGNAL_DELIVERY_DELAY_SECONDS", 0.1),

    # Live evaluation drivers
    "monitor_sweep_interval_seconds": _env_float("MONITOR_SWEEP_INTERVAL_SECONDS", 60.0),
    "monitor_base_interval_seconds": _env_float("MONITOR_BASE_INTERVAL_SECONDS", 10.0),
    "monitor_max_interval_seconds": _env_float("MONITOR_MAX_INTERVAL_SECONDS", 60.0),
    "monitor_max_concurrency": _env_int("MONITOR_MAX_CONCURRENCY", 4),
    "candle_window": _env_int("CANDLE_WINDOW", 200),  # candles evaluated per tick (live and backtest)

    # Position reconciliation
    "reconcile_interval_seconds": _env_float("RECONCILE_INTERVAL_SECONDS", 60.0),
    "reconcile_page_size": _env_int("RECONCILE_PAGE_SIZE", 200),

    # External collaborators
    "external_timeout_seconds": _env_float("EXTERNAL_TIMEOUT_SECONDS", 10.0),
    "candle_service_url": (os.getenv("CANDLE_SERVICE_URL") or "").strip(),  # e.g. http://market-data-service:8002/v1
    "exchange_use_testnet": _env_bool("EXCHANGE_USE_TESTNET", True),
    "exchange_base_url": (os.getenv("EXCHANGE_BASE_URL") or "").strip(),  # empty = derive from testnet flag
    "exchange_api_key": (os.getenv("EXCHANGE_API_KEY") or "").strip(),
    "exchange_api_secret": (os.getenv("EXCHANGE_API_SECRET") or "").strip(),
    "telegram_api_url": (os.getenv("TELEGRAM_API_URL") or "https://api.telegram.org").strip(),
    "telegram_bot_token": (os.getenv("TELEGRAM_BOT_TOKEN") or "").strip(),
    "telegram_chat_id": (os.getenv("TELEGRAM_CHAT_ID") or "").strip(),

    # Pooled HTTP clients
    "registry_max_clients": _env_int("REGISTRY_MAX_CLIENTS", 16),
    "registry_max_age_seconds": _env_float("REGISTRY_MAX_AGE_SECONDS", 900.0),

    # Start background loops with the HTTP server
    "auto_start_loops": _env_bool("AUTO_START_LOOPS", False),
}

BINANCE_FUTURES_URL = "https://fapi.binance.com"
BINANCE_FUTURES_TESTNET_URL = "https://testnet.binancefuture.com"

# SQLite database path
DB_PATH = Path(os.getenv("ENGINE_DB_PATH") or (ROOT_DIR / 'data' / 'engine.db'))
LOG_DIR = Path(os.getenv("ENGINE_LOG_DIR") or (ROOT_DIR / 'logs'))
