# Database operations
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from .clock import SystemClock
from .config import DB_PATH
from .domain import LiveState, Signal, SignalStatus, SignalType
from .errors import StrategyNotFoundError
from .strategies.conditions import condition_from_dict, condition_to_dict
from .strategies.strategy_config import PARAMETER_FIELDS, StrategyConfig

logger = logging.getLogger(__name__)

_BOOL_FIELDS = {"regime_filter"}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO text so stored timestamps compare lexicographically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_dt(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


class StrategyStore:
    """aiosqlite-backed store for strategies, live state, signals and backtests."""

    def __init__(self, db_path=None, clock=None) -> None:
        self.db_path = Path(db_path or DB_PATH)
        self.clock = clock or SystemClock()

    def _now(self) -> str:
        return _iso(self.clock.now())

    async def init(self) -> None:
        """Create tables if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute('''
                CREATE TABLE IF NOT EXISTS strategies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    strategy_type TEXT,
                    symbol TEXT,
                    timeframe TEXT,
                    position_size_percent REAL,
                    stop_loss_percent REAL,
                    take_profit_percent REAL,
                    rsi_period INTEGER,
                    rsi_overbought REAL,
                    rsi_oversold REAL,
                    volume_multiplier REAL,
                    initial_balance REAL,
                    regime_filter INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 0,
                    version INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS strategy_conditions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    strategy_id INTEGER NOT NULL,
                    position INTEGER NOT NULL,
                    indicator_type TEXT NOT NULL,
                    operator TEXT NOT NULL,
                    side TEXT NOT NULL,
                    condition_json TEXT NOT NULL
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS live_states (
                    strategy_id INTEGER PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    position_open INTEGER DEFAULT 0,
                    entry_price REAL,
                    entry_time TEXT,
                    side TEXT,
                    last_price REAL,
                    entry_candle_close_time INTEGER,
                    updated_at TEXT
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    strategy_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    signal_type TEXT NOT NULL,
                    price REAL,
                    reason TEXT,
                    status TEXT NOT NULL,
                    delivery_attempts INTEGER DEFAULT 0,
                    last_attempt_at TEXT,
                    created_at TEXT NOT NULL,
                    dedup_key TEXT,
                    candle_close_time INTEGER,
                    error_message TEXT
                )
            ''')
            await db.execute("CREATE INDEX IF NOT EXISTS idx_signals_dedup ON signals (dedup_key)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_signals_status ON signals (status, created_at)")
            await db.execute('''
                CREATE TABLE IF NOT EXISTS backtest_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    strategy_id INTEGER NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    metrics_json TEXT NOT NULL,
                    trades_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    telegram_bot_token TEXT,
                    telegram_chat_id TEXT,
                    updated_at TEXT
                )
            ''')
            await db.commit()

            # Migration: live_states created before entry_candle_close_time existed
            try:
                cursor = await db.execute("PRAGMA table_info(live_states)")
                columns = [row[1] for row in await cursor.fetchall()]
                if "entry_candle_close_time" not in columns:
                    await db.execute("ALTER TABLE live_states ADD COLUMN entry_candle_close_time INTEGER")
                    await db.commit()
                    logger.info("[DB] Added entry_candle_close_time column to live_states table")
            except Exception as e:
                logger.error(f"[DB] live_states migration error: {e}")
        logger.info(f"[DB] Initialised {self.db_path}")

    # ── strategies ───────────────────────────────────────────────────────────

    async def _load_conditions(self, db, strategy_id: int) -> tuple:
        async with db.execute(
            "SELECT condition_json FROM strategy_conditions WHERE strategy_id = ? ORDER BY position",
            (int(strategy_id),),
        ) as cursor:
            rows = await cursor.fetchall()
        return tuple(condition_from_dict(json.loads(r[0])) for r in rows)

    async def _write_conditions(self, db, strategy_id: int, conditions) -> None:
        await db.execute("DELETE FROM strategy_conditions WHERE strategy_id = ?", (int(strategy_id),))
        for pos, cond in enumerate(conditions):
            data = condition_to_dict(cond)
            await db.execute(
                '''
                INSERT INTO strategy_conditions (strategy_id, position, indicator_type, operator, side, condition_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ''',
                (int(strategy_id), pos, data["indicator_type"], data["operator"], data["side"],
                 json.dumps(data, separators=(",", ":"))),
            )

    async def _row_to_strategy(self, db, row) -> StrategyConfig:
        data = dict(row)
        for key in _BOOL_FIELDS | {"is_active"}:
            data[key] = bool(data.get(key))
        data["conditions"] = []
        strategy = StrategyConfig.from_dict(data)
        return strategy.with_updates(conditions=await self._load_conditions(db, strategy.id))

    async def create_strategy(self, strategy: StrategyConfig) -> StrategyConfig:
        if not strategy.name or not str(strategy.name).strip():
            raise ValueError("Strategy name is required")
        now = self._now()
        cols = ["user_id", "name", *PARAMETER_FIELDS, "is_active", "version", "created_at", "updated_at"]
        values = [strategy.user_id, str(strategy.name).strip()]
        values += [int(getattr(strategy, f)) if f in _BOOL_FIELDS else getattr(strategy, f) for f in PARAMETER_FIELDS]
        values += [int(strategy.is_active), int(strategy.version or 1), now, now]

        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                f"INSERT INTO strategies ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                values,
            )
            strategy_id = cur.lastrowid
            await self._write_conditions(db, strategy_id, strategy.conditions)
            await db.commit()
        logger.info(f"[DB] Created strategy #{strategy_id} '{strategy.name}' ({len(strategy.conditions)} conditions)")
        return await self._require(strategy_id)

    async def get_strategy(self, strategy_id: int) -> Optional[StrategyConfig]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM strategies WHERE id = ?", (int(strategy_id),)) as cursor:
                row = await cursor.fetchone()
            if not row:
                return None
            return await self._row_to_strategy(db, row)

    async def _require(self, strategy_id: int) -> StrategyConfig:
        strategy = await self.get_strategy(strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
        return strategy

    async def list_strategies(self, user_id: Optional[str] = None) -> list[StrategyConfig]:
        sql = "SELECT * FROM strategies"
        params: tuple = ()
        if user_id:
            sql += " WHERE user_id = ?"
            params = (user_id,)
        sql += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
            return [await self._row_to_strategy(db, r) for r in rows]

    async def list_active_strategies(self, limit: Optional[int] = None) -> list[StrategyConfig]:
        sql = "SELECT * FROM strategies WHERE is_active = 1 ORDER BY id"
        params: tuple = ()
        if limit:
            sql += " LIMIT ?"
            params = (int(limit),)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
            return [await self._row_to_strategy(db, r) for r in rows]

    async def update_strategy(self, strategy_id: int, changes: dict) -> StrategyConfig:
        """Apply field changes; replaces conditions when given. Bumps version."""
        current = await self._require(strategy_id)
        merged = current.to_dict()
        merged.update({k: v for k, v in (changes or {}).items() if v is not None})
        updated = StrategyConfig.from_dict(merged)

        sets = ["name = ?"] + [f"{f} = ?" for f in PARAMETER_FIELDS] + ["version = version + 1", "updated_at = ?"]
        values = [str(updated.name).strip()]
        values += [int(getattr(updated, f)) if f in _BOOL_FIELDS else getattr(updated, f) for f in PARAMETER_FIELDS]
        values += [self._now(), int(strategy_id)]

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(f"UPDATE strategies SET {', '.join(sets)} WHERE id = ?", values)
            if "conditions" in (changes or {}):
                await self._write_conditions(db, strategy_id, updated.conditions)
            await db.commit()
        logger.info(f"[DB] Updated strategy #{strategy_id} -> v{current.version + 1}")
        return await self._require(strategy_id)

    async def clone_strategy(self, strategy_id: int, new_name: Optional[str] = None) -> StrategyConfig:
        """Copy config and conditions into a new inactive draft."""
        original = await self._require(strategy_id)
        copy = original.with_updates(
            id=None,
            name=(new_name or f"{original.name} (copy)"),
            is_active=False,
            version=1,
        )
        return await self.create_strategy(copy)

    async def set_active(self, strategy_id: int, active: bool) -> StrategyConfig:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                "UPDATE strategies SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(bool(active)), self._now(), int(strategy_id)),
            )
            await db.commit()
            if cur.rowcount == 0:
                raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
        logger.info(f"[DB] Strategy #{strategy_id} {'activated' if active else 'deactivated'}")
        return await self._require(strategy_id)

    async def delete_strategy(self, strategy_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM strategies WHERE id = ?", (int(strategy_id),))
            await db.execute("DELETE FROM strategy_conditions WHERE strategy_id = ?", (int(strategy_id),))
            await db.execute("DELETE FROM live_states WHERE strategy_id = ?", (int(strategy_id),))
            await db.commit()
            return cur.rowcount > 0

    # ── live state ───────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_state(row) -> LiveState:
        data = dict(row)
        return LiveState(
            strategy_id=int(data["strategy_id"]),
            user_id=str(data["user_id"]),
            symbol=str(data["symbol"]),
            position_open=bool(data.get("position_open")),
            entry_price=data.get("entry_price"),
            entry_time=_parse_dt(data.get("entry_time")),
            side=data.get("side"),
            last_price=data.get("last_price"),
            entry_candle_close_time=data.get("entry_candle_close_time"),
            strategy_name=data.get("strategy_name") or "",
            stop_loss_percent=data.get("stop_loss_percent"),
            take_profit_percent=data.get("take_profit_percent"),
        )

    async def get_live_state(self, strategy_id: int) -> Optional[LiveState]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                '''
                SELECT ls.*, s.name AS strategy_name, s.stop_loss_percent, s.take_profit_percent
                FROM live_states ls LEFT JOIN strategies s ON s.id = ls.strategy_id
                WHERE ls.strategy_id = ?
                ''',
                (int(strategy_id),),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_state(row) if row else None

    async def open_position(
        self,
        strategy_id: int,
        user_id: str,
        symbol: str,
        entry_price: float,
        entry_time: datetime,
        side: str = "long",
        candle_close_time: Optional[int] = None,
    ) -> None:
        now = self._now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                '''
                INSERT INTO live_states (strategy_id, user_id, symbol, position_open, entry_price, entry_time,
                                         side, last_price, entry_candle_close_time, updated_at)
                VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(strategy_id) DO UPDATE SET
                    position_open=1,
                    entry_price=excluded.entry_price,
                    entry_time=excluded.entry_time,
                    side=excluded.side,
                    last_price=excluded.last_price,
                    entry_candle_close_time=excluded.entry_candle_close_time,
                    updated_at=excluded.updated_at
                ''',
                (int(strategy_id), user_id, symbol, float(entry_price), _iso(entry_time), side,
                 float(entry_price), candle_close_time, now),
            )
            await db.commit()

    async def close_position(self, strategy_id: int) -> bool:
        """Mark the position closed and clear entry fields. False if nothing was open."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                '''
                UPDATE live_states
                SET position_open = 0, entry_price = NULL, entry_time = NULL, side = NULL,
                    entry_candle_close_time = NULL, updated_at = ?
                WHERE strategy_id = ? AND position_open = 1
                ''',
                (self._now(), int(strategy_id)),
            )
            await db.commit()
            return cur.rowcount > 0

    async def update_last_price(self, strategy_id: int, user_id: str, symbol: str, price: float) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                '''
                INSERT INTO live_states (strategy_id, user_id, symbol, position_open, last_price, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT(strategy_id) DO UPDATE SET
                    last_price=excluded.last_price,
                    updated_at=excluded.updated_at
                ''',
                (int(strategy_id), user_id, symbol, float(price), self._now()),
            )
            await db.commit()

    async def list_open_states(
        self,
        limit: int = 200,
        after: Optional[tuple[str, int]] = None,
    ) -> list[LiveState]:
        """Open positions ordered by (user_id, strategy_id).

        ``after`` is the (user_id, strategy_id) of the last row already seen;
        only rows strictly after it are returned.
        """
        user_after, id_after = after if after else ("", -1)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                '''
                SELECT ls.*, s.name AS strategy_name, s.stop_loss_percent, s.take_profit_percent
                FROM live_states ls LEFT JOIN strategies s ON s.id = ls.strategy_id
                WHERE ls.position_open = 1
                  AND (ls.user_id > ? OR (ls.user_id = ? AND ls.strategy_id > ?))
                ORDER BY ls.user_id, ls.strategy_id
                LIMIT ?
                ''',
                (user_after, user_after, int(id_after), int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_state(r) for r in rows]

    # ── signals ──────────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_signal(row) -> Signal:
        data = dict(row)
        return Signal(
            id=int(data["id"]),
            strategy_id=int(data["strategy_id"]),
            user_id=str(data["user_id"]),
            symbol=str(data["symbol"]),
            signal_type=SignalType(data["signal_type"]),
            price=float(data.get("price") or 0.0),
            reason=data.get("reason") or "",
            status=SignalStatus(data["status"]),
            delivery_attempts=int(data.get("delivery_attempts") or 0),
            last_attempt_at=_parse_dt(data.get("last_attempt_at")),
            created_at=_parse_dt(data["created_at"]),
            dedup_key=data.get("dedup_key") or "",
            candle_close_time=data.get("candle_close_time"),
            error_message=data.get("error_message") or "",
            strategy_name=data.get("strategy_name") or "",
        )

    _SIGNAL_SELECT = (
        "SELECT sg.*, s.name AS strategy_name FROM signals sg "
        "LEFT JOIN strategies s ON s.id = sg.strategy_id"
    )

    async def _fetch_signals(self, where: str, params: tuple, suffix: str = "") -> list[Signal]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(f"{self._SIGNAL_SELECT} WHERE {where} {suffix}", params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_signal(r) for r in rows]

    async def insert_signal(self, signal: Signal) -> Signal:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                '''
                INSERT INTO signals (strategy_id, user_id, symbol, signal_type, price, reason, status,
                                     delivery_attempts, last_attempt_at, created_at, dedup_key,
                                     candle_close_time, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    int(signal.strategy_id), signal.user_id, signal.symbol, signal.signal_type.value,
                    float(signal.price), signal.reason, signal.status.value, int(signal.delivery_attempts),
                    _iso(signal.last_attempt_at), _iso(signal.created_at), signal.dedup_key,
                    signal.candle_close_time, signal.error_message,
                ),
            )
            await db.commit()
            signal_id = cur.lastrowid
        return await self.get_signal(signal_id)

    async def get_signal(self, signal_id: int) -> Optional[Signal]:
        rows = await self._fetch_signals("sg.id = ?", (int(signal_id),))
        return rows[0] if rows else None

    async def find_signal_by_dedup_key(self, dedup_key: str) -> Optional[Signal]:
        rows = await self._fetch_signals("sg.dedup_key = ?", (dedup_key,), "ORDER BY sg.id LIMIT 1")
        return rows[0] if rows else None

    async def find_delivered_by_dedup_key(self, dedup_key: str, exclude_id: Optional[int] = None) -> Optional[Signal]:
        rows = await self._fetch_signals(
            "sg.dedup_key = ? AND sg.status = ? AND sg.id != ?",
            (dedup_key, SignalStatus.DELIVERED.value, int(exclude_id or -1)),
            "ORDER BY sg.id LIMIT 1",
        )
        return rows[0] if rows else None

    async def update_signal_delivery(
        self,
        signal_id: int,
        status: SignalStatus,
        delivery_attempts: int,
        last_attempt_at: Optional[datetime],
        error_message: str = "",
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                '''
                UPDATE signals
                SET status = ?, delivery_attempts = ?, last_attempt_at = ?, error_message = ?
                WHERE id = ?
                ''',
                (status.value, int(delivery_attempts), _iso(last_attempt_at), error_message or "", int(signal_id)),
            )
            await db.commit()

    async def list_expirable_signals(self, created_before: datetime, limit: int) -> list[Signal]:
        return await self._fetch_signals(
            "sg.status = ? AND sg.created_at < ?",
            (SignalStatus.PENDING.value, _iso(created_before)),
            f"ORDER BY sg.created_at LIMIT {int(limit)}",
        )

    async def list_retryable_signals(
        self,
        max_attempts: int,
        attempted_before: datetime,
        created_after: datetime,
        limit: int,
    ) -> list[Signal]:
        """Pending signals with budget left whose cool-down has elapsed, oldest first."""
        return await self._fetch_signals(
            "sg.status = ? AND sg.delivery_attempts < ? "
            "AND (sg.last_attempt_at IS NULL OR sg.last_attempt_at < ?) AND sg.created_at >= ?",
            (SignalStatus.PENDING.value, int(max_attempts), _iso(attempted_before), _iso(created_after)),
            f"ORDER BY sg.created_at LIMIT {int(limit)}",
        )

    async def list_signals(
        self,
        user_id: Optional[str] = None,
        strategy_id: Optional[int] = None,
        status: Optional[SignalStatus] = None,
        limit: int = 100,
    ) -> list[Signal]:
        clauses = ["1 = 1"]
        params: list = []
        if user_id:
            clauses.append("sg.user_id = ?")
            params.append(user_id)
        if strategy_id is not None:
            clauses.append("sg.strategy_id = ?")
            params.append(int(strategy_id))
        if status is not None:
            clauses.append("sg.status = ?")
            params.append(SignalStatus(status).value)
        return await self._fetch_signals(
            " AND ".join(clauses), tuple(params), f"ORDER BY sg.created_at DESC LIMIT {int(limit)}"
        )

    # ── backtests ────────────────────────────────────────────────────────────

    async def save_backtest_result(self, strategy_id: int, result: dict, start=None, end=None) -> int:
        trades = result.get("trades") or []
        metrics = {k: v for k, v in result.items() if k not in ("trades", "balance_history")}
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                '''
                INSERT INTO backtest_results (strategy_id, start_time, end_time, metrics_json, trades_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ''',
                (
                    int(strategy_id),
                    _iso(start) if isinstance(start, datetime) else start,
                    _iso(end) if isinstance(end, datetime) else end,
                    json.dumps(metrics, default=str),
                    json.dumps(trades, default=str),
                    self._now(),
                ),
            )
            await db.commit()
            return int(cur.lastrowid)

    # ── user settings ────────────────────────────────────────────────────────

    async def get_user_settings(self, user_id: str) -> Optional[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,)) as cursor:
                row = await cursor.fetchone()
            return dict(row) if row else None

    async def upsert_user_settings(
        self,
        user_id: str,
        telegram_bot_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
    ) -> dict:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                '''
                INSERT INTO user_settings (user_id, telegram_bot_token, telegram_chat_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    telegram_bot_token=COALESCE(excluded.telegram_bot_token, user_settings.telegram_bot_token),
                    telegram_chat_id=COALESCE(excluded.telegram_chat_id, user_settings.telegram_chat_id),
                    updated_at=excluded.updated_at
                ''',
                (user_id, telegram_bot_token, telegram_chat_id, self._now()),
            )
            await db.commit()
        return await self.get_user_settings(user_id) or {"user_id": user_id}
