"""PositionReconciler — closes local positions the exchange no longer holds.

Runs on its own interval, independent of strategy evaluation.

Scenarios it handles:
  1. Local state open, exchange has the symbol → synced, nothing to do
  2. Local state open, exchange flat on the symbol → close locally, clear
     entry fields, label the likely reason, notify once

What it does NOT do:
  - Open positions (that needs signal-level intent, not exchange state)
  - Place or cancel orders
  - Make more than one exchange call per user per pass
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .clock import SystemClock
from .config import config
from .domain import ExchangeCredentials, LiveState, NotificationTarget
from .errors import ExternalServiceError
from .notifier import format_position_closed_message

logger = logging.getLogger(__name__)

CredentialsLookup = Callable[[str], Awaitable[Optional[ExchangeCredentials]]]
TargetLookup = Callable[[str], Awaitable[NotificationTarget]]

REASON_TAKE_PROFIT = "Take Profit (estimated)"
REASON_STOP_LOSS = "Stop Loss (estimated)"
REASON_EXTERNAL = "Closed externally (estimated)"
REASON_UNKNOWN = "Unknown (estimated)"


@dataclass
class ReconcileReport:
    users: int = 0
    checked: int = 0
    synced: int = 0
    closed: int = 0
    notified: int = 0
    errors: list[str] = field(default_factory=list)
    closures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "users": self.users,
            "checked": self.checked,
            "synced": self.synced,
            "closed": self.closed,
            "notified": self.notified,
            "errors": list(self.errors),
            "closures": list(self.closures),
        }


def classify_closure_reason(state: LiveState) -> tuple[str, Optional[float]]:
    """Best-effort label for why the exchange position went away.

    The real exit price is not observed. With a locally known last price the
    label compares it against the SL/TP levels; without one it falls back to
    whichever level the strategy configures (TP first). Returns the label and
    the reference price used, if any.
    """
    entry = float(state.entry_price or 0.0)
    tp_pct = float(state.take_profit_percent or 0.0)
    sl_pct = float(state.stop_loss_percent or 0.0)
    if entry <= 0:
        return REASON_UNKNOWN, None

    tp_price = entry * (1 + tp_pct / 100) if tp_pct > 0 else None
    sl_price = entry * (1 - sl_pct / 100) if sl_pct > 0 else None

    if state.last_price:
        last = float(state.last_price)
        if tp_price is not None and last >= tp_price:
            return REASON_TAKE_PROFIT, tp_price
        if sl_price is not None and last <= sl_price:
            return REASON_STOP_LOSS, sl_price
        return REASON_EXTERNAL, last

    if tp_price is not None:
        return REASON_TAKE_PROFIT, tp_price
    if sl_price is not None:
        return REASON_STOP_LOSS, sl_price
    return REASON_UNKNOWN, None


class PositionReconciler:
    def __init__(
        self,
        store,
        exchange,
        notifier,
        credentials_lookup: CredentialsLookup,
        target_lookup: TargetLookup,
        clock=None,
    ) -> None:
        self.store = store
        self.exchange = exchange
        self.notifier = notifier
        self.credentials_lookup = credentials_lookup
        self.target_lookup = target_lookup
        self.clock = clock or SystemClock()
        self.timeout = float(config.get("external_timeout_seconds", 10.0))
        self.page_size = int(config.get("reconcile_page_size", 200))
        self.interval = float(config.get("reconcile_interval_seconds", 60.0))
        self._task: Optional[asyncio.Task] = None
        # (user_id, strategy_id) of the last open state read; None starts from the top
        self._cursor: Optional[tuple[str, int]] = None

    async def reconcile_once(self) -> ReconcileReport:
        report = ReconcileReport()
        states = await self.store.list_open_states(limit=self.page_size, after=self._cursor)
        if not states and self._cursor is not None:
            states = await self.store.list_open_states(limit=self.page_size)
        if len(states) < self.page_size:
            self._cursor = None
        else:
            self._cursor = (states[-1].user_id, states[-1].strategy_id)

        by_user: dict[str, list[LiveState]] = defaultdict(list)
        for state in states:
            by_user[state.user_id].append(state)
        report.users = len(by_user)

        for user_id, user_states in by_user.items():
            try:
                await self._reconcile_user(user_id, user_states, report)
            except Exception as e:
                logger.exception(f"[RECONCILE] User {user_id} failed: {e}")
                report.errors.append(f"{user_id}: {type(e).__name__}: {e}")

        if report.checked:
            logger.info(
                f"[RECONCILE] Pass complete | users={report.users} checked={report.checked} "
                f"synced={report.synced} closed={report.closed} errors={len(report.errors)}"
            )
        return report

    async def _reconcile_user(self, user_id: str, states: list[LiveState], report: ReconcileReport) -> None:
        credentials = await self.credentials_lookup(user_id)
        if credentials is None or not credentials.api_key or not credentials.api_secret:
            logger.warning(f"[RECONCILE] Skipped user {user_id}: exchange credentials missing")
            report.errors.append(f"{user_id}: exchange credentials missing")
            return

        try:
            positions = await asyncio.wait_for(self.exchange.get_open_positions(credentials), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[RECONCILE] Position fetch timed out for user {user_id}")
            report.errors.append(f"{user_id}: position fetch timed out")
            return
        except ExternalServiceError as e:
            logger.warning(f"[RECONCILE] Position fetch failed for user {user_id}: {e}")
            report.errors.append(f"{user_id}: {e}")
            return

        on_exchange = {p.symbol.upper() for p in positions if p.size != 0}

        for state in states:
            report.checked += 1
            if state.symbol.upper() in on_exchange:
                report.synced += 1
                continue

            reason, reference_price = classify_closure_reason(state)
            if not await self.store.close_position(state.strategy_id):
                continue
            report.closed += 1
            logger.info(
                f"[RECONCILE] Closed stale position | strategy #{state.strategy_id} {state.symbol} "
                f"entry={state.entry_price} reason={reason}"
            )
            notified = await self._notify(state, reason, reference_price)
            if notified:
                report.notified += 1
            report.closures.append({
                "strategy_id": state.strategy_id,
                "user_id": user_id,
                "symbol": state.symbol,
                "entry_price": state.entry_price,
                "reason": reason,
                "notified": notified,
            })

    async def _notify(self, state: LiveState, reason: str, reference_price: Optional[float]) -> bool:
        """Single attempt; closure notices are not retried."""
        try:
            target = await self.target_lookup(state.user_id)
            if target is None or not target.is_configured:
                logger.warning(f"[RECONCILE] No notification target for user {state.user_id}")
                return False
            message = format_position_closed_message(state, reason, reference_price)
            return bool(await asyncio.wait_for(self.notifier.deliver(target, message), timeout=self.timeout))
        except asyncio.TimeoutError:
            logger.warning(f"[RECONCILE] Closure notification timed out for strategy #{state.strategy_id}")
            return False
        except Exception as e:
            logger.warning(f"[RECONCILE] Closure notification failed for strategy #{state.strategy_id}: {e}")
            return False

    # ── scheduled loop ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="position_reconciler")
        logger.info(f"[RECONCILE] Reconciler started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[RECONCILE] Reconciler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[RECONCILE] Pass failed: {e}")
            await self.clock.sleep(self.interval)
