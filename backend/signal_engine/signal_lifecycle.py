"""SignalLifecycleManager — creation, deduplication, delivery and retry of signals.

Responsibilities (this file only):
  - Persist new BUY/SELL decisions as `pending` signals, deduplicated by
    (strategy_id, signal_type, time bucket)
  - Deliver a signal through the notification channel, bounded by a timeout
  - Retry sweep: expire stale signals first, then redeliver a bounded page of
    pending signals whose cool-down has elapsed, sequentially with a small
    delay between external calls
  - Return typed outcomes; surfacing them is the caller's job

What this does NOT do:
  - Decide when to trade (see strategies.runner)
  - Open or close positions
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from . import signal_state_machine as ssm
from .clock import SystemClock
from .config import config
from .domain import NotificationTarget, Signal, SignalStatus, SignalType
from .notifier import format_signal_message

logger = logging.getLogger(__name__)

TargetLookup = Callable[[str], Awaitable[NotificationTarget]]

TARGET_MISSING = "notification target not configured"


@dataclass(frozen=True)
class CreateResult:
    signal: Signal
    duplicate: bool = False


@dataclass(frozen=True)
class DeliveryOutcome:
    signal_id: int
    status: SignalStatus
    delivered: bool
    attempts: int
    suppressed: bool = False  # duplicate of an already delivered signal, nothing sent
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "signal_id": self.signal_id,
            "status": self.status.value,
            "delivered": self.delivered,
            "attempts": self.attempts,
            "suppressed": self.suppressed,
            "error": self.error,
        }


@dataclass
class SweepReport:
    expired: int = 0
    selected: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    suppressed: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "selected": self.selected,
            "delivered": self.delivered,
            "retrying": self.retrying,
            "failed": self.failed,
            "suppressed": self.suppressed,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def dedup_key(
    strategy_id: int,
    signal_type: SignalType,
    candle_close_time: Optional[int] = None,
    now_ms: Optional[int] = None,
    bucket_seconds: float = 60.0,
) -> str:
    """sha256 of strategy/type/time-bucket.

    The bucket is the candle close time when known, else `now_ms` floored to
    the polling interval.
    """
    if candle_close_time is not None:
        bucket = int(candle_close_time)
    else:
        step = max(1, int(bucket_seconds * 1000))
        bucket = (int(now_ms or 0) // step) * step
    raw = f"{strategy_id}-{SignalType(signal_type).value}-{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SignalLifecycleManager:
    def __init__(self, store, notifier, target_lookup: TargetLookup, clock=None) -> None:
        self.store = store
        self.notifier = notifier
        self.target_lookup = target_lookup
        self.clock = clock or SystemClock()

        self.max_attempts = int(config.get("signal_max_delivery_attempts", 5))
        self.cooldown = timedelta(seconds=float(config.get("signal_retry_cooldown_seconds", 120)))
        self.max_age = timedelta(seconds=float(config.get("signal_max_age_seconds", 86400)))
        self.page_size = int(config.get("signal_retry_page_size", 50))
        self.delivery_delay = float(config.get("signal_delivery_delay_seconds", 0.1))
        self.timeout = float(config.get("external_timeout_seconds", 10.0))
        self.bucket_seconds = float(config.get("monitor_sweep_interval_seconds", 60.0))

    def dedup_key(self, strategy_id: int, signal_type: SignalType, candle_close_time: Optional[int] = None) -> str:
        now_ms = int(self.clock.now().timestamp() * 1000)
        return dedup_key(strategy_id, signal_type, candle_close_time, now_ms, self.bucket_seconds)

    # ── creation ─────────────────────────────────────────────────────────────

    async def create_signal(
        self,
        *,
        strategy_id: int,
        user_id: str,
        symbol: str,
        signal_type: SignalType,
        price: float,
        reason: str,
        candle_close_time: Optional[int] = None,
    ) -> CreateResult:
        key = self.dedup_key(strategy_id, signal_type, candle_close_time)
        existing = await self.store.find_signal_by_dedup_key(key)
        if existing is not None:
            logger.info(
                f"[SIGNAL] Duplicate {SignalType(signal_type).value} for strategy #{strategy_id} "
                f"(existing #{existing.id}, status={existing.status.value})"
            )
            return CreateResult(existing, duplicate=True)

        signal = await self.store.insert_signal(Signal(
            id=None,
            strategy_id=int(strategy_id),
            user_id=user_id,
            symbol=symbol,
            signal_type=SignalType(signal_type),
            price=float(price),
            reason=reason,
            status=SignalStatus.PENDING,
            delivery_attempts=0,
            last_attempt_at=None,
            created_at=self.clock.now(),
            dedup_key=key,
            candle_close_time=candle_close_time,
        ))
        logger.info(
            f"[SIGNAL] Created #{signal.id} {signal.signal_type.value} {symbol} @ {float(price):.4f} "
            f"| strategy #{strategy_id}"
        )
        return CreateResult(signal)

    # ── delivery ─────────────────────────────────────────────────────────────

    async def _send(self, signal: Signal, attempt: int) -> tuple[bool, str]:
        try:
            target = await asyncio.wait_for(self.target_lookup(signal.user_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            return False, "notification target lookup timed out"
        except Exception as e:
            logger.warning(f"[SIGNAL] Target lookup failed #{signal.id}: {type(e).__name__}: {e}")
            return False, f"notification target lookup failed: {type(e).__name__}: {e}"
        if target is None or not target.is_configured:
            return False, TARGET_MISSING

        message = format_signal_message(signal, attempt)
        try:
            ok = await asyncio.wait_for(self.notifier.deliver(target, message), timeout=self.timeout)
        except asyncio.TimeoutError:
            return False, f"delivery timed out after {self.timeout:.0f}s"
        except Exception as e:
            logger.warning(f"[SIGNAL] Delivery error #{signal.id}: {type(e).__name__}: {e}")
            return False, f"{type(e).__name__}: {e}"
        return (True, "") if ok else (False, "notification channel rejected the message")

    async def deliver(self, signal: Signal) -> DeliveryOutcome:
        """Attempt one delivery and persist the resulting status."""
        signal = await self.store.get_signal(signal.id) or signal
        if ssm.is_terminal(signal.status):
            return DeliveryOutcome(
                signal.id, signal.status, signal.status == SignalStatus.DELIVERED, signal.delivery_attempts
            )

        now = self.clock.now()
        prior = await self.store.find_delivered_by_dedup_key(signal.dedup_key, exclude_id=signal.id)
        if prior is not None:
            status = ssm.transition(signal.id, signal.status, SignalStatus.DELIVERED, f"duplicate of #{prior.id}")
            await self.store.update_signal_delivery(
                signal.id, status, signal.delivery_attempts, signal.last_attempt_at, f"duplicate of #{prior.id}"
            )
            return DeliveryOutcome(signal.id, status, True, signal.delivery_attempts, suppressed=True)

        attempt = signal.delivery_attempts + 1
        ok, error = await self._send(signal, attempt)

        if ok:
            status = ssm.transition(signal.id, signal.status, SignalStatus.DELIVERED, f"attempt {attempt}")
            await self.store.update_signal_delivery(signal.id, status, attempt, now, "")
            return DeliveryOutcome(signal.id, status, True, attempt)

        status = ssm.transition(
            signal.id,
            signal.status,
            ssm.status_after_failure(attempt, self.max_attempts),
            f"attempt {attempt}/{self.max_attempts} failed: {error}",
        )
        await self.store.update_signal_delivery(signal.id, status, attempt, now, error)
        if status == SignalStatus.PENDING:
            logger.warning(f"[SIGNAL] #{signal.id} attempt {attempt}/{self.max_attempts} failed: {error}")
        return DeliveryOutcome(signal.id, status, False, attempt, error=error)

    # ── sweeps ───────────────────────────────────────────────────────────────

    async def expire_stale(self) -> int:
        """Expire one page of pending signals older than the maximum age."""
        cutoff = self.clock.now() - self.max_age
        stale = await self.store.list_expirable_signals(cutoff, self.page_size)
        for signal in stale:
            status = ssm.transition(signal.id, signal.status, SignalStatus.EXPIRED, "maximum age reached")
            await self.store.update_signal_delivery(
                signal.id, status, signal.delivery_attempts, signal.last_attempt_at,
                signal.error_message or "expired before delivery",
            )
        if stale:
            logger.info(f"[SIGNAL] Expired {len(stale)} stale signal(s)")
        return len(stale)

    async def retry_sweep(self) -> SweepReport:
        report = SweepReport(expired=await self.expire_stale())

        now = self.clock.now()
        candidates = await self.store.list_retryable_signals(
            self.max_attempts, now - self.cooldown, now - self.max_age, self.page_size
        )
        report.selected = len(candidates)

        for i, signal in enumerate(candidates):
            if i > 0 and self.delivery_delay > 0:
                await self.clock.sleep(self.delivery_delay)
            outcome = await self.deliver(signal)
            report.outcomes.append(outcome)
            if outcome.suppressed:
                report.suppressed += 1
            elif outcome.delivered:
                report.delivered += 1
            elif outcome.status == SignalStatus.FAILED:
                report.failed += 1
            else:
                report.retrying += 1

        if report.selected or report.expired:
            logger.info(
                f"[SIGNAL] Retry sweep | expired={report.expired} selected={report.selected} "
                f"delivered={report.delivered} retrying={report.retrying} failed={report.failed} "
                f"suppressed={report.suppressed}"
            )
        return report
