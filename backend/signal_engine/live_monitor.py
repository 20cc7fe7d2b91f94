"""LiveMonitor — evaluates active strategies against fresh candles.

Responsibilities (this file only):
  - Fetch the trailing candle window per strategy (bounded by a timeout)
  - Record the latest close on the live state
  - Commit enter/exit decisions: signal first (deduplicated), then position
  - Two drivers sharing one in-flight flag:
      run_scheduled  — fixed interval sweep + signal retry sweep
      run_on_demand  — short interval, doubles on failure up to a cap,
                       back to base on the next success
    A tick that would overlap a running one is skipped, not queued.

What this does NOT do:
  - Place exchange orders
  - Reconcile exchange positions (see position_reconciler)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .clock import SystemClock
from .config import config
from .strategies.runner import ENTER, EXIT, evaluate_strategy
from .strategies.strategy_config import StrategyConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorOutcome:
    strategy_id: int
    action: str
    reason: str
    signal_id: Optional[int] = None
    duplicate: bool = False
    delivered: bool = False
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "action": self.action,
            "reason": self.reason,
            "signal_id": self.signal_id,
            "duplicate": self.duplicate,
            "delivered": self.delivered,
            "error": self.error,
        }


@dataclass
class MonitorSweep:
    outcomes: list[MonitorOutcome] = field(default_factory=list)

    @property
    def errors(self) -> list[MonitorOutcome]:
        return [o for o in self.outcomes if o.error]

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "evaluated": len(self.outcomes),
            "signals": sum(1 for o in self.outcomes if o.signal_id is not None and not o.duplicate),
            "errors": len(self.errors),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class LiveMonitor:
    def __init__(self, store, candle_source, lifecycle, clock=None) -> None:
        self.store = store
        self.candle_source = candle_source
        self.lifecycle = lifecycle
        self.clock = clock or SystemClock()

        self.timeout = float(config.get("external_timeout_seconds", 10.0))
        self.window = int(config.get("candle_window", 200))
        self.sweep_interval = float(config.get("monitor_sweep_interval_seconds", 60.0))
        self.base_interval = float(config.get("monitor_base_interval_seconds", 10.0))
        self.max_interval = float(config.get("monitor_max_interval_seconds", 60.0))
        self.max_concurrency = max(1, int(config.get("monitor_max_concurrency", 4)))

        self.current_interval = self.base_interval
        self.skipped_ticks = 0
        self._in_flight = False
        self._locks: dict[int, asyncio.Lock] = {}
        self._tasks: list[asyncio.Task] = []

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # ── single strategy ──────────────────────────────────────────────────────

    async def evaluate_strategy(self, strategy: StrategyConfig) -> MonitorOutcome:
        """Evaluate one strategy and commit its decision. Never raises."""
        lock = self._locks.setdefault(int(strategy.id), asyncio.Lock())
        async with lock:
            try:
                return await self._evaluate(strategy)
            except asyncio.TimeoutError:
                logger.warning(f"[MONITOR] Candle fetch timed out | strategy #{strategy.id} {strategy.symbol}")
                return MonitorOutcome(strategy.id, "error", "timeout", error="candle fetch timed out")
            except Exception as e:
                logger.exception(f"[MONITOR] Evaluation failed | strategy #{strategy.id}: {e}")
                return MonitorOutcome(strategy.id, "error", "exception", error=f"{type(e).__name__}: {e}")

    async def _evaluate(self, strategy: StrategyConfig) -> MonitorOutcome:
        candles = await asyncio.wait_for(
            self.candle_source.fetch_last_candles(strategy.symbol, strategy.timeframe, self.window),
            timeout=self.timeout,
        )
        if not candles:
            return MonitorOutcome(strategy.id, "hold", "no_data")

        state = await self.store.get_live_state(strategy.id)
        await self.store.update_last_price(strategy.id, strategy.user_id, strategy.symbol, candles[-1].close)

        position_open = bool(state and state.position_open)
        if (
            position_open
            and state.entry_candle_close_time is not None
            and candles[-1].close_time <= state.entry_candle_close_time
        ):
            # The entry candle was already acted on; exits wait for a newer bar
            return MonitorOutcome(strategy.id, "hold", "awaiting_next_candle")

        decision = evaluate_strategy(
            strategy,
            candles,
            position_open=position_open,
            entry_price=state.entry_price if position_open else None,
        )
        if decision.action not in (ENTER, EXIT):
            return MonitorOutcome(strategy.id, decision.action, decision.reason)

        created = await self.lifecycle.create_signal(
            strategy_id=strategy.id,
            user_id=strategy.user_id,
            symbol=strategy.symbol,
            signal_type=decision.signal_type,
            price=decision.price,
            reason=decision.reason,
            candle_close_time=decision.candle_close_time,
        )
        if created.duplicate:
            return MonitorOutcome(strategy.id, decision.action, decision.reason, created.signal.id, duplicate=True)

        if decision.action == ENTER:
            await self.store.open_position(
                strategy.id, strategy.user_id, strategy.symbol, decision.price, self.clock.now(),
                candle_close_time=decision.candle_close_time,
            )
        else:
            await self.store.close_position(strategy.id)
        logger.info(
            f"[MONITOR] {decision.signal_type.value} {strategy.symbol} @ {decision.price:.4f} "
            f"| strategy #{strategy.id} | {decision.reason}"
        )

        outcome = await self.lifecycle.deliver(created.signal)
        return MonitorOutcome(
            strategy.id, decision.action, decision.reason, created.signal.id,
            delivered=outcome.delivered,
        )

    # ── sweeps ───────────────────────────────────────────────────────────────

    async def sweep(self) -> MonitorSweep:
        strategies = await self.store.list_active_strategies()
        self._prune_locks({int(s.id) for s in strategies})
        sem = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(s: StrategyConfig) -> MonitorOutcome:
            async with sem:
                return await self.evaluate_strategy(s)

        outcomes = await asyncio.gather(*(_guarded(s) for s in strategies))
        result = MonitorSweep(outcomes=list(outcomes))
        if result.failed:
            logger.warning(f"[MONITOR] Sweep: {len(result.errors)}/{len(strategies)} strategies failed")
        return result

    def _prune_locks(self, active_ids: set[int]) -> None:
        for strategy_id in list(self._locks):
            if strategy_id not in active_ids and not self._locks[strategy_id].locked():
                del self._locks[strategy_id]

    async def trigger(self) -> Optional[MonitorSweep]:
        """Run one sweep unless one is already running. Returns None when skipped."""
        if self._in_flight:
            self.skipped_ticks += 1
            logger.debug("[MONITOR] Tick skipped: previous sweep still running")
            return None
        self._in_flight = True
        try:
            return await self.sweep()
        finally:
            self._in_flight = False

    def next_interval(self, failed: bool) -> float:
        if failed:
            self.current_interval = min(self.current_interval * 2, self.max_interval)
        else:
            self.current_interval = self.base_interval
        return self.current_interval

    # ── drivers ──────────────────────────────────────────────────────────────

    async def run_scheduled(self, max_ticks: Optional[int] = None) -> None:
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                await self.trigger()
                await self.lifecycle.retry_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[MONITOR] Scheduled tick failed: {e}")
            await self.clock.sleep(self.sweep_interval)

    async def run_on_demand(self, max_ticks: Optional[int] = None) -> None:
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            failed = False
            try:
                result = await self.trigger()
                if result is None:
                    await self.clock.sleep(self.current_interval)
                    continue
                failed = result.failed
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[MONITOR] On-demand tick failed: {e}")
                failed = True
            interval = self.next_interval(failed)
            if failed:
                logger.warning(f"[MONITOR] Backing off: next on-demand tick in {interval:.0f}s")
            await self.clock.sleep(interval)

    async def start(self, on_demand: bool = True) -> None:
        if any(not t.done() for t in self._tasks):
            return
        self._tasks = [asyncio.create_task(self.run_scheduled(), name="monitor_scheduled")]
        if on_demand:
            self._tasks.append(asyncio.create_task(self.run_on_demand(), name="monitor_on_demand"))
        logger.info(f"[MONITOR] Started (sweep every {self.sweep_interval:.0f}s, on-demand={on_demand})")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[MONITOR] Stopped")
