import asyncio

from signal_engine.domain import Candle, SignalStatus, SignalType
from signal_engine.errors import ExternalServiceError
from signal_engine.live_monitor import LiveMonitor
from signal_engine.signal_lifecycle import SignalLifecycleManager
from signal_engine.strategies.conditions import Condition, FixedThreshold, Operator, PriceOperand, Side
from signal_engine.strategies.strategy_config import StrategyConfig

from conftest import HOUR_MS, FakeCandleSource, FakeNotifier, configured_target, make_candles


def _strategy():
    return StrategyConfig(
        name="cross",
        user_id="alice",
        conditions=(Condition(PriceOperand(), Operator.CROSSES_ABOVE, FixedThreshold(99.5), Side.BUY),),
        take_profit_percent=20.0,
    )


def _monitor(store, clock, source, notifier=None):
    lifecycle = SignalLifecycleManager(store, notifier or FakeNotifier(), configured_target, clock)
    return LiveMonitor(store, source, lifecycle, clock)


async def _active(store):
    strategy = await store.create_strategy(_strategy())
    return await store.set_active(strategy.id, True)


def test_entry_creates_signal_opens_position_and_delivers(store, clock):
    async def run():
        strategy = await _active(store)
        notifier = FakeNotifier()
        monitor = _monitor(store, clock, FakeCandleSource(make_candles([99, 100])), notifier)

        outcome = await monitor.evaluate_strategy(strategy)
        assert outcome.action == "enter"
        assert outcome.delivered
        assert len(notifier.calls) == 1

        state = await store.get_live_state(strategy.id)
        assert state.position_open
        assert state.entry_price == 100
        signal = await store.get_signal(outcome.signal_id)
        assert signal.status == SignalStatus.DELIVERED

        held = await monitor.evaluate_strategy(strategy)
        assert held.action == "hold"
        assert len(await store.list_signals()) == 1
    asyncio.run(run())


def test_repeated_decision_on_same_candle_does_not_reopen(store, clock):
    async def run():
        strategy = await _active(store)
        notifier = FakeNotifier()
        monitor = _monitor(store, clock, FakeCandleSource(make_candles([99, 100])), notifier)

        await monitor.evaluate_strategy(strategy)
        await store.close_position(strategy.id)

        again = await monitor.evaluate_strategy(strategy)
        assert again.duplicate
        assert not (await store.get_live_state(strategy.id)).position_open
        assert len(notifier.calls) == 1
    asyncio.run(run())


def test_candle_failure_is_an_error_outcome(store, clock):
    async def run():
        strategy = await _active(store)
        monitor = _monitor(store, clock, FakeCandleSource(error=ExternalServiceError("candle service down")))
        outcome = await monitor.evaluate_strategy(strategy)
        assert outcome.action == "error"
        assert "candle service down" in outcome.error
        assert await store.list_signals() == []
    asyncio.run(run())


def test_overlapping_tick_is_skipped(store, clock):
    class BlockingSource(FakeCandleSource):
        def __init__(self):
            super().__init__(make_candles([100, 100]))
            self.release = asyncio.Event()

        async def fetch_last_candles(self, symbol, timeframe, limit):
            await self.release.wait()
            return self.candles

    async def run():
        await _active(store)
        source = BlockingSource()
        monitor = _monitor(store, clock, source)

        first = asyncio.create_task(monitor.trigger())
        while not monitor.in_flight:
            await asyncio.sleep(0)
        assert await monitor.trigger() is None
        assert monitor.skipped_ticks == 1

        source.release.set()
        sweep = await first
        assert len(sweep.outcomes) == 1
        assert not monitor.in_flight
    asyncio.run(run())


def test_backoff_doubles_to_cap_and_resets(store, clock):
    monitor = _monitor(store, clock, FakeCandleSource())
    assert [monitor.next_interval(True) for _ in range(4)] == [20, 40, 60, 60]
    assert monitor.next_interval(False) == 10


def test_on_demand_driver_backs_off_while_failing(store, clock):
    async def run():
        await _active(store)
        monitor = _monitor(store, clock, FakeCandleSource(error=ExternalServiceError("down")))
        await monitor.run_on_demand(max_ticks=3)
        assert clock.slept == [20, 40, 60]
    asyncio.run(run())


def test_scheduled_driver_runs_retry_sweep(store, clock):
    async def run():
        await _active(store)
        notifier = FakeNotifier(ok=False)
        monitor = _monitor(store, clock, FakeCandleSource(make_candles([99, 100])), notifier)
        await monitor.run_scheduled(max_ticks=4)

        signals = await store.list_signals()
        assert len(signals) == 1
        # first attempt inline, then one retry per tick once the cool-down has passed
        assert signals[0].delivery_attempts == 2
        assert clock.slept == [60, 60, 60, 60]
    asyncio.run(run())


def _bar(prev, open_, high, low, close):
    open_time = prev.open_time + HOUR_MS
    return Candle(open=open_, high=high, low=low, close=close, volume=100.0,
                  open_time=open_time, close_time=open_time + HOUR_MS - 1)


def test_entry_candle_wick_does_not_exit_on_next_tick(store, clock):
    async def run():
        strategy = await store.create_strategy(StrategyConfig(
            name="wick",
            user_id="alice",
            conditions=(Condition(PriceOperand(), Operator.CROSSES_ABOVE, FixedThreshold(100), Side.BUY),),
            stop_loss_percent=2.0,
        ))
        strategy = await store.set_active(strategy.id, True)
        candles = make_candles([99, 99, 99, 99])
        candles.append(_bar(candles[-1], 99, 102, 90, 101))
        source = FakeCandleSource(candles)
        monitor = _monitor(store, clock, source)

        entered = await monitor.evaluate_strategy(strategy)
        assert entered.action == "enter"
        clock.advance(10)
        again = await monitor.evaluate_strategy(strategy)
        assert again.action == "hold"
        assert again.reason == "awaiting_next_candle"

        state = await store.get_live_state(strategy.id)
        assert state.position_open
        assert state.entry_candle_close_time == candles[-1].close_time
        assert [s.signal_type for s in await store.list_signals()] == [SignalType.BUY]

        # the next bar trades through the stop and closes the position
        source.candles.append(_bar(candles[-1], 101, 101, 80, 85))
        clock.advance(HOUR_MS / 1000)
        exited = await monitor.evaluate_strategy(strategy)
        assert exited.action == "exit"
        state = await store.get_live_state(strategy.id)
        assert not state.position_open
        assert state.entry_candle_close_time is None
    asyncio.run(run())


def test_sweep_drops_locks_of_inactive_strategies(store, clock):
    async def run():
        strategy = await _active(store)
        monitor = _monitor(store, clock, FakeCandleSource(make_candles([99, 99])))
        await monitor.evaluate_strategy(strategy)
        assert strategy.id in monitor._locks

        await store.set_active(strategy.id, False)
        await monitor.sweep()
        assert strategy.id not in monitor._locks
    asyncio.run(run())
