import pytest

from signal_engine.errors import BacktestError
from signal_engine.market_regime import regime_position_adjustment
from signal_engine.strategies.backtest import NO_DATA_MESSAGE, run_backtest
from signal_engine.strategies.conditions import Condition, FixedThreshold, Operator, PriceOperand, Side
from signal_engine.strategies.runner import ENTER, EXIT, HOLD, check_stop_loss_take_profit, evaluate_strategy
from signal_engine.strategies.strategy_config import StrategyConfig
from signal_engine.domain import AdjustedParameters

from conftest import make_candles


def _strategy(entry_above, exit_above=None, **kwargs):
    conditions = [Condition(PriceOperand(), Operator.CROSSES_ABOVE, FixedThreshold(entry_above), Side.BUY)]
    if exit_above is not None:
        conditions.append(Condition(PriceOperand(), Operator.GREATER_THAN, FixedThreshold(exit_above), Side.SELL))
    defaults = dict(name="test", initial_balance=1000.0, position_size_percent=100.0)
    defaults.update(kwargs)
    return StrategyConfig(conditions=tuple(conditions), **defaults)


def test_single_trade_100_to_110():
    strategy = _strategy(99.5, 109.5, stop_loss_percent=2.0, take_profit_percent=20.0)
    result = run_backtest(strategy, make_candles([99, 100, 105, 110, 111]))

    assert result.total_trades == 1
    trade = result.trades[0]
    assert trade.entry_price == 100
    assert trade.exit_price == 110
    assert trade.quantity == pytest.approx(10)
    assert trade.profit == pytest.approx(100)
    assert trade.exit_reason == "SELL_SIGNAL"
    assert result.final_balance == pytest.approx(1100)
    assert result.total_return == pytest.approx(10)
    assert result.winning_trades == 1
    assert result.losing_trades == 0
    assert result.win_rate == 100
    assert result.max_drawdown == 0


def test_rising_series_after_crossover_gives_one_profitable_trade():
    strategy = _strategy(100.0)
    result = run_backtest(strategy, make_candles([98, 99, 101, 102, 103, 104, 106, 108]))
    assert result.total_trades == 1
    assert result.trades[0].profit > 0
    assert result.final_balance > 1000


def test_open_position_is_force_closed_at_end():
    strategy = _strategy(99.5, take_profit_percent=20.0)
    result = run_backtest(strategy, make_candles([99, 100, 101, 102]))
    assert result.total_trades == 1
    trade = result.trades[0]
    assert trade.exit_reason == "END_OF_DATA"
    assert trade.exit_price == 102
    assert result.final_balance == pytest.approx(1020)


def test_stop_loss_exit_counts_as_loss_and_drawdown():
    # ranging default shrinks the 5% stop to 4%: stop level 96
    strategy = _strategy(99.5, stop_loss_percent=5.0, take_profit_percent=20.0)
    result = run_backtest(strategy, make_candles([99, 100, 95, 95]))
    trade = result.trades[0]
    assert trade.exit_reason == "STOP_LOSS"
    assert trade.exit_price == pytest.approx(96)
    assert trade.profit == pytest.approx(-40)
    assert result.losing_trades == 1
    assert result.max_drawdown == pytest.approx(4.0)


def test_zero_profit_trade_is_losing():
    strategy = _strategy(99.5, 99.0, take_profit_percent=20.0)
    result = run_backtest(strategy, make_candles([99, 100, 100]))
    assert result.trades[0].profit == pytest.approx(0)
    assert result.winning_trades == 0
    assert result.losing_trades == 1


def test_fees_reduce_profit():
    strategy = _strategy(99.5, 109.5, take_profit_percent=20.0)
    result = run_backtest(strategy, make_candles([99, 100, 105, 110]), fee_percent=0.1)
    profit = result.trades[0].profit
    assert 97 < profit < 100
    assert result.final_balance == pytest.approx(1000 + profit)


def test_empty_data_is_explicit_error():
    with pytest.raises(BacktestError, match=NO_DATA_MESSAGE):
        run_backtest(_strategy(100.0), [])


def test_stop_loss_wins_when_both_levels_inside_candle():
    params = AdjustedParameters(70, 30, 1.2, 2.0, 4.0)
    wide = make_candles([100.0], spread=10.0)[0]
    price, level = check_stop_loss_take_profit(100.0, wide, params)
    assert level == "STOP_LOSS"
    assert price == pytest.approx(98.0)


def test_evaluate_strategy_transitions():
    strategy = _strategy(99.5, 109.5, take_profit_percent=20.0)
    assert evaluate_strategy(strategy, [], position_open=False).action == HOLD

    entry = evaluate_strategy(strategy, make_candles([99, 100]), position_open=False)
    assert entry.action == ENTER
    assert entry.signal_type.value == "BUY"
    assert entry.candle_close_time is not None
    assert entry.size_percent == pytest.approx(100.0 * regime_position_adjustment(entry.regime))
    assert f"size {entry.size_percent:.1f}%" in entry.reason

    exit_ = evaluate_strategy(strategy, make_candles([105, 110]), position_open=True, entry_price=100.0)
    assert exit_.action == EXIT
    assert exit_.signal_type.value == "SELL"

    held = evaluate_strategy(strategy, make_candles([100, 101]), position_open=True, entry_price=100.0)
    assert held.action == HOLD
    assert exit_.size_percent is None


def test_regime_filter_blocks_entries_only():
    strategy = _strategy(99.5, 109.5, take_profit_percent=20.0, strategy_type="sma_20_200_rsi", regime_filter=True)
    blocked = evaluate_strategy(strategy, make_candles([99, 100]), position_open=False)
    assert blocked.action == HOLD
    assert blocked.reason.startswith("regime_unsuitable")

    exit_ = evaluate_strategy(strategy, make_candles([105, 110]), position_open=True, entry_price=100.0)
    assert exit_.action == EXIT
