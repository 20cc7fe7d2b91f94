"""Trading strategies (entry/exit rules).

This package contains *rules* (how to trade) and composes indicator,
regime and adaptive-parameter calculations from the modules above it.

Keep `indicators.py` calculation-only.
"""
from .conditions import Condition, Operator, Side
from .runner import EvaluationDecision, evaluate_strategy
from .strategy_config import StrategyConfig

__all__ = [
    "Condition",
    "EvaluationDecision",
    "Operator",
    "Side",
    "StrategyConfig",
    "evaluate_strategy",
]
