"""Engine exception types.

Only success/failure plus a readable reason crosses component boundaries;
these types are what components raise internally and what the HTTP layer
maps to status codes.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for engine errors."""


class ExternalServiceError(EngineError):
    """Exchange / candle service / notification channel failed or timed out."""


class OrderValidationError(EngineError):
    """Order parameters violate venue constraints; the order is rejected, never adjusted."""


class ConfigurationMissingError(EngineError):
    """Missing notification destination or exchange credentials."""


class BacktestError(EngineError):
    pass


class StrategyNotFoundError(EngineError):
    pass


class IllegalTransitionError(EngineError):
    pass
