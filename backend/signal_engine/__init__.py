"""Strategy evaluation and signal lifecycle engine."""

__version__ = "0.3.0"
