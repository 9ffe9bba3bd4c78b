"""Autonomous trade-decision core."""

__version__ = "0.1.0"


class TradeCoreError(Exception):
    """Base error for the decision core."""


class ConfigurationError(TradeCoreError):
    """Fatal configuration problem detected at startup."""
