"""Shared exception types for core agent logic."""

from typing import List, Optional


class MarketDataUnavailable(RuntimeError):
    """Raised when a market data feed cannot produce a snapshot."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigurationError(ValueError):
    """Raised when YAML configuration fails schema validation."""

    def __init__(self, source: str, errors: List[str]):
        super().__init__(f"{source}: " + "; ".join(errors))
        self.source = source
        self.errors = errors


class OrderValidationError(ValueError):
    """Raised when an order is submitted that fails pre-submission checks."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class AgentNotFoundError(KeyError):
    """Raised when an operation targets an agent id that is not registered."""
