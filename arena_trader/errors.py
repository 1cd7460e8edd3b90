"""
Exception taxonomy for the trading fleet.

Malformed input is logged and skipped, rule violations are returned as
values by the risk gate, upstream failures abort one cycle, and
configuration errors halt a single agent at startup.
"""


class ArenaTraderError(Exception):
    """Base class for all arena_trader errors."""


class ConfigurationError(ArenaTraderError, ValueError):
    """Fatal at agent startup - the agent never enters its loop."""


class InvalidActionKind(ArenaTraderError, ValueError):
    """Raised when an action kind is not open/close long/short."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Invalid action kind: {kind!r}")


class UpstreamError(ArenaTraderError):
    """An external collaborator failed or timed out."""

    source = "upstream"

    def __init__(self, message: str, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class OracleError(UpstreamError):
    source = "oracle"


class ExchangeError(UpstreamError):
    source = "exchange"


class MarketDataError(UpstreamError):
    source = "market_data"
