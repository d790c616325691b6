"""Exception hierarchy.

Each failure a refresh cycle can hit has its own type so the orchestrator
and the CLI can report it precisely. A data row that is too short or has an
unparseable amount is not an error; the aggregator skips it.
"""

from __future__ import annotations


class ThermometerError(Exception):
    """Base exception for all donation-thermometer failures."""


class ConfigError(ThermometerError):
    """Raised for invalid runtime configuration."""


class FetchError(ThermometerError):
    """Base for failures that abort one refresh cycle."""


class TransportError(FetchError):
    """Raised for network failures, non-2xx responses and timeouts."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmptyPayloadError(FetchError):
    """Raised when the source returns a zero-length or whitespace-only body."""


class SchemaError(FetchError):
    """Raised when the header row has no recognisable amount column."""
