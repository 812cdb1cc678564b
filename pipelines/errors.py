"""Error taxonomy shared by the market intel pipelines, jobs and API."""

from __future__ import annotations


class MarketIntelError(Exception):
    """Base class for failures that map onto a structured ``{"error": ...}`` payload."""

    status_code = 500


class ValidationError(MarketIntelError):
    status_code = 400


class ConfigurationError(MarketIntelError):
    """Raised when an operation needs configuration that is absent (e.g. the Census key)."""

    status_code = 500


class ResolutionError(MarketIntelError):
    """Raised when a market name cannot be matched to a CBSA code."""

    status_code = 400


class CensusAPIError(MarketIntelError):
    """Non-2xx, transport or malformed responses from the Census API."""

    status_code = 500


class StorageError(MarketIntelError):
    """A write that should have produced a row did not."""

    status_code = 500


__all__ = [
    "MarketIntelError",
    "ValidationError",
    "ConfigurationError",
    "ResolutionError",
    "CensusAPIError",
    "StorageError",
]
