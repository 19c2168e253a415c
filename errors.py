#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class NewWorksError(Exception):
    """Base class for errors raised by the watcher.

    Attributes:
        details: Optional diagnostic payload (url, subscription id, operation).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class NetworkError(NewWorksError):
    """A listing page could not be fetched (connection failure, bad HTTP status)."""


class FetchTimeoutError(NetworkError):
    """A listing page fetch/parse exceeded its overall timeout."""


class ParseError(NewWorksError):
    """A listing page was fetched but could not be read as a listing."""


class ConfigError(NewWorksError):
    """Global configuration or subscriptions could not be loaded."""


class PersistenceError(NewWorksError):
    """A database operation failed. Retryable at run level."""


__all__ = [
    "NewWorksError",
    "NetworkError",
    "FetchTimeoutError",
    "ParseError",
    "ConfigError",
    "PersistenceError",
]
