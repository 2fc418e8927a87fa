"""Exception taxonomy shared by the collection pipeline."""
from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for errors raised by the analytics service."""


class ValidationError(AnalyticsError):
    """Raised when a request body does not match the expected shape."""


class AuthError(AnalyticsError):
    """Raised when an origin token is malformed or unknown."""


class NotFoundError(AnalyticsError):
    """Raised when an origin or key cannot be found."""


class ConfigError(AnalyticsError):
    """Raised when an origin is missing its mandatory active key."""


class StreamError(AnalyticsError):
    """Raised when a frame cannot be written to a subscriber connection."""
