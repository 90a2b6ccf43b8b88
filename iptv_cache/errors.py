"""
Error taxonomy for the cache service.

Guide ingestion logs and skips TransportError/ParseError per source, while the
catalog rebuild treats them as fatal for that attempt.
"""


class CacheServiceError(Exception):
    """Base class for all cache service errors"""
    pass


class TransportError(CacheServiceError):
    """Raised when a remote fetch fails or times out"""
    pass


class ParseError(CacheServiceError):
    """Raised when guide or catalog input is malformed"""
    pass


class PersistenceError(CacheServiceError):
    """Raised when a durable read/write fails"""
    pass


class ValidationError(CacheServiceError, ValueError):
    """Raised when an interval, offset or other config value is malformed"""
    pass


__all__ = [
    "CacheServiceError",
    "TransportError",
    "ParseError",
    "PersistenceError",
    "ValidationError",
]
