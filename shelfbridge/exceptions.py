"""
Exception types shared by the sync tool
"""


class ShelfBridgeError(Exception):
    """Base class for all errors raised by the sync tool"""


class ConfigError(ShelfBridgeError, ValueError):
    """Configuration file is missing or invalid"""


class TransientRequestError(ShelfBridgeError):
    """Network failure, timeout, rate limit or 5xx response worth retrying"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class LibraryServiceError(ShelfBridgeError):
    """Audiobookshelf could not deliver the data a sync run depends on"""


class CatalogServiceError(ShelfBridgeError):
    """Hardcover could not deliver the data a sync run depends on"""
