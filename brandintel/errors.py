"""Error taxonomy for the analysis pipeline.

Engine communication failures are converted to these at the tracker/service
boundary. ``app.py`` maps each class to an HTTP status code.
"""
from __future__ import annotations


class BrandIntelError(Exception):
    """Base class. ``retryable`` tells the caller whether trying again can help."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class ServiceUnavailable(BrandIntelError):
    """The analysis engine is unreachable, timed out, or returned 502/503/504."""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class DataUnavailable(BrandIntelError):
    """A completed job carried no recognizable result shape."""


class NotFound(BrandIntelError):
    pass


class Unauthorized(BrandIntelError):
    pass


class ValidationError(BrandIntelError):
    pass


class ConcurrentModification(BrandIntelError):
    """The kit changed between read and write of a module patch."""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)
