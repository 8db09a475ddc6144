"""Errors raised by the DGGS engine."""
from typing import Optional


class DggsError(Exception):
    """Base DGGS error."""
    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.original_exception = original_exception


class InvalidArgumentError(DggsError, ValueError):
    """Raised for malformed cell components, out of range levels or bad query geometry."""
    pass


class TransformError(DggsError):
    """Raised when a position cannot be reprojected into the grid's CRS."""
    pass
