"""Storage-layer exceptions for the spatial index."""
from typing import Optional


class StoreIndexError(Exception):
    """Backing store failure during a tree mutation, query or reload."""
    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.original_exception = original_exception
