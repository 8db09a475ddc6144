"""
Refreshing tree wrapper.

Several processes may write the same stored index. A wrapper re-reads the
stored tree once its copy is older than the refresh interval (5 minutes by
default), before serving the next operation. Readers can therefore see a
state up to one interval old; that window is accepted, there is no locking
across processes.

The reload runs inline on the calling thread. The new tree is fully loaded
before it replaces the old one, so callers never see a half-loaded tree. A
failed reload fails the call that triggered it; stale data is never served
in its place.
"""
import logging
import os
import threading
import time
from typing import Callable, Iterator, List

from dotenv import load_dotenv

from src.api import metrics

from .envelope import Envelope
from .exceptions import StoreIndexError
from .mappers import IndexedElement
from .rtree import StarRTree

load_dotenv()

INDEX_REFRESH_SECONDS = float(os.getenv("INDEX_REFRESH_SECONDS", "300"))

logger = logging.getLogger(__name__)


class RefreshingTreeWrapper:
    """Owns one tree at a time and swaps in a fresh one when stale."""

    def __init__(
        self,
        opener: Callable[[], StarRTree],
        refresh_interval: float = INDEX_REFRESH_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self._opener = opener
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._lock = threading.RLock()
        self._closed = False
        self._tree = self._open()
        self._last_refresh = clock()

    def _open(self) -> StarRTree:
        try:
            return self._opener()
        except StoreIndexError:
            raise
        except Exception as e:
            raise StoreIndexError("Failed to load index from backing store", e) from e

    @property
    def tree(self) -> StarRTree:
        return self._tree

    @property
    def last_refresh(self) -> float:
        return self._last_refresh

    def is_stale(self) -> bool:
        return self._clock() - self._last_refresh >= self.refresh_interval

    def refresh(self) -> None:
        """Reload the tree from storage now."""
        with self._lock:
            self._ensure_open()
            try:
                fresh = self._open()
            except StoreIndexError:
                metrics.index_reloads_total.labels(status="error").inc()
                logger.error("Index reload failed")
                raise
            old, self._tree = self._tree, fresh
            self._last_refresh = self._clock()
            # Everything this wrapper wrote was already flushed
            old.close(flush=False)
            metrics.index_reloads_total.labels(status="success").inc()
            logger.info(f"Reloaded index ({len(fresh)} elements)")

    def _current(self) -> StarRTree:
        with self._lock:
            self._ensure_open()
            if self.is_stale():
                self.refresh()
            return self._tree

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIndexError("Index wrapper is closed")

    # -------------------------------------------------------------------------
    # Tree operations
    # -------------------------------------------------------------------------

    def insert(self, element: IndexedElement) -> int:
        with self._lock:
            tree = self._current()
            element_id = tree.insert(element)
            tree.flush()
            return element_id

    def remove(self, element: IndexedElement) -> bool:
        with self._lock:
            tree = self._current()
            removed = tree.remove(element)
            if removed:
                tree.flush()
            return removed

    def search_id(self, envelope: Envelope) -> List[int]:
        with self._lock:
            return self._current().search_id(envelope)

    def search(self, envelope: Envelope) -> Iterator[int]:
        # The iterator keeps the tree it started on, even across a reload
        return self._current().search(envelope)

    def search_elements(self, envelope: Envelope) -> List[IndexedElement]:
        with self._lock:
            return list(self._current().search_elements(envelope))

    def nearest(self, x: float, y: float, k: int = 1) -> List[int]:
        with self._lock:
            return self._current().nearest(x, y, k)

    def get_element(self, element_id: int):
        with self._lock:
            return self._current().mapper.get_object_from_tree_identifier(element_id)

    def flush(self) -> None:
        with self._lock:
            self._ensure_open()
            self._tree.flush()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._tree.close()

    def is_closed(self) -> bool:
        return self._closed
