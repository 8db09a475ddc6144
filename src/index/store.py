"""
Opening an index: picks the element mapper backend from configuration.

    tree = open_index("data/roads")                 # byte array mapper
    tree = open_index("data/roads", backend="sql")  # configured database
"""
import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from .database import get_engine
from .exceptions import StoreIndexError
from .mappers import ByteArrayElementMapper, SQLElementMapper, TreeElementMapper
from .rtree import DEFAULT_MAX_ELEMENTS, StarRTree
from .tree_access import FileTreeAccess

load_dotenv()

BACKEND_BYTES = "bytes"
BACKEND_SQL = "sql"
BACKENDS = (BACKEND_BYTES, BACKEND_SQL)

INDEX_MAPPER_BACKEND = os.getenv("INDEX_MAPPER_BACKEND", BACKEND_BYTES)
INDEX_MAX_ELEMENTS = int(os.getenv("INDEX_MAX_ELEMENTS", str(DEFAULT_MAX_ELEMENTS)))

logger = logging.getLogger(__name__)


def create_mapper(
    storage_path: Union[str, Path],
    backend: str = INDEX_MAPPER_BACKEND,
    engine: Optional[Engine] = None
) -> TreeElementMapper:
    """
    Element mapper for the tree stored at `storage_path`.

    Raises:
        StoreIndexError: Unknown backend, or SQL requested with no database configured
    """
    if backend == BACKEND_BYTES:
        return ByteArrayElementMapper(storage_path)
    if backend == BACKEND_SQL:
        engine = engine or get_engine()
        if engine is None:
            raise StoreIndexError("SQL mapper requested but no index database is configured")
        return SQLElementMapper(engine, Path(storage_path).resolve())
    raise StoreIndexError(f"Unknown mapper backend {backend!r}, expected one of {BACKENDS}")


def open_index(
    storage_path: Union[str, Path],
    backend: Optional[str] = None,
    engine: Optional[Engine] = None,
    max_elements: int = INDEX_MAX_ELEMENTS
) -> StarRTree:
    """Open (or create) the tree stored under `storage_path`."""
    backend = backend or INDEX_MAPPER_BACKEND
    mapper = create_mapper(storage_path, backend, engine)
    try:
        tree = StarRTree(FileTreeAccess(storage_path), mapper, max_elements)
    except Exception:
        mapper.discard()
        raise
    logger.info(f"Opened index at {storage_path} ({backend} mapper, {len(tree)} elements)")
    return tree
