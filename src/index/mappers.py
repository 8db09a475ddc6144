"""
Element mappers: the link between application elements and tree ids.

The R*-tree stores only integer element ids and envelopes. A mapper keeps the
other side: for each id, the element (string identifier, envelope count and
envelope) it stands for. Two backends share one contract:

- ByteArrayElementMapper keeps records in memory and persists them as one
  binary blob (a file, or nothing at all for purely in-memory trees).
- SQLElementMapper keeps records in a per-tree table of a relational database.

Passing None as the element to set_tree_identifier() deletes the record for
that id; that is the only deletion path.
"""
import logging
import os
import struct
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Set, Union

from sqlalchemy import delete, insert, inspect, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateSchema

from .database import element_table
from .envelope import Envelope
from .exceptions import StoreIndexError

logger = logging.getLogger(__name__)

# Returned by identifier lookups that miss
NOT_FOUND = -1

MAPPER_FILE_NAME = "mapper.bin"


@dataclass(frozen=True)
class IndexedElement:
    """Application-level element stored in the index."""
    identifier: str
    envelope: Envelope
    nbenv: int = 1


class TreeElementMapper:
    """Contract shared by all mapper backends."""

    def get_envelope(self, element: IndexedElement) -> Envelope:
        return element.envelope

    def get_tree_identifier(self, element: IndexedElement) -> int:
        """Tree id stored for the element's identifier, or NOT_FOUND."""
        raise NotImplementedError

    def set_tree_identifier(self, element: Optional[IndexedElement], tree_id: int) -> None:
        """Upsert the record for `tree_id`, or delete it when `element` is None."""
        raise NotImplementedError

    def get_object_from_tree_identifier(self, tree_id: int) -> Optional[IndexedElement]:
        raise NotImplementedError

    def get_full_map(self) -> Dict[int, IndexedElement]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        raise NotImplementedError

    def discard(self) -> None:
        """Release handles without writing pending changes."""
        self.close()

    def is_closed(self) -> bool:
        raise NotImplementedError


# =============================================================================
# Byte array backend
# =============================================================================

_MAPPER_MAGIC = 0x454D4150  # "EMAP"
_MAPPER_VERSION = 1.0
_MAPPER_HEADER = struct.Struct(">IdI")
_RECORD_HEAD = struct.Struct(">iiI")
_RECORD_ENV = struct.Struct(">4d")


def serialize_records(records: Dict[int, IndexedElement]) -> bytes:
    """Encode mapper records; envelope stored as minx, maxx, miny, maxy."""
    parts = [_MAPPER_HEADER.pack(_MAPPER_MAGIC, _MAPPER_VERSION, len(records))]
    for tree_id in sorted(records):
        element = records[tree_id]
        name = element.identifier.encode("utf-8")
        env = element.envelope
        parts.append(_RECORD_HEAD.pack(tree_id, element.nbenv, len(name)))
        parts.append(name)
        parts.append(_RECORD_ENV.pack(env.minx, env.maxx, env.miny, env.maxy))
    return b"".join(parts)


def deserialize_records(data: bytes) -> Dict[int, IndexedElement]:
    try:
        magic, version, count = _MAPPER_HEADER.unpack_from(data, 0)
        if magic != _MAPPER_MAGIC or version != _MAPPER_VERSION:
            raise StoreIndexError(f"Unknown mapper format {magic:#x} version {version}")
        offset = _MAPPER_HEADER.size
        records = {}
        for _ in range(count):
            tree_id, nbenv, name_len = _RECORD_HEAD.unpack_from(data, offset)
            offset += _RECORD_HEAD.size
            identifier = data[offset:offset + name_len].decode("utf-8")
            offset += name_len
            minx, maxx, miny, maxy = _RECORD_ENV.unpack_from(data, offset)
            offset += _RECORD_ENV.size
            records[tree_id] = IndexedElement(identifier, Envelope(minx, miny, maxx, maxy), nbenv)
    except (struct.error, UnicodeDecodeError, ValueError) as e:
        raise StoreIndexError("Corrupted mapper data", e) from e
    return records


class ByteArrayElementMapper(TreeElementMapper):
    """
    Records held in memory, persisted as one blob on flush.

    With `directory=None` nothing touches the disk; `to_bytes()` still gives
    the serialized form.
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.path = Path(directory) / MAPPER_FILE_NAME if directory is not None else None
        self._records: Dict[int, IndexedElement] = {}
        self._ids_by_identifier: Dict[str, Set[int]] = {}
        self._closed = False
        self._dirty = False
        if self.path is not None and self.path.exists():
            try:
                data = self.path.read_bytes()
            except OSError as e:
                raise StoreIndexError(f"Cannot read mapper file {self.path}", e) from e
            self._load(deserialize_records(data))

    def _load(self, records: Dict[int, IndexedElement]) -> None:
        self._records = dict(records)
        self._ids_by_identifier = {}
        for tree_id, element in records.items():
            self._ids_by_identifier.setdefault(element.identifier, set()).add(tree_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIndexError("Mapper is closed")

    def to_bytes(self) -> bytes:
        return serialize_records(self._records)

    def get_tree_identifier(self, element: IndexedElement) -> int:
        self._ensure_open()
        # An identifier stored under several ids resolves to the highest one
        ids = self._ids_by_identifier.get(element.identifier)
        return max(ids) if ids else NOT_FOUND

    def set_tree_identifier(self, element: Optional[IndexedElement], tree_id: int) -> None:
        self._ensure_open()
        previous = self._records.get(tree_id)
        if previous is not None:
            ids = self._ids_by_identifier[previous.identifier]
            ids.discard(tree_id)
            if not ids:
                del self._ids_by_identifier[previous.identifier]
        if element is None:
            self._records.pop(tree_id, None)
        else:
            self._records[tree_id] = element
            self._ids_by_identifier.setdefault(element.identifier, set()).add(tree_id)
        self._dirty = True

    def get_object_from_tree_identifier(self, tree_id: int) -> Optional[IndexedElement]:
        self._ensure_open()
        return self._records.get(tree_id)

    def get_full_map(self) -> Dict[int, IndexedElement]:
        self._ensure_open()
        return dict(self._records)

    def clear(self) -> None:
        self._ensure_open()
        self._records.clear()
        self._ids_by_identifier.clear()
        self._dirty = True

    def flush(self) -> None:
        self._ensure_open()
        if self.path is None or not self._dirty:
            return
        data = self.to_bytes()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".mapper-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StoreIndexError(f"Cannot write mapper file {self.path}", e) from e
        self._dirty = False

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True

    def discard(self) -> None:
        """Release without writing pending changes."""
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed


# =============================================================================
# SQL backend
# =============================================================================

class SQLElementMapper(TreeElementMapper):
    """
    Records in a relational table, one table per tree.

    Holds a single connection for its whole life; every operation runs in
    its own transaction, so flush() has nothing to do.
    """

    def __init__(self, engine: Engine, storage_path: Union[str, Path]):
        self.engine = engine
        self.storage_path = str(storage_path)
        self.table, self.schema = element_table(engine, self.storage_path)
        self._closed = False
        try:
            self._connection = engine.connect()
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Cannot connect for element table {self.table.fullname}", e) from e
        try:
            self._create_table()
        except SQLAlchemyError as e:
            self._connection.close()
            raise StoreIndexError(f"Cannot open element table {self.table.fullname}", e) from e

    def _create_table(self) -> None:
        with self._connection.begin():
            if self.schema is not None and not inspect(self._connection).has_schema(self.schema):
                self._connection.execute(CreateSchema(self.schema, if_not_exists=True))
                logger.info(f"Created index schema {self.schema}")
            self.table.create(self._connection, checkfirst=True)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIndexError("Mapper is closed")

    def _to_element(self, row) -> IndexedElement:
        return IndexedElement(
            identifier=row.identifier,
            envelope=Envelope(row.minx, row.miny, row.maxx, row.maxy),
            nbenv=row.nbenv,
        )

    def get_tree_identifier(self, element: IndexedElement) -> int:
        self._ensure_open()
        try:
            with self._connection.begin():
                row = self._connection.execute(
                    select(self.table.c.id)
                    .where(self.table.c.identifier == element.identifier)
                    .order_by(self.table.c.id.desc())
                    .limit(1)
                ).first()
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Lookup of element {element.identifier!r} failed", e) from e
        return row.id if row is not None else NOT_FOUND

    def set_tree_identifier(self, element: Optional[IndexedElement], tree_id: int) -> None:
        self._ensure_open()
        try:
            with self._connection.begin():
                if element is None:
                    self._connection.execute(delete(self.table).where(self.table.c.id == tree_id))
                    return

                env = element.envelope
                values = {
                    "identifier": element.identifier,
                    "nbenv": element.nbenv,
                    "minx": env.minx,
                    "maxx": env.maxx,
                    "miny": env.miny,
                    "maxy": env.maxy,
                }
                exists = self._connection.execute(
                    select(self.table.c.id).where(self.table.c.id == tree_id)
                ).first()
                if exists is None:
                    self._connection.execute(insert(self.table).values(id=tree_id, **values))
                else:
                    self._connection.execute(
                        update(self.table).where(self.table.c.id == tree_id).values(**values)
                    )
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Writing record {tree_id} failed", e) from e

    def get_object_from_tree_identifier(self, tree_id: int) -> Optional[IndexedElement]:
        self._ensure_open()
        try:
            with self._connection.begin():
                row = self._connection.execute(
                    select(self.table).where(self.table.c.id == tree_id)
                ).first()
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Reading record {tree_id} failed", e) from e
        return self._to_element(row) if row is not None else None

    def get_full_map(self) -> Dict[int, IndexedElement]:
        self._ensure_open()
        try:
            with self._connection.begin():
                rows = self._connection.execute(select(self.table).order_by(self.table.c.id)).all()
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Reading {self.table.fullname} failed", e) from e
        return {row.id: self._to_element(row) for row in rows}

    def clear(self) -> None:
        self._ensure_open()
        try:
            with self._connection.begin():
                self._connection.execute(delete(self.table))
        except SQLAlchemyError as e:
            raise StoreIndexError(f"Clearing {self.table.fullname} failed", e) from e

    def flush(self) -> None:
        self._ensure_open()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connection.close()

    def is_closed(self) -> bool:
        return self._closed
