"""
Serialized tree storage.

The tree is stored as a single versioned binary blob:

    header   magic (uint32), version (float64), max_elements, root_id,
             next_node_id, next_element_id (int32 each), node count (uint32)
    node     node_id, parent_id, level (int32), child count (uint32),
             has_envelope (uint8), minx, miny, maxx, maxy (float64)
    children internal: child node id (int32) per child
             leaf: element id (int32) + minx, miny, maxx, maxy (float64) per entry

All values big-endian. Two stores share the codec: a file on disk written
atomically, and an in-memory byte array.
"""
import logging
import math
import os
import struct
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

from .envelope import Envelope
from .exceptions import StoreIndexError
from .node import Entry, Node, TreeState

logger = logging.getLogger(__name__)

MAGIC_NUMBER = 0x53545254  # "STRT"
VERSION_NUMBER = 1.0

TREE_FILE_NAME = "tree.bin"

_HEADER = struct.Struct(">IdiiiiI")
_NODE = struct.Struct(">iiiIB4d")
_CHILD = struct.Struct(">i")
_ENTRY = struct.Struct(">i4d")


def serialize_tree(state: TreeState) -> bytes:
    """Encode a tree state to bytes."""
    parts = [_HEADER.pack(
        MAGIC_NUMBER, VERSION_NUMBER, state.max_elements, state.root_id,
        state.next_node_id, state.next_element_id, len(state.nodes)
    )]
    for node_id in sorted(state.nodes):
        node = state.nodes[node_id]
        env = node.envelope
        coords = env.as_tuple() if env is not None else (math.nan,) * 4
        parts.append(_NODE.pack(
            node.node_id, node.parent_id, node.level, len(node.children),
            1 if env is not None else 0, *coords
        ))
        if node.is_leaf:
            for entry in node.children:
                parts.append(_ENTRY.pack(entry.element_id, *entry.envelope.as_tuple()))
        else:
            for child_id in node.children:
                parts.append(_CHILD.pack(child_id))
    return b"".join(parts)


def deserialize_tree(data: bytes) -> TreeState:
    """
    Decode bytes produced by serialize_tree().

    Raises:
        StoreIndexError: On a wrong magic number, version or truncated data
    """
    try:
        magic, version, max_elements, root_id, next_node_id, next_element_id, count = \
            _HEADER.unpack_from(data, 0)
        if magic != MAGIC_NUMBER:
            raise StoreIndexError(f"Unknown tree format, magic number {magic:#x}")
        if version != VERSION_NUMBER:
            raise StoreIndexError(
                f"Wrong tree version. Expected: {VERSION_NUMBER}. Found: {version}"
            )
        offset = _HEADER.size
        nodes: Dict[int, Node] = {}
        for _ in range(count):
            node_id, parent_id, level, child_count, has_env, minx, miny, maxx, maxy = \
                _NODE.unpack_from(data, offset)
            offset += _NODE.size
            node = Node(
                node_id=node_id,
                level=level,
                parent_id=parent_id,
                envelope=Envelope(minx, miny, maxx, maxy) if has_env else None,
            )
            for _ in range(child_count):
                if level == 0:
                    element_id, eminx, eminy, emaxx, emaxy = _ENTRY.unpack_from(data, offset)
                    offset += _ENTRY.size
                    node.children.append(Entry(element_id, Envelope(eminx, eminy, emaxx, emaxy)))
                else:
                    (child_id,) = _CHILD.unpack_from(data, offset)
                    offset += _CHILD.size
                    node.children.append(child_id)
            nodes[node_id] = node
        if offset != len(data):
            raise StoreIndexError(f"Trailing bytes in tree data: {len(data) - offset}")
    except (struct.error, ValueError) as e:
        raise StoreIndexError("Corrupted tree data", e) from e

    if root_id not in nodes:
        raise StoreIndexError(f"Root node {root_id} missing from tree data")
    return TreeState(max_elements, root_id, next_node_id, next_element_id, nodes)


class TreeAccess:
    """Where a tree's serialized state lives."""

    def read(self) -> Optional[TreeState]:
        """Stored state, or None if nothing was stored yet."""
        raise NotImplementedError

    def write(self, state: TreeState) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryTreeAccess(TreeAccess):
    """Keeps the serialized tree in a byte array."""

    def __init__(self, data: Optional[bytes] = None):
        self.data = data

    def read(self) -> Optional[TreeState]:
        if not self.data:
            return None
        return deserialize_tree(self.data)

    def write(self, state: TreeState) -> None:
        self.data = serialize_tree(state)

    def clear(self) -> None:
        self.data = None


class FileTreeAccess(TreeAccess):
    """Keeps the serialized tree in `<directory>/tree.bin`."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.path = self.directory / TREE_FILE_NAME

    def read(self) -> Optional[TreeState]:
        if not self.path.exists():
            return None
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise StoreIndexError(f"Cannot read tree file {self.path}", e) from e
        return deserialize_tree(data)

    def write(self, state: TreeState) -> None:
        data = serialize_tree(state)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Write to a temp file and swap it in, so readers never see half a tree
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tree-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StoreIndexError(f"Cannot write tree file {self.path}", e) from e
        logger.debug(f"Wrote {len(state.nodes)} nodes ({len(data)} bytes) to {self.path}")

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreIndexError(f"Cannot remove tree file {self.path}", e) from e
