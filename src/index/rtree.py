"""
R*-tree over 2-D envelopes with pluggable persistence.

The tree keeps its nodes in memory and persists them through a TreeAccess
(file or byte array). Application elements go through a TreeElementMapper,
which hands out the integer ids stored in the leaves.

Insertion follows the R* strategy:
- choose-subtree by least overlap enlargement just above the leaves, least
  area enlargement higher up
- on overflow, reinsert the 30% entries farthest from the node center,
  once per level and insertion; split only if the level was already done
- split on the axis with the smallest margin sum, at the distribution with
  the least overlap, then least area

Removal condenses underfull nodes by dropping them and reinserting all the
entries they held.

Lifecycle: open (state loaded) -> insert/remove/search/flush -> closed.
"""
import heapq
import itertools
import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from .envelope import Envelope, union_all
from .exceptions import StoreIndexError
from .mappers import NOT_FOUND, IndexedElement, TreeElementMapper
from .node import NO_NODE, Entry, Node, TreeState, recompute_envelope
from .tree_access import TreeAccess

logger = logging.getLogger(__name__)

DEFAULT_MAX_ELEMENTS = 16
MIN_FILL_RATIO = 0.4
REINSERT_RATIO = 0.3

Item = Union[int, Entry]


class StarRTree:
    """Persistent R*-tree mapping element ids to envelopes."""

    def __init__(
        self,
        tree_access: TreeAccess,
        mapper: TreeElementMapper,
        max_elements: int = DEFAULT_MAX_ELEMENTS
    ):
        if max_elements < 4:
            raise ValueError(f"max_elements must be at least 4, got: {max_elements}")
        self.tree_access = tree_access
        self.mapper = mapper
        self._closed = False

        state = tree_access.read()
        if state is None:
            self._reset(max_elements)
            existing = mapper.get_full_map()
            if existing:
                logger.info(f"No stored tree, rebuilding from {len(existing)} mapped elements")
                self._rebuild(existing)
        else:
            self._load(state)
            self._reconcile()
            logger.debug(f"Opened tree with {len(self._nodes)} nodes, height {self.height}")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _reset(self, max_elements: int) -> None:
        self.max_elements = max_elements
        self.min_elements = max(2, int(max_elements * MIN_FILL_RATIO))
        self._nodes: Dict[int, Node] = {}
        self._next_node_id = 1
        self._next_element_id = 1
        self._count = 0
        root = self._new_node(level=0)
        self._root_id = root.node_id

    def _load(self, state: TreeState) -> None:
        self.max_elements = state.max_elements
        self.min_elements = max(2, int(state.max_elements * MIN_FILL_RATIO))
        self._nodes = state.nodes
        self._root_id = state.root_id
        self._next_node_id = state.next_node_id
        self._next_element_id = state.next_element_id
        self._count = sum(len(n.children) for n in self._nodes.values() if n.is_leaf)

    def _rebuild(self, elements: Dict[int, IndexedElement]) -> None:
        for element_id in sorted(elements):
            envelope = self.mapper.get_envelope(elements[element_id])
            self._insert_item(Entry(element_id, envelope), 0, set())
            self._count += 1
        self._next_element_id = max(elements) + 1

    def _reconcile(self) -> None:
        """
        Align a loaded tree with its mapper.

        A mapper that writes through (SQL) can be ahead of the last stored
        tree. Entries follow the mapper records, and the id counter is moved
        past every mapped id.
        """
        records = self.mapper.get_full_map()
        stored = {
            entry.element_id: entry.envelope
            for node in self.walk() if node.is_leaf
            for entry in node.children
        }
        dropped = added = 0
        for element_id, envelope in stored.items():
            element = records.get(element_id)
            if element is None or self.mapper.get_envelope(element) != envelope:
                self._remove_entry(element_id, envelope)
                dropped += 1
        for element_id, element in records.items():
            envelope = self.mapper.get_envelope(element)
            if stored.get(element_id) != envelope:
                self._insert_item(Entry(element_id, envelope), 0, set())
                self._count += 1
                added += 1
        if records:
            self._next_element_id = max(self._next_element_id, max(records) + 1)
        if dropped or added:
            logger.warning(f"Stored tree was behind its mapper: dropped {dropped} entries, added {added}")

    def state(self) -> TreeState:
        return TreeState(
            max_elements=self.max_elements,
            root_id=self._root_id,
            next_node_id=self._next_node_id,
            next_element_id=self._next_element_id,
            nodes=self._nodes,
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIndexError("Tree is closed")

    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._count

    @property
    def root(self) -> Node:
        return self._nodes[self._root_id]

    @property
    def height(self) -> int:
        return self.root.level + 1

    def walk(self) -> Iterator[Node]:
        """All nodes, top-down."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            if not node.is_leaf:
                stack.extend(self._nodes[c] for c in node.children)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def insert(self, element: IndexedElement) -> int:
        """
        Insert or re-insert an element.

        An element whose identifier is already mapped keeps its id and has
        its old entry replaced.

        Returns:
            The element's tree id
        """
        self._ensure_open()
        envelope = self.mapper.get_envelope(element)
        element_id = self.mapper.get_tree_identifier(element)
        if element_id == NOT_FOUND:
            element_id = self._next_element_id
            self._next_element_id += 1
        else:
            previous = self.mapper.get_object_from_tree_identifier(element_id)
            if previous is not None:
                self._remove_entry(element_id, self.mapper.get_envelope(previous))

        self._insert_item(Entry(element_id, envelope), 0, set())
        self._count += 1
        self.mapper.set_tree_identifier(element, element_id)
        return element_id

    def remove(self, element: IndexedElement) -> bool:
        """Remove an element by identifier. Returns False if it was not indexed."""
        self._ensure_open()
        element_id = self.mapper.get_tree_identifier(element)
        if element_id == NOT_FOUND:
            return False
        stored = self.mapper.get_object_from_tree_identifier(element_id)
        envelope = self.mapper.get_envelope(stored if stored is not None else element)
        return self.remove_id(element_id, envelope)

    def remove_id(self, element_id: int, envelope: Envelope) -> bool:
        """Remove the entry for `element_id` stored under `envelope`, and its mapper record."""
        self._ensure_open()
        removed = self._remove_entry(element_id, envelope)
        if removed:
            self.mapper.set_tree_identifier(None, element_id)
        return removed

    def search_id(self, envelope: Envelope) -> List[int]:
        """Ids of all elements whose envelope intersects `envelope`."""
        return list(self.search(envelope))

    def search(self, envelope: Envelope) -> Iterator[int]:
        """Lazy variant of search_id(); stops walking when the consumer stops."""
        self._ensure_open()
        return self._search(envelope)

    def _search(self, envelope: Envelope) -> Iterator[int]:
        root = self.root
        if root.envelope is None or not root.envelope.intersects(envelope):
            return
        stack = [root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                for entry in node.children:
                    if entry.envelope.intersects(envelope):
                        yield entry.element_id
            else:
                for child_id in node.children:
                    child = self._nodes[child_id]
                    if child.envelope is not None and child.envelope.intersects(envelope):
                        stack.append(child)

    def search_elements(self, envelope: Envelope) -> Iterator[IndexedElement]:
        """Mapped elements intersecting `envelope`."""
        for element_id in self.search(envelope):
            element = self.mapper.get_object_from_tree_identifier(element_id)
            if element is not None:
                yield element

    def nearest(self, x: float, y: float, k: int = 1) -> List[int]:
        """The `k` element ids closest to (x, y), nearest first."""
        self._ensure_open()
        if k < 1:
            raise ValueError(f"k must be positive, got: {k}")
        root = self.root
        if root.envelope is None:
            return []
        counter = itertools.count()
        heap: List[Tuple[float, int, bool, Union[Node, Entry]]] = [
            (root.envelope.min_distance(x, y), next(counter), False, root)
        ]
        result = []
        while heap and len(result) < k:
            _, _, is_entry, item = heapq.heappop(heap)
            if is_entry:
                result.append(item.element_id)
            elif item.is_leaf:
                for entry in item.children:
                    heapq.heappush(heap, (entry.envelope.min_distance(x, y), next(counter), True, entry))
            else:
                for child_id in item.children:
                    child = self._nodes[child_id]
                    if child.envelope is not None:
                        heapq.heappush(heap, (child.envelope.min_distance(x, y), next(counter), False, child))
        return result

    def clear(self) -> None:
        """Drop every element and mapper record."""
        self._ensure_open()
        self.mapper.clear()
        self._reset(self.max_elements)

    def flush(self) -> None:
        """Persist the tree and the mapper."""
        self._ensure_open()
        self.tree_access.write(self.state())
        self.mapper.flush()

    def close(self, flush: bool = True) -> None:
        """
        Release handles. With `flush=False` pending changes are dropped, which
        is what a reader does before swapping in a freshly loaded tree.
        """
        if self._closed:
            return
        try:
            if flush:
                self.flush()
                self.mapper.close()
            else:
                self.mapper.discard()
            self.tree_access.close()
        finally:
            self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # -------------------------------------------------------------------------
    # Insertion
    # -------------------------------------------------------------------------

    def _new_node(self, level: int, parent_id: int = NO_NODE) -> Node:
        node = Node(node_id=self._next_node_id, level=level, parent_id=parent_id)
        self._next_node_id += 1
        self._nodes[node.node_id] = node
        return node

    def _item_envelope(self, item: Item) -> Envelope:
        if isinstance(item, Entry):
            return item.envelope
        return self._nodes[item].envelope

    def _attach(self, node: Node, item: Item) -> None:
        node.children.append(item)
        if not isinstance(item, Entry):
            self._nodes[item].parent_id = node.node_id

    def _insert_item(self, item: Item, level: int, reinserted: Set[int]) -> None:
        envelope = self._item_envelope(item)
        node = self._choose_subtree(envelope, level)
        self._attach(node, item)
        self._enlarge_upwards(node, envelope)
        if len(node.children) > self.max_elements:
            self._overflow(node, reinserted)

    def _choose_subtree(self, envelope: Envelope, level: int) -> Node:
        node = self.root
        while node.level > level:
            children = [self._nodes[c] for c in node.children]
            if node.level == 1:
                node = min(children, key=lambda c: (
                    self._overlap_enlargement(c, children, envelope),
                    self._enlargement(c, envelope),
                    self._area(c),
                ))
            else:
                node = min(children, key=lambda c: (self._enlargement(c, envelope), self._area(c)))
        return node

    @staticmethod
    def _area(node: Node) -> float:
        return node.envelope.area if node.envelope is not None else 0.0

    @staticmethod
    def _enlargement(node: Node, envelope: Envelope) -> float:
        if node.envelope is None:
            return envelope.area
        return node.envelope.enlargement(envelope)

    @staticmethod
    def _overlap_enlargement(node: Node, siblings: List[Node], envelope: Envelope) -> float:
        if node.envelope is None:
            return 0.0
        grown = node.envelope.union(envelope)
        before = after = 0.0
        for other in siblings:
            if other is node or other.envelope is None:
                continue
            before += node.envelope.overlap(other.envelope)
            after += grown.overlap(other.envelope)
        return after - before

    def _enlarge_upwards(self, node: Node, envelope: Envelope) -> None:
        while True:
            node.envelope = envelope if node.envelope is None else node.envelope.union(envelope)
            if node.parent_id == NO_NODE:
                return
            node = self._nodes[node.parent_id]

    def _tighten_upwards(self, node: Node) -> None:
        while True:
            node.envelope = recompute_envelope(node, self._nodes)
            if node.parent_id == NO_NODE:
                return
            node = self._nodes[node.parent_id]

    def _overflow(self, node: Node, reinserted: Set[int]) -> None:
        if node.node_id != self._root_id and node.level not in reinserted:
            reinserted.add(node.level)
            self._reinsert(node, reinserted)
        else:
            self._split(node, reinserted)

    def _reinsert(self, node: Node, reinserted: Set[int]) -> None:
        cx, cy = node.envelope.center

        def distance(item: Item) -> float:
            ix, iy = self._item_envelope(item).center
            return (ix - cx) ** 2 + (iy - cy) ** 2

        ordered = sorted(node.children, key=distance, reverse=True)
        count = max(1, int(round(len(ordered) * REINSERT_RATIO)))
        removed, node.children = ordered[:count], ordered[count:]
        self._tighten_upwards(node)
        # Close reinsert: nearest of the removed first
        for item in reversed(removed):
            self._insert_item(item, node.level, reinserted)

    def _split(self, node: Node, reinserted: Set[int]) -> None:
        group1, group2 = self._choose_split(node.children)
        sibling = self._new_node(level=node.level, parent_id=node.parent_id)
        node.children = []
        for item in group1:
            self._attach(node, item)
        for item in group2:
            self._attach(sibling, item)
        node.envelope = recompute_envelope(node, self._nodes)
        sibling.envelope = recompute_envelope(sibling, self._nodes)

        if node.node_id == self._root_id:
            new_root = self._new_node(level=node.level + 1)
            self._attach(new_root, node.node_id)
            self._attach(new_root, sibling.node_id)
            new_root.envelope = node.envelope.union(sibling.envelope)
            self._root_id = new_root.node_id
            return

        parent = self._nodes[node.parent_id]
        self._attach(parent, sibling.node_id)
        if len(parent.children) > self.max_elements:
            self._overflow(parent, reinserted)

    def _choose_split(self, items: List[Item]) -> Tuple[List[Item], List[Item]]:
        m = self.min_elements
        boxes = [(item, self._item_envelope(item)) for item in items]
        candidates = len(boxes) - 2 * m + 1

        def sortings(axis: int):
            if axis == 0:
                yield sorted(boxes, key=lambda b: (b[1].minx, b[1].maxx))
                yield sorted(boxes, key=lambda b: (b[1].maxx, b[1].minx))
            else:
                yield sorted(boxes, key=lambda b: (b[1].miny, b[1].maxy))
                yield sorted(boxes, key=lambda b: (b[1].maxy, b[1].miny))

        def distributions(axis: int):
            for ordered in sortings(axis):
                for i in range(candidates):
                    split_at = m + i
                    left, right = ordered[:split_at], ordered[split_at:]
                    yield left, right, union_all(e for _, e in left), union_all(e for _, e in right)

        # Axis with the smallest total margin
        best_axis = min((0, 1), key=lambda axis: sum(
            left_env.margin + right_env.margin for _, _, left_env, right_env in distributions(axis)
        ))
        left, right, _, _ = min(
            distributions(best_axis),
            key=lambda d: (d[2].overlap(d[3]), d[2].area + d[3].area)
        )
        return [item for item, _ in left], [item for item, _ in right]

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def _find_leaf(self, element_id: int, envelope: Envelope) -> Optional[Node]:
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.envelope is None or not node.envelope.intersects(envelope):
                continue
            if node.is_leaf:
                if any(e.element_id == element_id for e in node.children):
                    return node
            else:
                stack.extend(self._nodes[c] for c in node.children)
        return None

    def _remove_entry(self, element_id: int, envelope: Envelope) -> bool:
        leaf = self._find_leaf(element_id, envelope)
        if leaf is None:
            return False
        leaf.children = [e for e in leaf.children if e.element_id != element_id]
        self._count -= 1
        self._condense(leaf)
        return True

    def _collect_entries(self, node: Node, out: List[Entry]) -> None:
        """Move every entry under `node` into `out` and drop the subtree's nodes."""
        stack = [node]
        while stack:
            current = stack.pop()
            del self._nodes[current.node_id]
            if current.is_leaf:
                out.extend(current.children)
            else:
                stack.extend(self._nodes[c] for c in current.children)

    def _condense(self, leaf: Node) -> None:
        orphans: List[Entry] = []
        node = leaf
        while node.node_id != self._root_id:
            parent = self._nodes[node.parent_id]
            if len(node.children) < self.min_elements:
                parent.children.remove(node.node_id)
                self._collect_entries(node, orphans)
            else:
                node.envelope = recompute_envelope(node, self._nodes)
            node = parent

        root = self.root
        if not root.is_leaf and not root.children:
            # Every branch was dissolved: start over from an empty leaf
            root.level = 0
        root.envelope = recompute_envelope(root, self._nodes)
        self._shrink_root()

        for entry in orphans:
            self._insert_item(entry, 0, set())

    def _shrink_root(self) -> None:
        root = self.root
        while not root.is_leaf and len(root.children) == 1:
            child = self._nodes[root.children[0]]
            del self._nodes[root.node_id]
            child.parent_id = NO_NODE
            self._root_id = child.node_id
            root = child
