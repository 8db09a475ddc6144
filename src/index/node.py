"""In-memory node structures of the R*-tree."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .envelope import Envelope, union_all

# Node id 0 means "no node" (no parent)
NO_NODE = 0


@dataclass(frozen=True)
class Entry:
    """Leaf entry: a mapped element id and its envelope."""
    element_id: int
    envelope: Envelope


@dataclass
class Node:
    """
    Tree node. Level 0 nodes are leaves holding Entry objects; higher levels
    hold the ids of their child nodes.
    """
    node_id: int
    level: int
    parent_id: int = NO_NODE
    envelope: Optional[Envelope] = None
    children: List[Union[int, Entry]] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return self.level == 0


@dataclass
class TreeState:
    """Everything needed to rebuild a tree: what the tree access persists."""
    max_elements: int
    root_id: int
    next_node_id: int
    next_element_id: int
    nodes: Dict[int, Node]


def recompute_envelope(node: Node, nodes: Dict[int, Node]) -> Optional[Envelope]:
    """Tight envelope of a node's children."""
    if node.is_leaf:
        return union_all(entry.envelope for entry in node.children)
    return union_all(nodes[child_id].envelope for child_id in node.children
                     if nodes[child_id].envelope is not None)
