"""
validity/graph.py - Validity graph storage

Flat node table addressed by integer identity. Edges are stored as identity
sets on both endpoints, never as object references, so acyclicity is a
property of the identity graph alone.

Every traversal here is iterative. Graph depth is data-dependent and must
never translate into call-stack depth.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from typing import Dict, Iterator, List, Optional, Set
import logging

from .errors import CycleDetectedError, NodeInUseError, UnknownNodeError

logger = logging.getLogger(__name__)


# =============================================================================
# DIRECTIVES
# =============================================================================

class Directive(Enum):
    """Explicit instruction a client attaches to a node."""
    UNSET = "unset"
    EXPLICIT_VALID = "explicit_valid"
    EXPLICIT_INVALID = "explicit_invalid"   # A default only; a valid parent still wins


# =============================================================================
# NODE
# =============================================================================

@dataclass
class ValidityNode:
    """A node in the validity graph."""
    node_id: int
    label: Optional[str] = None

    directive: Directive = Directive.UNSET
    computed_valid: bool = False

    # Identity sets
    parents: Set[int] = field(default_factory=set)
    children: Set[int] = field(default_factory=set)

    # rank(parent) < rank(child) for every edge
    rank: int = 0

    def __hash__(self):
        return hash(self.node_id)

    @property
    def edge_count(self) -> int:
        return len(self.parents) + len(self.children)

    @property
    def display_name(self) -> str:
        return self.label or str(self.node_id)


# =============================================================================
# GRAPH
# =============================================================================

class ValidityGraph:
    """
    Directed acyclic graph of parent -> child validity influence.

    Owns node creation and removal and edge creation and removal. Rejects any
    edge that would close a cycle before the graph is touched.
    """

    def __init__(self):
        self._nodes: Dict[int, ValidityNode] = {}
        self._ids = count(1)
        self._edge_count = 0

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    def add_node(self, label: Optional[str] = None) -> ValidityNode:
        """Create a node with a fresh identity. Identities are never reused."""
        node = ValidityNode(node_id=next(self._ids), label=label)
        self._nodes[node.node_id] = node
        logger.debug(f"Added node {node.display_name} (id={node.node_id})")
        return node

    def remove_node(self, node_id: int) -> ValidityNode:
        """Remove a node. All of its edges must already be gone."""
        node = self.get_node(node_id)
        if node.edge_count:
            raise NodeInUseError(node_id, node.edge_count)
        del self._nodes[node_id]
        logger.debug(f"Removed node {node.display_name} (id={node_id})")
        return node

    def get_node(self, node_id: int) -> ValidityNode:
        """Get a node by identity."""
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def has_node(self, node_id: int) -> bool:
        return node_id in self._nodes

    def node_ids(self) -> List[int]:
        """All node identities in creation order."""
        return list(self._nodes)

    def nodes(self) -> Iterator[ValidityNode]:
        return iter(list(self._nodes.values()))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return self._edge_count

    # -------------------------------------------------------------------------
    # Edges
    # -------------------------------------------------------------------------

    def add_edge(self, parent: int, child: int) -> bool:
        """
        Add a parent -> child edge.

        Returns False if the edge already exists.

        Raises:
            UnknownNodeError: either endpoint is missing
            CycleDetectedError: the edge would make a node its own ancestor
        """
        parent_node = self.get_node(parent)
        child_node = self.get_node(child)

        if child in parent_node.children:
            return False

        cycle = self._cycle_through(parent_node, child_node)
        if cycle:
            raise CycleDetectedError(cycle)

        parent_node.children.add(child)
        child_node.parents.add(parent)
        self._edge_count += 1
        self._raise_ranks(parent_node, child_node)

        logger.debug(f"Added edge {parent_node.display_name} -> {child_node.display_name}")
        return True

    def remove_edge(self, parent: int, child: int) -> bool:
        """
        Remove a parent -> child edge. Returns False if it did not exist.

        Ranks are left alone: removing an edge cannot break rank(p) < rank(c).
        """
        parent_node = self.get_node(parent)
        child_node = self.get_node(child)

        if child not in parent_node.children:
            return False

        parent_node.children.discard(child)
        child_node.parents.discard(parent)
        self._edge_count -= 1

        logger.debug(f"Removed edge {parent_node.display_name} -> {child_node.display_name}")
        return True

    def has_edge(self, parent: int, child: int) -> bool:
        return child in self.get_node(parent).children

    def _cycle_through(self, parent: ValidityNode, child: ValidityNode) -> Optional[List[int]]:
        """Return the cycle parent -> child -> ... -> parent, or None."""
        if parent.node_id == child.node_id:
            return [parent.node_id, parent.node_id]

        # Every descendant of child outranks child
        if child.rank > parent.rank:
            return None

        path = self.find_path(child.node_id, parent.node_id)
        if path is None:
            return None
        return [parent.node_id] + path

    def _raise_ranks(self, parent: ValidityNode, child: ValidityNode) -> None:
        """Restore rank(p) < rank(c) below a new edge."""
        if child.rank > parent.rank:
            return

        child.rank = parent.rank + 1
        queue = deque([child])

        while queue:
            current = queue.popleft()
            for child_id in current.children:
                successor = self._nodes[child_id]
                if successor.rank <= current.rank:
                    successor.rank = current.rank + 1
                    queue.append(successor)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_parents(self, node_id: int) -> Set[int]:
        """Direct parents of a node."""
        return self.get_node(node_id).parents.copy()

    def get_children(self, node_id: int) -> Set[int]:
        """Direct children of a node."""
        return self.get_node(node_id).children.copy()

    def get_all_ancestors(self, node_id: int) -> Set[int]:
        """All upstream nodes (transitive closure)."""
        result = set()
        to_process = [node_id]
        self.get_node(node_id)

        while to_process:
            current = to_process.pop()
            for parent in self._nodes[current].parents:
                if parent not in result:
                    result.add(parent)
                    to_process.append(parent)

        return result

    def get_all_descendants(self, node_id: int) -> Set[int]:
        """All downstream nodes (transitive closure)."""
        result = set()
        to_process = [node_id]
        self.get_node(node_id)

        while to_process:
            current = to_process.pop()
            for child in self._nodes[current].children:
                if child not in result:
                    result.add(child)
                    to_process.append(child)

        return result

    def find_path(self, source: int, target: int) -> Optional[List[int]]:
        """Shortest child-edge path from source to target (BFS), or None."""
        self.get_node(source)
        self.get_node(target)

        if source == target:
            return [source]

        came_from: Dict[int, int] = {source: source}
        queue = deque([source])

        while queue:
            current = queue.popleft()
            for child in self._nodes[current].children:
                if child in came_from:
                    continue
                came_from[child] = current
                if child == target:
                    path = [target]
                    while path[-1] != source:
                        path.append(came_from[path[-1]])
                    path.reverse()
                    return path
                queue.append(child)

        return None

    def detect_cycles(self) -> List[List[int]]:
        """
        Scan the whole graph for cycles with an iterative DFS.

        add_edge already refuses cycles, so a non-empty result means the
        node table was corrupted.
        """
        cycles = []
        visited: Set[int] = set()

        for root in self._nodes:
            if root in visited:
                continue

            path: List[int] = [root]
            on_path: Set[int] = {root}
            stack = [iter(sorted(self._nodes[root].children))]
            visited.add(root)

            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue

                if child in on_path:
                    cycles.append(path[path.index(child):] + [child])
                elif child not in visited and child in self._nodes:
                    visited.add(child)
                    path.append(child)
                    on_path.add(child)
                    stack.append(iter(sorted(self._nodes[child].children)))

        return cycles

    def topological_order(self) -> List[int]:
        """All nodes, parents before children (Kahn's algorithm)."""
        in_degree = {n: len(node.parents) for n, node in self._nodes.items()}
        queue = deque(n for n, d in in_degree.items() if d == 0)
        order = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for child in sorted(self._nodes[current].children):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self._nodes):
            cycles = self.detect_cycles()
            raise CycleDetectedError(cycles[0] if cycles else [])

        return order
