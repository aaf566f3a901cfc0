"""
validity/engine.py - Validity propagation engine

Keeps every node's cached validity consistent with

    valid(n) = directive(n) is EXPLICIT_VALID or any(valid(p) for p in parents(n))

after directive and edge changes. Changes are propagated by a driver loop
over an explicit work queue ("mark and skip"): check() never calls itself on
children, it only tells the driver which children to enqueue. Stack depth
is therefore constant no matter how deep the graph is.

The work queue is ordered by topological rank and is FIFO within a rank. A
node is popped only once every parent that can still change in the run has
settled, so each node is checked at most once per run and a run costs
O(V + E) even when many paths converge on the same node.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from heapq import heappop, heappush
from itertools import count
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
import logging
import threading
import time
import uuid

from .config import EngineConfig
from .errors import (
    CycleDetectedError,
    GraphCorruptedError,
    PropagationInProgressError,
    UnknownNodeError,
)
from .graph import Directive, ValidityGraph, ValidityNode

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[int, bool], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PROPAGATION RESULT
# =============================================================================

@dataclass
class PropagationResult:
    """Record of one driver run."""
    run_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    seeds: List[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    # Nodes checked, in processing order
    checks: List[int] = field(default_factory=list)
    check_counts: Dict[int, int] = field(default_factory=dict)

    # Nodes whose cached validity flipped, with the new value
    changed: Dict[int, bool] = field(default_factory=dict)

    duration_ms: float = 0.0

    @property
    def check_count(self) -> int:
        return len(self.checks)

    @property
    def changed_count(self) -> int:
        return len(self.changed)

    def record_check(self, node_id: int) -> None:
        self.checks.append(node_id)
        self.check_counts[node_id] = self.check_counts.get(node_id, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        return {
            "run_id": self.run_id,
            "seeds": list(self.seeds),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "checks": list(self.checks),
            "changed": {str(k): v for k, v in self.changed.items()},
            "check_count": self.check_count,
            "changed_count": self.changed_count,
            "duration_ms": self.duration_ms,
        }


# =============================================================================
# VALIDITY ENGINE
# =============================================================================

class ValidityEngine:
    """
    Directive / validity engine over a ValidityGraph.

    All public operations hold one re-entrant lock per engine. A driver run
    always finishes before the call that started it returns; there is no
    cancellation. Change callbacks run while the run is still marked active,
    so a callback cannot start a second, interleaved run.
    """

    def __init__(
        self,
        graph: Optional[ValidityGraph] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._graph = graph if graph is not None else ValidityGraph()
        self._config = config or EngineConfig()

        self._lock = threading.RLock()
        self._current_run: Optional[str] = None

        # Seeds waiting for the next run; dict keeps insertion order
        self._pending: Dict[int, None] = {}
        self._batch_depth = 0

        self._history: List[PropagationResult] = []
        self._on_change_callbacks: List[ChangeCallback] = []

        if len(self._graph):
            # Adopted graph: caches were not derived by this engine
            self.recompute_all()

    @property
    def graph(self) -> ValidityGraph:
        return self._graph

    @property
    def config(self) -> EngineConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._graph)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._graph

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def add_node(self, parents: Iterable[int] = (), label: Optional[str] = None) -> int:
        """
        Create a node and return its identity.

        The directive starts UNSET; validity is derived from the initial
        parents. A new node has no children, so nothing else can change.
        """
        parents = list(parents)
        with self._lock:
            self._guard_mutation()
            for parent in parents:
                self._graph.get_node(parent)

            node = self._graph.add_node(label=label)
            for parent in parents:
                self._graph.add_edge(parent, node.node_id)

            node.computed_valid = self._derive(node)
            return node.node_id

    def remove_node(self, node_id: int) -> None:
        """Destroy a node. Its edges must have been removed first."""
        with self._lock:
            self._guard_mutation()
            self._graph.remove_node(node_id)
            self._pending.pop(node_id, None)

    def add_edge(self, parent: int, child: int) -> bool:
        """
        Add a parent -> child edge and re-derive the affected region.

        Raises CycleDetectedError before anything is changed if the edge
        would close a cycle. Returns False if the edge already existed.
        """
        with self._lock:
            self._guard_mutation()
            added = self._graph.add_edge(parent, child)
            if added:
                self._schedule([child])
            return added

    def remove_edge(self, parent: int, child: int) -> bool:
        """Remove a parent -> child edge and re-derive the affected region."""
        with self._lock:
            self._guard_mutation()
            removed = self._graph.remove_edge(parent, child)
            if removed:
                self._schedule([child])
            return removed

    # -------------------------------------------------------------------------
    # Directives
    # -------------------------------------------------------------------------

    def set_valid(self, node_id: int) -> None:
        """Mark a node explicitly valid and propagate to its descendants."""
        self._set_directive(node_id, Directive.EXPLICIT_VALID)

    def set_invalid(self, node_id: int) -> None:
        """
        Mark a node explicitly invalid and propagate to its descendants.

        The node stays valid while any parent is valid.
        """
        self._set_directive(node_id, Directive.EXPLICIT_INVALID)

    def clear_directive(self, node_id: int) -> None:
        """Return a node to UNSET and propagate to its descendants."""
        self._set_directive(node_id, Directive.UNSET)

    def get_directive(self, node_id: int) -> Directive:
        with self._lock:
            return self._graph.get_node(node_id).directive

    def _set_directive(self, node_id: int, directive: Directive) -> None:
        with self._lock:
            self._guard_mutation()
            node = self._graph.get_node(node_id)
            if node.directive is directive:
                return

            logger.debug(f"Directive {node.display_name}: {node.directive.value} -> {directive.value}")
            node.directive = directive
            self._schedule([node_id])

    # -------------------------------------------------------------------------
    # Validity
    # -------------------------------------------------------------------------

    def is_valid(self, node_id: int) -> bool:
        """Cached validity of a node. Never triggers propagation."""
        with self._lock:
            return self._graph.get_node(node_id).computed_valid

    def check(self, node_id: int) -> bool:
        """
        Re-derive one node from its directive and its parents' cached state.

        If the cached value changed, the node's children are scheduled for a
        re-check. Returns True when the value changed.
        """
        with self._lock:
            self._guard_mutation()
            node = self._graph.get_node(node_id)
            changed = self._check(node)
            if changed and node.children:
                self._schedule(sorted(node.children))
            return changed

    def snapshot(self) -> Dict[int, bool]:
        """Cached validity of every node."""
        with self._lock:
            return {node.node_id: node.computed_valid for node in self._graph.nodes()}

    def valid_nodes(self) -> List[int]:
        return [n for n, valid in self.snapshot().items() if valid]

    def invalid_nodes(self) -> List[int]:
        return [n for n, valid in self.snapshot().items() if not valid]

    def _derive(self, node: ValidityNode) -> bool:
        if node.directive is Directive.EXPLICIT_VALID:
            return True
        for parent_id in node.parents:
            if self._node_for(parent_id, node).computed_valid:
                return True
        return False

    def _check(self, node: ValidityNode) -> bool:
        valid = self._derive(node)
        if valid == node.computed_valid:
            return False
        node.computed_valid = valid
        return True

    def _node_for(self, node_id: int, referenced_by: ValidityNode) -> ValidityNode:
        """Resolve an identity found in an edge set."""
        try:
            return self._graph.get_node(node_id)
        except UnknownNodeError:
            message = f"Node {referenced_by.node_id} references missing node {node_id}"
            logger.error(message)
            raise GraphCorruptedError(message, node_id=referenced_by.node_id) from None

    # -------------------------------------------------------------------------
    # Propagation
    # -------------------------------------------------------------------------

    def propagate(self, seeds: Iterable[int]) -> PropagationResult:
        """Run the driver now, seeded with the given nodes."""
        seeds = list(seeds)
        with self._lock:
            self._guard_mutation()
            return self._run(seeds)

    def recompute_all(self) -> PropagationResult:
        """Re-derive every node in one run."""
        with self._lock:
            self._guard_mutation()
            self._pending.clear()
            return self._run(self._graph.topological_order())

    def flush(self) -> Optional[PropagationResult]:
        """Run every pending seed in one driver run. None if nothing is pending."""
        with self._lock:
            self._guard_mutation()
            if not self._pending:
                return None
            seeds = list(self._pending)
            self._pending.clear()
            return self._run(seeds)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def get_pending(self) -> List[int]:
        with self._lock:
            return list(self._pending)

    @contextmanager
    def batch(self) -> Iterator["ValidityEngine"]:
        """
        Defer propagation until the outermost batch closes.

        Closing performs exactly one driver run seeded with every node
        changed inside the batch. The run happens even if the block raised.
        """
        with self._lock:
            self._guard_mutation()
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0:
                    self.flush()

    def _schedule(self, seeds: List[int]) -> None:
        if self._batch_depth or self._config.deferred:
            for seed in seeds:
                self._pending[seed] = None
            return
        self._run(seeds)

    def _run(self, seeds: List[int]) -> PropagationResult:
        """The driver: pop, check, enqueue children of changed nodes."""
        for seed in seeds:
            self._graph.get_node(seed)

        result = PropagationResult(seeds=list(seeds))
        self._current_run = result.run_id
        started = time.perf_counter()

        try:
            heap: List[Tuple[int, int, int]] = []
            queued = set()
            sequence = count()

            for seed in seeds:
                if seed not in queued:
                    queued.add(seed)
                    heappush(heap, (self._graph.get_node(seed).rank, next(sequence), seed))

            while heap:
                _, _, node_id = heappop(heap)
                queued.discard(node_id)

                if node_id in result.check_counts:
                    self._corrupted(f"Node {node_id} reached twice in run {result.run_id}", node_id)

                node = self._graph.get_node(node_id)
                result.record_check(node_id)

                if not self._check(node):
                    continue

                result.changed[node_id] = node.computed_valid
                for child_id in node.children:
                    if child_id in queued:
                        continue
                    child = self._node_for(child_id, node)
                    if child.rank <= node.rank:
                        self._corrupted(
                            f"Edge {node_id} -> {child_id} violates rank order", child_id
                        )
                    queued.add(child_id)
                    heappush(heap, (child.rank, next(sequence), child_id))

            result.completed_at = _utcnow()
            result.duration_ms = (time.perf_counter() - started) * 1000

            logger.debug(
                f"Run {result.run_id}: {len(seeds)} seed(s), "
                f"{result.check_count} check(s), {result.changed_count} change(s) "
                f"in {result.duration_ms:.2f}ms"
            )

            self._record(result)

            if self._config.verify_after_run:
                self.verify()

            self._notify(result)
        finally:
            self._current_run = None

        return result

    def _guard_mutation(self) -> None:
        if self._current_run is not None:
            raise PropagationInProgressError(self._current_run)

    def _corrupted(self, message: str, node_id: Optional[int] = None) -> None:
        logger.error(message)
        raise GraphCorruptedError(message, node_id=node_id)

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------

    def verify(self) -> None:
        """
        Check the graph and caches for internal consistency.

        Edge symmetry, rank order and acyclicity are always checked. The
        validity formula is checked only when nothing is pending, since
        pending changes are by definition not yet reflected in the caches.

        Raises:
            CycleDetectedError: the node table contains a cycle
            GraphCorruptedError: any other inconsistency
        """
        with self._lock:
            for node in self._graph.nodes():
                for parent_id in node.parents:
                    parent = self._node_for(parent_id, node)
                    if node.node_id not in parent.children:
                        self._corrupted(f"Edge {parent_id} -> {node.node_id} is one-sided", node.node_id)
                for child_id in node.children:
                    child = self._node_for(child_id, node)
                    if node.node_id not in child.parents:
                        self._corrupted(f"Edge {node.node_id} -> {child_id} is one-sided", child_id)

            cycles = self._graph.detect_cycles()
            if cycles:
                logger.error(f"Cycle found in validity graph: {cycles[0]}")
                raise CycleDetectedError(cycles[0])

            for node in self._graph.nodes():
                for child_id in node.children:
                    if self._graph.get_node(child_id).rank <= node.rank:
                        self._corrupted(
                            f"Edge {node.node_id} -> {child_id} violates rank order", child_id
                        )

            if self._pending:
                logger.debug(f"Skipping validity check: {len(self._pending)} node(s) pending")
                return

            for node in self._graph.nodes():
                if self._derive(node) != node.computed_valid:
                    self._corrupted(
                        f"Node {node.display_name} caches {node.computed_valid}, "
                        f"formula gives {not node.computed_valid}",
                        node.node_id,
                    )

    # -------------------------------------------------------------------------
    # Callbacks and history
    # -------------------------------------------------------------------------

    def on_change(self, callback: ChangeCallback) -> None:
        """Register a callback called as (node_id, valid) for every change in a run."""
        self._on_change_callbacks.append(callback)

    def remove_callback(self, callback: ChangeCallback) -> None:
        if callback in self._on_change_callbacks:
            self._on_change_callbacks.remove(callback)

    def _notify(self, result: PropagationResult) -> None:
        for node_id, valid in result.changed.items():
            for callback in self._on_change_callbacks:
                try:
                    callback(node_id, valid)
                except Exception as e:
                    logger.warning(f"Change callback error for node {node_id}: {e}")

    def _record(self, result: PropagationResult) -> None:
        self._history.append(result)

        # Trim old runs
        if len(self._history) > self._config.max_history:
            self._history = self._history[len(self._history) - self._config.max_history:]

    def get_history(self, limit: int = 100) -> List[PropagationResult]:
        """Most recent driver runs, oldest first."""
        with self._lock:
            if limit <= 0:
                return []
            return self._history[-limit:]

    @property
    def last_result(self) -> Optional[PropagationResult]:
        with self._lock:
            return self._history[-1] if self._history else None
