"""
validity/errors.py - Error taxonomy for the validity graph

Every error here signals a caller or collaborator defect. None of them is
transient, so nothing in the package retries.
"""

from __future__ import annotations
from typing import List, Optional


class ValidityGraphError(Exception):
    """Base exception for validity graph errors."""
    pass


class UnknownNodeError(ValidityGraphError, KeyError):
    """Raised when an operation references a node that does not exist."""

    def __init__(self, node_id: int):
        self.node_id = node_id
        super().__init__(f"Unknown node: {node_id}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class CycleDetectedError(ValidityGraphError):
    """Raised when an edge would make a node its own ancestor."""

    def __init__(self, cycle: List[int]):
        self.cycle = cycle
        super().__init__(f"Cycle detected: {' -> '.join(str(n) for n in cycle)}")


class NodeInUseError(ValidityGraphError):
    """Raised when removing a node that still has edges."""

    def __init__(self, node_id: int, edge_count: int):
        self.node_id = node_id
        self.edge_count = edge_count
        super().__init__(
            f"Node {node_id} still has {edge_count} edge(s); remove them first"
        )


class PropagationInProgressError(ValidityGraphError):
    """Raised when a mutation is attempted while a driver run is active."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        super().__init__(f"Propagation run {run_id} already in progress")


class GraphCorruptedError(ValidityGraphError):
    """Fatal internal-consistency fault. The engine must not be used afterwards."""

    def __init__(self, message: str, node_id: Optional[int] = None):
        self.node_id = node_id
        super().__init__(message)
