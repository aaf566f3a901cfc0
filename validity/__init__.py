"""
Validity Graph Engine

Provides:
- ValidityGraph: index-based DAG of parent -> child validity influence
- ValidityEngine: directives, cached validity and queue-driven propagation
- EngineConfig: batching granularity and diagnostics
"""

from .config import (
    EngineConfig,
    PropagationMode,
)
from .errors import (
    ValidityGraphError,
    UnknownNodeError,
    CycleDetectedError,
    NodeInUseError,
    PropagationInProgressError,
    GraphCorruptedError,
)
from .graph import (
    Directive,
    ValidityNode,
    ValidityGraph,
)
from .engine import (
    ValidityEngine,
    PropagationResult,
)

__version__ = "1.0.0"

__all__ = [
    # Config
    "EngineConfig",
    "PropagationMode",
    # Errors
    "ValidityGraphError",
    "UnknownNodeError",
    "CycleDetectedError",
    "NodeInUseError",
    "PropagationInProgressError",
    "GraphCorruptedError",
    # Graph
    "Directive",
    "ValidityNode",
    "ValidityGraph",
    # Engine
    "ValidityEngine",
    "PropagationResult",
]
