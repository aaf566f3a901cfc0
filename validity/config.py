"""
validity/config.py - Engine configuration

The only behavioural knob is batching granularity: propagate after every
change, or defer until flush(). The rest controls diagnostics.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import os
import logging

logger = logging.getLogger(__name__)


class PropagationMode(Enum):
    """When directive and edge changes are propagated."""
    IMMEDIATE = "immediate"    # One driver run per change
    DEFERRED = "deferred"      # Changes accumulate until flush()


_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for a ValidityEngine."""

    propagation_mode: PropagationMode = PropagationMode.IMMEDIATE

    # Re-check acyclicity and the validity formula after every run
    verify_after_run: bool = False

    # Number of PropagationResults kept for get_history()
    max_history: int = 100

    def __post_init__(self):
        """Validate configuration."""
        if isinstance(self.propagation_mode, str):
            self.propagation_mode = PropagationMode(self.propagation_mode.lower())
        assert self.max_history >= 0, "max_history must be non-negative"

    @property
    def deferred(self) -> bool:
        return self.propagation_mode is PropagationMode.DEFERRED

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create engine configuration from environment variables."""
        mode = os.getenv("VALIDITY_PROPAGATION_MODE", "immediate")
        verify = os.getenv("VALIDITY_VERIFY_AFTER_RUN", "false")

        config = cls(
            propagation_mode=PropagationMode(mode.strip().lower()),
            verify_after_run=verify.strip().lower() in _TRUE_VALUES,
            max_history=int(os.getenv("VALIDITY_MAX_HISTORY", "100")),
        )
        logger.debug(f"Engine config from environment: {config}")
        return config
