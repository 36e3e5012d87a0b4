"""Graph structures and execution engine."""

from adaptflow.graph.checkpoint_config import (
    DEFAULT_CHECKPOINT_CONFIG,
    DISABLED_CHECKPOINT_CONFIG,
    CheckpointConfig,
)
from adaptflow.graph.edge import END, START, EdgeKind, EdgeSpec, GraphSpec
from adaptflow.graph.executor import ExecutionResult, GraphExecutor, HaltReason
from adaptflow.graph.node import NodeSpec
from adaptflow.graph.state import ExecutionState, StateView, merge_state, record_error

__all__ = [
    # Graph model
    "START",
    "END",
    "EdgeKind",
    "EdgeSpec",
    "GraphSpec",
    "NodeSpec",
    # State
    "ExecutionState",
    "StateView",
    "merge_state",
    "record_error",
    # Execution
    "GraphExecutor",
    "ExecutionResult",
    "HaltReason",
    # Checkpointing
    "CheckpointConfig",
    "DEFAULT_CHECKPOINT_CONFIG",
    "DISABLED_CHECKPOINT_CONFIG",
]
