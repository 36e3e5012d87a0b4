"""
adaptflow - adaptive workflow execution.

A graph executor for stateful step pipelines plus the services that watch a
run and react to it: a performance monitor, a plan adjustment engine and a
failure recovery engine.
"""

from adaptflow.config import EngineConfig
from adaptflow.exceptions import AdaptflowError, GraphValidationError, StateAccessError
from adaptflow.graph import END, START, ExecutionResult, GraphExecutor, GraphSpec, HaltReason
from adaptflow.monitoring import (
    FailureRecoveryEngine,
    MonitoringHook,
    PerformanceMonitor,
    PlanAdjustmentEngine,
)
from adaptflow.runtime import EventBus

__all__ = [
    "START",
    "END",
    "GraphSpec",
    "GraphExecutor",
    "ExecutionResult",
    "HaltReason",
    "PerformanceMonitor",
    "PlanAdjustmentEngine",
    "FailureRecoveryEngine",
    "MonitoringHook",
    "EventBus",
    "EngineConfig",
    "AdaptflowError",
    "GraphValidationError",
    "StateAccessError",
]
