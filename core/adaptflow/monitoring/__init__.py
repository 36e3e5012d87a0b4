"""Performance monitoring, plan adjustment and failure recovery services."""

from adaptflow.monitoring.failure_recovery import (
    BUILTIN_STRATEGIES,
    FailureRecoveryEngine,
    backoff_delay,
)
from adaptflow.monitoring.hooks import MonitoringHook
from adaptflow.monitoring.models import (
    AdjustmentType,
    Anomaly,
    AnomalySeverity,
    ExecutionStatus,
    MetricSpec,
    MetricThresholds,
    PerformanceMetric,
    PlanAdjustment,
    PlanStep,
    RecoveryAction,
    RecoveryContext,
    RecoveryHistoryEntry,
    RecoveryPhase,
    RecoveryPlan,
    RecoveryStrategy,
    StrategyKind,
    TaskExecutionMetrics,
    TaskPlan,
    TaskStatus,
)
from adaptflow.monitoring.performance_monitor import PerformanceMonitor
from adaptflow.monitoring.plan_adjustment import DEFAULT_STRATEGIES, PlanAdjustmentEngine

__all__ = [
    # Services
    "PerformanceMonitor",
    "PlanAdjustmentEngine",
    "FailureRecoveryEngine",
    "MonitoringHook",
    "BUILTIN_STRATEGIES",
    "DEFAULT_STRATEGIES",
    "backoff_delay",
    # Metrics
    "ExecutionStatus",
    "MetricSpec",
    "MetricThresholds",
    "PerformanceMetric",
    "Anomaly",
    "AnomalySeverity",
    "TaskExecutionMetrics",
    "TaskStatus",
    # Plans
    "AdjustmentType",
    "PlanAdjustment",
    "PlanStep",
    "TaskPlan",
    # Recovery
    "RecoveryAction",
    "RecoveryContext",
    "RecoveryHistoryEntry",
    "RecoveryPhase",
    "RecoveryPlan",
    "RecoveryStrategy",
    "StrategyKind",
]
