"""
Monitoring Schemas - records shared by the monitor, adjustment and recovery services.

Records are pydantic models. Services keep their own copies and hand out
deep copies, so callers can never mutate service state behind a lock.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Status levels
# ---------------------------------------------------------------------------


class ExecutionStatus(StrEnum):
    """Health level of a metric or of the whole system."""

    OPTIMAL = "optimal"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    CONCERNING = "concerning"
    PROBLEMATIC = "problematic"
    CRITICAL = "critical"
    FAILED = "failed"


# Best first; aggregation picks the highest index present
STATUS_SEVERITY: list[ExecutionStatus] = [
    ExecutionStatus.OPTIMAL,
    ExecutionStatus.GOOD,
    ExecutionStatus.ACCEPTABLE,
    ExecutionStatus.CONCERNING,
    ExecutionStatus.PROBLEMATIC,
    ExecutionStatus.CRITICAL,
    ExecutionStatus.FAILED,
]

SIGNIFICANT_STATUSES = frozenset(
    {ExecutionStatus.PROBLEMATIC, ExecutionStatus.CRITICAL, ExecutionStatus.FAILED}
)


def worst_status(statuses: list[ExecutionStatus]) -> ExecutionStatus:
    """Pessimistic aggregation: the single worst status, OPTIMAL when empty."""
    if not statuses:
        return ExecutionStatus.OPTIMAL
    return max(statuses, key=STATUS_SEVERITY.index)


class TaskStatus(StrEnum):
    """Lifecycle of a task or a plan step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    RETRYING = "retrying"


# ---------------------------------------------------------------------------
# Performance metrics
# ---------------------------------------------------------------------------


class MetricThresholds(BaseModel):
    """
    Severity boundaries for a metric. Lower values are worse.

    A value is classified by the first boundary it does not exceed, checked
    from ``critical`` upward; anything above ``good`` is OPTIMAL.
    """

    optimal: float
    good: float
    acceptable: float
    concerning: float
    problematic: float
    critical: float

    def classify(self, value: float) -> ExecutionStatus:
        if value <= self.critical:
            return ExecutionStatus.CRITICAL
        if value <= self.problematic:
            return ExecutionStatus.PROBLEMATIC
        if value <= self.concerning:
            return ExecutionStatus.CONCERNING
        if value <= self.acceptable:
            return ExecutionStatus.ACCEPTABLE
        if value <= self.good:
            return ExecutionStatus.GOOD
        return ExecutionStatus.OPTIMAL

    def closest(self, value: float) -> float:
        """The boundary nearest to ``value``; ties keep the earlier (better) level."""
        levels = [
            self.optimal,
            self.good,
            self.acceptable,
            self.concerning,
            self.problematic,
            self.critical,
        ]
        closest = levels[0]
        for level in levels[1:]:
            if abs(value - level) < abs(value - closest):
                closest = level
        return closest


class TrendData(BaseModel):
    timestamps: list[datetime] = Field(default_factory=list)
    values: list[float] = Field(default_factory=list)

    def append(self, timestamp: datetime, value: float, limit: int) -> None:
        self.timestamps.append(timestamp)
        self.values.append(value)
        if len(self.values) > limit:
            self.timestamps = self.timestamps[-limit:]
            self.values = self.values[-limit:]

    def tail(self, count: int) -> "TrendData":
        return TrendData(timestamps=self.timestamps[-count:], values=self.values[-count:])


class MetricSpec(BaseModel):
    """What a caller supplies to register a metric."""

    id: str | None = None
    name: str
    value: float
    unit: str = ""
    description: str = ""
    thresholds: MetricThresholds
    metadata: dict[str, Any] = Field(default_factory=dict)


class PerformanceMetric(BaseModel):
    """A registered metric with its current value and recent trend."""

    id: str
    name: str
    value: float
    unit: str = ""
    description: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    thresholds: MetricThresholds
    trend: TrendData = Field(default_factory=TrendData, description="Most recent points only")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def status(self) -> ExecutionStatus:
        return self.thresholds.classify(self.value)


class AnomalySeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Anomaly(BaseModel):
    """A metric whose current value sits far from its historical mean."""

    metric_id: str
    severity: AnomalySeverity
    description: str
    value: float
    threshold: float = Field(description="Closest threshold boundary to the value")
    deviation: float = Field(description="Distance from the mean in standard deviations")


# ---------------------------------------------------------------------------
# Task metrics
# ---------------------------------------------------------------------------


class TaskEvent(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    type: str
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class StatusChange(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    status: str
    reason: str | None = None


class TaskExecutionMetrics(BaseModel):
    """Live execution record for one task. ``events`` and ``status_history`` are append-only."""

    task_id: str
    status: str = TaskStatus.PENDING.value
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float | None = None
    resource_utilization: dict[str, float] = Field(default_factory=dict)
    events: list[TaskEvent] = Field(default_factory=list)
    status_history: list[StatusChange] = Field(default_factory=list)

    model_config = {"extra": "allow"}


# ---------------------------------------------------------------------------
# Task plans and adjustments
# ---------------------------------------------------------------------------


class AdjustmentType(StrEnum):
    TIMEOUT_EXTENSION = "timeout_extension"
    PRIORITY_BOOST = "priority_boost"
    RESOURCE_REALLOCATION = "resource_reallocation"
    TASK_SPLIT = "task_split"
    PARALLELIZATION = "parallelization"
    RETRY = "retry"
    FALLBACK = "fallback"
    EARLY_TERMINATION = "early_termination"


class PlanStep(BaseModel):
    id: str
    name: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    retry_count: int = 0

    model_config = {"extra": "allow"}


class TaskPlan(BaseModel):
    """Declared trajectory of a task: its steps, expected duration and priority."""

    task_id: str
    name: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    expected_duration_ms: float | None = None
    priority: int | None = Field(default=None, ge=0, le=10)
    status: TaskStatus | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class PlanAdjustment(BaseModel):
    """A proposed or applied change to a task plan. Immutable once recorded."""

    id: str
    task_id: str
    type: AdjustmentType
    reason: str
    timestamp: datetime = Field(default_factory=datetime.now)
    applied: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Failure recovery
# ---------------------------------------------------------------------------


class RecoveryPhase(StrEnum):
    PLANNED = "planned"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset(
    {RecoveryPhase.SUCCEEDED, RecoveryPhase.FAILED, RecoveryPhase.CANCELLED}
)


class RecoveryAction(StrEnum):
    """Kinds of entries in a recovery plan's execution history."""

    EXECUTION_STARTED = "execution_started"
    STRATEGY_STARTED = "strategy_started"
    STRATEGY_ATTEMPT = "strategy_attempt"
    STRATEGY_ERROR = "strategy_error"
    STRATEGY_SKIPPED = "strategy_skipped"
    STRATEGY_COMPLETED = "strategy_completed"
    EXECUTION_COMPLETED = "execution_completed"
    CANCELLED = "cancelled"


class StrategyKind(StrEnum):
    RETRY = "retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    FALLBACK = "fallback"
    COMPENSATION = "compensation"
    DEGRADATION = "degradation"
    CUSTOM = "custom"


WILDCARD_FAILURE_TYPE = "*"


class RecoveryStrategy(BaseModel):
    """
    Catalogue entry describing a remediation.

    The executable body lives in the engine's handler registry under
    ``handler``; the strategy itself is plain, serializable data.
    """

    id: str
    name: str
    description: str = ""
    kind: StrategyKind = StrategyKind.CUSTOM
    handler: str = Field(description="Name of the registered handler that performs the work")
    applicable_failure_types: list[str] = Field(default_factory=list)
    max_retries: int = Field(default=0, ge=0)
    backoff_factor: float = Field(default=0.0, ge=0.0)
    priority: int = Field(default=100, description="Lower runs first")

    def applies_to(self, failure_type: str) -> bool:
        types = self.applicable_failure_types
        return failure_type in types or WILDCARD_FAILURE_TYPE in types


class RecoveryContext(BaseModel):
    """Everything a handler gets to know about the failure it is remediating."""

    recovery_plan_id: str
    failure_id: str
    failure_type: str
    affected_component: str
    failure_details: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 0
    backoff_factor: float = 0.0
    additional_data: dict[str, Any] = Field(default_factory=dict)


class PlannedStrategy(BaseModel):
    """Snapshot of a strategy taken when a plan is created."""

    strategy_id: str
    name: str
    kind: StrategyKind
    handler: str
    priority: int
    max_retries: int
    backoff_factor: float


class RecoveryPlan(BaseModel):
    """Ordered remediation for one reported failure."""

    id: str
    failure_id: str
    failure_type: str
    affected_component: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    strategies: list[PlannedStrategy] = Field(default_factory=list)
    execution_order: list[str] = Field(default_factory=list, description="Strategy ids")
    current_phase: RecoveryPhase = RecoveryPhase.PLANNED
    execution_started_at: datetime | None = None
    execution_completed_at: datetime | None = None
    result: str | None = None
    system_status_at_failure: ExecutionStatus = ExecutionStatus.OPTIMAL


class RecoveryHistoryEntry(BaseModel):
    """One append-only record of what happened while executing a plan."""

    timestamp: datetime = Field(default_factory=datetime.now)
    action: RecoveryAction
    strategy_id: str | None = None
    attempt: int | None = None
    success: bool | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
