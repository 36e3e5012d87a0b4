"""
Plan Adjustment Engine - compares live task metrics against declared plans.

Each registered ``TaskPlan`` is checked by a set of independent heuristics
(nearing timeout, falling behind, high priority, split / parallelize
candidacy, retry / fallback candidacy, stuck). Every heuristic that fires
yields one unapplied ``PlanAdjustment``.

Applying an adjustment dispatches on its type to a strategy from a registry.
A strategy is a pure function ``(plan, reason) -> updates | None`` that
describes how the plan should change; ``None`` means it does not apply.
"""

import logging
import math
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from adaptflow.monitoring.models import (
    AdjustmentType,
    PlanAdjustment,
    PlanStep,
    TaskExecutionMetrics,
    TaskPlan,
    TaskStatus,
)
from adaptflow.monitoring.performance_monitor import PerformanceMonitor
from adaptflow.utils.listeners import ListenerRegistry
from adaptflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

AdjustmentStrategy = Callable[[TaskPlan, str], Mapping[str, Any] | None]
Heuristic = Callable[
    [TaskPlan, TaskExecutionMetrics | None, datetime], tuple[AdjustmentType, str] | None
]

TIMEOUT_RATIO = 0.8
TIMEOUT_EXTENSION_FACTOR = 1.5
PRIORITY_BOOST = 2
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
HIGH_PRIORITY = 7
STUCK_FLOOR_MS = 30_000
SPLIT_MIN_DURATION_MS = 60_000


def _ms_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


def _nearing_timeout(plan, metrics, now):
    if not metrics or not plan.expected_duration_ms or not metrics.start_time:
        return None
    if metrics.end_time:
        return None
    elapsed = _ms_between(metrics.start_time, now)
    if elapsed <= plan.expected_duration_ms * TIMEOUT_RATIO:
        return None
    return (
        AdjustmentType.TIMEOUT_EXTENSION,
        f"Task is approaching timeout ({_round_half_up(elapsed / 1000)}s/"
        f"{_round_half_up(plan.expected_duration_ms / 1000)}s)",
    )


def _behind_schedule(plan, metrics, now):
    if not metrics or metrics.progress >= 0.5 or not metrics.start_time:
        return None
    elapsed = _ms_between(metrics.start_time, now)
    expected_progress = elapsed / plan.expected_duration_ms if plan.expected_duration_ms else 0.5
    if expected_progress <= 0.6 or metrics.progress >= expected_progress * 0.7:
        return None
    return (
        AdjustmentType.RESOURCE_REALLOCATION,
        f"Task progress ({_round_half_up(metrics.progress * 100)}%) significantly behind "
        f"expected ({_round_half_up(expected_progress * 100)}%)",
    )


def _high_priority(plan, metrics, now):
    if plan.priority is None or plan.priority <= HIGH_PRIORITY:
        return None
    return AdjustmentType.PRIORITY_BOOST, f"High priority task ({plan.priority}) needs acceleration"


def _split_candidate(plan, metrics, now):
    if len(plan.steps) <= 5 or metrics is None or metrics.progress >= 0.3:
        return None
    if not plan.expected_duration_ms or plan.expected_duration_ms <= SPLIT_MIN_DURATION_MS:
        return None
    return (
        AdjustmentType.TASK_SPLIT,
        f"Complex task with {len(plan.steps)} steps could be split for better progress tracking",
    )


def _parallelization_candidate(plan, metrics, now):
    if len(plan.steps) <= 3 or not any(not step.dependencies for step in plan.steps):
        return None
    return AdjustmentType.PARALLELIZATION, "Task has independent steps that could be parallelized"


def _retry_candidate(plan, metrics, now):
    failed = sum(1 for step in plan.steps if step.status == TaskStatus.FAILED)
    if failed == 0 or failed == len(plan.steps):
        return None
    return AdjustmentType.RETRY, "Some steps have failed and could be retried"


def _fallback_candidate(plan, metrics, now):
    if not plan.steps or any(step.status != TaskStatus.FAILED for step in plan.steps):
        return None
    return AdjustmentType.FALLBACK, "All steps have failed, fallback mechanism needed"


def _stuck(plan, metrics, now):
    if not metrics or not metrics.start_time or metrics.status != TaskStatus.RUNNING.value:
        return None
    if len(metrics.events) < 2:
        return None
    elapsed = _ms_between(metrics.start_time, now)
    since_last_event = _ms_between(metrics.events[-1].timestamp, now)
    if since_last_event <= max(elapsed * 0.3, STUCK_FLOOR_MS):
        return None
    return (
        AdjustmentType.EARLY_TERMINATION,
        f"Task appears stuck with no progress for {_round_half_up(since_last_event / 1000)}s",
    )


HEURISTICS: list[Heuristic] = [
    _nearing_timeout,
    _behind_schedule,
    _high_priority,
    _split_candidate,
    _parallelization_candidate,
    _retry_candidate,
    _fallback_candidate,
    _stuck,
]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _with_metadata(plan: TaskPlan, **entries: Any) -> dict[str, Any]:
    return {**plan.metadata, **entries}


def extend_timeout(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    if not plan.expected_duration_ms:
        return None
    return {
        "expected_duration_ms": plan.expected_duration_ms * TIMEOUT_EXTENSION_FACTOR,
        "metadata": _with_metadata(
            plan,
            timeout_extended=True,
            original_duration_ms=plan.expected_duration_ms,
            extension_reason=reason,
            timeout_extended_at=datetime.now().isoformat(),
        ),
    }


def boost_priority(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    current = plan.priority if plan.priority is not None else DEFAULT_PRIORITY
    return {
        "priority": min(MAX_PRIORITY, current + PRIORITY_BOOST),
        "metadata": _with_metadata(
            plan,
            priority_boosted=True,
            original_priority=current,
            boost_reason=reason,
            priority_boosted_at=datetime.now().isoformat(),
        ),
    }


def request_reallocation(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    return {
        "metadata": _with_metadata(
            plan,
            needs_reallocation=True,
            reallocation_reason=reason,
            reallocation_requested=datetime.now().isoformat(),
        )
    }


def mark_ready_for_split(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    if len(plan.steps) <= 1:
        return None
    return {
        "metadata": _with_metadata(
            plan,
            ready_for_split=True,
            split_reason=reason,
            split_requested=datetime.now().isoformat(),
        )
    }


def mark_parallelizable(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    independent = [step.id for step in plan.steps if not step.dependencies]
    if len(independent) <= 1:
        return None
    return {
        "metadata": _with_metadata(
            plan,
            parallelizable_steps=independent,
            parallelization_reason=reason,
            parallelization_requested=datetime.now().isoformat(),
        )
    }


def retry_failed_steps(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    failed = [step.id for step in plan.steps if step.status == TaskStatus.FAILED]
    if not failed:
        return None
    steps = []
    for step in plan.steps:
        if step.status == TaskStatus.FAILED:
            step = PlanStep.model_validate(
                {
                    **step.model_dump(),
                    "status": TaskStatus.PENDING,
                    "retry_count": step.retry_count + 1,
                    "retried": True,
                }
            )
        steps.append(step)
    return {
        "steps": steps,
        "metadata": _with_metadata(
            plan,
            retried_steps=failed,
            retry_reason=reason,
            last_retry_at=datetime.now().isoformat(),
        ),
    }


def request_fallback(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    return {
        "metadata": _with_metadata(
            plan,
            needs_fallback=True,
            fallback_reason=reason,
            fallback_requested=datetime.now().isoformat(),
        )
    }


def terminate_early(plan: TaskPlan, reason: str) -> dict[str, Any] | None:
    steps = [
        step
        if step.status == TaskStatus.COMPLETED
        else step.model_copy(update={"status": TaskStatus.CANCELLED})
        for step in plan.steps
    ]
    return {
        "steps": steps,
        "status": TaskStatus.CANCELLED,
        "metadata": _with_metadata(
            plan,
            early_termination=True,
            termination_reason=reason,
            terminated_at=datetime.now().isoformat(),
        ),
    }


DEFAULT_STRATEGIES: dict[AdjustmentType, AdjustmentStrategy] = {
    AdjustmentType.TIMEOUT_EXTENSION: extend_timeout,
    AdjustmentType.PRIORITY_BOOST: boost_priority,
    AdjustmentType.RESOURCE_REALLOCATION: request_reallocation,
    AdjustmentType.TASK_SPLIT: mark_ready_for_split,
    AdjustmentType.PARALLELIZATION: mark_parallelizable,
    AdjustmentType.RETRY: retry_failed_steps,
    AdjustmentType.FALLBACK: request_fallback,
    AdjustmentType.EARLY_TERMINATION: terminate_early,
}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PlanAdjustmentEngine:
    """
    Holds task plans and proposes or applies corrective adjustments.

    Example:
        engine = PlanAdjustmentEngine(monitor)
        engine.register_task_plan(TaskPlan(task_id="t1", steps=[...], expected_duration_ms=10_000))
        for adjustment in engine.check_for_adjustments("t1"):
            engine.apply_adjustment("t1", adjustment.type, adjustment.reason)
    """

    def __init__(self, monitor: PerformanceMonitor | None = None):
        self.monitor = monitor
        self._plans: dict[str, TaskPlan] = {}
        self._history: dict[str, list[PlanAdjustment]] = {}
        self._strategies: dict[AdjustmentType, AdjustmentStrategy] = dict(DEFAULT_STRATEGIES)
        self._locks = KeyedLock()
        self._listeners = ListenerRegistry("adjustment listener")
        logger.info("Plan adjustment engine initialized")

    # === PLANS ===

    def register_task_plan(self, plan: TaskPlan | Mapping[str, Any]) -> bool:
        """Store a plan. Returns False, leaving the existing plan alone, if one is registered."""
        if not isinstance(plan, TaskPlan):
            plan = TaskPlan.model_validate(plan)
        with self._locks.hold(plan.task_id):
            if plan.task_id in self._plans:
                logger.warning(f"Task plan for task {plan.task_id} already exists")
                return False
            self._plans[plan.task_id] = plan.model_copy(deep=True)
            self._history[plan.task_id] = []

        logger.info(
            f"Registered task plan for task {plan.task_id} "
            f"({len(plan.steps)} steps, expected {plan.expected_duration_ms}ms)",
            extra={"task_id": plan.task_id},
        )
        return True

    def get_task_plan(self, task_id: str) -> TaskPlan | None:
        plan = self._plans.get(task_id)
        return plan.model_copy(deep=True) if plan else None

    def update_task_plan(
        self,
        task_id: str,
        updates: Mapping[str, Any] | None = None,
        /,
        **fields: Any,
    ) -> bool:
        """Merge ``updates`` and ``fields`` into a plan. ``task_id`` itself never changes."""
        updates = {**(updates or {}), **fields}
        with self._locks.hold(task_id):
            plan = self._plans.get(task_id)
            if plan is None:
                logger.warning(f"Cannot update non-existent task plan for task {task_id}")
                return False
            return self._merge(plan, updates)

    def update_step_status(self, task_id: str, step_id: str, status: TaskStatus | str) -> bool:
        try:
            status = TaskStatus(status)
        except ValueError:
            logger.warning(f"Invalid status {status!r} for step {step_id} of task {task_id}")
            return False
        with self._locks.hold(task_id):
            plan = self._plans.get(task_id)
            if plan is None:
                logger.warning(f"Cannot update step in non-existent task plan: {task_id}")
                return False
            if not any(step.id == step_id for step in plan.steps):
                logger.warning(f"Step {step_id} not found in task {task_id}")
                return False
            steps = [
                step.model_copy(update={"status": status})
                if step.id == step_id
                else step
                for step in plan.steps
            ]
            return self._merge(plan, {"steps": steps})

    def delete_task_plan(self, task_id: str) -> bool:
        with self._locks.hold(task_id):
            if self._plans.pop(task_id, None) is None:
                return False
            self._history.pop(task_id, None)
        self._listeners.discard(task_id)
        self._locks.discard(task_id)
        logger.info(f"Deleted task plan for task {task_id}")
        return True

    def _merge(self, plan: TaskPlan, updates: Mapping[str, Any]) -> bool:
        """Validate and store a merged plan. Caller holds the task lock."""
        data = plan.model_dump()
        data.update(updates)
        data["task_id"] = plan.task_id
        try:
            merged = TaskPlan.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Rejected update to task plan {plan.task_id}: {e}")
            return False
        self._plans[plan.task_id] = merged
        logger.debug(f"Updated task plan for task {plan.task_id}: {sorted(updates)}")
        return True

    # === ADJUSTMENTS ===

    def register_strategy(
        self,
        adjustment_type: AdjustmentType,
        strategy: AdjustmentStrategy,
    ) -> None:
        """Install or replace the strategy used for an adjustment type."""
        self._strategies[AdjustmentType(adjustment_type)] = strategy

    def check_for_adjustments(self, task_id: str) -> list[PlanAdjustment]:
        """Run every heuristic against the plan and its live metrics."""
        plan = self.get_task_plan(task_id)
        if plan is None:
            logger.warning(f"Cannot check adjustments for non-existent task plan: {task_id}")
            return []

        metrics = self.monitor.get_task_metrics(task_id) if self.monitor else None
        now = datetime.now()
        proposals = []
        for heuristic in HEURISTICS:
            finding = heuristic(plan, metrics, now)
            if finding is None:
                continue
            adjustment_type, reason = finding
            proposals.append(
                PlanAdjustment(
                    id=str(uuid.uuid4()),
                    task_id=task_id,
                    type=adjustment_type,
                    reason=reason,
                    timestamp=now,
                    applied=False,
                )
            )
        return proposals

    def get_recommended_adjustments(self) -> dict[str, list[PlanAdjustment]]:
        """Adjustments for every registered plan, omitting plans with none."""
        recommendations = {}
        for task_id in list(self._plans):
            adjustments = self.check_for_adjustments(task_id)
            if adjustments:
                recommendations[task_id] = adjustments
        return recommendations

    def apply_adjustment(
        self,
        task_id: str,
        adjustment_type: AdjustmentType | str,
        reason: str,
    ) -> bool:
        """
        Apply one adjustment through its strategy.

        Returns:
            True if the plan changed and the adjustment was recorded
        """
        try:
            adjustment_type = AdjustmentType(adjustment_type)
        except ValueError:
            logger.warning(f"Unknown adjustment type: {adjustment_type}")
            return False

        strategy = self._strategies.get(adjustment_type)
        if strategy is None:
            logger.warning(f"No strategy found for adjustment type: {adjustment_type}")
            return False

        with self._locks.hold(task_id):
            plan = self._plans.get(task_id)
            if plan is None:
                logger.warning(f"Cannot apply adjustment to non-existent task plan: {task_id}")
                return False
            try:
                updates = strategy(plan.model_copy(deep=True), reason)
            except Exception:
                logger.exception(f"{adjustment_type} strategy failed for task {task_id}")
                return False
            applied = isinstance(updates, Mapping) and self._merge(plan, updates)
            if applied:
                adjustment = PlanAdjustment(
                    id=str(uuid.uuid4()),
                    task_id=task_id,
                    type=adjustment_type,
                    reason=reason,
                    applied=True,
                )
                self._history.setdefault(task_id, []).append(adjustment)

        if not applied:
            logger.warning(f"Failed to apply {adjustment_type} adjustment to task {task_id}")
            return False

        logger.info(
            f"Applied {adjustment_type} adjustment to task {task_id}: {reason}",
            extra={"task_id": task_id},
        )
        self._listeners.notify(task_id, adjustment)
        return True

    def get_adjustment_history(self, task_id: str) -> list[PlanAdjustment]:
        with self._locks.hold(task_id):
            return list(self._history.get(task_id, []))

    def subscribe_to_adjustments(
        self,
        task_id: str,
        callback: Callable[[PlanAdjustment], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with each applied adjustment. Returns an unsubscribe function."""
        return self._listeners.subscribe(task_id, callback)
