"""
Performance Monitor - metrics, task execution records and anomaly detection.

Metrics carry six ascending severity thresholds (lower value = worse). Every
update appends to a bounded history that feeds both the public trend slice
and sigma-based anomaly detection. The system-wide status is the worst
status of any metric.

Updates to different metrics or tasks never contend; updates to the same key
are serialized by a per-key lock so history order is preserved.
"""

import logging
import math
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from adaptflow.config import EngineConfig
from adaptflow.monitoring.models import (
    SIGNIFICANT_STATUSES,
    Anomaly,
    AnomalySeverity,
    ExecutionStatus,
    MetricSpec,
    PerformanceMetric,
    StatusChange,
    TaskEvent,
    TaskExecutionMetrics,
    TaskStatus,
    TrendData,
    worst_status,
)
from adaptflow.utils.listeners import ListenerRegistry
from adaptflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

MIN_ANOMALY_POINTS = 3
TOP_RESOURCES = 5


def _anomaly_severity(ratio: float) -> AnomalySeverity:
    if ratio >= 5.0:
        return AnomalySeverity.CRITICAL
    if ratio >= 4.0:
        return AnomalySeverity.HIGH
    if ratio >= 3.0:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


class PerformanceMonitor:
    """
    Tracks metric health and per-task execution progress.

    Example:
        monitor = PerformanceMonitor()
        latency_id = monitor.register_metric({
            "name": "latency",
            "value": 50,
            "unit": "score",
            "thresholds": {"optimal": 100, "good": 80, "acceptable": 60,
                           "concerning": 40, "problematic": 20, "critical": 0},
        })
        monitor.get_metric_status(latency_id)  # ExecutionStatus.ACCEPTABLE
    """

    def __init__(
        self,
        anomaly_threshold: float | None = None,
        retention_limit: int | None = None,
        trend_window: int | None = None,
        config: EngineConfig | None = None,
    ):
        config = config or EngineConfig()
        self.anomaly_threshold = (
            anomaly_threshold if anomaly_threshold is not None else config.anomaly_threshold
        )
        self.retention_limit = (
            retention_limit if retention_limit is not None else config.retention_limit
        )
        self.trend_window = trend_window if trend_window is not None else config.trend_window

        self._metrics: dict[str, PerformanceMetric] = {}
        self._history: dict[str, TrendData] = {}
        self._tasks: dict[str, TaskExecutionMetrics] = {}
        self._metric_locks = KeyedLock()
        self._task_locks = KeyedLock()
        self._listeners = ListenerRegistry("metric change listener")

        logger.info(
            f"Performance monitor initialized (anomaly_threshold={self.anomaly_threshold}, "
            f"retention_limit={self.retention_limit})"
        )

    # === METRICS ===

    def register_metric(self, spec: MetricSpec | Mapping[str, Any]) -> str:
        """Register a metric with one initial trend point. Returns its id."""
        if not isinstance(spec, MetricSpec):
            spec = MetricSpec.model_validate(spec)
        metric_id = spec.id or str(uuid.uuid4())
        now = datetime.now()

        with self._metric_locks.hold(metric_id):
            self._history[metric_id] = TrendData(timestamps=[now], values=[spec.value])
            self._metrics[metric_id] = PerformanceMetric(
                id=metric_id,
                name=spec.name,
                value=spec.value,
                unit=spec.unit,
                description=spec.description,
                timestamp=now,
                thresholds=spec.thresholds,
                trend=TrendData(timestamps=[now], values=[spec.value]),
                metadata=dict(spec.metadata),
            )

        logger.info(
            f"Registered performance metric: {spec.name} ({metric_id})",
            extra={"metric_id": metric_id},
        )
        return metric_id

    def update_metric(self, metric_id: str, value: float) -> bool:
        """Record a new value. Returns False for unknown metrics."""
        with self._metric_locks.hold(metric_id):
            metric = self._metrics.get(metric_id)
            if metric is None:
                logger.warning(f"Cannot update non-existent metric {metric_id}")
                return False

            history = self._history.get(metric_id)
            if history is None:
                logger.warning(f"Metric {metric_id} was cleared during update")
                return False

            now = datetime.now()
            history.append(now, value, self.retention_limit)
            updated = metric.model_copy(
                update={
                    "value": value,
                    "timestamp": now,
                    "trend": history.tail(self.trend_window),
                }
            )
            self._metrics[metric_id] = updated
            snapshot = updated.model_copy(deep=True)

        status = snapshot.status
        if status in SIGNIFICANT_STATUSES:
            logger.warning(
                f"Significant status change in metric {snapshot.name}: {status}",
                extra={"metric_id": metric_id},
            )

        # Outside the lock so a listener may update the metric again
        self._listeners.notify(metric_id, snapshot)
        return True

    def get_metric(self, metric_id: str) -> PerformanceMetric | None:
        metric = self._metrics.get(metric_id)
        return metric.model_copy(deep=True) if metric else None

    def get_all_metrics(self) -> dict[str, PerformanceMetric]:
        return {mid: m.model_copy(deep=True) for mid, m in list(self._metrics.items())}

    def get_metric_status(self, metric_id: str) -> ExecutionStatus | None:
        metric = self._metrics.get(metric_id)
        return metric.status if metric else None

    def get_metric_history(self, metric_id: str) -> TrendData | None:
        """Full retained history (up to ``retention_limit`` points)."""
        with self._metric_locks.hold(metric_id):
            history = self._history.get(metric_id)
            return history.model_copy(deep=True) if history else None

    def get_execution_status(self) -> ExecutionStatus:
        """Worst status across all metrics; OPTIMAL when none are registered."""
        return worst_status([m.status for m in list(self._metrics.values())])

    def subscribe_to_metric_changes(
        self,
        metric_id: str,
        callback: Callable[[PerformanceMetric], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with a snapshot after every update. Returns an unsubscribe function."""
        return self._listeners.subscribe(metric_id, callback)

    # === TASKS ===

    def get_task_metrics(self, task_id: str) -> TaskExecutionMetrics | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def update_task_metrics(
        self,
        task_id: str,
        partial: Mapping[str, Any] | None = None,
        /,
        **fields: Any,
    ) -> bool:
        """
        Create or merge a task's execution record.

        ``resource_utilization`` is merged key-wise and ``events`` are
        appended. A status-history entry is added only when ``status``
        changes, with the first new event's description as the reason.

        Returns:
            False if the merged record is invalid (e.g. progress outside [0, 1])
        """
        updates: dict[str, Any] = dict(partial or {})
        updates.update(fields)
        updates.pop("task_id", None)
        if updates.get("status") is not None:
            updates["status"] = str(updates["status"])

        try:
            new_events = [TaskEvent.model_validate(e) for e in updates.pop("events", None) or []]
        except ValidationError as e:
            logger.warning(f"Rejected events for task {task_id}: {e}")
            return False
        resources = updates.pop("resource_utilization", None) or {}
        updates.pop("status_history", None)

        with self._task_locks.hold(task_id):
            existing = self._tasks.get(task_id)
            now = datetime.now()
            if existing is None:
                data = {"task_id": task_id, **updates}
                data["resource_utilization"] = dict(resources)
                data["events"] = new_events or [
                    TaskEvent(
                        timestamp=now,
                        type="initialization",
                        description="Task metrics initialized",
                    )
                ]
                data["status_history"] = [
                    StatusChange(timestamp=now, status=updates.get("status") or "pending")
                ]
            else:
                data = existing.model_dump()
                data.update(updates)
                data["resource_utilization"] = {**existing.resource_utilization, **resources}
                data["events"] = [*existing.events, *new_events]
                data["status_history"] = list(existing.status_history)
                new_status = updates.get("status")
                if new_status is not None and new_status != existing.status:
                    data["status_history"].append(
                        StatusChange(
                            timestamp=now,
                            status=new_status,
                            reason=new_events[0].description if new_events else None,
                        )
                    )

            try:
                record = TaskExecutionMetrics.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Rejected metrics update for task {task_id}: {e}")
                return False
            self._tasks[task_id] = record

        changed = sorted(updates) + (["events"] if new_events else [])
        logger.debug(
            f"Updated metrics for task {task_id}: {changed}",
            extra={"task_id": task_id},
        )
        return True

    def record_task_completion(self, task_id: str, duration_ms: float, success: bool) -> bool:
        """Mark a known task completed or failed. Returns False for unknown tasks."""
        with self._task_locks.hold(task_id):
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning(f"Cannot record completion for unknown task: {task_id}")
                return False

            now = datetime.now()
            status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            event = TaskEvent(
                timestamp=now,
                type="completion" if success else "failure",
                description=(
                    f"Task completed successfully in {duration_ms}ms"
                    if success
                    else f"Task failed after {duration_ms}ms"
                ),
            )
            change = StatusChange(
                timestamp=now,
                status=status.value,
                reason="Completed successfully" if success else "Failed",
            )
            self._tasks[task_id] = task.model_copy(
                update={
                    "status": status.value,
                    "end_time": now,
                    "duration_ms": duration_ms,
                    "events": [*task.events, event],
                    "status_history": [*task.status_history, change],
                }
            )

        logger.info(f"Recorded {status.value} for task {task_id}", extra={"task_id": task_id})
        return True

    # === ANALYSIS ===

    def detect_anomalies(self) -> list[Anomaly]:
        """
        Flag metrics whose current value is far from their historical mean.

        Needs at least three points of history. A metric whose history has
        zero spread is never flagged.
        """
        anomalies = []
        for metric_id, metric in list(self._metrics.items()):
            history = self._history.get(metric_id)
            if history is None or len(history.values) < MIN_ANOMALY_POINTS:
                continue

            values = list(history.values)
            mean = sum(values) / len(values)
            std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
            if std_dev == 0:
                continue

            ratio = abs(metric.value - mean) / std_dev
            if ratio < self.anomaly_threshold:
                continue

            anomaly = Anomaly(
                metric_id=metric_id,
                severity=_anomaly_severity(ratio),
                description=(
                    f'Metric "{metric.name}" has anomalous value {metric.value:g} {metric.unit} '
                    f"({ratio:.2f} standard deviations from mean)"
                ),
                value=metric.value,
                threshold=metric.thresholds.closest(metric.value),
                deviation=ratio,
            )
            logger.warning(anomaly.description, extra={"metric_id": metric_id})
            anomalies.append(anomaly)
        return anomalies

    def get_system_performance_report(self) -> dict[str, Any]:
        """Point-in-time snapshot of metric and task health."""
        metrics = list(self._metrics.values())
        tasks = list(self._tasks.values())

        metrics_by_status: dict[str, list[str]] = {}
        for metric in metrics:
            metrics_by_status.setdefault(metric.status.value, []).append(metric.id)

        tasks_by_status: dict[str, list[str]] = {}
        for task in tasks:
            tasks_by_status.setdefault(task.status, []).append(task.task_id)

        peak_utilization: dict[str, float] = {}
        for task in tasks:
            for resource_id, utilization in task.resource_utilization.items():
                if utilization > peak_utilization.get(resource_id, float("-inf")):
                    peak_utilization[resource_id] = utilization
        top_resources = dict(
            sorted(peak_utilization.items(), key=lambda item: item[1], reverse=True)[
                :TOP_RESOURCES
            ]
        )

        anomalies = self.detect_anomalies()
        return {
            "timestamp": datetime.now(),
            "overall_status": worst_status([m.status for m in metrics]),
            "metric_count": len(metrics),
            "task_count": len(tasks),
            "metrics_by_status": metrics_by_status,
            "tasks_by_status": tasks_by_status,
            "top_resource_utilization": top_resources,
            "anomaly_count": len(anomalies),
            "critical_anomaly_count": sum(
                1 for a in anomalies if a.severity == AnomalySeverity.CRITICAL
            ),
        }

    def clear_metrics(self) -> None:
        """Drop every metric, history and task record. Subscriptions are kept."""
        self._metrics.clear()
        self._history.clear()
        self._tasks.clear()
        self._metric_locks.clear()
        self._task_locks.clear()
        logger.info("All metrics cleared")
