"""
Monitoring hook - wires the graph executor to the monitoring services.

A ``MonitoringHook`` is installed as a graph's state-transition hook. After
every node it feeds task metrics to the ``PerformanceMonitor``, asks the
``PlanAdjustmentEngine`` for recommendations and, when the node recorded a
new error, hands that failure to the ``FailureRecoveryEngine``.
"""

import logging
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from adaptflow.graph.edge import GraphSpec
from adaptflow.graph.state import get_errors
from adaptflow.monitoring.failure_recovery import FailureRecoveryEngine
from adaptflow.monitoring.models import TaskStatus
from adaptflow.monitoring.performance_monitor import PerformanceMonitor
from adaptflow.monitoring.plan_adjustment import PlanAdjustmentEngine

logger = logging.getLogger(__name__)

ADJUSTMENTS_KEY = "plan_adjustments"
RECOVERIES_KEY = "recoveries"
FAILURE_TYPE_KEY = "failure_type"
DEFAULT_FAILURE_TYPE = "temporary-error"
DURATION_METRIC_ID = "node_duration_ms"


class MonitoringHook:
    """
    State-transition hook reporting each node to the monitoring services.

    The hook is stateful per run: it remembers which nodes it has seen to
    compute progress. Call ``reset()`` before reusing it for another run.

    Example:
        monitor = PerformanceMonitor()
        hook = MonitoringHook.for_graph(graph, monitor, adjustments, recovery, task_id="t1")
        graph.set_transition_hook(hook)
        result = await GraphExecutor().run(graph, {})
        hook.record_completion(result.is_clean)
    """

    def __init__(
        self,
        monitor: PerformanceMonitor,
        adjustments: PlanAdjustmentEngine | None = None,
        recovery: FailureRecoveryEngine | None = None,
        task_id: str = "workflow",
        total_nodes: int | None = None,
        duration_metric_id: str = DURATION_METRIC_ID,
    ):
        self.monitor = monitor
        self.adjustments = adjustments
        self.recovery = recovery
        self.task_id = task_id
        self.total_nodes = total_nodes
        self.duration_metric_id = duration_metric_id
        self._visited: set[str] = set()
        self._started_at: float | None = None
        self._last_transition = time.monotonic()

    @classmethod
    def for_graph(cls, graph: GraphSpec, monitor: PerformanceMonitor, *args, **kwargs):
        """Build a hook whose progress is measured against ``graph``'s node count."""
        kwargs.setdefault("total_nodes", len(graph.nodes))
        return cls(monitor, *args, **kwargs)

    def reset(self) -> None:
        self._visited.clear()
        self._started_at = None
        self._last_transition = time.monotonic()

    async def __call__(
        self,
        previous: Mapping[str, Any],
        new: Mapping[str, Any],
        node_id: str,
    ) -> dict[str, Any]:
        state = dict(new)
        now = time.monotonic()
        duration_ms = (now - self._last_transition) * 1000
        self._last_transition = now

        new_errors = get_errors(new)[len(get_errors(previous)) :]
        self._record_node(node_id, new_errors, duration_ms)
        self._update_duration_metric(node_id, duration_ms)

        if self.adjustments is not None and self.adjustments.get_task_plan(self.task_id):
            proposals = self.adjustments.check_for_adjustments(self.task_id)
            state[ADJUSTMENTS_KEY] = [a.model_dump(mode="json") for a in proposals]

        if self.recovery is not None and new_errors:
            recoveries = list(state.get(RECOVERIES_KEY) or [])
            offset = len(get_errors(previous))
            for index, entry in enumerate(new_errors, start=offset):
                recoveries.append(await self._recover(state, node_id, index, entry))
            state[RECOVERIES_KEY] = recoveries

        return state

    def record_completion(self, success: bool) -> bool:
        """Close the task's metrics record once the run has finished."""
        if self._started_at is None:
            return False
        duration_ms = (time.monotonic() - self._started_at) * 1000
        return self.monitor.record_task_completion(self.task_id, duration_ms, success)

    def _record_node(self, node_id: str, new_errors: list[dict[str, Any]], duration_ms: float):
        updates: dict[str, Any] = {}
        if self._started_at is None:
            self._started_at = time.monotonic() - duration_ms / 1000
            updates["status"] = TaskStatus.RUNNING
            updates["start_time"] = datetime.now()

        self._visited.add(node_id)
        if self.total_nodes:
            updates["progress"] = min(1.0, len(self._visited) / self.total_nodes)

        if new_errors:
            event = {
                "type": "node_failed",
                "description": f"Node '{node_id}' failed: {new_errors[-1].get('error')}",
                "data": {"node_id": node_id, "duration_ms": duration_ms},
            }
        else:
            event = {
                "type": "node_completed",
                "description": f"Node '{node_id}' completed",
                "data": {"node_id": node_id, "duration_ms": duration_ms},
            }
        updates["events"] = [event]

        if not self.monitor.update_task_metrics(self.task_id, updates):
            logger.warning(f"Could not record metrics for node '{node_id}' of {self.task_id}")

    def _update_duration_metric(self, node_id: str, duration_ms: float) -> None:
        # Per-node metric first, then the shared one
        for metric_id in (f"{self.duration_metric_id}.{node_id}", self.duration_metric_id):
            if self.monitor.get_metric(metric_id) is not None:
                self.monitor.update_metric(metric_id, duration_ms)
                return

    async def _recover(
        self,
        state: Mapping[str, Any],
        node_id: str,
        index: int,
        entry: Mapping[str, Any],
    ) -> dict[str, Any]:
        failure_type = (
            state.get(FAILURE_TYPE_KEY) or entry.get(FAILURE_TYPE_KEY) or DEFAULT_FAILURE_TYPE
        )
        failure_id = f"{self.task_id}:{node_id}:{index}"
        plan = self.recovery.create_recovery_plan(
            failure_id,
            failure_type,
            node_id,
            details={"error": dict(entry), "task_id": self.task_id},
        )
        success = await self.recovery.execute_recovery_plan(plan.id)
        final = self.recovery.get_recovery_plan(plan.id)
        phase = final.current_phase if final else plan.current_phase
        logger.info(
            f"Recovery for failure {failure_id} finished in phase {phase}",
            extra={"node_id": node_id, "plan_id": plan.id},
        )
        return {
            "plan_id": plan.id,
            "failure_id": failure_id,
            "phase": phase.value,
            "success": success,
        }
