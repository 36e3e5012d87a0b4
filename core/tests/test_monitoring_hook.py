"""Tests for MonitoringHook wired into real GraphExecutor runs."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from adaptflow.graph import END, START, GraphExecutor, GraphSpec
from adaptflow.monitoring import (
    AdjustmentType,
    FailureRecoveryEngine,
    MonitoringHook,
    PerformanceMonitor,
    PlanAdjustmentEngine,
    RecoveryPhase,
    TaskPlan,
)

THRESHOLDS = {
    "optimal": 100,
    "good": 80,
    "acceptable": 60,
    "concerning": 40,
    "problematic": 20,
    "critical": 0,
}


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Skip real backoff delays."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


def ok(state):
    return {"ok": True}


def fail(state):
    raise TimeoutError("upstream timed out")


def two_step_graph(first=ok, second=ok):
    return (
        GraphSpec(id="pipeline")
        .add_node("fetch", first)
        .add_node("store", second)
        .add_edge(START, "fetch")
        .add_edge("fetch", "store")
        .add_edge("store", END)
    )


@pytest.fixture
def monitor():
    return PerformanceMonitor()


class TestTaskMetrics:
    """Every node boundary becomes a task event."""

    @pytest.mark.asyncio
    async def test_progress_and_events(self, monitor):
        graph = two_step_graph()
        hook = MonitoringHook.for_graph(graph, monitor, task_id="job-1")
        graph.set_transition_hook(hook)

        result = await GraphExecutor().run(graph, {})

        assert result.completed
        task = monitor.get_task_metrics("job-1")
        assert task.status == "running"
        assert task.start_time is not None
        assert task.progress == 1.0
        assert [e.type for e in task.events] == ["node_completed", "node_completed"]
        assert [e.data["node_id"] for e in task.events] == ["fetch", "store"]
        assert [h.status for h in task.status_history] == ["running"]

    @pytest.mark.asyncio
    async def test_failed_node_event(self, monitor):
        graph = two_step_graph(first=fail)
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor, task_id="job-1"))

        await GraphExecutor().run(graph, {})

        first_event = monitor.get_task_metrics("job-1").events[0]
        assert first_event.type == "node_failed"
        assert "upstream timed out" in first_event.description

    @pytest.mark.asyncio
    async def test_progress_without_node_count(self, monitor):
        graph = two_step_graph()
        graph.set_transition_hook(MonitoringHook(monitor, task_id="job-1"))

        await GraphExecutor().run(graph, {})

        assert monitor.get_task_metrics("job-1").progress == 0.0

    @pytest.mark.asyncio
    async def test_record_completion(self, monitor):
        graph = two_step_graph()
        hook = MonitoringHook.for_graph(graph, monitor, task_id="job-1")
        graph.set_transition_hook(hook)

        result = await GraphExecutor().run(graph, {})

        assert hook.record_completion(result.is_clean) is True
        task = monitor.get_task_metrics("job-1")
        assert task.status == "completed"
        assert task.duration_ms is not None

    def test_record_completion_before_any_node(self, monitor):
        assert MonitoringHook(monitor).record_completion(True) is False

    @pytest.mark.asyncio
    async def test_reset_between_runs(self, monitor):
        graph = two_step_graph()
        hook = MonitoringHook.for_graph(graph, monitor, task_id="job-1")
        graph.set_transition_hook(hook)
        await GraphExecutor().run(graph, {})

        hook.reset()
        hook.task_id = "job-2"
        await GraphExecutor().run(graph, {})

        assert monitor.get_task_metrics("job-2").progress == 1.0


class TestDurationMetric:
    @pytest.mark.asyncio
    async def test_shared_duration_metric_updated(self, monitor):
        monitor.register_metric(
            {"id": "node_duration_ms", "name": "duration", "value": 0, "thresholds": THRESHOLDS}
        )
        graph = two_step_graph()
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor))

        await GraphExecutor().run(graph, {})

        assert len(monitor.get_metric_history("node_duration_ms").values) == 3

    @pytest.mark.asyncio
    async def test_per_node_metric_preferred(self, monitor):
        monitor.register_metric(
            {"id": "node_duration_ms", "name": "all", "value": 0, "thresholds": THRESHOLDS}
        )
        monitor.register_metric(
            {"id": "node_duration_ms.store", "name": "s", "value": 0, "thresholds": THRESHOLDS}
        )
        graph = two_step_graph()
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor))

        await GraphExecutor().run(graph, {})

        assert len(monitor.get_metric_history("node_duration_ms").values) == 2
        assert len(monitor.get_metric_history("node_duration_ms.store").values) == 2


class TestPlanAdjustments:
    @pytest.mark.asyncio
    async def test_recommendations_stored_in_state(self, monitor):
        adjustments = PlanAdjustmentEngine(monitor)
        adjustments.register_task_plan(TaskPlan(task_id="job-1", priority=9))
        graph = two_step_graph()
        graph.set_transition_hook(
            MonitoringHook.for_graph(graph, monitor, adjustments, task_id="job-1")
        )

        state = await GraphExecutor().execute(graph, {})

        [recommendation] = state["plan_adjustments"]
        assert recommendation["type"] == AdjustmentType.PRIORITY_BOOST.value
        assert recommendation["applied"] is False

    @pytest.mark.asyncio
    async def test_no_plan_no_recommendations(self, monitor):
        graph = two_step_graph()
        graph.set_transition_hook(
            MonitoringHook.for_graph(graph, monitor, PlanAdjustmentEngine(monitor))
        )

        state = await GraphExecutor().execute(graph, {})

        assert "plan_adjustments" not in state


class TestRecovery:
    """New error entries are handed to the recovery engine."""

    @pytest.mark.asyncio
    async def test_failed_node_is_recovered(self, monitor):
        recovery = FailureRecoveryEngine(monitor)
        retry = MagicMock(return_value=True)
        recovery.register_handler("simple-retry", retry)
        graph = two_step_graph(first=fail)
        graph.set_transition_hook(
            MonitoringHook.for_graph(graph, monitor, recovery=recovery, task_id="job-1")
        )

        result = await GraphExecutor().run(graph, {})

        assert result.completed
        assert len(result.errors) == 1
        [recovery_record] = result.state["recoveries"]
        assert recovery_record["failure_id"] == "job-1:fetch:0"
        assert recovery_record["phase"] == RecoveryPhase.SUCCEEDED.value
        assert recovery_record["success"] is True

        context = retry.call_args.args[0]
        assert context.failure_type == "temporary-error"
        assert context.affected_component == "fetch"
        assert context.failure_details["error"]["error"] == "upstream timed out"

        plan = recovery.get_recovery_plan(recovery_record["plan_id"])
        assert plan.affected_component == "fetch"

    @pytest.mark.asyncio
    async def test_failure_type_from_state(self, monitor):
        recovery = FailureRecoveryEngine(monitor)
        fallback = MagicMock(return_value=True)
        recovery.register_handler("fallback-execution", fallback)
        graph = two_step_graph(first=fail)
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor, recovery=recovery))

        state = await GraphExecutor().execute(graph, {"failure_type": "validation-error"})

        fallback.assert_called_once()
        assert state["recoveries"][0]["success"] is True

    @pytest.mark.asyncio
    async def test_unrecoverable_failure_is_reported(self, monitor):
        recovery = FailureRecoveryEngine(monitor)
        graph = two_step_graph(first=fail)
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor, recovery=recovery))

        state = await GraphExecutor().execute(graph, {})

        [record] = state["recoveries"]
        assert record["success"] is False
        assert record["phase"] == RecoveryPhase.FAILED.value
        assert len(state["errors"]) == 1

    @pytest.mark.asyncio
    async def test_clean_nodes_trigger_no_recovery(self, monitor):
        recovery = FailureRecoveryEngine(monitor)
        graph = two_step_graph()
        graph.set_transition_hook(MonitoringHook.for_graph(graph, monitor, recovery=recovery))

        state = await GraphExecutor().execute(graph, {})

        assert "recoveries" not in state
        assert recovery.get_recovery_plans_for_component("fetch") == []
