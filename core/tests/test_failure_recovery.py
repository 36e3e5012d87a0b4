"""
Tests for FailureRecoveryEngine.

Covers:
- Built-in catalogue and strategy selection by failure type
- Plan ordering by priority
- Retry loop, backoff and first-success short-circuit
- Skipped strategies (no handler) and handler errors
- Phase transitions, cancellation and subscriber notification
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from adaptflow.monitoring import (
    BUILTIN_STRATEGIES,
    ExecutionStatus,
    FailureRecoveryEngine,
    PerformanceMonitor,
    RecoveryAction,
    RecoveryPhase,
    RecoveryStrategy,
    StrategyKind,
    backoff_delay,
)


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Skip real backoff delays."""
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


def strategy(strategy_id, priority, failure_types=("db-error",), max_retries=0, backoff=0):
    return RecoveryStrategy(
        id=strategy_id,
        name=strategy_id.title(),
        handler=strategy_id,
        kind=StrategyKind.CUSTOM,
        applicable_failure_types=list(failure_types),
        max_retries=max_retries,
        backoff_factor=backoff,
        priority=priority,
    )


@pytest.fixture
def engine():
    return FailureRecoveryEngine(register_defaults=False)


def actions(engine, plan_id):
    return [entry.action for entry in engine.get_execution_history(plan_id)]


# ---------------------------------------------------------------------------
# Catalogue and planning
# ---------------------------------------------------------------------------


class TestCatalogue:
    def test_builtin_catalogue(self):
        engine = FailureRecoveryEngine()

        catalogue = engine.get_recovery_strategies()

        assert [s.id for s in catalogue] == [
            "simple-retry",
            "circuit-breaker",
            "fallback-execution",
            "compensating-action",
            "graceful-degradation",
        ]
        retry = catalogue[0]
        assert retry.kind == StrategyKind.RETRY
        assert (retry.max_retries, retry.backoff_factor, retry.priority) == (3, 2, 10)
        assert set(retry.applicable_failure_types) == {
            "timeout",
            "temporary-error",
            "connection-error",
        }

    def test_builtin_tag_sets_are_disjoint(self):
        tags = [t for s in BUILTIN_STRATEGIES for t in s.applicable_failure_types]
        assert len(tags) == len(set(tags))

    def test_filter_by_failure_type(self):
        engine = FailureRecoveryEngine()
        assert [s.id for s in engine.get_recovery_strategies("rate-limit")] == ["circuit-breaker"]

    def test_register_from_mapping_replaces_existing(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        engine.register_recovery_strategy(
            {"id": "a", "name": "A2", "handler": "a", "priority": 5, "max_retries": 1}
        )

        [only] = engine.get_recovery_strategies()
        assert only.name == "A2"
        assert only.priority == 5


class TestPlanCreation:
    def test_execution_order_follows_priority(self, engine):
        engine.register_recovery_strategy(strategy("second", 20))
        engine.register_recovery_strategy(strategy("first", 10))
        engine.register_recovery_strategy(strategy("third", 30))

        plan = engine.create_recovery_plan("f1", "db-error", "writer")

        assert plan.execution_order == ["first", "second", "third"]
        assert [s.priority for s in plan.strategies] == [10, 20, 30]
        assert plan.current_phase == RecoveryPhase.PLANNED

    def test_only_applicable_strategies_selected(self, engine):
        engine.register_recovery_strategy(strategy("db", 10))
        engine.register_recovery_strategy(strategy("net", 20, failure_types=["timeout"]))

        plan = engine.create_recovery_plan("f1", "timeout", "fetcher")

        assert plan.execution_order == ["net"]

    def test_wildcard_applies_to_every_failure(self, engine):
        engine.register_recovery_strategy(strategy("any", 99, failure_types=["*"]))

        plan = engine.create_recovery_plan("f1", "never-seen", "x")

        assert plan.execution_order == ["any"]

    def test_no_applicable_strategies(self, engine):
        plan = engine.create_recovery_plan("f1", "mystery", "x", details={"code": 7})

        assert plan.execution_order == []
        assert plan.details == {"code": 7}

    def test_system_status_without_monitor(self, engine):
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        assert plan.system_status_at_failure == ExecutionStatus.OPTIMAL

    def test_system_status_snapshot_from_monitor(self):
        monitor = PerformanceMonitor()
        monitor.register_metric(
            {
                "name": "throughput",
                "value": 0,
                "thresholds": {
                    "optimal": 100,
                    "good": 80,
                    "acceptable": 60,
                    "concerning": 40,
                    "problematic": 20,
                    "critical": 0,
                },
            }
        )
        engine = FailureRecoveryEngine(monitor, register_defaults=False)

        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert plan.system_status_at_failure == ExecutionStatus.CRITICAL

    def test_plans_for_component(self, engine):
        first = engine.create_recovery_plan("f1", "db-error", "writer")
        engine.create_recovery_plan("f2", "db-error", "reader")
        second = engine.create_recovery_plan("f3", "db-error", "writer")

        plans = engine.get_recovery_plans_for_component("writer")

        assert [p.id for p in plans] == [first.id, second.id]

    def test_delete(self, engine):
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert engine.delete_recovery_plan(plan.id) is True
        assert engine.delete_recovery_plan(plan.id) is False
        assert engine.get_recovery_plan(plan.id) is None
        assert engine.get_execution_history(plan.id) == []


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecution:
    @pytest.mark.asyncio
    async def test_success_records_full_history(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        engine.register_handler("a", lambda ctx: True)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is True

        final = engine.get_recovery_plan(plan.id)
        assert final.current_phase == RecoveryPhase.SUCCEEDED
        assert final.result == "Successfully recovered"
        assert final.execution_started_at is not None
        assert final.execution_completed_at is not None
        assert actions(engine, plan.id) == [
            RecoveryAction.EXECUTION_STARTED,
            RecoveryAction.STRATEGY_STARTED,
            RecoveryAction.STRATEGY_ATTEMPT,
            RecoveryAction.STRATEGY_COMPLETED,
            RecoveryAction.EXECUTION_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_first_successful_strategy_short_circuits(self, engine):
        for strategy_id, priority in [("first", 10), ("second", 20), ("third", 30)]:
            engine.register_recovery_strategy(strategy(strategy_id, priority))
        first = MagicMock(return_value=False)
        second = MagicMock(return_value=True)
        third = MagicMock(return_value=True)
        engine.register_handler("first", first)
        engine.register_handler("second", second)
        engine.register_handler("third", third)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is True

        first.assert_called_once()
        second.assert_called_once()
        third.assert_not_called()
        assert engine.get_recovery_plan(plan.id).current_phase == RecoveryPhase.SUCCEEDED
        [completed] = [
            e
            for e in engine.get_execution_history(plan.id)
            if e.action == RecoveryAction.EXECUTION_COMPLETED
        ]
        assert completed.strategy_id == "second"

    @pytest.mark.asyncio
    async def test_exhaustion_marks_plan_failed(self, engine):
        engine.register_recovery_strategy(strategy("a", 10, max_retries=2))
        handler = MagicMock(return_value=False)
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is False

        assert handler.call_count == 3
        final = engine.get_recovery_plan(plan.id)
        assert final.current_phase == RecoveryPhase.FAILED
        assert final.result == "Failed to recover"

    @pytest.mark.asyncio
    async def test_retries_with_backoff_until_success(self, engine, fast_sleep):
        engine.register_recovery_strategy(strategy("a", 10, max_retries=3, backoff=2))
        handler = MagicMock(side_effect=[False, False, True])
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is True

        assert [c.args[0].retry_count for c in handler.call_args_list] == [0, 1, 2]
        assert [c.args[0] for c in fast_sleep.await_args_list] == [2.0, 4.0]
        attempts = [
            (e.attempt, e.success)
            for e in engine.get_execution_history(plan.id)
            if e.action == RecoveryAction.STRATEGY_ATTEMPT
        ]
        assert attempts == [(0, False), (1, False), (2, True)]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, fast_sleep):
        engine = FailureRecoveryEngine(register_defaults=False, max_backoff_seconds=3)
        engine.register_recovery_strategy(strategy("a", 10, max_retries=1, backoff=5))
        engine.register_handler("a", lambda ctx: False)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        await engine.execute_recovery_plan(plan.id)

        fast_sleep.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_handler_errors_count_as_failed_attempts(self, engine):
        engine.register_recovery_strategy(strategy("a", 10, max_retries=1))
        handler = MagicMock(side_effect=[ConnectionError("refused"), True])
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is True

        [error] = [
            e
            for e in engine.get_execution_history(plan.id)
            if e.action == RecoveryAction.STRATEGY_ERROR
        ]
        assert error.attempt == 0
        assert error.error == "refused"
        assert error.success is False

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        handler = AsyncMock(return_value=True)
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "writer", details={"row": 3})

        assert await engine.execute_recovery_plan(plan.id) is True

        context = handler.await_args.args[0]
        assert context.recovery_plan_id == plan.id
        assert context.failure_id == "f1"
        assert context.failure_type == "db-error"
        assert context.affected_component == "writer"
        assert context.failure_details == {"row": 3}
        assert context.additional_data["strategy_id"] == "a"

    @pytest.mark.asyncio
    async def test_missing_handler_is_skipped(self, engine):
        engine.register_recovery_strategy(strategy("unbound", 10))
        engine.register_recovery_strategy(strategy("bound", 20))
        engine.register_handler("bound", lambda ctx: True)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert await engine.execute_recovery_plan(plan.id) is True

        [skipped] = [
            e
            for e in engine.get_execution_history(plan.id)
            if e.action == RecoveryAction.STRATEGY_SKIPPED
        ]
        assert skipped.strategy_id == "unbound"

    @pytest.mark.asyncio
    async def test_builtin_strategies_without_handlers_fail(self):
        engine = FailureRecoveryEngine()
        plan = engine.create_recovery_plan("f1", "timeout", "fetcher")

        assert await engine.execute_recovery_plan(plan.id) is False
        assert engine.get_recovery_plan(plan.id).current_phase == RecoveryPhase.FAILED

    @pytest.mark.asyncio
    async def test_empty_plan_fails(self, engine):
        plan = engine.create_recovery_plan("f1", "mystery", "x")

        assert await engine.execute_recovery_plan(plan.id) is False
        assert engine.get_recovery_plan(plan.id).current_phase == RecoveryPhase.FAILED


class TestPhaseTransitions:
    """A plan leaves PLANNED exactly once."""

    @pytest.mark.asyncio
    async def test_unknown_plan(self, engine):
        assert await engine.execute_recovery_plan("missing") is False

    @pytest.mark.asyncio
    async def test_finished_plan_is_not_rerun(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        handler = MagicMock(return_value=True)
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        await engine.execute_recovery_plan(plan.id)

        assert await engine.execute_recovery_plan(plan.id) is False

        handler.assert_called_once()
        assert engine.get_recovery_plan(plan.id).current_phase == RecoveryPhase.SUCCEEDED

    @pytest.mark.asyncio
    async def test_concurrent_execution_runs_once(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        handler = AsyncMock(return_value=True)
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        results = await asyncio.gather(
            engine.execute_recovery_plan(plan.id),
            engine.execute_recovery_plan(plan.id),
        )

        assert sorted(results) == [False, True]
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subscribers_see_every_transition(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        engine.register_handler("a", lambda ctx: True)
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        phases = []
        engine.subscribe_to_recovery_plan_updates(plan.id, lambda p: phases.append(p.current_phase))

        await engine.execute_recovery_plan(plan.id)

        assert phases == [RecoveryPhase.EXECUTING, RecoveryPhase.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, engine):
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        callback = MagicMock()
        unsubscribe = engine.subscribe_to_recovery_plan_updates(plan.id, callback)

        unsubscribe()
        await engine.execute_recovery_plan(plan.id)

        callback.assert_not_called()


class TestCancellation:
    def test_cancel_planned(self, engine):
        plan = engine.create_recovery_plan("f1", "db-error", "x")

        assert engine.cancel_recovery_plan(plan.id, "operator request") is True

        final = engine.get_recovery_plan(plan.id)
        assert final.current_phase == RecoveryPhase.CANCELLED
        assert final.result == "Cancelled: operator request"
        [entry] = engine.get_execution_history(plan.id)
        assert entry.action == RecoveryAction.CANCELLED
        assert entry.details == {"reason": "operator request"}

    def test_cancel_twice(self, engine):
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        engine.cancel_recovery_plan(plan.id, "first")

        assert engine.cancel_recovery_plan(plan.id, "second") is False
        assert engine.cancel_recovery_plan("missing", "x") is False

    @pytest.mark.asyncio
    async def test_cancelled_plan_cannot_execute(self, engine):
        engine.register_recovery_strategy(strategy("a", 10))
        handler = MagicMock(return_value=True)
        engine.register_handler("a", handler)
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        engine.cancel_recovery_plan(plan.id, "no longer needed")

        assert await engine.execute_recovery_plan(plan.id) is False
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_stops_retry_loop_between_attempts(self, engine):
        engine.register_recovery_strategy(strategy("a", 10, max_retries=3))
        engine.register_recovery_strategy(strategy("b", 20))
        plan = engine.create_recovery_plan("f1", "db-error", "x")
        next_strategy = MagicMock(return_value=True)

        def cancel_then_fail(ctx):
            engine.cancel_recovery_plan(ctx.recovery_plan_id, "shutting down")
            return False

        first = MagicMock(side_effect=cancel_then_fail)
        engine.register_handler("a", first)
        engine.register_handler("b", next_strategy)

        assert await engine.execute_recovery_plan(plan.id) is False

        first.assert_called_once()
        next_strategy.assert_not_called()
        final = engine.get_recovery_plan(plan.id)
        assert final.current_phase == RecoveryPhase.CANCELLED
        assert RecoveryAction.EXECUTION_COMPLETED not in actions(engine, plan.id)


class TestBackoffDelay:
    @pytest.mark.parametrize(
        "attempt,factor,cap,expected",
        [
            (0, 2, None, 0.0),
            (1, 2, None, 2.0),
            (3, 2, None, 8.0),
            (2, 0, None, 2.0),
            (1, 1, None, 1.0),
            (10, 2, 60, 60.0),
        ],
    )
    def test_delay(self, attempt, factor, cap, expected):
        assert backoff_delay(attempt, factor, cap) == expected
