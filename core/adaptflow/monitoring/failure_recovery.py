"""
Failure Recovery Engine - ordered, retryable remediation for reported failures.

Strategies form a catalogue keyed by failure-type tags. Reporting a failure
builds a ``RecoveryPlan`` holding every applicable strategy in ascending
priority order. Executing the plan walks that order, running each strategy's
handler up to ``max_retries + 1`` times with a backoff between attempts, and
stops at the first strategy that succeeds.

Strategies are plain data. The work itself is done by handlers the caller
registers by name with ``register_handler``; the engine only supplies the
selection, ordering, retry, backoff and bookkeeping around them.
"""

import asyncio
import inspect
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from adaptflow.config import EngineConfig
from adaptflow.monitoring.models import (
    ExecutionStatus,
    PlannedStrategy,
    RecoveryAction,
    RecoveryContext,
    RecoveryHistoryEntry,
    RecoveryPhase,
    RecoveryPlan,
    RecoveryStrategy,
    StrategyKind,
)
from adaptflow.monitoring.performance_monitor import PerformanceMonitor
from adaptflow.utils.listeners import ListenerRegistry
from adaptflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

RecoveryHandler = Callable[[RecoveryContext], bool | Awaitable[bool]]

CANCELLABLE_PHASES = frozenset({RecoveryPhase.PLANNED, RecoveryPhase.EXECUTING})

BUILTIN_STRATEGIES: list[RecoveryStrategy] = [
    RecoveryStrategy(
        id="simple-retry",
        name="Simple Retry",
        description="Retry the failed task with the same parameters",
        kind=StrategyKind.RETRY,
        handler="simple-retry",
        applicable_failure_types=["timeout", "temporary-error", "connection-error"],
        max_retries=3,
        backoff_factor=2,
        priority=10,
    ),
    RecoveryStrategy(
        id="circuit-breaker",
        name="Circuit Breaker",
        description="Stop retrying after multiple failures to prevent cascading failures",
        kind=StrategyKind.CIRCUIT_BREAKER,
        handler="circuit-breaker",
        applicable_failure_types=["system-overload", "rate-limit", "resource-exhaustion"],
        max_retries=1,
        backoff_factor=5,
        priority=20,
    ),
    RecoveryStrategy(
        id="fallback-execution",
        name="Fallback Execution",
        description="Execute an alternative implementation or path",
        kind=StrategyKind.FALLBACK,
        handler="fallback-execution",
        applicable_failure_types=["permanent-error", "validation-error", "unsupported-operation"],
        max_retries=1,
        backoff_factor=1,
        priority=30,
    ),
    RecoveryStrategy(
        id="compensating-action",
        name="Compensating Action",
        description="Perform a compensating action to restore system to a consistent state",
        kind=StrategyKind.COMPENSATION,
        handler="compensating-action",
        applicable_failure_types=["partial-completion", "inconsistent-state", "transaction-error"],
        max_retries=2,
        backoff_factor=1,
        priority=40,
    ),
    RecoveryStrategy(
        id="graceful-degradation",
        name="Graceful Degradation",
        description="Continue with reduced functionality",
        kind=StrategyKind.DEGRADATION,
        handler="graceful-degradation",
        applicable_failure_types=[
            "dependency-failure",
            "partial-failure",
            "performance-degradation",
        ],
        max_retries=0,
        backoff_factor=0,
        priority=50,
    ),
]


def backoff_delay(attempt: int, backoff_factor: float, max_delay: float | None = None) -> float:
    """
    Seconds to wait before retry ``attempt`` of a strategy.

    Attempt 0 is the first try and never waits. Later attempts wait
    ``backoff_factor ** attempt`` seconds, or ``attempt`` seconds when the
    factor is 0.

    Args:
        attempt: Zero-based attempt number
        backoff_factor: Exponential base from the strategy
        max_delay: Upper bound on the delay, if any

    Returns:
        Delay in seconds
    """
    if attempt <= 0:
        return 0.0
    delay = float(backoff_factor**attempt) if backoff_factor else float(attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


class FailureRecoveryEngine:
    """
    Builds and executes recovery plans.

    Example:
        engine = FailureRecoveryEngine(monitor)
        engine.register_handler("simple-retry", retry_failed_node)
        plan = engine.create_recovery_plan("err-1", "timeout", "summarize")
        recovered = await engine.execute_recovery_plan(plan.id)
    """

    def __init__(
        self,
        monitor: PerformanceMonitor | None = None,
        config: EngineConfig | None = None,
        max_backoff_seconds: float | None = None,
        register_defaults: bool = True,
    ):
        config = config or EngineConfig()
        self.monitor = monitor
        self.max_backoff_seconds = (
            max_backoff_seconds if max_backoff_seconds is not None else config.max_backoff_seconds
        )

        self._strategies: dict[str, RecoveryStrategy] = {}
        self._handlers: dict[str, RecoveryHandler] = {}
        self._catalogue_lock = threading.Lock()
        self._plans: dict[str, RecoveryPlan] = {}
        self._history: dict[str, list[RecoveryHistoryEntry]] = {}
        self._locks = KeyedLock()
        self._listeners = ListenerRegistry("recovery plan listener")

        if register_defaults:
            for strategy in BUILTIN_STRATEGIES:
                self.register_recovery_strategy(strategy)
        logger.info("Failure recovery engine initialized")

    # === CATALOGUE ===

    def register_recovery_strategy(self, strategy: RecoveryStrategy | Mapping[str, Any]) -> str:
        """Add a strategy to the catalogue, replacing any with the same id."""
        if not isinstance(strategy, RecoveryStrategy):
            strategy = RecoveryStrategy.model_validate(strategy)
        with self._catalogue_lock:
            if strategy.id in self._strategies:
                logger.info(f"Replacing recovery strategy {strategy.id}")
            self._strategies[strategy.id] = strategy.model_copy(deep=True)
        logger.debug(
            f"Registered recovery strategy {strategy.id} "
            f"(priority {strategy.priority}, handler {strategy.handler})"
        )
        return strategy.id

    def get_recovery_strategies(self, failure_type: str | None = None) -> list[RecoveryStrategy]:
        """Catalogue entries in priority order, optionally only those for ``failure_type``."""
        with self._catalogue_lock:
            strategies = list(self._strategies.values())
        if failure_type is not None:
            strategies = [s for s in strategies if s.applies_to(failure_type)]
        strategies.sort(key=lambda s: s.priority)
        return [s.model_copy(deep=True) for s in strategies]

    def register_handler(self, name: str, handler: RecoveryHandler) -> None:
        """
        Install the callable that performs strategies naming ``name``.

        Handlers receive a ``RecoveryContext`` and return (or resolve to) True
        when the attempt recovered the failure.
        """
        with self._catalogue_lock:
            self._handlers[name] = handler
        logger.debug(f"Registered recovery handler {name}")

    def has_handler(self, name: str) -> bool:
        with self._catalogue_lock:
            return name in self._handlers

    # === PLANS ===

    def create_recovery_plan(
        self,
        failure_id: str,
        failure_type: str,
        affected_component: str,
        details: Mapping[str, Any] | None = None,
    ) -> RecoveryPlan:
        """
        Build and store a PLANNED recovery plan for one failure.

        Args:
            failure_id: Caller's identifier for the failure
            failure_type: Tag used to select strategies
            affected_component: Component (node, service) that failed
            details: Free-form diagnostic data handed to every handler

        Returns:
            A copy of the stored plan
        """
        strategies = self.get_recovery_strategies(failure_type)
        if not strategies:
            logger.warning(f"No recovery strategies applicable to failure type: {failure_type}")

        status = (
            self.monitor.get_execution_status() if self.monitor else ExecutionStatus.OPTIMAL
        )
        plan = RecoveryPlan(
            id=str(uuid.uuid4()),
            failure_id=failure_id,
            failure_type=failure_type,
            affected_component=affected_component,
            details=dict(details or {}),
            strategies=[
                PlannedStrategy(
                    strategy_id=s.id,
                    name=s.name,
                    kind=s.kind,
                    handler=s.handler,
                    priority=s.priority,
                    max_retries=s.max_retries,
                    backoff_factor=s.backoff_factor,
                )
                for s in strategies
            ],
            execution_order=[s.id for s in strategies],
            system_status_at_failure=status,
        )
        with self._locks.hold(plan.id):
            self._plans[plan.id] = plan
            self._history[plan.id] = []

        logger.info(
            f"Created recovery plan {plan.id} for failure {failure_id} "
            f"({failure_type} in {affected_component}) with {len(strategies)} strategies",
            extra={"plan_id": plan.id},
        )
        return plan.model_copy(deep=True)

    def get_recovery_plan(self, plan_id: str) -> RecoveryPlan | None:
        with self._locks.hold(plan_id):
            plan = self._plans.get(plan_id)
            return plan.model_copy(deep=True) if plan else None

    def get_recovery_plans_for_component(self, component: str) -> list[RecoveryPlan]:
        plans = [p for p in list(self._plans.values()) if p.affected_component == component]
        plans.sort(key=lambda p: p.created_at)
        return [p.model_copy(deep=True) for p in plans]

    def get_execution_history(self, plan_id: str) -> list[RecoveryHistoryEntry]:
        with self._locks.hold(plan_id):
            return list(self._history.get(plan_id, []))

    def delete_recovery_plan(self, plan_id: str) -> bool:
        with self._locks.hold(plan_id):
            if self._plans.pop(plan_id, None) is None:
                return False
            self._history.pop(plan_id, None)
        self._listeners.discard(plan_id)
        self._locks.discard(plan_id)
        logger.info(f"Deleted recovery plan {plan_id}")
        return True

    def subscribe_to_recovery_plan_updates(
        self,
        plan_id: str,
        callback: Callable[[RecoveryPlan], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with a plan snapshot on every phase change."""
        return self._listeners.subscribe(plan_id, callback)

    # === EXECUTION ===

    async def execute_recovery_plan(self, plan_id: str) -> bool:
        """
        Run a PLANNED plan's strategies in order until one succeeds.

        Returns:
            True if a strategy recovered the failure. False when the plan is
            unknown, not in PLANNED, exhausted, or cancelled mid-flight.
        """
        started = self._transition(
            plan_id,
            {RecoveryPhase.PLANNED},
            RecoveryPhase.EXECUTING,
            execution_started_at=datetime.now(),
        )
        if started is None:
            return False

        self._record(plan_id, RecoveryAction.EXECUTION_STARTED)
        logger.info(
            f"Executing recovery plan {plan_id}: {started.execution_order}",
            extra={"plan_id": plan_id},
        )
        self._listeners.notify(plan_id, started)

        recovered_by = None
        for planned in started.strategies:
            if self._should_stop(plan_id):
                break
            if await self._run_strategy(started, planned):
                recovered_by = planned.strategy_id
                break

        if self._should_stop(plan_id):
            logger.info(f"Recovery plan {plan_id} stopped before completion")
            return False

        success = recovered_by is not None
        completed = self._transition(
            plan_id,
            {RecoveryPhase.EXECUTING},
            RecoveryPhase.SUCCEEDED if success else RecoveryPhase.FAILED,
            execution_completed_at=datetime.now(),
            result="Successfully recovered" if success else "Failed to recover",
        )
        if completed is None:
            return False

        self._record(
            plan_id,
            RecoveryAction.EXECUTION_COMPLETED,
            success=success,
            strategy_id=recovered_by,
        )
        if success:
            logger.info(
                f"Recovery plan {plan_id} succeeded with strategy {recovered_by}",
                extra={"plan_id": plan_id, "strategy_id": recovered_by},
            )
        else:
            logger.error(
                f"Recovery plan {plan_id} exhausted all strategies for failure "
                f"{started.failure_id} ({started.failure_type})",
                extra={"plan_id": plan_id},
            )
        self._listeners.notify(plan_id, completed)
        return success

    def cancel_recovery_plan(self, plan_id: str, reason: str) -> bool:
        """Cancel a PLANNED or EXECUTING plan. A running retry loop stops at its next attempt."""
        cancelled = self._transition(
            plan_id,
            CANCELLABLE_PHASES,
            RecoveryPhase.CANCELLED,
            execution_completed_at=datetime.now(),
            result=f"Cancelled: {reason}",
        )
        if cancelled is None:
            return False

        self._record(plan_id, RecoveryAction.CANCELLED, success=True, details={"reason": reason})
        logger.info(f"Recovery plan {plan_id} cancelled: {reason}", extra={"plan_id": plan_id})
        self._listeners.notify(plan_id, cancelled)
        return True

    async def _run_strategy(self, plan: RecoveryPlan, planned: PlannedStrategy) -> bool:
        """Run one strategy's retry loop. Returns True on the first successful attempt."""
        strategy_id = planned.strategy_id
        with self._catalogue_lock:
            handler = self._handlers.get(planned.handler)
        if handler is None:
            logger.warning(
                f"No handler registered for recovery strategy {strategy_id} "
                f"(handler '{planned.handler}'); skipping"
            )
            self._record(
                plan.id,
                RecoveryAction.STRATEGY_SKIPPED,
                strategy_id=strategy_id,
                details={"handler": planned.handler},
            )
            return False

        self._record(plan.id, RecoveryAction.STRATEGY_STARTED, strategy_id=strategy_id)
        succeeded = False
        for attempt in range(planned.max_retries + 1):
            if self._should_stop(plan.id):
                return False
            if attempt > 0:
                delay = backoff_delay(attempt, planned.backoff_factor, self.max_backoff_seconds)
                logger.debug(f"Backing off {delay:.1f}s before attempt {attempt} of {strategy_id}")
                await asyncio.sleep(delay)
                if self._should_stop(plan.id):
                    return False

            context = RecoveryContext(
                recovery_plan_id=plan.id,
                failure_id=plan.failure_id,
                failure_type=plan.failure_type,
                affected_component=plan.affected_component,
                failure_details=dict(plan.details),
                retry_count=attempt,
                max_retries=planned.max_retries,
                backoff_factor=planned.backoff_factor,
                additional_data={"strategy_id": strategy_id, "strategy_kind": planned.kind},
            )
            try:
                result = handler(context)
                if inspect.isawaitable(result):
                    result = await result
                succeeded = bool(result)
            except Exception as e:
                logger.warning(
                    f"Recovery strategy {strategy_id} attempt {attempt} raised: {e}",
                    extra={"plan_id": plan.id, "strategy_id": strategy_id},
                )
                self._record(
                    plan.id,
                    RecoveryAction.STRATEGY_ERROR,
                    strategy_id=strategy_id,
                    attempt=attempt,
                    success=False,
                    error=str(e),
                )
                continue

            self._record(
                plan.id,
                RecoveryAction.STRATEGY_ATTEMPT,
                strategy_id=strategy_id,
                attempt=attempt,
                success=succeeded,
            )
            if succeeded:
                break

        self._record(
            plan.id,
            RecoveryAction.STRATEGY_COMPLETED,
            strategy_id=strategy_id,
            success=succeeded,
        )
        return succeeded

    def _transition(
        self,
        plan_id: str,
        allowed: set[RecoveryPhase] | frozenset[RecoveryPhase],
        phase: RecoveryPhase,
        **updates: Any,
    ) -> RecoveryPlan | None:
        """
        Atomically move a plan from one of ``allowed`` into ``phase``.

        Returns a snapshot of the updated plan, or None if the plan is unknown
        or another caller already moved it elsewhere.
        """
        with self._locks.hold(plan_id):
            plan = self._plans.get(plan_id)
            if plan is None:
                logger.warning(f"Recovery plan not found: {plan_id}")
                return None
            if plan.current_phase not in allowed:
                logger.warning(
                    f"Cannot move recovery plan {plan_id} from {plan.current_phase} to {phase}"
                )
                return None
            plan = plan.model_copy(update={"current_phase": phase, **updates})
            self._plans[plan_id] = plan
            return plan.model_copy(deep=True)

    def _should_stop(self, plan_id: str) -> bool:
        with self._locks.hold(plan_id):
            plan = self._plans.get(plan_id)
            return plan is None or plan.current_phase != RecoveryPhase.EXECUTING

    def _record(self, plan_id: str, action: RecoveryAction, **fields: Any) -> None:
        entry = RecoveryHistoryEntry(action=action, **fields)
        with self._locks.hold(plan_id):
            history = self._history.get(plan_id)
            if history is not None:
                history.append(entry)
