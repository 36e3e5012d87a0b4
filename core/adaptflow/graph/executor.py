"""
Graph Executor - Runs workflow graphs.

The executor:
1. Starts at the START sentinel with the caller's initial state
2. Resolves the outgoing edge (fixed or conditional) from the state the
   node is about to receive
3. Runs the node, merging its output into the state
4. Calls the graph's transition hook after every node, then moves on
5. Stops at END, on a structural error, or when the revisit guard trips

Node failures never escape: they are recorded into ``state["errors"]`` and
the run continues along the node's edge.
"""

import inspect
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from adaptflow.config import EngineConfig
from adaptflow.graph.checkpoint_config import CheckpointConfig
from adaptflow.graph.edge import END, START, GraphSpec
from adaptflow.graph.node import NodeSpec
from adaptflow.graph.state import ERRORS_KEY, StateView, merge_state, record_error
from adaptflow.observability import clear_trace_context, get_trace_context, set_trace_context
from adaptflow.runtime.event_bus import EventBus
from adaptflow.schemas.checkpoint import Checkpoint
from adaptflow.storage.checkpoint_store import CheckpointStore


class HaltReason(StrEnum):
    """Why a run stopped."""

    COMPLETED = "completed"  # Reached END
    LOOP_GUARD = "loop_guard"  # A node exceeded its visit budget
    DEAD_END = "dead_end"  # No outgoing edge
    UNKNOWN_TARGET = "unknown_target"  # Edge resolved to a node that does not exist
    SELECTOR_ERROR = "selector_error"  # Conditional selector raised
    MAX_STEPS = "max_steps"  # Step budget exhausted


STRUCTURAL_HALTS = frozenset(
    {HaltReason.DEAD_END, HaltReason.UNKNOWN_TARGET, HaltReason.SELECTOR_ERROR}
)


@dataclass
class ExecutionResult:
    """Result of running a graph."""

    state: dict[str, Any]
    halt_reason: HaltReason
    run_id: str = ""
    path: list[str] = field(default_factory=list)  # Node IDs executed, in order
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    steps_executed: int = 0
    structural_error: dict[str, Any] | None = None  # {node, reason, timestamp}

    @property
    def completed(self) -> bool:
        """True if the run reached END."""
        return self.halt_reason == HaltReason.COMPLETED

    @property
    def errors(self) -> list[dict[str, Any]]:
        return list(self.state.get(ERRORS_KEY) or [])

    @property
    def is_clean(self) -> bool:
        """Reached END without any node failure."""
        return self.completed and not self.errors


@dataclass
class _Run:
    """Mutable bookkeeping for one run."""

    run_id: str
    graph: GraphSpec
    state: dict[str, Any]
    path: list[str] = field(default_factory=list)
    visits: dict[str, int] = field(default_factory=dict)
    clean: bool = True

    def result(self, reason: HaltReason, node_id: str | None = None, detail: str = ""):
        structural = None
        if reason in STRUCTURAL_HALTS:
            structural = {
                "node": node_id,
                "reason": detail or reason.value,
                "timestamp": datetime.now().isoformat(),
            }
        return ExecutionResult(
            state=self.state,
            halt_reason=reason,
            run_id=self.run_id,
            path=list(self.path),
            node_visit_counts=dict(self.visits),
            steps_executed=len(self.path),
            structural_error=structural,
        )

    def checkpoint(
        self,
        checkpoint_type: str,
        node_id: str,
        next_node: str | None = None,
        description: str = "",
    ) -> Checkpoint:
        return Checkpoint.create(
            checkpoint_type=checkpoint_type,
            run_id=self.run_id,
            graph_id=self.graph.id,
            current_node=node_id,
            next_node=next_node,
            state=self.state,
            execution_path=self.path,
            node_visit_counts=self.visits,
            steps_executed=len(self.path),
            is_clean=self.clean,
            description=description,
        )


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class GraphExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = GraphExecutor(event_bus=bus)
        result = await executor.run(graph, {"transcript": text})
        if result.halt_reason != HaltReason.COMPLETED:
            ...

        # Or, when only the final state matters
        final_state = await executor.execute(graph, {"transcript": text})
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        checkpoint_store: CheckpointStore | None = None,
        checkpoint_config: CheckpointConfig | None = None,
        max_node_visits: int | None = None,
        max_steps: int | None = None,
    ):
        """
        Initialize the executor.

        Args:
            config: Engine configuration (defaults loaded from the config file)
            event_bus: Optional event bus for node lifecycle events
            checkpoint_store: Optional store for node-boundary checkpoints.
                Defaults to one under ``config.checkpoint_dir`` when that is set.
            checkpoint_config: When to checkpoint (default: after every node)
            max_node_visits: Default per-node visit budget (0 = unlimited)
            max_steps: Default step budget for graphs that do not set one
        """
        self.config = config or EngineConfig()
        self.logger = logging.getLogger(__name__)
        self._event_bus = event_bus

        if checkpoint_store is None and self.config.checkpoint_dir:
            checkpoint_store = CheckpointStore(Path(self.config.checkpoint_dir))
        self._checkpoint_store = checkpoint_store
        self._checkpoint_config = checkpoint_config or CheckpointConfig()

        self.max_node_visits = (
            max_node_visits if max_node_visits is not None else self.config.max_node_visits
        )
        self.max_steps = max_steps if max_steps is not None else self.config.max_steps

    async def execute(
        self,
        graph: GraphSpec,
        initial_state: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        """Run the graph and return only the final state."""
        result = await self.run(graph, initial_state, run_id=run_id)
        return result.state

    async def run(
        self,
        graph: GraphSpec,
        initial_state: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """
        Run a graph from START until it halts.

        Args:
            graph: The graph to interpret. It is not validated here; call
                ``graph.compile()`` up front to reject malformed graphs.
            initial_state: Starting state (copied, never mutated)
            run_id: Correlation id for logs, events and checkpoints

        Returns:
            ExecutionResult with final state, path and halt reason
        """
        run = _Run(
            run_id=run_id or f"run_{uuid.uuid4().hex[:12]}",
            graph=graph,
            state=dict(initial_state or {}),
        )
        step_budget = graph.max_steps if graph.max_steps is not None else self.max_steps

        outer_context = get_trace_context()
        set_trace_context(run_id=run.run_id, graph_id=graph.id)

        self.logger.info(f"🚀 Starting run {run.run_id} of graph '{graph.id}'")
        if self._event_bus:
            await self._event_bus.emit_run_started(run.run_id, graph.id, list(run.state))

        try:
            current = START
            while current != END:
                if current != START:
                    node = graph.get_node(current)
                    visits = run.visits.get(current, 0)
                    limit = self._visit_limit(node)

                    if limit > 0 and visits >= limit:
                        self.logger.warning(
                            f"⚠ Loop detected at node '{current}' "
                            f"({visits} visit(s), limit {limit}); halting run",
                            extra={"event": "loop_guard", "node_id": current},
                        )
                        if self._event_bus:
                            await self._event_bus.emit_loop_guard_tripped(
                                run.run_id, graph.id, current, visits, limit
                            )
                        return await self._halt(
                            run,
                            HaltReason.LOOP_GUARD,
                            current,
                            f"Node '{current}' exceeded {limit} visit(s)",
                        )

                    if len(run.path) >= step_budget:
                        self.logger.warning(
                            f"⚠ Step budget of {step_budget} exhausted before '{current}'"
                        )
                        return await self._halt(
                            run,
                            HaltReason.MAX_STEPS,
                            current,
                            f"Step budget of {step_budget} exhausted",
                        )

                # The edge is resolved against the state the node receives
                next_id, reason, detail = await self._follow_edge(graph, current, run.state)
                if reason is not None:
                    return await self._halt(run, reason, current, detail)

                if current != START:
                    run.visits[current] = visits + 1
                    run.path.append(current)

                    previous = run.state
                    run.state, failed = await self._run_node(node, run, visits + 1)
                    if failed:
                        run.clean = False
                    if graph.transition_hook is not None:
                        run.state = await self._apply_hook(graph, previous, run.state, current)

                if self._event_bus:
                    edge = graph.get_outgoing_edge(current)
                    await self._event_bus.emit_edge_traversed(
                        run.run_id, graph.id, current, next_id, edge.is_conditional
                    )
                if current != START:
                    await self._checkpoint_after_node(run, current, next_id)

                current = next_id

            error_count = len(run.state.get(ERRORS_KEY) or [])
            self.logger.info(
                f"✓ Run {run.run_id} completed: {len(run.path)} steps, {error_count} node errors"
            )
            if self._event_bus:
                await self._event_bus.emit_run_completed(
                    run.run_id, graph.id, run.path, error_count
                )
            return run.result(HaltReason.COMPLETED)
        finally:
            clear_trace_context()
            if outer_context:
                set_trace_context(**outer_context)

    def _visit_limit(self, node: NodeSpec) -> int:
        return node.max_visits if node.max_visits is not None else self.max_node_visits

    async def _follow_edge(
        self,
        graph: GraphSpec,
        current: str,
        state: dict[str, Any],
    ) -> tuple[str | None, HaltReason | None, str]:
        """
        Resolve the next node id.

        Returns:
            (next_id, None, "") on success, or (None, reason, detail) when the
            run has to halt on a structural error.
        """
        edge = graph.get_outgoing_edge(current)
        if edge is None:
            self.logger.error(f"No edge found from node '{current}'")
            return None, HaltReason.DEAD_END, f"No outgoing edge from '{current}'"

        if not edge.is_conditional:
            next_id = edge.target
        else:
            try:
                selected = await _resolve(edge.selector(state))
            except Exception as e:
                self.logger.exception(f"Selector on edge from '{current}' failed")
                return (
                    None,
                    HaltReason.SELECTOR_ERROR,
                    f"Selector from '{current}' raised {type(e).__name__}: {e}",
                )
            next_id = edge.translate(selected)
            if next_id is None:
                self.logger.error(
                    f"Selector on edge from '{current}' returned unmapped value {selected!r}"
                )
                return (
                    None,
                    HaltReason.UNKNOWN_TARGET,
                    f"Selector from '{current}' returned unmapped value {selected!r}",
                )

        if next_id != END and not graph.has_node(next_id):
            self.logger.error(f"Edge from '{current}' points to unknown node '{next_id}'")
            return (
                None,
                HaltReason.UNKNOWN_TARGET,
                f"Edge from '{current}' points to unknown node '{next_id}'",
            )
        return next_id, None, ""

    async def _run_node(
        self,
        node: NodeSpec,
        run: _Run,
        visit: int,
    ) -> tuple[dict[str, Any], bool]:
        """Invoke one node. Returns (new_state, failed)."""
        graph_id = run.graph.id
        set_trace_context(node_id=node.id)
        self.logger.info(f"▶ Executing node: {node.display_name}")
        if self._event_bus:
            await self._event_bus.emit_node_started(run.run_id, graph_id, node.id, visit)

        start = time.perf_counter()
        try:
            new_state = await self._invoke_action(node, run.state)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self.logger.error(
                f"Error executing node '{node.id}': {e}",
                extra={"event": "node_failed", "node_id": node.id, "duration_ms": duration_ms},
            )
            if self._event_bus:
                await self._event_bus.emit_node_failed(
                    run.run_id, graph_id, node.id, str(e), duration_ms
                )
            return record_error(run.state, node.id, e), True

        duration_ms = (time.perf_counter() - start) * 1000
        self.logger.debug(f"Node '{node.id}' finished in {duration_ms:.1f}ms")
        if self._event_bus:
            await self._event_bus.emit_node_completed(run.run_id, graph_id, node.id, duration_ms)
        return new_state, False

    async def _invoke_action(self, node: NodeSpec, state: dict[str, Any]) -> dict[str, Any]:
        if node.declares_access:
            view = StateView(state, node.id, reads=node.reads, writes=node.writes)
            returned = await _resolve(node.action(view))
            update = view.updates
            if returned is not None:
                if not isinstance(returned, Mapping):
                    raise TypeError(
                        f"Node '{node.id}' returned {type(returned).__name__}, expected a mapping"
                    )
                view.check_writes(returned)
                update.update(returned)
            return merge_state(state, update)

        # A shallow copy keeps in-place edits by the action out of the previous state
        returned = await _resolve(node.action(dict(state)))
        if returned is None:
            return state
        if not isinstance(returned, Mapping):
            raise TypeError(
                f"Node '{node.id}' returned {type(returned).__name__}, expected a mapping"
            )
        return merge_state(state, returned)

    async def _apply_hook(
        self,
        graph: GraphSpec,
        previous: dict[str, Any],
        new: dict[str, Any],
        node_id: str,
    ) -> dict[str, Any]:
        """Run the transition hook. Hook failures keep the un-hooked state."""
        try:
            hooked = await _resolve(graph.transition_hook(previous, new, node_id))
        except Exception:
            self.logger.exception(f"Transition hook failed after node '{node_id}'")
            return new
        if hooked is None:
            return new
        if not isinstance(hooked, Mapping):
            self.logger.warning(
                f"Transition hook returned {type(hooked).__name__} after '{node_id}'; ignoring"
            )
            return new
        return dict(hooked)

    async def _halt(
        self,
        run: _Run,
        reason: HaltReason,
        node_id: str,
        detail: str,
    ) -> ExecutionResult:
        if reason in STRUCTURAL_HALTS:
            self.logger.error(f"Run {run.run_id} halted ({reason}): {detail}")
        if self._event_bus:
            await self._event_bus.emit_run_halted(
                run.run_id, run.graph.id, reason.value, node_id, detail
            )
        if self._checkpoint_store and self._checkpoint_config.should_checkpoint_halt():
            await self._save_checkpoint(
                run.checkpoint("halt", node_id, description=f"Halt ({reason}): {detail}")
            )
        return run.result(reason, node_id, detail)

    async def _checkpoint_after_node(self, run: _Run, node_id: str, next_id: str) -> None:
        if not self._checkpoint_store:
            return
        if self._checkpoint_config.should_checkpoint_node_complete():
            await self._save_checkpoint(run.checkpoint("node_complete", node_id, next_id))
        if self._checkpoint_config.should_prune_checkpoints(len(run.path)):
            try:
                await self._checkpoint_store.prune_checkpoints(
                    run.run_id, self._checkpoint_config.max_age_days
                )
            except Exception as e:
                self.logger.warning(f"Checkpoint pruning failed: {e}")

    async def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Best-effort save; a failing store never stops the run."""
        try:
            await self._checkpoint_store.save_checkpoint(checkpoint)
        except Exception as e:
            self.logger.warning(f"Failed to save checkpoint {checkpoint.checkpoint_id}: {e}")
