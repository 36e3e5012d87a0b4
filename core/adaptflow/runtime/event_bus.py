"""
Event Bus - Pub/sub for engine lifecycle events.

Lets observers:
- Follow a run node by node (started, completed, failed, edge traversed)
- React to halts (loop guard, dead ends) without polling the executor
- Wait for a specific event in tests or orchestration code

Handlers are async callables. A failing handler is logged and never affects
other handlers or the publisher.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_HALTED = "run_halted"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    # Routing
    EDGE_TRAVERSED = "edge_traversed"
    LOOP_GUARD_TRIPPED = "loop_guard_tripped"

    # Custom events
    CUSTOM = "custom"


@dataclass
class EngineEvent:
    """An event emitted while a graph runs."""

    type: EventType
    run_id: str
    graph_id: str = ""
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for run observability.

    Example:
        bus = EventBus()

        async def on_halt(event: EngineEvent):
            print(f"Run {event.run_id} halted: {event.data['reason']}")

        bus.subscribe([EventType.RUN_HALTED], on_halt)
        executor = GraphExecutor(event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[EngineEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if self._subscriptions.pop(subscription_id, None) is None:
            return False
        logger.debug(f"Subscription {subscription_id} removed")
        return True

    async def publish(self, event: EngineEvent) -> None:
        """Record an event and deliver it to every matching subscriber."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [
            sub.handler for sub in list(self._subscriptions.values()) if self._matches(sub, event)
        ]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: EngineEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: EngineEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception:
                    logger.exception(f"Handler error for {event.type}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit(
        self,
        event_type: EventType,
        run_id: str,
        graph_id: str = "",
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            EngineEvent(
                type=event_type,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                data=data,
            )
        )

    async def emit_run_started(self, run_id: str, graph_id: str, state_keys: list[str]) -> None:
        await self.emit(EventType.RUN_STARTED, run_id, graph_id, state_keys=state_keys)

    async def emit_run_completed(
        self, run_id: str, graph_id: str, path: list[str], error_count: int
    ) -> None:
        await self.emit(
            EventType.RUN_COMPLETED,
            run_id,
            graph_id,
            path=list(path),
            error_count=error_count,
        )

    async def emit_run_halted(
        self,
        run_id: str,
        graph_id: str,
        reason: str,
        node_id: str | None = None,
        detail: str = "",
    ) -> None:
        await self.emit(
            EventType.RUN_HALTED, run_id, graph_id, node_id, reason=reason, detail=detail
        )

    async def emit_node_started(self, run_id: str, graph_id: str, node_id: str, visit: int) -> None:
        await self.emit(EventType.NODE_STARTED, run_id, graph_id, node_id, visit=visit)

    async def emit_node_completed(
        self, run_id: str, graph_id: str, node_id: str, duration_ms: float
    ) -> None:
        await self.emit(
            EventType.NODE_COMPLETED, run_id, graph_id, node_id, duration_ms=duration_ms
        )

    async def emit_node_failed(
        self, run_id: str, graph_id: str, node_id: str, error: str, duration_ms: float
    ) -> None:
        await self.emit(
            EventType.NODE_FAILED,
            run_id,
            graph_id,
            node_id,
            error=error,
            duration_ms=duration_ms,
        )

    async def emit_edge_traversed(
        self, run_id: str, graph_id: str, source: str, target: str, conditional: bool
    ) -> None:
        await self.emit(
            EventType.EDGE_TRAVERSED,
            run_id,
            graph_id,
            source,
            target=target,
            conditional=conditional,
        )

    async def emit_loop_guard_tripped(
        self, run_id: str, graph_id: str, node_id: str, visits: int, max_visits: int
    ) -> None:
        await self.emit(
            EventType.LOOP_GUARD_TRIPPED,
            run_id,
            graph_id,
            node_id,
            visits=visits,
            max_visits=max_visits,
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        """Event history, most recent first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> EngineEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None on timeout
        """
        result: EngineEvent | None = None
        received = asyncio.Event()

        async def handler(event: EngineEvent) -> None:
            nonlocal result
            result = event
            received.set()

        sub_id = self.subscribe([event_type], handler, filter_run=run_id, filter_node=node_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
