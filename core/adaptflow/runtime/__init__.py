"""Runtime services shared across runs."""

from adaptflow.runtime.event_bus import EngineEvent, EventBus, EventType

__all__ = ["EngineEvent", "EventBus", "EventType"]
