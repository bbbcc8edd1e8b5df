"""Service layer helpers (events, settings)."""

from .events import EventBus, EventSink, MessageEvent, MessageEvents

__all__ = ["EventBus", "EventSink", "MessageEvent", "MessageEvents"]
