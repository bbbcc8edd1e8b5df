"""Message and conversation notification channel.

Streaming producers publish named events keyed by message id; any number of
subscribers (a terminal renderer, a UI bridge, tests) listen by name without
the producers knowing about them.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Mapping, Protocol, Union, runtime_checkable
from weakref import WeakMethod

LOGGER = logging.getLogger(__name__)

ALL_EVENTS = "*"


class MessageEvents:
    """Names of message-level notifications."""

    ADDED = "added"
    START = "start"
    STREAMING_START = "streaming_start"
    STREAMING_CHUNK = "streaming_chunk"
    TEXT_START = "text_start"
    TEXT_END = "text_end"
    REASONING_START = "reasoning_start"
    REASONING_CHUNK = "reasoning_chunk"
    REASONING_END = "reasoning_end"
    STREAMING_END = "streaming_end"
    STREAMING_ERROR = "streaming_error"
    STREAMING_CANCELLED = "streaming_cancelled"


class ConversationEvents:
    """Names of conversation-level notifications."""

    UPDATED = "updated"
    TITLE_GENERATED = "title_generated"


# High-frequency events that should not log each publish
_QUIET_EVENTS = frozenset({MessageEvents.STREAMING_CHUNK, MessageEvents.REASONING_CHUNK})


@dataclass(slots=True)
class MessageEvent:
    name: str
    message_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConversationEvent:
    name: str
    conversation_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


AnyEvent = Union[MessageEvent, ConversationEvent]
Handler = Callable[[Any], None]


@runtime_checkable
class EventSink(Protocol):
    """Receiver of streaming notifications."""

    def emit(self, name: str, message_id: str, payload: Mapping[str, Any] | None = None) -> None:
        ...

    def emit_conversation(
        self, name: str, conversation_id: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        ...


class EventBus:
    """Synchronous publish-subscribe bus keyed by event name.

    Bound-method handlers are held weakly so subscribers that go away are
    dropped automatically; plain functions and lambdas are held strongly.
    Handler exceptions are logged and never reach the publisher.

    Not thread-safe: publish and subscribe from the event loop thread.
    """

    __slots__ = ("_message_handlers", "_conversation_handlers")

    def __init__(self) -> None:
        self._message_handlers: DefaultDict[str, list[_HandlerRef]] = defaultdict(list)
        self._conversation_handlers: DefaultDict[str, list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[[MessageEvent], None]) -> None:
        """Register ``handler`` for message events called ``name`` (``"*"`` for all)."""

        self._message_handlers[name].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed %s to message event %s", _handler_name(handler), name)

    def subscribe_conversation(self, name: str, handler: Callable[[ConversationEvent], None]) -> None:
        self._conversation_handlers[name].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed %s to conversation event %s", _handler_name(handler), name)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        for registry in (self._message_handlers, self._conversation_handlers):
            handlers = registry.get(name)
            if not handlers:
                continue
            for index, handler_ref in enumerate(handlers):
                if handler_ref.matches(handler):
                    handlers.pop(index)
                    return

    def emit(self, name: str, message_id: str, payload: Mapping[str, Any] | None = None) -> None:
        event = MessageEvent(name=name, message_id=message_id, payload=dict(payload or {}))
        if name not in _QUIET_EVENTS:
            LOGGER.debug("Message event %s for %s", name, message_id)
        self._dispatch(self._message_handlers, name, event)

    def emit_conversation(
        self, name: str, conversation_id: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        event = ConversationEvent(name=name, conversation_id=conversation_id, payload=dict(payload or {}))
        LOGGER.debug("Conversation event %s for %s", name, conversation_id)
        self._dispatch(self._conversation_handlers, name, event)

    def clear(self) -> None:
        self._message_handlers.clear()
        self._conversation_handlers.clear()

    def handler_count(self, name: str | None = None) -> int:
        registries = (self._message_handlers, self._conversation_handlers)
        if name is not None:
            return sum(len(registry.get(name, ())) for registry in registries)
        return sum(len(handlers) for registry in registries for handlers in registry.values())

    def _dispatch(self, registry: DefaultDict[str, list[_HandlerRef]], name: str, event: AnyEvent) -> None:
        for key in (name, ALL_EVENTS):
            handlers = registry.get(key)
            if not handlers:
                continue
            dead: list[int] = []
            for index, handler_ref in enumerate(list(handlers)):
                handler = handler_ref.resolve()
                if handler is None:
                    dead.append(index)
                    continue
                try:
                    handler(event)
                except Exception:
                    LOGGER.exception("Handler %s raised for event %s", _handler_name(handler), name)
            for index in reversed(dead):
                handlers.pop(index)


class _HandlerRef:
    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "ALL_EVENTS",
    "ConversationEvent",
    "ConversationEvents",
    "EventBus",
    "EventSink",
    "MessageEvent",
    "MessageEvents",
]
