"""Per-generation streaming lifecycle for one assistant message."""

from __future__ import annotations

import enum
import logging
import time
from typing import Any, Dict

from ...chat.message_model import Message, ensure_placeholder, placeholder_content, text_content
from ...chat.store import MessageStore
from ...errors import LifecycleStateError, describe_error
from ...services.events import EventSink, MessageEvents
from ..ai_types import StreamResult
from .chunk_buffer import DEFAULT_FLUSH_INTERVAL, ChunkBuffer, Scheduler, text_chunk_combiner

LOGGER = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    IDLE = "idle"
    READY = "ready"
    STARTED = "started"
    TEXT_ACTIVE = "text_active"
    REASONING_ACTIVE = "reasoning_active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({LifecycleState.COMPLETED, LifecycleState.CANCELLED, LifecycleState.ERRORED})
_STREAMING_STATES = frozenset(
    {LifecycleState.STARTED, LifecycleState.TEXT_ACTIVE, LifecycleState.REASONING_ACTIVE}
)


class StreamingBuffers:
    """Process-wide text and reasoning chunk buffers keyed by message id.

    Flushed chunks are routed to the lifecycle currently attached for their
    message id. Attaching a new lifecycle for an id applies whatever the
    previous one still had pending before the route is swapped.
    """

    def __init__(
        self,
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._lifecycles: Dict[str, StreamingLifecycleManager] = {}
        self.text: ChunkBuffer[str] = ChunkBuffer(
            self._apply_text, text_chunk_combiner, interval=flush_interval, scheduler=scheduler
        )
        self.reasoning: ChunkBuffer[str] = ChunkBuffer(
            self._apply_reasoning, text_chunk_combiner, interval=flush_interval, scheduler=scheduler
        )

    @property
    def attached_count(self) -> int:
        return len(self._lifecycles)

    def attach(self, lifecycle: StreamingLifecycleManager) -> None:
        current = self._lifecycles.get(lifecycle.message_id)
        if current is not None and current is not lifecycle:
            self.finalize(lifecycle.message_id)
        self._lifecycles[lifecycle.message_id] = lifecycle

    def detach(self, lifecycle: StreamingLifecycleManager) -> None:
        """Drop the route for ``lifecycle``; a no-op once it was superseded."""

        if self._lifecycles.get(lifecycle.message_id) is not lifecycle:
            return
        self.text.clear(lifecycle.message_id)
        self.reasoning.clear(lifecycle.message_id)
        del self._lifecycles[lifecycle.message_id]

    def finalize(self, message_id: str) -> None:
        self.reasoning.finalize(message_id)
        self.text.finalize(message_id)

    def destroy(self) -> None:
        self.text.destroy()
        self.reasoning.destroy()
        self._lifecycles.clear()

    def _apply_text(self, message_id: str, chunk: str) -> None:
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is None:
            LOGGER.debug("Dropping text chunk for detached message %s", message_id)
            return
        lifecycle.apply_text(chunk)

    def _apply_reasoning(self, message_id: str, chunk: str) -> None:
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is None:
            LOGGER.debug("Dropping reasoning chunk for detached message %s", message_id)
            return
        lifecycle.apply_reasoning(chunk)


class StreamingLifecycleManager:
    """Drives one assistant message from placeholder to a terminal state.

    Text and reasoning deltas are coalesced through :class:`StreamingBuffers`,
    shared between lifecycles when one is injected; flushed chunks accumulate
    the content and emit ``streaming_chunk`` / ``reasoning_chunk``. Exactly one of :meth:`complete`, :meth:`cancelled` or
    :meth:`error` may settle the lifecycle; stream hooks arriving afterwards
    are ignored.
    """

    def __init__(
        self,
        message_id: str,
        store: MessageStore,
        events: EventSink,
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Scheduler | None = None,
        buffers: StreamingBuffers | None = None,
    ) -> None:
        self.message_id = message_id
        self._store = store
        self._events = events
        self._state = LifecycleState.IDLE
        self._settling = False
        self._text = ""
        self._reasoning = ""
        self._text_open = False
        self._reasoning_open = False
        self.started_at: float | None = None
        self._owns_buffers = buffers is None
        self._buffers = buffers or StreamingBuffers(flush_interval=flush_interval, scheduler=scheduler)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def is_streaming(self) -> bool:
        return self._state in _STREAMING_STATES

    @property
    def text(self) -> str:
        """Text applied so far; buffered chunks are excluded until flushed."""

        return self._text

    @property
    def reasoning(self) -> str:
        return self._reasoning

    @property
    def has_partial_content(self) -> bool:
        return bool(self._text or self._reasoning)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    async def init(self) -> Message:
        """Persist the placeholder body and announce the stream."""

        if self._state is not LifecycleState.IDLE:
            raise LifecycleStateError(message=f"Lifecycle for {self.message_id} already initialized")
        message = await self._store.update(self.message_id, content=placeholder_content())
        self._state = LifecycleState.READY
        self._buffers.attach(self)
        self._events.emit(MessageEvents.STREAMING_START, self.message_id, {"message": message})
        return message

    # ------------------------------------------------------------------
    # Stream hooks
    # ------------------------------------------------------------------
    def on_start(self) -> None:
        if self._ignore("start"):
            return
        self.started_at = time.monotonic()
        self._state = LifecycleState.STARTED
        self._events.emit(MessageEvents.START, self.message_id)

    def on_reasoning_start(self) -> None:
        if self._ignore("reasoning-start") or self._reasoning_open:
            return
        self._reasoning_open = True
        self._state = LifecycleState.REASONING_ACTIVE
        self._events.emit(MessageEvents.REASONING_START, self.message_id)

    def on_reasoning_chunk(self, chunk: str) -> None:
        if self._ignore("reasoning-delta") or not chunk:
            return
        if not self._reasoning_open:
            self.on_reasoning_start()
        self._buffers.reasoning.enqueue(self.message_id, chunk)

    def on_reasoning_end(self) -> None:
        if self._ignore("reasoning-end") or not self._reasoning_open:
            return
        self._buffers.reasoning.finalize(self.message_id)
        self._reasoning_open = False
        self._state = LifecycleState.TEXT_ACTIVE if self._text_open else LifecycleState.STARTED
        self._events.emit(MessageEvents.REASONING_END, self.message_id)

    def on_text_start(self) -> None:
        if self._ignore("text-start") or self._text_open:
            return
        if self._reasoning_open:
            self.on_reasoning_end()
        self._text_open = True
        self._state = LifecycleState.TEXT_ACTIVE
        self._events.emit(MessageEvents.TEXT_START, self.message_id)

    def on_text_chunk(self, chunk: str) -> None:
        if self._ignore("text-delta") or not chunk:
            return
        if self._reasoning_open:
            # reasoning must be closed before text begins
            self.on_reasoning_end()
        if not self._text_open:
            self.on_text_start()
        self._buffers.text.enqueue(self.message_id, chunk)

    def on_text_end(self) -> None:
        if self._ignore("text-end") or not self._text_open:
            return
        self._buffers.text.finalize(self.message_id)
        self._text_open = False
        self._state = LifecycleState.STARTED
        self._events.emit(MessageEvents.TEXT_END, self.message_id)

    def flush(self) -> None:
        """Apply every chunk buffered for this message now."""

        self._buffers.finalize(self.message_id)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    async def complete(self, result: StreamResult | None = None) -> Message:
        self._begin_settle("complete")
        try:
            self.flush()
            text = result.text if result is not None else self._text
            reasoning = result.reasoning if result is not None else self._reasoning
            message = await self._store.update(
                self.message_id,
                content=text_content(ensure_placeholder(text)),
                reasoning=reasoning or None,
            )
        except BaseException:
            self._settling = False
            raise
        self._finish(LifecycleState.COMPLETED)
        self._events.emit(MessageEvents.STREAMING_END, self.message_id, {"message": message})
        return message

    async def cancelled(self) -> Message:
        """Persist whatever has accumulated, including buffered chunks."""

        self._begin_settle("cancelled")
        try:
            self.flush()
            message = await self._store.update(self.message_id, **self._partial_update())
        except BaseException:
            self._settling = False
            raise
        self._finish(LifecycleState.CANCELLED)
        self._events.emit(MessageEvents.STREAMING_CANCELLED, self.message_id, {"message": message})
        return message

    async def error(self, err: BaseException | None, interrupted_mid_stream: bool = False) -> Message:
        """Persist partial content when any streamed, otherwise an error body."""

        self._begin_settle("error")
        description = describe_error(err)
        try:
            self.flush()
            partial = self.has_partial_content
            if partial:
                message = await self._store.update(self.message_id, **self._partial_update())
            else:
                message = await self._store.update(
                    self.message_id, content=text_content(f"Error: {description}")
                )
        except BaseException:
            self._settling = False
            raise
        self._finish(LifecycleState.ERRORED)
        self._events.emit(
            MessageEvents.STREAMING_ERROR,
            self.message_id,
            {
                "message": message,
                "error": description,
                "interrupted": bool(interrupted_mid_stream),
                "partial": partial,
            },
        )
        return message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def apply_text(self, chunk: str) -> None:
        self._text += chunk
        self._events.emit(MessageEvents.STREAMING_CHUNK, self.message_id, {"chunk": chunk})

    def apply_reasoning(self, chunk: str) -> None:
        self._reasoning += chunk
        self._events.emit(MessageEvents.REASONING_CHUNK, self.message_id, {"chunk": chunk})

    def _partial_update(self) -> Dict[str, Any]:
        update: Dict[str, Any] = {"content": text_content(ensure_placeholder(self._text))}
        if self._reasoning:
            update["reasoning"] = self._reasoning
        return update

    def _ignore(self, hook: str) -> bool:
        if self._state.is_terminal or self._settling:
            LOGGER.debug("Ignoring %s for %s after settle", hook, self.message_id)
            return True
        return False

    def _begin_settle(self, transition: str) -> None:
        if self._state.is_terminal or self._settling:
            raise LifecycleStateError(
                message=f"Cannot {transition} {self.message_id}: lifecycle already {self._state.value}"
            )
        self._settling = True

    def _finish(self, state: LifecycleState) -> None:
        self._state = state
        self._settling = False
        self._buffers.detach(self)
        if self._owns_buffers:
            self._buffers.destroy()
        LOGGER.debug("Lifecycle for %s settled as %s", self.message_id, state.value)


__all__ = ["LifecycleState", "StreamingBuffers", "StreamingLifecycleManager"]
