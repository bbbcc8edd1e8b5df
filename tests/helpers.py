"""Shared test helpers and stub classes.

Import from here instead of duplicating stubs in individual test files.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence

from branchchat.ai.ai_types import BackendEvent, CancellationSignal, GenerationOptions
from branchchat.chat.message_model import Message, text_content
from branchchat.chat.store import InMemoryMessageStore

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def text_events(*chunks: str, reasoning: Sequence[str] = ()) -> list[BackendEvent]:
    """Build a well-formed event script: start, optional reasoning, text, finish."""

    events = [BackendEvent(type="start")]
    if reasoning:
        events.append(BackendEvent(type="reasoning-start"))
        events.extend(BackendEvent(type="reasoning-delta", text=part) for part in reasoning)
        events.append(BackendEvent(type="reasoning-end"))
    events.append(BackendEvent(type="text-start"))
    events.extend(BackendEvent(type="text-delta", text=chunk) for chunk in chunks)
    events.append(BackendEvent(type="text-end"))
    events.append(BackendEvent(type="finish"))
    return events


class FakeBackend:
    """Scripted AI backend.

    Yields ``events`` in order, polling cancellation before each one. When
    ``pause_after`` is set the stream blocks after that many events until
    :attr:`resume` is set, which lets tests cancel mid-stream.
    """

    def __init__(
        self,
        events: Iterable[BackendEvent] = (),
        *,
        fail_with: BaseException | None = None,
        pause_after: int | None = None,
        completion: str = "A Helpful Title",
        completion_error: BaseException | None = None,
        configuration_error: BaseException | None = None,
    ) -> None:
        self.events = list(events)
        self.fail_with = fail_with
        self.pause_after = pause_after
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()
        self.completion = completion
        self.completion_error = completion_error
        self.calls: list[dict[str, Any]] = []
        self.completion_calls: list[list[Message]] = []
        self.closed = False
        self.configuration_error = configuration_error

    def validate(self) -> None:
        if self.configuration_error is not None:
            raise self.configuration_error

    async def stream_events(
        self,
        messages: Sequence[Message],
        options: GenerationOptions | None = None,
        *,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[BackendEvent]:
        self.calls.append({"messages": list(messages), "options": options})
        for index, event in enumerate(self.events):
            if self.pause_after is not None and index == self.pause_after:
                self.paused.set()
                await self.resume.wait()
            await asyncio.sleep(0)
            if cancellation is not None and cancellation.is_cancelled:
                return
            yield event
        if self.fail_with is not None:
            raise self.fail_with

    async def complete_once(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> str:
        self.completion_calls.append(list(messages))
        if self.completion_error is not None:
            raise self.completion_error
        return self.completion

    async def aclose(self) -> None:
        self.closed = True


class RecordingSink:
    """Event sink that records every emitted notification."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []
        self.conversation_events: list[tuple[str, str, dict[str, Any]]] = []

    def emit(self, name: str, message_id: str, payload: Mapping[str, Any] | None = None) -> None:
        self.events.append((name, message_id, dict(payload or {})))

    def emit_conversation(
        self, name: str, conversation_id: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        self.conversation_events.append((name, conversation_id, dict(payload or {})))

    def names(self, message_id: str | None = None) -> list[str]:
        return [name for name, mid, _ in self.events if message_id is None or mid == message_id]

    def payloads(self, name: str) -> list[dict[str, Any]]:
        return [payload for event_name, _, payload in self.events if event_name == name]

    def chunks(self, name: str = "streaming_chunk") -> list[str]:
        return [payload["chunk"] for payload in self.payloads(name)]


class ManualScheduler:
    """Deterministic stand-in for ``loop.call_later``."""

    def __init__(self) -> None:
        self.pending: list[_ManualHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> "_ManualHandle":
        handle = _ManualHandle(delay, callback)
        self.pending.append(handle)
        return handle

    def fire(self) -> int:
        handles, self.pending = self.pending, []
        fired = 0
        for handle in handles:
            if not handle.cancelled:
                handle.callback()
                fired += 1
        return fired


class _ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FixedCostEstimator:
    """Estimator returning a fixed or per-id cost."""

    def __init__(self, default: int = 150, costs: Mapping[str, int] | None = None) -> None:
        self.default = default
        self.costs = dict(costs or {})
        self.calls: list[str] = []

    def estimate(self, message: Message) -> int:
        self.calls.append(message.id)
        return self.costs.get(message.id, self.default)


class FakeCounter:
    """Token counter that counts whitespace-separated words."""

    model_name = "fake"

    def count(self, text: str) -> int:
        return len(text.split())

    def estimate(self, text: str) -> int:
        return self.count(text)


def make_message(
    conversation_id: str = "conv-1",
    role: str = "user",
    text: str = "hello",
    *,
    message_id: str | None = None,
    parent_id: str | None = None,
    offset: int = 0,
) -> Message:
    created = _EPOCH + timedelta(seconds=offset)
    kwargs: dict[str, Any] = {}
    if message_id is not None:
        kwargs["id"] = message_id
    return Message(
        conversation_id=conversation_id,
        role=role,  # type: ignore[arg-type]
        content=text_content(text),
        parent_message_id=parent_id,
        created_at=created,
        updated_at=created,
        **kwargs,
    )


async def build_chain(
    store: InMemoryMessageStore,
    count: int,
    *,
    conversation_id: str = "conv-1",
    with_target: bool = True,
) -> tuple[list[Message], Message | None]:
    """Create ``count`` alternating user/assistant messages linked by parent id.

    Returns the ancestors oldest first plus a trailing assistant target that
    replies to the last ancestor.
    """

    chain: list[Message] = []
    parent_id: str | None = None
    for index in range(count):
        role = "user" if index % 2 == 0 else "assistant"
        message = make_message(
            conversation_id,
            role,
            f"message {index}",
            message_id=f"m{index}",
            parent_id=parent_id,
            offset=index,
        )
        await store.create(message)
        chain.append(message)
        parent_id = message.id
    target = None
    if with_target:
        target = make_message(
            conversation_id,
            "assistant",
            "",
            message_id="target",
            parent_id=parent_id,
            offset=count,
        )
        await store.create(target)
    return chain, target
