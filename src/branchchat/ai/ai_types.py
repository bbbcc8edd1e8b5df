"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Literal, Mapping, Protocol, Sequence, runtime_checkable

from ..chat.message_model import Message

BackendEventType = Literal[
    "start",
    "reasoning-start",
    "reasoning-delta",
    "reasoning-end",
    "text-start",
    "text-delta",
    "text-end",
    "finish",
    "error",
]
ReasoningEffort = Literal["low", "medium", "high"]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class CancellationSignal(Protocol):
    """Read-only view of a cooperative cancellation flag."""

    @property
    def is_cancelled(self) -> bool:
        ...


@dataclass(slots=True, frozen=True)
class BackendEvent:
    """Normalized streaming event emitted by an AI backend."""

    type: BackendEventType
    text: str | None = None
    error: BaseException | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass(slots=True)
class GenerationOptions:
    """Per-request generation knobs; ``None`` defers to backend defaults."""

    model: str | None = None
    reasoning_effort: ReasoningEffort | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def with_model(self, model: str | None) -> "GenerationOptions":
        return replace(self, model=model)


@dataclass(slots=True)
class StreamResult:
    """Accumulated output of a consumed backend stream."""

    text: str = ""
    reasoning: str | None = None
    cancelled: bool = False


class StreamCallbacks(Protocol):
    """Hooks the stream consumer drives; the lifecycle manager implements them."""

    def on_start(self) -> None: ...

    def on_text_start(self) -> None: ...

    def on_text_chunk(self, chunk: str) -> None: ...

    def on_text_end(self) -> None: ...

    def on_reasoning_start(self) -> None: ...

    def on_reasoning_chunk(self, chunk: str) -> None: ...

    def on_reasoning_end(self) -> None: ...


@runtime_checkable
class AIBackend(Protocol):
    """Streaming AI collaborator.

    Implementations must stop yielding promptly once ``cancellation`` reports
    ``is_cancelled``.
    """

    def stream_events(
        self,
        messages: Sequence[Message],
        options: GenerationOptions | None = None,
        *,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[BackendEvent]:
        ...

    async def complete_once(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> str:
        ...


__all__ = [
    "AIBackend",
    "BackendEvent",
    "BackendEventType",
    "CancellationSignal",
    "GenerationOptions",
    "ReasoningEffort",
    "StreamCallbacks",
    "StreamResult",
    "TokenCounterProtocol",
]
