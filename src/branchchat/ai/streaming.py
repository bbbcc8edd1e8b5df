"""Consume a backend event stream and forward it to lifecycle hooks."""

from __future__ import annotations

import inspect
import logging
from typing import AsyncIterable

from ..errors import TransientBackendError
from .ai_types import BackendEvent, CancellationSignal, StreamCallbacks, StreamResult

LOGGER = logging.getLogger(__name__)


async def consume_stream(
    events: AsyncIterable[BackendEvent],
    callbacks: StreamCallbacks,
    cancellation: CancellationSignal | None = None,
) -> StreamResult:
    """Drive ``callbacks`` from ``events`` while accumulating text and reasoning.

    The cancellation flag is polled before every event; once set, consumption
    stops and the partial result is returned with ``cancelled=True``. An
    ``error`` event raises its cause. The event iterator is closed on exit.
    """

    text_parts: list[str] = []
    reasoning_parts: list[str] = []
    cancelled = False

    try:
        async for event in events:
            if cancellation is not None and cancellation.is_cancelled:
                LOGGER.debug("Stream consumption stopped by cancellation")
                cancelled = True
                break

            kind = event.type
            if kind == "start":
                callbacks.on_start()
            elif kind == "text-start":
                callbacks.on_text_start()
            elif kind == "text-delta":
                if event.text:
                    text_parts.append(event.text)
                    callbacks.on_text_chunk(event.text)
            elif kind == "text-end":
                callbacks.on_text_end()
            elif kind == "reasoning-start":
                callbacks.on_reasoning_start()
            elif kind == "reasoning-delta":
                if event.text:
                    reasoning_parts.append(event.text)
                    callbacks.on_reasoning_chunk(event.text)
            elif kind == "reasoning-end":
                callbacks.on_reasoning_end()
            elif kind == "finish":
                LOGGER.debug("Backend stream finished")
            elif kind == "error":
                cause = event.error
                if cause is None:
                    cause = TransientBackendError(message=event.text or "AI streaming error")
                LOGGER.warning("AI streaming error event: %s", cause)
                raise cause
            else:
                LOGGER.debug("Ignoring unknown stream event type: %s", kind)
    finally:
        await _close_iterator(events)

    if not cancelled and cancellation is not None and cancellation.is_cancelled:
        cancelled = True

    reasoning = "".join(reasoning_parts)
    return StreamResult(
        text="".join(text_parts),
        reasoning=reasoning or None,
        cancelled=cancelled,
    )


async def _close_iterator(events: AsyncIterable[BackendEvent]) -> None:
    close = getattr(events, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.debug("Closing backend event stream failed", exc_info=True)


__all__ = ["consume_stream"]
