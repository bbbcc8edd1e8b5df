"""Background assistant-reply generation.

:class:`AssistantService` wires the context builder, the cancellation
registry, a per-message :class:`StreamingLifecycleManager` and the AI backend
together. Each reply runs as its own ``asyncio.Task``; callers observe
progress through the event sink and the optional settle callbacks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Set

from ...chat.message_model import Message, placeholder_content
from ...chat.store import ConversationStore, MessageStore
from ...errors import GenerationCancelled, MessageNotFoundError, RoleValidationError
from ...services.events import EventSink
from ..ai_types import AIBackend, GenerationOptions
from ..streaming import consume_stream
from .cancellation import CancellationRegistry, CancellationToken
from .chunk_buffer import DEFAULT_FLUSH_INTERVAL
from .context_builder import (
    DEFAULT_FALLBACK_MESSAGE_COUNT,
    DEFAULT_MAX_CONTEXT_TOKENS,
    BranchContextBuilder,
    BranchContextOptions,
)
from .event_log import GenerationEventLogger
from .lifecycle import LifecycleState, StreamingBuffers, StreamingLifecycleManager
from .title_generation import TitleGenerationService

LOGGER = logging.getLogger(__name__)

SuccessCallback = Callable[[Message], Any]
ErrorCallback = Callable[[BaseException, Optional[Message]], Any]
CancelledCallback = Callable[[Message], Any]
AfterSettle = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class GenerationTask:
    """Handle for one in-flight reply."""

    message_id: str
    conversation_id: str
    token: CancellationToken
    lifecycle: StreamingLifecycleManager
    started_at: float = field(default_factory=time.monotonic)
    task: asyncio.Task[Optional[Message]] | None = None

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    @property
    def text(self) -> str:
        return self.lifecycle.text

    @property
    def reasoning(self) -> str:
        return self.lifecycle.reasoning

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> Optional[Message]:
        """Wait for settlement and return the persisted message."""

        if self.task is None:
            return None
        return await asyncio.shield(self.task)


class AssistantService:
    """Starts, tracks and cancels assistant reply generations."""

    def __init__(
        self,
        messages: MessageStore,
        backend: AIBackend,
        events: EventSink,
        *,
        conversations: ConversationStore | None = None,
        registry: CancellationRegistry | None = None,
        context_builder: BranchContextBuilder | None = None,
        title_service: TitleGenerationService | None = None,
        event_logger: GenerationEventLogger | None = None,
        buffers: StreamingBuffers | None = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        fallback_message_count: int = DEFAULT_FALLBACK_MESSAGE_COUNT,
    ) -> None:
        self._messages = messages
        self._backend = backend
        self._events = events
        self._conversations = conversations
        self._registry = registry or CancellationRegistry()
        self._context_builder = context_builder or BranchContextBuilder(messages)
        self._title_service = title_service
        self._event_logger = event_logger or GenerationEventLogger(enabled=False)
        self._buffers = buffers or StreamingBuffers(flush_interval=flush_interval)
        self._context_options = BranchContextOptions(
            include_target=False,
            max_context_tokens=max_context_tokens,
            fallback_message_count=fallback_message_count,
        )
        self._active: Dict[str, GenerationTask] = {}
        self._tasks: Set[asyncio.Task[Optional[Message]]] = set()

    @property
    def registry(self) -> CancellationRegistry:
        return self._registry

    @property
    def buffers(self) -> StreamingBuffers:
        return self._buffers

    @property
    def context_builder(self) -> BranchContextBuilder:
        return self._context_builder

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def stream_assistant_reply(
        self,
        target_message_id: str,
        conversation_id: str,
        context_messages: Sequence[Message],
        options: GenerationOptions | None = None,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_cancelled: CancelledCallback | None = None,
        *,
        after_settle: AfterSettle | None = None,
    ) -> GenerationTask:
        """Start streaming a reply into ``target_message_id`` without waiting for it.

        The placeholder is persisted and ``streaming_start`` emitted before this
        returns; everything after runs in a background task. A previous
        generation for the same id is cancelled and superseded.
        """

        token = self._registry.create_token(target_message_id)
        lifecycle = StreamingLifecycleManager(
            target_message_id, self._messages, self._events, buffers=self._buffers
        )
        try:
            await lifecycle.init()
        except BaseException:
            self._registry.complete(target_message_id, token)
            raise

        generation = GenerationTask(
            message_id=target_message_id,
            conversation_id=conversation_id,
            token=token,
            lifecycle=lifecycle,
        )
        task = asyncio.create_task(
            self._run(
                generation,
                context_messages,
                options,
                on_success=on_success,
                on_error=on_error,
                on_cancelled=on_cancelled,
                after_settle=after_settle,
            ),
            name=f"assistant-reply-{target_message_id}",
        )
        generation.task = task
        self._active[target_message_id] = generation
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        LOGGER.debug(
            "Started reply generation for %s with %d context message(s)",
            target_message_id,
            len(context_messages),
        )
        return generation

    async def generate_reply_for_new_message(
        self,
        message_id: str,
        conversation_id: str,
        options: GenerationOptions | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_cancelled: CancelledCallback | None = None,
    ) -> GenerationTask:
        """Reply into a freshly created assistant message, then maybe title the chat."""

        context = await self._context_builder.build(message_id, self._context_options)

        async def _trigger_title() -> None:
            if self._title_service is not None:
                await self._title_service.try_trigger(conversation_id)

        return await self.stream_assistant_reply(
            message_id,
            conversation_id,
            context,
            options,
            on_success=on_success,
            on_error=on_error,
            on_cancelled=on_cancelled,
            after_settle=_trigger_title,
        )

    async def regenerate_reply(
        self,
        message_id: str,
        options: GenerationOptions | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_cancelled: CancelledCallback | None = None,
    ) -> GenerationTask:
        """Regenerate an existing assistant message in place."""

        message = await self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message=f"Message {message_id} not found", message_id=message_id)
        if message.role != "assistant":
            raise RoleValidationError(actual_role=message.role)

        await self._messages.update(message_id, content=placeholder_content(), reasoning=None)
        context = await self._context_builder.build(message_id, self._context_options)
        return await self.stream_assistant_reply(
            message_id,
            message.conversation_id,
            context,
            options,
            on_success=on_success,
            on_error=on_error,
            on_cancelled=on_cancelled,
        )

    def cancel(self, message_id: str) -> bool:
        """Request cooperative cancellation; ``False`` when nothing is running."""

        found = self._registry.cancel(message_id)
        if found:
            LOGGER.info("Cancellation requested for %s", message_id)
        return found

    def get_active(self, message_id: str) -> GenerationTask | None:
        return self._active.get(message_id)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel all generations, wait for them to settle and close the backend."""

        cancelled = self._registry.cancel_all()
        if cancelled:
            LOGGER.info("Cancelling %d active generation(s) on shutdown", cancelled)
        await self.wait_all()
        close = getattr(self._backend, "aclose", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------
    async def _run(
        self,
        generation: GenerationTask,
        context: Sequence[Message],
        options: GenerationOptions | None,
        *,
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
        on_cancelled: CancelledCallback | None,
        after_settle: AfterSettle | None,
    ) -> Optional[Message]:
        message_id = generation.message_id
        token = generation.token
        lifecycle = generation.lifecycle
        message: Optional[Message] = None
        resolved = await self._resolve_options(generation.conversation_id, options)
        run_log = self._event_logger.start_run(
            message_id=message_id,
            conversation_id=generation.conversation_id,
            context_ids=[item.id for item in context],
            estimated_tokens=getattr(context, "estimated_tokens", None),
            model=resolved.model,
        )
        try:
            try:
                events = self._backend.stream_events(context, resolved, cancellation=token)
                result = await consume_stream(events, lifecycle, token)
                lifecycle.flush()
                if result.cancelled or token.is_cancelled:
                    message = await lifecycle.cancelled()
                    self._settle(generation)
                    run_log.log_cancelled(text=lifecycle.text, reasoning=lifecycle.reasoning or None)
                    await self._report_cancelled(message, on_error, on_cancelled)
                else:
                    message = await lifecycle.complete(result)
                    self._settle(generation)
                    run_log.log_completion(text=result.text, reasoning=result.reasoning)
                    LOGGER.info(
                        "Reply %s completed (%d chars) in %.2fs",
                        message_id,
                        len(result.text),
                        time.monotonic() - generation.started_at,
                    )
                    await self._invoke(on_success, message)
            except asyncio.CancelledError:
                token.cancel()
                settled_here = not lifecycle.is_terminal
                if settled_here:
                    try:
                        message = await lifecycle.cancelled()
                    except Exception:
                        LOGGER.exception("Failed to persist %s after task cancellation", message_id)
                self._settle(generation)
                run_log.log_failure(message="generation task cancelled")
                if settled_here:
                    if message is not None:
                        await self._report_cancelled(message, on_error, on_cancelled)
                    else:
                        await self._invoke(on_error, GenerationCancelled(), None)
                await self._after_settle(after_settle, message_id)
                raise
            except Exception as exc:
                message = await self._handle_failure(generation, exc, on_error, on_cancelled, run_log)
        finally:
            self._settle(generation)
            run_log.close()

        await self._after_settle(after_settle, message_id)
        return message

    @staticmethod
    async def _after_settle(hook: AfterSettle | None, message_id: str) -> None:
        if hook is None:
            return
        try:
            await hook()
        except Exception:
            LOGGER.exception("Post-settle hook failed for %s", message_id)

    async def _handle_failure(
        self,
        generation: GenerationTask,
        exc: Exception,
        on_error: ErrorCallback | None,
        on_cancelled: CancelledCallback | None,
        run_log: Any,
    ) -> Optional[Message]:
        message_id = generation.message_id
        lifecycle = generation.lifecycle
        cancelled = generation.token.is_cancelled or isinstance(exc, GenerationCancelled)
        message: Optional[Message] = None

        if lifecycle.is_terminal:
            # already persisted; report only
            LOGGER.error("Reply %s failed after settling: %s", message_id, exc, exc_info=exc)
            message = await self._messages.get(message_id)
            self._settle(generation)
            await self._invoke(on_error, exc, message)
            return message

        try:
            if cancelled:
                message = await lifecycle.cancelled()
            else:
                LOGGER.error("Failed to generate reply for %s: %s", message_id, exc, exc_info=exc)
                message = await lifecycle.error(exc, interrupted_mid_stream=lifecycle.is_streaming)
        except Exception:
            LOGGER.exception("Failed to persist terminal state for %s", message_id)
        self._settle(generation)

        if cancelled:
            run_log.log_cancelled(text=lifecycle.text, reasoning=lifecycle.reasoning or None)
            if message is not None:
                await self._report_cancelled(message, on_error, on_cancelled)
            else:
                await self._invoke(on_error, GenerationCancelled(), None)
        else:
            run_log.log_failure(message=str(exc), details={"type": type(exc).__name__})
            await self._invoke(on_error, exc, message)
        return message

    async def _report_cancelled(
        self,
        message: Message,
        on_error: ErrorCallback | None,
        on_cancelled: CancelledCallback | None,
    ) -> None:
        LOGGER.info("Reply %s cancelled", message.id)
        if on_cancelled is not None:
            await self._invoke(on_cancelled, message)
        else:
            await self._invoke(on_error, GenerationCancelled(), message)

    def _settle(self, generation: GenerationTask) -> None:
        self._registry.complete(generation.message_id, generation.token)
        if self._active.get(generation.message_id) is generation:
            del self._active[generation.message_id]

    async def _resolve_options(
        self, conversation_id: str, options: GenerationOptions | None
    ) -> GenerationOptions:
        resolved = options or GenerationOptions()
        if resolved.model or self._conversations is None:
            return resolved
        try:
            conversation = await self._conversations.get(conversation_id)
        except Exception:
            LOGGER.warning("Failed to resolve model for conversation %s", conversation_id, exc_info=True)
            return resolved
        if conversation is not None and conversation.model:
            return resolved.with_model(conversation.model)
        return resolved

    @staticmethod
    async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Generation callback %r failed", callback)


__all__ = ["AssistantService", "GenerationTask"]
