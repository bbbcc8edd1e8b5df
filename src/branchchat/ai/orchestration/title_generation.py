"""Automatic conversation titles after the first exchange."""

from __future__ import annotations

import logging
import re
from typing import Sequence

from ...chat.message_model import PLACEHOLDER_TITLE, Message, text_content
from ...chat.store import ConversationStore, MessageStore
from ...errors import ConfigurationError
from ...services.events import ConversationEvents, EventSink
from ..ai_types import AIBackend
from .cancellation import CancellationRegistry

LOGGER = logging.getLogger(__name__)

TITLE_PROMPT = "Generate a concise 3-8 word title for this conversation. Return ONLY the title."
MAX_USER_CHARS = 500
MAX_ASSISTANT_CHARS = 1000
MAX_TITLE_CHARS = 100
_QUOTES = re.compile(r"[\"']")


def title_token_key(conversation_id: str) -> str:
    return f"title-{conversation_id}"


class TitleGenerationService:
    """Best-effort, idempotent title generation for new conversations.

    Every failure degrades to the placeholder title; :meth:`try_trigger`
    never raises.
    """

    def __init__(
        self,
        messages: MessageStore,
        conversations: ConversationStore,
        backend: AIBackend,
        events: EventSink | None = None,
        *,
        registry: CancellationRegistry | None = None,
    ) -> None:
        self._messages = messages
        self._conversations = conversations
        self._backend = backend
        self._events = events
        self._registry = registry or CancellationRegistry()

    @staticmethod
    def should_trigger(messages: Sequence[Message]) -> bool:
        """True once exactly one user and one assistant message exist."""

        users = sum(1 for message in messages if message.role == "user")
        assistants = sum(1 for message in messages if message.role == "assistant")
        return users == 1 and assistants == 1

    async def generate_title(self, conversation_id: str) -> str:
        try:
            return await self._generate(conversation_id)
        except Exception:
            LOGGER.exception("Title generation failed for %s", conversation_id)
            return PLACEHOLDER_TITLE

    async def try_trigger(self, conversation_id: str) -> str | None:
        """Generate and store a title when the first exchange just finished."""

        try:
            conversation = await self._conversations.get(conversation_id)
            if conversation is None or not conversation.has_placeholder_title:
                return None
            messages = await self._messages.list_by_conversation(conversation_id)
            if not self.should_trigger(messages):
                LOGGER.debug(
                    "Not triggering title generation for %s (%d message(s))",
                    conversation_id,
                    len(messages),
                )
                return None
            title = await self.generate_title(conversation_id)
            if not title or title == PLACEHOLDER_TITLE:
                LOGGER.info("Skipping title update for %s: got fallback title", conversation_id)
                return None
            updated = await self._conversations.update(conversation_id, title=title)
            if self._events is not None:
                self._events.emit_conversation(
                    ConversationEvents.TITLE_GENERATED, conversation_id, {"title": title}
                )
                self._events.emit_conversation(
                    ConversationEvents.UPDATED, conversation_id, {"conversation": updated}
                )
            LOGGER.info("Generated title for conversation %s: %r", conversation_id, title)
            return title
        except Exception:
            LOGGER.exception("Automatic title generation failed for %s", conversation_id)
            return None

    def cancel(self, conversation_id: str) -> bool:
        key = title_token_key(conversation_id)
        found = self._registry.cancel(key)
        self._registry.complete(key)
        return found

    async def _generate(self, conversation_id: str) -> str:
        messages = await self._messages.list_by_conversation(conversation_id)
        if len(messages) < 2:
            return PLACEHOLDER_TITLE

        validate = getattr(self._backend, "validate", None)
        if callable(validate):
            try:
                validate()
            except ConfigurationError as exc:
                LOGGER.info("Skipping title generation: %s", exc)
                return PLACEHOLDER_TITLE

        first_user = next((m for m in messages if m.role == "user"), None)
        first_assistant = next((m for m in messages if m.role == "assistant"), None)
        if first_user is None or first_assistant is None:
            return PLACEHOLDER_TITLE
        user_text = _excerpt(first_user, MAX_USER_CHARS)
        assistant_text = _excerpt(first_assistant, MAX_ASSISTANT_CHARS)
        if not user_text or not assistant_text:
            return PLACEHOLDER_TITLE

        prompt = [
            Message(conversation_id="title-generation", role="system", content=text_content(TITLE_PROMPT)),
            Message(
                conversation_id="title-generation",
                role="user",
                content=text_content(f"User: {user_text}\n\nAssistant: {assistant_text}"),
            ),
        ]
        key = title_token_key(conversation_id)
        token = self._registry.create_token(key)
        try:
            if token.is_cancelled:
                return PLACEHOLDER_TITLE
            response = await self._backend.complete_once(prompt)
            if token.is_cancelled:
                return PLACEHOLDER_TITLE
        finally:
            self._registry.complete(key, token)
        return clean_title(response)


def clean_title(raw: str | None) -> str:
    title = _QUOTES.sub("", (raw or "").strip()).strip()
    title = " ".join(title.split())[:MAX_TITLE_CHARS].strip()
    return title or PLACEHOLDER_TITLE


def _excerpt(message: Message, limit: int) -> str:
    return " ".join(message.text.split("\n\n")).strip()[:limit]


__all__ = ["TitleGenerationService", "clean_title", "title_token_key"]
