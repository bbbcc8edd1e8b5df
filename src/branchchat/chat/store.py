"""Message and conversation store contracts plus in-memory arenas.

Durable persistence lives outside this package. The in-memory stores keep
messages in a flat id-indexed map and link them through ``parent_message_id``
so ancestor walks are plain iterative lookups.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..errors import MessageNotFoundError
from .message_model import ContentPart, Conversation, Message

LOGGER = logging.getLogger(__name__)

_UNSET: Any = object()


@runtime_checkable
class MessageStore(Protocol):
    """Persistence collaborator for messages; updates are single-row atomic."""

    async def get(self, message_id: str) -> Message | None:
        ...

    async def create(self, message: Message) -> Message:
        ...

    async def update(
        self,
        message_id: str,
        *,
        content: Sequence[ContentPart] | None = None,
        reasoning: str | None = _UNSET,
    ) -> Message:
        ...

    async def list_by_conversation(self, conversation_id: str) -> list[Message]:
        ...


@runtime_checkable
class ConversationStore(Protocol):
    """Persistence collaborator for conversation headers."""

    async def get(self, conversation_id: str) -> Conversation | None:
        ...

    async def create(self, conversation: Conversation) -> Conversation:
        ...

    async def update(self, conversation_id: str, **fields: Any) -> Conversation:
        ...


class InMemoryMessageStore:
    """Id-indexed message arena.

    Writes are guarded by one lock per message id so concurrent generations
    for distinct ids never contend. Locks are held weakly and go away once no
    update holds or awaits them.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: Dict[str, Message] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        for message in messages or ():
            self._messages[message.id] = message

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    async def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    async def create(self, message: Message) -> Message:
        if message.id in self._messages:
            raise ValueError(f"Message {message.id} already exists")
        if message.parent_message_id and message.parent_message_id not in self._messages:
            LOGGER.debug(
                "Message %s references unknown parent %s", message.id, message.parent_message_id
            )
        self._messages[message.id] = message
        return message

    async def update(
        self,
        message_id: str,
        *,
        content: Sequence[ContentPart] | None = None,
        reasoning: str | None = _UNSET,
    ) -> Message:
        async with self._lock_for(message_id):
            current = self._messages.get(message_id)
            if current is None:
                raise MessageNotFoundError(message_id=message_id)
            changes: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
            if content is not None:
                changes["content"] = list(content)
            if reasoning is not _UNSET:
                changes["reasoning"] = reasoning
            updated = replace(current, **changes)
            self._messages[message_id] = updated
            return updated

    async def list_by_conversation(self, conversation_id: str) -> list[Message]:
        matches = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        matches.sort(key=lambda m: m.created_at)
        return matches

    def _lock_for(self, message_id: str) -> asyncio.Lock:
        lock = self._locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[message_id] = lock
        return lock


class InMemoryConversationStore:
    """Id-indexed conversation arena."""

    _UPDATABLE = frozenset({"title", "project_id", "model", "settings"})

    def __init__(self, conversations: Iterable[Conversation] | None = None) -> None:
        self._conversations: Dict[str, Conversation] = {c.id: c for c in conversations or ()}

    async def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def create(self, conversation: Conversation) -> Conversation:
        if conversation.id in self._conversations:
            raise ValueError(f"Conversation {conversation.id} already exists")
        self._conversations[conversation.id] = conversation
        return conversation

    async def update(self, conversation_id: str, **fields: Any) -> Conversation:
        current = self._conversations.get(conversation_id)
        if current is None:
            raise KeyError(conversation_id)
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported conversation fields: {sorted(unknown)}")
        changes: Mapping[str, Any] = {**fields, "updated_at": datetime.now(timezone.utc)}
        updated = replace(current, **changes)
        self._conversations[conversation_id] = updated
        return updated


__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "InMemoryMessageStore",
    "MessageStore",
]
