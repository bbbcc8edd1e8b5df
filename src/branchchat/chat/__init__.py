"""Conversation data model and storage contracts."""

from .message_model import (
    AttachmentPart,
    CitationPart,
    ContentPart,
    Conversation,
    ImagePart,
    Message,
    PLACEHOLDER_TITLE,
    TemporaryFilePart,
    TextPart,
    ToolCallPart,
    ensure_placeholder,
    strip_placeholder,
)
from .store import ConversationStore, InMemoryConversationStore, InMemoryMessageStore, MessageStore

__all__ = [
    "AttachmentPart",
    "CitationPart",
    "ContentPart",
    "Conversation",
    "ConversationStore",
    "ImagePart",
    "InMemoryConversationStore",
    "InMemoryMessageStore",
    "Message",
    "MessageStore",
    "PLACEHOLDER_TITLE",
    "TemporaryFilePart",
    "TextPart",
    "ToolCallPart",
    "ensure_placeholder",
    "strip_placeholder",
]
