"""Chat message, content part and conversation data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Union

ZERO_WIDTH_SPACE = "\u200b"
PLACEHOLDER_TITLE = "New Chat"

MessageRole = Literal["user", "assistant", "system"]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_placeholder(text: str | None) -> str:
    """Return ``text`` or the zero-width placeholder when it is blank.

    Empty text is reserved to mean "absent", so persisted assistant messages
    always carry at least the marker.
    """

    value = text or ""
    return ZERO_WIDTH_SPACE if not value.strip() else value


def strip_placeholder(text: str | None) -> str:
    if not text:
        return ""
    return text.replace(ZERO_WIDTH_SPACE, "")


@dataclass(slots=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ImagePart:
    """Inline image (base64 payload or data URL) with optional pixel size."""

    image: str
    media_type: str | None = None
    filename: str | None = None
    width: int | None = None
    height: int | None = None
    type: Literal["image"] = "image"

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "image": self.image,
            "media_type": self.media_type,
            "filename": self.filename,
            "width": self.width,
            "height": self.height,
        }
        return {"type": self.type, "image": {k: v for k, v in body.items() if v is not None}}


@dataclass(slots=True)
class CitationPart:
    filename: str
    file_id: str
    content: str
    similarity: float = 0.0
    page_number: int | None = None
    type: Literal["citation"] = "citation"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "filename": self.filename,
            "file_id": self.file_id,
            "content": self.content,
            "similarity": self.similarity,
        }
        if self.page_number is not None:
            body["page_number"] = self.page_number
        return {"type": self.type, "citation": body}


@dataclass(slots=True)
class ToolCallPart:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    result: Any | None = None
    type: Literal["tool-call"] = "tool-call"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}
        if self.result is not None:
            body["result"] = self.result
        return {"type": self.type, "tool_call": body}


@dataclass(slots=True)
class TemporaryFilePart:
    filename: str
    content: str
    size: int | None = None
    mime_type: str | None = None
    type: Literal["temporary-file"] = "temporary-file"

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "filename": self.filename,
            "content": self.content,
            "size": self.size,
            "mime_type": self.mime_type,
        }
        return {"type": self.type, "temporary_file": {k: v for k, v in body.items() if v is not None}}


@dataclass(slots=True)
class AttachmentPart:
    filename: str
    content: str
    size: int = 0
    mime_type: str = "text/plain"
    type: Literal["attachment"] = "attachment"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "attachment": {
                "filename": self.filename,
                "content": self.content,
                "size": self.size,
                "mime_type": self.mime_type,
            },
        }


ContentPart = Union[TextPart, ImagePart, CitationPart, ToolCallPart, TemporaryFilePart, AttachmentPart]


def content_part_from_dict(payload: Mapping[str, Any]) -> ContentPart | None:
    """Rebuild a content part from its tagged dictionary form."""

    kind = payload.get("type")
    if kind == "text":
        return TextPart(text=str(payload.get("text") or ""))
    if kind == "image" and isinstance(payload.get("image"), Mapping):
        body = payload["image"]
        return ImagePart(
            image=str(body.get("image") or ""),
            media_type=body.get("media_type"),
            filename=body.get("filename"),
            width=body.get("width"),
            height=body.get("height"),
        )
    if kind == "citation" and isinstance(payload.get("citation"), Mapping):
        body = payload["citation"]
        return CitationPart(
            filename=str(body.get("filename") or ""),
            file_id=str(body.get("file_id") or ""),
            content=str(body.get("content") or ""),
            similarity=float(body.get("similarity") or 0.0),
            page_number=body.get("page_number"),
        )
    if kind == "tool-call" and isinstance(payload.get("tool_call"), Mapping):
        body = payload["tool_call"]
        return ToolCallPart(
            id=str(body.get("id") or ""),
            name=str(body.get("name") or ""),
            arguments=dict(body.get("arguments") or {}),
            result=body.get("result"),
        )
    if kind == "temporary-file" and isinstance(payload.get("temporary_file"), Mapping):
        body = payload["temporary_file"]
        return TemporaryFilePart(
            filename=str(body.get("filename") or ""),
            content=str(body.get("content") or ""),
            size=body.get("size"),
            mime_type=body.get("mime_type"),
        )
    if kind == "attachment" and isinstance(payload.get("attachment"), Mapping):
        body = payload["attachment"]
        return AttachmentPart(
            filename=str(body.get("filename") or ""),
            content=str(body.get("content") or ""),
            size=int(body.get("size") or 0),
            mime_type=str(body.get("mime_type") or "text/plain"),
        )
    return None


def text_content(text: str) -> list[ContentPart]:
    return [TextPart(text=text)]


def placeholder_content() -> list[ContentPart]:
    return [TextPart(text=ensure_placeholder(""))]


@dataclass(slots=True)
class Message:
    """A node in a conversation's message forest.

    ``parent_message_id`` is a back-reference by id, never an object pointer.
    """

    conversation_id: str
    role: MessageRole
    content: list[ContentPart] = field(default_factory=list)
    reasoning: Optional[str] = None
    parent_message_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def text(self) -> str:
        """Joined text of all text parts with placeholders removed."""

        chunks = [strip_placeholder(part.text) for part in self.content if isinstance(part, TextPart)]
        return "\n\n".join(chunk for chunk in chunks if chunk)

    def with_content(self, content: Sequence[ContentPart], reasoning: str | None = None) -> "Message":
        return replace(self, content=list(content), reasoning=reasoning, updated_at=_utcnow())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": [part.to_dict() for part in self.content],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.reasoning is not None:
            payload["reasoning"] = self.reasoning
        if self.parent_message_id is not None:
            payload["parent_message_id"] = self.parent_message_id
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        parts = [content_part_from_dict(item) for item in payload.get("content") or () if isinstance(item, Mapping)]
        return cls(
            id=str(payload["id"]),
            conversation_id=str(payload["conversation_id"]),
            role=payload["role"],
            content=[part for part in parts if part is not None],
            reasoning=payload.get("reasoning"),
            parent_message_id=payload.get("parent_message_id"),
            created_at=_parse_timestamp(payload.get("created_at")),
            updated_at=_parse_timestamp(payload.get("updated_at")),
        )


@dataclass(slots=True)
class Conversation:
    """Conversation header; messages live in the message store."""

    title: str = PLACEHOLDER_TITLE
    project_id: Optional[str] = None
    model: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def has_placeholder_title(self) -> bool:
        return not self.title.strip() or self.title == PLACEHOLDER_TITLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "project_id": self.project_id,
            "model": self.model,
            "settings": dict(self.settings),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return _utcnow()


__all__ = [
    "AttachmentPart",
    "CitationPart",
    "ContentPart",
    "Conversation",
    "ImagePart",
    "Message",
    "MessageRole",
    "PLACEHOLDER_TITLE",
    "TemporaryFilePart",
    "TextPart",
    "ToolCallPart",
    "ZERO_WIDTH_SPACE",
    "content_part_from_dict",
    "ensure_placeholder",
    "new_id",
    "placeholder_content",
    "strip_placeholder",
    "text_content",
]
