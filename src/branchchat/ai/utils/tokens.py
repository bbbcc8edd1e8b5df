"""Token estimation utilities for context assembly."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Literal, Sequence

from ...chat.message_model import (
    AttachmentPart,
    CitationPart,
    ImagePart,
    Message,
    TemporaryFilePart,
    TextPart,
    strip_placeholder,
)
from ..ai_types import TokenCounterProtocol
from ..client import DEFAULT_ENCODING, TiktokenCounter

LOGGER = logging.getLogger(__name__)

TILE_SIZE = 512
TOKENS_PER_TILE = 85
MESSAGE_OVERHEAD_TOKENS = 10

TokenKind = Literal["text", "image", "file"]
CounterFactory = Callable[[], TokenCounterProtocol]


def default_counter_factory() -> TokenCounterProtocol:
    return TiktokenCounter("gpt-4o", encoding_name=DEFAULT_ENCODING)


def estimate_image_tokens_by_tiles(
    width: int | None, height: int | None, tokens_per_tile: int = TOKENS_PER_TILE
) -> int:
    """Estimate image tokens using 512x512 tiles.

    Unknown or non-positive dimensions fall back to a single tile edge.
    """

    w = width if width and width > 0 else TILE_SIZE
    h = height if height and height > 0 else TILE_SIZE
    return math.ceil(w / TILE_SIZE) * math.ceil(h / TILE_SIZE) * tokens_per_tile


@dataclass(slots=True)
class TokenCountItem:
    id: str
    label: str
    tokens: int
    type: TokenKind


@dataclass(slots=True)
class TokenCountResult:
    total: int = 0
    text: int = 0
    images: int = 0
    files: int = 0
    items: List[TokenCountItem] = field(default_factory=list)


def count_request_tokens(items: Sequence[TokenCountItem]) -> TokenCountResult:
    """Aggregate pre-counted items into totals per kind."""

    result = TokenCountResult(items=list(items))
    for item in items:
        result.total += item.tokens
        if item.type == "text":
            result.text += item.tokens
        elif item.type == "image":
            result.images += item.tokens
        elif item.type == "file":
            result.files += item.tokens
    return result


class MessageTokenEstimator:
    """Estimate how many prompt tokens a stored message will cost.

    The counter is created lazily from ``counter_factory``. Any failure, from
    loading the encoding to encoding text, yields ``0`` so callers can switch
    to a count-based fallback instead of aborting.
    """

    def __init__(self, counter_factory: CounterFactory | None = None) -> None:
        self._counter_factory = counter_factory or default_counter_factory
        self._counter: TokenCounterProtocol | None = None

    def estimate(self, message: Message) -> int:
        try:
            counter = self._ensure_counter()
            items = self._count_items(message, counter)
        except Exception:
            LOGGER.warning("Token estimation failed for message %s", message.id, exc_info=True)
            return 0
        return sum(item.tokens for item in items) + MESSAGE_OVERHEAD_TOKENS

    def breakdown(self, message: Message) -> TokenCountResult:
        """Return a per-part token breakdown without the per-message overhead."""

        try:
            counter = self._ensure_counter()
            return count_request_tokens(self._count_items(message, counter))
        except Exception:
            LOGGER.warning("Token breakdown failed for message %s", message.id, exc_info=True)
            return TokenCountResult()

    def _ensure_counter(self) -> TokenCounterProtocol:
        if self._counter is None:
            self._counter = self._counter_factory()
        return self._counter

    def _count_items(self, message: Message, counter: TokenCounterProtocol) -> List[TokenCountItem]:
        items: List[TokenCountItem] = []
        for index, part in enumerate(message.content):
            item_id = f"{message.id}:{index}"
            if isinstance(part, TextPart):
                text = strip_placeholder(part.text)
                if text:
                    items.append(TokenCountItem(item_id, "text", counter.count(text), "text"))
            elif isinstance(part, ImagePart):
                tokens = estimate_image_tokens_by_tiles(part.width, part.height)
                items.append(TokenCountItem(item_id, part.filename or "image", tokens, "image"))
            elif isinstance(part, (AttachmentPart, TemporaryFilePart)):
                if part.content:
                    items.append(TokenCountItem(item_id, part.filename, counter.count(part.content), "file"))
            elif isinstance(part, CitationPart):
                if part.content:
                    items.append(TokenCountItem(item_id, part.filename, counter.count(part.content), "text"))
        if message.reasoning:
            items.append(TokenCountItem(f"{message.id}:reasoning", "reasoning", counter.count(message.reasoning), "text"))
        return items


__all__ = [
    "MESSAGE_OVERHEAD_TOKENS",
    "MessageTokenEstimator",
    "TILE_SIZE",
    "TOKENS_PER_TILE",
    "TokenCountItem",
    "TokenCountResult",
    "count_request_tokens",
    "default_counter_factory",
    "estimate_image_tokens_by_tiles",
]
