"""Tests for message token estimation."""

from __future__ import annotations

from branchchat.ai.utils.tokens import (
    MESSAGE_OVERHEAD_TOKENS,
    MessageTokenEstimator,
    TokenCountItem,
    count_request_tokens,
    estimate_image_tokens_by_tiles,
)
from branchchat.chat.message_model import (
    AttachmentPart,
    CitationPart,
    ImagePart,
    Message,
    TemporaryFilePart,
    TextPart,
    ToolCallPart,
    ZERO_WIDTH_SPACE,
)

from tests.helpers import FakeCounter


def _estimator() -> MessageTokenEstimator:
    return MessageTokenEstimator(FakeCounter)


def test_image_tiles() -> None:
    assert estimate_image_tokens_by_tiles(512, 512) == 85
    assert estimate_image_tokens_by_tiles(1024, 768) == 2 * 2 * 85
    assert estimate_image_tokens_by_tiles(None, None) == 85
    assert estimate_image_tokens_by_tiles(513, 10, tokens_per_tile=10) == 20


def test_text_and_reasoning_with_overhead() -> None:
    message = Message(
        conversation_id="c",
        role="assistant",
        content=[TextPart("one two three")],
        reasoning="four five",
    )

    assert _estimator().estimate(message) == 5 + MESSAGE_OVERHEAD_TOKENS


def test_counts_every_text_bearing_part() -> None:
    message = Message(
        conversation_id="c",
        role="user",
        content=[
            TextPart("a b"),
            AttachmentPart(filename="notes.txt", content="c d e"),
            TemporaryFilePart(filename="tmp.txt", content="f"),
            CitationPart(filename="doc.pdf", file_id="f1", content="g h"),
            ImagePart(image="AAAA", width=1024, height=1024),
            ToolCallPart(id="t1", name="search"),
        ],
    )

    assert _estimator().estimate(message) == 2 + 3 + 1 + 2 + 4 * 85 + MESSAGE_OVERHEAD_TOKENS


def test_placeholder_text_costs_only_overhead() -> None:
    message = Message(conversation_id="c", role="assistant", content=[TextPart(ZERO_WIDTH_SPACE)])

    assert _estimator().estimate(message) == MESSAGE_OVERHEAD_TOKENS


def test_counter_construction_failure_returns_zero() -> None:
    def _broken():
        raise OSError("encoding download failed")

    estimator = MessageTokenEstimator(_broken)
    message = Message(conversation_id="c", role="user", content=[TextPart("hello")])

    assert estimator.estimate(message) == 0


def test_counting_failure_returns_zero() -> None:
    class _Exploding(FakeCounter):
        def count(self, text: str) -> int:
            raise RuntimeError("tokenizer crashed")

    estimator = MessageTokenEstimator(_Exploding)
    message = Message(conversation_id="c", role="user", content=[TextPart("hello")])

    assert estimator.estimate(message) == 0


def test_counter_is_created_once() -> None:
    created: list[FakeCounter] = []

    def _factory() -> FakeCounter:
        counter = FakeCounter()
        created.append(counter)
        return counter

    estimator = MessageTokenEstimator(_factory)
    message = Message(conversation_id="c", role="user", content=[TextPart("hello")])
    estimator.estimate(message)
    estimator.estimate(message)

    assert len(created) == 1


def test_breakdown_groups_by_kind() -> None:
    message = Message(
        conversation_id="c",
        role="user",
        content=[
            TextPart("a b c"),
            ImagePart(image="AAAA"),
            AttachmentPart(filename="notes.txt", content="d e"),
        ],
    )

    result = _estimator().breakdown(message)

    assert (result.text, result.images, result.files) == (3, 85, 2)
    assert result.total == 90
    assert [item.type for item in result.items] == ["text", "image", "file"]


def test_count_request_tokens_totals() -> None:
    result = count_request_tokens(
        [
            TokenCountItem("input", "Input Text", 12, "text"),
            TokenCountItem("img", "photo.png", 85, "image"),
            TokenCountItem("file", "notes.txt", 40, "file"),
        ]
    )

    assert result.total == 137
    assert (result.text, result.images, result.files) == (12, 85, 40)
