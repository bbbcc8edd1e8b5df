"""Tests for message and conversation models."""

from __future__ import annotations

from branchchat.chat.message_model import (
    PLACEHOLDER_TITLE,
    AttachmentPart,
    CitationPart,
    Conversation,
    ImagePart,
    Message,
    TextPart,
    ToolCallPart,
    ZERO_WIDTH_SPACE,
    content_part_from_dict,
    ensure_placeholder,
    strip_placeholder,
)


def test_placeholder_helpers() -> None:
    assert ensure_placeholder("") == ZERO_WIDTH_SPACE
    assert ensure_placeholder(None) == ZERO_WIDTH_SPACE
    assert ensure_placeholder("  \n") == ZERO_WIDTH_SPACE
    assert ensure_placeholder("text") == "text"
    assert strip_placeholder(ZERO_WIDTH_SPACE) == ""
    assert strip_placeholder(f"a{ZERO_WIDTH_SPACE}b") == "ab"


def test_text_joins_text_parts_only() -> None:
    message = Message(
        conversation_id="c",
        role="assistant",
        content=[TextPart("First"), ImagePart(image="AAAA"), TextPart(ZERO_WIDTH_SPACE), TextPart("Second")],
    )

    assert message.text == "First\n\nSecond"


def test_message_serialization_preserves_parts_and_links() -> None:
    message = Message(
        conversation_id="c",
        role="user",
        content=[
            TextPart("See attached"),
            AttachmentPart(filename="notes.txt", content="hello", size=5),
            CitationPart(filename="doc.pdf", file_id="f1", content="quote", page_number=3),
            ToolCallPart(id="t1", name="search", arguments={"q": "tides"}),
        ],
        reasoning="because",
        parent_message_id="p1",
    )

    restored = Message.from_dict(message.to_dict())

    assert restored == message


def test_unknown_part_types_are_dropped() -> None:
    assert content_part_from_dict({"type": "video", "url": "x"}) is None

    restored = Message.from_dict(
        {
            "id": "m1",
            "conversation_id": "c",
            "role": "user",
            "content": [{"type": "text", "text": "kept"}, {"type": "hologram"}],
        }
    )

    assert restored.content == [TextPart("kept")]
    assert restored.parent_message_id is None


def test_conversation_placeholder_title() -> None:
    assert Conversation().title == PLACEHOLDER_TITLE
    assert Conversation().has_placeholder_title
    assert Conversation(title="  ").has_placeholder_title
    assert not Conversation(title="Ocean Tides").has_placeholder_title
