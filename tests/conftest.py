"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from branchchat.ai.utils import tokens
from branchchat.chat.store import InMemoryConversationStore, InMemoryMessageStore

from tests.helpers import FakeCounter, RecordingSink


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(autouse=True)
def _isolate_log_dir(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("BRANCHCHAT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture(autouse=True)
def _offline_token_counter(monkeypatch) -> None:
    """Keep default estimators from downloading tiktoken encodings."""

    monkeypatch.setattr(tokens, "default_counter_factory", FakeCounter)
