"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, AsyncOpenAI, AuthenticationError, RateLimitError

from branchchat.ai.ai_types import BackendEvent, GenerationOptions
from branchchat.ai.client import (
    AIClient,
    ApproxByteCounter,
    ClientSettings,
    TokenCounterRegistry,
    convert_messages,
)
from branchchat.ai.orchestration.cancellation import CancellationToken
from branchchat.chat.message_model import (
    AttachmentPart,
    CitationPart,
    ImagePart,
    Message,
    TextPart,
    ZERO_WIDTH_SPACE,
)
from branchchat.errors import ConfigurationError, TransientBackendError

from tests.helpers import FakeCounter, make_message

_REQUEST = httpx.Request("POST", "http://local/chat/completions")


def _reasoning_chunk(text: str) -> SimpleNamespace:
    delta = SimpleNamespace(reasoning_content=text, content=None)
    return SimpleNamespace(type="chunk", chunk=SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))


def _content_chunk() -> SimpleNamespace:
    delta = SimpleNamespace(content="ignored")
    return SimpleNamespace(type="chunk", chunk=SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))


def _delta(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="content.delta", delta=text)


_DONE = SimpleNamespace(type="content.done", content="")


class _FakeStream:
    def __init__(self, events: Iterable[Any]) -> None:
        self._events = list(events)
        self.closed = False

    async def __aenter__(self) -> "_FakeStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.closed = True
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event


class _FakeCompletions:
    """Each ``stream``/``create`` call consumes the next script entry."""

    def __init__(self, scripts: Iterable[Any]) -> None:
        self._scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []
        self.streams: list[_FakeStream] = []

    def stream(self, **kwargs: Any) -> _FakeStream:
        self.calls.append(kwargs)
        script = self._scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        stream = _FakeStream(script)
        self.streams.append(stream)
        return stream

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        script = self._scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        return script


class _FakeModels:
    def __init__(self, payload: list[SimpleNamespace]) -> None:
        self._payload = payload
        self.calls = 0

    async def list(self) -> SimpleNamespace:
        self.calls += 1
        return SimpleNamespace(data=self._payload)


def _make_client(*scripts: Any, models: list[SimpleNamespace] | None = None) -> SimpleNamespace:
    completions = _FakeCompletions(scripts)
    return SimpleNamespace(
        chat=SimpleNamespace(completions=completions),
        models=_FakeModels(models or [SimpleNamespace(id="test-model")]),
    )


def _ai_client(fake_client: SimpleNamespace, **overrides: Any) -> AIClient:
    settings = ClientSettings(
        base_url="http://local",
        api_key="test",
        model="gpt-4o-mini",
        max_retries=3,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return AIClient(settings, client=cast(AsyncOpenAI, fake_client))


async def _collect(client: AIClient, messages: list[Message], **kwargs: Any) -> list[BackendEvent]:
    return [event async for event in client.stream_events(messages, **kwargs)]


def _summary(events: list[BackendEvent]) -> list[tuple[str, str | None]]:
    return [(event.type, event.text) for event in events]


@pytest.mark.asyncio
async def test_stream_events_normalizes_reasoning_and_text() -> None:
    fake_client = _make_client(
        [
            _reasoning_chunk("Think"),
            _reasoning_chunk("ing."),
            _content_chunk(),
            _delta("Hel"),
            _delta("lo"),
            _DONE,
        ]
    )
    client = _ai_client(fake_client)

    events = await _collect(client, [make_message(text="Hi")])

    assert _summary(events) == [
        ("start", None),
        ("reasoning-start", None),
        ("reasoning-delta", "Think"),
        ("reasoning-delta", "ing."),
        ("reasoning-end", None),
        ("text-start", None),
        ("text-delta", "Hel"),
        ("text-delta", "lo"),
        ("text-end", None),
        ("finish", None),
    ]
    payload = fake_client.chat.completions.calls[0]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["messages"] == [{"role": "user", "content": "Hi"}]
    assert fake_client.chat.completions.streams[0].closed


@pytest.mark.asyncio
async def test_unterminated_phases_are_closed_at_finish() -> None:
    fake_client = _make_client([_reasoning_chunk("only reasoning")])
    client = _ai_client(fake_client)

    events = await _collect(client, [make_message(text="Hi")])

    assert [event.type for event in events] == [
        "start",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-end",
        "finish",
    ]


@pytest.mark.asyncio
async def test_payload_applies_generation_options() -> None:
    fake_client = _make_client([_DONE])
    client = _ai_client(fake_client, metadata={"app": "branchchat"})
    options = GenerationOptions(
        model="o3-mini",
        reasoning_effort="high",
        temperature=0.2,
        max_tokens=256,
        metadata={"conversation": "c1"},
    )

    await _collect(client, [make_message(text="Hi")], options=options)

    payload = fake_client.chat.completions.calls[0]
    assert payload["model"] == "o3-mini"
    assert payload["reasoning_effort"] == "high"
    assert payload["temperature"] == 0.2
    assert payload["max_completion_tokens"] == 256
    assert payload["metadata"] == {"app": "branchchat", "conversation": "c1"}


@pytest.mark.asyncio
async def test_cancellation_stops_stream_between_events() -> None:
    fake_client = _make_client([_delta("one"), _delta("two"), _delta("three"), _DONE])
    client = _ai_client(fake_client)
    token = CancellationToken("a1")
    collected: list[BackendEvent] = []

    async for event in client.stream_events([make_message(text="Hi")], cancellation=token):
        collected.append(event)
        if event.type == "text-delta":
            token.cancel()

    assert _summary(collected) == [("start", None), ("text-start", None), ("text-delta", "one")]
    assert fake_client.chat.completions.streams[0].closed


@pytest.mark.asyncio
async def test_missing_api_key_fails_validation() -> None:
    fake_client = _make_client([_DONE])
    client = _ai_client(fake_client, api_key="")

    with pytest.raises(ConfigurationError, match="Missing API key"):
        await _collect(client, [make_message(text="Hi")])
    assert fake_client.chat.completions.calls == []


def test_missing_model_fails_validation() -> None:
    client = _ai_client(_make_client(), model=" ")

    with pytest.raises(ConfigurationError, match="No model specified"):
        client.validate()


@pytest.mark.asyncio
async def test_stream_requires_messages() -> None:
    client = _ai_client(_make_client())

    generator = client.stream_events([])
    with pytest.raises(ValueError):
        await generator.__anext__()


@pytest.mark.asyncio
async def test_connection_failure_before_first_event_is_retried() -> None:
    fake_client = _make_client(APIConnectionError(request=_REQUEST), [_delta("recovered"), _DONE])
    client = _ai_client(fake_client)

    events = await _collect(client, [make_message(text="Hi")])

    assert len(fake_client.chat.completions.calls) == 2
    assert ("text-delta", "recovered") in _summary(events)


@pytest.mark.asyncio
async def test_exhausted_retries_map_to_transient_error() -> None:
    response = httpx.Response(429, request=_REQUEST)
    fake_client = _make_client(
        RateLimitError("Too many requests", response=response, body=None),
        RateLimitError("Too many requests", response=response, body=None),
    )
    client = _ai_client(fake_client, max_retries=2)

    with pytest.raises(TransientBackendError) as excinfo:
        await _collect(client, [make_message(text="Hi")])

    assert excinfo.value.status_code == 429
    assert len(fake_client.chat.completions.calls) == 2


@pytest.mark.asyncio
async def test_authentication_failure_is_configuration_error() -> None:
    response = httpx.Response(401, request=_REQUEST)
    fake_client = _make_client(AuthenticationError("Invalid API key", response=response, body=None))
    client = _ai_client(fake_client)

    with pytest.raises(ConfigurationError, match="Invalid API key"):
        await _collect(client, [make_message(text="Hi")])
    assert len(fake_client.chat.completions.calls) == 1


@pytest.mark.asyncio
async def test_complete_once_returns_message_content() -> None:
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Tide Basics"))])
    fake_client = _make_client(response)
    client = _ai_client(fake_client, metadata={"app": "branchchat"})

    title = await client.complete_once([make_message(text="Summarize")])

    assert title == "Tide Basics"
    assert "metadata" not in fake_client.chat.completions.calls[0]


@pytest.mark.asyncio
async def test_list_models_caches_results() -> None:
    fake_client = _make_client(models=[SimpleNamespace(id="gpt-4o"), SimpleNamespace(id="gpt-4o-mini")])
    client = _ai_client(fake_client)

    first = await client.list_models()
    second = await client.list_models()

    assert first == ["gpt-4o", "gpt-4o-mini"]
    assert second == first
    assert fake_client.models.calls == 1


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    closed: list[bool] = []

    async def _close() -> None:
        closed.append(True)

    fake_client = _make_client()
    fake_client.close = _close
    client = _ai_client(fake_client)

    await client.aclose()

    assert closed == [True]


def test_convert_messages_handles_parts_and_placeholders() -> None:
    messages = [
        Message(
            conversation_id="c",
            role="user",
            content=[TextPart("Look at this"), ImagePart(image="AAAA", media_type="image/jpeg")],
        ),
        Message(conversation_id="c", role="assistant", content=[TextPart(ZERO_WIDTH_SPACE)]),
        Message(
            conversation_id="c",
            role="assistant",
            content=[TextPart("Answer"), CitationPart(filename="doc.pdf", file_id="f1", content="quote")],
        ),
        Message(
            conversation_id="c",
            role="user",
            content=[AttachmentPart(filename="notes.txt", content="hello")],
        ),
    ]

    converted = convert_messages(messages)

    assert converted[0] == {
        "role": "user",
        "content": [
            {"type": "text", "text": "Look at this"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
        ],
    }
    assert converted[1] == {"role": "assistant", "content": ""}
    assert converted[2] == {"role": "assistant", "content": "Answer\n\n[Citation: doc.pdf]\nquote"}
    assert converted[3] == {"role": "user", "content": "[File: notes.txt]\nhello\n[End of file]"}


def test_token_counters() -> None:
    registry = TokenCounterRegistry()
    registry.register("GPT-Test", FakeCounter())
    client = AIClient(
        ClientSettings(base_url="", api_key="test", model="gpt-test"),
        client=cast(AsyncOpenAI, _make_client()),
        token_registry=registry,
    )

    assert client.count_tokens("one two three") == 3
    assert client.count_tokens("") == 0
    assert registry.get("unknown").count("abcdefgh") == 2
    assert ApproxByteCounter().estimate("abcde") == 2
