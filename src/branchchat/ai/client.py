"""Async AI backend built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Sequence, cast

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..chat.message_model import (
    AttachmentPart,
    CitationPart,
    ImagePart,
    Message,
    TemporaryFilePart,
    TextPart,
    strip_placeholder,
)
from ..errors import ConfigurationError, TransientBackendError
from .ai_types import BackendEvent, CancellationSignal, GenerationOptions, TokenCounterProtocol

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
DEFAULT_ENCODING = "o200k_base"
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package.

    Loading the encoding may require fetching BPE files; failures surface from
    the constructor so callers can decide how to degrade.
    """

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", DEFAULT_ENCODING, model_name)
            return tiktoken.get_encoding(DEFAULT_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = None
    reasoning_effort: str | None = None
    max_tokens: int | None = None
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class _EventTranslator:
    """Turns OpenAI stream events into normalized backend events.

    Reasoning deltas arrive on raw chunks (``reasoning_content`` or
    ``reasoning`` from OpenAI-compatible providers); text arrives on
    ``content.delta``. Phase boundaries are synthesized so every opened phase
    is closed exactly once.
    """

    _REASONING_FIELDS = ("reasoning_content", "reasoning")

    def __init__(self) -> None:
        self.reasoning_open = False
        self.text_open = False

    def translate(self, event: Any) -> List[BackendEvent]:
        event_type = getattr(event, "type", None)
        if event_type == "chunk":
            delta = self._reasoning_delta(getattr(event, "chunk", None))
            if not delta:
                return []
            out: List[BackendEvent] = []
            if not self.reasoning_open:
                self.reasoning_open = True
                out.append(BackendEvent(type="reasoning-start"))
            out.append(BackendEvent(type="reasoning-delta", text=delta))
            return out
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if not delta_text:
                return []
            out = self._close_reasoning()
            if not self.text_open:
                self.text_open = True
                out.append(BackendEvent(type="text-start"))
            out.append(BackendEvent(type="text-delta", text=str(delta_text)))
            return out
        if event_type == "content.done":
            return self._close_text()
        if event_type == "refusal.done":
            refusal = getattr(event, "refusal", None)
            LOGGER.info("Model refused the request: %s", refusal)
        return []

    def finish(self) -> List[BackendEvent]:
        out = self._close_reasoning()
        out.extend(self._close_text())
        out.append(BackendEvent(type="finish"))
        return out

    def _close_reasoning(self) -> List[BackendEvent]:
        if not self.reasoning_open:
            return []
        self.reasoning_open = False
        return [BackendEvent(type="reasoning-end")]

    def _close_text(self) -> List[BackendEvent]:
        if not self.text_open:
            return []
        self.text_open = False
        return [BackendEvent(type="text-end")]

    def _reasoning_delta(self, chunk: Any) -> str | None:
        choices = getattr(chunk, "choices", None) or ()
        if not choices:
            return None
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return None
        for name in self._REASONING_FIELDS:
            value = getattr(delta, name, None)
            if isinstance(value, str) and value:
                return value
        return None


class AIClient:
    """Async backend providing streaming helpers with retry semantics.

    Retries only happen before the first event has been yielded; once content
    has reached the caller a failure is surfaced instead of replayed.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` when the backend cannot be used."""

        if not (self._settings.api_key or "").strip():
            raise ConfigurationError(message="AI model integration is not configured. Missing API key")
        if not (self._settings.model or "").strip():
            raise ConfigurationError(message="No model specified. Please configure a model.")

    async def stream_events(
        self,
        messages: Sequence[Message],
        options: GenerationOptions | None = None,
        *,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[BackendEvent]:
        """Stream normalized events for a chat completion over ``messages``."""

        self.validate()
        payload = self._build_chat_payload(convert_messages(messages), options, stream=True)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        emitted = False

        def _should_retry(exc: BaseException) -> bool:
            return not emitted and isinstance(exc, _RETRYABLE_ERRORS)

        client = self._ensure_client()
        try:
            async for attempt in self._retrying(_should_retry):
                with attempt:
                    async with client.chat.completions.stream(**payload) as stream:
                        translator = _EventTranslator()
                        emitted = True
                        yield BackendEvent(type="start")
                        async for raw_event in stream:
                            if cancellation is not None and cancellation.is_cancelled:
                                LOGGER.debug("AI streaming cancelled by caller; closing stream")
                                return
                            for event in translator.translate(raw_event):
                                yield event
                        for event in translator.finish():
                            yield event
                    break
        except (APIError, httpx.HTTPError) as exc:
            raise _map_backend_error(exc) from exc

    async def complete_once(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> str:
        """Return a single non-streamed completion for ``messages``."""

        self.validate()
        payload = self._build_chat_payload(convert_messages(messages), options, stream=False)
        client = self._ensure_client()
        try:
            async for attempt in self._retrying(lambda exc: isinstance(exc, _RETRYABLE_ERRORS)):
                with attempt:
                    response = await client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError) as exc:
            raise _map_backend_error(exc) from exc
        choices = getattr(response, "choices", None) or ()
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            self.validate()
            response = await self._ensure_client().models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        model_name = model or self._settings.model
        if not self._token_registry.has(model_name):
            self._register_token_counter(model_name)
        return self._token_registry.get(model_name)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover
            LOGGER.debug("count_tokens failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def _register_token_counter(self, model_name: str | None) -> None:
        name = (model_name or "").strip()
        if not name:
            return
        try:
            counter: TokenCounterProtocol = TiktokenCounter(name)
        except Exception as exc:
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", name, exc)
            counter = ApproxByteCounter(model_name=name)
        self._token_registry.register(name, counter)

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = self._build_client(self._settings)
        return self._client

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    def _build_chat_payload(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        options: GenerationOptions | None,
        *,
        stream: bool,
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        opts = options or GenerationOptions()
        payload: Dict[str, Any] = {
            "model": opts.model or self._settings.model,
            "messages": list(messages),
        }
        temperature = opts.temperature if opts.temperature is not None else self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = opts.max_tokens if opts.max_tokens is not None else self._settings.max_tokens
        if max_tokens is not None:
            payload["max_completion_tokens"] = max_tokens
        reasoning_effort = opts.reasoning_effort or self._settings.reasoning_effort
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort
        merged_metadata = self._merge_metadata(opts.metadata)
        if merged_metadata and stream:
            payload["metadata"] = merged_metadata
        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        if self._client is None:
            return
        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def convert_messages(messages: Sequence[Message]) -> List[ChatCompletionMessageParam]:
    """Convert stored messages into the OpenAI chat message format."""

    return [_convert_message(message) for message in messages]


def _convert_message(message: Message) -> ChatCompletionMessageParam:
    parts = message.content
    if len(parts) == 1 and isinstance(parts[0], TextPart) and strip_placeholder(parts[0].text):
        return cast(ChatCompletionMessageParam, {"role": message.role, "content": strip_placeholder(parts[0].text)})

    if any(not isinstance(part, TextPart) for part in parts):
        converted = [item for item in (_convert_part(part) for part in parts) if item is not None]
        if len(converted) == 1 and converted[0]["type"] == "text":
            return cast(ChatCompletionMessageParam, {"role": message.role, "content": converted[0]["text"]})
        if not converted:
            return cast(ChatCompletionMessageParam, {"role": message.role, "content": ""})
        if message.role != "user" and all(item["type"] == "text" for item in converted):
            joined = "\n\n".join(item["text"] for item in converted)
            return cast(ChatCompletionMessageParam, {"role": message.role, "content": joined})
        return cast(ChatCompletionMessageParam, {"role": message.role, "content": converted})

    text = "\n\n".join(
        strip_placeholder(part.text) for part in parts if isinstance(part, TextPart) and strip_placeholder(part.text)
    )
    return cast(ChatCompletionMessageParam, {"role": message.role, "content": text})


def _convert_part(part: Any) -> Dict[str, Any] | None:
    if isinstance(part, TextPart):
        text = strip_placeholder(part.text)
        return {"type": "text", "text": text} if text else None
    if isinstance(part, (TemporaryFilePart, AttachmentPart)):
        return {"type": "text", "text": f"[File: {part.filename}]\n{part.content}\n[End of file]"}
    if isinstance(part, CitationPart):
        return {"type": "text", "text": f"[Citation: {part.filename}]\n{part.content}"}
    if isinstance(part, ImagePart) and part.image:
        return {"type": "image_url", "image_url": {"url": _image_url(part)}}
    return None


def _image_url(part: ImagePart) -> str:
    if part.image.startswith(("data:", "http://", "https://")):
        return part.image
    media_type = part.media_type or "image/png"
    return f"data:{media_type};base64,{part.image}"


def _map_backend_error(exc: BaseException) -> Exception:
    if isinstance(exc, (AuthenticationError, PermissionDeniedError, NotFoundError)):
        return ConfigurationError(
            message=f"AI backend rejected the configuration: {_error_text(exc)}",
            details={"status_code": getattr(exc, "status_code", None)},
        )
    if isinstance(exc, APIStatusError):
        return TransientBackendError(message=_error_text(exc), status_code=exc.status_code)
    return TransientBackendError(message=_error_text(exc))


def _error_text(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return str(message).strip() or type(exc).__name__


__all__ = [
    "AIClient",
    "ApproxByteCounter",
    "ClientSettings",
    "DEFAULT_ENCODING",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "convert_messages",
]
