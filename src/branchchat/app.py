"""Command-line entry point that streams one assistant reply to the terminal."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, TextIO

from .ai.client import AIClient
from .ai.orchestration.assistant import AssistantService
from .ai.orchestration.event_log import GenerationEventLogger
from .ai.orchestration.title_generation import TitleGenerationService
from .chat.message_model import Conversation, Message, placeholder_content, text_content
from .chat.store import InMemoryConversationStore, InMemoryMessageStore
from .errors import ConfigurationError
from .services.events import ConversationEvent, ConversationEvents, EventBus, MessageEvent, MessageEvents
from .services.settings import Settings, SettingsStore, parse_assignments
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Dict[str, Any] | None = None,
) -> Settings:
    """Load persisted settings, falling back to defaults on unreadable files."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


class TerminalRenderer:
    """Writes streamed chunks to stdout and status lines to stderr."""

    def __init__(self, out: TextIO, err: TextIO, *, show_reasoning: bool = False) -> None:
        self._out = out
        self._err = err
        self._show_reasoning = show_reasoning

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(MessageEvents.STREAMING_CHUNK, self.on_chunk)
        bus.subscribe(MessageEvents.REASONING_CHUNK, self.on_reasoning)
        bus.subscribe(MessageEvents.STREAMING_END, self.on_end)
        bus.subscribe(MessageEvents.STREAMING_CANCELLED, self.on_cancelled)
        bus.subscribe(MessageEvents.STREAMING_ERROR, self.on_error)
        bus.subscribe_conversation(ConversationEvents.TITLE_GENERATED, self.on_title)

    def on_chunk(self, event: MessageEvent) -> None:
        self._out.write(str(event.payload.get("chunk", "")))
        self._out.flush()

    def on_reasoning(self, event: MessageEvent) -> None:
        if self._show_reasoning:
            self._err.write(str(event.payload.get("chunk", "")))
            self._err.flush()

    def on_end(self, event: MessageEvent) -> None:
        self._out.write("\n")
        self._out.flush()

    def on_cancelled(self, event: MessageEvent) -> None:
        self._out.write("\n")
        self._err.write("[cancelled]\n")

    def on_error(self, event: MessageEvent) -> None:
        self._out.write("\n")
        self._err.write(f"[error] {event.payload.get('error')}\n")

    def on_title(self, event: ConversationEvent) -> None:
        self._err.write(f"[title] {event.payload.get('title')}\n")


async def run_chat(
    settings: Settings,
    prompt: str,
    *,
    regenerate: bool = False,
    show_reasoning: bool = False,
    out: TextIO | None = None,
    err: TextIO | None = None,
    client: AIClient | None = None,
) -> int:
    """Send ``prompt`` into a fresh conversation and stream the reply."""

    out = out or sys.stdout
    err = err or sys.stderr
    backend = client or AIClient(settings.client_settings())
    try:
        backend.validate()
    except ConfigurationError as exc:
        err.write(f"{exc}\n")
        return 2

    messages = InMemoryMessageStore()
    conversations = InMemoryConversationStore()
    bus = EventBus()
    renderer = TerminalRenderer(out, err, show_reasoning=show_reasoning)
    renderer.attach(bus)

    service = AssistantService(
        messages,
        backend,
        bus,
        conversations=conversations,
        title_service=TitleGenerationService(messages, conversations, backend, bus),
        event_logger=GenerationEventLogger(enabled=settings.debug_event_logging),
        flush_interval=settings.chunk_flush_interval,
        max_context_tokens=settings.max_context_tokens,
        fallback_message_count=settings.fallback_message_count,
    )

    conversation = await conversations.create(Conversation())
    user = await messages.create(
        Message(conversation_id=conversation.id, role="user", content=text_content(prompt))
    )
    bus.emit(MessageEvents.ADDED, user.id, {"message": user})
    assistant = await messages.create(
        Message(
            conversation_id=conversation.id,
            role="assistant",
            content=placeholder_content(),
            parent_message_id=user.id,
        )
    )
    bus.emit(MessageEvents.ADDED, assistant.id, {"message": assistant})

    loop = asyncio.get_running_loop()
    cancel_installed = _install_cancel_handler(loop, lambda: service.cancel(assistant.id))
    exit_code = 0
    try:
        generation = await service.generate_reply_for_new_message(assistant.id, conversation.id)
        await generation.wait()
        if generation.is_cancelled:
            exit_code = 130
        elif regenerate:
            err.write("[regenerating]\n")
            generation = await service.regenerate_reply(assistant.id)
            await generation.wait()
            if generation.is_cancelled:
                exit_code = 130
        final = await messages.get(assistant.id)
        if final is not None and final.text.startswith("Error: "):
            exit_code = 1
    finally:
        if cancel_installed:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)
        await service.aclose()
    return exit_code


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``branchchat`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("BRANCHCHAT_DEBUG")
    configure_logging(debug)

    settings_path = args.settings or os.environ.get("BRANCHCHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        overrides = parse_assignments(args.overrides)
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=store, overrides=overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    prompt = " ".join(args.prompt).strip() if args.prompt else ""
    if not prompt and not sys.stdin.isatty():
        prompt = sys.stdin.read().strip()
    if not prompt:
        print("A prompt is required (argument or stdin).", file=sys.stderr)
        raise SystemExit(2)

    try:
        code = asyncio.run(
            run_chat(settings, prompt, regenerate=args.regenerate, show_reasoning=args.show_reasoning)
        )
    except KeyboardInterrupt:  # pragma: no cover - platforms without signal handlers
        _LOGGER.info("Interrupted by user.")
        code = 130
    raise SystemExit(code)


def _install_cancel_handler(loop: asyncio.AbstractEventLoop, callback: Any) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError, ValueError):
        _LOGGER.debug("SIGINT handler unavailable; Ctrl-C will abort instead of cancelling")
        return False
    return True


def _dump_settings(settings: Settings, store: SettingsStore) -> None:
    payload = {"path": str(store.path), "settings": settings.redacted()}
    print(json.dumps(payload, indent=2, sort_keys=True))


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="branchchat",
        description="Stream an assistant reply for a prompt from an OpenAI-compatible endpoint.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text; read from stdin when omitted.")
    parser.add_argument("--settings", metavar="PATH", help="Override the default ~/.branchchat/settings.json path.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting for this run (repeatable).",
    )
    parser.add_argument("--regenerate", action="store_true", help="Regenerate the reply once it settles.")
    parser.add_argument("--show-reasoning", action="store_true", help="Echo reasoning deltas to stderr.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (API key redacted) and exit.",
    )
    return parser.parse_args(argv)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
