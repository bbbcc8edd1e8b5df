"""JSONL debug logs, one file per assistant generation."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "generations"
    return Path.home() / ".branchchat" / "logs" / "generations"


@dataclass(slots=True)
class _NullGenerationLogRun:
    """Stand-in used when event logging is disabled."""

    path: Path | None = None

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_cancelled(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return

    def close(self) -> None:
        return


class GenerationLogRun:
    """Writes ``start`` then exactly one terminal entry for a generation."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file: IO[str] | None = path.open("w", encoding="utf-8")
        self._finalized = False
        self._started = time.monotonic()
        self._write_entry("start", context)

    def log_completion(self, *, text: str, reasoning: str | None = None) -> None:
        self._finalize(
            "completion",
            {"status": "success", "text": text, "reasoning": reasoning, "text_length": len(text)},
        )

    def log_cancelled(self, *, text: str, reasoning: str | None = None) -> None:
        self._finalize("cancelled", {"status": "cancelled", "text": text, "reasoning": reasoning})

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._finalize("failure", payload)

    def close(self) -> None:
        if not self._finalized:
            self.log_failure(message="generation ended without a terminal entry")
            return
        handle, self._file = self._file, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError:  # pragma: no cover
            LOGGER.debug("Failed to close generation log %s", self.path, exc_info=True)

    def _finalize(self, event: str, payload: Mapping[str, Any]) -> None:
        if self._finalized:
            return
        entry = dict(payload)
        entry["duration_ms"] = round((time.monotonic() - self._started) * 1000, 1)
        self._write_entry(event, entry)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        if self._file is None:
            return
        entry: dict[str, Any] = {"event": event, "timestamp": time.time()}
        for key, value in (payload or {}).items():
            entry[key] = _safe_json(value)
        try:
            json.dump(entry, self._file, ensure_ascii=False)
            self._file.write("\n")
            self._file.flush()
        except (OSError, ValueError):
            LOGGER.debug("Failed to write generation log entry to %s", self.path, exc_info=True)


class GenerationEventLogger:
    """Factory for per-generation logs; returns a no-op run when disabled."""

    def __init__(self, *, enabled: bool = False, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else None

    @property
    def base_dir(self) -> Path:
        return self._base_dir or _default_event_dir()

    def start_run(
        self,
        *,
        message_id: str,
        conversation_id: str,
        context_ids: Sequence[str] = (),
        estimated_tokens: int | None = None,
        model: str | None = None,
    ) -> GenerationLogRun | _NullGenerationLogRun:
        if not self.enabled:
            return _NullGenerationLogRun()
        try:
            directory = self.base_dir
            directory.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(directory, message_id)
            run = GenerationLogRun(
                path,
                context={
                    "message_id": message_id,
                    "conversation_id": conversation_id,
                    "context_ids": list(context_ids),
                    "context_size": len(context_ids),
                    "estimated_tokens": estimated_tokens,
                    "model": model,
                },
            )
        except Exception:
            LOGGER.debug("Failed to start generation event log", exc_info=True)
            return _NullGenerationLogRun()
        LOGGER.debug("Generation event log started: %s", path)
        return run

    @staticmethod
    def _allocate_path(directory: Path, message_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        safe_id = "".join(ch for ch in message_id if ch.isalnum())[:12] or "message"
        return directory / f"generation-{timestamp}-{safe_id}.jsonl"


def _safe_json(value: Any, *, depth: int = 0) -> Any:
    if depth > 6:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _safe_json(item, depth=depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_json(item, depth=depth + 1) for item in value]
    return repr(value)


__all__ = ["GenerationEventLogger", "GenerationLogRun"]
