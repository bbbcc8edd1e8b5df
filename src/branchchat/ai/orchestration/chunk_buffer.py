"""Coalesce high-frequency streaming chunks into batched applications."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Generic, Optional, Protocol, TypeVar

LOGGER = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.016

T = TypeVar("T")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def text_chunk_combiner(existing: Optional[str], chunk: str) -> str:
    return (existing or "") + chunk


def replace_chunk_combiner(existing: Optional[T], chunk: T) -> T:
    return chunk


class ChunkBuffer(Generic[T]):
    """Per-key pending slots flushed together after a short interval.

    At most one flush is scheduled at any time. When no scheduler is supplied
    the running asyncio loop's ``call_later`` is used; outside a running loop
    chunks are applied immediately.
    """

    def __init__(
        self,
        applier: Callable[[str, T], None],
        combiner: Callable[[Optional[T], T], T],
        *,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._applier = applier
        self._combiner = combiner
        self._interval = max(0.0, float(interval))
        self._scheduler = scheduler
        self._pending: Dict[str, T] = {}
        self._handle: TimerHandle | None = None
        self._destroyed = False

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def pending(self, key: str) -> Optional[T]:
        return self._pending.get(key)

    def enqueue(self, key: str, chunk: T) -> None:
        if self._destroyed:
            LOGGER.debug("Dropping chunk for %s; buffer destroyed", key)
            return
        self._pending[key] = self._combiner(self._pending.get(key), chunk)
        self._schedule()

    def flush(self) -> None:
        """Apply every pending chunk and cancel any scheduled flush."""

        self._cancel_handle()
        if not self._pending:
            return
        pending, self._pending = self._pending, {}
        for key, value in pending.items():
            self._applier(key, value)

    def finalize(self, key: str) -> None:
        """Apply and drop the pending chunk for ``key`` only."""

        if key in self._pending:
            value = self._pending.pop(key)
            self._applier(key, value)
        if not self._pending:
            self._cancel_handle()

    def clear(self, key: str) -> None:
        self._pending.pop(key, None)
        if not self._pending:
            self._cancel_handle()

    def destroy(self) -> None:
        self._cancel_handle()
        self._pending.clear()
        self._destroyed = True

    def _schedule(self) -> None:
        if self._handle is not None:
            return
        scheduler = self._scheduler or self._loop_scheduler()
        if scheduler is None:
            self.flush()
            return
        self._handle = scheduler(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        try:
            self.flush()
        except Exception:
            LOGGER.exception("Scheduled chunk flush failed")

    def _cancel_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _loop_scheduler() -> Scheduler | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.call_later


__all__ = [
    "ChunkBuffer",
    "DEFAULT_FLUSH_INTERVAL",
    "Scheduler",
    "replace_chunk_combiner",
    "text_chunk_combiner",
]
