"""Cooperative cancellation tokens keyed by message id."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

from ...errors import GenerationCancelled

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """One-way flag polled by stream consumers between events."""

    __slots__ = ("key", "_cancelled", "_callbacks")

    def __init__(self, key: str | None = None) -> None:
        self.key = key
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback failed for %s", self.key)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""

        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled()

    def __repr__(self) -> str:
        return f"CancellationToken(key={self.key!r}, cancelled={self._cancelled})"


class CancellationRegistry:
    """Tracks the live token for each in-flight generation.

    Only the most recently created token for an id is kept; creating a new one
    cancels its predecessor.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def create_token(self, key: str) -> CancellationToken:
        token = CancellationToken(key)
        self.register_token(key, token)
        return token

    def register_token(self, key: str, token: CancellationToken) -> None:
        previous = self._tokens.get(key)
        if previous is not None and previous is not token:
            LOGGER.debug("Superseding active generation for %s", key)
            previous.cancel()
        self._tokens[key] = token

    def get_token(self, key: str) -> CancellationToken | None:
        return self._tokens.get(key)

    def cancel(self, key: str) -> bool:
        token = self._tokens.get(key)
        if token is None:
            return False
        token.cancel()
        return True

    def complete(self, key: str, token: CancellationToken | None = None) -> None:
        current = self._tokens.get(key)
        if current is None:
            return
        if token is not None and current is not token:
            return
        del self._tokens[key]

    def cancel_all(self) -> int:
        tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        return len(tokens)

    @property
    def active_count(self) -> int:
        return len(self._tokens)

    def __contains__(self, key: object) -> bool:
        return key in self._tokens


__all__ = ["CancellationRegistry", "CancellationToken"]
