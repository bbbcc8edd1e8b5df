"""Assemble the branch-scoped context window for a target message."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Sequence, overload

from ...chat.message_model import Message
from ...chat.store import MessageStore
from ..utils.tokens import MessageTokenEstimator

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 8000
DEFAULT_FALLBACK_MESSAGE_COUNT = 8


@dataclass(slots=True, frozen=True)
class BranchContextOptions:
    include_target: bool = False
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    fallback_message_count: int = DEFAULT_FALLBACK_MESSAGE_COUNT


class ContextWindow(Sequence[Message]):
    """Chronologically ordered messages selected for a generation request."""

    __slots__ = ("_messages", "estimated_tokens", "used_fallback")

    def __init__(
        self,
        messages: Sequence[Message] = (),
        *,
        estimated_tokens: int = 0,
        used_fallback: bool = False,
    ) -> None:
        self._messages: List[Message] = list(messages)
        self.estimated_tokens = estimated_tokens
        self.used_fallback = used_fallback

    @overload
    def __getitem__(self, index: int) -> Message: ...

    @overload
    def __getitem__(self, index: slice) -> List[Message]: ...

    def __getitem__(self, index):
        return self._messages[index]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    @property
    def ids(self) -> List[str]:
        return [message.id for message in self._messages]

    def __repr__(self) -> str:
        return (
            f"ContextWindow(messages={len(self._messages)}, "
            f"estimated_tokens={self.estimated_tokens}, used_fallback={self.used_fallback})"
        )


class BranchContextBuilder:
    """Collects a target's ancestor chain and trims it to a token budget.

    Selection scans newest to oldest. The newest ancestor is always kept, older
    ones are added while the running total stays within the budget, and the
    scan stops at the first message that would exceed it. A zero estimate for
    the newest ancestor means estimation is unavailable; the builder then
    returns the last ``fallback_message_count`` ancestors instead.
    """

    def __init__(self, store: MessageStore, estimator: MessageTokenEstimator | None = None) -> None:
        self._store = store
        self._estimator = estimator or MessageTokenEstimator()

    async def build(self, target_id: str, options: BranchContextOptions | None = None) -> ContextWindow:
        opts = options or BranchContextOptions()
        target = await self._store.get(target_id)
        if target is None:
            LOGGER.debug("Context requested for unknown message %s", target_id)
            return ContextWindow()

        ancestors = await self.collect_ancestors(target)
        window = self._select(ancestors, opts)
        if opts.include_target:
            window = ContextWindow(
                [*window, target],
                estimated_tokens=window.estimated_tokens,
                used_fallback=window.used_fallback,
            )
        LOGGER.debug(
            "Built context for %s: %d of %d ancestor(s), ~%d tokens",
            target_id,
            len(window) - (1 if opts.include_target else 0),
            len(ancestors),
            window.estimated_tokens,
        )
        return window

    async def collect_ancestors(self, message: Message) -> List[Message]:
        """Return ``message``'s ancestors oldest first, stopping at a gap."""

        chain: List[Message] = []
        seen = {message.id}
        parent_id = message.parent_message_id
        while parent_id:
            if parent_id in seen:
                LOGGER.warning("Cycle detected in message chain at %s", parent_id)
                break
            parent = await self._store.get(parent_id)
            if parent is None:
                LOGGER.debug("Ancestor %s missing; truncating chain", parent_id)
                break
            seen.add(parent_id)
            chain.append(parent)
            parent_id = parent.parent_message_id
        chain.reverse()
        return chain

    def _select(self, ancestors: Sequence[Message], options: BranchContextOptions) -> ContextWindow:
        if not ancestors:
            return ContextWindow()

        selected: List[Message] = []
        total = 0
        for message in reversed(ancestors):
            cost = self._estimator.estimate(message)
            if not selected:
                if cost == 0:
                    return self._fallback(ancestors, options)
                selected.append(message)
                total = cost
                continue
            if total + cost > options.max_context_tokens:
                break
            selected.append(message)
            total += cost

        selected.reverse()
        return ContextWindow(selected, estimated_tokens=total)

    def _fallback(self, ancestors: Sequence[Message], options: BranchContextOptions) -> ContextWindow:
        count = max(0, options.fallback_message_count)
        messages = list(ancestors[-count:]) if count else []
        LOGGER.warning(
            "Token estimation unavailable; using last %d message(s) as context", len(messages)
        )
        return ContextWindow(messages, used_fallback=True)


__all__ = [
    "BranchContextBuilder",
    "BranchContextOptions",
    "ContextWindow",
    "DEFAULT_FALLBACK_MESSAGE_COUNT",
    "DEFAULT_MAX_CONTEXT_TOKENS",
]
