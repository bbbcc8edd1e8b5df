"""Tests for branch-scoped context assembly."""

from __future__ import annotations

import pytest

from branchchat.ai.orchestration.context_builder import BranchContextBuilder, BranchContextOptions
from branchchat.chat.store import InMemoryMessageStore

from tests.helpers import FixedCostEstimator, build_chain, make_message


@pytest.mark.asyncio
async def test_returns_full_chain_in_chronological_order(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 5)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(10))

    window = await builder.build(target.id)

    assert window.ids == [message.id for message in chain]
    assert window.estimated_tokens == 50
    assert not window.used_fallback


@pytest.mark.asyncio
async def test_include_target_appends_target(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 2)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(10))

    window = await builder.build(target.id, BranchContextOptions(include_target=True))

    assert window.ids == [chain[0].id, chain[1].id, target.id]
    assert window.estimated_tokens == 20


@pytest.mark.asyncio
async def test_message_without_parent_yields_empty_context(message_store: InMemoryMessageStore) -> None:
    root = make_message(message_id="root")
    await message_store.create(root)
    builder = BranchContextBuilder(message_store, FixedCostEstimator())

    assert list(await builder.build("root")) == []
    assert list(await builder.build("missing")) == []


@pytest.mark.asyncio
async def test_only_ancestors_of_branch_are_used(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 3)
    sibling = make_message(role="assistant", text="other branch", message_id="sibling", parent_id="m0", offset=10)
    await message_store.create(sibling)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(10))

    window = await builder.build(target.id)

    assert "sibling" not in window.ids
    assert window.ids == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_ten_exchanges_fit_in_default_budget(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 10)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(150))

    window = await builder.build(target.id, BranchContextOptions(max_context_tokens=8000))

    assert len(window) == 10
    assert window.estimated_tokens == 1500


@pytest.mark.asyncio
async def test_small_budget_keeps_only_newest_ancestor(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 10)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(150))

    window = await builder.build(target.id, BranchContextOptions(max_context_tokens=100))

    assert window.ids == [chain[-1].id]


@pytest.mark.asyncio
async def test_scan_stops_at_first_message_over_budget(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 4)
    # newest first: m3=40, m2=50, m1=30 (would exceed 100), m0=1 (never reached)
    estimator = FixedCostEstimator(costs={"m3": 40, "m2": 50, "m1": 30, "m0": 1})
    builder = BranchContextBuilder(message_store, estimator)

    window = await builder.build(target.id, BranchContextOptions(max_context_tokens=100))

    assert window.ids == ["m2", "m3"]
    assert window.estimated_tokens == 90
    assert "m0" not in estimator.calls


@pytest.mark.asyncio
async def test_running_total_equal_to_budget_is_included(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 2)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(50))

    window = await builder.build(target.id, BranchContextOptions(max_context_tokens=100))

    assert len(window) == 2


@pytest.mark.asyncio
async def test_estimation_failure_falls_back_to_message_count(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 12)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(0))

    window = await builder.build(
        target.id, BranchContextOptions(max_context_tokens=8000, fallback_message_count=8)
    )

    assert window.used_fallback
    assert window.ids == [message.id for message in chain[-8:]]


@pytest.mark.asyncio
async def test_zero_cost_after_first_selection_is_not_fallback(message_store: InMemoryMessageStore) -> None:
    chain, target = await build_chain(message_store, 3)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(costs={"m2": 20, "m1": 0, "m0": 0}))

    window = await builder.build(target.id)

    assert not window.used_fallback
    assert window.ids == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_missing_parent_truncates_chain(message_store: InMemoryMessageStore) -> None:
    orphan = make_message(message_id="orphan", parent_id="gone")
    target = make_message(role="assistant", message_id="target", parent_id="orphan", offset=1)
    await message_store.create(orphan)
    await message_store.create(target)
    builder = BranchContextBuilder(message_store, FixedCostEstimator(10))

    window = await builder.build("target")

    assert window.ids == ["orphan"]
