"""Tests for the daily scrape budget allocator."""

import asyncio
from datetime import date

import pytest

from pricewatch.ingest.scrape_budget import BudgetAllocator, InsufficientBudget


def _allocator(session_factory, total=10, day=date(2024, 5, 1)):
    return BudgetAllocator(session_factory=session_factory, daily_total=total, today=lambda: day)


@pytest.mark.asyncio
async def test_get_creates_todays_budget(session_factory):
    allocator = _allocator(session_factory, total=133)

    budget = await allocator.get()

    assert budget.date == date(2024, 5, 1)
    assert (budget.total, budget.used, budget.remaining) == (133, 0, 133)
    assert budget.can_scrape


@pytest.mark.asyncio
async def test_allocate_and_reset_keep_budget_balanced(session_factory):
    allocator = _allocator(session_factory, total=10)

    result = await allocator.allocate(3)
    assert result.ok
    assert result.remaining == 7

    await allocator.allocate(7)
    with pytest.raises(InsufficientBudget):
        await allocator.allocate(1)

    budget = await allocator.get()
    assert budget.used + budget.remaining == budget.total
    assert budget.remaining == 0
    assert not budget.can_scrape

    budget = await allocator.reset()
    assert (budget.used, budget.remaining) == (0, 10)


@pytest.mark.asyncio
async def test_allocate_more_than_remaining_fails_without_side_effect(session_factory):
    allocator = _allocator(session_factory, total=5)
    await allocator.allocate(2)

    with pytest.raises(InsufficientBudget) as exc_info:
        await allocator.allocate(4)

    assert exc_info.value.remaining == 3
    budget = await allocator.get()
    assert (budget.used, budget.remaining) == (2, 3)


@pytest.mark.asyncio
async def test_exhausted_budget_denies_every_allocation(session_factory):
    allocator = _allocator(session_factory, total=100)
    await allocator.allocate(100)

    budget = await allocator.get()
    assert (budget.total, budget.used, budget.remaining) == (100, 100, 0)

    for _ in range(3):
        with pytest.raises(InsufficientBudget):
            await allocator.allocate(1)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1])
async def test_allocate_rejects_non_positive_amount(session_factory, amount):
    allocator = _allocator(session_factory)

    with pytest.raises(ValueError):
        await allocator.allocate(amount)


@pytest.mark.asyncio
async def test_concurrent_allocations_never_overcommit(session_factory):
    allocator = _allocator(session_factory, total=5)
    await allocator.get()

    async def try_allocate():
        try:
            await allocator.allocate(1)
            return True
        except InsufficientBudget:
            return False

    results = await asyncio.gather(*(try_allocate() for _ in range(12)))

    assert results.count(True) == 5
    budget = await allocator.get()
    assert (budget.used, budget.remaining) == (5, 0)


@pytest.mark.asyncio
async def test_new_day_gets_fresh_budget(session_factory):
    today = {"value": date(2024, 5, 1)}
    allocator = BudgetAllocator(
        session_factory=session_factory, daily_total=2, today=lambda: today["value"]
    )
    await allocator.allocate(2)

    today["value"] = date(2024, 5, 2)
    budget = await allocator.get()

    assert (budget.date, budget.used, budget.remaining) == (date(2024, 5, 2), 0, 2)
