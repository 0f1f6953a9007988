"""Daily scrape budget (admission control for external scrape calls)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import ScrapeBudget
from pricewatch.db.session import AsyncSessionLocal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Budget:
    """Snapshot of one day's budget."""

    date: date
    total: int
    used: int
    remaining: int

    @property
    def can_scrape(self) -> bool:
        return self.remaining > 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def from_row(cls, row: ScrapeBudget) -> "Budget":
        return cls(
            date=row.date,
            total=row.budget_total,
            used=row.budget_used,
            remaining=row.budget_remaining,
        )


@dataclass(frozen=True)
class AllocationResult:
    """Successful allocation."""

    ok: bool
    remaining: int


class InsufficientBudget(RuntimeError):
    """Raised when an allocation would exceed today's remaining budget."""

    def __init__(self, requested: int, remaining: int):
        super().__init__(
            f"Insufficient scrape budget: requested {requested}, remaining {remaining}"
        )
        self.requested = requested
        self.remaining = remaining


def utc_today() -> date:
    return datetime.utcnow().date()


class BudgetAllocator:
    """
    Admission control for external scrape calls.

    One row per UTC day, created with a fixed total on first use. The
    in-process lock serializes concurrent allocations; the conditional
    UPDATE (remaining >= n) keeps other processes from overcommitting.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        daily_total: Optional[int] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._daily_total = daily_total if daily_total is not None else settings.scrape_daily_budget
        self._today = today or utc_today
        self._lock = asyncio.Lock()
        self._generation = 0

    @property
    def daily_total(self) -> int:
        return self._daily_total

    def today(self) -> date:
        return self._today()

    @property
    def generation(self) -> int:
        """Bumped on every reset; lets callers drop cached exhaustion."""
        return self._generation

    async def _read(self, db: AsyncSession, day: date) -> Optional[ScrapeBudget]:
        result = await db.execute(
            select(ScrapeBudget)
            .where(ScrapeBudget.date == day)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create(self, db: AsyncSession, day: date) -> ScrapeBudget:
        """Get today's row, creating it with the daily total on first call of the day."""
        row = await self._read(db, day)
        if row is not None:
            return row

        row = ScrapeBudget(
            date=day,
            budget_total=self._daily_total,
            budget_used=0,
            budget_remaining=self._daily_total,
        )
        db.add(row)
        try:
            await db.commit()
        except IntegrityError:
            # Another process created today's row first
            await db.rollback()
            row = await self._read(db, day)
            if row is None:
                raise
        else:
            logger.info(f"Created scrape budget for {day}: {self._daily_total} requests")
        return row

    async def get(self) -> Budget:
        """Return today's budget, creating it if needed."""
        async with self._session_factory() as db:
            row = await self._get_or_create(db, self.today())
            budget = Budget.from_row(row)
        metrics.update_budget(budget.used, budget.remaining)
        return budget

    async def allocate(self, n: int = 1) -> AllocationResult:
        """
        Allocate n scrape calls from today's budget.

        Args:
            n: Number of calls to reserve (must be positive)

        Returns:
            AllocationResult with the remaining budget

        Raises:
            InsufficientBudget: If n exceeds the remaining budget
        """
        if n <= 0:
            raise ValueError(f"Allocation amount must be positive, got {n}")

        day = self.today()
        async with self._lock:
            async with self._session_factory() as db:
                await self._get_or_create(db, day)

                result = await db.execute(
                    update(ScrapeBudget)
                    .where(
                        ScrapeBudget.date == day,
                        ScrapeBudget.budget_remaining >= n,
                    )
                    .values(
                        budget_used=ScrapeBudget.budget_used + n,
                        budget_remaining=ScrapeBudget.budget_remaining - n,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

                row = await self._read(db, day)
                budget = Budget.from_row(row)

        metrics.update_budget(budget.used, budget.remaining)

        if result.rowcount == 0:
            metrics.record_budget_allocation(success=False)
            logger.info(
                f"Scrape budget denied: requested {n}, remaining {budget.remaining}/{budget.total}"
            )
            raise InsufficientBudget(requested=n, remaining=budget.remaining)

        metrics.record_budget_allocation(success=True)
        return AllocationResult(ok=True, remaining=budget.remaining)

    async def reset(self) -> Budget:
        """Reset today's budget to the full daily total."""
        day = self.today()
        async with self._lock:
            async with self._session_factory() as db:
                await self._get_or_create(db, day)
                await db.execute(
                    update(ScrapeBudget)
                    .where(ScrapeBudget.date == day)
                    .values(
                        budget_total=self._daily_total,
                        budget_used=0,
                        budget_remaining=self._daily_total,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                budget = Budget.from_row(await self._read(db, day))
                self._generation += 1

        logger.info(f"Scrape budget reset for {day}: {budget.total} requests")
        metrics.update_budget(budget.used, budget.remaining)
        return budget


# Global budget allocator instance
budget_allocator = BudgetAllocator()
