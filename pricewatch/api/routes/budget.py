"""Scrape budget admission endpoint."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from pricewatch.api.deps import get_budget_allocator
from pricewatch.ingest.scrape_budget import Budget, BudgetAllocator, InsufficientBudget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/budget", tags=["budget"])


class BudgetResponse(BaseModel):
    """Budget snapshot."""
    date: str
    total: int
    used: int
    remaining: int


class AdmissionRequest(BaseModel):
    """Admission request. Legacy bodies send {increment: n} instead of an action."""
    action: Literal["get", "allocate", "reset"] = "get"
    amount: int = 1
    increment: Optional[int] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _legacy_increment(self):
        if self.increment is not None:
            self.action = "allocate"
            self.amount = self.increment
        return self


class AdmissionResponse(BaseModel):
    can_scrape: bool
    budget: BudgetResponse


def _snapshot(budget: Budget) -> BudgetResponse:
    return BudgetResponse(**budget.to_dict())


@router.get("", response_model=AdmissionResponse)
async def get_budget(allocator: BudgetAllocator = Depends(get_budget_allocator)):
    """Read-only snapshot of today's budget."""
    budget = await allocator.get()
    return AdmissionResponse(can_scrape=budget.can_scrape, budget=_snapshot(budget))


@router.post("", response_model=AdmissionResponse)
async def admission(
    request: AdmissionRequest,
    allocator: BudgetAllocator = Depends(get_budget_allocator),
):
    """
    Get, allocate from or reset today's budget.

    can_scrape is remaining > 0 for get/reset, and whether the allocation
    succeeded for allocate.
    """
    if request.action == "reset":
        budget = await allocator.reset()
        return AdmissionResponse(can_scrape=budget.can_scrape, budget=_snapshot(budget))

    if request.action == "allocate":
        try:
            await allocator.allocate(request.amount)
            can_scrape = True
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except InsufficientBudget:
            can_scrape = False
        budget = await allocator.get()
        return AdmissionResponse(can_scrape=can_scrape, budget=_snapshot(budget))

    budget = await allocator.get()
    return AdmissionResponse(can_scrape=budget.can_scrape, budget=_snapshot(budget))
