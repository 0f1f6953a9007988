"""FastAPI dependencies."""

from pricewatch.ingest.scrape_budget import BudgetAllocator, budget_allocator
from pricewatch.worker.job_queue import AIJobQueue, job_queue
from pricewatch.worker.tasks import TaskRunner, task_runner


def get_budget_allocator() -> BudgetAllocator:
    return budget_allocator


def get_job_queue() -> AIJobQueue:
    return job_queue


def get_task_runner() -> TaskRunner:
    return task_runner
