"""Pipeline trigger and maintenance endpoints."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pricewatch.api.deps import get_task_runner
from pricewatch.worker.pipeline import CatalogUnavailableError
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


class RunPipelineRequest(BaseModel):
    """Request model for triggering a pipeline run."""
    force: bool = False


@router.post("/run")
async def run_pipeline(
    request: RunPipelineRequest | None = None,
    runner: TaskRunner = Depends(get_task_runner),
):
    """
    Run the price pipeline synchronously.

    Always 200 with a summary unless the run cannot start at all.
    """
    force = request.force if request else False
    try:
        return await runner.run_pipeline(force=force, trigger="api")
    except CatalogUnavailableError as e:
        logger.error(f"Pipeline run could not start: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})


@router.post("/priorities")
async def tune_priorities(runner: TaskRunner = Depends(get_task_runner)):
    """Re-tune product priorities from listing confidence."""
    updates = await runner.tune_priorities()
    return {"success": True, "updates": updates}


@router.post("/revalidate")
async def revalidate_listings(runner: TaskRunner = Depends(get_task_runner)):
    """Recompute listing validity against category price ranges."""
    counts = await runner.revalidate_listings()
    return {"success": True, **counts}
