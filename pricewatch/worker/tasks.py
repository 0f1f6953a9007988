"""Background tasks: pipeline runs, AI job drains, maintenance."""

import logging
from typing import Any, Optional
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.ai.llm_service import llm_service
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.worker.job_queue import AIJobQueue, DrainResult, job_queue
from pricewatch.worker.listing_validation import revalidate_listings
from pricewatch.worker.pipeline import PricePipeline
from pricewatch.worker.priority_tuner import tune_priorities
from pricewatch.worker.run_lock import RunLockManager, run_lock_manager

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    Pipeline runs are serialized across processes by the Redis run lock;
    a run requested while another holds the lock is skipped, not queued.
    """

    def __init__(
        self,
        pipeline: Optional[PricePipeline] = None,
        queue: Optional[AIJobQueue] = None,
        lock_manager: Optional[RunLockManager] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._pipeline = pipeline
        self.queue = queue or job_queue
        self.lock_manager = lock_manager or run_lock_manager
        self._session_factory = session_factory or AsyncSessionLocal

    @property
    def pipeline(self) -> PricePipeline:
        if self._pipeline is None:
            self._pipeline = PricePipeline(session_factory=self._session_factory)
        return self._pipeline

    async def close(self):
        """Clean up resources."""
        if self._pipeline is not None:
            await self._pipeline.extractor.close()
        await self.lock_manager.close()
        await llm_service.close()

    async def run_pipeline(self, force: bool = False, trigger: str = "scheduled") -> dict[str, Any]:
        """
        Run the price pipeline under the run lock.

        Returns:
            {success, summary, results} on completion, or
            {success: False, skipped: True, ...} when a run is already in progress

        Raises:
            CatalogUnavailableError: If the run cannot start
        """
        run_id = uuid4().hex
        token: Optional[str] = None
        locked = True
        try:
            token = await self.lock_manager.acquire_lock(run_id)
        except (RedisError, OSError) as e:
            locked = False
            logger.warning(f"Run lock unavailable ({e}), running pipeline without lock")

        if locked and token is None:
            lock_info = None
            try:
                lock_info = await self.lock_manager.get_lock_info()
            except (RedisError, OSError) as e:
                logger.debug(f"Could not read run lock info: {e}")
            logger.info(f"Pipeline already running; skipping {trigger} run (lock: {lock_info})")
            return {
                "success": False,
                "skipped": True,
                "reason": "already_running",
                "lock": lock_info,
            }

        try:
            summary = await self.pipeline.run(force=force, trigger=trigger)
        finally:
            if token is not None:
                try:
                    await self.lock_manager.safe_unlock(run_id, token)
                except (RedisError, OSError) as e:
                    logger.warning(f"Failed to release run lock for {run_id[:16]}...: {e}")

        return {
            "success": True,
            "summary": summary.to_dict(),
            "results": summary.results,
        }

    async def scheduled_pipeline(self):
        """Scheduler entrypoint for pipeline runs."""
        try:
            await self.run_pipeline(trigger="scheduled")
        except Exception as e:
            logger.error(f"Scheduled pipeline run failed: {e}", exc_info=True)

    async def drain_jobs(self, limit: Optional[int] = None) -> DrainResult:
        """Process pending AI jobs."""
        return await self.queue.drain(limit)

    async def scheduled_drain(self):
        """Scheduler entrypoint for AI job drains."""
        try:
            await self.drain_jobs()
        except Exception as e:
            logger.error(f"Scheduled AI job drain failed: {e}", exc_info=True)

    async def tune_priorities(self) -> list[dict]:
        """Adjust product priority/frequency from listing confidence."""
        async with self._session_factory() as db:
            return await tune_priorities(db)

    async def scheduled_tune_priorities(self):
        try:
            await self.tune_priorities()
        except Exception as e:
            logger.error(f"Priority tuning failed: {e}", exc_info=True)

    async def revalidate_listings(self) -> dict:
        """Recompute listing validity against category price ranges."""
        async with self._session_factory() as db:
            return await revalidate_listings(db)


# Global task runner instance
task_runner = TaskRunner()
