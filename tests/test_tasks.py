"""Tests for the task runner around pipeline runs."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pricewatch.worker.pipeline import CatalogUnavailableError, PipelineSummary
from pricewatch.worker.tasks import TaskRunner


def _lock_manager(token="token-1", info=None, error=None):
    manager = AsyncMock()
    if error is not None:
        manager.acquire_lock.side_effect = error
    else:
        manager.acquire_lock.return_value = token
    manager.get_lock_info.return_value = info
    manager.safe_unlock.return_value = True
    return manager


def _pipeline(summary=None, error=None):
    pipeline = AsyncMock()
    if error is not None:
        pipeline.run.side_effect = error
    else:
        pipeline.run.return_value = summary or PipelineSummary(products_processed=1)
    return pipeline


@pytest.mark.asyncio
async def test_run_pipeline_releases_lock():
    lock_manager = _lock_manager()
    pipeline = _pipeline()
    runner = TaskRunner(pipeline=pipeline, queue=AsyncMock(), lock_manager=lock_manager)

    result = await runner.run_pipeline(force=True, trigger="api")

    assert result["success"] is True
    assert result["summary"]["products_processed"] == 1
    assert result["results"] == []
    pipeline.run.assert_awaited_once_with(force=True, trigger="api")
    run_id = lock_manager.acquire_lock.await_args.args[0]
    lock_manager.safe_unlock.assert_awaited_once_with(run_id, "token-1")


@pytest.mark.asyncio
async def test_run_pipeline_skips_when_locked():
    lock_manager = _lock_manager(token=None, info={"run_id": "other", "ttl_seconds": 100})
    pipeline = _pipeline()
    runner = TaskRunner(pipeline=pipeline, queue=AsyncMock(), lock_manager=lock_manager)

    result = await runner.run_pipeline()

    assert result["success"] is False
    assert result["skipped"] is True
    assert result["lock"]["run_id"] == "other"
    pipeline.run.assert_not_called()


@pytest.mark.asyncio
async def test_run_pipeline_without_redis_runs_unlocked():
    lock_manager = _lock_manager(error=RedisConnectionError("refused"))
    pipeline = _pipeline()
    runner = TaskRunner(pipeline=pipeline, queue=AsyncMock(), lock_manager=lock_manager)

    result = await runner.run_pipeline()

    assert result["success"] is True
    lock_manager.safe_unlock.assert_not_called()


@pytest.mark.asyncio
async def test_catalog_error_propagates_and_releases_lock():
    lock_manager = _lock_manager()
    pipeline = _pipeline(error=CatalogUnavailableError("db down"))
    runner = TaskRunner(pipeline=pipeline, queue=AsyncMock(), lock_manager=lock_manager)

    with pytest.raises(CatalogUnavailableError):
        await runner.run_pipeline()
    lock_manager.safe_unlock.assert_awaited_once()


@pytest.mark.asyncio
async def test_scheduled_pipeline_logs_failures():
    runner = TaskRunner(
        pipeline=_pipeline(error=CatalogUnavailableError("db down")),
        queue=AsyncMock(),
        lock_manager=_lock_manager(),
    )

    await runner.scheduled_pipeline()
