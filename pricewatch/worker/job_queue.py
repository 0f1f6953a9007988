"""Cached AI job queue: pending -> processing -> completed | failed."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.ai.alert_writer import alert_writer
from pricewatch.ai.attribute_extractor import attribute_extractor
from pricewatch.ai.offer_normalizer import offer_normalizer
from pricewatch.ai.schemas import (
    AlertEmailPayload,
    AlertEmailResult,
    ExtractAttributesPayload,
    ExtractAttributesResult,
    NormalizeOfferPayload,
    NormalizeOfferResult,
    parse_job_payload,
)
from pricewatch.config import settings
from pricewatch.db.models import AICache, AIJob, AlertCopy, NormalizedOffer, ProductAttribute
from pricewatch.db.session import AsyncSessionLocal

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

JobHandler = Callable[[Any], Awaitable[BaseModel]]

RESULT_MODELS: dict[str, type[BaseModel]] = {
    "normalize_offer": NormalizeOfferResult,
    "extract_attributes": ExtractAttributesResult,
    "write_alert_email": AlertEmailResult,
}


def make_cache_key(kind: str, payload: dict[str, Any]) -> str:
    """Deterministic cache key: sha256 of kind plus canonical JSON payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(f"{kind}:{canonical}".encode("utf-8")).hexdigest()


@dataclass
class JobResult:
    job_id: int
    kind: str
    status: str
    cached: bool = False
    error: Optional[str] = None


@dataclass
class DrainResult:
    processed: int = 0
    total: int = 0
    results: list[JobResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "total": self.total,
            "results": [asdict(r) for r in self.results],
        }


def _default_handlers() -> dict[str, JobHandler]:
    return {
        "normalize_offer": offer_normalizer.run,
        "extract_attributes": attribute_extractor.run,
        "write_alert_email": alert_writer.run,
    }


class AIJobQueue:
    """
    Database-backed queue of AI jobs with a shared result cache.

    A job is claimed with a conditional update (only while still pending),
    so concurrent drains never process the same job twice. Failures are
    terminal: a failed job is never picked up again.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        handlers: Optional[dict[str, JobHandler]] = None,
        cache_ttl_hours: Optional[int] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._handlers = handlers
        self.cache_ttl = timedelta(
            hours=cache_ttl_hours if cache_ttl_hours is not None else settings.ai_cache_ttl_hours
        )
        self._now = now

    @property
    def handlers(self) -> dict[str, JobHandler]:
        if self._handlers is None:
            self._handlers = _default_handlers()
        return self._handlers

    # ------------------------------------------------------------------
    # Enqueue / inspect
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        cache_key: Optional[str] = None,
        use_cache: bool = True,
    ) -> AIJob:
        """
        Validate and enqueue a job.

        Args:
            kind: normalize_offer, extract_attributes or write_alert_email
            payload: Raw payload for the kind
            cache_key: Explicit cache key; derived from kind + payload if omitted
            use_cache: Set False to never read or write the cache for this job

        Returns:
            The pending AIJob

        Raises:
            pydantic.ValidationError: If the payload does not fit the kind
        """
        validated = parse_job_payload(kind, payload)
        stored = validated.model_dump(mode="json", exclude={"kind"})
        if use_cache and cache_key is None:
            cache_key = make_cache_key(kind, stored)

        now = self._now()
        job = AIJob(
            kind=kind,
            payload=stored,
            cache_key=cache_key if use_cache else None,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as db:
            db.add(job)
            await db.commit()
            await db.refresh(job)

        logger.info(f"Enqueued {kind} job {job.id}")
        return job

    async def get(self, job_id: int) -> Optional[AIJob]:
        async with self._session_factory() as db:
            return await db.get(AIJob, job_id)

    async def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> list[AIJob]:
        async with self._session_factory() as db:
            query = select(AIJob).order_by(AIJob.created_at.desc(), AIJob.id.desc()).limit(limit)
            if status:
                query = query.where(AIJob.status == status)
            result = await db.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def get_cached(self, cache_key: str) -> Optional[dict[str, Any]]:
        """Unexpired cached result for a key, if any."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AICache.result).where(
                    AICache.cache_key == cache_key,
                    AICache.expires_at > self._now(),
                )
            )
            return result.scalar_one_or_none()

    async def store_cached(self, cache_key: str, value: dict[str, Any]) -> dict[str, Any]:
        """
        Write a cache entry; the first writer wins.

        Returns:
            The authoritative result for the key: an existing unexpired entry
            if there is one, otherwise the value just written
        """
        now = self._now()
        expires_at = now + self.cache_ttl

        async with self._session_factory() as db:
            existing = await db.get(AICache, cache_key)
            if existing is not None:
                if existing.expires_at > now:
                    return existing.result
                # Replace an expired entry, unless someone else already did
                replaced = await db.execute(
                    update(AICache)
                    .where(AICache.cache_key == cache_key, AICache.expires_at <= now)
                    .values(result=value, created_at=now, expires_at=expires_at)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if replaced.rowcount == 1:
                    return value
            else:
                db.add(
                    AICache(cache_key=cache_key, result=value, created_at=now, expires_at=expires_at)
                )
                try:
                    await db.commit()
                    return value
                except IntegrityError:
                    await db.rollback()

        winner = await self.get_cached(cache_key)
        return winner if winner is not None else value

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _claim(self, job_id: int) -> bool:
        """Move a job from pending to processing. False if someone else got it."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(AIJob)
                .where(AIJob.id == job_id, AIJob.status == STATUS_PENDING)
                .values(status=STATUS_PROCESSING, updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _compute(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        handler = self.handlers.get(kind)
        if handler is None:
            raise ValueError(f"Unknown job kind: {kind}")
        result = await handler(parse_job_payload(kind, payload))
        return result.model_dump(mode="json")

    async def _store_side_effect(
        self,
        db: AsyncSession,
        job: AIJob,
        result: dict[str, Any],
    ):
        """Write the job's domain side effect from its (validated) result."""
        payload = parse_job_payload(job.kind, job.payload)
        parsed = RESULT_MODELS[job.kind].model_validate(result)

        if isinstance(payload, NormalizeOfferPayload):
            if parsed.is_match:
                db.add(
                    NormalizedOffer(
                        merchant_offer_id=payload.merchant_offer_id,
                        normalized_product_id=parsed.match,
                        confidence=parsed.confidence,
                        reason=parsed.reason,
                    )
                )

        elif isinstance(payload, ExtractAttributesPayload):
            values = {
                a.key.strip().lower(): a.value.strip()
                for a in parsed.attributes
                if a.key.strip()
            }
            if not values:
                return
            existing = await db.execute(
                select(ProductAttribute).where(
                    ProductAttribute.product_id == payload.product_id,
                    ProductAttribute.source == "ai",
                    ProductAttribute.attribute_key.in_(list(values)),
                )
            )
            for attribute in existing.scalars().all():
                attribute.attribute_value = values.pop(attribute.attribute_key)
            for key, value in values.items():
                db.add(
                    ProductAttribute(
                        product_id=payload.product_id,
                        attribute_key=key,
                        attribute_value=value,
                        source="ai",
                    )
                )

        elif isinstance(payload, AlertEmailPayload):
            db.add(
                AlertCopy(
                    job_id=job.id,
                    email=payload.email,
                    subject=parsed.subject,
                    body=parsed.body,
                )
            )

    async def _complete(self, job_id: int, result: dict[str, Any]):
        async with self._session_factory() as db:
            job = await db.get(AIJob, job_id)
            await self._store_side_effect(db, job, result)
            now = self._now()
            job.status = STATUS_COMPLETED
            job.result = result
            job.error = None
            job.processed_at = now
            job.updated_at = now
            await db.commit()

    async def _fail(self, job_id: int, error: str):
        async with self._session_factory() as db:
            now = self._now()
            await db.execute(
                update(AIJob)
                .where(AIJob.id == job_id, AIJob.status == STATUS_PROCESSING)
                .values(status=STATUS_FAILED, error=error, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def process_job(
        self,
        job_id: int,
        kind: str,
        payload: dict[str, Any],
        cache_key: Optional[str],
    ) -> JobResult:
        """
        Process one claimed job. Handler failures mark the job failed.

        Raises:
            SQLAlchemyError: If the failure itself cannot be recorded
        """
        cached = False
        try:
            result = await self.get_cached(cache_key) if cache_key else None
            if result is not None:
                cached = True
                logger.info(f"Cache hit for job {job_id}")
            else:
                result = await self._compute(kind, payload)
                if cache_key:
                    result = await self.store_cached(cache_key, result)

            await self._complete(job_id, result)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Job {job_id} ({kind}) failed: {error}")
            await self._fail(job_id, error)
            metrics.record_ai_job(kind, STATUS_FAILED)
            return JobResult(job_id=job_id, kind=kind, status=STATUS_FAILED, error=error)

        metrics.record_ai_job(kind, STATUS_COMPLETED, cached=cached)
        return JobResult(job_id=job_id, kind=kind, status=STATUS_COMPLETED, cached=cached)

    async def drain(self, limit: Optional[int] = None) -> DrainResult:
        """
        Process up to `limit` of the oldest pending jobs, one at a time.

        Args:
            limit: Maximum jobs to fetch (defaults to settings.ai_job_batch_size)

        Returns:
            DrainResult with per-job outcomes
        """
        limit = limit or settings.ai_job_batch_size
        async with self._session_factory() as db:
            result = await db.execute(
                select(AIJob.id, AIJob.kind, AIJob.payload, AIJob.cache_key)
                .where(AIJob.status == STATUS_PENDING)
                .order_by(AIJob.created_at, AIJob.id)
                .limit(limit)
            )
            jobs = result.all()

        drained = DrainResult(total=len(jobs))
        if not jobs:
            logger.debug("No pending AI jobs")
            return drained

        for job_id, kind, payload, cache_key in jobs:
            try:
                if not await self._claim(job_id):
                    logger.debug(f"Job {job_id} already claimed by another worker")
                    continue
                job_result = await self.process_job(job_id, kind, payload, cache_key)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error(f"Job {job_id} ({kind}) could not be processed: {error}", exc_info=True)
                metrics.record_ai_job(kind, STATUS_FAILED)
                job_result = JobResult(job_id=job_id, kind=kind, status=STATUS_FAILED, error=error)
            drained.results.append(job_result)
            drained.processed += 1

        logger.info(f"Drained {drained.processed}/{drained.total} AI jobs")
        return drained


# Global job queue instance
job_queue = AIJobQueue()
