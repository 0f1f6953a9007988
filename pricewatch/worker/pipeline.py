"""Price pipeline: catalog -> extraction -> matching -> per-variant persistence."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Sequence
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pricewatch import metrics
from pricewatch.ai.listing_matcher import ListingMatcher, listing_matcher
from pricewatch.ai.schemas import (
    MarketInsights,
    NewPriceSummary,
    PriceData,
    UsedPriceSummary,
    VariantMatch,
    VariantSpec,
)
from pricewatch.config import settings
from pricewatch.db.models import MerchantListing, MerchantUrl, Product, ProductVariant
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.ingest.base import CONDITION_NEW, CONDITION_USED, ScrapedListing
from pricewatch.ingest.extractor import ListingExtractor
from pricewatch.logging_config import get_logger
from pricewatch.worker.listing_validation import is_price_valid

logger = logging.getLogger(__name__)

STATUS_PROCESSED = "processed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


class CatalogUnavailableError(RuntimeError):
    """Raised when the product catalog cannot be read; the run cannot start."""
    pass


@dataclass
class ProductSnapshot:
    """Detached view of a product and its variants for one pass."""

    id: int
    name: str
    category: str
    priority_score: float
    scrape_frequency_hours: float
    last_scraped_at: Optional[datetime]
    variants: list[VariantSpec] = field(default_factory=list)

    @classmethod
    def from_row(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            name=product.name,
            category=product.category,
            priority_score=product.priority_score,
            scrape_frequency_hours=product.scrape_frequency_hours,
            last_scraped_at=product.last_scraped_at,
            variants=[
                VariantSpec(
                    id=v.id,
                    storage_gb=v.storage_gb,
                    color=v.color,
                    model=v.model,
                )
                for v in product.variants
            ],
        )


@dataclass
class RetailerSource:
    id: int
    merchant_name: str
    url: str


@dataclass
class VariantOutcome:
    """Result of persisting one variant group."""

    product: str
    variant_id: int
    status: str = "updated"
    price_new: Optional[int] = None
    price_used: Optional[float] = None
    listings_analyzed: int = 0
    error: Optional[str] = None


@dataclass
class ProductOutcome:
    product_id: int
    product: str
    status: str
    reason: Optional[str] = None
    listings_scraped: int = 0
    variants: list[VariantOutcome] = field(default_factory=list)

    @property
    def variants_updated(self) -> int:
        return sum(1 for v in self.variants if v.status == "updated")

    @property
    def variants_failed(self) -> int:
        return sum(1 for v in self.variants if v.status == STATUS_FAILED)


@dataclass
class PipelineSummary:
    """Summary of one pipeline run."""

    products_processed: int = 0
    variants_updated: int = 0
    listings_scraped: int = 0
    products_skipped: int = 0
    products_failed: int = 0
    variants_failed: int = 0
    duration_seconds: float = 0.0
    products: list[ProductOutcome] = field(default_factory=list)

    def add(self, outcome: ProductOutcome):
        self.products.append(outcome)
        self.listings_scraped += outcome.listings_scraped
        self.variants_updated += outcome.variants_updated
        self.variants_failed += outcome.variants_failed
        if outcome.status == STATUS_PROCESSED:
            self.products_processed += 1
        elif outcome.status == STATUS_SKIPPED:
            self.products_skipped += 1
        else:
            self.products_failed += 1

    @property
    def results(self) -> list[dict[str, Any]]:
        """Per-variant results across all products."""
        return [asdict(v) for p in self.products for v in p.variants]

    def to_dict(self) -> dict[str, Any]:
        return {
            "products_processed": self.products_processed,
            "variants_updated": self.variants_updated,
            "listings_scraped": self.listings_scraped,
            "products_skipped": self.products_skipped,
            "products_failed": self.products_failed,
            "variants_failed": self.variants_failed,
            "duration_seconds": round(self.duration_seconds, 2),
        }


def is_due(product: ProductSnapshot, now: datetime, force: bool = False) -> bool:
    """True when the product's scrape window has elapsed (or force is set)."""
    if force or product.last_scraped_at is None:
        return True
    frequency = product.scrape_frequency_hours or settings.default_scrape_frequency_hours
    return now - product.last_scraped_at >= timedelta(hours=frequency)


def build_price_data(
    group: VariantMatch,
    listings: Sequence[ScrapedListing],
    insights: MarketInsights,
    now: datetime,
) -> tuple[Optional[int], Optional[float], PriceData]:
    """
    Derive price_new, price_used and price_data for a matched variant group.

    price_new is the rounded mean of new-condition prices; price_used is the
    group's median, set only when used listings exist.
    """

    def condition(item) -> str:
        return listings[item.listing_index].condition

    new_items = [item for item in group.listings if condition(item) == CONDITION_NEW]
    used_items = [item for item in group.listings if condition(item) == CONDITION_USED]

    price_new = None
    new_summary = None
    if new_items:
        price_new = round(sum(item.price for item in new_items) / len(new_items))
        merchants = list(
            dict.fromkeys(listings[item.listing_index].merchant_name for item in new_items)
        )
        new_summary = NewPriceSummary(
            avg_price=price_new,
            total_listings=len(new_items),
            merchants=merchants,
            updated_at=now,
        )

    price_used = None
    used_summary = None
    if used_items:
        price_used = group.price_range.median
        used_summary = UsedPriceSummary(
            source=settings.marketplace_name,
            tiers=group.quality_tiers,
            total_listings=len(used_items),
            median_price=group.price_range.median,
            price_range=group.price_range,
            recommendation=insights.recommendation,
            updated_at=now,
        )

    return price_new, price_used, PriceData(
        new=new_summary,
        used=used_summary,
        market_insights=insights,
    )


class PricePipeline:
    """
    Orchestrates one pass over the catalog.

    Products are processed by descending priority with bounded parallelism.
    Within a product, marketplace and retailer extractions run concurrently,
    each under its own timeout; matching starts once all of them are done.
    Each matched variant is persisted in its own transaction.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        extractor: Optional[ListingExtractor] = None,
        matcher: Optional[ListingMatcher] = None,
        max_concurrent_products: Optional[int] = None,
        max_concurrent_extractions: Optional[int] = None,
        step_timeout: Optional[float] = None,
        run_timeout: Optional[float] = None,
        use_batch_scrape: Optional[bool] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.extractor = extractor or ListingExtractor()
        self.matcher = matcher or listing_matcher
        self.max_concurrent_products = max_concurrent_products or settings.pipeline_max_concurrent_products
        self.max_concurrent_extractions = (
            max_concurrent_extractions or settings.pipeline_max_concurrent_extractions
        )
        self.step_timeout = step_timeout or settings.pipeline_step_timeout_seconds
        self.run_timeout = run_timeout or settings.pipeline_run_timeout_seconds
        self.use_batch_scrape = (
            use_batch_scrape if use_batch_scrape is not None else settings.pipeline_use_batch_scrape
        )
        self._now = now

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def load_catalog(self) -> list[ProductSnapshot]:
        """
        Read all products with their variants, highest priority first.

        Raises:
            CatalogUnavailableError: If the catalog cannot be read
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Product)
                    .options(selectinload(Product.variants))
                    .order_by(Product.priority_score.desc(), Product.id)
                )
                return [ProductSnapshot.from_row(p) for p in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            raise CatalogUnavailableError(f"Cannot read product catalog: {e}") from e

    async def _load_retailer_sources(self, category: str) -> list[RetailerSource]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(MerchantUrl)
                .where(MerchantUrl.category == category, MerchantUrl.is_active.is_(True))
                .order_by(MerchantUrl.id)
            )
            return [
                RetailerSource(id=m.id, merchant_name=m.merchant_name, url=m.url)
                for m in result.scalars().all()
            ]

    async def _touch_merchant_urls(self, ids: list[int]):
        if not ids:
            return
        async with self._session_factory() as db:
            await db.execute(
                update(MerchantUrl)
                .where(MerchantUrl.id.in_(ids))
                .values(last_scraped_at=self._now())
            )
            await db.commit()

    async def _touch_product(self, product_id: int):
        async with self._session_factory() as db:
            await db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(last_scraped_at=self._now())
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _step(
        self,
        coro: Awaitable[list[ScrapedListing]],
        label: str,
        semaphore: asyncio.Semaphore,
    ) -> Optional[list[ScrapedListing]]:
        """Run one extraction step. None when it timed out or failed."""
        async with semaphore:
            try:
                return await asyncio.wait_for(coro, timeout=self.step_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Extraction step {label} timed out after {self.step_timeout}s")
                return None
            except Exception as e:
                logger.error(f"Extraction step {label} failed: {e}", exc_info=True)
                return None

    async def extract_listings(self, product: ProductSnapshot) -> list[ScrapedListing]:
        """
        Collect marketplace and retailer listings for a product.

        Marketplace listings come first so their indices are stable. Only
        merchant URLs that were admitted by the budget in a step that
        finished get their last_scraped_at stamped.
        """
        try:
            sources = await self._load_retailer_sources(product.category)
        except SQLAlchemyError as e:
            logger.error(f"Cannot load merchant URLs for {product.category}: {e}")
            sources = []

        admitted: set[str] = set()
        semaphore = asyncio.Semaphore(self.max_concurrent_extractions)
        steps = [
            (
                self._step(self.extractor.extract_marketplace(product.name), "marketplace", semaphore),
                [],
            )
        ]
        if sources and self.use_batch_scrape:
            steps.append(
                (
                    self._step(
                        self.extractor.extract_batch(
                            [(s.url, s.merchant_name) for s in sources],
                            condition=CONDITION_NEW,
                            max_concurrency=self.max_concurrent_extractions,
                            on_admit=admitted.add,
                        ),
                        "retailer_batch",
                        semaphore,
                    ),
                    sources,
                )
            )
        else:
            steps.extend(
                (
                    self._step(
                        self.extractor.extract(
                            s.url, s.merchant_name, CONDITION_NEW, on_admit=admitted.add
                        ),
                        f"retailer:{s.merchant_name}",
                        semaphore,
                    ),
                    [s],
                )
                for s in sources
            )

        batches = await asyncio.gather(*(coro for coro, _ in steps))

        scraped_ids = [
            s.id
            for (_, step_sources), batch in zip(steps, batches)
            if batch is not None
            for s in step_sources
            if s.url in admitted
        ]
        try:
            await self._touch_merchant_urls(scraped_ids)
        except SQLAlchemyError as e:
            logger.error(f"Failed to touch merchant URLs for {product.category}: {e}")

        return [listing for batch in batches if batch for listing in batch]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist_variant(
        self,
        product: ProductSnapshot,
        group: VariantMatch,
        listings: Sequence[ScrapedListing],
        insights: MarketInsights,
    ) -> VariantOutcome:
        """
        Replace a variant's listing set and derived prices in one transaction.

        All rows written share a fresh listing_group_id; any prior rows for the
        variant are deleted first.
        """
        now = self._now()
        group_id = str(uuid4())
        price_new, price_used, price_data = build_price_data(group, listings, insights, now)
        confidence = sum(item.confidence for item in group.listings) / len(group.listings)

        rows = [
            MerchantListing(
                variant_id=group.variant_id,
                merchant_name=listings[item.listing_index].merchant_name,
                price=item.price,
                condition=listings[item.listing_index].condition,
                url=item.url or None,
                title=item.title or None,
                confidence=item.confidence,
                price_tier=item.condition_quality,
                listing_group_id=group_id,
                market_insight=insights.recommendation,
                is_valid=is_price_valid(product.category, item.price),
                scraped_at=now,
            )
            for item in group.listings
        ]

        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    delete(MerchantListing).where(MerchantListing.variant_id == group.variant_id)
                )
                db.add_all(rows)
                await db.execute(
                    update(ProductVariant)
                    .where(ProductVariant.id == group.variant_id)
                    .values(
                        price_new=price_new,
                        price_used=price_used,
                        confidence=confidence,
                        price_data=price_data.model_dump(mode="json"),
                        updated_at=now,
                    )
                )

        metrics.record_variant_updated()
        return VariantOutcome(
            product=product.name,
            variant_id=group.variant_id,
            price_new=price_new,
            price_used=price_used,
            listings_analyzed=len(group.listings),
        )

    # ------------------------------------------------------------------
    # Product pass
    # ------------------------------------------------------------------

    async def process_product(self, product: ProductSnapshot) -> ProductOutcome:
        """Run extraction, matching and persistence for one product."""
        log = get_logger(__name__, product_id=product.id, product=product.name)
        outcome = ProductOutcome(product_id=product.id, product=product.name, status=STATUS_PROCESSED)

        if not product.variants:
            log.info(f"No variants for {product.name}, skipping")
            outcome.status, outcome.reason = STATUS_SKIPPED, "no_variants"
            return outcome

        if self.extractor.budget_exhausted:
            outcome.status, outcome.reason = STATUS_SKIPPED, "budget_exhausted"
            return outcome

        log.info(f"Processing {product.name} (priority {product.priority_score})")
        listings = await self.extract_listings(product)
        outcome.listings_scraped = len(listings)

        if not listings and self.extractor.budget_exhausted:
            log.info(f"Scraping budget exhausted before any listings for {product.name}")
            outcome.status, outcome.reason = STATUS_SKIPPED, "budget_exhausted"
            return outcome

        if listings:
            try:
                match = await asyncio.wait_for(
                    self.matcher.match(product.name, product.category, product.variants, listings),
                    timeout=self.step_timeout,
                )
            except asyncio.TimeoutError:
                log.warning(f"Matching timed out for {product.name}")
                match = None

            if match is None:
                outcome.reason = "match_failed"
            else:
                for group in match.matched_listings:
                    try:
                        variant = await self.persist_variant(
                            product, group, listings, match.market_insights
                        )
                    except SQLAlchemyError as e:
                        log.error(
                            f"Failed to persist variant {group.variant_id}: {e}",
                            extra={"variant_id": group.variant_id},
                        )
                        variant = VariantOutcome(
                            product=product.name,
                            variant_id=group.variant_id,
                            status=STATUS_FAILED,
                            listings_analyzed=len(group.listings),
                            error=str(e),
                        )
                    outcome.variants.append(variant)
                log.info(
                    f"Processed {len(listings)} listings -> {outcome.variants_updated} variants "
                    f"for {product.name}"
                )
        else:
            outcome.reason = "no_listings"

        await self._touch_product(product.id)
        return outcome

    async def _guarded(self, product: ProductSnapshot, semaphore: asyncio.Semaphore) -> ProductOutcome:
        async with semaphore:
            try:
                outcome = await self.process_product(product)
            except Exception as e:
                logger.error(f"Product {product.name} failed: {e}", exc_info=True)
                outcome = ProductOutcome(
                    product_id=product.id,
                    product=product.name,
                    status=STATUS_FAILED,
                    reason=str(e) or e.__class__.__name__,
                )
        metrics.record_product(outcome.status)
        return outcome

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, force: bool = False, trigger: str = "manual") -> PipelineSummary:
        """
        Run one pass over the catalog.

        Args:
            force: Ignore each product's scrape frequency window
            trigger: Label for metrics (scheduled, manual, api, cli)

        Returns:
            PipelineSummary with per-product and per-variant outcomes

        Raises:
            CatalogUnavailableError: If the catalog cannot be read
        """
        started = time.monotonic()
        summary = PipelineSummary()
        self.extractor.clear_budget_exhausted()

        try:
            catalog = await self.load_catalog()
        except CatalogUnavailableError:
            metrics.record_pipeline_run(trigger, False, time.monotonic() - started)
            raise

        now = self._now()
        logger.info(f"Pipeline run started ({trigger}{', forced' if force else ''}): {len(catalog)} products")

        due: list[ProductSnapshot] = []
        outcomes: dict[int, ProductOutcome] = {}
        for product in catalog:
            if is_due(product, now, force):
                due.append(product)
            else:
                outcomes[product.id] = ProductOutcome(
                    product_id=product.id,
                    product=product.name,
                    status=STATUS_SKIPPED,
                    reason="not_due",
                )

        semaphore = asyncio.Semaphore(self.max_concurrent_products)
        tasks = {
            asyncio.create_task(self._guarded(product, semaphore)): product for product in due
        }

        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.run_timeout)
            for task in done:
                outcomes[tasks[task].id] = task.result()
            for task in pending:
                task.cancel()
                product = tasks[task]
                logger.warning(f"Run timeout reached before {product.name} finished")
                outcomes[product.id] = ProductOutcome(
                    product_id=product.id,
                    product=product.name,
                    status=STATUS_FAILED,
                    reason="run_timeout",
                )
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for product in catalog:
            summary.add(outcomes[product.id])

        summary.duration_seconds = time.monotonic() - started
        metrics.record_pipeline_run(trigger, True, summary.duration_seconds)
        logger.info(
            f"Pipeline run completed in {summary.duration_seconds:.1f}s: "
            f"{summary.products_processed} processed, {summary.products_skipped} skipped, "
            f"{summary.products_failed} failed, {summary.variants_updated} variants updated, "
            f"{summary.listings_scraped} listings scraped"
        )
        return summary
