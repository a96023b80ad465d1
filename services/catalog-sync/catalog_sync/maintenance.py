"""
Operator batch jobs: image conversion, thumbnails, category backfill and
forced resync. Each job is bounded and safe to re-run until it reports
nothing remaining.
"""

import asyncio
import logging
from collections import Counter
from typing import Optional

from catalog_sync.classifier import classify
from catalog_sync.images import ImagePipeline, thumbnail_url_for
from catalog_sync.importer import reference_price
from catalog_sync.logging_config import log_execution_time
from catalog_sync.models import ProductPatch
from catalog_sync.reconciler import ReconciliationJob
from catalog_sync.store import CatalogStore

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        store: CatalogStore,
        pipeline: ImagePipeline,
        reconciler: ReconciliationJob,
        batch_limit: int = 50,
    ):
        self.store = store
        self.pipeline = pipeline
        self.reconciler = reconciler
        self.batch_limit = batch_limit

    async def _relink(self, urls: dict, field_name: str) -> int:
        """Point ``field_name`` at the new URL for products whose image was converted."""
        if not urls:
            return 0
        self.store.clear_cache()
        linked = 0
        for product in await self.store.get_products():
            target = urls.get(product.image_url)
            if target and getattr(product, field_name) != target:
                await self.store.update_product(product.id, ProductPatch(**{field_name: target}))
                linked += 1
        self.store.clear_cache()
        return linked

    async def _link_thumbnails(self) -> int:
        """
        Link every product whose image has a stored thumbnail, including
        thumbnails built by earlier batches.
        """
        available = await asyncio.to_thread(self.pipeline.thumbnail_urls)
        if not available:
            return 0
        self.store.clear_cache()
        linked = 0
        for product in await self.store.get_products():
            target = thumbnail_url_for(product.image_url)
            if target in available and product.thumbnail_url != target:
                await self.store.update_product(product.id, ProductPatch(thumbnail_url=target))
                linked += 1
        self.store.clear_cache()
        return linked

    @log_execution_time(logger)
    async def convert_images(self, limit: Optional[int] = None) -> dict:
        """Convert legacy JPEG/PNG objects to WebP and repoint products at them."""
        report = await asyncio.to_thread(self.pipeline.convert_pending, limit or self.batch_limit)
        linked = await self._relink(report.urls, "image_url")
        return {**report.to_dict(), "productsUpdated": linked}

    @log_execution_time(logger)
    async def generate_thumbnails(self, limit: Optional[int] = None) -> dict:
        """Create missing thumbnails and link them on the products using the image."""
        report = await asyncio.to_thread(self.pipeline.generate_thumbnails, limit or self.batch_limit)
        linked = await self._link_thumbnails()
        return {**report.to_dict(), "productsUpdated": linked}

    @log_execution_time(logger)
    async def backfill_categories(self) -> dict:
        """Re-run the classifier over the whole catalog."""
        self.store.clear_cache()
        products = await self.store.get_products()
        counts: Counter = Counter()
        updated = 0

        for product in products:
            classification = classify(
                product.sku,
                product.name,
                product.price,
                reference_price(product),
            )
            counts[f"{classification.category}/{classification.subcategory or ''}"] += 1
            if (
                product.category != classification.category
                or product.subcategory != classification.subcategory
                or product.on_sale != classification.on_sale
            ):
                await self.store.update_product(
                    product.id,
                    ProductPatch(
                        category=classification.category,
                        subcategory=classification.subcategory,
                        on_sale=classification.on_sale,
                    ),
                )
                updated += 1

        self.store.clear_cache()
        logger.info(f"Category backfill updated {updated} of {len(products)} products")
        return {"total": len(products), "updated": updated, "categories": dict(counts)}

    async def force_resync(self, source: Optional[str] = None) -> dict:
        """Re-apply staged feeds now, from the object store mirror when there is one."""
        if source is None:
            source = "object_store" if self.reconciler.staging.remote is not None else "local"
        report = await self.reconciler.run_once(source)
        if report is None:
            return {"status": "skipped", "reason": "Reconciliation already running"}
        return {"status": "completed", **report.to_dict()}
