"""
Applies parsed CommerceML feeds and sync API payloads to the catalog.

Every entry is an independent read-modify-write keyed by external id (then
sku), so replaying a feed converges to the same rows without duplicates.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from catalog_sync.classifier import classify, is_on_sale
from catalog_sync.exceptions import MissingIdentityError
from catalog_sync.images import ImageUrlResolver
from catalog_sync.logging_config import log_execution_time
from catalog_sync.models import (
    CatalogEntry,
    CommerceMLFeed,
    InventoryUpdate,
    OfferEntry,
    Product,
    ProductCreate,
    ProductPatch,
    SyncProductPayload,
)
from catalog_sync.store import CatalogStore

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Counters for one applied feed."""
    created: int = 0
    updated: int = 0
    prices_updated: int = 0
    skipped: int = 0
    warnings: list = field(default_factory=list)

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.warnings.append(reason)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "pricesUpdated": self.prices_updated,
            "skipped": self.skipped,
            "warnings": list(self.warnings),
        }


def reference_price(product: Product) -> Optional[int]:
    """Highest price the product has carried, or None if it was never priced."""
    reference = max(product.original_price or 0, product.price)
    return reference or None


class CatalogImporter:
    """
    Upserts products and prices.

    Args:
        store: Catalog store to write to
        resolver: Resolves feed image references to public URLs
    """

    def __init__(self, store: CatalogStore, resolver: ImageUrlResolver):
        self.store = store
        self.resolver = resolver

    async def find_existing(self, external_id: Optional[str], sku: Optional[str]) -> Optional[Product]:
        """Match by external id first, then by sku."""
        product = await self.store.get_product_by_external_id(external_id)
        if product is None:
            product = await self.store.get_product_by_sku(sku)
        return product

    async def _sku_taken(self, sku: Optional[str], product_id: int) -> bool:
        owner = await self.store.get_product_by_sku(sku)
        return owner is not None and owner.id != product_id

    async def upsert_product(self, entry: CatalogEntry, result: ImportResult) -> Optional[Product]:
        """
        Create or patch one catalog entry. Omitted fields keep their stored
        values; sizes and colours are replaced only when the entry lists them.
        """
        if not entry.external_id and not entry.sku:
            result.skip(f"Product {entry.name!r} has neither Ид nor Артикул")
            return None

        existing = await self.find_existing(entry.external_id, entry.sku)
        image_url = self.resolver.resolve(entry.image) if entry.image else None

        if existing is None:
            if not entry.name:
                result.skip(f"Product {entry.external_id or entry.sku} has no name")
                return None
            classification = classify(entry.sku, entry.name)
            product = await self.store.create_product(
                ProductCreate(
                    external_id=entry.external_id,
                    sku=entry.sku,
                    name=entry.name,
                    description=entry.description or "",
                    price=0,
                    image_url=image_url or self.resolver.resolve(None),
                    category=classification.category,
                    subcategory=classification.subcategory,
                    sizes=entry.sizes,
                    colors=entry.colors,
                    is_new=True,
                    on_sale=classification.on_sale,
                )
            )
            result.created += 1
            return product

        name = entry.name or existing.name
        sku = entry.sku or existing.sku
        classification = classify(sku, name, existing.price, reference_price(existing))

        values = {
            "name": name,
            "category": classification.category,
            "subcategory": classification.subcategory,
            "on_sale": classification.on_sale,
        }
        if entry.external_id:
            values["external_id"] = entry.external_id
        if entry.description is not None:
            values["description"] = entry.description
        if entry.sku and entry.sku != existing.sku:
            if await self._sku_taken(entry.sku, existing.id):
                result.warnings.append(f"SKU {entry.sku} belongs to another product, kept {existing.sku}")
            else:
                values["sku"] = entry.sku
        if entry.sizes:
            values["sizes"] = entry.sizes
        if entry.colors:
            values["colors"] = entry.colors
        if image_url and image_url != existing.image_url:
            values["image_url"] = image_url
            values["thumbnail_url"] = None

        product = await self.store.update_product(existing.id, ProductPatch(**values))
        result.updated += 1
        return product

    async def apply_offer(self, offer: OfferEntry, result: ImportResult) -> Optional[Product]:
        """
        Set the price of an existing product and recompute its sale flag.
        Offers for unknown products are logged and skipped.
        """
        if not offer.external_id:
            result.skip("Offer without Ид")
            return None
        if offer.price is None:
            result.skip(f"Offer {offer.external_id} has invalid price {offer.raw_price!r}")
            return None

        product = await self.store.get_product_by_external_id(offer.external_id)
        if product is None:
            error = MissingIdentityError(
                message=f"No product with external id {offer.external_id}, offer skipped",
                external_id=offer.external_id,
            )
            logger.warning(error.message, extra={"external_id": offer.external_id})
            result.skip(error.message)
            return None

        reference = reference_price(product)
        updated = await self.store.update_product(
            product.id,
            ProductPatch(
                price=offer.price,
                original_price=reference,
                on_sale=is_on_sale(product.name, offer.price, reference),
            ),
        )
        result.prices_updated += 1
        return updated

    @log_execution_time(logger)
    async def apply_feed(self, feed: CommerceMLFeed, filename: Optional[str] = None) -> ImportResult:
        """
        Apply every product, then every offer, in document order, then
        clear the catalog cache.
        """
        result = ImportResult()
        if feed.is_empty:
            result.warnings.append("Feed has no products or offers")
            logger.warning(f"Feed {filename} has no products or offers", extra={"filename": filename})
        try:
            for entry in feed.products:
                await self.upsert_product(entry, result)
            for offer in feed.offers:
                await self.apply_offer(offer, result)
        finally:
            self.store.clear_cache()

        logger.info(
            f"Applied feed: {result.created} created, {result.updated} updated, "
            f"{result.prices_updated} prices, {result.skipped} skipped",
            extra={"filename": filename},
        )
        return result

    async def apply_sync_products(self, payloads: list[SyncProductPayload]) -> list[dict]:
        """Upsert products pushed through the JSON sync API."""
        results = []
        try:
            for payload in payloads:
                entry = CatalogEntry(
                    external_id=payload.external_id,
                    name=payload.name,
                    description=payload.description,
                    sku=payload.sku,
                    image=payload.image_url,
                    sizes=payload.sizes,
                    colors=payload.colors,
                )
                outcome = ImportResult()
                product = await self.upsert_product(entry, outcome)
                if product is None:
                    results.append({"externalId": payload.external_id, "status": "skipped"})
                    continue
                patch = {}
                if payload.price:
                    await self.apply_offer(
                        OfferEntry(external_id=product.external_id, price=payload.price),
                        outcome,
                    )
                if payload.is_new is not None:
                    patch["is_new"] = payload.is_new
                if patch:
                    await self.store.update_product(product.id, ProductPatch(**patch))
                results.append({
                    "id": product.id,
                    "status": "created" if outcome.created else "updated",
                })
        finally:
            self.store.clear_cache()
        return results

    async def apply_inventory(self, updates: list[InventoryUpdate]) -> list[dict]:
        """Update price and sizes of existing products; unknown ids are reported."""
        results = []
        try:
            for update in updates:
                product = await self.store.get_product_by_external_id(update.external_id)
                if product is None:
                    results.append({"externalId": update.external_id, "status": "not_found"})
                    continue
                outcome = ImportResult()
                if update.price is not None:
                    await self.apply_offer(
                        OfferEntry(external_id=update.external_id, price=update.price),
                        outcome,
                    )
                if update.sizes is not None:
                    await self.store.update_product(product.id, ProductPatch(sizes=update.sizes))
                results.append({"id": product.id, "status": "updated"})
        finally:
            self.store.clear_cache()
        return results
