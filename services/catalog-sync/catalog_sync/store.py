"""
Catalog store: products, carts and orders over a CatalogBackend, with a
read-through TTL cache for storefront reads.

Writes do not invalidate the cache. Batch writers (the importer, the sync API,
maintenance jobs) call ``clear_cache()`` once their batch is applied, so
storefront reads are stale for at most one TTL otherwise.
"""

import json
import logging
import math
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from catalog_sync.backend import CART_ITEMS, ORDERS, PRODUCTS, CatalogBackend
from catalog_sync.exceptions import ValidationError
from catalog_sync.models import (
    DEFAULT_COLOR,
    DEFAULT_SIZE,
    ORDER_STATUSES,
    CartItem,
    CartItemCreate,
    CartLine,
    Order,
    OrderCreate,
    OrderItem,
    Product,
    ProductCreate,
    ProductPatch,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)
PRODUCTS_CACHE_KEY = "products:all"
JSON_LIST_FIELDS = ("sizes", "colors")
IDENTITY_FIELDS = ("external_id", "sku")


class TTLCache:
    """
    Small key/value cache with a fixed time-to-live. Entries expire lazily
    on read.

    Args:
        ttl_seconds: Lifetime of an entry
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict = {}

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key, value) -> None:
        self._entries[key] = (value, self.clock() + self.ttl_seconds)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class IdGenerator:
    """Microsecond timestamp ids, bumped to stay strictly increasing."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._last = 0

    def __call__(self) -> int:
        candidate = int(self.clock() * 1_000_000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate


# Row mapping. Rows may come from an older schema or another writer, so
# decoding degrades instead of failing.

def _as_int(value, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return default


def _as_optional_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return _as_int(value)


def _as_identity(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _as_json_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return EPOCH


def product_to_row(product: Product) -> dict:
    row = product.model_dump()
    for name in JSON_LIST_FIELDS:
        row[name] = json.dumps(row[name], ensure_ascii=False)
    row["created_at"] = product.created_at.isoformat()
    return row


def row_to_product(row: dict) -> Product:
    return Product(
        id=_as_int(row.get("id")),
        external_id=_as_identity(row.get("external_id")),
        sku=_as_identity(row.get("sku")),
        name=str(row.get("name") or ""),
        description=str(row.get("description") or ""),
        price=max(0, _as_int(row.get("price"))),
        original_price=_as_optional_int(row.get("original_price")),
        image_url=str(row.get("image_url") or ""),
        thumbnail_url=row.get("thumbnail_url") or None,
        category=str(row.get("category") or ""),
        subcategory=row.get("subcategory") or None,
        sizes=_as_json_list(row.get("sizes")),
        colors=_as_json_list(row.get("colors")),
        is_new=bool(row.get("is_new")),
        on_sale=bool(row.get("on_sale")),
        created_at=_as_datetime(row.get("created_at")),
    )


def patch_to_values(patch: ProductPatch) -> dict:
    """Backend assignments for the fields present in a patch."""
    values = patch.present_fields()
    for name in JSON_LIST_FIELDS:
        if name in values:
            values[name] = json.dumps(values[name] or [], ensure_ascii=False)
    for name in IDENTITY_FIELDS:
        if name in values:
            values[name] = _as_identity(values[name])
    return values


def cart_item_key(product_id: int, size: str, color: str) -> str:
    return f"{product_id}#{size}#{color}"


def cart_item_to_row(item: CartItem) -> dict:
    return {
        "session_id": item.session_id,
        "item_key": cart_item_key(item.product_id, item.size, item.color),
        "product_id": item.product_id,
        "quantity": item.quantity,
        "size": item.size,
        "color": item.color,
        "created_at": item.created_at.isoformat(),
    }


def row_to_cart_item(row: dict) -> CartItem:
    return CartItem(
        session_id=str(row.get("session_id") or ""),
        product_id=_as_int(row.get("product_id")),
        quantity=max(1, _as_int(row.get("quantity"), 1)),
        size=row.get("size") or DEFAULT_SIZE,
        color=row.get("color") or DEFAULT_COLOR,
        created_at=_as_datetime(row.get("created_at")),
    )


def order_to_row(order: Order) -> dict:
    row = order.model_dump(exclude={"items"})
    row["items"] = json.dumps(
        [item.model_dump(by_alias=True) for item in order.items],
        ensure_ascii=False,
    )
    row["created_at"] = order.created_at.isoformat()
    return row


def _as_order_items(value) -> tuple:
    raw = value
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return ()
    if not isinstance(raw, list):
        return ()
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        items.append(
            OrderItem(
                product_id=_as_int(entry.get("productId", entry.get("product_id"))),
                name=str(entry.get("name") or ""),
                quantity=max(1, _as_int(entry.get("quantity"), 1)),
                price=max(0, _as_int(entry.get("price"))),
                size=entry.get("size"),
                color=entry.get("color"),
            )
        )
    return tuple(items)


def row_to_order(row: dict) -> Order:
    return Order(
        id=_as_int(row.get("id")),
        session_id=str(row.get("session_id") or ""),
        customer_name=str(row.get("customer_name") or ""),
        customer_email=str(row.get("customer_email") or ""),
        customer_phone=str(row.get("customer_phone") or ""),
        address=str(row.get("address") or ""),
        total=max(0, _as_int(row.get("total"))),
        items=_as_order_items(row.get("items")),
        status=str(row.get("status") or "pending"),
        created_at=_as_datetime(row.get("created_at")),
    )


class CatalogStore:
    """
    Products, carts and orders.

    Args:
        backend: Row backend
        cache: TTLCache for product reads; a fresh one is created when omitted
        cache_ttl: TTL in seconds for the default cache
        id_generator: Callable returning new ids
    """

    def __init__(
        self,
        backend: CatalogBackend,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 300,
        id_generator: Optional[Callable[[], int]] = None,
    ):
        self.backend = backend
        self.cache = cache if cache is not None else TTLCache(cache_ttl)
        self.next_id = id_generator or IdGenerator()

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Catalog cache cleared")

    # Products

    async def get_products(self) -> list[Product]:
        cached = self.cache.get(PRODUCTS_CACHE_KEY)
        if cached is not None:
            logger.debug("Cache hit: products")
            return list(cached)

        rows = await self.backend.scan(PRODUCTS)
        products = sorted((row_to_product(row) for row in rows), key=lambda p: p.id)
        if products:
            self.cache.set(PRODUCTS_CACHE_KEY, products)
        return list(products)

    async def get_product(self, product_id: int) -> Optional[Product]:
        cache_key = f"product:{product_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        row = await self.backend.get(PRODUCTS, {"id": product_id})
        if row is None:
            return None
        product = row_to_product(row)
        self.cache.set(cache_key, product)
        return product

    async def _find_one(self, field_name: str, value: Optional[str]) -> Optional[Product]:
        value = _as_identity(value)
        if value is None:
            return None
        rows = await self.backend.scan(PRODUCTS, {field_name: value})
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(f"{len(rows)} products share {field_name}={value}")
        return min((row_to_product(row) for row in rows), key=lambda p: p.id)

    async def get_product_by_external_id(self, external_id: Optional[str]) -> Optional[Product]:
        return await self._find_one("external_id", external_id)

    async def get_product_by_sku(self, sku: Optional[str]) -> Optional[Product]:
        return await self._find_one("sku", sku)

    async def create_product(self, data: ProductCreate) -> Product:
        """
        Insert a new product.

        Raises:
            ValidationError: If the external id or sku is already taken
        """
        fields = data.model_dump()
        for name in IDENTITY_FIELDS:
            fields[name] = _as_identity(fields[name])
            if fields[name] is not None and await self._find_one(name, fields[name]):
                raise ValidationError(
                    message=f"A product with {name} {fields[name]!r} already exists",
                    field_name=name,
                    actual=fields[name],
                )

        product = Product(id=self.next_id(), **fields)
        await self.backend.put(PRODUCTS, product_to_row(product))
        logger.info(
            f"Created product {product.id}",
            extra={"external_id": product.external_id, "sku": product.sku},
        )
        return product

    async def update_product(self, product_id: int, patch: ProductPatch) -> Optional[Product]:
        """Apply the fields present in ``patch``; None when the product is missing."""
        values = patch_to_values(patch)
        row = await self.backend.update(PRODUCTS, {"id": product_id}, values)
        return row_to_product(row) if row is not None else None

    async def list_products(
        self,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
        sale: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Product], dict]:
        """
        Filter and paginate the cached product list.

        Returns:
            Tuple of (page of products, pagination dict)
        """
        products = await self.get_products()
        if sale:
            products = [p for p in products if p.on_sale]
        if category:
            products = [p for p in products if p.category == category]
        if subcategory:
            products = [p for p in products if p.subcategory == subcategory]

        page = max(1, page)
        limit = max(1, limit)
        total = len(products)
        start = (page - 1) * limit
        return products[start:start + limit], {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        }

    # Cart

    async def get_cart_items(self, session_id: str) -> list[CartLine]:
        rows = await self.backend.query(CART_ITEMS, "session_id", session_id)
        lines = []
        for item in sorted((row_to_cart_item(row) for row in rows), key=lambda i: i.created_at):
            product = await self.get_product(item.product_id)
            if product is None:
                logger.warning(f"Cart {session_id} references missing product {item.product_id}")
                continue
            lines.append(CartLine(item=item, product=product))
        return lines

    async def add_to_cart(self, data: CartItemCreate) -> CartItem:
        """
        Put a line in the cart. Re-adding the same product, size and colour
        replaces the quantity.

        Raises:
            ValidationError: If the product does not exist
        """
        if await self.get_product(data.product_id) is None:
            raise ValidationError(
                message="Product not found",
                field_name="productId",
                actual=data.product_id,
            )

        item = CartItem(
            session_id=data.session_id,
            product_id=data.product_id,
            quantity=data.quantity,
            size=data.size or DEFAULT_SIZE,
            color=data.color or DEFAULT_COLOR,
        )
        existing = await self.backend.get(
            CART_ITEMS,
            {"session_id": item.session_id, "item_key": cart_item_key(item.product_id, item.size, item.color)},
        )
        if existing is not None:
            item = item.model_copy(update={"created_at": _as_datetime(existing.get("created_at"))})
        await self.backend.put(CART_ITEMS, cart_item_to_row(item))
        return item

    async def remove_from_cart(
        self,
        session_id: str,
        product_id: int,
        size: Optional[str] = None,
        color: Optional[str] = None,
    ) -> bool:
        key = {
            "session_id": session_id,
            "item_key": cart_item_key(product_id, size or DEFAULT_SIZE, color or DEFAULT_COLOR),
        }
        return await self.backend.delete(CART_ITEMS, key)

    async def clear_cart(self, session_id: str) -> int:
        rows = await self.backend.query(CART_ITEMS, "session_id", session_id)
        for row in rows:
            await self.backend.delete(
                CART_ITEMS,
                {"session_id": session_id, "item_key": row["item_key"]},
            )
        return len(rows)

    # Orders

    async def create_order(self, data: OrderCreate) -> Order:
        """
        Snapshot the cart into an order, then clear the cart.

        Raises:
            ValidationError: If the cart is empty
        """
        lines = await self.get_cart_items(data.session_id)
        if not lines:
            raise ValidationError(message="Cart is empty", field_name="sessionId", actual=data.session_id)

        items = tuple(
            OrderItem(
                product_id=line.product.id,
                name=line.product.name,
                quantity=line.item.quantity,
                price=line.product.price,
                size=line.item.size,
                color=line.item.color,
            )
            for line in lines
        )
        order = Order(
            id=self.next_id(),
            session_id=data.session_id,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone,
            address=data.address,
            total=sum(item.price * item.quantity for item in items),
            items=items,
        )
        await self.backend.put(ORDERS, order_to_row(order))
        await self.clear_cart(data.session_id)
        logger.info(f"Created order {order.id} with {len(items)} items, total {order.total}")
        return order

    async def get_order(self, order_id: int) -> Optional[Order]:
        row = await self.backend.get(ORDERS, {"id": order_id})
        return row_to_order(row) if row is not None else None

    async def list_orders(self, statuses: Optional[tuple] = None) -> list[Order]:
        rows = await self.backend.scan(ORDERS)
        orders = sorted((row_to_order(row) for row in rows), key=lambda o: o.id)
        if statuses is not None:
            orders = [o for o in orders if o.status in statuses]
        return orders

    async def update_order_status(self, order_id: int, status: str) -> Optional[Order]:
        """
        Move an order forward through pending, confirmed, shipped.

        Returns:
            Updated order, or None when it does not exist

        Raises:
            ValidationError: For an unknown status or a backwards move
        """
        if status not in ORDER_STATUSES:
            raise ValidationError(
                message=f"Unknown order status {status!r}",
                field_name="status",
                actual=status,
            )
        order = await self.get_order(order_id)
        if order is None:
            return None

        current = ORDER_STATUSES.index(order.status) if order.status in ORDER_STATUSES else 0
        if ORDER_STATUSES.index(status) < current:
            raise ValidationError(
                message=f"Cannot move order from {order.status} to {status}",
                field_name="status",
                actual=status,
            )
        if status == order.status:
            return order

        row = await self.backend.update(ORDERS, {"id": order_id}, {"status": status})
        return row_to_order(row) if row is not None else None
