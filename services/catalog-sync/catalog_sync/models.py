"""
Data models for the catalog sync service.
Python attributes are snake_case; the JSON wire format is camelCase.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

ORDER_STATUSES = ("pending", "confirmed", "shipped")
DEFAULT_SIZE = "One Size"
DEFAULT_COLOR = "Default"


class Product(BaseModel):
    """Catalog entry as served to the storefront."""
    id: int
    external_id: Optional[str] = Field(None, alias="externalId")
    sku: Optional[str] = None
    name: str
    description: str = ""
    price: int = Field(0, ge=0)
    original_price: Optional[int] = Field(None, alias="originalPrice")
    image_url: str = Field("", alias="imageUrl")
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    category: str = ""
    subcategory: Optional[str] = None
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)
    is_new: bool = Field(False, alias="isNew")
    on_sale: bool = Field(False, alias="onSale")
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")

    class Config:
        populate_by_name = True

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ProductCreate(BaseModel):
    """Payload for creating a product by hand, from a seed or from a feed."""
    external_id: Optional[str] = Field(None, alias="externalId")
    sku: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(0, ge=0)
    original_price: Optional[int] = Field(None, ge=0, alias="originalPrice")
    image_url: str = Field("", alias="imageUrl")
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    category: str = ""
    subcategory: Optional[str] = None
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)
    is_new: bool = Field(False, alias="isNew")
    on_sale: bool = Field(False, alias="onSale")

    class Config:
        populate_by_name = True


class ProductPatch(BaseModel):
    """
    Partial update of a product. Only fields that were explicitly set
    are written; everything else keeps its stored value.
    """
    external_id: Optional[str] = Field(None, alias="externalId")
    sku: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    original_price: Optional[int] = Field(None, ge=0, alias="originalPrice")
    image_url: Optional[str] = Field(None, alias="imageUrl")
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    category: Optional[str] = None
    subcategory: Optional[str] = None
    sizes: Optional[list[str]] = None
    colors: Optional[list[str]] = None
    is_new: Optional[bool] = Field(None, alias="isNew")
    on_sale: Optional[bool] = Field(None, alias="onSale")

    class Config:
        populate_by_name = True

    def present_fields(self) -> dict:
        """Return only the fields that were explicitly set."""
        return self.model_dump(exclude_unset=True)


class CartItemCreate(BaseModel):
    """A line added to a guest cart."""
    session_id: str = Field(..., min_length=1, alias="sessionId")
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None

    class Config:
        populate_by_name = True


class CartItem(BaseModel):
    """Stored cart line, keyed by (session_id, product_id, size, color)."""
    session_id: str = Field(..., alias="sessionId")
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(1, ge=1)
    size: str = DEFAULT_SIZE
    color: str = DEFAULT_COLOR
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")

    class Config:
        populate_by_name = True


class CartLine(BaseModel):
    """Cart item joined with its product, for display and checkout."""
    item: CartItem
    product: Product

    def to_api(self) -> dict:
        data = self.item.model_dump(mode="json", by_alias=True)
        data["product"] = self.product.to_api()
        return data


class OrderItem(BaseModel):
    """Frozen snapshot of one cart line at checkout."""
    product_id: int = Field(..., alias="productId")
    name: str
    quantity: int = Field(..., ge=1)
    price: int = Field(..., ge=0)
    size: Optional[str] = None
    color: Optional[str] = None

    class Config:
        populate_by_name = True
        frozen = True


class OrderCreate(BaseModel):
    """Checkout request; items and total come from the cart."""
    session_id: str = Field(..., min_length=1, alias="sessionId")
    customer_name: str = Field(..., min_length=1, alias="customerName")
    customer_email: str = Field(..., min_length=3, alias="customerEmail")
    customer_phone: str = Field(..., min_length=1, alias="customerPhone")
    address: str = Field(..., min_length=1)

    class Config:
        populate_by_name = True


class Order(BaseModel):
    """Immutable order snapshot."""
    id: int
    session_id: str = Field(..., alias="sessionId")
    customer_name: str = Field(..., alias="customerName")
    customer_email: str = Field(..., alias="customerEmail")
    customer_phone: str = Field("", alias="customerPhone")
    address: str = ""
    total: int = Field(0, ge=0)
    items: tuple[OrderItem, ...] = ()
    status: str = "pending"
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")

    class Config:
        populate_by_name = True

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class OrderStatusUpdate(BaseModel):
    status: str


class CatalogEntry(BaseModel):
    """One product (Товар) from a CommerceML catalog feed."""
    external_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    sku: Optional[str] = None
    image: Optional[str] = None
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)


class OfferEntry(BaseModel):
    """One price offer (Предложение) from a CommerceML offers feed."""
    external_id: Optional[str] = None
    price: Optional[int] = None
    raw_price: Optional[str] = None


class CommerceMLFeed(BaseModel):
    """Parsed CommerceML document, entries kept in document order."""
    products: list[CatalogEntry] = Field(default_factory=list)
    offers: list[OfferEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.products and not self.offers


class SyncProductPayload(BaseModel):
    """Product pushed through the JSON sync API."""
    external_id: str = Field(..., min_length=1, alias="externalId")
    sku: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(0, ge=0)
    image_url: Optional[str] = Field(None, alias="imageUrl")
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)
    is_new: Optional[bool] = Field(None, alias="isNew")

    class Config:
        populate_by_name = True


class InventoryUpdate(BaseModel):
    """Price and size availability pushed through the JSON sync API."""
    external_id: str = Field(..., min_length=1, alias="externalId")
    price: Optional[int] = Field(None, ge=0)
    sizes: Optional[list[str]] = None

    class Config:
        populate_by_name = True
