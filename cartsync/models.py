"""
Pydantic models for cart references, catalog items, orders, requests and responses.

Stored documents keep camelCase field names; every model accepts both the
alias and the Python field name.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_variations(selected: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """An empty selection is the same line as no selection"""
    if not selected:
        return None
    return dict(selected)


IdentityKey = Tuple[str, Optional[FrozenSet[Tuple[str, str]]]]


def identity_key(item_id: str, selected: Optional[Dict[str, str]]) -> IdentityKey:
    selected = normalize_variations(selected)
    return (item_id, frozenset(selected.items()) if selected else None)


class DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict:
        """Serialize for the document store"""
        return self.model_dump(mode="json", by_alias=True)


class Identity(BaseModel):
    """Authenticated user the cart belongs to"""
    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., min_length=1)
    email: Optional[str] = None


class CartReference(DocumentModel):
    """Authoritative cart line: item, quantity and selected variations"""
    item_id: str = Field(..., alias="itemId", description="Catalog item identifier")
    quantity: int = Field(..., ge=1, description="Item quantity")
    selected_variations: Optional[Dict[str, str]] = Field(None, alias="selectedVariations")

    @field_validator("selected_variations")
    @classmethod
    def validate_variations(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return normalize_variations(v)

    @property
    def identity_key(self) -> IdentityKey:
        return identity_key(self.item_id, self.selected_variations)


class ProductVariation(DocumentModel):
    id: str
    name: str
    price: Optional[Decimal] = None
    combinations: Dict[str, str] = Field(default_factory=dict)


class CatalogItemInput(DocumentModel):
    """Catalog document as written to items/{itemId}"""
    item_name: str = Field(..., min_length=1, alias="itemName")
    price: Decimal = Field(..., ge=0)
    thumbnail: Optional[str] = None
    category: Optional[str] = None
    group: Optional[str] = None
    subcategory: Optional[str] = None
    description: Optional[str] = None
    stock: Optional[int] = None
    images: List[str] = Field(default_factory=list)
    variations: Dict[str, List[str]] = Field(default_factory=dict)
    product_variations: List[ProductVariation] = Field(default_factory=list, alias="productVariations")
    specs: List[str] = Field(default_factory=list)
    detailed_info: Optional[str] = Field(None, alias="detailedInfo")
    created_at: Optional[datetime] = Field(None, alias="createdAt")


class CatalogItemUpdate(DocumentModel):
    """Partial catalog update; only the fields sent are merged"""
    item_name: Optional[str] = Field(None, min_length=1, alias="itemName")
    price: Optional[Decimal] = Field(None, ge=0)
    thumbnail: Optional[str] = None
    category: Optional[str] = None
    group: Optional[str] = None
    subcategory: Optional[str] = None
    description: Optional[str] = None
    stock: Optional[int] = None
    images: Optional[List[str]] = None
    variations: Optional[Dict[str, List[str]]] = None
    product_variations: Optional[List[ProductVariation]] = Field(None, alias="productVariations")
    specs: Optional[List[str]] = None
    detailed_info: Optional[str] = Field(None, alias="detailedInfo")

    def changes(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class CatalogItem(CatalogItemInput):
    """Canonical product attributes from the catalog"""
    id: str

    def variation_price(self, selected: Optional[Dict[str, str]]) -> Optional[Decimal]:
        """Price override of the product variation matching the selection"""
        selected = normalize_variations(selected)
        if not selected:
            return None
        for variation in self.product_variations:
            if variation.combinations == selected:
                return variation.price
        return None


class CartItem(CartReference):
    """Cart line joined with live catalog data"""
    name: str
    price: Decimal
    variation_price: Optional[Decimal] = Field(None, alias="variationPrice")
    thumbnail: Optional[str] = None
    variations: Dict[str, List[str]] = Field(default_factory=dict)

    @classmethod
    def from_catalog(cls, reference: CartReference, item: CatalogItem) -> "CartItem":
        return cls(
            item_id=reference.item_id,
            quantity=reference.quantity,
            selected_variations=reference.selected_variations,
            name=item.item_name,
            price=item.price,
            variation_price=item.variation_price(reference.selected_variations),
            thumbnail=item.thumbnail,
            variations=item.variations,
        )

    @property
    def unit_price(self) -> Decimal:
        return self.variation_price if self.variation_price is not None else self.price

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


DEFAULT_CATEGORY_ICON = (
    '<iconify-icon icon="material-symbols:category" class="text-orange-500"></iconify-icon>'
)


class Category(BaseModel):
    """Category stored at itemcategory/{name}: group name -> subcategories, plus an icon"""
    name: str = Field(..., min_length=1)
    groups: Dict[str, List[str]] = Field(default_factory=dict)
    icon: str = DEFAULT_CATEGORY_ICON

    def to_document(self) -> dict:
        return {**self.groups, "icon": self.icon}


class CategoryRequest(BaseModel):
    groups: Dict[str, List[str]] = Field(default_factory=dict)
    icon: Optional[str] = None


def cart_total(items: List[CartItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class CartDocument(DocumentModel):
    """Remote cart document stored at users/{uid}/cart/items"""
    items: List[CartReference] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow, alias="lastUpdated")
    # identifies the write that produced this version of the document
    write_id: Optional[str] = Field(None, alias="writeId")


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Order(DocumentModel):
    """Order record with a frozen snapshot of the purchased lines"""
    id: str
    user_id: str = Field(..., alias="userId")
    items: List[CartItem]
    total_price: Decimal = Field(..., alias="totalPrice")
    status: OrderStatus = OrderStatus.PENDING
    timestamp: datetime = Field(default_factory=utcnow)
    user_email: Optional[str] = Field(None, alias="userEmail")


class PendingOrder(DocumentModel):
    """Checkout snapshot kept across the payment redirect"""
    order_id: Optional[str] = Field(None, alias="orderId")
    items: List[CartItem]
    total_price: Decimal = Field(..., alias="totalPrice")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class CheckoutState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    ORDER_PERSISTING = "order_persisting"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


class CheckoutHandle(BaseModel):
    """What the caller needs to redirect to the payment page"""
    order_id: str
    checkout_url: str
    total_price: Decimal
    items: List[CartItem]
    resumed: bool = False


class PaymentItem(DocumentModel):
    """Line sent to the payment collaborator"""
    id: str
    name: str
    price: Decimal
    quantity: int
    thumbnail: Optional[str] = None
    variation_price: Optional[Decimal] = Field(None, alias="variationPrice")
    selected_variations: Optional[Dict[str, str]] = Field(None, alias="selectedVariations")

    @classmethod
    def from_cart_item(cls, item: CartItem) -> "PaymentItem":
        return cls(
            id=item.item_id,
            name=item.name,
            price=item.price,
            quantity=item.quantity,
            thumbnail=item.thumbnail,
            variation_price=item.variation_price,
            selected_variations=item.selected_variations,
        )


class PaymentRequest(DocumentModel):
    amount: Decimal
    items: List[PaymentItem]


class Notification(BaseModel):
    id: str
    message: str
    type: str = "success"
    user_id: Optional[str] = None
    created_at: float


# Request/response models for the HTTP API

class CartItemRequest(BaseModel):
    """Request model for adding a cart line"""
    item_id: str = Field(..., min_length=1, description="Catalog item identifier")
    selected_variations: Optional[Dict[str, str]] = Field(None, description="Selected variations")


class QuantityRequest(BaseModel):
    quantity: int = Field(..., description="New quantity; 0 or less removes the line")
    selected_variations: Optional[Dict[str, str]] = None


class RemoveItemRequest(BaseModel):
    selected_variations: Optional[Dict[str, str]] = None


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: Decimal = Decimal("0")


class Address(BaseModel):
    street: str = ""
    barangay: str = ""
    city: str
    province: str = ""
    postal_code: str = ""
    region: str = ""
    country: str = "Philippines"


class ShippingQuoteRequest(BaseModel):
    origin: Address
    destination: Address
    weight: float = Field(..., gt=0, description="Parcel weight in kilograms")


class ShipmentRequest(ShippingQuoteRequest):
    courier: str


class ShippingRate(BaseModel):
    courier: str
    base_rate: float
    weight_rate: float
    distance_rate: float
    total: float
    estimated_days: int


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"


class TrackingHistory(BaseModel):
    timestamp: datetime
    status: ShipmentStatus
    location: str
    description: str


class TrackingInfo(BaseModel):
    tracking_number: str
    status: ShipmentStatus
    current_location: str
    estimated_delivery: datetime
    history: List[TrackingHistory] = Field(default_factory=list)
