"""Data models for the storefront checkout engine."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

MINOR_UNIT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce a number to a Decimal rounded to the currency's minor unit."""
    return Decimal(str(value)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert an amount to integer minor units (paise for INR)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


class CartLineItem(BaseModel):
    """Represents one line of the shopping cart."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int = Field(description="Cart item ID")
    product_ref: str = Field(
        validation_alias=AliasChoices("product_ref", "productRef", "slug"),
        description="Product slug",
    )
    product_id: Optional[int] = Field(None, description="Catalog product ID")
    name: str = Field(
        default="",
        validation_alias=AliasChoices("name", "product_name"),
        description="Product name",
    )
    unit_price: Decimal = Field(
        ge=0,
        validation_alias=AliasChoices("unit_price", "unitPrice", "price"),
        description="Price charged per unit",
    )
    original_unit_price: Decimal = Field(
        ge=0,
        validation_alias=AliasChoices(
            "original_unit_price", "originalUnitPrice", "originalPrice", "original_price"
        ),
        description="List price per unit before product discount",
    )
    quantity: int = Field(ge=1, description="Quantity in cart")
    available_stock: int = Field(
        ge=1,
        validation_alias=AliasChoices(
            "available_stock", "availableStock", "stock", "max_quantity", "maxQuantity"
        ),
        description="Units available for this product",
    )
    line_discount_percent: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        le=100,
        validation_alias=AliasChoices("line_discount_percent", "lineDiscountPercent", "discount"),
    )
    cap_id: Optional[int] = Field(None, description="Selected cap option")
    thread_id: Optional[int] = Field(None, description="Selected thread option")

    @model_validator(mode="before")
    @classmethod
    def _fill_original_price(cls, data: Any) -> Any:
        if isinstance(data, dict):
            price_keys = ("unit_price", "unitPrice", "price")
            original_keys = ("original_unit_price", "originalUnitPrice", "originalPrice", "original_price")
            if not any(data.get(k) is not None for k in original_keys):
                price = next((data[k] for k in price_keys if data.get(k) is not None), None)
                if price is not None:
                    data = {**data, "original_unit_price": price}
        return data

    @model_validator(mode="after")
    def _check_invariants(self) -> "CartLineItem":
        if self.quantity > self.available_stock:
            raise ValueError(
                f"quantity {self.quantity} exceeds available stock {self.available_stock}"
            )
        if self.unit_price > self.original_unit_price:
            raise ValueError("unit_price cannot exceed original_unit_price")
        return self

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def line_savings(self) -> Decimal:
        return (self.original_unit_price - self.unit_price) * self.quantity


class CartSnapshot(BaseModel):
    """Immutable view of the cart at a point in time."""

    model_config = ConfigDict(frozen=True)

    items: tuple[CartLineItem, ...] = Field(default_factory=tuple)
    server_subtotal: Optional[Decimal] = Field(
        None, description="Subtotal last reported by the backend, if any"
    )

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find(self, item_id: int) -> Optional[CartLineItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def with_quantity(self, item_id: int, quantity: int) -> "CartSnapshot":
        items = tuple(
            item.model_copy(update={"quantity": quantity}) if item.id == item_id else item
            for item in self.items
        )
        return CartSnapshot(items=items)

    def without(self, item_id: int) -> "CartSnapshot":
        return CartSnapshot(items=tuple(item for item in self.items if item.id != item_id))


class CouponKind(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


class Coupon(BaseModel):
    """A discount code from the remote coupon catalog."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    code: str
    kind: CouponKind = Field(validation_alias=AliasChoices("kind", "type"))
    value: Decimal = Field(
        gt=0, validation_alias=AliasChoices("value", "discount_value")
    )
    min_order_amount: Optional[Decimal] = Field(
        None, ge=0, validation_alias=AliasChoices("min_order_amount", "minOrderAmount")
    )
    max_discount_amount: Optional[Decimal] = Field(
        None, ge=0, validation_alias=AliasChoices("max_discount_amount", "maxDiscountAmount")
    )
    description: Optional[str] = None
    expires_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("expires_at", "valid_until", "expiresAt")
    )

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return normalize_code(value)

    @model_validator(mode="after")
    def _check_percent(self) -> "Coupon":
        if self.kind is CouponKind.PERCENT and self.value > 100:
            raise ValueError("percent coupon value must be in (0, 100]")
        return self

    def is_applicable(self, subtotal: Decimal) -> bool:
        """Check the minimum-order condition against a subtotal."""
        return self.min_order_amount is None or subtotal >= self.min_order_amount

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(tz=self.expires_at.tzinfo)
        return self.expires_at < now


def normalize_code(code: str) -> str:
    return code.strip().upper()


class AvailableCoupon(BaseModel):
    """Catalog entry annotated against the current cart."""

    coupon: Coupon
    is_applicable: bool


class PaymentMethod(str, Enum):
    PREPAID = "prepaid"
    CASH_ON_DELIVERY = "cod"


class OrderTotals(BaseModel):
    """Derived order totals; recomputed, never persisted by the engine."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    product_discount: Decimal
    coupon_discount: Decimal
    payment_adjustment: Decimal = Field(
        description="Negative for a prepaid discount, positive for a COD surcharge"
    )
    shipping_fee: Decimal
    total: Decimal

    @property
    def prepaid_discount(self) -> Decimal:
        return -self.payment_adjustment if self.payment_adjustment < 0 else Decimal("0")

    @property
    def cod_surcharge(self) -> Decimal:
        return self.payment_adjustment if self.payment_adjustment > 0 else Decimal("0")

    @property
    def total_minor_units(self) -> int:
        return to_minor_units(self.total)


class Address(BaseModel):
    """Delivery address owned by the address book."""

    model_config = ConfigDict(frozen=True)

    id: int
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line_1: str = ""
    address_line_2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "India"
    is_default: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PaymentState(str, Enum):
    IDLE = "idle"
    CREATING_REMOTE_ORDER = "creating_remote_order"
    AWAITING_GATEWAY_RESULT = "awaiting_gateway_result"
    VERIFYING_AND_FINALIZING = "verifying_and_finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentState.COMPLETED, PaymentState.FAILED, PaymentState.CANCELLED)


class PaymentSession(BaseModel):
    """State of one order submission."""

    state: PaymentState = PaymentState.IDLE
    payment_method: Optional[PaymentMethod] = None
    remote_order_id: Optional[str] = None
    internal_order_id: Optional[int] = None
    gateway_reference: Optional[str] = None
    order_number: Optional[str] = None
    failure_reason: Optional[str] = None


class RemotePaymentOrder(BaseModel):
    """Payload of a successful create-order call."""

    model_config = ConfigDict(populate_by_name=True)

    remote_order_id: str = Field(
        validation_alias=AliasChoices("remote_order_id", "razorpay_order_id", "gateway_order_id")
    )
    internal_order_id: int = Field(
        validation_alias=AliasChoices("internal_order_id", "order_id")
    )
    amount: Optional[int] = Field(None, description="Amount the backend charged, in minor units")
    currency: Optional[str] = None
    key_id: Optional[str] = Field(None, validation_alias=AliasChoices("key_id", "key"))


class ApiResponse(BaseModel):
    """Response envelope used by every backend endpoint."""

    success: bool
    message: str = ""
    data: Any = None
    session_token: Optional[str] = None
    status_code: Optional[int] = Field(None, exclude=True)


class SessionData(BaseModel):
    """Session data for the storefront backend."""

    auth_token: Optional[str] = Field(None, description="Bearer token of the signed-in user")
    guest_token: Optional[str] = Field(None, description="Session token issued to an anonymous visitor")
    user_id: Optional[int] = Field(None, description="User ID")
    user_email: Optional[str] = Field(None, description="User email")
    is_authenticated: bool = Field(default=False, description="Authentication status")
