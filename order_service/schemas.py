"""
Pydantic schemas for request/response validation in the Order service.

These schemas define the structure of data for API requests and responses,
and the normalized ``PaymentEvent`` both payment entry points converge on.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import PaymentMethod


class Address(BaseModel):
    """Postal address snapshot copied onto the order at checkout."""
    street: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)


class CartItemCreate(BaseModel):
    """Schema for adding a product to the cart."""
    product_id: int
    quantity: int = Field(1, gt=0, description="Quantity to add")
    notes: Optional[str] = None


class CartItemUpdate(BaseModel):
    """Schema for changing the quantity of a cart line."""
    quantity: int = Field(..., gt=0)
    notes: Optional[str] = None


class CartItemSelect(BaseModel):
    is_selected: bool


class CartItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    price_at_add: Decimal
    is_selected: bool
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Cart(BaseModel):
    """Cart contents; ``subtotal`` only counts selected lines."""
    items: List[CartItem]
    subtotal: Decimal
    total_items: int


class CheckoutRequest(BaseModel):
    """Schema for converting the selected cart lines into an order."""
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod = PaymentMethod.STRIPE
    customer_email: Optional[str] = None
    notes: Optional[str] = None


class OrderItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_snapshot: Dict[str, Any]

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        order_number (str): Customer-facing order number
        status (str): Order status
        payment_status (str): Payment status
        total (Decimal): subtotal + tax + shipping - discount
        items (List[OrderItem]): Snapshotted order lines
    """
    id: str
    order_number: str
    user_id: int
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str
    shipping_address: Dict[str, Any]
    billing_address: Dict[str, Any]
    customer_email: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    """Schema for the admin status override."""
    status: str
    notes: Optional[str] = None
    tracking_url: Optional[str] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class OrderStatusHistory(BaseModel):
    """
    Schema for order timeline entries.

    Attributes:
        from_status (str): Previous status (null for the creation entry)
        to_status (str): New status
        reason (str): Why the status changed (optional)
        is_system_generated (bool): Whether the system or a person made the change
    """
    id: int
    order_id: str
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[int] = None
    is_system_generated: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentEvent(BaseModel):
    """
    A payment provider event, normalized.

    ``external_event_id`` is the idempotency key; ``order_reference`` may be
    the order id, the order number or the charge id.
    """
    external_event_id: str = Field(..., min_length=1)
    order_reference: str = Field(..., min_length=1)
    outcome: PaymentOutcome
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class PaymentEventResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_ORDER = "unknown_order"


class PaymentEventReceipt(BaseModel):
    external_event_id: str
    result: PaymentEventResult
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None


class PaymentIntentCreate(BaseModel):
    order_id: str


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class PaymentConfirm(BaseModel):
    """Schema for the synchronous confirmation made after the client-side payment step."""
    order_id: str
    payment_intent_id: str = Field(..., min_length=1)


class StockAdjustment(BaseModel):
    delta: int
    reason: str = Field(..., min_length=1, max_length=255)

    @field_validator("delta")
    @classmethod
    def delta_not_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must not be zero")
        return value


class InventoryTransaction(BaseModel):
    id: int
    product_id: int
    transaction_type: str
    quantity_delta: int
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    order_id: Optional[str] = None
    user_id: Optional[int] = None
    is_system_generated: bool
    created_at: datetime

    class Config:
        from_attributes = True


class StockReconciliation(BaseModel):
    """Cached stock compared with the ledger balance for one product."""
    product_id: int
    stock_quantity: int
    ledger_balance: int
    transaction_count: int
    consistent: bool


class LowStockProduct(BaseModel):
    """Active product at or below its low stock threshold."""
    id: int
    sku: str
    name: str
    stock_quantity: int
    low_stock_threshold: int

    class Config:
        from_attributes = True
