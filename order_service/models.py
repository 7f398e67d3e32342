"""
SQLAlchemy ORM models for the Order service.

Defines the database schema for products (stock projection only), cart lines,
orders, order items and the two append-only audit tables: the inventory
ledger and the order status history. ``applied_payment_events`` is the
idempotency ledger for payment provider events.
"""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CASH_ON_DELIVERY = "cash_on_delivery"


class TransactionType(str, Enum):
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    INITIAL = "initial"


class Product(Base):
    """
    Catalog product as seen by the Order service.

    The catalog owns every field except ``stock_quantity`` and ``sold_count``,
    which are only ever written through the stock ledger.

    Attributes:
        id (int): Primary key
        sku (str): Stock Keeping Unit (unique)
        name (str): Display name
        price (Decimal): Current unit price
        image_url (str): Main product image
        is_active (bool): Whether the product can be bought
        stock_quantity (int): Units on hand, never negative
        sold_count (int): Units sold (net of returns)
        low_stock_threshold (int): Threshold for low stock reporting
        created_at (datetime): Timestamp when the product was created
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("sold_count >= 0", name="ck_products_sold_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    image_url = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    sold_count = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    created_at = Column(DateTime, default=utcnow)


class CartItem(Base):
    """
    A line in a user's shopping cart.

    Ephemeral: lines are deleted once checkout converts them into order items.
    ``price_at_add`` is informational only; checkout prices from the catalog.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    price_at_add = Column(Numeric(10, 2), nullable=False)
    is_selected = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product")


class Order(Base):
    """
    Order model representing a customer order in the system.

    Attributes:
        id (str): Primary key (UUID string)
        order_number (str): Human readable, globally unique number (e.g. "ORD-1700000000000-AB12CD34E")
        user_id (int): ID of the user who placed the order
        status (str): Lifecycle status, see ``OrderStatus``
        payment_status (str): See ``PaymentStatus``
        subtotal, tax_amount, shipping_amount, discount_amount, total (Decimal):
            Financial breakdown; total = subtotal + tax + shipping - discount
        shipping_address, billing_address (dict): Snapshots taken at checkout
        payment_reference (str): Provider charge id, set once paid
        tracking_number (str): Set exactly once, on transition to shipped
        shipment_notified_at (datetime): When the shipped notification went out
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method = Column(String, nullable=False, default=PaymentMethod.STRIPE.value)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    shipping_address = Column(JSONType, nullable=False)
    billing_address = Column(JSONType, nullable=False)
    customer_email = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    cancel_reason = Column(String, nullable=True)

    payment_intent_id = Column(String, nullable=True, index=True)
    payment_reference = Column(String, nullable=True, index=True)
    tracking_number = Column(String, unique=True, nullable=True)
    tracking_url = Column(String, nullable=True)
    shipment_notified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    """
    A purchased line. ``product_snapshot`` freezes name, sku, price and image
    at checkout time so catalog edits never rewrite order history.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    product_snapshot = Column(JSONType, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")


class InventoryTransaction(Base):
    """
    Append-only stock ledger row.

    Attributes:
        id (int): Primary key, auto-incrementing
        product_id (int): Product whose stock changed
        transaction_type (str): sale, return, adjustment or initial
        quantity_delta (int): Signed change applied to stock
        previous_stock (int): Stock before the change
        new_stock (int): Stock after the change (previous_stock + quantity_delta)
        reason (str): Why the stock changed (optional)
        order_id (str): Related order (optional)
        user_id (int): User who triggered the change (optional)
        is_system_generated (bool): Written by the system rather than an operator
        created_at (datetime): Timestamp of the change
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        CheckConstraint("new_stock >= 0", name="ck_inventory_transactions_new_stock_non_negative"),
        CheckConstraint(
            "new_stock = previous_stock + quantity_delta",
            name="ck_inventory_transactions_balanced",
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False, index=True)
    quantity_delta = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    user_id = Column(Integer, nullable=True)
    is_system_generated = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class OrderStatusHistory(Base):
    """
    Append-only row per order status transition.

    ``from_status`` is null only for the row written when the order is created.
    """
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False, index=True)
    reason = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    user_id = Column(Integer, nullable=True)
    is_system_generated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class AppliedPaymentEvent(Base):
    """
    Payment provider events that have already been applied.

    The primary key on ``external_event_id`` is what makes redelivery of the
    same event a no-op, including two deliveries racing each other.
    """
    __tablename__ = "applied_payment_events"

    external_event_id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    order_reference = Column(String, nullable=True)
    outcome = Column(String, nullable=False)
    result = Column(String, nullable=False)
    applied_at = Column(DateTime, default=utcnow, nullable=False)
