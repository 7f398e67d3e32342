"""
Order state machine.

Owns ``orders.status``: every transition is one compare-and-set UPDATE
(``WHERE id = :id AND status = :expected``) plus one status history row,
inside the caller's transaction. A stale read shows up as zero updated rows
and is reported as ``InvalidTransition``; the caller retries from fresh state.

    pending    -> confirmed, failed, cancelled
    confirmed  -> processing, cancelled
    processing -> shipped, cancelled
    shipped    -> delivered
    delivered  -> refunded
    failed, cancelled, refunded are terminal
"""
import logging
import random
import string
import time
import uuid
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, ledger
from .database import unit_of_work
from .errors import InvalidTransition, OrderNotCancellable, OrderNotFound, ValidationFailed
from .models import Order, OrderItem, OrderStatus, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.FAILED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

CANCELLABLE_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}

# Timestamp column stamped when an order enters a status
TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PROCESSING: "processed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUNDED: "refunded_at",
}

# Entering these statuses puts every item back into stock
RESTOCKING_STATES = {OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED}


def can_transition(from_status: str, to_status: str) -> bool:
    """Whether ``from_status -> to_status`` is an edge of the state machine."""
    try:
        return OrderStatus(to_status) in TRANSITIONS[OrderStatus(from_status)]
    except ValueError:
        return False


def is_terminal(status: str) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def generate_order_number() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def generate_tracking_number() -> str:
    return f"TRK{int(time.time() * 1000)}{random.randint(0, 999999):06d}"


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def create_order(
    db: Session,
    user_id: int,
    items: Iterable[OrderItem],
    pricing: Dict[str, Any],
    shipping_address: Dict[str, Any],
    billing_address: Dict[str, Any],
    payment_method: str,
    customer_email: Optional[str] = None,
    notes: Optional[str] = None,
    order_id: Optional[str] = None,
) -> Order:
    """
    Insert a new ``pending`` order with its items and its first history row.

    Does not commit; checkout commits the order together with the stock
    reservations and the cart cleanup.
    """
    order = Order(
        id=order_id or str(uuid.uuid4()),
        order_number=generate_order_number(),
        user_id=user_id,
        status=OrderStatus.PENDING.value,
        payment_method=payment_method,
        subtotal=pricing["subtotal"],
        tax_amount=pricing["tax_amount"],
        shipping_amount=pricing["shipping_amount"],
        discount_amount=pricing["discount_amount"],
        total=pricing["total"],
        currency=pricing["currency"],
        shipping_address=shipping_address,
        billing_address=billing_address,
        customer_email=customer_email,
        notes=notes,
    )
    order.items = list(items)
    db.add(order)
    db.flush()
    audit.record_status_change(
        db, order.id, None, OrderStatus.PENDING.value,
        reason="Order placed", user_id=user_id, system=True,
    )
    logger.info(f"Created order {order.order_number} for user {user_id} (total {order.total})")
    return order


def transition(
    db: Session,
    order: Order,
    to_status: OrderStatus,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    system: bool = False,
    expected_payment_status: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
) -> Order:
    """
    Move ``order`` from its current (as loaded) status to ``to_status``.

    Args:
        db: Database session (transaction owned by the caller)
        order: Order as loaded; its ``status`` is the expected from-state
        to_status: Target status
        reason: Reason recorded in the status history
        notes: Operator notes recorded in the status history
        user_id: User who triggered the change (optional)
        system: True when the system made the change
        expected_payment_status: Also require this payment status (compare-and-set)
        values: Extra columns written in the same UPDATE

    Returns:
        The order, refreshed from the database

    Raises:
        InvalidTransition: illegal edge, or the stored status no longer matches
    """
    to_status = OrderStatus(to_status)
    from_status = order.status
    if not can_transition(from_status, to_status):
        raise InvalidTransition(order.id, from_status, to_status.value)

    now = utcnow()
    new_values = {"status": to_status.value, "updated_at": now}
    if to_status in TIMESTAMP_FIELDS:
        new_values[TIMESTAMP_FIELDS[to_status]] = now
    if to_status == OrderStatus.CANCELLED and reason:
        new_values["cancel_reason"] = reason
    new_values.update(values or {})

    stmt = update(Order).where(Order.id == order.id, Order.status == from_status)
    if expected_payment_status is not None:
        stmt = stmt.where(Order.payment_status == expected_payment_status)
    result = db.execute(stmt.values(**new_values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        logger.warning(f"Lost compare-and-set on order {order.id}: {from_status} -> {to_status.value}")
        raise InvalidTransition(order.id, from_status, to_status.value)

    db.expire(order)
    audit.record_status_change(
        db, order.id, from_status, to_status.value,
        reason=reason, notes=notes, user_id=user_id, system=system,
    )

    if to_status in RESTOCKING_STATES:
        for item in order.items:
            ledger.release(
                db, item.product_id, item.quantity,
                reason=f"Order {order.order_number} {to_status.value}",
                order_id=order.id, user_id=user_id,
            )
    if to_status == OrderStatus.SHIPPED:
        _assign_tracking_number(db, order, (values or {}).get("tracking_url"))

    logger.info(f"Order {order.order_number}: {from_status} -> {to_status.value}")
    return order


def _assign_tracking_number(db: Session, order: Order, tracking_url: Optional[str] = None) -> None:
    # Guarded by tracking_number IS NULL so a number is issued at most once
    db.execute(
        update(Order)
        .where(Order.id == order.id, Order.tracking_number.is_(None))
        .values(tracking_number=generate_tracking_number(), tracking_url=tracking_url)
        .execution_options(synchronize_session=False)
    )
    db.expire(order)


def ship_order(
    db: Session,
    order: Order,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    system: bool = False,
    tracking_url: Optional[str] = None,
) -> Order:
    """
    Claim an order for shipment and assign its tracking number.

    Already shipped orders are returned unchanged so retries are harmless.
    ``confirmed`` orders pass through ``processing`` first. Does not commit.
    """
    if order.shipped_at is not None:
        logger.info(f"Order {order.order_number} already shipped, nothing to do")
        return order

    if order.status == OrderStatus.CONFIRMED.value:
        order = transition(
            db, order, OrderStatus.PROCESSING,
            reason="Order processing started", user_id=user_id, system=system,
        )
    extra = {"tracking_url": tracking_url} if tracking_url else None
    return transition(
        db, order, OrderStatus.SHIPPED,
        reason=reason or "Order shipped", notes=notes, user_id=user_id, system=system, values=extra,
    )


def cancel_order(
    db: Session,
    order_id: str,
    reason: Optional[str] = None,
    user_id: Optional[int] = None,
    by_admin: bool = False,
) -> Order:
    """
    Cancel an order and put its items back into stock.

    Args:
        db: Database session
        order_id: Order to cancel
        reason: Cancellation reason (defaults by actor)
        user_id: User cancelling the order
        by_admin: Whether an admin (rather than the customer) is cancelling

    Returns:
        The cancelled order

    Raises:
        OrderNotFound: no such order
        OrderNotCancellable: the order is shipped, delivered or terminal
    """
    reason = reason or ("Cancelled by admin" if by_admin else "Cancelled by customer")
    with unit_of_work(db):
        order = get_order(db, order_id)
        if OrderStatus(order.status) not in CANCELLABLE_STATES:
            raise OrderNotCancellable(order.id, order.status)
        transition(db, order, OrderStatus.CANCELLED, reason=reason, user_id=user_id)
    db.refresh(order)
    return order


def admin_set_status(
    db: Session,
    order_id: str,
    to_status: str,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    tracking_url: Optional[str] = None,
) -> Order:
    """
    Admin override of an order's status, restricted to legal transitions.

    Shipping an already shipped order is a no-op. Side effects (restocking,
    tracking numbers) are the same as for every other path.
    """
    try:
        target = OrderStatus(to_status)
    except ValueError:
        raise ValidationFailed(f"Unknown status: {to_status}")

    with unit_of_work(db):
        order = get_order(db, order_id)
        if target == OrderStatus.SHIPPED and order.shipped_at is not None:
            return order
        if not can_transition(order.status, target):
            raise InvalidTransition(order.id, order.status, target.value)

        if target == OrderStatus.SHIPPED:
            ship_order(db, order, reason=notes or "Shipped by admin", notes=notes,
                       user_id=user_id, tracking_url=tracking_url)
        else:
            transition(db, order, target, reason=notes or f"Status set to {target.value} by admin",
                       notes=notes, user_id=user_id)
    db.refresh(order)
    return order
