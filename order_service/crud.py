"""
Read operations for the Order service.

Writes go through the ledger, the state machine, checkout and the payment
gateway; this module only looks things up.
"""
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from . import models
from .models import utcnow


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_reference(db: Session, reference: str) -> Optional[models.Order]:
    """
    Resolve an order from an external reference.

    Payment providers echo back whatever the checkout handed them, so the
    reference is tried as order id, then order number, charge id or
    payment intent id.

    Args:
        db: Database session
        reference: Order id, order number, payment reference or payment intent id

    Returns:
        Order object or None if nothing matches
    """
    order = get_order(db, reference)
    if order is not None:
        return order
    return (
        db.query(models.Order)
        .filter(or_(
            models.Order.order_number == reference,
            models.Order.payment_reference == reference,
            models.Order.payment_intent_id == reference,
        ))
        .first()
    )


def get_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Only orders of this user (optional)
        status: Only orders in this status (optional)
        payment_status: Only orders with this payment status (optional)

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status:
        query = query.filter(models.Order.status == status)
    if payment_status:
        query = query.filter(models.Order.payment_status == payment_status)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_cart_item(db: Session, user_id: int, item_id: int) -> Optional[models.CartItem]:
    return (
        db.query(models.CartItem)
        .filter(models.CartItem.id == item_id, models.CartItem.user_id == user_id)
        .first()
    )


def get_cart_items(db: Session, user_id: int, selected_only: bool = False) -> List[models.CartItem]:
    """
    Retrieve a user's unexpired cart lines, oldest first.

    Args:
        db: Database session
        user_id: Cart owner
        selected_only: Only lines selected for checkout

    Returns:
        List of CartItem objects
    """
    stmt = (
        select(models.CartItem)
        .where(models.CartItem.user_id == user_id)
        .where(or_(models.CartItem.expires_at.is_(None), models.CartItem.expires_at > utcnow()))
        .order_by(models.CartItem.id)
    )
    if selected_only:
        stmt = stmt.where(models.CartItem.is_selected.is_(True))
    return list(db.execute(stmt).scalars())
