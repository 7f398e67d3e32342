"""
Cart line management.

Cart lines are advisory: stock checks here only give early feedback, the
authoritative check is the ledger reservation made at checkout.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from . import config, crud, models
from .database import unit_of_work
from .errors import CartItemNotFound, ProductNotFound, ValidationFailed
from .models import utcnow
from .validators import validate_quantity

logger = logging.getLogger(__name__)


def _check_quantity(quantity: int) -> None:
    ok, message = validate_quantity(quantity)
    if not ok:
        raise ValidationFailed(message)


def _active_product(db: Session, product_id: int) -> models.Product:
    product = crud.get_product(db, product_id)
    if product is None or not product.is_active:
        raise ProductNotFound(product_id)
    return product


def add_to_cart(
    db: Session,
    user_id: int,
    product_id: int,
    quantity: int = 1,
    notes: Optional[str] = None,
) -> models.CartItem:
    """
    Add a product to the user's cart, merging with an existing line.

    Args:
        db: Database session
        user_id: Cart owner
        product_id: Product to add
        quantity: Units to add
        notes: Optional line notes

    Returns:
        The created or updated cart line

    Raises:
        ValidationFailed: bad quantity, or more than the current stock requested
        ProductNotFound: product missing or inactive
    """
    _check_quantity(quantity)
    with unit_of_work(db):
        product = _active_product(db, product_id)
        existing = (
            db.query(models.CartItem)
            .filter(models.CartItem.user_id == user_id, models.CartItem.product_id == product_id)
            .first()
        )
        new_quantity = quantity + (existing.quantity if existing else 0)
        if product.stock_quantity < new_quantity:
            available = product.stock_quantity - (existing.quantity if existing else 0)
            raise ValidationFailed(f"Only {max(available, 0)} more items available in stock")

        expires_at = utcnow() + timedelta(days=config.CART_ITEM_TTL_DAYS)
        if existing:
            existing.quantity = new_quantity
            existing.price_at_add = product.price
            existing.notes = notes or existing.notes
            existing.expires_at = expires_at
            line = existing
        else:
            line = models.CartItem(
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                price_at_add=product.price,
                notes=notes,
                expires_at=expires_at,
            )
            db.add(line)
    db.refresh(line)
    logger.info(f"User {user_id} cart: product {product_id} x{line.quantity}")
    return line


def update_quantity(
    db: Session, user_id: int, item_id: int, quantity: int, notes: Optional[str] = None
) -> models.CartItem:
    """Set the quantity of a cart line."""
    _check_quantity(quantity)
    with unit_of_work(db):
        line = crud.get_cart_item(db, user_id, item_id)
        if line is None:
            raise CartItemNotFound(item_id)
        product = _active_product(db, line.product_id)
        if product.stock_quantity < quantity:
            raise ValidationFailed(f"Only {product.stock_quantity} items available in stock")
        line.quantity = quantity
        if notes is not None:
            line.notes = notes
    db.refresh(line)
    return line


def set_selected(db: Session, user_id: int, item_id: int, is_selected: bool) -> models.CartItem:
    """Select or deselect a cart line for checkout."""
    with unit_of_work(db):
        line = crud.get_cart_item(db, user_id, item_id)
        if line is None:
            raise CartItemNotFound(item_id)
        line.is_selected = is_selected
    db.refresh(line)
    return line


def remove_line(db: Session, user_id: int, item_id: int) -> None:
    with unit_of_work(db):
        line = crud.get_cart_item(db, user_id, item_id)
        if line is None:
            raise CartItemNotFound(item_id)
        db.delete(line)


def clear_cart(db: Session, user_id: int) -> int:
    """Delete every line of the user's cart. Returns the number of lines removed."""
    with unit_of_work(db):
        result = db.execute(delete(models.CartItem).where(models.CartItem.user_id == user_id))
    return result.rowcount


def get_cart(db: Session, user_id: int) -> dict:
    """
    Cart contents with the subtotal of the selected lines at current prices.

    Returns:
        dict with items, subtotal and total_items
    """
    lines = crud.get_cart_items(db, user_id)
    subtotal = sum(
        (Decimal(str(line.product.price)) * line.quantity for line in lines if line.is_selected),
        Decimal("0"),
    )
    return {"items": lines, "subtotal": subtotal.quantize(Decimal("0.01")), "total_items": len(lines)}
