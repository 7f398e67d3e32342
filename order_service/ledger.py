"""
Stock ledger: the only writer of ``products.stock_quantity`` and ``products.sold_count``.

Every mutation is a single conditional UPDATE followed by one append-only
``InventoryTransaction`` row. The UPDATE takes the row lock, so concurrent
calls for the same product are serialized by the database; the
``stock_quantity >= :quantity`` guard makes overselling impossible without
any read-then-write gap.

None of these functions commit. The calling operation owns the transaction,
which is what lets checkout undo every reservation of a failed attempt with a
single rollback.
"""
import logging
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from .errors import InsufficientStock, ProductNotFound, ValidationFailed
from .models import InventoryTransaction, Product, TransactionType

logger = logging.getLogger(__name__)


def _current_stock(db: Session, product_id: int) -> Optional[int]:
    return db.execute(
        select(Product.stock_quantity).where(Product.id == product_id)
    ).scalar_one_or_none()


def _expire_cached_product(db: Session, product_id: int) -> None:
    # The UPDATE bypasses the identity map; drop stale attribute values
    cached = db.identity_map.get(Session.identity_key(Product, product_id))
    if cached is not None:
        db.expire(cached, ["stock_quantity", "sold_count"])


def _apply_delta(
    db: Session,
    product_id: int,
    delta: int,
    transaction_type: TransactionType,
    sold_delta: int = 0,
    reason: Optional[str] = None,
    order_id: Optional[str] = None,
    user_id: Optional[int] = None,
    system: bool = True,
) -> InventoryTransaction:
    values = {"stock_quantity": Product.stock_quantity + delta}
    if sold_delta > 0:
        values["sold_count"] = Product.sold_count + sold_delta
    elif sold_delta < 0:
        values["sold_count"] = case(
            (Product.sold_count >= -sold_delta, Product.sold_count + sold_delta),
            else_=0,
        )

    stmt = update(Product).where(Product.id == product_id)
    if delta < 0:
        stmt = stmt.where(Product.stock_quantity >= -delta)
    result = db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        available = _current_stock(db, product_id)
        if available is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, requested=-delta, available=available)

    _expire_cached_product(db, product_id)
    new_stock = _current_stock(db, product_id)
    entry = InventoryTransaction(
        product_id=product_id,
        transaction_type=transaction_type.value,
        quantity_delta=delta,
        previous_stock=new_stock - delta,
        new_stock=new_stock,
        reason=reason,
        order_id=order_id,
        user_id=user_id,
        is_system_generated=system,
    )
    db.add(entry)
    return entry


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationFailed(f"Quantity must be a positive integer, got {quantity!r}")


def reserve(
    db: Session,
    product_id: int,
    quantity: int,
    order_id: Optional[str] = None,
    user_id: Optional[int] = None,
    reason: str = "Order checkout",
) -> InventoryTransaction:
    """
    Take ``quantity`` units out of stock for a sale.

    Either the whole quantity is reserved or nothing is.

    Args:
        db: Database session (transaction owned by the caller)
        product_id: Product to reserve
        quantity: Units to reserve (>= 1)
        order_id: Order the units are sold to (optional)
        user_id: Buyer (optional)

    Returns:
        The ledger entry written for the reservation

    Raises:
        ValidationFailed: quantity is not a positive integer
        ProductNotFound: no such product
        InsufficientStock: fewer than ``quantity`` units are available
    """
    _require_positive(quantity)
    entry = _apply_delta(
        db, product_id, -quantity, TransactionType.SALE,
        sold_delta=quantity, reason=reason, order_id=order_id, user_id=user_id,
    )
    logger.info(f"Reserved {quantity} units of product {product_id} (stock now {entry.new_stock})")
    return entry


def release(
    db: Session,
    product_id: int,
    quantity: int,
    reason: str,
    order_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> InventoryTransaction:
    """
    Put ``quantity`` units back into stock (cancellation, refund, failed checkout).

    The inverse of ``reserve``: stock goes up and ``sold_count`` goes down in
    the same statement. Always succeeds for an existing product.
    """
    _require_positive(quantity)
    entry = _apply_delta(
        db, product_id, quantity, TransactionType.RETURN,
        sold_delta=-quantity, reason=reason, order_id=order_id, user_id=user_id,
    )
    logger.info(f"Released {quantity} units of product {product_id} ({reason})")
    return entry


def adjust(
    db: Session,
    product_id: int,
    delta: int,
    reason: str,
    user_id: Optional[int] = None,
) -> InventoryTransaction:
    """
    Manual stock correction by an operator. ``sold_count`` is left alone.

    Raises:
        ValidationFailed: ``delta`` is zero
        InsufficientStock: a negative ``delta`` would take stock below zero
    """
    if not isinstance(delta, int) or delta == 0:
        raise ValidationFailed("Adjustment delta must be a non-zero integer")
    if not reason:
        raise ValidationFailed("Adjustment reason is required")
    entry = _apply_delta(
        db, product_id, delta, TransactionType.ADJUSTMENT,
        reason=reason, user_id=user_id, system=False,
    )
    logger.info(f"Adjusted product {product_id} stock by {delta}: {reason}")
    return entry


def record_initial_stock(
    db: Session,
    product_id: int,
    quantity: int,
    user_id: Optional[int] = None,
) -> InventoryTransaction:
    """Stock a product for the first time."""
    _require_positive(quantity)
    return _apply_delta(
        db, product_id, quantity, TransactionType.INITIAL,
        reason="Initial stock", user_id=user_id,
    )


def ledger_balance(db: Session, product_id: int) -> int:
    """Sum of every ledger delta for a product."""
    return db.execute(
        select(func.coalesce(func.sum(InventoryTransaction.quantity_delta), 0))
        .where(InventoryTransaction.product_id == product_id)
    ).scalar_one()
