"""
Audit trail: order status history and inventory movements.

Both tables are append-only. ``record_status_change`` is the only code path
that writes ``order_status_history``; the ledger module is the only one that
writes ``inventory_transactions``. Everything else here is read-side.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import ledger
from .models import InventoryTransaction, OrderStatus, OrderStatusHistory, Product
from .errors import ProductNotFound

logger = logging.getLogger(__name__)


def record_status_change(
    db: Session,
    order_id: str,
    from_status: Optional[str],
    to_status: str,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    system: bool = False,
) -> OrderStatusHistory:
    """
    Append one row to the order's status history.

    Args:
        db: Database session (transaction owned by the caller)
        order_id: Order identifier
        from_status: Previous status, None for the creation entry
        to_status: New status
        reason: Why the status changed (optional)
        notes: Free-form operator notes (optional)
        user_id: User who triggered the change (optional)
        system: True when the system, not a person, made the change
    """
    entry = OrderStatusHistory(
        order_id=order_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        notes=notes,
        user_id=user_id,
        is_system_generated=system,
    )
    db.add(entry)
    return entry


def order_timeline(db: Session, order_id: str) -> List[OrderStatusHistory]:
    """Status history of an order, oldest first."""
    return list(
        db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.asc(), OrderStatusHistory.id.asc())
        ).scalars()
    )


def inventory_history(
    db: Session,
    product_id: int,
    skip: int = 0,
    limit: int = 100,
) -> List[InventoryTransaction]:
    """Ledger rows for a product, oldest first, with pagination."""
    return list(
        db.execute(
            select(InventoryTransaction)
            .where(InventoryTransaction.product_id == product_id)
            .order_by(InventoryTransaction.id.asc())
            .offset(skip)
            .limit(limit)
        ).scalars()
    )


def is_valid_walk(statuses: Iterable[str]) -> bool:
    """
    True if ``statuses`` (the to_status values of a history, in order) is a
    walk of the order state machine starting at ``pending``.
    """
    from .state_machine import can_transition

    previous = None
    for status in statuses:
        if previous is None:
            if status != OrderStatus.PENDING.value:
                return False
        elif not can_transition(previous, status):
            return False
        previous = status
    return True


def verify_order_history(db: Session, order_id: str) -> bool:
    """Check that an order's recorded history is a legal walk and that rows chain together."""
    rows = order_timeline(db, order_id)
    for earlier, later in zip(rows, rows[1:]):
        if later.from_status != earlier.to_status:
            logger.warning(f"Order {order_id} history is broken between rows {earlier.id} and {later.id}")
            return False
    return is_valid_walk(row.to_status for row in rows)


def verify_stock(db: Session, product_id: int) -> dict:
    """
    Compare a product's cached ``stock_quantity`` with the sum of its ledger.

    Returns:
        dict with product_id, stock_quantity, ledger_balance, transaction_count, consistent
    """
    stock = db.execute(
        select(Product.stock_quantity).where(Product.id == product_id)
    ).scalar_one_or_none()
    if stock is None:
        raise ProductNotFound(product_id)

    balance = ledger.ledger_balance(db, product_id)
    count = db.execute(
        select(func.count(InventoryTransaction.id)).where(InventoryTransaction.product_id == product_id)
    ).scalar_one()

    consistent = stock == balance
    if not consistent:
        logger.error(f"Stock drift on product {product_id}: cached {stock}, ledger {balance}")
    return {
        "product_id": product_id,
        "stock_quantity": stock,
        "ledger_balance": balance,
        "transaction_count": count,
        "consistent": consistent,
    }


def low_stock_products(db: Session) -> List[Product]:
    """Active products at or below their low stock threshold, emptiest first."""
    return list(
        db.execute(
            select(Product)
            .where(Product.is_active.is_(True), Product.stock_quantity <= Product.low_stock_threshold)
            .order_by(Product.stock_quantity.asc(), Product.id.asc())
        ).scalars()
    )
