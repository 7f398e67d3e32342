"""
Shipment progression worker.

Simulates fulfilment: paid orders that have been confirmed for longer than
the processing delay are shipped. The worker keeps no state between runs;
each order is claimed with the state machine's compare-and-set before
anything else happens, so overlapping runs (in one process or many) never
ship an order twice or issue two tracking numbers.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import audit, config, state_machine
from .database import SessionLocal, unit_of_work
from .errors import InvalidTransition, ValidationFailed
from .models import Order, OrderStatus, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

SHIPPABLE_STATES = (OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value)


def find_shipment_candidates(db: Session, delay: int, batch_size: int, now: datetime) -> List[str]:
    """Ids of paid orders whose processing delay has elapsed, oldest confirmation first."""
    cutoff = now - timedelta(seconds=delay)
    return list(
        db.execute(
            select(Order.id)
            .where(
                Order.status.in_(SHIPPABLE_STATES),
                Order.payment_status == PaymentStatus.PAID.value,
                Order.shipped_at.is_(None),
                Order.confirmed_at <= cutoff,
            )
            .order_by(Order.confirmed_at.asc())
            .limit(batch_size)
        ).scalars()
    )


def _claim(db: Session, order_id: str) -> Optional[Order]:
    try:
        with unit_of_work(db):
            order = state_machine.get_order(db, order_id)
            if order.shipped_at is not None or order.status not in SHIPPABLE_STATES:
                return None
            state_machine.ship_order(db, order, reason="Order shipped", system=True)
    except InvalidTransition:
        logger.info(f"Order {order_id} was claimed by another run, skipping")
        return None
    db.refresh(order)
    return order


def _mark_notified(db: Session, order: Order) -> None:
    with unit_of_work(db):
        db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(shipment_notified_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    db.refresh(order)


def _notify_shipped(db: Session, order: Order, notifier) -> bool:
    if notifier is None:
        return False
    try:
        delivered = notifier.notify_order_shipped(order)
    except Exception as e:
        logger.error(f"Shipped notification for order {order.order_number} failed: {e}")
        return False
    if not delivered:
        logger.warning(f"Order {order.order_number} shipped but not notified")
        return False
    _mark_notified(db, order)
    return True


def run_shipment_cycle(
    session_factory=SessionLocal,
    notifier=None,
    delay: Optional[int] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Ship every eligible order once.

    Args:
        session_factory: Callable returning a new Session
        notifier: Receives ``notify_order_shipped`` for each order shipped by this run
        delay: Seconds an order must have been confirmed (defaults to SHIPMENT_PROCESSING_DELAY_SECONDS)
        batch_size: Maximum orders per run (defaults to SHIPMENT_BATCH_SIZE)
        now: Reference time (defaults to the current UTC time)

    Returns:
        Order numbers shipped by this run
    """
    delay = config.SHIPMENT_PROCESSING_DELAY_SECONDS if delay is None else delay
    batch_size = config.SHIPMENT_BATCH_SIZE if batch_size is None else batch_size
    now = now or utcnow()

    shipped = []
    db = session_factory()
    try:
        for order_id in find_shipment_candidates(db, delay, batch_size, now):
            order = _claim(db, order_id)
            if order is None:
                continue
            logger.info(f"Shipped order {order.order_number} with tracking number {order.tracking_number}")
            _notify_shipped(db, order, notifier)
            shipped.append(order.order_number)
    finally:
        db.close()
    return shipped


def find_unnotified_shipments(db: Session, limit: int = 100) -> List[Order]:
    """Shipped orders whose shipped notification never went out."""
    return list(
        db.execute(
            select(Order)
            .where(
                Order.status == OrderStatus.SHIPPED.value,
                Order.shipped_at.is_not(None),
                Order.shipment_notified_at.is_(None),
            )
            .order_by(Order.shipped_at.asc())
            .limit(limit)
        ).scalars()
    )


def resend_tracking_notification(db: Session, order_id: str, notifier) -> Order:
    """
    Send the shipped notification again for an already shipped order.

    Never claims or ships anything, so it is safe to call any number of times.

    Raises:
        OrderNotFound: no such order
        ValidationFailed: the order has no tracking number yet
    """
    order = state_machine.get_order(db, order_id)
    if order.shipped_at is None or not order.tracking_number:
        raise ValidationFailed(f"Order {order.order_number} has not been shipped")
    _notify_shipped(db, order, notifier)
    return order


def resend_unnotified_shipments(session_factory=SessionLocal, notifier=None) -> List[str]:
    """Retry the shipped notification for every shipped but unnotified order."""
    sent = []
    db = session_factory()
    try:
        for order in find_unnotified_shipments(db):
            if _notify_shipped(db, order, notifier):
                sent.append(order.order_number)
    finally:
        db.close()
    return sent


def check_low_stock(session_factory=SessionLocal) -> List[int]:
    """Log a warning for every active product at or below its low stock threshold."""
    db = session_factory()
    try:
        products = audit.low_stock_products(db)
        for product in products:
            logger.warning(
                f"Low stock: product {product.id} ({product.sku}) has {product.stock_quantity} units left "
                f"(threshold {product.low_stock_threshold})"
            )
        return [product.id for product in products]
    finally:
        db.close()


async def shipment_scheduler_loop(
    interval: Optional[int] = None,
    session_factory=SessionLocal,
    notifier=None,
):
    """Every ``interval`` seconds ship eligible orders, resend missed notifications and check low stock."""
    interval = config.SHIPMENT_WORKER_INTERVAL_SECONDS if interval is None else interval
    logger.info(f"Shipment worker started (every {interval}s)")
    while True:
        try:
            shipped = await asyncio.to_thread(run_shipment_cycle, session_factory, notifier)
            if shipped:
                logger.info(f"Shipment cycle shipped {len(shipped)} order(s)")
            resent = await asyncio.to_thread(resend_unnotified_shipments, session_factory, notifier)
            if resent:
                logger.info(f"Resent shipped notification for {len(resent)} order(s)")
            await asyncio.to_thread(check_low_stock, session_factory)
        except Exception as e:
            logger.error(f"Shipment cycle failed: {e}")
        await asyncio.sleep(interval)
