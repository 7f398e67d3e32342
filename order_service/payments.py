"""
Payment reconciliation gateway.

The synchronous confirm call, provider webhooks and admin refunds all end up
in ``apply_payment_event``. The provider event id is inserted into
``applied_payment_events`` first, in the same transaction as every change
the event causes, so an event is applied at most once no matter how often
or in what order it is delivered.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, state_machine
from .clients.payment_provider import PaymentIntent, PaymentProvider
from .database import unit_of_work
from .errors import InvalidTransition, ValidationFailed
from .models import AppliedPaymentEvent, Order, OrderStatus, PaymentStatus, utcnow
from .schemas import PaymentEvent, PaymentEventReceipt, PaymentEventResult, PaymentOutcome

logger = logging.getLogger(__name__)

WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "charge.refunded": PaymentOutcome.REFUNDED,
}

INTENT_OUTCOMES = {
    "succeeded": PaymentOutcome.SUCCEEDED,
    "canceled": PaymentOutcome.FAILED,
}


def _receipt(
    event_id: str, result: PaymentEventResult, order: Optional[Order] = None
) -> PaymentEventReceipt:
    return PaymentEventReceipt(
        external_event_id=event_id,
        result=result,
        order_id=order.id if order is not None else None,
        order_status=order.status if order is not None else None,
        payment_status=order.payment_status if order is not None else None,
    )


def _set_payment(db: Session, order: Order, expected: PaymentStatus, values: Dict[str, Any]) -> None:
    """Compare-and-set the payment columns without touching the order status."""
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == expected.value)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(order.id, order.payment_status, values["payment_status"])
    db.expire(order)


def _apply_succeeded(db: Session, order: Order, event: PaymentEvent) -> PaymentEventResult:
    if order.payment_status != PaymentStatus.PENDING.value:
        logger.warning(
            f"Stale success event {event.external_event_id} for order {order.order_number} "
            f"({order.status}/{order.payment_status})"
        )
        return PaymentEventResult.STALE

    values = {"payment_status": PaymentStatus.PAID.value}
    if event.charge_id:
        values["payment_reference"] = event.charge_id
    if event.payment_intent_id:
        values["payment_intent_id"] = event.payment_intent_id

    if order.status != OrderStatus.PENDING.value:
        # Order left pending (e.g. cancelled) before the charge landed; keep the charge for refunds
        logger.warning(
            f"Payment {event.charge_id} captured for order {order.order_number} in status {order.status}, "
            f"order status kept"
        )
        _set_payment(db, order, PaymentStatus.PENDING, values)
        return PaymentEventResult.APPLIED

    state_machine.transition(
        db, order, OrderStatus.CONFIRMED,
        reason="Payment confirmed", system=True,
        expected_payment_status=PaymentStatus.PENDING.value, values=values,
    )
    return PaymentEventResult.APPLIED


def _apply_failed(db: Session, order: Order, event: PaymentEvent) -> PaymentEventResult:
    if order.payment_status != PaymentStatus.PENDING.value or order.status != OrderStatus.PENDING.value:
        logger.warning(
            f"Stale failure event {event.external_event_id} for order {order.order_number} "
            f"({order.status}/{order.payment_status})"
        )
        return PaymentEventResult.STALE

    state_machine.transition(
        db, order, OrderStatus.FAILED,
        reason="Payment failed", system=True,
        expected_payment_status=PaymentStatus.PENDING.value,
        values={"payment_status": PaymentStatus.FAILED.value},
    )
    return PaymentEventResult.APPLIED


def _apply_refunded(db: Session, order: Order, event: PaymentEvent) -> PaymentEventResult:
    if order.payment_status != PaymentStatus.PAID.value:
        logger.warning(
            f"Stale refund event {event.external_event_id} for order {order.order_number} "
            f"(payment {order.payment_status})"
        )
        return PaymentEventResult.STALE

    values = {"payment_status": PaymentStatus.REFUNDED.value}
    status = OrderStatus(order.status)
    if status == OrderStatus.DELIVERED:
        state_machine.transition(
            db, order, OrderStatus.REFUNDED, reason="Payment refunded", system=True,
            expected_payment_status=PaymentStatus.PAID.value, values=values,
        )
    elif status in state_machine.CANCELLABLE_STATES:
        # No edge to refunded before delivery; cancelling also puts the stock back
        state_machine.transition(
            db, order, OrderStatus.CANCELLED, reason="Payment refunded", system=True,
            expected_payment_status=PaymentStatus.PAID.value, values=values,
        )
    else:
        _set_payment(db, order, PaymentStatus.PAID, values)
        logger.info(f"Order {order.order_number} refunded while {status.value}, status kept")
    return PaymentEventResult.APPLIED


APPLIERS = {
    PaymentOutcome.SUCCEEDED: _apply_succeeded,
    PaymentOutcome.FAILED: _apply_failed,
    PaymentOutcome.REFUNDED: _apply_refunded,
}


def apply_payment_event(db: Session, event: PaymentEvent, notifier=None) -> PaymentEventReceipt:
    """
    Apply a payment provider event exactly once.

    Args:
        db: Database session
        event: Normalized payment event
        notifier: Receives ``notify_order_confirmed`` after a successful payment (optional)

    Returns:
        Receipt whose ``result`` is applied, duplicate, stale or unknown_order.
        Only ``applied`` changed anything besides the idempotency record.

    Raises:
        InvalidTransition: the order changed concurrently; nothing was written, retry
        TransientStoreError: the store was unavailable; nothing was written, retry
    """
    event_id = event.external_event_id
    recorded = db.get(AppliedPaymentEvent, event_id)
    if recorded is not None:
        logger.info(f"Payment event {event_id} already applied, ignoring")
        return _receipt(event_id, PaymentEventResult.DUPLICATE, crud.get_order(db, recorded.order_id or ""))

    order = None
    try:
        with unit_of_work(db):
            record = AppliedPaymentEvent(
                external_event_id=event_id,
                order_reference=event.order_reference,
                outcome=event.outcome.value,
                result=PaymentEventResult.APPLIED.value,
            )
            db.add(record)
            db.flush()

            order = crud.get_order_by_reference(db, event.order_reference)
            if order is None:
                logger.warning(f"Payment event {event_id} references unknown order {event.order_reference}")
                record.result = PaymentEventResult.UNKNOWN_ORDER.value
            else:
                record.order_id = order.id
                record.result = APPLIERS[event.outcome](db, order, event).value
            result = PaymentEventResult(record.result)
    except IntegrityError:
        # A concurrent delivery of the same event committed first
        recorded = db.get(AppliedPaymentEvent, event_id)
        if recorded is None:
            raise
        logger.info(f"Payment event {event_id} applied concurrently, ignoring")
        return _receipt(event_id, PaymentEventResult.DUPLICATE, crud.get_order(db, recorded.order_id or ""))

    if order is None:
        return _receipt(event_id, result)

    db.refresh(order)
    logger.info(f"Payment event {event_id} ({event.outcome.value}) on order {order.order_number}: {result.value}")
    if (
        notifier is not None
        and result == PaymentEventResult.APPLIED
        and event.outcome == PaymentOutcome.SUCCEEDED
        and order.status == OrderStatus.CONFIRMED.value
    ):
        notifier.notify_order_confirmed(order)
    return _receipt(event_id, result, order)


def create_payment_intent(db: Session, order_id: str, provider: PaymentProvider) -> PaymentIntent:
    """
    Start the provider payment for a pending order and remember the intent id.

    Raises:
        OrderNotFound: no such order
        ValidationFailed: the order is already paid or no longer payable
        PaymentProviderError: the provider rejected the request
    """
    order = state_machine.get_order(db, order_id)
    if order.payment_status == PaymentStatus.PAID.value:
        raise ValidationFailed("Order is already paid")
    if order.status != OrderStatus.PENDING.value:
        raise ValidationFailed(f"Order cannot be paid in status '{order.status}'")

    intent = provider.create_payment_intent(
        amount=order.total,
        currency=order.currency,
        metadata={"order_id": order.id, "order_number": order.order_number, "user_id": str(order.user_id)},
        description=f"Payment for order {order.order_number}",
        receipt_email=order.customer_email,
    )
    with unit_of_work(db):
        order.payment_intent_id = intent.intent_id
    logger.info(f"Created payment intent {intent.intent_id} for order {order.order_number}")
    return intent


def confirm_payment(
    db: Session,
    order_id: str,
    payment_intent_id: str,
    provider: PaymentProvider,
    notifier=None,
) -> PaymentEventReceipt:
    """
    Synchronous confirmation after the client-side payment step.

    The intent is fetched from the provider and turned into an event keyed by
    ``<intent id>:<status>``, so confirming twice, or confirming after the
    webhook already did, changes nothing.

    Raises:
        OrderNotFound: no such order
        ValidationFailed: the intent belongs to another order or is not settled yet
        PaymentProviderError: the provider could not be reached
    """
    order = state_machine.get_order(db, order_id)
    intent = provider.retrieve_payment_intent(payment_intent_id)

    intent_order = intent.metadata.get("order_id")
    if intent_order and intent_order != order.id:
        raise ValidationFailed("Payment intent does not belong to this order")
    outcome = INTENT_OUTCOMES.get(intent.status)
    if outcome is None:
        raise ValidationFailed(f"Payment not completed (status: {intent.status})")

    event = PaymentEvent(
        external_event_id=f"{intent.intent_id}:{intent.status}",
        order_reference=order.id,
        outcome=outcome,
        charge_id=intent.charge_id,
        payment_intent_id=intent.intent_id,
    )
    return apply_payment_event(db, event, notifier)


def event_from_webhook(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Normalize a provider webhook event.

    Returns:
        The payment event, or None for event types that are not reconciled
    """
    event_type = payload.get("type")
    outcome = WEBHOOK_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info(f"Unhandled webhook event type {event_type}")
        return None

    obj = payload.get("data", {}).get("object", {})
    metadata = obj.get("metadata") or {}
    if outcome == PaymentOutcome.REFUNDED:
        charge_id = obj.get("id")
        intent_id = obj.get("payment_intent")
    else:
        charge_id = obj.get("latest_charge")
        intent_id = obj.get("id")

    reference = metadata.get("order_id") or charge_id or intent_id
    if not reference:
        raise ValidationFailed(f"Webhook event {payload.get('id')} carries no order reference")
    return PaymentEvent(
        external_event_id=payload["id"],
        order_reference=reference,
        outcome=outcome,
        charge_id=charge_id,
        payment_intent_id=intent_id,
    )


def request_refund(
    db: Session,
    order_id: str,
    provider: PaymentProvider,
    reason: Optional[str] = None,
    user_id: Optional[int] = None,
) -> PaymentEventReceipt:
    """
    Refund a paid order through the provider and apply the refund.

    The refund is applied under the provider's refund id, so the
    ``charge.refunded`` webhook that follows is a stale no-op.

    Raises:
        OrderNotFound: no such order
        ValidationFailed: the order is not paid or has no charge to refund
        PaymentProviderError: the provider rejected the refund
    """
    order = state_machine.get_order(db, order_id)
    if order.payment_status != PaymentStatus.PAID.value:
        raise ValidationFailed("Order is not paid")
    if not order.payment_reference:
        raise ValidationFailed("No payment found for this order")

    refund = provider.refund(
        order.payment_reference,
        idempotency_key=f"refund-{order.id}",
        metadata={"order_id": order.id, "order_number": order.order_number, "reason": reason or ""},
    )
    logger.info(f"Refund {refund.refund_id} requested for order {order.order_number} by user {user_id}")
    event = PaymentEvent(
        external_event_id=refund.refund_id,
        order_reference=order.id,
        outcome=PaymentOutcome.REFUNDED,
        charge_id=order.payment_reference,
    )
    return apply_payment_event(db, event)
