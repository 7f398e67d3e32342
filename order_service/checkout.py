"""
Cart snapshot builder: turns the selected cart lines into a pending order.

The whole conversion is one transaction. Stock is reserved line by line
through the ledger in product-id order; if any line cannot be reserved the
transaction is rolled back, which undoes every reservation made by this
attempt, and every unavailable line is reported together.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from . import crud, ledger, pricing, schemas, state_machine
from .database import unit_of_work
from .errors import (
    CheckoutUnavailable,
    EmptyCart,
    InsufficientStock,
    ProductNotFound,
    ValidationFailed,
)
from .models import CartItem, Order, OrderItem
from .validators import validate_cart_lines, validate_line_totals, validate_order_total

logger = logging.getLogger(__name__)


def _snapshot(line: CartItem) -> OrderItem:
    product = line.product
    unit_price = pricing.money(product.price)
    return OrderItem(
        product_id=product.id,
        quantity=line.quantity,
        unit_price=unit_price,
        total_price=pricing.money(unit_price * line.quantity),
        product_snapshot={
            "name": product.name,
            "sku": product.sku,
            "price": str(unit_price),
            "image": product.image_url,
        },
    )


def _unavailable(line: CartItem, available: int) -> Dict[str, Any]:
    return {
        "product_id": line.product_id,
        "product_name": line.product.name if line.product else None,
        "requested_quantity": line.quantity,
        "available_quantity": available,
    }


def checkout(
    db: Session,
    user_id: int,
    request: schemas.CheckoutRequest,
    pricing_policy: Optional[pricing.PricingPolicy] = None,
) -> Order:
    """
    Convert the user's selected cart lines into a ``pending`` order.

    Args:
        db: Database session
        user_id: Buyer
        request: Addresses, payment method and notes for the order
        pricing_policy: Tax/shipping/discount policy (defaults to the configured flat rate)

    Returns:
        The created order with its items

    Raises:
        EmptyCart: no selected, unexpired cart lines
        ValidationFailed: the cart lines or the computed total are invalid
        CheckoutUnavailable: one or more lines could not be reserved; nothing was written
    """
    policy = pricing_policy or pricing.default_policy()

    with unit_of_work(db):
        lines: List[CartItem] = crud.get_cart_items(db, user_id, selected_only=True)
        if not lines:
            raise EmptyCart()
        ok, message = validate_cart_lines(lines)
        if not ok:
            raise ValidationFailed(message)
        lines.sort(key=lambda line: line.product_id)

        items = [_snapshot(line) for line in lines]
        ok, message = validate_line_totals(items)
        if not ok:
            raise ValidationFailed(message)
        subtotal = sum((item.total_price for item in items), Decimal("0"))
        amounts = pricing.price_order(subtotal, policy)
        ok, message = validate_order_total(
            amounts["subtotal"], amounts["tax_amount"], amounts["shipping_amount"],
            amounts["discount_amount"], amounts["total"],
        )
        if not ok:
            raise ValidationFailed(message)

        # The order row must exist before ledger rows can reference it
        order = state_machine.create_order(
            db,
            user_id=user_id,
            items=items,
            pricing=amounts,
            shipping_address=request.shipping_address.model_dump(),
            billing_address=request.billing_address.model_dump(),
            payment_method=request.payment_method.value,
            customer_email=request.customer_email,
            notes=request.notes,
        )

        unavailable = []
        for line in lines:
            if not line.product.is_active:
                unavailable.append(_unavailable(line, 0))
                continue
            try:
                ledger.reserve(
                    db, line.product_id, line.quantity,
                    order_id=order.id, user_id=user_id,
                    reason=f"Order {order.order_number}",
                )
            except InsufficientStock as e:
                unavailable.append(_unavailable(line, e.available))
            except ProductNotFound:
                unavailable.append(_unavailable(line, 0))

        if unavailable:
            logger.warning(
                f"Checkout for user {user_id} rejected, {len(unavailable)} line(s) unavailable"
            )
            raise CheckoutUnavailable(unavailable)

        db.execute(
            delete(CartItem)
            .where(CartItem.id.in_([line.id for line in lines]))
            .execution_options(synchronize_session=False)
        )

    db.refresh(order)
    logger.info(f"User {user_id} checked out order {order.order_number} ({len(items)} items)")
    return order
