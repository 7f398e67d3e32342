"""
Enhanced validation utilities for the Order service.

Provides business rule validation beyond schema validation. Validators
return ``(is_valid, error_message)`` and never touch the database.
"""
from decimal import Decimal
from typing import Iterable, List, Tuple

from .models import CartItem

MAX_LINES_PER_ORDER = 100
MAX_QUANTITY_PER_LINE = 10000
MAX_UNIT_PRICE = Decimal("1000000")
CENT = Decimal("0.01")


def validate_quantity(quantity: int) -> Tuple[bool, str]:
    """
    Validate a cart or order line quantity.

    Args:
        quantity: Requested quantity

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        return False, "Quantity must be an integer"
    if quantity <= 0:
        return False, "Quantity must be positive"
    if quantity > MAX_QUANTITY_PER_LINE:
        return False, f"Quantity exceeds maximum ({MAX_QUANTITY_PER_LINE})"
    return True, ""


def validate_cart_lines(lines: List[CartItem]) -> Tuple[bool, str]:
    """
    Validate the selected cart lines before checkout.

    Args:
        lines: Selected cart lines, with products loaded

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(lines) > MAX_LINES_PER_ORDER:
        return False, f"Order cannot contain more than {MAX_LINES_PER_ORDER} items"

    product_ids = [line.product_id for line in lines]
    if len(product_ids) != len(set(product_ids)):
        return False, "Cart contains duplicate products"

    for line in lines:
        ok, message = validate_quantity(line.quantity)
        if not ok:
            return False, f"Product {line.product_id}: {message}"
        price = Decimal(str(line.product.price))
        if price < 0:
            return False, f"Product {line.product_id}: price cannot be negative"
        if price > MAX_UNIT_PRICE:
            return False, f"Product {line.product_id}: price exceeds maximum (1,000,000)"

    return True, ""


def validate_order_total(
    subtotal: Decimal,
    tax_amount: Decimal,
    shipping_amount: Decimal,
    discount_amount: Decimal,
    total: Decimal,
) -> Tuple[bool, str]:
    """
    Validate that the order total equals the sum of its components.

    Returns:
        Tuple of (is_valid, error_message)
    """
    components = (subtotal, tax_amount, shipping_amount, discount_amount, total)
    if any(Decimal(str(value)) < 0 for value in components):
        return False, "Order amounts cannot be negative"

    calculated = (
        Decimal(str(subtotal)) + Decimal(str(tax_amount))
        + Decimal(str(shipping_amount)) - Decimal(str(discount_amount))
    ).quantize(CENT)
    if calculated != Decimal(str(total)).quantize(CENT):
        return False, f"Order total mismatch: calculated ${calculated}, claimed ${total}"

    return True, ""


def validate_line_totals(items: Iterable) -> Tuple[bool, str]:
    """Validate that every order item's total is unit price times quantity."""
    for item in items:
        expected = (Decimal(str(item.unit_price)) * item.quantity).quantize(CENT)
        if Decimal(str(item.total_price)).quantize(CENT) != expected:
            return False, f"Product {item.product_id}: line total mismatch"
    return True, ""
