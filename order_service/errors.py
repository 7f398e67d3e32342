"""
Error taxonomy for the Order service.

Every error carries the HTTP status code the API answers with, so route
handlers can let them propagate to the single exception handler in
``main.py``.

    validation       -> ValidationFailed, ProductNotFound, OrderNotFound,
                        CartItemNotFound, EmptyCart
    concurrency      -> InvalidTransition
    business rules   -> InsufficientStock, CheckoutUnavailable,
                        OrderNotCancellable, PaymentProviderError
    infrastructure   -> TransientStoreError (the only retryable one)
"""
from typing import Any, Dict, List, Optional


class OrderServiceError(Exception):
    """Base class for all errors raised by the Order service."""
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def extra(self) -> Dict[str, Any]:
        """Additional fields included in the error response body."""
        return {}


class ValidationFailed(OrderServiceError):
    status_code = 400


class ProductNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class OrderNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class CartItemNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, item_id: int):
        super().__init__(f"Cart item {item_id} not found")
        self.item_id = item_id


class EmptyCart(OrderServiceError):
    status_code = 400

    def __init__(self):
        super().__init__("No items in cart to checkout")


class InvalidTransition(OrderServiceError):
    """The order is not in the expected state (stale read or illegal edge)."""
    status_code = 409

    def __init__(self, order_id: str, from_status: Optional[str], to_status: str):
        super().__init__(f"Invalid status transition for order {order_id}: {from_status} -> {to_status}")
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status

    def extra(self) -> Dict[str, Any]:
        return {"from_status": self.from_status, "to_status": self.to_status}


class InsufficientStock(OrderServiceError):
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available

    def extra(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "requested": self.requested, "available": self.available}


class CheckoutUnavailable(OrderServiceError):
    """Checkout failed; ``unavailable_items`` lists every line that could not be reserved."""
    status_code = 409

    def __init__(self, unavailable_items: List[Dict[str, Any]]):
        super().__init__("Some items are out of stock")
        self.unavailable_items = unavailable_items

    def extra(self) -> Dict[str, Any]:
        return {"unavailable_items": self.unavailable_items}


class OrderNotCancellable(OrderServiceError):
    status_code = 409

    def __init__(self, order_id: str, status: str):
        super().__init__(f"Order {order_id} cannot be cancelled in status '{status}'")
        self.order_id = order_id
        self.status = status

    def extra(self) -> Dict[str, Any]:
        return {"status": self.status}


class PaymentProviderError(OrderServiceError):
    status_code = 502


class TransientStoreError(OrderServiceError):
    """The store was unavailable; nothing was committed and the caller may retry."""
    status_code = 503
