"""
Order Service API

This module implements a FastAPI-based microservice that turns carts into
orders, reconciles payments and keeps inventory consistent. It is a thin
layer over the domain modules: every route delegates to one operation and
lets ``OrderServiceError`` propagate to a single exception handler.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    /cart: Cart line management
    POST /checkout: Convert the selected cart lines into an order
    /orders: Order listing, detail, timeline, cancellation and admin status changes
    /payments: Payment intents, synchronous confirmation, provider webhooks
    /inventory: Admin stock adjustments, ledger view, reconciliation and low stock report

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import audit, auth, cart, config, crud, ledger, models, payments, pricing, schemas, state_machine, worker
from .checkout import checkout
from .clients.notifications import WebhookNotifier
from .clients.payment_provider import PaymentProvider, StripePaymentProvider
from .database import engine, get_db, unit_of_work
from .errors import OrderServiceError, ProductNotFound

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="orders-service")


def get_notifier() -> WebhookNotifier:
    return WebhookNotifier()


def get_payment_provider() -> PaymentProvider:
    return StripePaymentProvider()


def get_pricing_policy() -> pricing.PricingPolicy:
    return pricing.default_policy()


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, **exc.extra()})


@app.on_event("startup")
def create_tables():
    models.Base.metadata.create_all(bind=engine)


@app.on_event("startup")
async def start_shipment_worker():
    app.state.shipment_worker = None
    if config.RUN_SHIPMENT_WORKER:
        app.state.shipment_worker = asyncio.create_task(worker.shipment_scheduler_loop(notifier=get_notifier()))


@app.on_event("shutdown")
async def stop_shipment_worker():
    task = getattr(app.state, "shipment_worker", None)
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Shipment worker stopped")


def _visible_order(db: Session, order_id: str, current_user: auth.CurrentUser) -> models.Order:
    return auth.ensure_order_access(state_machine.get_order(db, order_id), current_user)


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# ---------------------------------------------------------------- cart

def _cart_response(db: Session, user_id: int) -> schemas.Cart:
    contents = cart.get_cart(db, user_id)
    return schemas.Cart(
        items=[schemas.CartItem.model_validate(line) for line in contents["items"]],
        subtotal=contents["subtotal"],
        total_items=contents["total_items"],
    )


@app.get("/cart", response_model=schemas.Cart)
def get_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Current user's cart; the subtotal only counts selected lines."""
    return _cart_response(db, current_user.id)


@app.post("/cart/items", response_model=schemas.CartItem, status_code=status.HTTP_201_CREATED)
def add_cart_item(
    item: schemas.CartItemCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return cart.add_to_cart(db, current_user.id, item.product_id, item.quantity, item.notes)


@app.put("/cart/items/{item_id}", response_model=schemas.CartItem)
def update_cart_item(
    item_id: int,
    item: schemas.CartItemUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return cart.update_quantity(db, current_user.id, item_id, item.quantity, item.notes)


@app.patch("/cart/items/{item_id}/select", response_model=schemas.CartItem)
def select_cart_item(
    item_id: int,
    selection: schemas.CartItemSelect,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return cart.set_selected(db, current_user.id, item_id, selection.is_selected)


@app.delete("/cart/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_cart_item(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    cart.remove_line(db, current_user.id, item_id)


@app.delete("/cart", status_code=status.HTTP_204_NO_CONTENT)
def clear_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    cart.clear_cart(db, current_user.id)


# ---------------------------------------------------------------- checkout & orders

@app.post("/checkout", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def checkout_cart(
    request: schemas.CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
    policy: pricing.PricingPolicy = Depends(get_pricing_policy),
):
    """
    Convert the selected cart lines into a pending order.

    Raises:
        EmptyCart: 400 if nothing is selected
        CheckoutUnavailable: 409 with every line that could not be reserved
    """
    if request.customer_email is None:
        request = request.model_copy(update={"customer_email": current_user.email})
    return checkout(db, current_user.id, request, policy)


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    skip: int = 0,
    limit: int = 100,
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders, newest first (authenticated users see their own, admins see all).

    Args:
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
        order_status: Only orders in this status
        payment_status: Only orders with this payment status
        user_id: Only orders of this user (admins only)
    """
    owner = user_id if current_user.is_admin else current_user.id
    return crud.get_orders(
        db, skip=skip, limit=min(limit, 100), user_id=owner,
        status=order_status, payment_status=payment_status,
    )


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Retrieve a specific order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        OrderNotFound: 404 if order not found
    """
    return _visible_order(db, order_id, current_user)


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderStatusHistory])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Status history of an order, oldest first (owner or admin)."""
    order = _visible_order(db, order_id, current_user)
    return audit.order_timeline(db, order.id)


@app.post("/orders/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(
    order_id: str,
    cancel: schemas.OrderCancel,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order and restock its items (owner or admin).

    Raises:
        OrderNotCancellable: 409 once the order has shipped or reached a terminal state
    """
    order = _visible_order(db, order_id, current_user)
    return state_machine.cancel_order(
        db, order.id, reason=cancel.reason, user_id=current_user.id, by_admin=current_user.is_admin,
    )


@app.put("/orders/{order_id}/status", response_model=schemas.Order)
def update_order_status(
    order_id: str,
    update: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Move an order along the state machine (admin only).

    Raises:
        ValidationFailed: 400 for an unknown status
        InvalidTransition: 409 for an edge the state machine does not allow
    """
    return state_machine.admin_set_status(
        db, order_id, update.status, notes=update.notes,
        user_id=current_user.id, tracking_url=update.tracking_url,
    )


@app.post("/orders/{order_id}/refund", response_model=schemas.PaymentEventReceipt)
def refund_order(
    order_id: str,
    refund: schemas.RefundRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Refund a paid order through the payment provider (admin only)."""
    return payments.request_refund(db, order_id, provider, reason=refund.reason, user_id=current_user.id)


@app.post("/orders/{order_id}/resend-tracking", response_model=schemas.Order)
def resend_tracking(
    order_id: str,
    db: Session = Depends(get_db),
    notifier: WebhookNotifier = Depends(get_notifier),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Send the shipped notification again (admin only)."""
    return worker.resend_tracking_notification(db, order_id, notifier)


# ---------------------------------------------------------------- payments

@app.post("/payments/intent", response_model=schemas.PaymentIntentResponse)
def create_payment_intent(
    body: schemas.PaymentIntentCreate,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    order = _visible_order(db, body.order_id, current_user)
    intent = payments.create_payment_intent(db, order.id, provider)
    return schemas.PaymentIntentResponse(
        payment_intent_id=intent.intent_id, client_secret=intent.client_secret, status=intent.status,
    )


@app.post("/payments/confirm", response_model=schemas.PaymentEventReceipt)
def confirm_payment(
    body: schemas.PaymentConfirm,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: WebhookNotifier = Depends(get_notifier),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Confirm a payment right after the client-side payment step (owner or admin)."""
    order = _visible_order(db, body.order_id, current_user)
    return payments.confirm_payment(db, order.id, body.payment_intent_id, provider, notifier)


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: WebhookNotifier = Depends(get_notifier),
):
    """
    Payment provider webhook.

    Duplicate, stale and unknown-order events are acknowledged with 200 so the
    provider stops retrying; only store failures (503) and lost races (409)
    ask for a retry.
    """
    payload = await request.body()
    event = provider.construct_event(payload, stripe_signature)
    payment_event = payments.event_from_webhook(event)
    if payment_event is None:
        return {"received": True}
    receipt = await run_in_threadpool(payments.apply_payment_event, db, payment_event, notifier)
    return {"received": True, "result": receipt.result.value}


@app.post("/payments/events", response_model=schemas.PaymentEventReceipt)
def apply_payment_event(
    event: schemas.PaymentEvent,
    db: Session = Depends(get_db),
    notifier: WebhookNotifier = Depends(get_notifier),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Apply a normalized payment event, e.g. when replaying provider events (admin only)."""
    return payments.apply_payment_event(db, event, notifier)


# ---------------------------------------------------------------- inventory

@app.post("/inventory/{product_id}/adjust", response_model=schemas.InventoryTransaction)
def adjust_stock(
    product_id: int,
    adjustment: schemas.StockAdjustment,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Manual stock correction (admin only).

    Raises:
        InsufficientStock: 409 if the adjustment would take stock below zero
    """
    with unit_of_work(db):
        entry = ledger.adjust(db, product_id, adjustment.delta, adjustment.reason, user_id=current_user.id)
    db.refresh(entry)
    return entry


@app.get("/inventory/low-stock", response_model=List[schemas.LowStockProduct])
def get_low_stock(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Active products at or below their low stock threshold (admin only)."""
    return audit.low_stock_products(db)


@app.get("/inventory/{product_id}/transactions", response_model=List[schemas.InventoryTransaction])
def get_stock_transactions(
    product_id: int,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Ledger rows for a product, oldest first (admin only)."""
    if crud.get_product(db, product_id) is None:
        raise ProductNotFound(product_id)
    return audit.inventory_history(db, product_id, skip=skip, limit=limit)


@app.get("/inventory/{product_id}/reconciliation", response_model=schemas.StockReconciliation)
def reconcile_stock(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Compare cached stock with the ledger balance (admin only)."""
    return audit.verify_stock(db, product_id)
