"""Shared fixtures: a fresh SQLite database per test, catalog and order builders, fake collaborators."""

import json
import os
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from order_service import cart, ledger, models, payments
from order_service.checkout import checkout
from order_service.clients.payment_provider import PaymentIntent, PaymentProvider, Refund
from order_service.database import Base, make_engine, unit_of_work
from order_service.errors import ValidationFailed
from order_service.schemas import CheckoutRequest, PaymentEvent, PaymentOutcome

ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


class RecordingNotifier:
    """Notifier that records what would have been sent."""

    def __init__(self, deliver=True):
        self.deliver = deliver
        self.confirmed = []
        self.shipped = []

    def notify_order_confirmed(self, order):
        self.confirmed.append(order.order_number)
        return self.deliver

    def notify_order_shipped(self, order):
        self.shipped.append((order.order_number, order.tracking_number))
        return self.deliver


class FakePaymentProvider(PaymentProvider):
    """In-memory payment provider."""

    def __init__(self):
        self.intents = {}
        self.refunds = []

    def add_intent(self, status="succeeded", order_id=None, charge_id=None):
        intent_id = f"pi_{uuid.uuid4().hex[:12]}"
        self.intents[intent_id] = PaymentIntent(
            intent_id=intent_id,
            status=status,
            charge_id=charge_id or f"ch_{uuid.uuid4().hex[:12]}",
            client_secret=f"{intent_id}_secret",
            metadata={"order_id": order_id} if order_id else {},
        )
        return intent_id

    def create_payment_intent(self, amount, currency, metadata, description=None, receipt_email=None):
        intent_id = self.add_intent(status="requires_payment_method", order_id=metadata.get("order_id"))
        return self.intents[intent_id]

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def refund(self, charge_id, idempotency_key, reason=None, metadata=None):
        refund = Refund(refund_id=f"re_{len(self.refunds) + 1}", status="succeeded", charge_id=charge_id)
        self.refunds.append(refund)
        return refund

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise ValidationFailed("Webhook signature verification failed")
        return json.loads(payload)


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def failing_notifier():
    """Notifier whose deliveries all fail."""
    return RecordingNotifier(deliver=False)


@pytest.fixture()
def provider():
    return FakePaymentProvider()


@pytest.fixture()
def make_product(db):
    """Create a product and stock it through the ledger; returns its id."""
    counter = {"n": 0}

    def _make(stock=10, price="25.00", name=None, is_active=True):
        counter["n"] += 1
        product = models.Product(
            sku=f"SKU-{counter['n']:03d}",
            name=name or f"Product {counter['n']}",
            price=Decimal(price),
            is_active=is_active,
            stock_quantity=0,
        )
        db.add(product)
        db.commit()
        if stock:
            with unit_of_work(db):
                ledger.record_initial_stock(db, product.id, stock)
        return product.id

    return _make


def checkout_request(**overrides):
    data = {"shipping_address": ADDRESS, "billing_address": ADDRESS}
    data.update(overrides)
    return CheckoutRequest(**data)


@pytest.fixture()
def place_order(db):
    """Fill a user's cart and check it out; returns the order."""

    def _place(lines, user_id=1, session=None, policy=None):
        session = session or db
        for product_id, quantity in lines:
            cart.add_to_cart(session, user_id, product_id, quantity)
        return checkout(session, user_id, checkout_request(), policy)

    return _place


@pytest.fixture()
def pay_order(db):
    """Apply a succeeded payment event to an order; returns the receipt."""

    def _pay(order, event_id=None, charge_id="ch_test", notifier=None):
        event = PaymentEvent(
            external_event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
            order_reference=order.id,
            outcome=PaymentOutcome.SUCCEEDED,
            charge_id=charge_id,
        )
        return payments.apply_payment_event(db, event, notifier)

    return _pay


@pytest.fixture()
def product_state(db):
    """Fresh (stock_quantity, sold_count) of a product."""

    def _state(product_id):
        db.expire_all()
        product = db.get(models.Product, product_id)
        return product.stock_quantity, product.sold_count

    return _state
