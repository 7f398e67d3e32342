"""Checkout tests.

Covers:
- a successful checkout creates a pending order with snapshots, reserves stock and clears the cart
- every unavailable line is reported and nothing is written when any line fails
- totals always equal the sum of their components
- two buyers racing for the last unit: exactly one order
"""

import threading
from decimal import Decimal

import pytest

from order_service import audit, cart, crud, models
from order_service.checkout import checkout
from order_service.errors import CheckoutUnavailable, EmptyCart
from order_service.pricing import FlatRatePricing
from order_service.schemas import CheckoutRequest

ADDRESS = {"street": "1 Main St", "city": "Springfield", "postal_code": "62701", "country": "US"}


def _request():
    return CheckoutRequest(shipping_address=ADDRESS, billing_address=ADDRESS, customer_email="buyer@example.com")


class TestCheckout:
    def test_creates_pending_order(self, db, make_product, product_state):
        mug = make_product(stock=5, price="8.00", name="Mug")
        tee = make_product(stock=5, price="20.00", name="Tee")
        cart.add_to_cart(db, 1, mug, 2)
        cart.add_to_cart(db, 1, tee, 1)

        order = checkout(db, 1, _request())

        assert order.status == models.OrderStatus.PENDING.value
        assert order.payment_status == models.PaymentStatus.PENDING.value
        assert order.order_number.startswith("ORD-")
        assert order.subtotal == Decimal("36.00")
        assert order.total == Decimal("36.00")
        assert order.customer_email == "buyer@example.com"
        assert order.shipping_address["city"] == "Springfield"
        assert [(item.product_id, item.quantity) for item in order.items] == [(mug, 2), (tee, 1)]
        assert order.items[0].product_snapshot["name"] == "Mug"
        assert order.items[0].total_price == Decimal("16.00")

        assert product_state(mug) == (3, 2)
        assert product_state(tee) == (4, 1)
        assert crud.get_cart_items(db, 1) == []

    def test_first_history_row_has_no_from_status(self, db, make_product, place_order):
        product_id = make_product(stock=5)
        order = place_order([(product_id, 1)])

        timeline = audit.order_timeline(db, order.id)

        assert [(row.from_status, row.to_status) for row in timeline] == [(None, "pending")]
        assert timeline[0].is_system_generated is True

    def test_ledger_rows_reference_the_order(self, db, make_product, place_order):
        product_id = make_product(stock=5)
        order = place_order([(product_id, 2)])

        rows = audit.inventory_history(db, product_id)

        assert rows[-1].order_id == order.id
        assert rows[-1].transaction_type == models.TransactionType.SALE.value
        assert rows[-1].quantity_delta == -2

    def test_only_selected_lines_are_checked_out(self, db, make_product, product_state):
        kept = make_product(stock=5)
        bought = make_product(stock=5)
        line = cart.add_to_cart(db, 1, kept, 1)
        cart.add_to_cart(db, 1, bought, 1)
        cart.set_selected(db, 1, line.id, False)

        order = checkout(db, 1, _request())

        assert [item.product_id for item in order.items] == [bought]
        assert product_state(kept) == (5, 0)
        assert [line.product_id for line in crud.get_cart_items(db, 1)] == [kept]

    def test_empty_cart(self, db):
        with pytest.raises(EmptyCart):
            checkout(db, 1, _request())

    def test_pricing_policy_components_sum_to_total(self, db, make_product):
        product_id = make_product(stock=5, price="19.99")
        cart.add_to_cart(db, 1, product_id, 3)

        order = checkout(db, 1, _request(), FlatRatePricing(tax_rate=Decimal("0.10"), shipping_amount=Decimal("5")))

        assert order.subtotal == Decimal("59.97")
        assert order.tax_amount == Decimal("6.00")
        assert order.shipping_amount == Decimal("5.00")
        assert order.total == order.subtotal + order.tax_amount + order.shipping_amount - order.discount_amount

    def test_snapshot_survives_catalog_changes(self, db, make_product, place_order):
        product_id = make_product(stock=5, price="10.00", name="Lamp")
        order = place_order([(product_id, 1)])

        product = db.get(models.Product, product_id)
        product.name = "Renamed lamp"
        product.price = Decimal("99.00")
        db.commit()

        db.expire_all()
        item = crud.get_order(db, order.id).items[0]
        assert item.unit_price == Decimal("10.00")
        assert item.product_snapshot["name"] == "Lamp"


class TestUnavailableLines:
    def test_every_unavailable_line_is_reported_and_nothing_is_written(self, db, make_product, product_state):
        available = make_product(stock=5, name="Available")
        short_a = make_product(stock=3, name="Short A")
        short_b = make_product(stock=2, name="Short B")
        for product_id in (available, short_a, short_b):
            cart.add_to_cart(db, 1, product_id, 1)

        # Stock drops after the lines were added to the cart
        for product_id, quantity in ((short_a, 3), (short_b, 2)):
            line = [line for line in crud.get_cart_items(db, 1) if line.product_id == product_id][0]
            line.quantity = quantity + 1
        db.commit()

        with pytest.raises(CheckoutUnavailable) as exc_info:
            checkout(db, 1, _request())

        unavailable = exc_info.value.unavailable_items
        assert [item["product_id"] for item in unavailable] == [short_a, short_b]
        assert unavailable[0] == {
            "product_id": short_a,
            "product_name": "Short A",
            "requested_quantity": 4,
            "available_quantity": 3,
        }
        assert product_state(available) == (5, 0)
        assert product_state(short_a) == (3, 0)
        assert crud.get_orders(db) == []
        assert len(crud.get_cart_items(db, 1)) == 3
        assert audit.verify_stock(db, available)["consistent"] is True

    def test_deactivated_product_is_unavailable(self, db, make_product):
        product_id = make_product(stock=5)
        cart.add_to_cart(db, 1, product_id, 1)
        db.get(models.Product, product_id).is_active = False
        db.commit()

        with pytest.raises(CheckoutUnavailable) as exc_info:
            checkout(db, 1, _request())

        assert exc_info.value.unavailable_items[0]["available_quantity"] == 0

    def test_deactivated_and_short_lines_are_reported_together(self, db, make_product, product_state):
        retired = make_product(stock=5, name="Retired")
        short = make_product(stock=2, name="Short")
        cart.add_to_cart(db, 1, retired, 1)
        cart.add_to_cart(db, 1, short, 2)
        db.get(models.Product, retired).is_active = False
        line = [line for line in crud.get_cart_items(db, 1) if line.product_id == short][0]
        line.quantity = 3
        db.commit()

        with pytest.raises(CheckoutUnavailable) as exc_info:
            checkout(db, 1, _request())

        unavailable = exc_info.value.unavailable_items
        assert [(item["product_id"], item["available_quantity"]) for item in unavailable] == [
            (retired, 0), (short, 2),
        ]
        assert product_state(short) == (2, 0)
        assert crud.get_orders(db) == []


class TestLastUnitRace:
    def test_two_buyers_one_unit(self, db, session_factory, make_product, product_state):
        """Product X has stock 1 and two users check it out at the same time."""
        product_id = make_product(stock=1)
        for user_id in (1, 2):
            cart.add_to_cart(db, user_id, product_id, 1)

        barrier = threading.Barrier(2)
        results = {}

        def buy(user_id):
            session = session_factory()
            try:
                barrier.wait()
                results[user_id] = checkout(session, user_id, _request()).status
            except CheckoutUnavailable as e:
                results[user_id] = e
            finally:
                session.close()

        threads = [threading.Thread(target=buy, args=(user_id,)) for user_id in (1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        statuses = [result for result in results.values() if isinstance(result, str)]
        failures = [result for result in results.values() if isinstance(result, CheckoutUnavailable)]
        assert statuses == ["pending"]
        assert len(failures) == 1
        assert failures[0].unavailable_items[0]["available_quantity"] == 0
        assert product_state(product_id) == (0, 1)
        assert len(crud.get_orders(db)) == 1
