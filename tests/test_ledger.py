"""Stock ledger tests.

Covers:
- reserve/release/adjust move stock and sold_count together and append one ledger row each
- failed reservations write nothing
- cached stock always equals the sum of the ledger
- concurrent reservations of the same product never oversell
- low stock reporting
"""

import threading

import pytest

from order_service import audit, ledger, models
from order_service.database import unit_of_work
from order_service.errors import InsufficientStock, ProductNotFound, ValidationFailed


def _transactions(db, product_id):
    return audit.inventory_history(db, product_id)


class TestReserve:
    def test_reserve_decrements_stock_and_increments_sold(self, db, make_product, product_state):
        product_id = make_product(stock=10)

        with unit_of_work(db):
            entry = ledger.reserve(db, product_id, 3)

        assert product_state(product_id) == (7, 3)
        assert entry.transaction_type == models.TransactionType.SALE.value
        assert entry.quantity_delta == -3
        assert entry.previous_stock == 10
        assert entry.new_stock == 7

    def test_insufficient_stock_reports_available_and_writes_nothing(self, db, make_product, product_state):
        product_id = make_product(stock=2)

        with pytest.raises(InsufficientStock) as exc_info:
            with unit_of_work(db):
                ledger.reserve(db, product_id, 3)

        assert exc_info.value.requested == 3
        assert exc_info.value.available == 2
        assert product_state(product_id) == (2, 0)
        assert len(_transactions(db, product_id)) == 1  # initial stock only

    def test_reserve_exact_remaining_stock(self, db, make_product, product_state):
        product_id = make_product(stock=4)

        with unit_of_work(db):
            ledger.reserve(db, product_id, 4)

        assert product_state(product_id) == (0, 4)

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_is_rejected(self, db, make_product, quantity):
        product_id = make_product(stock=5)

        with pytest.raises(ValidationFailed):
            ledger.reserve(db, product_id, quantity)

    def test_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            with unit_of_work(db):
                ledger.reserve(db, 999, 1)


class TestRelease:
    def test_reserve_then_release_restores_stock_and_sold(self, db, make_product, product_state):
        product_id = make_product(stock=10)
        before = product_state(product_id)

        with unit_of_work(db):
            ledger.reserve(db, product_id, 4)
        with unit_of_work(db):
            entry = ledger.release(db, product_id, 4, reason="cancel")

        assert product_state(product_id) == before
        assert entry.transaction_type == models.TransactionType.RETURN.value
        assert entry.quantity_delta == 4

    def test_sold_count_never_goes_negative(self, db, make_product, product_state):
        product_id = make_product(stock=1)

        with unit_of_work(db):
            ledger.release(db, product_id, 2, reason="return without sale")

        assert product_state(product_id) == (3, 0)


class TestAdjust:
    def test_manual_adjustment_is_recorded_as_operator_change(self, db, make_product, product_state):
        product_id = make_product(stock=5)

        with unit_of_work(db):
            entry = ledger.adjust(db, product_id, -2, reason="damaged", user_id=42)

        assert product_state(product_id) == (3, 0)
        assert entry.transaction_type == models.TransactionType.ADJUSTMENT.value
        assert entry.is_system_generated is False
        assert entry.user_id == 42

    def test_adjustment_cannot_drive_stock_negative(self, db, make_product, product_state):
        product_id = make_product(stock=5)

        with pytest.raises(InsufficientStock):
            with unit_of_work(db):
                ledger.adjust(db, product_id, -6, reason="recount")

        assert product_state(product_id) == (5, 0)

    def test_zero_adjustment_is_rejected(self, db, make_product):
        product_id = make_product(stock=5)

        with pytest.raises(ValidationFailed):
            ledger.adjust(db, product_id, 0, reason="noop")


class TestLedgerInvariant:
    def test_stock_equals_sum_of_ledger(self, db, make_product):
        product_id = make_product(stock=20)

        with unit_of_work(db):
            ledger.reserve(db, product_id, 5)
            ledger.reserve(db, product_id, 2)
        with unit_of_work(db):
            ledger.release(db, product_id, 2, reason="cancel")
            ledger.adjust(db, product_id, 7, reason="restock")

        report = audit.verify_stock(db, product_id)
        assert report["consistent"] is True
        assert report["stock_quantity"] == 22
        assert report["ledger_balance"] == 22
        assert report["transaction_count"] == 5

    def test_every_row_balances(self, db, make_product):
        product_id = make_product(stock=8)
        with unit_of_work(db):
            ledger.reserve(db, product_id, 3)
            ledger.release(db, product_id, 1, reason="partial")

        rows = _transactions(db, product_id)
        for earlier, later in zip(rows, rows[1:]):
            assert later.previous_stock == earlier.new_stock
        for row in rows:
            assert row.new_stock == row.previous_stock + row.quantity_delta
            assert row.new_stock >= 0

    def test_drift_is_reported(self, db, make_product):
        product_id = make_product(stock=5)
        db.get(models.Product, product_id).stock_quantity = 9
        db.commit()

        report = audit.verify_stock(db, product_id)

        assert report["consistent"] is False
        assert report["ledger_balance"] == 5


class TestConcurrentReservations:
    def test_parallel_reservations_never_oversell(self, session_factory, make_product, product_state):
        """Five buyers race for three units: exactly three reservations succeed."""
        product_id = make_product(stock=3)
        barrier = threading.Barrier(5)
        outcomes = []
        lock = threading.Lock()

        def buy():
            session = session_factory()
            try:
                barrier.wait()
                with unit_of_work(session):
                    ledger.reserve(session, product_id, 1)
                result = "reserved"
            except InsufficientStock:
                result = "rejected"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=buy) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("reserved") == 3
        assert outcomes.count("rejected") == 2
        assert product_state(product_id) == (0, 3)


class TestLowStock:
    def test_products_at_or_below_threshold(self, db, make_product):
        at_threshold = make_product(stock=5)
        empty = make_product(stock=0)
        make_product(stock=6)
        make_product(stock=1, is_active=False)

        assert [product.id for product in audit.low_stock_products(db)] == [empty, at_threshold]

    def test_restock_clears_the_alert(self, db, make_product):
        product_id = make_product(stock=3)

        with unit_of_work(db):
            ledger.adjust(db, product_id, 10, "supplier delivery")

        assert audit.low_stock_products(db) == []
