"""Shipment worker tests.

Covers:
- paid orders past the processing delay are shipped and notified
- ineligible orders are left alone
- overlapping runs issue exactly one tracking number per order
- shipped but unnotified orders are recovered by the resend path, never by re-claiming
- the periodic low stock check
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from order_service import audit, crud, worker
from order_service.errors import ValidationFailed
from order_service.models import utcnow

DELAY = 300


def _later():
    return utcnow() + timedelta(seconds=DELAY + 1)


@pytest.fixture()
def paid_order(make_product, place_order, pay_order):
    def _paid(quantity=1):
        order = place_order([(make_product(stock=5), quantity)])
        pay_order(order)
        return order

    return _paid


class TestShipmentCycle:
    def test_ships_and_notifies_eligible_order(self, db, session_factory, notifier, paid_order):
        order = paid_order()

        shipped = worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=_later())

        db.expire_all()
        order = crud.get_order(db, order.id)
        assert shipped == [order.order_number]
        assert order.status == "shipped"
        assert order.tracking_number.startswith("TRK")
        assert order.shipment_notified_at is not None
        assert notifier.shipped == [(order.order_number, order.tracking_number)]
        assert [row.to_status for row in audit.order_timeline(db, order.id)] == [
            "pending", "confirmed", "processing", "shipped",
        ]
        assert all(row.is_system_generated for row in audit.order_timeline(db, order.id))

    def test_processing_delay_not_elapsed(self, session_factory, notifier, paid_order):
        paid_order()

        assert worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=utcnow()) == []
        assert notifier.shipped == []

    def test_unpaid_and_cancelled_orders_are_skipped(self, db, session_factory, notifier, make_product, place_order):
        from order_service import state_machine

        place_order([(make_product(stock=5), 1)], user_id=1)
        cancelled = place_order([(make_product(stock=5), 1)], user_id=2)
        state_machine.cancel_order(db, cancelled.id)

        assert worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=_later()) == []

    def test_batch_size(self, session_factory, notifier, paid_order):
        for _ in range(3):
            paid_order()

        first = worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, batch_size=2, now=_later())
        second = worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, batch_size=2, now=_later())

        assert len(first) == 2
        assert len(second) == 1
        assert set(first).isdisjoint(second)


class TestOverlappingRuns:
    def test_concurrent_runs_ship_once(self, db, session_factory, notifier, paid_order):
        """The worker runs twice at the same time on the same eligible order."""
        order = paid_order()
        barrier = threading.Barrier(2)
        runs = []
        lock = threading.Lock()
        now = _later()

        def run():
            barrier.wait()
            shipped = worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=now)
            with lock:
                runs.append(shipped)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        db.expire_all()
        order = crud.get_order(db, order.id)
        assert sorted(len(shipped) for shipped in runs) == [0, 1]
        assert notifier.shipped == [(order.order_number, order.tracking_number)]
        history = [row.to_status for row in audit.order_timeline(db, order.id)]
        assert history.count("shipped") == 1
        assert audit.verify_order_history(db, order.id)

    def test_second_run_finds_nothing(self, session_factory, notifier, paid_order):
        paid_order()

        worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=_later())

        assert worker.run_shipment_cycle(session_factory, notifier, delay=DELAY, now=_later()) == []
        assert len(notifier.shipped) == 1


class TestResendTracking:
    def test_failed_notification_is_recovered_by_resend(
        self, db, session_factory, paid_order, failing_notifier, notifier
    ):
        order = paid_order()
        worker.run_shipment_cycle(session_factory, failing_notifier, delay=DELAY, now=_later())

        db.expire_all()
        unnotified = worker.find_unnotified_shipments(db)
        assert [o.id for o in unnotified] == [order.id]
        tracking_number = unnotified[0].tracking_number
        history_length = len(audit.order_timeline(db, order.id))

        resent = worker.resend_tracking_notification(db, order.id, notifier)

        assert resent.tracking_number == tracking_number
        assert resent.shipment_notified_at is not None
        assert notifier.shipped == [(resent.order_number, tracking_number)]
        assert len(audit.order_timeline(db, order.id)) == history_length
        assert worker.find_unnotified_shipments(db) == []

    def test_resend_unnotified_shipments(self, session_factory, paid_order, failing_notifier, notifier):
        paid_order()
        paid_order()
        worker.run_shipment_cycle(session_factory, failing_notifier, delay=DELAY, now=_later())

        sent = worker.resend_unnotified_shipments(session_factory, notifier)

        assert len(sent) == 2
        assert worker.resend_unnotified_shipments(session_factory, notifier) == []

    def test_resend_requires_shipped_order(self, db, paid_order, notifier):
        order = paid_order()

        with pytest.raises(ValidationFailed):
            worker.resend_tracking_notification(db, order.id, notifier)


class TestSchedulerLoop:
    def test_loop_runs_cycles_until_cancelled(self, session_factory, notifier, paid_order, monkeypatch):
        paid_order()
        monkeypatch.setattr(worker.config, "SHIPMENT_PROCESSING_DELAY_SECONDS", 0)

        async def scenario():
            task = asyncio.create_task(
                worker.shipment_scheduler_loop(interval=3600, session_factory=session_factory, notifier=notifier)
            )
            for _ in range(100):
                if notifier.shipped:
                    break
                await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert len(notifier.shipped) == 1


class TestLowStockCheck:
    def test_reports_products_below_threshold(self, session_factory, make_product, place_order, caplog):
        product_id = make_product(stock=6)
        make_product(stock=20)
        place_order([(product_id, 2)])

        with caplog.at_level("WARNING", logger="order_service.worker"):
            low = worker.check_low_stock(session_factory)

        assert low == [product_id]
        assert "Low stock" in caplog.text
