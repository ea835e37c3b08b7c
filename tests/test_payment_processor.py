"""Tests for applying gateway payment outcomes to orders."""

import asyncio

import pytest

from fulfillment.errors import NotFound, TransportError
from fulfillment.order.models import CANCELLED, CONFIRMED, PENDING
from fulfillment.payment.processor import PaymentOutcomeProcessor
from fulfillment.payment.store import FAILED, INITIATED, SUCCESS, Outcome, PaymentAttempt, classify
from fulfillment.saga.orchestrator import OrderSagaOrchestrator

from .conftest import SpyInventory


def session_event(event_type, session_id, order, payment_status="paid", user_id="user-1"):
    return {
        "id": f"evt_{session_id}_{event_type}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "payment_status": payment_status,
                "amount_total": int(round(order.total_amount * 100)),
                "currency": "usd",
                "metadata": {"orderId": order.id, "userId": user_id},
            }
        },
    }


def paid(session_id, order):
    return session_event("checkout.session.completed", session_id, order)


def expired(session_id, order):
    return session_event("checkout.session.expired", session_id, order, payment_status="unpaid")


class CountingOrders:
    """Delegates to the order store and counts applied transitions."""

    def __init__(self, orders) -> None:
        self.orders = orders
        self.applied: list[tuple[str, str]] = []

    async def get(self, order_id):
        return await self.orders.get(order_id)

    async def transition(self, order_id, status):
        order, changed = await self.orders.transition(order_id, status)
        if changed:
            self.applied.append((order_id, status))
        return order, changed


@pytest.fixture
def counting_orders(orders):
    return CountingOrders(orders)


@pytest.fixture
def processor(attempts, counting_orders, inventory):
    return PaymentOutcomeProcessor(attempts, counting_orders, inventory)


@pytest.fixture
def place_order(catalog, inventory, orders, attempts):
    """Run the saga and record an INITIATED attempt for the new order."""
    saga = OrderSagaOrchestrator(catalog, inventory, orders)

    async def place(items, session_id="cs_test_1", user_id="user-1"):
        order = await saga.create_order(user_id, items)
        await attempts.create(
            PaymentAttempt(
                session_id=session_id,
                order_id=order.id,
                user_id=user_id,
                amount=order.total_amount,
                currency="usd",
                status=INITIATED,
            )
        )
        return order

    return place


class TestClassify:
    @pytest.mark.parametrize(
        "recorded, target, outcome",
        [
            (INITIATED, SUCCESS, Outcome.APPLIED),
            (INITIATED, FAILED, Outcome.APPLIED),
            (SUCCESS, SUCCESS, Outcome.DUPLICATE),
            (FAILED, FAILED, Outcome.DUPLICATE),
            (FAILED, SUCCESS, Outcome.ANOMALY),
            (SUCCESS, FAILED, Outcome.ANOMALY),
        ],
    )
    def test_classify(self, recorded, target, outcome):
        assert classify(recorded, target) is outcome


class TestSuccess:
    @pytest.mark.asyncio
    async def test_success_confirms_without_touching_stock(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 3}])

        outcome = await processor.process_event(paid("cs_test_1", order))

        assert outcome is Outcome.APPLIED
        assert (await orders.get(order.id)).status == CONFIRMED
        assert (await attempts.get("cs_test_1")).status == SUCCESS
        assert await ledger.get_stock("P1") == 2

    @pytest.mark.asyncio
    async def test_duplicate_success_confirms_once(
        self, processor, place_order, ledger, counting_orders, inventory
    ):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 3}])

        first = await processor.process_event(paid("cs_test_1", order))
        second = await processor.process_event(paid("cs_test_1", order))

        assert (first, second) == (Outcome.APPLIED, Outcome.DUPLICATE)
        assert counting_orders.applied == [(order.id, CONFIRMED)]
        assert inventory.released == []
        assert await ledger.get_stock("P1") == 2

    @pytest.mark.asyncio
    async def test_concurrent_success_deliveries_apply_once(self, processor, place_order, ledger, counting_orders):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 1}])

        outcomes = await asyncio.gather(*(processor.process_event(paid("cs_test_1", order)) for _ in range(3)))

        assert sorted(o.value for o in outcomes) == ["APPLIED", "DUPLICATE", "DUPLICATE"]
        assert counting_orders.applied == [(order.id, CONFIRMED)]

    @pytest.mark.asyncio
    async def test_duplicate_finishes_an_interrupted_confirmation(
        self, attempts, orders, inventory, place_order, ledger
    ):
        class ConfirmTimesOutOnce(CountingOrders):
            calls = 0

            async def transition(self, order_id, status):
                self.calls += 1
                if self.calls == 1:
                    raise TransportError("order-service timed out")
                return await super().transition(order_id, status)

        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 2}])
        flaky = ConfirmTimesOutOnce(orders)
        processor = PaymentOutcomeProcessor(attempts, flaky, inventory)

        assert await processor.process_event(paid("cs_test_1", order)) is None
        assert (await orders.get(order.id)).status == PENDING

        assert await processor.process_event(paid("cs_test_1", order)) is Outcome.DUPLICATE
        assert (await orders.get(order.id)).status == CONFIRMED

    @pytest.mark.asyncio
    async def test_unpaid_completion_is_ignored(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 1}])
        event = session_event("checkout.session.completed", "cs_test_1", order, payment_status="unpaid")

        assert await processor.process_event(event) is None
        assert (await orders.get(order.id)).status == PENDING
        assert (await attempts.get("cs_test_1")).status == INITIATED

    @pytest.mark.asyncio
    async def test_unknown_session_is_recorded(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 1}])

        outcome = await processor.process_event(paid("cs_never_seen", order))

        assert outcome is Outcome.APPLIED
        attempt = await attempts.get("cs_never_seen")
        assert attempt.status == SUCCESS
        assert attempt.order_id == order.id
        assert attempt.amount == 10.0
        assert (await orders.get(order.id)).status == CONFIRMED


class TestFailure:
    @pytest.mark.asyncio
    async def test_failure_releases_every_item_and_cancels(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("A", 10)
        await ledger.initialize("B", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}, {"product_id": "B", "quantity": 2}])
        assert {"A": await ledger.get_stock("A"), "B": await ledger.get_stock("B")} == {"A": 7, "B": 8}

        outcome = await processor.process_event(expired("cs_test_1", order))

        assert outcome is Outcome.APPLIED
        assert await ledger.get_stock("A") == 10
        assert await ledger.get_stock("B") == 10
        assert (await orders.get(order.id)).status == CANCELLED
        assert (await attempts.get("cs_test_1")).status == FAILED

    @pytest.mark.asyncio
    async def test_redelivered_failure_releases_once(self, processor, place_order, ledger, inventory):
        await ledger.initialize("A", 10)
        await ledger.initialize("B", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}, {"product_id": "B", "quantity": 2}])

        outcomes = [await processor.process_event(expired("cs_test_1", order)) for _ in range(3)]

        assert outcomes == [Outcome.APPLIED, Outcome.DUPLICATE, Outcome.DUPLICATE]
        assert inventory.released == [("A", 3), ("B", 2)]
        assert await ledger.get_stock("A") == 10
        assert await ledger.get_stock("B") == 10

    @pytest.mark.asyncio
    async def test_payment_intent_failure_cancels(self, processor, place_order, ledger, orders):
        await ledger.initialize("A", 10)
        order = await place_order([{"product_id": "A", "quantity": 4}])
        event = session_event("payment_intent.payment_failed", "cs_test_1", order, payment_status="unpaid")

        assert await processor.process_event(event) is Outcome.APPLIED
        assert (await orders.get(order.id)).status == CANCELLED
        assert await ledger.get_stock("A") == 10

    @pytest.mark.asyncio
    async def test_release_failure_does_not_stop_cancellation(self, attempts, counting_orders, ledger, place_order, orders):
        class ReleaseFailsForA(SpyInventory):
            async def release(self, product_id, quantity, actor="system"):
                if product_id == "A":
                    raise TransportError("inventory-service unreachable")
                return await super().release(product_id, quantity, actor)

        await ledger.initialize("A", 10)
        await ledger.initialize("B", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}, {"product_id": "B", "quantity": 2}])
        processor = PaymentOutcomeProcessor(attempts, counting_orders, ReleaseFailsForA(ledger))

        assert await processor.process_event(expired("cs_test_1", order)) is Outcome.APPLIED
        assert await ledger.get_stock("A") == 7
        assert await ledger.get_stock("B") == 10
        assert (await orders.get(order.id)).status == CANCELLED

    @pytest.mark.asyncio
    async def test_redelivery_after_order_read_error_releases(
        self, attempts, orders, inventory, place_order, ledger
    ):
        class ReadTimesOutOnce(CountingOrders):
            reads = 0

            async def get(self, order_id):
                self.reads += 1
                if self.reads == 1:
                    raise TransportError("order-service timed out")
                return await super().get(order_id)

        await ledger.initialize("A", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}])
        processor = PaymentOutcomeProcessor(attempts, ReadTimesOutOnce(orders), inventory)

        assert await processor.process_event(expired("cs_test_1", order)) is None
        assert (await attempts.get("cs_test_1")).status == INITIATED
        assert await ledger.get_stock("A") == 7

        assert await processor.process_event(expired("cs_test_1", order)) is Outcome.APPLIED
        assert inventory.released == [("A", 3)]
        assert await ledger.get_stock("A") == 10
        assert (await orders.get(order.id)).status == CANCELLED

    @pytest.mark.asyncio
    async def test_redelivery_after_cancel_error_releases(
        self, attempts, orders, inventory, place_order, ledger
    ):
        class CancelTimesOutOnce(CountingOrders):
            calls = 0

            async def transition(self, order_id, status):
                self.calls += 1
                if self.calls == 1:
                    raise TransportError("order-service timed out")
                return await super().transition(order_id, status)

        await ledger.initialize("A", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}])
        processor = PaymentOutcomeProcessor(attempts, CancelTimesOutOnce(orders), inventory)

        assert await processor.process_event(expired("cs_test_1", order)) is None
        assert inventory.released == []

        assert await processor.process_event(expired("cs_test_1", order)) is Outcome.DUPLICATE
        assert inventory.released == [("A", 3)]
        assert await ledger.get_stock("A") == 10
        assert (await orders.get(order.id)).status == CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_expiry_of_two_sessions_releases_once(
        self, processor, place_order, ledger, attempts, inventory, orders
    ):
        await ledger.initialize("A", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}])
        await attempts.create(
            PaymentAttempt(session_id="cs_test_2", order_id=order.id, user_id="user-1", amount=9.0, currency="usd")
        )

        outcomes = await asyncio.gather(
            processor.process_event(expired("cs_test_1", order)),
            processor.process_event(expired("cs_test_2", order)),
        )

        assert outcomes == [Outcome.APPLIED, Outcome.APPLIED]
        assert inventory.released == [("A", 3)]
        assert await ledger.get_stock("A") == 10
        assert (await orders.get(order.id)).status == CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_releases_once(self, processor, place_order, ledger, inventory):
        await ledger.initialize("A", 10)
        await ledger.initialize("B", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}, {"product_id": "B", "quantity": 2}])

        await asyncio.gather(*(processor.process_event(expired("cs_test_1", order)) for _ in range(3)))

        assert sorted(inventory.released) == [("A", 3), ("B", 2)]
        assert await ledger.get_stock("A") == 10
        assert await ledger.get_stock("B") == 10

    @pytest.mark.asyncio
    async def test_second_session_failure_does_not_release_again(
        self, processor, place_order, ledger, attempts, inventory, orders
    ):
        await ledger.initialize("A", 10)
        order = await place_order([{"product_id": "A", "quantity": 3}])
        await attempts.create(
            PaymentAttempt(session_id="cs_test_2", order_id=order.id, user_id="user-1", amount=9.0, currency="usd")
        )

        await processor.process_event(expired("cs_test_1", order))
        await processor.process_event(expired("cs_test_2", order))

        assert inventory.released == [("A", 3)]
        assert await ledger.get_stock("A") == 10
        assert (await orders.get(order.id)).status == CANCELLED


class TestAnomalies:
    @pytest.mark.asyncio
    async def test_success_after_failure_is_flagged(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 3}])

        await processor.process_event(expired("cs_test_1", order))
        outcome = await processor.process_event(paid("cs_test_1", order))

        assert outcome is Outcome.ANOMALY
        assert (await orders.get(order.id)).status == CANCELLED
        attempt = await attempts.get("cs_test_1")
        assert attempt.status == FAILED
        assert attempt.reconciliation_required is True
        assert await ledger.get_stock("P1") == 5

    @pytest.mark.asyncio
    async def test_failure_after_success_is_flagged(self, processor, place_order, ledger, orders, attempts, inventory):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 3}])

        await processor.process_event(paid("cs_test_1", order))
        outcome = await processor.process_event(expired("cs_test_1", order))

        assert outcome is Outcome.ANOMALY
        assert (await orders.get(order.id)).status == CONFIRMED
        assert (await attempts.get("cs_test_1")).reconciliation_required is True
        assert inventory.released == []
        assert await ledger.get_stock("P1") == 2

    @pytest.mark.asyncio
    async def test_success_on_cancelled_order_is_flagged(self, processor, place_order, ledger, orders, attempts):
        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 1}])
        await attempts.create(
            PaymentAttempt(session_id="cs_test_2", order_id=order.id, user_id="user-1", amount=10.0, currency="usd")
        )

        await processor.process_event(expired("cs_test_1", order))
        outcome = await processor.process_event(paid("cs_test_2", order))

        assert outcome is Outcome.ANOMALY
        assert (await orders.get(order.id)).status == CANCELLED
        assert (await attempts.get("cs_test_2")).reconciliation_required is True


class TestIgnoredEvents:
    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, processor):
        assert await processor.process_event({"type": "customer.created", "data": {"object": {}}}) is None

    @pytest.mark.asyncio
    async def test_event_without_order_metadata(self, processor, attempts):
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_orphan", "payment_status": "paid", "metadata": {}}},
        }
        assert await processor.process_event(event) is None
        assert await attempts.get("cs_orphan") is None

    @pytest.mark.asyncio
    async def test_processing_errors_are_swallowed(self, attempts, inventory, place_order, ledger, orders):
        class MissingOrders:
            async def get(self, order_id):
                raise NotFound("Order not found")

            async def transition(self, order_id, status):
                raise NotFound("Order not found")

        await ledger.initialize("P1", 5)
        order = await place_order([{"product_id": "P1", "quantity": 1}])
        processor = PaymentOutcomeProcessor(attempts, MissingOrders(), inventory)

        assert await processor.process_event(expired("cs_test_1", order)) is None
        assert inventory.released == []
