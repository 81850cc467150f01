"""Checkout state machine and cart tests."""

import asyncio
import itertools
import json

import httpx
import pytest

from cafe_pos.agents.store import StoreAgent
from cafe_pos.errors import PermanentTransportError, PermissionDenied, ValidationFailed
from cafe_pos.schemas.actor import Actor
from cafe_pos.schemas.customer import Customer
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.wire import PaymentMethod
from cafe_pos.services.checkout import (
    TRANSITIONS,
    Cart,
    CheckoutAction,
    CheckoutDetails,
    CheckoutMachine,
    CheckoutState,
    delete_order,
)
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

from fixtures import COFFEE, SODA, FakeStoreAgent, fast_submissions, transient

ANA = Customer(id="c-1", name="Ana", discount_percentage=10, credit_limit=100, current_credit=20)


class Harness:
    def __init__(self, max_attempts=3):
        self.agent = FakeStoreAgent()
        self.store = LocalStore()
        self.store.replace(Collection.PRODUCTS, [COFFEE, SODA])
        self.store.replace(Collection.CUSTOMERS, [ANA])
        self.channel = ReconciliationChannel(self.store, self.agent)
        self.cart = Cart()
        self.machine = CheckoutMachine(
            self.cart, self.store, self.agent, fast_submissions(max_attempts), self.channel, user_id="u-1"
        )

    def fill(self):
        self.cart.add(COFFEE, 2)
        self.cart.add(SODA)


class TestCart:
    def test_add_merges_lines(self):
        cart = Cart()
        cart.add(COFFEE)
        cart.add(COFFEE, 2)
        assert len(cart) == 1
        assert cart.lines[0].quantity == 3
        assert cart.subtotal == COFFEE.price * 3

    def test_set_quantity_and_remove(self):
        cart = Cart()
        cart.add(COFFEE)
        cart.add(SODA)
        cart.set_quantity(COFFEE.id, 4)
        assert cart.lines[0].quantity == 4
        cart.set_quantity(SODA.id, 0)
        assert [line.product_id for line in cart.lines] == [COFFEE.id]

    def test_invalid_quantities(self):
        cart = Cart()
        with pytest.raises(ValidationFailed):
            cart.add(COFFEE, 0)
        with pytest.raises(ValidationFailed):
            cart.set_quantity("missing", 2)


class TestTransitions:
    def test_table_is_total(self):
        """Every (state, action) pair either has a target or is rejected without side effects."""
        for state, action in itertools.product(CheckoutState, CheckoutAction):
            harness = Harness()
            harness.machine.state = state
            before = harness.machine.context

            accepted = harness.machine.dispatch(action)
            expected = TRANSITIONS.get(state, {}).get(action)

            if expected is None:
                assert not accepted
                assert harness.machine.state is state
                assert harness.machine.context is before
            else:
                assert accepted
                assert harness.machine.state is expected

    def test_submitting_cannot_be_cancelled(self):
        harness = Harness()
        harness.machine.state = CheckoutState.SUBMITTING
        assert not harness.machine.cancel()
        assert harness.machine.state is CheckoutState.SUBMITTING

    def test_start_snapshots_cart_and_draws_nonce(self):
        harness = Harness()
        harness.fill()
        assert harness.machine.start_checkout()
        first = harness.machine.context.nonce
        assert len(harness.machine.context.cart) == 2

        harness.machine.cancel()
        harness.machine.start_checkout()
        assert harness.machine.context.nonce != first


class TestSubmit:
    def test_success_commits_order(self):
        harness = Harness()
        harness.fill()
        harness.machine.start_checkout()

        result = asyncio.run(harness.machine.submit(CheckoutDetails(client_name="Luis", tip=10)))

        assert result.ok
        assert result.state is CheckoutState.SUCCESS
        assert result.order.total == COFFEE.price * 2 + SODA.price + 10
        assert harness.store.find(Collection.ORDERS, result.order.id) is not None
        assert len(harness.cart) == 0
        assert harness.store.find(Collection.PRODUCTS, COFFEE.id).stock == COFFEE.stock - 2
        assert harness.agent.count("create_order") == 1

    def test_customer_discount(self):
        harness = Harness()
        harness.cart.add(COFFEE, 2)
        harness.machine.start_checkout()

        result = asyncio.run(harness.machine.submit(CheckoutDetails(customer_id=ANA.id, tip=5)))

        subtotal = COFFEE.price * 2
        assert result.order.discount == pytest.approx(subtotal * 0.10)
        assert result.order.total == pytest.approx(subtotal * 0.90 + 5)
        assert result.order.customer_id == ANA.id

    def test_failure_keeps_cart(self):
        harness = Harness(max_attempts=1)
        harness.fill()
        harness.agent.failures["create_order"] = [transient("503")]
        harness.machine.start_checkout()

        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert not result.ok
        assert result.state is CheckoutState.ERROR
        assert result.error_kind == "transport"
        assert len(harness.cart) == 2
        assert harness.store.get(Collection.ORDERS) == []
        assert harness.store.find(Collection.PRODUCTS, COFFEE.id).stock == COFFEE.stock

    def test_retry_reuses_the_same_key(self):
        harness = Harness(max_attempts=1)
        harness.fill()
        harness.agent.failures["create_order"] = [PermanentTransportError("400", status_code=400)]
        harness.machine.start_checkout()

        async def scenario():
            failed = await harness.machine.submit(CheckoutDetails())
            assert harness.machine.retry()
            assert harness.machine.context.error is None
            succeeded = await harness.machine.submit(CheckoutDetails())
            return failed, succeeded

        failed, succeeded = asyncio.run(scenario())

        assert not failed.ok
        assert succeeded.ok
        keys = [call[1] for call in harness.agent.calls if call[0] == "create_order"]
        assert len(keys) == 2 and keys[0] == keys[1]

    def test_empty_cart_is_rejected(self):
        harness = Harness()
        harness.machine.start_checkout()

        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert result.state is CheckoutState.ERROR
        assert result.error_kind == "validation"
        assert harness.agent.count("create_order") == 0

    def test_negative_tip_is_rejected(self):
        harness = Harness()
        harness.fill()
        harness.machine.start_checkout()
        result = asyncio.run(harness.machine.submit(CheckoutDetails(tip=-1)))
        assert result.error_kind == "validation"

    def test_unknown_customer_is_rejected(self):
        harness = Harness()
        harness.fill()
        harness.machine.start_checkout()
        result = asyncio.run(harness.machine.submit(CheckoutDetails(customer_id="c-404")))
        assert result.error_kind == "validation"
        assert "c-404" in result.message

    def test_credit_limit(self):
        harness = Harness()
        # 100 less 10% is 90; with the 20 already owed that is 110 against a limit of 100
        harness.cart.add(SODA, 4)
        harness.machine.start_checkout()

        details = CheckoutDetails(customer_id=ANA.id, payment_method=PaymentMethod.STORE_CREDIT)
        result = asyncio.run(harness.machine.submit(details))

        assert result.error_kind == "validation"
        assert "credit limit" in result.message
        assert len(harness.cart) == 1

    def test_zero_limit_blocks_store_credit(self):
        harness = Harness()
        harness.store.replace(Collection.CUSTOMERS, [ANA.model_copy(update={"credit_limit": 0, "current_credit": 0})])
        harness.cart.add(SODA)
        harness.machine.start_checkout()

        details = CheckoutDetails(customer_id=ANA.id, payment_method=PaymentMethod.STORE_CREDIT)
        result = asyncio.run(harness.machine.submit(details))

        assert result.error_kind == "validation"
        assert harness.agent.count("create_order") == 0

    def test_credit_limit_override(self):
        harness = Harness()
        harness.cart.add(SODA, 4)
        harness.machine.start_checkout()

        details = CheckoutDetails(
            customer_id=ANA.id, payment_method=PaymentMethod.STORE_CREDIT, override_credit_limit=True
        )

        async def scenario():
            return await harness.machine.submit(details)

        assert asyncio.run(scenario()).ok

    def test_submit_outside_checkout_is_rejected(self):
        harness = Harness()
        harness.fill()
        result = asyncio.run(harness.machine.submit(CheckoutDetails()))
        assert not result.ok
        assert result.state is CheckoutState.IDLE
        assert harness.agent.count("create_order") == 0

    def test_reset_after_success(self):
        harness = Harness()
        harness.fill()
        harness.machine.start_checkout()
        asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert harness.machine.reset()
        assert harness.machine.state is CheckoutState.IDLE
        assert harness.machine.context.order is None


class TestSubmitFailures:
    def _machine_over(self, respond):
        harness = Harness()
        client = httpx.AsyncClient(transport=httpx.MockTransport(respond), base_url="http://store.test")
        harness.machine.agent = StoreAgent(client=client, user_id="u-1")
        harness.fill()
        harness.machine.start_checkout()
        return harness

    def test_order_under_data_envelope(self):
        def respond(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={"data": {**body, "id": "order-1", "date": "2024-05-01T09:00:00Z"}})

        harness = self._machine_over(respond)
        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert result.ok
        assert result.order.id == "order-1"
        assert len(harness.cart) == 0

    def test_unreadable_order_reply_ends_in_error(self):
        harness = self._machine_over(lambda request: httpx.Response(201, json={"data": {"id": "o1"}}))

        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert result.state is CheckoutState.ERROR
        assert result.error_kind == "transport"
        assert len(harness.cart) == 2
        assert harness.machine.cancel()

    def test_unexpected_exception_ends_in_error(self):
        harness = Harness()
        harness.fill()
        harness.agent.failures["create_order"] = [RuntimeError("socket exploded")]
        harness.machine.start_checkout()

        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        assert result.state is CheckoutState.ERROR
        assert "socket exploded" in result.message
        assert len(harness.cart) == 2
        assert harness.machine.reset()

    def test_cancelled_submission_ends_in_error(self):
        class StalledAgent(FakeStoreAgent):
            async def create_order(self, payload, idempotency_key):
                await asyncio.Event().wait()

        harness = Harness()
        harness.machine.agent = StalledAgent()
        harness.fill()
        harness.machine.start_checkout()

        async def scenario():
            task = asyncio.create_task(harness.machine.submit(CheckoutDetails()))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert harness.machine.state is CheckoutState.ERROR
        assert len(harness.cart) == 2
        assert harness.machine.retry()


class TestDeleteOrder:
    def test_employee_cannot_delete(self):
        harness = Harness()
        with pytest.raises(PermissionDenied):
            asyncio.run(delete_order(harness.agent, harness.channel, Actor(id="e-1"), "order-1"))
        assert harness.agent.count("delete_order") == 0

    def test_admin_deletes(self):
        harness = Harness()
        harness.fill()
        harness.machine.start_checkout()
        result = asyncio.run(harness.machine.submit(CheckoutDetails()))

        asyncio.run(delete_order(harness.agent, harness.channel, Actor(id="a-1", role="admin"), result.order.id))
        assert harness.store.get(Collection.ORDERS) == []
