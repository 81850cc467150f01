"""StoreAgent request shapes and error mapping over an httpx mock transport."""

import asyncio
import json

import httpx
import pytest

from cafe_pos.agents.store import StoreAgent, unwrap_list
from cafe_pos.errors import ConflictError, PermanentTransportError, TransientTransportError
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.order import CartLine, OrderPayload
from cafe_pos.schemas.wire import PaymentMethod

from fixtures import COFFEE, T0


class Recorder:
    def __init__(self, responder):
        self.requests: list[httpx.Request] = []
        self.responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def _agent(responder) -> tuple[StoreAgent, Recorder]:
    recorder = Recorder(responder)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder), base_url="http://store.test")
    return StoreAgent(client=client, user_id="u-1"), recorder


def _payload():
    line = CartLine.from_product(COFFEE, 2)
    return OrderPayload(items=[line], subtotal=70, total=70, payment_method=PaymentMethod.CASH)


class TestCreateOrder:
    def test_sends_idempotency_key_and_camel_case_body(self):
        def respond(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={**body, "id": "order-1", "date": T0.isoformat()})

        agent, recorder = _agent(respond)
        order = asyncio.run(agent.create_order(_payload(), "order-abc"))

        request = recorder.requests[0]
        body = json.loads(request.content)
        assert request.method == "POST"
        assert request.url.path == "/api/orders"
        assert request.headers["x-idempotency-key"] == "order-abc"
        assert body["paymentMethod"] == "cash"
        assert body["userId"] == "u-1"
        assert body["items"][0] == {
            "id": COFFEE.id,
            "name": COFFEE.name,
            "category": "cafeteria",
            "price": COFFEE.price,
            "cost": COFFEE.cost,
            "quantity": 2,
        }
        assert order.id == "order-1"
        assert order.items[0].product_id == COFFEE.id

    def test_accepts_data_envelope(self):
        def respond(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={"data": {**body, "id": "order-1", "date": T0.isoformat()}})

        agent, _ = _agent(respond)
        order = asyncio.run(agent.create_order(_payload(), "k"))
        assert order.id == "order-1"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(201, json={"data": {"id": "order-1"}}),
            httpx.Response(201, text="<html>ok</html>"),
        ],
    )
    def test_unreadable_reply_is_permanent(self, response):
        agent, _ = _agent(lambda request: response)

        with pytest.raises(PermanentTransportError):
            asyncio.run(agent.create_order(_payload(), "k"))

    @pytest.mark.parametrize(
        "status,error",
        [(500, TransientTransportError), (503, TransientTransportError), (400, PermanentTransportError), (409, ConflictError)],
    )
    def test_status_mapping(self, status, error):
        agent, _ = _agent(lambda request: httpx.Response(status, json={"error": "nope"}))

        with pytest.raises(error) as info:
            asyncio.run(agent.create_order(_payload(), "k"))
        assert "nope" in str(info.value)

    def test_network_error_is_transient(self):
        def respond(request):
            raise httpx.ConnectError("refused", request=request)

        agent, _ = _agent(respond)
        with pytest.raises(TransientTransportError):
            asyncio.run(agent.create_order(_payload(), "k"))

    def test_timeout_is_transient(self):
        def respond(request):
            raise httpx.ReadTimeout("slow", request=request)

        agent, _ = _agent(respond)
        with pytest.raises(TransientTransportError) as info:
            asyncio.run(agent.create_order(_payload(), "k"))
        assert "timed out" in str(info.value)


class TestOtherCalls:
    def test_open_cash_session_maps_store_fields(self):
        def respond(request):
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={"id": "cash-1", "startTime": body["startTime"], "startAmount": body["startAmount"], "status": "active"},
            )

        agent, recorder = _agent(respond)
        session = asyncio.run(agent.open_cash_session(300))

        assert json.loads(recorder.requests[0].content)["userId"] == "u-1"
        assert session.is_open
        assert session.start_amount == 300

    def test_delete_with_empty_response(self):
        agent, recorder = _agent(lambda request: httpx.Response(204))
        asyncio.run(agent.delete_withdrawal("wd-1"))
        assert recorder.requests[0].method == "DELETE"
        assert recorder.requests[0].url.path == "/api/cash-withdrawals/wd-1"

    def test_customer_credit(self):
        def respond(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={"id": "cr-1", "customerId": "c-1", **body})

        agent, recorder = _agent(respond)
        credit = asyncio.run(agent.add_customer_credit("c-1", 50, "payment", "cash payment"))

        assert recorder.requests[0].url.path == "/api/customers/c-1/credits"
        assert credit.type == "payment"
        assert credit.amount == 50


class TestListCollection:
    def test_envelope(self):
        body = {"data": [COFFEE.to_wire()], "pagination": {"total": 1}}
        agent, recorder = _agent(lambda request: httpx.Response(200, json=body))

        items = asyncio.run(agent.list_collection(Collection.PRODUCTS, 500))

        assert items == [COFFEE.to_wire()]
        assert recorder.requests[0].url.params["limit"] == "500"

    def test_bare_array_without_limit(self):
        agent, recorder = _agent(lambda request: httpx.Response(200, json=[{"id": "e-1"}]))

        items = asyncio.run(agent.list_collection(Collection.EXPENSES))

        assert items == [{"id": "e-1"}]
        assert recorder.requests[0].url.path == "/api/expenses"
        assert "limit" not in recorder.requests[0].url.params

    def test_unexpected_shape(self):
        with pytest.raises(PermanentTransportError):
            unwrap_list({"rows": []})
