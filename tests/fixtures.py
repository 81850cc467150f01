"""Hand-written fakes shared by the test modules."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone

from cafe_pos.agents.events import StreamState
from cafe_pos.agents.submission import RetryPolicy, SubmissionAgent, SubmissionDeduplicator
from cafe_pos.errors import TransientTransportError
from cafe_pos.schemas.cash import CashSession, CashWithdrawal
from cafe_pos.schemas.coworking import CoworkingSession
from cafe_pos.schemas.customer import CustomerCredit
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.order import Order, OrderPayload
from cafe_pos.schemas.product import Product
from cafe_pos.schemas.wire import ProductCategory

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)

class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float):
        self.now += timedelta(minutes=minutes)

async def no_sleep(delay: float):
    await asyncio.sleep(0)

def fast_submissions(max_attempts: int = 3, deadline: float = 5.0) -> SubmissionAgent:
    return SubmissionAgent(
        deduplicator=SubmissionDeduplicator(ttl=60, grace=5),
        policy=RetryPolicy(max_attempts=max_attempts, initial_delay=0.01, max_delay=0.05),
        deadline=deadline,
        sleep=no_sleep,
    )

COFFEE = Product(id="p-coffee", name="Americano", price=35, cost=8, stock=50, category=ProductCategory.CAFETERIA)
LATTE = Product(id="p-latte", name="Latte", price=45, cost=12, stock=30, category=ProductCategory.CAFETERIA)
SODA = Product(id="p-soda", name="Soda", price=25, cost=10, stock=20, category=ProductCategory.FRIDGE)

class FakeStoreAgent:
    """In-memory stand-in for StoreAgent.

    `failures[method]` is a list of exceptions raised, one per call, before the
    call is allowed to succeed. Orders are deduplicated by idempotency key the
    way the real store does it.
    """

    def __init__(self, clock=None):
        self.clock = clock or Clock()
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = {}
        self.collections: dict[Collection, list] = {collection: [] for collection in Collection}
        self.orders_by_key: dict[str, Order] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def _call(self, name: str, *args):
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _find(self, collection: Collection, entity_id: str):
        return next(item for item in self.collections[collection] if item.id == entity_id)

    def _replace(self, collection: Collection, entity):
        items = self.collections[collection]
        for i, item in enumerate(items):
            if item.id == entity.id:
                items[i] = entity
                return entity
        items.insert(0, entity)
        return entity

    async def aclose(self):
        pass

    async def create_order(self, payload: OrderPayload, idempotency_key: str) -> Order:
        await self._call("create_order", idempotency_key)
        if idempotency_key in self.orders_by_key:
            return self.orders_by_key[idempotency_key]
        order = Order.model_validate(
            {**payload.model_dump(), "id": self._next_id("order"), "date": self.clock()}
        )
        self.orders_by_key[idempotency_key] = order
        self.collections[Collection.ORDERS].insert(0, order)
        return order

    async def delete_order(self, order_id: str):
        await self._call("delete_order", order_id)

    async def open_cash_session(self, start_amount: float) -> CashSession:
        await self._call("open_cash_session", start_amount)
        session = CashSession(
            id=self._next_id("cash"), start_date=self.clock(), start_amount=start_amount
        )
        return self._replace(Collection.CASH_SESSIONS, session)

    async def close_cash_session(self, session_id: str, patch: dict) -> CashSession:
        await self._call("close_cash_session", session_id, patch)
        current = self._find(Collection.CASH_SESSIONS, session_id)
        closed = CashSession.model_validate({**current.to_wire(), **patch})
        return self._replace(Collection.CASH_SESSIONS, closed)

    async def create_withdrawal(self, session_id: str, amount: float, description: str) -> CashWithdrawal:
        await self._call("create_withdrawal", session_id, amount)
        withdrawal = CashWithdrawal(
            id=self._next_id("wd"),
            cash_session_id=session_id,
            amount=amount,
            description=description,
            withdrawn_at=self.clock(),
        )
        return self._replace(Collection.WITHDRAWALS, withdrawal)

    async def delete_withdrawal(self, withdrawal_id: str):
        await self._call("delete_withdrawal", withdrawal_id)

    async def create_coworking_session(self, client_name: str) -> CoworkingSession:
        await self._call("create_coworking_session", client_name)
        session = CoworkingSession(id=self._next_id("cw"), client_name=client_name, start_time=self.clock())
        return self._replace(Collection.COWORKING_SESSIONS, session)

    async def update_coworking_session(self, session_id: str, patch: dict) -> CoworkingSession:
        await self._call("update_coworking_session", session_id, patch)
        current = self._find(Collection.COWORKING_SESSIONS, session_id)
        updated = CoworkingSession.model_validate({**current.to_wire(), **patch})
        return self._replace(Collection.COWORKING_SESSIONS, updated)

    async def delete_coworking_session(self, session_id: str):
        await self._call("delete_coworking_session", session_id)

    async def add_customer_credit(self, customer_id, amount, kind, description, order_id=None) -> CustomerCredit:
        await self._call("add_customer_credit", customer_id, amount, kind)
        return CustomerCredit(
            id=self._next_id("credit"),
            customer_id=customer_id,
            amount=amount,
            type=kind,
            description=description,
        )

    async def list_collection(self, collection: Collection, limit=None) -> list[dict]:
        await self._call("list_collection", collection)
        return [item.to_wire() for item in self.collections[collection]]

class FakePush:
    """Push source whose connect() follows a script.

    Each script entry is either an exception to raise, or a list of
    (event name, payload) pairs delivered while open before the stream ends.
    Once the script runs out, connect() stays open until cancelled.
    """

    def __init__(self, script=None):
        self.state = StreamState.CLOSED
        self.script = list(script or [])
        self.connects = 0
        self.handlers: dict[str, list] = {}
        self.state_listeners: list = []

    def subscribe(self, event_name, handler):
        self.handlers.setdefault(event_name, []).append(handler)
        return lambda: self.handlers[event_name].remove(handler)

    def on_state_change(self, listener):
        self.state_listeners.append(listener)
        return lambda: self.state_listeners.remove(listener)

    def _set_state(self, state):
        self.state = state
        for listener in self.state_listeners:
            listener(state)

    def emit(self, event_name, payload):
        for handler in self.handlers.get(event_name, []):
            handler(payload)

    async def connect(self):
        self.connects += 1
        self._set_state(StreamState.CONNECTING)
        try:
            if not self.script:
                self._set_state(StreamState.OPEN)
                await asyncio.Event().wait()
                return
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            self._set_state(StreamState.OPEN)
            for event_name, payload in step:
                self.emit(event_name, payload)
                await asyncio.sleep(0)
        finally:
            self._set_state(StreamState.CLOSED)

def transient(message: str = "connection reset") -> TransientTransportError:
    return TransientTransportError(message)
