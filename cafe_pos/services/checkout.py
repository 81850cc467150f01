"""Checkout: the cart and the state machine that turns it into one order."""

import asyncio
from enum import Enum
from uuid import uuid4

import structlog
from pydantic import BaseModel

from cafe_pos.agents.store import StoreAgent
from cafe_pos.agents.submission import SubmissionAgent, idempotency_key
from cafe_pos.errors import CreditLimitExceeded, PermissionDenied, PosError, ValidationFailed
from cafe_pos.schemas.actor import Actor, role_permission_check
from cafe_pos.schemas.customer import Customer
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.order import CartLine, Order, OrderPayload
from cafe_pos.schemas.product import Product
from cafe_pos.schemas.wire import PaymentMethod, ServiceType
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

logger = structlog.get_logger(__name__)

class CheckoutState(str, Enum):
    IDLE = "idle"
    SELECTING_DETAILS = "selecting_details"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    ERROR = "error"

class CheckoutAction(str, Enum):
    START_CHECKOUT = "start_checkout"
    SUBMIT = "submit"
    SUBMIT_SUCCESS = "submit_success"
    SUBMIT_ERROR = "submit_error"
    CANCEL = "cancel"
    RETRY = "retry"
    RESET = "reset"

S, A = CheckoutState, CheckoutAction

# every pair not listed here is rejected
TRANSITIONS: dict[CheckoutState, dict[CheckoutAction, CheckoutState]] = {
    S.IDLE: {A.START_CHECKOUT: S.SELECTING_DETAILS},
    S.SELECTING_DETAILS: {A.SUBMIT: S.VALIDATING, A.CANCEL: S.IDLE},
    S.VALIDATING: {A.SUBMIT: S.SUBMITTING, A.SUBMIT_ERROR: S.ERROR, A.CANCEL: S.IDLE},
    S.SUBMITTING: {A.SUBMIT_SUCCESS: S.SUCCESS, A.SUBMIT_ERROR: S.ERROR},
    S.ERROR: {A.RETRY: S.SELECTING_DETAILS, A.CANCEL: S.IDLE, A.RESET: S.IDLE},
    S.SUCCESS: {A.RESET: S.IDLE},
}

class Cart:
    def __init__(self):
        self._lines: dict[str, CartLine] = {}

    def add(self, product: Product, quantity: int = 1) -> CartLine:
        if quantity < 1:
            raise ValidationFailed(f"quantity must be at least 1, got {quantity}")
        line = self._lines.get(product.id)
        if line is None:
            line = CartLine.from_product(product, quantity)
        else:
            line = line.model_copy(update={"quantity": line.quantity + quantity})
        self._lines[product.id] = line
        return line

    def remove(self, product_id: str):
        self._lines.pop(product_id, None)

    def set_quantity(self, product_id: str, quantity: int):
        if quantity <= 0:
            self.remove(product_id)
            return
        line = self._lines.get(product_id)
        if line is None:
            raise ValidationFailed(f"product {product_id} is not in the cart")
        self._lines[product_id] = line.model_copy(update={"quantity": quantity})

    def clear(self):
        self._lines.clear()

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    @property
    def subtotal(self) -> float:
        return sum(line.line_total for line in self._lines.values())

    def __len__(self) -> int:
        return len(self._lines)

class CheckoutDetails(BaseModel):
    client_name: str = ""
    service_type: ServiceType = ServiceType.TABLE
    payment_method: PaymentMethod = PaymentMethod.CASH
    customer_id: str | None = None
    tip: float = 0.0
    # lets a manager charge store credit past the customer's limit
    override_credit_limit: bool = False

class CheckoutContext(BaseModel):
    cart: list[CartLine] = []
    details: CheckoutDetails | None = None
    nonce: str | None = None
    error: str | None = None
    error_kind: str | None = None
    order: Order | None = None

class CheckoutResult(BaseModel):
    ok: bool
    state: CheckoutState
    order: Order | None = None
    error_kind: str | None = None
    message: str | None = None

class CheckoutMachine:
    def __init__(
        self,
        cart: Cart,
        store: LocalStore,
        agent: StoreAgent,
        submissions: SubmissionAgent,
        channel: ReconciliationChannel,
        user_id: str | None = None,
    ):
        self.cart = cart
        self.store = store
        self.agent = agent
        self.submissions = submissions
        self.channel = channel
        self.user_id = user_id
        self.state = CheckoutState.IDLE
        self.context = CheckoutContext()

    def dispatch(self, action: CheckoutAction, **updates) -> bool:
        """Apply one transition; undefined pairs leave state and context as they were."""
        next_state = TRANSITIONS.get(self.state, {}).get(action)
        if next_state is None:
            logger.warning("checkout_transition_rejected", state=self.state.value, action=action.value)
            return False

        logger.info("checkout_transition", source=self.state.value, action=action.value, target=next_state.value)
        self.state = next_state
        if action in (CheckoutAction.CANCEL, CheckoutAction.RESET, CheckoutAction.RETRY):
            updates.setdefault("error", None)
            updates.setdefault("error_kind", None)
        if updates:
            self.context = self.context.model_copy(update=updates)
        return True

    def start_checkout(self) -> bool:
        return self.dispatch(CheckoutAction.START_CHECKOUT, cart=self.cart.lines, nonce=uuid4().hex, order=None)

    def retry(self) -> bool:
        # the nonce survives a retry so the store can recognise the same sale
        return self.dispatch(CheckoutAction.RETRY, cart=self.cart.lines)

    def cancel(self) -> bool:
        return self.dispatch(CheckoutAction.CANCEL)

    def reset(self) -> bool:
        if not self.dispatch(CheckoutAction.RESET):
            return False
        self.context = CheckoutContext()
        return True

    def _result(self, message: str | None = None) -> CheckoutResult:
        return CheckoutResult(
            ok=self.state is CheckoutState.SUCCESS,
            state=self.state,
            order=self.context.order,
            error_kind=self.context.error_kind,
            message=message or self.context.error,
        )

    def _fail(self, error: PosError) -> CheckoutResult:
        logger.warning("checkout_failed", kind=error.kind, error=str(error))
        self.dispatch(CheckoutAction.SUBMIT_ERROR, error=str(error), error_kind=error.kind)
        return self._result()

    def build_payload(self, details: CheckoutDetails) -> OrderPayload:
        lines = self.context.cart
        if not lines:
            raise ValidationFailed("cart is empty")
        if details.tip < 0:
            raise ValidationFailed(f"tip cannot be negative, got {details.tip}")

        customer: Customer | None = None
        if details.customer_id:
            customer = self.store.find(Collection.CUSTOMERS, details.customer_id)
            if customer is None:
                raise ValidationFailed(f"unknown customer {details.customer_id}")
        if details.payment_method is PaymentMethod.STORE_CREDIT and customer is None:
            raise ValidationFailed("store credit requires a customer")

        subtotal = sum(line.line_total for line in lines)
        discount = subtotal * customer.discount_percentage / 100 if customer else 0.0
        total = subtotal - discount + details.tip

        if details.payment_method is PaymentMethod.STORE_CREDIT and not details.override_credit_limit:
            requested = customer.current_credit + total
            if requested > customer.credit_limit:
                raise CreditLimitExceeded(customer.id, customer.credit_limit, requested)

        return OrderPayload(
            items=lines,
            subtotal=subtotal,
            discount=discount,
            tip=details.tip,
            total=total,
            total_cost=sum(line.line_cost for line in lines),
            client_name=details.client_name,
            service_type=details.service_type,
            payment_method=details.payment_method,
            customer_id=details.customer_id,
            user_id=self.user_id,
        )

    async def submit(self, details: CheckoutDetails) -> CheckoutResult:
        if not self.dispatch(CheckoutAction.SUBMIT, details=details):
            return CheckoutResult(
                ok=False,
                state=self.state,
                error_kind="conflict",
                message=f"cannot submit while {self.state.value}",
            )

        try:
            payload = self.build_payload(details)
        except ValidationFailed as e:
            return self._fail(e)

        self.dispatch(CheckoutAction.SUBMIT)
        key = idempotency_key("order", payload.items, details, nonce=self.context.nonce)
        try:
            order = await self.submissions.submit(key, lambda: self.agent.create_order(payload, key))
        except PosError as e:
            # the cart is left exactly as it was so the cashier can retry
            return self._fail(e)
        except Exception as e:
            logger.exception("checkout_submit_crashed", key=key)
            return self._fail(PosError("order submission failed", cause=e))
        except asyncio.CancelledError:
            # the next retry reuses the key, so an order that did land is not doubled
            self.dispatch(CheckoutAction.SUBMIT_ERROR, error="order submission was interrupted", error_kind="error")
            raise

        self.dispatch(CheckoutAction.SUBMIT_SUCCESS, order=order)
        self.cart.clear()
        logger.info("order_created", order_id=order.id, total=order.total, key=key)

        try:
            # stock moves once per order, however many callers shared the submission
            if self.channel.ingest(Collection.ORDERS, "create", order):
                self.store.adjust_stock(payload.items)
            if payload.payment_method is PaymentMethod.STORE_CREDIT:
                self.channel.request_refresh(Collection.CUSTOMERS)
        except Exception:
            # the store has the order; the next poll brings it in
            logger.exception("order_ingest_failed", order_id=order.id)
        return self._result()

async def delete_order(agent: StoreAgent, channel: ReconciliationChannel, actor: Actor, order_id: str):
    if not role_permission_check(actor, "orders.delete"):
        raise PermissionDenied(actor.id, "orders.delete")
    await agent.delete_order(order_id)
    channel.ingest(Collection.ORDERS, "delete", order_id)
    logger.info("order_deleted", order_id=order_id, actor=actor.id)
