import structlog

from cafe_pos.agents.store import StoreAgent
from cafe_pos.agents.submission import SubmissionAgent, idempotency_key
from cafe_pos.config import settings
from cafe_pos.errors import ConflictError, PermissionDenied, ValidationFailed
from cafe_pos.schemas.actor import Actor, role_permission_check
from cafe_pos.schemas.coworking import CoworkingSession, CoworkingStatus
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.order import CartLine, Order
from cafe_pos.schemas.product import Product
from cafe_pos.schemas.wire import PaymentMethod, utcnow
from cafe_pos.services.billing import GENERAL_RATES, RATE_TABLES, CoworkingCost, RateTable, compose_settlement, coworking_cost
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

logger = structlog.get_logger(__name__)

class CoworkingService:
    def __init__(
        self,
        store: LocalStore,
        agent: StoreAgent,
        submissions: SubmissionAgent,
        channel: ReconciliationChannel,
        settlement_rates: RateTable | None = None,
        estimate_rates: RateTable = GENERAL_RATES,
        clock=utcnow,
        user_id: str | None = None,
    ):
        self.store = store
        self.agent = agent
        self.submissions = submissions
        self.channel = channel
        self.settlement_rates = settlement_rates or RATE_TABLES[settings.COWORKING_SETTLEMENT_RATES]
        self.estimate_rates = estimate_rates
        self.clock = clock
        self.user_id = user_id
        self._started = 0
        # settlement orders whose session could not be marked finished yet
        self._unfinished: dict[str, Order] = {}

    def _require(self, session_id: str) -> CoworkingSession:
        session = self.store.find(Collection.COWORKING_SESSIONS, session_id)
        if session is None:
            raise ValidationFailed(f"unknown coworking session {session_id}")
        return session

    def _require_active(self, session_id: str) -> CoworkingSession:
        session = self._require(session_id)
        if not session.is_active:
            raise ConflictError(f"coworking session {session_id} is already finished")
        return session

    def active_sessions(self) -> list[CoworkingSession]:
        return [s for s in self.store.get(Collection.COWORKING_SESSIONS) if s.is_active]

    async def start(self, client_name: str) -> CoworkingSession:
        client_name = client_name.strip()
        if not client_name:
            raise ValidationFailed("client name is required")

        # a double tap shares the count of finished starts; the next start does not
        key = idempotency_key("cowork-start", client_name, nonce=str(self._started))
        session = await self.submissions.submit(key, lambda: self.agent.create_coworking_session(client_name))
        self._started += 1
        self.channel.ingest(Collection.COWORKING_SESSIONS, "create", session)
        logger.info("coworking_started", session_id=session.id, client=client_name)
        return session

    async def add_extra(self, session_id: str, product: Product, quantity: int = 1) -> CoworkingSession:
        if quantity < 1:
            raise ValidationFailed(f"quantity must be at least 1, got {quantity}")
        session = self._require_active(session_id)

        extras = [line.model_copy() for line in session.consumed_extras]
        for i, line in enumerate(extras):
            if line.product_id == product.id:
                extras[i] = line.model_copy(update={"quantity": line.quantity + quantity})
                break
        else:
            extras.append(CartLine.from_product(product, quantity))

        patch = {"consumedExtras": [line.to_wire() for line in extras]}
        updated = await self.agent.update_coworking_session(session.id, patch)
        self.channel.ingest(Collection.COWORKING_SESSIONS, "update", updated)
        return updated

    def estimate(self, session_id: str) -> CoworkingCost:
        """Running cost shown while the session is open."""
        session = self._require(session_id)
        return coworking_cost(session.start_time, session.end_time or self.clock(), self.estimate_rates)

    async def finish(self, session_id: str, payment_method: PaymentMethod) -> Order:
        """Settle a session: one order for time plus extras, then mark it finished.

        Local state changes only once both steps succeed. If the order exists but
        the session cannot be marked finished, the order is remembered and the
        next finish reuses it instead of charging again.
        """
        session = self._require_active(session_id)
        order = self._unfinished.get(session.id)
        end = order.date if order else self.clock()
        payload, cost = compose_settlement(session, end, self.settlement_rates, payment_method, self.user_id)

        if order is None:
            # one settlement per session, however many times finish is pressed
            key = idempotency_key("cowork-settlement", session.id, nonce=session.id)
            order = await self.submissions.submit(key, lambda: self.agent.create_order(payload, key))

        patch = {
            "status": CoworkingStatus.FINISHED.value,
            "endTime": end.isoformat(),
            "total": order.total,
            "duration": cost.billable_minutes,
            "paymentMethod": order.payment_method.value,
        }
        finish_key = idempotency_key("cowork-finish", session.id, nonce=session.id)
        try:
            finished = await self.submissions.submit(
                finish_key, lambda: self.agent.update_coworking_session(session.id, patch)
            )
        except Exception:
            self._unfinished[session.id] = order
            logger.error("coworking_finish_incomplete", session_id=session.id, order_id=order.id)
            raise
        self._unfinished.pop(session.id, None)

        if self.channel.ingest(Collection.ORDERS, "create", order):
            self.store.adjust_stock(session.consumed_extras)
        self.channel.ingest(Collection.COWORKING_SESSIONS, "update", finished)

        logger.info(
            "coworking_settled",
            session_id=session.id,
            order_id=order.id,
            minutes=cost.billable_minutes,
            total=order.total,
            rates=self.settlement_rates.name,
        )
        return order

    async def cancel(self, session_id: str):
        """Drop an active session without charging it."""
        session = self._require_active(session_id)
        if session.id in self._unfinished:
            raise ConflictError(f"coworking session {session.id} is already charged; finish it instead")
        await self.agent.delete_coworking_session(session.id)
        self.channel.ingest(Collection.COWORKING_SESSIONS, "delete", session.id)
        logger.info("coworking_cancelled", session_id=session.id)

    async def delete(self, actor: Actor, session_id: str):
        if not role_permission_check(actor, "coworking.delete"):
            raise PermissionDenied(actor.id, "coworking.delete")
        await self.agent.delete_coworking_session(session_id)
        self._unfinished.pop(session_id, None)
        self.channel.ingest(Collection.COWORKING_SESSIONS, "delete", session_id)
