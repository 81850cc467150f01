"""Cash drawer sessions: open, reconcile, close."""

from datetime import datetime

import structlog
from pydantic import BaseModel

from cafe_pos.agents.store import StoreAgent
from cafe_pos.agents.submission import SubmissionAgent, idempotency_key
from cafe_pos.errors import ConflictError, PermissionDenied, ValidationFailed
from cafe_pos.schemas.actor import Actor, role_permission_check
from cafe_pos.schemas.cash import CashSession, CashSessionStatus, CashWithdrawal
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.wire import PaymentMethod, utcnow
from cafe_pos.services.billing import cash_difference, cash_session_expected
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

logger = structlog.get_logger(__name__)

class CashSummary(BaseModel):
    session_id: str
    start_amount: float
    start_date: datetime
    end_date: datetime | None = None
    order_count: int = 0
    sales_by_method: dict[PaymentMethod, float] = {}
    total_sales: float = 0.0
    cash_sales: float = 0.0
    expenses_total: float = 0.0
    withdrawals_total: float = 0.0
    expected_cash: float = 0.0

def _in_range(moment: datetime, start: datetime, end: datetime | None) -> bool:
    return moment >= start and (end is None or moment <= end)

class CashLedger:
    def __init__(
        self,
        store: LocalStore,
        agent: StoreAgent,
        submissions: SubmissionAgent,
        channel: ReconciliationChannel,
        clock=utcnow,
    ):
        self.store = store
        self.agent = agent
        self.submissions = submissions
        self.channel = channel
        self.clock = clock
        self._withdrawn = 0

    def current_session(self) -> CashSession | None:
        for session in self.store.get(Collection.CASH_SESSIONS):
            if session.is_open:
                return session
        return None

    def _require_open(self) -> CashSession:
        session = self.current_session()
        if session is None:
            raise ConflictError("no cash session is open")
        return session

    async def open(self, start_amount: float) -> CashSession:
        if start_amount < 0:
            raise ValidationFailed(f"start amount cannot be negative, got {start_amount}")
        if self.current_session() is not None:
            raise ConflictError("a cash session is already open")

        # double taps collide until the next session exists
        sessions = self.store.get(Collection.CASH_SESSIONS)
        nonce = sessions[0].id if sessions else "first"
        key = idempotency_key("cash-open", start_amount, nonce=nonce)
        session = await self.submissions.submit(key, lambda: self.agent.open_cash_session(start_amount))
        self.channel.ingest(Collection.CASH_SESSIONS, "create", session)
        logger.info("cash_session_opened", session_id=session.id, start_amount=start_amount)
        return session

    def summary(self, session: CashSession | None = None) -> CashSummary:
        """Derive the session's totals from orders, expenses and withdrawals.

        Coworking settlements are already orders, so they are counted once,
        through the orders collection.
        """
        session = session or self._require_open()
        start, end = session.start_date, session.end_date

        by_method: dict[PaymentMethod, float] = {}
        order_count = 0
        for order in self.store.get(Collection.ORDERS):
            if _in_range(order.date, start, end):
                by_method[order.payment_method] = by_method.get(order.payment_method, 0.0) + order.total
                order_count += 1

        expenses_total = sum(
            expense.amount for expense in self.store.get(Collection.EXPENSES) if _in_range(expense.date, start, end)
        )
        withdrawals_total = sum(
            withdrawal.amount
            for withdrawal in self.store.get(Collection.WITHDRAWALS)
            if withdrawal.cash_session_id == session.id
        )
        cash_sales = by_method.get(PaymentMethod.CASH, 0.0)

        return CashSummary(
            session_id=session.id,
            start_amount=session.start_amount,
            start_date=start,
            end_date=end,
            order_count=order_count,
            sales_by_method=by_method,
            total_sales=sum(by_method.values()),
            cash_sales=cash_sales,
            expenses_total=expenses_total,
            withdrawals_total=withdrawals_total,
            expected_cash=cash_session_expected(session.start_amount, cash_sales, expenses_total, withdrawals_total),
        )

    async def close(self, counted_amount: float) -> CashSession:
        if counted_amount < 0:
            raise ValidationFailed(f"counted amount cannot be negative, got {counted_amount}")
        session = self._require_open()
        summary = self.summary(session)
        difference = cash_difference(counted_amount, summary.expected_cash)

        patch = {
            "endAmount": counted_amount,
            "endTime": self.clock().isoformat(),
            "totalSales": summary.total_sales,
            "totalExpenses": summary.expenses_total,
            "expectedCash": summary.expected_cash,
            "difference": difference,
            "status": CashSessionStatus.CLOSED.value,
        }
        key = idempotency_key("cash-close", session.id, nonce=session.id)
        closed = await self.submissions.submit(key, lambda: self.agent.close_cash_session(session.id, patch))
        self.channel.ingest(Collection.CASH_SESSIONS, "update", closed)
        logger.info(
            "cash_session_closed",
            session_id=session.id,
            expected_cash=summary.expected_cash,
            counted=counted_amount,
            difference=difference,
        )
        return closed

    async def withdraw(self, amount: float, description: str = "") -> CashWithdrawal:
        if amount <= 0:
            raise ValidationFailed(f"withdrawal amount must be positive, got {amount}")
        session = self._require_open()

        # a double tap shares the count of finished withdrawals; the next one does not
        key = idempotency_key("withdrawal", session.id, amount, description, nonce=str(self._withdrawn))
        withdrawal = await self.submissions.submit(
            key, lambda: self.agent.create_withdrawal(session.id, amount, description)
        )
        self._withdrawn += 1
        self.channel.ingest(Collection.WITHDRAWALS, "create", withdrawal)
        logger.info("cash_withdrawn", session_id=session.id, amount=amount)
        return withdrawal

    async def delete_withdrawal(self, actor: Actor, withdrawal_id: str):
        if not role_permission_check(actor, "withdrawals.delete"):
            raise PermissionDenied(actor.id, "withdrawals.delete")
        await self.agent.delete_withdrawal(withdrawal_id)
        self.channel.ingest(Collection.WITHDRAWALS, "delete", withdrawal_id)

    def history(self) -> list[CashSession]:
        closed = [s for s in self.store.get(Collection.CASH_SESSIONS) if s.status is CashSessionStatus.CLOSED]
        return sorted(closed, key=lambda s: s.start_date, reverse=True)
