from typing import Literal

import structlog

from cafe_pos.agents.store import StoreAgent
from cafe_pos.errors import CreditLimitExceeded, ValidationFailed
from cafe_pos.schemas.customer import Customer, CustomerCredit
from cafe_pos.schemas.event import Collection
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

logger = structlog.get_logger(__name__)

class CustomerAccounts:
    def __init__(self, store: LocalStore, agent: StoreAgent, channel: ReconciliationChannel):
        self.store = store
        self.agent = agent
        self.channel = channel

    def get(self, customer_id: str) -> Customer:
        customer = self.store.find(Collection.CUSTOMERS, customer_id)
        if customer is None:
            raise ValidationFailed(f"unknown customer {customer_id}")
        return customer

    async def record_credit(
        self,
        customer_id: str,
        amount: float,
        kind: Literal["charge", "payment"],
        description: str = "",
        override_limit: bool = False,
    ) -> CustomerCredit:
        """Charge to or pay down a customer's store-credit balance."""
        if amount <= 0:
            raise ValidationFailed(f"amount must be positive, got {amount}")
        customer = self.get(customer_id)

        if kind == "charge":
            requested = customer.current_credit + amount
            if requested > customer.credit_limit and not override_limit:
                raise CreditLimitExceeded(customer.id, customer.credit_limit, requested)
        elif kind == "payment":
            if amount > customer.current_credit:
                raise ValidationFailed(
                    f"payment {amount:.2f} exceeds the outstanding balance {customer.current_credit:.2f}"
                )
        else:
            raise ValidationFailed(f"unknown credit movement {kind!r}")

        credit = await self.agent.add_customer_credit(customer.id, amount, kind, description)
        # the balance is computed by the store
        self.channel.request_refresh(Collection.CUSTOMERS)
        logger.info("customer_credit_recorded", customer_id=customer.id, kind=kind, amount=amount)
        return credit
