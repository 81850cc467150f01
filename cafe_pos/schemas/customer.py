from typing import Literal

from pydantic import Field

from cafe_pos.schemas.wire import UtcDatetime, WireModel

class Customer(WireModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    discount_percentage: float = Field(default=0.0, ge=0, le=100)
    credit_limit: float = Field(default=0.0, ge=0)
    current_credit: float = Field(default=0.0, ge=0)
    created_at: UtcDatetime | None = None

    @property
    def available_credit(self) -> float:
        return max(0.0, self.credit_limit - self.current_credit)

class CustomerCredit(WireModel):
    id: str
    customer_id: str
    order_id: str | None = None
    amount: float
    type: Literal["charge", "payment"]
    status: str | None = None
    description: str | None = None
    created_at: UtcDatetime | None = None
