from enum import Enum

from pydantic import AliasChoices, Field, field_validator

from cafe_pos.schemas.wire import UtcDatetime, WireModel

class CashSessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"

class CashSession(WireModel):
    id: str
    # the store names these startTime/endTime
    start_date: UtcDatetime = Field(
        validation_alias=AliasChoices("startDate", "startTime", "start_date"), serialization_alias="startTime"
    )
    end_date: UtcDatetime | None = Field(
        default=None, validation_alias=AliasChoices("endDate", "endTime", "end_date"), serialization_alias="endTime"
    )
    start_amount: float = Field(ge=0)
    end_amount: float | None = None
    status: CashSessionStatus = CashSessionStatus.OPEN
    total_sales: float | None = None
    total_expenses: float | None = None
    expected_cash: float | None = None
    difference: float | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _store_status(cls, value):
        if value == "active":
            return CashSessionStatus.OPEN
        return value

    @property
    def is_open(self) -> bool:
        return self.status is CashSessionStatus.OPEN

class CashWithdrawal(WireModel):
    id: str
    cash_session_id: str
    amount: float = Field(gt=0)
    description: str = ""
    withdrawn_by: str | None = None
    withdrawn_at: UtcDatetime = Field(
        validation_alias=AliasChoices("withdrawn_at", "withdrawnAt", "created_at", "createdAt"),
        serialization_alias="withdrawnAt",
    )

class Expense(WireModel):
    id: str
    date: UtcDatetime
    description: str = ""
    amount: float = Field(ge=0)
    category: str | None = None
    type: str | None = None
    payment_method: str | None = None
