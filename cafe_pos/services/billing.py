"""Pure billing rules: coworking time cost, settlement orders and cash expectations."""

import math
from datetime import datetime

from pydantic import BaseModel, Field

from cafe_pos.schemas.coworking import CoworkingSession
from cafe_pos.schemas.order import CartLine, OrderPayload
from cafe_pos.schemas.wire import PaymentMethod, ServiceType

COWORKING_SERVICE_ID = "COWORK_SERVICE"

class RateTable(BaseModel):
    name: str
    first_hour_rate: float
    half_hour_rate: float
    day_rate: float
    day_threshold_hours: float
    # a remainder of 1..tolerance minutes past a 30-minute boundary is not billed
    tolerance_minutes: int = Field(default=0, ge=0, lt=30)

# live estimate shown while a session runs
GENERAL_RATES = RateTable(
    name="general",
    first_hour_rate=72,
    half_hour_rate=36,
    day_rate=225,
    day_threshold_hours=3,
    tolerance_minutes=5,
)

# charged when a session is finished
SESSION_RATES = RateTable(
    name="session",
    first_hour_rate=58,
    half_hour_rate=29,
    day_rate=180,
    day_threshold_hours=4,
)

RATE_TABLES = {table.name: table for table in (GENERAL_RATES, SESSION_RATES)}

class CoworkingCost(BaseModel):
    cost: float
    billable_minutes: int
    day_rate_applied: bool = False

def billable_minutes(start: datetime, end: datetime, tolerance_minutes: int = 0) -> int:
    minutes = max(0, math.ceil((end - start).total_seconds() / 60))
    remainder = minutes % 30
    if 0 < remainder <= tolerance_minutes:
        minutes -= remainder
    return minutes

def coworking_cost(start: datetime, end: datetime, rates: RateTable) -> CoworkingCost:
    minutes = billable_minutes(start, end, rates.tolerance_minutes)

    if minutes == 0:
        return CoworkingCost(cost=0, billable_minutes=0)
    if minutes / 60 >= rates.day_threshold_hours:
        return CoworkingCost(cost=rates.day_rate, billable_minutes=minutes, day_rate_applied=True)
    if minutes <= 60:
        return CoworkingCost(cost=rates.first_hour_rate, billable_minutes=minutes)

    half_hour_blocks = math.ceil((minutes - 60) / 30)
    cost = rates.first_hour_rate + half_hour_blocks * rates.half_hour_rate
    return CoworkingCost(cost=cost, billable_minutes=minutes)

def _service_description(cost: CoworkingCost, complimentary: list[CartLine]) -> str:
    hours, minutes = divmod(cost.billable_minutes, 60)
    description = f"Time: {hours}h {minutes}m"
    if cost.day_rate_applied:
        description += " (full day)"
    if complimentary:
        description += " | Coffee included: " + ", ".join(f"{line.name} x{line.quantity}" for line in complimentary)
    return description

def compose_settlement(
    session: CoworkingSession,
    end: datetime,
    rates: RateTable,
    payment_method: PaymentMethod,
    user_id: str | None = None,
) -> tuple[OrderPayload, CoworkingCost]:
    """Build the one order that settles a coworking session.

    Cafeteria extras are complimentary (price 0, cost kept for margin reports),
    every other extra is charged in full. No discount applies here.
    """
    cost = coworking_cost(session.start_time, end, rates)

    complimentary = [line.model_copy(update={"unit_price": 0.0}) for line in session.consumed_extras if line.is_cafeteria]
    chargeable = [line.model_copy() for line in session.consumed_extras if not line.is_cafeteria]

    service_line = CartLine(
        product_id=COWORKING_SERVICE_ID,
        name="Coworking service",
        unit_price=cost.cost,
        unit_cost=0.0,
        quantity=1,
        description=_service_description(cost, complimentary),
    )

    items = [service_line, *complimentary, *chargeable]
    subtotal = sum(line.line_total for line in items)
    payload = OrderPayload(
        items=items,
        subtotal=subtotal,
        total=subtotal,
        total_cost=sum(line.line_cost for line in session.consumed_extras),
        client_name=session.client_name,
        service_type=ServiceType.TABLE,
        payment_method=payment_method,
        user_id=user_id,
    )
    return payload, cost

def cash_session_expected(start_amount: float, cash_sales_total: float, expenses_total: float, withdrawals_total: float) -> float:
    return start_amount + cash_sales_total - expenses_total - withdrawals_total

def cash_difference(counted_amount: float, expected_cash: float) -> float:
    return counted_amount - expected_cash
