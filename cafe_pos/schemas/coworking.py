from enum import Enum

from cafe_pos.schemas.order import CartLine
from cafe_pos.schemas.wire import PaymentMethod, UtcDatetime, WireModel

class CoworkingStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"

class CoworkingSession(WireModel):
    id: str
    client_name: str
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    status: CoworkingStatus = CoworkingStatus.ACTIVE
    consumed_extras: list[CartLine] = []
    total: float | None = None
    duration: int | None = None
    payment_method: PaymentMethod | None = None

    @property
    def is_active(self) -> bool:
        return self.status is CoworkingStatus.ACTIVE
