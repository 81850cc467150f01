from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

def _as_utc(value: datetime) -> datetime:
    # the store mixes "Z"-suffixed and naive ISO strings; naive ones are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    STORE_CREDIT = "store-credit"

    @classmethod
    def _missing_(cls, value):
        return _LEGACY_PAYMENT_LABELS.get(value)

_LEGACY_PAYMENT_LABELS = {
    "Efectivo": PaymentMethod.CASH,
    "Tarjeta": PaymentMethod.CARD,
    "Crédito": PaymentMethod.STORE_CREDIT,
    "Fiado": PaymentMethod.STORE_CREDIT,
}

class ServiceType(str, Enum):
    TABLE = "table"
    TAKEAWAY = "takeaway"

    @classmethod
    def _missing_(cls, value):
        return {"Mesa": cls.TABLE, "Para llevar": cls.TAKEAWAY}.get(value)

class ProductCategory(str, Enum):
    CAFETERIA = "cafeteria"
    FRIDGE = "fridge"
    FOOD = "food"
    MEMBERSHIPS = "memberships"

    @classmethod
    def _missing_(cls, value):
        return {
            "Cafetería": cls.CAFETERIA,
            "Refrigerador": cls.FRIDGE,
            "Alimentos": cls.FOOD,
            "Membresías": cls.MEMBERSHIPS,
        }.get(value)
