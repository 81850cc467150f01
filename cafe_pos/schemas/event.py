from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

class Collection(str, Enum):
    ORDERS = "orders"
    CASH_SESSIONS = "cash_sessions"
    COWORKING_SESSIONS = "coworking_sessions"
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    WITHDRAWALS = "withdrawals"
    EXPENSES = "expenses"

Action = Literal["create", "update", "delete"]

class SyncEvent(BaseModel):
    """One change to a shared collection, after normalization.

    `entity` is the raw store payload; it is None for deletes that only carry an id.
    """

    collection: Collection
    action: Action
    entity_id: str
    entity: dict[str, Any] | None = None
