"""Per-collection wiring for the reconciliation channel.

Push payloads arrive in several historical shapes. Everything is normalized
here into `SyncEvent`s so nothing past this module looks at raw payloads.
"""

from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel

from cafe_pos.schemas.cash import CashSession, CashWithdrawal, Expense
from cafe_pos.schemas.coworking import CoworkingSession
from cafe_pos.schemas.customer import Customer
from cafe_pos.schemas.event import Collection, SyncEvent
from cafe_pos.schemas.order import Order
from cafe_pos.schemas.product import Product

logger = structlog.get_logger(__name__)

@dataclass(frozen=True)
class SyncedCollection:
    collection: Collection
    model: type[BaseModel]
    event_name: str
    # keys a wrapped payload may carry its entity under, besides "data"
    entity_keys: tuple[str, ...] = ()

REGISTRY: dict[Collection, SyncedCollection] = {
    synced.collection: synced
    for synced in (
        SyncedCollection(Collection.ORDERS, Order, "orders:update", ("order", "orders")),
        SyncedCollection(Collection.CASH_SESSIONS, CashSession, "cash:update", ("session", "sessions")),
        SyncedCollection(Collection.COWORKING_SESSIONS, CoworkingSession, "coworking:update", ("session", "sessions")),
        SyncedCollection(Collection.CUSTOMERS, Customer, "customers:update", ("customer", "customers")),
        SyncedCollection(Collection.PRODUCTS, Product, "products:update", ("product", "products")),
        SyncedCollection(Collection.WITHDRAWALS, CashWithdrawal, "withdrawals:update", ("withdrawal", "withdrawals")),
        SyncedCollection(Collection.EXPENSES, Expense, "expenses:update", ("expense", "expenses")),
    )
}

# names used by the legacy "data-change" notice
DATA_TYPES = {
    "orders": Collection.ORDERS,
    "cash-sessions": Collection.CASH_SESSIONS,
    "coworking-sessions": Collection.COWORKING_SESSIONS,
    "customers": Collection.CUSTOMERS,
    "products": Collection.PRODUCTS,
    "cash-withdrawals": Collection.WITHDRAWALS,
    "expenses": Collection.EXPENSES,
}

_ACTIONS = {
    "create": "create",
    "created": "create",
    "update": "update",
    "updated": "update",
    "delete": "delete",
    "deleted": "delete",
    "removed": "delete",
}

def _action_of(raw: dict) -> str | None:
    for key in ("type", "action"):
        value = raw.get(key)
        if isinstance(value, str) and value in _ACTIONS:
            return _ACTIONS[value]
    return None

def _entities_of(synced: SyncedCollection, raw: dict) -> list[Any] | None:
    for key in ("data", *synced.entity_keys):
        if key in raw:
            value = raw[key]
            return value if isinstance(value, list) else [value]
    return None

def normalize_event(collection: Collection, raw: Any) -> list[SyncEvent]:
    """Turn one push payload into zero or more events.

    Wrapped shape: `{"type": action, "data" | <entity key>: entity or [entities]}`.
    Bare shape: the entity itself, optionally with an `action` field; an
    entity without one is treated as an update.
    Malformed payloads are logged and yield nothing.
    """
    synced = REGISTRY[collection]
    if not isinstance(raw, dict):
        logger.warning("push_payload_dropped", collection=collection.value, reason="not an object")
        return []

    action = _action_of(raw)
    entities = _entities_of(synced, raw)
    if entities is None:
        # bare entity; a store entity may legitimately carry its own "type"
        entity = {k: v for k, v in raw.items() if k != "action"}
        raw_action = raw.get("action")
        action = _ACTIONS.get(raw_action, "update") if isinstance(raw_action, str) else "update"
        entities = [entity]
    elif action is None:
        logger.warning("push_payload_dropped", collection=collection.value, reason="unknown action")
        return []

    events = []
    for entity in entities:
        if isinstance(entity, (str, int)) and action == "delete":
            events.append(SyncEvent(collection=collection, action="delete", entity_id=str(entity)))
            continue
        if not isinstance(entity, dict) or entity.get("id") in (None, ""):
            logger.warning("push_payload_dropped", collection=collection.value, reason="entity without id")
            continue
        events.append(
            SyncEvent(
                collection=collection,
                action=action,
                entity_id=str(entity["id"]),
                entity=None if action == "delete" else entity,
            )
        )
    return events

def parse_entity(collection: Collection, entity: dict) -> BaseModel:
    return REGISTRY[collection].model.model_validate(entity)
