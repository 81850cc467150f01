from typing import Callable, Iterable

import structlog
from pydantic import BaseModel, ValidationError

from cafe_pos.schemas.event import Collection, SyncEvent
from cafe_pos.schemas.order import CartLine
from cafe_pos.sync.collections import parse_entity

logger = structlog.get_logger(__name__)

Listener = Callable[[Collection], None]

class LocalStore:
    """The terminal's replica of the shared collections.

    Only server-confirmed data is written here (through the reconciliation
    channel), except for the optimistic stock decrement of a committed sale.
    Each collection is kept newest first.
    """

    def __init__(self):
        self._items: dict[Collection, list[BaseModel]] = {collection: [] for collection in Collection}
        self._listeners: list[Listener] = []

    def get(self, collection: Collection) -> list:
        return list(self._items[collection])

    def find(self, collection: Collection, entity_id: str):
        for item in self._items[collection]:
            if item.id == entity_id:
                return item
        return None

    def replace(self, collection: Collection, items: Iterable) -> int:
        parsed = []
        for item in items:
            if isinstance(item, BaseModel):
                parsed.append(item)
                continue
            try:
                parsed.append(parse_entity(collection, item))
            except ValidationError as e:
                logger.warning("entity_skipped", collection=collection.value, id=_raw_id(item), errors=e.error_count())
        self._items[collection] = parsed
        self._notify(collection)
        return len(parsed)

    def apply(self, event: SyncEvent, entity: BaseModel | None = None) -> bool:
        """Merge one change; returns whether the collection changed.

        create inserts if the id is absent, update replaces by id and ignores
        unknown ids, delete removes by id. Applying the same event twice leaves
        the same state as applying it once.
        """
        items = self._items[event.collection]
        index = next((i for i, item in enumerate(items) if item.id == event.entity_id), None)

        if event.action == "delete":
            if index is None:
                return False
            del items[index]
            self._notify(event.collection)
            return True

        if entity is None:
            try:
                entity = parse_entity(event.collection, event.entity or {})
            except ValidationError as e:
                logger.warning(
                    "entity_skipped",
                    collection=event.collection.value,
                    id=event.entity_id,
                    errors=e.error_count(),
                )
                return False

        if event.action == "create":
            if index is not None:
                return False
            items.insert(0, entity)
        else:
            if index is None:
                return False
            if items[index] == entity:
                return False
            items[index] = entity

        self._notify(event.collection)
        return True

    def adjust_stock(self, lines: Iterable[CartLine]):
        """Decrement product stock for a committed sale."""
        products = self._items[Collection.PRODUCTS]
        sold: dict[str, int] = {}
        for line in lines:
            sold[line.product_id] = sold.get(line.product_id, 0) + line.quantity

        changed = False
        for i, product in enumerate(products):
            if product.id in sold:
                products[i] = product.model_copy(update={"stock": product.stock - sold[product.id]})
                changed = True
        if changed:
            self._notify(Collection.PRODUCTS)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: Collection):
        for listener in list(self._listeners):
            try:
                listener(collection)
            except Exception:
                logger.exception("store_listener_failed", collection=collection.value)

def _raw_id(item) -> str | None:
    return item.get("id") if isinstance(item, dict) else None
