"""Keeps the local store converged with the authoritative store.

Three paths feed the store: a bulk load on start, named push events while the
event stream is open, and a wholesale poll while it is not. Results of this
terminal's own writes are handed in through `ingest`. None of these paths
ever raise into callers; failures are logged and the channel degrades.
"""

import asyncio
from functools import partial
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel

from cafe_pos.agents.events import DATA_CHANGE, PushSource, StreamState
from cafe_pos.agents.store import StoreAgent
from cafe_pos.config import settings
from cafe_pos.errors import PosError
from cafe_pos.schemas.event import Action, Collection, SyncEvent
from cafe_pos.sync.collections import DATA_TYPES, REGISTRY, normalize_event
from cafe_pos.sync.store import LocalStore

logger = structlog.get_logger(__name__)

class ReconnectPolicy(BaseModel):
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 10

    @classmethod
    def from_settings(cls):
        return cls(
            base_delay=settings.RECONNECT_BASE_DELAY,
            max_delay=settings.RECONNECT_MAX_DELAY,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect number `attempt` (0-based)."""
        return min(self.base_delay * 2 ** attempt, self.max_delay)

class ReconciliationChannel:
    def __init__(
        self,
        store: LocalStore,
        agent: StoreAgent,
        push: PushSource | None = None,
        poll_interval: float | None = None,
        reconnect: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.agent = agent
        self.push = push
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.reconnect = reconnect or ReconnectPolicy.from_settings()
        self.sleep = sleep

        self.online = True
        self.visible = True
        self.reconnect_attempts = 0
        self._manually_disconnected = False
        self._push_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

        if push is not None:
            for synced in REGISTRY.values():
                push.subscribe(synced.event_name, partial(self._on_push, synced.collection))
            push.subscribe(DATA_CHANGE, self._on_data_change)
            push.on_state_change(self._on_push_state)

    @property
    def push_open(self) -> bool:
        return self.push is not None and self.push.state is StreamState.OPEN

    # lifecycle

    async def start(self):
        await self.load_all()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._start_push()

    async def stop(self):
        tasks = [t for t in (self._push_task, self._poll_task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._push_task = self._poll_task = None
        self._background.clear()

    # pull path

    async def refresh(self, collection: Collection) -> bool:
        try:
            items = await self.agent.list_collection(collection, settings.list_limit(collection.value))
        except PosError as e:
            logger.warning("collection_load_failed", collection=collection.value, error=str(e))
            return False
        except Exception:
            logger.exception("collection_load_failed", collection=collection.value)
            return False
        loaded = self.store.replace(collection, items)
        logger.debug("collection_loaded", collection=collection.value, count=loaded)
        return True

    async def load_all(self) -> dict[Collection, bool]:
        results = await asyncio.gather(*(self.refresh(collection) for collection in Collection))
        loaded = dict(zip(Collection, results))
        logger.info("collections_loaded", ok=sum(results), failed=len(results) - sum(results))
        return loaded

    async def poll_once(self) -> dict[Collection, bool]:
        return await self.load_all()

    async def poll_tick(self) -> bool:
        """Refetch everything unless the display is hidden or push is open."""
        if not self.visible or self.push_open:
            return False
        await self.poll_once()
        return True

    async def _poll_loop(self):
        while True:
            await self.sleep(self.poll_interval)
            try:
                await self.poll_tick()
            except Exception:
                logger.exception("poll_failed")

    # local writes confirmed by the store

    def ingest(self, collection: Collection, action: Action, entity: BaseModel | dict | str) -> bool:
        if action == "delete":
            entity_id = entity if isinstance(entity, str) else _entity_id(entity)
            return self.store.apply(SyncEvent(collection=collection, action="delete", entity_id=entity_id))
        if isinstance(entity, BaseModel):
            event = SyncEvent(collection=collection, action=action, entity_id=entity.id)
            return self.store.apply(event, entity=entity)
        event = SyncEvent(collection=collection, action=action, entity_id=str(entity["id"]), entity=entity)
        return self.store.apply(event)

    # push path

    def _on_push(self, collection: Collection, payload):
        for event in normalize_event(collection, payload):
            changed = self.store.apply(event)
            logger.debug(
                "push_event_applied",
                collection=collection.value,
                action=event.action,
                id=event.entity_id,
                changed=changed,
            )

    def _on_data_change(self, payload):
        collection = DATA_TYPES.get(payload.get("dataType")) if isinstance(payload, dict) else None
        if collection is None:
            logger.warning("push_payload_dropped", push_event=DATA_CHANGE, reason="unknown data type")
            return
        if payload.get("action") == "delete" and payload.get("id"):
            self.store.apply(SyncEvent(collection=collection, action="delete", entity_id=str(payload["id"])))
            return
        self.request_refresh(collection)

    def request_refresh(self, collection: Collection):
        """Refetch one collection in the background."""
        self._spawn(self.refresh(collection))

    def _on_push_state(self, state: StreamState):
        if state is StreamState.OPEN:
            self.reconnect_attempts = 0

    # reconnect supervision

    async def supervise_push(self):
        """Keep the event stream connected until told otherwise or out of attempts."""
        if self.push is None:
            return
        while self.online and not self._manually_disconnected:
            try:
                await self.push.connect()
                logger.info("push_stream_ended")
            except PosError as e:
                logger.warning("push_connection_lost", error=str(e))
            except Exception:
                logger.exception("push_connection_lost")

            if not self.online or self._manually_disconnected:
                return
            if self.reconnect_attempts >= self.reconnect.max_attempts:
                logger.error("push_reconnect_abandoned", attempts=self.reconnect_attempts)
                return
            delay = self.reconnect.delay_for(self.reconnect_attempts)
            self.reconnect_attempts += 1
            logger.info("push_reconnect_scheduled", attempt=self.reconnect_attempts, delay=delay)
            await self.sleep(delay)

    def _start_push(self):
        if self.push is None or not self.online or self._manually_disconnected:
            return
        if self._push_task is not None and not self._push_task.done():
            return
        self._push_task = asyncio.create_task(self.supervise_push())

    def _cancel_push(self):
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        self._push_task = None

    def resume(self):
        """Re-arm the reconnect budget and connect now."""
        self._manually_disconnected = False
        self.reconnect_attempts = 0
        if not self.push_open:
            self._cancel_push()
        self._start_push()

    def disconnect(self, manual: bool = True):
        """Drop the event stream and any pending reconnect."""
        if manual:
            self._manually_disconnected = True
        self._cancel_push()
        logger.info("push_disconnected", manual=manual)

    def set_online(self, online: bool):
        self.online = online
        if online:
            logger.info("terminal_online")
            self.reconnect_attempts = 0
            self._start_push()
        else:
            logger.info("terminal_offline")
            self.disconnect(manual=False)

    def set_visible(self, visible: bool):
        self.visible = visible
        logger.debug("terminal_visibility_changed", visible=visible)

    def _spawn(self, coroutine):
        task = asyncio.get_running_loop().create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

def _entity_id(entity: BaseModel | dict) -> str:
    return str(entity.id if isinstance(entity, BaseModel) else entity["id"])
