"""Server-sent-event client for the store's change notifications."""

import json
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol

import httpx
import structlog

from cafe_pos.config import settings
from cafe_pos.errors import TransientTransportError

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], None]

# the legacy notice that only names what changed
DATA_CHANGE = "data-change"

class StreamState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"

class PushSource(Protocol):
    state: StreamState

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]: ...

    def on_state_change(self, listener: Callable[[StreamState], None]) -> Callable[[], None]: ...

    async def connect(self) -> None: ...

async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Yield (event name, data) pairs from a text/event-stream body."""
    event_name = "message"
    data: list[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event_name, "\n".join(data)
            event_name, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_name = value
        elif field == "data":
            data.append(value)
    if data:
        yield event_name, "\n".join(data)

class EventStreamAgent:
    def __init__(self, client: httpx.AsyncClient | None = None, path: str | None = None):
        self.client = client or httpx.AsyncClient(
            base_url=settings.STORE_URL,
            timeout=httpx.Timeout(settings.REQUEST_TIMEOUT, read=None),
        )
        self.path = path or settings.EVENTS_PATH
        self.state = StreamState.CLOSED
        self._handlers: dict[str, list[Handler]] = {}
        self._state_listeners: list[Callable[[StreamState], None]] = []

    async def aclose(self):
        await self.client.aclose()

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on_state_change(self, listener: Callable[[StreamState], None]) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def unsubscribe():
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: StreamState):
        if state is self.state:
            return
        self.state = state
        logger.info("push_state_changed", state=state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("push_state_listener_failed", state=state.value)

    async def connect(self):
        """Read the stream until the server ends it.

        Returns normally on a clean end of stream; raises
        TransientTransportError when the connection cannot be made or drops.
        """
        self._set_state(StreamState.CONNECTING)
        try:
            async with self.client.stream("GET", self.path, headers={"Accept": "text/event-stream"}) as response:
                if response.status_code != 200:
                    raise TransientTransportError(
                        f"event stream returned {response.status_code}",
                        status_code=response.status_code,
                    )
                self._set_state(StreamState.OPEN)
                async for event_name, data in iter_sse(response.aiter_lines()):
                    self._dispatch(event_name, data)
        except httpx.HTTPError as e:
            raise TransientTransportError("event stream failed", cause=e) from e
        finally:
            self._set_state(StreamState.CLOSED)

    def _dispatch(self, event_name: str, data: str):
        try:
            payload = json.loads(data)
        except ValueError:
            logger.warning("push_message_unparseable", event_name=event_name)
            return

        if event_name == "message" and isinstance(payload, dict):
            message_type = payload.get("type")
            if message_type == "connected":
                logger.debug("push_connected")
                return
            if message_type == DATA_CHANGE:
                event_name = DATA_CHANGE

        handlers = self._handlers.get(event_name)
        if not handlers:
            logger.debug("push_message_unhandled", event_name=event_name)
            return
        for handler in list(handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception("push_handler_failed", event_name=event_name)
