from typing import TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from cafe_pos.config import settings
from cafe_pos.errors import ConflictError, PermanentTransportError, TransientTransportError
from cafe_pos.schemas.cash import CashSession, CashWithdrawal
from cafe_pos.schemas.coworking import CoworkingSession
from cafe_pos.schemas.customer import CustomerCredit
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.order import Order, OrderPayload
from cafe_pos.schemas.wire import utcnow

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

COLLECTION_PATHS = {
    Collection.ORDERS: "/api/orders",
    Collection.CASH_SESSIONS: "/api/cash-sessions",
    Collection.COWORKING_SESSIONS: "/api/coworking-sessions",
    Collection.CUSTOMERS: "/api/customers",
    Collection.PRODUCTS: "/api/products",
    Collection.WITHDRAWALS: "/api/cash-withdrawals",
    Collection.EXPENSES: "/api/expenses",
}

def unwrap_list(body) -> list[dict]:
    """Accept both a bare array and a `{data, pagination}` envelope."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    raise PermanentTransportError(f"unexpected list response of type {type(body).__name__}")

def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)

class StoreAgent:
    """Request/response client for the authoritative store."""

    def __init__(self, client: httpx.AsyncClient | None = None, user_id: str | None = None):
        self.client = client or httpx.AsyncClient(base_url=settings.STORE_URL, timeout=settings.REQUEST_TIMEOUT)
        self.user_id = user_id or settings.TERMINAL_USER_ID

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"{method} {path} timed out", cause=e) from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {path} failed", cause=e) from e

        status = response.status_code
        if status >= 500:
            raise TransientTransportError(f"{method} {path} returned {status}: {_error_detail(response)}", status_code=status)
        if status == 409:
            raise ConflictError(f"{method} {path} rejected: {_error_detail(response)}")
        if status >= 400:
            raise PermanentTransportError(f"{method} {path} returned {status}: {_error_detail(response)}", status_code=status)
        return response

    async def _json(self, method: str, path: str, **kwargs):
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PermanentTransportError(f"{method} {path} returned a body that is not JSON", cause=e) from e

    async def _entity(self, model: type[ModelT], method: str, path: str, **kwargs) -> ModelT:
        """Send one write and parse the entity it returns, bare or under `data`."""
        data = await self._json(method, path, **kwargs)
        if isinstance(data, dict) and isinstance(data.get("data"), dict) and "id" not in data:
            data = data["data"]
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise PermanentTransportError(
                f"{method} {path} returned an unexpected {model.__name__}: {e.error_count()} invalid fields", cause=e
            ) from e

    # orders

    async def create_order(self, payload: OrderPayload, idempotency_key: str) -> Order:
        body = payload.to_wire()
        body.setdefault("userId", self.user_id)
        return await self._entity(
            Order,
            "POST",
            "/api/orders",
            json=body,
            headers={"X-Idempotency-Key": idempotency_key},
        )

    async def delete_order(self, order_id: str):
        await self._request("DELETE", f"/api/orders/{order_id}")

    # cash sessions and withdrawals

    async def open_cash_session(self, start_amount: float) -> CashSession:
        return await self._entity(
            CashSession,
            "POST",
            "/api/cash-sessions",
            json={"startAmount": start_amount, "startTime": utcnow().isoformat(), "userId": self.user_id},
        )

    async def close_cash_session(self, session_id: str, patch: dict) -> CashSession:
        return await self._entity(CashSession, "PUT", f"/api/cash-sessions/{session_id}", json=patch)

    async def create_withdrawal(self, session_id: str, amount: float, description: str) -> CashWithdrawal:
        return await self._entity(
            CashWithdrawal,
            "POST",
            "/api/cash-withdrawals",
            json={"cashSessionId": session_id, "amount": amount, "description": description, "userId": self.user_id},
        )

    async def delete_withdrawal(self, withdrawal_id: str):
        await self._request("DELETE", f"/api/cash-withdrawals/{withdrawal_id}")

    # coworking

    async def create_coworking_session(self, client_name: str) -> CoworkingSession:
        return await self._entity(
            CoworkingSession,
            "POST",
            "/api/coworking-sessions",
            json={"clientName": client_name, "startTime": utcnow().isoformat()},
        )

    async def update_coworking_session(self, session_id: str, patch: dict) -> CoworkingSession:
        return await self._entity(CoworkingSession, "PUT", f"/api/coworking-sessions/{session_id}", json=patch)

    async def delete_coworking_session(self, session_id: str):
        await self._request("DELETE", f"/api/coworking-sessions/{session_id}")

    # customers

    async def add_customer_credit(self, customer_id: str, amount: float, kind: str, description: str, order_id: str | None = None) -> CustomerCredit:
        body = {"amount": amount, "type": kind, "description": description}
        if order_id:
            body["orderId"] = order_id
        return await self._entity(CustomerCredit, "POST", f"/api/customers/{customer_id}/credits", json=body)

    # bulk reads

    async def list_collection(self, collection: Collection, limit: int | None = None) -> list[dict]:
        params = {"limit": limit} if limit else None
        body = await self._json("GET", COLLECTION_PATHS[collection], params=params)
        items = unwrap_list(body)
        total = body.get("pagination", {}).get("total") if isinstance(body, dict) else None
        logger.debug("collection_listed", collection=collection.value, loaded=len(items), total=total or len(items))
        return items
