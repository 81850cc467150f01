import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Literal

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cafe_pos.config import settings
from cafe_pos.errors import ConflictError, PosError, ValidationFailed
from cafe_pos.logger import configure_logging
from cafe_pos.schemas.actor import Actor
from cafe_pos.schemas.event import Collection
from cafe_pos.schemas.wire import PaymentMethod
from cafe_pos.services.checkout import CheckoutDetails, delete_order
from cafe_pos.terminal import Terminal

STATUS_BY_KIND = {
    "validation": 422,
    "conflict": 409,
    "permission": 403,
    "transport": 502,
    "timeout": 504,
}

class CartItemIn(BaseModel):
    product_id: str
    quantity: int = 1

class QuantityIn(BaseModel):
    quantity: int

class AmountIn(BaseModel):
    amount: float

class WithdrawalIn(BaseModel):
    amount: float
    description: str = ""

class CoworkingIn(BaseModel):
    client_name: str

class FinishIn(BaseModel):
    payment_method: PaymentMethod

class CreditIn(BaseModel):
    amount: float
    type: Literal["charge", "payment"]
    description: str = ""
    override_limit: bool = False

class FlagIn(BaseModel):
    value: bool

def create_app(terminal_factory: Callable[[], Terminal] = Terminal) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        terminal = terminal_factory()
        app.state.terminal = terminal
        start_task = asyncio.create_task(terminal.start())
        app.state.start_task = start_task
        yield
        start_task.cancel()
        await asyncio.gather(start_task, return_exceptions=True)
        await terminal.stop()

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(PosError)
    async def pos_error_handler(request: Request, exc: PosError):
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, 500),
            content={"error": str(exc), "kind": exc.kind},
        )

    def terminal(request: Request) -> Terminal:
        return request.app.state.terminal

    def actor(x_actor_id: str = Header("guest"), x_actor_role: Literal["admin", "employee"] = Header("employee")) -> Actor:
        return Actor(id=x_actor_id, role=x_actor_role)

    def product(t: Terminal, product_id: str):
        found = t.store.find(Collection.PRODUCTS, product_id)
        if found is None:
            raise ValidationFailed(f"unknown product {product_id}")
        return found

    # collections

    @app.get("/collections/{collection}")
    async def get_collection(collection: Collection, t: Terminal = Depends(terminal)):
        return [item.to_wire() for item in t.store.get(collection)]

    # cart

    @app.get("/cart")
    async def get_cart(t: Terminal = Depends(terminal)):
        return {"lines": [line.to_wire() for line in t.cart.lines], "subtotal": t.cart.subtotal}

    @app.post("/cart/items")
    async def add_to_cart(body: CartItemIn, t: Terminal = Depends(terminal)):
        return t.cart.add(product(t, body.product_id), body.quantity).to_wire()

    @app.put("/cart/items/{product_id}")
    async def set_cart_quantity(product_id: str, body: QuantityIn, t: Terminal = Depends(terminal)):
        t.cart.set_quantity(product_id, body.quantity)
        return {"lines": [line.to_wire() for line in t.cart.lines], "subtotal": t.cart.subtotal}

    @app.delete("/cart/items/{product_id}")
    async def remove_from_cart(product_id: str, t: Terminal = Depends(terminal)):
        t.cart.remove(product_id)
        return {"lines": [line.to_wire() for line in t.cart.lines], "subtotal": t.cart.subtotal}

    @app.delete("/cart")
    async def clear_cart(t: Terminal = Depends(terminal)):
        t.cart.clear()
        return {"lines": [], "subtotal": 0}

    # checkout

    def checkout_view(t: Terminal) -> dict:
        return {
            "state": t.checkout.state.value,
            "context": t.checkout.context.model_dump(mode="json"),
        }

    def transition(t: Terminal, accepted: bool) -> dict:
        if not accepted:
            raise ConflictError(f"checkout cannot do that while {t.checkout.state.value}")
        return checkout_view(t)

    @app.get("/checkout")
    async def get_checkout(t: Terminal = Depends(terminal)):
        return checkout_view(t)

    @app.post("/checkout/start")
    async def start_checkout(t: Terminal = Depends(terminal)):
        return transition(t, t.checkout.start_checkout())

    @app.post("/checkout/submit")
    async def submit_checkout(details: CheckoutDetails, t: Terminal = Depends(terminal)):
        result = await t.checkout.submit(details)
        return result.model_dump(mode="json")

    @app.post("/checkout/retry")
    async def retry_checkout(t: Terminal = Depends(terminal)):
        return transition(t, t.checkout.retry())

    @app.post("/checkout/cancel")
    async def cancel_checkout(t: Terminal = Depends(terminal)):
        return transition(t, t.checkout.cancel())

    @app.post("/checkout/reset")
    async def reset_checkout(t: Terminal = Depends(terminal)):
        return transition(t, t.checkout.reset())

    @app.delete("/orders/{order_id}")
    async def remove_order(order_id: str, t: Terminal = Depends(terminal), who: Actor = Depends(actor)):
        await delete_order(t.agent, t.channel, who, order_id)
        return {"deleted": order_id}

    # cash

    @app.post("/cash/open")
    async def open_cash(body: AmountIn, t: Terminal = Depends(terminal)):
        return (await t.cash.open(body.amount)).to_wire()

    @app.get("/cash/summary")
    async def cash_summary(t: Terminal = Depends(terminal)):
        return t.cash.summary().model_dump(mode="json")

    @app.post("/cash/close")
    async def close_cash(body: AmountIn, t: Terminal = Depends(terminal)):
        return (await t.cash.close(body.amount)).to_wire()

    @app.get("/cash/history")
    async def cash_history(t: Terminal = Depends(terminal)):
        return [session.to_wire() for session in t.cash.history()]

    @app.post("/cash/withdrawals")
    async def withdraw_cash(body: WithdrawalIn, t: Terminal = Depends(terminal)):
        return (await t.cash.withdraw(body.amount, body.description)).to_wire()

    @app.delete("/cash/withdrawals/{withdrawal_id}")
    async def remove_withdrawal(withdrawal_id: str, t: Terminal = Depends(terminal), who: Actor = Depends(actor)):
        await t.cash.delete_withdrawal(who, withdrawal_id)
        return {"deleted": withdrawal_id}

    # coworking

    @app.post("/coworking")
    async def start_coworking(body: CoworkingIn, t: Terminal = Depends(terminal)):
        return (await t.coworking.start(body.client_name)).to_wire()

    @app.post("/coworking/{session_id}/extras")
    async def add_coworking_extra(session_id: str, body: CartItemIn, t: Terminal = Depends(terminal)):
        session = await t.coworking.add_extra(session_id, product(t, body.product_id), body.quantity)
        return session.to_wire()

    @app.get("/coworking/{session_id}/estimate")
    async def estimate_coworking(session_id: str, t: Terminal = Depends(terminal)):
        return t.coworking.estimate(session_id).model_dump()

    @app.post("/coworking/{session_id}/finish")
    async def finish_coworking(session_id: str, body: FinishIn, t: Terminal = Depends(terminal)):
        return (await t.coworking.finish(session_id, body.payment_method)).to_wire()

    @app.post("/coworking/{session_id}/cancel")
    async def cancel_coworking(session_id: str, t: Terminal = Depends(terminal)):
        await t.coworking.cancel(session_id)
        return {"cancelled": session_id}

    @app.delete("/coworking/{session_id}")
    async def remove_coworking(session_id: str, t: Terminal = Depends(terminal), who: Actor = Depends(actor)):
        await t.coworking.delete(who, session_id)
        return {"deleted": session_id}

    # customers

    @app.post("/customers/{customer_id}/credits")
    async def record_credit(customer_id: str, body: CreditIn, t: Terminal = Depends(terminal)):
        credit = await t.customers.record_credit(
            customer_id, body.amount, body.type, body.description, override_limit=body.override_limit
        )
        return credit.to_wire()

    # channel

    def channel_view(t: Terminal) -> dict:
        return {
            "push": t.push.state.value if t.push is not None else None,
            "online": t.channel.online,
            "visible": t.channel.visible,
            "reconnect_attempts": t.channel.reconnect_attempts,
        }

    @app.get("/channel")
    async def get_channel(t: Terminal = Depends(terminal)):
        return channel_view(t)

    @app.post("/channel/resume")
    async def resume_channel(t: Terminal = Depends(terminal)):
        t.channel.resume()
        return channel_view(t)

    @app.post("/channel/online")
    async def set_online(body: FlagIn, t: Terminal = Depends(terminal)):
        t.channel.set_online(body.value)
        return channel_view(t)

    @app.post("/channel/visibility")
    async def set_visibility(body: FlagIn, t: Terminal = Depends(terminal)):
        t.channel.set_visible(body.value)
        return channel_view(t)

    @app.post("/channel/refresh")
    async def refresh_channel(t: Terminal = Depends(terminal)):
        loaded = await t.channel.poll_once()
        return {collection.value: ok for collection, ok in loaded.items()}

    return app

app = create_app()

def run():
    uvicorn.run("cafe_pos.main:app", host=settings.HOST, port=settings.PORT)
