from cafe_pos.agents.events import EventStreamAgent, PushSource
from cafe_pos.agents.store import StoreAgent
from cafe_pos.agents.submission import SubmissionAgent
from cafe_pos.config import settings
from cafe_pos.services.cash import CashLedger
from cafe_pos.services.checkout import Cart, CheckoutMachine
from cafe_pos.services.coworking import CoworkingService
from cafe_pos.services.customer import CustomerAccounts
from cafe_pos.sync.channel import ReconciliationChannel
from cafe_pos.sync.store import LocalStore

class Terminal:
    """One point-of-sale terminal: its replica, its cart and the services over them."""

    def __init__(
        self,
        agent: StoreAgent | None = None,
        push: PushSource | None = None,
        with_push: bool = True,
        submissions: SubmissionAgent | None = None,
        user_id: str | None = None,
    ):
        self.user_id = user_id or settings.TERMINAL_USER_ID
        self.agent = agent or StoreAgent(user_id=self.user_id)
        if push is None and with_push:
            push = EventStreamAgent()
        self.push = push
        self.submissions = submissions or SubmissionAgent()

        self.store = LocalStore()
        self.channel = ReconciliationChannel(self.store, self.agent, self.push)
        self.cart = Cart()
        self.checkout = CheckoutMachine(
            self.cart, self.store, self.agent, self.submissions, self.channel, user_id=self.user_id
        )
        self.cash = CashLedger(self.store, self.agent, self.submissions, self.channel)
        self.coworking = CoworkingService(
            self.store, self.agent, self.submissions, self.channel, user_id=self.user_id
        )
        self.customers = CustomerAccounts(self.store, self.agent, self.channel)

    async def start(self):
        await self.channel.start()

    async def stop(self):
        await self.channel.stop()
        self.submissions.deduplicator.clear_all()
        for client in (self.agent, self.push):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()
