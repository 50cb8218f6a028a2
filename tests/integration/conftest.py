"""
conftest.py - Shared fixtures for marketplace integration tests.

Each test gets a PlatformServer whose services run over a fresh in-memory
SQLite database and an in-process PaymentSimulator. The ``market`` fixture
wraps that server with shortcuts for seeding agents, listings, requests and
the common match / escrow states.
"""

import pytest
import pytest_asyncio

from marketplace.payment_simulator import PaymentSimulator
from marketplace.server import PlatformServer

WEBHOOK_SECRET = "whsec_test"
JWT_SECRET = "test-jwt-secret"


class Market:
    """Seeding helpers over a PlatformServer's services."""

    def __init__(self, server: PlatformServer):
        self.server = server
        self.storage = server.storage
        self.processor = server.processor
        self.agents = server.agents
        self.capabilities = server.capabilities
        self.requests = server.requests
        self.discovery = server.discovery
        self.matcher = server.matcher
        self.payments = server.payments
        self.verification = server.verification
        self.reputation = server.reputation

    async def agent(self, name: str, agent_type: str = "requester", reputation=None) -> dict:
        agent = (await self.agents.register(name, agent_type))["agent"]
        if reputation is not None:
            await self.storage.agents.set_reputation(agent["id"], reputation)
            agent = await self.storage.agents.get(agent["id"])
        return agent

    async def capability(
        self, provider: dict, gpu_count=8, gpu_type="H100", price="45.50",
        available_hours=100, region=None, cpu_cores=64, memory_gb=512,
    ) -> dict:
        return await self.capabilities.create(
            provider, gpu_count, gpu_type, cpu_cores, memory_gb, price,
            region=region, available_hours=available_hours,
        )

    async def request(
        self, requester: dict, gpu_count=8, gpu_type="H100", duration_hours=2, max_price="50",
    ) -> dict:
        return await self.requests.create(requester, gpu_count, gpu_type, duration_hours, max_price)

    async def proposed(self):
        """Requester, provider and a proposed match between them."""
        requester = await self.agent("alice", "requester")
        provider = await self.agent("gpu-farm", "provider", reputation=4.8)
        await self.capability(provider)
        request = await self.request(requester)
        match = await self.matcher.create_match(request["id"])
        return requester, provider, match

    async def accepted(self):
        requester, provider, match = await self.proposed()
        match = await self.matcher.accept_match(match["id"], provider["id"])
        return requester, provider, match

    async def escrowed(self, amount="91.00"):
        """An accepted match with ``amount`` confirmed into escrow."""
        requester, provider, match = await self.accepted()
        intent = await self.payments.create_payment_intent(
            match["id"], amount, requester["id"], provider["id"],
        )
        self.processor.succeed_intent(intent["payment_intent_id"])
        tx = await self.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        return requester, provider, match, tx


@pytest.fixture
def processor():
    return PaymentSimulator(webhook_secret=WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def server(processor):
    srv = PlatformServer(db_path=":memory:", jwt_secret=JWT_SECRET, processor=processor)
    await srv._init_services()
    yield srv
    await srv.close()


@pytest_asyncio.fixture
async def storage(server):
    return server.storage


@pytest_asyncio.fixture
async def market(server):
    return Market(server)
