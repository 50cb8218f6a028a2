"""
agents.py - Agent registry.

Agents register as requesters, providers or both and receive an API key
plus a bearer token. Deleting an agent cascades to everything it owns.
"""

import logging
from typing import TYPE_CHECKING, List, Optional

from marketplace.errors import InvalidInput, NotFound
from marketplace.states import AgentType, parse

if TYPE_CHECKING:
    from marketplace.auth import AuthService
    from marketplace.storage import AgentRepo

logger = logging.getLogger("agents")

MAX_PAGE = 100


def public_view(agent: dict) -> dict:
    """Agent record without its API key."""
    return {k: v for k, v in agent.items() if k != "api_key"}


class AgentService:
    """Registration and profile management."""

    def __init__(self, agent_repo: "AgentRepo", auth: "AuthService"):
        self._repo = agent_repo
        self.auth = auth

    async def register(self, name: str, agent_type: str, wallet_address: Optional[str] = None) -> dict:
        if not name or not name.strip():
            raise InvalidInput("Name is required")
        if not agent_type:
            raise InvalidInput("Type is required")
        kind = parse(AgentType, agent_type, field="type")
        agent = await self._repo.create(
            name=name.strip(),
            agent_type=kind.value,
            api_key=self.auth.generate_api_key(),
            wallet_address=wallet_address,
        )
        logger.info("Registered agent %s type=%s", agent["id"], kind.value)
        return {"agent": agent, "token": self.auth.issue_jwt(agent["id"])}

    async def get_agent(self, agent_id: str) -> dict:
        agent = await self._repo.get(agent_id)
        if agent is None:
            raise NotFound("Agent", agent_id)
        return public_view(agent)

    async def list_agents(self, limit: int = MAX_PAGE, offset: int = 0, agent_type: Optional[str] = None) -> List[dict]:
        if agent_type:
            rows = await self._repo.list_by_type(parse(AgentType, agent_type, field="type").value)
        else:
            limit = max(1, min(limit, MAX_PAGE))
            rows = await self._repo.list_all(limit=limit, offset=max(0, offset))
        return [public_view(a) for a in rows]

    async def update_profile(
        self, agent_id: str, name: Optional[str] = None, wallet_address: Optional[str] = None,
    ) -> dict:
        await self.get_agent(agent_id)
        fields = {}
        if name is not None:
            if not name.strip():
                raise InvalidInput("Name cannot be empty")
            fields["name"] = name.strip()
        if wallet_address is not None:
            fields["wallet_address"] = wallet_address
        agent = await self._repo.update(agent_id, **fields)
        logger.info("Agent %s profile updated (%s)", agent_id, ", ".join(fields) or "no changes")
        return public_view(agent)

    async def delete_agent(self, agent_id: str):
        if not await self._repo.delete(agent_id):
            raise NotFound("Agent", agent_id)
        logger.info("Agent %s deleted", agent_id)
