"""
auth.py - JWT + API key authentication.

Two credentials resolve to an agent:
  1. Authorization: Bearer <jwt>   (HS256, claim agent_id, 30 day expiry)
  2. X-API-Key: <key>              (issued at registration)

resolve_agent() checks the bearer token first, then the API key. Controllers
only ever receive the resolved agent id.
"""

import logging
import secrets
import time
from typing import TYPE_CHECKING, Optional

import jwt as pyjwt

from marketplace.errors import Unauthorized

if TYPE_CHECKING:
    from marketplace.storage import AgentRepo

logger = logging.getLogger("auth")

JWT_TTL = 30 * 86400  # 30 days
JWT_ALGORITHM = "HS256"


class AuthService:
    """Token issuing and credential resolution."""

    def __init__(self, agent_repo: "AgentRepo", jwt_secret: str = ""):
        self._repo = agent_repo
        self._jwt_secret = jwt_secret or secrets.token_hex(32)
        if not jwt_secret:
            logger.warning(
                "No --jwt-secret provided; generated ephemeral secret "
                "(JWTs will invalidate on restart)"
            )

    @staticmethod
    def generate_api_key() -> str:
        return secrets.token_hex(32)

    def issue_jwt(self, agent_id: str) -> str:
        now = int(time.time())
        payload = {"agent_id": agent_id, "iat": now, "exp": now + JWT_TTL}
        return pyjwt.encode(payload, self._jwt_secret, algorithm=JWT_ALGORITHM)

    def decode_jwt(self, token: str) -> Optional[dict]:
        try:
            return pyjwt.decode(token, self._jwt_secret, algorithms=[JWT_ALGORITHM])
        except pyjwt.ExpiredSignatureError:
            logger.debug("Rejected expired token")
            return None
        except pyjwt.InvalidTokenError:
            return None

    async def resolve_agent(self, x_api_key: str = "", authorization: str = "") -> Optional[dict]:
        """Resolve a bearer token or API key to an agent. None if neither is valid."""
        if authorization.startswith("Bearer "):
            claims = self.decode_jwt(authorization[7:])
            if claims:
                agent = await self._repo.get(claims.get("agent_id", ""))
                if agent:
                    return agent
        if not x_api_key:
            return None
        return await self._repo.get_by_api_key(x_api_key)

    @staticmethod
    def require_type(agent: dict, *types: str):
        """Raise Unauthorized unless the agent is one of ``types`` or 'both'."""
        if agent["type"] != "both" and agent["type"] not in types:
            raise Unauthorized(
                f"Agent type '{agent['type']}' cannot perform this action",
                agent_id=agent["id"], required="|".join(types),
            )
