"""Dependency helpers for router modules."""

from fastapi import Header, HTTPException
from starlette.requests import Request


def get_server(request: Request):
    return request.app.state.server


async def current_agent(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
) -> dict:
    """Resolve the calling agent from a bearer token or API key, else 401."""
    srv = get_server(request)
    agent = await srv.auth.resolve_agent(x_api_key, authorization)
    if agent is None:
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid credentials. Pass Authorization: Bearer <jwt> or X-API-Key header.",
        )
    return agent
