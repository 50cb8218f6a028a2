"""Agents router: /api/v1/agents/* endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from starlette.requests import Request

from marketplace.agents import public_view
from marketplace.deps import current_agent, get_server
from marketplace.models import RegisterAgentRequest, UpdateAgentRequest
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/agents")


@router.post("/register", status_code=201)
async def register_agent(request: Request, req: RegisterAgentRequest):
    srv = get_server(request)
    result = await srv.agents.register(req.name, req.type, req.wallet_address)
    return format_response(result, "Agent registered successfully", 201)


@router.get("/profile")
async def get_profile(agent: dict = Depends(current_agent)):
    return format_response(public_view(agent))


@router.patch("/profile")
async def update_profile(request: Request, req: UpdateAgentRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    updated = await srv.agents.update_profile(agent["id"], name=req.name, wallet_address=req.wallet_address)
    return format_response(updated, "Profile updated successfully")


@router.delete("/profile")
async def delete_profile(request: Request, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    await srv.agents.delete_agent(agent["id"])
    return format_response({"id": agent["id"]}, "Agent deleted successfully")


@router.get("")
async def list_agents(
    request: Request,
    type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    srv = get_server(request)
    agents = await srv.agents.list_agents(limit=limit, offset=offset, agent_type=type)
    return format_response({"agents": agents, "count": len(agents)})


@router.get("/{agent_id}")
async def get_agent(request: Request, agent_id: str):
    srv = get_server(request)
    return format_response(await srv.agents.get_agent(agent_id))


@router.get("/{agent_id}/stats")
async def get_agent_stats(request: Request, agent_id: str):
    srv = get_server(request)
    return format_response(await srv.reputation.agent_stats(agent_id))
