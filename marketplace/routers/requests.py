"""Requests router: /api/v1/requests/* compute request endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from starlette.requests import Request

from marketplace.deps import current_agent, get_server
from marketplace.discovery import DiscoveryQuery
from marketplace.errors import Unauthorized
from marketplace.models import ComputeRequestCreate, ComputeRequestUpdate, CreateMatchRequest
from marketplace.responses import format_error, format_response

router = APIRouter(prefix="/api/v1/requests")


async def _owned_request(srv, request_id: str, agent: dict) -> dict:
    compute_request = await srv.requests.get(request_id)
    if compute_request["requester_id"] != agent["id"]:
        raise Unauthorized("Only the requester can act on this request", request_id=request_id)
    return compute_request


@router.post("", status_code=201)
async def create_request(request: Request, req: ComputeRequestCreate, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    compute_request = await srv.requests.create(
        agent,
        gpu_count=req.gpu_count,
        gpu_type=req.gpu_type,
        duration_hours=req.duration_hours,
        max_price_per_hour=req.max_price_per_hour,
        cpu_cores=req.cpu_cores,
        memory_gb=req.memory_gb,
        description=req.description,
    )
    return format_response(compute_request, "Request created successfully", 201)


@router.get("/my-requests")
async def my_requests(request: Request, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    requests = await srv.requests.list_mine(agent["id"])
    return format_response({"requests": requests, "count": len(requests)})


@router.get("")
async def list_requests(
    request: Request,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    srv = get_server(request)
    requests = await srv.requests.list(status=status, limit=limit, offset=offset)
    return format_response({"requests": requests, "count": len(requests)})


@router.get("/{request_id}")
async def get_request(request: Request, request_id: str):
    srv = get_server(request)
    return format_response(await srv.requests.get(request_id))


@router.patch("/{request_id}")
async def update_request(
    request: Request, request_id: str, req: ComputeRequestUpdate,
    agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    updated = await srv.requests.update_request(
        request_id, agent["id"],
        status=req.status,
        description=req.description,
        max_price_per_hour=req.max_price_per_hour,
        duration_hours=req.duration_hours,
        cpu_cores=req.cpu_cores,
        memory_gb=req.memory_gb,
    )
    return format_response(updated, "Request updated successfully")


@router.post("/{request_id}/find-matches")
async def find_matches(request: Request, request_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    compute_request = await _owned_request(srv, request_id, agent)
    matches = await srv.discovery.find_matches(DiscoveryQuery.from_request(compute_request))
    return format_response({
        "request_id": request_id,
        "matches": [
            {
                "provider_id": m["provider_id"],
                "capability_id": m["id"],
                "gpu_count": m["gpu_count"],
                "price_per_hour": m["price_per_hour"],
                "reputation_score": m["reputation_score"],
                "match_score": m["match_score"],
            }
            for m in matches
        ],
        "count": len(matches),
    })


@router.post("/{request_id}/auto-match", status_code=201)
async def auto_match(request: Request, request_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    await _owned_request(srv, request_id, agent)
    match = await srv.matcher.create_match(request_id)
    if match is None:
        return JSONResponse(status_code=404, content=format_error("No matching providers found", 404))
    return format_response(match, "Request auto-matched successfully", 201)


@router.post("/{request_id}/matches", status_code=201)
async def create_match(
    request: Request, request_id: str, req: CreateMatchRequest,
    agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    await _owned_request(srv, request_id, agent)
    match = await srv.matcher.create_match_for_capability(request_id, req.capability_id)
    return format_response(match, "Match created successfully", 201)
