"""Matches router: /api/v1/matches/* lifecycle endpoints."""

from fastapi import APIRouter, Depends, Query
from starlette.requests import Request

from marketplace.deps import current_agent, get_server
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/matches")


@router.get("/my-matches")
async def my_matches(request: Request, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    matches = await srv.matcher.list_for_provider(agent["id"])
    return format_response({"matches": matches, "count": len(matches)})


@router.get("/request/{request_id}")
async def matches_for_request(request: Request, request_id: str):
    srv = get_server(request)
    matches = await srv.matcher.list_for_request(request_id)
    return format_response({"request_id": request_id, "matches": matches, "count": len(matches)})


@router.get("")
async def list_matches(request: Request, status: str = Query(default="proposed")):
    srv = get_server(request)
    matches = await srv.matcher.list_by_status(status)
    return format_response({"matches": matches, "count": len(matches)})


@router.get("/{match_id}")
async def get_match(request: Request, match_id: str):
    srv = get_server(request)
    return format_response(await srv.matcher.get_match(match_id))


@router.post("/{match_id}/accept")
async def accept_match(request: Request, match_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    match = await srv.matcher.accept_match(match_id, agent["id"])
    return format_response(match, "Match accepted successfully")


@router.post("/{match_id}/complete")
async def complete_match(request: Request, match_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    match = await srv.matcher.complete_match(match_id, agent["id"])
    return format_response(match, "Match completed successfully")


@router.post("/{match_id}/cancel")
async def cancel_match(request: Request, match_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    match = await srv.matcher.cancel_match(match_id, agent["id"])
    return format_response(match, "Match cancelled successfully")
