"""Providers router: /api/v1/providers/* capability endpoints."""

from fastapi import APIRouter, Depends
from starlette.requests import Request

from marketplace.deps import current_agent, get_server
from marketplace.models import CapabilityCreateRequest, CapabilityUpdateRequest
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/providers")


@router.post("/capabilities", status_code=201)
async def create_capability(request: Request, req: CapabilityCreateRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    capability = await srv.capabilities.create(
        agent,
        gpu_count=req.gpu_count,
        gpu_type=req.gpu_type,
        cpu_cores=req.cpu_cores,
        memory_gb=req.memory_gb,
        price_per_hour=req.price_per_hour,
        region=req.region,
        available_hours=req.available_hours,
    )
    return format_response(capability, "Capability created successfully", 201)


@router.get("/my-capabilities")
async def my_capabilities(request: Request, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    capabilities = await srv.capabilities.list_for_provider(agent["id"])
    return format_response({"capabilities": capabilities, "count": len(capabilities)})


@router.get("/capabilities/{provider_id}")
async def provider_capabilities(request: Request, provider_id: str):
    srv = get_server(request)
    capabilities = await srv.capabilities.list_for_provider(provider_id)
    return format_response({"capabilities": capabilities, "count": len(capabilities)})


@router.patch("/capabilities/{capability_id}")
async def update_capability(
    request: Request, capability_id: str, req: CapabilityUpdateRequest,
    agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    capability = await srv.capabilities.update(
        capability_id, agent["id"],
        price_per_hour=req.price_per_hour,
        available_hours=req.available_hours,
        availability_status=req.availability_status,
    )
    return format_response(capability, "Capability updated successfully")


@router.delete("/capabilities/{capability_id}")
async def delete_capability(request: Request, capability_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    await srv.capabilities.delete(capability_id, agent["id"])
    return format_response({"id": capability_id}, "Capability deleted successfully")
