"""Discovery router: /api/v1/discovery/* search and ranking endpoints."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query
from starlette.requests import Request

from marketplace.deps import get_server
from marketplace.discovery import DiscoveryQuery
from marketplace.errors import NotFound
from marketplace.models import FindMatchesRequest
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/discovery")


@router.get("/search")
async def search_providers(
    request: Request,
    gpu_count: int = Query(..., ge=1),
    gpu_type: str = Query(...),
    max_price: Decimal = Query(..., gt=0),
    region: Optional[str] = Query(default=None),
):
    srv = get_server(request)
    results = await srv.discovery.search_capabilities(gpu_count, gpu_type, max_price, region)
    return format_response({
        "query": {
            "gpu_count": gpu_count,
            "gpu_type": gpu_type,
            "max_price": max_price,
            "region": region or "any",
        },
        "results": results,
        "count": len(results),
    })


@router.get("/providers/{provider_id}")
async def provider_details(request: Request, provider_id: str):
    srv = get_server(request)
    capabilities = await srv.discovery.get_provider_capabilities(provider_id)
    if not capabilities:
        raise NotFound("Provider", provider_id)
    return format_response({"provider_id": provider_id, "capabilities": capabilities})


@router.post("/find-matches")
async def find_matches(request: Request, req: FindMatchesRequest):
    srv = get_server(request)
    query = DiscoveryQuery(
        gpu_count=req.gpu_count,
        gpu_type=req.gpu_type,
        max_price_per_hour=req.max_price_per_hour,
        duration_hours=req.duration_hours,
        region=req.region,
    )
    matches = await srv.discovery.find_matches(query, limit=max(1, min(req.limit, 100)))
    return format_response({"matches": matches, "count": len(matches)})


@router.get("/stats")
async def marketplace_stats(request: Request):
    srv = get_server(request)
    return format_response(await srv.reputation.marketplace_stats())
