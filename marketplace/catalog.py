"""
catalog.py - Provider capability listings and compute requests.

Plain CRUD with ownership checks: providers manage their own capabilities,
requesters their own requests. A request can only be edited while pending,
and the only status change a requester may make directly is to cancel it.
"""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from marketplace.auth import AuthService
from marketplace.errors import Conflict, InvalidInput, MarketError, NotFound, PartialFailure, Unauthorized
from marketplace.states import AvailabilityStatus, RequestStatus, parse, sources, transition
from marketplace.storage._util import to_money

if TYPE_CHECKING:
    from marketplace.storage import CapabilityRepo, MatchRepo, RequestRepo

logger = logging.getLogger("catalog")

DEFAULT_REGION = "us-east-1"


def _positive_int(value, field: str, required: bool = True) -> Optional[int]:
    if value is None:
        if required:
            raise InvalidInput(f"{field} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInput(f"{field} must be a positive integer")
    return value


def _positive_money(value, field: str) -> Decimal:
    if value is None:
        raise InvalidInput(f"{field} is required")
    amount = to_money(value)
    if amount <= 0:
        raise InvalidInput(f"{field} must be greater than zero")
    return amount


class CapabilityService:
    """Capability listings owned by provider agents."""

    def __init__(self, capability_repo: "CapabilityRepo"):
        self._repo = capability_repo

    async def create(
        self,
        provider: dict,
        gpu_count: int,
        gpu_type: str,
        cpu_cores: int,
        memory_gb: int,
        price_per_hour,
        region: Optional[str] = None,
        available_hours: int = 0,
    ) -> dict:
        AuthService.require_type(provider, "provider")
        if not gpu_type or not gpu_type.strip():
            raise InvalidInput("gpu_type is required")
        if available_hours is None or available_hours < 0:
            raise InvalidInput("available_hours must be zero or more")
        capability = await self._repo.create(
            provider_id=provider["id"],
            gpu_count=_positive_int(gpu_count, "gpu_count"),
            gpu_type=gpu_type.strip(),
            cpu_cores=_positive_int(cpu_cores, "cpu_cores"),
            memory_gb=_positive_int(memory_gb, "memory_gb"),
            price_per_hour=_positive_money(price_per_hour, "price_per_hour"),
            region=region or DEFAULT_REGION,
            available_hours=available_hours,
        )
        logger.info("Capability %s listed: provider=%s %dx %s at %s/h",
                    capability["id"], provider["id"], gpu_count, gpu_type, capability["price_per_hour"])
        return capability

    async def get(self, capability_id: str) -> dict:
        capability = await self._repo.get(capability_id)
        if capability is None:
            raise NotFound("Capability", capability_id)
        return capability

    async def list_for_provider(self, provider_id: str) -> List[dict]:
        return await self._repo.list_for_provider(provider_id)

    async def update(
        self,
        capability_id: str,
        caller_id: str,
        price_per_hour=None,
        available_hours: Optional[int] = None,
        availability_status: Optional[str] = None,
    ) -> dict:
        capability = await self._owned(capability_id, caller_id)
        fields = {}
        if price_per_hour is not None:
            fields["price_per_hour"] = _positive_money(price_per_hour, "price_per_hour")
        if available_hours is not None:
            if available_hours < 0:
                raise InvalidInput("available_hours must be zero or more")
            fields["available_hours"] = available_hours
        if availability_status is not None:
            fields["availability_status"] = parse(
                AvailabilityStatus, availability_status, field="availability_status",
            ).value
        updated = await self._repo.update(capability["id"], **fields)
        logger.info("Capability %s updated (%s)", capability_id, ", ".join(fields) or "no changes")
        return updated

    async def delete(self, capability_id: str, caller_id: str):
        await self._owned(capability_id, caller_id)
        await self._repo.delete(capability_id)
        logger.info("Capability %s deleted", capability_id)

    async def _owned(self, capability_id: str, caller_id: str) -> dict:
        capability = await self.get(capability_id)
        if capability["provider_id"] != caller_id:
            raise Unauthorized("Only the owning provider can modify this capability",
                               capability_id=capability_id)
        return capability


class RequestService:
    """Compute requests owned by requester agents."""

    def __init__(self, request_repo: "RequestRepo", match_repo: "MatchRepo"):
        self._repo = request_repo
        self._matches = match_repo

    async def create(
        self,
        requester: dict,
        gpu_count: int,
        gpu_type: str,
        duration_hours: int,
        max_price_per_hour,
        cpu_cores: Optional[int] = None,
        memory_gb: Optional[int] = None,
        description: Optional[str] = None,
    ) -> dict:
        AuthService.require_type(requester, "requester")
        if not gpu_type or not gpu_type.strip():
            raise InvalidInput("gpu_type is required")
        request = await self._repo.create(
            requester_id=requester["id"],
            gpu_count=_positive_int(gpu_count, "gpu_count"),
            gpu_type=gpu_type.strip(),
            duration_hours=_positive_int(duration_hours, "duration_hours"),
            max_price_per_hour=_positive_money(max_price_per_hour, "max_price_per_hour"),
            cpu_cores=_positive_int(cpu_cores, "cpu_cores", required=False),
            memory_gb=_positive_int(memory_gb, "memory_gb", required=False),
            description=description,
        )
        logger.info("Request %s created: requester=%s %dx %s for %dh <= %s/h",
                    request["id"], requester["id"], gpu_count, gpu_type, duration_hours,
                    request["max_price_per_hour"])
        return request

    async def get(self, request_id: str) -> dict:
        request = await self._repo.get(request_id)
        if request is None:
            raise NotFound("ComputeRequest", request_id)
        return request

    async def list(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[dict]:
        limit = max(1, min(limit, 100))
        if status:
            return await self._repo.list_by_status(
                parse(RequestStatus, status).value, limit=limit, offset=max(0, offset),
            )
        return await self._repo.list_all(limit=limit, offset=max(0, offset))

    async def list_mine(self, requester_id: str) -> List[dict]:
        return await self._repo.list_for_requester(requester_id)

    async def update_request(self, request_id: str, caller_id: str, status: Optional[str] = None, **fields) -> dict:
        """Edit a pending request, or cancel it via ``status='cancelled'``."""
        request = await self.get(request_id)
        if request["requester_id"] != caller_id:
            raise Unauthorized("Only the requester can modify this request", request_id=request_id)

        edits = {k: v for k, v in fields.items() if v is not None}
        if edits:
            for key in ("duration_hours", "cpu_cores", "memory_gb"):
                if key in edits:
                    _positive_int(edits[key], key)
            if "max_price_per_hour" in edits:
                edits["max_price_per_hour"] = _positive_money(edits["max_price_per_hour"], "max_price_per_hour")
            if request["status"] != RequestStatus.PENDING.value:
                raise Conflict("Only pending requests can be edited",
                               entity_id=request_id, expected="pending", actual=request["status"])
            if not await self._repo.update_fields(request_id, **edits):
                current = await self.get(request_id)
                raise Conflict("Request status changed concurrently",
                               entity_id=request_id, expected="pending", actual=current["status"])
            logger.info("Request %s edited (%s)", request_id, ", ".join(edits))

        if status is not None:
            if status != RequestStatus.CANCELLED.value:
                raise InvalidInput("Request status can only be set to 'cancelled'")
            await self._cancel(request_id)
        return await self.get(request_id)

    async def _cancel(self, request_id: str):
        request = await self.get(request_id)
        nxt = transition(RequestStatus, request["status"], "cancel", request_id)
        if not await self._repo.transition(request_id, sources(RequestStatus, "cancel"), nxt.value):
            current = await self.get(request_id)
            raise Conflict("Request status changed concurrently",
                           entity_id=request_id, expected="pending|matched", actual=current["status"])
        try:
            withdrawn = await self._matches.cancel_proposed_for_request(request_id)
        except MarketError as e:
            logger.error("Request %s cancelled but its proposed matches were not: %s", request_id, e.message)
            raise PartialFailure(
                "Request cancelled but proposed matches were not withdrawn",
                completed="request_cancelled", pending="matches_cancelled", request_id=request_id,
            ) from e
        logger.info("Request %s cancelled (%d proposed matches withdrawn)", request_id, withdrawn)
