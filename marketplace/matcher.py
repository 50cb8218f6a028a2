"""
matcher.py - Match lifecycle controller.

Pairs compute requests with provider capabilities and drives each match
through proposed -> accepted -> completed, or cancelled. The parent request's
status follows along:

    request  pending --match--> matched --accept--> in_progress --complete--> completed
    match             proposed --accept--> accepted --complete--> completed

Every status change is a guarded UPDATE keyed on the expected prior status;
a zero-row update is a Conflict. Match and request live in separate writes,
so a failure on the request side after the match committed is reported as a
PartialFailure rather than rolled back.
"""

import logging
import time
from typing import TYPE_CHECKING, List, Optional

from marketplace.discovery import DiscoveryQuery, passes_filter
from marketplace.errors import Conflict, InvalidInput, MarketError, NotFound, PartialFailure, Unauthorized
from marketplace.states import MatchStatus, RequestStatus, parse, sources, transition

if TYPE_CHECKING:
    from marketplace.discovery import DiscoveryEngine
    from marketplace.storage import CapabilityRepo, MatchRepo, RequestRepo, TransactionRepo

logger = logging.getLogger("matcher")

# Transactions in these statuses hold funds against a match
FUNDED = ("escrowed", "verified")


class MatchController:
    """Creates matches and moves them through their lifecycle."""

    def __init__(
        self,
        discovery: "DiscoveryEngine",
        request_repo: "RequestRepo",
        match_repo: "MatchRepo",
        capability_repo: "CapabilityRepo",
        transaction_repo: "TransactionRepo",
    ):
        self.discovery = discovery
        self._requests = request_repo
        self._matches = match_repo
        self._capabilities = capability_repo
        self._transactions = transaction_repo

    # -------------------------------------------------------------------
    # Match creation
    # -------------------------------------------------------------------

    async def create_match(self, request_id: str) -> Optional[dict]:
        """Auto-match a request to its best candidate.

        Returns None, leaving the request untouched, when nothing qualifies.
        """
        request = await self._get_request(request_id)
        transition(RequestStatus, request["status"], "match", request_id)

        candidates = await self.discovery.find_matches(DiscoveryQuery.from_request(request), limit=1)
        if not candidates:
            logger.info("No candidates for request %s (%dx %s)",
                        request_id, request["gpu_count"], request["gpu_type"])
            return None
        best = candidates[0]
        match = await self._propose(request, best)
        match["match_score"] = best["match_score"]
        return match

    async def create_match_for_capability(self, request_id: str, capability_id: str) -> dict:
        """Propose a match against a named capability."""
        request = await self._get_request(request_id)
        transition(RequestStatus, request["status"], "match", request_id)

        capability = await self._capabilities.get_with_provider(capability_id)
        if capability is None:
            raise NotFound("Capability", capability_id)
        if not passes_filter(DiscoveryQuery.from_request(request), capability):
            raise InvalidInput(
                "Capability does not satisfy the request",
                request_id=request_id, capability_id=capability_id,
            )
        return await self._propose(request, capability)

    async def _propose(self, request: dict, capability: dict) -> dict:
        match = await self._matches.create(
            request_id=request["id"],
            provider_id=capability["provider_id"],
            capability_id=capability["id"],
            agreed_price_per_hour=capability["price_per_hour"],
        )
        await self._follow_up(
            self._requests.transition(
                request["id"], sources(RequestStatus, "match"), RequestStatus.MATCHED.value,
            ),
            completed="match_created", pending="request_matched",
            match_id=match["id"], request_id=request["id"],
        )
        logger.info(
            "Match %s proposed: request=%s provider=%s price=%s/h",
            match["id"], request["id"], capability["provider_id"], capability["price_per_hour"],
        )
        return match

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def accept_match(self, match_id: str, caller_id: str) -> dict:
        match = await self.get_match(match_id)
        if match["provider_id"] != caller_id:
            logger.warning("Agent %s tried to accept match %s owned by %s",
                           caller_id, match_id, match["provider_id"])
            raise Unauthorized("Only the provider can accept this match", match_id=match_id)
        nxt = transition(MatchStatus, match["status"], "accept", match_id)

        ok = await self._matches.transition(
            match_id, sources(MatchStatus, "accept"), nxt.value,
            start_time=time.time(), exclusive=True,
        )
        if not ok:
            current = await self.get_match(match_id)
            if current["status"] == MatchStatus.PROPOSED.value:
                raise Conflict(
                    "Another match for this request is already accepted",
                    entity_id=match_id, expected="proposed", actual=current["status"],
                )
            raise Conflict(
                "Match status changed concurrently",
                entity_id=match_id, expected="proposed", actual=current["status"],
            )

        await self._follow_up(
            self._requests.transition(
                match["request_id"], sources(RequestStatus, "accept"), RequestStatus.IN_PROGRESS.value,
            ),
            completed="match_accepted", pending="request_in_progress",
            match_id=match_id, request_id=match["request_id"],
        )
        logger.info("Match %s accepted by provider %s", match_id, caller_id)
        return await self.get_match(match_id)

    async def complete_match(self, match_id: str, caller_id: str) -> dict:
        match = await self.get_match(match_id)
        if match["provider_id"] != caller_id:
            raise Unauthorized("Only the provider can complete this match", match_id=match_id)
        nxt = transition(MatchStatus, match["status"], "complete", match_id)

        ok = await self._matches.transition(
            match_id, sources(MatchStatus, "complete"), nxt.value, end_time=time.time(),
        )
        if not ok:
            current = await self.get_match(match_id)
            raise Conflict(
                "Match status changed concurrently",
                entity_id=match_id, expected="accepted", actual=current["status"],
            )

        await self._follow_up(
            self._requests.transition(
                match["request_id"], sources(RequestStatus, "complete"), RequestStatus.COMPLETED.value,
            ),
            completed="match_completed", pending="request_completed",
            match_id=match_id, request_id=match["request_id"],
        )
        logger.info("Match %s completed", match_id)
        return await self.get_match(match_id)

    async def cancel_match(self, match_id: str, caller_id: str) -> dict:
        """Cancel a proposed or accepted match.

        Either party may cancel. Funds held in escrow must be released first.
        When no other live match remains the request goes back to pending.
        """
        match = await self.get_match(match_id)
        if caller_id not in (match["provider_id"], match["requester_id"]):
            logger.warning("Agent %s tried to cancel match %s", caller_id, match_id)
            raise Unauthorized("Only the provider or requester can cancel this match", match_id=match_id)
        nxt = transition(MatchStatus, match["status"], "cancel", match_id)

        funded = await self._transactions.list_for_match(match_id, statuses=FUNDED)
        if funded:
            raise Conflict(
                "Match has funds in escrow; release or refund them first",
                entity_id=match_id, actual=funded[0]["status"],
            )

        ok = await self._matches.transition(match_id, sources(MatchStatus, "cancel"), nxt.value)
        if not ok:
            current = await self.get_match(match_id)
            raise Conflict(
                "Match status changed concurrently",
                entity_id=match_id, expected="proposed|accepted", actual=current["status"],
            )

        # Unfunded intents on a cancelled match can never be confirmed
        for tx in await self._transactions.list_for_match(match_id, statuses=("pending",)):
            await self._transactions.transition(tx["id"], ("pending",), "failed")
            logger.info("Transaction %s failed: match %s cancelled", tx["id"], match_id)

        request_id = match["request_id"]
        if await self._matches.live_count_for_request(request_id) == 0:
            request = await self._requests.get(request_id)
            if request and request["status"] in sources(RequestStatus, "revert"):
                await self._follow_up(
                    self._requests.transition(
                        request_id, sources(RequestStatus, "revert"), RequestStatus.PENDING.value,
                    ),
                    completed="match_cancelled", pending="request_reverted",
                    match_id=match_id, request_id=request_id,
                )
                logger.info("Request %s reverted to pending", request_id)

        logger.info("Match %s cancelled by %s", match_id, caller_id)
        return await self.get_match(match_id)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_match(self, match_id: str) -> dict:
        match = await self._matches.get(match_id)
        if match is None:
            raise NotFound("Match", match_id)
        return match

    async def list_for_request(self, request_id: str) -> List[dict]:
        return await self._matches.list_for_request(request_id)

    async def list_for_provider(self, provider_id: str) -> List[dict]:
        return await self._matches.list_for_provider(provider_id)

    async def list_by_status(self, status: str = "proposed") -> List[dict]:
        return await self._matches.list_by_status(parse(MatchStatus, status).value)

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    async def _get_request(self, request_id: str) -> dict:
        request = await self._requests.get(request_id)
        if request is None:
            raise NotFound("ComputeRequest", request_id)
        return request

    async def _follow_up(self, write, completed: str, pending: str, **context):
        """Await the second write of a two-step change."""
        try:
            ok = await write
        except MarketError as e:
            logger.error("Partial failure: %s committed, %s failed: %s (%s)",
                         completed, pending, e.message, context)
            raise PartialFailure(
                f"{completed} committed but {pending} failed: {e.message}",
                completed=completed, pending=pending, **context,
            ) from e
        if not ok:
            logger.error("Partial failure: %s committed, %s matched no row (%s)",
                         completed, pending, context)
            raise PartialFailure(
                f"{completed} committed but {pending} did not apply",
                completed=completed, pending=pending, **context,
            )
