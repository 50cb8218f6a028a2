"""
reputation.py - Provider reputation and marketplace statistics.

Reputation is a 0-5 score derived from a provider's finished transactions:

    success = settled / (settled + refunded + failed)
    score   = success * 5 * 0.6 + min(rating, 5) * 0.4

with no finished transactions scoring a neutral 5.0. There is no rating
input yet, so the rating term uses the neutral 5.0 as well.

The remaining methods are read-only rollups over the repos.
"""

import logging
from typing import TYPE_CHECKING, Optional

from marketplace.errors import NotFound

if TYPE_CHECKING:
    from marketplace.storage import (
        AgentRepo, MatchRepo, RequestRepo, TransactionRepo, VerificationRepo,
    )

logger = logging.getLogger("reputation")

MAX_SCORE = 5.0
NEUTRAL_SCORE = 5.0
WEIGHT_SUCCESS = 0.6
WEIGHT_RATING = 0.4


def calculate_reputation_score(
    total_transactions: int, successful_transactions: int, average_rating: Optional[float] = None,
) -> float:
    if total_transactions == 0:
        return NEUTRAL_SCORE
    success_rate = successful_transactions / total_transactions
    rating = min(average_rating or NEUTRAL_SCORE, MAX_SCORE)
    return round(success_rate * MAX_SCORE * WEIGHT_SUCCESS + rating * WEIGHT_RATING, 2)


class ReputationAggregator:
    """Recalculates provider reputation and serves marketplace rollups."""

    def __init__(
        self,
        agent_repo: "AgentRepo",
        request_repo: "RequestRepo",
        match_repo: "MatchRepo",
        transaction_repo: "TransactionRepo",
        verification_repo: "VerificationRepo",
    ):
        self._agents = agent_repo
        self._requests = request_repo
        self._matches = match_repo
        self._transactions = transaction_repo
        self._verifications = verification_repo

    async def recalculate(self, agent_id: str) -> float:
        """Recompute and store an agent's reputation from its provider history."""
        agent = await self._agents.get(agent_id)
        if agent is None:
            raise NotFound("Agent", agent_id)
        outcomes = await self._transactions.provider_outcomes(agent_id)
        finished = outcomes["settled"] + outcomes["refunded"] + outcomes["failed"]
        score = calculate_reputation_score(finished, outcomes["settled"])
        if score != agent["reputation_score"]:
            await self._agents.set_reputation(agent_id, score)
            logger.info("Agent %s reputation %.2f -> %.2f (%d/%d settled)",
                        agent_id, agent["reputation_score"], score, outcomes["settled"], finished)
        return score

    async def agent_stats(self, agent_id: str) -> dict:
        agent = await self._agents.get(agent_id)
        if agent is None:
            raise NotFound("Agent", agent_id)
        totals = await self._transactions.agent_totals(agent_id)
        return {
            "agent_id": agent_id,
            "total_transactions": totals["total_transactions"],
            "total_amount": totals["total_amount"],
            "reputation_score": agent["reputation_score"],
        }

    async def request_stats(self) -> dict:
        return await self._requests.stats()

    async def match_stats(self) -> dict:
        return await self._matches.stats()

    async def transaction_stats(self) -> list:
        return await self._transactions.stats()

    async def verification_stats(self) -> dict:
        return await self._verifications.stats()

    async def marketplace_stats(self) -> dict:
        return {
            "requests": await self.request_stats(),
            "matches": await self.match_stats(),
            "agents": await self._agents.count(),
        }
