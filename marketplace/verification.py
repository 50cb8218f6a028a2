"""
verification.py - Proof-of-work verification and disputes.

A provider submits a proof against an escrowed transaction. Any agent other
than the provider may record a decision on it; approval moves the
transaction to verified and completes the match. Releasing the funds is a
second step, and only the requester may run both steps together:

    approve_and_release  = verify_work(approved=True)  + release_payment(verified=True)
    reject_and_refund    = verify_work(approved=False) + release_payment(verified=False)

If the release fails after the decision committed, a PartialFailure names
the verification so the release can be retried on its own.

Disputes share the verifications table with kind='dispute' and the payload
{"type": "dispute", "reason": ...}.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import TYPE_CHECKING, Any, List, Optional

from marketplace.errors import Conflict, InvalidInput, MarketError, NotFound, PartialFailure, Unauthorized
from marketplace.states import MatchStatus, TransactionStatus, VerificationKind, sources, transition

if TYPE_CHECKING:
    from marketplace.payments import PaymentController
    from marketplace.storage import MatchRepo, RequestRepo, TransactionRepo, VerificationRepo

logger = logging.getLogger("verification")

RESOLUTIONS = ("approved", "rejected")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def generate_proof_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``data``."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def verify_proof_hash(proof_hash: str, data: Any) -> bool:
    return hmac.compare_digest(generate_proof_hash(data), proof_hash or "")


class VerificationController:
    """Proof submission, approval, and dispute handling."""

    def __init__(
        self,
        verification_repo: "VerificationRepo",
        transaction_repo: "TransactionRepo",
        match_repo: "MatchRepo",
        request_repo: "RequestRepo",
        payments: "PaymentController",
    ):
        self._verifications = verification_repo
        self._transactions = transaction_repo
        self._matches = match_repo
        self._requests = request_repo
        self.payments = payments

    # -------------------------------------------------------------------
    # Proofs
    # -------------------------------------------------------------------

    async def submit_proof(self, transaction_id: str, provider_id: str, proof_data: Any) -> dict:
        tx = await self._get_transaction(transaction_id)
        if tx["provider_id"] != provider_id:
            logger.warning("Agent %s submitted proof for transaction %s it does not provide",
                           provider_id, transaction_id)
            raise Unauthorized("Only the provider can submit proof", transaction_id=transaction_id)
        if proof_data is None or proof_data == {} or proof_data == [] or proof_data == "":
            raise InvalidInput("Proof data is required")
        if tx["status"] != TransactionStatus.ESCROWED.value:
            raise Conflict(
                "Proof can only be submitted for an escrowed transaction",
                entity_id=transaction_id, expected="escrowed", actual=tx["status"],
            )

        proof_hash = generate_proof_hash(proof_data)
        verification = await self._verifications.create(
            transaction_id=transaction_id,
            verifier_id=provider_id,
            kind=VerificationKind.PROOF.value,
            proof_data=proof_data,
            proof_hash=proof_hash,
        )
        logger.info("Proof %s submitted for transaction %s (hash %s..)",
                    verification["id"], transaction_id, proof_hash[:12])
        return verification

    async def verify_work(
        self, verification_id: str, verifier_id: str, approved: bool, notes: Optional[str] = None,
    ) -> dict:
        """Record the decision on a proof and, if approved, verify the transaction."""
        verification = await self._get(verification_id)
        if verification["kind"] == VerificationKind.DISPUTE.value:
            raise Conflict("Disputes are settled with resolve_dispute", entity_id=verification_id,
                           expected="proof", actual="dispute")
        if verification["decided"]:
            raise Conflict("Verification already decided", entity_id=verification_id)
        tx = await self._get_transaction(verification["transaction_id"])
        if verifier_id == tx["provider_id"]:
            raise Unauthorized("A provider cannot verify its own work", verification_id=verification_id)
        if approved:
            transition(TransactionStatus, tx["status"], "verify", tx["id"])

        if not await self._verifications.decide(verification_id, approved, notes, verifier_id):
            raise Conflict("Verification already decided", entity_id=verification_id)
        logger.info("Verification %s %s by %s", verification_id,
                    "approved" if approved else "rejected", verifier_id)

        if approved:
            await self._cascade_approval(verification_id, tx)
        return await self.get_verification(verification_id)

    async def _cascade_approval(self, verification_id: str, tx: dict):
        try:
            ok = await self._transactions.transition(
                tx["id"], sources(TransactionStatus, "verify"), TransactionStatus.VERIFIED.value,
            )
            if not ok:
                raise Conflict("Transaction left escrow concurrently", entity_id=tx["id"])
            match = await self._matches.get(tx["match_id"])
            if match and match["status"] != MatchStatus.COMPLETED.value:
                was = match["status"]
                nxt = transition(MatchStatus, was, "approve", match["id"])
                await self._matches.transition(
                    match["id"], (was,), nxt.value, end_time=time.time(),
                )
                if was == MatchStatus.ACCEPTED.value:
                    await self._requests.transition(
                        match["request_id"], ("in_progress",), "completed",
                    )
                logger.info("Match %s completed on verification %s", match["id"], verification_id)
        except MarketError as e:
            logger.error("Verification %s committed but cascade failed: %s", verification_id, e.message)
            raise PartialFailure(
                f"Verification recorded but follow-up failed: {e.message}",
                completed="verification_decided", pending="transaction_verified",
                verification_id=verification_id, transaction_id=tx["id"],
            ) from e

    async def approve_and_release(
        self, verification_id: str, verifier_id: str, notes: Optional[str] = None,
    ) -> dict:
        return await self._decide_and_release(verification_id, verifier_id, True, notes)

    async def reject_and_refund(
        self, verification_id: str, verifier_id: str, notes: Optional[str] = None,
    ) -> dict:
        return await self._decide_and_release(verification_id, verifier_id, False, notes)

    async def _decide_and_release(
        self, verification_id: str, verifier_id: str, approved: bool, notes: Optional[str],
    ) -> dict:
        verification = await self._get(verification_id)
        tx = await self._get_transaction(verification["transaction_id"])
        if verifier_id != tx["requester_id"]:
            logger.warning("Agent %s tried to release transaction %s it did not pay for",
                           verifier_id, tx["id"])
            raise Unauthorized("Only the requester can release escrowed funds",
                               verification_id=verification_id)
        verification = await self.verify_work(verification_id, verifier_id, approved, notes)
        transaction_id = verification["transaction_id"]
        try:
            tx = await self.payments.release_payment(transaction_id, verified=approved)
        except MarketError as e:
            logger.error("Verification %s decided but release of %s failed: %s",
                         verification_id, transaction_id, e.message)
            raise PartialFailure(
                f"Verification recorded but payment release failed: {e.message}",
                completed="verification_decided",
                pending="payment_settled" if approved else "payment_refunded",
                verification_id=verification_id, transaction_id=transaction_id,
            ) from e
        return {"verification": await self.get_verification(verification_id), "transaction": tx}

    # -------------------------------------------------------------------
    # Disputes
    # -------------------------------------------------------------------

    async def create_dispute(self, transaction_id: str, initiator_id: str, reason: str) -> dict:
        tx = await self._get_transaction(transaction_id)
        if initiator_id not in (tx["requester_id"], tx["provider_id"]):
            raise Unauthorized("Only a party to the transaction can dispute it",
                               transaction_id=transaction_id)
        if not reason or not reason.strip():
            raise InvalidInput("Dispute reason is required")
        dispute = await self._verifications.create(
            transaction_id=transaction_id,
            verifier_id=initiator_id,
            kind=VerificationKind.DISPUTE.value,
            proof_data={"type": "dispute", "reason": reason},
            notes=f"Dispute initiated by {initiator_id}: {reason}",
        )
        logger.info("Dispute %s opened on transaction %s by %s",
                    dispute["id"], transaction_id, initiator_id)
        return dispute

    async def resolve_dispute(
        self, verification_id: str, resolution: str, resolver_id: str, notes: Optional[str] = None,
    ) -> dict:
        """Decide a dispute. The agent who opened it cannot resolve it."""
        if resolution not in RESOLUTIONS:
            raise InvalidInput(f"Invalid resolution '{resolution}'. Must be one of: approved, rejected")
        dispute = await self._verifications.get(verification_id)
        if dispute is None or dispute["kind"] != VerificationKind.DISPUTE.value:
            raise NotFound("Dispute", verification_id)
        if resolver_id == dispute["verifier_id"]:
            logger.warning("Agent %s tried to resolve its own dispute %s", resolver_id, verification_id)
            raise Unauthorized("The initiator of a dispute cannot resolve it", verification_id=verification_id)
        if not await self._verifications.decide(
            verification_id, resolution == "approved", notes, resolved_by=resolver_id,
        ):
            raise Conflict("Dispute already resolved", entity_id=verification_id)
        logger.info("Dispute %s resolved by %s: %s", verification_id, resolver_id, resolution)
        return await self.get_verification(verification_id)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_verification(self, verification_id: str) -> dict:
        verification = await self._verifications.get_detail(verification_id)
        if verification is None:
            raise NotFound("Verification", verification_id)
        return verification

    async def get_transaction_verifications(self, transaction_id: str) -> List[dict]:
        return await self._verifications.list_for_transaction(transaction_id)

    async def get_pending_verifications(self, agent_id: str) -> List[dict]:
        return await self._verifications.list_pending_for_requester(agent_id)

    async def list_pending(self) -> List[dict]:
        return await self._verifications.list_pending()

    async def get_verification_stats(self) -> dict:
        return await self._verifications.stats()

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    async def _get(self, verification_id: str) -> dict:
        verification = await self._verifications.get(verification_id)
        if verification is None:
            raise NotFound("Verification", verification_id)
        return verification

    async def _get_transaction(self, transaction_id: str) -> dict:
        tx = await self._transactions.get(transaction_id)
        if tx is None:
            raise NotFound("Transaction", transaction_id)
        return tx
