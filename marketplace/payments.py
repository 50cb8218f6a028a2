"""
payments.py - Escrow payment controller.

Transactions move pending -> escrowed -> (verified) -> settled | refunded,
or pending -> failed when the processor reports a failed payment.

 - create_payment_intent  opens a processor hold and records a pending transaction
 - confirm_payment        checks the intent succeeded and escrows the funds
 - release_payment        settles to the provider or refunds the requester
 - handle_webhook         applies signed processor events

Processor failures are wrapped as ExternalServiceError. Confirm and release
are idempotent: repeating a call that already took effect returns the
transaction unchanged without contacting the processor again.

A refund commits the refunded status before calling the processor and
restores the previous status if the processor call fails, so settle and
refund can never both take effect.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, List, Optional

from marketplace.errors import (
    Conflict, ExternalServiceError, InvalidInput, MarketError, NotFound,
    PartialFailure, PaymentNotSucceeded,
)
from marketplace.processor import ProcessorError
from marketplace.states import TransactionStatus, sources, transition
from marketplace.storage._util import to_money

if TYPE_CHECKING:
    from marketplace.processor import PaymentProcessor
    from marketplace.reputation import ReputationAggregator
    from marketplace.storage import AgentRepo, MatchRepo, TransactionRepo

logger = logging.getLogger("payments")

PROCESSOR_CURRENCY = "usd"
LEDGER_CURRENCY = "USD"
DEFAULT_PAYMENT_METHOD = "card"
MINOR_UNITS = Decimal("100")

PAYABLE_MATCH_STATUSES = ("accepted", "completed")
# A match gets at most one transaction in these statuses
BLOCKING_TX_STATUSES = ("pending", "escrowed", "verified", "settled")
# Statuses past escrow; re-confirming one of these is a no-op
ESCROWED_OR_LATER = ("escrowed", "verified", "settled", "refunded")

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"
EVENT_REFUNDED = "charge.refunded"


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents, rounding half up."""
    return int((to_money(amount) * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentController:
    """Escrow workflow between a match's requester and provider."""

    def __init__(
        self,
        processor: "PaymentProcessor",
        transaction_repo: "TransactionRepo",
        match_repo: "MatchRepo",
        agent_repo: "AgentRepo",
        reputation: "ReputationAggregator",
    ):
        self.processor = processor
        self._transactions = transaction_repo
        self._matches = match_repo
        self._agents = agent_repo
        self.reputation = reputation

    # -------------------------------------------------------------------
    # Intent / escrow
    # -------------------------------------------------------------------

    async def create_payment_intent(
        self,
        match_id: str,
        amount,
        requester_id: str,
        provider_id: str,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ) -> dict:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidInput("Amount must be greater than zero", amount=str(amount))
        amount_minor = to_minor_units(amount)
        if amount_minor <= 0:
            raise InvalidInput("Amount must be at least one cent", amount=str(amount))

        match = await self._matches.get(match_id)
        if match is None:
            raise NotFound("Match", match_id)
        if match["requester_id"] != requester_id or match["provider_id"] != provider_id:
            raise InvalidInput("Requester and provider must be the parties of the match", match_id=match_id)
        if match["status"] not in PAYABLE_MATCH_STATUSES:
            raise Conflict(
                "Match must be accepted before payment",
                entity_id=match_id, expected="|".join(PAYABLE_MATCH_STATUSES), actual=match["status"],
            )
        existing = await self._transactions.list_for_match(match_id, statuses=BLOCKING_TX_STATUSES)
        if existing:
            raise Conflict(
                "Match already has an open or settled transaction",
                entity_id=match_id, actual=existing[0]["status"],
            )

        intent = await self._call(
            "create_intent",
            self.processor.create_intent(
                amount_minor,
                PROCESSOR_CURRENCY,
                {"match_id": match_id, "requester_id": requester_id, "provider_id": provider_id},
                f"GPU Compute Match {match_id}",
            ),
        )
        tx = await self._transactions.create(
            match_id=match_id,
            requester_id=requester_id,
            provider_id=provider_id,
            amount=amount,
            payment_intent_id=intent["id"],
            currency=LEDGER_CURRENCY,
            payment_method=payment_method,
        )
        logger.info("Transaction %s pending: match=%s amount=%s intent=%s",
                    tx["id"], match_id, amount, intent["id"])
        return {
            "transaction_id": tx["id"],
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "amount": tx["amount"],
            "status": tx["status"],
        }

    async def confirm_payment(self, intent_id: str, transaction_id: str) -> dict:
        tx = await self._get(transaction_id)
        if tx["payment_intent_id"] and tx["payment_intent_id"] != intent_id:
            raise InvalidInput(
                "Payment intent does not belong to this transaction",
                transaction_id=transaction_id, intent_id=intent_id,
            )
        if tx["status"] in ESCROWED_OR_LATER and tx["transaction_hash"] == intent_id:
            logger.debug("Transaction %s already %s; confirm is a no-op", transaction_id, tx["status"])
            return tx
        nxt = transition(TransactionStatus, tx["status"], "escrow", transaction_id)

        intent = await self._call("retrieve_intent", self.processor.retrieve_intent(intent_id))
        if intent["status"] != "succeeded":
            logger.warning("Confirm of %s refused: intent %s is %s",
                           transaction_id, intent_id, intent["status"])
            raise PaymentNotSucceeded(intent_id, intent["status"])

        ok = await self._transactions.transition(
            transaction_id, sources(TransactionStatus, "escrow"), nxt.value, transaction_hash=intent_id,
        )
        current = await self._get(transaction_id)
        if not ok and not (current["status"] in ESCROWED_OR_LATER and current["transaction_hash"] == intent_id):
            raise Conflict(
                "Transaction status changed concurrently",
                entity_id=transaction_id, expected="pending", actual=current["status"],
            )
        if ok:
            logger.info("Transaction %s escrowed (intent %s)", transaction_id, intent_id)
        return current

    async def release_payment(self, transaction_id: str, verified: bool) -> dict:
        """Settle to the provider when ``verified``, otherwise refund the requester."""
        tx = await self._get(transaction_id)
        target = TransactionStatus.SETTLED if verified else TransactionStatus.REFUNDED
        if tx["status"] == target.value:
            logger.debug("Transaction %s already %s; release is a no-op", transaction_id, target.value)
            return tx
        event = "settle" if verified else "refund"
        nxt = transition(TransactionStatus, tx["status"], event, transaction_id)

        if verified:
            ok = await self._transactions.transition(
                transaction_id, sources(TransactionStatus, event), nxt.value,
            )
            if not ok:
                return await self._lost_race(transaction_id, target)
            logger.info("Transaction %s settled: %s to provider %s",
                        transaction_id, tx["amount"], tx["provider_id"])
            await self._after_commit(
                self._settle_counters(tx),
                completed="transaction_settled", pending="agent_totals",
                transaction_id=transaction_id,
            )
        else:
            # Only the caller that wins the guard contacts the processor
            ok = await self._transactions.transition(
                transaction_id, sources(TransactionStatus, event), nxt.value,
            )
            if not ok:
                return await self._lost_race(transaction_id, target)
            reference = tx["transaction_hash"] or tx["payment_intent_id"]
            try:
                await self._call("create_refund", self.processor.create_refund(reference))
            except ExternalServiceError:
                await self._after_commit(
                    self._restore(transaction_id, tx["status"]),
                    completed="transaction_refunded", pending="refund_rollback",
                    transaction_id=transaction_id,
                )
                raise
            logger.info("Transaction %s refunded: %s to requester %s",
                        transaction_id, tx["amount"], tx["requester_id"])
            await self._after_commit(
                self.reputation.recalculate(tx["provider_id"]),
                completed="transaction_refunded", pending="provider_reputation",
                transaction_id=transaction_id,
            )
        return await self._get(transaction_id)

    async def _settle_counters(self, tx: dict):
        await self._agents.record_settlement(tx["requester_id"], tx["provider_id"], tx["amount"])
        await self.reputation.recalculate(tx["provider_id"])

    async def _restore(self, transaction_id: str, status: str):
        """Undo a refund claim whose processor call failed."""
        if not await self._transactions.transition(
            transaction_id, (TransactionStatus.REFUNDED.value,), status,
        ):
            raise Conflict(
                "Refund claim changed before rollback",
                entity_id=transaction_id, expected="refunded",
            )
        logger.warning("Refund of %s failed at the processor; restored to %s", transaction_id, status)

    async def _lost_race(self, transaction_id: str, target: TransactionStatus) -> dict:
        current = await self._get(transaction_id)
        if current["status"] == target.value:
            return current
        raise Conflict(
            "Transaction status changed concurrently",
            entity_id=transaction_id, expected="escrowed|verified", actual=current["status"],
        )

    # -------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------

    async def handle_webhook(self, payload: bytes, signature: str) -> dict:
        try:
            event = self.processor.construct_event(payload, signature)
        except ProcessorError as e:
            logger.warning("Rejected webhook: %s", e)
            raise InvalidInput("Invalid webhook signature")

        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == EVENT_SUCCEEDED:
            await self._on_intent_succeeded(obj.get("id", ""))
        elif event_type == EVENT_FAILED:
            await self._on_intent_failed(obj.get("id", ""))
        elif event_type == EVENT_REFUNDED:
            logger.info("Charge refunded for intent %s", obj.get("payment_intent") or obj.get("id"))
        else:
            logger.info("Unhandled webhook event type: %s", event_type)
        return {"received": True}

    async def _on_intent_succeeded(self, intent_id: str):
        tx = await self._transactions.find_by_intent(intent_id)
        if tx is None:
            logger.warning("Webhook for unknown intent %s", intent_id)
            return
        if tx["status"] != TransactionStatus.PENDING.value:
            logger.debug("Webhook: transaction %s already %s", tx["id"], tx["status"])
            return
        if await self._transactions.transition(
            tx["id"], sources(TransactionStatus, "escrow"), TransactionStatus.ESCROWED.value,
            transaction_hash=intent_id,
        ):
            logger.info("Transaction %s escrowed via webhook (intent %s)", tx["id"], intent_id)

    async def _on_intent_failed(self, intent_id: str):
        tx = await self._transactions.find_by_intent(intent_id)
        if tx is None:
            logger.warning("Webhook for unknown intent %s", intent_id)
            return
        if await self._transactions.transition(
            tx["id"], sources(TransactionStatus, "fail"), TransactionStatus.FAILED.value,
        ):
            logger.info("Transaction %s failed via webhook (intent %s)", tx["id"], intent_id)
            await self.reputation.recalculate(tx["provider_id"])

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> dict:
        tx = await self._transactions.get_detail(transaction_id)
        if tx is None:
            raise NotFound("Transaction", transaction_id)
        return tx

    async def get_agent_transactions(self, agent_id: str, role: Optional[str] = None) -> List[dict]:
        if role not in (None, "requester", "provider"):
            raise InvalidInput(f"Invalid role '{role}'. Must be requester or provider")
        return await self._transactions.list_for_agent(agent_id, role)

    async def get_transaction_stats(self) -> List[dict]:
        return await self._transactions.stats()

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    async def _get(self, transaction_id: str) -> dict:
        tx = await self._transactions.get(transaction_id)
        if tx is None:
            raise NotFound("Transaction", transaction_id)
        return tx

    async def _call(self, operation: str, call):
        try:
            return await call
        except ProcessorError as e:
            logger.error("Payment processor %s failed: %s", operation, e)
            raise ExternalServiceError(f"Payment processor {operation} failed: {e}", operation=operation) from e

    async def _after_commit(self, write, completed: str, pending: str, **context):
        try:
            return await write
        except MarketError as e:
            logger.error("Partial failure: %s committed, %s failed: %s (%s)",
                         completed, pending, e.message, context)
            raise PartialFailure(
                f"{completed} committed but {pending} failed: {e.message}",
                completed=completed, pending=pending, **context,
            ) from e
