"""
test_payments.py - Escrow payment controller

Tests the transaction lifecycle against the payment simulator:
  pending -> escrowed -> settled | refunded
  pending -> failed   (processor reports a failed payment)

Validates:
 - Intent creation preconditions
 - Confirm refuses unpaid intents and is idempotent
 - Settle updates agent totals and reputation
 - Refund calls the processor exactly once, and never alongside a settle
 - Signed webhooks drive the same transitions
"""

import asyncio
from decimal import Decimal

import pytest

from marketplace.errors import Conflict, ExternalServiceError, InvalidInput, PaymentNotSucceeded

pytestmark = pytest.mark.asyncio


class TestCreateIntent:

    async def test_creates_pending_transaction(self, market):
        requester, provider, match = await market.accepted()
        result = await market.payments.create_payment_intent(
            match["id"], "91.00", requester["id"], provider["id"],
        )
        assert result["status"] == "pending"
        assert result["amount"] == Decimal("91.00")
        assert result["payment_intent_id"].startswith("pi_")
        assert result["client_secret"]

        intent = await market.processor.retrieve_intent(result["payment_intent_id"])
        assert intent["amount"] == 9100
        assert intent["currency"] == "usd"
        assert intent["metadata"]["match_id"] == match["id"]

        tx = await market.storage.transactions.get(result["transaction_id"])
        assert tx["currency"] == "USD"
        assert tx["payment_method"] == "card"

    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_amount_must_be_positive(self, market, amount):
        requester, provider, match = await market.accepted()
        with pytest.raises(InvalidInput):
            await market.payments.create_payment_intent(match["id"], amount, requester["id"], provider["id"])

    async def test_parties_must_match(self, market):
        requester, provider, match = await market.accepted()
        stranger = await market.agent("stranger", "both")
        with pytest.raises(InvalidInput):
            await market.payments.create_payment_intent(match["id"], "10", stranger["id"], provider["id"])

    async def test_match_must_be_accepted(self, market):
        requester, provider, match = await market.proposed()
        with pytest.raises(Conflict):
            await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])

    async def test_one_open_transaction_per_match(self, market):
        requester, provider, match = await market.accepted()
        await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])
        with pytest.raises(Conflict):
            await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])

    async def test_processor_failure_records_nothing(self, market):
        requester, provider, match = await market.accepted()
        market.processor.fail_next("create_intent")
        with pytest.raises(ExternalServiceError):
            await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])
        assert await market.storage.transactions.list_for_match(match["id"]) == []

    async def test_sub_cent_amount_rejected(self, market):
        requester, provider, match = await market.accepted()
        with pytest.raises(InvalidInput):
            await market.payments.create_payment_intent(match["id"], "0.004", requester["id"], provider["id"])
        assert await market.storage.transactions.list_for_match(match["id"]) == []

    async def test_one_cent_is_enough(self, market):
        requester, provider, match = await market.accepted()
        result = await market.payments.create_payment_intent(match["id"], "0.005", requester["id"], provider["id"])
        intent = await market.processor.retrieve_intent(result["payment_intent_id"])
        assert intent["amount"] == 1


class TestConfirm:

    async def _intent(self, market):
        requester, provider, match = await market.accepted()
        return await market.payments.create_payment_intent(
            match["id"], "91.00", requester["id"], provider["id"],
        )

    async def test_unpaid_intent_refused(self, market):
        intent = await self._intent(market)
        with pytest.raises(PaymentNotSucceeded):
            await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        tx = await market.storage.transactions.get(intent["transaction_id"])
        assert tx["status"] == "pending"

    async def test_paid_intent_escrows(self, market):
        intent = await self._intent(market)
        market.processor.succeed_intent(intent["payment_intent_id"])
        tx = await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        assert tx["status"] == "escrowed"
        assert tx["transaction_hash"] == intent["payment_intent_id"]

    async def test_confirm_is_idempotent(self, market):
        intent = await self._intent(market)
        market.processor.succeed_intent(intent["payment_intent_id"])
        await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        # a repeat must not reach the processor
        market.processor.fail_next("retrieve_intent")
        again = await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        assert again["status"] == "escrowed"

    async def test_foreign_intent_rejected(self, market):
        intent = await self._intent(market)
        with pytest.raises(InvalidInput):
            await market.payments.confirm_payment("pi_someone_else", intent["transaction_id"])

    async def test_processor_outage(self, market):
        intent = await self._intent(market)
        market.processor.fail_next("retrieve_intent")
        with pytest.raises(ExternalServiceError):
            await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])


class TestRelease:

    async def test_settle(self, market):
        requester, provider, match, tx = await market.escrowed("91.00")
        settled = await market.payments.release_payment(tx["id"], verified=True)
        assert settled["status"] == "settled"

        provider_row = await market.storage.agents.get(provider["id"])
        requester_row = await market.storage.agents.get(requester["id"])
        assert provider_row["total_earnings"] == Decimal("91")
        assert requester_row["total_spent"] == Decimal("91")
        assert provider_row["reputation_score"] == 5.0
        assert market.processor.refunds == []

    async def test_settle_is_idempotent(self, market):
        requester, provider, match, tx = await market.escrowed()
        await market.payments.release_payment(tx["id"], verified=True)
        again = await market.payments.release_payment(tx["id"], verified=True)
        assert again["status"] == "settled"
        assert (await market.storage.agents.get(provider["id"]))["total_transactions"] == 1

    async def test_refund_calls_processor_once(self, market):
        requester, provider, match, tx = await market.escrowed()
        refunded = await market.payments.release_payment(tx["id"], verified=False)
        assert refunded["status"] == "refunded"
        await market.payments.release_payment(tx["id"], verified=False)
        assert market.processor.refund_count(tx["payment_intent_id"]) == 1
        # one finished transaction, none settled
        assert (await market.storage.agents.get(provider["id"]))["reputation_score"] == 2.0

    async def test_failed_refund_keeps_escrow(self, market):
        requester, provider, match, tx = await market.escrowed()
        market.processor.fail_next("create_refund")
        with pytest.raises(ExternalServiceError):
            await market.payments.release_payment(tx["id"], verified=False)
        assert (await market.storage.transactions.get(tx["id"]))["status"] == "escrowed"

        await market.payments.release_payment(tx["id"], verified=False)
        assert market.processor.refund_count(tx["payment_intent_id"]) == 1

    async def test_concurrent_settle_and_refund_release_once(self, market, monkeypatch):
        requester, provider, match, tx = await market.escrowed()
        create_refund = market.processor.create_refund

        async def slow_refund(intent_id):
            await asyncio.sleep(0.05)
            return await create_refund(intent_id)

        monkeypatch.setattr(market.processor, "create_refund", slow_refund)
        results = await asyncio.gather(
            market.payments.release_payment(tx["id"], verified=False),
            market.payments.release_payment(tx["id"], verified=True),
            return_exceptions=True,
        )
        assert sorted(type(r).__name__ for r in results) == ["Conflict", "dict"]

        final = await market.storage.transactions.get(tx["id"])
        provider_row = await market.storage.agents.get(provider["id"])
        if final["status"] == "refunded":
            assert market.processor.refund_count(tx["payment_intent_id"]) == 1
            assert provider_row["total_earnings"] == Decimal("0")
        else:
            assert final["status"] == "settled"
            assert market.processor.refunds == []

    async def test_settle_during_refund_conflicts(self, market, monkeypatch):
        requester, provider, match, tx = await market.escrowed()
        create_refund = market.processor.create_refund
        settle_attempts = []

        async def refund_then_settle(intent_id):
            # the status is already claimed while the processor is working
            try:
                await market.payments.release_payment(tx["id"], verified=True)
            except Conflict as e:
                settle_attempts.append(e)
            return await create_refund(intent_id)

        monkeypatch.setattr(market.processor, "create_refund", refund_then_settle)
        refunded = await market.payments.release_payment(tx["id"], verified=False)
        assert refunded["status"] == "refunded"
        assert len(settle_attempts) == 1
        assert (await market.storage.agents.get(provider["id"]))["total_earnings"] == Decimal("0")

    async def test_pending_cannot_be_released(self, market):
        requester, provider, match = await market.accepted()
        intent = await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])
        with pytest.raises(Conflict):
            await market.payments.release_payment(intent["transaction_id"], verified=True)

    async def test_settled_cannot_be_refunded(self, market):
        requester, provider, match, tx = await market.escrowed()
        await market.payments.release_payment(tx["id"], verified=True)
        with pytest.raises(Conflict):
            await market.payments.release_payment(tx["id"], verified=False)
        assert market.processor.refunds == []


class TestWebhook:

    async def _intent(self, market):
        requester, provider, match = await market.accepted()
        return await market.payments.create_payment_intent(
            match["id"], "91.00", requester["id"], provider["id"],
        )

    async def test_succeeded_event_escrows(self, market):
        intent = await self._intent(market)
        market.processor.succeed_intent(intent["payment_intent_id"])
        body, sig = market.processor.build_event("payment_intent.succeeded", intent["payment_intent_id"])
        assert await market.payments.handle_webhook(body, sig) == {"received": True}
        tx = await market.storage.transactions.get(intent["transaction_id"])
        assert tx["status"] == "escrowed"

        # a later confirm for the same intent is a no-op
        again = await market.payments.confirm_payment(intent["payment_intent_id"], intent["transaction_id"])
        assert again["status"] == "escrowed"

    async def test_failed_event_fails_transaction(self, market):
        intent = await self._intent(market)
        body, sig = market.processor.build_event("payment_intent.payment_failed", intent["payment_intent_id"])
        await market.payments.handle_webhook(body, sig)
        tx = await market.storage.transactions.get(intent["transaction_id"])
        assert tx["status"] == "failed"

    async def test_bad_signature(self, market):
        intent = await self._intent(market)
        body, _ = market.processor.build_event("payment_intent.succeeded", intent["payment_intent_id"])
        with pytest.raises(InvalidInput):
            await market.payments.handle_webhook(body, "t=1,v1=deadbeef")

    async def test_unknown_intent_acknowledged(self, market):
        stray = await market.processor.create_intent(500, "usd", {})
        body, sig = market.processor.build_event("payment_intent.succeeded", stray["id"])
        assert await market.payments.handle_webhook(body, sig) == {"received": True}

    async def test_unhandled_event_type_acknowledged(self, market):
        intent = await self._intent(market)
        body, sig = market.processor.build_event("customer.created", intent["payment_intent_id"])
        assert await market.payments.handle_webhook(body, sig) == {"received": True}


class TestReads:

    async def test_transaction_detail(self, market):
        requester, provider, match, tx = await market.escrowed()
        detail = await market.payments.get_transaction(tx["id"])
        assert detail["requester_name"] == "alice"
        assert detail["provider_name"] == "gpu-farm"
        assert detail["duration_hours"] == 2

    async def test_agent_transactions_by_role(self, market):
        requester, provider, match, tx = await market.escrowed()
        assert [t["id"] for t in await market.payments.get_agent_transactions(requester["id"], "requester")] == [tx["id"]]
        assert await market.payments.get_agent_transactions(requester["id"], "provider") == []
        assert len(await market.payments.get_agent_transactions(provider["id"])) == 1

    async def test_bad_role(self, market):
        with pytest.raises(InvalidInput):
            await market.payments.get_agent_transactions("anyone", "admin")

    async def test_stats_grouped_by_status(self, market):
        requester, provider, match, tx = await market.escrowed("30.00")
        await market.payments.release_payment(tx["id"], verified=True)
        stats = await market.payments.get_transaction_stats()
        by_status = {s["status"]: s for s in stats}
        assert by_status["settled"]["count"] == 1
        assert by_status["settled"]["total_amount"] == Decimal("30")
        assert by_status["settled"]["avg_amount"] == Decimal("30")
