"""
test_verification.py - Proof verification, release saga and disputes

Tests the flow after funds are escrowed:
  provider submits proof -> requester approves / rejects -> funds released

Validates:
 - Only the provider submits, only someone else verifies
 - Approval verifies the transaction and completes match and request
 - approve_and_release / reject_and_refund end in settled / refunded
 - A failed release after the decision surfaces as PartialFailure
 - Only the requester can decide and release in one step
 - Disputes are party-only, resolve once, and not by their initiator
"""

import pytest

from marketplace.errors import Conflict, InvalidInput, NotFound, PartialFailure, Unauthorized
from marketplace.verification import generate_proof_hash, verify_proof_hash

pytestmark = pytest.mark.asyncio

PROOF = {"job_id": "train-42", "gpu_hours": 16, "checksum": "9f2c"}


async def _proof(market):
    requester, provider, match, tx = await market.escrowed()
    proof = await market.verification.submit_proof(tx["id"], provider["id"], PROOF)
    return requester, provider, match, tx, proof


class TestSubmitProof:

    async def test_provider_submits(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        assert proof["kind"] == "proof"
        assert proof["proof_data"] == PROOF
        assert proof["proof_hash"] == generate_proof_hash(PROOF)
        assert verify_proof_hash(proof["proof_hash"], PROOF)
        assert proof["decided"] is False

    async def test_requester_cannot_submit(self, market):
        requester, provider, match, tx = await market.escrowed()
        with pytest.raises(Unauthorized):
            await market.verification.submit_proof(tx["id"], requester["id"], PROOF)

    @pytest.mark.parametrize("empty", [None, {}, [], ""])
    async def test_empty_proof(self, market, empty):
        requester, provider, match, tx = await market.escrowed()
        with pytest.raises(InvalidInput):
            await market.verification.submit_proof(tx["id"], provider["id"], empty)

    async def test_requires_escrow(self, market):
        requester, provider, match = await market.accepted()
        intent = await market.payments.create_payment_intent(match["id"], "10", requester["id"], provider["id"])
        with pytest.raises(Conflict):
            await market.verification.submit_proof(intent["transaction_id"], provider["id"], PROOF)

    async def test_missing_transaction(self, market):
        with pytest.raises(NotFound):
            await market.verification.submit_proof("no-such-tx", "anyone", PROOF)


class TestVerifyWork:

    async def test_approval_cascades(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        decided = await market.verification.verify_work(proof["id"], requester["id"], True, "looks right")
        assert decided["verified"] is True
        assert decided["decided"] is True
        assert decided["verifier_id"] == requester["id"]
        assert decided["notes"] == "looks right"
        assert decided["transaction_status"] == "verified"

        done = await market.matcher.get_match(match["id"])
        assert done["status"] == "completed"
        assert done["end_time"] is not None
        assert (await market.requests.get(match["request_id"]))["status"] == "completed"

    async def test_approval_of_already_completed_match(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        await market.matcher.complete_match(match["id"], provider["id"])
        await market.verification.verify_work(proof["id"], requester["id"], True)
        assert (await market.storage.transactions.get(tx["id"]))["status"] == "verified"
        assert (await market.matcher.get_match(match["id"]))["status"] == "completed"

    async def test_rejection_leaves_escrow(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        decided = await market.verification.verify_work(proof["id"], requester["id"], False, "wrong output")
        assert decided["verified"] is False
        assert decided["decided"] is True
        assert (await market.storage.transactions.get(tx["id"]))["status"] == "escrowed"
        assert (await market.matcher.get_match(match["id"]))["status"] == "accepted"

    async def test_provider_cannot_verify_own_work(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        with pytest.raises(Unauthorized):
            await market.verification.verify_work(proof["id"], provider["id"], True)

    async def test_third_party_may_verify(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        auditor = await market.agent("auditor", "both")
        decided = await market.verification.verify_work(proof["id"], auditor["id"], True)
        assert decided["verifier_name"] == "auditor"

    async def test_decided_once(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        await market.verification.verify_work(proof["id"], requester["id"], False)
        with pytest.raises(Conflict):
            await market.verification.verify_work(proof["id"], requester["id"], True)


class TestReleaseSaga:

    async def test_approve_and_release(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        result = await market.verification.approve_and_release(proof["id"], requester["id"])
        assert result["transaction"]["status"] == "settled"
        assert result["verification"]["verified"] is True
        assert result["verification"]["transaction_status"] == "settled"
        assert market.processor.refunds == []

    async def test_reject_and_refund(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        result = await market.verification.reject_and_refund(proof["id"], requester["id"], "no output")
        assert result["transaction"]["status"] == "refunded"
        assert result["verification"]["verified"] is False
        assert market.processor.refund_count(tx["payment_intent_id"]) == 1

    async def test_failed_refund_is_partial_failure(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        market.processor.fail_next("create_refund")
        with pytest.raises(PartialFailure) as exc:
            await market.verification.reject_and_refund(proof["id"], requester["id"])
        assert exc.value.completed == "verification_decided"
        assert exc.value.pending == "payment_refunded"
        assert exc.value.context["transaction_id"] == tx["id"]

        assert (await market.verification.get_verification(proof["id"]))["decided"] is True
        assert (await market.storage.transactions.get(tx["id"]))["status"] == "escrowed"

        # the release can be retried on its own
        refunded = await market.payments.release_payment(tx["id"], verified=False)
        assert refunded["status"] == "refunded"
        assert market.processor.refund_count(tx["payment_intent_id"]) == 1

    @pytest.mark.parametrize("decide", ["approve_and_release", "reject_and_refund"])
    async def test_only_requester_releases(self, market, decide):
        requester, provider, match, tx, proof = await _proof(market)
        outsider = await market.agent("outsider")
        with pytest.raises(Unauthorized):
            await getattr(market.verification, decide)(proof["id"], outsider["id"])
        assert (await market.verification.get_verification(proof["id"]))["decided"] is False
        assert (await market.storage.transactions.get(tx["id"]))["status"] == "escrowed"
        assert market.processor.refunds == []

    async def test_saga_does_not_run_twice(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        await market.verification.approve_and_release(proof["id"], requester["id"])
        with pytest.raises(Conflict):
            await market.verification.approve_and_release(proof["id"], requester["id"])
        assert (await market.storage.agents.get(provider["id"]))["total_transactions"] == 1


class TestDisputes:

    async def test_party_opens_dispute(self, market):
        requester, provider, match, tx = await market.escrowed()
        dispute = await market.verification.create_dispute(tx["id"], requester["id"], "GPU was idle")
        assert dispute["kind"] == "dispute"
        assert dispute["proof_data"] == {"type": "dispute", "reason": "GPU was idle"}
        assert dispute["notes"] == f"Dispute initiated by {requester['id']}: GPU was idle"
        assert dispute["decided"] is False

    async def test_outsider_cannot_dispute(self, market):
        requester, provider, match, tx = await market.escrowed()
        outsider = await market.agent("outsider")
        with pytest.raises(Unauthorized):
            await market.verification.create_dispute(tx["id"], outsider["id"], "because")

    async def test_reason_required(self, market):
        requester, provider, match, tx = await market.escrowed()
        with pytest.raises(InvalidInput):
            await market.verification.create_dispute(tx["id"], provider["id"], "  ")

    async def test_resolve(self, market):
        requester, provider, match, tx = await market.escrowed()
        dispute = await market.verification.create_dispute(tx["id"], provider["id"], "unpaid")
        arbiter = await market.agent("arbiter")
        resolved = await market.verification.resolve_dispute(dispute["id"], "approved", arbiter["id"])
        assert resolved["verified"] is True
        assert resolved["decided"] is True
        assert resolved["resolved_by"] == arbiter["id"]
        assert resolved["verifier_id"] == provider["id"]
        assert resolved["notes"].startswith("Dispute initiated by")

        with pytest.raises(Conflict):
            await market.verification.resolve_dispute(dispute["id"], "rejected", requester["id"])

    async def test_initiator_cannot_resolve(self, market):
        requester, provider, match, tx = await market.escrowed()
        dispute = await market.verification.create_dispute(tx["id"], provider["id"], "unpaid")
        with pytest.raises(Unauthorized):
            await market.verification.resolve_dispute(dispute["id"], "approved", provider["id"])
        assert (await market.verification.get_verification(dispute["id"]))["decided"] is False

    async def test_bad_resolution(self, market):
        requester, provider, match, tx = await market.escrowed()
        dispute = await market.verification.create_dispute(tx["id"], provider["id"], "unpaid")
        with pytest.raises(InvalidInput):
            await market.verification.resolve_dispute(dispute["id"], "maybe", requester["id"])

    async def test_proof_is_not_a_dispute(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        with pytest.raises(NotFound):
            await market.verification.resolve_dispute(proof["id"], "approved", requester["id"])

    async def test_dispute_cannot_be_verified(self, market):
        requester, provider, match, tx = await market.escrowed()
        dispute = await market.verification.create_dispute(tx["id"], provider["id"], "unpaid")
        with pytest.raises(Conflict):
            await market.verification.verify_work(dispute["id"], requester["id"], True)


class TestReads:

    async def test_pending_for_requester(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        pending = await market.verification.get_pending_verifications(requester["id"])
        assert [v["id"] for v in pending] == [proof["id"]]
        assert await market.verification.get_pending_verifications(provider["id"]) == []
        assert [v["id"] for v in await market.verification.list_pending()] == [proof["id"]]

    async def test_transaction_verifications(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        await market.verification.create_dispute(tx["id"], requester["id"], "slow")
        listed = await market.verification.get_transaction_verifications(tx["id"])
        assert {v["kind"] for v in listed} == {"proof", "dispute"}

    async def test_stats(self, market):
        requester, provider, match, tx, proof = await _proof(market)
        await market.verification.create_dispute(tx["id"], requester["id"], "slow")
        await market.verification.verify_work(proof["id"], requester["id"], True)
        stats = await market.verification.get_verification_stats()
        assert stats["total_verifications"] == 2
        assert stats["approved_verifications"] == 1
        assert stats["pending_verifications"] == 1
        assert stats["rejected_verifications"] == 0
        assert stats["disputes"] == 1
        assert stats["unique_transactions"] == 1

    async def test_missing_verification(self, market):
        with pytest.raises(NotFound):
            await market.verification.get_verification("no-such-verification")
