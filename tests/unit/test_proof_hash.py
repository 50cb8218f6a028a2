"""
test_proof_hash.py - Proof hashing

Validates:
 - Hash is a pure function of the payload content
 - Key order and whitespace do not change the hash
 - verify_proof_hash accepts exactly the matching hash
"""

import hashlib

from marketplace.verification import canonical_json, generate_proof_hash, verify_proof_hash

PROOF = {"job": "train-resnet", "epochs": 90, "metrics": {"top1": 0.764, "loss": 0.91}}


class TestGenerateProofHash:

    def test_deterministic(self):
        assert generate_proof_hash(PROOF) == generate_proof_hash(dict(PROOF))

    def test_key_order_independent(self):
        reordered = {"metrics": {"loss": 0.91, "top1": 0.764}, "epochs": 90, "job": "train-resnet"}
        assert generate_proof_hash(reordered) == generate_proof_hash(PROOF)

    def test_sha256_of_canonical_form(self):
        expected = hashlib.sha256(canonical_json(PROOF).encode("utf-8")).hexdigest()
        assert generate_proof_hash(PROOF) == expected
        assert len(expected) == 64

    def test_content_change_changes_hash(self):
        changed = {**PROOF, "epochs": 91}
        assert generate_proof_hash(changed) != generate_proof_hash(PROOF)

    def test_non_ascii_payload(self):
        assert generate_proof_hash({"note": "résumé"}) == generate_proof_hash({"note": "résumé"})


class TestVerifyProofHash:

    def test_matching_hash(self):
        assert verify_proof_hash(generate_proof_hash(PROOF), PROOF)

    def test_mismatched_hash(self):
        assert not verify_proof_hash("0" * 64, PROOF)

    def test_empty_hash(self):
        assert not verify_proof_hash("", PROOF)
        assert not verify_proof_hash(None, PROOF)
