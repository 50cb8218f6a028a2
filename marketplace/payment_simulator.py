"""
payment_simulator.py - In-process payment processor.

Implements the PaymentProcessor calls (processor.py) in memory so the
marketplace runs and tests fully offline:
 - create_intent      -> hold an amount in minor units, returns id + client secret
 - retrieve_intent    -> current intent status
 - create_refund      -> refund a succeeded intent (once)
 - construct_event    -> verify a signed webhook body and decode the event

Webhook bodies are signed like the real thing: the header is
``t=<unix ts>,v1=<hex hmac-sha256 of "<ts>.<body>">``.

Test controls flip intents to succeeded/failed and make the next N calls of
a method raise, to exercise the marketplace's error paths.

Usage (integrated into the platform server):
    from marketplace.payment_simulator import PaymentSimulator
    processor = PaymentSimulator(webhook_secret="whsec_test")
    processor.register_routes(fastapi_app)
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from marketplace.processor import SIGNATURE_TOLERANCE, ProcessorError, SignatureVerificationError

logger = logging.getLogger("payment-sim")

INTENT_REQUIRES_PAYMENT = "requires_payment_method"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"


@dataclass
class SimulatedIntent:
    id: str
    amount: int
    currency: str
    metadata: dict
    description: str = ""
    status: str = INTENT_REQUIRES_PAYMENT
    client_secret: str = ""
    created: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "object": "payment_intent",
            "amount": self.amount,
            "currency": self.currency,
            "metadata": dict(self.metadata),
            "description": self.description,
            "status": self.status,
            "client_secret": self.client_secret,
            "created": self.created,
        }


class PaymentSimulator:
    """Mock card processor with signed webhooks."""

    def __init__(self, webhook_secret: str = ""):
        self._webhook_secret = webhook_secret or ("whsec_" + secrets.token_hex(16))
        self._intents: Dict[str, SimulatedIntent] = {}
        self._refunds: List[dict] = []
        self._failures: Dict[str, int] = {}
        logger.info("Payment simulator initialized")

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret

    @property
    def refunds(self) -> List[dict]:
        return list(self._refunds)

    # -------------------------------------------------------------------
    # Processor API
    # -------------------------------------------------------------------

    async def create_intent(
        self, amount_minor: int, currency: str, metadata: dict, description: str = "",
    ) -> dict:
        self._maybe_fail("create_intent")
        if amount_minor <= 0:
            raise ProcessorError(f"Invalid amount: {amount_minor}")
        intent_id = "pi_" + secrets.token_hex(12)
        intent = SimulatedIntent(
            id=intent_id,
            amount=amount_minor,
            currency=currency,
            metadata=metadata,
            description=description,
            client_secret=f"{intent_id}_secret_{secrets.token_hex(12)}",
        )
        self._intents[intent_id] = intent
        logger.info("Intent %s created: %d %s", intent_id, amount_minor, currency)
        return intent.to_dict()

    async def retrieve_intent(self, intent_id: str) -> dict:
        self._maybe_fail("retrieve_intent")
        return self._get(intent_id).to_dict()

    async def create_refund(self, intent_id: str) -> dict:
        self._maybe_fail("create_refund")
        intent = self._get(intent_id)
        if intent.status != INTENT_SUCCEEDED:
            raise ProcessorError(f"Intent {intent_id} is {intent.status}; nothing to refund")
        if any(r["payment_intent"] == intent_id for r in self._refunds):
            raise ProcessorError(f"Intent {intent_id} has already been refunded")
        refund = {
            "id": "re_" + secrets.token_hex(12),
            "object": "refund",
            "payment_intent": intent_id,
            "amount": intent.amount,
            "currency": intent.currency,
            "status": "succeeded",
            "created": time.time(),
        }
        self._refunds.append(refund)
        logger.info("Refund %s issued for intent %s (%d)", refund["id"], intent_id, intent.amount)
        return refund

    def construct_event(self, payload: bytes, signature: str) -> dict:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        parts = dict(
            item.split("=", 1) for item in (signature or "").split(",") if "=" in item
        )
        timestamp, sig = parts.get("t"), parts.get("v1")
        if not timestamp or not sig:
            raise SignatureVerificationError("Malformed signature header")
        try:
            ts = int(timestamp)
        except ValueError:
            raise SignatureVerificationError("Malformed signature timestamp")
        if abs(time.time() - ts) > SIGNATURE_TOLERANCE:
            raise SignatureVerificationError("Signature timestamp outside tolerance")
        expected = self._sign(payload, ts)
        if not hmac.compare_digest(expected, sig):
            raise SignatureVerificationError("Signature mismatch")
        try:
            return json.loads(payload)
        except ValueError as e:
            raise SignatureVerificationError(f"Invalid payload: {e}")

    # -------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------

    def succeed_intent(self, intent_id: str) -> dict:
        """Mark an intent paid, as if the client confirmed the card."""
        intent = self._get(intent_id)
        intent.status = INTENT_SUCCEEDED
        logger.info("Intent %s succeeded", intent_id)
        return intent.to_dict()

    def fail_intent(self, intent_id: str, status: str = INTENT_REQUIRES_PAYMENT) -> dict:
        intent = self._get(intent_id)
        intent.status = status
        logger.info("Intent %s -> %s", intent_id, status)
        return intent.to_dict()

    def fail_next(self, method: str, times: int = 1):
        """Make the next ``times`` calls of ``method`` raise ProcessorError."""
        self._failures[method] = self._failures.get(method, 0) + times

    def sign_payload(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        return f"t={ts},v1={self._sign(payload, ts)}"

    def build_event(self, event_type: str, intent_id: str) -> Tuple[bytes, str]:
        """Signed webhook body and header for an event about ``intent_id``."""
        event = {
            "id": "evt_" + secrets.token_hex(12),
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": self._get(intent_id).to_dict()},
        }
        body = json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return body, self.sign_payload(body)

    def refund_count(self, intent_id: str) -> int:
        return sum(1 for r in self._refunds if r["payment_intent"] == intent_id)

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _get(self, intent_id: str) -> SimulatedIntent:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise ProcessorError(f"No such payment_intent: {intent_id}")
        return intent

    def _sign(self, payload: bytes, timestamp: int) -> str:
        signed = str(timestamp).encode("utf-8") + b"." + payload
        return hmac.new(self._webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

    def _maybe_fail(self, method: str):
        remaining = self._failures.get(method, 0)
        if remaining > 0:
            self._failures[method] = remaining - 1
            raise ProcessorError(f"Simulated {method} failure")

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Expose simulator controls for offline end-to-end runs."""
        from fastapi import HTTPException

        @app.post("/sim/payments/intents/{intent_id}/succeed")
        async def sim_succeed_intent(intent_id: str):
            try:
                return self.succeed_intent(intent_id)
            except ProcessorError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.post("/sim/payments/intents/{intent_id}/fail")
        async def sim_fail_intent(intent_id: str):
            try:
                return self.fail_intent(intent_id)
            except ProcessorError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.get("/sim/payments/intents/{intent_id}")
        async def sim_get_intent(intent_id: str):
            try:
                return self._get(intent_id).to_dict()
            except ProcessorError as e:
                raise HTTPException(status_code=404, detail=str(e))

        logger.info("Payment simulator routes registered on FastAPI app")
