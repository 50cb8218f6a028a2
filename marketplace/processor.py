"""
processor.py - Payment processor interface and the Stripe adapter.

The marketplace talks to a card processor through four calls:
 - create_intent      -> hold an amount in minor units, returns id + client secret
 - retrieve_intent    -> current intent status
 - create_refund      -> refund a succeeded intent
 - construct_event    -> verify a signed webhook body and decode the event

StripeProcessor backs these with the Stripe SDK. The SDK is blocking, so
each call runs on the default executor. PaymentSimulator (payment_simulator.py)
implements the same calls in-process for offline runs and tests.
"""

import asyncio
import functools
import logging
from typing import Protocol

import stripe

logger = logging.getLogger("processor")

SIGNATURE_TOLERANCE = 300  # seconds


class ProcessorError(Exception):
    """Raised by a processor for any failed call."""


class SignatureVerificationError(ProcessorError):
    pass


class PaymentProcessor(Protocol):
    async def create_intent(
        self, amount_minor: int, currency: str, metadata: dict, description: str = "",
    ) -> dict: ...

    async def retrieve_intent(self, intent_id: str) -> dict: ...

    async def create_refund(self, intent_id: str) -> dict: ...

    def construct_event(self, payload: bytes, signature: str) -> dict: ...


def _intent_dict(intent) -> dict:
    return {
        "id": intent["id"],
        "object": "payment_intent",
        "amount": intent["amount"],
        "currency": intent["currency"],
        "metadata": dict(intent.get("metadata") or {}),
        "description": intent.get("description") or "",
        "status": intent["status"],
        "client_secret": intent.get("client_secret") or "",
        "created": intent.get("created"),
    }


class StripeProcessor:
    """Card payments through the Stripe API."""

    def __init__(self, secret_key: str, webhook_secret: str):
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self._client = stripe.StripeClient(secret_key)
        self._webhook_secret = webhook_secret
        if not webhook_secret:
            logger.warning("No webhook secret configured; Stripe webhooks will be rejected")
        logger.info("Stripe processor initialized")

    async def create_intent(
        self, amount_minor: int, currency: str, metadata: dict, description: str = "",
    ) -> dict:
        intent = await self._run("create_intent", self._client.payment_intents.create, {
            "amount": amount_minor,
            "currency": currency,
            "metadata": metadata,
            "description": description,
        })
        logger.info("Intent %s created: %d %s", intent["id"], amount_minor, currency)
        return _intent_dict(intent)

    async def retrieve_intent(self, intent_id: str) -> dict:
        return _intent_dict(await self._run("retrieve_intent", self._client.payment_intents.retrieve, intent_id))

    async def create_refund(self, intent_id: str) -> dict:
        refund = await self._run("create_refund", self._client.refunds.create, {"payment_intent": intent_id})
        logger.info("Refund %s issued for intent %s", refund["id"], intent_id)
        return {
            "id": refund["id"],
            "object": "refund",
            "payment_intent": intent_id,
            "amount": refund["amount"],
            "currency": refund["currency"],
            "status": refund["status"],
        }

    def construct_event(self, payload: bytes, signature: str) -> dict:
        if not self._webhook_secret:
            raise SignatureVerificationError("Webhook secret not configured")
        try:
            return stripe.Webhook.construct_event(
                payload, signature, self._webhook_secret, tolerance=SIGNATURE_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(str(e)) from e
        except ValueError as e:
            raise SignatureVerificationError(f"Invalid payload: {e}") from e

    async def _run(self, operation: str, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args))
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", operation, e)
            raise ProcessorError(str(e)) from e
