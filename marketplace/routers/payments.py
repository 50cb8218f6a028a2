"""Payments router: /api/v1/payments/* escrow endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from starlette.requests import Request

from marketplace.deps import current_agent, get_server
from marketplace.errors import Unauthorized
from marketplace.models import ConfirmPaymentRequest, PaymentIntentRequest, ReleasePaymentRequest
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/payments")


async def _party_transaction(srv, transaction_id: str, agent: dict) -> dict:
    tx = await srv.payments.get_transaction(transaction_id)
    if agent["id"] not in (tx["requester_id"], tx["provider_id"]):
        raise Unauthorized("Not a party to this transaction", transaction_id=transaction_id)
    return tx


@router.post("/create-intent", status_code=201)
async def create_intent(request: Request, req: PaymentIntentRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    match = await srv.matcher.get_match(req.match_id)
    if match["requester_id"] != agent["id"]:
        raise Unauthorized("Only the requester can create payment for this match", match_id=req.match_id)
    result = await srv.payments.create_payment_intent(
        req.match_id, req.amount, match["requester_id"], match["provider_id"],
        payment_method=req.payment_method,
    )
    return format_response(result, "Payment intent created successfully", 201)


@router.post("/confirm")
async def confirm_payment(request: Request, req: ConfirmPaymentRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    tx = await _party_transaction(srv, req.transaction_id, agent)
    if tx["requester_id"] != agent["id"]:
        raise Unauthorized("Only the requester can confirm this payment", transaction_id=req.transaction_id)
    result = await srv.payments.confirm_payment(req.payment_intent_id, req.transaction_id)
    return format_response(result, "Payment confirmed and held in escrow")


@router.post("/transaction/{transaction_id}/release")
async def release_payment(
    request: Request, transaction_id: str, req: ReleasePaymentRequest,
    agent: dict = Depends(current_agent),
):
    """Requester may settle to the provider; provider may refund the requester."""
    srv = get_server(request)
    tx = await _party_transaction(srv, transaction_id, agent)
    allowed = tx["requester_id"] if req.verified else tx["provider_id"]
    if agent["id"] != allowed:
        raise Unauthorized(
            "Funds can only be released to the other party", transaction_id=transaction_id,
        )
    result = await srv.payments.release_payment(transaction_id, verified=req.verified)
    return format_response(result, "Payment settled" if req.verified else "Payment refunded")


@router.get("/transaction/{transaction_id}")
async def get_transaction(request: Request, transaction_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    return format_response(await _party_transaction(srv, transaction_id, agent))


@router.get("/my-transactions")
async def my_transactions(
    request: Request,
    role: Optional[str] = Query(default=None),
    agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    transactions = await srv.payments.get_agent_transactions(agent["id"], role)
    return format_response({"transactions": transactions, "count": len(transactions)})


@router.get("/stats")
async def transaction_stats(request: Request):
    srv = get_server(request)
    return format_response(await srv.payments.get_transaction_stats())


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    payment_signature: str = Header(default=""),
    stripe_signature: str = Header(default=""),
):
    """Processor events. Stripe signs with Stripe-Signature, the simulator with Payment-Signature."""
    srv = get_server(request)
    payload = await request.body()
    return await srv.payments.handle_webhook(payload, stripe_signature or payment_signature)
