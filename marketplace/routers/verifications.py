"""Verifications router: /api/v1/verifications/* proof and dispute endpoints."""

from fastapi import APIRouter, Depends
from starlette.requests import Request

from marketplace.deps import current_agent, get_server
from marketplace.models import (
    DisputeRequest, ResolveDisputeRequest, SubmitProofRequest, VerifyWorkRequest,
)
from marketplace.responses import format_response

router = APIRouter(prefix="/api/v1/verifications")


@router.post("/submit-proof", status_code=201)
async def submit_proof(request: Request, req: SubmitProofRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    verification = await srv.verification.submit_proof(req.transaction_id, agent["id"], req.proof_data)
    return format_response(verification, "Proof submitted successfully", 201)


@router.get("/pending")
async def pending_verifications(request: Request, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    pending = await srv.verification.get_pending_verifications(agent["id"])
    return format_response({"verifications": pending, "count": len(pending)})


@router.get("/stats")
async def verification_stats(request: Request):
    srv = get_server(request)
    return format_response(await srv.verification.get_verification_stats())


@router.post("/dispute", status_code=201)
async def create_dispute(request: Request, req: DisputeRequest, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    dispute = await srv.verification.create_dispute(req.transaction_id, agent["id"], req.reason)
    return format_response(dispute, "Dispute created successfully", 201)


@router.get("/transaction/{transaction_id}")
async def transaction_verifications(
    request: Request, transaction_id: str, agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    verifications = await srv.verification.get_transaction_verifications(transaction_id)
    return format_response({
        "transaction_id": transaction_id,
        "verifications": verifications,
        "count": len(verifications),
    })


@router.get("/{verification_id}")
async def get_verification(request: Request, verification_id: str, agent: dict = Depends(current_agent)):
    srv = get_server(request)
    return format_response(await srv.verification.get_verification(verification_id))


@router.post("/{verification_id}/verify")
async def verify_work(
    request: Request, verification_id: str, req: VerifyWorkRequest,
    agent: dict = Depends(current_agent),
):
    """Decide on a proof and release the escrow accordingly."""
    srv = get_server(request)
    if req.approved:
        result = await srv.verification.approve_and_release(verification_id, agent["id"], req.notes)
        message = "Work approved and payment settled"
    else:
        result = await srv.verification.reject_and_refund(verification_id, agent["id"], req.notes)
        message = "Work rejected and payment refunded"
    return format_response(result, message)


@router.post("/{verification_id}/resolve-dispute")
async def resolve_dispute(
    request: Request, verification_id: str, req: ResolveDisputeRequest,
    agent: dict = Depends(current_agent),
):
    srv = get_server(request)
    dispute = await srv.verification.resolve_dispute(verification_id, req.resolution, agent["id"], req.notes)
    return format_response(dispute, "Dispute resolved successfully")
