"""Pydantic request models for the REST API."""

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel


class RegisterAgentRequest(BaseModel):
    name: str
    type: str
    wallet_address: Optional[str] = None


class UpdateAgentRequest(BaseModel):
    name: Optional[str] = None
    wallet_address: Optional[str] = None


class CapabilityCreateRequest(BaseModel):
    gpu_count: int
    gpu_type: str
    cpu_cores: int
    memory_gb: int
    price_per_hour: Decimal
    region: Optional[str] = None
    available_hours: int = 0


class CapabilityUpdateRequest(BaseModel):
    price_per_hour: Optional[Decimal] = None
    available_hours: Optional[int] = None
    availability_status: Optional[str] = None


class FindMatchesRequest(BaseModel):
    gpu_count: int
    gpu_type: str
    max_price_per_hour: Decimal
    duration_hours: int = 0
    region: Optional[str] = None
    limit: int = 10


class ComputeRequestCreate(BaseModel):
    gpu_count: int
    gpu_type: str
    duration_hours: int
    max_price_per_hour: Decimal
    cpu_cores: Optional[int] = None
    memory_gb: Optional[int] = None
    description: Optional[str] = None


class ComputeRequestUpdate(BaseModel):
    status: Optional[str] = None
    description: Optional[str] = None
    max_price_per_hour: Optional[Decimal] = None
    duration_hours: Optional[int] = None
    cpu_cores: Optional[int] = None
    memory_gb: Optional[int] = None


class CreateMatchRequest(BaseModel):
    capability_id: str


class PaymentIntentRequest(BaseModel):
    match_id: str
    amount: Decimal
    payment_method: str = "card"


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str
    transaction_id: str


class ReleasePaymentRequest(BaseModel):
    verified: bool


class SubmitProofRequest(BaseModel):
    transaction_id: str
    proof_data: Any


class VerifyWorkRequest(BaseModel):
    approved: bool
    notes: Optional[str] = None


class DisputeRequest(BaseModel):
    transaction_id: str
    reason: str


class ResolveDisputeRequest(BaseModel):
    resolution: str
    notes: Optional[str] = None
