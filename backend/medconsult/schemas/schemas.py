"""
Pydantic Schemas — Request & Response models for API validation.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List
from pydantic import BaseModel, Field


# ──────────────── Text Sessions ────────────────

class TextSessionStartRequest(BaseModel):
    doctor_id: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(None, max_length=512, description="Why the patient is consulting")


class TextSessionStartResponse(BaseModel):
    session_id: int
    identifier: str
    status: str
    created: bool
    sessions_remaining: int
    message: str = "Text session started"


class MessageResponse(BaseModel):
    session_id: int
    accepted: bool
    status: str
    outcome: str
    deadline: Optional[datetime] = None
    deadline_set: bool = False


# ──────────────── Calls ────────────────

class CallStartRequest(BaseModel):
    doctor_id: str = Field(..., min_length=1, max_length=64)
    call_type: str = Field(..., description="voice | video")


class CallStartResponse(BaseModel):
    session_id: int
    identifier: str
    call_type: str
    status: str
    created: bool
    sessions_remaining: int


class TransitionResponse(BaseModel):
    session_id: int
    status: str
    outcome: str
    applied: bool


class DeductionRequest(BaseModel):
    reported_duration: Optional[int] = Field(None, ge=0, description="Elapsed seconds as seen by the client")


class DeductionResponse(BaseModel):
    session_id: int
    units_charged: int
    status: str
    ended: bool = False
    shortfall: int = 0
    auto_deductions_processed: int = 0


# ──────────────── Shared ────────────────

class EndSessionRequest(BaseModel):
    reported_duration: Optional[int] = Field(None, ge=0, description="Elapsed seconds as seen by the client")
    was_connected: Optional[bool] = None


class EndSessionResponse(BaseModel):
    session_id: int
    units_charged: int
    final_status: str
    already_done: bool = False
    shortfall: int = 0
    amount: Decimal = Decimal("0.00")
    duration_seconds: int = 0


class SessionStatusResponse(BaseModel):
    session_id: int
    identifier: str
    session_type: str
    status: str
    remaining_time: Optional[int] = None
    remaining_units: int
    deadline: Optional[datetime] = None
    sessions_used: int = 0


# ──────────────── Payments ────────────────

class PaymentInitRequest(BaseModel):
    plan_id: int = Field(..., ge=1)


class PaymentInitResponse(BaseModel):
    reference: str
    amount: Decimal
    currency: str
    status: str


class WebhookAckResponse(BaseModel):
    received: bool = True
    ignored: bool = False
    reference: Optional[str] = None
    status: Optional[str] = None
    applied: bool = False
    already_applied: bool = False


class PaymentStatusResponse(BaseModel):
    reference: str
    user_id: str
    plan_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str
    applied: bool
    created_at: datetime
    updated_at: datetime


# ──────────────── Admin ────────────────

class AdminSessionEntry(BaseModel):
    identifier: str
    session_type: str
    patient_id: str
    doctor_id: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    sessions_used: int = 0
    end_reason: Optional[str] = None


class SweepResponse(BaseModel):
    expired: int = 0
    promoted: int = 0
    text_units_charged: int = 0
    call_units_charged: int = 0
    ended: int = 0
    errors: int = 0


class LedgerEntryResponse(BaseModel):
    id: int
    amount: Decimal
    currency: str
    units: int
    session_type: str
    session_id: int
    source: str
    idempotency_key: str
    created_at: datetime

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    doctor_id: str
    balance: Decimal
    total_earned: Decimal
    currency: str
    entries: List[LedgerEntryResponse] = []


# ──────────────── Generic ────────────────

class HealthResponse(BaseModel):
    status: str
    database: str
    scheduler: bool
    version: str
    uptime_seconds: float
    config: Optional[Dict[str, int]] = None


class ErrorResponse(BaseModel):
    detail: str
    error_code: Optional[str] = None
