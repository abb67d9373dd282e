"""
Admin Routes — session overview, manual sweep and doctor wallet inspection.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from medconsult.database import get_db
from medconsult.errors import NotFound
from medconsult.models.session import TextSession, CallSession
from medconsult.models.wallet import DoctorWallet, WalletLedgerEntry
from medconsult.schemas.schemas import (
    AdminSessionEntry, SweepResponse, WalletResponse, LedgerEntryResponse,
)
from medconsult.services.scheduler import run_sweep
from medconsult.utils.clock import Clock, get_clock

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/sessions", response_model=List[AdminSessionEntry])
def list_sessions(
    status: Optional[str] = Query(None, description="Filter by status"),
    session_type: Optional[str] = Query(None, description="text | call"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Most recent text and call sessions, newest first."""
    entries: List[AdminSessionEntry] = []

    if session_type in (None, "text"):
        query = db.query(TextSession)
        if status:
            query = query.filter(TextSession.status == status)
        for s in query.order_by(TextSession.started_at.desc()).limit(limit).all():
            entries.append(AdminSessionEntry(
                identifier=f"text_{s.id}",
                session_type="text",
                patient_id=s.patient_id,
                doctor_id=s.doctor_id,
                status=s.status,
                started_at=s.started_at,
                ended_at=s.ended_at,
                sessions_used=s.sessions_used or 0,
                end_reason=s.end_reason,
            ))

    if session_type in (None, "call"):
        query = db.query(CallSession)
        if status:
            query = query.filter(CallSession.status == status)
        for c in query.order_by(CallSession.started_at.desc()).limit(limit).all():
            entries.append(AdminSessionEntry(
                identifier=f"call_{c.id}",
                session_type=c.call_type,
                patient_id=c.patient_id,
                doctor_id=c.doctor_id,
                status=c.status,
                started_at=c.started_at,
                ended_at=c.ended_at,
                sessions_used=c.sessions_used or 0,
                end_reason=c.end_reason,
            ))

    entries.sort(key=lambda e: e.started_at, reverse=True)
    return entries[:limit]


@router.post("/sweep", response_model=SweepResponse)
def trigger_sweep(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    """Run one sweep pass now instead of waiting for the background loop."""
    return SweepResponse(**run_sweep(db, clock))


@router.get("/wallets/{doctor_id}", response_model=WalletResponse)
def get_wallet(
    doctor_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    wallet = db.query(DoctorWallet).filter(DoctorWallet.doctor_id == doctor_id).first()
    if not wallet:
        raise NotFound(f"No wallet for doctor {doctor_id}")

    entries = (
        db.query(WalletLedgerEntry)
        .filter(WalletLedgerEntry.doctor_id == doctor_id)
        .order_by(WalletLedgerEntry.created_at.desc(), WalletLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
    return WalletResponse(
        doctor_id=wallet.doctor_id,
        balance=wallet.balance,
        total_earned=wallet.total_earned,
        currency=wallet.currency,
        entries=[LedgerEntryResponse.model_validate(e) for e in entries],
    )
