"""
Call Routes — signalling, billing ticks and hang-up for voice/video calls.
"""
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from medconsult.database import get_db
from medconsult.schemas.schemas import (
    CallStartRequest, CallStartResponse, TransitionResponse,
    DeductionRequest, DeductionResponse,
    EndSessionRequest, EndSessionResponse, SessionStatusResponse,
)
from medconsult.services.call_session_service import CallSessionService
from medconsult.services.scheduler import DelayedTaskScheduler, get_scheduler
from medconsult.utils.clock import Clock, get_clock
from medconsult.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/calls", tags=["Calls"])


def _transition(session_id: int, result) -> TransitionResponse:
    return TransitionResponse(
        session_id=session_id,
        status=result.status,
        outcome=result.outcome.value,
        applied=result.applied,
    )


@router.post("/start", response_model=CallStartResponse)
def start_call(
    payload: CallStartRequest,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    _throttle: bool = Depends(rate_limit(requests=10, window=60)),
):
    """Patient rings a doctor."""
    call, created = CallSessionService.start(db, user_id, payload.doctor_id, payload.call_type, clock)
    return CallStartResponse(
        session_id=call.id,
        identifier=f"call_{call.id}",
        call_type=call.call_type,
        status=call.status,
        created=created,
        sessions_remaining=call.sessions_remaining_before_start,
    )


@router.post("/{session_id}/answer", response_model=TransitionResponse)
def answer_call(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    scheduler: DelayedTaskScheduler = Depends(get_scheduler),
):
    """Doctor answers; the call is treated as connected after the grace period."""
    result = CallSessionService.answer_call(db, session_id, user_id, clock, scheduler=scheduler)
    return _transition(session_id, result)


@router.post("/{session_id}/decline", response_model=TransitionResponse)
def decline_call(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = CallSessionService.decline_call(db, session_id, user_id, clock)
    return _transition(session_id, result)


@router.post("/{session_id}/connected", response_model=TransitionResponse)
def call_connected(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Explicit media-connected signal. Only the first one sets connected_at."""
    result = CallSessionService.mark_call_connected(db, session_id, user_id, clock)
    return _transition(session_id, result)


@router.post("/{session_id}/deduction", response_model=DeductionResponse)
def call_deduction(
    session_id: int,
    payload: DeductionRequest = DeductionRequest(),
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Periodic billing tick from the client. Replays charge nothing."""
    tick = CallSessionService.billing_tick(db, session_id, user_id, clock, payload.reported_duration)
    return DeductionResponse(
        session_id=session_id,
        units_charged=tick.units_charged,
        status=tick.status,
        ended=tick.ended,
        shortfall=tick.shortfall,
        auto_deductions_processed=tick.auto_deductions_processed,
    )


@router.post("/{session_id}/end", response_model=EndSessionResponse)
def end_call(
    session_id: int,
    payload: EndSessionRequest = EndSessionRequest(),
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    outcome = CallSessionService.end_call(
        db, session_id, user_id, clock,
        reported_duration=payload.reported_duration,
        was_connected=payload.was_connected,
    )
    return EndSessionResponse(
        session_id=session_id,
        units_charged=outcome.units_charged,
        final_status=outcome.final_status,
        already_done=outcome.already_done,
        shortfall=outcome.shortfall,
        amount=outcome.amount,
        duration_seconds=outcome.duration_seconds,
    )


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
def call_status(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    snapshot = CallSessionService.get_status(db, session_id, user_id, clock)
    return SessionStatusResponse(
        session_id=snapshot.session_id,
        identifier=f"call_{snapshot.session_id}",
        session_type="call",
        status=snapshot.status,
        remaining_time=snapshot.remaining_time,
        remaining_units=snapshot.remaining_units,
        sessions_used=snapshot.sessions_used,
    )
