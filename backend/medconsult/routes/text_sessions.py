"""
Text Session Routes — start, messages, status and end for text consultations.
The caller is identified by the `user-id` header on every request.
"""
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from medconsult.database import get_db
from medconsult.schemas.schemas import (
    TextSessionStartRequest, TextSessionStartResponse, MessageResponse,
    EndSessionRequest, EndSessionResponse, SessionStatusResponse,
)
from medconsult.services.text_session_service import TextSessionService
from medconsult.utils.clock import Clock, get_clock
from medconsult.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/text-sessions", tags=["Text Sessions"])


def _end_response(session_id: int, outcome) -> EndSessionResponse:
    return EndSessionResponse(
        session_id=session_id,
        units_charged=outcome.units_charged,
        final_status=outcome.final_status,
        already_done=outcome.already_done,
        shortfall=outcome.shortfall,
        amount=outcome.amount,
        duration_seconds=outcome.duration_seconds,
    )


@router.post("/start", response_model=TextSessionStartResponse)
def start_text_session(
    payload: TextSessionStartRequest,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    _throttle: bool = Depends(rate_limit(requests=10, window=60)),
):
    """Patient opens a text session with a doctor (or gets the open one back)."""
    session, created = TextSessionService.start(db, user_id, payload.doctor_id, payload.reason, clock)
    return TextSessionStartResponse(
        session_id=session.id,
        identifier=f"text_{session.id}",
        status=session.status,
        created=created,
        sessions_remaining=session.sessions_remaining_before_start,
        message="Text session started" if created else "Existing text session returned",
    )


@router.post("/{session_id}/doctor-message", response_model=MessageResponse)
def doctor_message(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Doctor replies. Rejected with 409 once the response window has closed."""
    outcome = TextSessionService.record_doctor_message(db, session_id, user_id, clock)
    if not outcome.accepted:
        raise HTTPException(status_code=409, detail=f"Session is {outcome.status}; message not accepted")
    return MessageResponse(
        session_id=session_id,
        accepted=outcome.accepted,
        status=outcome.status,
        outcome=outcome.outcome.value,
    )


@router.post("/{session_id}/patient-message", response_model=MessageResponse)
def patient_message(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Patient writes. The first message starts the doctor's response deadline."""
    outcome = TextSessionService.record_patient_message(db, session_id, user_id, clock)
    return MessageResponse(
        session_id=session_id,
        accepted=outcome.accepted,
        status=outcome.status,
        outcome=outcome.outcome.value,
        deadline=outcome.deadline,
        deadline_set=outcome.deadline_set,
    )


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
def text_session_status(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    snapshot = TextSessionService.check_status(db, session_id, user_id, clock)
    return SessionStatusResponse(
        session_id=snapshot.session_id,
        identifier=f"text_{snapshot.session_id}",
        session_type="text",
        status=snapshot.status,
        remaining_time=snapshot.remaining_time,
        remaining_units=snapshot.remaining_units,
        deadline=snapshot.deadline,
        sessions_used=snapshot.sessions_used,
    )


@router.post("/{session_id}/end", response_model=EndSessionResponse)
def end_text_session(
    session_id: int,
    payload: EndSessionRequest = EndSessionRequest(),
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Either participant ends the session. Safe to repeat."""
    outcome = TextSessionService.end_session(
        db, session_id, user_id, clock,
        reported_duration=payload.reported_duration,
        was_connected=payload.was_connected,
    )
    return _end_response(session_id, outcome)


@router.post("/{session_id}/cancel", response_model=EndSessionResponse)
def cancel_text_session(
    session_id: int,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    outcome = TextSessionService.cancel(db, session_id, user_id, clock)
    return _end_response(session_id, outcome)
