"""
Session Routes — status lookup by tagged identifier (text_<id>, call_<id>).
"""
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from medconsult.database import get_db
from medconsult.errors import NotFound
from medconsult.schemas.schemas import SessionStatusResponse
from medconsult.services.call_session_service import CallSessionService
from medconsult.services.text_session_service import TextSessionService
from medconsult.utils.clock import Clock, get_clock
from medconsult.utils.identifiers import SessionKind, parse_session_identifier

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.get("/{identifier}/status", response_model=SessionStatusResponse)
def session_status(
    identifier: str,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Status of any engine-owned session. Appointment (direct_) sessions live elsewhere."""
    ident = parse_session_identifier(identifier)
    if not ident.is_engine_owned:
        raise NotFound(f"Session {ident} is not managed by this service")
    if ident.kind is SessionKind.TEXT:
        snapshot = TextSessionService.check_status(db, ident.value, user_id, clock)
    else:
        snapshot = CallSessionService.get_status(db, ident.value, user_id, clock)

    return SessionStatusResponse(
        session_id=snapshot.session_id,
        identifier=str(ident),
        session_type=ident.kind.value,
        status=snapshot.status,
        remaining_time=snapshot.remaining_time,
        remaining_units=snapshot.remaining_units,
        deadline=snapshot.deadline,
        sessions_used=snapshot.sessions_used,
    )
