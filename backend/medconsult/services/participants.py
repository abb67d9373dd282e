"""
Participant checks shared by the text and call state machines.
"""
from typing import Optional

from medconsult.errors import UnauthorizedAccess

PATIENT = "patient"
DOCTOR = "doctor"


def authorize(session, caller_id: str, role: Optional[str] = None) -> str:
    """Return the caller's role in the session.

    Raises:
        UnauthorizedAccess: If the caller is not a participant, or not the
            participant `role` requires. No state is changed.
    """
    if caller_id and caller_id == session.patient_id:
        caller_role = PATIENT
    elif caller_id and caller_id == session.doctor_id:
        caller_role = DOCTOR
    else:
        raise UnauthorizedAccess(f"User {caller_id!r} is not a participant of session {session.id}")

    if role is not None and caller_role != role:
        raise UnauthorizedAccess(f"Only the {role} may perform this action on session {session.id}")
    return caller_role
