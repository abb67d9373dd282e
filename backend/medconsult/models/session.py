"""
Session Models — Text and call consultation lifecycles.
Maps to the 'text_sessions' and 'call_sessions' tables.

Rows are never deleted; a session is archived by reaching a terminal status.
"""
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Index

from medconsult.database import Base


class TextSession(Base):
    __tablename__ = "text_sessions"

    STATUS_WAITING_FOR_DOCTOR = "waiting_for_doctor"
    STATUS_ACTIVE = "active"
    STATUS_ENDED = "ended"
    STATUS_EXPIRED = "expired"
    STATUS_CANCELLED = "cancelled"

    TERMINAL_STATUSES = (STATUS_ENDED, STATUS_EXPIRED, STATUS_CANCELLED)

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)

    status = Column(String(24), nullable=False, default=STATUS_WAITING_FOR_DOCTOR)
    # Statuses: waiting_for_doctor → active → ended
    #           waiting_for_doctor → expired | cancelled

    started_at = Column(DateTime, nullable=False)
    activated_at = Column(DateTime, nullable=True)
    doctor_response_deadline = Column(DateTime, nullable=True)  # set once, by the patient's first message
    last_activity_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    sessions_used = Column(Integer, nullable=False, default=0)
    auto_deductions_processed = Column(Integer, nullable=False, default=0)
    sessions_remaining_before_start = Column(Integer, nullable=False, default=0)

    reason = Column(String(512))
    end_reason = Column(String(32))  # manual_end | time_exhausted | insufficient_balance | no_response | ...

    __table_args__ = (
        Index("ix_text_sessions_status_deadline", "status", "doctor_response_deadline"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class CallSession(Base):
    __tablename__ = "call_sessions"

    STATUS_CONNECTING = "connecting"
    STATUS_ANSWERED = "answered"
    STATUS_ACTIVE = "active"
    STATUS_ENDED = "ended"
    STATUS_DECLINED = "declined"

    TERMINAL_STATUSES = (STATUS_ENDED, STATUS_DECLINED)

    CALL_TYPES = ("voice", "video")

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)
    call_type = Column(String(8), nullable=False)  # voice | video

    status = Column(String(16), nullable=False, default=STATUS_CONNECTING)
    # Statuses: connecting → answered → active → ended
    #           connecting → declined

    started_at = Column(DateTime, nullable=False)
    answered_at = Column(DateTime, nullable=True)
    connected_at = Column(DateTime, nullable=True)  # immutable once set; drives billing
    ended_at = Column(DateTime, nullable=True)

    is_connected = Column(Boolean, nullable=False, default=False)
    call_duration = Column(Integer, nullable=False, default=0)  # seconds, from connected_at

    sessions_used = Column(Integer, nullable=False, default=0)
    auto_deductions_processed = Column(Integer, nullable=False, default=0)
    sessions_remaining_before_start = Column(Integer, nullable=False, default=0)

    end_reason = Column(String(32))  # manual_end | missed | declined | time_exhausted | insufficient_balance

    __table_args__ = (
        Index("ix_call_sessions_status_answered", "status", "answered_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES
