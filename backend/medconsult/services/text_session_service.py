"""
Text Session Service — lifecycle and billing for text consultations.

    waiting_for_doctor → active      doctor's message before the deadline (or, with no
                                     patient message yet, before the unstarted timeout)
    waiting_for_doctor → expired     deadline or unstarted timeout passed (any message,
                                     status read, end or sweep)
    waiting_for_doctor → cancelled   explicit cancellation before activation
    active             → ended       participant ends, time allotment used up,
                                     or balance exhausted

Each transition is a conditional UPDATE whose WHERE clause states its
precondition, issued while the row lock is held, so replays and concurrent
paths settle on one outcome.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.errors import InvalidTransition
from medconsult.models.session import TextSession
from medconsult.services.billing import DeductionLedger, plan_charge
from medconsult.services.notification_service import NotificationService, notice
from medconsult.services.outcomes import EndOutcome, MessageOutcome, StatusSnapshot, TickOutcome
from medconsult.services.participants import DOCTOR, PATIENT, authorize
from medconsult.store import (
    Outcome, TransitionResult, conditional_update, lock_row, resolve, transaction,
)
from medconsult.utils.clock import Clock, response_deadline, seconds_between, seconds_remaining

logger = logging.getLogger(__name__)

settings = get_settings()

WAITING = TextSession.STATUS_WAITING_FOR_DOCTOR
ACTIVE = TextSession.STATUS_ACTIVE
ENDED = TextSession.STATUS_ENDED
EXPIRED = TextSession.STATUS_EXPIRED
CANCELLED = TextSession.STATUS_CANCELLED


def _unit_seconds() -> int:
    return settings.BILLING_UNIT_MINUTES * 60


def _unstarted_cutoff(now):
    """Sessions started at or before this instant with no patient message have lapsed."""
    return now - timedelta(seconds=settings.UNSTARTED_SESSION_TIMEOUT_SECONDS)


class TextSessionService:
    """State machine for TextSession rows. All methods take the caller and clock explicitly."""

    # ─── Creation ────────────────────────────────────────────────────

    @staticmethod
    def start(db: Session, patient_id: str, doctor_id: str, reason: Optional[str], clock: Clock) -> Tuple[TextSession, bool]:
        """Open a text session, or return the pair's open one.

        Returns:
            (session, created)

        Raises:
            InvalidTransition: If patient and doctor are the same user.
            InsufficientBalance: If the subscription is inactive, expired or out of text units.
        """
        if patient_id == doctor_id:
            raise InvalidTransition("Patient and doctor must be different users")

        now = clock.now()
        created = False
        with transaction(db):
            # Serialises concurrent starts by the same patient
            balance = DeductionLedger.lock_balance(db, patient_id)
            session = (
                db.query(TextSession)
                .filter(
                    TextSession.patient_id == patient_id,
                    TextSession.doctor_id == doctor_id,
                    TextSession.status.in_([WAITING, ACTIVE]),
                )
                .order_by(TextSession.id.desc())
                .first()
            )
            if session is None:
                remaining = DeductionLedger.units_for_start(balance, "text", now)

                session = TextSession(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    status=WAITING,
                    started_at=now,
                    last_activity_at=now,
                    sessions_used=0,
                    auto_deductions_processed=0,
                    sessions_remaining_before_start=remaining,
                    reason=(reason or "")[:512],
                )
                db.add(session)
                db.flush()
                created = True

        if created:
            logger.info("Text session %s started: patient=%s doctor=%s units=%d",
                        session.id, patient_id, doctor_id, session.sessions_remaining_before_start)
            NotificationService.dispatch(
                doctor_id, "New Text Session",
                "A patient has started a text session with you.",
                {"session_id": session.id, "session_type": "text"},
            )
        else:
            logger.info("Text session %s already open for patient=%s doctor=%s", session.id, patient_id, doctor_id)
        return session, created

    # ─── Messages ────────────────────────────────────────────────────

    @staticmethod
    def record_doctor_message(db: Session, session_id: int, caller_id: str, clock: Clock) -> MessageOutcome:
        """Doctor replied: activate if still in time, otherwise expire and reject."""
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            authorize(session, caller_id, role=DOCTOR)

            if session.status == ACTIVE:
                session.last_activity_at = now
                outcome = MessageOutcome(True, ACTIVE, Outcome.LOST_RACE)
            else:
                rows = conditional_update(
                    db, TextSession, session_id,
                    where=[
                        TextSession.status == WAITING,
                        TextSession.doctor_id == caller_id,
                        or_(
                            and_(TextSession.doctor_response_deadline.isnot(None),
                                 TextSession.doctor_response_deadline > now),
                            and_(TextSession.doctor_response_deadline.is_(None),
                                 TextSession.started_at > _unstarted_cutoff(now)),
                        ),
                    ],
                    values={"status": ACTIVE, "activated_at": now, "last_activity_at": now},
                )
                result = resolve(db, TextSession, session_id, rows, ACTIVE)
                if result.applied:
                    logger.info("Text session %s activated by doctor %s", session_id, caller_id)
                    queued.append(notice(session.patient_id, "Session Started",
                                         "Your doctor has joined the text session.", session_id=session_id))
                elif result.status == WAITING:
                    expiry = TextSessionService._expire_lapsed(db, session_id, now)
                    if expiry.applied:
                        queued.extend(TextSessionService._expiry_notices(session))
                    result = TransitionResult(result.outcome, expiry.status)

                if result.status != ACTIVE:
                    logger.info("Doctor reply on text session %s rejected, status %s", session_id, result.status)
                outcome = MessageOutcome(result.status == ACTIVE, result.status, result.outcome)

        NotificationService.dispatch_all(queued)
        return outcome

    @staticmethod
    def record_patient_message(db: Session, session_id: int, caller_id: str, clock: Clock) -> MessageOutcome:
        """Patient wrote: the first message starts the doctor's response window."""
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            authorize(session, caller_id, role=PATIENT)

            if session.status == WAITING:
                expiry = TextSessionService._expire_lapsed(db, session_id, now)
                if expiry.applied:
                    queued.extend(TextSessionService._expiry_notices(session))
                    outcome = MessageOutcome(False, expiry.status, Outcome.PRECONDITION_FAILED)
                else:
                    deadline = response_deadline(now, settings.TEXT_RESPONSE_WINDOW_SECONDS)
                    rows = conditional_update(
                        db, TextSession, session_id,
                        where=[
                            TextSession.status == WAITING,
                            TextSession.doctor_response_deadline.is_(None),
                        ],
                        values={"doctor_response_deadline": deadline, "last_activity_at": now},
                    )
                    result = resolve(db, TextSession, session_id, rows, None)
                    if rows:
                        logger.info("Text session %s: doctor must respond by %s", session_id, deadline.isoformat())
                        queued.append(notice(session.doctor_id, "New Patient Message",
                                             "A patient is waiting for your reply.",
                                             session_id=session_id, deadline=deadline.isoformat()))
                    else:
                        session.last_activity_at = now
                    outcome = MessageOutcome(
                        result.status in (WAITING, ACTIVE), result.status, result.outcome,
                        deadline=session.doctor_response_deadline, deadline_set=bool(rows),
                    )
            elif session.status == ACTIVE:
                session.last_activity_at = now
                outcome = MessageOutcome(True, ACTIVE, Outcome.PRECONDITION_FAILED,
                                         deadline=session.doctor_response_deadline)
            else:
                outcome = MessageOutcome(False, session.status, Outcome.PRECONDITION_FAILED)

        NotificationService.dispatch_all(queued)
        return outcome

    # ─── Status ──────────────────────────────────────────────────────

    @staticmethod
    def check_status(db: Session, session_id: int, caller_id: str, clock: Clock) -> StatusSnapshot:
        """Current status with remaining time and units.

        Applies whatever is already due first: expiry of a waiting session,
        and billing (or the automatic end) of an active one.
        """
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            authorize(session, caller_id)
            if session.status == WAITING:
                expiry = TextSessionService._expire_lapsed(db, session_id, now)
                if expiry.applied:
                    queued.extend(TextSessionService._expiry_notices(session))
            active = session.status == ACTIVE

        NotificationService.dispatch_all(queued)
        if active:
            TextSessionService.process_tick(db, session_id, clock)

        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            return TextSessionService.snapshot(session, now)

    @staticmethod
    def snapshot(session: TextSession, now) -> StatusSnapshot:
        unit = _unit_seconds()
        allotted = session.sessions_remaining_before_start or 0
        if session.status == WAITING:
            remaining_time = seconds_remaining(session.doctor_response_deadline, now)
            remaining_units = allotted
        elif session.status == ACTIVE:
            elapsed = seconds_between(session.activated_at, now)
            remaining_time = max(0, allotted * unit - elapsed)
            remaining_units = max(0, allotted - elapsed // unit)
        else:
            remaining_time = 0
            remaining_units = max(0, allotted - (session.sessions_used or 0))

        return StatusSnapshot(
            session_id=session.id,
            status=session.status,
            remaining_time=remaining_time,
            remaining_units=remaining_units,
            deadline=session.doctor_response_deadline,
            sessions_used=session.sessions_used or 0,
        )

    # ─── Ending ──────────────────────────────────────────────────────

    @staticmethod
    def end_session(
        db: Session,
        session_id: int,
        caller_id: str,
        clock: Clock,
        reported_duration: Optional[int] = None,
        was_connected: Optional[bool] = None,
    ) -> EndOutcome:
        """End by a participant. Ending twice charges once and reports already_done."""
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            authorize(session, caller_id)

            if session.is_terminal:
                outcome = EndOutcome(0, session.status, already_done=True)
            elif session.status == WAITING:
                expiry = TextSessionService._expire_lapsed(db, session_id, now)
                if expiry.applied:
                    queued.extend(TextSessionService._expiry_notices(session))
                else:
                    TextSessionService._cancel_waiting(db, session_id, now)
                outcome = EndOutcome(0, session.status)
            else:
                if was_connected is False:
                    logger.info("Text session %s: client reports not connected, activated at %s",
                                session_id, session.activated_at)
                outcome = TextSessionService._finish_active(db, session, now, reported_duration,
                                                            manual=True, end_reason="manual_end")
                queued.extend(TextSessionService._ended_notices(session, outcome))

        NotificationService.dispatch_all(queued)
        return outcome

    @staticmethod
    def cancel(db: Session, session_id: int, caller_id: str, clock: Clock) -> EndOutcome:
        """Cancel before activation.

        Raises:
            InvalidTransition: If the session is already active.
        """
        now = clock.now()
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            authorize(session, caller_id)
            if session.is_terminal:
                return EndOutcome(0, session.status, already_done=True)
            if session.status == ACTIVE:
                raise InvalidTransition(f"Text session {session_id} is active; end it instead")
            result = TextSessionService._cancel_waiting(db, session_id, now)
            return EndOutcome(0, result.status, already_done=not result.applied)

    # ─── Time-driven transitions (sweep, lazy checks) ────────────────

    @staticmethod
    def expire_if_due(db: Session, session_id: int, clock: Clock) -> TransitionResult:
        now = clock.now()
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            result = TextSessionService._expire_lapsed(db, session_id, now)
            queued = TextSessionService._expiry_notices(session) if result.applied else []
        NotificationService.dispatch_all(queued)
        return result

    @staticmethod
    def process_tick(db: Session, session_id: int, clock: Clock) -> TickOutcome:
        """Charge elapsed units of an active session; end it when time or balance runs out."""
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            session = lock_row(db, TextSession, session_id)
            if session.status != ACTIVE:
                return TickOutcome(0, session.status, auto_deductions_processed=session.auto_deductions_processed)

            connected = seconds_between(session.activated_at, now)
            plan = plan_charge(None, connected, session.auto_deductions_processed)
            charge = DeductionLedger.apply_charge(db, session, plan, now)

            end_reason = None
            if charge.short:
                end_reason = "insufficient_balance"
            elif connected >= (session.sessions_remaining_before_start or 0) * _unit_seconds():
                end_reason = "time_exhausted"

            ended = False
            if end_reason:
                result = TextSessionService._end_active(db, session_id, now, end_reason)
                ended = result.applied
                if ended:
                    logger.info("Text session %s ended automatically: %s", session_id, end_reason)
                    queued.extend(TextSessionService._ended_notices(
                        session, EndOutcome(charge.units_charged, ENDED, shortfall=charge.shortfall)))

            outcome = TickOutcome(
                units_charged=charge.units_charged,
                status=session.status,
                ended=ended,
                shortfall=charge.shortfall,
                auto_deductions_processed=session.auto_deductions_processed,
            )

        NotificationService.dispatch_all(queued)
        return outcome

    # ─── Conditional-update primitives (caller holds the transaction) ─

    @staticmethod
    def _expire_lapsed(db: Session, session_id: int, now) -> TransitionResult:
        """Expire a waiting session whose deadline or unstarted timeout has passed."""
        result = TextSessionService._expire_due(db, session_id, now)
        if not result.applied:
            result = TextSessionService._expire_unstarted(db, session_id, now)
        return result

    @staticmethod
    def _expire_due(db: Session, session_id: int, now) -> TransitionResult:
        rows = conditional_update(
            db, TextSession, session_id,
            where=[
                TextSession.status == WAITING,
                TextSession.doctor_response_deadline.isnot(None),
                TextSession.doctor_response_deadline <= now,
            ],
            values={"status": EXPIRED, "ended_at": now, "end_reason": "no_response"},
        )
        result = resolve(db, TextSession, session_id, rows, EXPIRED)
        if result.applied:
            logger.info("Text session %s expired: doctor did not respond in time", session_id)
        return result

    @staticmethod
    def _expire_unstarted(db: Session, session_id: int, now) -> TransitionResult:
        """Expire a waiting session in which nobody has written for the whole window."""
        rows = conditional_update(
            db, TextSession, session_id,
            where=[
                TextSession.status == WAITING,
                TextSession.doctor_response_deadline.is_(None),
                TextSession.started_at <= _unstarted_cutoff(now),
            ],
            values={"status": EXPIRED, "ended_at": now, "end_reason": "no_first_message"},
        )
        result = resolve(db, TextSession, session_id, rows, EXPIRED)
        if result.applied:
            logger.info("Text session %s expired: no message within %ss",
                        session_id, settings.UNSTARTED_SESSION_TIMEOUT_SECONDS)
        return result

    @staticmethod
    def _cancel_waiting(db: Session, session_id: int, now) -> TransitionResult:
        rows = conditional_update(
            db, TextSession, session_id,
            where=[TextSession.status == WAITING],
            values={"status": CANCELLED, "ended_at": now, "end_reason": "cancelled"},
        )
        return resolve(db, TextSession, session_id, rows, CANCELLED)

    @staticmethod
    def _end_active(db: Session, session_id: int, now, end_reason: str) -> TransitionResult:
        rows = conditional_update(
            db, TextSession, session_id,
            where=[TextSession.status == ACTIVE],
            values={"status": ENDED, "ended_at": now, "end_reason": end_reason},
        )
        return resolve(db, TextSession, session_id, rows, ENDED)

    @staticmethod
    def _finish_active(db: Session, session: TextSession, now, reported_duration, manual: bool, end_reason: str) -> EndOutcome:
        connected = seconds_between(session.activated_at, now)
        plan = plan_charge(
            reported_duration, connected, session.auto_deductions_processed,
            manual_end=manual, was_connected=session.activated_at is not None,
        )
        charge = DeductionLedger.apply_charge(db, session, plan, now)
        result = TextSessionService._end_active(db, session.id, now, end_reason)
        logger.info("Text session %s ended (%s): charged %d unit(s), shortfall %d",
                    session.id, end_reason, charge.units_charged, charge.shortfall)
        return EndOutcome(
            units_charged=charge.units_charged,
            final_status=result.status,
            already_done=not result.applied,
            shortfall=charge.shortfall,
            amount=charge.amount,
            duration_seconds=plan.billable_seconds,
        )

    # ─── Notifications ───────────────────────────────────────────────

    @staticmethod
    def _expiry_notices(session: TextSession) -> List[dict]:
        body = "The doctor did not respond in time. No units were charged."
        return [
            notice(session.patient_id, "Session Expired", body, session_id=session.id),
            notice(session.doctor_id, "Session Expired", "A text session expired before you replied.",
                   session_id=session.id),
        ]

    @staticmethod
    def _ended_notices(session: TextSession, outcome: EndOutcome) -> List[dict]:
        queued = [
            notice(session.patient_id, "Session Ended",
                   f"Your text session has ended. {outcome.units_charged} unit(s) used.",
                   session_id=session.id, units=outcome.units_charged),
        ]
        if outcome.units_charged:
            queued.append(notice(session.doctor_id, "Payment Received",
                                 f"You earned {outcome.amount} for a text session.",
                                 session_id=session.id, amount=str(outcome.amount)))
        return queued
