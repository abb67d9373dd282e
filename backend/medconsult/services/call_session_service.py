"""
Call Session Service — lifecycle and billing for voice/video calls.

    connecting → answered   doctor answers (schedules delayed promotion)
    connecting → declined   doctor declines
    answered   → active     connected signal, delayed promotion, or sweep
    connecting → active     connected signal that raced ahead of the answer
    *          → ended      participant hangs up, time or balance runs out

connected_at is written only by UPDATEs guarded with `connected_at IS NULL`,
so it is set at most once and billing always measures from the same instant.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.errors import InconsistentState, InvalidTransition
from medconsult.models.session import CallSession
from medconsult.services.billing import DeductionLedger, plan_charge
from medconsult.services.notification_service import NotificationService, notice
from medconsult.services.outcomes import EndOutcome, StatusSnapshot, TickOutcome
from medconsult.services.participants import DOCTOR, authorize
from medconsult.store import (
    Outcome, TransitionResult, conditional_update, lock_row, resolve, transaction,
)
from medconsult.utils.clock import Clock, has_elapsed, seconds_between

logger = logging.getLogger(__name__)

settings = get_settings()

CONNECTING = CallSession.STATUS_CONNECTING
ANSWERED = CallSession.STATUS_ANSWERED
ACTIVE = CallSession.STATUS_ACTIVE
ENDED = CallSession.STATUS_ENDED
DECLINED = CallSession.STATUS_DECLINED

OPEN_STATUSES = (CONNECTING, ANSWERED, ACTIVE)


def _unit_seconds() -> int:
    return settings.BILLING_UNIT_MINUTES * 60


def _billable_start(call: CallSession):
    """connected_at, healed from answered_at when the promotion never ran.

    Raises:
        InconsistentState: If the call is active with neither timestamp.
    """
    DeductionLedger.heal_connected_at(call)
    if call.connected_at is None and call.status == ACTIVE:
        raise InconsistentState(f"Call {call.id} is active but was never answered or connected")
    return call.connected_at


class CallSessionService:
    """State machine for CallSession rows."""

    @staticmethod
    def start(db: Session, patient_id: str, doctor_id: str, call_type: str, clock: Clock) -> Tuple[CallSession, bool]:
        """Open a call, or return the pair's open call of the same type.

        Raises:
            InvalidTransition: Unknown call type or self-call.
            InsufficientBalance: Inactive or expired subscription, or no voice/video units left.
        """
        if call_type not in CallSession.CALL_TYPES:
            raise InvalidTransition(f"Unsupported call type '{call_type}'")
        if patient_id == doctor_id:
            raise InvalidTransition("Patient and doctor must be different users")

        now = clock.now()
        created = False
        with transaction(db):
            balance = DeductionLedger.lock_balance(db, patient_id)
            call = (
                db.query(CallSession)
                .filter(
                    CallSession.patient_id == patient_id,
                    CallSession.doctor_id == doctor_id,
                    CallSession.call_type == call_type,
                    CallSession.status.in_(OPEN_STATUSES),
                )
                .order_by(CallSession.id.desc())
                .first()
            )
            if call is None:
                remaining = DeductionLedger.units_for_start(balance, call_type, now)
                call = CallSession(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    call_type=call_type,
                    status=CONNECTING,
                    started_at=now,
                    is_connected=False,
                    call_duration=0,
                    sessions_used=0,
                    auto_deductions_processed=0,
                    sessions_remaining_before_start=remaining,
                )
                db.add(call)
                db.flush()
                created = True

        if created:
            logger.info("%s call %s started: patient=%s doctor=%s", call_type, call.id, patient_id, doctor_id)
            NotificationService.dispatch(
                doctor_id, "Incoming Call", f"Incoming {call_type} call from a patient.",
                {"session_id": call.id, "session_type": call_type},
            )
        return call, created

    # ─── Signalling ──────────────────────────────────────────────────

    @staticmethod
    def answer_call(db: Session, session_id: int, caller_id: str, clock: Clock, scheduler=None) -> TransitionResult:
        """Doctor answers. Schedules the grace-period promotion when the answer is new.

        Raises:
            InvalidTransition: If the call was already declined or ended.
        """
        now = clock.now()
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id, role=DOCTOR)
            rows = conditional_update(
                db, CallSession, session_id,
                where=[CallSession.status == CONNECTING],
                values={"status": ANSWERED, "answered_at": now},
            )
            result = resolve(db, CallSession, session_id, rows, ANSWERED)
            if not result.applied and call.status not in (ANSWERED, ACTIVE):
                raise InvalidTransition(f"Call {session_id} is {call.status} and can no longer be answered")
            if not result.applied:
                result = TransitionResult(Outcome.LOST_RACE, call.status)

        if result.applied:
            logger.info("Call %s answered by doctor %s", session_id, caller_id)
            if scheduler is not None:
                scheduler.schedule(settings.CALL_GRACE_PERIOD_SECONDS, promote_call_task, session_id)
        return result

    @staticmethod
    def decline_call(db: Session, session_id: int, caller_id: str, clock: Clock) -> TransitionResult:
        """Doctor declines a ringing call.

        Raises:
            InvalidTransition: If the call was already answered or ended.
        """
        now = clock.now()
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id, role=DOCTOR)
            rows = conditional_update(
                db, CallSession, session_id,
                where=[CallSession.status == CONNECTING],
                values={"status": DECLINED, "ended_at": now, "end_reason": "declined"},
            )
            result = resolve(db, CallSession, session_id, rows, DECLINED)
            if result.outcome is Outcome.PRECONDITION_FAILED:
                raise InvalidTransition(f"Call {session_id} is {call.status} and can no longer be declined")

        if result.applied:
            logger.info("Call %s declined by doctor %s", session_id, caller_id)
            NotificationService.dispatch(call.patient_id, "Call Declined",
                                         "The doctor is unavailable right now.", {"session_id": session_id})
        return result

    @staticmethod
    def mark_call_connected(db: Session, session_id: int, caller_id: str, clock: Clock) -> TransitionResult:
        """Client reports media connected. The first signal wins; later ones are no-ops.

        Raises:
            InvalidTransition: If the call was declined or has ended.
        """
        now = clock.now()
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id)
            rows = conditional_update(
                db, CallSession, session_id,
                where=[
                    CallSession.status.in_([CONNECTING, ANSWERED]),
                    CallSession.connected_at.is_(None),
                ],
                values={
                    "status": ACTIVE,
                    "connected_at": now,
                    "is_connected": True,
                    "answered_at": func.coalesce(CallSession.answered_at, now),
                },
            )
            result = resolve(db, CallSession, session_id, rows, ACTIVE)
            if result.outcome is Outcome.PRECONDITION_FAILED:
                raise InvalidTransition(f"Call {session_id} is {call.status}; cannot mark connected")
            patient_id, doctor_id = call.patient_id, call.doctor_id

        if result.applied:
            logger.info("Call %s connected (signal from %s)", session_id, caller_id)
            CallSessionService._started_notices(session_id, patient_id, doctor_id)
        return result

    @staticmethod
    def promote_to_connected(db: Session, session_id: int, clock: Clock) -> TransitionResult:
        """answered → active once the grace period has passed without a connected signal.

        Shared by the delayed task and the sweep; a call that already moved on
        makes this a silent no-op.
        """
        now = clock.now()
        cutoff = now - timedelta(seconds=settings.CALL_GRACE_PERIOD_SECONDS)
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            rows = conditional_update(
                db, CallSession, session_id,
                where=[
                    CallSession.status == ANSWERED,
                    CallSession.connected_at.is_(None),
                    CallSession.answered_at <= cutoff,
                ],
                values={"status": ACTIVE, "connected_at": now, "is_connected": True},
            )
            result = resolve(db, CallSession, session_id, rows, ACTIVE)
            patient_id, doctor_id = call.patient_id, call.doctor_id

        if result.applied:
            logger.info("Call %s promoted to connected after grace period", session_id)
            CallSessionService._started_notices(session_id, patient_id, doctor_id)
        else:
            logger.debug("Call %s promotion skipped, status %s", session_id, result.status)
        return result

    # ─── Billing ─────────────────────────────────────────────────────

    @staticmethod
    def billing_tick(db: Session, session_id: int, caller_id: str, clock: Clock,
                     reported_duration: Optional[int] = None) -> TickOutcome:
        """Client-driven deduction while the call is in progress."""
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id)
        return CallSessionService.process_tick(db, session_id, clock, reported_duration)

    @staticmethod
    def process_tick(db: Session, session_id: int, clock: Clock,
                     reported_duration: Optional[int] = None) -> TickOutcome:
        """Charge new units; end the call when its allotment or the balance runs out."""
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            if call.status not in (ANSWERED, ACTIVE):
                return TickOutcome(0, call.status, auto_deductions_processed=call.auto_deductions_processed)

            try:
                connected_at = _billable_start(call)
            except InconsistentState as e:
                logger.error("%s; tick skipped", e)
                return TickOutcome(0, call.status, auto_deductions_processed=call.auto_deductions_processed)
            if connected_at is None:
                # Never answered: nothing billable yet
                return TickOutcome(0, call.status, auto_deductions_processed=call.auto_deductions_processed)

            connected = seconds_between(connected_at, now)
            plan = plan_charge(reported_duration, connected, call.auto_deductions_processed)
            charge = DeductionLedger.apply_charge(db, call, plan, now)
            call.call_duration = max(call.call_duration or 0, connected)

            end_reason = None
            if charge.short:
                end_reason = "insufficient_balance"
            elif connected >= (call.sessions_remaining_before_start or 0) * _unit_seconds():
                end_reason = "time_exhausted"

            ended = False
            if end_reason:
                result = CallSessionService._end_open(db, session_id, now, end_reason)
                ended = result.applied
                if ended:
                    logger.info("Call %s ended automatically: %s", session_id, end_reason)
                    queued.append(notice(call.patient_id, "Call Ended",
                                         "Your call ended because your allotted time or balance ran out.",
                                         session_id=session_id, reason=end_reason))

            outcome = TickOutcome(
                units_charged=charge.units_charged,
                status=call.status,
                ended=ended,
                shortfall=charge.shortfall,
                auto_deductions_processed=call.auto_deductions_processed,
            )

        NotificationService.dispatch_all(queued)
        return outcome

    @staticmethod
    def end_call(
        db: Session,
        session_id: int,
        caller_id: str,
        clock: Clock,
        reported_duration: Optional[int] = None,
        was_connected: Optional[bool] = None,
    ) -> EndOutcome:
        """Hang up. Connected calls pay elapsed units plus one; unconnected calls pay nothing.

        Whether the call was connected is decided by the server's connected_at;
        the client's flag is only logged when it disagrees.
        """
        now = clock.now()
        queued: List[dict] = []
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id)

            if call.is_terminal:
                return EndOutcome(0, call.status, already_done=True, duration_seconds=call.call_duration or 0)

            try:
                connected_at = _billable_start(call)
            except InconsistentState as e:
                logger.error("%s; ending without billing", e)
                connected_at = None

            if was_connected is not None and was_connected != (connected_at is not None):
                logger.info("Call %s: client reports was_connected=%s, server connected_at=%s",
                            session_id, was_connected, connected_at)

            if connected_at is None:
                result = CallSessionService._end_open(db, session_id, now, "missed")
                logger.info("Call %s ended without connection, no billing", session_id)
                outcome = EndOutcome(0, result.status, already_done=not result.applied)
            else:
                connected = seconds_between(connected_at, now)
                plan = plan_charge(
                    reported_duration, connected, call.auto_deductions_processed,
                    manual_end=True, was_connected=True,
                )
                charge = DeductionLedger.apply_charge(db, call, plan, now)
                call.call_duration = connected
                result = CallSessionService._end_open(db, session_id, now, "manual_end")
                logger.info("Call %s ended after %ss: charged %d unit(s), shortfall %d",
                            session_id, connected, charge.units_charged, charge.shortfall)
                outcome = EndOutcome(
                    units_charged=charge.units_charged,
                    final_status=result.status,
                    already_done=not result.applied,
                    shortfall=charge.shortfall,
                    amount=charge.amount,
                    duration_seconds=connected,
                )
                if charge.units_charged:
                    queued.append(notice(call.doctor_id, "Payment Received",
                                         f"You earned {charge.amount} {charge.currency} for a {call.call_type} call.",
                                         session_id=session_id, amount=str(charge.amount)))

            queued.append(notice(call.patient_id, "Call Ended",
                                 f"Your call has ended. {outcome.units_charged} unit(s) used.",
                                 session_id=session_id, units=outcome.units_charged))

        NotificationService.dispatch_all(queued)
        return outcome

    @staticmethod
    def get_status(db: Session, session_id: int, caller_id: str, clock: Clock) -> StatusSnapshot:
        """Current status; a due promotion or billing tick is applied first."""
        now = clock.now()
        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            authorize(call, caller_id)
            promotion_due = (
                call.status == ANSWERED
                and call.connected_at is None
                and has_elapsed(call.answered_at, now, settings.CALL_GRACE_PERIOD_SECONDS)
            )
            active = call.status == ACTIVE

        if promotion_due:
            active = CallSessionService.promote_to_connected(db, session_id, clock).status == ACTIVE
        if active:
            CallSessionService.process_tick(db, session_id, clock)

        with transaction(db):
            call = lock_row(db, CallSession, session_id)
            return CallSessionService.snapshot(call, now)

    @staticmethod
    def snapshot(call: CallSession, now) -> StatusSnapshot:
        unit = _unit_seconds()
        allotted = call.sessions_remaining_before_start or 0
        if call.status == ACTIVE and call.connected_at is not None:
            elapsed = seconds_between(call.connected_at, now)
            remaining_time = max(0, allotted * unit - elapsed)
            remaining_units = max(0, allotted - elapsed // unit)
        elif call.is_terminal:
            remaining_time = 0
            remaining_units = max(0, allotted - (call.sessions_used or 0))
        else:
            remaining_time = allotted * unit
            remaining_units = allotted

        return StatusSnapshot(
            session_id=call.id,
            status=call.status,
            remaining_time=remaining_time,
            remaining_units=remaining_units,
            sessions_used=call.sessions_used or 0,
        )

    # ─── Primitives ──────────────────────────────────────────────────

    @staticmethod
    def _end_open(db: Session, session_id: int, now, end_reason: str) -> TransitionResult:
        rows = conditional_update(
            db, CallSession, session_id,
            where=[CallSession.status.in_(OPEN_STATUSES)],
            values={"status": ENDED, "ended_at": now, "end_reason": end_reason},
        )
        return resolve(db, CallSession, session_id, rows, ENDED)

    @staticmethod
    def _started_notices(session_id: int, patient_id: str, doctor_id: str) -> None:
        NotificationService.dispatch_all([
            notice(patient_id, "Session Started", "Your call is now connected.", session_id=session_id),
            notice(doctor_id, "Session Started", "Your call is now connected.", session_id=session_id),
        ])


def promote_call_task(session_id: int) -> None:
    """Entry point for the delayed promotion; opens its own DB session."""
    from medconsult.database import SessionLocal
    from medconsult.utils.clock import SystemClock

    db = SessionLocal()
    try:
        CallSessionService.promote_to_connected(db, session_id, SystemClock())
    finally:
        db.close()
