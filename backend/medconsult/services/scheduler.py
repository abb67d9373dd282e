"""
Auto-Expiry / Promotion Scheduler — time-driven transitions with nobody online.

Two mechanisms drive the same conditional-update primitives:

* The periodic sweep (`run_sweep`) is authoritative. Every time-based
  transition it finds due is applied, whether or not a delayed task was ever
  scheduled for it.
* The one-shot delayed task (`DelayedTaskScheduler`) only shortens latency
  for call promotion. If it is lost, fires twice, or fires after the call
  has moved on, the sweep and the WHERE clauses make that harmless. There is
  no cancellation channel.
"""
import asyncio
import logging
import threading
from datetime import timedelta
from typing import Callable, Dict

from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.models.session import CallSession, TextSession
from medconsult.services.call_session_service import CallSessionService
from medconsult.services.text_session_service import TextSessionService
from medconsult.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

settings = get_settings()


class DelayedTaskScheduler:
    """At-least-once, not-before-N-seconds execution on daemon timer threads."""

    def schedule(self, delay_seconds: float, fn: Callable, *args) -> bool:
        """Run fn(*args) after delay_seconds. Returns False if dispatch failed."""
        try:
            timer = threading.Timer(delay_seconds, self._run, args=(fn, args))
            timer.daemon = True
            timer.start()
        except RuntimeError as e:
            logger.warning("Could not dispatch %s%s, sweep will cover it: %s", fn.__name__, args, e)
            return False
        logger.debug("Scheduled %s%s in %ss", fn.__name__, args, delay_seconds)
        return True

    @staticmethod
    def _run(fn: Callable, args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Delayed task %s%s failed, sweep will retry", fn.__name__, args)


_scheduler = DelayedTaskScheduler()


def get_scheduler() -> DelayedTaskScheduler:
    """FastAPI dependency: the process-wide delayed task scheduler."""
    return _scheduler


def run_sweep(db: Session, clock: Clock) -> Dict[str, int]:
    """Apply every time-based transition that is already due.

    Each session is handled in its own transaction; a failure on one is
    logged and counted, and the sweep moves on.
    """
    now = clock.now()
    report = {
        "expired": 0,
        "promoted": 0,
        "text_units_charged": 0,
        "call_units_charged": 0,
        "ended": 0,
        "errors": 0,
    }

    response_cutoff = now - timedelta(seconds=settings.UNSTARTED_SESSION_TIMEOUT_SECONDS)
    expirable = [
        row.id for row in db.query(TextSession.id).filter(
            TextSession.status == TextSession.STATUS_WAITING_FOR_DOCTOR,
            (
                (TextSession.doctor_response_deadline.isnot(None) & (TextSession.doctor_response_deadline <= now))
                | (TextSession.doctor_response_deadline.is_(None) & (TextSession.started_at <= response_cutoff))
            ),
        )
    ]

    grace_cutoff = now - timedelta(seconds=settings.CALL_GRACE_PERIOD_SECONDS)
    promotable = [
        row.id for row in db.query(CallSession.id).filter(
            CallSession.status == CallSession.STATUS_ANSWERED,
            CallSession.connected_at.is_(None),
            CallSession.answered_at <= grace_cutoff,
        )
    ]
    db.rollback()  # release the read snapshot before per-row transactions

    for session_id in expirable:
        try:
            if TextSessionService.expire_if_due(db, session_id, clock).applied:
                report["expired"] += 1
        except Exception:
            report["errors"] += 1
            logger.exception("Sweep failed to expire text session %s", session_id)

    for session_id in promotable:
        try:
            if CallSessionService.promote_to_connected(db, session_id, clock).applied:
                report["promoted"] += 1
        except Exception:
            report["errors"] += 1
            logger.exception("Sweep failed to promote call %s", session_id)

    active_texts = [row.id for row in db.query(TextSession.id).filter(TextSession.status == TextSession.STATUS_ACTIVE)]
    active_calls = [row.id for row in db.query(CallSession.id).filter(CallSession.status == CallSession.STATUS_ACTIVE)]
    db.rollback()

    for session_id in active_texts:
        try:
            tick = TextSessionService.process_tick(db, session_id, clock)
            report["text_units_charged"] += tick.units_charged
            report["ended"] += int(tick.ended)
        except Exception:
            report["errors"] += 1
            logger.exception("Sweep failed to tick text session %s", session_id)

    for session_id in active_calls:
        try:
            tick = CallSessionService.process_tick(db, session_id, clock)
            report["call_units_charged"] += tick.units_charged
            report["ended"] += int(tick.ended)
        except Exception:
            report["errors"] += 1
            logger.exception("Sweep failed to tick call %s", session_id)

    if any(report.values()):
        logger.info("Sweep complete: %s", report)
    return report


def _sweep_once() -> Dict[str, int]:
    from medconsult.database import SessionLocal

    db = SessionLocal()
    try:
        return run_sweep(db, SystemClock())
    finally:
        db.close()


async def sweep_loop(interval_seconds: int) -> None:
    """Background loop started by the application lifespan."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(_sweep_once)
        except Exception:
            logger.exception("Sweep run failed")
