"""
Tests for the periodic sweep and the delayed-task scheduler, including the
doctor-reply vs. sweep-expiry race.
"""

import threading

from medconsult.models.session import CallSession, TextSession
from medconsult.services.call_session_service import CallSessionService
from medconsult.services.scheduler import DelayedTaskScheduler, run_sweep
from medconsult.services.text_session_service import TextSessionService

from conftest import DOCTOR, PATIENT


def _text(db, clock):
    session, _ = TextSessionService.start(db, PATIENT, DOCTOR, None, clock)
    return session.id


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


class TestSweepExpiry:
    def test_expires_session_past_deadline(self, db, clock, balance):
        sid = _text(db, clock)
        TextSessionService.record_patient_message(db, sid, PATIENT, clock)

        clock.advance(seconds=299)
        assert run_sweep(db, clock)["expired"] == 0

        clock.advance(seconds=2)
        assert run_sweep(db, clock)["expired"] == 1
        assert _reload(db, TextSession, sid).status == TextSession.STATUS_EXPIRED

    def test_expires_never_messaged_session(self, db, clock, balance):
        sid = _text(db, clock)
        clock.advance(seconds=300)

        report = run_sweep(db, clock)

        assert report["expired"] == 1
        assert _reload(db, TextSession, sid).end_reason == "no_first_message"

    def test_sweep_is_idempotent(self, db, clock, balance):
        _text(db, clock)
        clock.advance(seconds=600)
        assert run_sweep(db, clock)["expired"] == 1
        assert run_sweep(db, clock)["expired"] == 0


class TestDoctorReplyVersusSweep:
    """Deadline passed one second ago: exactly one terminal outcome either way.

    Both serial orderings; true interleaving needs a database that honours FOR UPDATE.
    """

    def _waiting_past_deadline(self, db, clock):
        sid = _text(db, clock)
        TextSessionService.record_patient_message(db, sid, PATIENT, clock)
        clock.advance(seconds=301)
        return sid

    def test_sweep_first(self, db, clock, balance, notifications):
        sid = self._waiting_past_deadline(db, clock)

        assert run_sweep(db, clock)["expired"] == 1
        reply = TextSessionService.record_doctor_message(db, sid, DOCTOR, clock)

        assert not reply.accepted
        assert _reload(db, TextSession, sid).status == TextSession.STATUS_EXPIRED
        assert sum(1 for _, title, _ in notifications if title == "Session Expired") == 2

    def test_doctor_first(self, db, clock, balance, notifications):
        sid = self._waiting_past_deadline(db, clock)

        reply = TextSessionService.record_doctor_message(db, sid, DOCTOR, clock)
        report = run_sweep(db, clock)

        assert not reply.accepted
        assert report["expired"] == 0
        session = _reload(db, TextSession, sid)
        assert session.status == TextSession.STATUS_EXPIRED
        assert session.activated_at is None
        assert sum(1 for _, title, _ in notifications if title == "Session Expired") == 2


class TestSweepPromotion:
    def test_promotes_answered_call_after_grace(self, db, clock, balance, scheduler):
        call, _ = CallSessionService.start(db, PATIENT, DOCTOR, "voice", clock)
        CallSessionService.answer_call(db, call.id, DOCTOR, clock, scheduler=scheduler)

        clock.advance(seconds=3)
        assert run_sweep(db, clock)["promoted"] == 0

        clock.advance(seconds=3)
        assert run_sweep(db, clock)["promoted"] == 1
        connected_at = _reload(db, CallSession, call.id).connected_at

        # The delayed task firing late is a no-op
        clock.advance(seconds=10)
        assert not CallSessionService.promote_to_connected(db, call.id, clock).applied
        assert _reload(db, CallSession, call.id).connected_at == connected_at

    def test_errors_are_isolated(self, db, clock, balance, monkeypatch):
        call, _ = CallSessionService.start(db, PATIENT, DOCTOR, "voice", clock)
        CallSessionService.answer_call(db, call.id, DOCTOR, clock)
        sid = _text(db, clock)

        def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(CallSessionService, "promote_to_connected", staticmethod(broken))
        clock.advance(seconds=400)

        report = run_sweep(db, clock)

        assert report["errors"] == 1
        assert report["expired"] == 1
        assert _reload(db, TextSession, sid).status == TextSession.STATUS_EXPIRED


class TestSweepBilling:
    def test_ticks_active_sessions(self, db, clock, balance):
        sid = _text(db, clock)
        TextSessionService.record_doctor_message(db, sid, DOCTOR, clock)
        call, _ = CallSessionService.start(db, PATIENT, DOCTOR, "video", clock)
        CallSessionService.mark_call_connected(db, call.id, PATIENT, clock)

        clock.advance(minutes=10)
        report = run_sweep(db, clock)
        assert report["text_units_charged"] == 1
        assert report["call_units_charged"] == 1

        again = run_sweep(db, clock)
        assert again["text_units_charged"] == 0
        assert again["call_units_charged"] == 0

    def test_ends_sessions_over_allotment(self, db, clock, balance):
        sid = _text(db, clock)
        TextSessionService.record_doctor_message(db, sid, DOCTOR, clock)

        clock.advance(minutes=31)
        report = run_sweep(db, clock)

        assert report["ended"] == 1
        session = _reload(db, TextSession, sid)
        assert session.status == TextSession.STATUS_ENDED
        assert session.end_reason == "time_exhausted"
        assert session.sessions_used == 3


class TestDelayedTaskScheduler:
    def test_runs_task_after_delay(self):
        done = threading.Event()
        received = []

        def task(value):
            received.append(value)
            done.set()

        assert DelayedTaskScheduler().schedule(0.01, task, 42)
        assert done.wait(2)
        assert received == [42]

    def test_failing_task_is_logged_not_raised(self, caplog):
        done = threading.Event()

        def task():
            done.set()
            raise RuntimeError("boom")

        DelayedTaskScheduler._run(task, ())
        assert done.is_set()
        assert "failed, sweep will retry" in caplog.text
