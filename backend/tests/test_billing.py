"""
Tests for the Deduction Ledger: unit arithmetic, charging, payouts and replays.
"""

from decimal import Decimal

import pytest

from medconsult.models.session import TextSession, CallSession
from medconsult.models.wallet import DoctorWallet, WalletLedgerEntry
from medconsult.services.billing import DeductionLedger, plan_charge
from medconsult.store import lock_row, transaction

from conftest import DOCTOR, PATIENT, make_balance, reload_balance


# ---------------------------------------------------------------------------
# plan_charge
# ---------------------------------------------------------------------------

class TestPlanCharge:
    def test_manual_end_after_25_minutes_bills_three_units(self):
        plan = plan_charge(None, 25 * 60, 0, manual_end=True, was_connected=True)
        assert plan.auto_ticks == 2
        assert plan.new_ticks == 2
        assert plan.manual_tick == 1
        assert plan.total == 3

    def test_below_first_unit_bills_nothing(self):
        plan = plan_charge(None, 9 * 60 + 59, 0)
        assert plan.total == 0

    def test_exact_unit_boundary(self):
        assert plan_charge(None, 10 * 60, 0).total == 1
        assert plan_charge(None, 20 * 60, 0).total == 2

    def test_replay_with_same_counter_bills_nothing(self):
        assert plan_charge(None, 25 * 60, 2).new_ticks == 0

    def test_counter_ahead_never_goes_negative(self):
        plan = plan_charge(None, 5 * 60, 3)
        assert plan.new_ticks == 0
        assert plan.total == 0

    def test_client_report_is_clamped_to_server_time_plus_slack(self):
        plan = plan_charge(3600, 600, 0)
        assert plan.billable_seconds == 660
        assert plan.auto_ticks == 1

    def test_negative_client_report_is_zero(self):
        assert plan_charge(-50, 900, 0).billable_seconds == 0

    def test_client_may_report_less_than_server(self):
        assert plan_charge(300, 1500, 0).billable_seconds == 300

    def test_unconnected_manual_end_bills_nothing(self):
        plan = plan_charge(None, 0, 0, manual_end=True, was_connected=False)
        assert plan.total == 0

    def test_slack_never_bills_an_unfinished_window(self):
        plan = plan_charge(630, 580, 0)
        assert plan.billable_seconds == 630
        assert plan.auto_ticks == 0

    @pytest.mark.parametrize("connected,reported", [
        (0, None), (599, None), (580, 630), (600, 5000), (1190, 1250), (1499, 1559), (3540, 3600), (7200, None),
    ])
    def test_billed_units_bounded_by_connected_time(self, connected, reported):
        plan = plan_charge(reported, connected, 0, manual_end=True, was_connected=True)
        assert plan.total <= connected // 600 + 1


# ---------------------------------------------------------------------------
# apply_charge
# ---------------------------------------------------------------------------

def _active_text(db, clock):
    now = clock.now()
    session = TextSession(
        patient_id=PATIENT, doctor_id=DOCTOR, status=TextSession.STATUS_ACTIVE,
        started_at=now, activated_at=now, last_activity_at=now,
        sessions_remaining_before_start=3,
    )
    db.add(session)
    db.commit()
    return session.id


def _charge(db, model, session_id, plan, clock):
    with transaction(db):
        row = lock_row(db, model, session_id)
        return DeductionLedger.apply_charge(db, row, plan, clock.now())


class TestApplyCharge:
    def test_debits_balance_and_credits_doctor(self, db, clock):
        make_balance(db, text=3)
        sid = _active_text(db, clock)

        result = _charge(db, TextSession, sid, plan_charge(None, 25 * 60, 0, True, True), clock)

        assert result.units_charged == 3
        assert result.amount == Decimal("12.00")
        assert reload_balance(db).text_sessions_remaining == 0

        wallet = db.query(DoctorWallet).filter_by(doctor_id=DOCTOR).one()
        assert wallet.balance == Decimal("12.00")
        assert wallet.total_earned == Decimal("12.00")

        entry = db.query(WalletLedgerEntry).one()
        assert entry.idempotency_key == f"text:{sid}:ticks:0-2:manual"
        assert entry.units == 3
        assert entry.source == "auto+manual"

        session = db.get(TextSession, sid)
        assert session.sessions_used == 3
        assert session.auto_deductions_processed == 2

    def test_replayed_tick_charges_once(self, db, clock):
        make_balance(db, text=3)
        sid = _active_text(db, clock)

        first = _charge(db, TextSession, sid, plan_charge(None, 600, 0), clock)
        session = db.get(TextSession, sid)
        second = _charge(db, TextSession, sid, plan_charge(None, 600, session.auto_deductions_processed), clock)

        assert first.units_charged == 1
        assert second.units_charged == 0
        assert reload_balance(db).text_sessions_remaining == 2
        assert db.query(WalletLedgerEntry).count() == 1

    def test_shortfall_charges_nothing_but_advances_counter(self, db, clock):
        make_balance(db, text=1)
        sid = _active_text(db, clock)

        result = _charge(db, TextSession, sid, plan_charge(None, 30 * 60, 0), clock)

        assert result.units_charged == 0
        assert result.shortfall == 2
        assert result.short
        assert reload_balance(db).text_sessions_remaining == 1
        assert db.query(WalletLedgerEntry).count() == 0
        assert db.get(TextSession, sid).auto_deductions_processed == 3

    def test_call_payout_uses_call_type_rate(self, db, clock):
        make_balance(db, video=2)
        now = clock.now()
        call = CallSession(
            patient_id=PATIENT, doctor_id=DOCTOR, call_type="video", status=CallSession.STATUS_ACTIVE,
            started_at=now, answered_at=now, connected_at=now, is_connected=True,
            sessions_remaining_before_start=2,
        )
        db.add(call)
        db.commit()

        result = _charge(db, CallSession, call.id, plan_charge(None, 600, 0), clock)

        assert result.amount == Decimal("6.00")
        assert reload_balance(db).video_calls_remaining == 1
        assert db.query(WalletLedgerEntry).one().idempotency_key == f"call:{call.id}:ticks:0-1"

    def test_payout_rates(self):
        assert DeductionLedger.payout_rate("voice", "USD") == Decimal("5.00")
        assert DeductionLedger.payout_rate("text", "MWK") == Decimal("4000.00")
        # Unknown currency falls back to the configured payout currency
        assert DeductionLedger.payout_rate("video", "EUR") == Decimal("6.00")


class TestHealConnectedAt:
    def test_backfills_from_answered_at(self, clock):
        now = clock.now()
        call = CallSession(id=1, status=CallSession.STATUS_ANSWERED, answered_at=now, connected_at=None)
        assert DeductionLedger.heal_connected_at(call) is True
        assert call.connected_at == now
        assert call.is_connected is True
        assert call.status == CallSession.STATUS_ACTIVE

    def test_leaves_connected_calls_alone(self, clock):
        now = clock.now()
        call = CallSession(id=1, status=CallSession.STATUS_ACTIVE, answered_at=now, connected_at=now)
        assert DeductionLedger.heal_connected_at(call) is False
