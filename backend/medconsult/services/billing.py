"""
Deduction Ledger — turns connected time into billing units and doctor payouts.

One unit is charged per BILLING_UNIT_MINUTES of connected time, plus exactly
one extra unit when a connected session is ended manually. A client-reported
duration can lower the count but never bill a window the server's own clock
has not completed, so units never exceed connected//unit + 1. `plan_charge` is
the only place that arithmetic lives; the billing-tick and end-session paths
of both session types call it.

`apply_charge` must run inside the caller's transaction, after the session
row has been locked, so the balance debit, the wallet credit, the ledger
entry and the processed-tick counter commit together with the transition.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.errors import InsufficientBalance
from medconsult.models.session import TextSession, CallSession
from medconsult.models.subscription import SubscriptionBalance
from medconsult.models.wallet import DoctorWallet, WalletLedgerEntry

logger = logging.getLogger(__name__)

settings = get_settings()


@dataclass(frozen=True)
class ChargePlan:
    """Units owed for one billing event."""
    billable_seconds: int
    elapsed_minutes: int
    auto_ticks: int
    new_ticks: int
    manual_tick: int

    @property
    def total(self) -> int:
        return self.new_ticks + self.manual_tick


@dataclass
class ChargeResult:
    units_requested: int = 0
    units_charged: int = 0
    shortfall: int = 0
    amount: Decimal = Decimal("0.00")
    currency: Optional[str] = None
    ledger_entry_id: Optional[int] = None

    @property
    def short(self) -> bool:
        return self.shortfall > 0


def plan_charge(
    reported_seconds: Optional[int],
    connected_seconds: int,
    already_processed: int,
    manual_end: bool = False,
    was_connected: bool = False,
) -> ChargePlan:
    """Compute the units owed for a tick or an end event.

    Args:
        reported_seconds: Elapsed time claimed by the client (None: use server time).
        connected_seconds: Server-side seconds since the session became connected.
        already_processed: Auto ticks already charged for this session.
        manual_end: True when a participant is ending the session.
        was_connected: True when the session ever became connected/active.

    Returns:
        ChargePlan. Replaying with the same already_processed yields new_ticks=0.
    """
    connected_seconds = max(0, int(connected_seconds))
    if reported_seconds is None:
        billable = connected_seconds
    else:
        # Clients may report generously, never beyond the server's view plus slack
        billable = min(max(0, int(reported_seconds)),
                       connected_seconds + settings.CLIENT_DURATION_SLACK_SECONDS)

    elapsed_minutes = billable // 60
    # A window is billed only once the server has seen it complete
    auto_ticks = min(elapsed_minutes // settings.BILLING_UNIT_MINUTES,
                     connected_seconds // (settings.BILLING_UNIT_MINUTES * 60))
    new_ticks = max(0, auto_ticks - (already_processed or 0))
    manual_tick = 1 if (manual_end and was_connected) else 0

    return ChargePlan(
        billable_seconds=billable,
        elapsed_minutes=elapsed_minutes,
        auto_ticks=auto_ticks,
        new_ticks=new_ticks,
        manual_tick=manual_tick,
    )


class DeductionLedger:
    """Balance debits, wallet credits and ledger entries for session billing."""

    @staticmethod
    def payout_rate(channel: str, currency: str) -> Decimal:
        """Per-unit doctor payout for a channel (text | voice | video)."""
        rates = settings.PAYOUT_RATES.get(currency) or settings.PAYOUT_RATES[settings.PAYOUT_CURRENCY]
        return Decimal(rates.get(channel, rates["text"]))

    @staticmethod
    def channel_for(session) -> str:
        if isinstance(session, TextSession):
            return "text"
        return session.call_type

    @staticmethod
    def lock_balance(db: Session, user_id: str) -> Optional[SubscriptionBalance]:
        return (
            db.query(SubscriptionBalance)
            .filter(SubscriptionBalance.user_id == user_id)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )

    @staticmethod
    def lock_or_create_balance(db: Session, user_id: str) -> SubscriptionBalance:
        balance = DeductionLedger.lock_balance(db, user_id)
        if balance is not None:
            return balance
        try:
            with db.begin_nested():
                db.add(SubscriptionBalance(user_id=user_id))
        except IntegrityError:
            logger.info("Balance row for %s created concurrently", user_id)
        return DeductionLedger.lock_balance(db, user_id)

    @staticmethod
    def lock_or_create_wallet(db: Session, doctor_id: str) -> DoctorWallet:
        query = (
            db.query(DoctorWallet)
            .filter(DoctorWallet.doctor_id == doctor_id)
            .populate_existing()
            .with_for_update()
        )
        wallet = query.one_or_none()
        if wallet is not None:
            return wallet
        try:
            with db.begin_nested():
                db.add(DoctorWallet(
                    doctor_id=doctor_id,
                    balance=Decimal("0.00"),
                    total_earned=Decimal("0.00"),
                    currency=settings.PAYOUT_CURRENCY,
                ))
        except IntegrityError:
            logger.info("Wallet for doctor %s created concurrently", doctor_id)
        return query.one()

    @staticmethod
    def units_for_start(balance: Optional[SubscriptionBalance], channel: str, now: datetime) -> int:
        """Units a new session may draw on.

        Raises:
            InsufficientBalance: If the subscription is missing, inactive or
                expired, or has no units left for the channel.
        """
        if balance is None or not balance.is_usable(now):
            logger.info("Start refused for %s session: subscription inactive or expired (user %s)",
                        channel, balance.user_id if balance is not None else "unknown")
            raise InsufficientBalance(f"No active subscription for {channel} sessions", available=0, required=1)
        remaining = balance.remaining(channel)
        if remaining <= 0:
            raise InsufficientBalance(f"No {channel} sessions remaining", available=remaining, required=1)
        return remaining

    @staticmethod
    def debit(balance: Optional[SubscriptionBalance], channel: str, units: int) -> None:
        """Decrement remaining units.

        Raises:
            InsufficientBalance: If fewer than `units` remain.
        """
        available = balance.remaining(channel) if balance is not None else 0
        if available < units:
            raise InsufficientBalance(
                f"{channel} balance {available} is below the {units} unit(s) owed",
                available=available,
                required=units,
            )
        field = SubscriptionBalance.UNIT_FIELDS[channel]
        setattr(balance, field, available - units)

    @staticmethod
    def apply_charge(db: Session, session, plan: ChargePlan, now: datetime) -> ChargeResult:
        """Charge `plan` against the patient and pay the doctor, atomically.

        The session row must already be locked by the caller. The processed
        tick counter advances even when the balance falls short, so a window
        is settled exactly once; the shortfall is reported, never raised.
        """
        channel = DeductionLedger.channel_for(session)
        kind = "text" if isinstance(session, TextSession) else "call"
        processed_before = session.auto_deductions_processed or 0
        processed_after = max(processed_before, plan.auto_ticks)
        session.auto_deductions_processed = processed_after

        result = ChargeResult(units_requested=plan.total)
        if plan.total == 0:
            return result

        balance = DeductionLedger.lock_balance(db, session.patient_id)
        try:
            DeductionLedger.debit(balance, channel, plan.total)
        except InsufficientBalance as exc:
            result.shortfall = exc.required - exc.available
            logger.warning(
                "Billing shortfall on %s session %s: owed %d, available %d, nothing charged",
                kind, session.id, exc.required, exc.available,
            )
            return result

        wallet = DeductionLedger.lock_or_create_wallet(db, session.doctor_id)
        amount = DeductionLedger.payout_rate(channel, wallet.currency) * plan.total
        wallet.balance = (wallet.balance or Decimal("0.00")) + amount
        wallet.total_earned = (wallet.total_earned or Decimal("0.00")) + amount

        if plan.new_ticks and plan.manual_tick:
            source = "auto+manual"
        elif plan.manual_tick:
            source = "manual"
        else:
            source = "auto"

        key = f"{kind}:{session.id}:ticks:{processed_before}-{processed_after}"
        if plan.manual_tick:
            key += ":manual"

        entry = WalletLedgerEntry(
            doctor_id=session.doctor_id,
            amount=amount,
            currency=wallet.currency,
            units=plan.total,
            session_type=channel,
            session_id=session.id,
            source=source,
            idempotency_key=key,
            description=f"{plan.total} {channel} unit(s) with patient {session.patient_id}",
            created_at=now,
        )
        db.add(entry)
        session.sessions_used = (session.sessions_used or 0) + plan.total
        db.flush()

        logger.info(
            "Charged %d unit(s) on %s session %s (auto %d, manual %d), doctor %s credited %s %s",
            plan.total, kind, session.id, plan.new_ticks, plan.manual_tick,
            session.doctor_id, amount, wallet.currency,
        )

        result.units_charged = plan.total
        result.amount = amount
        result.currency = wallet.currency
        result.ledger_entry_id = entry.id
        return result

    @staticmethod
    def heal_connected_at(call: CallSession) -> bool:
        """Back-fill a missing connected_at from answered_at on a locked call row.

        This repairs a promotion that never ran. Returns True when a repair
        was made.
        """
        if call.connected_at is not None or call.answered_at is None:
            return False
        logger.warning(
            "Recovered inconsistent call %s: answered at %s but never connected, "
            "using answered_at as connected_at (status was %s)",
            call.id, call.answered_at.isoformat(), call.status,
        )
        call.connected_at = call.answered_at
        call.is_connected = True
        if call.status == CallSession.STATUS_ANSWERED:
            call.status = CallSession.STATUS_ACTIVE
        return True
