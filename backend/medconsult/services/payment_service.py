"""
Payment Reconciliation — converge on one outcome per gateway reference.

Gateway notifications can arrive late, twice, or out of order. Every
notification is folded into the PaymentEvent row for its reference under a
row lock: status only moves forward (pending < failed < success) and the
plan's entitlements are granted exactly once, guarded by `applied_at`, in the
same transaction that records the success.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.errors import MalformedExternalEvent, NotFound
from medconsult.models.payment import PaymentEvent
from medconsult.models.subscription import Plan
from medconsult.services.billing import DeductionLedger
from medconsult.services.notification_service import NotificationService
from medconsult.store import transaction
from medconsult.utils.clock import Clock

logger = logging.getLogger(__name__)

settings = get_settings()

_STATUS_ALIASES = {
    "success": PaymentEvent.STATUS_SUCCESS,
    "successful": PaymentEvent.STATUS_SUCCESS,
    "completed": PaymentEvent.STATUS_SUCCESS,
    "failed": PaymentEvent.STATUS_FAILED,
    "cancelled": PaymentEvent.STATUS_FAILED,
    "canceled": PaymentEvent.STATUS_FAILED,
    "pending": PaymentEvent.STATUS_PENDING,
}


@dataclass
class PaymentNotification:
    """A gateway notification, normalised."""
    reference: str
    status: str
    event_type: str
    user_id: Optional[str] = None
    plan_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    supported: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


def _parse_meta(meta: Any) -> Dict[str, Any]:
    if meta is None or meta == "":
        return {}
    if isinstance(meta, dict):
        return meta
    if isinstance(meta, str):
        try:
            parsed = json.loads(meta)
        except json.JSONDecodeError:
            raise MalformedExternalEvent("Payment metadata is not valid JSON")
        if isinstance(parsed, dict):
            return parsed
    raise MalformedExternalEvent("Payment metadata must be an object")


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise MalformedExternalEvent(f"Invalid payment amount '{value}'")


def parse_webhook(payload: Dict[str, Any]) -> PaymentNotification:
    """Normalise a webhook body.

    Unsupported event types come back with supported=False so the route can
    acknowledge them without acting.

    Raises:
        MalformedExternalEvent: Missing reference, user or unreadable metadata.
    """
    try:
        if not isinstance(payload, dict):
            raise MalformedExternalEvent("Webhook body must be a JSON object")

        event_type = str(payload.get("event_type") or "").strip().lower()
        if not event_type:
            raise MalformedExternalEvent("Missing event_type")

        reference = payload.get("tx_ref") or payload.get("charge_id") or payload.get("reference")
        if not reference:
            raise MalformedExternalEvent("Missing payment reference")
        reference = str(reference)

        if event_type not in settings.PAYMENT_EVENT_TYPES:
            logger.info("Ignoring unsupported payment event type %s for %s", event_type, reference)
            return PaymentNotification(reference=reference, status=PaymentEvent.STATUS_PENDING,
                                       event_type=event_type, supported=False, raw=payload)

        meta = _parse_meta(payload.get("meta"))
        user_id = meta.get("user_id")
        if not user_id:
            raise MalformedExternalEvent("Payment metadata has no user_id")

        plan_id = meta.get("plan_id")
        if plan_id is not None:
            try:
                plan_id = int(plan_id)
            except (TypeError, ValueError):
                raise MalformedExternalEvent(f"Invalid plan_id '{plan_id}'")

        raw_status = str(payload.get("status") or "").strip().lower()
        status = _STATUS_ALIASES.get(raw_status, PaymentEvent.STATUS_PENDING)

        return PaymentNotification(
            reference=reference,
            status=status,
            event_type=event_type,
            user_id=str(user_id),
            plan_id=plan_id,
            amount=_parse_amount(payload.get("amount")),
            currency=str(payload["currency"]).upper() if payload.get("currency") else None,
            raw=payload,
        )
    except MalformedExternalEvent as e:
        logger.error("Rejected payment webhook: %s | payload=%s", e.message, payload)
        raise


class PaymentService:
    """Initiation and reconciliation of plan purchases."""

    @staticmethod
    def initiate_payment(db: Session, user_id: str, plan_id: int, clock: Clock) -> PaymentEvent:
        """Create a pending event bound to (user, plan) and return it.

        Raises:
            NotFound: If the plan does not exist.
        """
        now = clock.now()
        with transaction(db):
            plan = db.query(Plan).filter(Plan.id == plan_id).first()
            if plan is None:
                raise NotFound(f"Plan {plan_id} not found")
            event = PaymentEvent(
                reference=f"{settings.PAYMENT_REFERENCE_PREFIX}-{uuid.uuid4().hex[:16].upper()}",
                user_id=user_id,
                plan_id=plan.id,
                amount=plan.price,
                currency=plan.currency,
                status=PaymentEvent.STATUS_PENDING,
                event_type="initiated",
                raw_payload={},
                created_at=now,
                updated_at=now,
            )
            db.add(event)
            db.flush()

        logger.info("Payment %s initiated: user=%s plan=%s amount=%s %s",
                    event.reference, user_id, plan_id, event.amount, event.currency)
        return event

    @staticmethod
    def get_payment(db: Session, reference: str) -> PaymentEvent:
        event = db.query(PaymentEvent).filter(PaymentEvent.reference == reference).first()
        if event is None:
            raise NotFound(f"Payment {reference} not found")
        return event

    @staticmethod
    def reconcile_payment(db: Session, notification: PaymentNotification, clock: Clock) -> Dict[str, Any]:
        """Fold one notification into its PaymentEvent.

        Returns:
            {"applied", "already_applied", "status", "reference"}

        Raises:
            MalformedExternalEvent: A success whose plan cannot be resolved.
        """
        now = clock.now()
        reference = notification.reference
        applied = False
        with transaction(db):
            event = PaymentService._lock_or_create(db, notification, now)
            if notification.user_id and notification.user_id != event.user_id:
                logger.warning("Payment %s: webhook user %s does not match initiating user %s",
                               reference, notification.user_id, event.user_id)

            if PaymentEvent.STATUS_RANK[notification.status] > PaymentEvent.STATUS_RANK[event.status]:
                logger.info("Payment %s: %s -> %s", reference, event.status, notification.status)
                event.status = notification.status
            elif notification.status != event.status:
                logger.info("Payment %s: ignoring %s after %s", reference, notification.status, event.status)
            event.event_type = notification.event_type
            event.raw_payload = notification.raw
            event.updated_at = now

            already_applied = event.applied_at is not None
            if event.status == PaymentEvent.STATUS_SUCCESS and not already_applied:
                plan = PaymentService._resolve_plan(db, event, notification)
                PaymentService._grant(db, event.user_id, plan, now)
                event.plan_id = plan.id
                event.applied_at = now
                applied = True

            result = {
                "applied": applied,
                "already_applied": already_applied,
                "status": event.status,
                "reference": reference,
            }
            user_id = event.user_id

        if applied:
            logger.info("Payment %s applied: entitlements granted to %s", reference, user_id)
            NotificationService.dispatch(user_id, "Plan Activated",
                                         "Your payment was received and your plan is active.",
                                         {"reference": reference})
        elif already_applied:
            logger.info("Payment %s already applied, replay acknowledged", reference)
        return result

    # ─── Helpers (caller holds the transaction) ──────────────────────

    @staticmethod
    def _lock(db: Session, reference: str) -> Optional[PaymentEvent]:
        return (
            db.query(PaymentEvent)
            .filter(PaymentEvent.reference == reference)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )

    @staticmethod
    def _lock_or_create(db: Session, notification: PaymentNotification, now: datetime) -> PaymentEvent:
        event = PaymentService._lock(db, notification.reference)
        if event is not None:
            return event
        try:
            with db.begin_nested():
                db.add(PaymentEvent(
                    reference=notification.reference,
                    user_id=notification.user_id,
                    plan_id=notification.plan_id,
                    amount=notification.amount,
                    currency=notification.currency,
                    status=PaymentEvent.STATUS_PENDING,
                    event_type=notification.event_type,
                    raw_payload=notification.raw,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            logger.info("Payment %s recorded concurrently", notification.reference)
        return PaymentService._lock(db, notification.reference)

    @staticmethod
    def _resolve_plan(db: Session, event: PaymentEvent, notification: PaymentNotification) -> Plan:
        plan_id = event.plan_id or notification.plan_id
        if plan_id is not None:
            plan = db.query(Plan).filter(Plan.id == plan_id).first()
            if plan is not None:
                return plan

        amount = event.amount if event.amount is not None else notification.amount
        currency = event.currency or notification.currency
        if amount is not None and currency:
            plan = (
                db.query(Plan)
                .filter(Plan.price == amount, Plan.currency == currency)
                .order_by(Plan.id)
                .first()
            )
            if plan is not None:
                return plan

        logger.error("Payment %s: no plan for plan_id=%s amount=%s %s",
                     event.reference, plan_id, amount, currency)
        raise MalformedExternalEvent(f"Cannot resolve a plan for payment {event.reference}")

    @staticmethod
    def _grant(db: Session, user_id: str, plan: Plan, now: datetime) -> None:
        balance = DeductionLedger.lock_or_create_balance(db, user_id)
        balance.text_sessions_remaining = (balance.text_sessions_remaining or 0) + plan.text_sessions
        balance.voice_calls_remaining = (balance.voice_calls_remaining or 0) + plan.voice_calls
        balance.video_calls_remaining = (balance.video_calls_remaining or 0) + plan.video_calls
        balance.total_text_sessions = (balance.total_text_sessions or 0) + plan.text_sessions
        balance.total_voice_calls = (balance.total_voice_calls or 0) + plan.voice_calls
        balance.total_video_calls = (balance.total_video_calls or 0) + plan.video_calls
        balance.plan_id = plan.id
        balance.is_active = True
        balance.activated_at = now
        base = balance.expires_at if balance.expires_at and balance.expires_at > now else now
        balance.expires_at = base + timedelta(days=plan.duration_days or 0)
