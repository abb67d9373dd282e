"""
Payment Routes — plan purchase initiation and gateway webhook reconciliation.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from medconsult.config import get_settings
from medconsult.database import get_db
from medconsult.errors import InvalidSignature, MalformedExternalEvent, UnauthorizedAccess
from medconsult.schemas.schemas import (
    PaymentInitRequest, PaymentInitResponse, PaymentStatusResponse, WebhookAckResponse,
)
from medconsult.services.payment_service import PaymentService, parse_webhook
from medconsult.utils.clock import Clock, get_clock
from medconsult.utils.hashing import verify_signature
from medconsult.utils.rate_limiter import rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/initiate", response_model=PaymentInitResponse)
def initiate_payment(
    payload: PaymentInitRequest,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    _throttle: bool = Depends(rate_limit(requests=5, window=60)),
):
    """Create a pending payment the gateway will later confirm by reference."""
    event = PaymentService.initiate_payment(db, user_id, payload.plan_id, clock)
    return PaymentInitResponse(
        reference=event.reference,
        amount=event.amount,
        currency=event.currency,
        status=event.status,
    )


@router.post("/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="Signature"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Gateway notification. Duplicates and out-of-order deliveries are safe."""
    body = await request.body()
    secret = get_settings().PAYMENT_WEBHOOK_SECRET
    if secret and not verify_signature(body, signature, secret):
        logger.error("Payment webhook rejected: bad or missing signature")
        raise InvalidSignature("Webhook signature verification failed")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        logger.error("Payment webhook rejected: body is not JSON | body=%r", body[:512])
        raise MalformedExternalEvent("Webhook body is not valid JSON")

    notification = parse_webhook(payload)
    if not notification.supported:
        return WebhookAckResponse(ignored=True, reference=notification.reference)

    result = PaymentService.reconcile_payment(db, notification, clock)
    return WebhookAckResponse(
        reference=result["reference"],
        status=result["status"],
        applied=result["applied"],
        already_applied=result["already_applied"],
    )


@router.get("/{reference}", response_model=PaymentStatusResponse)
def payment_status(
    reference: str,
    user_id: str = Header(..., alias="user-id"),
    db: Session = Depends(get_db),
):
    event = PaymentService.get_payment(db, reference)
    if event.user_id != user_id:
        raise UnauthorizedAccess(f"Payment {reference} belongs to another user")
    return PaymentStatusResponse(
        reference=event.reference,
        user_id=event.user_id,
        plan_id=event.plan_id,
        amount=event.amount,
        currency=event.currency,
        status=event.status,
        applied=event.applied_at is not None,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )
