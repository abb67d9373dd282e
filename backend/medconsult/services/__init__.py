from medconsult.services.text_session_service import TextSessionService
from medconsult.services.call_session_service import CallSessionService
from medconsult.services.billing import DeductionLedger, plan_charge
from medconsult.services.payment_service import PaymentService, parse_webhook
from medconsult.services.notification_service import NotificationService

__all__ = [
    "TextSessionService", "CallSessionService",
    "DeductionLedger", "plan_charge",
    "PaymentService", "parse_webhook",
    "NotificationService",
]
