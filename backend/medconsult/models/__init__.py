from medconsult.models.session import TextSession, CallSession
from medconsult.models.subscription import Plan, SubscriptionBalance
from medconsult.models.wallet import DoctorWallet, WalletLedgerEntry
from medconsult.models.payment import PaymentEvent

__all__ = [
    "TextSession", "CallSession",
    "Plan", "SubscriptionBalance",
    "DoctorWallet", "WalletLedgerEntry",
    "PaymentEvent",
]
