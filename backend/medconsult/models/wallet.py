"""
Wallet Models — Doctor earnings and the append-only payout ledger.
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, String, Integer, DateTime, Numeric

from medconsult.database import Base


class DoctorWallet(Base):
    __tablename__ = "doctor_wallets"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    doctor_id = Column(String(64), nullable=False, unique=True, index=True)
    balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_earned = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="USD")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WalletLedgerEntry(Base):
    """Immutable credit to a doctor's wallet, traceable to the session that earned it."""
    __tablename__ = "wallet_ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    units = Column(Integer, nullable=False)

    session_type = Column(String(8), nullable=False)   # text | voice | video
    session_id = Column(Integer, nullable=False, index=True)
    source = Column(String(24), nullable=False)        # auto | manual | auto+manual

    # e.g. "call:12:ticks:0-2:manual", one entry per billed window
    idempotency_key = Column(String(128), nullable=False, unique=True)
    description = Column(String(256))

    created_at = Column(DateTime, nullable=False)
