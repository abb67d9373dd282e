"""
Payment Event Model — Gateway notifications keyed by their external reference.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON, Numeric

from medconsult.database import Base


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    STATUS_PENDING = "pending"
    STATUS_FAILED = "failed"
    STATUS_SUCCESS = "success"

    # Status only moves forward; a late "pending" never overwrites "success"
    STATUS_RANK = {STATUS_PENDING: 0, STATUS_FAILED: 1, STATUS_SUCCESS: 2}

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    reference = Column(String(128), nullable=False, unique=True, index=True)

    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Integer, nullable=True)

    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    event_type = Column(String(64))

    raw_payload = Column(JSON, default=dict)

    applied_at = Column(DateTime, nullable=True)  # entitlements granted; set once
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
