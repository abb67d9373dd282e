"""
Subscription Models — Plans and per-user remaining billing units.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Numeric

from medconsult.database import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    name = Column(String(64), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    text_sessions = Column(Integer, nullable=False, default=0)
    voice_calls = Column(Integer, nullable=False, default=0)
    video_calls = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)

    created_at = Column(DateTime, default=datetime.utcnow)


class SubscriptionBalance(Base):
    """One row per user. Only mutated under a row lock."""
    __tablename__ = "subscription_balances"

    # Maps a billable channel to its remaining-units column
    UNIT_FIELDS = {
        "text": "text_sessions_remaining",
        "voice": "voice_calls_remaining",
        "video": "video_calls_remaining",
    }

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    plan_id = Column(Integer, nullable=True)

    text_sessions_remaining = Column(Integer, nullable=False, default=0)
    voice_calls_remaining = Column(Integer, nullable=False, default=0)
    video_calls_remaining = Column(Integer, nullable=False, default=0)

    total_text_sessions = Column(Integer, nullable=False, default=0)
    total_voice_calls = Column(Integer, nullable=False, default=0)
    total_video_calls = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    def remaining(self, channel: str) -> int:
        return getattr(self, self.UNIT_FIELDS[channel]) or 0

    def is_usable(self, now: datetime) -> bool:
        """Active and not past expiry. A missing expiry never lapses."""
        return bool(self.is_active) and (self.expires_at is None or self.expires_at > now)
