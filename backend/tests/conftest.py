"""
Pytest configuration for the MedConsult session engine.
Every test gets a fresh in-memory database, a frozen clock and a scheduler
that records delayed tasks instead of running them.
"""

import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

# Keep the app from starting its background sweep or writing logs into the repo
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="medconsult_logs_"))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medconsult.database import enable_sqlite_savepoints, get_db, init_db
from medconsult.models.subscription import Plan, SubscriptionBalance
from medconsult.services.notification_service import NotificationService
from medconsult.services.scheduler import get_scheduler
from medconsult.utils.clock import Clock, get_clock
from medconsult.utils.rate_limiter import reset_rate_limits

PATIENT = "patient-1"
DOCTOR = "doctor-1"
OTHER = "stranger-9"


class FrozenClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 9, 0, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.current += timedelta(seconds=seconds, minutes=minutes)
        return self.current


class RecordingScheduler:
    """Captures schedule() calls; tests fire them explicitly."""

    def __init__(self):
        self.tasks = []

    def schedule(self, delay_seconds, fn, *args):
        self.tasks.append((delay_seconds, fn, args))
        return True


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(eng)
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    # Fixture objects stay readable without touching the shared connection
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def notifications():
    """Collect every notification dispatched during the test."""
    sent = []
    NotificationService.set_transport(lambda user_id, title, body, data: sent.append((user_id, title, data)))
    yield sent
    NotificationService.set_transport(None)


def make_balance(db, user_id=PATIENT, text=3, voice=3, video=3):
    balance = SubscriptionBalance(
        user_id=user_id,
        text_sessions_remaining=text,
        voice_calls_remaining=voice,
        video_calls_remaining=video,
        total_text_sessions=text,
        total_voice_calls=voice,
        total_video_calls=video,
        is_active=True,
    )
    db.add(balance)
    db.commit()
    return balance


def reload_balance(db, user_id=PATIENT):
    db.expire_all()
    return db.query(SubscriptionBalance).filter(SubscriptionBalance.user_id == user_id).one()


@pytest.fixture
def balance(db):
    return make_balance(db)


@pytest.fixture
def plan(db):
    p = Plan(
        name="Basic",
        price=Decimal("10.00"),
        currency="USD",
        text_sessions=5,
        voice_calls=2,
        video_calls=1,
        duration_days=30,
    )
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def client(session_factory, clock, scheduler):
    from medconsult.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    reset_rate_limits()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def as_user(user_id):
    return {"user-id": user_id}
