"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from medconsult.config import get_settings

settings = get_settings()

_connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    _connect_args = {"check_same_thread": False}  # Required for SQLite
    _db_path = settings.DATABASE_URL.replace("sqlite:///", "")
    if _db_path and _db_path != ":memory:":
        os.makedirs(os.path.dirname(_db_path), exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=settings.DEBUG,
)


def enable_sqlite_savepoints(target_engine):
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs nest inside the real transaction."""

    @event.listens_for(target_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


if settings.DATABASE_URL.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from medconsult.models import session as _session_model          # noqa: F401
    from medconsult.models import subscription as _subscription_model  # noqa: F401
    from medconsult.models import wallet as _wallet_model            # noqa: F401
    from medconsult.models import payment as _payment_model          # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
