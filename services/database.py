"""
Database Service
================
SQLAlchemy models and session handling for the line pool and the local
subscription mirror.

Tables:
    - telephony_resources: the pool of assignable phone lines.
    - subscription_snapshots: one row per billing-provider subscription.
    - accounts: the account fields this service reads and writes.

SQLite stores DateTime columns without an offset, so every timestamp read back
goes through `as_utc` before it is compared with a timezone-aware value.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from config import settings
from utils.logger import log_info


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class TelephonyResource(Base):
    """One assignable phone line in the pool."""

    __tablename__ = "telephony_resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    provider_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    owner_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_available_for_claim: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    external_link_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    external_linked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class SubscriptionRecord(Base):
    """Local mirror of one billing-provider subscription."""

    __tablename__ = "subscription_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_subscription_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    price_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base):
    """The slice of the account record owned elsewhere that billing and claims touch."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    assistant_routing_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    subscription_status: Mapped[str] = mapped_column(String(16), default="inactive", nullable=False)


_engine = None
_session_factory = None


def init_engine(database_url: str = None):
    """
    Creates the engine and session factory and makes sure the tables exist.

    Args:
        database_url (str, optional): Overrides settings.DATABASE_URL (tests use a temp file).

    Returns:
        Engine: The configured SQLAlchemy engine.
    """
    global _engine, _session_factory

    url = database_url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing immediately
        connect_args = {"timeout": 30, "check_same_thread": False}

    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    Base.metadata.create_all(engine)

    if _engine is not None:
        _engine.dispose()
    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    log_info("Database ready", engine.url.render_as_string(hide_password=True))
    return engine


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def session_scope():
    """Yields a session that commits on success and rolls back on any error."""
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
