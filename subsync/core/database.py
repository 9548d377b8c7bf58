"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for billing state
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from subsync.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite") and ":memory:" in url:
        # Single shared connection so every session sees the same database
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    elif url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# ============================================================================
# Table definitions
# ============================================================================

# One billing record per internal user. Written only by the billing store.
user_billing_records = Table(
    'user_billing_records',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('external_customer_id', String(100), nullable=True),
    Column('external_subscription_id', String(100), nullable=True),
    Column('tier', String(32), nullable=False),
    Column('status', String(32), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('trial_started_at', DateTime(timezone=True), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('limits', JSON, nullable=False),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('external_customer_id', name='uq_user_billing_records_customer'),
    Index('idx_user_billing_records_customer', 'external_customer_id'),
    Index('idx_user_billing_records_subscription', 'external_subscription_id'),
    Index('idx_user_billing_records_status_trial', 'status', 'trial_ends_at'),
)

# Webhook delivery ledger (duplicate delivery detection)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(32), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
