"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite via TEST_DATABASE_URL)
- Table definitions for users, subscriptions, payments and audit trails
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, ForeignKey, UniqueConstraint, select
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from personachat.core.config import settings


logger = logging.getLogger("personachat")

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

    if url.startswith("sqlite"):
        # SQLite connections are shared across the TestClient worker threads
        engine_kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **engine_kwargs)
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

    Everything executed inside the block commits together on exit or rolls
    back together on exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


users = Table(
    'users',
    metadata,
    Column('uid', String(128), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('photo_url', Text, nullable=True),
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('subscription_status', String(32), nullable=False, server_default='inactive'),
    Column('features', JSON, nullable=True),
    Column('message_count', Integer, nullable=False, server_default='0'),
    Column('daily_message_count', Integer, nullable=False, server_default='0'),
    Column('last_message_date', DateTime(timezone=True), nullable=True),
    Column('pending_subscription_id', String(64), nullable=True),
    Column('preferences', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('last_login_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=True),
)

subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('uid', String(128), ForeignKey('users.uid', ondelete='CASCADE'), nullable=False),
    Column('plan', String(20), nullable=False),
    Column('status', String(32), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=True),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('next_billing_date', DateTime(timezone=True), nullable=True),
    Column('amount', Float, nullable=False),
    Column('currency', String(8), nullable=False),
    Column('payment_method', String(32), nullable=False),
    Column('auto_renew', Boolean, nullable=False, server_default='1'),
    Column('payment_provider_id', String(255), nullable=True),
    Column('activation_token', String(128), nullable=True),
    Column('activated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Index('idx_subscriptions_uid_status', 'uid', 'status'),
    Index('idx_subscriptions_status_end', 'status', 'end_date'),
)

payments = Table(
    'payments',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('uid', String(128), ForeignKey('users.uid', ondelete='CASCADE'), nullable=False),
    Column('subscription_id', String(64), ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
    Column('amount', Float, nullable=False),
    Column('currency', String(8), nullable=False),
    Column('payment_method', String(32), nullable=False),
    Column('status', String(32), nullable=False, server_default='success'),
    Column('transaction_id', String(255), nullable=False),
    Column('payment_provider_id', String(255), nullable=True),
    Column('plan', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('transaction_id', name='uq_payments_transaction_id'),
    Index('idx_payments_uid', 'uid'),
)

user_activities = Table(
    'user_activities',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('uid', String(128), ForeignKey('users.uid', ondelete='CASCADE'), nullable=False),
    Column('action', String(64), nullable=False),
    Column('details', JSON, nullable=True),
    Column('ip_address', String(64), nullable=True),
    Column('user_agent', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index('idx_user_activities_uid_created', 'uid', 'created_at'),
)

webhook_logs = Table(
    'webhook_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('uid', String(128), nullable=True),
    Column('event', String(128), nullable=False),
    Column('provider', String(32), nullable=False),
    Column('transaction_id', String(255), nullable=True),
    Column('amount', Float, nullable=True),
    Column('currency', String(8), nullable=True),
    Column('plan', String(20), nullable=True),
    Column('processed', Boolean, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
)

webhook_errors = Table(
    'webhook_errors',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(32), nullable=True),
    Column('error', Text, nullable=False),
    Column('path', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
)
