"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for tenants, entitlements and the billing ledger
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    false,
    select,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from strategyplan.core.config import settings

logger = logging.getLogger(__name__)

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
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
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
        logger.warning("Database connection check failed: %s", e)
        return False


# Tenants (organizations)
tenants = Table(
    'tenants',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('is_legacy', Boolean, nullable=False, default=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Users (thin: provisioning + seat counts only)
users = Table(
    'users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('tenant_id', String(36), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('password_hash', String(255), nullable=True),
    Column('first_name', String(100), nullable=False, server_default=''),
    Column('last_name', String(100), nullable=False, server_default=''),
    Column('role', String(50), nullable=False, server_default='member'),  # administrator, member, ...
    Column('must_change_password', Boolean, nullable=False, default=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Strategies (thin: limit counts only)
strategies = Table(
    'strategies',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('tenant_id', String(36), ForeignKey('tenants.id'), nullable=False),
    Column('title', Text, nullable=False),
    Column('status', String(50), nullable=False, server_default='Active'),  # Active, Completed, Archived
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_strategies_tenant_created', 'tenant_id', 'created_at'),
)

# Projects (thin: limit counts only)
projects = Table(
    'projects',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('tenant_id', String(36), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('strategy_id', String(36), ForeignKey('strategies.id'), nullable=True),
    Column('title', Text, nullable=False),
    Column('is_archived', Boolean, nullable=False, default=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Entitlements: one row per tenant, owned by the billing reconciler
entitlements = Table(
    'entitlements',
    metadata,
    Column('tenant_id', String(36), ForeignKey('tenants.id'), primary_key=True),
    Column('provider_customer_ref', String(100), nullable=True, unique=True),
    Column('provider_subscription_ref', String(100), nullable=True, unique=True),
    Column('provider_price_ref', String(100), nullable=True),
    Column('plan', String(20), nullable=False, server_default='starter'),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('billing_interval', String(20), nullable=False, server_default='monthly'),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False, server_default=false()),
    Column('pending_downgrade_plan', String(20), nullable=True),
    Column('extra_seats', Integer, nullable=False, default=0, server_default='0'),
    Column('pending_extra_seats', Integer, nullable=True),
    Column('payment_failed_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_entitlements_status', 'status'),
)

# Processed provider events (webhook idempotency ledger)
processed_events = Table(
    'processed_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=True),  # SHA256 of the raw body
    Column('handled', Boolean, nullable=False, default=False, server_default=false()),
    Column('error', Text, nullable=True),
    Index('idx_processed_events_processed_at', 'processed_at'),
)

# Billing history (append-only audit trail)
billing_history = Table(
    'billing_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(36), ForeignKey('tenants.id'), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('description', Text, nullable=False),
    Column('plan_before', String(20), nullable=True),
    Column('plan_after', String(20), nullable=True),
    Column('seats_before', Integer, nullable=True),
    Column('seats_after', Integer, nullable=True),
    Column('amount_cents', Integer, nullable=True),
    Column('currency', String(10), nullable=True),
    Column('provider_invoice_ref', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_history_tenant_created', 'tenant_id', 'created_at'),
)

# Payment failures (grace-period bookkeeping for dunning)
payment_failures = Table(
    'payment_failures',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(36), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('provider_invoice_ref', String(100), nullable=True),
    Column('amount_cents', Integer, nullable=True),
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('failure_reason', Text, nullable=True),
    Column('grace_period_ends_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Scheduled job runs (reconcile sweep)
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
