"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, sites, overrides, billing and admin stats
"""
from typing import Optional, Generator
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
    JSON,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
    false,
    true,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from backend.core.config import settings


logger = logging.getLogger("limitter.database")

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
        # Request handlers run in a threadpool; share connections across threads
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
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

    Everything executed inside the block is one database transaction:
    committed on normal exit, rolled back if any exception escapes.

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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Use this with `Depends(get_db)` in route functions to ensure the session
    lifecycle works with both sync and async endpoints under FastAPI.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_name(session: Session) -> str:
    """Name of the dialect the session is bound to ("postgresql", "sqlite", ...)."""
    return session.get_bind().dialect.name


def insert_if_absent(session: Session, table: Table, values: dict, index_elements: list) -> bool:
    """
    INSERT a row unless one with the same key already exists.

    Uses ON CONFLICT DO NOTHING on PostgreSQL and SQLite; other dialects
    fall back to a savepoint around a plain INSERT.

    Returns:
        True if a row was inserted
    """
    dialect = dialect_name(session)
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        dialect_insert = None

    if dialect_insert is not None:
        stmt = dialect_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        return bool(session.execute(stmt).rowcount)

    try:
        with session.begin_nested():
            session.execute(table.insert().values(**values))
        return True
    except IntegrityError:
        return False


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
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# User profiles: identity + entitlement snapshot
users = Table(
    'users',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', String(200), nullable=True),
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('is_admin', Boolean, nullable=False, server_default=false()),
    Column('total_spent_cents', Integer, nullable=False, server_default='0'),
    Column('total_time_saved', Integer, nullable=False, server_default='0'),
    Column('total_sites_blocked', Integer, nullable=False, server_default='0'),
    Column('subscription_status', String(30), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('total_spent_cents >= 0', name='ck_users_total_spent_non_negative'),
    Index('idx_users_plan', 'plan'),
)

# Subscriptions: 1:1 with users, kept in sync with users.plan
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('plan', String(20), nullable=False),
    Column('status', String(30), nullable=False, server_default='active'),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('stripe_session_id', String(200), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Tracked sites, keyed "{user_id}_{normalized_domain}"
tracked_sites = Table(
    'tracked_sites',
    metadata,
    Column('id', String(400), primary_key=True),
    Column('user_id', String(128), nullable=False),
    Column('url', String(255), nullable=False),
    Column('name', String(255), nullable=True),
    Column('time_limit', Integer, nullable=False),
    Column('time_remaining', Integer, nullable=False),
    Column('time_spent_today', Integer, nullable=False, server_default='0'),
    Column('last_reset_date', String(10), nullable=False),
    Column('is_blocked', Boolean, nullable=False, server_default=false()),
    Column('blocked_until', DateTime(timezone=True), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('total_time_spent', Integer, nullable=False, server_default='0'),
    Column('access_count', Integer, nullable=False, server_default='0'),
    Column('daily_usage', JSON, nullable=True),
    Column('override_active', Boolean, nullable=False, server_default=false()),
    Column('override_initiated_by', String(20), nullable=True),
    Column('override_initiated_at', DateTime(timezone=True), nullable=True),
    Column('last_accessed', DateTime(timezone=True), nullable=True),
    Column('admin_modified', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('time_remaining >= 0', name='ck_tracked_sites_time_remaining'),
    Index('idx_tracked_sites_user_id', 'user_id'),
    Index('idx_tracked_sites_user_active', 'user_id', 'is_active'),
)

# Override balance: one row per user, mutated only by relative updates
override_balances = Table(
    'override_balances',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('overrides', Integer, nullable=False, server_default='0'),
    Column('total_overrides_purchased', Integer, nullable=False, server_default='0'),
    Column('overrides_used_total', Integer, nullable=False, server_default='0'),
    Column('total_spent_cents', Integer, nullable=False, server_default='0'),
    Column('last_grant_quantity', Integer, nullable=True),
    Column('last_grant_reason', String(200), nullable=True),
    Column('last_grant_at', DateTime(timezone=True), nullable=True),
    Column('last_reset_reason', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('overrides >= 0', name='ck_override_balances_non_negative'),
)

# Monthly override usage buckets ("YYYY-MM")
override_monthly_stats = Table(
    'override_monthly_stats',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('month', String(7), nullable=False),
    Column('overrides_used', Integer, nullable=False, server_default='0'),
    Column('free_overrides_used', Integer, nullable=False, server_default='0'),
    Column('purchased_overrides_used', Integer, nullable=False, server_default='0'),
    Column('paid_overrides_used', Integer, nullable=False, server_default='0'),
    Column('total_spent_cents', Integer, nullable=False, server_default='0'),
    Column('free_limit', Integer, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'month', name='uq_override_monthly_stats_user_month'),
)

# Transactions: append-only billable events
transactions = Table(
    'transactions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(128), nullable=False),
    Column('type', String(40), nullable=False),
    Column('amount_cents', Integer, nullable=False),
    Column('description', String(300), nullable=True),
    Column('status', String(20), nullable=False),
    Column('payment_method', String(40), nullable=False),
    Column('payment_reference', String(200), nullable=True, unique=True),
    Column('metadata_json', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('amount_cents >= 0', name='ck_transactions_amount_non_negative'),
    Index('idx_transactions_user_id', 'user_id'),
    Index('idx_transactions_created_at', 'created_at'),
)

# Global admin stats: one integer counter per key
admin_stats = Table(
    'admin_stats',
    metadata,
    Column('stat_key', String(120), primary_key=True),
    Column('value', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Admin audit log
admin_audit_log = Table(
    'admin_audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(200), nullable=False),  # actor_id of AdminActor or "system_job"
    Column('auth_mechanism', String(40), nullable=True),
    Column('action', String(100), nullable=False),  # "grant_overrides", "change_plan", ...
    Column('target_user_id', String(128), nullable=True),
    Column('target_resource', String(400), nullable=True),  # site id, stat key, ...
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_admin_audit_log_action', 'action'),
    Index('idx_admin_audit_log_user_id', 'target_user_id'),
    Index('idx_admin_audit_log_created_at', 'created_at'),
)

# User-visible activity feed
user_activities = Table(
    'user_activities',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('activity_type', String(60), nullable=False),
    Column('message', String(500), nullable=False),
    Column('payload_json', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_user_activities_user_id', 'user_id'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Scheduled job runs (daily reset, stats reconcile)
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_job_runs_job_name', 'job_name'),
)
