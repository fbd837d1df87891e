"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (SQLite uses the driver default)
- Test database support
- Table definitions for ledger, plans, usage, budget and conversations
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float,
    Index, ForeignKey, UniqueConstraint, CheckConstraint, text, false,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from companion.core.config import settings


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


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the store to aware UTC.

    SQLite hands back naive values for timezone-aware columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


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
        # Deferred side effects and image polling touch the store from worker threads
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
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

    Commits on clean exit, rolls back and re-raises on error.
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
    Delete every row from every table, children first.

    WARNING: This is destructive! Only use in tests.
    """
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


# Account balances: one row per user, mutated only by the ledger
account_balances = Table(
    'account_balances',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('balance', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('balance >= 0', name='ck_account_balances_non_negative'),
)

# Append-only token transactions
ledger_transactions = Table(
    'ledger_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('kind', String(32), nullable=False),
    Column('description', Text, nullable=True),
    Column('meta', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_ledger_transactions_user_created', 'user_id', 'created_at'),
)

# Plan assignment per user (absent row means free)
plan_assignments = Table(
    'plan_assignments',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('plan_type', String(32), nullable=False, server_default='free'),
    Column('status', String(32), nullable=False, server_default='active'),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plan_assignments_plan_type', 'plan_type'),
)

# Named tunables per plan type; NULL or non-positive value means unlimited
plan_restrictions = Table(
    'plan_restrictions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_type', String(32), nullable=False),
    Column('restriction_key', String(100), nullable=False),
    Column('value', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('plan_type', 'restriction_key', name='uq_plan_restrictions_plan_key'),
)

# Per-user privilege overrides
admin_privileges = Table(
    'admin_privileges',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('is_admin', Boolean, nullable=False, server_default=false()),
    Column('bypass_message_limits', Boolean, nullable=False, server_default=false()),
    Column('bypass_image_limits', Boolean, nullable=False, server_default=false()),
    Column('bypass_token_limits', Boolean, nullable=False, server_default=false()),
    Column('unlimited_tokens', Boolean, nullable=False, server_default=false()),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Rolling usage windows; expired rows are left in place
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=False),
    Column('usage_type', String(32), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('reset_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_usage_counters_user_type_reset', 'user_id', 'usage_type', 'reset_at'),
)

# External spend, aggregated monthly by the budget guard
cost_logs = Table(
    'cost_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(200), nullable=False),
    Column('tokens_used', Integer, nullable=False, server_default='0'),
    Column('api_cost', Float, nullable=False, server_default='0'),
    Column('user_id', String(255), nullable=True),
    Column('meta', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_cost_logs_created_at', 'created_at'),
)

characters = Table(
    'characters',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(255), nullable=False),
    Column('name', String(200), nullable=False),
    Column('persona_prompt', Text, nullable=True),
    Column('memory_level', Integer, nullable=False, server_default='1'),
    Column('is_archived', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_characters_user_archived', 'user_id', 'is_archived'),
)

# At most one active session per (user, character)
conversation_sessions = Table(
    'conversation_sessions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(255), nullable=False),
    Column('character_id', String(64), nullable=False),
    Column('is_archived', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index(
        'uq_conversation_sessions_active_pair',
        'user_id',
        'character_id',
        unique=True,
        postgresql_where=text('is_archived = false'),
        sqlite_where=text('is_archived = 0'),
    ),
)

messages = Table(
    'messages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('session_id', String(64), ForeignKey('conversation_sessions.id'), nullable=False),
    Column('user_id', String(255), nullable=False),
    Column('role', String(16), nullable=False),
    Column('content', Text, nullable=False),
    Column('is_image', Boolean, nullable=False, server_default=false()),
    Column('image_url', Text, nullable=True),
    Column('meta', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_messages_session_created', 'session_id', 'created_at'),
)

# Operator-tunable JSON settings (budget_limits, integrations)
system_settings = Table(
    'system_settings',
    metadata,
    Column('key', String(128), primary_key=True),
    Column('value', JSON, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Processed payment webhook events (idempotency)
payment_events = Table(
    'payment_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('user_id', String(255), nullable=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

