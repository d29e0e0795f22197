#!/usr/bin/env python3
"""
eerosync - Database Layer
SQLAlchemy ORM models and database management for the pending action
queue and the last-known-good account snapshot.
"""
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from typing import Optional

from sqlalchemy import (
    Column,
    Index,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from eerosync.config import STATE_DIR


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_DB_PATH = os.path.join(STATE_DIR, "eerosync.db")
DB_PATH = os.environ.get("EERO_DB_PATH", DEFAULT_DB_PATH)


# ---------------------------------------------------------------------------
# SQLAlchemy Base & Engine
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


def _build_engine(db_path=None):
    path = db_path or DB_PATH
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    return create_engine(f"sqlite:///{path}", echo=False)


# One engine and session factory per database file
_engines = {}
_session_factories = {}
_engines_lock = threading.Lock()


def _resolve_path(db_path=None):
    return os.path.abspath(db_path or DB_PATH)


def _get_engine(db_path=None):
    path = _resolve_path(db_path)
    with _engines_lock:
        engine = _engines.get(path)
        if engine is None:
            engine = _build_engine(path)
            Base.metadata.create_all(engine)
            _engines[path] = engine
            _session_factories[path] = sessionmaker(bind=engine)
        return engine


def _get_session_factory(db_path=None):
    _get_engine(db_path)
    return _session_factories[_resolve_path(db_path)]


# ---------------------------------------------------------------------------
# ORM Models
# ---------------------------------------------------------------------------

class QueuedActionRecord(Base):
    __tablename__ = "queued_actions"

    id = Column(String, primary_key=True)
    account_key = Column(String, nullable=False)
    status = Column(String, nullable=False)        # "pending", "replayed", "failed"
    queued_at = Column(String, nullable=False)
    last_error = Column(String, nullable=True)
    action_json = Column(Text, nullable=False)     # serialized Action

    __table_args__ = (
        Index("idx_queued_actions_account_time", "account_key", "queued_at"),
    )


class SnapshotBlob(Base):
    __tablename__ = "snapshot_blobs"

    account_key = Column(String, primary_key=True)
    saved_at = Column(String, default=lambda: datetime.now(timezone.utc).isoformat())
    payload_json = Column(Text, nullable=False)


# ---------------------------------------------------------------------------
# Database Initialization
# ---------------------------------------------------------------------------

def init_db(db_path=None):
    """Create all tables. Safe to call multiple times (uses CREATE IF NOT EXISTS)."""
    engine = _get_engine(db_path)
    Base.metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Session Management
# ---------------------------------------------------------------------------

@contextmanager
def get_db_session(db_path=None):
    """Yield a SQLAlchemy session that auto-commits on success and rolls back on error."""
    factory = _get_session_factory(db_path)
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Queued Actions
# ---------------------------------------------------------------------------

def upsert_queued_action(
    action_id: str,
    account_key: str,
    status: str,
    queued_at: str,
    action_json: str,
    last_error: Optional[str] = None,
    db_path: Optional[str] = None,
):
    """Insert a queued action, replacing any existing row with the same id."""
    with get_db_session(db_path) as session:
        record = session.get(QueuedActionRecord, action_id)
        if record is None:
            record = QueuedActionRecord(id=action_id)
            session.add(record)
        record.account_key = account_key
        record.status = status
        record.queued_at = queued_at
        record.action_json = action_json
        record.last_error = last_error


def get_queued_actions(account_key: str, status: Optional[str] = None, db_path: Optional[str] = None):
    """Return queued actions for an account in the order they were queued."""
    with get_db_session(db_path) as session:
        query = session.query(QueuedActionRecord).filter(QueuedActionRecord.account_key == account_key)
        if status is not None:
            query = query.filter(QueuedActionRecord.status == status)
        query = query.order_by(QueuedActionRecord.queued_at.asc())
        results = query.all()
        session.expunge_all()
        return results


def update_queued_action_status(
    action_id: str,
    status: str,
    last_error: Optional[str] = None,
    db_path: Optional[str] = None,
):
    """Set the replay status of a queued action. Returns True if the action was found."""
    with get_db_session(db_path) as session:
        record = session.get(QueuedActionRecord, action_id)
        if record is None:
            return False
        record.status = status
        record.last_error = last_error
        return True


def delete_queued_action(action_id: str, db_path: Optional[str] = None):
    """Remove a queued action. Returns True if a row was deleted."""
    with get_db_session(db_path) as session:
        deleted = session.query(QueuedActionRecord).filter(QueuedActionRecord.id == action_id).delete()
        return deleted > 0


def delete_queued_actions_by_status(account_key: str, status: str, db_path: Optional[str] = None):
    """Remove every queued action of an account in the given status. Returns the row count."""
    with get_db_session(db_path) as session:
        return (
            session.query(QueuedActionRecord)
            .filter(QueuedActionRecord.account_key == account_key)
            .filter(QueuedActionRecord.status == status)
            .delete()
        )


# ---------------------------------------------------------------------------
# Snapshot Blobs
# ---------------------------------------------------------------------------

def save_snapshot_blob(account_key: str, payload_json: str, db_path: Optional[str] = None):
    """Store the serialized snapshot for an account, replacing the previous one."""
    with get_db_session(db_path) as session:
        blob = session.get(SnapshotBlob, account_key)
        if blob is None:
            blob = SnapshotBlob(account_key=account_key)
            session.add(blob)
        blob.payload_json = payload_json
        blob.saved_at = datetime.now(timezone.utc).isoformat()


def load_snapshot_blob(account_key: str, db_path: Optional[str] = None):
    """Return ``(saved_at, payload_json)`` for an account, or None."""
    with get_db_session(db_path) as session:
        blob = session.get(SnapshotBlob, account_key)
        if blob is None:
            return None
        return blob.saved_at, blob.payload_json


def delete_snapshot_blob(account_key: str, db_path: Optional[str] = None):
    with get_db_session(db_path) as session:
        return session.query(SnapshotBlob).filter(SnapshotBlob.account_key == account_key).delete() > 0
