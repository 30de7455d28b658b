"""
SQLAlchemy models for marksync's local state.

Three tables: a key/value store for small pieces of sync state, the
offline queue of pending write intents, and a bounded log of sync
outcomes.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Integer, String, Text, Boolean, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class StateEntry(Base):
    """
    One independently readable/writable piece of sync state.

    Known keys: ``last_sync``, ``last_counts``, ``gist_id``, ``device_id``.
    """
    __tablename__ = 'state'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<StateEntry(key='{self.key}')>"


class PendingOperation(Base):
    """
    A queued write intent, replayed in ``id`` order.

    Attributes:
        id: Autoincrement key; defines FIFO order
        kind: Operation kind (only "update" today)
        payload: Serialized envelope JSON
        payload_hash: Content hash of the envelope's nodes
        enqueued_at: When the operation was queued
        attempts: Failed replay attempts so far
        last_error: Message of the most recent replay failure
    """
    __tablename__ = 'pending_operations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default='update')
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self):
        return f"<PendingOperation(id={self.id}, kind='{self.kind}', hash='{self.payload_hash[:8]}')>"


class SyncRecord(Base):
    """Outcome of one sync cycle."""
    __tablename__ = 'sync_records'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # success, error
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    merged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    queued: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    folder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index('ix_sync_records_finished_at', 'finished_at'),
    )

    def __repr__(self):
        return f"<SyncRecord(id={self.id}, status='{self.status}')>"
