"""
Local state database for marksync.

Provides a small API over a single SQLite file holding the sync state,
the offline queue and the sync outcome log.
"""
import logging
from pathlib import Path
from typing import Any, Generator, List, Optional
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, select, delete, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from marksync.constants import MAX_SYNC_RECORDS
from marksync.models import Base, StateEntry, SyncRecord

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Database:
    """
    State store backed by SQLite.

    Each piece of state is independently readable and writable by key.
    """

    def __init__(self, path: Optional[str] = None, url: Optional[str] = None, echo: bool = False):
        """
        Initialize database connection.

        Args:
            path: SQLite file path
            url: Full SQLAlchemy URL (overrides path), e.g. ``sqlite://`` for memory

        Examples:
            Database(path="state.db")
            Database(url="sqlite://")
        """
        if url:
            self.url = url
            self.path = None
        else:
            if path is None:
                raise ValueError("Database needs a path or a url")
            self.path = Path(path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.url = f"sqlite:///{self.path}"

        self.engine = create_engine(
            self.url,
            connect_args={"check_same_thread": False},
            # In-memory databases must share one connection
            poolclass=StaticPool if self.path is None else NullPool,
            echo=echo
        )
        event.listen(self.engine, "connect", self._configure_sqlite)

        self.Session = sessionmaker(bind=self.engine, autoflush=False)
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _configure_sqlite(dbapi_conn, connection_record):
        """Configure SQLite for durable small writes."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = FULL")
        cursor.close()

    @contextmanager
    def session(self, expire_on_commit: bool = True) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Args:
            expire_on_commit: If False, objects stay usable after the session closes

        Yields:
            SQLAlchemy session with automatic commit/rollback
        """
        session = self.Session()
        session.expire_on_commit = expire_on_commit
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Key/value state

    def get_state(self, key: str, default: Any = None) -> Any:
        with self.session() as session:
            entry = session.get(StateEntry, key)
            if entry is None or entry.value is None:
                return default
            return entry.value

    def set_state(self, key: str, value: Any) -> None:
        with self.session() as session:
            entry = session.get(StateEntry, key)
            if entry is None:
                session.add(StateEntry(key=key, value=value))
            else:
                entry.value = value

    def delete_state(self, key: str) -> bool:
        with self.session() as session:
            result = session.execute(delete(StateEntry).where(StateEntry.key == key))
            return result.rowcount > 0

    # Sync outcome log

    def add_record(self, record: SyncRecord, keep: int = MAX_SYNC_RECORDS) -> None:
        """Store a sync outcome and prune the log to the newest ``keep`` rows."""
        with self.session() as session:
            session.add(record)
            session.flush()
            stale = session.scalars(
                select(SyncRecord.id).order_by(SyncRecord.id.desc()).offset(keep)
            ).all()
            if stale:
                session.execute(delete(SyncRecord).where(SyncRecord.id.in_(stale)))
                logger.debug(f"Pruned {len(stale)} old sync records")

    def records(self, limit: int = 20) -> List[SyncRecord]:
        with self.session(expire_on_commit=False) as session:
            rows = session.scalars(
                select(SyncRecord).order_by(SyncRecord.id.desc()).limit(limit)
            ).all()
            session.expunge_all()
            for row in rows:
                row.started_at = as_utc(row.started_at)
                row.finished_at = as_utc(row.finished_at)
            return list(rows)

    def latest_record(self) -> Optional[SyncRecord]:
        rows = self.records(limit=1)
        return rows[0] if rows else None
