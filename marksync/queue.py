"""
Durable offline queue of pending remote writes.

Operations are stored in the local state database and replayed strictly
in enqueue order. A replay failure stops the drain at that operation and
leaves it and everything after it queued for the next attempt.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy import select, delete, func

from marksync.db import Database, as_utc
from marksync.envelope import SyncEnvelope
from marksync.errors import SyncError
from marksync.models import PendingOperation

logger = logging.getLogger(__name__)

OPERATION_KINDS = ("update",)


@dataclass
class DrainResult:
    """Outcome of one drain pass."""
    replayed: int = 0
    remaining: int = 0
    error: Optional[SyncError] = None

    @property
    def complete(self) -> bool:
        return self.error is None and self.remaining == 0


class OfflineQueue:
    """FIFO queue of write intents persisted in the state database."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, envelope: SyncEnvelope, kind: str = "update") -> PendingOperation:
        """
        Queue an envelope for later replay.

        If the newest queued operation already carries the same node set
        it is returned instead of adding a duplicate.
        """
        if kind not in OPERATION_KINDS:
            raise ValueError(f"Unknown operation kind: {kind}")

        payload_hash = envelope.content_hash()
        with self.db.session(expire_on_commit=False) as session:
            tail = session.scalars(
                select(PendingOperation).order_by(PendingOperation.id.desc()).limit(1)
            ).first()
            if tail is not None and tail.kind == kind and tail.payload_hash == payload_hash:
                logger.debug(f"Envelope {payload_hash[:8]} already queued as operation {tail.id}")
                return tail

            operation = PendingOperation(
                kind=kind,
                payload=envelope.to_json(indent=None),
                payload_hash=payload_hash,
            )
            session.add(operation)
            session.flush()
            logger.info(f"Queued {kind} operation {operation.id} ({envelope.metadata.total_count} bookmarks)")
            return operation

    def peek_all(self) -> List[PendingOperation]:
        """All pending operations in replay order."""
        with self.db.session(expire_on_commit=False) as session:
            operations = session.scalars(
                select(PendingOperation).order_by(PendingOperation.id)
            ).all()
            session.expunge_all()
            for operation in operations:
                operation.enqueued_at = as_utc(operation.enqueued_at)
            return list(operations)

    def __len__(self) -> int:
        with self.db.session() as session:
            return session.scalar(select(func.count(PendingOperation.id))) or 0

    def remove(self, operation_id: int) -> bool:
        with self.db.session() as session:
            result = session.execute(delete(PendingOperation).where(PendingOperation.id == operation_id))
            return result.rowcount > 0

    def clear(self) -> int:
        with self.db.session() as session:
            result = session.execute(delete(PendingOperation))
            return result.rowcount

    def drop_superseded(self, keep_latest: bool = False) -> int:
        """
        Delete queued ``update`` snapshots that a newer write replaces.

        Each one is a whole local tree, so only the newest carries anything
        the remote still needs. With ``keep_latest`` that newest one stays
        queued; otherwise all of them go.

        Returns:
            Number of operations deleted
        """
        with self.db.session() as session:
            query = delete(PendingOperation).where(PendingOperation.kind == "update")
            if keep_latest:
                newest = session.scalar(
                    select(func.max(PendingOperation.id)).where(PendingOperation.kind == "update")
                )
                if newest is None:
                    return 0
                query = query.where(PendingOperation.id != newest)
            result = session.execute(query)
            if result.rowcount:
                logger.debug(f"Dropped {result.rowcount} superseded update(s)")
            return result.rowcount

    def _record_failure(self, operation_id: int, error: Exception) -> None:
        with self.db.session() as session:
            operation = session.get(PendingOperation, operation_id)
            if operation is not None:
                operation.attempts += 1
                operation.last_error = str(error)

    def drain(self, replay: Callable[[SyncEnvelope, PendingOperation], None]) -> DrainResult:
        """
        Replay pending operations in FIFO order.

        Args:
            replay: Called with the decoded envelope and its operation; must
                raise on failure

        Returns:
            DrainResult with the number replayed, the number left and the
            classified error that stopped the drain, if any

        Raises:
            Any unclassified exception raised by ``replay``
        """
        result = DrainResult()
        for operation in self.peek_all():
            try:
                envelope = SyncEnvelope.from_json(operation.payload)
                replay(envelope, operation)
            except SyncError as e:
                self._record_failure(operation.id, e)
                result.error = e
                logger.warning(f"Replay of operation {operation.id} failed, draining stopped: {e}")
                break
            self.remove(operation.id)
            result.replayed += 1
            logger.info(f"Replayed queued operation {operation.id}")

        result.remaining = len(self)
        return result
