"""
Sync orchestration for marksync.

The SyncOrchestrator runs one sync cycle at a time:

    local tree -> normalize -> validate -> authenticate -> read remote
        -> (merge) -> write remote -> record outcome -> drain offline queue

Progress is published on a ProgressChannel; the result of every cycle is
returned as a SyncOutcome and logged to the state database. The
AutoSyncScheduler and change notifications both go through ``sync_now``,
which never runs two cycles at once.
"""
import time
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from marksync.constants import MIN_SYNC_INTERVAL
from marksync.db import Database
from marksync.envelope import SyncEnvelope, build_envelope, validate_envelope
from marksync.errors import (
    ConfigError,
    ConflictError,
    MergeError,
    SyncError,
    TransientTransportError,
)
from marksync.host import BookmarkHost
from marksync.merge import merge, remote_only_additions
from marksync.models import SyncRecord
from marksync.queue import DrainResult, OfflineQueue
from marksync.remote.base import RemoteLocation, RemoteStore
from marksync.remote.repository import RepositoryStore
from marksync.retry import RetryPolicy, execute, is_retryable
from marksync.tree import BookmarkNode, normalize
from marksync.utils import generate_device_id, now_ms

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Lifecycle of the orchestrator."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncStage(Enum):
    """Cycle stages with their fixed progress percentages."""
    READING_LOCAL = ("reading_local", 10, "Reading local bookmarks")
    AUTHENTICATING = ("authenticating", 25, "Authenticating")
    FETCHING_REMOTE = ("fetching_remote", 40, "Fetching remote bookmarks")
    MERGING = ("merging", 60, "Merging changes")
    WRITING = ("writing", 80, "Writing remote bookmarks")
    RECORDING = ("recording", 95, "Recording sync state")

    def __init__(self, key: str, percent: int, label: str):
        self.key = key
        self.percent = percent
        self.label = label


class ProgressKind(Enum):
    START = "start"
    PROGRESS = "progress"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification."""
    kind: ProgressKind
    message: str
    percent: Optional[int] = None
    stage: Optional[SyncStage] = None


class Subscription:
    """
    A subscriber's bounded buffer of progress events.

    When the buffer is full the oldest event is dropped, so producers never
    block on a slow consumer.
    """

    def __init__(self, channel: "ProgressChannel", maxlen: int):
        self._channel = channel
        self._events = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def _offer(self, event: ProgressEvent) -> None:
        with self._lock:
            self._events.append(event)

    def get_all(self) -> List[ProgressEvent]:
        """Remove and return every buffered event, oldest first."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressChannel:
    """Fan-out of ProgressEvents to any number of subscribers."""

    def __init__(self, default_maxlen: int = 100):
        self.default_maxlen = default_maxlen
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, maxlen: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxlen or self.default_maxlen)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(event)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_device_id(config, db: Database) -> str:
    """Configured device id, else the persisted one, generating it on first use."""
    if config.device_id:
        return config.device_id
    device_id = db.get_state("device_id")
    if not device_id:
        device_id = generate_device_id()
        db.set_state("device_id", device_id)
        logger.info(f"Generated device id {device_id}")
    return device_id


@dataclass
class SyncOutcome:
    """Result of one sync cycle."""
    status: SyncState
    started_at: datetime
    finished_at: datetime
    merged: bool = False
    queued: bool = False
    total_count: int = 0
    folder_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncState.SUCCESS

    def to_record(self) -> SyncRecord:
        return SyncRecord(
            status=self.status.value,
            started_at=self.started_at,
            finished_at=self.finished_at,
            merged=self.merged,
            queued=self.queued,
            total_count=self.total_count,
            folder_count=self.folder_count,
            error=self.error,
            error_kind=self.error_kind,
        )

    @classmethod
    def from_record(cls, record: SyncRecord) -> "SyncOutcome":
        return cls(
            status=SyncState(record.status),
            started_at=record.started_at,
            finished_at=record.finished_at,
            merged=record.merged,
            queued=record.queued,
            total_count=record.total_count,
            folder_count=record.folder_count,
            error=record.error,
            error_kind=record.error_kind,
        )


@dataclass
class PushResult:
    """What one read/merge/write pass wrote."""
    envelope: SyncEnvelope
    merged: bool
    additions: List[BookmarkNode]
    remote_modified: Optional[int] = None


class SyncOrchestrator:
    """
    Drives sync cycles between a bookmark host and a remote store.

    All collaborators are injected; nothing here reaches for global state.
    """

    def __init__(self, host: BookmarkHost, store: RemoteStore, db: Database, config,
                 location: Optional[RemoteLocation] = None,
                 queue: Optional[OfflineQueue] = None,
                 policy: Optional[RetryPolicy] = None,
                 channel: Optional[ProgressChannel] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], int] = now_ms):
        """
        Initialize the orchestrator.

        Args:
            host: Source of the local bookmark tree
            store: Remote backend
            db: Local state database
            config: SyncConfig
            location: Remote location (derived from config and saved state if omitted)
            queue: Offline queue (built on ``db`` if omitted)
            policy: Retry policy (built from config if omitted)
            channel: Progress channel to publish on
            sleep: Sleep function used between retries
            clock: Epoch-ms clock used to stamp envelopes
        """
        self.host = host
        self.store = store
        self.db = db
        self.config = config
        self.queue = queue if queue is not None else OfflineQueue(db)
        self.policy = policy or RetryPolicy.from_config(config)
        self.channel = channel or ProgressChannel()
        self._sleep = sleep
        self._clock = clock

        if location is None:
            location = RemoteLocation.from_config(config, gist_id=config.gist_id or db.get_state("gist_id", ""))
        self.location = location
        self.device_id = resolve_device_id(config, db)

        self.state = SyncState.IDLE
        self._guard = threading.Lock()
        self._timer_lock = threading.Lock()
        self._debounce_timer: Optional[threading.Timer] = None
        self._percent = 0

    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    # Progress

    def _publish(self, kind: ProgressKind, message: str, percent: Optional[int] = None,
                 stage: Optional[SyncStage] = None) -> None:
        if percent is not None:
            self._percent = percent
        self.channel.publish(ProgressEvent(kind=kind, message=message, percent=percent, stage=stage))

    def _stage(self, stage: SyncStage) -> None:
        logger.debug(f"Sync stage: {stage.key}")
        self._publish(ProgressKind.PROGRESS, stage.label, stage.percent, stage)

    def _retry(self, operation: Callable[[], Any], description: str) -> Any:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._publish(
                ProgressKind.PROGRESS,
                f"{description} failed, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.policy.max_attempts})",
                self._percent,
            )

        return execute(operation, self.policy, sleep=self._sleep, on_retry=on_retry,
                       description=description)

    # Persisted state

    def last_sync(self) -> Optional[int]:
        """Baseline: lastModified of the last envelope this device wrote."""
        return self.db.get_state("last_sync")

    def last_outcome(self) -> Optional[SyncOutcome]:
        record = self.db.latest_record()
        return SyncOutcome.from_record(record) if record else None

    def _record_written(self, envelope: SyncEnvelope) -> None:
        self.db.set_state("last_sync", envelope.last_modified)
        self.db.set_state("last_counts", {
            "totalCount": envelope.metadata.total_count,
            "folderCount": envelope.metadata.folder_count,
        })

    # Cycle

    def build_local_envelope(self) -> SyncEnvelope:
        """Snapshot the host tree into a validated envelope."""
        now = self._clock()
        nodes = normalize(self.host.get_tree(), now=now)
        envelope = build_envelope(nodes, device_id=self.device_id, last_modified=now,
                                  last_sync=self.last_sync())
        return validate_envelope(envelope)

    def sync_now(self) -> Optional[SyncOutcome]:
        """
        Run one sync cycle.

        Returns:
            The cycle's outcome, or None if a cycle was already running
        """
        if not self._guard.acquire(blocking=False):
            logger.info("Sync already in progress, request ignored")
            return None
        try:
            return self._run_cycle()
        finally:
            self._guard.release()

    def _run_cycle(self) -> SyncOutcome:
        started_at = _utcnow()
        self.state = SyncState.SYNCING
        self._publish(ProgressKind.START, "Starting bookmark sync", 0)

        local: Optional[SyncEnvelope] = None
        outcome = SyncOutcome(status=SyncState.ERROR, started_at=started_at, finished_at=started_at)
        try:
            self._stage(SyncStage.READING_LOCAL)
            local = self.build_local_envelope()

            self._stage(SyncStage.AUTHENTICATING)
            self._retry(self.store.authenticate, "authenticate")

            result = self._push_once_more_on_conflict(local)

            self._stage(SyncStage.RECORDING)
            self._settle(result)
            outcome.status = SyncState.SUCCESS
            outcome.merged = result.merged
            outcome.total_count = result.envelope.metadata.total_count
            outcome.folder_count = result.envelope.metadata.folder_count
        except ConflictError as e:
            outcome.error = f"Sync failed: remote changed again during sync ({e})"
            outcome.error_kind = e.kind
            logger.error(outcome.error)
        except MergeError as e:
            outcome.error = f"Merge failed: {e}"
            outcome.error_kind = e.kind
            logger.exception("Merge produced an inconsistent result")
        except Exception as e:
            if is_retryable(e, self.policy):
                self._queue_local(outcome, local, e)
            elif isinstance(e, SyncError):
                outcome.error = str(e)
                outcome.error_kind = e.kind
                logger.error(f"Sync failed: {e}")
            else:
                outcome.error = f"Unexpected error: {e}"
                outcome.error_kind = "internal"
                self._finish(outcome)
                self.state = SyncState.IDLE
                raise

        self._finish(outcome)
        if outcome.ok and len(self.queue):
            # Everything queued is an older snapshot of the tree just written
            dropped = self.queue.drop_superseded()
            logger.info(f"Dropped {dropped} queued operation(s) superseded by this sync")
        self.state = SyncState.IDLE
        return outcome

    def _queue_local(self, outcome: SyncOutcome, local: Optional[SyncEnvelope], error: Exception) -> None:
        outcome.error_kind = TransientTransportError.kind
        if local is not None:
            self.queue.enqueue(local, kind="update")
            outcome.queued = True
            outcome.total_count = local.metadata.total_count
            outcome.folder_count = local.metadata.folder_count
            outcome.error = f"Network unavailable, changes queued, will retry automatically ({error})"
        else:
            outcome.error = f"Network unavailable: {error}"
        logger.warning(outcome.error)

    def _finish(self, outcome: SyncOutcome) -> None:
        outcome.finished_at = _utcnow()
        self.state = outcome.status
        self.db.add_record(outcome.to_record())
        if outcome.ok:
            action = "merged" if outcome.merged else "uploaded"
            message = f"Sync complete: {outcome.total_count} bookmarks in {outcome.folder_count} folders {action}"
            logger.info(message)
            self._publish(ProgressKind.SUCCESS, message, 100)
        else:
            self._publish(ProgressKind.ERROR, outcome.error or "Sync failed", self._percent)

    def _push_once_more_on_conflict(self, local: SyncEnvelope) -> PushResult:
        try:
            return self._push(local, force_merge=False)
        except ConflictError as e:
            logger.warning(f"Remote changed during sync, retrying once: {e}")
            return self._push(local, force_merge=True)

    def _push(self, local: SyncEnvelope, force_merge: bool) -> PushResult:
        """
        Read the remote, merge if needed, and write the result.

        The local envelope is written as-is when nothing exists remotely or
        when the remote has not changed since this device last wrote it.
        """
        self._stage(SyncStage.FETCHING_REMOTE)
        location = self.location
        snapshot = self._retry(lambda: self.store.read(location), "read remote")

        token = None
        remote_modified = None
        merged = False
        additions: List[BookmarkNode] = []
        to_write = local
        if snapshot is not None:
            token = snapshot.token
            baseline = self.last_sync()
            remote = snapshot.envelope
            remote_modified = remote.last_modified
            if force_merge or baseline is None or remote.last_modified > baseline:
                self._stage(SyncStage.MERGING)
                to_write = merge(remote, local, self.device_id, now=self._clock())
                merged = True
                additions = remote_only_additions(remote, local)
            else:
                logger.debug("Remote unchanged since last sync, local tree wins")

        validate_envelope(to_write)
        self._stage(SyncStage.WRITING)
        result = self._retry(
            lambda: self.store.write(location, to_write, expected_token=token),
            "write remote",
        )
        self._adopt_location(result.location)
        self._record_written(to_write)
        return PushResult(envelope=to_write, merged=merged, additions=additions,
                          remote_modified=remote_modified)

    def _adopt_location(self, location: RemoteLocation) -> None:
        if location == self.location:
            return
        self.location = location
        if location.gist_id:
            self.db.set_state("gist_id", location.gist_id)
            logger.info(f"Remote location is now {location.describe()}")

    def _settle(self, result: PushResult) -> None:
        """
        Bring the host up to date with what was written.

        If remote-only additions were not applied locally, the baseline is
        held at the remote's pre-merge ``lastModified`` so the next cycle
        merges again instead of writing the bare local tree over them.
        """
        if not result.additions or self._apply_additions(result.additions):
            return
        # Must stay below what was written even if the other clock runs ahead
        baseline = min(result.remote_modified, result.envelope.last_modified - 1)
        self.db.set_state("last_sync", baseline)
        logger.debug(f"{len(result.additions)} remote-only node(s) not in the local tree, "
                     f"baseline held at {baseline}")

    def _apply_additions(self, additions: List[BookmarkNode]) -> bool:
        if not self.config.apply_remote_additions:
            return False
        if not self.host.writable:
            logger.debug("Host is read-only, remote additions not applied")
            return False
        try:
            self.host.create_nodes(additions)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not add remote bookmarks to the local tree: {e}")
            return False
        return True

    # Offline queue

    def _replay(self, envelope: SyncEnvelope, operation) -> None:
        # Queued envelopes are stale by definition: always merge with the remote
        try:
            result = self._push(envelope, force_merge=True)
        except Exception as e:
            classified = self._as_transient(e)
            if classified is e:
                raise
            raise classified from e
        self._settle(result)

    def _as_transient(self, error: Exception) -> Exception:
        """Wrap an unclassified error the retry engine treats as transient."""
        if not isinstance(error, SyncError) and is_retryable(error, self.policy):
            return TransientTransportError(str(error))
        return error

    def _drain_queue(self) -> DrainResult:
        result = self.queue.drain(self._replay)
        if result.replayed:
            logger.info(f"Replayed {result.replayed} queued operation(s), {result.remaining} left")
        return result

    def replay_pending(self) -> Optional[DrainResult]:
        """
        Drain the offline queue now.

        Returns:
            DrainResult, or None if a sync cycle is running
        """
        if not self._guard.acquire(blocking=False):
            logger.info("Sync in progress, queue drain skipped")
            return None
        try:
            if not len(self.queue):
                return DrainResult()
            self.queue.drop_superseded(keep_latest=True)
            try:
                self._retry(self.store.authenticate, "authenticate")
            except Exception as e:
                classified = self._as_transient(e)
                if not isinstance(classified, SyncError):
                    raise
                return DrainResult(remaining=len(self.queue), error=classified)
            return self._drain_queue()
        finally:
            self._guard.release()

    # Change notifications

    def notify_change(self, event: Any = None) -> None:
        """
        Tell the orchestrator the local tree changed.

        Bursts of changes collapse into one cycle ``change_debounce``
        seconds after the last one.
        """
        logger.debug(f"Bookmark change reported: {event!r}")
        delay = float(self.config.change_debounce)
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            self._debounce_timer = threading.Timer(delay, self._on_debounce)
            self._debounce_timer.daemon = True
            self._debounce_timer.start()

    def _on_debounce(self) -> None:
        with self._timer_lock:
            self._debounce_timer = None
        try:
            self.sync_now()
        except Exception:
            logger.exception("Sync triggered by a bookmark change failed")

    def close(self) -> None:
        """Cancel any pending debounced cycle."""
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None

    # Rollback and restore

    @contextmanager
    def _exclusively(self, action: str):
        if not self._guard.acquire(blocking=False):
            raise SyncError(f"A sync is in progress, try the {action} again later")
        try:
            yield
        finally:
            self._guard.release()

    def _replace_remote(self, nodes: List[BookmarkNode]) -> SyncEnvelope:
        """Write ``nodes`` over the current remote document, re-stamped by this device."""
        location = self.location
        replacement = build_envelope(nodes, device_id=self.device_id,
                                     last_modified=self._clock(), last_sync=self.last_sync())
        validate_envelope(replacement)
        current = self._retry(lambda: self.store.read(location), "read remote")
        token = current.token if current else None
        result = self._retry(
            lambda: self.store.write(location, replacement, expected_token=token),
            "write remote",
        )
        self._adopt_location(result.location)
        self._record_written(replacement)
        return replacement

    def rollback(self, name: str) -> SyncEnvelope:
        """
        Restore a history copy as the current remote document.

        Only the repository backend keeps history.

        Raises:
            ConfigError: If the backend keeps no history
            SyncError: If a sync cycle is running, or the write fails
        """
        if not isinstance(self.store, RepositoryStore):
            raise ConfigError("Rollback needs the repository backend", ["backend is not repository"])
        with self._exclusively("rollback"):
            location = self.location
            historic = self._retry(lambda: self.store.read_history(location, name), "read history")
            restored = self._replace_remote(historic.nodes)
        logger.info(f"Rolled back {location.describe()} to {name}")
        return restored

    def restore(self, envelope: SyncEnvelope) -> SyncEnvelope:
        """
        Write a backed-up envelope as the current remote document.

        Raises:
            ValidationError: If the envelope is invalid
            SyncError: If a sync cycle is running, or the write fails
        """
        validate_envelope(envelope)
        with self._exclusively("restore"):
            restored = self._replace_remote(envelope.nodes)
        logger.info(f"Restored {restored.metadata.total_count} bookmarks from backup "
                    f"to {self.location.describe()}")
        return restored


class AutoSyncScheduler:
    """Runs ``sync_now`` on a fixed interval from a background thread."""

    def __init__(self, orchestrator: SyncOrchestrator, interval_minutes: int,
                 run_immediately: bool = False):
        self.orchestrator = orchestrator
        self.interval_minutes = max(MIN_SYNC_INTERVAL, int(interval_minutes))
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        """Interval in seconds."""
        return self.interval_minutes * 60.0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="marksync-autosync", daemon=True)
        self._thread.start()
        logger.info(f"Auto-sync every {self.interval_minutes} minute(s)")

    def _loop(self) -> None:
        if self.run_immediately:
            self.tick()
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> Optional[SyncOutcome]:
        """Request one cycle; never raises."""
        try:
            return self.orchestrator.sync_now()
        except Exception:
            logger.exception("Scheduled sync failed")
            return None

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Prevent further cycles; a running cycle is allowed to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
