"""
Tests for marksync/sync.py orchestration.

The orchestrator runs against an in-memory store with scripted failures,
a fake host and an injected sleep, so no test touches the network or
waits on real backoff.
"""
import copy
import time
import pytest
import requests

from marksync.envelope import build_envelope
from marksync.errors import (
    AuthenticationError,
    ConfigError,
    ConflictError,
    SyncError,
    TransientTransportError,
    ValidationError,
)
from marksync.sync import (
    AutoSyncScheduler,
    ProgressChannel,
    ProgressKind,
    SyncOrchestrator,
    SyncState,
)
from marksync.tree import normalize

LATER = 1_900_000_000_000


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def other_device_envelope(host_tree, last_modified=LATER):
    """The host tree plus one bookmark b2 added on another device."""
    tree = copy.deepcopy(host_tree)
    tree[0]["children"][0]["children"].append({
        "id": "b2",
        "parentId": "f1",
        "index": 1,
        "title": "Other device",
        "url": "https://other.example",
        "dateAdded": 1_700_000_002_000,
    })
    return build_envelope(normalize(tree), device_id="device-b", last_modified=last_modified)


class TestFirstSync:
    """A fresh device against an empty remote."""

    def test_uploads_local_tree(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert outcome.merged is False
        assert outcome.total_count == 1
        assert outcome.folder_count == 1
        remote = memory_store.envelope
        assert remote.node_ids == {"f1", "b1"}
        assert remote.device_id == "device-a"
        assert remote.metadata.total_count == 1
        assert orchestrator.state == SyncState.IDLE

    def test_new_gist_id_is_persisted(self, fake_host, memory_store, make_orchestrator, db, config):
        make_orchestrator(fake_host, memory_store).sync_now()
        assert db.get_state("gist_id") == "g1"

        reopened = SyncOrchestrator(fake_host, memory_store, db, config)
        assert reopened.location.gist_id == "g1"

    def test_baseline_recorded(self, fake_host, memory_store, make_orchestrator, db):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator.sync_now()
        assert orchestrator.last_sync() == memory_store.envelope.last_modified
        assert db.get_state("last_counts") == {"totalCount": 1, "folderCount": 1}

    def test_last_outcome(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        assert orchestrator.last_outcome() is None
        orchestrator.sync_now()
        last = orchestrator.last_outcome()
        assert last.status == SyncState.SUCCESS
        assert last.total_count == 1

    def test_device_id_generated_once(self, fake_host, memory_store, db, config):
        config.device_id = ""
        first = SyncOrchestrator(fake_host, memory_store, db, config).device_id
        second = SyncOrchestrator(fake_host, memory_store, db, config).device_id
        assert first
        assert first == second


class TestMerging:
    """Test when the remote is merged and when local wins."""

    def test_divergent_remote_is_merged(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.put(other_device_envelope(host_tree))
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert outcome.merged is True
        assert outcome.total_count == 2
        assert memory_store.envelope.node_ids == {"f1", "b1", "b2"}
        assert memory_store.envelope.device_id == "device-a"

    def test_unchanged_remote_is_overwritten(self, fake_host, host_tree, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator.sync_now()

        # b1 replaced locally; the remote is still what this device wrote
        fake_host.tree[0]["children"][0]["children"] = [{
            "id": "b3",
            "parentId": "f1",
            "index": 0,
            "title": "Replacement",
            "url": "https://replacement.example",
            "dateAdded": 1_700_000_003_000,
        }]
        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert outcome.merged is False
        assert memory_store.envelope.node_ids == {"f1", "b3"}

    def test_newer_remote_is_merged_after_baseline(self, fake_host, host_tree, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator.sync_now()

        memory_store.put(other_device_envelope(host_tree))
        outcome = orchestrator.sync_now()

        assert outcome.merged is True
        assert "b2" in memory_store.envelope.node_ids

    def test_remote_additions_survive_following_cycles(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.put(other_device_envelope(host_tree))
        orchestrator = make_orchestrator(fake_host, memory_store)

        first = orchestrator.sync_now()
        second = orchestrator.sync_now()

        assert first.merged is True
        assert second.ok
        assert second.merged is True
        assert memory_store.envelope.node_ids == {"f1", "b1", "b2"}
        assert orchestrator.last_sync() < memory_store.envelope.last_modified

    def test_baseline_advances_once_additions_are_applied(self, fake_host, host_tree, memory_store,
                                                         make_orchestrator, config):
        config.apply_remote_additions = True
        memory_store.put(other_device_envelope(host_tree))
        orchestrator = make_orchestrator(fake_host, memory_store)

        orchestrator.sync_now()

        assert orchestrator.last_sync() == memory_store.envelope.last_modified

    def test_remote_additions_applied_when_enabled(self, fake_host, host_tree, memory_store,
                                                   make_orchestrator, config):
        config.apply_remote_additions = True
        memory_store.put(other_device_envelope(host_tree))

        make_orchestrator(fake_host, memory_store).sync_now()

        assert [node.id for node in fake_host.created] == ["b2"]

    def test_remote_additions_not_applied_by_default(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.put(other_device_envelope(host_tree))
        make_orchestrator(fake_host, memory_store).sync_now()
        assert fake_host.created == []


class TestConflicts:
    def test_conflict_retried_once_with_merge(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.before_write = lambda: memory_store.put(other_device_envelope(host_tree))
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert outcome.merged is True
        assert memory_store.reads == 2
        assert memory_store.envelope.node_ids == {"f1", "b1", "b2"}

    def test_second_conflict_fails_the_cycle(self, fake_host, memory_store, make_orchestrator):
        memory_store.write_failures = [ConflictError("moved"), ConflictError("moved again")]
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert outcome.status == SyncState.ERROR
        assert outcome.error_kind == "conflict"
        assert "remote changed again" in outcome.error
        assert outcome.queued is False
        assert memory_store.payload is None


class TestTransientFailures:
    """Test retries and the offline queue."""

    def test_connection_reset_queues_local_envelope(self, fake_host, memory_store, make_orchestrator, sleeps):
        memory_store.read_failures = [TransientTransportError("ECONNRESET") for _ in range(3)]
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert memory_store.reads == 3
        assert sleeps == [1.0, 2.0]
        assert outcome.status == SyncState.ERROR
        assert outcome.queued is True
        assert outcome.error_kind == "transient"
        assert "changes queued" in outcome.error
        pending = orchestrator.queue.peek_all()
        assert len(pending) == 1
        assert pending[0].kind == "update"

    def test_recovers_within_attempts(self, fake_host, memory_store, make_orchestrator, sleeps):
        memory_store.write_failures = [TransientTransportError("503", status_code=503)]
        outcome = make_orchestrator(fake_host, memory_store).sync_now()
        assert outcome.ok
        assert sleeps == [1.0]

    def test_queue_drained_after_success(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        assert len(orchestrator.queue) == 1

        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert len(orchestrator.queue) == 0
        assert memory_store.envelope.node_ids == {"f1", "b1"}

    @pytest.mark.parametrize("error", [
        ConnectionResetError("read ECONNRESET"),
        requests.ConnectionError("connection reset by peer"),
    ])
    def test_unclassified_write_failures_are_queued(self, fake_host, memory_store, make_orchestrator,
                                                    sleeps, error):
        memory_store.write_failures = [error] * 3
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert memory_store.writes == 3
        assert sleeps == [1.0, 2.0]
        assert outcome.status == SyncState.ERROR
        assert outcome.queued is True
        assert outcome.error_kind == "transient"
        assert len(orchestrator.queue) == 1
        assert orchestrator.last_outcome().queued is True

    def test_superseded_snapshots_are_not_merged_back(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        assert len(orchestrator.queue) == 1

        # b1 deleted while offline
        fake_host.tree[0]["children"][0]["children"] = [{
            "id": "b3",
            "parentId": "f1",
            "index": 0,
            "title": "Kept",
            "url": "https://kept.example",
            "dateAdded": 1_700_000_003_000,
        }]
        outcome = orchestrator.sync_now()

        assert outcome.ok
        assert len(orchestrator.queue) == 0
        assert memory_store.envelope.node_ids == {"f1", "b3"}

    def test_replay_pending_sends_only_newest_snapshot(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        fake_host.tree[0]["children"][0]["children"][0]["url"] = "https://moved.example"
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        assert len(orchestrator.queue) == 2

        result = orchestrator.replay_pending()

        assert result.replayed == 1
        assert result.complete
        assert [node.url for node in memory_store.envelope.nodes if node.id == "b1"] == ["https://moved.example"]

    def test_replay_classifies_raw_connection_errors(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        memory_store.read_failures = [requests.ConnectionError("reset") for _ in range(3)]

        result = orchestrator.replay_pending()

        assert isinstance(result.error, TransientTransportError)
        assert result.remaining == 1
        assert orchestrator.queue.peek_all()[0].attempts == 1

    def test_authentication_failure_is_not_queued(self, fake_host, memory_store, make_orchestrator, sleeps):
        memory_store.auth_failures = [AuthenticationError("Bad credentials")]

        outcome = make_orchestrator(fake_host, memory_store).sync_now()

        assert outcome.status == SyncState.ERROR
        assert outcome.error_kind == "authentication"
        assert outcome.queued is False
        assert sleeps == []
        assert memory_store.reads == 0

    def test_replay_pending(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()

        result = orchestrator.replay_pending()

        assert result.replayed == 1
        assert result.complete
        assert memory_store.payload is not None

    def test_replay_pending_reports_auth_error(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        memory_store.read_failures = [TransientTransportError("offline") for _ in range(3)]
        orchestrator.sync_now()
        memory_store.auth_failures = [AuthenticationError("expired")]

        result = orchestrator.replay_pending()

        assert isinstance(result.error, AuthenticationError)
        assert result.remaining == 1

    def test_replay_with_empty_queue(self, fake_host, memory_store, make_orchestrator):
        assert make_orchestrator(fake_host, memory_store).replay_pending().complete


class TestGuardAndErrors:
    def test_concurrent_request_is_ignored(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator._guard.acquire()
        try:
            assert orchestrator.is_syncing
            assert orchestrator.sync_now() is None
            assert orchestrator.replay_pending() is None
        finally:
            orchestrator._guard.release()
        assert memory_store.auth_calls == 0

    def test_unexpected_error_is_recorded_and_raised(self, memory_store, make_orchestrator):
        class BrokenHost:
            writable = False

            def get_tree(self):
                raise RuntimeError("host exploded")

        orchestrator = make_orchestrator(BrokenHost(), memory_store)

        with pytest.raises(RuntimeError):
            orchestrator.sync_now()

        last = orchestrator.last_outcome()
        assert last.error_kind == "internal"
        assert orchestrator.state == SyncState.IDLE
        assert not orchestrator.is_syncing

    def test_invalid_local_tree_never_written(self, fake_host, memory_store, make_orchestrator):
        # Same folder listed twice gives duplicate ids
        fake_host.tree[0]["children"].append(copy.deepcopy(fake_host.tree[0]["children"][0]))
        orchestrator = make_orchestrator(fake_host, memory_store)

        outcome = orchestrator.sync_now()

        assert outcome.error_kind == "validation"
        assert memory_store.writes == 0


class TestProgress:
    def test_event_sequence(self, fake_host, memory_store, make_orchestrator):
        channel = ProgressChannel()
        orchestrator = make_orchestrator(fake_host, memory_store, channel=channel)

        with channel.subscribe() as subscription:
            orchestrator.sync_now()
            events = subscription.get_all()

        assert events[0].kind == ProgressKind.START
        assert events[-1].kind == ProgressKind.SUCCESS
        assert events[-1].percent == 100
        percents = [event.percent for event in events if event.kind == ProgressKind.PROGRESS]
        assert percents == [10, 25, 40, 80, 95]

    def test_error_event(self, fake_host, memory_store, make_orchestrator):
        channel = ProgressChannel()
        memory_store.auth_failures = [AuthenticationError("nope")]
        orchestrator = make_orchestrator(fake_host, memory_store, channel=channel)

        with channel.subscribe() as subscription:
            orchestrator.sync_now()
            events = subscription.get_all()

        assert events[-1].kind == ProgressKind.ERROR
        assert events[-1].percent == 25

    def test_bounded_subscription_drops_oldest(self, fake_host, memory_store, make_orchestrator):
        channel = ProgressChannel()
        orchestrator = make_orchestrator(fake_host, memory_store, channel=channel)
        subscription = channel.subscribe(maxlen=2)

        orchestrator.sync_now()

        events = subscription.get_all()
        assert len(events) == 2
        assert events[-1].kind == ProgressKind.SUCCESS

    def test_unsubscribed_receives_nothing(self, fake_host, memory_store, make_orchestrator):
        channel = ProgressChannel()
        subscription = channel.subscribe()
        subscription.close()
        make_orchestrator(fake_host, memory_store, channel=channel).sync_now()
        assert subscription.get_all() == []


class TestChangeNotifications:
    def test_burst_collapses_into_one_cycle(self, fake_host, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        try:
            for _ in range(3):
                orchestrator.notify_change("changed")
            assert wait_for(lambda: memory_store.writes == 1)
            time.sleep(0.15)
            assert memory_store.writes == 1
        finally:
            orchestrator.close()

    def test_close_cancels_pending_cycle(self, fake_host, memory_store, make_orchestrator, config):
        config.change_debounce = 0.2
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator.notify_change()
        orchestrator.close()
        time.sleep(0.3)
        assert memory_store.writes == 0


class TestScheduler:
    def test_interval_clamped_to_one_minute(self, fake_host, memory_store, make_orchestrator):
        scheduler = AutoSyncScheduler(make_orchestrator(fake_host, memory_store), 0)
        assert scheduler.interval_minutes == 1
        assert scheduler.interval == 60.0

    def test_tick_runs_a_cycle(self, fake_host, memory_store, make_orchestrator):
        scheduler = AutoSyncScheduler(make_orchestrator(fake_host, memory_store), 5)
        assert scheduler.tick().ok

    def test_tick_never_raises(self, memory_store, make_orchestrator):
        class BrokenHost:
            writable = False

            def get_tree(self):
                raise RuntimeError("boom")

        scheduler = AutoSyncScheduler(make_orchestrator(BrokenHost(), memory_store), 5)
        assert scheduler.tick() is None

    def test_start_and_stop(self, fake_host, memory_store, make_orchestrator):
        scheduler = AutoSyncScheduler(make_orchestrator(fake_host, memory_store), 60, run_immediately=True)
        scheduler.start()
        try:
            assert scheduler.running
            assert wait_for(lambda: memory_store.writes == 1)
        finally:
            scheduler.stop()
        assert not scheduler.running


class TestRollback:
    def test_requires_history_backend(self, fake_host, memory_store, make_orchestrator):
        with pytest.raises(ConfigError):
            make_orchestrator(fake_host, memory_store).rollback("bookmarks-x.json")

    def test_history_method_alone_is_not_enough(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.read_history = lambda location, name: build_envelope(normalize(host_tree), "x", 1)
        with pytest.raises(ConfigError):
            make_orchestrator(fake_host, memory_store).rollback("bookmarks-x.json")

    def test_restores_history_copy(self, fake_host, host_tree, history_store, make_orchestrator):
        history_store.history["bookmarks-old.json"] = build_envelope(normalize(host_tree), device_id="device-b",
                                                                     last_modified=5)
        history_store.put(other_device_envelope(host_tree))
        orchestrator = make_orchestrator(fake_host, history_store)

        restored = orchestrator.rollback("bookmarks-old.json")

        assert restored.device_id == "device-a"
        assert history_store.envelope.node_ids == {"f1", "b1"}
        assert orchestrator.last_sync() == restored.last_modified


class TestRestore:
    def test_overwrites_remote_with_backup(self, fake_host, host_tree, memory_store, make_orchestrator):
        memory_store.put(other_device_envelope(host_tree))
        backup = build_envelope(normalize(host_tree), device_id="device-b", last_modified=5)
        orchestrator = make_orchestrator(fake_host, memory_store)

        restored = orchestrator.restore(backup)

        assert memory_store.envelope.node_ids == {"f1", "b1"}
        assert memory_store.envelope.device_id == "device-a"
        assert orchestrator.last_sync() == restored.last_modified

    def test_creates_gist_when_missing(self, fake_host, host_tree, memory_store, make_orchestrator, db):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator.restore(build_envelope(normalize(host_tree), device_id="device-b", last_modified=5))
        assert orchestrator.location.gist_id == "g1"
        assert db.get_state("gist_id") == "g1"

    def test_invalid_backup_never_written(self, fake_host, host_tree, memory_store, make_orchestrator):
        nodes = normalize(host_tree)
        orchestrator = make_orchestrator(fake_host, memory_store)
        with pytest.raises(ValidationError):
            orchestrator.restore(build_envelope(nodes + nodes, device_id="device-b", last_modified=5))
        assert memory_store.writes == 0

    def test_refused_while_syncing(self, fake_host, host_tree, memory_store, make_orchestrator):
        orchestrator = make_orchestrator(fake_host, memory_store)
        orchestrator._guard.acquire()
        try:
            with pytest.raises(SyncError):
                orchestrator.restore(build_envelope(normalize(host_tree), device_id="x", last_modified=5))
        finally:
            orchestrator._guard.release()
