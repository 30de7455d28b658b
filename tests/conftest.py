import os
import json
import pytest
from typing import Optional

from marksync.config import SyncConfig
from marksync.db import Database
from marksync.envelope import SyncEnvelope
from marksync.errors import ConflictError, RemoteNotFound
from marksync.host import BookmarkHost
from marksync.remote.base import RemoteLocation, RemoteSnapshot, RemoteStore, WriteResult
from marksync.remote.repository import RepositoryStore
from marksync.retry import RetryPolicy
from marksync.sync import SyncOrchestrator


@pytest.fixture
def host_tree():
    """
    A browser-shaped forest: synthetic root "0" holding one folder with one bookmark.
    """
    return [
        {
            "id": "0",
            "title": "",
            "children": [
                {
                    "id": "f1",
                    "parentId": "0",
                    "index": 0,
                    "title": "Work",
                    "dateAdded": 1_700_000_000_000,
                    "children": [
                        {
                            "id": "b1",
                            "parentId": "f1",
                            "index": 0,
                            "title": "Example",
                            "url": "https://example.com",
                            "dateAdded": 1_700_000_001_000,
                        }
                    ],
                }
            ],
        }
    ]


@pytest.fixture
def chromium_bookmarks(tmp_path):
    """A Chromium ``Bookmarks`` file with a bar folder and an empty 'other' root."""
    data = {
        "checksum": "0123456789abcdef",
        "roots": {
            "bookmark_bar": {
                "id": "1",
                "name": "Bookmarks bar",
                "type": "folder",
                "date_added": "13300000000000000",
                "date_modified": "13300000060000000",
                "children": [
                    {
                        "id": "5",
                        "name": "Python",
                        "type": "url",
                        "url": "https://www.python.org/",
                        "date_added": "13300000030000000",
                    }
                ],
            },
            "other": {
                "id": "2",
                "name": "Other bookmarks",
                "type": "folder",
                "date_added": "13300000000000000",
                "children": [],
            },
            "synced": {
                "id": "3",
                "name": "Mobile bookmarks",
                "type": "folder",
                "date_added": "13300000000000000",
                "children": [],
            },
        },
        "version": 1,
    }
    path = tmp_path / "Bookmarks"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def db(tmp_path):
    """State database in a temporary file."""
    return Database(path=str(tmp_path / "state.db"))


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        backend="gist",
        token="ghp_test",
        device_id="device-a",
        state_db=str(tmp_path / "state.db"),
        change_debounce=0.05,
        retry_jitter=False,
    )


@pytest.fixture
def clean_marksync_env(monkeypatch, tmp_path):
    """
    Clean environment without touching the real config.

    Removes MARKSYNC_ variables, points HOME at a temp directory and
    changes into tmp_path.
    """
    for key in list(os.environ.keys()):
        if key.startswith("MARKSYNC_"):
            monkeypatch.delenv(key, raising=False)

    mock_home = tmp_path / "home"
    mock_home.mkdir()
    monkeypatch.setenv("HOME", str(mock_home))
    monkeypatch.chdir(tmp_path)
    return tmp_path


class FakeHost(BookmarkHost):
    """Host whose tree is a plain attribute; records created nodes."""

    def __init__(self, tree):
        self.tree = tree
        self.created = []

    def get_tree(self):
        return self.tree

    def create_nodes(self, nodes):
        self.created.extend(nodes)
        return len(nodes)


class MemoryStore(RemoteStore):
    """
    Remote store kept in memory, with gist-like versioning.

    Failures are scripted: each entry of ``read_failures`` /
    ``write_failures`` is raised by one call, in order, before calls
    start succeeding. ``before_write`` lets a test change the remote
    between read and write.
    """

    kind = "gist"

    def __init__(self):
        super().__init__(client=None)
        self.payload: Optional[str] = None
        self.version = 0
        self.gist_id = ""
        self.read_failures = []
        self.write_failures = []
        self.auth_failures = []
        self.before_write = None
        self.reads = 0
        self.writes = 0
        self.auth_calls = 0

    @property
    def token(self) -> str:
        return f"v{self.version}"

    @property
    def envelope(self) -> Optional[SyncEnvelope]:
        return SyncEnvelope.from_json(self.payload) if self.payload else None

    def put(self, envelope: SyncEnvelope) -> None:
        """Replace the remote document directly, as another device would."""
        self.payload = envelope.to_json()
        self.version += 1
        self.gist_id = self.gist_id or "g1"

    def authenticate(self):
        self.auth_calls += 1
        if self.auth_failures:
            raise self.auth_failures.pop(0)
        return "octocat"

    def read(self, location):
        self.reads += 1
        if self.read_failures:
            raise self.read_failures.pop(0)
        if self.payload is None:
            return None
        return RemoteSnapshot(envelope=self._decode(self.payload), token=self.token, location=location)

    def write(self, location, envelope, expected_token=None):
        self.writes += 1
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook()
        if self.write_failures:
            raise self.write_failures.pop(0)
        if self.payload is not None and expected_token != self.token:
            raise ConflictError(f"expected {expected_token}, found {self.token}")
        self.payload = self._encode(envelope)
        self.version += 1
        if not location.gist_id:
            self.gist_id = "g1"
            location = location.with_gist_id("g1")
        return WriteResult(token=self.token, location=location)


class MemoryHistoryStore(MemoryStore, RepositoryStore):
    """MemoryStore that also serves named history copies from ``history``."""

    def __init__(self):
        super().__init__()
        self.history = {}

    def read_history(self, location, name):
        if name not in self.history:
            raise RemoteNotFound(f"No history copy named {name}")
        return self.history[name]


@pytest.fixture
def fake_host(host_tree):
    return FakeHost(host_tree)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def history_store():
    return MemoryHistoryStore()


@pytest.fixture
def sleeps():
    """Records retry waits instead of sleeping."""
    return []


@pytest.fixture
def make_orchestrator(db, config, sleeps):
    """Factory building an orchestrator around the given host and store."""
    clock = {"now": 1_800_000_000_000}

    def tick():
        clock["now"] += 1000
        return clock["now"]

    def _make(host, store, **kwargs):
        kwargs.setdefault("policy", RetryPolicy(jitter=False))
        return SyncOrchestrator(
            host=host,
            store=store,
            db=db,
            config=config,
            location=RemoteLocation.gist("", "bookmarks.json"),
            sleep=sleeps.append,
            clock=tick,
            **kwargs
        )
    return _make


class RouteClient:
    """
    Stand-in for GitHubClient that answers from a routing table.

    A route's result may be a value, an exception instance (raised), or an
    iterator yielding one of those per call. Unrouted requests raise
    RemoteNotFound, like a 404.
    """

    def __init__(self, login="octocat"):
        self.routes = {}
        self.calls = []
        self.login = login

    def on(self, method, path, result):
        self.routes[(method, path)] = result
        return self

    def _dispatch(self, method, path, **kwargs):
        self.calls.append((method, path, kwargs))
        if (method, path) not in self.routes:
            raise RemoteNotFound(f"Not found: {method} {path}")
        result = self.routes[(method, path)]
        if hasattr(result, "__next__"):
            result = next(result)
        if isinstance(result, Exception):
            raise result
        return result

    def called(self, method, path=None):
        return [call for call in self.calls if call[0] == method and (path is None or call[1] == path)]

    def authenticate(self):
        return self.login

    def get(self, path, params=None):
        return self._dispatch("GET", path, params=params)

    def get_text(self, url):
        return self._dispatch("GET", url)

    def post(self, path, json=None):
        return self._dispatch("POST", path, json=json)

    def patch(self, path, json=None):
        return self._dispatch("PATCH", path, json=json)

    def put(self, path, json=None):
        return self._dispatch("PUT", path, json=json)

    def delete(self, path, json=None):
        return self._dispatch("DELETE", path, json=json)


@pytest.fixture
def route_client():
    return RouteClient()
