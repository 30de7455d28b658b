"""
Repository backend.

The envelope is one file in a GitHub repository, written through the
contents API. The concurrency token is the file's blob sha, which GitHub
checks on every update. Each successful write also stores a timestamped
copy under ``history/`` next to the file, pruned to the newest
``history_keep`` copies.
"""
import base64
import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from marksync.constants import DEFAULT_BRANCH, DEFAULT_HISTORY_KEEP, HISTORY_DIR
from marksync.envelope import SyncEnvelope
from marksync.errors import ConflictError, RemoteNotFound, SyncError, ValidationError
from marksync.remote.base import RemoteLocation, RemoteSnapshot, RemoteStore, WriteResult

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HistoryEntry:
    """One timestamped copy in the history folder."""
    name: str
    path: str
    sha: str


class RepositoryStore(RemoteStore):
    """Envelope stored as a file in a GitHub repository."""

    kind = "repository"

    def __init__(self, client, history_keep: int = DEFAULT_HISTORY_KEEP,
                 clock: Callable[[], datetime] = _utcnow):
        super().__init__(client)
        self.history_keep = history_keep
        self.clock = clock

    # Paths

    @staticmethod
    def _repo_path(location: RemoteLocation) -> str:
        return f"/repos/{location.owner}/{location.repo}"

    def _contents_path(self, location: RemoteLocation, path: str) -> str:
        return f"{self._repo_path(location)}/contents/{quote(path)}"

    @staticmethod
    def history_dir(location: RemoteLocation) -> str:
        return posixpath.join(posixpath.dirname(location.path), HISTORY_DIR)

    def history_name(self, location: RemoteLocation, when: Optional[datetime] = None) -> str:
        """e.g. ``bookmarks-20261018T120000123Z.json``"""
        when = when or self.clock()
        stem, ext = posixpath.splitext(posixpath.basename(location.path))
        stamp = when.strftime("%Y%m%dT%H%M%S") + f"{when.microsecond // 1000:03d}Z"
        return f"{stem}-{stamp}{ext or '.json'}"

    # Contents API

    def _get_file(self, location: RemoteLocation, path: str) -> Optional[Dict[str, Any]]:
        try:
            item = self.client.get(self._contents_path(location, path), params={"ref": location.branch})
        except RemoteNotFound:
            return None
        if isinstance(item, list):
            raise ValidationError(f"{path} is a directory, not a file", [path])
        return item

    def _file_text(self, location: RemoteLocation, item: Dict[str, Any]) -> str:
        # The contents API leaves content empty for files over 1MB
        if item.get("encoding") == "base64" and item.get("content"):
            raw = item["content"]
        else:
            blob = self.client.get(f"{self._repo_path(location)}/git/blobs/{item['sha']}")
            raw = blob.get("content", "")
        return base64.b64decode(raw).decode("utf-8")

    def _put_file(self, location: RemoteLocation, path: str, text: str, message: str,
                  sha: Optional[str] = None) -> Dict[str, Any]:
        body = {
            "message": message,
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
            "branch": location.branch,
        }
        if sha:
            body["sha"] = sha
        try:
            return self.client.put(self._contents_path(location, path), json=body)
        except ValidationError as e:
            # 422 when the sha is missing or stale for an existing file
            if "sha" in str(e):
                raise ConflictError(f"{path} changed since it was read: {e}") from e
            raise

    # RemoteStore

    def read(self, location: RemoteLocation) -> Optional[RemoteSnapshot]:
        self._check_location(location)
        item = self._get_file(location, location.path)
        if item is None:
            return None
        envelope = self._decode(self._file_text(location, item))
        return RemoteSnapshot(envelope=envelope, token=item["sha"], location=location)

    def write(self, location: RemoteLocation, envelope: SyncEnvelope,
              expected_token: Optional[str] = None) -> WriteResult:
        self._check_location(location)
        text = self._encode(envelope)
        message = f"Sync bookmarks from {envelope.device_id}"

        try:
            result = self._put_file(location, location.path, text, message, sha=expected_token)
        except RemoteNotFound:
            if expected_token is not None:
                raise ConflictError(f"{location.describe()} disappeared since it was read")
            self.ensure_repository(location)
            result = self._put_file(location, location.path, text, message)

        token = result["content"]["sha"]
        logger.debug(f"Wrote {location.describe()} at {token[:8]}")
        self._store_history(location, text)
        return WriteResult(token=token, location=location)

    # Bootstrap

    def ensure_repository(self, location: RemoteLocation) -> None:
        """Create the repository (private) and the branch if they are missing."""
        try:
            repo = self.client.get(self._repo_path(location))
        except RemoteNotFound:
            repo = self._create_repository(location)

        default_branch = repo.get("default_branch") or DEFAULT_BRANCH
        if location.branch == default_branch:
            return

        try:
            self.client.get(f"{self._repo_path(location)}/branches/{quote(location.branch)}")
            return
        except RemoteNotFound:
            pass

        head = self.client.get(f"{self._repo_path(location)}/git/ref/heads/{quote(default_branch)}")
        self.client.post(f"{self._repo_path(location)}/git/refs", json={
            "ref": f"refs/heads/{location.branch}",
            "sha": head["object"]["sha"],
        })
        logger.info(f"Created branch {location.branch} in {location.owner}/{location.repo}")

    def _create_repository(self, location: RemoteLocation) -> Dict[str, Any]:
        login = self.client.authenticate()
        body = {
            "name": location.repo,
            "private": True,
            "auto_init": True,
            "description": "Bookmarks synced by marksync",
        }
        if login and login.lower() == location.owner.lower():
            repo = self.client.post("/user/repos", json=body)
        else:
            repo = self.client.post(f"/orgs/{location.owner}/repos", json=body)
        logger.info(f"Created repository {location.owner}/{location.repo}")
        return repo

    # History

    def _store_history(self, location: RemoteLocation, text: str) -> None:
        if self.history_keep <= 0:
            return
        name = self.history_name(location)
        path = posixpath.join(self.history_dir(location), name)
        try:
            self._put_file(location, path, text, f"Snapshot {name}")
            self.prune_history(location)
        except SyncError as e:
            # The main document is already written; history is best effort
            logger.warning(f"Could not store history copy {name}: {e}")

    def list_history(self, location: RemoteLocation) -> List[HistoryEntry]:
        """History copies, newest first."""
        self._check_location(location)
        directory = self.history_dir(location)
        try:
            items = self.client.get(self._contents_path(location, directory), params={"ref": location.branch})
        except RemoteNotFound:
            return []
        if not isinstance(items, list):
            return []

        stem, _ = posixpath.splitext(posixpath.basename(location.path))
        entries = [
            HistoryEntry(name=item["name"], path=item["path"], sha=item["sha"])
            for item in items
            if item.get("type", "file") == "file" and item["name"].startswith(f"{stem}-")
        ]
        # Fixed-width timestamps sort chronologically
        entries.sort(key=lambda entry: entry.name, reverse=True)
        return entries

    def prune_history(self, location: RemoteLocation) -> int:
        """Delete history copies beyond ``history_keep``; returns how many were removed."""
        removed = 0
        for entry in self.list_history(location)[self.history_keep:]:
            self.client.delete(self._contents_path(location, entry.path), json={
                "message": f"Prune {entry.name}",
                "sha": entry.sha,
                "branch": location.branch,
            })
            removed += 1
        if removed:
            logger.debug(f"Pruned {removed} history copies")
        return removed

    def read_history(self, location: RemoteLocation, name: str) -> SyncEnvelope:
        """
        Load one history copy by file name.

        Raises:
            RemoteNotFound: If no copy has that name
        """
        self._check_location(location)
        path = posixpath.join(self.history_dir(location), posixpath.basename(name))
        item = self._get_file(location, path)
        if item is None:
            raise RemoteNotFound(f"No history copy named {name}")
        return self._decode(self._file_text(location, item))
