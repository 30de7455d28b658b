"""
Remote store contract.

A remote store reads and writes one envelope at a RemoteLocation under
optimistic concurrency: ``read`` hands out an opaque token and ``write``
refuses to overwrite a document whose token has moved on.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Optional

from marksync.constants import DEFAULT_BRANCH, DEFAULT_FILENAME
from marksync.envelope import SyncEnvelope, validate_envelope


@dataclass(frozen=True)
class RemoteLocation:
    """
    Where the envelope lives.

    A gist location uses ``gist_id`` and ``filename``; an empty ``gist_id``
    means the gist has not been created yet. A repository location uses
    ``owner``, ``repo``, ``branch`` and ``path``.
    """
    kind: str
    gist_id: str = ""
    filename: str = DEFAULT_FILENAME
    owner: str = ""
    repo: str = ""
    branch: str = DEFAULT_BRANCH
    path: str = DEFAULT_FILENAME

    @classmethod
    def gist(cls, gist_id: str = "", filename: str = DEFAULT_FILENAME) -> "RemoteLocation":
        return cls(kind="gist", gist_id=gist_id or "", filename=filename)

    @classmethod
    def repository(cls, owner: str, repo: str, branch: str = DEFAULT_BRANCH,
                   path: str = DEFAULT_FILENAME) -> "RemoteLocation":
        return cls(kind="repository", owner=owner, repo=repo, branch=branch, path=path.lstrip("/"))

    @classmethod
    def from_config(cls, config, gist_id: Optional[str] = None) -> "RemoteLocation":
        if config.backend == "repository":
            return cls.repository(config.owner, config.repo, config.branch, config.path)
        return cls.gist(gist_id if gist_id is not None else config.gist_id, config.gist_filename)

    def with_gist_id(self, gist_id: str) -> "RemoteLocation":
        return replace(self, gist_id=gist_id)

    def describe(self) -> str:
        if self.kind == "repository":
            return f"{self.owner}/{self.repo}@{self.branch}:{self.path}"
        return f"gist:{self.gist_id or '<new>'}/{self.filename}"


@dataclass
class RemoteSnapshot:
    """An envelope as read from the remote, with the token needed to replace it."""
    envelope: SyncEnvelope
    token: str
    location: RemoteLocation


@dataclass
class WriteResult:
    """Token of the newly written document and where it now lives."""
    token: str
    location: RemoteLocation


class RemoteStore(ABC):
    """Backend-independent read/write of one envelope."""

    kind = ""

    def __init__(self, client):
        self.client = client

    def authenticate(self) -> str:
        """Confirm the credential works; returns the account login."""
        return self.client.authenticate()

    @abstractmethod
    def read(self, location: RemoteLocation) -> Optional[RemoteSnapshot]:
        """Return the current snapshot, or None if nothing exists yet."""

    @abstractmethod
    def write(self, location: RemoteLocation, envelope: SyncEnvelope,
              expected_token: Optional[str] = None) -> WriteResult:
        """
        Replace the remote document.

        Raises:
            ConflictError: If ``expected_token`` no longer matches, or the
                document exists and no token was given
        """

    def _check_location(self, location: RemoteLocation) -> None:
        if location.kind != self.kind:
            raise ValueError(f"{type(self).__name__} cannot handle {location.kind} locations")

    @staticmethod
    def _encode(envelope: SyncEnvelope) -> str:
        validate_envelope(envelope)
        return envelope.to_json()

    @staticmethod
    def _decode(text: str) -> SyncEnvelope:
        return SyncEnvelope.from_json(text)
