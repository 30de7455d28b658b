"""
Gist backend.

The envelope is one file inside a private gist. The concurrency token is
the gist's newest history version. The gist API has no conditional
update, so a write re-reads the gist and compares versions immediately
before patching it.
"""
import logging
from typing import Any, Dict, Optional

from marksync.constants import GIST_DESCRIPTION
from marksync.envelope import SyncEnvelope
from marksync.errors import ConflictError, RemoteNotFound
from marksync.remote.base import RemoteLocation, RemoteSnapshot, RemoteStore, WriteResult

logger = logging.getLogger(__name__)


class GistStore(RemoteStore):
    """Envelope stored as a file in a GitHub gist."""

    kind = "gist"

    def __init__(self, client, description: str = GIST_DESCRIPTION, public: bool = False):
        super().__init__(client)
        self.description = description
        self.public = public

    @staticmethod
    def version_of(gist: Dict[str, Any]) -> str:
        history = gist.get("history") or []
        if history:
            return history[0].get("version", "")
        return gist.get("updated_at", "")

    def _fetch(self, gist_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client.get(f"/gists/{gist_id}")
        except RemoteNotFound:
            return None

    def _file_content(self, file_info: Dict[str, Any]) -> str:
        # Files over ~1MB come back truncated and must be fetched raw
        content = file_info.get("content")
        if file_info.get("truncated") or content is None:
            return self.client.get_text(file_info["raw_url"])
        return content

    def read(self, location: RemoteLocation) -> Optional[RemoteSnapshot]:
        self._check_location(location)
        if not location.gist_id:
            return None

        gist = self._fetch(location.gist_id)
        if gist is None:
            logger.info(f"Gist {location.gist_id} does not exist")
            return None

        file_info = (gist.get("files") or {}).get(location.filename)
        if not file_info:
            return None

        envelope = self._decode(self._file_content(file_info))
        return RemoteSnapshot(envelope=envelope, token=self.version_of(gist), location=location)

    def write(self, location: RemoteLocation, envelope: SyncEnvelope,
              expected_token: Optional[str] = None) -> WriteResult:
        self._check_location(location)
        content = self._encode(envelope)
        files = {location.filename: {"content": content}}

        current = self._fetch(location.gist_id) if location.gist_id else None

        if current is None:
            if expected_token is not None:
                raise ConflictError(f"Gist {location.gist_id} disappeared since it was read")
            return self._create(location, files)

        current_version = self.version_of(current)
        if expected_token is None:
            if location.filename in (current.get("files") or {}):
                raise ConflictError(
                    f"Gist {location.gist_id} already holds {location.filename}; "
                    "refusing to overwrite without a version token"
                )
        elif expected_token != current_version:
            raise ConflictError(
                f"Gist {location.gist_id} changed since it was read "
                f"(expected {expected_token[:8]}, found {current_version[:8]})"
            )

        gist = self.client.patch(f"/gists/{location.gist_id}", json={"files": files})
        token = self.version_of(gist)
        logger.debug(f"Updated gist {location.gist_id} to version {token[:8]}")
        return WriteResult(token=token, location=location)

    def _create(self, location: RemoteLocation, files: Dict[str, Any]) -> WriteResult:
        gist = self.client.post("/gists", json={
            "description": self.description,
            "public": self.public,
            "files": files,
        })
        new_location = location.with_gist_id(gist["id"])
        logger.info(f"Created gist {gist['id']}")
        return WriteResult(token=self.version_of(gist), location=new_location)
