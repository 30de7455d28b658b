"""
Local backup files for marksync.

A backup is one JSON document holding the local bookmark envelope and the
settings it was taken with::

    {
      "version": "1.0.0",
      "timestamp": 1792324800000,
      "envelope": {...},
      "settings": {...}
    }

The token in ``settings`` is always masked, so restoring settings never
restores a credential.
"""
import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from marksync.config import SyncConfig
from marksync.db import Database
from marksync.envelope import SyncEnvelope, build_envelope, validate_envelope
from marksync.errors import ValidationError
from marksync.host import BookmarkHost
from marksync.sync import resolve_device_id
from marksync.tree import normalize
from marksync.utils import now_ms

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0.0"


@dataclass
class Backup:
    """Bookmarks plus settings at one instant."""
    envelope: SyncEnvelope
    settings: Dict[str, Any]
    timestamp: int
    version: str = BACKUP_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "envelope": self.envelope.to_dict(),
            "settings": self.settings,
        }

    def to_config(self, token: str = "") -> SyncConfig:
        """Settings as a SyncConfig; unknown keys are ignored and the token is replaced."""
        known = {f.name for f in fields(SyncConfig)}
        values = {key: value for key, value in self.settings.items() if key in known}
        values["token"] = token
        return SyncConfig(**values)


def create_backup(host: BookmarkHost, config: SyncConfig, db: Database,
                  now: Optional[int] = None) -> Backup:
    """
    Snapshot the host tree and the settings.

    Raises:
        ValidationError: If the local tree does not form a valid envelope
    """
    if now is None:
        now = now_ms()
    nodes = normalize(host.get_tree(), now=now)
    envelope = build_envelope(nodes, device_id=resolve_device_id(config, db), last_modified=now,
                              last_sync=db.get_state("last_sync"))
    validate_envelope(envelope)
    return Backup(envelope=envelope, settings=config.redacted(), timestamp=now)


def save_backup(backup: Backup, path: Union[str, Path]) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(backup.to_dict(), f, indent=2, ensure_ascii=False)
    logger.info(f"Wrote backup of {backup.envelope.metadata.total_count} bookmarks to {path}")
    return path


def _shape_problems(data: Dict[str, Any]) -> List[str]:
    problems = []
    version = data.get("version")
    if not isinstance(version, str):
        problems.append("version is not a string")
    elif version.split(".")[0] != BACKUP_VERSION.split(".")[0]:
        problems.append(f"unsupported backup version {version}")
    timestamp = data.get("timestamp")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        problems.append("timestamp is not an integer")
    if not isinstance(data.get("envelope"), dict):
        problems.append("envelope is not an object")
    if not isinstance(data.get("settings"), dict):
        problems.append("settings is not an object")
    return problems


def load_backup(path: Union[str, Path]) -> Backup:
    """
    Read and validate a backup file.

    Raises:
        ValidationError: If the file is unreadable, malformed, or carries an
            invalid envelope
    """
    path = Path(path).expanduser()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ValidationError(f"Cannot read backup {path}", [str(e)])
    except json.JSONDecodeError as e:
        raise ValidationError(f"Backup {path} is not valid JSON", [str(e)])

    if not isinstance(data, dict):
        raise ValidationError("Backup must be a JSON object", [f"got {type(data).__name__}"])
    problems = _shape_problems(data)
    if problems:
        raise ValidationError(f"Invalid backup file {path}", problems)

    envelope = validate_envelope(SyncEnvelope.from_json(json.dumps(data["envelope"])))
    return Backup(envelope=envelope, settings=data["settings"], timestamp=data["timestamp"],
                  version=data["version"])
