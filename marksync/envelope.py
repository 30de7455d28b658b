"""
The sync envelope: the versioned payload exchanged with the remote store.

An envelope wraps a canonical node set together with provenance (device,
timestamp) and derived counts. Counts are recomputed from the nodes every
time an envelope is built or parsed; values found in a payload are ignored.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from marksync.constants import SCHEMA_VERSION
from marksync.errors import ValidationError
from marksync.tree import BookmarkNode, count_nodes, flatten_tree, normalize
from marksync.utils import now_ms, sha256_json


@dataclass
class EnvelopeMetadata:
    """Derived envelope data. Never carried over from input."""
    total_count: int = 0
    folder_count: int = 0
    last_sync: Optional[int] = None
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "folderCount": self.folder_count,
            "lastSync": self.last_sync,
            "schemaVersion": self.schema_version,
        }


@dataclass
class SyncEnvelope:
    """
    Versioned payload wrapping a normalized node set.

    Attributes:
        schema_version: Semantic version of the payload shape
        last_modified: Epoch ms at which the envelope was produced
        device_id: Opaque identifier of the producing instance
        nodes: Canonical node list (flat, depth-first)
        metadata: Derived counts, recomputed from ``nodes``
    """
    schema_version: str
    last_modified: int
    device_id: str
    nodes: List[BookmarkNode] = field(default_factory=list)
    metadata: EnvelopeMetadata = field(default_factory=EnvelopeMetadata)

    def recompute(self) -> "SyncEnvelope":
        total, folders = count_nodes(self.nodes)
        self.metadata = EnvelopeMetadata(
            total_count=total,
            folder_count=folders,
            last_sync=self.metadata.last_sync,
            schema_version=self.schema_version,
        )
        return self

    @property
    def node_ids(self) -> set:
        return {node.id for node in self.nodes}

    def content_hash(self) -> str:
        """Hash of the node set only; provenance does not change it."""
        return sha256_json([node.to_dict() for node in self.nodes])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "lastModified": self.last_modified,
            "deviceId": self.device_id,
            "nodes": [node.to_dict() for node in self.nodes],
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Union[Dict[str, Any], List[Any]]) -> "SyncEnvelope":
        """
        Parse a payload read from the remote store.

        Accepts the envelope shape, and also a bare node forest as written
        by older clients, which is normalized into a provenance-less envelope.

        Raises:
            ValidationError: If the payload has the wrong shape
        """
        if isinstance(data, list):
            nodes = normalize(data)
            return build_envelope(nodes, device_id="unknown", last_modified=0)

        if not isinstance(data, dict):
            raise ValidationError("Envelope payload must be a JSON object",
                                  [f"got {type(data).__name__}"])

        missing = [key for key in ("schemaVersion", "lastModified", "deviceId", "nodes")
                   if key not in data]
        if missing:
            raise ValidationError("Envelope is missing required fields",
                                  [f"missing {key}" for key in missing])

        raw_nodes = data["nodes"]
        if not isinstance(raw_nodes, list):
            raise ValidationError("Envelope nodes must be a list", ["nodes is not a list"])
        if any(not isinstance(raw, dict) for raw in raw_nodes):
            raise ValidationError("Envelope nodes must be objects", ["non-object node"])

        if any(raw.get("children") for raw in raw_nodes):
            nodes = flatten_tree(raw_nodes)
        else:
            nodes = [BookmarkNode.from_dict(raw, position=pos) for pos, raw in enumerate(raw_nodes)]

        metadata = data.get("metadata") or {}
        try:
            last_modified = int(data["lastModified"])
        except (TypeError, ValueError):
            raise ValidationError("Envelope lastModified must be an integer",
                                  [f"lastModified={data['lastModified']!r}"])
        envelope = cls(
            schema_version=str(data["schemaVersion"]),
            last_modified=last_modified,
            device_id=str(data["deviceId"]),
            nodes=nodes,
            metadata=EnvelopeMetadata(last_sync=metadata.get("lastSync")),
        )
        return envelope.recompute()

    @classmethod
    def from_json(cls, text: str) -> "SyncEnvelope":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError("Remote document is not valid JSON", [str(e)])
        return cls.from_dict(data)


def build_envelope(nodes: List[BookmarkNode], device_id: str,
                   last_modified: Optional[int] = None,
                   last_sync: Optional[int] = None) -> SyncEnvelope:
    """Wrap a node list into a fresh envelope with recomputed metadata."""
    envelope = SyncEnvelope(
        schema_version=SCHEMA_VERSION,
        last_modified=now_ms() if last_modified is None else last_modified,
        device_id=device_id,
        nodes=list(nodes),
        metadata=EnvelopeMetadata(last_sync=last_sync),
    )
    return envelope.recompute()


def envelope_problems(envelope: SyncEnvelope) -> List[str]:
    """Return every structural problem found in the envelope (empty when valid)."""
    problems = []

    major = envelope.schema_version.split(".")[0]
    if major != SCHEMA_VERSION.split(".")[0]:
        problems.append(f"unsupported schema version {envelope.schema_version}")
    if not envelope.device_id:
        problems.append("device id is empty")
    if envelope.last_modified < 0:
        problems.append("lastModified is negative")

    by_id: Dict[str, BookmarkNode] = {}
    for node in envelope.nodes:
        if not node.id:
            problems.append("node without id")
            continue
        if node.id in by_id:
            problems.append(f"duplicate node id {node.id}")
        by_id[node.id] = node
        if node.index < 0:
            problems.append(f"node {node.id} has negative index")
        if not isinstance(node.title, str):
            problems.append(f"node {node.id} title is not a string")

    for node in envelope.nodes:
        parent = by_id.get(node.parent_id) if node.parent_id is not None else None
        if parent is not None and parent.is_bookmark:
            problems.append(f"node {node.id} is a child of bookmark {parent.id}")

    # Parent chains must terminate
    for node in envelope.nodes:
        seen = set()
        current = node
        while current is not None and current.parent_id is not None:
            if current.id in seen:
                problems.append(f"parent cycle through node {node.id}")
                break
            seen.add(current.id)
            current = by_id.get(current.parent_id)

    total, folders = count_nodes(envelope.nodes)
    if (envelope.metadata.total_count, envelope.metadata.folder_count) != (total, folders):
        problems.append("metadata counts do not match nodes")

    return problems


def validate_envelope(envelope: SyncEnvelope) -> SyncEnvelope:
    """
    Check the envelope's structure.

    Raises:
        ValidationError: Listing every problem found

    Returns:
        The envelope itself, for chaining
    """
    problems = envelope_problems(envelope)
    if problems:
        raise ValidationError(f"Invalid envelope: {problems[0]}", problems)
    return envelope
