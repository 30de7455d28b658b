"""
Envelope merging for marksync.

Merges a remote and a local envelope into one: a set union over node
identities where, for nodes present on both sides, the more recently
changed copy wins. Pure functions only, no I/O.
"""
import logging
from typing import Dict, List, Optional

from marksync.envelope import SyncEnvelope, build_envelope, validate_envelope
from marksync.errors import MergeError
from marksync.tree import BookmarkNode
from marksync.utils import now_ms

logger = logging.getLogger(__name__)


def _identity_map(nodes: List[BookmarkNode]) -> Dict[str, BookmarkNode]:
    return {node.id: node for node in nodes}


def pick_newer(local: BookmarkNode, remote: BookmarkNode) -> BookmarkNode:
    """
    Choose between two copies of the same node.

    Compares modification times when both copies carry one, otherwise
    creation times. Ties go to the local copy.
    """
    if local.date_modified is not None and remote.date_modified is not None:
        local_time, remote_time = local.date_modified, remote.date_modified
    else:
        local_time, remote_time = local.date_added, remote.date_added
    return remote if remote_time > local_time else local


def remote_only_additions(remote: SyncEnvelope, local: SyncEnvelope) -> List[BookmarkNode]:
    """Nodes present in the remote envelope but not in the local one, in remote order."""
    local_ids = local.node_ids
    return [node for node in remote.nodes if node.id not in local_ids]


def merge(remote: SyncEnvelope, local: SyncEnvelope, device_id: str,
          now: Optional[int] = None) -> SyncEnvelope:
    """
    Merge a remote envelope into the local one.

    Args:
        remote: Envelope last read from the remote store
        local: Envelope built from the current local tree
        device_id: Identity of the merging instance
        now: Timestamp for the merged envelope (defaults to now)

    Returns:
        A new envelope holding every identity from either side

    Raises:
        ValidationError: If either input is malformed
        MergeError: If the result loses an identity
    """
    validate_envelope(remote)
    validate_envelope(local)

    remote_map = _identity_map(remote.nodes)
    local_map = _identity_map(local.nodes)

    merged: List[BookmarkNode] = []
    kept_remote = 0
    for node in local.nodes:
        other = remote_map.get(node.id)
        if other is None:
            merged.append(node)
            continue
        winner = pick_newer(node, other)
        if winner is other:
            kept_remote += 1
        merged.append(winner)

    added = remote_only_additions(remote, local)
    merged.extend(added)

    result = build_envelope(
        merged,
        device_id=device_id,
        last_modified=now_ms() if now is None else now,
        last_sync=local.metadata.last_sync,
    )

    missing = (set(remote_map) | set(local_map)) - result.node_ids
    if missing:
        raise MergeError(f"Merge dropped {len(missing)} node(s)", {"missing": sorted(missing)})

    logger.debug(
        "Merged %d local and %d remote nodes: %d remote-only, %d remote copies preferred",
        len(local_map), len(remote_map), len(added), kept_remote,
    )
    return result
