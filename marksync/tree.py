"""
Tree normalization for marksync.

Turns the host's bookmark forest (nested dicts in the browser shape) into a
flat, order-stable list of BookmarkNode objects. The walk is iterative and
never mutates the snapshot it is given.
"""
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from marksync.utils import now_ms


@dataclass
class BookmarkNode:
    """
    One entry of the canonical node set.

    Attributes:
        id: Host-assigned identity, never reassigned here
        title: Display title (empty string when the host has none)
        url: Target URL; None for folders
        parent_id: Identity of the containing folder (None only for roots)
        index: Position among its siblings
        date_added: Creation instant in epoch ms
        date_modified: Last modification instant in epoch ms, when known
    """
    id: str
    title: str = ""
    url: Optional[str] = None
    parent_id: Optional[str] = None
    index: int = 0
    date_added: int = 0
    date_modified: Optional[int] = None

    @property
    def is_bookmark(self) -> bool:
        return bool(self.url)

    @property
    def is_folder(self) -> bool:
        return not self.url

    @property
    def last_changed(self) -> int:
        """Best known change instant: modification time, else creation time."""
        if self.date_modified is not None:
            return self.date_modified
        return self.date_added

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "index": self.index,
            "dateAdded": self.date_added,
        }
        if self.url:
            data["url"] = self.url
        if self.parent_id is not None:
            data["parentId"] = self.parent_id
        if self.date_modified is not None:
            data["dateModified"] = self.date_modified
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], parent_id: Optional[str] = None,
                  position: int = 0, now: Optional[int] = None) -> "BookmarkNode":
        """
        Build a node from a browser-shaped dict, applying the field defaults.

        Args:
            data: Raw node (``id``, ``title``, ``url``, ``parentId``, ...)
            parent_id: Parent found by the walk, used when ``parentId`` is absent
            position: Discovery position, used when ``index`` is absent
            now: Fallback for a missing ``dateAdded``
        """
        raw_parent = data.get("parentId", parent_id)
        raw_index = data.get("index")
        raw_added = data.get("dateAdded")
        raw_modified = data.get("dateModified", data.get("dateGroupModified"))
        return cls(
            id=str(data["id"]) if data.get("id") is not None else "",
            title=data.get("title") or "",
            url=data.get("url") or None,
            parent_id=str(raw_parent) if raw_parent is not None else None,
            index=int(raw_index) if raw_index is not None else position,
            date_added=int(raw_added) if raw_added is not None else (now if now is not None else now_ms()),
            date_modified=int(raw_modified) if raw_modified is not None else None,
        )


def _walk(forest: List[Dict[str, Any]]) -> Iterator[Tuple[Dict[str, Any], Optional[str], int, int]]:
    """Yield (raw_node, walked_parent_id, position, depth) in depth-first pre-order."""
    stack = [(raw, None, pos, 0) for pos, raw in enumerate(forest)]
    stack.reverse()
    while stack:
        raw, parent_id, position, depth = stack.pop()
        yield raw, parent_id, position, depth
        children = raw.get("children") or []
        own_id = str(raw["id"]) if raw.get("id") is not None else None
        for pos in range(len(children) - 1, -1, -1):
            stack.append((children[pos], own_id, pos, depth + 1))


def _is_synthetic_root(raw: Dict[str, Any], depth: int) -> bool:
    return depth == 0 and raw.get("parentId") is None


def normalize(host_tree: List[Dict[str, Any]], now: Optional[int] = None) -> List[BookmarkNode]:
    """
    Convert the host forest into the canonical flat node list.

    Synthetic roots are skipped but their children are walked. Default
    containers (direct children of a synthetic root with neither url nor
    children) are dropped. A malformed node carrying both a url and
    children is emitted as a bookmark and its children are still emitted,
    pointing at it; validation reports the inconsistency.

    Args:
        host_tree: Forest as returned by the host store
        now: Timestamp used for nodes without ``dateAdded`` (defaults to now)

    Returns:
        Nodes in depth-first order with sibling order preserved
    """
    if now is None:
        now = now_ms()

    root_ids = set()
    nodes: List[BookmarkNode] = []
    for raw, parent_id, position, depth in _walk(host_tree):
        if _is_synthetic_root(raw, depth):
            root_ids.add(str(raw.get("id")))
            continue
        is_default_container = (
            parent_id in root_ids
            and not raw.get("url")
            and not raw.get("children")
        )
        if is_default_container:
            continue
        nodes.append(BookmarkNode.from_dict(raw, parent_id=parent_id, position=position, now=now))
    return nodes


def flatten_tree(dicts: List[Dict[str, Any]], now: Optional[int] = None) -> List[BookmarkNode]:
    """
    Flatten nested dict nodes without dropping anything.

    Unlike ``normalize`` every node is kept, top-level ones included; a
    child without ``parentId`` gets the id of the node it is nested in.
    """
    if now is None:
        now = now_ms()
    return [
        BookmarkNode.from_dict(raw, parent_id=parent_id, position=position, now=now)
        for raw, parent_id, position, _ in _walk(dicts)
    ]


def count_nodes(nodes: List[BookmarkNode]) -> Tuple[int, int]:
    """Return (bookmark count, folder count)."""
    total = sum(1 for node in nodes if node.is_bookmark)
    return total, len(nodes) - total


def index_nodes(nodes: List[BookmarkNode]) -> Tuple[Dict[str, BookmarkNode], Dict[Optional[str], List[str]]]:
    """
    Build the identity arena and the parent -> children index.

    Children lists are ordered by ``index`` then by position in ``nodes``.
    """
    by_id: Dict[str, BookmarkNode] = {}
    children: Dict[Optional[str], List[str]] = defaultdict(list)
    for node in nodes:
        by_id[node.id] = node
        children[node.parent_id].append(node.id)
    for parent, ids in children.items():
        ids.sort(key=lambda node_id: by_id[node_id].index)
    return by_id, dict(children)
