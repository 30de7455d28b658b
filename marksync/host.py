"""
Local bookmark hosts.

A host is the browser-side store marksync reads the live tree from and,
optionally, writes remote additions back into. The Chromium host works on
the profile's ``Bookmarks`` JSON file shared by Chrome, Edge, Brave and
Vivaldi.
"""
import os
import json
import uuid
import logging
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from marksync.tree import BookmarkNode
from marksync.utils import chromium_to_ms, ms_to_chromium

logger = logging.getLogger(__name__)

# Chromium root folders, in the order the browser shows them
CHROMIUM_ROOTS = ("bookmark_bar", "other", "synced")
SYNTHETIC_ROOT_ID = "0"


class Browser(Enum):
    """Supported Chromium-family browsers."""
    CHROME = "chrome"
    EDGE = "edge"
    BRAVE = "brave"
    VIVALDI = "vivaldi"


def find_chromium_bookmarks(browser: str = "chrome", profile: str = "Default",
                            home: Optional[Path] = None) -> Optional[Path]:
    """
    Find a browser profile's bookmark file.

    Returns:
        Path to the ``Bookmarks`` file or None if not found
    """
    home = home or Path.home()
    profile = profile or "Default"

    paths = {
        Browser.CHROME: [
            home / '.config' / 'google-chrome' / profile / 'Bookmarks',
            home / 'Library' / 'Application Support' / 'Google' / 'Chrome' / profile / 'Bookmarks',
            home / 'AppData' / 'Local' / 'Google' / 'Chrome' / 'User Data' / profile / 'Bookmarks',
        ],
        Browser.EDGE: [
            home / '.config' / 'microsoft-edge' / profile / 'Bookmarks',
            home / 'Library' / 'Application Support' / 'Microsoft Edge' / profile / 'Bookmarks',
            home / 'AppData' / 'Local' / 'Microsoft' / 'Edge' / 'User Data' / profile / 'Bookmarks',
        ],
        Browser.BRAVE: [
            home / '.config' / 'BraveSoftware' / 'Brave-Browser' / profile / 'Bookmarks',
            home / 'Library' / 'Application Support' / 'BraveSoftware' / 'Brave-Browser' / profile / 'Bookmarks',
            home / 'AppData' / 'Local' / 'BraveSoftware' / 'Brave-Browser' / 'User Data' / profile / 'Bookmarks',
        ],
        Browser.VIVALDI: [
            home / '.config' / 'vivaldi' / profile / 'Bookmarks',
            home / 'Library' / 'Application Support' / 'Vivaldi' / profile / 'Bookmarks',
            home / 'AppData' / 'Local' / 'Vivaldi' / 'User Data' / profile / 'Bookmarks',
        ],
    }

    try:
        selected = Browser(browser.lower())
    except ValueError:
        logger.warning(f"Unsupported browser: {browser}")
        return None

    for path in paths[selected]:
        if path.exists():
            return path

    logger.warning(f"Could not find {selected.value} bookmark file")
    return None


class BookmarkHost(ABC):
    """Source of the live bookmark forest."""

    @abstractmethod
    def get_tree(self) -> List[Dict[str, Any]]:
        """Return the full forest as browser-shaped nested dicts."""

    def create_nodes(self, nodes: List[BookmarkNode]) -> int:
        """
        Insert nodes that exist remotely but not locally.

        Parents must precede their children in ``nodes``. Returns the
        number of nodes created.
        """
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    @property
    def writable(self) -> bool:
        return type(self).create_nodes is not BookmarkHost.create_nodes

    def fingerprint(self) -> Optional[Any]:
        """Cheap value that changes whenever the tree does; None if unknown."""
        return None


class ChromiumBookmarksHost(BookmarkHost):
    """Host backed by a Chromium ``Bookmarks`` JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def from_config(cls, config) -> "ChromiumBookmarksHost":
        if config.bookmarks_file:
            return cls(Path(config.bookmarks_file))
        path = find_chromium_bookmarks(config.browser, config.profile)
        if path is None:
            raise FileNotFoundError(
                f"No bookmark file found for {config.browser} profile {config.profile}; "
                "set bookmarks_file in the configuration"
            )
        return cls(path)

    def fingerprint(self) -> Optional[Any]:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def _load(self) -> Dict[str, Any]:
        with open(self.path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _save(self, data: Dict[str, Any]) -> None:
        # Replace atomically so the browser never sees a half-written file
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".Bookmarks.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=3, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _convert(self, raw: Dict[str, Any], parent_id: str, index: int) -> Dict[str, Any]:
        node = {
            "id": str(raw.get("id")),
            "parentId": parent_id,
            "index": index,
            "title": raw.get("name", ""),
        }
        added = chromium_to_ms(raw.get("date_added"))
        if added is not None:
            node["dateAdded"] = added
        if raw.get("type") == "url":
            node["url"] = raw.get("url")
        else:
            modified = chromium_to_ms(raw.get("date_modified"))
            if modified is not None:
                node["dateGroupModified"] = modified
            node["children"] = [
                self._convert(child, node["id"], position)
                for position, child in enumerate(raw.get("children", []))
            ]
        return node

    def get_tree(self) -> List[Dict[str, Any]]:
        data = self._load()
        roots = data.get("roots", {})
        children = [
            self._convert(roots[name], SYNTHETIC_ROOT_ID, position)
            for position, name in enumerate(name for name in CHROMIUM_ROOTS if name in roots)
        ]
        return [{"id": SYNTHETIC_ROOT_ID, "title": "", "children": children}]

    def create_nodes(self, nodes: List[BookmarkNode]) -> int:
        if not nodes:
            return 0

        data = self._load()
        roots = data.get("roots", {})
        if "other" not in roots:
            raise ValueError(f"{self.path} has no 'other' root folder")

        by_id: Dict[str, Dict[str, Any]] = {}
        stack = list(roots.values())
        while stack:
            raw = stack.pop()
            by_id[str(raw.get("id"))] = raw
            stack.extend(raw.get("children", []))

        created = 0
        for node in nodes:
            if node.id in by_id:
                continue
            parent = by_id.get(node.parent_id) if node.parent_id else None
            if parent is None or parent.get("type") == "url":
                parent = roots["other"]

            raw = {
                "id": node.id,
                "guid": str(uuid.uuid4()),
                "name": node.title,
                "date_added": ms_to_chromium(node.date_added),
            }
            if node.url:
                raw["type"] = "url"
                raw["url"] = node.url
            else:
                raw["type"] = "folder"
                raw["children"] = []
                raw["date_modified"] = ms_to_chromium(node.last_changed)

            siblings = parent.setdefault("children", [])
            siblings.insert(min(max(node.index, 0), len(siblings)), raw)
            by_id[node.id] = raw
            created += 1

        if created:
            # Chromium rejects a stale checksum; without one it recomputes
            data.pop("checksum", None)
            self._save(data)
            logger.info(f"Added {created} remote bookmark(s) to {self.path}")
        return created
