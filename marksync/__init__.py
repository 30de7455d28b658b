"""
marksync - Bookmark Sync Engine

Keeps a browser's bookmark tree in sync with a remote copy stored in a
GitHub gist or repository.

Design Principles:
- The browser tree is flattened into a versioned envelope before it leaves the machine
- Merges are a union over node identities; nothing is lost on conflict
- Writes use optimistic concurrency and retry once on conflict
- Transient network failures back off and fall into a durable offline queue

Example Usage:
    >>> from marksync import SyncOrchestrator, ChromiumBookmarksHost, Database, create_store, get_config
    >>> config = get_config()
    >>> orchestrator = SyncOrchestrator(
    ...     host=ChromiumBookmarksHost.from_config(config),
    ...     store=create_store(config),
    ...     db=Database(config.state_db),
    ...     config=config,
    ... )
    >>> outcome = orchestrator.sync_now()
"""

__version__ = "0.3.0"
__author__ = "marksync Contributors"

# Data model
from marksync.tree import BookmarkNode, normalize
from marksync.envelope import SyncEnvelope, build_envelope, validate_envelope

# Configuration
from marksync.config import SyncConfig, get_config, init_config

# State
from marksync.db import Database
from marksync.queue import OfflineQueue

# Sync engine
from marksync.retry import RetryPolicy
from marksync.host import BookmarkHost, ChromiumBookmarksHost
from marksync.remote import RemoteLocation, create_store
from marksync.sync import (
    AutoSyncScheduler,
    ProgressChannel,
    SyncOrchestrator,
    SyncOutcome,
    SyncState,
)

# Errors
from marksync.errors import (
    SyncError,
    ValidationError,
    ConfigError,
    AuthenticationError,
    TransientTransportError,
    ConflictError,
    MergeError,
)

__all__ = [
    # Data model
    "BookmarkNode",
    "normalize",
    "SyncEnvelope",
    "build_envelope",
    "validate_envelope",
    # Config
    "SyncConfig",
    "get_config",
    "init_config",
    # State
    "Database",
    "OfflineQueue",
    # Sync engine
    "RetryPolicy",
    "BookmarkHost",
    "ChromiumBookmarksHost",
    "RemoteLocation",
    "create_store",
    "AutoSyncScheduler",
    "ProgressChannel",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncState",
    # Errors
    "SyncError",
    "ValidationError",
    "ConfigError",
    "AuthenticationError",
    "TransientTransportError",
    "ConflictError",
    "MergeError",
]
