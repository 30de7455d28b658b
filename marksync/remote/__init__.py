"""
Remote storage backends for the sync envelope.
"""
from typing import Optional

from marksync.remote.base import RemoteLocation, RemoteSnapshot, RemoteStore, WriteResult
from marksync.remote.client import GitHubClient
from marksync.remote.gist import GistStore
from marksync.remote.repository import HistoryEntry, RepositoryStore


def create_store(config, client: Optional[GitHubClient] = None) -> RemoteStore:
    """Build the store selected by ``config.backend``."""
    client = client or GitHubClient.from_config(config)
    if config.backend == "repository":
        return RepositoryStore(client, history_keep=config.history_keep)
    if config.backend == "gist":
        return GistStore(client)
    raise ValueError(f"Unknown backend: {config.backend}")


__all__ = [
    "RemoteLocation",
    "RemoteSnapshot",
    "RemoteStore",
    "WriteResult",
    "GitHubClient",
    "GistStore",
    "RepositoryStore",
    "HistoryEntry",
    "create_store",
]
