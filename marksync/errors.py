"""
Error taxonomy for the sync engine.

Every failure the engine can surface is one of these classes. The
orchestrator is the only place that turns them into user-visible outcomes.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all classified sync failures."""

    kind = "sync"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(SyncError):
    """Malformed envelope or node set. Never retried, never written."""

    kind = "validation"

    def __init__(self, message: str, problems: Optional[list] = None):
        super().__init__(message, {"problems": list(problems or [])})
        self.problems = list(problems or [])


class ConfigError(ValidationError):
    """Configuration is incomplete or inconsistent."""

    kind = "config"


class AuthenticationError(SyncError):
    """Credential missing, invalid or expired."""

    kind = "authentication"


class TransientTransportError(SyncError):
    """Timeouts, connection resets, rate limiting and 5xx responses."""

    kind = "transient"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.retry_after = retry_after


class ConflictError(SyncError):
    """The concurrency token no longer matches the remote document."""

    kind = "conflict"


class MergeError(SyncError):
    """The merge result violates a resolver invariant."""

    kind = "merge"


class RemoteNotFound(SyncError):
    """The remote object does not exist. Backends turn this into ``None``."""

    kind = "not_found"
