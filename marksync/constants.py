"""
Constants for marksync.

These constants are used by various modules for sensible defaults.
Most of them can be overridden through the config system.
"""

# Payload format
SCHEMA_VERSION = "1.0.0"
DEFAULT_FILENAME = "bookmarks.json"

# GitHub API
DEFAULT_API_URL = "https://api.github.com"
GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"
DEFAULT_BRANCH = "main"
GIST_DESCRIPTION = "marksync bookmarks"

# Network timeouts (in seconds)
DEFAULT_REQUEST_TIMEOUT = 15

# Retry defaults (seconds)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_BACKOFF_FACTOR = 2.0
JITTER_RANGE = (0.75, 1.0)

# Messages that mark a failure as transient when no typed error is available
RETRYABLE_PATTERNS = (
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "ENOTFOUND",
    "rate limit",
    "Network Error",
)

# Remote history retention
HISTORY_DIR = "history"
DEFAULT_HISTORY_KEEP = 5
MAX_HISTORY_KEEP = 10

# Scheduling
DEFAULT_SYNC_INTERVAL = 60  # minutes
MIN_SYNC_INTERVAL = 1  # minutes
DEFAULT_CHANGE_DEBOUNCE = 2.0  # seconds

# Local bookkeeping
MAX_SYNC_RECORDS = 100
