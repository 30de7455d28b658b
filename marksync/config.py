"""
Configuration management for marksync.

Provides a hierarchical configuration system with sensible defaults.
Supports both global (~/.config/marksync/config.toml) and local
(marksync.toml) configurations.
"""
import os
import tomli
import tomli_w
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from marksync.constants import (
    DEFAULT_API_URL,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BRANCH,
    DEFAULT_CHANGE_DEBOUNCE,
    DEFAULT_FILENAME,
    DEFAULT_HISTORY_KEEP,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    MAX_HISTORY_KEEP,
    MIN_SYNC_INTERVAL,
)
from marksync.errors import ConfigError

BACKENDS = ("gist", "repository")


@dataclass
class SyncConfig:
    """
    marksync configuration with sensible defaults.

    Configuration hierarchy (highest to lowest priority):
    1. Command-line arguments
    2. Environment variables (MARKSYNC_*)
    3. Explicit config file (--config)
    4. Local config file (./marksync.toml or ./.marksyncrc)
    5. User config file (~/.config/marksync/config.toml)
    6. System defaults
    """

    # Remote backend
    backend: str = field(default="gist")  # gist, repository
    token: str = field(default="")
    gist_id: str = field(default="")
    gist_filename: str = field(default=DEFAULT_FILENAME)
    owner: str = field(default="")
    repo: str = field(default="")
    branch: str = field(default=DEFAULT_BRANCH)
    path: str = field(default=DEFAULT_FILENAME)
    history_keep: int = field(default=DEFAULT_HISTORY_KEEP)

    # Network settings
    api_url: str = field(default=DEFAULT_API_URL)
    timeout: int = field(default=DEFAULT_REQUEST_TIMEOUT)  # Per-request timeout in seconds
    user_agent: str = field(default="marksync/0.3")

    # Scheduling
    auto_sync: bool = field(default=False)
    sync_interval: int = field(default=DEFAULT_SYNC_INTERVAL)  # minutes
    change_debounce: float = field(default=DEFAULT_CHANGE_DEBOUNCE)  # seconds
    apply_remote_additions: bool = field(default=False)

    # Local host
    device_id: str = field(default="")
    state_db: str = field(default="~/.config/marksync/state.db")
    bookmarks_file: str = field(default="")  # Chromium "Bookmarks" file; searched if empty
    browser: str = field(default="chrome")
    profile: str = field(default="Default")

    # Retry policy
    retry_max_attempts: int = field(default=DEFAULT_MAX_ATTEMPTS)
    retry_initial_delay: float = field(default=DEFAULT_INITIAL_DELAY)
    retry_max_delay: float = field(default=DEFAULT_MAX_DELAY)
    retry_backoff_factor: float = field(default=DEFAULT_BACKOFF_FACTOR)
    retry_jitter: bool = field(default=True)

    # Advanced
    log_level: str = field(default="INFO")

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "SyncConfig":
        """
        Load configuration from files and environment.

        Args:
            config_file: Specific config file to load (overrides search)

        Returns:
            Merged configuration object
        """
        config = cls()

        user_config_path = Path.home() / ".config" / "marksync" / "config.toml"
        if user_config_path.exists():
            config._merge(cls._load_toml(user_config_path))

        local_paths = [
            Path.cwd() / "marksync.toml",
            Path.cwd() / ".marksyncrc",
        ]

        for path in local_paths:
            if path.exists():
                config._merge(cls._load_toml(path))
                break

        if config_file and config_file.exists():
            config._merge(cls._load_toml(config_file))

        config._apply_env_vars()
        config._expand_paths()
        config._clamp()

        return config

    @staticmethod
    def _load_toml(path: Path) -> Dict[str, Any]:
        """Load TOML configuration file."""
        with open(path, "rb") as f:
            return tomli.load(f)

    def _merge(self, data: Dict[str, Any]):
        """Merge configuration data into this instance."""
        for key, value in data.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def _apply_env_vars(self):
        """Apply environment variables with MARKSYNC_ prefix."""
        prefix = "MARKSYNC_"
        for key, value in os.environ.items():
            if key.startswith(prefix):
                config_key = key[len(prefix):].lower()
                if hasattr(self, config_key):
                    current_value = getattr(self, config_key)
                    if isinstance(current_value, bool):
                        setattr(self, config_key, value.lower() in ("true", "1", "yes"))
                    elif isinstance(current_value, int):
                        setattr(self, config_key, int(value))
                    elif isinstance(current_value, float):
                        setattr(self, config_key, float(value))
                    else:
                        setattr(self, config_key, value)

    def _expand_paths(self):
        """Expand ~ and environment variables in paths."""
        path_fields = ["state_db", "bookmarks_file"]
        for field_name in path_fields:
            value = getattr(self, field_name)
            if isinstance(value, str) and value:
                expanded = os.path.expanduser(os.path.expandvars(value))
                setattr(self, field_name, expanded)

    def _clamp(self):
        """The auto-sync interval is never shorter than one minute."""
        try:
            self.sync_interval = max(MIN_SYNC_INTERVAL, int(self.sync_interval))
        except (TypeError, ValueError):
            self.sync_interval = DEFAULT_SYNC_INTERVAL

    def validate(self) -> List[str]:
        """
        Check the configuration for problems.

        Returns:
            Human-readable error messages (empty when valid)
        """
        errors = []
        if self.backend not in BACKENDS:
            errors.append(f"Unknown backend '{self.backend}' (expected one of {', '.join(BACKENDS)})")
        if not self.token.strip():
            errors.append("GitHub token is not set")
        if self.backend == "repository":
            if not self.owner.strip():
                errors.append("Repository owner is not set")
            if not self.repo.strip():
                errors.append("Repository name is not set")
            if not self.branch.strip():
                errors.append("Repository branch is not set")
            if not self.path.strip():
                errors.append("Repository file path is not set")
        if not isinstance(self.sync_interval, int) or self.sync_interval < MIN_SYNC_INTERVAL:
            errors.append(f"Sync interval must be at least {MIN_SYNC_INTERVAL} minute")
        if not 0 <= int(self.history_keep) <= MAX_HISTORY_KEEP:
            errors.append(f"history_keep must be between 0 and {MAX_HISTORY_KEEP}")
        if int(self.retry_max_attempts) < 1:
            errors.append("retry_max_attempts must be at least 1")
        return errors

    def require_valid(self) -> "SyncConfig":
        """Raise ConfigError if validate() reports problems."""
        errors = self.validate()
        if errors:
            raise ConfigError(f"Configuration error: {'; '.join(errors)}", errors)
        return self

    def save(self, path: Optional[Path] = None):
        """
        Save current configuration to TOML file.

        Args:
            path: Path to save to (defaults to user config)
        """
        if path is None:
            path = Path.home() / ".config" / "marksync" / "config.toml"

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            tomli_w.dump(asdict(self), f)

    def redacted(self) -> Dict[str, Any]:
        """Configuration as a dict with the token masked, for display."""
        data = asdict(self)
        if data["token"]:
            data["token"] = data["token"][:4] + "******"
        return data


# Global configuration instance
_config: Optional[SyncConfig] = None


def get_config(reload: bool = False, config_file: Optional[Path] = None) -> SyncConfig:
    """
    Get the global configuration instance.

    Args:
        reload: Force reload configuration from files
        config_file: Specific config file to load

    Returns:
        Global configuration instance
    """
    global _config
    if _config is None or reload:
        _config = SyncConfig.load(config_file)
    return _config


def init_config(config_file: Optional[Path] = None, **kwargs) -> SyncConfig:
    """
    Initialize configuration with command-line overrides.

    Args:
        config_file: Specific config file to load
        **kwargs: Configuration overrides (None values are ignored)

    Returns:
        Configured instance
    """
    config = get_config(reload=config_file is not None, config_file=config_file)

    for key, value in kwargs.items():
        if hasattr(config, key) and value is not None:
            setattr(config, key, value)

    return config
