"""Configuration management for Drop Sync.

Stores and retrieves service settings from a JSON config file
in the platform-appropriate application data directory.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from drop_sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

# The Kodo block protocol caps a single block at 4 MiB
DEFAULT_BLOCK_SIZE = 4 * 1024 * 1024
MAX_BLOCK_SIZE = 4 * 1024 * 1024

ENV_ACCESS_KEY = "DROP_SYNC_ACCESS_KEY"
ENV_SECRET_KEY = "DROP_SYNC_SECRET_KEY"

# Settings read through int()/float() by the accessors below
INTEGER_KEYS = (
    "walk_interval_seconds",
    "prepared_time_seconds",
    "workers",
    "queue_size",
    "retry_delay_seconds",
    "max_log_size_mb",
    "log_backup_count",
)
NUMBER_KEYS = ("request_timeout_seconds",)

DEFAULT_CONFIG: dict[str, Any] = {
    "path": "",
    "walk_interval_seconds": 30,
    "prepared_time_seconds": 60,
    "bucket": "",
    "access_key": "",
    "secret_key": "",
    "endpoint": "https://up.qiniup.com",
    "suffix": ".pdf",  # Empty = all files
    "exclude_patterns": [],  # Glob patterns to skip (e.g. ["~*", "*.part.pdf"])
    "workers": 4,
    "queue_size": 50,
    "key_prefix": "",
    "progress_dir": "",  # Empty = <path>/progress
    "block_size_bytes": DEFAULT_BLOCK_SIZE,
    "request_timeout_seconds": 300,  # 0 = no timeout
    # ---- failure policy ----
    "retry_on_failure": True,  # release a failed file so a later scan re-queues it
    "retry_delay_seconds": 60,
    "watch_events": False,  # wake the scanner on filesystem events
    # ---- logging ----
    "log_level": "INFO",
    "log_file": "",  # Empty = <config dir>/drop_sync.log
    "max_log_size_mb": 10,
    "log_backup_count": 3,
}


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\DropSync``
    - macOS   : ``~/Library/Application Support/DropSync``
    - Linux   : ``$XDG_CONFIG_HOME/DropSync`` (default ``~/.config``)
    """
    if sys.platform == "win32":
        base = os.environ.get("APPDATA", str(Path.home()))
    elif sys.platform == "darwin":
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / "DropSync"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


class Config:
    """Configuration backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = Path(path) if path else get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def file_path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
            except (json.JSONDecodeError, OSError) as exc:
                raise ConfigurationError(
                    [f"cannot read {self._path}: {exc}"]
                ) from exc
            if not isinstance(stored, dict):
                raise ConfigurationError([f"{self._path} must hold a JSON object"])
            # Merge stored values over defaults so new keys get defaults
            self._data = {**DEFAULT_CONFIG, **stored}
            logger.info("Configuration loaded from %s", self._path)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- watch ----

    @property
    def path(self) -> str:
        """Return the watched root folder."""
        return self._data["path"]

    @property
    def walk_interval(self) -> int:
        """Return seconds between directory scans (minimum 1 s)."""
        return max(1, int(self._data["walk_interval_seconds"]))

    @property
    def prepared_time(self) -> int:
        """Return how long a file must be untouched before upload."""
        return max(0, int(self._data["prepared_time_seconds"]))

    @property
    def suffix(self) -> str:
        """Return the extension filter with a leading dot, or '' for all files."""
        value = str(self._data.get("suffix") or "").strip().lower()
        if value and not value.startswith("."):
            value = "." + value
        return value

    @property
    def exclude_patterns(self) -> list[str]:
        """Return glob patterns used to skip files."""
        return self._data.get("exclude_patterns", [])

    @property
    def watch_events(self) -> bool:
        return bool(self._data.get("watch_events", False))

    # ---- destination ----

    @property
    def bucket(self) -> str:
        return self._data["bucket"]

    @property
    def access_key(self) -> str:
        """Return the access key, falling back to the environment."""
        return self._data.get("access_key") or os.environ.get(ENV_ACCESS_KEY, "")

    @property
    def secret_key(self) -> str:
        """Return the secret key, falling back to the environment."""
        return self._data.get("secret_key") or os.environ.get(ENV_SECRET_KEY, "")

    @property
    def endpoint(self) -> str:
        """Return the upload host URL without a trailing slash."""
        return str(self._data.get("endpoint") or "").rstrip("/")

    @property
    def key_prefix(self) -> str:
        return self._data.get("key_prefix", "")

    # ---- upload engine ----

    @property
    def workers(self) -> int:
        """Return the number of upload workers (minimum 1)."""
        return max(1, int(self._data.get("workers", 4)))

    @property
    def queue_size(self) -> int:
        """Return the dispatcher capacity (minimum 1)."""
        return max(1, int(self._data.get("queue_size", 50)))

    @property
    def progress_dir(self) -> Path:
        """Return the checkpoint directory (defaults to <path>/progress)."""
        configured = self._data.get("progress_dir") or ""
        if configured:
            return Path(configured)
        return Path(self.path) / "progress"

    @property
    def block_size(self) -> int:
        return int(self._data.get("block_size_bytes", DEFAULT_BLOCK_SIZE))

    @property
    def request_timeout(self) -> float | None:
        """Return the HTTP timeout in seconds, or None for no timeout."""
        value = float(self._data.get("request_timeout_seconds", 300))
        return value if value > 0 else None

    # ---- retry ----

    @property
    def retry_on_failure(self) -> bool:
        """Return whether a failed file is released for a later retry."""
        return bool(self._data.get("retry_on_failure", True))

    @property
    def retry_delay(self) -> int:
        """Return seconds a failed file waits before it can be re-queued."""
        return max(0, int(self._data.get("retry_delay_seconds", 60)))

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @property
    def log_file(self) -> Path:
        """Return the log file path."""
        configured = self._data.get("log_file") or ""
        if configured:
            return Path(configured)
        return self._path.parent / "drop_sync.log"

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data.get("max_log_size_mb", 10)))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data.get("log_backup_count", 3)))

    # ---- validation ----

    def validate(self) -> None:
        """Raise ConfigurationError listing every problem found."""
        problems = []
        if not self.path:
            problems.append("'path' is not set")
        elif not os.path.isdir(self.path):
            problems.append(f"watch folder does not exist: {self.path}")
        if not self.bucket:
            problems.append("'bucket' is not set")
        if not self.access_key or not self.secret_key:
            problems.append(
                f"credentials missing (set access_key/secret_key or "
                f"{ENV_ACCESS_KEY}/{ENV_SECRET_KEY})"
            )
        if not self.endpoint:
            problems.append("'endpoint' is not set")
        for key in INTEGER_KEYS:
            try:
                int(self._data.get(key, DEFAULT_CONFIG[key]))
            except (TypeError, ValueError):
                problems.append(f"'{key}' must be an integer")
        for key in NUMBER_KEYS:
            try:
                float(self._data.get(key, DEFAULT_CONFIG[key]))
            except (TypeError, ValueError):
                problems.append(f"'{key}' must be a number")
        try:
            block_size = self.block_size
        except (TypeError, ValueError):
            problems.append("'block_size_bytes' must be an integer")
        else:
            if block_size <= 0 or block_size > MAX_BLOCK_SIZE:
                problems.append(
                    f"'block_size_bytes' must be between 1 and {MAX_BLOCK_SIZE}"
                )
        if problems:
            raise ConfigurationError(problems)
