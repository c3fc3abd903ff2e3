"""
Error types for Drop Sync.

All errors inherit from DropSyncError for easy catching.
"""


class DropSyncError(Exception):
    """Base exception for all Drop Sync failures."""
    pass


class ConfigurationError(DropSyncError):
    """Raised when the configuration cannot be used to start the service."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class DiscoveryError(DropSyncError):
    """Raised when the watched directory tree cannot be traversed."""

    def __init__(self, root: str, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Cannot scan {root}: {reason}")


class LocalIOError(DropSyncError):
    """Raised when a local stat, open, mkdir or write fails for one file."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Local I/O failure for {path}: {reason}")


class CheckpointWriteError(LocalIOError):
    """Raised when a progress record cannot be written."""
    pass


class RemoteUploadError(DropSyncError):
    """Raised when a block upload or the finalize call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class FileNotStableError(DropSyncError):
    """Raised when a queued file was written to again before its upload began."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} was modified recently")
