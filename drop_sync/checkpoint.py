"""
Checkpoint persistence for resumable uploads.

Each file being uploaded gets one progress record under the checkpoint
directory, named after its fingerprint::

    <progress dir>/<md5(bucket:key:path:mtime_ns)>.progress

The record lists every fixed-size block of the file and whether it has
been committed to the remote store.  It is rewritten after every block,
so a crash costs at most the block that was in flight.  A record that
cannot be read back (torn write, hand edits, older schema) is treated as
absent and the file is uploaded from scratch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from drop_sync.errors import CheckpointWriteError, LocalIOError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
RECORD_SUFFIX = ".progress"


def fingerprint(bucket: str, key: str, local_path: str, mtime_ns: int) -> str:
    """Return the hex MD5 identifying one version of one local file."""
    raw = f"{bucket}:{key}:{local_path}:{mtime_ns}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def record_key_for(fp: str) -> str:
    """Return the checkpoint file name for fingerprint *fp*."""
    return fp + RECORD_SUFFIX


def block_count(size: int, block_size: int) -> int:
    """Return ceil(size / block_size)."""
    if block_size <= 0:
        raise ValueError("block_size must be positive")
    return (size + block_size - 1) // block_size


@dataclass
class BlockState:
    """Upload state of a single block."""
    index: int
    token: str = ""
    expires_at: int = 0  # Unix seconds; 0 = no remote context yet
    committed: bool = False
    crc32: int = 0
    host: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockState:
        return cls(
            index=int(data["index"]),
            token=str(data.get("token", "")),
            expires_at=int(data.get("expires_at", 0)),
            committed=bool(data.get("committed", False)),
            crc32=int(data.get("crc32", 0)),
            host=str(data.get("host", "")),
        )


@dataclass
class ProgressRecord:
    """Persisted block progress for one fingerprint."""
    fingerprint: str
    block_size: int
    blocks: list[BlockState] = field(default_factory=list)

    @classmethod
    def fresh(cls, fp: str, size: int, block_size: int) -> ProgressRecord:
        """Return a record with every block uncommitted."""
        return cls(
            fingerprint=fp,
            block_size=block_size,
            blocks=[BlockState(index=i) for i in range(block_count(size, block_size))],
        )

    @property
    def committed_count(self) -> int:
        return sum(1 for b in self.blocks if b.committed)

    @property
    def pending_indices(self) -> list[int]:
        return [b.index for b in self.blocks if not b.committed]

    @property
    def is_complete(self) -> bool:
        return all(b.committed for b in self.blocks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "fingerprint": self.fingerprint,
            "block_size": self.block_size,
            "progresses": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressRecord:
        """Build a record, raising ValueError on any schema problem."""
        if not isinstance(data, dict):
            raise ValueError("progress record must be a JSON object")
        if data.get("version") != SCHEMA_VERSION:
            raise ValueError(f"unsupported progress version {data.get('version')!r}")
        progresses = data.get("progresses")
        if not isinstance(progresses, list):
            raise ValueError("'progresses' must be a list")
        blocks = [BlockState.from_dict(item) for item in progresses]
        # Indices must be dense and in order: block i covers bytes i*bs..
        for position, block in enumerate(blocks):
            if block.index != position:
                raise ValueError(
                    f"block at position {position} has index {block.index}"
                )
        return cls(
            fingerprint=str(data["fingerprint"]),
            block_size=int(data["block_size"]),
            blocks=blocks,
        )


class CheckpointStore:
    """
    Directory of progress records keyed by fingerprint file name.

    Parameters
    ----------
    directory : str or Path
        Where ``*.progress`` files are kept.  Created on demand.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def ensure_dir(self) -> None:
        """Create the checkpoint directory if it does not exist."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalIOError(str(self.directory), str(exc)) from exc

    def path_for(self, record_key: str) -> Path:
        return self.directory / record_key

    def lock(self, record_key: str) -> threading.Lock:
        """Return the lock guarding updates to *record_key*."""
        with self._locks_guard:
            lk = self._locks.get(record_key)
            if lk is None:
                lk = threading.Lock()
                self._locks[record_key] = lk
            return lk

    def load(self, record_key: str) -> ProgressRecord | None:
        """Return the stored record, or None if missing or unreadable."""
        path = self.path_for(record_key)
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, exc)
            return None

        try:
            return ProgressRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed checkpoint %s: %s", path, exc)
            return None

    def save(self, record_key: str, record: ProgressRecord) -> None:
        """Overwrite the stored record with *record*."""
        path = self.path_for(record_key)
        payload = json.dumps(record.to_dict())
        try:
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(payload)
        except OSError as exc:
            raise CheckpointWriteError(str(path), str(exc)) from exc

    def delete(self, record_key: str) -> None:
        """Remove the stored record; failures are logged, not raised."""
        path = self.path_for(record_key)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove checkpoint %s: %s", path, exc)
        with self._locks_guard:
            self._locks.pop(record_key, None)
