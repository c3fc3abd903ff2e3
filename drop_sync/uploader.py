"""
Resumable upload engine for Drop Sync.

Uploads one file at a time as fixed-size blocks, persisting block
progress after every commit so an interrupted upload resumes where it
stopped.  Once every block is committed the remote object is finalized,
then the local file, its checkpoint and its registry entry are removed.

The engine never retries internally.  A failed attempt leaves the
checkpoint on disk; whether the file is offered again is decided by the
``retry_on_failure`` policy.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from drop_sync.checkpoint import (
    BlockState,
    CheckpointStore,
    ProgressRecord,
    fingerprint,
    record_key_for,
)
from drop_sync.errors import (
    CheckpointWriteError,
    DropSyncError,
    FileNotStableError,
    LocalIOError,
    RemoteUploadError,
)
from drop_sync.store import ObjectStoreClient
from drop_sync.tasks import FileTask, TaskRegistry

logger = logging.getLogger(__name__)


@dataclass
class UploadRecord:
    """Record of a single upload attempt."""
    source: str
    key: str = ""
    size_bytes: int = 0
    blocks_total: int = 0
    blocks_uploaded: int = 0
    resumed: bool = False
    started: float = 0.0
    finished: float = 0.0
    success: bool = False
    error: str = ""


@dataclass
class UploadStats:
    """Aggregated upload statistics."""
    total_uploaded: int = 0
    total_failed: int = 0
    total_bytes: int = 0
    total_resumed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, rec: UploadRecord) -> None:
        with self._lock:
            if rec.success:
                self.total_uploaded += 1
                self.total_bytes += rec.size_bytes
                if rec.resumed:
                    self.total_resumed += 1
            else:
                self.total_failed += 1


class UploadEngine:
    """
    Uploads files to the object store, resuming from checkpoints.

    Parameters
    ----------
    client : ObjectStoreClient
        Remote store used for tokens, blocks and finalize.
    checkpoints : CheckpointStore
        Where per-file block progress is kept.
    registry : TaskRegistry
        Registry of queued paths; entries are removed on success.
    bucket : str
        Destination bucket.
    block_size : int
        Fixed block size in bytes.  Must not change between runs or
        existing checkpoints are discarded.
    key_prefix : str
        Prepended to the file's base name to form the object key.
    retry_on_failure : bool
        If True, a failed file is released from the registry so a later
        scan can queue it again.  If False it stays registered until restart.
    retry_delay : float
        Seconds a released file waits before it can be queued again.
    prepared_time : float
        Seconds a file must stay unmodified.  Checked again just before
        the upload starts, since the file may have been written to while
        it sat in the queue.
    on_upload_complete : callable, optional
        Callback invoked after each attempt with the UploadRecord.
    clock : callable
        Wall-clock source used for context expiry checks.
    """

    def __init__(
        self,
        client: ObjectStoreClient,
        checkpoints: CheckpointStore,
        registry: TaskRegistry,
        bucket: str,
        block_size: int,
        key_prefix: str = "",
        retry_on_failure: bool = True,
        retry_delay: float = 0,
        prepared_time: float = 0,
        on_upload_complete: Callable[[UploadRecord], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._checkpoints = checkpoints
        self._registry = registry
        self._bucket = bucket
        self._block_size = block_size
        self._key_prefix = key_prefix
        self._retry_on_failure = retry_on_failure
        self._retry_delay = retry_delay
        self._prepared_time = prepared_time
        self._on_upload_complete = on_upload_complete
        self._clock = clock
        self.stats = UploadStats()
        self._active: int = 0
        self._lock = threading.Lock()

    @property
    def active_uploads(self) -> int:
        with self._lock:
            return self._active

    def object_key(self, path: str) -> str:
        return self._key_prefix + os.path.basename(path)

    def upload(self, task: FileTask) -> UploadRecord:
        """Upload *task* to completion or failure and return the record."""
        rec = UploadRecord(source=task.path, started=time.time())

        with self._lock:
            self._active += 1

        try:
            self._upload(task, rec)
        except FileNotFoundError:
            rec.error = "Source file no longer exists"
            logger.warning("Source file vanished before upload: %s", task.path)
            self._registry.release(task.path)
        except FileNotStableError as exc:
            rec.error = str(exc)
            logger.info("%s; leaving it for a later scan.", exc)
            self._registry.release(task.path)
        except DropSyncError as exc:
            rec.error = str(exc)
            logger.error("Upload failed for %s: %s", task.path, exc)
            self._handle_failure(task.path)
        except Exception as exc:
            rec.error = str(exc)
            logger.exception("Unexpected error uploading %s", task.path)
            self._handle_failure(task.path)
        finally:
            rec.finished = time.time()
            with self._lock:
                self._active -= 1
            self.stats.record(rec)
            if rec.success:
                logger.info("%d file(s) uploaded so far.", self.stats.total_uploaded)
            if self._on_upload_complete:
                try:
                    self._on_upload_complete(rec)
                except Exception:
                    logger.exception("Error in on_upload_complete callback")
        return rec

    def _handle_failure(self, path: str) -> None:
        if self._retry_on_failure:
            self._registry.release(path, cooldown=self._retry_delay)
            logger.info("%s will be retried in %ss.", path, self._retry_delay)
        else:
            logger.warning("%s will not be retried until restart.", path)

    def _upload(self, task: FileTask, rec: UploadRecord) -> None:
        path = task.path
        try:
            st = os.stat(path)
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise LocalIOError(path, str(exc)) from exc
        if (
            st.st_mtime_ns != task.last_modified
            or self._clock() < st.st_mtime + self._prepared_time
        ):
            raise FileNotStableError(path)

        key = self.object_key(path)
        rec.key = key
        rec.size_bytes = st.st_size

        fp = fingerprint(self._bucket, key, path, st.st_mtime_ns)
        record_key = record_key_for(fp)
        self._checkpoints.ensure_dir()

        record = self._restore(record_key, fp, st.st_size)
        rec.blocks_total = len(record.blocks)
        rec.resumed = record.committed_count > 0

        token = self._client.issue_upload_token(self._bucket)
        if record.pending_indices:
            logger.info(
                "Uploading %s -> %s/%s (%d bytes, %d/%d blocks pending)",
                path, self._bucket, key, st.st_size,
                len(record.pending_indices), len(record.blocks),
            )
            try:
                for block in self._client.put_blocks(token, path, record):
                    self._commit_block(record_key, record, block)
                    rec.blocks_uploaded += 1
            except OSError as exc:
                raise LocalIOError(path, str(exc)) from exc
        else:
            logger.info("All blocks of %s already committed; finalizing.", path)

        if not record.is_complete:
            raise RemoteUploadError(
                f"{len(record.pending_indices)} block(s) of {path} were not committed"
            )

        self._client.finalize(token, key, st.st_size, record.blocks)
        rec.success = True
        logger.info("Upload succeeded in %.1fs: %s", time.time() - rec.started, path)

        if self._cleanup(path, record_key):
            self._registry.remove(path)

    def _restore(self, record_key: str, fp: str, size: int) -> ProgressRecord:
        """Load and validate the checkpoint, or start a fresh record."""
        expected_blocks = self._client.block_count(size, self._block_size)
        record = self._checkpoints.load(record_key)

        if record is not None:
            now = self._clock()
            if record.fingerprint != fp or record.block_size != self._block_size:
                logger.info("Checkpoint %s belongs to another version; starting over.", record_key)
                record = None
            elif len(record.blocks) != expected_blocks:
                logger.info(
                    "Checkpoint %s has %d blocks, expected %d; starting over.",
                    record_key, len(record.blocks), expected_blocks,
                )
                record = None
            else:
                expired = next(
                    (b for b in record.blocks if self._client.is_expired(b, now)), None
                )
                if expired is not None:
                    # One stale context invalidates the whole file's upload
                    logger.info(
                        "Block context expired (expired at %d); starting over.",
                        expired.expires_at,
                    )
                    record = None

        if record is None:
            return ProgressRecord.fresh(fp, size, self._block_size)

        if record.committed_count:
            logger.info(
                "Resuming from checkpoint: %d/%d blocks committed.",
                record.committed_count, len(record.blocks),
            )
        return record

    def _commit_block(
        self, record_key: str, record: ProgressRecord, block: BlockState
    ) -> None:
        """Store *block* in *record* and persist the whole record."""
        with self._checkpoints.lock(record_key):
            if not 0 <= block.index < len(record.blocks):
                raise RemoteUploadError(f"Block index {block.index} out of range")
            record.blocks[block.index] = block
            try:
                self._checkpoints.save(record_key, record)
            except CheckpointWriteError as exc:
                logger.error("Write progress file error: %s", exc)
                return
        logger.debug("Wrote progress for block %d to %s", block.index, record_key)

    def _cleanup(self, path: str, record_key: str) -> bool:
        """Remove the source and its checkpoint; return False if the source stays."""
        self._checkpoints.delete(record_key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            # Stays registered so the next scan does not upload it again
            logger.error("Uploaded but could not remove source %s: %s", path, exc)
            return False
        return True
