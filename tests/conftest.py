"""Shared pytest fixtures for all tests."""

import os
import time
import zlib

import pytest

from drop_sync.checkpoint import BlockState, CheckpointStore
from drop_sync.errors import RemoteUploadError
from drop_sync.store import ObjectStoreClient
from drop_sync.tasks import FileTask, TaskRegistry
from drop_sync.uploader import UploadEngine

BUCKET = "test-bucket"


class FakeStoreClient(ObjectStoreClient):
    """In-memory object store recording every call."""

    def __init__(self, fail_at=None, fail_finalize=False, expires_in=7 * 86400):
        self.fail_at = set(fail_at or [])
        self.fail_finalize = fail_finalize
        self.expires_in = expires_in
        self.uploaded: list[int] = []
        self.finalized: list[dict] = []
        self.tokens_issued = 0
        self.on_put = None

    def issue_upload_token(self, bucket):
        self.tokens_issued += 1
        return f"token-{bucket}"

    def put_block(self, token, index, data):
        if index in self.fail_at:
            raise RemoteUploadError(f"injected failure on block {index}")
        if self.on_put:
            self.on_put(index)
        self.uploaded.append(index)
        return BlockState(
            index=index,
            token=f"ctx-{index}",
            expires_at=int(time.time()) + self.expires_in,
            committed=True,
            crc32=zlib.crc32(data) & 0xFFFFFFFF,
        )

    def finalize(self, token, key, size, blocks):
        if self.fail_finalize:
            raise RemoteUploadError("injected finalize failure")
        self.finalized.append(
            {"key": key, "size": size, "contexts": [b.token for b in blocks]}
        )
        return {"key": key, "hash": "fake-hash"}


@pytest.fixture
def watch_root(tmp_path):
    """Create the watched folder."""
    root = tmp_path / "inbox"
    root.mkdir()
    return root


@pytest.fixture
def progress_dir(watch_root):
    return watch_root / "progress"


@pytest.fixture
def checkpoints(progress_dir):
    return CheckpointStore(progress_dir)


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def fake_client():
    return FakeStoreClient()


@pytest.fixture
def make_engine(checkpoints, registry):
    """Factory building an UploadEngine around the shared store and registry."""

    def _make(client, block_size=4, **kwargs):
        return UploadEngine(
            client=client,
            checkpoints=checkpoints,
            registry=registry,
            bucket=BUCKET,
            block_size=block_size,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_task(registry):
    """Write a file, register it, and return its FileTask."""

    def _make(path, content=b"0123456789"):
        path.write_bytes(content)
        st = os.stat(path)
        registry.try_insert(str(path))
        return FileTask(path=str(path), last_modified=st.st_mtime_ns, size=st.st_size)

    return _make
