"""
Object store clients for Drop Sync.

``ObjectStoreClient`` is the interface the upload engine talks to.
``QiniuClient`` implements it against the Qiniu Kodo block upload API:

    POST {host}/mkblk/{block_size}                    -> block context
    POST {host}/mkfile/{file_size}/key/{b64(key)}     -> final object

Block contexts expire server side; ``is_expired`` reports a context as
stale one day early so a resumed upload never builds on a context that
dies mid-transfer.
"""

from __future__ import annotations

import logging
import time
import zlib
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from typing import Any

import requests
from qiniu import Auth
from qiniu.utils import urlsafe_base64_encode

from drop_sync.checkpoint import BlockState, ProgressRecord
from drop_sync.checkpoint import block_count as _block_count
from drop_sync.errors import RemoteUploadError

logger = logging.getLogger(__name__)

EXPIRY_MARGIN_SECONDS = 24 * 3600
UPLOAD_TOKEN_TTL = 3600


class ObjectStoreClient(ABC):
    """
    Strategy interface for block-based resumable uploads.

    Implementations must:
      - Return a committed BlockState from ``put_block`` or raise
        RemoteUploadError.
      - Assemble the object in ``finalize`` from blocks given in index
        order.
    """

    @abstractmethod
    def issue_upload_token(self, bucket: str) -> str:
        """Return a token authorising uploads into *bucket*."""

    @abstractmethod
    def put_block(self, token: str, index: int, data: bytes) -> BlockState:
        """Upload one block and return its committed state."""

    @abstractmethod
    def finalize(
        self, token: str, key: str, size: int, blocks: Sequence[BlockState]
    ) -> dict[str, Any]:
        """Create the remote object *key* from committed *blocks*."""

    def block_count(self, size: int, block_size: int) -> int:
        return _block_count(size, block_size)

    def is_expired(self, block: BlockState, now: float | None = None) -> bool:
        """Return True if the remote context behind *block* is no longer usable."""
        if not block.committed or not block.token:
            return False
        if now is None:
            now = time.time()
        return now >= block.expires_at - EXPIRY_MARGIN_SECONDS

    def put_blocks(
        self, token: str, local_path: str, record: ProgressRecord
    ) -> Iterator[BlockState]:
        """
        Upload every uncommitted block of *local_path*, yielding each result.

        The caller persists progress between yields; nothing is read past
        the block currently being uploaded.
        """
        block_size = record.block_size
        with open(local_path, "rb") as fh:
            for index in record.pending_indices:
                fh.seek(index * block_size)
                data = fh.read(block_size)
                yield self.put_block(token, index, data)


class QiniuClient(ObjectStoreClient):
    """
    Qiniu Kodo client using the v1 block API.

    Parameters
    ----------
    access_key, secret_key : str
        Account credentials used to sign upload tokens.
    endpoint : str
        Upload host, e.g. ``https://up.qiniup.com``.
    timeout : float or None
        Per-request timeout in seconds.
    session : requests.Session, optional
        Injected for connection reuse or testing.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        endpoint: str,
        timeout: float | None = 300,
        session: requests.Session | None = None,
    ):
        self._auth = Auth(access_key, secret_key)
        self.endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def issue_upload_token(self, bucket: str) -> str:
        return self._auth.upload_token(bucket, expires=UPLOAD_TOKEN_TTL)

    def _post(self, url: str, token: str, body: bytes, content_type: str) -> dict[str, Any]:
        headers = {
            "Authorization": f"UpToken {token}",
            "Content-Type": content_type,
        }
        try:
            resp = self._session.post(
                url, data=body, headers=headers, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise RemoteUploadError(f"POST {url} failed: {exc}") from exc

        if resp.status_code != 200:
            raise RemoteUploadError(
                f"POST {url} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteUploadError(f"POST {url} returned invalid JSON") from exc

    def put_block(self, token: str, index: int, data: bytes) -> BlockState:
        url = f"{self.endpoint}/mkblk/{len(data)}"
        ret = self._post(url, token, data, "application/octet-stream")

        if not ret.get("ctx"):
            raise RemoteUploadError(f"Block {index} response carried no context")
        expected = zlib.crc32(data) & 0xFFFFFFFF
        if ret.get("crc32") != expected:
            raise RemoteUploadError(
                f"Block {index} CRC32 mismatch (local={expected} remote={ret.get('crc32')})"
            )
        logger.debug("Block %d committed (%d bytes)", index, len(data))
        return BlockState(
            index=index,
            token=ret["ctx"],
            expires_at=int(ret.get("expired_at", 0)),
            committed=True,
            crc32=expected,
            host=ret.get("host", ""),
        )

    def finalize(
        self, token: str, key: str, size: int, blocks: Sequence[BlockState]
    ) -> dict[str, Any]:
        url = f"{self.endpoint}/mkfile/{size}/key/{urlsafe_base64_encode(key)}"
        body = ",".join(b.token for b in blocks).encode("ascii")
        return self._post(url, token, body, "text/plain")
