from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    """Reading a stored payload failed."""


class BlobNotFoundError(BlobStoreError):
    pass


class FileBlobStore:
    """
    Blob store over a local directory: <root>/<bucket>/<key>.

    Used for development and for deployments that sync the static bucket to
    disk.
    """

    def __init__(self, root: str) -> None:
        self._root = Path(root).resolve()

    async def get(self, bucket: str, key: str) -> str:
        path = (self._root / bucket / key).resolve()
        if self._root not in path.parents:
            raise BlobNotFoundError(f"Blob key escapes store root: {bucket}/{key}")
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob not found: {bucket}/{key}") from exc
        except OSError as exc:
            raise BlobStoreError(f"Blob read failed: {bucket}/{key}: {exc}") from exc


class HttpBlobStore:
    """
    Blob store fronted by HTTP: GET <base_url>/<bucket>/<key>.

    Works with public or gateway-fronted S3-compatible buckets (R2, S3).
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._own_session = session is None
        self._timeout_s = timeout_s

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s)
            )
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def get(self, bucket: str, key: str) -> str:
        session = await self._get_session()
        url = f"{self._base_url}/{bucket}/{key.lstrip('/')}"
        try:
            async with session.get(url) as resp:
                if resp.status == 404:
                    raise BlobNotFoundError(f"Blob not found: {bucket}/{key}")
                resp.raise_for_status()
                return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Blob fetch failed for %s: %r", url, exc)
            raise BlobStoreError(f"Blob fetch failed: {bucket}/{key}: {exc!r}") from exc
