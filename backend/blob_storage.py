"""
Architect Studio - Blob Storage
Public asset uploads through the Vercel Blob HTTP API, plus plain downloads
of uploaded or generated assets.
"""

import logging
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

BLOB_API_URL     = "https://blob.vercel-storage.com"
BLOB_API_VERSION = "7"


class BlobStorageError(Exception):
    """Upload or download failed."""


class BlobStorage:
    def __init__(self, token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = token
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    async def put(self, pathname: str, data: bytes, content_type: str) -> str:
        """Upload bytes under pathname; returns the public URL."""
        if not self.token:
            raise BlobStorageError("BLOB_READ_WRITE_TOKEN is not configured")
        headers = {
            "Authorization": f"Bearer {self.token}",
            "x-api-version": BLOB_API_VERSION,
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
        }
        try:
            async with self._client(timeout=60.0) as client:
                resp = await client.put(f"{BLOB_API_URL}/{pathname.lstrip('/')}", content=data, headers=headers)
        except httpx.HTTPError as e:
            raise BlobStorageError(f"Blob upload failed: {e}") from e
        if resp.status_code >= 400:
            raise BlobStorageError(f"Blob upload failed with status {resp.status_code}")
        url = resp.json().get("url")
        if not url:
            raise BlobStorageError("Blob upload returned no URL")
        logger.info(f"[BLOB] stored {pathname} ({len(data)} bytes)")
        return url

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        """Download an asset; returns (bytes, content type)."""
        try:
            async with self._client(timeout=60.0) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise BlobStorageError(f"Download failed: {e}") from e
        if resp.status_code >= 400:
            raise BlobStorageError(f"Download failed with status {resp.status_code}")
        content_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
        return resp.content, content_type
