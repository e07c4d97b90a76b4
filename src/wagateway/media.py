from __future__ import annotations

import logging
import urllib.parse
from typing import Protocol

from .exceptions import MediaError
from .util import http

logger = logging.getLogger(__name__)


class MediaStorage(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` at `path` and return its public URL."""
        ...


class Transcriber(Protocol):
    async def transcribe(self, data: bytes, mimetype: str, tenant_id: str) -> str | None: ...


class SupabaseStorage:
    """`MediaStorage` over the Supabase storage REST API (public bucket)."""

    def __init__(
        self, base_url: str, api_key: str, *, bucket: str = "chat-media", timeout_s: float = 60.0
    ) -> None:
        self._base = base_url.rstrip("/") + "/storage/v1"
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self.bucket = bucket
        self._timeout_s = timeout_s

    def public_url(self, path: str) -> str:
        return f"{self._base}/object/public/{self.bucket}/{urllib.parse.quote(path)}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        url = f"{self._base}/object/{self.bucket}/{urllib.parse.quote(path)}"
        res = await http.request(
            "POST",
            url,
            data=data,
            headers={**self._headers, "Content-Type": content_type, "x-upsert": "false"},
            timeout_s=self._timeout_s,
        )
        if not res.ok:
            raise MediaError(f"upload of {path} failed with {res.status}: {res.text(200)}")
        return self.public_url(path)


async def fetch_url(url: str, *, timeout_s: float = 30.0) -> bytes:
    """Download a remote file (e.g. a picture to set on a profile); raises `MediaError`."""

    if not url:
        raise MediaError("media url is required")
    try:
        res = await http.request("GET", url, timeout_s=timeout_s)
    except Exception as e:
        raise MediaError(f"download of {url} failed: {e}") from e
    if not res.ok or not res.body:
        raise MediaError(f"download of {url} failed with {res.status}")
    return res.body
