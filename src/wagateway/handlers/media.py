from __future__ import annotations

import asyncio
import logging
import mimetypes
import random
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..config import MediaConfig
from ..constants import DEFAULT_ORIGIN
from ..media import MediaStorage
from ..protocol import ProtocolSocket
from .parsers import media_mimetype, message_type

logger = logging.getLogger(__name__)

# Failures that just mean the media is gone or not ours to fetch.
_EXPECTED_STATUSES = frozenset({401, 403, 404, 410})

_EXTENSION_OVERRIDES = {
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
}


@dataclass(frozen=True, slots=True)
class StoredMedia:
    url: str
    mimetype: str
    data: bytes


def extension_for(mimetype: str) -> str:
    if mimetype in _EXTENSION_OVERRIDES:
        return _EXTENSION_OVERRIDES[mimetype]
    ext = mimetypes.guess_extension(mimetype)
    return ext.lstrip(".") if ext else "bin"


def _error_status(exc: BaseException) -> int | None:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


class MediaHandler:
    """Downloads message media through the socket and re-hosts it in `MediaStorage`."""

    def __init__(
        self,
        storage: MediaStorage,
        config: MediaConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._storage = storage
        self.config = config or MediaConfig()
        self._rng = rng or random.Random()

    def _file_name(self, tenant_id: str, ext: str) -> str:
        suffix = "".join(self._rng.choices(string.ascii_lowercase + string.digits, k=6))
        return f"{tenant_id}/{int(time.time() * 1000)}_{suffix}.{ext}"

    async def store(
        self, raw: Mapping[str, Any], socket: ProtocolSocket, tenant_id: str
    ) -> StoredMedia | None:
        message = raw.get("message") or {}
        mimetype = media_mimetype(message, message_type(message))
        headers = {
            "User-Agent": self.config.user_agent,
            "Referer": DEFAULT_ORIGIN + "/",
            "Origin": DEFAULT_ORIGIN,
        }
        try:
            data = await asyncio.wait_for(
                socket.download_media(
                    raw, headers=headers, timeout_s=self.config.download_timeout_s
                ),
                timeout=self.config.download_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.debug("media download timed out")
            return None
        except Exception as e:
            status = _error_status(e)
            if status in _EXPECTED_STATUSES or "404" in str(e):
                logger.debug("media unavailable (%s): %s", status, e)
            else:
                logger.warning("media download failed: %s", e)
            return None
        if not data:
            return None

        path = self._file_name(tenant_id, extension_for(mimetype))
        try:
            url = await self._storage.upload(path, data, mimetype)
        except Exception as e:
            logger.error("media upload failed: %s", e)
            return None
        return StoredMedia(url=url, mimetype=mimetype, data=data)
