from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Literal

from .constants import STATUS_BROADCAST_JID
from .exceptions import InvalidPayload
from .media import fetch_url
from .protocol import ProtocolSocket
from .session import ConnectionManager

logger = logging.getLogger(__name__)

StatusMedia = Literal["image", "video"]

# Accepted values per privacy category, as the protocol library names them.
PRIVACY_VALUES: dict[str, frozenset[str]] = {
    "last": frozenset({"all", "contacts", "contact_blacklist", "none"}),
    "online": frozenset({"all", "match_last_seen"}),
    "profile": frozenset({"all", "contacts", "contact_blacklist", "none"}),
    "status": frozenset({"all", "contacts", "contact_blacklist", "none"}),
    "readreceipts": frozenset({"all", "none"}),
    "groupadd": frozenset({"all", "contacts", "contact_blacklist"}),
}

# 0 sans serif, 1 serif, 2 norican, 3 bryndan write, 4 oswald
STATUS_FONTS = range(0, 5)

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})$")


def argb_from_hex(color: str) -> int:
    """`"#1E88E5"` -> opaque ARGB integer as text statuses expect it."""

    m = _HEX_COLOR.match(color.strip())
    if m is None:
        raise InvalidPayload(f"invalid background color: {color!r}")
    return int("FF" + m.group(1), 16)


class ProfileManager:
    """Own-account profile, privacy and status posts of a connected session."""

    def __init__(self, sessions: ConnectionManager, *, fetch_timeout_s: float = 30.0) -> None:
        self._sessions = sessions
        self._fetch_timeout_s = fetch_timeout_s

    def _socket(self, session_id: str) -> tuple[ProtocolSocket, str | None]:
        session = self._sessions.require(session_id)
        assert session.socket is not None
        return session.socket, session.me

    async def update_name(self, session_id: str, name: str) -> None:
        if not name or not name.strip():
            raise InvalidPayload("profile name is required")
        socket, _ = self._socket(session_id)
        await socket.update_profile_name(name.strip())

    async def update_about(self, session_id: str, text: str) -> None:
        socket, _ = self._socket(session_id)
        await socket.update_profile_status(text)

    async def update_picture(self, session_id: str, image_url: str) -> None:
        socket, me = self._socket(session_id)
        if not me:
            raise InvalidPayload("session has no account yet")
        data = await fetch_url(image_url, timeout_s=self._fetch_timeout_s)
        await socket.update_profile_picture(me, data)
        logger.info("profile picture updated")

    async def update_privacy(self, session_id: str, settings: Mapping[str, str]) -> list[str]:
        """
        Apply privacy settings, e.g. `{"readreceipts": "none", "last": "contacts"}`.

        Every entry is validated before anything is sent. Returns the categories
        applied, in order.
        """

        if not settings:
            raise InvalidPayload("no privacy settings given")
        for category, value in settings.items():
            allowed = PRIVACY_VALUES.get(category)
            if allowed is None:
                raise InvalidPayload(f"unknown privacy category: {category!r}")
            if value not in allowed:
                raise InvalidPayload(f"invalid value {value!r} for privacy {category!r}")

        socket, _ = self._socket(session_id)
        applied = []
        for category, value in settings.items():
            await socket.update_privacy(category, value)
            applied.append(category)
        return applied

    # -- status posts ------------------------------------------------------

    async def post_text_status(
        self, session_id: str, text: str, *, background: str = "#000000", font: int = 1
    ) -> Mapping[str, Any] | None:
        if not text:
            raise InvalidPayload("status text is required")
        if font not in STATUS_FONTS:
            raise InvalidPayload(f"unsupported status font: {font!r}")
        content = {"text": text, "backgroundArgb": argb_from_hex(background), "font": font}
        socket, _ = self._socket(session_id)
        return await socket.send_message(STATUS_BROADCAST_JID, content)

    async def post_media_status(
        self, session_id: str, kind: StatusMedia, url: str, caption: str | None = None
    ) -> Mapping[str, Any] | None:
        if kind not in ("image", "video"):
            raise InvalidPayload(f"unsupported status media: {kind!r}")
        if not url:
            raise InvalidPayload("status media url is required")
        content: dict[str, Any] = {kind: {"url": url}}
        if caption:
            content["caption"] = caption
        socket, _ = self._socket(session_id)
        return await socket.send_message(STATUS_BROADCAST_JID, content)
