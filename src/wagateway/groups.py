from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal

from .constants import NEWSLETTER
from .exceptions import InvalidPayload
from .jid import format_destination, is_group, is_newsletter, normalize_jid
from .media import fetch_url
from .persistence.crm import CrmRepository
from .protocol import ProtocolSocket
from .session import ConnectionManager

logger = logging.getLogger(__name__)

ParticipantAction = Literal["add", "remove", "promote", "demote"]
GroupSetting = Literal["subject", "description", "locked", "announcement"]

INVITE_URL = "https://chat.whatsapp.com/"
CHANNEL_SEARCH_LIMIT = 20


def channel_jid(jid: str | None) -> str:
    """Channel (newsletter) JID from a full JID or its bare id; raises `InvalidPayload`."""

    value = (jid or "").strip()
    if value and "@" not in value:
        value += NEWSLETTER
    if not is_newsletter(value):
        raise InvalidPayload(f"not a channel id: {jid!r}")
    return value


def _group_jid(jid: str | None) -> str:
    value = normalize_jid(jid) or ""
    if not is_group(value):
        raise InvalidPayload(f"not a group id: {jid!r}")
    return value


class GroupManager:
    """
    Group, community and channel administration through a connected session.

    Subjects and channel names are mirrored into `contacts` as address-book names.
    """

    def __init__(self, sessions: ConnectionManager, crm: CrmRepository) -> None:
        self._sessions = sessions
        self._crm = crm

    async def create_group(
        self, session_id: str, subject: str, participants: list[str], description: str | None = None
    ) -> Mapping[str, Any]:
        if not subject:
            raise InvalidPayload("group subject is required")
        session = self._sessions.require(session_id)
        assert session.socket is not None
        jids = [format_destination(p) for p in participants]
        group = await session.socket.group_create(subject, jids)
        group_jid = str(group.get("id") or "")
        logger.info("created group %s with %d participants", group_jid, len(jids))
        if description and group_jid:
            try:
                await session.socket.group_update_description(group_jid, description)
            except Exception as e:
                logger.warning("could not set description of %s: %s", group_jid, e)
        await self._crm.upsert_contact(
            session.tenant_id, group_jid, subject, from_address_book=True
        )
        return group

    async def update_participants(
        self, session_id: str, group_jid: str, action: ParticipantAction, participants: list[str]
    ) -> list[Mapping[str, Any]]:
        if action not in ("add", "remove", "promote", "demote"):
            raise InvalidPayload(f"unsupported participant action: {action!r}")
        session = self._sessions.require(session_id)
        assert session.socket is not None
        jids = [format_destination(p) for p in participants]
        return await session.socket.group_participants_update(
            normalize_jid(group_jid) or group_jid, jids, action
        )

    async def update_settings(
        self, session_id: str, group_jid: str, setting: GroupSetting, value: Any
    ) -> None:
        session = self._sessions.require(session_id)
        socket = session.socket
        assert socket is not None
        jid = normalize_jid(group_jid) or group_jid
        match setting:
            case "subject":
                if not value:
                    raise InvalidPayload("group subject is required")
                await socket.group_update_subject(jid, str(value))
                await self._crm.upsert_contact(
                    session.tenant_id, jid, str(value), from_address_book=True
                )
            case "description":
                await socket.group_update_description(jid, str(value or ""))
            case "locked":
                await socket.group_setting_update(jid, "locked" if value else "unlocked")
            case "announcement":
                await socket.group_setting_update(
                    jid, "announcement" if value else "not_announcement"
                )
            case _:
                raise InvalidPayload(f"unsupported group setting: {setting!r}")

    async def invite_link(self, session_id: str, group_jid: str) -> str:
        session = self._sessions.require(session_id)
        assert session.socket is not None
        code = await session.socket.group_invite_code(normalize_jid(group_jid) or group_jid)
        return INVITE_URL + code

    def _socket(self, session_id: str) -> tuple[str, ProtocolSocket]:
        session = self._sessions.require(session_id)
        assert session.socket is not None
        return session.tenant_id, session.socket

    async def update_picture(self, session_id: str, group_jid: str, image_url: str) -> None:
        tenant_id, socket = self._socket(session_id)
        jid = _group_jid(group_jid)
        data = await fetch_url(image_url)
        await socket.update_profile_picture(jid, data)
        await self._crm.upsert_contact(tenant_id, jid, picture_url=image_url)

    # -- communities -------------------------------------------------------

    async def create_community(
        self, session_id: str, subject: str, description: str | None = None
    ) -> Mapping[str, Any]:
        """Create an empty parent group and mirror it flagged as a community."""

        if not subject:
            raise InvalidPayload("community subject is required")
        tenant_id, socket = self._socket(session_id)
        community = await socket.group_create(subject, [])
        jid = str(community.get("id") or "")
        logger.info("created community %s", jid)
        if description and jid:
            try:
                await socket.group_update_description(jid, description)
            except Exception as e:
                logger.warning("could not set description of %s: %s", jid, e)
        await self._crm.upsert_contact(
            tenant_id, jid, subject, from_address_book=True, extra={"is_community": True}
        )
        return community

    async def link_group_to_community(
        self, session_id: str, community_jid: str, group_jid: str
    ) -> None:
        _, socket = self._socket(session_id)
        community, group = _group_jid(community_jid), _group_jid(group_jid)
        if community == group:
            raise InvalidPayload("a community cannot be linked to itself")
        await socket.community_link_group(group, community)
        logger.info("linked group %s to community %s", group, community)

    # -- channels ----------------------------------------------------------

    async def create_channel(
        self, session_id: str, name: str, description: str | None = None
    ) -> Mapping[str, Any]:
        if not name:
            raise InvalidPayload("channel name is required")
        tenant_id, socket = self._socket(session_id)
        channel = await socket.newsletter_create(name, description)
        jid = str(channel.get("id") or "")
        if jid:
            await self._crm.upsert_contact(
                tenant_id, jid, name, from_address_book=True, extra={"is_newsletter": True}
            )
        return channel

    async def search_channels(
        self, session_id: str, query: str, limit: int = CHANNEL_SEARCH_LIMIT
    ) -> list[Mapping[str, Any]]:
        if not query or not query.strip():
            raise InvalidPayload("search query is required")
        _, socket = self._socket(session_id)
        return await socket.newsletter_search(query.strip(), limit)

    async def follow_channel(self, session_id: str, channel: str) -> None:
        tenant_id, socket = self._socket(session_id)
        jid = channel_jid(channel)
        await socket.newsletter_follow(jid)
        try:
            meta = await socket.newsletter_metadata(jid)
        except Exception as e:
            logger.debug("channel metadata unavailable for %s: %s", jid, e)
            meta = None
        name = meta.get("name") if meta else None
        await self._crm.upsert_contact(
            tenant_id, jid, name, from_address_book=True, extra={"is_newsletter": True}
        )

    async def leave_channel(self, session_id: str, channel: str) -> None:
        """Unfollow a channel; owned channels are left, never deleted."""

        _, socket = self._socket(session_id)
        await socket.newsletter_unfollow(channel_jid(channel))

    async def channel_messages(
        self, session_id: str, channel: str, count: int = 20
    ) -> list[Mapping[str, Any]]:
        if count < 1:
            raise InvalidPayload("count must be positive")
        _, socket = self._socket(session_id)
        return await socket.newsletter_fetch_messages(channel_jid(channel), count)
