from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from ..constants import REVOKED_CONTENT, SYSTEM_JID
from ..identity import IdentityResolver
from ..jid import is_broadcast, is_group, is_newsletter, is_user_jid, normalize_jid
from ..media import Transcriber
from ..persistence.crm import CrmRepository
from ..util.asyncio import fire_and_forget
from ..util.events import MessageBus, NewMessageArrived
from ..util.ttl import ExpiringSet
from .contacts import ContactsHandler
from .media import MediaHandler, StoredMedia
from .parsers import (
    IGNORED_CONTENT_TYPES,
    MEDIA_TYPES,
    alias_pairs,
    get_body,
    get_content_type,
    message_timestamp,
    message_type,
    revoked_message_id,
    structured_content,
    unwrap_message,
)

if TYPE_CHECKING:
    from ..session import Session
    from ..webhook import WebhookDispatcher

logger = logging.getLogger(__name__)

_STRUCTURED_TYPES = frozenset({"poll", "location", "contact"})
MEDIA_PLACEHOLDER = "[media]"


class SessionLookup(Protocol):
    def get(self, session_id: str) -> Session | None: ...


@dataclass(slots=True)
class IngestOptions:
    download_media: bool = True
    fetch_profile_pic: bool = True


class MessageIngestor:
    """
    Turns one protocol message into contact, lead and message rows.

    Every persistence step is fail-soft, so a failing lead lookup does not keep
    the message itself from being stored. The message write is an upsert on
    `(remote_jid, whatsapp_id)`; replays converge on the same row.
    """

    def __init__(
        self,
        crm: CrmRepository,
        identity: IdentityResolver,
        contacts: ContactsHandler,
        sessions: SessionLookup,
        *,
        media: MediaHandler | None = None,
        transcriber: Transcriber | None = None,
        webhooks: WebhookDispatcher | None = None,
        bus: MessageBus[NewMessageArrived] | None = None,
        dedup_ttl_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._crm = crm
        self._identity = identity
        self._contacts = contacts
        self._sessions = sessions
        self._media = media
        self._transcriber = transcriber
        self._webhooks = webhooks
        self.bus = bus
        self._recent = ExpiringSet(dedup_ttl_s, clock=clock)

    async def ingest(
        self,
        raw: Mapping[str, Any],
        session_id: str,
        tenant_id: str,
        is_realtime: bool,
        forced_name: str | None = None,
        options: IngestOptions | None = None,
    ) -> dict[str, Any] | None:
        """Process one message; returns the row written, or None when it was skipped."""

        try:
            return await self._ingest(raw, session_id, tenant_id, is_realtime, forced_name, options)
        except Exception:
            logger.exception("ingest failed for %s", (raw.get("key") or {}).get("id"))
            return None

    async def _ingest(
        self,
        raw: Mapping[str, Any],
        session_id: str,
        tenant_id: str,
        is_realtime: bool,
        forced_name: str | None,
        options: IngestOptions | None,
    ) -> dict[str, Any] | None:
        if not raw.get("message"):
            return None
        key = raw.get("key") or {}
        whatsapp_id = key.get("id")
        if not whatsapp_id:
            return None
        if is_realtime and not self._recent.add((session_id, whatsapp_id)):
            return None

        revoked = revoked_message_id(raw["message"])
        if revoked:
            logger.info("message %s revoked", revoked)
            await self._crm.mark_revoked(tenant_id, revoked, REVOKED_CONTENT)
            return None

        msg = unwrap_message(raw)
        message = msg.get("message") or {}
        content_type = get_content_type(message)
        remote = normalize_jid(key.get("remoteJid"))
        if not remote or is_broadcast(remote) or remote == SYSTEM_JID:
            return None
        if content_type is None or content_type in IGNORED_CONTENT_TYPES:
            return None
        kind = message_type(message, content_type)
        body = get_body(message)
        if not body and kind not in MEDIA_TYPES and kind not in _STRUCTURED_TYPES:
            return None

        for lid, phone in alias_pairs(key):
            await self._identity.link(tenant_id, lid, phone)
        remote = await self._identity.resolve(tenant_id, remote) or remote

        session = self._sessions.get(session_id)
        socket = session.socket if session is not None else None
        my_jid = session.me if session is not None else None
        from_me = bool(key.get("fromMe"))
        push_name = forced_name or msg.get("pushName")
        group = is_group(remote)
        one_to_one = not group and not is_newsletter(remote) and is_user_jid(remote)
        inbound = one_to_one and not from_me and remote != my_jid
        opts = options or IngestOptions(download_media=is_realtime, fetch_profile_pic=is_realtime)

        # Contact rows go first; downstream consumers expect them to exist.
        if inbound:
            await self._crm.upsert_contact(tenant_id, remote, push_name)
            if socket is not None and opts.fetch_profile_pic:
                fire_and_forget(
                    self._contacts.refresh_info(socket, remote, tenant_id, push_name),
                    name="contact.refresh",
                )
        elif one_to_one:
            await self._crm.upsert_contact(tenant_id, remote)

        participant = None
        if group and key.get("participant"):
            participant = await self._identity.resolve(tenant_id, key["participant"])
            if participant and participant != my_jid and push_name and not from_me:
                await self._crm.upsert_contact(tenant_id, participant, push_name)

        if await self._crm.is_ignored(tenant_id, remote):
            logger.debug("conversation %s is ignored", remote)
            return None

        lead_id = None
        if inbound:
            lead_id = await self._crm.ensure_lead(tenant_id, remote, push_name, my_jid)

        stored: StoredMedia | None = None
        if kind in MEDIA_TYPES and opts.download_media and socket is not None and self._media:
            stored = await self._media.store(msg, socket, tenant_id)

        content = structured_content(message, kind) or body
        if not content and stored is not None:
            content = MEDIA_PLACEHOLDER

        ts = message_timestamp(msg)
        created_at = (
            dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)
            if ts
            else dt.datetime.now(dt.timezone.utc)
        )
        row: dict[str, Any] = {
            "company_id": tenant_id,
            "session_id": session_id,
            "remote_jid": remote,
            "whatsapp_id": whatsapp_id,
            "from_me": from_me,
            "content": content,
            "message_type": kind,
            "status": "sent" if from_me else "received",
            "created_at": created_at,
        }
        # Absent values must not erase what an earlier delivery stored.
        if participant:
            row["participant"] = participant
        if lead_id:
            row["lead_id"] = lead_id
        if stored is not None:
            row["media_url"] = stored.url

        res = await self._crm.upsert_message(row)
        if not res.ok:
            return None

        if stored is not None and kind in ("audio", "ptt") and self._transcriber is not None:
            fire_and_forget(
                self._transcribe(tenant_id, whatsapp_id, stored), name="media.transcribe"
            )

        if is_realtime and inbound and self.bus is not None:
            self.bus.publish(
                NewMessageArrived(
                    tenant_id=tenant_id,
                    session_id=session_id,
                    remote_jid=remote,
                    whatsapp_id=whatsapp_id,
                    content=content,
                    message_type=kind,
                    push_name=push_name,
                    lead_id=lead_id,
                )
            )

        if is_realtime and self._webhooks is not None:
            url = await self._crm.get_webhook_config(session_id)
            if url:
                data = {**row, "pushName": push_name, "isGroup": group}
                fire_and_forget(
                    self._webhooks.dispatch(url, "message.upsert", data, session_id),
                    name="webhook.dispatch",
                )
        return row

    async def _transcribe(self, tenant_id: str, whatsapp_id: str, media: StoredMedia) -> None:
        assert self._transcriber is not None
        try:
            text = await self._transcriber.transcribe(media.data, media.mimetype, tenant_id)
        except Exception as e:
            logger.warning("transcription failed for %s: %s", whatsapp_id, e)
            return
        if text:
            await self._crm.set_transcription(tenant_id, whatsapp_id, text)
