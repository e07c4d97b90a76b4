from __future__ import annotations

import asyncio
import calendar
import datetime as dt
import logging
from collections import defaultdict
from collections.abc import Callable, Hashable
from typing import Any

from ..config import HistoryConfig
from ..constants import SYNC_COMPLETED, SYNC_IMPORTING_CONTACTS, SYNC_IMPORTING_MESSAGES
from ..jid import is_broadcast, is_group, is_newsletter, is_user_jid, normalize_jid
from ..persistence.crm import CrmRepository, utcnow
from ..protocol import HistorySync, ProtocolSocket
from ..util.asyncio import Sleep
from .contacts import ContactInfo, ContactsHandler
from .messages import IngestOptions, MessageIngestor, SessionLookup
from .parsers import message_timestamp

logger = logging.getLogger(__name__)


def months_ago(now: dt.datetime, months: int) -> dt.datetime:
    """Same wall-clock instant `months` calendar months earlier (day clamped to month end)."""

    years, month0 = divmod(now.month - 1 - months, 12)
    year, month = now.year + years, month0 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def estimate_progress(sequence: int) -> int:
    return min(95, 10 + 5 * sequence)


class HistoryHandler:
    """
    Bounded import of history-sync chunks.

    Chunks are deduplicated per session until the final chunk arrives, by the
    server's chunk numbering when present and by arrival order otherwise. Only
    the most recent messages of each chat inside the retention window are
    written, oldest first.
    """

    def __init__(
        self,
        crm: CrmRepository,
        contacts: ContactsHandler,
        ingestor: MessageIngestor,
        sessions: SessionLookup,
        config: HistoryConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        now: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._crm = crm
        self._contacts = contacts
        self._ingestor = ingestor
        self._sessions = sessions
        self.config = config or HistoryConfig()
        self._sleep = sleep
        self._now = now
        self._seen: dict[str, set[Hashable]] = defaultdict(set)

    def is_processed(self, session_id: str, key: Hashable) -> bool:
        return key in self._seen.get(session_id, ())

    def forget(self, session_id: str) -> None:
        """Drop the dedup state of a session; called whenever it starts afresh."""

        self._seen.pop(session_id, None)

    async def handle(
        self, chunk: HistorySync, session_id: str, tenant_id: str, sequence: int
    ) -> bool:
        """Returns False when the chunk was skipped as a duplicate or already imported."""

        key: Hashable = chunk.chunk_key if chunk.chunk_key is not None else sequence
        if self.is_processed(session_id, key):
            logger.info("history chunk %s already processed", key)
            return False
        self._seen[session_id].add(key)

        if await self._crm.get_sync_status(session_id, tenant_id) == SYNC_COMPLETED:
            logger.debug("history already imported; skipping chunk %d", sequence)
            if chunk.is_latest:
                self._seen.pop(session_id, None)
            return False

        progress = chunk.progress if chunk.progress is not None else estimate_progress(sequence)
        logger.info(
            "history chunk %d: %d contacts, %d messages (%d%%)",
            sequence,
            len(chunk.contacts),
            len(chunk.messages),
            progress,
        )
        try:
            known: dict[str, ContactInfo] = {}
            if chunk.contacts:
                await self._crm.update_sync_status(session_id, SYNC_IMPORTING_CONTACTS, progress)
                known = await self._import_contacts(chunk.contacts, session_id, tenant_id)
            if chunk.messages:
                await self._crm.update_sync_status(session_id, SYNC_IMPORTING_MESSAGES, progress)
                imported = await self._import_messages(chunk.messages, known, session_id, tenant_id)
                logger.info("imported %d recent messages", imported)
        except Exception:
            logger.exception("history chunk %d failed", sequence)
        finally:
            if chunk.is_latest:
                await self._crm.update_sync_status(session_id, SYNC_COMPLETED, 100)
                self._seen.pop(session_id, None)
                logger.info("history sync completed")
        return True

    def _socket(self, session_id: str) -> tuple[ProtocolSocket | None, str | None]:
        session = self._sessions.get(session_id)
        if session is None:
            return None, None
        return session.socket, session.me

    async def _import_contacts(
        self, contacts: list[dict[str, Any]], session_id: str, tenant_id: str
    ) -> dict[str, ContactInfo]:
        cfg = self.config
        known: dict[str, ContactInfo] = {}
        size = max(1, cfg.contact_batch_size)
        for start in range(0, len(contacts), size):
            if start:
                await self._sleep(cfg.contact_batch_pause_s)
            socket, my_jid = self._socket(session_id)
            for c in contacts[start : start + size]:
                info = await self._contacts.upsert_one(tenant_id, c)
                if info is None:
                    continue
                known[info.jid] = info
                if is_group(info.jid) or is_newsletter(info.jid):
                    continue
                if info.name:
                    await self._crm.ensure_lead(tenant_id, info.jid, info.name, my_jid)
                if socket is not None and not info.picture_url and is_user_jid(info.jid):
                    try:
                        await asyncio.wait_for(
                            self._contacts.refresh_info(socket, info.jid, tenant_id),
                            timeout=cfg.profile_pic_timeout_s,
                        )
                    except asyncio.TimeoutError:
                        logger.debug("profile picture fetch timed out for %s", info.jid)
        return known

    async def _import_messages(
        self,
        messages: list[dict[str, Any]],
        known: dict[str, ContactInfo],
        session_id: str,
        tenant_id: str,
    ) -> int:
        cfg = self.config
        cutoff = int(months_ago(self._now(), cfg.months_limit).timestamp())

        chats: dict[str, list[tuple[int, dict[str, Any]]]] = defaultdict(list)
        for raw in messages:
            jid = normalize_jid((raw.get("key") or {}).get("remoteJid"))
            if not jid or is_broadcast(jid):
                continue
            ts = message_timestamp(raw)
            if ts is not None and ts < cutoff:
                continue
            chats[jid].append((ts or 0, raw))

        options = IngestOptions(download_media=cfg.download_media, fetch_profile_pic=False)
        imported = 0
        for i, (jid, items) in enumerate(chats.items()):
            if i:
                await self._sleep(cfg.chat_pause_s)
            items.sort(key=lambda item: item[0], reverse=True)
            recent = items[: cfg.per_chat_limit]
            recent.reverse()

            contact = known.get(jid)
            for _, raw in recent:
                forced = contact.name if contact and contact.name else raw.get("pushName")
                row = await self._ingestor.ingest(
                    raw, session_id, tenant_id, False, forced_name=forced, options=options
                )
                if row is not None:
                    imported += 1
        return imported
