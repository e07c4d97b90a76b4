from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..config import PresenceConfig
from ..identity import IdentityResolver
from ..jid import is_broadcast, is_group, is_lid, normalize_jid
from ..persistence.crm import CrmRepository, utcnow
from ..protocol import PresenceUpdate, ProtocolSocket

logger = logging.getLogger(__name__)

ONLINE_PRESENCES = frozenset({"available", "composing", "recording"})


@dataclass(frozen=True, slots=True)
class ContactInfo:
    jid: str
    name: str | None
    from_address_book: bool
    picture_url: str | None = None


def _parse_ts(value: Any) -> dt.datetime | None:
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = dt.datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)
    return None


def contact_info(c: Mapping[str, Any]) -> tuple[ContactInfo, str | None] | None:
    """Normalize one library contact; returns the info and its alias JID, if any."""

    jid = normalize_jid(c.get("id"))
    lid = normalize_jid(c.get("lid"))
    if jid and is_lid(jid):
        phone = normalize_jid(c.get("phoneNumber") or c.get("jid"))
        if phone and not is_lid(phone):
            jid, lid = phone, jid
    if not jid or is_broadcast(jid):
        return None

    name = c.get("name") or c.get("verifiedName") or c.get("notify")
    img = c.get("imgUrl")
    # The library reports "changed" when it only knows the picture is stale.
    picture = img if isinstance(img, str) and img.startswith("http") else None
    info = ContactInfo(
        jid=jid, name=name, from_address_book=bool(c.get("name")), picture_url=picture
    )
    return info, (lid if lid and lid != jid else None)


class ContactsHandler:
    def __init__(
        self,
        crm: CrmRepository,
        identity: IdentityResolver,
        *,
        picture_max_age_s: float = 24 * 60 * 60,
        now: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._crm = crm
        self._identity = identity
        self.picture_max_age_s = picture_max_age_s
        self._now = now

    async def upsert_one(self, tenant_id: str, c: Mapping[str, Any]) -> ContactInfo | None:
        parsed = contact_info(c)
        if parsed is None:
            return None
        info, lid = parsed
        if lid:
            await self._identity.link(tenant_id, lid, info.jid)
        if info.name or info.picture_url:
            await self._crm.upsert_contact(
                tenant_id,
                info.jid,
                info.name,
                picture_url=info.picture_url,
                from_address_book=info.from_address_book,
                verified_name=c.get("verifiedName"),
            )
        return info

    async def upsert_batch(
        self, tenant_id: str, contacts: Iterable[Mapping[str, Any]]
    ) -> list[ContactInfo]:
        out = []
        for c in contacts:
            try:
                info = await self.upsert_one(tenant_id, c)
            except Exception:
                logger.exception("contact upsert failed for %s", c.get("id"))
                continue
            if info is not None:
                out.append(info)
        return out

    async def refresh_info(
        self, socket: ProtocolSocket, jid: str, tenant_id: str, push_name: str | None = None
    ) -> None:
        """
        Refresh the profile picture when the stored one is older than the max age.

        The check timestamp is stamped even when no picture comes back, so a
        contact without a picture is asked at most once per window.
        """

        clean = normalize_jid(jid)
        if not clean or is_broadcast(clean):
            return
        try:
            contact = await self._crm.get_contact(tenant_id, clean)
            checked = _parse_ts((contact or {}).get("profile_pic_updated_at"))
            age = (self._now() - checked).total_seconds() if checked else None
            if age is not None and age < self.picture_max_age_s:
                if push_name:
                    await self._crm.upsert_contact(tenant_id, clean, push_name)
                return

            try:
                url = await socket.profile_picture_url(clean)
            except Exception as e:
                # Privacy settings and missing pictures surface as errors.
                logger.debug("no profile picture for %s: %s", clean, e)
                url = None
            await self._crm.upsert_contact(
                tenant_id, clean, push_name, picture_url=url, picture_checked=True
            )
        except Exception as e:
            logger.warning("contact refresh failed for %s: %s", clean, e)


class PresenceTracker:
    """
    Debounced online/offline writes.

    A contact's presence is written only when its online flag flips or when
    `debounce_s` has passed since the last write for it.
    """

    def __init__(
        self,
        crm: CrmRepository,
        config: PresenceConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._crm = crm
        self.config = config or PresenceConfig()
        self._clock = clock
        self._last: dict[tuple[str, str], tuple[bool, float]] = {}
        self._pruned_at = 0.0

    def __len__(self) -> int:
        return len(self._last)

    def _prune(self, now: float) -> None:
        # Entries past the window no longer suppress anything.
        if now - self._pruned_at < self.config.debounce_s:
            return
        self._pruned_at = now
        stale = [k for k, (_, at) in self._last.items() if now - at >= self.config.debounce_s]
        for k in stale:
            del self._last[k]

    async def handle(self, tenant_id: str, update: PresenceUpdate) -> bool:
        jid = normalize_jid(update.jid)
        if not jid or is_group(jid) or is_broadcast(jid):
            return False

        entry = update.presences.get(update.jid) or update.presences.get(jid)
        if entry is None and len(update.presences) == 1:
            entry = next(iter(update.presences.values()))
        if entry is None:
            return False
        online = entry.get("lastKnownPresence") in ONLINE_PRESENCES

        key = (tenant_id, jid)
        now = self._clock()
        self._prune(now)
        last = self._last.get(key)
        if last is not None and last[0] == online and now - last[1] < self.config.debounce_s:
            return False

        self._last[key] = (online, now)
        await self._crm.set_presence(tenant_id, jid, online)
        return True
