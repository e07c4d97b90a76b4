from __future__ import annotations

import logging

from .jid import is_lid, normalize_jid
from .persistence.crm import CrmRepository

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps alias (`@lid`) JIDs to the stable phone JID of the same contact.

    Hits are cached per tenant; misses are not, so a mapping recorded later is
    picked up on the next lookup. The first mapping recorded for an alias is
    authoritative.
    """

    def __init__(self, crm: CrmRepository) -> None:
        self._crm = crm
        self._cache: dict[str, dict[str, str]] = {}

    async def resolve(self, tenant_id: str, jid: str | None) -> str | None:
        clean = normalize_jid(jid)
        if not clean or not is_lid(clean):
            return clean

        cached = self._cache.get(tenant_id, {}).get(clean)
        if cached:
            return cached

        phone_jid = await self._crm.lookup_identity(tenant_id, clean)
        if not phone_jid:
            return clean
        self._cache.setdefault(tenant_id, {})[clean] = phone_jid
        return phone_jid

    async def link(self, tenant_id: str, lid_jid: str | None, phone_jid: str | None) -> None:
        lid = normalize_jid(lid_jid)
        phone = normalize_jid(phone_jid)
        if not lid or not phone or lid == phone or not is_lid(lid) or is_lid(phone):
            return
        known = self._cache.get(tenant_id, {}).get(lid)
        if known is not None:
            if known != phone:
                logger.debug("identity %s already linked to %s", lid, known)
            return
        if await self._crm.link_identity(tenant_id, lid, phone):
            self._cache.setdefault(tenant_id, {})[lid] = phone
        else:
            # Someone else got there first; cache whatever is authoritative.
            existing = await self._crm.lookup_identity(tenant_id, lid)
            if existing:
                self._cache.setdefault(tenant_id, {})[lid] = existing

    def forget(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)
