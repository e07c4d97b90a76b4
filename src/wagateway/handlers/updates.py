from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from ..constants import RECEIPT_STATUS
from ..jid import normalize_jid
from ..persistence.crm import CrmRepository
from ..protocol import PollVote, Reaction, Receipt

logger = logging.getLogger(__name__)


def _actor(key: Mapping[str, Any], my_jid: str | None) -> str | None:
    if key.get("participant"):
        return normalize_jid(key["participant"])
    if key.get("fromMe"):
        return my_jid
    return normalize_jid(key.get("remoteJid"))


def _now_ms() -> int:
    return int(time.time() * 1000)


class UpdatesHandler:
    """Receipts, reactions and poll votes on already stored messages."""

    def __init__(self, crm: CrmRepository) -> None:
        self._crm = crm

    async def handle_receipts(
        self, tenant_id: str, receipts: Iterable[Receipt], my_jid: str | None
    ) -> int:
        applied = 0
        for r in receipts:
            # Only our own outbound messages carry a delivery status.
            if not r.key.get("fromMe") or not r.key.get("id"):
                continue
            if r.user_jid and my_jid and normalize_jid(r.user_jid) == my_jid:
                continue
            status = RECEIPT_STATUS.get(r.status) if r.status is not None else None
            if status is None:
                continue
            res = await self._crm.advance_status(tenant_id, r.key["id"], status)
            if res.ok:
                applied += 1
        return applied

    async def handle_reactions(
        self, tenant_id: str, reactions: Iterable[Reaction], my_jid: str | None
    ) -> None:
        for r in reactions:
            message_id = r.key.get("id")
            actor = _actor(r.actor_key, my_jid) if r.actor_key else None
            if not message_id or not actor:
                continue
            await self.apply_reaction(tenant_id, message_id, actor, r.text)

    async def apply_reaction(
        self, tenant_id: str, message_id: str, actor: str, text: str | None
    ) -> bool:
        """Replace `actor`'s reaction on the message; an empty `text` removes it."""

        message = await self._crm.get_message(tenant_id, message_id)
        if message is None:
            logger.debug("reaction for unknown message %s", message_id)
            return False
        current = message.get("reactions")
        reactions = [
            r for r in (current if isinstance(current, list) else []) if r.get("actor") != actor
        ]
        if text:
            reactions.append({"text": text, "actor": actor, "ts": _now_ms()})
        res = await self._crm.set_reactions(tenant_id, message_id, reactions)
        return res.ok

    async def handle_poll_votes(
        self, tenant_id: str, votes: Iterable[PollVote], my_jid: str | None
    ) -> None:
        for v in votes:
            poll_id = v.poll_key.get("id")
            voter = _actor(v.voter_key, my_jid) if v.voter_key else None
            if not poll_id or not voter:
                continue
            await self.apply_vote(tenant_id, poll_id, voter, v.selected_options)

    async def apply_vote(
        self, tenant_id: str, poll_id: str, voter: str, options: list[str]
    ) -> bool:
        """Last write wins per voter; an empty selection withdraws the vote."""

        message = await self._crm.get_message(tenant_id, poll_id)
        if message is None:
            logger.debug("vote for unknown poll %s", poll_id)
            return False
        current = message.get("poll_votes")
        votes = [
            v for v in (current if isinstance(current, list) else []) if v.get("voter_jid") != voter
        ]
        if options:
            votes.append({"voter_jid": voter, "selected_options": list(options), "ts": _now_ms()})
        res = await self._crm.set_poll_votes(tenant_id, poll_id, votes)
        return res.ok
