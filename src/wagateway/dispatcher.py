from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .auth.serde import merge_creds
from .handlers.contacts import ContactsHandler, PresenceTracker
from .handlers.history import HistoryHandler
from .handlers.messages import MessageIngestor
from .handlers.updates import UpdatesHandler
from .log import session_context
from .protocol import (
    RAW_EVENTS,
    ConnectionUpdate,
    ContactsUpsert,
    CredsUpdate,
    GatewayEvent,
    HistorySync,
    MessagesUpsert,
    PollVoteUpdate,
    PresenceUpdate,
    ProtocolSocket,
    ReactionUpdate,
    ReceiptUpdate,
    to_events,
)
from .queue import MessageQueue
from .session import ConnectionManager, Session

logger = logging.getLogger(__name__)


class SessionDispatcher:
    """
    Routes one session's protocol events to their handlers.

    Message batches go through the shared `MessageQueue`; everything else is
    handled inline. Handlers look the session up by id rather than holding it.
    """

    def __init__(
        self,
        session: Session,
        *,
        manager: ConnectionManager,
        queue: MessageQueue,
        ingestor: MessageIngestor,
        contacts: ContactsHandler,
        presence: PresenceTracker,
        updates: UpdatesHandler,
        history: HistoryHandler,
    ) -> None:
        self.session_id = session.session_id
        self.tenant_id = session.tenant_id
        self._manager = manager
        self._queue = queue
        self._ingestor = ingestor
        self._contacts = contacts
        self._presence = presence
        self._updates = updates
        self._history = history
        self._socket: ProtocolSocket | None = None

    def attach(self, socket: ProtocolSocket) -> None:
        self.detach()
        self._socket = socket
        for name in RAW_EVENTS:
            socket.on(name, self._listener(name))

    def detach(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            socket.remove_all_listeners()

    def _listener(self, name: str) -> Callable[..., Awaitable[None]]:
        async def _on_event(payload: Any = None, *_: Any) -> None:
            for event in to_events(name, payload):
                await self.dispatch(event)

        return _on_event

    def _my_jid(self) -> str | None:
        session = self._manager.get(self.session_id)
        return session.me if session is not None else None

    async def dispatch(self, event: GatewayEvent) -> None:
        with session_context(self.session_id):
            try:
                await self._route(event)
            except Exception:
                logger.exception("%s handler failed", type(event).__name__)

    async def _route(self, event: GatewayEvent) -> None:
        tenant = self.tenant_id
        match event:
            case ConnectionUpdate():
                session = self._manager.get(self.session_id)
                if session is not None:
                    await self._manager.handle_connection(session, event)
            case CredsUpdate(update=update):
                session = self._manager.get(self.session_id)
                if session is not None:
                    merge_creds(session.auth.creds, update)
                    await session.auth.save_creds()
            case MessagesUpsert(messages=messages, type=kind):
                realtime = kind == "notify"
                for raw in messages:
                    self._queue.enqueue(
                        functools.partial(
                            self._ingestor.ingest, raw, self.session_id, tenant, realtime
                        )
                    )
            case ContactsUpsert(contacts=contacts):
                await self._contacts.upsert_batch(tenant, contacts)
            case PresenceUpdate():
                await self._presence.handle(tenant, event)
            case ReceiptUpdate(receipts=receipts):
                await self._updates.handle_receipts(tenant, receipts, self._my_jid())
            case ReactionUpdate(reactions=reactions):
                await self._updates.handle_reactions(tenant, reactions, self._my_jid())
            case PollVoteUpdate(votes=votes):
                await self._updates.handle_poll_votes(tenant, votes, self._my_jid())
            case HistorySync():
                session = self._manager.get(self.session_id)
                if session is None:
                    return
                # Numbering continues across reconnects; a fresh session starts at 1.
                session.history_seq += 1
                await self._history.handle(event, self.session_id, tenant, session.history_seq)
