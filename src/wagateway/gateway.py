from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .catalog import CatalogSync
from .config import GatewayConfig
from .dispatcher import SessionDispatcher
from .groups import GroupManager
from .handlers.contacts import ContactsHandler, PresenceTracker
from .handlers.history import HistoryHandler
from .handlers.media import MediaHandler
from .handlers.messages import MessageIngestor
from .handlers.updates import UpdatesHandler
from .identity import IdentityResolver
from .media import MediaStorage, SupabaseStorage, Transcriber
from .persistence.base import DataStore
from .persistence.crm import CrmRepository
from .persistence.postgrest import PostgrestDataStore
from .profile import ProfileManager
from .protocol import SocketFactory
from .queue import MessageQueue, QueueStats
from .scheduler import ReminderScheduler
from .sender import MessageSpec, OutboundSender
from .session import ConnectionManager, Session
from .settings import Settings
from .util.asyncio import Sleep, wait_background
from .util.events import NEW_MESSAGE_ARRIVED, MessageBus, NewMessageArrived, Subscriber
from .webhook import WebhookDispatcher

logger = logging.getLogger(__name__)


class Gateway:
    """
    Multi-tenant WhatsApp gateway core.

    Wires the connection manager, ingestion pipeline, outbound sender, group
    management and reminder scheduler around one `DataStore` and one
    `SocketFactory`.
    """

    def __init__(
        self,
        store: DataStore,
        socket_factory: SocketFactory,
        config: GatewayConfig | None = None,
        *,
        storage: MediaStorage | None = None,
        transcriber: Transcriber | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = cfg = config or GatewayConfig()
        self.store = store
        self._sleep = sleep

        self.crm = CrmRepository(store, lead_lock_ttl_s=cfg.lead_lock_ttl_s)
        self.identity = IdentityResolver(self.crm)
        self.bus: MessageBus[NewMessageArrived] = MessageBus(NEW_MESSAGE_ARRIVED)
        self.queue = MessageQueue(cfg.queue.concurrency)
        self.sessions = ConnectionManager(
            store,
            self.crm,
            socket_factory,
            attach=self._make_dispatcher,
            on_new_session=self._reset_session_state,
            reconnect=cfg.reconnect,
            sleep=sleep,
        )

        self.contacts = ContactsHandler(
            self.crm, self.identity, picture_max_age_s=cfg.profile_pic_max_age_s
        )
        self.presence = PresenceTracker(self.crm, cfg.presence)
        self.updates = UpdatesHandler(self.crm)
        self.webhooks = WebhookDispatcher(self.crm, cfg.webhook)
        self.ingestor = MessageIngestor(
            self.crm,
            self.identity,
            self.contacts,
            self.sessions,
            media=MediaHandler(storage, cfg.media) if storage is not None else None,
            transcriber=transcriber,
            webhooks=self.webhooks,
            bus=self.bus,
            dedup_ttl_s=cfg.message_dedup_ttl_s,
        )
        self.history = HistoryHandler(
            self.crm, self.contacts, self.ingestor, self.sessions, cfg.history, sleep=sleep
        )
        self.sender = OutboundSender(
            self.sessions, self.crm, cfg.sender, updates=self.updates, sleep=sleep
        )
        self.groups = GroupManager(self.sessions, self.crm)
        self.profile = ProfileManager(self.sessions)
        self.catalog = CatalogSync(self.sessions, self.crm)
        self.scheduler = ReminderScheduler(
            self.crm, self.sender, self.sessions, cfg.scheduler, sleep=sleep
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        socket_factory: SocketFactory,
        *,
        transcriber: Transcriber | None = None,
    ) -> Gateway:
        if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
        store = PostgrestDataStore(settings.SUPABASE_URL, settings.SUPABASE_KEY)
        storage = SupabaseStorage(
            settings.SUPABASE_URL, settings.SUPABASE_KEY, bucket=settings.MEDIA_BUCKET
        )
        return cls(
            store,
            socket_factory,
            settings.to_config(),
            storage=storage,
            transcriber=transcriber,
        )

    def _reset_session_state(self, session: Session) -> None:
        self.history.forget(session.session_id)

    def _make_dispatcher(self, session: Session) -> SessionDispatcher:
        return SessionDispatcher(
            session,
            manager=self.sessions,
            queue=self.queue,
            ingestor=self.ingestor,
            contacts=self.contacts,
            presence=self.presence,
            updates=self.updates,
            history=self.history,
        )

    # -- sessions ----------------------------------------------------------

    async def start_session(self, session_id: str, tenant_id: str) -> Session:
        return await self.sessions.start(session_id, tenant_id)

    async def stop_session(self, session_id: str) -> None:
        await self.sessions.stop(session_id)

    async def logout_session(self, session_id: str, tenant_id: str | None = None) -> None:
        await self.sessions.logout(session_id, tenant_id)

    async def restore_sessions(self) -> int:
        """Restart every instance persisted as connected/connecting, one at a time."""

        pending = await self.crm.list_restorable_sessions()
        if pending:
            logger.info("restoring %d sessions", len(pending))
        restored = 0
        for i, (session_id, tenant_id) in enumerate(pending):
            if i:
                await self._sleep(self.config.restore_stagger_s)
            try:
                await self.sessions.start(session_id, tenant_id)
                restored += 1
            except Exception:
                logger.exception("could not restore session %s", session_id)
        return restored

    # -- outbound ----------------------------------------------------------

    async def send_message(
        self, session_id: str, to: str, spec: MessageSpec | Mapping[str, Any]
    ) -> Mapping[str, Any] | None:
        return await self.sender.send(session_id, to, spec)

    def subscribe(self, fn: Subscriber[NewMessageArrived]) -> Callable[[], None]:
        """Register for `new_message_arrived`; returns the unsubscribe callable."""

        return self.bus.subscribe(fn)

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.sessions.close_all()
        await self.queue.join()
        await wait_background()
