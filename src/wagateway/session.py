from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .auth.store import DatabaseAuthState
from .config import ReconnectConfig
from .constants import (
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_QRCODE,
    SYNC_WAITING,
)
from .exceptions import SessionNotFound
from .jid import jid_normalized_user
from .log import session_context
from .persistence.base import DataStore
from .persistence.crm import CrmRepository
from .protocol import FATAL_DISCONNECT_CODES, ConnectionUpdate, ProtocolSocket, SocketFactory
from .util.asyncio import Sleep, cancel_suppress, ensure_task

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class Attachment(Protocol):
    def attach(self, socket: ProtocolSocket) -> None: ...

    def detach(self) -> None: ...


@dataclass(slots=True, eq=False)
class Session:
    session_id: str
    tenant_id: str
    auth: DatabaseAuthState
    socket: ProtocolSocket | None = None
    state: SessionState = SessionState.CONNECTING
    attempt: int = 0
    history_seq: int = 0
    qr: str | None = None
    reconnect_task: asyncio.Task[None] | None = None
    attachment: Attachment | None = None

    @property
    def me(self) -> str | None:
        user = self.socket.user if self.socket is not None else None
        jid = user.get("id") if user else None
        return jid_normalized_user(jid) or None


AttachFactory = Callable[[Session], Attachment]


class ConnectionManager:
    """
    Owns every live session of the process.

    The session map is only mutated here (under `_lock`); other components look
    sessions up by id on each use and never keep a reference across awaits
    that could outlive a teardown.
    """

    def __init__(
        self,
        store: DataStore,
        crm: CrmRepository,
        socket_factory: SocketFactory,
        *,
        attach: AttachFactory | None = None,
        on_new_session: Callable[[Session], None] | None = None,
        reconnect: ReconnectConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._crm = crm
        self._factory = socket_factory
        self._attach = attach
        self._on_new_session = on_new_session
        self.reconnect = reconnect or ReconnectConfig()
        self._sleep = sleep
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        """Return a connected session or raise `SessionNotFound`."""

        session = self._sessions.get(session_id)
        if session is None or session.socket is None:
            raise SessionNotFound(session_id)
        if session.state is not SessionState.CONNECTED:
            raise SessionNotFound(session_id)
        return session

    def _owns(self, session: Session) -> bool:
        return self._sessions.get(session.session_id) is session

    async def start(self, session_id: str, tenant_id: str) -> Session:
        with session_context(session_id):
            async with self._lock:
                existing = self._sessions.get(session_id)
                if existing is not None:
                    logger.debug("session already active")
                    return existing
                auth = await DatabaseAuthState.load(self._store, session_id)
                session = Session(session_id=session_id, tenant_id=tenant_id, auth=auth)
                self._sessions[session_id] = session
                if self._on_new_session is not None:
                    self._on_new_session(session)

            logger.info("starting session for tenant %s", tenant_id)
            await self._crm.update_instance_status(
                session_id, tenant_id, {"status": STATUS_CONNECTING}
            )
            await self._open(session)
            return session

    async def _open(self, session: Session) -> None:
        session.state = SessionState.CONNECTING
        try:
            socket = await self._factory(session.session_id, session.auth)
            if not self._owns(session):
                logger.debug("session stopped while opening; discarding socket")
                await self._close_socket(socket)
                return
            session.socket = socket
            if self._attach is not None:
                session.attachment = self._attach(session)
                session.attachment.attach(socket)
            await socket.connect()
            if not self._owns(session):
                logger.debug("session stopped while connecting; discarding socket")
                await self._release_socket(session)
        except Exception as e:
            logger.warning("failed to open socket: %s", e)
            await self._release_socket(session)
            if self._owns(session):
                await self._schedule_reconnect(session, None)

    async def stop(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        with session_context(session_id):
            logger.info("stopping session")
            await self._shutdown(session)

    async def logout(self, session_id: str, tenant_id: str | None = None) -> None:
        """Stop the session and wipe its credentials; a new scan is needed afterwards."""

        session = self._sessions.get(session_id)
        tenant = tenant_id or (session.tenant_id if session else None)
        await self.stop(session_id)
        if tenant is None:
            logger.warning("logout of unknown session %s without tenant", session_id)
            return
        await self._crm.delete_session_data(session_id, tenant)

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            with session_context(session.session_id):
                await self._shutdown(session)

    async def _shutdown(self, session: Session) -> None:
        session.state = SessionState.CLOSING
        task, session.reconnect_task = session.reconnect_task, None
        await cancel_suppress(task)
        await self._release_socket(session)
        session.state = SessionState.CLOSED

    async def _release_socket(self, session: Session) -> None:
        if session.attachment is not None:
            session.attachment.detach()
            session.attachment = None
        socket, session.socket = session.socket, None
        if socket is not None:
            await self._close_socket(socket)

    async def _close_socket(self, socket: ProtocolSocket) -> None:
        try:
            await socket.close()
        except Exception as e:
            logger.debug("socket close failed: %s", e)

    # -- connection state machine -------------------------------------------

    async def handle_connection(self, session: Session, update: ConnectionUpdate) -> None:
        if not self._owns(session):
            logger.debug("ignoring connection update for a replaced session")
            return

        if update.qr:
            session.state = SessionState.AWAITING_SCAN
            session.qr = update.qr
            logger.info("scan payload ready")
            await self._crm.update_instance_status(
                session.session_id,
                session.tenant_id,
                {
                    "status": STATUS_QRCODE,
                    "qrcode_url": update.qr,
                    "sync_status": SYNC_WAITING,
                    "sync_percent": 0,
                },
            )

        if update.connection == "open":
            await self._on_open(session)
        elif update.connection == "close":
            await self._on_close(session, update.status_code)
        elif update.connection == "connecting" and not update.qr:
            session.state = SessionState.CONNECTING

    async def _on_open(self, session: Session) -> None:
        session.state = SessionState.CONNECTED
        session.attempt = 0
        session.qr = None
        logger.info("connected")
        await self._crm.update_instance_status(
            session.session_id,
            session.tenant_id,
            {"status": STATUS_CONNECTED, "qrcode_url": None},
        )
        await self._refresh_profile(session)

    async def _refresh_profile(self, session: Session) -> None:
        socket = session.socket
        if socket is None:
            return
        user = socket.user or {}
        values: dict[str, object] = {}
        if user.get("name"):
            values["profile_name"] = user["name"]
        me = session.me
        if me:
            try:
                pic = await socket.profile_picture_url(me)
            except Exception as e:
                logger.debug("own profile picture unavailable: %s", e)
                pic = None
            if pic:
                values["profile_pic_url"] = pic
        if values:
            await self._crm.update_instance_status(session.session_id, session.tenant_id, values)

    async def _on_close(self, session: Session, status_code: int | None) -> None:
        session.state = SessionState.CLOSING
        await self._release_socket(session)

        if status_code in FATAL_DISCONNECT_CODES:
            logger.info("closed with fatal code %s; wiping credentials", status_code)
            async with self._lock:
                if self._owns(session):
                    del self._sessions[session.session_id]
            task, session.reconnect_task = session.reconnect_task, None
            await cancel_suppress(task)
            session.state = SessionState.CLOSED
            await self._crm.delete_session_data(session.session_id, session.tenant_id)
            return

        await self._crm.update_instance_status(
            session.session_id, session.tenant_id, {"status": STATUS_DISCONNECTED}
        )
        await self._schedule_reconnect(session, status_code)

    async def _schedule_reconnect(self, session: Session, status_code: int | None) -> None:
        if session.reconnect_task is not None and not session.reconnect_task.done():
            return
        session.attempt += 1
        session.state = SessionState.CLOSED
        delay = self.reconnect.delay_for(session.attempt)
        logger.info(
            "closed (code %s); reconnect attempt %d in %.1fs", status_code, session.attempt, delay
        )
        session.reconnect_task = ensure_task(
            self._reconnect_later(session, delay), name=f"reconnect.{session.session_id}"
        )

    async def _reconnect_later(self, session: Session, delay: float) -> None:
        await self._sleep(delay)
        if not self._owns(session):
            logger.debug("reconnect skipped; session was stopped")
            return
        session.reconnect_task = None
        await self._open(session)
