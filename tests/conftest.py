from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from wagateway.persistence import CrmRepository, InMemoryDataStore
from wagateway.protocol import ConnectionUpdate
from wagateway.session import ConnectionManager, Session

ME = "5511900000000@s.whatsapp.net"


class FakeSocket:
    """In-memory stand-in for a protocol connection; records every command."""

    def __init__(self, user: Mapping[str, Any] | None = None) -> None:
        self.user: Mapping[str, Any] | None = user or {"id": "5511900000000:7@s.whatsapp.net"}
        self.listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self.connected = False
        self.closed = False
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.presences: list[tuple[str, str | None]] = []
        self.calls: list[tuple[Any, ...]] = []
        self.pictures: dict[str, str] = {}
        self.exists: list[Mapping[str, Any]] | Exception | None = None
        self.media: bytes | Exception | None = b"\x00media"
        self.products: list[Mapping[str, Any]] | Exception = []
        # Predicate over outgoing content; a match makes send_message fail.
        self.reject: Callable[[Mapping[str, Any]], bool] | None = None

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self.listeners[event].append(listener)

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self.listeners.clear()
        else:
            self.listeners.pop(event, None)

    async def emit(self, event: str, payload: Any) -> None:
        for listener in list(self.listeners.get(event, [])):
            await listener(payload)

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> Mapping[str, Any]:
        if self.reject is not None and self.reject(content):
            raise RuntimeError("rejected by server")
        self.sent.append((jid, dict(content)))
        return {"key": {"remoteJid": jid, "fromMe": True, "id": f"OUT{len(self.sent)}"}}

    async def send_presence_update(self, presence: str, jid: str | None = None) -> None:
        self.presences.append((presence, jid))

    async def profile_picture_url(self, jid: str) -> str | None:
        self.calls.append(("profile_picture_url", jid))
        if jid in self.pictures:
            return self.pictures[jid]
        raise RuntimeError("item-not-found")

    async def on_whatsapp(self, *jids: str) -> list[Mapping[str, Any]]:
        self.calls.append(("on_whatsapp", *jids))
        if isinstance(self.exists, Exception):
            raise self.exists
        if self.exists is None:
            return [{"jid": j, "exists": True} for j in jids]
        return self.exists

    async def download_media(
        self, message: Mapping[str, Any], *, headers: Mapping[str, str], timeout_s: float
    ) -> bytes | None:
        self.calls.append(("download_media", dict(headers)))
        if isinstance(self.media, Exception):
            raise self.media
        return self.media

    async def group_create(self, subject: str, participants: list[str]) -> Mapping[str, Any]:
        self.calls.append(("group_create", subject, list(participants)))
        return {"id": "120363000000000001@g.us", "subject": subject}

    async def group_participants_update(
        self, jid: str, participants: list[str], action: str
    ) -> list[Mapping[str, Any]]:
        self.calls.append(("group_participants_update", jid, list(participants), action))
        return [{"jid": p, "status": "200"} for p in participants]

    async def group_update_subject(self, jid: str, subject: str) -> None:
        self.calls.append(("group_update_subject", jid, subject))

    async def group_update_description(self, jid: str, description: str) -> None:
        self.calls.append(("group_update_description", jid, description))

    async def group_setting_update(self, jid: str, setting: str) -> None:
        self.calls.append(("group_setting_update", jid, setting))

    async def group_invite_code(self, jid: str) -> str:
        self.calls.append(("group_invite_code", jid))
        return "AbCdEf123"

    async def community_link_group(self, group_jid: str, community_jid: str) -> None:
        self.calls.append(("community_link_group", group_jid, community_jid))

    async def update_profile_picture(self, jid: str, data: bytes) -> None:
        self.calls.append(("update_profile_picture", jid, data))

    async def update_profile_name(self, name: str) -> None:
        self.calls.append(("update_profile_name", name))

    async def update_profile_status(self, status: str) -> None:
        self.calls.append(("update_profile_status", status))

    async def update_privacy(self, category: str, value: str) -> None:
        self.calls.append(("update_privacy", category, value))

    async def newsletter_create(
        self, name: str, description: str | None = None
    ) -> Mapping[str, Any]:
        self.calls.append(("newsletter_create", name, description))
        return {"id": "120363999999999999@newsletter", "name": name}

    async def newsletter_search(self, query: str, limit: int = 20) -> list[Mapping[str, Any]]:
        self.calls.append(("newsletter_search", query, limit))
        return [{"id": "120363111111111111@newsletter", "name": query.title()}]

    async def newsletter_metadata(self, jid: str) -> Mapping[str, Any] | None:
        self.calls.append(("newsletter_metadata", jid))
        return {"id": jid, "name": "News Daily"}

    async def newsletter_follow(self, jid: str) -> None:
        self.calls.append(("newsletter_follow", jid))

    async def newsletter_unfollow(self, jid: str) -> None:
        self.calls.append(("newsletter_unfollow", jid))

    async def newsletter_fetch_messages(self, jid: str, count: int) -> list[Mapping[str, Any]]:
        self.calls.append(("newsletter_fetch_messages", jid, count))
        return [{"id": f"N{i}"} for i in range(count)]

    async def get_products(self, jid: str) -> list[Mapping[str, Any]]:
        self.calls.append(("get_products", jid))
        if isinstance(self.products, Exception):
            raise self.products
        return self.products


class FakeFactory:
    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.fail_next = 0
        # When set, opens wait on it; `opening` fires once one is waiting.
        self.gate: asyncio.Event | None = None
        self.opening = asyncio.Event()

    async def __call__(self, session_id: str, auth: Any) -> FakeSocket:
        if self.gate is not None:
            self.opening.set()
            await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


class FakeSleep:
    """Records requested delays and yields once instead of waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def store() -> InMemoryDataStore:
    s = InMemoryDataStore()
    s.seed("instances", {"session_id": "s1", "company_id": "t1", "status": "disconnected"})
    return s


@pytest.fixture
def crm(store: InMemoryDataStore) -> CrmRepository:
    return CrmRepository(store)


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def manager(
    store: InMemoryDataStore, crm: CrmRepository, factory: FakeFactory, sleep: FakeSleep
) -> ConnectionManager:
    return ConnectionManager(store, crm, factory, sleep=sleep)


@pytest.fixture
def connect() -> Callable[..., Any]:
    """Start a session on a manager and drive it to CONNECTED."""

    async def _connect(
        manager: ConnectionManager, session_id: str = "s1", tenant_id: str = "t1"
    ) -> tuple[Session, FakeSocket]:
        session = await manager.start(session_id, tenant_id)
        await manager.handle_connection(session, ConnectionUpdate(connection="open"))
        assert isinstance(session.socket, FakeSocket)
        return session, session.socket

    return _connect
