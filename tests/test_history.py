from __future__ import annotations

import datetime as dt

import pytest

from wagateway.handlers import ContactsHandler, HistoryHandler, MessageIngestor
from wagateway.handlers.history import estimate_progress, months_ago
from wagateway.identity import IdentityResolver
from wagateway.protocol import HistorySync

NOW = dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)
MARIA = "5511999999999@s.whatsapp.net"
BOB = "5511888887777@s.whatsapp.net"


def _msg(msg_id: str, ts: dt.datetime, *, jid: str = MARIA) -> dict:
    return {
        "key": {"remoteJid": jid, "fromMe": False, "id": msg_id},
        "message": {"conversation": f"text {msg_id}"},
        "messageTimestamp": int(ts.timestamp()),
    }


def _handler(crm, sleep) -> HistoryHandler:
    identity = IdentityResolver(crm)
    contacts = ContactsHandler(crm, identity)
    ingestor = MessageIngestor(crm, identity, contacts, {})
    return HistoryHandler(crm, contacts, ingestor, {}, sleep=sleep, now=lambda: NOW)


def _instance(store):
    return store.rows("instances")[0]


def test_months_ago_clamps_day() -> None:
    assert months_ago(NOW, 8) == dt.datetime(2025, 7, 10, 12, 0, tzinfo=dt.timezone.utc)
    end_of_month = dt.datetime(2026, 3, 31, tzinfo=dt.timezone.utc)
    assert months_ago(end_of_month, 1) == dt.datetime(2026, 2, 28, tzinfo=dt.timezone.utc)
    assert estimate_progress(1) == 15
    assert estimate_progress(40) == 95


@pytest.mark.asyncio
async def test_duplicate_chunk_is_a_noop(crm, store, sleep) -> None:
    handler = _handler(crm, sleep)
    chunk = HistorySync(contacts=[], messages=[_msg("M1", NOW)])

    assert await handler.handle(chunk, "s1", "t1", 7) is True
    assert await handler.handle(chunk, "s1", "t1", 7) is False
    assert handler.is_processed("s1", 7)
    assert len(store.rows("messages")) == 1


@pytest.mark.asyncio
async def test_server_chunk_numbering_drives_dedup(crm, store, sleep) -> None:
    handler = _handler(crm, sleep)
    chunk = HistorySync(contacts=[], messages=[_msg("M1", NOW)], sync_type=2, chunk_order=1)
    again = HistorySync(contacts=[], messages=[_msg("M2", NOW)], sync_type=2, chunk_order=1)

    assert await handler.handle(chunk, "s1", "t1", 1) is True
    assert await handler.handle(again, "s1", "t1", 2) is False
    assert handler.is_processed("s1", (2, 1))
    assert [m["whatsapp_id"] for m in store.rows("messages")] == ["M1"]


@pytest.mark.asyncio
async def test_forget_resets_a_restarted_session(crm, store, sleep) -> None:
    handler = _handler(crm, sleep)
    await handler.handle(HistorySync(contacts=[], messages=[_msg("M1", NOW)]), "s1", "t1", 1)
    await handler.handle(HistorySync(contacts=[], messages=[_msg("X1", NOW)]), "s2", "t1", 1)

    handler.forget("s1")

    assert not handler.is_processed("s1", 1)
    assert handler.is_processed("s2", 1)
    fresh = HistorySync(contacts=[], messages=[_msg("M2", NOW)])
    assert await handler.handle(fresh, "s1", "t1", 1) is True


@pytest.mark.asyncio
async def test_import_is_bounded_and_oldest_first(crm, store, sleep) -> None:
    handler = _handler(crm, sleep)
    recent = [_msg(f"M{i:02d}", NOW - dt.timedelta(days=30 - i)) for i in range(12)]
    old = _msg("OLD", NOW - dt.timedelta(days=400))
    story = _msg("STORY", NOW, jid="status@broadcast")
    other = _msg("B1", NOW, jid=BOB)
    chunk = HistorySync(
        contacts=[{"id": MARIA, "name": "Maria Silva"}],
        messages=[*reversed(recent), old, story, other],
        progress=40,
    )

    assert await handler.handle(chunk, "s1", "t1", 1) is True

    maria = [m["whatsapp_id"] for m in store.rows("messages") if m["remote_jid"] == MARIA]
    assert maria == [f"M{i:02d}" for i in range(2, 12)]
    ids = {m["whatsapp_id"] for m in store.rows("messages")}
    assert "OLD" not in ids and "STORY" not in ids and "B1" in ids
    leads = {lead["phone"]: lead["name"] for lead in store.rows("leads")}
    assert leads["5511999999999"] == "Maria Silva"
    assert sleep.calls == [handler.config.chat_pause_s]
    assert _instance(store)["sync_status"] == "importing_messages"
    assert _instance(store)["sync_percent"] == 40


@pytest.mark.asyncio
async def test_final_chunk_completes_and_later_chunks_are_skipped(crm, store, sleep) -> None:
    handler = _handler(crm, sleep)

    last = HistorySync(contacts=[], messages=[_msg("M1", NOW)], is_latest=True)
    assert await handler.handle(last, "s1", "t1", 3) is True
    assert _instance(store)["sync_status"] == "completed"
    assert _instance(store)["sync_percent"] == 100
    assert not handler.is_processed("s1", 3)

    late = HistorySync(contacts=[], messages=[_msg("M2", NOW)])
    assert await handler.handle(late, "s1", "t1", 4) is False
    assert [m["whatsapp_id"] for m in store.rows("messages")] == ["M1"]
