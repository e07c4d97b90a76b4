from __future__ import annotations

import json

import pytest

from wagateway.constants import REVOKED_CONTENT
from wagateway.handlers import ContactsHandler, IngestOptions, MediaHandler, MessageIngestor
from wagateway.identity import IdentityResolver
from wagateway.util.asyncio import wait_background
from wagateway.util.events import MessageBus, NewMessageArrived

MARIA = "5511999999999@s.whatsapp.net"


def _text(msg_id: str, text: str, *, jid: str = MARIA, push_name: str = "Maria", **key):
    return {
        "key": {"remoteJid": jid, "fromMe": False, "id": msg_id, **key},
        "pushName": push_name,
        "message": {"conversation": text},
        "messageTimestamp": 1_700_000_000,
    }


def _ingestor(crm, sessions=None, **kwargs) -> MessageIngestor:
    identity = IdentityResolver(crm)
    contacts = ContactsHandler(crm, identity)
    lookup = sessions if sessions is not None else {}
    return MessageIngestor(crm, identity, contacts, lookup, **kwargs)


@pytest.mark.asyncio
async def test_duplicate_delivery_yields_one_row_and_one_lead(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text("ABC123", "Oi, quero agendar")

    first = await ingestor.ingest(raw, "s1", "t1", False)
    second = await ingestor.ingest(raw, "s1", "t1", False)

    assert first is not None and second is not None
    messages = store.rows("messages")
    assert len(messages) == 1
    assert messages[0]["content"] == "Oi, quero agendar"
    assert messages[0]["remote_jid"] == MARIA
    assert messages[0]["status"] == "received"

    leads = store.rows("leads")
    assert len(leads) == 1
    assert leads[0]["phone"] == "5511999999999"
    assert leads[0]["name"] == "Maria"
    assert messages[0]["lead_id"] == leads[0]["id"]


@pytest.mark.asyncio
async def test_replay_reflects_latest_delivery(crm, store) -> None:
    ingestor = _ingestor(crm)
    await ingestor.ingest(_text("ABC123", "first"), "s1", "t1", False)
    await ingestor.ingest(_text("ABC123", "edited"), "s1", "t1", False)

    messages = store.rows("messages")
    assert [m["content"] for m in messages] == ["edited"]


@pytest.mark.asyncio
async def test_realtime_duplicates_are_dropped(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text("ABC123", "hello")

    assert await ingestor.ingest(raw, "s1", "t1", True) is not None
    assert await ingestor.ingest(raw, "s1", "t1", True) is None
    assert len(store.rows("messages")) == 1
    await wait_background()


@pytest.mark.asyncio
async def test_realtime_inbound_publishes_to_bus(crm) -> None:
    bus: MessageBus[NewMessageArrived] = MessageBus("new_message_arrived")
    seen: list[NewMessageArrived] = []
    bus.subscribe(seen.append)
    ingestor = _ingestor(crm, bus=bus)

    await ingestor.ingest(_text("R1", "realtime"), "s1", "t1", True)
    await ingestor.ingest(_text("H1", "backfilled"), "s1", "t1", False)
    await wait_background()

    assert len(seen) == 1
    assert seen[0].whatsapp_id == "R1"
    assert seen[0].remote_jid == MARIA
    assert seen[0].push_name == "Maria"
    assert seen[0].lead_id is not None


@pytest.mark.asyncio
async def test_outbound_message_creates_no_lead(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text("OUT1", "we are open", push_name="")
    raw["key"]["fromMe"] = True

    row = await ingestor.ingest(raw, "s1", "t1", False)

    assert row is not None
    assert row["from_me"] is True
    assert row["status"] == "sent"
    assert store.rows("leads") == []


@pytest.mark.asyncio
async def test_status_and_protocol_messages_are_skipped(crm, store) -> None:
    ingestor = _ingestor(crm)
    status = _text("S1", "story", jid="status@broadcast")
    system = _text("S2", "hi", jid="0@s.whatsapp.net")
    reaction = _text("S3", "")
    reaction["message"] = {"reactionMessage": {"text": "👍", "key": {"id": "X"}}}

    for raw in (status, system, reaction):
        assert await ingestor.ingest(raw, "s1", "t1", False) is None
    assert store.rows("messages") == []


@pytest.mark.asyncio
async def test_revoke_marks_message_deleted(crm, store) -> None:
    ingestor = _ingestor(crm)
    await ingestor.ingest(_text("ABC123", "secret"), "s1", "t1", False)

    revoke = _text("REV1", "")
    revoke["message"] = {"protocolMessage": {"type": 0, "key": {"id": "ABC123"}}}
    assert await ingestor.ingest(revoke, "s1", "t1", False) is None

    (row,) = store.rows("messages")
    assert row["is_deleted"] is True
    assert row["content"] == REVOKED_CONTENT


@pytest.mark.asyncio
async def test_alias_jid_resolves_to_phone(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text("L1", "from alias", jid="98765432109876@lid", senderPn=MARIA)

    row = await ingestor.ingest(raw, "s1", "t1", False)

    assert row is not None
    assert row["remote_jid"] == MARIA
    (link,) = store.rows("identity_map")
    assert link["lid_jid"] == "98765432109876@lid"
    assert link["phone_jid"] == MARIA


@pytest.mark.asyncio
async def test_unresolved_alias_creates_no_lead_until_linked(crm, store) -> None:
    ingestor = _ingestor(crm)
    alias = "98765432109876@lid"

    row = await ingestor.ingest(_text("L1", "hello", jid=alias), "s1", "t1", False)

    assert row is not None and row["remote_jid"] == alias
    assert store.rows("leads") == []

    await crm.link_identity("t1", alias, MARIA)
    await ingestor.ingest(_text("L2", "again", jid=alias), "s1", "t1", False)

    (lead,) = store.rows("leads")
    assert lead["phone"] == "5511999999999"


@pytest.mark.asyncio
async def test_group_message_stores_participant_contact(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text(
        "G1",
        "hello group",
        jid="120363000000000001@g.us",
        participant="5511977776666@s.whatsapp.net",
    )
    raw["pushName"] = "Joana"

    row = await ingestor.ingest(raw, "s1", "t1", False)

    assert row is not None
    assert row["participant"] == "5511977776666@s.whatsapp.net"
    contacts = {c["jid"]: c for c in store.rows("contacts")}
    assert contacts["5511977776666@s.whatsapp.net"]["push_name"] == "Joana"
    assert store.rows("leads") == []


@pytest.mark.asyncio
async def test_ignored_conversation_is_not_stored(crm, store) -> None:
    store.seed("contacts", {"company_id": "t1", "jid": MARIA, "is_ignored": True})
    ingestor = _ingestor(crm)

    assert await ingestor.ingest(_text("I1", "spam"), "s1", "t1", False) is None
    assert store.rows("messages") == []


@pytest.mark.asyncio
async def test_poll_content_is_structured(crm, store) -> None:
    ingestor = _ingestor(crm)
    raw = _text("P1", "")
    raw["message"] = {
        "pollCreationMessageV3": {
            "name": "Pizza?",
            "options": [{"optionName": "Yes"}, {"optionName": "No"}],
            "selectableOptionsCount": 1,
        }
    }

    row = await ingestor.ingest(raw, "s1", "t1", False)

    assert row is not None
    assert row["message_type"] == "poll"
    assert json.loads(row["content"]) == {
        "name": "Pizza?",
        "options": ["Yes", "No"],
        "selectableOptionsCount": 1,
    }


class _Storage:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, bytes, str]] = []

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.uploads.append((path, data, content_type))
        return f"https://cdn.example/{path}"


class _Transcriber:
    async def transcribe(self, data: bytes, mimetype: str, tenant_id: str) -> str | None:
        return "transcribed voice note"


@pytest.mark.asyncio
async def test_voice_note_is_stored_and_transcribed(crm, store, manager, connect) -> None:
    storage = _Storage()
    ingestor = _ingestor(crm, manager, media=MediaHandler(storage), transcriber=_Transcriber())
    await connect(manager)
    raw = _text("V1", "")
    raw["message"] = {"audioMessage": {"ptt": True, "mimetype": "audio/ogg; codecs=opus"}}

    options = IngestOptions(fetch_profile_pic=False)
    row = await ingestor.ingest(raw, "s1", "t1", False, options=options)
    await wait_background()

    assert row is not None
    assert row["message_type"] == "ptt"
    assert row["content"] == "[media]"
    path, _, content_type = storage.uploads[0]
    assert path.startswith("t1/") and path.endswith(".ogg")
    assert content_type == "audio/ogg"
    assert row["media_url"] == f"https://cdn.example/{path}"
    (stored,) = store.rows("messages")
    assert stored["transcription"] == "transcribed voice note"
