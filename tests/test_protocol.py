from __future__ import annotations

from types import SimpleNamespace

from wagateway.protocol import (
    ConnectionUpdate,
    HistorySync,
    MessagesUpsert,
    PresenceUpdate,
    ReactionUpdate,
    ReceiptUpdate,
    to_event,
    to_events,
)


def test_connection_update_extracts_disconnect_code() -> None:
    event = to_event(
        "connection.update",
        {"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": 515}}}},
    )
    assert event == ConnectionUpdate(
        connection="close", status_code=515, error="{'output': {'statusCode': 515}}"
    )


def test_attribute_style_payloads_are_accepted() -> None:
    payload = SimpleNamespace(messages=[{"key": {"id": "A"}}], type="append")
    (event,) = to_events("messages.upsert", payload)
    assert event == MessagesUpsert(messages=[{"key": {"id": "A"}}], type="append")


def test_presence_receipts_and_reactions() -> None:
    (presence,) = to_events(
        "presence.update",
        {"id": "x@s.whatsapp.net", "presences": {"x": {"lastKnownPresence": "available"}}},
    )
    assert isinstance(presence, PresenceUpdate)
    assert presence.presences["x"]["lastKnownPresence"] == "available"

    (receipts,) = to_events(
        "message-receipt.update", [{"key": {"id": "A"}, "receipt": {"userJid": "u", "status": 4}}]
    )
    assert isinstance(receipts, ReceiptUpdate)
    assert (receipts.receipts[0].status, receipts.receipts[0].user_jid) == (4, "u")

    (reactions,) = to_events(
        "messages.reaction",
        [{"key": {"id": "A"}, "reaction": {"key": {"id": "R"}, "text": "👍"}}],
    )
    assert isinstance(reactions, ReactionUpdate)
    assert reactions.reactions[0].text == "👍"


def test_history_set() -> None:
    (event,) = to_events(
        "messaging-history.set", {"contacts": [{"id": "c"}], "messages": [], "isLatest": True}
    )
    assert event == HistorySync(contacts=[{"id": "c"}], messages=[], is_latest=True)
    assert event.chunk_key is None

    numbered = to_event(
        "messaging-history.set",
        {"contacts": [], "messages": [], "syncType": 2, "chunkOrder": "4"},
    )
    assert isinstance(numbered, HistorySync)
    assert numbered.chunk_key == (2, 4)


def test_unknown_and_empty_events() -> None:
    assert to_events("call", {}) == []
    assert to_events("message-receipt.update", []) == []
    assert to_event("messages.update", [{"key": {"id": "A"}, "update": {}}]) is None
