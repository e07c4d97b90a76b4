"""
Pure helpers over the protocol library's message dictionaries.

A raw message looks like `{"key": {"remoteJid", "fromMe", "id", "participant"},
"message": {<contentType>: {...}}, "pushName", "messageTimestamp"}`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from ..jid import is_lid, normalize_jid

# Wrappers that only carry another message inside `.message`.
_ENVELOPES = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)

# Content types that are protocol plumbing rather than conversation content.
IGNORED_CONTENT_TYPES = frozenset(
    {
        "senderKeyDistributionMessage",
        "messageContextInfo",
        "reactionMessage",
        "pollUpdateMessage",
        "protocolMessage",
    }
)

MEDIA_TYPES = frozenset({"image", "video", "audio", "ptt", "document", "sticker"})

_TYPE_BY_CONTENT = {
    "conversation": "text",
    "extendedTextMessage": "text",
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
    "locationMessage": "location",
    "liveLocationMessage": "location",
    "contactMessage": "contact",
    "contactsArrayMessage": "contact",
    "pollCreationMessage": "poll",
    "pollCreationMessageV2": "poll",
    "pollCreationMessageV3": "poll",
}

_DEFAULT_MIMETYPES = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/mp4",
    "ptt": "audio/ogg",
    "document": "application/pdf",
    "sticker": "image/webp",
}

_REVOKE = (0, "REVOKE")
_MESSAGE_EDIT = (14, "MESSAGE_EDIT")


def unwrap_message(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `raw` whose `message` is the innermost real payload."""

    out = dict(raw)
    content = raw.get("message")
    if not isinstance(content, Mapping):
        return out

    changed = True
    while changed and isinstance(content, Mapping):
        changed = False
        for env in _ENVELOPES:
            inner = (content.get(env) or {}).get("message")
            if isinstance(inner, Mapping):
                content = inner
                changed = True
                break

        edited = content.get("editedMessage")
        if isinstance(edited, Mapping):
            wrapped = edited.get("message") or {}
            content = (wrapped.get("protocolMessage") or {}).get("editedMessage") or wrapped
            changed = True
            continue

        proto = content.get("protocolMessage")
        if isinstance(proto, Mapping) and proto.get("type") in _MESSAGE_EDIT:
            if isinstance(proto.get("editedMessage"), Mapping):
                content = proto["editedMessage"]
                changed = True

    out["message"] = dict(content) if isinstance(content, Mapping) else content
    return out


def get_content_type(message: Mapping[str, Any] | None) -> str | None:
    if not message:
        return None
    for key in message:
        if key in _TYPE_BY_CONTENT or (
            key.endswith("Message")
            and key not in ("senderKeyDistributionMessage", "messageContextInfo")
        ):
            return key
    return None


def revoked_message_id(message: Mapping[str, Any] | None) -> str | None:
    """Id of the message a REVOKE protocol message deletes, if it is one."""

    proto = (message or {}).get("protocolMessage")
    if not isinstance(proto, Mapping) or proto.get("type") not in _REVOKE:
        return None
    key = proto.get("key") or {}
    return key.get("id") or None


def get_body(message: Mapping[str, Any] | None) -> str:
    if not message:
        return ""
    if message.get("conversation"):
        return str(message["conversation"])
    for key, attr in (
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
        ("documentMessage", "caption"),
        ("templateButtonReplyMessage", "selectedId"),
        ("buttonsResponseMessage", "selectedButtonId"),
    ):
        value = (message.get(key) or {}).get(attr)
        if value:
            return str(value)
    reply = ((message.get("listResponseMessage") or {}).get("singleSelectReply") or {}).get(
        "selectedRowId"
    )
    if reply:
        return str(reply)
    poll = poll_creation(message)
    if poll and poll.get("name"):
        return str(poll["name"])
    return ""


def poll_creation(message: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    for key in ("pollCreationMessageV3", "pollCreationMessageV2", "pollCreationMessage"):
        poll = (message or {}).get(key)
        if isinstance(poll, Mapping):
            return poll
    return None


def message_type(message: Mapping[str, Any] | None, content_type: str | None = None) -> str:
    content_type = content_type or get_content_type(message)
    kind = _TYPE_BY_CONTENT.get(content_type or "", "text")
    if kind == "audio" and ((message or {}).get("audioMessage") or {}).get("ptt"):
        return "ptt"
    return kind


def media_mimetype(message: Mapping[str, Any], kind: str) -> str:
    if kind == "sticker":
        return _DEFAULT_MIMETYPES["sticker"]
    content_type = "audioMessage" if kind == "ptt" else f"{kind}Message"
    mimetype = (message.get(content_type) or {}).get("mimetype")
    if mimetype:
        # "audio/ogg; codecs=opus" -> "audio/ogg"
        return str(mimetype).split(";")[0].strip()
    return _DEFAULT_MIMETYPES.get(kind, "application/octet-stream")


def structured_content(message: Mapping[str, Any], kind: str) -> str | None:
    """JSON content for polls, locations and contact cards; None for everything else."""

    if kind == "poll":
        poll = poll_creation(message) or {}
        return json.dumps(
            {
                "name": poll.get("name"),
                "options": [
                    o.get("optionName") if isinstance(o, Mapping) else str(o)
                    for o in poll.get("options") or []
                ],
                "selectableOptionsCount": poll.get("selectableOptionsCount"),
            },
            ensure_ascii=False,
        )
    if kind == "location":
        loc = message.get("locationMessage") or message.get("liveLocationMessage") or {}
        data: dict[str, Any] = {
            "latitude": loc.get("degreesLatitude"),
            "longitude": loc.get("degreesLongitude"),
        }
        for key in ("name", "address"):
            if loc.get(key):
                data[key] = loc[key]
        return json.dumps(data, ensure_ascii=False)
    if kind == "contact":
        card = message.get("contactMessage")
        if not card:
            cards = (message.get("contactsArrayMessage") or {}).get("contacts") or [{}]
            card = cards[0]
        return json.dumps(
            {"displayName": card.get("displayName"), "vcard": card.get("vcard")},
            ensure_ascii=False,
        )
    return None


def message_timestamp(raw: Mapping[str, Any]) -> int | None:
    """Seconds since epoch; accepts ints, numeric strings and `{low, high}` longs."""

    ts = raw.get("messageTimestamp")
    if ts is None:
        return None
    if isinstance(ts, Mapping):
        low = int(ts.get("low") or 0) & 0xFFFFFFFF
        high = int(ts.get("high") or 0)
        return (high << 32) | low
    try:
        return int(ts)
    except (TypeError, ValueError):
        return None


def alias_pairs(key: Mapping[str, Any]) -> list[tuple[str, str]]:
    """`(alias_jid, phone_jid)` pairs carried on a message key."""

    out: list[tuple[str, str]] = []
    candidates = (
        (key.get("remoteJid"), key.get("remoteJidAlt") or key.get("senderPn")),
        (key.get("participant"), key.get("participantAlt") or key.get("participantPn")),
    )
    for primary, alt in candidates:
        a, b = normalize_jid(primary), normalize_jid(alt)
        if not a or not b or a == b:
            continue
        if is_lid(a) and not is_lid(b):
            out.append((a, b))
        elif is_lid(b) and not is_lid(a):
            out.append((b, a))
    return out
