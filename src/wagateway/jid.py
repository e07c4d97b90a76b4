from __future__ import annotations

import re
from dataclasses import dataclass

from .constants import G_US, NEWSLETTER, S_WHATSAPP_NET, STATUS_BROADCAST_JID
from .exceptions import InvalidPayload

_USER_SERVERS = ("s.whatsapp.net", "lid", "hosted", "hosted.lid")
_NON_DIGITS = re.compile(r"\D")
_HAS_LETTER = re.compile(r"[^\W\d_]")

# Placeholder names some clients/address books report instead of a real name.
_PLACEHOLDER_NAMES = frozenset({"unknown", "desconhecido", "null", "undefined", "none", "~"})


@dataclass(slots=True)
class FullJid:
    user: str
    server: str
    device: int | None = None
    agent: str | None = None


def jid_encode(user: str | int | None, server: str, device: int | None = None) -> str:
    u = "" if user is None else str(user)
    d = f":{device}" if device else ""
    return f"{u}{d}@{server}"


def jid_decode(jid: str | None) -> FullJid | None:
    if not jid:
        return None
    sep = jid.find("@")
    if sep < 0:
        return None

    server = jid[sep + 1 :]
    user_agent, *device_parts = jid[:sep].split(":")
    user, *agent_parts = user_agent.split("_")
    device = int(device_parts[0]) if device_parts and device_parts[0].isdigit() else None
    return FullJid(
        user=user, server=server, device=device, agent=agent_parts[0] if agent_parts else None
    )


def jid_normalized_user(jid: str | None) -> str:
    """Strip device/agent suffixes: `5511...:12@s.whatsapp.net` -> `5511...@s.whatsapp.net`."""

    decoded = jid_decode(jid)
    if not decoded:
        return ""
    server = "s.whatsapp.net" if decoded.server == "c.us" else decoded.server
    return jid_encode(decoded.user, server)


def normalize_jid(jid: str | None) -> str | None:
    """
    Canonical conversation key.

    Bare numbers get the user server appended; groups, newsletters and the
    status broadcast are kept as-is; user JIDs lose their device suffix.
    """

    if not jid:
        return None
    jid = jid.strip()
    if "@" not in jid:
        digits = _NON_DIGITS.sub("", jid)
        return f"{digits}{S_WHATSAPP_NET}" if digits else None
    if jid.endswith(G_US) or jid.endswith(NEWSLETTER) or jid == STATUS_BROADCAST_JID:
        return jid
    return jid_normalized_user(jid) or jid


def is_group(jid: str | None) -> bool:
    return bool(jid and jid.endswith(G_US))


def is_newsletter(jid: str | None) -> bool:
    return bool(jid and jid.endswith(NEWSLETTER))


def is_lid(jid: str | None) -> bool:
    return bool(jid and jid.endswith("@lid"))


def is_broadcast(jid: str | None) -> bool:
    return bool(jid and jid.endswith("@broadcast"))


def is_user_jid(jid: str | None) -> bool:
    """True for 1:1 user JIDs (phone or alias form)."""

    decoded = jid_decode(jid_normalized_user(jid))
    return bool(decoded and decoded.server in _USER_SERVERS)


def phone_from_jid(jid: str | None) -> str:
    decoded = jid_decode(jid)
    if not decoded:
        return _NON_DIGITS.sub("", jid or "")
    return _NON_DIGITS.sub("", decoded.user)


def format_destination(to: str | None) -> str:
    """Turn a phone number or JID given by a caller into a sendable JID."""

    if not to or not str(to).strip():
        raise InvalidPayload("destination is required")
    to = str(to).strip()
    if "@" in to:
        return normalize_jid(to) or to
    digits = _NON_DIGITS.sub("", to)
    if not digits:
        raise InvalidPayload(f"invalid destination: {to!r}")
    return f"{digits}{S_WHATSAPP_NET}"


def is_generic_name(name: str | None, phone: str | None = None) -> bool:
    """
    True when `name` carries no information worth storing.

    Empty values, known placeholders, names made only of digits/symbols and
    names that are just the phone number all count as generic.
    """

    if name is None:
        return True
    clean = str(name).strip()
    if not clean:
        return True
    if clean.lower() in _PLACEHOLDER_NAMES:
        return True
    if phone and _NON_DIGITS.sub("", clean) == _NON_DIGITS.sub("", phone):
        return True
    return not _HAS_LETTER.search(clean)
