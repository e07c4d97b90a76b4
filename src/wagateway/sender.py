from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from .config import SenderConfig
from .constants import REVOKED_CONTENT
from .exceptions import InvalidPayload, RecipientUnverified
from .handlers.updates import UpdatesHandler
from .jid import format_destination, is_group, is_newsletter
from .persistence.crm import CrmRepository
from .protocol import ProtocolSocket
from .session import ConnectionManager
from .util.asyncio import Sleep

logger = logging.getLogger(__name__)

MediaKind = Literal["image", "video", "audio", "document", "sticker"]
_MEDIA_KINDS: tuple[MediaKind, ...] = ("image", "video", "audio", "document", "sticker")


@dataclass(frozen=True, slots=True)
class TextSpec:
    text: str


@dataclass(frozen=True, slots=True)
class MediaSpec:
    kind: MediaKind
    url: str
    caption: str | None = None
    file_name: str | None = None
    mimetype: str | None = None
    ptt: bool = False


@dataclass(frozen=True, slots=True)
class PollSpec:
    name: str
    options: tuple[str, ...]
    selectable_count: int = 1


@dataclass(frozen=True, slots=True)
class LocationSpec:
    latitude: float
    longitude: float
    name: str | None = None
    address: str | None = None


@dataclass(frozen=True, slots=True)
class ContactSpec:
    vcard: str
    display_name: str | None = None


@dataclass(frozen=True, slots=True)
class CopyCodeSpec:
    """Interactive "copy" button carrying a payment key or similar code."""

    code: str
    title: str = "Payment"
    body: str = "Copy the code below and paste it in your banking app."
    button_text: str = "Copy code"
    footer: str | None = None


MessageSpec = TextSpec | MediaSpec | PollSpec | LocationSpec | ContactSpec | CopyCodeSpec


def _require(d: Mapping[str, Any], *names: str, kind: str) -> None:
    missing = [n for n in names if d.get(n) in (None, "", [])]
    if missing:
        raise InvalidPayload(f"{kind} message requires {', '.join(missing)}")


def spec_from_dict(d: Mapping[str, Any]) -> MessageSpec:
    """Build a message spec from a loose request body; raises `InvalidPayload`."""

    kind = str(d.get("type") or "text")
    if kind == "text":
        text = d.get("content", d.get("text"))
        if not isinstance(text, str) or not text:
            raise InvalidPayload("text message requires content")
        return TextSpec(text=text)

    if kind in _MEDIA_KINDS:
        _require(d, "url", kind=kind)
        return MediaSpec(
            kind=kind,  # type: ignore[arg-type]
            url=str(d["url"]),
            caption=d.get("caption"),
            file_name=d.get("fileName") or d.get("file_name"),
            mimetype=d.get("mimetype"),
            ptt=bool(d.get("ptt", False)),
        )

    if kind == "poll":
        poll = d.get("poll") if isinstance(d.get("poll"), Mapping) else d
        _require(poll, "name", "options", kind="poll")
        options = poll["options"]
        if not isinstance(options, (list, tuple)) or not all(isinstance(o, str) for o in options):
            raise InvalidPayload("poll options must be a list of strings")
        count = poll.get("selectableOptionsCount") or poll.get("selectable_count") or 1
        return PollSpec(name=str(poll["name"]), options=tuple(options), selectable_count=int(count))

    if kind == "location":
        loc = d.get("location") if isinstance(d.get("location"), Mapping) else d
        _require(loc, "latitude", "longitude", kind="location")
        try:
            lat, lng = float(loc["latitude"]), float(loc["longitude"])
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"invalid coordinates: {e}") from e
        return LocationSpec(
            latitude=lat, longitude=lng, name=loc.get("name"), address=loc.get("address")
        )

    if kind == "contact":
        card = d.get("contact") if isinstance(d.get("contact"), Mapping) else d
        _require(card, "vcard", kind="contact")
        return ContactSpec(vcard=str(card["vcard"]), display_name=card.get("displayName"))

    if kind in ("pix", "copy_code"):
        code = d.get("content", d.get("code"))
        if not isinstance(code, str) or not code:
            raise InvalidPayload(f"{kind} message requires content")
        return CopyCodeSpec(code=code)

    raise InvalidPayload(f"unsupported message type: {kind!r}")


def build_payload(spec: MessageSpec) -> dict[str, Any]:
    match spec:
        case TextSpec(text=text):
            return {"text": text}
        case MediaSpec(kind="image"):
            return {"image": {"url": spec.url}, "caption": spec.caption}
        case MediaSpec(kind="video"):
            return {"video": {"url": spec.url}, "caption": spec.caption, "gifPlayback": False}
        case MediaSpec(kind="audio"):
            return {
                "audio": {"url": spec.url},
                "ptt": spec.ptt,
                "mimetype": spec.mimetype or "audio/mp4",
            }
        case MediaSpec(kind="document"):
            payload: dict[str, Any] = {
                "document": {"url": spec.url},
                "mimetype": spec.mimetype or "application/pdf",
                "fileName": spec.file_name or "document",
            }
            if spec.caption:
                payload["caption"] = spec.caption
            return payload
        case MediaSpec(kind="sticker"):
            return {"sticker": {"url": spec.url}}
        case PollSpec():
            return {
                "poll": {
                    "name": spec.name,
                    "values": list(spec.options),
                    "selectableCount": spec.selectable_count,
                }
            }
        case LocationSpec():
            location: dict[str, Any] = {
                "degreesLatitude": spec.latitude,
                "degreesLongitude": spec.longitude,
            }
            if spec.name:
                location["name"] = spec.name
            if spec.address:
                location["address"] = spec.address
            return {"location": location}
        case ContactSpec():
            return {
                "contacts": {"displayName": spec.display_name, "contacts": [{"vcard": spec.vcard}]}
            }
        case CopyCodeSpec():
            interactive: dict[str, Any] = {
                "header": {"title": spec.title, "hasMediaAttachment": False},
                "body": {"text": spec.body},
                "nativeFlowMessage": {
                    "buttons": [
                        {
                            "name": "cta_copy",
                            "buttonParamsJson": json.dumps(
                                {
                                    "display_text": spec.button_text,
                                    "id": "copy_code",
                                    "copy_code": spec.code,
                                }
                            ),
                        }
                    ]
                },
            }
            if spec.footer:
                interactive["footer"] = {"text": spec.footer}
            return {"viewOnceMessage": {"message": {"interactiveMessage": interactive}}}
    raise InvalidPayload(f"unsupported spec: {type(spec).__name__}")


class OutboundSender:
    """
    Humanized sends through a live session.

    Every send checks that the recipient exists (fail-open unless
    `strict_recipient_check`), waits a random reaction delay, shows a typing or
    recording indicator for a length-dependent time, clears it and only then
    emits the payload.
    """

    def __init__(
        self,
        sessions: ConnectionManager,
        crm: CrmRepository,
        config: SenderConfig | None = None,
        *,
        updates: UpdatesHandler | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._sessions = sessions
        self._crm = crm
        self.config = config or SenderConfig()
        self._updates = updates or UpdatesHandler(crm)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def hold_time(self, spec: MessageSpec) -> float:
        cfg = self.config
        if isinstance(spec, TextSpec):
            return min(len(spec.text) * cfg.per_char_s, cfg.max_typing_s)
        if isinstance(spec, MediaSpec) and spec.kind == "audio":
            return self._rng.uniform(*cfg.recording_s)
        return cfg.default_typing_s

    async def _check_recipient(self, socket: ProtocolSocket, jid: str) -> None:
        try:
            results = await socket.on_whatsapp(jid)
        except Exception as e:
            logger.debug("existence check failed for %s: %s", jid, e)
            return
        found = results[0] if results else None
        if found is not None and found.get("exists", True):
            return
        if self.config.strict_recipient_check:
            raise RecipientUnverified(jid)
        logger.warning("recipient %s is not verified on WhatsApp; sending anyway", jid)

    async def send(
        self, session_id: str, destination: str, spec: MessageSpec | Mapping[str, Any]
    ) -> Mapping[str, Any] | None:
        if isinstance(spec, Mapping):
            spec = spec_from_dict(spec)
        jid = format_destination(destination)
        session = self._sessions.require(session_id)
        socket = session.socket
        assert socket is not None

        if not is_group(jid) and not is_newsletter(jid):
            await self._check_recipient(socket, jid)

        recording = isinstance(spec, MediaSpec) and spec.kind == "audio" and spec.ptt
        try:
            await self._sleep(self._rng.uniform(*self.config.initial_delay_s))
            await socket.send_presence_update("recording" if recording else "composing", jid)
            await self._sleep(self.hold_time(spec))
            await socket.send_presence_update("paused", jid)
            return await self._emit(socket, jid, spec)
        except Exception:
            logger.exception("send to %s failed", jid)
            try:
                await socket.send_presence_update("paused", jid)
            except Exception as e:
                logger.debug("could not clear presence: %s", e)
            raise

    async def _emit(
        self, socket: ProtocolSocket, jid: str, spec: MessageSpec
    ) -> Mapping[str, Any] | None:
        payload = build_payload(spec)
        if not isinstance(spec, CopyCodeSpec):
            return await socket.send_message(jid, payload)
        try:
            return await socket.send_message(jid, payload)
        except Exception as e:
            logger.warning("interactive copy button rejected, falling back to text: %s", e)
            return await socket.send_message(jid, {"text": f"{spec.body}\n\n{spec.code}"})

    async def send_reaction(
        self, session_id: str, destination: str, message_id: str, emoji: str, *, from_me: bool
    ) -> Mapping[str, Any] | None:
        jid = format_destination(destination)
        session = self._sessions.require(session_id)
        assert session.socket is not None
        key = {"remoteJid": jid, "id": message_id, "fromMe": from_me}
        sent = await session.socket.send_message(jid, {"react": {"text": emoji, "key": key}})
        if session.me:
            await self._updates.apply_reaction(session.tenant_id, message_id, session.me, emoji)
        return sent

    async def send_poll_vote(
        self, session_id: str, destination: str, poll_id: str, options: list[str]
    ) -> Mapping[str, Any] | None:
        jid = format_destination(destination)
        session = self._sessions.require(session_id)
        assert session.socket is not None
        sent = await session.socket.send_message(
            jid,
            {
                "pollVote": {
                    "pollCreationMessageKey": {"remoteJid": jid, "id": poll_id},
                    "selectedOptions": list(options),
                }
            },
        )
        if session.me:
            await self._updates.apply_vote(session.tenant_id, poll_id, session.me, list(options))
        return sent

    async def delete_message(
        self,
        session_id: str,
        destination: str,
        message_id: str,
        *,
        for_everyone: bool = False,
    ) -> None:
        """Soft-delete the stored message; optionally revoke it for every participant."""

        jid = format_destination(destination)
        session = self._sessions.require(session_id)
        assert session.socket is not None
        if for_everyone:
            await session.socket.send_message(
                jid, {"delete": {"remoteJid": jid, "fromMe": True, "id": message_id}}
            )
        await self._crm.mark_revoked(session.tenant_id, message_id, REVOKED_CONTENT)
