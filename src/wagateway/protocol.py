"""
Seam to the WhatsApp protocol library.

The gateway never speaks the wire protocol itself. A `SocketFactory` opens a
`ProtocolSocket` for a session; the socket emits raw, library-named events
(`connection.update`, `messages.upsert`, ...) whose payloads follow the
library's message shapes (`key.remoteJid`, `pushName`, `messageTimestamp`, ...).
`to_events` turns each raw emission into the closed set of typed events the
dispatcher matches on.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

from .auth.state import AuthState

Listener = Callable[..., Awaitable[None]] | Callable[..., None]


class DisconnectReason(IntEnum):
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    FORBIDDEN = 403
    MULTIDEVICE_MISMATCH = 411
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


# Closes that mean the credentials are gone for good.
FATAL_DISCONNECT_CODES = frozenset({DisconnectReason.LOGGED_OUT, DisconnectReason.FORBIDDEN})


class ProtocolSocket(Protocol):
    """Command surface and event source of one protocol connection."""

    @property
    def user(self) -> Mapping[str, Any] | None: ...

    def on(self, event: str, listener: Listener) -> None: ...

    def remove_all_listeners(self, event: str | None = None) -> None: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send_message(
        self, jid: str, content: Mapping[str, Any]
    ) -> Mapping[str, Any] | None: ...

    async def send_presence_update(self, presence: str, jid: str | None = None) -> None: ...

    async def profile_picture_url(self, jid: str) -> str | None: ...

    async def on_whatsapp(self, *jids: str) -> list[Mapping[str, Any]]: ...

    async def download_media(
        self, message: Mapping[str, Any], *, headers: Mapping[str, str], timeout_s: float
    ) -> bytes | None: ...

    async def group_create(self, subject: str, participants: list[str]) -> Mapping[str, Any]: ...

    async def group_participants_update(
        self, jid: str, participants: list[str], action: str
    ) -> list[Mapping[str, Any]]: ...

    async def group_update_subject(self, jid: str, subject: str) -> None: ...

    async def group_update_description(self, jid: str, description: str) -> None: ...

    async def group_setting_update(self, jid: str, setting: str) -> None: ...

    async def group_invite_code(self, jid: str) -> str: ...

    async def community_link_group(self, group_jid: str, community_jid: str) -> None: ...

    async def update_profile_picture(self, jid: str, data: bytes) -> None: ...

    async def update_profile_name(self, name: str) -> None: ...

    async def update_profile_status(self, status: str) -> None: ...

    async def update_privacy(self, category: str, value: str) -> None: ...

    async def newsletter_create(
        self, name: str, description: str | None = None
    ) -> Mapping[str, Any]: ...

    async def newsletter_search(self, query: str, limit: int = 20) -> list[Mapping[str, Any]]: ...

    async def newsletter_metadata(self, jid: str) -> Mapping[str, Any] | None: ...

    async def newsletter_follow(self, jid: str) -> None: ...

    async def newsletter_unfollow(self, jid: str) -> None: ...

    async def newsletter_fetch_messages(
        self, jid: str, count: int
    ) -> list[Mapping[str, Any]]: ...

    async def get_products(self, jid: str) -> list[Mapping[str, Any]]: ...


class SocketFactory(Protocol):
    async def __call__(self, session_id: str, auth: AuthState) -> ProtocolSocket: ...


# Raw event names as emitted by the protocol library.
CONNECTION_UPDATE = "connection.update"
CREDS_UPDATE = "creds.update"
MESSAGES_UPSERT = "messages.upsert"
MESSAGES_UPDATE = "messages.update"
MESSAGES_REACTION = "messages.reaction"
RECEIPT_UPDATE = "message-receipt.update"
CONTACTS_UPSERT = "contacts.upsert"
PRESENCE_UPDATE = "presence.update"
HISTORY_SET = "messaging-history.set"

RAW_EVENTS = (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    MESSAGES_UPSERT,
    MESSAGES_UPDATE,
    MESSAGES_REACTION,
    RECEIPT_UPDATE,
    CONTACTS_UPSERT,
    PRESENCE_UPDATE,
    HISTORY_SET,
)


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class CredsUpdate:
    update: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MessagesUpsert:
    messages: list[dict[str, Any]]
    type: str = "notify"  # "notify" for fresh traffic, "append" for backfilled


@dataclass(frozen=True, slots=True)
class ContactsUpsert:
    contacts: list[dict[str, Any]]


@dataclass(frozen=True, slots=True)
class PresenceUpdate:
    jid: str
    presences: dict[str, dict[str, Any]]


@dataclass(frozen=True, slots=True)
class Receipt:
    key: dict[str, Any]
    status: int | None
    user_jid: str | None = None


@dataclass(frozen=True, slots=True)
class ReceiptUpdate:
    receipts: list[Receipt]


@dataclass(frozen=True, slots=True)
class Reaction:
    key: dict[str, Any]  # reacted-to message
    actor_key: dict[str, Any]  # key of the reaction itself
    text: str | None


@dataclass(frozen=True, slots=True)
class ReactionUpdate:
    reactions: list[Reaction]


@dataclass(frozen=True, slots=True)
class PollVote:
    poll_key: dict[str, Any]
    voter_key: dict[str, Any]
    selected_options: list[str]


@dataclass(frozen=True, slots=True)
class PollVoteUpdate:
    votes: list[PollVote]


@dataclass(frozen=True, slots=True)
class HistorySync:
    contacts: list[dict[str, Any]]
    messages: list[dict[str, Any]]
    is_latest: bool = False
    progress: int | None = None
    sync_type: int | None = None
    chunk_order: int | None = None

    @property
    def chunk_key(self) -> tuple[int | None, int] | None:
        """Identity of the chunk as numbered by the server, when the payload carries one."""

        if self.chunk_order is None:
            return None
        return (self.sync_type, self.chunk_order)


GatewayEvent = (
    ConnectionUpdate
    | CredsUpdate
    | MessagesUpsert
    | ContactsUpsert
    | PresenceUpdate
    | ReceiptUpdate
    | ReactionUpdate
    | PollVoteUpdate
    | HistorySync
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, Mapping):
        return dict(obj)
    if obj is None:
        return {}
    return dict(vars(obj))


def _disconnect_code(payload: Any) -> int | None:
    if _get(payload, "status_code") is not None:
        return int(_get(payload, "status_code"))
    error = _get(_get(payload, "lastDisconnect"), "error")
    code = _get(_get(error, "output"), "statusCode")
    if code is None:
        code = _get(error, "statusCode")
    return int(code) if code is not None else None


def _opt_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _option_name(opt: Any) -> str:
    if isinstance(opt, str):
        return opt
    return str(_get(opt, "name") or _get(opt, "optionName") or "")


def _receipt_from_status(item: Any) -> Receipt | None:
    status = _get(_get(item, "update"), "status")
    if status is None:
        return None
    return Receipt(key=_as_dict(_get(item, "key")), status=int(status))


def _poll_votes(item: Any) -> list[PollVote]:
    update = _get(item, "update") or item
    out = []
    for pu in _get(update, "pollUpdates") or []:
        vote = _get(pu, "vote")
        if vote is None:
            continue
        out.append(
            PollVote(
                poll_key=_as_dict(_get(item, "key")),
                voter_key=_as_dict(_get(pu, "pollUpdateMessageKey")),
                selected_options=[_option_name(o) for o in _get(vote, "selectedOptions") or []],
            )
        )
    return out


def to_events(name: str, payload: Any) -> list[GatewayEvent]:
    """Translate one raw library emission into typed events (empty when irrelevant)."""

    if name == CONNECTION_UPDATE:
        error = _get(_get(payload, "lastDisconnect"), "error")
        return [
            ConnectionUpdate(
                connection=_get(payload, "connection"),
                qr=_get(payload, "qr"),
                status_code=_disconnect_code(payload),
                error=str(error) if error is not None else None,
            )
        ]
    if name == CREDS_UPDATE:
        return [CredsUpdate(update=_as_dict(payload))]
    if name == MESSAGES_UPSERT:
        messages = [_as_dict(m) for m in _get(payload, "messages") or []]
        return [MessagesUpsert(messages=messages, type=_get(payload, "type") or "notify")]
    if name == CONTACTS_UPSERT:
        return [ContactsUpsert(contacts=[_as_dict(c) for c in payload or []])]
    if name == PRESENCE_UPDATE:
        presences = {
            str(k): _as_dict(v) for k, v in (_get(payload, "presences") or {}).items()
        }
        return [PresenceUpdate(jid=str(_get(payload, "id") or ""), presences=presences)]
    if name == RECEIPT_UPDATE:
        receipts = []
        for item in payload or []:
            receipt = _get(item, "receipt")
            status = _get(receipt, "status")
            receipts.append(
                Receipt(
                    key=_as_dict(_get(item, "key")),
                    status=int(status) if status is not None else None,
                    user_jid=_get(receipt, "userJid"),
                )
            )
        return [ReceiptUpdate(receipts=receipts)] if receipts else []
    if name == MESSAGES_REACTION:
        reactions = []
        for item in payload or []:
            reaction = _get(item, "reaction")
            reactions.append(
                Reaction(
                    key=_as_dict(_get(item, "key")),
                    actor_key=_as_dict(_get(reaction, "key")),
                    text=_get(reaction, "text"),
                )
            )
        return [ReactionUpdate(reactions=reactions)] if reactions else []
    if name == MESSAGES_UPDATE:
        out: list[GatewayEvent] = []
        votes = [v for item in payload or [] for v in _poll_votes(item)]
        if votes:
            out.append(PollVoteUpdate(votes=votes))
        statuses = [r for r in (_receipt_from_status(i) for i in payload or []) if r]
        if statuses:
            out.append(ReceiptUpdate(receipts=statuses))
        return out
    if name == HISTORY_SET:
        progress = _get(payload, "progress")
        sync_type = _get(payload, "syncType")
        chunk_order = _get(payload, "chunkOrder")
        return [
            HistorySync(
                contacts=[_as_dict(c) for c in _get(payload, "contacts") or []],
                messages=[_as_dict(m) for m in _get(payload, "messages") or []],
                is_latest=bool(_get(payload, "isLatest", False)),
                progress=int(progress) if progress is not None else None,
                sync_type=_opt_int(sync_type),
                chunk_order=_opt_int(chunk_order),
            )
        ]
    return []


def to_event(name: str, payload: Any) -> GatewayEvent | None:
    events = to_events(name, payload)
    return events[0] if events else None
