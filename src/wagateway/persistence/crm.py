from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from ..constants import (
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_RANK,
)
from ..jid import (
    is_broadcast,
    is_generic_name,
    is_group,
    is_lid,
    is_newsletter,
    normalize_jid,
    phone_from_jid,
)
from ..util.ttl import ExpiringSet
from .base import DataStore, Order, Result, Row, eq, gte, in_, lte, neq

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Shortest phone number accepted as a lead.
MIN_LEAD_PHONE_DIGITS = 8


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def lower_statuses(status: str) -> tuple[str, ...]:
    rank = STATUS_RANK.get(status, 0)
    return tuple(s for s, r in STATUS_RANK.items() if r < rank)


class CrmRepository:
    """
    Domain writes against the CRM tables.

    Every method is fail-soft: data store errors are logged and come back as a
    `Result` carrying the error (or as a safe default for lookups), so a single
    bad write never takes down a live session.
    """

    def __init__(
        self,
        store: DataStore,
        *,
        lead_lock_ttl_s: float = 2.0,
        now: Callable[[], dt.datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self._now = now
        self._lead_lock = ExpiringSet(lead_lock_ttl_s, clock=clock)

    async def _safe(
        self, what: str, op: Awaitable[T], *, level: int = logging.WARNING
    ) -> Result[T]:
        try:
            return Result(await op)
        except Exception as e:
            logger.log(level, "%s failed: %s", what, e)
            return Result(error=e)

    async def _first(self, what: str, op: Awaitable[list[Row]]) -> Row | None:
        res = await self._safe(what, op)
        rows = res.unwrap_or([])
        return rows[0] if rows else None

    # -- instances ---------------------------------------------------------

    async def update_instance_status(
        self, session_id: str, tenant_id: str, values: Mapping[str, Any]
    ) -> Result[list[Row]]:
        return await self._safe(
            "update_instance_status",
            self.store.update(
                "instances",
                {**values, "updated_at": self._now()},
                eq("session_id", session_id),
                eq("company_id", tenant_id),
            ),
        )

    async def update_sync_status(
        self, session_id: str, status: str, percent: int = 0
    ) -> Result[list[Row]]:
        return await self._safe(
            "update_sync_status",
            self.store.update(
                "instances",
                {"sync_status": status, "sync_percent": percent, "updated_at": self._now()},
                eq("session_id", session_id),
            ),
            level=logging.ERROR,
        )

    async def get_sync_status(self, session_id: str, tenant_id: str) -> str | None:
        row = await self._first(
            "get_sync_status",
            self.store.select(
                "instances",
                eq("session_id", session_id),
                eq("company_id", tenant_id),
                columns="sync_status",
                limit=1,
            ),
        )
        return row.get("sync_status") if row else None

    async def get_webhook_config(self, session_id: str) -> str | None:
        """Webhook URL for the instance, or None when none is enabled."""

        row = await self._first(
            "get_webhook_config",
            self.store.select(
                "instances",
                eq("session_id", session_id),
                columns="webhook_url,webhook_enabled",
                limit=1,
            ),
        )
        if not row or not row.get("webhook_enabled") or not row.get("webhook_url"):
            return None
        return str(row["webhook_url"])

    async def find_session_for_tenant(self, tenant_id: str) -> str | None:
        row = await self._first(
            "find_session_for_tenant",
            self.store.select(
                "instances",
                eq("company_id", tenant_id),
                eq("status", STATUS_CONNECTED),
                columns="session_id",
                limit=1,
            ),
        )
        return row.get("session_id") if row else None

    async def list_restorable_sessions(self) -> list[tuple[str, str]]:
        res = await self._safe(
            "list_restorable_sessions",
            self.store.select(
                "instances",
                in_("status", (STATUS_CONNECTED, STATUS_CONNECTING)),
                columns="session_id,company_id",
            ),
            level=logging.ERROR,
        )
        return [
            (str(r["session_id"]), str(r["company_id"]))
            for r in res.unwrap_or([])
            if r.get("session_id") and r.get("company_id")
        ]

    async def delete_session_data(self, session_id: str, tenant_id: str) -> Result[int]:
        await self.update_instance_status(
            session_id, tenant_id, {"status": STATUS_DISCONNECTED, "qrcode_url": None}
        )
        return await self._safe(
            "delete_session_data",
            self.store.delete("auth_state", eq("session_id", session_id)),
            level=logging.ERROR,
        )

    # -- contacts ----------------------------------------------------------

    async def upsert_contact(
        self,
        tenant_id: str,
        jid: str | None,
        name: str | None = None,
        *,
        picture_url: str | None = None,
        picture_checked: bool = False,
        from_address_book: bool = False,
        lid: str | None = None,
        is_business: bool = False,
        verified_name: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> Result[list[Row]]:
        """
        Create or update a contact without ever degrading its name.

        A valid address-book name goes to `name`, any other valid name to
        `push_name`; generic names are dropped. `picture_checked` stamps
        `profile_pic_updated_at` even when no picture was found.
        """

        clean = normalize_jid(jid)
        if not clean or not tenant_id or is_broadcast(clean):
            return Result([])

        phone = phone_from_jid(clean)
        row: dict[str, Any] = {
            "company_id": tenant_id,
            "jid": clean,
            "phone": phone,
            "updated_at": self._now(),
        }
        if is_business:
            row["is_business"] = True
        if verified_name:
            row["verified_name"] = verified_name
        if not is_generic_name(name, phone):
            row["name" if from_address_book else "push_name"] = name
        if picture_url:
            row["profile_pic_url"] = picture_url
        if picture_url or picture_checked:
            row["profile_pic_updated_at"] = self._now()
        if extra:
            row.update(extra)

        res = await self._safe(
            "upsert_contact",
            self.store.upsert("contacts", [row], on_conflict=("company_id", "jid")),
        )
        if lid and res.ok:
            lid_jid = normalize_jid(lid)
            if lid_jid and lid_jid != clean:
                await self.link_identity(tenant_id, lid_jid, clean)
        return res

    async def get_contact(self, tenant_id: str, jid: str) -> Row | None:
        return await self._first(
            "get_contact",
            self.store.select(
                "contacts", eq("company_id", tenant_id), eq("jid", normalize_jid(jid)), limit=1
            ),
        )

    async def set_presence(
        self, tenant_id: str, jid: str, online: bool, seen_at: dt.datetime | None = None
    ) -> Result[list[Row]]:
        return await self._safe(
            "set_presence",
            self.store.update(
                "contacts",
                {"is_online": online, "last_seen_at": seen_at or self._now()},
                eq("company_id", tenant_id),
                eq("jid", normalize_jid(jid)),
            ),
            level=logging.DEBUG,
        )

    async def is_ignored(self, tenant_id: str, jid: str) -> bool:
        row = await self._first(
            "is_ignored",
            self.store.select(
                "contacts",
                eq("company_id", tenant_id),
                eq("jid", normalize_jid(jid)),
                columns="is_ignored",
                limit=1,
            ),
        )
        return bool(row and row.get("is_ignored"))

    # -- identity map ------------------------------------------------------

    async def lookup_identity(self, tenant_id: str, lid_jid: str) -> str | None:
        row = await self._first(
            "lookup_identity",
            self.store.select(
                "identity_map",
                eq("company_id", tenant_id),
                eq("lid_jid", lid_jid),
                columns="phone_jid",
                limit=1,
            ),
        )
        return row.get("phone_jid") if row else None

    async def link_identity(self, tenant_id: str, lid_jid: str, phone_jid: str) -> bool:
        """Record `lid_jid -> phone_jid` unless a mapping already exists."""

        existing = await self.lookup_identity(tenant_id, lid_jid)
        if existing is not None:
            if existing != phone_jid:
                logger.debug(
                    "ignoring conflicting identity link %s -> %s (have %s)",
                    lid_jid,
                    phone_jid,
                    existing,
                )
            return False
        res = await self._safe(
            "link_identity",
            self.store.upsert(
                "identity_map",
                [{"company_id": tenant_id, "lid_jid": lid_jid, "phone_jid": phone_jid}],
                on_conflict=("company_id", "lid_jid"),
            ),
        )
        return res.ok

    # -- leads -------------------------------------------------------------

    async def _find_lead(self, tenant_id: str, phone: str) -> Row | None:
        return await self._first(
            "find_lead",
            self.store.select(
                "leads",
                eq("company_id", tenant_id),
                eq("phone", phone),
                columns="id,name",
                limit=1,
            ),
        )

    async def _best_contact_name(
        self, tenant_id: str, jid: str, phone: str, push_name: str | None
    ) -> str | None:
        contact = await self.get_contact(tenant_id, jid)
        if contact:
            for key in ("name", "verified_name", "push_name"):
                if not is_generic_name(contact.get(key), phone):
                    return str(contact[key])
        if not is_generic_name(push_name, phone):
            return push_name
        return None

    async def ensure_lead(
        self, tenant_id: str, jid: str | None, push_name: str | None, my_jid: str | None = None
    ) -> str | None:
        """
        Return the lead id for a 1:1 contact, creating the lead if needed.

        Creation runs behind a short process-local lock keyed by tenant and
        phone; a caller that loses the race only looks the lead up.
        """

        clean = normalize_jid(jid)
        if not clean or is_group(clean) or is_newsletter(clean) or is_broadcast(clean):
            return None
        if is_lid(clean):
            # An unresolved alias carries no phone number; the lead waits for the link.
            logger.debug("no lead for unresolved alias %s", clean)
            return None
        if my_jid and clean == normalize_jid(my_jid):
            return None
        phone = phone_from_jid(clean)
        if len(phone) < MIN_LEAD_PHONE_DIGITS:
            return None

        existing = await self._find_lead(tenant_id, phone)
        if existing:
            await self._heal_lead_name(tenant_id, existing, phone, push_name)
            return str(existing["id"])

        if not self._lead_lock.add(f"{tenant_id}:{phone}"):
            found = await self._find_lead(tenant_id, phone)
            return str(found["id"]) if found else None

        name = await self._best_contact_name(tenant_id, clean, phone, push_name)
        stage = await self._first(
            "default_pipeline_stage",
            self.store.select(
                "pipeline_stages",
                eq("company_id", tenant_id),
                columns="id",
                order=Order("position"),
                limit=1,
            ),
        )
        created = await self._first(
            "create_lead",
            self.store.insert(
                "leads",
                [
                    {
                        "company_id": tenant_id,
                        "phone": phone,
                        "name": name,
                        "status": "new",
                        "pipeline_stage_id": stage.get("id") if stage else None,
                        "position": int(time.time() * 1000),
                    }
                ],
            ),
        )
        if not created:
            return None
        logger.info("created lead %s for %s", created.get("id"), phone)
        return str(created["id"])

    async def _heal_lead_name(
        self, tenant_id: str, lead: Row, phone: str, push_name: str | None
    ) -> None:
        if not is_generic_name(lead.get("name"), phone) or is_generic_name(push_name, phone):
            return
        await self._safe(
            "heal_lead_name",
            self.store.update(
                "leads", {"name": push_name}, eq("company_id", tenant_id), eq("id", lead["id"])
            ),
        )

    async def get_lead(self, lead_id: str) -> Row | None:
        return await self._first(
            "get_lead", self.store.select("leads", eq("id", lead_id), limit=1)
        )

    async def log_lead_activity(
        self, tenant_id: str, lead_id: str, content: str, *, created_by: str | None = None
    ) -> Result[list[Row]]:
        return await self._safe(
            "log_lead_activity",
            self.store.insert(
                "lead_activities",
                [
                    {
                        "company_id": tenant_id,
                        "lead_id": lead_id,
                        "type": "log",
                        "content": content,
                        "created_by": created_by,
                        "created_at": self._now(),
                    }
                ],
            ),
        )

    # -- messages ----------------------------------------------------------

    async def upsert_message(self, row: Mapping[str, Any]) -> Result[list[Row]]:
        """
        Idempotent write keyed by `(remote_jid, whatsapp_id)`.

        A replayed message never moves the stored status backwards: the
        incoming status is dropped when the stored one ranks at least as high.
        """

        data = dict(row)
        data["remote_jid"] = normalize_jid(data.get("remote_jid"))
        status = data.get("status")
        if status is not None:
            existing = await self._first(
                "upsert_message.status",
                self.store.select(
                    "messages",
                    eq("remote_jid", data["remote_jid"]),
                    eq("whatsapp_id", data.get("whatsapp_id")),
                    columns="status",
                    limit=1,
                ),
            )
            if existing and STATUS_RANK.get(existing.get("status") or "", 0) >= STATUS_RANK.get(
                status, 0
            ):
                data.pop("status")

        return await self._safe(
            "upsert_message",
            self.store.upsert("messages", [data], on_conflict=("remote_jid", "whatsapp_id")),
            level=logging.ERROR,
        )

    async def get_message(self, tenant_id: str, whatsapp_id: str) -> Row | None:
        return await self._first(
            "get_message",
            self.store.select(
                "messages", eq("company_id", tenant_id), eq("whatsapp_id", whatsapp_id), limit=1
            ),
        )

    async def advance_status(
        self, tenant_id: str, whatsapp_id: str, status: str
    ) -> Result[list[Row]]:
        """Move a message forward to `status`; rows already at or past it are untouched."""

        values: dict[str, Any] = {"status": status}
        if status == "delivered":
            values["delivered_at"] = self._now()
        elif status == "read":
            values["read_at"] = self._now()
        return await self._safe(
            "advance_status",
            self.store.update(
                "messages",
                values,
                eq("company_id", tenant_id),
                eq("whatsapp_id", whatsapp_id),
                in_("status", lower_statuses(status)),
            ),
        )

    async def mark_revoked(
        self, tenant_id: str, whatsapp_id: str, content: str
    ) -> Result[list[Row]]:
        return await self._safe(
            "mark_revoked",
            self.store.update(
                "messages",
                {"content": content, "message_type": "text", "is_deleted": True},
                eq("company_id", tenant_id),
                eq("whatsapp_id", whatsapp_id),
            ),
        )

    async def set_reactions(
        self, tenant_id: str, whatsapp_id: str, reactions: list[dict[str, Any]]
    ) -> Result[list[Row]]:
        return await self._safe(
            "set_reactions",
            self.store.update(
                "messages",
                {"reactions": reactions},
                eq("company_id", tenant_id),
                eq("whatsapp_id", whatsapp_id),
            ),
        )

    async def set_poll_votes(
        self, tenant_id: str, whatsapp_id: str, votes: list[dict[str, Any]]
    ) -> Result[list[Row]]:
        return await self._safe(
            "set_poll_votes",
            self.store.update(
                "messages",
                {"poll_votes": votes},
                eq("company_id", tenant_id),
                eq("whatsapp_id", whatsapp_id),
            ),
        )

    async def set_transcription(
        self, tenant_id: str, whatsapp_id: str, text: str
    ) -> Result[list[Row]]:
        return await self._safe(
            "set_transcription",
            self.store.update(
                "messages",
                {"transcription": text},
                eq("company_id", tenant_id),
                eq("whatsapp_id", whatsapp_id),
            ),
        )

    # -- catalog -----------------------------------------------------------

    async def upsert_products(self, rows: list[Mapping[str, Any]]) -> Result[list[Row]]:
        if not rows:
            return Result([])
        return await self._safe(
            "upsert_products",
            self.store.upsert(
                "products", [dict(r) for r in rows], on_conflict=("company_id", "product_id")
            ),
        )

    # -- webhooks ----------------------------------------------------------

    async def log_webhook(self, row: Mapping[str, Any]) -> Result[list[Row]]:
        return await self._safe(
            "log_webhook", self.store.insert("webhook_logs", [dict(row)]), level=logging.ERROR
        )

    # -- reminders ---------------------------------------------------------

    async def due_appointments(self, start: dt.datetime, end: dt.datetime) -> list[Row]:
        res = await self._safe(
            "due_appointments",
            self.store.select(
                "appointments",
                eq("status", "confirmed"),
                eq("reminder_sent", False),
                gte("start_time", start),
                lte("start_time", end),
                order=Order("start_time"),
            ),
            level=logging.ERROR,
        )
        return res.unwrap_or([])

    async def pending_confirmations(self, since: dt.datetime) -> list[Row]:
        res = await self._safe(
            "pending_confirmations",
            self.store.select(
                "appointments",
                eq("confirmation_sent", False),
                gte("created_at", since),
                neq("status", "cancelled"),
            ),
            level=logging.ERROR,
        )
        return res.unwrap_or([])

    async def mark_reminder_sent(self, appointment_id: str) -> Result[list[Row]]:
        return await self._safe(
            "mark_reminder_sent",
            self.store.update("appointments", {"reminder_sent": True}, eq("id", appointment_id)),
            level=logging.ERROR,
        )

    async def mark_confirmation_sent(self, appointment_id: str) -> Result[list[Row]]:
        return await self._safe(
            "mark_confirmation_sent",
            self.store.update(
                "appointments", {"confirmation_sent": True}, eq("id", appointment_id)
            ),
            level=logging.ERROR,
        )

    async def get_company(self, company_id: str) -> Row | None:
        return await self._first(
            "get_company", self.store.select("companies", eq("id", company_id), limit=1)
        )

    async def get_notification_config(
        self, company_id: str, rule_id: str | None = None
    ) -> dict[str, Any] | None:
        """Notification config of the appointment's rule, else the tenant's first active rule."""

        row: Row | None = None
        if rule_id:
            row = await self._first(
                "get_notification_config",
                self.store.select(
                    "availability_rules", eq("id", rule_id), columns="notification_config", limit=1
                ),
            )
        if not row or not row.get("notification_config"):
            row = await self._first(
                "get_notification_config",
                self.store.select(
                    "availability_rules",
                    eq("company_id", company_id),
                    eq("is_active", True),
                    columns="notification_config",
                    limit=1,
                ),
            )
        config = row.get("notification_config") if row else None
        return config if isinstance(config, dict) else None
