from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .config import SchedulerConfig
from .exceptions import SessionNotFound
from .jid import phone_from_jid
from .persistence.base import Row
from .persistence.crm import CrmRepository, utcnow
from .sender import OutboundSender, TextSpec
from .session import ConnectionManager
from .util.asyncio import Sleep, cancel_suppress, ensure_task

logger = logging.getLogger(__name__)

DEFAULT_LEAD_NAME = "Cliente"

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}

# Placeholder -> value key; stored templates may use either spelling.
_PLACEHOLDERS = {
    "[lead_name]": "lead_name",
    "[company]": "company",
    "[empresa]": "company",
    "[date]": "date",
    "[data]": "date",
    "[time]": "time",
    "[hora]": "time",
}


def _as_datetime(value: Any) -> dt.datetime | None:
    if isinstance(value, dt.datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=dt.timezone.utc)


def rule_offset_s(rule: Mapping[str, Any]) -> float | None:
    unit = _UNIT_SECONDS.get(str(rule.get("time_unit") or ""))
    try:
        amount = float(rule.get("time_amount"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if unit is None:
        return None
    return amount * unit


def render_template(template: str, values: Mapping[str, str]) -> str:
    out = template
    for placeholder, key in _PLACEHOLDERS.items():
        out = out.replace(placeholder, values.get(key, ""))
    return out


def _active(notifications: Any, kind: str) -> list[Mapping[str, Any]]:
    if not isinstance(notifications, list):
        return []
    return [
        n
        for n in notifications
        if isinstance(n, Mapping)
        and n.get("type") == kind
        and n.get("active")
        and n.get("template")
    ]


class ReminderScheduler:
    """
    Periodic appointment notifications.

    Each cycle sends missed booking confirmations (appointments created in the
    last hour) and `before_event` reminders whose offset falls inside the
    current margin. A reminder is marked sent only after a successful send;
    a cycle that starts while the previous one is still running is skipped.
    """

    def __init__(
        self,
        crm: CrmRepository,
        sender: OutboundSender,
        sessions: ConnectionManager,
        config: SchedulerConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        now: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._crm = crm
        self._sender = sender
        self._sessions = sessions
        self.config = config or SchedulerConfig()
        self._sleep = sleep
        self._now = now
        self._busy = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info("reminder scheduler started (every %.0fs)", self.config.interval_s)
        self._task = ensure_task(self._loop(), name="reminder-scheduler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        await cancel_suppress(task)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("reminder cycle failed")
            await self._sleep(self.config.interval_s)

    async def run_once(self) -> int:
        """Run one cycle; returns the number of messages sent."""

        if self._busy:
            logger.debug("previous reminder cycle still running; skipping")
            return 0
        self._busy = True
        try:
            now = self._now()
            cache: dict[str, str | None] = {}
            sent = await self._confirmations(now, cache)
            sent += await self._reminders(now, cache)
            return sent
        finally:
            self._busy = False

    async def _session_for(self, tenant_id: str, cache: dict[str, str | None]) -> str | None:
        if tenant_id in cache:
            return cache[tenant_id]
        session_id = await self._crm.find_session_for_tenant(tenant_id)
        if session_id is not None:
            try:
                self._sessions.require(session_id)
            except SessionNotFound:
                logger.debug("session %s of tenant %s is not live here", session_id, tenant_id)
                session_id = None
        cache[tenant_id] = session_id
        return session_id

    def _values(self, app: Row, lead: Row, company: Row | None) -> dict[str, str]:
        start = _as_datetime(app.get("start_time"))
        local = start.astimezone(self.config.tz) if start else None
        return {
            "lead_name": str(lead.get("name") or DEFAULT_LEAD_NAME),
            "company": str((company or {}).get("name") or ""),
            "date": local.strftime("%d/%m") if local else "",
            "time": local.strftime("%H:%M") if local else "",
        }

    async def _send(self, session_id: str, phone: str, text: str) -> bool:
        digits = phone_from_jid(phone)
        if not digits:
            return False
        try:
            await self._sender.send(session_id, digits, TextSpec(text=text))
        except Exception as e:
            logger.error("notification to %s failed: %s", digits, e)
            return False
        return True

    async def _confirmations(self, now: dt.datetime, cache: dict[str, str | None]) -> int:
        since = now - dt.timedelta(seconds=self.config.confirmation_window_s)
        sent = 0
        for app in await self._crm.pending_confirmations(since):
            tenant = str(app.get("company_id") or "")
            lead_id = app.get("lead_id")
            lead = await self._crm.get_lead(str(lead_id)) if lead_id else None
            if not tenant or not lead or not lead.get("phone"):
                continue
            rule_id = app.get("availability_rule_id")
            config = await self._crm.get_notification_config(tenant, rule_id)
            if not config:
                continue
            session_id = await self._session_for(tenant, cache)
            if session_id is None:
                continue

            values = self._values(app, lead, await self._crm.get_company(tenant))
            outgoing = [
                (str(lead["phone"]), trigger)
                for trigger in _active(config.get("lead_notifications"), "on_booking")[:1]
            ]
            admin_phone = config.get("admin_phone")
            if admin_phone:
                outgoing += [
                    (str(admin_phone), trigger)
                    for trigger in _active(config.get("admin_notifications"), "on_booking")[:1]
                ]
            delivered = 0
            for phone, trigger in outgoing:
                delivered += await self._send(
                    session_id, phone, render_template(trigger["template"], values)
                )
            if outgoing and not delivered:
                logger.warning("booking confirmation for %s not delivered; will retry", app["id"])
                continue
            await self._crm.mark_confirmation_sent(str(app["id"]))
            sent += delivered
        return sent

    async def _reminders(self, now: dt.datetime, cache: dict[str, str | None]) -> int:
        cfg = self.config
        end = now + dt.timedelta(seconds=cfg.lookahead_s)
        sent = 0
        for app in await self._crm.due_appointments(now, end):
            tenant = str(app.get("company_id") or "")
            start = _as_datetime(app.get("start_time"))
            if not tenant or start is None or not app.get("lead_id"):
                continue
            rule_id = app.get("availability_rule_id")
            config = await self._crm.get_notification_config(tenant, rule_id)
            rules = _active((config or {}).get("lead_notifications"), "before_event")
            if not rules:
                continue
            lead = await self._crm.get_lead(str(app["lead_id"]))
            if not lead or not lead.get("phone"):
                continue

            until = (start - now).total_seconds()
            for rule in rules:
                offset = rule_offset_s(rule)
                if offset is None or not (offset - cfg.margin_s < until <= offset):
                    continue
                session_id = await self._session_for(tenant, cache)
                if session_id is None:
                    logger.debug("no live session for tenant %s; reminder deferred", tenant)
                    break
                text = render_template(
                    rule["template"], self._values(app, lead, await self._crm.get_company(tenant))
                )
                if await self._send(session_id, str(lead["phone"]), text):
                    sent += 1
                    await self._crm.mark_reminder_sent(str(app["id"]))
                    await self._crm.log_lead_activity(
                        tenant,
                        str(lead["id"]),
                        f"Automatic reminder sent ({rule.get('time_amount')} "
                        f"{rule.get('time_unit')} before).",
                        created_by=app.get("user_id"),
                    )
                break
        return sent
