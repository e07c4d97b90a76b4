from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Mapping
from typing import Any

from .config import WebhookConfig
from .persistence.crm import CrmRepository
from .util import http
from .util import json as jsonutil

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """
    Fire-once HTTP notifications to a tenant's webhook.

    A short timeout, no retries, and never raises; every attempt is logged to
    `webhook_logs` when the instance is known.
    """

    def __init__(self, crm: CrmRepository, config: WebhookConfig | None = None) -> None:
        self._crm = crm
        self.config = config or WebhookConfig()

    async def dispatch(
        self, url: str | None, event: str, data: Mapping[str, Any], instance_id: str | None = None
    ) -> int:
        """POST the event; returns the HTTP status (0 on transport failure)."""

        if not url:
            return 0
        payload = {
            "event": event,
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "data": jsonutil.to_jsonable(dict(data)),
        }

        status = 0
        body = ""
        try:
            res = await http.request("POST", url, json=payload, timeout_s=self.config.timeout_s)
            status = res.status
            body = res.text(self.config.max_logged_body)
            if not res.ok:
                logger.warning("webhook %s answered %s", url, status)
        except Exception as e:
            body = str(e)[: self.config.max_logged_body]
            logger.error("webhook %s failed: %s", url, e)

        if instance_id:
            await self._crm.log_webhook(
                {
                    "instance_id": instance_id,
                    "event_type": event,
                    "status": status,
                    "payload": payload,
                    "response_body": body,
                    "created_at": dt.datetime.now(dt.timezone.utc),
                }
            )
        return status
