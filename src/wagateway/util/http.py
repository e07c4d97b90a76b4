"""
Blocking HTTP helpers run through `asyncio.to_thread`.

Every outbound HTTP call in the package (data store, media storage, webhooks)
goes through `request`, which returns an `HttpResponse` for any status code and
only raises for transport-level failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, cast

from . import json as jsonutil

USER_AGENT = "wagateway/0.1"


@dataclass(slots=True)
class HttpResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, limit: int | None = None) -> str:
        raw = self.body if limit is None else self.body[:limit]
        return raw.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if not self.body:
            return None
        return jsonutil.loads(self.body)


def _request_sync(
    method: str,
    url: str,
    *,
    data: bytes | None,
    headers: dict[str, str],
    timeout_s: float,
) -> HttpResponse:
    req = urllib.request.Request(
        url, data=data, headers={"User-Agent": USER_AGENT, **headers}, method=method
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return HttpResponse(
                status=int(resp.status),
                body=cast(bytes, resp.read()),
                headers={k.lower(): v for k, v in resp.headers.items()},
            )
    except urllib.error.HTTPError as e:
        body = b""
        with contextlib.suppress(Exception):
            body = e.read()
        return HttpResponse(
            status=int(e.code),
            body=body,
            headers={k.lower(): v for k, v in (e.headers or {}).items()},
        )


async def request(
    method: str,
    url: str,
    *,
    data: bytes | None = None,
    json: Any = None,
    headers: dict[str, str] | None = None,
    timeout_s: float = 30.0,
) -> HttpResponse:
    hdrs = dict(headers or {})
    if json is not None:
        data = jsonutil.dumps(json).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/json")
    return await asyncio.to_thread(
        _request_sync, method, url, data=data, headers=hdrs, timeout_s=timeout_s
    )
