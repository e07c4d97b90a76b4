from __future__ import annotations

import asyncio
import datetime as dt
import logging
import socket
import urllib.error
import urllib.parse
from collections.abc import Mapping, Sequence
from typing import Any

from ..exceptions import PersistenceError
from ..util import http
from ..util.asyncio import Sleep
from .base import Condition, Order, Row

logger = logging.getLogger(__name__)

_RETRY_STATUSES = frozenset({502, 503, 504})


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return str(value)


def _in_item(value: Any) -> str:
    s = _literal(value)
    if any(ch in s for ch in ',()" '):
        s = '"' + s.replace('"', '\\"') + '"'
    return s


def encode_condition(cond: Condition) -> tuple[str, str]:
    if cond.op == "is" or (cond.op == "eq" and cond.value is None):
        return cond.column, "is.null"
    if cond.op == "in":
        return cond.column, "in.(" + ",".join(_in_item(v) for v in cond.value) + ")"
    return cond.column, f"{cond.op}.{_literal(cond.value)}"


def build_query(
    where: Sequence[Condition],
    *,
    columns: str | None = None,
    order: Order | None = None,
    limit: int | None = None,
    on_conflict: Sequence[str] | None = None,
) -> str:
    params: list[tuple[str, str]] = []
    if columns is not None:
        params.append(("select", columns))
    params.extend(encode_condition(c) for c in where)
    if order is not None:
        params.append(("order", f"{order.column}.{'desc' if order.descending else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(limit)))
    if on_conflict:
        params.append(("on_conflict", ",".join(on_conflict)))
    return urllib.parse.urlencode(params, quote_via=urllib.parse.quote, safe=",.()*")


class PostgrestDataStore:
    """
    `DataStore` over a PostgREST endpoint (e.g. a Supabase project).

    Transient transport failures and 502/503/504 responses are retried with
    exponential backoff; any other non-2xx response raises `PersistenceError`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 60.0,
        retries: int = 3,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._rest = base_url.rstrip("/") + "/rest/v1"
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self._timeout_s = timeout_s
        self._retries = max(1, retries)
        self._sleep = sleep

    async def _request(
        self,
        method: str,
        table: str,
        query: str,
        *,
        body: Any = None,
        prefer: str | None = None,
    ) -> http.HttpResponse:
        url = f"{self._rest}/{table}"
        if query:
            url = f"{url}?{query}"
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer

        for attempt in range(self._retries):
            last = attempt == self._retries - 1
            try:
                res = await http.request(
                    method, url, json=body, headers=headers, timeout_s=self._timeout_s
                )
            except (urllib.error.URLError, TimeoutError, socket.timeout, ConnectionError) as e:
                if last:
                    raise PersistenceError(f"{method} {table} failed: {e}") from e
                await self._sleep(2**attempt)
                continue

            if res.status in _RETRY_STATUSES and not last:
                await self._sleep(2**attempt)
                continue
            if not res.ok:
                raise PersistenceError(
                    f"{method} {table} returned {res.status}",
                    status=res.status,
                    body=res.text(500),
                )
            return res

        raise PersistenceError(f"{method} {table} failed")  # pragma: no cover

    @staticmethod
    def _rows(res: http.HttpResponse) -> list[Row]:
        data = res.json()
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    async def select(
        self,
        table: str,
        *where: Condition,
        columns: str = "*",
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        q = build_query(where, columns=columns, order=order, limit=limit)
        return self._rows(await self._request("GET", table, q))

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        if not rows:
            return []
        res = await self._request(
            "POST", table, "", body=[dict(r) for r in rows], prefer="return=representation"
        )
        return self._rows(res)

    async def upsert(
        self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: Sequence[str]
    ) -> list[Row]:
        if not rows:
            return []
        res = await self._request(
            "POST",
            table,
            build_query((), on_conflict=on_conflict),
            body=[dict(r) for r in rows],
            prefer="resolution=merge-duplicates,return=representation",
        )
        return self._rows(res)

    async def update(self, table: str, values: Mapping[str, Any], *where: Condition) -> list[Row]:
        res = await self._request(
            "PATCH", table, build_query(where), body=dict(values), prefer="return=representation"
        )
        return self._rows(res)

    async def delete(self, table: str, *where: Condition) -> int:
        res = await self._request(
            "DELETE", table, build_query(where), prefer="return=representation"
        )
        return len(self._rows(res))
