from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from .base import Condition, Order, Row


def _matches(row: Mapping[str, Any], cond: Condition) -> bool:
    v = row.get(cond.column)
    if cond.op == "eq":
        return bool(v == cond.value)
    if cond.op == "neq":
        return bool(v != cond.value)
    if cond.op == "in":
        return v in cond.value
    if cond.op == "is":
        return v is cond.value
    if v is None:
        return False
    if cond.op == "gte":
        return bool(v >= cond.value)
    if cond.op == "lte":
        return bool(v <= cond.value)
    raise ValueError(f"unsupported operator: {cond.op}")


class InMemoryDataStore:
    """
    Dict-backed `DataStore` for tests and local runs.

    Upserts honour the composite conflict key exactly like the remote store, so
    idempotency properties can be asserted on row counts.
    """

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = {}

    def rows(self, table: str) -> list[Row]:
        return [copy.deepcopy(r) for r in self._tables.get(table, [])]

    def seed(self, table: str, *rows: Mapping[str, Any]) -> None:
        for r in rows:
            row = dict(r)
            row.setdefault("id", uuid.uuid4().hex)
            self._tables.setdefault(table, []).append(row)

    def _filter(self, table: str, where: Sequence[Condition]) -> list[Row]:
        return [r for r in self._tables.get(table, []) if all(_matches(r, c) for c in where)]

    async def select(
        self,
        table: str,
        *where: Condition,
        columns: str = "*",
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        rows = self._filter(table, where)
        if order is not None:
            rows = sorted(
                rows,
                key=lambda r: (r.get(order.column) is None, r.get(order.column)),
                reverse=order.descending,
            )
        if limit is not None:
            rows = rows[:limit]
        out = [copy.deepcopy(r) for r in rows]
        if columns.strip() == "*":
            return out
        wanted = [c.strip() for c in columns.split(",") if c.strip()]
        return [{c: r.get(c) for c in wanted} for r in out]

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        out: list[Row] = []
        for r in rows:
            row = copy.deepcopy(dict(r))
            row.setdefault("id", uuid.uuid4().hex)
            self._tables.setdefault(table, []).append(row)
            out.append(copy.deepcopy(row))
        return out

    async def upsert(
        self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: Sequence[str]
    ) -> list[Row]:
        out: list[Row] = []
        for r in rows:
            key = [Condition(c, "eq", r.get(c)) for c in on_conflict]
            existing = self._filter(table, key)
            if existing:
                existing[0].update(copy.deepcopy(dict(r)))
                out.append(copy.deepcopy(existing[0]))
            else:
                out.extend(await self.insert(table, [r]))
        return out

    async def update(self, table: str, values: Mapping[str, Any], *where: Condition) -> list[Row]:
        out: list[Row] = []
        for row in self._filter(table, where):
            row.update(copy.deepcopy(dict(values)))
            out.append(copy.deepcopy(row))
        return out

    async def delete(self, table: str, *where: Condition) -> int:
        rows = self._tables.get(table, [])
        doomed = {id(r) for r in self._filter(table, where)}
        self._tables[table] = [r for r in rows if id(r) not in doomed]
        return len(doomed)
