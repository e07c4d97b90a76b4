from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, Protocol, TypeVar

T = TypeVar("T")

Row = dict[str, Any]
Op = Literal["eq", "neq", "in", "gte", "lte", "is"]


@dataclass(frozen=True, slots=True)
class Condition:
    column: str
    op: Op
    value: Any


def eq(column: str, value: Any) -> Condition:
    return Condition(column, "eq", value)


def neq(column: str, value: Any) -> Condition:
    return Condition(column, "neq", value)


def in_(column: str, values: Sequence[Any]) -> Condition:
    return Condition(column, "in", tuple(values))


def gte(column: str, value: Any) -> Condition:
    return Condition(column, "gte", value)


def lte(column: str, value: Any) -> Condition:
    return Condition(column, "lte", value)


def is_null(column: str) -> Condition:
    return Condition(column, "is", None)


@dataclass(frozen=True, slots=True)
class Order:
    column: str
    descending: bool = False


class DataStore(Protocol):
    """
    Row-level access to the remote CRM store.

    Implementations raise `PersistenceError` on failure; callers that must not
    fail wrap calls with `CrmRepository`'s `Result` helpers.
    """

    async def select(
        self,
        table: str,
        *where: Condition,
        columns: str = "*",
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]: ...

    async def upsert(
        self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: Sequence[str]
    ) -> list[Row]: ...

    async def update(
        self, table: str, values: Mapping[str, Any], *where: Condition
    ) -> list[Row]: ...

    async def delete(self, table: str, *where: Condition) -> int: ...


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Outcome of a fail-soft persistence call: a value or the error that replaced it."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value
