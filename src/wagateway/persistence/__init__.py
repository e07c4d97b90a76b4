from __future__ import annotations

from .base import Condition, DataStore, Order, Result, Row, eq, gte, in_, is_null, lte, neq
from .crm import CrmRepository
from .memory import InMemoryDataStore
from .postgrest import PostgrestDataStore

__all__ = [
    "Condition",
    "CrmRepository",
    "DataStore",
    "InMemoryDataStore",
    "Order",
    "PostgrestDataStore",
    "Result",
    "Row",
    "eq",
    "gte",
    "in_",
    "is_null",
    "lte",
    "neq",
]
