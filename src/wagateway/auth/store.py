from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Mapping
from typing import Any

from ..constants import CREDS_DATA_TYPE, CREDS_KEY_ID
from ..persistence.base import DataStore, eq, in_
from ..util import json as bufferjson
from .creds import AuthenticationCreds
from .serde import creds_from_dict, creds_to_dict
from .utils import init_auth_creds

logger = logging.getLogger(__name__)

AUTH_TABLE = "auth_state"
_CONFLICT = ("session_id", "data_type", "key_id")


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _decode(payload: Any) -> Any:
    if isinstance(payload, (str, bytes)):
        return bufferjson.loads(payload)
    return payload


class DatabaseKeyStore:
    """
    Signal key material stored as one `auth_state` row per `(type, id)`.

    Reads return only the ids that exist; a `None` value in `set` deletes the
    row. Store failures are logged and never raised.
    """

    def __init__(self, store: DataStore, session_id: str) -> None:
        self._store = store
        self._session_id = session_id

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        if not ids:
            return {}
        try:
            rows = await self._store.select(
                AUTH_TABLE,
                eq("session_id", self._session_id),
                eq("data_type", key_type),
                in_("key_id", ids),
                columns="key_id,payload",
            )
        except Exception as e:
            logger.warning("auth key read failed (%s): %s", key_type, e)
            return {}

        out: dict[str, Any] = {}
        for row in rows:
            try:
                out[str(row["key_id"])] = _decode(row["payload"])
            except ValueError as e:
                logger.warning("skipping undecodable %s key %s: %s", key_type, row.get("key_id"), e)
        return out

    async def set(self, data: Mapping[str, Mapping[str, Any | None]]) -> None:
        rows: list[dict[str, Any]] = []
        doomed: dict[str, list[str]] = {}
        now = _now()
        for key_type, items in data.items():
            for key_id, value in items.items():
                if value is None:
                    doomed.setdefault(key_type, []).append(key_id)
                    continue
                rows.append(
                    {
                        "session_id": self._session_id,
                        "data_type": key_type,
                        "key_id": key_id,
                        "payload": bufferjson.dumps(value),
                        "updated_at": now,
                    }
                )

        if rows:
            try:
                await self._store.upsert(AUTH_TABLE, rows, on_conflict=_CONFLICT)
            except Exception as e:
                logger.error("auth key write failed (%d rows): %s", len(rows), e)
        for key_type, ids in doomed.items():
            try:
                await self._store.delete(
                    AUTH_TABLE,
                    eq("session_id", self._session_id),
                    eq("data_type", key_type),
                    in_("key_id", ids),
                )
            except Exception as e:
                logger.error("auth key delete failed (%s): %s", key_type, e)

    async def clear(self) -> None:
        try:
            await self._store.delete(AUTH_TABLE, eq("session_id", self._session_id))
        except Exception as e:
            logger.error("auth state wipe failed: %s", e)


class DatabaseAuthState:
    """
    Per-session auth state persisted in the `auth_state` table.

    - the root credentials live in the `("creds", "creds")` row.
    - key material lives in one row per `(type, id)` (see `DatabaseKeyStore`).
    """

    def __init__(self, store: DataStore, session_id: str, creds: AuthenticationCreds) -> None:
        self._store = store
        self.session_id = session_id
        self.creds = creds
        self.keys = DatabaseKeyStore(store, session_id)

    @classmethod
    async def load(cls, store: DataStore, session_id: str) -> DatabaseAuthState:
        creds: AuthenticationCreds | None = None
        try:
            rows = await store.select(
                AUTH_TABLE,
                eq("session_id", session_id),
                eq("data_type", CREDS_DATA_TYPE),
                eq("key_id", CREDS_KEY_ID),
                columns="payload",
                limit=1,
            )
            if rows:
                d = _decode(rows[0]["payload"])
                if not isinstance(d, dict):
                    raise TypeError("creds payload did not contain an object")
                creds = creds_from_dict(d)
        except Exception as e:
            logger.error("failed to load creds for %s, starting fresh: %s", session_id, e)

        return cls(store, session_id, creds or init_auth_creds())

    async def save_creds(self) -> None:
        row = {
            "session_id": self.session_id,
            "data_type": CREDS_DATA_TYPE,
            "key_id": CREDS_KEY_ID,
            "payload": bufferjson.dumps(creds_to_dict(self.creds)),
            "updated_at": _now(),
        }
        try:
            await self._store.upsert(AUTH_TABLE, [row], on_conflict=_CONFLICT)
        except Exception as e:
            logger.error("failed to save creds for %s: %s", self.session_id, e)

    async def clear(self) -> None:
        await self.keys.clear()
