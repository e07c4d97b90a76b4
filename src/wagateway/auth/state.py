from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from .creds import AuthenticationCreds


class SignalKeyStore(Protocol):
    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]: ...

    async def set(self, data: Mapping[str, Mapping[str, Any | None]]) -> None: ...

    async def clear(self) -> None: ...


class AuthState(Protocol):
    """What a socket factory receives: live creds, a key store and a way to persist creds."""

    session_id: str
    creds: AuthenticationCreds
    keys: SignalKeyStore

    async def save_creds(self) -> None: ...

    async def clear(self) -> None: ...
