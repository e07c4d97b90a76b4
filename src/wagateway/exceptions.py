from __future__ import annotations


class GatewayError(Exception):
    """Base error for the wagateway package."""


class SessionNotFound(GatewayError):
    """No active session is registered under the requested id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id!r} not found or disconnected")
        self.session_id = session_id


class InvalidPayload(GatewayError):
    """An outbound message spec is missing fields required by its type."""


class RecipientUnverified(GatewayError):
    """
    The existence pre-check reported that the destination has no account.

    Only raised when strict recipient checking is enabled; by default the
    sender logs a warning and proceeds.
    """

    def __init__(self, jid: str) -> None:
        super().__init__(f"recipient {jid} is not registered on WhatsApp")
        self.jid = jid


class PersistenceError(GatewayError):
    """A data store call failed."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class AuthError(GatewayError):
    """Credential loading/decoding failure."""


class MediaError(GatewayError):
    """Media download or upload failed."""


class CatalogUnavailable(GatewayError):
    """The account has no product catalog (not a business account, or the fetch failed)."""
