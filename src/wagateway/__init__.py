"""
wagateway: the core of a multi-tenant WhatsApp gateway.

Keeps one protocol session per tenant alive, mirrors inbound traffic into a
CRM data store (contacts, leads, messages, delivery state), sends humanized
outbound messages and runs appointment reminders. The WhatsApp protocol
itself is provided by an injected socket factory.
"""

from __future__ import annotations

from .config import GatewayConfig
from .exceptions import (
    GatewayError,
    InvalidPayload,
    PersistenceError,
    RecipientUnverified,
    SessionNotFound,
)
from .gateway import Gateway
from .sender import (
    ContactSpec,
    CopyCodeSpec,
    LocationSpec,
    MediaSpec,
    MessageSpec,
    PollSpec,
    TextSpec,
)
from .session import SessionState
from .util.events import NewMessageArrived

__all__ = [
    "ContactSpec",
    "CopyCodeSpec",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "InvalidPayload",
    "LocationSpec",
    "MediaSpec",
    "MessageSpec",
    "NewMessageArrived",
    "PersistenceError",
    "PollSpec",
    "RecipientUnverified",
    "SessionNotFound",
    "SessionState",
    "TextSpec",
]

__version__ = "0.1.0"
