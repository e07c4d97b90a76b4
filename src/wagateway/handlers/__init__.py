from __future__ import annotations

from .contacts import ContactsHandler, PresenceTracker
from .history import HistoryHandler
from .media import MediaHandler, StoredMedia
from .messages import IngestOptions, MessageIngestor
from .updates import UpdatesHandler

__all__ = [
    "ContactsHandler",
    "HistoryHandler",
    "IngestOptions",
    "MediaHandler",
    "MessageIngestor",
    "PresenceTracker",
    "StoredMedia",
    "UpdatesHandler",
]
