from __future__ import annotations

S_WHATSAPP_NET = "@s.whatsapp.net"
G_US = "@g.us"
NEWSLETTER = "@newsletter"
STATUS_BROADCAST_JID = "status@broadcast"
# Platform system account; never stored as a conversation.
SYSTEM_JID = "0@s.whatsapp.net"

DEFAULT_ORIGIN = "https://web.whatsapp.com"
# Generic desktop browser UA used for media downloads.
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)

# Tenant-visible instance status values.
STATUS_QRCODE = "qrcode"
STATUS_CONNECTED = "connected"
STATUS_CONNECTING = "connecting"
STATUS_DISCONNECTED = "disconnected"

SYNC_WAITING = "waiting"
SYNC_IMPORTING_CONTACTS = "importing_contacts"
SYNC_IMPORTING_MESSAGES = "importing_messages"
SYNC_COMPLETED = "completed"

# Message delivery status ordering; a stored status never moves backwards.
STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "sent": 1,
    "received": 1,
    "delivered": 2,
    "read": 3,
    "played": 4,
}

# Receipt codes as delivered by the protocol layer.
RECEIPT_STATUS: dict[int, str] = {
    3: "delivered",
    4: "read",
    5: "read",
}

REVOKED_CONTENT = "⊘ Message deleted"

# Auth rows for the root credential bundle.
CREDS_DATA_TYPE = "creds"
CREDS_KEY_ID = "creds"
