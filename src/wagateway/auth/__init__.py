from __future__ import annotations

from .creds import AuthenticationCreds, Contact, KeyPair, SignedKeyPair
from .serde import creds_from_dict, creds_to_dict, merge_creds
from .state import AuthState, SignalKeyStore
from .store import DatabaseAuthState, DatabaseKeyStore
from .utils import init_auth_creds

__all__ = [
    "AuthState",
    "AuthenticationCreds",
    "Contact",
    "DatabaseAuthState",
    "DatabaseKeyStore",
    "KeyPair",
    "SignalKeyStore",
    "SignedKeyPair",
    "creds_from_dict",
    "creds_to_dict",
    "init_auth_creds",
    "merge_creds",
]
