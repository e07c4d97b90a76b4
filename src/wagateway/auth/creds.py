from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class KeyPair:
    public: bytes
    private: bytes


@dataclass(slots=True)
class SignedKeyPair:
    key_pair: KeyPair
    signature: bytes
    key_id: int
    timestamp_s: int | None = None


@dataclass(slots=True)
class Contact:
    id: str  # JID
    name: str | None = None
    lid: str | None = None


@dataclass(slots=True)
class AuthenticationCreds:
    """
    Root credential bundle of one session.

    Only the fields the gateway itself reads are modelled; everything else the
    protocol library stores in its creds (account, app-state ids, routing info,
    ...) is carried through untouched in `extra`.
    """

    noise_key: KeyPair
    pairing_ephemeral_key_pair: KeyPair
    signed_identity_key: KeyPair
    signed_pre_key: SignedKeyPair
    registration_id: int
    adv_secret_key: str

    me: Contact | None = None
    registered: bool = False
    next_pre_key_id: int = 1
    first_unuploaded_pre_key_id: int = 1

    extra: dict[str, Any] = field(default_factory=dict)
