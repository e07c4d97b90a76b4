from __future__ import annotations

import base64
import secrets

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .creds import AuthenticationCreds, KeyPair, SignedKeyPair


def generate_keypair() -> KeyPair:
    priv = X25519PrivateKey.generate()
    return KeyPair(
        public=priv.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw),
        private=priv.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()),
    )


def generate_registration_id() -> int:
    # 14-bit, never zero.
    return (int.from_bytes(secrets.token_bytes(2), "big") & 16383) or 1


def init_auth_creds() -> AuthenticationCreds:
    """
    Fresh credentials for a session that has never been paired.

    The pre-key signature is left empty; the protocol library signs the
    pre-key with the identity key when it registers the device.
    """

    return AuthenticationCreds(
        noise_key=generate_keypair(),
        pairing_ephemeral_key_pair=generate_keypair(),
        signed_identity_key=generate_keypair(),
        signed_pre_key=SignedKeyPair(key_pair=generate_keypair(), signature=b"", key_id=1),
        registration_id=generate_registration_id(),
        adv_secret_key=base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
    )
