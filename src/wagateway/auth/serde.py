from __future__ import annotations

from collections.abc import Mapping
from dataclasses import fields
from typing import Any

from ..exceptions import AuthError
from .creds import AuthenticationCreds, Contact, KeyPair, SignedKeyPair

_KNOWN = frozenset(
    {
        "noise_key",
        "pairing_ephemeral_key_pair",
        "signed_identity_key",
        "signed_pre_key",
        "registration_id",
        "adv_secret_key",
        "me",
        "registered",
        "next_pre_key_id",
        "first_unuploaded_pre_key_id",
    }
)


def _expect_bytes(v: Any, *, field: str) -> bytes:
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v)
    raise AuthError(f"expected bytes for {field}, got {type(v).__name__}")


def keypair_to_dict(kp: KeyPair) -> dict[str, Any]:
    return {"public": kp.public, "private": kp.private}


def keypair_from_dict(d: Mapping[str, Any], *, field: str = "KeyPair") -> KeyPair:
    return KeyPair(
        public=_expect_bytes(d["public"], field=f"{field}.public"),
        private=_expect_bytes(d["private"], field=f"{field}.private"),
    )


def signed_keypair_from_dict(d: Mapping[str, Any]) -> SignedKeyPair:
    return SignedKeyPair(
        key_pair=keypair_from_dict(d["key_pair"], field="signed_pre_key"),
        signature=_expect_bytes(d.get("signature", b""), field="signed_pre_key.signature"),
        key_id=int(d["key_id"]),
        timestamp_s=int(d["timestamp_s"]) if d.get("timestamp_s") is not None else None,
    )


def contact_from_dict(d: Mapping[str, Any]) -> Contact:
    return Contact(id=str(d["id"]), name=d.get("name"), lid=d.get("lid"))


def creds_to_dict(creds: AuthenticationCreds) -> dict[str, Any]:
    """Flatten creds for storage; `extra` fields sit at the top level beside the known ones."""

    out: dict[str, Any] = dict(creds.extra)
    out.update(
        noise_key=keypair_to_dict(creds.noise_key),
        pairing_ephemeral_key_pair=keypair_to_dict(creds.pairing_ephemeral_key_pair),
        signed_identity_key=keypair_to_dict(creds.signed_identity_key),
        signed_pre_key={
            "key_pair": keypair_to_dict(creds.signed_pre_key.key_pair),
            "signature": creds.signed_pre_key.signature,
            "key_id": creds.signed_pre_key.key_id,
            "timestamp_s": creds.signed_pre_key.timestamp_s,
        },
        registration_id=creds.registration_id,
        adv_secret_key=creds.adv_secret_key,
        me=(
            {"id": creds.me.id, "name": creds.me.name, "lid": creds.me.lid}
            if creds.me
            else None
        ),
        registered=creds.registered,
        next_pre_key_id=creds.next_pre_key_id,
        first_unuploaded_pre_key_id=creds.first_unuploaded_pre_key_id,
    )
    return out


def creds_from_dict(d: Mapping[str, Any]) -> AuthenticationCreds:
    try:
        return AuthenticationCreds(
            noise_key=keypair_from_dict(d["noise_key"], field="noise_key"),
            pairing_ephemeral_key_pair=keypair_from_dict(
                d["pairing_ephemeral_key_pair"], field="pairing_ephemeral_key_pair"
            ),
            signed_identity_key=keypair_from_dict(
                d["signed_identity_key"], field="signed_identity_key"
            ),
            signed_pre_key=signed_keypair_from_dict(d["signed_pre_key"]),
            registration_id=int(d["registration_id"]),
            adv_secret_key=str(d["adv_secret_key"]),
            me=contact_from_dict(d["me"]) if d.get("me") else None,
            registered=bool(d.get("registered", False)),
            next_pre_key_id=int(d.get("next_pre_key_id", 1)),
            first_unuploaded_pre_key_id=int(d.get("first_unuploaded_pre_key_id", 1)),
            extra={k: v for k, v in d.items() if k not in _KNOWN},
        )
    except (KeyError, TypeError, ValueError) as e:
        raise AuthError(f"malformed creds: {e}") from e


def merge_creds(creds: AuthenticationCreds, update: Mapping[str, Any]) -> AuthenticationCreds:
    """
    Apply a (possibly partial) credential-rotation update in place.

    Unknown keys are merged into `extra`; returns `creds` for chaining.
    """

    if not update:
        return creds
    merged = creds_to_dict(creds)
    merged.update(update)
    fresh = creds_from_dict(merged)
    for f in fields(AuthenticationCreds):
        setattr(creds, f.name, getattr(fresh, f.name))
    return creds
