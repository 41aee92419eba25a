from __future__ import annotations

import base64
import secrets
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey


def generate_keypair() -> dict[str, bytes]:
    priv = X25519PrivateKey.generate()
    return {
        "private": priv.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        "public": priv.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ),
    }


def generate_registration_id() -> int:
    # Match Baileys: Uint16 & 16383 (14 bits)
    return (int.from_bytes(secrets.token_bytes(2), "big") & 16383) or 1


def init_auth_creds() -> dict[str, Any]:
    """
    Initialize a new, unregistered credential blob.

    The pre-key signature is left empty; transports that sign their pre-keys
    (Signal XEdDSA) fill it in on first connect, or should be paired with their
    own `creds_factory` on the bridge.
    """

    return {
        "noise_key": generate_keypair(),
        "pairing_ephemeral_key_pair": generate_keypair(),
        "signed_identity_key": generate_keypair(),
        "signed_pre_key": {"key_pair": generate_keypair(), "signature": b"", "key_id": 1},
        "registration_id": generate_registration_id(),
        "adv_secret_key": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
        "processed_history_messages": [],
        "next_pre_key_id": 1,
        "first_unuploaded_pre_key_id": 1,
        "account_sync_counter": 0,
        "account_settings": {"unarchive_chats": False},
        "registered": False,
        "me": None,
        "pairing_code": None,
        "last_prop_hash": None,
        "routing_info": None,
    }
