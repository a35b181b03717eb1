"""age encryption of the store document using pyrage."""

from __future__ import annotations

import json
from typing import Any

import pyrage
import pyrage.x25519


def encrypt_document(document: dict[str, Any], recipient_public_key: str) -> bytes:
    """Serialize the store document to JSON and encrypt it for one recipient."""
    recipient = pyrage.x25519.Recipient.from_str(recipient_public_key)
    plaintext = json.dumps(document, ensure_ascii=False, default=str).encode("utf-8")
    result: bytes = pyrage.encrypt(plaintext, [recipient])
    return result


def decrypt_document(ciphertext: bytes, identity_private_key: str) -> dict[str, Any]:
    """Decrypt an age-encrypted store document."""
    identity = pyrage.x25519.Identity.from_str(identity_private_key)
    plaintext: bytes = pyrage.decrypt(ciphertext, [identity])
    result: dict[str, Any] = json.loads(plaintext.decode("utf-8"))
    return result
