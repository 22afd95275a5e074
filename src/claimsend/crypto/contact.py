"""AES-256-GCM encryption-at-rest for recipient contacts.

Envelope: ``v1.<iv>.<tag>.<ciphertext>``, each part base64url without
padding. The sender wallet and contact hash are bound in as associated
data, so a ciphertext copied onto another row will not decrypt.
"""

from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from claimsend.errors import ConfigurationError

ENVELOPE_VERSION = "v1"
IV_BYTES = 12
TAG_BYTES = 16

_HEX_KEY_RE = re.compile(r"^[a-fA-F0-9]{64}$")


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def decode_key_material(raw: str) -> bytes:
    """Accept ``base64:...``, ``hex:...``, 64 bare hex chars, or bare base64."""
    value = raw.strip()
    if not value:
        raise ConfigurationError("Contact encryption key is empty")
    try:
        if value.startswith("base64:"):
            key = base64.b64decode(value[len("base64:"):])
        elif value.startswith("hex:"):
            key = bytes.fromhex(value[len("hex:"):])
        elif _HEX_KEY_RE.match(value):
            key = bytes.fromhex(value)
        else:
            key = base64.b64decode(value)
    except (ValueError, binascii.Error) as exc:
        raise ConfigurationError(f"Contact encryption key is malformed: {exc}") from exc
    if len(key) != 32:
        raise ConfigurationError("Contact encryption key must be 32 bytes (AES-256)")
    return key


class AesGcmContactCipher:
    """ContactCipher backed by ``cryptography``'s AESGCM primitive."""

    def __init__(self, key_material: str) -> None:
        self._aead = AESGCM(decode_key_material(key_material))

    @staticmethod
    def _aad(context: str) -> bytes:
        return f"send-contact:{context}".encode("utf-8")

    def encrypt(self, plaintext: str, context: str) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), self._aad(context))
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ".".join([
            ENVELOPE_VERSION,
            _b64url_encode(iv),
            _b64url_encode(tag),
            _b64url_encode(ciphertext),
        ])

    def decrypt(self, envelope: str, context: str) -> str:
        parts = envelope.split(".")
        if len(parts) != 4 or parts[0] != ENVELOPE_VERSION:
            raise ValueError("Unsupported contact envelope")
        try:
            iv, tag, ciphertext = (_b64url_decode(p) for p in parts[1:])
        except (ValueError, binascii.Error) as exc:
            raise ValueError("Malformed contact envelope") from exc
        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, self._aad(context))
        except InvalidTag as exc:
            raise ValueError("Contact envelope failed authentication") from exc
        return plain.decode("utf-8")
