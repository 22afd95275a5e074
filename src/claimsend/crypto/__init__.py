"""Hashing, encryption and signature helpers."""

from claimsend.crypto.claims import (
    ClaimCrypto,
    constant_time_equals,
    generate_transfer_id,
    hash_contact,
    mask_contact,
    recipient_hint_hash,
)
from claimsend.crypto.contact import AesGcmContactCipher, decode_key_material
from claimsend.crypto.webhooks import (
    BridgeSignatureVerifier,
    normalize_public_key,
    parse_signature_header,
    verify_shared_secret,
)

__all__ = [
    "ClaimCrypto",
    "constant_time_equals",
    "generate_transfer_id",
    "hash_contact",
    "mask_contact",
    "recipient_hint_hash",
    "AesGcmContactCipher",
    "decode_key_material",
    "BridgeSignatureVerifier",
    "normalize_public_key",
    "parse_signature_header",
    "verify_shared_secret",
]
