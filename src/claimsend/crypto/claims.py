"""Claim tokens, OTPs, transfer ids and recipient hashing.

Every secret handed to a client is stored only as a salted SHA-256 hash;
comparisons go through ``hmac.compare_digest``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time

from claimsend.models.status import RecipientType
from claimsend.recipient import normalize_address

OTP_DIGITS = 6


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_contact(contact: str) -> str:
    """Stable lookup hash of a normalized contact."""
    return _sha256_hex(f"recipient:{contact}")


def recipient_hint_hash(contact_hash: str) -> str:
    """On-chain hint for the recipient; reveals nothing without the contact."""
    return "0x" + _sha256_hex(contact_hash)


def mask_contact(recipient_type: RecipientType, contact: str) -> str:
    if recipient_type is RecipientType.EMAIL:
        local, _, domain = contact.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(contact) <= 4:
        return f"***{contact}"
    return "*" * (len(contact) - 4) + contact[-4:]


def generate_transfer_id(sender_wallet: str, contact_hash: str, principal_usdc: str) -> str:
    seed = ":".join([
        normalize_address(sender_wallet),
        contact_hash,
        principal_usdc,
        str(int(time.time() * 1000)),
        secrets.token_hex(16),
    ])
    return "0x" + _sha256_hex(seed)


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class ClaimCrypto:
    """Token and OTP generation plus the peppered hashes stored for them."""

    def __init__(
        self,
        claim_token_pepper: str = "",
        otp_pepper: str = "",
        otp_bypass_code: str = "",
    ) -> None:
        self._token_pepper = claim_token_pepper
        self._otp_pepper = otp_pepper
        self._bypass_code = otp_bypass_code

    hash_contact = staticmethod(hash_contact)
    mask_contact = staticmethod(mask_contact)
    compute_recipient_hint_hash = staticmethod(recipient_hint_hash)
    generate_transfer_id = staticmethod(generate_transfer_id)

    @staticmethod
    def generate_claim_token() -> str:
        """24 random bytes, base64url."""
        return secrets.token_urlsafe(24)

    @staticmethod
    def generate_session_token() -> str:
        return secrets.token_urlsafe(24)

    def generate_otp(self) -> str:
        if self._bypass_code:
            return self._bypass_code
        return str(secrets.randbelow(10 ** OTP_DIGITS)).zfill(OTP_DIGITS)

    def hash_claim_token(self, token: str) -> str:
        return _sha256_hex(f"claim:{token}:{self._token_pepper}")

    def hash_session_token(self, token: str) -> str:
        return _sha256_hex(f"session:{token}:{self._token_pepper}")

    def hash_otp(self, code: str, session_id: int) -> str:
        return _sha256_hex(f"otp:{session_id}:{code}:{self._otp_pepper}")

    def verify_otp(self, code: str, session_id: int, expected_hash: str) -> bool:
        return constant_time_equals(self.hash_otp(code, session_id), expected_hash)
