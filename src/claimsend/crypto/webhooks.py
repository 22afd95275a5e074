"""Inbound webhook authentication.

Two schemes: a shared secret header for generic payout providers, and
Bridge-style RSA signatures (``X-Webhook-Signature: t=<ts>,v0=<base64>``)
over ``hex(sha256("<t>.<raw body>"))``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
import time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from claimsend.crypto.claims import constant_time_equals
from claimsend.models.results import SignatureCheck

log = logging.getLogger(__name__)

SECRET_HEADER = "X-Send-Webhook-Secret"
SIGNATURE_HEADER = "X-Webhook-Signature"

_MS_THRESHOLD = 1_000_000_000_000
_WS_RE = re.compile(r"\s+")


def verify_shared_secret(provided: str | None, secrets: list[str]) -> SignatureCheck:
    if not secrets:
        return SignatureCheck(valid=False, reason="Webhook secret is not configured")
    if not provided:
        return SignatureCheck(valid=False, reason=f"Missing {SECRET_HEADER} header")
    for secret in secrets:
        if constant_time_equals(provided, secret):
            return SignatureCheck(valid=True)
    return SignatureCheck(valid=False, reason="Webhook secret mismatch")


def normalize_public_key(raw: str) -> str:
    """Wrap a bare base64 DER key in PEM armor; PEM input passes through."""
    trimmed = raw.strip()
    if not trimmed or "BEGIN PUBLIC KEY" in trimmed:
        return trimmed
    compact = _WS_RE.sub("", trimmed)
    lines = [compact[i:i + 64] for i in range(0, len(compact), 64)]
    return "-----BEGIN PUBLIC KEY-----\n" + "\n".join(lines) + "\n-----END PUBLIC KEY-----"


def parse_signature_header(header: str) -> tuple[str, int, str] | None:
    """Return ``(timestamp_raw, timestamp, signature)`` or None."""
    timestamp_raw: str | None = None
    timestamp = 0
    signature: str | None = None
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        key, value = key.strip().lower(), value.strip()
        if not sep or not key or not value:
            continue
        if key == "t":
            if value.isdigit() and int(value) > 0:
                timestamp_raw, timestamp = value, int(value)
        elif key == "v0":
            signature = value
    if not timestamp_raw or not signature:
        return None
    return timestamp_raw, timestamp, signature


class BridgeSignatureVerifier:
    """Verifies RSA-SHA256 webhook signatures against configured public keys."""

    def __init__(self, public_keys: list[str], max_age_seconds: int = 300) -> None:
        self._keys: list[rsa.RSAPublicKey] = []
        seen: set[str] = set()
        for raw in public_keys:
            pem = normalize_public_key(raw)
            if not pem or pem in seen:
                continue
            seen.add(pem)
            try:
                key = serialization.load_pem_public_key(pem.encode("ascii"))
            except ValueError as e:
                log.warning("Ignoring unparseable webhook public key: %s", e)
                continue
            if isinstance(key, rsa.RSAPublicKey):
                self._keys.append(key)
        self._max_age = max_age_seconds

    @property
    def configured(self) -> bool:
        return bool(self._keys)

    def verify(
        self, raw_body: bytes | str, header: str | None, now: float | None = None
    ) -> SignatureCheck:
        if not self._keys:
            return SignatureCheck(valid=False, reason="Bridge webhook public key is not configured")
        if not header or not header.strip():
            return SignatureCheck(valid=False, reason=f"Missing {SIGNATURE_HEADER} header")

        parsed = parse_signature_header(header)
        if parsed is None:
            return SignatureCheck(valid=False, reason=f"Invalid {SIGNATURE_HEADER} format")
        timestamp_raw, timestamp, signature_b64 = parsed

        body = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        if not body:
            return SignatureCheck(valid=False, reason="Raw request body is required")

        event_ms = timestamp if timestamp > _MS_THRESHOLD else timestamp * 1000
        now_ms = (now if now is not None else time.time()) * 1000
        if abs(now_ms - event_ms) > self._max_age * 1000:
            return SignatureCheck(valid=False, reason="Signature timestamp is outside tolerance")

        try:
            signature = base64.b64decode(signature_b64)
        except (ValueError, binascii.Error):
            return SignatureCheck(valid=False, reason="Signature is not valid base64")

        digest_hex = hashlib.sha256(f"{timestamp_raw}.{body}".encode("utf-8")).hexdigest()
        for key in self._keys:
            try:
                key.verify(signature, digest_hex.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
            except InvalidSignature:
                continue
            return SignatureCheck(valid=True, timestamp=timestamp)

        return SignatureCheck(valid=False, reason="Signature verification failed")
