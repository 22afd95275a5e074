"""Protocols for the external collaborators the orchestrators consume."""

from __future__ import annotations

from typing import Protocol

from claimsend.models.records import Transfer
from claimsend.models.results import (
    EscrowVerification,
    RateLimitDecision,
    RecipientContext,
    SettlementResult,
)
from claimsend.models.status import PayoutMethod, RecipientType


class EscrowVerifier(Protocol):
    """Confirms that an on-chain lock transaction matches the prepared transfer."""

    async def verify_lock(
        self,
        tx_hash: str,
        expected_sender: str,
        chain_id: int,
        *,
        expected_transfer_id: str | None = None,
    ) -> EscrowVerification:
        """Return valid/invalid with a reason. Never raises for a bad transaction."""
        ...


class ContactCipher(Protocol):
    """Encryption-at-rest for recipient contact details."""

    def encrypt(self, plaintext: str, context: str) -> str:
        """Encrypt, binding the ciphertext to ``context``."""
        ...

    def decrypt(self, ciphertext: str, context: str) -> str:
        """Decrypt; raises if the ciphertext or context was tampered with."""
        ...


class Notifier(Protocol):
    """Out-of-band delivery of claim links and OTPs."""

    async def send_claim_link(
        self, transfer_row_id: int, recipient_type: RecipientType, contact: str, url: str
    ) -> str:
        """Deliver the claim link. Returns the provider message id."""
        ...

    async def send_otp(
        self, transfer_row_id: int, recipient_type: RecipientType, contact: str, code: str
    ) -> str:
        """Deliver the OTP. Returns the provider message id."""
        ...


class SettlementAdapter(Protocol):
    """One payout rail backed by a settlement provider."""

    @property
    def method(self) -> PayoutMethod:
        ...

    @property
    def provider(self) -> str:
        """Identifier recorded on PayoutAttempt.provider."""
        ...

    async def execute(self, transfer: Transfer, context: RecipientContext) -> SettlementResult:
        """Move funds for ``transfer``. Exceptions mean the outcome is unknown."""
        ...


class RateLimiter(Protocol):
    """Fixed-window throttle keyed by (endpoint, client, business key)."""

    async def hit(self, endpoint: str, key: str) -> RateLimitDecision:
        """Count one request. Must never raise or block indefinitely."""
        ...
