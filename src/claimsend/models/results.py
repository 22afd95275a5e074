"""Immutable results returned by external collaborators.

Settlement adapters return exactly one of the five ``Payout*`` variants below.
Call sites branch on every variant with ``isinstance`` and raise ``TypeError``
for anything else, so a new variant cannot slip through silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from claimsend.models.status import PayoutMethod, RecipientType


@dataclass(frozen=True)
class PayoutSuccess:
    """Provider confirmed settlement synchronously."""

    provider: str
    provider_reference: str | None = None
    treasury_tx_hash: str | None = None  # escrow -> payout treasury claim
    wallet_tx_hash: str | None = None  # escrow -> recipient wallet claim
    eta: str | None = None


@dataclass(frozen=True)
class PayoutProcessing:
    """Provider accepted the payout; settlement arrives by webhook."""

    provider: str
    provider_reference: str | None = None
    treasury_tx_hash: str | None = None
    eta: str | None = None


@dataclass(frozen=True)
class PayoutFailed:
    """Provider rejected the payout outright."""

    provider: str
    failure_code: str
    failure_reason: str


@dataclass(frozen=True)
class PayoutFallbackRequired:
    """Provider declined this rail; the client should retry on another."""

    provider: str
    failure_code: str
    failure_reason: str
    fallback_method: PayoutMethod = PayoutMethod.BANK


@dataclass(frozen=True)
class PayoutActionRequired:
    """Recipient must finish onboarding with the provider before payout."""

    provider: str
    onboarding_url: str
    customer_id: str | None = None
    external_account_id: str | None = None
    failure_code: str = "ONBOARDING_REQUIRED"
    failure_reason: str = "Recipient onboarding is required before payout"


SettlementResult = Union[
    PayoutSuccess,
    PayoutProcessing,
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutActionRequired,
]


@dataclass(frozen=True)
class RecipientContext:
    """Everything an adapter may need to know about the payee."""

    recipient_type: RecipientType
    contact: str
    provider_reference: str  # assigned before the outbound call
    wallet_address: str | None = None
    external_account_id: str | None = None
    customer_id: str | None = None


@dataclass(frozen=True)
class EscrowVerification:
    """Outcome of checking an on-chain lock transaction."""

    valid: bool
    reason: str | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of authenticating an inbound webhook."""

    valid: bool
    reason: str | None = None
    timestamp: int | None = None
