"""Status and classifier enums for transfers, claim sessions and payouts."""

from __future__ import annotations

from enum import Enum


class TransferStatus(str, Enum):
    """Lifecycle of a Transfer. Only moves forward, except the expiry branch."""

    PREPARED = "PREPARED"
    LOCK_CONFIRMED = "LOCK_CONFIRMED"
    CLAIM_STARTED = "CLAIM_STARTED"
    CLAIMED_DEBIT = "CLAIMED_DEBIT"
    CLAIMED_BANK = "CLAIMED_BANK"
    CLAIMED_WALLET = "CLAIMED_WALLET"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


# A transfer can start a claim or be paid out only from these states
CLAIMABLE_STATUSES = (TransferStatus.LOCK_CONFIRMED, TransferStatus.CLAIM_STARTED)

# States from which the expiry branch may be taken
EXPIRABLE_STATUSES = (
    TransferStatus.PREPARED,
    TransferStatus.LOCK_CONFIRMED,
    TransferStatus.CLAIM_STARTED,
)


class ClaimSessionStatus(str, Enum):
    """Lifecycle of a ClaimSession."""

    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    COMPLETED = "COMPLETED"
    LOCKED = "LOCKED"  # maxAttempts wrong guesses, irrecoverable
    EXPIRED = "EXPIRED"  # OTP window passed before verification


class PayoutStatus(str, Enum):
    """Lifecycle of a PayoutAttempt."""

    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    FALLBACK_REQUIRED = "FALLBACK_REQUIRED"


class PayoutMethod(str, Enum):
    """Payout rail chosen by the recipient."""

    DEBIT = "DEBIT"
    BANK = "BANK"
    WALLET = "WALLET"

    @property
    def claimed_status(self) -> TransferStatus:
        """Terminal transfer status reached when this rail settles."""
        return TransferStatus(f"CLAIMED_{self.value}")


class RecipientType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class FundingSource(str, Enum):
    """How the sender funded the on-chain lock."""

    WALLET_USDC = "WALLET_USDC"
    CARD_ONRAMP = "CARD_ONRAMP"
    BANK_ONRAMP = "BANK_ONRAMP"


_PROVIDER_STATE_ALIASES = {
    "SUCCEEDED": PayoutStatus.SUCCESS,
    "COMPLETED": PayoutStatus.SUCCESS,
    "SETTLED": PayoutStatus.SUCCESS,
    "PAYMENT_PROCESSED": PayoutStatus.SUCCESS,
    "PENDING": PayoutStatus.PROCESSING,
    "QUEUED": PayoutStatus.PROCESSING,
    "IN_PROGRESS": PayoutStatus.PROCESSING,
    "AWAITING_FUNDS": PayoutStatus.PROCESSING,
    "AWAITING_PAYMENT": PayoutStatus.PROCESSING,
    "SUBMITTED": PayoutStatus.PROCESSING,
    "ERROR": PayoutStatus.FAILED,
    "REJECTED": PayoutStatus.FAILED,
    "CANCELED": PayoutStatus.FAILED,
    "CANCELLED": PayoutStatus.FAILED,
    "EXPIRED": PayoutStatus.FAILED,
    "RETURNED": PayoutStatus.FAILED,
}


def map_provider_state(value: object) -> PayoutStatus:
    """Map a provider's state vocabulary onto PayoutStatus.

    Unrecognized states count as PROCESSING, so an unknown callback can
    never settle or fail an attempt.
    """
    raw = value.strip().upper() if isinstance(value, str) else ""
    try:
        return PayoutStatus(raw)
    except ValueError:
        return _PROVIDER_STATE_ALIASES.get(raw, PayoutStatus.PROCESSING)
