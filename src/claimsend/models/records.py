"""Ledger records and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from claimsend.models.status import (
    ClaimSessionStatus,
    FundingSource,
    PayoutMethod,
    PayoutStatus,
    RecipientType,
    TransferStatus,
)


@dataclass
class Transfer:
    """A send-money request, root of the ledger.

    Amounts are integer micro-units (1 USD = 1_000_000).
    """

    id: int
    transfer_id: str  # 0x-prefixed bytes32, referenced on-chain
    sender_wallet: str  # lower-cased EVM address
    recipient_type: RecipientType
    recipient_contact_encrypted: str
    recipient_contact_hash: str
    recipient_hint_hash: str
    principal_usdc: int
    sponsor_fee_usdc: int
    total_locked_usdc: int
    funding_source: FundingSource
    region: str
    chain_id: int
    status: TransferStatus
    expires_at: datetime
    claim_token_hash: str | None = None
    escrow_tx_hash: str | None = None
    memo: str | None = None
    claimed_at: datetime | None = None
    created_at: str = ""
    updated_at: str = ""

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class NewTransfer:
    """Field set for inserting a PREPARED transfer."""

    transfer_id: str
    sender_wallet: str
    recipient_type: RecipientType
    recipient_contact_encrypted: str
    recipient_contact_hash: str
    recipient_hint_hash: str
    principal_usdc: int
    sponsor_fee_usdc: int
    funding_source: FundingSource
    region: str
    chain_id: int
    expires_at: datetime
    memo: str | None = None
    total_locked_usdc: int = field(init=False)

    def __post_init__(self) -> None:
        if self.principal_usdc <= 0:
            raise ValueError("principal_usdc must be positive")
        if self.sponsor_fee_usdc < 0:
            raise ValueError("sponsor_fee_usdc must not be negative")
        self.total_locked_usdc = self.principal_usdc + self.sponsor_fee_usdc


@dataclass
class ClaimSession:
    """One OTP challenge against a transfer."""

    id: int
    transfer_row_id: int
    otp_hash: str
    otp_expires_at: datetime
    otp_attempts: int
    max_attempts: int
    resend_count: int
    last_otp_sent_at: datetime
    status: ClaimSessionStatus
    session_token_hash: str | None = None
    verified_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.otp_attempts)


@dataclass
class SessionContext:
    """A claim session together with its parent transfer."""

    session: ClaimSession
    transfer: Transfer


@dataclass
class PayoutAttempt:
    """One invocation of a payout rail."""

    id: int
    transfer_row_id: int
    claim_session_id: int
    method: PayoutMethod
    provider: str
    provider_reference: str
    status: PayoutStatus
    failure_code: str | None = None
    failure_reason: str | None = None
    wallet_tx_hash: str | None = None
    destination_wallet: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class NotificationRecord:
    """Audit entry for an outbound claim-link or OTP message."""

    id: int
    transfer_row_id: int
    kind: str  # "claim_link" | "otp"
    channel: str  # "email" | "sms"
    provider: str
    destination_hash: str
    message_id: str
    status: str = "SENT"
    created_at: str = ""


@dataclass
class PreparedTransfer:
    """Result of TransferOrchestrator.prepare()."""

    transfer: Transfer
    recipient_masked: str
    daily_cap_usdc: int
    daily_used_usdc: int


@dataclass
class LockConfirmation:
    """Result of TransferOrchestrator.confirm_lock()."""

    transfer: Transfer
    claim_url: str
    notification_warning: str | None = None


@dataclass
class ClaimStarted:
    """Result of ClaimOrchestrator.start_claim(). Never carries the OTP."""

    claim_session_id: int
    otp_expires_at: datetime
    max_attempts: int
    resend_cooldown_seconds: int
    recipient_masked: str
    transfer: Transfer


@dataclass
class OtpVerified:
    """Result of ClaimOrchestrator.verify_otp()."""

    claim_session_token: str
    transfer: Transfer
    payout_methods: list[PayoutMethod]


@dataclass
class OtpResent:
    """Result of ClaimOrchestrator.resend_otp()."""

    resend_count: int
    otp_expires_at: datetime
    resend_cooldown_seconds: int


@dataclass
class PayoutOutcome:
    """What the payout caller sees after a rail was invoked."""

    success: bool
    status: str  # SUCCESS, PROCESSING, ACTION_REQUIRED, DEBIT_FALLBACK_REQUIRED, ...
    method: PayoutMethod
    provider: str
    provider_reference: str | None = None
    attempt_id: int | None = None
    treasury_tx_hash: str | None = None
    wallet_tx_hash: str | None = None
    eta: str | None = None
    fallback_method: PayoutMethod | None = None
    reason: str | None = None
    onboarding_url: str | None = None
    customer_id: str | None = None
    external_account_id: str | None = None
    duplicate: bool = False


@dataclass
class WebhookOutcome:
    """Result of reconciling one provider callback."""

    attempt_id: int
    status: PayoutStatus
    applied: bool  # False when the callback was a replay against a settled attempt
    transfer_status: TransferStatus | None = None
    second_leg: bool = False
