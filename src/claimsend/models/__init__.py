"""Data models for claimsend."""

from claimsend.models.status import (
    CLAIMABLE_STATUSES,
    EXPIRABLE_STATUSES,
    ClaimSessionStatus,
    FundingSource,
    PayoutMethod,
    PayoutStatus,
    RecipientType,
    TransferStatus,
    map_provider_state,
)
from claimsend.models.records import (
    ClaimSession,
    ClaimStarted,
    LockConfirmation,
    NewTransfer,
    NotificationRecord,
    OtpResent,
    OtpVerified,
    PayoutAttempt,
    PayoutOutcome,
    PreparedTransfer,
    SessionContext,
    Transfer,
    WebhookOutcome,
)
from claimsend.models.results import (
    EscrowVerification,
    PayoutActionRequired,
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutProcessing,
    PayoutSuccess,
    RateLimitDecision,
    RecipientContext,
    SettlementResult,
    SignatureCheck,
)
from claimsend.models.config import (
    BridgeConfig,
    OtpConfig,
    RateLimitConfig,
    RateLimitRule,
    RelayerConfig,
    ServiceConfig,
)

__all__ = [
    "CLAIMABLE_STATUSES", "EXPIRABLE_STATUSES",
    "ClaimSessionStatus", "FundingSource", "PayoutMethod", "PayoutStatus",
    "RecipientType", "TransferStatus", "map_provider_state",
    "ClaimSession", "ClaimStarted", "LockConfirmation", "NewTransfer",
    "NotificationRecord", "OtpResent", "OtpVerified", "PayoutAttempt",
    "PayoutOutcome", "PreparedTransfer", "SessionContext", "Transfer",
    "WebhookOutcome",
    "EscrowVerification", "PayoutActionRequired", "PayoutFailed",
    "PayoutFallbackRequired", "PayoutProcessing", "PayoutSuccess",
    "RateLimitDecision", "RecipientContext", "SettlementResult", "SignatureCheck",
    "BridgeConfig", "OtpConfig", "RateLimitConfig", "RateLimitRule",
    "RelayerConfig", "ServiceConfig",
]
