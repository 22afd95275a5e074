"""JSON views of ledger records. Money always leaves as a decimal string."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from claimsend.models.records import (
    ClaimStarted,
    LockConfirmation,
    OtpResent,
    OtpVerified,
    PayoutOutcome,
    PreparedTransfer,
    Transfer,
    WebhookOutcome,
)
from claimsend.models.status import PayoutMethod
from claimsend.money import format_usdc_micros


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _methods(methods: list[PayoutMethod]) -> list[str]:
    return [m.value for m in methods]


def transfer_view(transfer: Transfer, payout_methods: list[PayoutMethod]) -> dict[str, Any]:
    return {
        "id": transfer.id,
        "transferId": transfer.transfer_id,
        "principalUsdc": format_usdc_micros(transfer.principal_usdc),
        "sponsorFeeUsdc": format_usdc_micros(transfer.sponsor_fee_usdc),
        "totalLockedUsdc": format_usdc_micros(transfer.total_locked_usdc),
        "expiresAt": _iso(transfer.expires_at),
        "status": transfer.status.value,
        "region": transfer.region,
        "chainId": transfer.chain_id,
        "fundingSource": transfer.funding_source.value,
        "memo": transfer.memo,
        "escrowTxHash": transfer.escrow_tx_hash,
        "claimedAt": _iso(transfer.claimed_at),
        "createdAt": transfer.created_at,
        "payoutMethods": _methods(payout_methods),
    }


def prepared_view(result: PreparedTransfer, payout_methods: list[PayoutMethod]) -> dict[str, Any]:
    return {
        "transfer": transfer_view(result.transfer, payout_methods),
        "recipientHintHash": result.transfer.recipient_hint_hash,
        "recipientMasked": result.recipient_masked,
        "limits": {
            "dailyCapUsdc": format_usdc_micros(result.daily_cap_usdc),
            "dailyUsedUsdc": format_usdc_micros(result.daily_used_usdc),
        },
    }


def lock_confirmation_view(
    result: LockConfirmation, payout_methods: list[PayoutMethod]
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "transfer": transfer_view(result.transfer, payout_methods),
        "claimUrl": result.claim_url,
    }
    if result.notification_warning:
        body["notificationWarning"] = result.notification_warning
    return body


def claim_started_view(result: ClaimStarted, payout_methods: list[PayoutMethod]) -> dict[str, Any]:
    # The OTP itself never appears here, bypass mode included.
    return {
        "claimSessionId": result.claim_session_id,
        "otpExpiresAt": _iso(result.otp_expires_at),
        "maxAttempts": result.max_attempts,
        "resendCooldownSeconds": result.resend_cooldown_seconds,
        "recipientMasked": result.recipient_masked,
        "transfer": transfer_view(result.transfer, payout_methods),
    }


def otp_verified_view(result: OtpVerified) -> dict[str, Any]:
    return {
        "claimSessionToken": result.claim_session_token,
        "payoutMethods": _methods(result.payout_methods),
        "transfer": transfer_view(result.transfer, result.payout_methods),
    }


def otp_resent_view(result: OtpResent) -> dict[str, Any]:
    return {
        "resendCount": result.resend_count,
        "otpExpiresAt": _iso(result.otp_expires_at),
        "resendCooldownSeconds": result.resend_cooldown_seconds,
    }


def payout_view(outcome: PayoutOutcome) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": outcome.success,
        "status": outcome.status,
        "method": outcome.method.value,
        "provider": outcome.provider,
        "providerReference": outcome.provider_reference,
        "attemptId": outcome.attempt_id,
        "treasuryTxHash": outcome.treasury_tx_hash,
        "walletTxHash": outcome.wallet_tx_hash,
        "eta": outcome.eta,
        "fallbackMethod": outcome.fallback_method.value if outcome.fallback_method else None,
        "reason": outcome.reason,
        "onboardingUrl": outcome.onboarding_url,
        "customerId": outcome.customer_id,
        "externalAccountId": outcome.external_account_id,
    }
    if outcome.duplicate:
        body["duplicate"] = True
    return {k: v for k, v in body.items() if v is not None}


def webhook_view(outcome: WebhookOutcome) -> dict[str, Any]:
    return {
        "ok": True,
        "attemptId": outcome.attempt_id,
        "status": outcome.status.value,
        "applied": outcome.applied,
        "transferStatus": outcome.transfer_status.value if outcome.transfer_status else None,
        "secondLeg": outcome.second_leg,
    }
