"""Webhook reconciler - applies asynchronous provider callbacks to payout attempts.

Attempts are only ever looked up by (provider, provider_reference). A
callback against an attempt that is no longer PROCESSING is acknowledged
without touching anything, so provider retries are harmless.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from claimsend.clock import Clock, utcnow
from claimsend.crypto.webhooks import BridgeSignatureVerifier, verify_shared_secret
from claimsend.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from claimsend.interfaces.collaborators import ContactCipher, SettlementAdapter
from claimsend.interfaces.store import LedgerStore
from claimsend.models.records import PayoutAttempt, WebhookOutcome
from claimsend.models.results import (
    PayoutActionRequired,
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutProcessing,
    PayoutSuccess,
    RecipientContext,
    SettlementResult,
)
from claimsend.models.status import (
    CLAIMABLE_STATUSES,
    PayoutMethod,
    PayoutStatus,
    TransferStatus,
    map_provider_state,
)
from claimsend.orchestrators.payouts import (
    complete_session,
    finalize_payout,
    new_provider_reference,
)
from claimsend.orchestrators.transfers import decrypt_contact

log = logging.getLogger(__name__)

__all__ = ["WebhookAuthenticator", "WebhookReconciler", "map_provider_state"]


class WebhookAuthenticator:
    """Authenticates inbound callbacks; raises instead of returning a verdict."""

    def __init__(
        self,
        secrets: list[str],
        bridge_verifier: BridgeSignatureVerifier | None = None,
    ) -> None:
        self._secrets = [s for s in secrets if s]
        self._bridge = bridge_verifier

    def authenticate_payout(self, secret_header: str | None) -> None:
        if not self._secrets:
            raise ConfigurationError("Payout webhook authentication is not configured")
        check = verify_shared_secret(secret_header, self._secrets)
        if not check.valid:
            raise AuthenticationError(check.reason or "Invalid webhook credentials")

    def authenticate_bridge(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret_header: str | None,
    ) -> None:
        if self._bridge is not None and self._bridge.configured:
            check = self._bridge.verify(raw_body, signature_header)
            if not check.valid:
                raise AuthenticationError(check.reason or "Invalid webhook signature")
            return
        self.authenticate_payout(secret_header)


class WebhookReconciler:
    def __init__(
        self,
        store: LedgerStore,
        cipher: ContactCipher,
        second_legs: dict[PayoutMethod, SettlementAdapter] | None = None,
        bridge_provider: str = "bridge",
        first_leg_final: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._second_legs = second_legs or {}
        self._bridge_provider = bridge_provider
        self._first_leg_final = first_leg_final
        self._clock = clock

    # ── Entry points ──────────────────────────────────────

    async def handle_payout_webhook(self, payload: Mapping[str, Any]) -> WebhookOutcome:
        provider = payload.get("provider")
        reference = payload.get("providerReference")
        status = payload.get("status")
        if not all(isinstance(v, str) and v.strip() for v in (provider, reference, status)):
            raise ValidationError("provider, providerReference and status are required")

        wallet_tx = payload.get("walletTxHash") or payload.get("txHash")
        return await self.reconcile(
            provider.strip(),
            reference.strip(),
            map_provider_state(status),
            wallet_tx_hash=wallet_tx if isinstance(wallet_tx, str) else None,
            failure_code=_opt_str(payload.get("failureCode")),
            failure_reason=_opt_str(payload.get("failureReason")),
        )

    async def handle_bridge_webhook(self, payload: Mapping[str, Any]) -> WebhookOutcome:
        event = payload.get("event_object")
        if not isinstance(event, Mapping):
            event = payload

        reference = _opt_str(event.get("id")) or _opt_str(event.get("client_reference_id"))
        if not reference:
            raise ValidationError("Bridge event has no transfer reference")
        state = event.get("state") or event.get("status")

        outcome = await self._reconcile_bridge_reference(event, reference, state)
        if outcome is not None:
            return outcome
        # Transfers we never saw a provider id for are keyed by our own reference.
        fallback = _opt_str(event.get("client_reference_id"))
        if fallback and fallback != reference:
            outcome = await self._reconcile_bridge_reference(event, fallback, state)
            if outcome is not None:
                return outcome
        log.warning("Bridge webhook for unknown reference %s", reference)
        raise NotFoundError("Unknown payout reference", provider_reference=reference)

    async def _reconcile_bridge_reference(
        self, event: Mapping[str, Any], reference: str, state: Any
    ) -> WebhookOutcome | None:
        attempt = await self._store.get_payout_attempt_by_reference(self._bridge_provider, reference)
        if attempt is None:
            return None
        return await self._apply(
            attempt,
            map_provider_state(state),
            failure_code=_opt_str(event.get("failure_code")) or "BRIDGE_TRANSFER_FAILED",
            failure_reason=_opt_str(event.get("failure_reason")) or f"Bridge reported state {state}",
        )

    # ── Reconciliation ────────────────────────────────────

    async def reconcile(
        self,
        provider: str,
        reference: str,
        status: PayoutStatus,
        wallet_tx_hash: str | None = None,
        failure_code: str | None = None,
        failure_reason: str | None = None,
    ) -> WebhookOutcome:
        attempt = await self._store.get_payout_attempt_by_reference(provider, reference)
        if attempt is None:
            log.warning("Webhook for unknown payout %s/%s", provider, reference)
            raise NotFoundError("Unknown payout reference", provider_reference=reference)
        return await self._apply(
            attempt, status,
            wallet_tx_hash=wallet_tx_hash,
            failure_code=failure_code,
            failure_reason=failure_reason,
        )

    async def _apply(
        self,
        attempt: PayoutAttempt,
        status: PayoutStatus,
        wallet_tx_hash: str | None = None,
        failure_code: str | None = None,
        failure_reason: str | None = None,
    ) -> WebhookOutcome:
        if attempt.status is not PayoutStatus.PROCESSING:
            log.info(
                "Webhook %s for %s/%s ignored: attempt %d already %s",
                status.value, attempt.provider, attempt.provider_reference,
                attempt.id, attempt.status.value,
            )
            return WebhookOutcome(attempt_id=attempt.id, status=attempt.status, applied=False)

        log.info(
            "Webhook %s for %s/%s (attempt %d)",
            status.value, attempt.provider, attempt.provider_reference, attempt.id,
        )

        if status is PayoutStatus.PROCESSING:
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING, wallet_tx_hash=wallet_tx_hash,
            )
            return WebhookOutcome(attempt_id=attempt.id, status=PayoutStatus.PROCESSING, applied=True)

        if status is PayoutStatus.FAILED:
            return await self._fail(
                attempt,
                failure_code or "PROVIDER_FAILED",
                failure_reason or "Provider reported the payout failed",
            )

        if status is PayoutStatus.FALLBACK_REQUIRED:
            applied = await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                status=PayoutStatus.FALLBACK_REQUIRED,
                failure_code=failure_code or "FALLBACK_REQUIRED",
                failure_reason=failure_reason,
            )
            return WebhookOutcome(
                attempt_id=attempt.id, status=PayoutStatus.FALLBACK_REQUIRED, applied=applied,
            )

        if status is PayoutStatus.SUCCESS:
            # Only a settled Bridge leg hands off to a second leg; every
            # other provider's success is final.
            if (
                attempt.method is PayoutMethod.WALLET
                or self._first_leg_final
                or attempt.provider != self._bridge_provider
            ):
                return await self._finalize(attempt, wallet_tx_hash=wallet_tx_hash)
            return await self._second_leg(attempt)

        raise TypeError(f"Unhandled payout status: {status!r}")

    async def _finalize(
        self, attempt: PayoutAttempt, second_leg: bool = False, **fields
    ) -> WebhookOutcome:
        applied = await finalize_payout(self._store, attempt, self._clock, **fields)
        return WebhookOutcome(
            attempt_id=attempt.id,
            status=PayoutStatus.SUCCESS,
            applied=applied,
            transfer_status=attempt.method.claimed_status if applied else None,
            second_leg=second_leg,
        )

    async def _fail(
        self, attempt: PayoutAttempt, failure_code: str, failure_reason: str
    ) -> WebhookOutcome:
        applied = await self._store.update_payout_attempt_if_status(
            attempt.id, PayoutStatus.PROCESSING,
            status=PayoutStatus.FAILED,
            failure_code=failure_code,
            failure_reason=failure_reason,
        )
        if not applied:
            return WebhookOutcome(attempt_id=attempt.id, status=PayoutStatus.FAILED, applied=False)

        await self._store.update_transfer_if_status(
            attempt.transfer_row_id, CLAIMABLE_STATUSES, status=TransferStatus.FAILED,
        )
        await complete_session(self._store, attempt.claim_session_id, self._clock)
        log.warning(
            "Payout %s/%s failed for transfer %d: %s",
            attempt.provider, attempt.provider_reference, attempt.transfer_row_id, failure_code,
        )
        return WebhookOutcome(
            attempt_id=attempt.id,
            status=PayoutStatus.FAILED,
            applied=True,
            transfer_status=TransferStatus.FAILED,
        )

    # ── Second leg ────────────────────────────────────────

    async def _second_leg(self, attempt: PayoutAttempt) -> WebhookOutcome:
        adapter = self._second_legs.get(attempt.method)
        if adapter is None:
            # No downstream rail configured: the first leg settles the payout.
            return await self._finalize(attempt)

        transfer = await self._store.get_transfer(attempt.transfer_row_id)
        if transfer is None:
            raise NotFoundError("Transfer for payout attempt not found")

        context = RecipientContext(
            recipient_type=transfer.recipient_type,
            contact=decrypt_contact(self._cipher, transfer),
            provider_reference=new_provider_reference(attempt.method, transfer.id),
            wallet_address=attempt.destination_wallet,
        )
        log.info(
            "First leg %s/%s settled; dispatching %s second leg via %s",
            attempt.provider, attempt.provider_reference, attempt.method.value, adapter.provider,
        )
        try:
            result = await adapter.execute(transfer, context)
        except Exception:
            log.exception(
                "Second leg for attempt %d raised; attempt left PROCESSING", attempt.id
            )
            return WebhookOutcome(
                attempt_id=attempt.id, status=PayoutStatus.PROCESSING,
                applied=False, second_leg=True,
            )
        return await self._apply_second_leg(attempt, adapter, context, result)

    async def _apply_second_leg(
        self,
        attempt: PayoutAttempt,
        adapter: SettlementAdapter,
        context: RecipientContext,
        result: SettlementResult,
    ) -> WebhookOutcome:
        if isinstance(result, PayoutSuccess):
            return await self._finalize(
                attempt,
                second_leg=True,
                wallet_tx_hash=result.wallet_tx_hash or result.treasury_tx_hash,
            )

        if isinstance(result, PayoutProcessing):
            # Re-key the attempt so the second provider's webhook finds it.
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                provider=adapter.provider,
                provider_reference=result.provider_reference or context.provider_reference,
                wallet_tx_hash=result.treasury_tx_hash,
            )
            return WebhookOutcome(
                attempt_id=attempt.id, status=PayoutStatus.PROCESSING,
                applied=True, second_leg=True,
            )

        if isinstance(result, PayoutFailed):
            outcome = await self._fail(attempt, result.failure_code, result.failure_reason)
            outcome.second_leg = True
            return outcome

        if isinstance(result, (PayoutFallbackRequired, PayoutActionRequired)):
            new_status = (
                PayoutStatus.FALLBACK_REQUIRED
                if isinstance(result, PayoutFallbackRequired)
                else PayoutStatus.FAILED
            )
            applied = await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                status=new_status,
                failure_code=result.failure_code,
                failure_reason=result.failure_reason,
            )
            log.warning(
                "Second leg for transfer %d needs operator follow-up: %s (%s)",
                attempt.transfer_row_id, result.failure_code, result.failure_reason,
            )
            return WebhookOutcome(
                attempt_id=attempt.id, status=new_status, applied=applied, second_leg=True,
            )

        raise TypeError(f"Unhandled settlement result: {type(result).__name__}")


def _opt_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
