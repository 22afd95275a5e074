"""Payout dispatcher - turns a verified claim session into a rail payout."""

from __future__ import annotations

import logging
import uuid

from claimsend.clock import Clock, utcnow
from claimsend.errors import (
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    UpstreamError,
    ValidationError,
)
from claimsend.interfaces.collaborators import ContactCipher, SettlementAdapter
from claimsend.interfaces.store import LedgerStore
from claimsend.models.config import ServiceConfig
from claimsend.models.records import ClaimSession, PayoutAttempt, PayoutOutcome, Transfer
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
    ClaimSessionStatus,
    PayoutMethod,
    PayoutStatus,
)
from claimsend.orchestrators.claims import ClaimOrchestrator
from claimsend.orchestrators.transfers import decrypt_contact
from claimsend.recipient import is_evm_address, normalize_address

log = logging.getLogger(__name__)


def new_provider_reference(method: PayoutMethod, transfer_row_id: int) -> str:
    """Reference fixed before the provider is called, so retries can be matched."""
    return f"{method.value.lower()}_{transfer_row_id}_{uuid.uuid4().hex}"


def coerce_wallet_result(result: SettlementResult) -> SettlementResult:
    """Wallet payouts have no fallback or onboarding path; treat those as failures."""
    if isinstance(result, (PayoutFallbackRequired, PayoutActionRequired)):
        return PayoutFailed(
            provider=result.provider,
            failure_code=result.failure_code,
            failure_reason=result.failure_reason,
        )
    return result


async def finalize_payout(
    store: LedgerStore,
    attempt: PayoutAttempt,
    clock: Clock,
    **attempt_fields,
) -> bool:
    """Settle an attempt: attempt SUCCESS, transfer CLAIMED_<METHOD>, session COMPLETED.

    Returns whether the attempt itself was moved to SUCCESS by this call.
    """
    now = clock()
    settled = await store.update_payout_attempt_if_status(
        attempt.id, PayoutStatus.PROCESSING, status=PayoutStatus.SUCCESS, **attempt_fields,
    )
    if not settled:
        log.warning("Payout attempt %d was already resolved", attempt.id)
        return False
    if not await store.update_transfer_if_status(
        attempt.transfer_row_id,
        CLAIMABLE_STATUSES,
        status=attempt.method.claimed_status,
        claimed_at=now,
    ):
        log.error(
            "Transfer %d was not claimable when payout attempt %d settled",
            attempt.transfer_row_id, attempt.id,
        )
    await complete_session(store, attempt.claim_session_id, clock)
    log.info(
        "Transfer %d claimed via %s (attempt %d)",
        attempt.transfer_row_id, attempt.method.value, attempt.id,
    )
    return True


async def complete_session(store: LedgerStore, session_id: int, clock: Clock) -> None:
    await store.update_claim_session_if_status(
        session_id,
        (ClaimSessionStatus.OTP_SENT, ClaimSessionStatus.OTP_VERIFIED),
        status=ClaimSessionStatus.COMPLETED,
        completed_at=clock(),
    )


class PayoutDispatcher:
    """Runs one payout per verified claim session.

    The attempt row and its provider reference exist before the adapter is
    called. An adapter that raises leaves the attempt PROCESSING, since the
    provider may still have acted on the request.
    """

    def __init__(
        self,
        store: LedgerStore,
        cfg: ServiceConfig,
        claims: ClaimOrchestrator,
        cipher: ContactCipher,
        adapters: dict[PayoutMethod, SettlementAdapter],
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cfg = cfg
        self._claims = claims
        self._cipher = cipher
        self._adapters = adapters
        self._clock = clock

    async def payout(
        self,
        session_token: str,
        method: PayoutMethod | str,
        recipient_wallet: str | None = None,
        external_account_id: str | None = None,
        customer_id: str | None = None,
    ) -> PayoutOutcome:
        method = PayoutMethod(method.upper()) if isinstance(method, str) else method
        ctx = await self._claims.resolve_verified_session(session_token)
        session, transfer = ctx.session, ctx.transfer

        if method not in self._cfg.payout_methods_for(transfer.region):
            raise ForbiddenError(
                f"{method.value.title()} payout is not enabled in {transfer.region}",
                fallback_method=PayoutMethod.BANK.value if method is PayoutMethod.DEBIT else None,
            )

        wallet = None
        if method is PayoutMethod.WALLET:
            if not is_evm_address(recipient_wallet):
                raise ValidationError("recipientWallet must be a valid EVM address")
            wallet = normalize_address(recipient_wallet)

        adapter = self._adapters.get(method)
        if adapter is None:
            raise ConfigurationError(f"No settlement adapter configured for {method.value}")

        attempt, created = await self._store.create_payout_attempt_unless_active(
            transfer.id,
            session.id,
            method,
            adapter.provider,
            new_provider_reference(method, transfer.id),
            destination_wallet=wallet,
        )
        if not created:
            if attempt.method is method:
                log.info("Duplicate %s payout for transfer %d short-circuited", method.value, transfer.id)
                return self._outcome_for_existing(attempt)
            raise ConflictError(
                f"A {attempt.method.value} payout is already in progress for this transfer",
                method=attempt.method.value,
            )

        context = RecipientContext(
            recipient_type=transfer.recipient_type,
            contact=decrypt_contact(self._cipher, transfer),
            provider_reference=attempt.provider_reference,
            wallet_address=wallet,
            external_account_id=external_account_id,
            customer_id=customer_id,
        )

        try:
            result = await adapter.execute(transfer, context)
        except Exception:
            log.exception(
                "%s payout for transfer %d raised; attempt %d left PROCESSING",
                method.value, transfer.id, attempt.id,
            )
            raise UpstreamError(
                "Payout outcome is unknown; it will be reconciled",
                code="PAYOUT_OUTCOME_UNKNOWN",
                attempt_id=attempt.id,
            )

        if method is PayoutMethod.WALLET:
            result = coerce_wallet_result(result)
        return await self._apply(attempt, session, transfer, result)

    async def _apply(
        self,
        attempt: PayoutAttempt,
        session: ClaimSession,
        transfer: Transfer,
        result: SettlementResult,
    ) -> PayoutOutcome:
        method = attempt.method
        base = dict(method=method, provider=attempt.provider, attempt_id=attempt.id)

        if isinstance(result, PayoutActionRequired):
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                status=PayoutStatus.FAILED,
                failure_code=result.failure_code,
                failure_reason=result.failure_reason,
            )
            log.info("Transfer %d payout needs recipient onboarding", transfer.id)
            return PayoutOutcome(
                success=False,
                status="ACTION_REQUIRED",
                provider_reference=attempt.provider_reference,
                reason=result.failure_reason,
                onboarding_url=result.onboarding_url,
                customer_id=result.customer_id,
                external_account_id=result.external_account_id,
                **base,
            )

        if isinstance(result, PayoutFallbackRequired):
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                status=PayoutStatus.FALLBACK_REQUIRED,
                failure_code=result.failure_code,
                failure_reason=result.failure_reason,
            )
            log.info(
                "Transfer %d %s payout requires fallback to %s: %s",
                transfer.id, method.value, result.fallback_method.value, result.failure_code,
            )
            return PayoutOutcome(
                success=False,
                status=f"{method.value}_FALLBACK_REQUIRED",
                fallback_method=result.fallback_method,
                reason=result.failure_reason,
                **base,
            )

        if isinstance(result, PayoutFailed):
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                status=PayoutStatus.FAILED,
                failure_code=result.failure_code,
                failure_reason=result.failure_reason,
            )
            log.warning(
                "Transfer %d %s payout failed: %s (%s)",
                transfer.id, method.value, result.failure_code, result.failure_reason,
            )
            raise UpstreamError(
                result.failure_reason or f"{method.value.title()} payout provider rejected request",
                code=result.failure_code,
                attempt_id=attempt.id,
            )

        if isinstance(result, PayoutProcessing):
            reference = result.provider_reference or attempt.provider_reference
            await self._store.update_payout_attempt_if_status(
                attempt.id, PayoutStatus.PROCESSING,
                provider_reference=reference,
                wallet_tx_hash=result.treasury_tx_hash,
            )
            await complete_session(self._store, session.id, self._clock)
            log.info("Transfer %d %s payout processing (%s)", transfer.id, method.value, reference)
            return PayoutOutcome(
                success=True,
                status=PayoutStatus.PROCESSING.value,
                provider_reference=reference,
                treasury_tx_hash=result.treasury_tx_hash,
                eta=result.eta,
                **base,
            )

        if isinstance(result, PayoutSuccess):
            reference = result.provider_reference or attempt.provider_reference
            await finalize_payout(
                self._store, attempt, self._clock,
                provider_reference=reference,
                wallet_tx_hash=result.wallet_tx_hash or result.treasury_tx_hash,
            )
            return PayoutOutcome(
                success=True,
                status=PayoutStatus.SUCCESS.value,
                provider_reference=reference,
                treasury_tx_hash=result.treasury_tx_hash,
                wallet_tx_hash=result.wallet_tx_hash,
                eta=result.eta,
                **base,
            )

        raise TypeError(f"Unhandled settlement result: {type(result).__name__}")

    @staticmethod
    def _outcome_for_existing(attempt: PayoutAttempt) -> PayoutOutcome:
        return PayoutOutcome(
            success=True,
            status=attempt.status.value,
            method=attempt.method,
            provider=attempt.provider,
            provider_reference=attempt.provider_reference,
            attempt_id=attempt.id,
            wallet_tx_hash=attempt.wallet_tx_hash,
            duplicate=True,
        )
