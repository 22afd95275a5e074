"""Relayer-backed settlement adapters for the DEBIT, BANK and WALLET rails."""

from __future__ import annotations

import logging

from claimsend.adapters.relayer import ManagedRelayer, RelayerError
from claimsend.models.records import Transfer
from claimsend.models.results import (
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutSuccess,
    RecipientContext,
    SettlementResult,
)
from claimsend.models.status import PayoutMethod

log = logging.getLogger(__name__)

BANK_ETA = "1-3 business days"


class RelayerSettlementAdapter:
    """Claims escrowed funds through the relayer and reports the rail result.

    DEBIT and BANK move funds to the payout treasury (the fiat leg is the
    provider's concern); WALLET releases them straight to the recipient.

    With ``release_escrow=False`` the adapter runs as the second leg of a
    bridged payout: funds have already left escrow, so only the rail
    eligibility rules apply.
    """

    def __init__(
        self,
        method: PayoutMethod,
        provider: str,
        relayer: ManagedRelayer | None,
        debit_max_usdc_micros: int = 2_500_000_000,
        force_debit_fallback: bool = False,
        bank_eta: str = BANK_ETA,
        release_escrow: bool = True,
    ) -> None:
        if release_escrow and relayer is None:
            raise ValueError("a relayer is required to release escrow")
        if not release_escrow and method is PayoutMethod.WALLET:
            raise ValueError("wallet payouts always release escrow")
        self._method = method
        self._provider = provider
        self._relayer = relayer
        self._debit_max = debit_max_usdc_micros
        self._force_debit_fallback = force_debit_fallback
        self._bank_eta = bank_eta
        self._release_escrow = release_escrow

    @property
    def method(self) -> PayoutMethod:
        return self._method

    @property
    def provider(self) -> str:
        return self._provider

    async def execute(self, transfer: Transfer, context: RecipientContext) -> SettlementResult:
        if self._method is PayoutMethod.DEBIT:
            if self._force_debit_fallback or transfer.principal_usdc > self._debit_max:
                return PayoutFallbackRequired(
                    provider=self._provider,
                    failure_code="DEBIT_INELIGIBLE",
                    failure_reason="Card payout ineligible for this recipient or amount",
                    fallback_method=PayoutMethod.BANK,
                )

        if not self._release_escrow:
            return PayoutSuccess(
                provider=self._provider,
                provider_reference=context.provider_reference,
                eta=self._bank_eta if self._method is PayoutMethod.BANK else None,
            )

        if self._method is PayoutMethod.WALLET and not context.wallet_address:
            return PayoutFailed(
                provider=self._provider,
                failure_code="WALLET_PAYOUT_ERROR",
                failure_reason="recipient wallet is required",
            )

        # RelayerOutcomeUnknown propagates: the dispatcher keeps the attempt PROCESSING.
        try:
            if self._method is PayoutMethod.WALLET:
                tx_hash = await self._relayer.claim_to_wallet(
                    transfer.transfer_id, context.wallet_address, transfer.chain_id,
                )
                return PayoutSuccess(
                    provider=self._provider,
                    provider_reference=context.provider_reference,
                    wallet_tx_hash=tx_hash,
                )

            tx_hash = await self._relayer.claim_to_payout_treasury(
                transfer.transfer_id, transfer.chain_id,
            )
        except RelayerError as e:
            log.warning(
                "%s payout for transfer %d refused: %s", self._method.value, transfer.id, e
            )
            return PayoutFailed(
                provider=self._provider,
                failure_code=f"{self._method.value}_PAYOUT_ERROR",
                failure_reason=str(e) or f"{self._method.value.title()} payout execution failed",
            )

        return PayoutSuccess(
            provider=self._provider,
            provider_reference=context.provider_reference,
            treasury_tx_hash=tx_hash,
            eta=self._bank_eta if self._method is PayoutMethod.BANK else None,
        )
