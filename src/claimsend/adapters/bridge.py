"""Bridge-style off-ramp adapter.

First leg of a bridged payout: release escrow to the payout treasury, then
ask the provider to convert and deliver. The provider's answer usually
arrives later by webhook, keyed by the reference we assign up front.
"""

from __future__ import annotations

import logging

import httpx

from claimsend.adapters.relayer import ManagedRelayer, RelayerError
from claimsend.models.config import BridgeConfig
from claimsend.models.records import Transfer
from claimsend.models.results import (
    PayoutActionRequired,
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutProcessing,
    PayoutSuccess,
    RecipientContext,
    SettlementResult,
)
from claimsend.models.status import PayoutMethod, PayoutStatus, map_provider_state
from claimsend.money import format_usdc_micros

log = logging.getLogger(__name__)

# Provider answers that do not say whether the transfer was created.
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def _error_message(body: object, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return fallback


def _reference_from(body: dict) -> str | None:
    for key in ("providerReference", "reference", "id", "transfer_id"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class BridgeSettlementAdapter:
    """SettlementAdapter for DEBIT and BANK backed by a Bridge transfer."""

    def __init__(
        self,
        method: PayoutMethod,
        cfg: BridgeConfig,
        relayer: ManagedRelayer,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if method is PayoutMethod.WALLET:
            raise ValueError("Bridge only settles DEBIT and BANK payouts")
        self._method = method
        self._cfg = cfg
        self._relayer = relayer
        self._transport = transport
        self._regions = {r.upper() for r in cfg.enabled_regions}

    @property
    def method(self) -> PayoutMethod:
        return self._method

    @property
    def provider(self) -> str:
        return self._cfg.provider_name

    def _url(self, path: str) -> str:
        return f"{self._cfg.api_base_url.rstrip('/')}{path}"

    async def execute(self, transfer: Transfer, context: RecipientContext) -> SettlementResult:
        provider = self._cfg.provider_name

        if transfer.region.upper() not in self._regions:
            return PayoutFailed(
                provider=provider,
                failure_code="BRIDGE_REGION_UNSUPPORTED",
                failure_reason=f"Bridge payout is not enabled in {transfer.region}",
            )

        if self._cfg.onboarding_required and not context.external_account_id:
            if self._method is PayoutMethod.DEBIT:
                return PayoutFallbackRequired(
                    provider=provider,
                    failure_code="BRIDGE_ONBOARDING_REQUIRED",
                    failure_reason="Card payout requires a linked account; use bank payout",
                    fallback_method=PayoutMethod.BANK,
                )
            return PayoutActionRequired(
                provider=provider,
                onboarding_url=self._cfg.onboarding_url,
                customer_id=context.customer_id,
            )

        if not self._cfg.api_key:
            return PayoutFailed(
                provider=provider,
                failure_code="BRIDGE_API_KEY_MISSING",
                failure_reason="Bridge API key is not configured",
            )

        try:
            treasury_tx = await self._relayer.claim_to_payout_treasury(
                transfer.transfer_id, transfer.chain_id,
            )
        except RelayerError as e:
            log.warning("Treasury claim for transfer %d refused: %s", transfer.id, e)
            return PayoutFailed(
                provider=provider,
                failure_code=f"{self._method.value}_PAYOUT_ERROR",
                failure_reason=str(e) or "Treasury claim failed",
            )

        destination = dict(self._cfg.destination)
        if context.external_account_id:
            destination["external_account_id"] = context.external_account_id

        body: dict = {
            "amount": format_usdc_micros(transfer.principal_usdc),
            "source": dict(self._cfg.source),
            "destination": destination,
            "client_reference_id": context.provider_reference,
            "metadata": {
                "send_transfer_row_id": transfer.id,
                "send_transfer_id": transfer.transfer_id,
                "send_method": self._method.value,
                "send_chain_id": transfer.chain_id,
                "send_treasury_tx_hash": treasury_tx,
            },
        }
        on_behalf_of = context.customer_id or self._cfg.on_behalf_of
        if on_behalf_of:
            body["on_behalf_of"] = on_behalf_of

        headers = {
            self._cfg.api_key_header: self._cfg.api_key,
            "Idempotency-Key": context.provider_reference,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._cfg.timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._url("/transfers"), json=body, headers=headers)
        except httpx.TransportError as e:
            # Outcome unknown: the transfer may exist on the provider's side.
            log.warning(
                "Bridge dispatch for %s did not complete (%s); awaiting webhook",
                context.provider_reference, e,
            )
            return self._held(provider, context.provider_reference, treasury_tx)

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if not resp.is_success:
            reason = _error_message(payload, f"Bridge dispatch failed ({resp.status_code})")
            if resp.status_code in RETRYABLE_STATUSES:
                log.warning(
                    "Bridge dispatch for %s answered %d (%s); awaiting webhook",
                    context.provider_reference, resp.status_code, reason,
                )
            else:
                log.error(
                    "Bridge rejected %s with %d (%s) after treasury release %s; "
                    "attempt held PROCESSING for reconciliation",
                    context.provider_reference, resp.status_code, reason, treasury_tx,
                )
            return self._held(provider, context.provider_reference, treasury_tx)

        reference = _reference_from(payload) or context.provider_reference
        eta = payload.get("eta") if isinstance(payload.get("eta"), str) else self._cfg.default_eta
        status = map_provider_state(payload.get("state") or payload.get("status"))
        log.info(
            "Bridge transfer %s for transfer %d: %s", reference, transfer.id, status.value
        )

        if status is PayoutStatus.SUCCESS:
            return PayoutSuccess(
                provider=provider,
                provider_reference=reference,
                treasury_tx_hash=treasury_tx,
                eta=eta,
            )
        if status is PayoutStatus.PROCESSING:
            return PayoutProcessing(
                provider=provider,
                provider_reference=reference,
                treasury_tx_hash=treasury_tx,
                eta=eta,
            )
        # Funds already sit in the treasury; another rail would release escrow twice.
        log.error(
            "Bridge transfer %s reported %s (%s) after treasury release %s; "
            "attempt held PROCESSING for reconciliation",
            reference, status.value, payload.get("failureCode") or "no code", treasury_tx,
        )
        return self._held(provider, reference, treasury_tx)

    def _held(self, provider: str, reference: str, treasury_tx: str) -> PayoutProcessing:
        return PayoutProcessing(
            provider=provider,
            provider_reference=reference,
            treasury_tx_hash=treasury_tx,
            eta=self._cfg.default_eta,
        )
