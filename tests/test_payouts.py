"""Tests 37-47, 97-98: Payout dispatcher - rails, fallback, dedup, unknown outcomes."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from claimsend.adapters.bridge import BridgeSettlementAdapter
from claimsend.adapters.relayer import ManagedRelayer
from claimsend.adapters.settlement import RelayerSettlementAdapter

from claimsend.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    UpstreamError,
    ValidationError,
)
from claimsend.models.config import BridgeConfig, RelayerConfig
from claimsend.models.results import (
    PayoutActionRequired,
    PayoutFailed,
    PayoutFallbackRequired,
    PayoutProcessing,
)
from claimsend.models.status import (
    ClaimSessionStatus,
    PayoutMethod,
    PayoutStatus,
    TransferStatus,
)

from tests.conftest import START, verified_session
from tests.factories import RECIPIENT_WALLET, tx_hash


async def _attempts(service, transfer):
    return await service.store.list_payout_attempts(transfer.id)


# ── Test 37: Debit success claims the transfer ────────────────────


async def test_debit_success(service, mock_notifier, mock_adapters):
    transfer, session_id, token = await verified_session(service, mock_notifier)

    outcome = await service.payouts.payout(token, "debit")

    assert outcome.success
    assert outcome.status == "SUCCESS"
    assert outcome.method is PayoutMethod.DEBIT
    assert outcome.provider == "mock-debit"
    assert outcome.treasury_tx_hash == tx_hash(0x7EA5)

    [(row_id, context)] = mock_adapters[PayoutMethod.DEBIT].execute_calls
    assert row_id == transfer.id
    assert context.contact == "alice@example.com"
    assert context.provider_reference == outcome.provider_reference

    current = await service.store.get_transfer(transfer.id)
    assert current.status is TransferStatus.CLAIMED_DEBIT
    assert current.claimed_at == START
    session = await service.store.get_claim_session(session_id)
    assert session.status is ClaimSessionStatus.COMPLETED

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.SUCCESS
    assert attempt.wallet_tx_hash == tx_hash(0x7EA5)


# ── Test 38: Debit fallback, then bank ────────────────────────────


async def test_debit_fallback_then_bank(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.DEBIT].results = [
        PayoutFallbackRequired(
            provider="mock-debit",
            failure_code="DEBIT_LIMIT_EXCEEDED",
            failure_reason="Amount exceeds the instant payout limit",
        ),
    ]
    transfer, session_id, token = await verified_session(service, mock_notifier)

    fallback = await service.payouts.payout(token, PayoutMethod.DEBIT)
    assert not fallback.success
    assert fallback.status == "DEBIT_FALLBACK_REQUIRED"
    assert fallback.fallback_method is PayoutMethod.BANK
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIM_STARTED

    outcome = await service.payouts.payout(token, PayoutMethod.BANK)
    assert outcome.success
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIMED_BANK
    assert (await service.store.get_claim_session(session_id)).status is ClaimSessionStatus.COMPLETED

    statuses = [(a.method, a.status) for a in await _attempts(service, transfer)]
    assert statuses == [
        (PayoutMethod.DEBIT, PayoutStatus.FALLBACK_REQUIRED),
        (PayoutMethod.BANK, PayoutStatus.SUCCESS),
    ]

    # The session is spent
    with pytest.raises(ConflictError):
        await service.payouts.payout(token, PayoutMethod.BANK)


# ── Test 39: Concurrent payouts are deduplicated ──────────────────


async def test_payout_in_flight_dedup(service, mock_notifier, mock_adapters):
    debit = mock_adapters[PayoutMethod.DEBIT]
    debit.gate = asyncio.Event()
    transfer, _, token = await verified_session(service, mock_notifier)

    first = asyncio.create_task(service.payouts.payout(token, PayoutMethod.DEBIT))
    await debit.entered.wait()

    duplicate = await service.payouts.payout(token, PayoutMethod.DEBIT)
    assert duplicate.duplicate
    assert duplicate.status == "PROCESSING"

    with pytest.raises(ConflictError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.BANK)
    assert exc_info.value.details["method"] == "DEBIT"

    debit.gate.set()
    outcome = await first
    assert outcome.success and not outcome.duplicate
    assert outcome.attempt_id == duplicate.attempt_id
    assert len(debit.execute_calls) == 1
    assert mock_adapters[PayoutMethod.BANK].execute_calls == []
    assert len(await _attempts(service, transfer)) == 1


# ── Test 40: Wallet payout needs an address ───────────────────────


async def test_wallet_payout(service, mock_notifier, mock_adapters):
    transfer, _, token = await verified_session(service, mock_notifier)

    with pytest.raises(ValidationError):
        await service.payouts.payout(token, PayoutMethod.WALLET)
    with pytest.raises(ValidationError):
        await service.payouts.payout(token, PayoutMethod.WALLET, recipient_wallet="0x1234")

    outcome = await service.payouts.payout(token, PayoutMethod.WALLET, recipient_wallet=RECIPIENT_WALLET)
    assert outcome.success
    assert outcome.wallet_tx_hash == tx_hash(0xA11E7)

    [(_, context)] = mock_adapters[PayoutMethod.WALLET].execute_calls
    assert context.wallet_address == RECIPIENT_WALLET.lower()

    [attempt] = await _attempts(service, transfer)
    assert attempt.destination_wallet == RECIPIENT_WALLET.lower()
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIMED_WALLET


# ── Test 41: Disabled rail points at a fallback ───────────────────


async def test_rail_disabled_in_region(service, test_config, mock_notifier, mock_adapters):
    test_config.debit_enabled_regions = []
    _, _, token = await verified_session(service, mock_notifier)

    with pytest.raises(ForbiddenError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.DEBIT)
    assert exc_info.value.details["fallback_method"] == "BANK"
    assert mock_adapters[PayoutMethod.DEBIT].execute_calls == []


# ── Test 42: Provider asks for onboarding ─────────────────────────


async def test_action_required(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.BANK].results = [
        PayoutActionRequired(
            provider="mock-bank",
            onboarding_url="https://onboard.example.com/kyc/abc",
            customer_id="cus_123",
        ),
    ]
    transfer, session_id, token = await verified_session(service, mock_notifier)

    outcome = await service.payouts.payout(token, PayoutMethod.BANK)
    assert not outcome.success
    assert outcome.status == "ACTION_REQUIRED"
    assert outcome.onboarding_url == "https://onboard.example.com/kyc/abc"
    assert outcome.customer_id == "cus_123"

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.FAILED
    assert attempt.failure_code == "ONBOARDING_REQUIRED"
    assert (await service.store.get_claim_session(session_id)).status is ClaimSessionStatus.OTP_VERIFIED

    retry = await service.payouts.payout(token, PayoutMethod.BANK)
    assert retry.success


# ── Test 43: Outright failure allows a retry ──────────────────────


async def test_failed_payout_then_retry(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.DEBIT].results = [
        PayoutFailed(provider="mock-debit", failure_code="CARD_DECLINED", failure_reason="Card declined"),
    ]
    transfer, _, token = await verified_session(service, mock_notifier)

    with pytest.raises(UpstreamError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.DEBIT)
    assert exc_info.value.code == "CARD_DECLINED"
    assert exc_info.value.http_status == 502
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIM_STARTED

    outcome = await service.payouts.payout(token, PayoutMethod.DEBIT)
    assert outcome.success
    assert [a.status for a in await _attempts(service, transfer)] == [
        PayoutStatus.FAILED, PayoutStatus.SUCCESS,
    ]


# ── Test 44: Adapter crash leaves the attempt to be reconciled ────


async def test_adapter_exception_outcome_unknown(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.BANK].error = RuntimeError("read timeout")
    transfer, _, token = await verified_session(service, mock_notifier)

    with pytest.raises(UpstreamError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.BANK)
    assert exc_info.value.code == "PAYOUT_OUTCOME_UNKNOWN"

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.PROCESSING
    assert exc_info.value.details["attempt_id"] == attempt.id

    # A retry must not call the provider a second time
    again = await service.payouts.payout(token, PayoutMethod.BANK)
    assert again.duplicate
    assert len(mock_adapters[PayoutMethod.BANK].execute_calls) == 1


# ── Test 45: Asynchronous settlement ──────────────────────────────


async def test_processing_completes_session(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.BANK].results = [
        PayoutProcessing(provider="mock-bank", provider_reference="br_tr_1", eta="1-3 business days"),
    ]
    transfer, session_id, token = await verified_session(service, mock_notifier)

    outcome = await service.payouts.payout(token, PayoutMethod.BANK)
    assert outcome.success
    assert outcome.status == "PROCESSING"
    assert outcome.eta == "1-3 business days"
    assert outcome.provider_reference == "br_tr_1"

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.PROCESSING
    assert attempt.provider_reference == "br_tr_1"
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIM_STARTED
    assert (await service.store.get_claim_session(session_id)).status is ClaimSessionStatus.COMPLETED

    with pytest.raises(ConflictError):
        await service.payouts.payout(token, PayoutMethod.DEBIT)


# ── Test 46: Wallet rail has no fallback ──────────────────────────


async def test_wallet_fallback_is_failure(service, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.WALLET].results = [
        PayoutFallbackRequired(
            provider="mock-wallet", failure_code="RELAYER_UNAVAILABLE", failure_reason="Relayer offline",
        ),
    ]
    transfer, _, token = await verified_session(service, mock_notifier)

    with pytest.raises(UpstreamError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.WALLET, recipient_wallet=RECIPIENT_WALLET)
    assert exc_info.value.code == "RELAYER_UNAVAILABLE"
    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.FAILED


# ── Test 47: Expired transfer cannot be paid out ──────────────────


async def test_payout_after_transfer_expiry(service, mock_notifier, mock_adapters, clock):
    transfer, _, token = await verified_session(service, mock_notifier)
    clock.advance(days=8)

    with pytest.raises(ExpiredError):
        await service.payouts.payout(token, PayoutMethod.BANK)
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.EXPIRED
    assert mock_adapters[PayoutMethod.BANK].execute_calls == []


# ── Test 97: Relayer timeout leaves the wallet payout PROCESSING ──


async def test_relayer_timeout_keeps_attempt_processing(service, mock_notifier, mock_adapters):
    signer_calls: list[httpx.Request] = []

    def signer(request: httpx.Request) -> httpx.Response:
        signer_calls.append(request)
        raise httpx.ReadTimeout("signer timed out", request=request)

    relayer = ManagedRelayer(
        RelayerConfig(signer_url="https://signer.test/claim"),
        transport=httpx.MockTransport(signer),
    )
    mock_adapters[PayoutMethod.WALLET] = RelayerSettlementAdapter(
        PayoutMethod.WALLET, "send-relayer", relayer,
    )
    transfer, session_id, token = await verified_session(service, mock_notifier)

    with pytest.raises(UpstreamError) as exc_info:
        await service.payouts.payout(token, PayoutMethod.WALLET, recipient_wallet=RECIPIENT_WALLET)
    assert exc_info.value.code == "PAYOUT_OUTCOME_UNKNOWN"

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.PROCESSING
    assert attempt.failure_code is None
    assert (await service.store.get_transfer(transfer.id)).status is TransferStatus.CLAIM_STARTED

    again = await service.payouts.payout(token, PayoutMethod.WALLET, recipient_wallet=RECIPIENT_WALLET)
    assert again.duplicate
    assert again.status == "PROCESSING"
    with pytest.raises(ConflictError):
        await service.payouts.payout(token, PayoutMethod.BANK)
    assert len(signer_calls) == 1


# ── Test 98: Bridge rejection after the treasury release ──────────


@pytest.mark.parametrize("bridge_status", [503, 422])
async def test_bridge_rejection_never_releases_twice(
    service, mock_notifier, mock_adapters, bridge_status
):
    releases: list[dict] = []

    def signer(request: httpx.Request) -> httpx.Response:
        releases.append(json.loads(request.content))
        return httpx.Response(200, json={"txHash": tx_hash(0x7EA5)})

    def bridge(request: httpx.Request) -> httpx.Response:
        return httpx.Response(bridge_status, json={"error": "try later"})

    relayer = ManagedRelayer(
        RelayerConfig(signer_url="https://signer.test/claim"),
        transport=httpx.MockTransport(signer),
    )
    mock_adapters[PayoutMethod.BANK] = BridgeSettlementAdapter(
        PayoutMethod.BANK,
        BridgeConfig(enabled=True, api_key="bridge-key", api_base_url="https://bridge.test/v0"),
        relayer,
        transport=httpx.MockTransport(bridge),
    )
    transfer, session_id, token = await verified_session(service, mock_notifier)

    outcome = await service.payouts.payout(token, PayoutMethod.BANK)
    assert outcome.status == "PROCESSING"
    assert outcome.treasury_tx_hash == tx_hash(0x7EA5)

    [attempt] = await _attempts(service, transfer)
    assert attempt.status is PayoutStatus.PROCESSING
    assert attempt.provider == "bridge"
    assert attempt.wallet_tx_hash == tx_hash(0x7EA5)
    assert (await service.store.get_claim_session(session_id)).status is ClaimSessionStatus.COMPLETED

    with pytest.raises(ConflictError):
        await service.payouts.payout(token, PayoutMethod.BANK)
    assert [r["action"] for r in releases] == ["claimToPayoutTreasury"]
