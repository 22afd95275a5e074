"""Tests 9-16: SQLite ledger store - records, compare-and-swap, payout dedup."""

from __future__ import annotations

from datetime import timedelta

import aiosqlite
import pytest

from claimsend.models.status import (
    ClaimSessionStatus,
    PayoutMethod,
    PayoutStatus,
    RecipientType,
    TransferStatus,
)

from tests.conftest import START
from tests.factories import OTHER_SENDER, SENDER, make_new_transfer, tx_hash


async def _session_for(store, transfer):
    return await store.create_claim_session(
        transfer.id, "otp-hash", START + timedelta(minutes=10), max_attempts=5,
    )


# ── Test 9: Transfers round-trip and are scoped to their sender ───


async def test_create_and_read_transfer(store):
    transfer = await store.create_transfer(make_new_transfer(memo="rent"))

    assert transfer.id > 0
    assert transfer.status is TransferStatus.PREPARED
    assert transfer.sender_wallet == SENDER
    assert transfer.recipient_type is RecipientType.EMAIL
    assert transfer.total_locked_usdc == 12_500_000
    assert transfer.expires_at == START + timedelta(days=7)
    assert transfer.memo == "rent"
    assert transfer.claim_token_hash is None

    assert await store.get_sender_transfer(transfer.id, "0x" + "AB" * 20) is not None
    assert await store.get_sender_transfer(transfer.id, OTHER_SENDER) is None
    assert await store.get_transfer(transfer.id + 99) is None


async def test_list_sender_transfers_newest_first(store, clock):
    first = await store.create_transfer(make_new_transfer(principal_usdc=1_000_000))
    clock.advance(minutes=5)
    second = await store.create_transfer(make_new_transfer(principal_usdc=2_000_000))
    await store.create_transfer(make_new_transfer(sender=OTHER_SENDER))

    listed = await store.list_sender_transfers(SENDER)
    assert [t.id for t in listed] == [second.id, first.id]
    assert len(await store.list_sender_transfers(SENDER, limit=1)) == 1


# ── Test 10: Invalid records are refused ──────────────────────────


async def test_duplicate_transfer_id_rejected(store):
    await store.create_transfer(make_new_transfer(transfer_id=tx_hash(1)))
    with pytest.raises(aiosqlite.IntegrityError):
        await store.create_transfer(make_new_transfer(transfer_id=tx_hash(1), principal_usdc=5_000_000))


def test_new_transfer_requires_positive_principal():
    with pytest.raises(ValueError):
        make_new_transfer(principal_usdc=0)
    with pytest.raises(ValueError):
        make_new_transfer(sponsor_fee_usdc=-1)


# ── Test 11: Transfer compare-and-swap ────────────────────────────


async def test_transfer_cas(store):
    transfer = await store.create_transfer(make_new_transfer())

    assert await store.update_transfer_if_status(
        transfer.id, TransferStatus.PREPARED,
        status=TransferStatus.LOCK_CONFIRMED, escrow_tx_hash=tx_hash(5),
    )
    # Second writer loses: the row is no longer PREPARED
    assert not await store.update_transfer_if_status(
        transfer.id, TransferStatus.PREPARED, status=TransferStatus.EXPIRED,
    )

    current = await store.get_transfer(transfer.id)
    assert current.status is TransferStatus.LOCK_CONFIRMED
    assert current.escrow_tx_hash == tx_hash(5)

    assert await store.update_transfer_if_status(
        transfer.id,
        (TransferStatus.LOCK_CONFIRMED, TransferStatus.CLAIM_STARTED),
        status=TransferStatus.CLAIM_STARTED,
    )


# ── Test 12: Only known columns can be written ────────────────────


async def test_cas_rejects_unknown_columns(store):
    transfer = await store.create_transfer(make_new_transfer())
    with pytest.raises(ValueError, match="principal_usdc"):
        await store.update_transfer_if_status(
            transfer.id, TransferStatus.PREPARED, principal_usdc=1,
        )


# ── Test 13: Daily principal sum ──────────────────────────────────


async def test_sum_sender_principal_window_and_failed(store, clock):
    day_start = START.replace(hour=0)
    day_end = day_start + timedelta(days=1)

    a = await store.create_transfer(make_new_transfer(principal_usdc=12_000_000))
    b = await store.create_transfer(make_new_transfer(principal_usdc=3_000_000))
    await store.create_transfer(make_new_transfer(sender=OTHER_SENDER, principal_usdc=9_000_000))
    assert await store.sum_sender_principal(SENDER, day_start, day_end) == 15_000_000

    await store.update_transfer_if_status(b.id, TransferStatus.PREPARED, status=TransferStatus.FAILED)
    assert await store.sum_sender_principal(SENDER, day_start, day_end) == a.principal_usdc

    clock.advance(days=1)
    await store.create_transfer(make_new_transfer(principal_usdc=7_000_000))
    assert await store.sum_sender_principal(SENDER, day_start, day_end) == 12_000_000
    assert await store.sum_sender_principal(SENDER, day_end, day_end + timedelta(days=1)) == 7_000_000


# ── Test 14: Claim session attempt counter is guarded ─────────────


async def test_claim_session_cas_on_attempt_count(store):
    transfer = await store.create_transfer(make_new_transfer())
    session = await _session_for(store, transfer)
    assert session.status is ClaimSessionStatus.OTP_SENT
    assert session.remaining_attempts == 5

    assert await store.update_claim_session_if_status(
        session.id, ClaimSessionStatus.OTP_SENT, expected_otp_attempts=0, otp_attempts=1,
    )
    # A racing guess that read otp_attempts=0 must not overwrite the increment
    assert not await store.update_claim_session_if_status(
        session.id, ClaimSessionStatus.OTP_SENT, expected_otp_attempts=0, otp_attempts=1,
    )

    await store.finalize_claim_session_otp(session.id, "new-hash")
    context = await store.get_session_context(session.id)
    assert context.session.otp_attempts == 1
    assert context.session.otp_hash == "new-hash"
    assert context.transfer.id == transfer.id


# ── Test 15: At most one active payout attempt per transfer ───────


async def test_payout_attempt_dedup(store):
    transfer = await store.create_transfer(make_new_transfer())
    session = await _session_for(store, transfer)

    attempt, created = await store.create_payout_attempt_unless_active(
        transfer.id, session.id, PayoutMethod.DEBIT, "bridge", "ref-1",
    )
    assert created
    assert attempt.status is PayoutStatus.PROCESSING

    again, created = await store.create_payout_attempt_unless_active(
        transfer.id, session.id, PayoutMethod.BANK, "bridge", "ref-2",
    )
    assert not created
    assert again.id == attempt.id
    assert again.method is PayoutMethod.DEBIT

    assert await store.update_payout_attempt_if_status(
        attempt.id, PayoutStatus.PROCESSING,
        status=PayoutStatus.FAILED, failure_code="CARD_DECLINED",
    )
    retry, created = await store.create_payout_attempt_unless_active(
        transfer.id, session.id, PayoutMethod.BANK, "bridge", "ref-2",
    )
    assert created
    assert retry.id != attempt.id

    found = await store.get_payout_attempt_by_reference("bridge", "ref-1")
    assert found.failure_code == "CARD_DECLINED"
    assert [a.id for a in await store.list_payout_attempts(transfer.id)] == [attempt.id, retry.id]


# ── Test 16: Notification audit trail and health ──────────────────


async def test_notifications_and_ping(store):
    transfer = await store.create_transfer(make_new_transfer())
    await store.record_notification(transfer.id, "claim_link", "email", "log", "hash", "msg-1")
    await store.record_notification(transfer.id, "otp", "email", "log", "hash", "msg-2", status="FAILED")

    records = await store.list_notifications(transfer.id)
    assert [(r.kind, r.status) for r in records] == [("claim_link", "SENT"), ("otp", "FAILED")]
    assert await store.ping()
