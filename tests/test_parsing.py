"""Tests 1-8: Money, recipient and provider-state parsing at the boundary."""

from __future__ import annotations

import pytest

from claimsend.crypto.claims import mask_contact
from claimsend.models.status import (
    FundingSource,
    PayoutMethod,
    PayoutStatus,
    RecipientType,
    map_provider_state,
)
from claimsend.money import format_usdc_micros, parse_usdc_micros
from claimsend.recipient import (
    is_bytes32,
    is_evm_address,
    normalize_region,
    parse_funding_source,
    parse_recipient,
)

from tests.conftest import make_test_config
from tests.factories import SENDER, tx_hash


# ── Test 1: Decimal amounts parse to micro-units ──────────────────


@pytest.mark.parametrize("raw, expected", [
    ("12.00", 12_000_000),
    ("12.345678", 12_345_678),
    ("0.000001", 1),
    (" 3.5 ", 3_500_000),
    (5, 5_000_000),
    ("0", 0),
])
def test_parse_usdc_accepts(raw, expected):
    assert parse_usdc_micros(raw) == expected


# ── Test 2: Malformed amounts are rejected ────────────────────────


@pytest.mark.parametrize("raw", [
    "1.1234567", "-1", "1e3", ".5", "12,00", "", "abc", 12.5, True, None, ["1"],
])
def test_parse_usdc_rejects(raw):
    assert parse_usdc_micros(raw) is None


# ── Test 3: Formatting trims trailing zeros ───────────────────────


def test_format_usdc():
    assert format_usdc_micros(12_500_000) == "12.5"
    assert format_usdc_micros(10_000_000_000) == "10000"
    assert format_usdc_micros(1) == "0.000001"
    assert format_usdc_micros(12_345_678) == "12.345678"
    assert format_usdc_micros(-500_000) == "-0.5"


# ── Test 4: Recipient classification and normalization ────────────


@pytest.mark.parametrize("raw, expected", [
    (" Alice@Example.COM ", (RecipientType.EMAIL, "alice@example.com")),
    ("(415) 555-0100", (RecipientType.PHONE, "+14155550100")),
    ("+44 20 7946 0958", (RecipientType.PHONE, "+442079460958")),
    ("447911123456", (RecipientType.PHONE, "+447911123456")),
    ("not-a-contact", None),
    ("+0123456789", None),
    ("", None),
    (42, None),
])
def test_parse_recipient(raw, expected):
    assert parse_recipient(raw) == expected


# ── Test 5: Contacts are masked for display ───────────────────────


def test_mask_contact():
    assert mask_contact(RecipientType.EMAIL, "alice@example.com") == "al***@example.com"
    assert mask_contact(RecipientType.PHONE, "+14155550100") == "********0100"
    assert mask_contact(RecipientType.PHONE, "123") == "***123"


# ── Test 6: Funding source, region and hex shapes ─────────────────


def test_funding_region_and_hex_shapes():
    assert parse_funding_source("card") is FundingSource.CARD_ONRAMP
    assert parse_funding_source("Bank") is FundingSource.BANK_ONRAMP
    assert parse_funding_source("wallet_usdc") is FundingSource.WALLET_USDC
    assert parse_funding_source("crypto") is None

    assert normalize_region(None) == "US"
    assert normalize_region(" ca ") == "CA"

    assert is_evm_address(SENDER)
    assert not is_evm_address(SENDER[:-1])
    assert is_bytes32(tx_hash(7))
    assert not is_bytes32("0x1234")


# ── Test 7: Provider state vocabulary maps onto PayoutStatus ─────


@pytest.mark.parametrize("raw, expected", [
    ("payment_processed", PayoutStatus.SUCCESS),
    ("SUCCEEDED", PayoutStatus.SUCCESS),
    ("awaiting_funds", PayoutStatus.PROCESSING),
    ("returned", PayoutStatus.FAILED),
    ("fallback_required", PayoutStatus.FALLBACK_REQUIRED),
    ("something_new", PayoutStatus.PROCESSING),
    (None, PayoutStatus.PROCESSING),
])
def test_map_provider_state(raw, expected):
    assert map_provider_state(raw) is expected


# ── Test 8: Rails enabled per region ──────────────────────────────


def test_payout_methods_for_region():
    cfg = make_test_config(
        debit_enabled_regions=["US"],
        bank_enabled_regions=["us", "CA"],
        wallet_enabled_regions=["US", "CA", "MX"],
    )
    assert cfg.payout_methods_for("us") == [PayoutMethod.DEBIT, PayoutMethod.BANK, PayoutMethod.WALLET]
    assert cfg.payout_methods_for("CA") == [PayoutMethod.BANK, PayoutMethod.WALLET]
    assert cfg.payout_methods_for("MX") == [PayoutMethod.WALLET]
    assert cfg.payout_methods_for("FR") == []
