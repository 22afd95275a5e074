"""Boundary parsing for recipients, regions, funding sources and chain values."""

from __future__ import annotations

import re

from claimsend.models.status import FundingSource, RecipientType

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
BYTES32_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

_PHONE_STRIP_RE = re.compile(r"[\s()\-]")

_FUNDING_ALIASES = {
    "WALLET": FundingSource.WALLET_USDC,
    "WALLET_USDC": FundingSource.WALLET_USDC,
    "DEBIT": FundingSource.CARD_ONRAMP,
    "CARD": FundingSource.CARD_ONRAMP,
    "CARD_ONRAMP": FundingSource.CARD_ONRAMP,
    "BANK": FundingSource.BANK_ONRAMP,
    "BANK_ONRAMP": FundingSource.BANK_ONRAMP,
}


def parse_recipient(raw: object) -> tuple[RecipientType, str] | None:
    """Classify a recipient as email or E.164 phone and normalize it.

    Bare 10-digit numbers are assumed to be US (+1); every other number must
    already carry its country code.
    """
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value:
        return None

    if EMAIL_RE.match(value):
        return RecipientType.EMAIL, value.lower()

    compact = _PHONE_STRIP_RE.sub("", value)
    if compact.startswith("+"):
        phone = compact
    elif compact.isdigit() and len(compact) == 10:
        phone = f"+1{compact}"
    elif compact.isdigit():
        phone = f"+{compact}"
    else:
        return None

    if not E164_RE.match(phone):
        return None
    return RecipientType.PHONE, phone


def parse_funding_source(raw: object) -> FundingSource | None:
    if not isinstance(raw, str):
        return None
    return _FUNDING_ALIASES.get(raw.strip().upper())


def normalize_region(raw: object) -> str:
    if isinstance(raw, str) and raw.strip():
        return raw.strip().upper()
    return "US"


def is_evm_address(value: object) -> bool:
    return isinstance(value, str) and bool(EVM_ADDRESS_RE.match(value.strip()))


def is_bytes32(value: object) -> bool:
    """Also the shape of an EVM transaction hash."""
    return isinstance(value, str) and bool(BYTES32_RE.match(value.strip()))


def normalize_address(address: str) -> str:
    return address.strip().lower()
