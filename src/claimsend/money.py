"""Fixed-point USDC amounts. All arithmetic is integer micro-units."""

from __future__ import annotations

import re

MICROS_PER_USDC = 1_000_000

_AMOUNT_RE = re.compile(r"^\d+(\.\d{1,6})?$")


def parse_usdc_micros(value: object) -> int | None:
    """Parse a decimal string ("12.5", "0.000001") into micro-units.

    Returns None for anything that is not a non-negative decimal with at most
    six fractional digits. Floats are rejected: callers must send strings.
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    text = str(value).strip()
    if not _AMOUNT_RE.match(text):
        return None
    whole, _, fraction = text.partition(".")
    return int(whole) * MICROS_PER_USDC + int(fraction.ljust(6, "0") or "0")


def format_usdc_micros(micros: int) -> str:
    """Format micro-units as a decimal string, trimming trailing zeros."""
    sign = "-" if micros < 0 else ""
    whole, fraction = divmod(abs(micros), MICROS_PER_USDC)
    if fraction == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{str(fraction).rjust(6, '0').rstrip('0')}"
