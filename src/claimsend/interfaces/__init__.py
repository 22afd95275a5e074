"""Protocol interfaces for all claimsend components."""

from claimsend.interfaces.store import LedgerStore
from claimsend.interfaces.collaborators import (
    ContactCipher,
    EscrowVerifier,
    Notifier,
    RateLimiter,
    SettlementAdapter,
)

__all__ = [
    "LedgerStore",
    "ContactCipher",
    "EscrowVerifier",
    "Notifier",
    "RateLimiter",
    "SettlementAdapter",
]
