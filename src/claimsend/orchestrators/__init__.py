"""Request-scoped orchestrators over the ledger store."""

from claimsend.orchestrators.claims import ClaimOrchestrator
from claimsend.orchestrators.payouts import PayoutDispatcher
from claimsend.orchestrators.transfers import TransferOrchestrator
from claimsend.orchestrators.webhooks import WebhookAuthenticator, WebhookReconciler

__all__ = [
    "ClaimOrchestrator",
    "PayoutDispatcher",
    "TransferOrchestrator",
    "WebhookAuthenticator",
    "WebhookReconciler",
]
