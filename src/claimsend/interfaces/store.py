"""LedgerStore protocol - durable storage for transfers, claim sessions and payouts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence, Union

from claimsend.models.records import (
    ClaimSession,
    NewTransfer,
    NotificationRecord,
    PayoutAttempt,
    SessionContext,
    Transfer,
)
from claimsend.models.status import (
    ClaimSessionStatus,
    PayoutMethod,
    PayoutStatus,
    TransferStatus,
)

ExpectedTransferStatus = Union[TransferStatus, Sequence[TransferStatus]]
ExpectedSessionStatus = Union[ClaimSessionStatus, Sequence[ClaimSessionStatus]]
ExpectedPayoutStatus = Union[PayoutStatus, Sequence[PayoutStatus]]


class LedgerStore(Protocol):
    """Owns every Transfer, ClaimSession and PayoutAttempt.

    State transitions go through the ``update_*_if_status`` compare-and-swap
    methods: the write is applied only if the row still has one of the
    expected statuses, and the return value says whether it was.
    Rows are never deleted.
    """

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        ...

    async def close(self) -> None:
        """Close the database connection."""
        ...

    async def ping(self) -> bool:
        """Cheap liveness check used by the health endpoint."""
        ...

    # ── Transfers ──────────────────────────────────────────

    async def create_transfer(self, new: NewTransfer) -> Transfer:
        """Insert a PREPARED transfer."""
        ...

    async def get_transfer(self, row_id: int) -> Transfer | None:
        ...

    async def get_sender_transfer(self, row_id: int, sender: str) -> Transfer | None:
        """Fetch a transfer only if it belongs to ``sender``."""
        ...

    async def list_sender_transfers(self, sender: str, limit: int = 50) -> list[Transfer]:
        """Newest first; ``limit`` is clamped to 1..100."""
        ...

    async def get_transfer_by_claim_token_hash(self, claim_token_hash: str) -> Transfer | None:
        ...

    async def sum_sender_principal(self, sender: str, start: datetime, end: datetime) -> int:
        """Sum principal of non-FAILED transfers created in [start, end)."""
        ...

    async def update_transfer_if_status(
        self, row_id: int, expected: ExpectedTransferStatus, **fields: Any
    ) -> bool:
        """Compare-and-swap on Transfer.status. Returns False if no row matched."""
        ...

    # ── Claim sessions ─────────────────────────────────────

    async def create_claim_session(
        self,
        transfer_row_id: int,
        otp_hash: str,
        otp_expires_at: datetime,
        max_attempts: int,
    ) -> ClaimSession:
        """Step one of session creation: insert with a placeholder OTP hash."""
        ...

    async def finalize_claim_session_otp(self, session_id: int, otp_hash: str) -> None:
        """Step two: store the OTP hash salted with the now-known session id."""
        ...

    async def get_claim_session(self, session_id: int) -> ClaimSession | None:
        ...

    async def get_session_context(self, session_id: int) -> SessionContext | None:
        """Session joined with its parent transfer."""
        ...

    async def get_session_context_by_token_hash(
        self, session_token_hash: str
    ) -> SessionContext | None:
        ...

    async def update_claim_session_if_status(
        self,
        session_id: int,
        expected: ExpectedSessionStatus,
        *,
        expected_otp_attempts: int | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap on ClaimSession.status (and optionally otp_attempts)."""
        ...

    # ── Payout attempts ────────────────────────────────────

    async def create_payout_attempt_unless_active(
        self,
        transfer_row_id: int,
        claim_session_id: int,
        method: PayoutMethod,
        provider: str,
        provider_reference: str,
        destination_wallet: str | None = None,
    ) -> tuple[PayoutAttempt, bool]:
        """Atomically insert a PROCESSING attempt unless the transfer already has
        a PROCESSING or SUCCESS attempt.

        Returns ``(attempt, created)``; when ``created`` is False the attempt
        is the existing active one (possibly for another method).
        """
        ...

    async def get_payout_attempt(self, attempt_id: int) -> PayoutAttempt | None:
        ...

    async def get_payout_attempt_by_reference(
        self, provider: str, provider_reference: str
    ) -> PayoutAttempt | None:
        """The only lookup the webhook reconciler uses."""
        ...

    async def list_payout_attempts(self, transfer_row_id: int) -> list[PayoutAttempt]:
        ...

    async def update_payout_attempt_if_status(
        self, attempt_id: int, expected: ExpectedPayoutStatus, **fields: Any
    ) -> bool:
        """Compare-and-swap on PayoutAttempt.status. None-valued fields are left as-is."""
        ...

    # ── Notifications ──────────────────────────────────────

    async def record_notification(
        self,
        transfer_row_id: int,
        kind: str,
        channel: str,
        provider: str,
        destination_hash: str,
        message_id: str,
        status: str = "SENT",
    ) -> NotificationRecord:
        ...

    async def list_notifications(self, transfer_row_id: int) -> list[NotificationRecord]:
        ...
