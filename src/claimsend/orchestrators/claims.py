"""Claim orchestrator - OTP challenge lifecycle on the recipient side.

    start_claim      claim link token  -> OTP_SENT session
    verify_otp       session id + OTP  -> OTP_VERIFIED + bearer session token
    resend_otp       session id        -> fresh OTP, cooldown enforced
    resolve_verified_session           -> session + transfer for a payout
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import NoReturn

from claimsend.clock import Clock, utcnow
from claimsend.crypto.claims import ClaimCrypto, mask_contact
from claimsend.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    InvalidOtpError,
    LockedError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from claimsend.interfaces.collaborators import ContactCipher, Notifier
from claimsend.interfaces.store import LedgerStore
from claimsend.models.config import OtpConfig, ServiceConfig
from claimsend.models.records import (
    ClaimSession,
    ClaimStarted,
    OtpResent,
    OtpVerified,
    SessionContext,
    Transfer,
)
from claimsend.models.status import (
    CLAIMABLE_STATUSES,
    EXPIRABLE_STATUSES,
    ClaimSessionStatus,
    TransferStatus,
)
from claimsend.orchestrators.transfers import decrypt_contact

log = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 16
OTP_LENGTH = 6


def _is_otp(value: object) -> bool:
    return isinstance(value, str) and len(value) == OTP_LENGTH and value.isdigit()


class ClaimOrchestrator:
    def __init__(
        self,
        store: LedgerStore,
        cfg: ServiceConfig,
        crypto: ClaimCrypto,
        cipher: ContactCipher,
        notifier: Notifier,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cfg = cfg
        self._otp: OtpConfig = cfg.otp
        self._crypto = crypto
        self._cipher = cipher
        self._notifier = notifier
        self._clock = clock

    # ── Shared checks ─────────────────────────────────────

    async def _expire_transfer(self, transfer: Transfer) -> ExpiredError:
        """Lazily move a past-deadline transfer to EXPIRED and return the error to raise."""
        if await self._store.update_transfer_if_status(
            transfer.id, EXPIRABLE_STATUSES, status=TransferStatus.EXPIRED,
        ):
            log.info("Transfer %d expired", transfer.id)
        return ExpiredError("Transfer has expired")

    async def _ensure_claimable(self, transfer: Transfer) -> None:
        if transfer.status not in CLAIMABLE_STATUSES:
            raise ConflictError(
                f"Transfer is {transfer.status.value} and cannot be claimed",
                status=transfer.status.value,
            )
        if transfer.is_expired(self._clock()):
            raise await self._expire_transfer(transfer)

    async def _send_otp(self, transfer: Transfer, contact: str, code: str) -> None:
        try:
            await self._notifier.send_otp(transfer.id, transfer.recipient_type, contact, code)
        except Exception as e:
            # The session stands; the recipient can ask for a resend.
            log.error("OTP delivery for transfer %d failed: %s", transfer.id, e)

    # ── Start ─────────────────────────────────────────────

    async def start_claim(self, claim_token: str) -> ClaimStarted:
        token = claim_token.strip() if isinstance(claim_token, str) else ""
        if len(token) < MIN_TOKEN_LENGTH:
            raise ValidationError("claimToken is required")

        transfer = await self._store.get_transfer_by_claim_token_hash(
            self._crypto.hash_claim_token(token)
        )
        if transfer is None:
            raise NotFoundError("Claim link is invalid or has already been used")
        await self._ensure_claimable(transfer)

        now = self._clock()
        otp_expires_at = now + timedelta(seconds=self._otp.expiry_seconds)
        code = self._crypto.generate_otp()

        # The OTP hash is salted with the session id, which only exists
        # after the insert.
        session = await self._store.create_claim_session(
            transfer.id,
            self._crypto.hash_otp(code, 0),
            otp_expires_at,
            self._otp.max_attempts,
        )
        await self._store.finalize_claim_session_otp(
            session.id, self._crypto.hash_otp(code, session.id)
        )

        await self._store.update_transfer_if_status(
            transfer.id, TransferStatus.LOCK_CONFIRMED, status=TransferStatus.CLAIM_STARTED,
        )
        contact = decrypt_contact(self._cipher, transfer)
        await self._send_otp(transfer, contact, code)

        log.info("Claim session %d started for transfer %d", session.id, transfer.id)
        current = await self._store.get_transfer(transfer.id)
        return ClaimStarted(
            claim_session_id=session.id,
            otp_expires_at=otp_expires_at,
            max_attempts=session.max_attempts,
            resend_cooldown_seconds=self._otp.resend_cooldown_seconds,
            recipient_masked=mask_contact(transfer.recipient_type, contact),
            transfer=current or transfer,
        )

    # ── Verify ────────────────────────────────────────────

    async def _load_session(self, session_id: int) -> tuple[ClaimSession, Transfer]:
        ctx = await self._store.get_session_context(session_id)
        if ctx is None:
            raise NotFoundError("Claim session not found")
        return ctx.session, ctx.transfer

    async def verify_otp(self, session_id: int, otp: str) -> OtpVerified:
        if not _is_otp(otp):
            raise ValidationError("otp must be a 6-digit code")

        session, transfer = await self._load_session(session_id)
        if session.status is ClaimSessionStatus.LOCKED:
            raise LockedError("Too many incorrect codes; request a new claim link", remaining_attempts=0)
        if session.status is ClaimSessionStatus.COMPLETED:
            raise ConflictError("Claim session is already completed")
        if session.status is not ClaimSessionStatus.OTP_SENT:
            raise ConflictError(
                f"Claim session is {session.status.value}", status=session.status.value,
            )
        await self._ensure_claimable(transfer)

        now = self._clock()
        if now > session.otp_expires_at:
            await self._store.update_claim_session_if_status(
                session.id, ClaimSessionStatus.OTP_SENT, status=ClaimSessionStatus.EXPIRED,
            )
            raise ExpiredError("Code has expired; request a new one")

        if not self._crypto.verify_otp(otp, session.id, session.otp_hash):
            await self._record_wrong_guess(session)

        session_token = self._crypto.generate_session_token()
        verified = await self._store.update_claim_session_if_status(
            session.id,
            ClaimSessionStatus.OTP_SENT,
            status=ClaimSessionStatus.OTP_VERIFIED,
            session_token_hash=self._crypto.hash_session_token(session_token),
            verified_at=now,
        )
        if not verified:
            raise ConflictError("Claim session was verified concurrently")

        # Retire the claim link so it cannot open another session.
        await self._store.update_transfer_if_status(
            transfer.id,
            CLAIMABLE_STATUSES,
            claim_token_hash=self._crypto.hash_claim_token(self._crypto.generate_claim_token()),
        )
        log.info("Claim session %d verified for transfer %d", session.id, transfer.id)

        current = await self._store.get_transfer(transfer.id)
        return OtpVerified(
            claim_session_token=session_token,
            transfer=current or transfer,
            payout_methods=self._cfg.payout_methods_for(transfer.region),
        )

    async def _record_wrong_guess(self, session: ClaimSession) -> NoReturn:
        attempts = session.otp_attempts + 1
        remaining = max(0, session.max_attempts - attempts)
        fields: dict = {"otp_attempts": attempts}
        if remaining == 0:
            fields["status"] = ClaimSessionStatus.LOCKED

        swapped = await self._store.update_claim_session_if_status(
            session.id,
            ClaimSessionStatus.OTP_SENT,
            expected_otp_attempts=session.otp_attempts,
            **fields,
        )
        if not swapped:
            raise ConflictError("Claim session changed concurrently; try again")

        if remaining == 0:
            log.warning("Claim session %d locked after %d wrong codes", session.id, attempts)
            raise LockedError(
                "Too many incorrect codes; request a new claim link", remaining_attempts=0,
            )
        raise InvalidOtpError("Incorrect code", remaining_attempts=remaining)

    # ── Resend ────────────────────────────────────────────

    async def resend_otp(self, session_id: int) -> OtpResent:
        session, transfer = await self._load_session(session_id)
        if session.status is ClaimSessionStatus.LOCKED:
            raise LockedError("Claim session is locked", remaining_attempts=0)
        if session.status in (ClaimSessionStatus.COMPLETED, ClaimSessionStatus.OTP_VERIFIED):
            raise ConflictError(
                f"Claim session is {session.status.value}", status=session.status.value,
            )
        await self._ensure_claimable(transfer)

        now = self._clock()
        ready_at = session.last_otp_sent_at + timedelta(seconds=self._otp.resend_cooldown_seconds)
        if now < ready_at:
            wait = math.ceil((ready_at - now).total_seconds())
            raise RateLimitedError(
                f"Please wait {wait}s before requesting another code",
                retry_after_seconds=wait,
            )

        code = self._crypto.generate_otp()
        otp_expires_at = now + timedelta(seconds=self._otp.expiry_seconds)
        swapped = await self._store.update_claim_session_if_status(
            session.id,
            (ClaimSessionStatus.OTP_SENT, ClaimSessionStatus.EXPIRED),
            status=ClaimSessionStatus.OTP_SENT,
            otp_hash=self._crypto.hash_otp(code, session.id),
            otp_expires_at=otp_expires_at,
            resend_count=session.resend_count + 1,
            last_otp_sent_at=now,
        )
        if not swapped:
            raise ConflictError("Claim session changed concurrently; try again")

        await self._send_otp(transfer, decrypt_contact(self._cipher, transfer), code)
        log.info("Resent OTP for claim session %d (%d)", session.id, session.resend_count + 1)
        return OtpResent(
            resend_count=session.resend_count + 1,
            otp_expires_at=otp_expires_at,
            resend_cooldown_seconds=self._otp.resend_cooldown_seconds,
        )

    # ── Session tokens ────────────────────────────────────

    async def resolve_verified_session(self, session_token: str) -> SessionContext:
        token = session_token.strip() if isinstance(session_token, str) else ""
        if len(token) < MIN_TOKEN_LENGTH:
            raise AuthenticationError("A verified claim session token is required")

        ctx = await self._store.get_session_context_by_token_hash(
            self._crypto.hash_session_token(token)
        )
        if ctx is None:
            raise AuthenticationError("Claim session token is invalid")
        if ctx.session.status is not ClaimSessionStatus.OTP_VERIFIED:
            raise ConflictError(
                f"Claim session is {ctx.session.status.value}",
                status=ctx.session.status.value,
            )
        await self._ensure_claimable(ctx.transfer)
        return ctx
