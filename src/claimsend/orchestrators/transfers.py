"""Transfer orchestrator - sender-side prepare and lock confirmation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from claimsend.clock import Clock, utcnow
from claimsend.crypto.claims import (
    ClaimCrypto,
    generate_transfer_id,
    hash_contact,
    mask_contact,
    recipient_hint_hash,
)
from claimsend.errors import (
    ConflictError,
    ConfigurationError,
    ForbiddenError,
    LimitExceededError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from claimsend.interfaces.collaborators import ContactCipher, EscrowVerifier, Notifier
from claimsend.interfaces.store import LedgerStore
from claimsend.models.config import ServiceConfig
from claimsend.models.records import (
    LockConfirmation,
    NewTransfer,
    PreparedTransfer,
    Transfer,
)
from claimsend.models.status import TransferStatus
from claimsend.money import format_usdc_micros, parse_usdc_micros
from claimsend.recipient import (
    is_bytes32,
    is_evm_address,
    normalize_address,
    normalize_region,
    parse_funding_source,
    parse_recipient,
)

log = logging.getLogger(__name__)

MEMO_MAX_LENGTH = 256


def contact_context(sender_wallet: str, contact_hash: str) -> str:
    """Associated data binding an encrypted contact to its transfer."""
    return f"{sender_wallet}:{contact_hash}"


def decrypt_contact(cipher: ContactCipher, transfer: Transfer) -> str:
    return cipher.decrypt(
        transfer.recipient_contact_encrypted,
        contact_context(transfer.sender_wallet, transfer.recipient_contact_hash),
    )


def utc_day_window(now: datetime) -> tuple[datetime, datetime]:
    """[midnight UTC, next midnight UTC) containing ``now``."""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class TransferOrchestrator:
    """Creates PREPARED transfers and moves them to LOCK_CONFIRMED.

    Amounts are checked against the per-transfer ceiling and the sender's
    UTC-day cap before any row is written.
    """

    def __init__(
        self,
        store: LedgerStore,
        cfg: ServiceConfig,
        crypto: ClaimCrypto,
        cipher: ContactCipher,
        escrow: EscrowVerifier,
        notifier: Notifier,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cfg = cfg
        self._crypto = crypto
        self._cipher = cipher
        self._escrow = escrow
        self._notifier = notifier
        self._clock = clock

        fee = parse_usdc_micros(cfg.sponsor_fee_usdc)
        if fee is None:
            raise ConfigurationError(f"Invalid sponsor fee: {cfg.sponsor_fee_usdc!r}")
        self._sponsor_fee = fee

    # ── Prepare ───────────────────────────────────────────

    async def prepare(
        self,
        sender: str,
        recipient_raw: object,
        amount_raw: object,
        funding_source_raw: object,
        region: object = None,
        chain_id: int | None = None,
        memo: str | None = None,
    ) -> PreparedTransfer:
        if not is_evm_address(sender):
            raise ValidationError("sender must be a valid EVM address")
        sender = normalize_address(sender)

        recipient = parse_recipient(recipient_raw)
        if recipient is None:
            raise ValidationError("recipient must be a valid email or E.164 phone number")
        recipient_type, contact = recipient

        principal = parse_usdc_micros(amount_raw)
        if not principal:
            raise ValidationError("amount must be a positive USD value with up to 6 decimals")

        funding_source = parse_funding_source(funding_source_raw)
        if funding_source is None:
            raise ValidationError("fundingSource must be wallet, card, or bank")

        region_code = normalize_region(region)
        if region_code not in {r.upper() for r in self._cfg.enabled_regions}:
            raise ForbiddenError(f"Send funds is not enabled in region {region_code}")

        chain = chain_id if chain_id else self._cfg.default_chain_id
        if chain not in self._cfg.allowed_chain_ids:
            raise ValidationError(f"chainId {chain} is not enabled for send funds")

        if principal > self._cfg.max_transfer_usdc_micros:
            raise LimitExceededError(
                "Maximum transfer amount is "
                f"{format_usdc_micros(self._cfg.max_transfer_usdc_micros)} USDC"
            )

        now = self._clock()
        day_start, day_end = utc_day_window(now)
        used = await self._store.sum_sender_principal(sender, day_start, day_end)
        if used + principal > self._cfg.daily_cap_usdc_micros:
            raise LimitExceededError(
                f"Daily cap is {format_usdc_micros(self._cfg.daily_cap_usdc_micros)} USDC",
                daily_used_usdc=format_usdc_micros(used),
            )

        contact_hash = hash_contact(contact)
        new = NewTransfer(
            transfer_id=generate_transfer_id(sender, contact_hash, str(principal)),
            sender_wallet=sender,
            recipient_type=recipient_type,
            recipient_contact_encrypted=self._cipher.encrypt(
                contact, contact_context(sender, contact_hash)
            ),
            recipient_contact_hash=contact_hash,
            recipient_hint_hash=recipient_hint_hash(contact_hash),
            principal_usdc=principal,
            sponsor_fee_usdc=self._sponsor_fee,
            funding_source=funding_source,
            region=region_code,
            chain_id=chain,
            expires_at=now + timedelta(days=self._cfg.transfer_expiry_days),
            memo=memo.strip()[:MEMO_MAX_LENGTH] if isinstance(memo, str) and memo.strip() else None,
        )
        transfer = await self._store.create_transfer(new)
        log.info(
            "Prepared transfer %d (%s) from %s: %s USDC",
            transfer.id, transfer.transfer_id[:18], sender,
            format_usdc_micros(principal),
        )
        return PreparedTransfer(
            transfer=transfer,
            recipient_masked=mask_contact(recipient_type, contact),
            daily_cap_usdc=self._cfg.daily_cap_usdc_micros,
            daily_used_usdc=used + principal,
        )

    # ── Confirm lock ──────────────────────────────────────

    async def confirm_lock(
        self,
        row_id: int,
        sender: str,
        escrow_tx_hash: str,
        on_chain_transfer_id: str,
    ) -> LockConfirmation:
        if not is_bytes32(escrow_tx_hash):
            raise ValidationError("escrowTxHash must be a 0x-prefixed 32-byte hash")
        if not is_bytes32(on_chain_transfer_id):
            raise ValidationError("transferId must be a 0x-prefixed 32-byte value")

        sender = normalize_address(sender)
        transfer = await self._store.get_sender_transfer(row_id, sender)
        if transfer is None:
            raise NotFoundError("Transfer not found")
        if transfer.status is not TransferStatus.PREPARED:
            raise ConflictError(
                f"Transfer is {transfer.status.value}, expected PREPARED",
                status=transfer.status.value,
            )
        if on_chain_transfer_id.strip().lower() != transfer.transfer_id.lower():
            raise ValidationError("transferId does not match the prepared transfer")

        verification = await self._escrow.verify_lock(
            escrow_tx_hash.strip(),
            sender,
            transfer.chain_id,
            expected_transfer_id=transfer.transfer_id,
        )
        if not verification.valid:
            log.warning(
                "Escrow verification rejected transfer %d (%s): %s",
                transfer.id, escrow_tx_hash[:18], verification.reason,
            )
            raise UpstreamError(
                verification.reason or "Escrow lock transaction could not be verified",
                code="escrow_verification_failed",
                http_status=400,
            )

        claim_token = self._crypto.generate_claim_token()
        swapped = await self._store.update_transfer_if_status(
            transfer.id,
            TransferStatus.PREPARED,
            status=TransferStatus.LOCK_CONFIRMED,
            escrow_tx_hash=escrow_tx_hash.strip(),
            claim_token_hash=self._crypto.hash_claim_token(claim_token),
        )
        if not swapped:
            raise ConflictError("Transfer was confirmed concurrently")

        confirmed = await self._store.get_transfer(transfer.id)
        assert confirmed is not None
        log.info("Transfer %d lock confirmed (tx %s)", transfer.id, escrow_tx_hash[:18])

        claim_url = f"{self._cfg.claim_app_url.rstrip('/')}/claim/{claim_token}"
        warning = None
        try:
            contact = decrypt_contact(self._cipher, confirmed)
            await self._notifier.send_claim_link(
                confirmed.id, confirmed.recipient_type, contact, claim_url
            )
        except Exception as e:
            log.error("Claim link delivery for transfer %d failed: %s", confirmed.id, e)
            warning = "Claim link notification could not be delivered"

        return LockConfirmation(transfer=confirmed, claim_url=claim_url, notification_warning=warning)

    # ── Queries ───────────────────────────────────────────

    async def list_transfers(self, sender: str, limit: int = 50) -> list[Transfer]:
        return await self._store.list_sender_transfers(normalize_address(sender), limit)

    async def get_transfer(self, row_id: int, sender: str) -> Transfer:
        transfer = await self._store.get_sender_transfer(row_id, normalize_address(sender))
        if transfer is None:
            raise NotFoundError("Transfer not found")
        return transfer
