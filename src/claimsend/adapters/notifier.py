"""Notifier that logs instead of delivering, and records an audit row.

Stands in for an email/SMS provider. Neither OTPs nor claim tokens are
ever logged in full.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time

from claimsend.crypto.claims import mask_contact
from claimsend.interfaces.store import LedgerStore
from claimsend.models.status import RecipientType

log = logging.getLogger(__name__)


def _channel(recipient_type: RecipientType) -> str:
    return "email" if recipient_type is RecipientType.EMAIL else "sms"


def _destination_hash(contact: str) -> str:
    return hashlib.sha256(contact.strip().lower().encode("utf-8")).hexdigest()


class LoggingNotifier:
    def __init__(
        self,
        store: LedgerStore,
        email_provider: str = "mock-email",
        sms_provider: str = "mock-sms",
    ) -> None:
        self._store = store
        self._providers = {"email": email_provider, "sms": sms_provider}

    async def send_claim_link(
        self, transfer_row_id: int, recipient_type: RecipientType, contact: str, url: str
    ) -> str:
        channel = _channel(recipient_type)
        message_id = self._message_id(channel)
        link_base = url.rsplit("/", 1)[0]
        log.info(
            "[%s] claim link for transfer %d to %s via %s (%s): %s/***",
            channel, transfer_row_id, mask_contact(recipient_type, contact),
            self._providers[channel], message_id, link_base,
        )
        await self._record(transfer_row_id, "claim_link", channel, contact, message_id)
        return message_id

    async def send_otp(
        self, transfer_row_id: int, recipient_type: RecipientType, contact: str, code: str
    ) -> str:
        channel = _channel(recipient_type)
        message_id = self._message_id(channel)
        log.info(
            "[%s] OTP for transfer %d to %s via %s (%s): ***%s",
            channel, transfer_row_id, mask_contact(recipient_type, contact),
            self._providers[channel], message_id, code[-2:],
        )
        await self._record(transfer_row_id, "otp", channel, contact, message_id)
        return message_id

    async def _record(
        self, transfer_row_id: int, kind: str, channel: str, contact: str, message_id: str
    ) -> None:
        await self._store.record_notification(
            transfer_row_id=transfer_row_id,
            kind=kind,
            channel=channel,
            provider=self._providers[channel],
            destination_hash=_destination_hash(contact),
            message_id=message_id,
        )

    @staticmethod
    def _message_id(channel: str) -> str:
        return f"{channel}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
