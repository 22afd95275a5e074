"""Sender authentication for the transfer endpoints.

Wallet sessions are established by an upstream gateway, which forwards the
authenticated address in a header. This service only trusts that header.
"""

from __future__ import annotations

import logging
from typing import Mapping

from claimsend.crypto.claims import constant_time_equals
from claimsend.errors import AuthenticationError
from claimsend.recipient import is_evm_address, normalize_address

log = logging.getLogger(__name__)

GATEWAY_SECRET_HEADER = "X-Gateway-Secret"


class HeaderSenderAuthenticator:
    def __init__(self, sender_header: str = "X-Sender-Wallet", gateway_secret: str = "") -> None:
        self._header = sender_header
        self._gateway_secret = gateway_secret

    def authenticate(self, headers: Mapping[str, str]) -> str:
        """Return the lower-cased sender wallet or raise AuthenticationError."""
        if self._gateway_secret:
            provided = headers.get(GATEWAY_SECRET_HEADER) or ""
            if not constant_time_equals(provided, self._gateway_secret):
                log.warning("Rejected sender request with bad gateway secret")
                raise AuthenticationError("Invalid gateway credentials")

        wallet = headers.get(self._header)
        if not is_evm_address(wallet):
            raise AuthenticationError("A wallet session is required")
        return normalize_address(wallet)
