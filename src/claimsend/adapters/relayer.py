"""Managed relayer - asks an external signer to move funds out of escrow."""

from __future__ import annotations

import hashlib
import logging
import time

import httpx

from claimsend.models.config import RelayerConfig
from claimsend.recipient import is_bytes32, is_evm_address

log = logging.getLogger(__name__)

RELAYER_SECRET_HEADER = "X-Send-Relayer-Secret"


class RelayerError(Exception):
    """The signer refused the release; escrow was not touched."""


class RelayerOutcomeUnknown(Exception):
    """The signer may or may not have broadcast the release.

    Raised for timeouts, transport failures, 5xx and 408 answers, and success
    responses without a usable tx hash. Never resolve this as a failure.
    """


def simulated_tx_hash(seed: str) -> str:
    return "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()


def _tx_hash_from(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("txHash", "hash", "transactionHash"):
        value = payload.get(key)
        if isinstance(value, str) and is_bytes32(value):
            return value.strip()
    return None


def _message_from(payload: object, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


class ManagedRelayer:
    """Posts claim calls to a managed signer webhook.

    Without a signer URL and with ``simulate`` on, returns a synthetic
    transaction hash so the rest of the flow can run in development.
    """

    def __init__(
        self,
        cfg: RelayerConfig,
        escrow_addresses: dict[int, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._cfg = cfg
        self._escrow_addresses = escrow_addresses or {}
        self._transport = transport

    @property
    def simulated(self) -> bool:
        return not self._cfg.signer_url

    async def claim_to_wallet(self, transfer_id: str, recipient_wallet: str, chain_id: int) -> str:
        if not is_evm_address(recipient_wallet):
            raise RelayerError("recipient wallet must be a valid address")
        return await self._submit(
            "claimToWallet", transfer_id, chain_id, recipient_wallet=recipient_wallet,
        )

    async def claim_to_payout_treasury(self, transfer_id: str, chain_id: int) -> str:
        return await self._submit("claimToPayoutTreasury", transfer_id, chain_id)

    async def _submit(
        self,
        action: str,
        transfer_id: str,
        chain_id: int,
        recipient_wallet: str | None = None,
    ) -> str:
        if not self._cfg.signer_url:
            if not self._cfg.simulate:
                raise RelayerError("Relayer signer URL is not configured")
            seed = f"managed:{action}:{transfer_id}:{recipient_wallet or ''}:{int(time.time() * 1000)}"
            tx_hash = simulated_tx_hash(seed)
            log.info("Simulated %s for %s -> %s", action, transfer_id[:18], tx_hash[:18])
            return tx_hash

        body: dict = {
            "action": action,
            "transferId": transfer_id,
            "chainId": chain_id,
            "escrowAddress": self._escrow_addresses.get(chain_id, ""),
        }
        if recipient_wallet:
            body["recipientWallet"] = recipient_wallet

        headers = {}
        if self._cfg.signer_secret:
            headers[RELAYER_SECRET_HEADER] = self._cfg.signer_secret

        try:
            async with httpx.AsyncClient(
                timeout=self._cfg.timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._cfg.signer_url, json=body, headers=headers)
        except httpx.TransportError as e:
            log.warning("Relayer %s for %s did not complete: %r", action, transfer_id[:18], e)
            raise RelayerOutcomeUnknown(f"Managed signer call did not complete: {e!r}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if not resp.is_success:
            message = _message_from(payload, f"Managed signer call failed ({resp.status_code})")
            if resp.status_code >= 500 or resp.status_code == 408:
                raise RelayerOutcomeUnknown(message)
            raise RelayerError(message)

        tx_hash = _tx_hash_from(payload)
        if tx_hash is None:
            raise RelayerOutcomeUnknown("Managed signer response did not include a valid tx hash")
        log.info("Relayer %s for %s confirmed: %s", action, transfer_id[:18], tx_hash[:18])
        return tx_hash
