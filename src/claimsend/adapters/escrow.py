"""Escrow lock verification over Ethereum JSON-RPC."""

from __future__ import annotations

import itertools
import logging

import httpx

from claimsend.models.results import EscrowVerification
from claimsend.recipient import is_bytes32, normalize_address

log = logging.getLogger(__name__)


class RpcError(Exception):
    """JSON-RPC call returned an error object."""


class JsonRpcEscrowVerifier:
    """Checks that a lock transaction was sent by the sender to the escrow.

    Verification order: hash format, skip switch, RPC availability, the
    transaction itself (sender, target, call data), then its receipt.
    """

    def __init__(
        self,
        rpc_urls: dict[int, str],
        escrow_addresses: dict[int, str] | None = None,
        create_selector: str = "",
        skip_verification: bool = False,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rpc_urls = rpc_urls
        self._escrow_addresses = {
            chain: normalize_address(addr) for chain, addr in (escrow_addresses or {}).items()
        }
        self._selector = create_selector.lower()
        self._skip = skip_verification
        self._timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

    async def verify_lock(
        self,
        tx_hash: str,
        expected_sender: str,
        chain_id: int,
        *,
        expected_transfer_id: str | None = None,
    ) -> EscrowVerification:
        if not is_bytes32(tx_hash):
            return EscrowVerification(valid=False, reason="Invalid transaction hash format")
        if self._skip:
            return EscrowVerification(valid=True)

        rpc_url = self._rpc_urls.get(chain_id)
        if not rpc_url:
            return EscrowVerification(valid=False, reason="No RPC URL configured for chain")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                tx = await self._call(client, rpc_url, "eth_getTransactionByHash", [tx_hash])
                if not tx:
                    return EscrowVerification(valid=False, reason="Transaction not found")

                sender = tx.get("from") or ""
                if normalize_address(sender) != normalize_address(expected_sender):
                    return EscrowVerification(valid=False, reason="Transaction sender mismatch")

                escrow = self._escrow_addresses.get(chain_id)
                if escrow and normalize_address(tx.get("to") or "") != escrow:
                    return EscrowVerification(
                        valid=False, reason="Transaction target does not match escrow contract"
                    )

                data = (tx.get("input") or tx.get("data") or "").lower()
                if self._selector and not data.startswith(self._selector):
                    return EscrowVerification(
                        valid=False, reason="Transaction is not createTransfer call data"
                    )
                if expected_transfer_id is not None:
                    first_arg = "0x" + data[10:74]
                    if first_arg != expected_transfer_id.lower():
                        return EscrowVerification(
                            valid=False, reason="Transaction transfer id mismatch"
                        )

                receipt = await self._call(
                    client, rpc_url, "eth_getTransactionReceipt", [tx_hash]
                )
                if not receipt or receipt.get("status") != "0x1":
                    return EscrowVerification(valid=False, reason="Transaction failed or not mined")
        except (httpx.HTTPError, RpcError, ValueError) as e:
            log.warning("Escrow verification for %s failed: %s", tx_hash[:18], e)
            return EscrowVerification(
                valid=False, reason=str(e) or "Escrow transaction verification failed"
            )

        return EscrowVerification(valid=True)

    async def _call(
        self, client: httpx.AsyncClient, url: str, method: str, params: list
    ) -> dict | None:
        resp = await client.post(
            url,
            json={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params},
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise RpcError("Malformed JSON-RPC response")
        if payload.get("error"):
            error = payload["error"]
            raise RpcError(error.get("message", str(error)) if isinstance(error, dict) else str(error))
        result = payload.get("result")
        return result if isinstance(result, dict) else None
