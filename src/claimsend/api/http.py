"""aiohttp surface for the send-funds service.

Request bodies are parsed once into frozen dataclasses; handlers only see
validated values. Every ClaimSendError is rendered by one middleware.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from aiohttp import web

from claimsend.api.auth import HeaderSenderAuthenticator
from claimsend.api.views import (
    claim_started_view,
    lock_confirmation_view,
    otp_resent_view,
    otp_verified_view,
    payout_view,
    prepared_view,
    transfer_view,
    webhook_view,
)
from claimsend.crypto.webhooks import SECRET_HEADER, SIGNATURE_HEADER
from claimsend.errors import ClaimSendError, RateLimitedError, ValidationError
from claimsend.interfaces.collaborators import RateLimiter
from claimsend.interfaces.store import LedgerStore
from claimsend.models.config import ServiceConfig
from claimsend.models.status import PayoutMethod
from claimsend.orchestrators import (
    ClaimOrchestrator,
    PayoutDispatcher,
    TransferOrchestrator,
    WebhookAuthenticator,
    WebhookReconciler,
)

log = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


# ── Error rendering ───────────────────────────────────────


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ClaimSendError as e:
        if e.http_status >= 500:
            log.warning("%s %s -> %d %s: %s", request.method, request.path, e.http_status, e.code, e)
        headers = {}
        if isinstance(e, RateLimitedError):
            headers["Retry-After"] = str(e.retry_after_seconds)
        return web.json_response(e.to_dict(), status=e.http_status, headers=headers)
    except Exception:
        log.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response(
            {"error": "internal_error", "message": "Internal server error"}, status=500,
        )


# ── Request parsing ───────────────────────────────────────


async def _json_body(request: web.Request) -> dict[str, Any]:
    raw = await request.read()
    return _decode_object(raw)


def _decode_object(raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _str(body: dict, key: str, required: bool = True) -> str | None:
    value = body.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip()


def _int(value: Any, key: str, required: bool = True) -> int | None:
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        # str.isdigit also admits superscripts and other non-ASCII digits
        if text.isascii() and text.isdigit():
            return int(text)
    raise ValidationError(f"{key} must be an integer")


def _amount(body: dict) -> str | int:
    value = body.get("amount", body.get("amountUsdc"))
    if value is None:
        raise ValidationError("amount is required")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError("amount must be a decimal string")
    return value


@dataclass(frozen=True)
class PrepareRequest:
    recipient: str
    amount: str | int
    funding_source: str
    region: str | None
    chain_id: int | None
    memo: str | None

    @classmethod
    def from_body(cls, body: dict) -> PrepareRequest:
        return cls(
            recipient=_str(body, "recipient"),
            amount=_amount(body),
            funding_source=_str(body, "fundingSource", required=False) or "wallet",
            region=_str(body, "region", required=False),
            chain_id=_int(body.get("chainId"), "chainId", required=False),
            memo=_str(body, "memo", required=False),
        )


@dataclass(frozen=True)
class ConfirmLockRequest:
    escrow_tx_hash: str
    transfer_id: str

    @classmethod
    def from_body(cls, body: dict) -> ConfirmLockRequest:
        return cls(
            escrow_tx_hash=_str(body, "escrowTxHash"),
            transfer_id=_str(body, "transferId"),
        )


@dataclass(frozen=True)
class StartClaimRequest:
    claim_token: str

    @classmethod
    def from_body(cls, body: dict) -> StartClaimRequest:
        return cls(claim_token=_str(body, "claimToken"))


@dataclass(frozen=True)
class VerifyOtpRequest:
    claim_session_id: int
    otp: str

    @classmethod
    def from_body(cls, body: dict) -> VerifyOtpRequest:
        return cls(
            claim_session_id=_int(body.get("claimSessionId"), "claimSessionId"),
            otp=_str(body, "otp"),
        )


@dataclass(frozen=True)
class ResendOtpRequest:
    claim_session_id: int

    @classmethod
    def from_body(cls, body: dict) -> ResendOtpRequest:
        return cls(claim_session_id=_int(body.get("claimSessionId"), "claimSessionId"))


@dataclass(frozen=True)
class PayoutRequest:
    claim_session_token: str
    recipient_wallet: str | None
    external_account_id: str | None
    customer_id: str | None

    @classmethod
    def from_body(cls, body: dict) -> PayoutRequest:
        return cls(
            claim_session_token=_str(body, "claimSessionToken"),
            recipient_wallet=_str(body, "recipientWallet", required=False),
            external_account_id=_str(body, "externalAccountId", required=False),
            customer_id=_str(body, "customerId", required=False),
        )


def _row_id(request: web.Request) -> int:
    return _int(request.match_info["id"], "id")


def _client_ip(request: web.Request) -> str:
    return request.remote or "unknown"


# ── Application ───────────────────────────────────────────


class SendApi:
    """Route handlers bound to the wired orchestrators."""

    def __init__(
        self,
        cfg: ServiceConfig,
        store: LedgerStore,
        transfers: TransferOrchestrator,
        claims: ClaimOrchestrator,
        payouts: PayoutDispatcher,
        reconciler: WebhookReconciler,
        webhook_auth: WebhookAuthenticator,
        sender_auth: HeaderSenderAuthenticator,
        limiter: RateLimiter,
    ) -> None:
        self._cfg = cfg
        self._store = store
        self._transfers = transfers
        self._claims = claims
        self._payouts = payouts
        self._reconciler = reconciler
        self._webhook_auth = webhook_auth
        self._sender_auth = sender_auth
        self._limiter = limiter

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/healthz", self.healthz)
        app.router.add_post("/api/send/transfers/prepare", self.prepare)
        app.router.add_post("/api/send/transfers/{id}/confirm-lock", self.confirm_lock)
        app.router.add_get("/api/send/transfers", self.list_transfers)
        app.router.add_get("/api/send/transfers/{id}", self.get_transfer)
        app.router.add_post("/api/send/claim/start", self.start_claim)
        app.router.add_post("/api/send/claim/verify-otp", self.verify_otp)
        app.router.add_post("/api/send/claim/resend-otp", self.resend_otp)
        app.router.add_post("/api/send/claim/payout/{method}", self.payout)
        app.router.add_post("/api/send/webhooks/payout", self.payout_webhook)
        app.router.add_post("/api/send/webhooks/bridge", self.bridge_webhook)
        return app

    async def _throttle(self, endpoint: str, request: web.Request, business_key: object) -> None:
        decision = await self._limiter.hit(endpoint, f"{_client_ip(request)}:{business_key}")
        if not decision.allowed:
            log.info("Rate limited %s for %s", endpoint, _client_ip(request))
            raise RateLimitedError(
                "Too many requests; try again later",
                retry_after_seconds=decision.retry_after_seconds,
            )

    def _methods(self, region: str) -> list[PayoutMethod]:
        return self._cfg.payout_methods_for(region)

    # ── Health ────────────────────────────────────────────

    async def healthz(self, request: web.Request) -> web.Response:
        healthy = await self._store.ping()
        return web.json_response(
            {"ok": healthy, "environment": self._cfg.environment},
            status=200 if healthy else 503,
        )

    # ── Sender ────────────────────────────────────────────

    async def prepare(self, request: web.Request) -> web.Response:
        sender = self._sender_auth.authenticate(request.headers)
        req = PrepareRequest.from_body(await _json_body(request))
        result = await self._transfers.prepare(
            sender,
            req.recipient,
            req.amount,
            req.funding_source,
            region=req.region,
            chain_id=req.chain_id,
            memo=req.memo,
        )
        return web.json_response(
            prepared_view(result, self._methods(result.transfer.region)), status=201,
        )

    async def confirm_lock(self, request: web.Request) -> web.Response:
        sender = self._sender_auth.authenticate(request.headers)
        row_id = _row_id(request)
        req = ConfirmLockRequest.from_body(await _json_body(request))
        result = await self._transfers.confirm_lock(
            row_id, sender, req.escrow_tx_hash, req.transfer_id,
        )
        return web.json_response(lock_confirmation_view(result, self._methods(result.transfer.region)))

    async def list_transfers(self, request: web.Request) -> web.Response:
        sender = self._sender_auth.authenticate(request.headers)
        limit = _int(request.query.get("limit"), "limit", required=False) or 50
        transfers = await self._transfers.list_transfers(sender, limit)
        return web.json_response(
            {"transfers": [transfer_view(t, self._methods(t.region)) for t in transfers]}
        )

    async def get_transfer(self, request: web.Request) -> web.Response:
        sender = self._sender_auth.authenticate(request.headers)
        transfer = await self._transfers.get_transfer(_row_id(request), sender)
        return web.json_response({"transfer": transfer_view(transfer, self._methods(transfer.region))})

    # ── Claim ─────────────────────────────────────────────

    async def start_claim(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        await self._throttle("claim_start", request, body.get("claimToken", ""))
        req = StartClaimRequest.from_body(body)
        result = await self._claims.start_claim(req.claim_token)
        return web.json_response(
            claim_started_view(result, self._methods(result.transfer.region)), status=201,
        )

    async def verify_otp(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        await self._throttle("verify_otp", request, body.get("claimSessionId", ""))
        req = VerifyOtpRequest.from_body(body)
        result = await self._claims.verify_otp(req.claim_session_id, req.otp)
        return web.json_response(otp_verified_view(result))

    async def resend_otp(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        await self._throttle("resend_otp", request, body.get("claimSessionId", ""))
        req = ResendOtpRequest.from_body(body)
        result = await self._claims.resend_otp(req.claim_session_id)
        return web.json_response(otp_resent_view(result))

    async def payout(self, request: web.Request) -> web.Response:
        try:
            method = PayoutMethod(request.match_info["method"].upper())
        except ValueError:
            raise web.HTTPNotFound() from None
        body = await _json_body(request)
        await self._throttle("payout", request, body.get("claimSessionToken", ""))
        req = PayoutRequest.from_body(body)
        outcome = await self._payouts.payout(
            req.claim_session_token,
            method,
            recipient_wallet=req.recipient_wallet,
            external_account_id=req.external_account_id,
            customer_id=req.customer_id,
        )
        return web.json_response(payout_view(outcome))

    # ── Webhooks ──────────────────────────────────────────

    async def payout_webhook(self, request: web.Request) -> web.Response:
        self._webhook_auth.authenticate_payout(request.headers.get(SECRET_HEADER))
        outcome = await self._reconciler.handle_payout_webhook(await _json_body(request))
        return web.json_response(webhook_view(outcome))

    async def bridge_webhook(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self._webhook_auth.authenticate_bridge(
            raw,
            request.headers.get(SIGNATURE_HEADER),
            request.headers.get(SECRET_HEADER),
        )
        outcome = await self._reconciler.handle_bridge_webhook(_decode_object(raw))
        return web.json_response(webhook_view(outcome))
