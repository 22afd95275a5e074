"""Tests 81-90, 100-101: HTTP surface - routing, request parsing, error rendering, auth."""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from claimsend.api.auth import GATEWAY_SECRET_HEADER, HeaderSenderAuthenticator
from claimsend.errors import AuthenticationError
from claimsend.models.results import PayoutFailed, PayoutFallbackRequired, PayoutProcessing
from claimsend.models.status import PayoutMethod

from tests.conftest import WEBHOOK_SECRET
from tests.factories import OTHER_SENDER, SENDER, tx_hash

SENDER_HEADERS = {"X-Sender-Wallet": SENDER}


@pytest.fixture
async def client(service):
    async with TestClient(TestServer(service.api.build_app())) as c:
        yield c


async def _locked(client) -> tuple[dict, str]:
    """Prepare and confirm over HTTP. Returns (transfer view, claim token)."""
    resp = await client.post(
        "/api/send/transfers/prepare",
        json={"recipient": "alice@example.com", "amount": "12.00", "fundingSource": "wallet"},
        headers=SENDER_HEADERS,
    )
    assert resp.status == 201
    prepared = await resp.json()
    transfer = prepared["transfer"]

    resp = await client.post(
        f"/api/send/transfers/{transfer['id']}/confirm-lock",
        json={"escrowTxHash": tx_hash(500), "transferId": transfer["transferId"]},
        headers=SENDER_HEADERS,
    )
    assert resp.status == 200
    confirmed = await resp.json()
    return confirmed["transfer"], confirmed["claimUrl"].rsplit("/", 1)[1]


async def _verified(client, notifier) -> tuple[dict, str]:
    transfer, claim_token = await _locked(client)
    resp = await client.post("/api/send/claim/start", json={"claimToken": claim_token})
    session_id = (await resp.json())["claimSessionId"]
    resp = await client.post(
        "/api/send/claim/verify-otp",
        json={"claimSessionId": session_id, "otp": notifier.last_otp},
    )
    return transfer, (await resp.json())["claimSessionToken"]


# ── Test 81: Health check ─────────────────────────────────────────


async def test_healthz(client):
    resp = await client.get("/healthz")
    assert resp.status == 200
    assert await resp.json() == {"ok": True, "environment": "test"}


# ── Test 82: End-to-end send and claim ────────────────────────────


async def test_send_and_claim_flow(client, mock_notifier):
    resp = await client.post(
        "/api/send/transfers/prepare",
        json={"recipient": "alice@example.com", "amount": "12.00", "memo": "lunch"},
        headers=SENDER_HEADERS,
    )
    assert resp.status == 201
    prepared = await resp.json()
    assert prepared["transfer"]["principalUsdc"] == "12"
    assert prepared["transfer"]["sponsorFeeUsdc"] == "0.5"
    assert prepared["transfer"]["totalLockedUsdc"] == "12.5"
    assert prepared["transfer"]["status"] == "PREPARED"
    assert prepared["transfer"]["fundingSource"] == "WALLET_USDC"
    assert prepared["recipientMasked"] == "al***@example.com"
    assert prepared["limits"] == {"dailyCapUsdc": "25000", "dailyUsedUsdc": "12"}
    transfer_id = prepared["transfer"]["id"]

    resp = await client.post(
        f"/api/send/transfers/{transfer_id}/confirm-lock",
        json={"escrowTxHash": tx_hash(500), "transferId": prepared["transfer"]["transferId"]},
        headers=SENDER_HEADERS,
    )
    confirmed = await resp.json()
    assert confirmed["transfer"]["status"] == "LOCK_CONFIRMED"
    assert "notificationWarning" not in confirmed
    claim_token = confirmed["claimUrl"].rsplit("/", 1)[1]

    resp = await client.post("/api/send/claim/start", json={"claimToken": claim_token})
    assert resp.status == 201
    started = await resp.json()
    assert started["maxAttempts"] == 5
    assert "otp" not in started
    assert mock_notifier.last_otp not in await resp.text()

    resp = await client.post(
        "/api/send/claim/verify-otp",
        json={"claimSessionId": str(started["claimSessionId"]), "otp": mock_notifier.last_otp},
    )
    assert resp.status == 200
    verified = await resp.json()
    assert verified["payoutMethods"] == ["DEBIT", "BANK", "WALLET"]

    resp = await client.post(
        "/api/send/claim/payout/bank",
        json={"claimSessionToken": verified["claimSessionToken"]},
    )
    assert resp.status == 200
    payout = await resp.json()
    assert payout["success"] is True
    assert payout["status"] == "SUCCESS"
    assert payout["method"] == "BANK"
    assert "duplicate" not in payout
    assert "walletTxHash" not in payout

    resp = await client.get(f"/api/send/transfers/{transfer_id}", headers=SENDER_HEADERS)
    transfer = (await resp.json())["transfer"]
    assert transfer["status"] == "CLAIMED_BANK"
    assert transfer["claimedAt"] is not None
    assert transfer["memo"] == "lunch"

    resp = await client.get("/api/send/transfers?limit=5", headers=SENDER_HEADERS)
    assert [t["id"] for t in (await resp.json())["transfers"]] == [transfer_id]


# ── Test 83: Malformed requests ───────────────────────────────────


async def test_bad_requests(client):
    resp = await client.post("/api/send/transfers/prepare", json={"recipient": "alice@example.com"})
    assert resp.status == 401
    assert (await resp.json())["error"] == "unauthorized"

    resp = await client.post(
        "/api/send/transfers/prepare", data=b"{not json", headers=SENDER_HEADERS,
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "validation_error"

    resp = await client.post("/api/send/transfers/prepare", json=["a"], headers=SENDER_HEADERS)
    assert resp.status == 400

    resp = await client.post(
        "/api/send/transfers/prepare",
        json={"recipient": "alice@example.com", "amount": 12.5},
        headers=SENDER_HEADERS,
    )
    assert resp.status == 400

    resp = await client.post("/api/send/claim/verify-otp", json={"claimSessionId": True, "otp": "123456"})
    assert resp.status == 400

    resp = await client.get("/api/send/transfers?limit=abc", headers=SENDER_HEADERS)
    assert resp.status == 400


# ── Test 84: Transfers are private to their sender ────────────────


async def test_transfer_scoped_to_sender(client):
    transfer, _ = await _locked(client)

    resp = await client.get(
        f"/api/send/transfers/{transfer['id']}", headers={"X-Sender-Wallet": OTHER_SENDER},
    )
    assert resp.status == 404
    assert (await resp.json())["error"] == "not_found"

    resp = await client.get("/api/send/transfers", headers={"X-Sender-Wallet": OTHER_SENDER})
    assert (await resp.json())["transfers"] == []


# ── Test 85: Domain errors carry their details ────────────────────


async def test_error_details_rendered(client, mock_notifier):
    _, claim_token = await _locked(client)
    resp = await client.post("/api/send/claim/start", json={"claimToken": claim_token})
    session_id = (await resp.json())["claimSessionId"]
    wrong = "000000" if mock_notifier.last_otp != "000000" else "111111"

    resp = await client.post(
        "/api/send/claim/verify-otp", json={"claimSessionId": session_id, "otp": wrong},
    )
    assert resp.status == 400
    assert await resp.json() == {
        "error": "invalid_otp", "message": "Incorrect code", "remaining_attempts": 4,
    }

    resp = await client.post("/api/send/claim/resend-otp", json={"claimSessionId": session_id})
    assert resp.status == 429
    assert resp.headers["Retry-After"] == "60"


# ── Test 86: Rate limiting is keyed by client and business key ────


async def test_rate_limited(client, mock_limiter):
    mock_limiter.allowed = False

    resp = await client.post("/api/send/claim/start", json={"claimToken": "t" * 32})
    assert resp.status == 429
    assert resp.headers["Retry-After"] == "30"
    body = await resp.json()
    assert body["error"] == "rate_limited"
    assert body["retry_after_seconds"] == 30
    assert mock_limiter.hit_calls == [("claim_start", "127.0.0.1:" + "t" * 32)]


# ── Test 87: Payout routing ───────────────────────────────────────


async def test_payout_routes(client, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.DEBIT].results = [
        PayoutFallbackRequired(
            provider="mock-debit", failure_code="DEBIT_INELIGIBLE", failure_reason="Ineligible",
        ),
    ]
    _, token = await _verified(client, mock_notifier)

    resp = await client.post("/api/send/claim/payout/paypal", json={"claimSessionToken": token})
    assert resp.status == 404

    resp = await client.post("/api/send/claim/payout/debit", json={"claimSessionToken": token})
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is False
    assert body["status"] == "DEBIT_FALLBACK_REQUIRED"
    assert body["fallbackMethod"] == "BANK"

    resp = await client.post("/api/send/claim/payout/bank", json={"claimSessionToken": "z" * 32})
    assert resp.status == 401


# ── Test 88: Payout webhook ───────────────────────────────────────


async def test_payout_webhook_route(client, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.BANK].results = [
        PayoutProcessing(provider="mock-bank", provider_reference="ach_http_1"),
    ]
    _, token = await _verified(client, mock_notifier)
    resp = await client.post("/api/send/claim/payout/bank", json={"claimSessionToken": token})
    assert (await resp.json())["status"] == "PROCESSING"

    payload = {"provider": "mock-bank", "providerReference": "ach_http_1", "status": "SUCCEEDED"}
    resp = await client.post("/api/send/webhooks/payout", json=payload)
    assert resp.status == 401

    resp = await client.post(
        "/api/send/webhooks/payout", json=payload, headers={"X-Send-Webhook-Secret": WEBHOOK_SECRET},
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["ok"] is True
    assert body["applied"] is True
    assert body["transferStatus"] == "CLAIMED_BANK"

    resp = await client.post(
        "/api/send/webhooks/bridge",
        json={"event_object": {"id": "tr_unknown", "state": "payment_processed"}},
        headers={"X-Send-Webhook-Secret": WEBHOOK_SECRET},
    )
    assert resp.status == 404


# ── Test 89: Unexpected failures are opaque ───────────────────────


async def test_unhandled_error_is_500(client, service, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("database exploded")

    monkeypatch.setattr(service.transfers, "list_transfers", boom)
    resp = await client.get("/api/send/transfers", headers=SENDER_HEADERS)
    assert resp.status == 500
    body = await resp.json()
    assert body == {"error": "internal_error", "message": "Internal server error"}


# ── Test 90: Gateway-forwarded sender identity ────────────────────


def test_sender_authenticator():
    auth = HeaderSenderAuthenticator()
    assert auth.authenticate({"X-Sender-Wallet": SENDER.upper().replace("0X", "0x")}) == SENDER
    with pytest.raises(AuthenticationError):
        auth.authenticate({})
    with pytest.raises(AuthenticationError):
        auth.authenticate({"X-Sender-Wallet": "alice"})

    gated = HeaderSenderAuthenticator("X-Wallet", gateway_secret="gw-secret")
    assert gated.authenticate({"X-Wallet": SENDER, GATEWAY_SECRET_HEADER: "gw-secret"}) == SENDER
    with pytest.raises(AuthenticationError):
        gated.authenticate({"X-Wallet": SENDER})
    with pytest.raises(AuthenticationError):
        gated.authenticate({"X-Wallet": SENDER, GATEWAY_SECRET_HEADER: "wrong"})


# ── Test 100: Only ASCII digits parse as integers ─────────────────


@pytest.mark.parametrize("raw", ["²", "١٢", "12³"])
async def test_non_ascii_digits_rejected(client, raw):
    resp = await client.post(
        "/api/send/claim/verify-otp", json={"claimSessionId": raw, "otp": "123456"},
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "validation_error"

    resp = await client.get(f"/api/send/transfers/{raw}", headers=SENDER_HEADERS)
    assert resp.status == 400
    assert (await resp.json())["error"] == "validation_error"

    resp = await client.get(f"/api/send/transfers?limit={raw}", headers=SENDER_HEADERS)
    assert resp.status == 400


# ── Test 101: A failed payout renders as 502 ──────────────────────


async def test_payout_failure_is_502(client, mock_notifier, mock_adapters):
    mock_adapters[PayoutMethod.BANK].results = [
        PayoutFailed(provider="mock-bank", failure_code="BANK_PAYOUT_ERROR", failure_reason="Account closed"),
    ]
    _, token = await _verified(client, mock_notifier)

    resp = await client.post("/api/send/claim/payout/bank", json={"claimSessionToken": token})
    assert resp.status == 502
    body = await resp.json()
    assert body["error"] == "BANK_PAYOUT_ERROR"
    assert body["message"] == "Account closed"
    assert isinstance(body["attempt_id"], int)
