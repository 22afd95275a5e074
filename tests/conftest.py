"""Shared fixtures for claimsend tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from claimsend.models.config import ServiceConfig
from claimsend.models.records import Transfer
from claimsend.models.status import PayoutMethod
from claimsend.service import ClaimSendService
from claimsend.storage.sqlite import SQLiteLedgerStore

from tests.factories import SENDER, tx_hash
from tests.mocks import (
    MockEscrowVerifier,
    MockNotifier,
    MockRateLimiter,
    MockSettlementAdapter,
)

TEST_KEY = "hex:" + "11" * 32
WEBHOOK_SECRET = "whsec_test_secret"
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def make_test_config(**overrides) -> ServiceConfig:
    """Build a ServiceConfig suitable for testing."""
    defaults = dict(
        environment="test",
        db_path=":memory:",
        claim_app_url="https://claim.example.com",
        contact_encryption_key=TEST_KEY,
        claim_token_pepper="test-token-pepper",
        otp_pepper="test-otp-pepper",
        webhook_secrets=[WEBHOOK_SECRET],
        skip_escrow_verification=True,
    )
    defaults.update(overrides)
    return ServiceConfig(**defaults)


@pytest.fixture
def test_config():
    """Default ServiceConfig for tests."""
    return make_test_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store(clock):
    """Initialized in-memory SQLiteLedgerStore."""
    s = SQLiteLedgerStore(":memory:", clock=clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def mock_notifier():
    return MockNotifier(succeed=True)


@pytest.fixture
def mock_escrow():
    return MockEscrowVerifier(valid=True)


@pytest.fixture
def mock_limiter():
    return MockRateLimiter(allowed=True)


@pytest.fixture
def mock_adapters():
    return {method: MockSettlementAdapter(method) for method in PayoutMethod}


@pytest.fixture
async def service(test_config, clock, mock_notifier, mock_escrow, mock_limiter, mock_adapters):
    """Fully wired ClaimSendService with mocked collaborators."""
    svc = ClaimSendService(
        test_config,
        clock=clock,
        notifier=mock_notifier,
        escrow=mock_escrow,
        limiter=mock_limiter,
        adapters=mock_adapters,
        second_legs={},
    )
    await svc.start()
    yield svc
    await svc.stop()


# ── Flow helpers ──────────────────────────────────────────


async def lock_transfer(
    service: ClaimSendService,
    sender: str = SENDER,
    recipient: str = "alice@example.com",
    amount: str = "12.00",
    **kwargs,
) -> tuple[Transfer, str]:
    """Prepare and confirm a transfer. Returns (transfer, claim token)."""
    prepared = await service.transfers.prepare(sender, recipient, amount, "wallet", **kwargs)
    confirmation = await service.transfers.confirm_lock(
        prepared.transfer.id,
        sender,
        tx_hash(1000 + prepared.transfer.id),
        prepared.transfer.transfer_id,
    )
    return confirmation.transfer, confirmation.claim_url.rsplit("/", 1)[1]


async def verified_session(
    service: ClaimSendService, notifier: MockNotifier, **kwargs
) -> tuple[Transfer, int, str]:
    """Lock a transfer and pass its OTP. Returns (transfer, session id, session token)."""
    transfer, claim_token = await lock_transfer(service, **kwargs)
    started = await service.claims.start_claim(claim_token)
    verified = await service.claims.verify_otp(started.claim_session_id, notifier.last_otp)
    return transfer, started.claim_session_id, verified.claim_session_token
