"""SQLite implementation of the LedgerStore protocol."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import aiosqlite

from claimsend.clock import utcnow
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
    FundingSource,
    PayoutMethod,
    PayoutStatus,
    RecipientType,
    TransferStatus,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
-- Send-money requests
CREATE TABLE IF NOT EXISTS transfers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_id TEXT NOT NULL UNIQUE,
    sender_wallet TEXT NOT NULL,
    recipient_type TEXT NOT NULL CHECK (recipient_type IN ('email', 'phone')),
    recipient_contact_encrypted TEXT NOT NULL,
    recipient_contact_hash TEXT NOT NULL,
    recipient_hint_hash TEXT NOT NULL,
    principal_usdc INTEGER NOT NULL CHECK (principal_usdc > 0),
    sponsor_fee_usdc INTEGER NOT NULL CHECK (sponsor_fee_usdc >= 0),
    total_locked_usdc INTEGER NOT NULL,
    funding_source TEXT NOT NULL,
    region TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'PREPARED',
    expires_at TEXT NOT NULL,
    claim_token_hash TEXT UNIQUE,
    escrow_tx_hash TEXT,
    memo TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (total_locked_usdc = principal_usdc + sponsor_fee_usdc)
);
CREATE INDEX IF NOT EXISTS idx_transfers_sender_created
    ON transfers(sender_wallet, created_at);

-- OTP challenges
CREATE TABLE IF NOT EXISTS claim_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_row_id INTEGER NOT NULL REFERENCES transfers(id),
    otp_hash TEXT NOT NULL,
    otp_expires_at TEXT NOT NULL,
    otp_attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    resend_count INTEGER NOT NULL DEFAULT 0,
    last_otp_sent_at TEXT NOT NULL,
    session_token_hash TEXT UNIQUE,
    status TEXT NOT NULL DEFAULT 'OTP_SENT',
    verified_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_claim_sessions_transfer ON claim_sessions(transfer_row_id);

-- Payout rail invocations
CREATE TABLE IF NOT EXISTS payout_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_row_id INTEGER NOT NULL REFERENCES transfers(id),
    claim_session_id INTEGER NOT NULL REFERENCES claim_sessions(id),
    method TEXT NOT NULL,
    provider TEXT NOT NULL,
    provider_reference TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PROCESSING',
    failure_code TEXT,
    failure_reason TEXT,
    wallet_tx_hash TEXT,
    destination_wallet TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (provider, provider_reference)
);
CREATE INDEX IF NOT EXISTS idx_payout_attempts_transfer
    ON payout_attempts(transfer_row_id, status);

-- Outbound message audit trail
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_row_id INTEGER NOT NULL REFERENCES transfers(id),
    kind TEXT NOT NULL,
    channel TEXT NOT NULL,
    provider TEXT NOT NULL,
    destination_hash TEXT NOT NULL,
    message_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_transfer ON notifications(transfer_row_id);
"""

# Columns each compare-and-swap method is allowed to write
_TRANSFER_FIELDS = {"status", "claim_token_hash", "escrow_tx_hash", "claimed_at"}
_SESSION_FIELDS = {
    "status", "otp_hash", "otp_expires_at", "otp_attempts", "resend_count",
    "last_otp_sent_at", "session_token_hash", "verified_at", "completed_at",
}
_PAYOUT_FIELDS = {
    "status", "provider", "provider_reference", "failure_code",
    "failure_reason", "wallet_tx_hash",
}

ACTIVE_PAYOUT_STATUSES = (PayoutStatus.PROCESSING, PayoutStatus.SUCCESS)

MAX_WRITE_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.1  # seconds; doubled per attempt


def _iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def _statuses(expected: Any) -> tuple[str, ...]:
    if isinstance(expected, str):
        return (_db_value(expected),)
    return tuple(_db_value(s) for s in expected)


def _is_transient(exc: Exception) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class SQLiteLedgerStore:
    """SQLite-backed implementation of the LedgerStore protocol.

    All writes are serialized through one lock on the connection and
    retried on transient lock/busy errors.
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] | None = None) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._clock = clock or utcnow

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        if self._db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute("PRAGMA busy_timeout = 5000")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.info("Ledger store ready at %s", self._db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    async def ping(self) -> bool:
        if self._db is None:
            return False
        async with self.db.execute("SELECT 1") as cur:
            return await cur.fetchone() is not None

    def _now(self) -> str:
        return _iso(self._clock())

    async def _write(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op`` under the write lock and commit, retrying transient errors."""
        async with self._lock:
            for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
                try:
                    result = await op()
                    await self.db.commit()
                    return result
                except aiosqlite.OperationalError as exc:
                    await self.db.rollback()
                    if attempt >= MAX_WRITE_ATTEMPTS or not _is_transient(exc):
                        raise
                    delay = RETRY_BASE_DELAY * 2 ** attempt
                    log.warning(
                        "Transient SQLite error (attempt %d/%d), retrying in %.1fs: %s",
                        attempt, MAX_WRITE_ATTEMPTS, delay, exc,
                    )
                    await asyncio.sleep(delay)
                except Exception:
                    await self.db.rollback()
                    raise
        raise AssertionError("unreachable")

    async def _cas_update(
        self,
        table: str,
        allowed: set[str],
        row_id: int,
        expected: Iterable[str],
        fields: dict[str, Any],
        extra_where: str = "",
        extra_params: tuple = (),
    ) -> bool:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update {table} columns: {sorted(unknown)}")
        assignments = {k: _db_value(v) for k, v in fields.items() if v is not None}
        assignments["updated_at"] = self._now()

        statuses = tuple(expected)
        set_sql = ", ".join(f"{col}=?" for col in assignments)
        placeholders = ", ".join("?" for _ in statuses)
        sql = (
            f"UPDATE {table} SET {set_sql}"
            f" WHERE id=? AND status IN ({placeholders}){extra_where}"
        )
        params = (*assignments.values(), row_id, *statuses, *extra_params)

        async def op() -> int:
            cur = await self.db.execute(sql, params)
            return cur.rowcount

        return await self._write(op) == 1

    # ── Transfers ──────────────────────────────────────────

    async def create_transfer(self, new: NewTransfer) -> Transfer:
        now = self._now()

        async def op() -> int:
            cur = await self.db.execute(
                "INSERT INTO transfers"
                " (transfer_id, sender_wallet, recipient_type, recipient_contact_encrypted,"
                "  recipient_contact_hash, recipient_hint_hash, principal_usdc,"
                "  sponsor_fee_usdc, total_locked_usdc, funding_source, region, chain_id,"
                "  status, expires_at, memo, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    new.transfer_id, new.sender_wallet.lower(), new.recipient_type.value,
                    new.recipient_contact_encrypted, new.recipient_contact_hash,
                    new.recipient_hint_hash, new.principal_usdc, new.sponsor_fee_usdc,
                    new.total_locked_usdc, new.funding_source.value, new.region,
                    new.chain_id, TransferStatus.PREPARED.value, _iso(new.expires_at),
                    new.memo, now, now,
                ),
            )
            return cur.lastrowid

        row_id = await self._write(op)
        transfer = await self.get_transfer(row_id)
        assert transfer is not None
        return transfer

    async def get_transfer(self, row_id: int) -> Transfer | None:
        async with self.db.execute("SELECT * FROM transfers WHERE id=?", (row_id,)) as cur:
            row = await cur.fetchone()
            return _row_to_transfer(row) if row else None

    async def get_sender_transfer(self, row_id: int, sender: str) -> Transfer | None:
        async with self.db.execute(
            "SELECT * FROM transfers WHERE id=? AND sender_wallet=?",
            (row_id, sender.lower()),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_transfer(row) if row else None

    async def list_sender_transfers(self, sender: str, limit: int = 50) -> list[Transfer]:
        limit = max(1, min(int(limit), 100))
        async with self.db.execute(
            "SELECT * FROM transfers WHERE sender_wallet=?"
            " ORDER BY created_at DESC, id DESC LIMIT ?",
            (sender.lower(), limit),
        ) as cur:
            return [_row_to_transfer(row) async for row in cur]

    async def get_transfer_by_claim_token_hash(self, claim_token_hash: str) -> Transfer | None:
        async with self.db.execute(
            "SELECT * FROM transfers WHERE claim_token_hash=?", (claim_token_hash,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_transfer(row) if row else None

    async def sum_sender_principal(self, sender: str, start: datetime, end: datetime) -> int:
        async with self.db.execute(
            "SELECT COALESCE(SUM(principal_usdc), 0) AS s FROM transfers"
            " WHERE sender_wallet=? AND created_at >= ? AND created_at < ? AND status != ?",
            (sender.lower(), _iso(start), _iso(end), TransferStatus.FAILED.value),
        ) as cur:
            row = await cur.fetchone()
            return int(row["s"]) if row else 0

    async def update_transfer_if_status(self, row_id: int, expected, **fields: Any) -> bool:
        return await self._cas_update(
            "transfers", _TRANSFER_FIELDS, row_id, _statuses(expected), fields,
        )

    # ── Claim sessions ─────────────────────────────────────

    async def create_claim_session(
        self,
        transfer_row_id: int,
        otp_hash: str,
        otp_expires_at: datetime,
        max_attempts: int,
    ) -> ClaimSession:
        now = self._now()

        async def op() -> int:
            cur = await self.db.execute(
                "INSERT INTO claim_sessions"
                " (transfer_row_id, otp_hash, otp_expires_at, otp_attempts, max_attempts,"
                "  resend_count, last_otp_sent_at, status, created_at, updated_at)"
                " VALUES (?, ?, ?, 0, ?, 0, ?, ?, ?, ?)",
                (
                    transfer_row_id, otp_hash, _iso(otp_expires_at), max_attempts,
                    now, ClaimSessionStatus.OTP_SENT.value, now, now,
                ),
            )
            return cur.lastrowid

        session_id = await self._write(op)
        session = await self.get_claim_session(session_id)
        assert session is not None
        return session

    async def finalize_claim_session_otp(self, session_id: int, otp_hash: str) -> None:
        async def op() -> None:
            await self.db.execute(
                "UPDATE claim_sessions SET otp_hash=?, updated_at=? WHERE id=?",
                (otp_hash, self._now(), session_id),
            )

        await self._write(op)

    async def get_claim_session(self, session_id: int) -> ClaimSession | None:
        async with self.db.execute(
            "SELECT * FROM claim_sessions WHERE id=?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_session(row) if row else None

    async def get_session_context(self, session_id: int) -> SessionContext | None:
        session = await self.get_claim_session(session_id)
        return await self._with_transfer(session)

    async def get_session_context_by_token_hash(
        self, session_token_hash: str
    ) -> SessionContext | None:
        async with self.db.execute(
            "SELECT * FROM claim_sessions WHERE session_token_hash=?", (session_token_hash,)
        ) as cur:
            row = await cur.fetchone()
        return await self._with_transfer(_row_to_session(row) if row else None)

    async def _with_transfer(self, session: ClaimSession | None) -> SessionContext | None:
        if session is None:
            return None
        transfer = await self.get_transfer(session.transfer_row_id)
        if transfer is None:
            return None
        return SessionContext(session=session, transfer=transfer)

    async def update_claim_session_if_status(
        self,
        session_id: int,
        expected,
        *,
        expected_otp_attempts: int | None = None,
        **fields: Any,
    ) -> bool:
        extra_where, extra_params = "", ()
        if expected_otp_attempts is not None:
            extra_where, extra_params = " AND otp_attempts=?", (expected_otp_attempts,)
        return await self._cas_update(
            "claim_sessions", _SESSION_FIELDS, session_id, _statuses(expected), fields,
            extra_where, extra_params,
        )

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
        active = tuple(s.value for s in ACTIVE_PAYOUT_STATUSES)

        async def op() -> tuple[int, bool]:
            # IMMEDIATE takes the write lock up front so the check and the
            # insert see the same snapshot across processes.
            await self.db.execute("BEGIN IMMEDIATE")
            async with self.db.execute(
                "SELECT id FROM payout_attempts"
                " WHERE transfer_row_id=? AND status IN (?, ?) ORDER BY id LIMIT 1",
                (transfer_row_id, *active),
            ) as cur:
                existing = await cur.fetchone()
            if existing:
                return existing["id"], False

            now = self._now()
            cur = await self.db.execute(
                "INSERT INTO payout_attempts"
                " (transfer_row_id, claim_session_id, method, provider, provider_reference,"
                "  status, destination_wallet, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    transfer_row_id, claim_session_id, method.value, provider,
                    provider_reference, PayoutStatus.PROCESSING.value,
                    destination_wallet, now, now,
                ),
            )
            return cur.lastrowid, True

        attempt_id, created = await self._write(op)
        attempt = await self.get_payout_attempt(attempt_id)
        assert attempt is not None
        return attempt, created

    async def get_payout_attempt(self, attempt_id: int) -> PayoutAttempt | None:
        async with self.db.execute(
            "SELECT * FROM payout_attempts WHERE id=?", (attempt_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_attempt(row) if row else None

    async def get_payout_attempt_by_reference(
        self, provider: str, provider_reference: str
    ) -> PayoutAttempt | None:
        async with self.db.execute(
            "SELECT * FROM payout_attempts WHERE provider=? AND provider_reference=?",
            (provider, provider_reference),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_attempt(row) if row else None

    async def list_payout_attempts(self, transfer_row_id: int) -> list[PayoutAttempt]:
        async with self.db.execute(
            "SELECT * FROM payout_attempts WHERE transfer_row_id=? ORDER BY id",
            (transfer_row_id,),
        ) as cur:
            return [_row_to_attempt(row) async for row in cur]

    async def update_payout_attempt_if_status(
        self, attempt_id: int, expected, **fields: Any
    ) -> bool:
        return await self._cas_update(
            "payout_attempts", _PAYOUT_FIELDS, attempt_id, _statuses(expected), fields,
        )

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
        now = self._now()

        async def op() -> int:
            cur = await self.db.execute(
                "INSERT INTO notifications"
                " (transfer_row_id, kind, channel, provider, destination_hash,"
                "  message_id, status, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (transfer_row_id, kind, channel, provider, destination_hash,
                 message_id, status, now),
            )
            return cur.lastrowid

        row_id = await self._write(op)
        return NotificationRecord(
            id=row_id,
            transfer_row_id=transfer_row_id,
            kind=kind,
            channel=channel,
            provider=provider,
            destination_hash=destination_hash,
            message_id=message_id,
            status=status,
            created_at=now,
        )

    async def list_notifications(self, transfer_row_id: int) -> list[NotificationRecord]:
        async with self.db.execute(
            "SELECT * FROM notifications WHERE transfer_row_id=? ORDER BY id",
            (transfer_row_id,),
        ) as cur:
            return [
                NotificationRecord(
                    id=row["id"],
                    transfer_row_id=row["transfer_row_id"],
                    kind=row["kind"],
                    channel=row["channel"],
                    provider=row["provider"],
                    destination_hash=row["destination_hash"],
                    message_id=row["message_id"],
                    status=row["status"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]


def _row_to_transfer(row: aiosqlite.Row) -> Transfer:
    return Transfer(
        id=row["id"],
        transfer_id=row["transfer_id"],
        sender_wallet=row["sender_wallet"],
        recipient_type=RecipientType(row["recipient_type"]),
        recipient_contact_encrypted=row["recipient_contact_encrypted"],
        recipient_contact_hash=row["recipient_contact_hash"],
        recipient_hint_hash=row["recipient_hint_hash"],
        principal_usdc=int(row["principal_usdc"]),
        sponsor_fee_usdc=int(row["sponsor_fee_usdc"]),
        total_locked_usdc=int(row["total_locked_usdc"]),
        funding_source=FundingSource(row["funding_source"]),
        region=row["region"],
        chain_id=row["chain_id"],
        status=TransferStatus(row["status"]),
        expires_at=_parse_dt(row["expires_at"]),
        claim_token_hash=row["claim_token_hash"],
        escrow_tx_hash=row["escrow_tx_hash"],
        memo=row["memo"],
        claimed_at=_parse_dt(row["claimed_at"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_session(row: aiosqlite.Row) -> ClaimSession:
    return ClaimSession(
        id=row["id"],
        transfer_row_id=row["transfer_row_id"],
        otp_hash=row["otp_hash"],
        otp_expires_at=_parse_dt(row["otp_expires_at"]),
        otp_attempts=row["otp_attempts"],
        max_attempts=row["max_attempts"],
        resend_count=row["resend_count"],
        last_otp_sent_at=_parse_dt(row["last_otp_sent_at"]),
        status=ClaimSessionStatus(row["status"]),
        session_token_hash=row["session_token_hash"],
        verified_at=_parse_dt(row["verified_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_attempt(row: aiosqlite.Row) -> PayoutAttempt:
    return PayoutAttempt(
        id=row["id"],
        transfer_row_id=row["transfer_row_id"],
        claim_session_id=row["claim_session_id"],
        method=PayoutMethod(row["method"]),
        provider=row["provider"],
        provider_reference=row["provider_reference"],
        status=PayoutStatus(row["status"]),
        failure_code=row["failure_code"],
        failure_reason=row["failure_reason"],
        wallet_tx_hash=row["wallet_tx_hash"],
        destination_wallet=row["destination_wallet"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
