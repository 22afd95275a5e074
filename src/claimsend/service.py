"""Service wiring - builds the store, collaborators, orchestrators and HTTP app."""

from __future__ import annotations

import asyncio
import logging
import signal

from aiohttp import web

from claimsend.adapters.bridge import BridgeSettlementAdapter
from claimsend.adapters.escrow import JsonRpcEscrowVerifier
from claimsend.adapters.notifier import LoggingNotifier
from claimsend.adapters.relayer import ManagedRelayer
from claimsend.adapters.settlement import RelayerSettlementAdapter
from claimsend.api.auth import HeaderSenderAuthenticator
from claimsend.api.http import SendApi
from claimsend.clock import Clock, utcnow
from claimsend.crypto.claims import ClaimCrypto
from claimsend.crypto.contact import AesGcmContactCipher
from claimsend.crypto.webhooks import BridgeSignatureVerifier
from claimsend.errors import ConfigurationError
from claimsend.interfaces.collaborators import (
    EscrowVerifier,
    Notifier,
    RateLimiter,
    SettlementAdapter,
)
from claimsend.models.config import ServiceConfig
from claimsend.models.status import PayoutMethod
from claimsend.orchestrators import (
    ClaimOrchestrator,
    PayoutDispatcher,
    TransferOrchestrator,
    WebhookAuthenticator,
    WebhookReconciler,
)
from claimsend.ratelimit import InMemoryRateLimiter, RedisRateLimiter, rules_from_config
from claimsend.storage.sqlite import SQLiteLedgerStore

log = logging.getLogger(__name__)


def check_production_safety(cfg: ServiceConfig) -> None:
    """Refuse settings that are only acceptable in development."""
    if not cfg.is_production:
        if cfg.otp_bypass_code:
            log.warning("OTP bypass code is active; every claim accepts the same code")
        return
    if cfg.otp_bypass_code:
        raise ConfigurationError("OTP bypass code must not be set in production")
    if not cfg.claim_token_pepper or not cfg.otp_pepper:
        raise ConfigurationError("Claim token and OTP peppers are required in production")
    if cfg.skip_escrow_verification:
        raise ConfigurationError("Escrow verification cannot be skipped in production")
    if not cfg.relayer.signer_url:
        raise ConfigurationError("A relayer signer URL is required in production")


def build_settlement_adapters(
    cfg: ServiceConfig, relayer: ManagedRelayer
) -> tuple[dict[PayoutMethod, SettlementAdapter], dict[PayoutMethod, SettlementAdapter]]:
    """Return (primary adapters, second-leg adapters) per payout rail.

    With Bridge enabled, DEBIT and BANK go through Bridge first and the
    configured rail provider runs as the second leg once Bridge settles.
    """
    wallet = RelayerSettlementAdapter(PayoutMethod.WALLET, cfg.wallet_provider, relayer)
    rail_providers = {
        PayoutMethod.DEBIT: cfg.debit_provider,
        PayoutMethod.BANK: cfg.bank_provider,
    }

    if not cfg.bridge.enabled:
        primary: dict[PayoutMethod, SettlementAdapter] = {
            method: RelayerSettlementAdapter(
                method, provider, relayer,
                debit_max_usdc_micros=cfg.debit_max_usdc_micros,
                force_debit_fallback=cfg.force_debit_fallback,
            )
            for method, provider in rail_providers.items()
        }
        primary[PayoutMethod.WALLET] = wallet
        return primary, {}

    primary = {
        method: BridgeSettlementAdapter(method, cfg.bridge, relayer)
        for method in rail_providers
    }
    primary[PayoutMethod.WALLET] = wallet
    second_legs: dict[PayoutMethod, SettlementAdapter] = {
        method: RelayerSettlementAdapter(
            method, provider, None,
            debit_max_usdc_micros=cfg.debit_max_usdc_micros,
            force_debit_fallback=cfg.force_debit_fallback,
            release_escrow=False,
        )
        for method, provider in rail_providers.items()
    }
    return primary, second_legs


def build_rate_limiter(cfg: ServiceConfig) -> RateLimiter:
    rules = rules_from_config(cfg.rate_limits)
    if cfg.rate_limits.backend == "redis":
        return RedisRateLimiter.from_url(
            cfg.rate_limits.redis_url, rules, key_prefix=cfg.rate_limits.key_prefix,
        )
    return InMemoryRateLimiter(rules)


class ClaimSendService:
    """Send-to-contact service.

    Owns the ledger store and every collaborator. Notifier, escrow verifier,
    rate limiter and settlement adapters can be swapped in for tests.
    """

    def __init__(
        self,
        cfg: ServiceConfig,
        *,
        clock: Clock = utcnow,
        notifier: Notifier | None = None,
        escrow: EscrowVerifier | None = None,
        limiter: RateLimiter | None = None,
        adapters: dict[PayoutMethod, SettlementAdapter] | None = None,
        second_legs: dict[PayoutMethod, SettlementAdapter] | None = None,
    ) -> None:
        check_production_safety(cfg)
        self._cfg = cfg

        # Core components
        self.store = SQLiteLedgerStore(cfg.db_path, clock=clock)
        self.crypto = ClaimCrypto(cfg.claim_token_pepper, cfg.otp_pepper, cfg.otp_bypass_code)
        self.cipher = AesGcmContactCipher(cfg.contact_encryption_key)
        self.notifier = notifier or LoggingNotifier(self.store)
        self.escrow = escrow or JsonRpcEscrowVerifier(
            cfg.rpc_urls,
            escrow_addresses=cfg.escrow_addresses,
            create_selector=cfg.escrow_create_selector,
            skip_verification=cfg.skip_escrow_verification,
            timeout=cfg.rpc_timeout,
        )
        self.relayer = ManagedRelayer(cfg.relayer, escrow_addresses=cfg.escrow_addresses)
        if self.relayer.simulated:
            log.warning("No relayer signer configured; escrow claims are simulated")
        self.limiter = limiter or build_rate_limiter(cfg)

        default_adapters, default_second_legs = build_settlement_adapters(cfg, self.relayer)
        self.adapters = adapters if adapters is not None else default_adapters
        self.second_legs = second_legs if second_legs is not None else default_second_legs

        # Orchestrators
        self.transfers = TransferOrchestrator(
            self.store, cfg, self.crypto, self.cipher, self.escrow, self.notifier, clock,
        )
        self.claims = ClaimOrchestrator(
            self.store, cfg, self.crypto, self.cipher, self.notifier, clock,
        )
        self.payouts = PayoutDispatcher(
            self.store, cfg, self.claims, self.cipher, self.adapters, clock,
        )
        self.reconciler = WebhookReconciler(
            self.store,
            self.cipher,
            second_legs=self.second_legs,
            bridge_provider=cfg.bridge.provider_name,
            first_leg_final=cfg.bridge.first_leg_final,
            clock=clock,
        )
        bridge_verifier = None
        if cfg.bridge.webhook_public_keys:
            bridge_verifier = BridgeSignatureVerifier(
                cfg.bridge.webhook_public_keys, cfg.bridge.webhook_max_age_seconds,
            )
        self.webhook_auth = WebhookAuthenticator(cfg.webhook_secrets, bridge_verifier)
        self.sender_auth = HeaderSenderAuthenticator(cfg.sender_header, cfg.sender_gateway_secret)

        self.api = SendApi(
            cfg,
            self.store,
            self.transfers,
            self.claims,
            self.payouts,
            self.reconciler,
            self.webhook_auth,
            self.sender_auth,
            self.limiter,
        )

    async def start(self) -> None:
        await self.store.initialize()

    async def stop(self) -> None:
        if isinstance(self.limiter, RedisRateLimiter):
            await self.limiter.close()
        await self.store.close()

    def build_app(self) -> web.Application:
        """aiohttp app whose startup/cleanup hooks open and close the store."""
        app = self.api.build_app()

        async def _on_startup(_app: web.Application) -> None:
            await self.start()

        async def _on_cleanup(_app: web.Application) -> None:
            await self.stop()

        app.on_startup.append(_on_startup)
        app.on_cleanup.append(_on_cleanup)
        return app


async def run_server(cfg: ServiceConfig) -> None:
    """Entry point for running the HTTP service until SIGINT/SIGTERM."""
    service = ClaimSendService(cfg)
    app = service.build_app()

    log.info("Starting claimsend service")
    log.info("  Environment: %s", cfg.environment)
    log.info("  Regions: %s", ", ".join(cfg.enabled_regions))
    log.info("  Bridge: %s", "enabled" if cfg.bridge.enabled else "disabled")
    log.info("  Rate limits: %s", cfg.rate_limits.backend)
    log.info("  DB: %s", cfg.db_path)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, cfg.host, cfg.port)
    await site.start()
    log.info("Listening on http://%s:%d", cfg.host, cfg.port)
    try:
        await stop.wait()
    finally:
        await runner.cleanup()
        log.info("Service shut down cleanly")
