"""Configuration models for the service."""

from __future__ import annotations

from dataclasses import dataclass, field

from claimsend.models.status import PayoutMethod


@dataclass
class OtpConfig:
    """OTP challenge tuning."""

    expiry_seconds: int = 600
    max_attempts: int = 5
    resend_cooldown_seconds: int = 60


@dataclass
class RateLimitRule:
    limit: int
    window_seconds: int = 600


@dataclass
class RateLimitConfig:
    """Per-endpoint fixed-window quotas."""

    backend: str = "memory"  # "memory" | "redis"
    redis_url: str = ""
    key_prefix: str = "claimsend:rl"
    claim_start: RateLimitRule = field(default_factory=lambda: RateLimitRule(limit=10))
    verify_otp: RateLimitRule = field(default_factory=lambda: RateLimitRule(limit=20))
    resend_otp: RateLimitRule = field(default_factory=lambda: RateLimitRule(limit=12))
    payout: RateLimitRule = field(default_factory=lambda: RateLimitRule(limit=20))


@dataclass
class RelayerConfig:
    """Managed signer that moves funds out of escrow."""

    signer_url: str = ""
    signer_secret: str = ""
    timeout: float = 15.0
    simulate: bool = True  # synthesize tx hashes when no signer is configured


@dataclass
class BridgeConfig:
    """Bridge-style fiat off-ramp provider."""

    enabled: bool = False
    provider_name: str = "bridge"
    api_base_url: str = "https://api.bridge.xyz/v0"
    api_key: str = ""
    api_key_header: str = "Api-Key"
    timeout: float = 15.0
    enabled_regions: list[str] = field(default_factory=lambda: ["US"])
    on_behalf_of: str = ""
    source: dict = field(
        default_factory=lambda: {"payment_rail": "base", "currency": "usdc"}
    )
    destination: dict = field(
        default_factory=lambda: {"payment_rail": "ach", "currency": "usd"}
    )
    onboarding_required: bool = False
    onboarding_url: str = ""
    default_eta: str = "1-3 business days"
    first_leg_final: bool = False  # treat the bridge leg as the final settlement
    webhook_public_keys: list[str] = field(default_factory=list)
    webhook_max_age_seconds: int = 300


@dataclass
class ServiceConfig:
    """Complete service configuration."""

    # Service
    environment: str = "development"
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "info"
    claim_app_url: str = "http://localhost:5173"

    # Limits (micro-units)
    enabled_regions: list[str] = field(default_factory=lambda: ["US"])
    default_chain_id: int = 8453
    allowed_chain_ids: list[int] = field(default_factory=lambda: [8453])
    max_transfer_usdc_micros: int = 10_000_000_000  # 10,000 USDC
    daily_cap_usdc_micros: int = 25_000_000_000  # 25,000 USDC
    sponsor_fee_usdc: str = "0.50"
    transfer_expiry_days: int = 7

    # Payout rails
    debit_enabled_regions: list[str] = field(default_factory=lambda: ["US"])
    bank_enabled_regions: list[str] = field(default_factory=lambda: ["US"])
    wallet_enabled_regions: list[str] = field(default_factory=lambda: ["US"])
    debit_provider: str = "mock-debit"
    bank_provider: str = "mock-bank"
    wallet_provider: str = "send-relayer"
    debit_max_usdc_micros: int = 2_500_000_000  # 2,500 USDC
    force_debit_fallback: bool = False

    # OTP
    otp: OtpConfig = field(default_factory=OtpConfig)
    otp_bypass_code: str = ""  # non-production only

    # Security
    contact_encryption_key: str = ""
    claim_token_pepper: str = ""
    otp_pepper: str = ""
    webhook_secrets: list[str] = field(default_factory=list)
    sender_header: str = "X-Sender-Wallet"
    sender_gateway_secret: str = ""

    # Escrow
    skip_escrow_verification: bool = True
    rpc_urls: dict[int, str] = field(default_factory=dict)
    escrow_addresses: dict[int, str] = field(default_factory=dict)
    escrow_create_selector: str = ""  # 4-byte selector of createTransfer, 0x-prefixed
    rpc_timeout: float = 15.0

    # Collaborators
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)

    # Storage
    db_path: str = "~/.claimsend/ledger.db"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def rail_regions(self, method: str) -> list[str]:
        """Enabled regions for a payout rail ("DEBIT", "BANK", "WALLET")."""
        return {
            "DEBIT": self.debit_enabled_regions,
            "BANK": self.bank_enabled_regions,
            "WALLET": self.wallet_enabled_regions,
        }[method.upper()]

    def payout_methods_for(self, region: str) -> list[PayoutMethod]:
        """Payout rails enabled for ``region``, in display order."""
        region = region.upper()
        return [
            method for method in PayoutMethod
            if region in {r.upper() for r in self.rail_regions(method.value)}
        ]
