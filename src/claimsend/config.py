"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
from pathlib import Path

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from claimsend.errors import ConfigurationError
from claimsend.models.config import (
    BridgeConfig,
    OtpConfig,
    RateLimitConfig,
    RateLimitRule,
    RelayerConfig,
    ServiceConfig,
)
from claimsend.money import parse_usdc_micros
from claimsend.ratelimit import ENDPOINTS


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _str_list(value: object, name: str) -> list[str]:
    if isinstance(value, str):
        return _csv(value)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return [v.strip() for v in value if v.strip()]
    raise ConfigurationError(f"{name} must be a list of strings")


def _int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _positive_int(value: object, name: str) -> int:
    n = _int(value, name)
    if n <= 0:
        raise ConfigurationError(f"{name} must be positive, got {n}")
    return n


def _bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _usdc(value: object, name: str) -> int:
    micros = parse_usdc_micros(value)
    if not micros:
        raise ConfigurationError(f"{name} must be a positive USDC amount, got {value!r}")
    return micros


def _chain_map(value: object, name: str) -> dict[int, str]:
    """TOML tables have string keys; chain ids are integers."""
    if not isinstance(value, dict):
        raise ConfigurationError(f"{name} must be a table of chain id -> value")
    return {_int(k, f"{name} key"): str(v) for k, v in value.items()}


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = "CLAIMSEND_",
) -> ServiceConfig:
    """Load service configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (CLAIMSEND_CONTACT_ENCRYPTION_KEY, etc.)
        2. TOML config file
        3. Defaults from ServiceConfig
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                try:
                    raw = tomllib.load(f)
                except tomllib.TOMLDecodeError as e:
                    raise ConfigurationError(f"Invalid config file {p}: {e}") from e

    cfg = ServiceConfig()

    # ── Service section ────────────────────────────────────
    service = raw.get("service", {})
    if v := service.get("environment"):
        cfg.environment = str(v)
    if v := service.get("host"):
        cfg.host = str(v)
    if v := service.get("port"):
        cfg.port = _positive_int(v, "service.port")
    if v := service.get("log_level"):
        cfg.log_level = str(v)
    if v := service.get("claim_app_url"):
        cfg.claim_app_url = str(v)

    # ── Limits section ─────────────────────────────────────
    limits = raw.get("limits", {})
    if (v := limits.get("enabled_regions")) is not None:
        cfg.enabled_regions = _str_list(v, "limits.enabled_regions")
    if v := limits.get("default_chain_id"):
        cfg.default_chain_id = _positive_int(v, "limits.default_chain_id")
    if (v := limits.get("allowed_chain_ids")) is not None:
        cfg.allowed_chain_ids = [_positive_int(c, "limits.allowed_chain_ids") for c in v]
    if v := limits.get("max_transfer_usdc"):
        cfg.max_transfer_usdc_micros = _usdc(v, "limits.max_transfer_usdc")
    if v := limits.get("daily_cap_usdc"):
        cfg.daily_cap_usdc_micros = _usdc(v, "limits.daily_cap_usdc")
    if (v := limits.get("sponsor_fee_usdc")) is not None:
        cfg.sponsor_fee_usdc = str(v)
    if v := limits.get("transfer_expiry_days"):
        cfg.transfer_expiry_days = _positive_int(v, "limits.transfer_expiry_days")

    # ── OTP section ────────────────────────────────────────
    otp = raw.get("otp", {})
    cfg.otp = OtpConfig(
        expiry_seconds=_positive_int(otp.get("expiry_seconds", 600), "otp.expiry_seconds"),
        max_attempts=_positive_int(otp.get("max_attempts", 5), "otp.max_attempts"),
        resend_cooldown_seconds=_int(
            otp.get("resend_cooldown_seconds", 60), "otp.resend_cooldown_seconds"
        ),
    )
    if v := otp.get("bypass_code"):
        cfg.otp_bypass_code = str(v)

    # ── Security section ───────────────────────────────────
    security = raw.get("security", {})
    if v := security.get("contact_encryption_key"):
        cfg.contact_encryption_key = str(v)
    if v := security.get("claim_token_pepper"):
        cfg.claim_token_pepper = str(v)
    if v := security.get("otp_pepper"):
        cfg.otp_pepper = str(v)
    if (v := security.get("webhook_secrets")) is not None:
        cfg.webhook_secrets = _str_list(v, "security.webhook_secrets")
    if v := security.get("sender_header"):
        cfg.sender_header = str(v)
    if v := security.get("sender_gateway_secret"):
        cfg.sender_gateway_secret = str(v)

    # ── Escrow section ─────────────────────────────────────
    escrow = raw.get("escrow", {})
    if (v := escrow.get("skip_verification")) is not None:
        cfg.skip_escrow_verification = _bool(v, "escrow.skip_verification")
    if (v := escrow.get("rpc_urls")) is not None:
        cfg.rpc_urls = _chain_map(v, "escrow.rpc_urls")
    if (v := escrow.get("addresses")) is not None:
        cfg.escrow_addresses = {k: a.lower() for k, a in _chain_map(v, "escrow.addresses").items()}
    if v := escrow.get("create_selector"):
        cfg.escrow_create_selector = str(v).lower()
    if v := escrow.get("rpc_timeout"):
        cfg.rpc_timeout = float(v)

    # ── Payouts section ────────────────────────────────────
    payouts = raw.get("payouts", {})
    for method in ("debit", "bank", "wallet"):
        if (v := payouts.get(f"{method}_enabled_regions")) is not None:
            setattr(
                cfg, f"{method}_enabled_regions",
                _str_list(v, f"payouts.{method}_enabled_regions"),
            )
        if v := payouts.get(f"{method}_provider"):
            setattr(cfg, f"{method}_provider", str(v))
    if v := payouts.get("debit_max_usdc"):
        cfg.debit_max_usdc_micros = _usdc(v, "payouts.debit_max_usdc")
    if (v := payouts.get("force_debit_fallback")) is not None:
        cfg.force_debit_fallback = _bool(v, "payouts.force_debit_fallback")

    # ── Bridge section ─────────────────────────────────────
    bridge_raw = raw.get("bridge", {})
    defaults = BridgeConfig()
    cfg.bridge = BridgeConfig(
        enabled=_bool(bridge_raw.get("enabled", False), "bridge.enabled"),
        provider_name=str(bridge_raw.get("provider_name", defaults.provider_name)),
        api_base_url=str(bridge_raw.get("api_base_url", defaults.api_base_url)),
        api_key=str(bridge_raw.get("api_key", "")),
        api_key_header=str(bridge_raw.get("api_key_header", defaults.api_key_header)),
        timeout=float(bridge_raw.get("timeout", defaults.timeout)),
        enabled_regions=_str_list(
            bridge_raw.get("enabled_regions", defaults.enabled_regions), "bridge.enabled_regions"
        ),
        on_behalf_of=str(bridge_raw.get("on_behalf_of", "")),
        source=dict(bridge_raw.get("source", defaults.source)),
        destination=dict(bridge_raw.get("destination", defaults.destination)),
        onboarding_required=_bool(
            bridge_raw.get("onboarding_required", False), "bridge.onboarding_required"
        ),
        onboarding_url=str(bridge_raw.get("onboarding_url", "")),
        default_eta=str(bridge_raw.get("default_eta", defaults.default_eta)),
        first_leg_final=_bool(bridge_raw.get("first_leg_final", False), "bridge.first_leg_final"),
        webhook_public_keys=_str_list(
            bridge_raw.get("webhook_public_keys", []), "bridge.webhook_public_keys"
        ),
        webhook_max_age_seconds=_positive_int(
            bridge_raw.get("webhook_max_age_seconds", 300), "bridge.webhook_max_age_seconds"
        ),
    )

    # ── Relayer section ────────────────────────────────────
    relayer_raw = raw.get("relayer", {})
    cfg.relayer = RelayerConfig(
        signer_url=str(relayer_raw.get("signer_url", "")),
        signer_secret=str(relayer_raw.get("signer_secret", "")),
        timeout=float(relayer_raw.get("timeout", 15.0)),
        simulate=_bool(relayer_raw.get("simulate", True), "relayer.simulate"),
    )

    # ── Rate limit section ─────────────────────────────────
    rl_raw = raw.get("rate_limits", {})
    rate_limits = RateLimitConfig(
        backend=str(rl_raw.get("backend", "memory")),
        redis_url=str(rl_raw.get("redis_url", "")),
        key_prefix=str(rl_raw.get("key_prefix", "claimsend:rl")),
    )
    for endpoint in ENDPOINTS:
        if (rule := rl_raw.get(endpoint)) is None:
            continue
        if not isinstance(rule, dict):
            raise ConfigurationError(f"rate_limits.{endpoint} must be a table")
        current = getattr(rate_limits, endpoint)
        setattr(rate_limits, endpoint, RateLimitRule(
            limit=_positive_int(rule.get("limit", current.limit), f"rate_limits.{endpoint}.limit"),
            window_seconds=_positive_int(
                rule.get("window_seconds", current.window_seconds),
                f"rate_limits.{endpoint}.window_seconds",
            ),
        ))
    cfg.rate_limits = rate_limits

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.db_path = str(v)

    # ── Environment variable overrides (highest priority) ──
    if v := os.environ.get(f"{env_prefix}ENVIRONMENT"):
        cfg.environment = v
    if v := os.environ.get(f"{env_prefix}DB_PATH"):
        cfg.db_path = v
    if v := os.environ.get(f"{env_prefix}ENABLED_REGIONS"):
        cfg.enabled_regions = _csv(v)
    if v := os.environ.get(f"{env_prefix}CONTACT_ENCRYPTION_KEY"):
        cfg.contact_encryption_key = v
    if v := os.environ.get(f"{env_prefix}CLAIM_TOKEN_PEPPER"):
        cfg.claim_token_pepper = v
    if v := os.environ.get(f"{env_prefix}OTP_PEPPER"):
        cfg.otp_pepper = v
    if v := os.environ.get(f"{env_prefix}WEBHOOK_SECRETS"):
        cfg.webhook_secrets = _csv(v)
    if v := os.environ.get(f"{env_prefix}BRIDGE_WEBHOOK_PUBLIC_KEYS"):
        # PEM keys contain no commas, so CSV splitting is safe.
        cfg.bridge.webhook_public_keys = _csv(v)
    if v := os.environ.get(f"{env_prefix}BRIDGE_API_KEY"):
        cfg.bridge.api_key = v
    if v := os.environ.get(f"{env_prefix}RELAYER_SECRET"):
        cfg.relayer.signer_secret = v
    if v := os.environ.get(f"{env_prefix}OTP_BYPASS_CODE"):
        cfg.otp_bypass_code = v
    if v := os.environ.get(f"{env_prefix}REDIS_URL"):
        cfg.rate_limits.redis_url = v
        cfg.rate_limits.backend = "redis"

    if cfg.rate_limits.backend not in ("memory", "redis"):
        raise ConfigurationError(f"Unknown rate limit backend: {cfg.rate_limits.backend!r}")
    if cfg.rate_limits.backend == "redis" and not cfg.rate_limits.redis_url:
        raise ConfigurationError("rate_limits.redis_url is required for the redis backend")
    if cfg.otp_bypass_code and not (
        len(cfg.otp_bypass_code) == 6 and cfg.otp_bypass_code.isdigit()
    ):
        raise ConfigurationError("OTP bypass code must be 6 digits")
    if cfg.default_chain_id not in cfg.allowed_chain_ids:
        raise ConfigurationError(
            f"default_chain_id {cfg.default_chain_id} is not in allowed_chain_ids"
        )

    # Expand ~ in paths
    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())

    return cfg
