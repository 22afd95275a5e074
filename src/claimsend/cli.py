"""CLI entry point for the claimsend service."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from claimsend.config import load_config
from claimsend.errors import ClaimSendError
from claimsend.money import format_usdc_micros
from claimsend.recipient import is_evm_address, normalize_address
from claimsend.service import run_server
from claimsend.storage.sqlite import SQLiteLedgerStore


def _secret(value: str | list[str]) -> str:
    return "***configured***" if value else "(not set)"


def _load(ctx: click.Context):
    try:
        return load_config(ctx.obj["config_path"])
    except ClaimSendError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """claimsend - send stablecoins to an email or phone number."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Service ────────────────────────────────────────────


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Bind port (overrides config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP service."""
    cfg = _load(ctx)
    if host:
        cfg.host = host
    if port:
        cfg.port = port

    click.echo(f"Starting claimsend on {cfg.host}:{cfg.port} ({cfg.environment})")
    try:
        asyncio.run(run_server(cfg))
    except ClaimSendError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show effective configuration with secrets redacted."""
    cfg = _load(ctx)
    click.echo(f"Environment:   {cfg.environment}")
    click.echo(f"Listen:        {cfg.host}:{cfg.port}")
    click.echo(f"Claim app:     {cfg.claim_app_url}")
    click.echo(f"Regions:       {', '.join(cfg.enabled_regions)}")
    click.echo(f"Chains:        {', '.join(str(c) for c in cfg.allowed_chain_ids)} (default {cfg.default_chain_id})")
    click.echo(f"Max transfer:  {format_usdc_micros(cfg.max_transfer_usdc_micros)} USDC")
    click.echo(f"Daily cap:     {format_usdc_micros(cfg.daily_cap_usdc_micros)} USDC")
    click.echo(f"Sponsor fee:   {cfg.sponsor_fee_usdc} USDC")
    click.echo(f"Expiry:        {cfg.transfer_expiry_days} days")
    click.echo(f"Debit regions: {', '.join(cfg.debit_enabled_regions) or '(none)'}")
    click.echo(f"Bank regions:  {', '.join(cfg.bank_enabled_regions) or '(none)'}")
    click.echo(f"Wallet regions: {', '.join(cfg.wallet_enabled_regions) or '(none)'}")
    click.echo(f"Bridge:        {'enabled' if cfg.bridge.enabled else 'disabled'}")
    click.echo(f"Escrow check:  {'skipped' if cfg.skip_escrow_verification else 'on-chain'}")
    click.echo(f"Relayer:       {cfg.relayer.signer_url or '(simulated)'}")
    click.echo(f"Rate limits:   {cfg.rate_limits.backend}")
    click.echo(f"DB path:       {cfg.db_path}")
    click.echo("")
    click.echo(f"Contact key:   {_secret(cfg.contact_encryption_key)}")
    click.echo(f"Token pepper:  {_secret(cfg.claim_token_pepper)}")
    click.echo(f"OTP pepper:    {_secret(cfg.otp_pepper)}")
    click.echo(f"Webhooks:      {_secret(cfg.webhook_secrets)}")
    click.echo(f"Bridge key:    {_secret(cfg.bridge.api_key)}")
    click.echo(f"OTP bypass:    {'ACTIVE' if cfg.otp_bypass_code else '(off)'}")


@cli.command()
@click.option("--sender", required=True, help="Sender wallet address (0x...)")
@click.option("-n", "--limit", type=int, default=20, help="Number of recent transfers to show")
@click.pass_context
def transfers(ctx: click.Context, sender: str, limit: int) -> None:
    """List a sender's recent transfers from the ledger."""
    if not is_evm_address(sender):
        click.echo("Error: --sender must be a 0x-prefixed 20-byte address.", err=True)
        sys.exit(1)
    cfg = _load(ctx)

    async def _transfers():
        store = SQLiteLedgerStore(cfg.db_path)
        await store.initialize()
        try:
            rows = await store.list_sender_transfers(normalize_address(sender), limit)
            if not rows:
                click.echo("No transfers.")
                return

            for t in rows:
                click.echo(
                    f"  #{t.id} [{t.status.value:14s}] {format_usdc_micros(t.principal_usdc)} USDC "
                    f"to {t.recipient_type.value} region={t.region} "
                    f"id={t.transfer_id[:18]}... created={t.created_at}"
                )
        finally:
            await store.close()

    asyncio.run(_transfers())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
