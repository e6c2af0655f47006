"""
Shroud CLI — privacy payment gateway for AI agents.

Commands:
    shroud serve             Run the x402 gateway HTTP server
    shroud challenge PATH    Print the 402 challenge a resource would issue
    shroud decode-header     Decode an X-Payment header value
    shroud identity new      Generate an ephemeral signing identity
    shroud ledger list       Show an owner's masked activity log
    shroud ledger stats      Count an owner's activity by kind
    shroud ledger total      Compute the encrypted spend total
    shroud ledger decrypt    Attested decryption with the owner's key
"""

from __future__ import annotations

import json
import logging
import sys
import time

import click
from click.core import ParameterSource
from eth_account import Account
from eth_account.messages import encode_defunct

from . import __version__
from .balance_cache import BalanceTrustCache, RpcBalanceSource
from .config import GatewayConfig, Network
from .encryption import LocalEncryptionProvider, RemoteEncryptionClient, attestation_message
from .errors import AttestationError, MalformedHeaderError, ShroudError
from .facilitator import FacilitatorClient
from .facilitator_auth import create_facilitator_auth
from .gateway import DEFAULT_RESOURCES, PaymentGateway
from .ledger import ActivityLedger, FileLedgerStore
from .money import base_units_to_decimal
from .protocol import advertise, decode_header, issue_challenge
from .stealth import EphemeralIdentity

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build_ledger(config: GatewayConfig) -> ActivityLedger:
    if config.encryption_service_url:
        encryption = RemoteEncryptionClient(config.encryption_service_url)
    else:
        encryption = LocalEncryptionProvider(key_path=config.encryption_key_path)
    return ActivityLedger(
        encryption,
        store=FileLedgerStore(config.ledger_dir),
        flush_delay_seconds=config.flush_delay_seconds,
    )


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """Shroud — privacy-preserving x402 payment gateway."""
    pass


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8402, show_default=True)
@click.option("--pay-to", default=None, help="Merchant address (default: $SHROUD_PAY_TO)")
@click.option(
    "--network",
    type=click.Choice([n.value for n in Network]),
    default=None,
    help="CAIP-2 network (default: $SHROUD_NETWORK or Base Sepolia)",
)
@click.option("--log-level", default="INFO", show_default=True)
def serve(host: str, port: int, pay_to: str | None, network: str | None, log_level: str):
    """Run the gateway server."""
    import uvicorn

    from .server import create_app

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)

    try:
        config = GatewayConfig.from_env(pay_to=pay_to, network=network)
        auth = create_facilitator_auth(
            config.facilitator_url,
            api_key_id=config.facilitator_api_key_id,
            api_key_secret=config.facilitator_api_key_secret,
        )
        facilitator = FacilitatorClient(
            config.facilitator_url,
            network=config.network.value,
            timeout_seconds=config.facilitator_timeout_seconds,
            auth=auth,
        )
        balance_source = (
            RpcBalanceSource(config.balance_rpc_url, config.asset) if config.balance_rpc_url else None
        )
        ledger = _build_ledger(config)
        gateway = PaymentGateway.from_config(
            config,
            facilitator,
            ledger=ledger,
            balance_cache=BalanceTrustCache(),
            balance_source=balance_source,
        )
    except (ValueError, ShroudError) as e:
        click.echo(f"❌ Failed to start gateway: {e}", err=True)
        sys.exit(1)

    click.echo(f"🛡️  Shroud gateway on http://{host}:{port} ({config.network.value})")
    try:
        uvicorn.run(create_app(gateway, ledger), host=host, port=port)
    finally:
        ledger.close()
        facilitator.close()


@main.command()
@click.argument("path")
@click.option("--pay-to", required=True, help="Merchant address")
@click.option("--network", type=click.Choice([n.value for n in Network]), default=Network.BASE_SEPOLIA.value)
def challenge(path: str, pay_to: str, network: str):
    """Print the 402 challenge for a catalogue resource."""
    catalogue = {r.path: r for r in DEFAULT_RESOURCES}
    resource = catalogue.get(path)
    if resource is None:
        click.echo(f"❌ Unknown resource: {path}", err=True)
        click.echo(f"   Known: {', '.join(sorted(catalogue))}", err=True)
        sys.exit(1)

    config = GatewayConfig(network=Network(network), pay_to=pay_to)
    issued = issue_challenge(resource, pay_to, network, config.asset)
    click.echo(json.dumps({**advertise(issued), "challenge": issued.to_dict()}, indent=2))


@main.command("decode-header")
@click.argument("token")
def decode_header_cmd(token: str):
    """Decode and validate an X-Payment header value."""
    try:
        header = decode_header(token)
    except MalformedHeaderError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(header.to_dict(), indent=2))


@main.group("identity")
def identity_group():
    """Ephemeral signing identities."""
    pass


@identity_group.command("new")
@click.option("--show-key", is_flag=True, help="Also print the private key")
def identity_new(show_key: bool):
    """Generate a single-use identity for stealth payments."""
    identity = EphemeralIdentity.generate()
    click.echo(f"Address: {identity.address}")
    if show_key:
        click.echo(f"Key:     {identity.export_key()}")


@main.group("ledger")
def ledger_group():
    """Inspect the encrypted activity ledger."""
    pass


@ledger_group.command("list")
@click.argument("owner")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json-output", "as_json", is_flag=True, help="Print raw JSON")
def ledger_list(owner: str, limit: int, as_json: bool):
    """Masked entries, newest first. Amounts stay encrypted."""
    entries = _build_ledger(GatewayConfig.from_env()).list(owner)[:limit]
    if as_json:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        click.echo("No activity recorded.")
        return
    for entry in entries:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(entry.created_at / 1000))
        ref = f" {entry.resource}" if entry.resource else ""
        tx = f" tx={entry.tx_signature[:16]}" if entry.tx_signature else ""
        click.echo(f"   {ts} 🔒 {entry.kind}{ref}{tx}")


@ledger_group.command("stats")
@click.argument("owner")
def ledger_stats(owner: str):
    """Activity counts by kind."""
    counts = _build_ledger(GatewayConfig.from_env()).activity_count(owner)
    click.echo(json.dumps(counts, indent=2))


@ledger_group.command("total")
@click.argument("owner")
def ledger_total(owner: str):
    """Encrypted sum of payments. Prints a handle, never plaintext."""
    try:
        total = _build_ledger(GatewayConfig.from_env()).encrypted_total(owner)
    except ShroudError as e:
        click.echo(f"❌ Failed to compute total: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(total.to_dict(), indent=2))


@ledger_group.command("decrypt")
@click.option("--owner-key", prompt=True, hide_input=True, help="Owner private key hex")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --owner-key on argv (unsafe: visible in shell history/process list).",
)
@click.option("--entry-id", default=None, help="Decrypt a single entry")
def ledger_decrypt(owner_key: str, unsafe_allow_key_arg: bool, entry_id: str | None):
    """Decrypt the owner's newest entries by signing an attestation."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("owner_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --owner-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    try:
        account = Account.from_key(_resolve_private_key(owner_key))
    except ValueError as e:
        click.echo(f"❌ Invalid owner key: {e}", err=True)
        sys.exit(1)

    owner = account.address
    signed = account.sign_message(encode_defunct(text=attestation_message(owner)))
    signature = "0x" + bytes(signed.signature).hex().removeprefix("0x")

    try:
        batch = _build_ledger(GatewayConfig.from_env()).attested_decrypt(owner, signature, entry_id)
    except AttestationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not batch.entries:
        click.echo("No activity recorded.")
        return
    for entry in batch.entries:
        if entry.decrypted:
            click.echo(f"   🔓 {entry.kind}: {base_units_to_decimal(entry.amount)} USDC")
        else:
            click.echo(f"   ⚠️  {entry.kind}: could not decrypt")
    click.echo(f"Proof: {batch.proof}")


if __name__ == "__main__":
    main()
