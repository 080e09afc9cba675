"""
CLI entry point for the PayVVM fisher.
"""

import json
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
import structlog

from .canonical import canonical_message
from .config import RelayerConfig
from .db import SubmissionPool
from .intake import MalformedAuthorization, parse_claim, parse_disperse, parse_pay
from .models import FaucetKind
from .relayer import FisherNotAuthorized, FisherRelayer
from .signer import sign_message

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="payvvm-fisher",
    help="PayVVM fisher: relays signed payments and faucet claims to the EVVM ledger",
    add_completion=False,
)


class MessageKind(str, Enum):
    PAY = "pay"
    DISPERSE = "disperse"
    PYUSD_CLAIM = "pyusd-claim"
    MATE_CLAIM = "mate-claim"


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    once: bool = typer.Option(
        False,
        "--once",
        help="Run one poll cycle and exit (useful for testing)",
    ),
    skip_preflight: bool = typer.Option(
        False,
        "--skip-preflight",
        help="Do not check staker / golden fisher status before starting",
    ),
) -> None:
    """
    Start the relay worker: claim pending authorizations and execute them on-chain.
    """
    config = RelayerConfig.from_env(config_path)

    if not config.settings.enabled:
        typer.echo("Fisher is disabled (FISHER_ENABLED=false). Nothing to do.")
        return

    if not config.settings.private_key:
        typer.echo("Error: FISHER_PRIVATE_KEY is not set.", err=True)
        raise typer.Exit(code=1)

    relayer = FisherRelayer(config)

    if not skip_preflight:
        try:
            relayer.preflight()
        except FisherNotAuthorized as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1)

    if once:
        typer.echo("Running in single-shot mode...")
        results = relayer.run_once()
        for result in results:
            outcome = result.outcome
            if outcome.success:
                typer.echo(f"✓ {result.record_id}: {outcome.tx_hash}")
            else:
                typer.echo(f"✗ {result.record_id}: {outcome.reason.value} {outcome.detail or ''}")
        typer.echo(f"Processed {len(results)} authorizations")
    else:
        typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
        try:
            relayer.run()
        except KeyboardInterrupt:
            typer.echo("\nStopping relayer...")
            relayer.stop()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: FISHER_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default: FISHER_PORT)"),
) -> None:
    """
    Serve the intake and query API.
    """
    import uvicorn

    from .config import get_settings

    settings = get_settings()
    uvicorn.run(
        "payvvm_fisher.api:app",
        host=host or settings.host,
        port=port or settings.port,
    )


@app.command()
def records(
    config_path: Optional[Path] = ConfigOption,
    pending: bool = typer.Option(False, "--pending", help="Only pending records"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show"),
) -> None:
    """
    List records in the submission pool.
    """
    config = RelayerConfig.from_env(config_path)
    pool = SubmissionPool(config.settings.database_url)

    counts = pool.count_by_status()
    typer.echo(", ".join(f"{status}: {count}" for status, count in counts.items()))
    typer.echo("")

    for record in pool.list_records(pending_only=pending, limit=limit):
        auth = record.authorization
        typer.echo(f"  ID: {record.id}")
        typer.echo(f"  Operation: {auth.operation.value} ({auth.nonce_mode.value} nonce {auth.nonce})")
        typer.echo(f"  Fee: {auth.priority_fee}")
        typer.echo(f"  Status: {record.status.value}")
        if record.tx_hash:
            typer.echo(f"  Tx: {record.tx_hash}")
        if record.failure_reason:
            typer.echo(f"  Failure: {record.failure_reason.value} {record.error_detail or ''}")
        typer.echo("")

    pool.close()


@app.command()
def message(
    body_file: Path = typer.Argument(..., help="JSON request body (same shape as the API)"),
    kind: MessageKind = typer.Option(MessageKind.PAY, "--kind", "-k", help="Authorization kind"),
    evvm_id: Optional[int] = typer.Option(
        None,
        "--evvm-id",
        help="EVVM id (default: FISHER_EVVM_ID, else read from the ledger)",
    ),
    signer_key: Optional[str] = typer.Option(
        None,
        "--sign",
        envvar="PAYVVM_SIGNER_KEY",
        help="Sign the message with this key and print the signature",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Print the canonical message a sender has to sign for a request body.
    """
    body = json.loads(body_file.read_text())
    if not isinstance(body, dict):
        typer.echo("Error: request body must be a JSON object", err=True)
        raise typer.Exit(code=1)
    # The signature is what we are about to produce
    body.setdefault("signature", "0x00")

    try:
        if kind is MessageKind.PAY:
            auth = parse_pay(body)
        elif kind is MessageKind.DISPERSE:
            auth = parse_disperse(body)
        elif kind is MessageKind.PYUSD_CLAIM:
            auth = parse_claim(body, FaucetKind.PYUSD)
        else:
            auth = parse_claim(body, FaucetKind.MATE)
    except MalformedAuthorization as e:
        typer.echo(f"Error: {e.detail}", err=True)
        raise typer.Exit(code=1)

    if evvm_id is None:
        settings = RelayerConfig.from_env(config_path).settings
        evvm_id = settings.evvm_id
        if evvm_id is None:
            from .evm import EvmClient

            evvm_id = EvmClient.from_settings(settings).get_evvm_id()

    text = canonical_message(evvm_id, auth)
    if text is None:
        typer.echo("Error: authorization cannot be canonicalized", err=True)
        raise typer.Exit(code=1)

    typer.echo(text)
    if signer_key:
        typer.echo(sign_message(text, signer_key))


@app.command()
def prune(
    config_path: Optional[Path] = ConfigOption,
    older_than_hours: float = typer.Option(
        24.0,
        "--older-than-hours",
        help="Delete executed/failed records completed more than this many hours ago",
    ),
) -> None:
    """
    Delete old executed and failed records from the pool.
    """
    config = RelayerConfig.from_env(config_path)
    pool = SubmissionPool(config.settings.database_url)
    removed = pool.prune_completed(timedelta(hours=older_than_hours))
    pool.close()
    typer.echo(f"Pruned {removed} records")


@app.command()
def version() -> None:
    """Show the fisher version."""
    from payvvm_fisher import __version__
    typer.echo(f"payvvm-fisher v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
