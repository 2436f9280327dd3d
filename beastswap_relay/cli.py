"""
CLI entry point for BeastSwap Relay.
"""

import asyncio
from typing import Optional

import typer

from .config import load_settings
from .errors import RelayError
from .log import configure_logging
from .service import PaymentRelayService

app = typer.Typer(
    name="beastswap-relay",
    help="BeastSwap SOL payment relay",
    add_completion=False,
)


def _load_service(log_level: str) -> PaymentRelayService:
    try:
        settings = load_settings()
        configure_logging(log_level, json_logs=False)
        return PaymentRelayService.from_settings(settings)
    except RelayError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=2)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """
    Start the HTTP service.
    """
    from .main import run

    try:
        load_settings()
    except RelayError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=2)

    run(host=host, port=port, reload=reload)


@app.command()
def check(
    sender: str = typer.Argument(..., help="Buyer's Solana address"),
    amount: str = typer.Argument(..., help="SOL amount the buyer paid"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
) -> None:
    """
    Check whether a payment verifies (without paying out).
    """
    service = _load_service(log_level)

    async def _check():
        try:
            return await service.check(sender, amount)
        finally:
            await service.aclose()

    typer.echo(f"Checking payment from: {sender}")
    typer.echo(f"Amount: {amount} SOL")
    typer.echo(f"Verification mode: {service.verification_mode}")
    typer.echo("")

    try:
        record = asyncio.run(_check())
    except RelayError as e:
        typer.echo(f"✗ {e.message}")
        raise typer.Exit(code=1)

    typer.echo("✓ Payment found:")
    typer.echo(f"  Signature: {record.signature}")
    typer.echo(f"  Amount: {record.amount_sol} SOL ({record.lamports} lamports)")
    if record.slot is not None:
        typer.echo(f"  Slot: {record.slot}")
    if record.confirmation_status:
        typer.echo(f"  Status: {record.confirmation_status}")


@app.command()
def sync(
    log_level: str = typer.Option("INFO", "--log-level", help="Log level"),
) -> None:
    """
    Index inbound payments once (for VERIFICATION_MODE=indexed).
    """
    service = _load_service(log_level)

    async def _sync() -> int:
        try:
            return await service.sync()
        finally:
            await service.aclose()

    try:
        stored = asyncio.run(_sync())
    except RelayError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Indexed {stored} new payments")


@app.command()
def version() -> None:
    """Show the relay version."""
    from beastswap_relay import __version__
    typer.echo(f"beastswap-relay v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
