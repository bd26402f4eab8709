"""
CLI entry point for the DIKE Credit Relayer.
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import structlog
import typer

from .config import RelayerConfig
from .db import STATUS_FAILED, STATUS_WITHHELD, RelayDatabase
from .errors import IrrecoverableError, ProofValidationError
from .proof import compute_reference_hash, normalize_amount, to_bytes32
from .relayer import CreditRelayer

app = typer.Typer(
    name="dike-relayer",
    help="DIKE cross-chain credit event relayer",
    add_completion=False,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def configure_logging(log_format: str = "console") -> None:
    """Console rendering for operators, JSON lines for log shippers."""
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ]
    )


def _load_config(config_path: Optional[Path]) -> RelayerConfig:
    try:
        config = RelayerConfig.from_env(config_path)
    except IrrecoverableError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)
    configure_logging(config.settings.log_format)
    return config


async def _serve(relayer: CreditRelayer) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, relayer.stop)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt there
            pass
    await relayer.run()


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single cycle on every chain and exit",
    ),
    chain: Optional[int] = typer.Option(
        None,
        "--chain",
        help="Only relay this source chain id",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Submit to an in-memory bridge; the persisted state is not touched",
    ),
) -> None:
    """
    Start relaying credit events to the destination bridge.
    """
    config = _load_config(config_path)

    try:
        if chain is not None:
            config.only_chain(chain)
        config.validate(require_signer=not dry_run)
        relayer = CreditRelayer(config, dry_run=dry_run)
    except IrrecoverableError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)

    if dry_run:
        typer.echo("Dry run: proofs go to an in-memory bridge.")

    try:
        if once:
            reports = asyncio.run(relayer.run_once())
            for report in reports:
                if report.empty:
                    note = "not relayed, will retry" if report.backoff else "nothing new"
                    typer.echo(f"chain {report.chain_id}: {note}")
                    continue
                typer.echo(
                    f"chain {report.chain_id}: blocks {report.from_block}-{report.to_block}, "
                    f"{report.submitted} submitted, {report.duplicates} duplicate, "
                    f"{report.rejected} rejected, {report.failed} failed"
                    + (", cursor advanced" if report.advanced else "")
                    + (", withheld" if report.withheld else "")
                    + (", will retry" if report.backoff else "")
                )
            if dry_run:
                for proof in relayer.dry_run_proofs():
                    typer.echo(json.dumps(proof.to_dict()))
        else:
            typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
            asyncio.run(_serve(relayer))
    except IrrecoverableError as e:
        typer.echo(f"Fatal: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\nStopping relayer...")
    finally:
        relayer.close()


@app.command()
def status(config_path: Optional[Path] = ConfigOption) -> None:
    """
    Show per-chain cursors and ledger counts.
    """
    config = _load_config(config_path)
    db = RelayDatabase(config.settings.database_url)
    try:
        cursors = db.list_cursors()
        labels = {c.chain_id: c.label for c in config.chains}

        chain_ids = sorted(set(cursors) | set(labels))
        if not chain_ids:
            typer.echo("No source chains configured or relayed yet.")
            return

        for chain_id in chain_ids:
            cursor = cursors.get(chain_id)
            counts = db.status_counts(chain_id)
            summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "no proofs"
            typer.echo(
                f"{labels.get(chain_id, chain_id)} ({chain_id}): "
                f"cursor={cursor if cursor is not None else '-'}  {summary}"
            )
    finally:
        db.close()


@app.command()
def failed(
    config_path: Optional[Path] = ConfigOption,
    chain: Optional[int] = typer.Option(None, "--chain", help="Source chain id"),
) -> None:
    """
    List proofs that failed or are withheld.
    """
    config = _load_config(config_path)
    db = RelayDatabase(config.settings.database_url)
    try:
        records = db.list_proofs(STATUS_FAILED, chain) + db.list_proofs(STATUS_WITHHELD, chain)
    finally:
        db.close()

    if not records:
        typer.echo("No failed or withheld proofs.")
        return

    for record in records:
        typer.echo(f"  [{record.status}] chain {record.source_chain_id} block {record.block_number}")
        typer.echo(f"    source tx: {record.source_tx_hash}")
        typer.echo(f"    {record.event_kind} {record.amount} for {record.subject}")
        if record.error:
            typer.echo(f"    error: {record.error}")


@app.command("reference-hash")
def reference_hash(
    chain_id: int = typer.Argument(..., help="Source chain id"),
    tx_hash: str = typer.Argument(..., help="Source transaction hash (0x...)"),
    protocol: str = typer.Argument(..., help="Lending protocol address"),
) -> None:
    """
    Compute the reference hash the bridge records for a source event.
    """
    try:
        digest = compute_reference_hash(chain_id, to_bytes32(tx_hash), protocol)
    except ProofValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo("0x" + digest.hex())


@app.command("normalize-amount")
def normalize_amount_cmd(
    raw: int = typer.Argument(..., help="Raw token amount"),
    decimals: int = typer.Argument(..., help="Token decimals"),
) -> None:
    """
    Convert a raw token amount to 18 decimals.
    """
    try:
        typer.echo(str(normalize_amount(raw, decimals)))
    except ProofValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show the relayer version."""
    from dike_relayer import __version__
    typer.echo(f"dike-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
