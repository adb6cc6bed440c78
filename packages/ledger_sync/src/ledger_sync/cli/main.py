"""
Ledger Sync CLI

Command-line interface for operating the local sync engine.

Commands:
- status: Pending writes, last sync and collection sizes
- sync: Full resync from the remote ledger service
- balances: Supplier balances, payables/credits and customer drift
- outbox: List undelivered remote writes
- drain: Deliver every due outbox entry once
- relay: Run the outbox relay until interrupted
- retry-failed: Re-queue outbox entries that gave up
- export-key: Print a snapshot token of the local state
- import-key: Replace the local state from a snapshot token
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from ledger_sync.contracts import Collection
from ledger_sync.engine import LedgerEngine
from ledger_sync.logging import setup_logging
from ledger_sync.settings import get_settings

app = typer.Typer(
    name="ledger-sync",
    help="Ledger sync engine CLI",
)

console = Console()

T = TypeVar("T")


def open_engine() -> LedgerEngine:
    """Build the engine from settings."""
    return LedgerEngine.from_settings()


def run_with_engine(work: Callable[[LedgerEngine], Awaitable[T]]) -> T:
    """Run an async command body against a fresh engine, closing it afterwards."""
    engine = open_engine()

    async def main() -> T:
        try:
            return await work(engine)
        finally:
            await engine.close()

    return asyncio.run(main())


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LEDGER_LOG_LEVEL"),
):
    setup_logging(log_level)


@app.command()
def status():
    """
    Show pending writes, last sync time and collection sizes.
    """

    async def work(engine: LedgerEngine):
        rprint(f"Remote: {get_settings().API_URL}")
        rprint(f"Last sync: {engine.store.last_sync or '[yellow]never[/yellow]'}")
        rprint(f"Pending writes: {engine.pending_count()}")

        unsynced = engine.unsynced_count()
        if unsynced > engine.pending_count():
            rprint(f"[red]Failed writes: {unsynced - engine.pending_count()}[/red]")

        table = Table(title="Collections")
        table.add_column("Collection")
        table.add_column("Records", justify="right")
        for collection in Collection:
            table.add_row(collection.value, str(len(engine.store.records(collection))))
        console.print(table)

    run_with_engine(work)


@app.command()
def sync():
    """
    Resync every collection from the remote ledger service.

    Non-empty remote collections replace local ones; failed or empty
    fetches keep the local copy.
    """

    async def work(engine: LedgerEngine):
        report = await engine.sync()

        rprint(f"[green]Synced at {report.synced_at}[/green]")
        rprint(f"  Replaced: {', '.join(report.replaced) or '-'}")
        rprint(f"  Retained: {', '.join(report.retained) or '-'}")
        if report.failed:
            rprint(f"  [yellow]Failed: {', '.join(report.failed)}[/yellow]")
        for name, count in report.skipped.items():
            rprint(f"  [yellow]Skipped {count} invalid {name} records[/yellow]")
        for name, count in report.kept_unsynced.items():
            rprint(f"  Kept {count} unsynced {name} records")

    run_with_engine(work)


@app.command()
def balances():
    """
    Show derived supplier balances and customer balance drift.
    """

    async def work(engine: LedgerEngine):
        suppliers = {s.id: s for s in engine.store.records(Collection.SUPPLIERS)}
        ledgers = engine.supplier_balances()

        if ledgers:
            table = Table(title="Supplier Balances")
            table.add_column("Supplier")
            table.add_column("Debit", justify="right")
            table.add_column("Credit", justify="right")
            table.add_column("Balance", justify="right")
            for supplier_id, entry in ledgers.items():
                table.add_row(
                    suppliers[supplier_id].name,
                    str(entry.debit),
                    str(entry.credit),
                    str(entry.balance),
                )
            console.print(table)
        else:
            rprint("[yellow]No suppliers[/yellow]")

        rprint(f"Total payables: {engine.total_payables()}")
        rprint(f"Total credits: {engine.total_credits()}")

        drift = engine.customer_balance_drift()
        if drift:
            rprint("[red]Customer balances disagree with their history:[/red]")
            for customer_id, difference in drift.items():
                rprint(f"  {customer_id}: {difference:+}")
        else:
            rprint("[green]Customer balances match their history[/green]")

    run_with_engine(work)


@app.command()
def outbox(
    limit: int = typer.Option(50, help="Maximum number of entries to show"),
):
    """
    List remote writes that have not been delivered.
    """

    async def work(engine: LedgerEngine):
        entries = engine.outbox.undelivered()[:limit]
        if not entries:
            rprint("[green]Outbox is empty[/green]")
            return

        table = Table(title="Outbox")
        table.add_column("ID", justify="right")
        table.add_column("Cascade", style="dim")
        table.add_column("Request")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Next Attempt")
        table.add_column("Last Error")

        for entry in entries:
            table.add_row(
                str(entry.id),
                f"{entry.cascade_action} {entry.cascade_id[:8]}" if entry.cascade_id else "-",
                f"{entry.method} {entry.path}",
                entry.status,
                str(entry.attempts),
                entry.next_attempt_at.strftime("%Y-%m-%d %H:%M:%S"),
                (entry.last_error or "-")[:60],
            )

        console.print(table)

    run_with_engine(work)


@app.command()
def drain():
    """
    Deliver every due outbox entry once.
    """

    async def work(engine: LedgerEngine):
        delivered = await engine.relay.drain()
        rprint(f"[green]Delivered {delivered} entries[/green]")
        rprint(f"  Pending: {engine.pending_count()}")

    run_with_engine(work)


@app.command()
def relay(
    poll_interval: Optional[float] = typer.Option(None, help="Idle poll interval in seconds"),
):
    """
    Run the outbox relay until interrupted (Ctrl+C).
    """
    interval = poll_interval or get_settings().RELAY_POLL_INTERVAL

    async def work(engine: LedgerEngine):
        stop = asyncio.Event()
        try:
            await engine.relay.run(stop, poll_interval=interval)
        except asyncio.CancelledError:
            stop.set()

    try:
        run_with_engine(work)
    except KeyboardInterrupt:
        rprint("[yellow]Relay stopped[/yellow]")


@app.command()
def retry_failed():
    """
    Re-queue outbox entries that exhausted their attempts.
    """

    async def work(engine: LedgerEngine):
        count = engine.outbox.retry_failed()
        rprint(f"[green]Re-queued {count} entries[/green]")

    run_with_engine(work)


@app.command()
def export_key():
    """
    Print a portable snapshot token of the whole local state.
    """

    async def work(engine: LedgerEngine):
        typer.echo(engine.export_key())

    run_with_engine(work)


@app.command()
def import_key(
    token: str = typer.Argument(..., help="Token produced by export-key"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """
    Replace every local collection with the content of a snapshot token.

    This is a full overwrite, not a merge. Queued outbox entries are kept.
    """
    if not force:
        confirm = typer.confirm("Replace all local data with the snapshot?")
        if not confirm:
            rprint("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    async def work(engine: LedgerEngine):
        return engine.import_key(token)

    if not run_with_engine(work):
        rprint("[red]Invalid snapshot token, nothing was changed[/red]")
        raise typer.Exit(1)

    rprint("[green]Snapshot imported[/green]")


if __name__ == "__main__":
    app()
