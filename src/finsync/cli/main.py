import asyncio
import os
from datetime import datetime, timezone
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from finsync import __version__
from finsync.config import SYNC_TABLE_ORDER, SyncConfig
from finsync.engine import SyncEngine, SyncReport
from finsync.errors import FinSyncError, SyncStalled, TransientSyncFailure
from finsync.log import sync_queue
from finsync.metrics import configure_logging
from finsync.notify.cron import CronExpression, describe
from finsync.notify.delivery import LoggingDeliverer, NotificationChecker
from finsync.notify.models import QuietHours, resolve_timezone
from finsync.notify.preferences import load_preferences
from finsync.notify.quiet_hours import next_allowed_fire
from finsync.notify.scheduler import NotificationScheduler
from finsync.store import RecordStore
from finsync.sync_loop import SyncLoop
from finsync.transport.http_transport import HTTPRemote
from finsync.utils.timeutil import format_micros, from_micros, now_micros

app = typer.Typer(help="finsync - local-first finance data sync")
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log as JSON lines"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write JSON logs to this file"),
):
    configure_logging(level=log_level, json_format=json_logs, log_file=log_file)


def open_store(db_path: str) -> RecordStore:
    store = RecordStore(db_path)
    store.initialize()
    return store


@app.command()
def version():
    """Print the installed version."""
    console.print(f"finsync {__version__}")


@app.command()
def init(db_path: str = typer.Argument(..., help="Path to the local database")):
    """Create the local store."""
    with open_store(db_path):
        pass
    console.print(f"[green]Initialized local store at {db_path}[/green]")


@app.command()
def status(db_path: str = typer.Argument(..., help="Path to the local database")):
    """Show record counts, queue state and pull watermarks."""
    with open_store(db_path) as store:
        cursor = store.load_cursor()
        table = Table(title="Records")
        table.add_column("Table", style="cyan")
        table.add_column("Live", justify="right")
        table.add_column("Tombstoned", justify="right")
        table.add_column("Pulled up to")
        for name in SYNC_TABLE_ORDER:
            live = store.count(name)
            total = store.count(name, include_deleted=True)
            table.add_row(name, str(live), str(total - live), format_micros(cursor.since(name) or None))
        console.print(table)

        with store.lock:
            counts = sync_queue.count_by_status(store.connection)
        queue = Table(title="Sync queue")
        queue.add_column("Status", style="cyan")
        queue.add_column("Entries", justify="right", style="magenta")
        for name, count in counts.items():
            queue.add_row(name, str(count))
        console.print(queue)


def _print_report(report: SyncReport) -> None:
    if report.pull_error:
        console.print(f"[yellow]Pull failed: {report.pull_error}[/yellow]")
    elif report.pull is not None:
        pulled = sum(report.pull.counts.values())
        console.print(
            f"Pulled {pulled} records ({report.pull.applied} applied, "
            f"{report.pull.superseded} replaced local edits, {report.pull.rejected} rejected)"
        )
    drain = report.drain
    if drain is None:
        return
    console.print(
        f"Pushed {drain.applied} entries, {drain.conflicts} conflicts, "
        f"{drain.transient_failures} transient failures"
    )
    for failed in drain.failed:
        console.print(f"[red]Rejected {failed.entry.table_name}/{failed.entry.record_id}: {failed.error}[/red]")
    for stalled in drain.stalled:
        console.print(f"[yellow]{stalled}[/yellow]")
    if drain.deferred is not None:
        console.print(f"[dim]Waiting for backoff on {drain.deferred.table_name}/{drain.deferred.record_id}[/dim]")


@app.command()
def sync(
    db_path: str = typer.Argument(..., help="Path to the local database"),
    remote_url: str = typer.Argument(..., help="Base URL of the sync server"),
    auth_token: Optional[str] = typer.Option(None, envvar="FINSYNC_TOKEN", help="Bearer token"),
    interval: Optional[float] = typer.Option(
        None, "--interval", "-i", help="Keep running, syncing every N seconds"
    ),
):
    """Pull remote changes, then push queued local mutations."""
    config = SyncConfig.from_env()

    def on_stalled(stalled: SyncStalled) -> None:
        console.print(f"[yellow]{stalled}[/yellow]")

    async def _run() -> Optional[SyncReport]:
        remote = HTTPRemote(remote_url, auth_token=auth_token, timeout=config.request_timeout)
        with open_store(db_path) as store:
            engine = SyncEngine(store, remote, config=config, on_stalled=on_stalled)
            try:
                if interval is None:
                    if not await remote.health():
                        raise TransientSyncFailure(f"{remote_url} is not reachable")
                    return await engine.sync()
                loop = SyncLoop(engine, interval_seconds=interval, on_sync_complete=_print_report)
                await loop.start()
                console.print(f"[bold green]Syncing with {remote_url} every {interval}s[/bold green]")
                try:
                    await asyncio.Event().wait()
                finally:
                    await loop.stop()
            finally:
                await remote.close()
        return None

    try:
        report = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[green]Stopped.[/green]")
        return
    except FinSyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        raise typer.Exit(code=1)

    if report is not None:
        _print_report(report)
        if report.pull_error or (report.drain and report.drain.failed):
            raise typer.Exit(code=1)


@app.command()
def serve(
    db_path: str = typer.Option("finsync_server.db", "--db", help="Path to the server database"),
    host: str = typer.Option("127.0.0.1", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    token: Optional[str] = typer.Option(None, envvar="FINSYNC_SERVER_TOKEN", help="Required bearer token"),
):
    """Run the reference sync server."""
    os.environ["FINSYNC_SERVER_DB"] = db_path
    if token:
        os.environ["FINSYNC_SERVER_TOKEN"] = token
    console.print(f"[bold green]Starting sync server on http://{host}:{port}[/bold green]")
    uvicorn.run("finsync.server.app:create_app", factory=True, host=host, port=port)


@app.command()
def failed(db_path: str = typer.Argument(..., help="Path to the local database")):
    """List queue entries the server rejected."""
    with open_store(db_path) as store:
        with store.lock:
            entries = sync_queue.failed_entries(store.connection)

    if not entries:
        console.print("[green]No failed entries.[/green]")
        return

    table = Table(title="Failed entries")
    table.add_column("Entry ID", style="cyan")
    table.add_column("Record")
    table.add_column("Operation")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")
    for entry in entries:
        table.add_row(
            entry.id,
            f"{entry.table_name}/{entry.record_id}",
            entry.operation.value,
            str(entry.attempts),
            entry.error_message or "",
        )
    console.print(table)


@app.command()
def retry(
    db_path: str = typer.Argument(..., help="Path to the local database"),
    entry_ids: Optional[list[str]] = typer.Argument(None, help="Entries to retry (default: all)"),
    discard: bool = typer.Option(False, "--discard", help="Drop the entries instead of retrying"),
):
    """Send failed entries back to the queue, or drop them."""
    with open_store(db_path) as store:
        if discard:
            if not entry_ids:
                console.print("[red]--discard needs explicit entry ids[/red]")
                raise typer.Exit(code=1)
            count = store.transaction(lambda conn: sync_queue.discard_failed(conn, entry_ids), name="discard_failed")
            console.print(f"Discarded {count} entries")
        else:
            count = store.transaction(
                lambda conn: sync_queue.requeue_failed(conn, entry_ids or None), name="retry_failed"
            )
            console.print(f"Requeued {count} entries")


@app.command()
def purge(db_path: str = typer.Argument(..., help="Path to the local database")):
    """Hard-delete tombstones that are synced or never left the device."""
    with open_store(db_path) as store:
        purged = store.purge_tombstones()
    for name, count in purged.items():
        if count:
            console.print(f"{name}: {count}")
    console.print(f"Purged {sum(purged.values())} rows")


@app.command("next-fire")
def next_fire(
    cron: str = typer.Argument(..., help='Cron expression, e.g. "0 9 2 * *"'),
    after: Optional[str] = typer.Option(None, help="ISO start time (default: now)"),
    count: int = typer.Option(5, "--count", "-n", help="Number of fire times"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone"),
    quiet: Optional[str] = typer.Option(None, help='Quiet hours as "HH:MM-HH:MM"'),
):
    """Show upcoming fire times of a cron expression."""
    try:
        zone = resolve_timezone(tz)
        expression = CronExpression.parse(cron)
        if after:
            moment = datetime.fromisoformat(after)
            moment = moment.replace(tzinfo=zone) if moment.tzinfo is None else moment.astimezone(zone)
        else:
            moment = from_micros(now_micros(), zone)
        quiet_hours = QuietHours()
        if quiet:
            start, _, end = quiet.partition("-")
            quiet_hours = QuietHours(enabled=True, start=start, end=end)

        console.print(f"[bold]{describe(cron)}[/bold]")
        for _ in range(count):
            moment = next_allowed_fire(expression, quiet_hours, moment)
            console.print(moment.isoformat())
    except (FinSyncError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def notifications(
    db_path: str = typer.Argument(..., help="Path to the local database"),
    schedule: bool = typer.Option(False, "--schedule", help="Reschedule from stored preferences first"),
    limit: int = typer.Option(20, help="Rows to show"),
):
    """Show scheduled notifications."""
    with open_store(db_path) as store:
        scheduler = NotificationScheduler(store)
        if schedule:
            report = scheduler.schedule_all(load_preferences(store), store.now())
            for notification_type, error in report.errors.items():
                console.print(f"[red]{notification_type.value}: {error}[/red]")
        rows = scheduler.history(limit)

    table = Table(title="Notifications")
    table.add_column("Scheduled (UTC)", style="cyan")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("State", style="magenta")
    for notification in rows:
        if notification.is_cancelled:
            state = "cancelled"
        elif notification.is_sent:
            state = f"sent {format_micros(notification.sent_at)}"
        else:
            state = "pending"
        table.add_row(
            format_micros(notification.scheduled_at),
            notification.notification_type.value,
            notification.title,
            state,
        )
    console.print(table)


@app.command()
def check(db_path: str = typer.Argument(..., help="Path to the local database")):
    """Deliver due notifications to the log and schedule the next ones."""
    with open_store(db_path) as store:
        checker = NotificationChecker(store, LoggingDeliverer())
        report = checker.check_once()
    for notification in report.sent:
        console.print(f"[green]Sent[/green] {notification.title}: {notification.body}")
    if not report.sent:
        console.print(f"Nothing due at {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}")


if __name__ == "__main__":
    app()
