"""Command-line interface: run the bridge and operate the failure ledger."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import typer
import uvicorn
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .app import build_bridge
from .config import Settings, get_settings
from .db import dispose_engine
from .directory import ChatwootDirectory
from .errors import DirectoryError
from .http import build_http_app, configure_logging
from .ledger import FailureLedger
from .models import FailedMessage

console = Console()
app = typer.Typer(help="Bridge Telegram private messages into a Chatwoot inbox.")

chatwoot_app = typer.Typer(help="Check the Chatwoot connection")
failures_app = typer.Typer(help="Inspect and replay failed inbound forwards")

app.add_typer(chatwoot_app, name="chatwoot")
app.add_typer(failures_app, name="failures")


def _stamp(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    # SQLite hands datetimes back without tzinfo
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%MZ")


def _startup_banner(settings: Settings, host: str, port: int) -> None:
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Listening", f"http://{host}:{port}")
    table.add_row("Chatwoot", settings.chatwoot.base_url or "[red]not configured[/]")
    table.add_row("Account / inbox", f"{settings.chatwoot.account_id} / {settings.chatwoot.inbox_id}")
    table.add_row("Telegram", "configured" if settings.telegram.configured else "[yellow]disabled[/]")
    table.add_row("Webhook token", "set" if settings.chatwoot.webhook_token else "[yellow]not set[/]")
    table.add_row("Ledger", settings.database.url)
    table.add_row("Replay", "enabled" if settings.replay.enabled else "manual only")
    console.print(Panel(table, title="Telegram-Chatwoot Bridge", border_style="green"))


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the bridge: Telegram listener, webhook receiver and replay worker."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    if not settings.chatwoot.configured:
        console.print("[red]CHATWOOT_URL and CHATWOOT_API_KEY must be set.[/]")
        raise typer.Exit(code=1)
    _startup_banner(settings, resolved_host, resolved_port)
    fastapi_app = build_http_app(settings, build_bridge(settings))
    uvicorn.run(fastapi_app, host=resolved_host, port=resolved_port, log_level="info")


@app.command("login")
def login(
    phone: Optional[str] = typer.Option(None, help="Phone number in international format."),
) -> None:
    """Sign in to Telegram interactively and print the session string for TG_SESSION."""
    from .telegram import login_session

    settings = get_settings()
    if not settings.telegram.configured:
        console.print("[red]TG_API_ID and TG_API_HASH must be set.[/]")
        raise typer.Exit(code=1)

    session = asyncio.run(
        login_session(
            settings.telegram.api_id,
            settings.telegram.api_hash,
            phone=lambda: phone or typer.prompt("Phone number"),
            code=lambda: typer.prompt("Login code"),
            password=lambda: typer.prompt("2FA password", hide_input=True, default="", show_default=False),
        )
    )
    console.print("[green]✓ Logged in.[/] Add this to your environment:")
    console.print(f"TG_SESSION={session}", soft_wrap=True)


@chatwoot_app.command("ping")
def chatwoot_ping() -> None:
    """List the account's inboxes to verify the API credentials."""
    settings = get_settings()
    if not settings.chatwoot.configured:
        console.print("[red]CHATWOOT_URL and CHATWOOT_API_KEY must be set.[/]")
        raise typer.Exit(code=1)

    async def _run() -> list[dict]:
        async with ChatwootDirectory(settings.chatwoot) as directory:
            return await directory.list_inboxes()

    try:
        inboxes = asyncio.run(_run())
    except DirectoryError as exc:
        console.print(f"[red]Chatwoot ping failed:[/] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Inboxes for account {settings.chatwoot.account_id}")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Channel")
    for inbox in inboxes:
        marker = " [green](bridge)[/]" if str(inbox.get("id")) == str(settings.chatwoot.inbox_id) else ""
        table.add_row(str(inbox.get("id", "")), f"{inbox.get('name', '')}{marker}", str(inbox.get("channel_type", "")))
    console.print(table)


@failures_app.command("list")
def failures_list(
    limit: int = typer.Option(20, help="Max records to display"),
) -> None:
    """Show failed inbound forwards, oldest first."""

    async def _run() -> tuple[list[FailedMessage], int]:
        ledger = FailureLedger()
        try:
            return await ledger.list_records(limit=limit), await ledger.count()
        finally:
            await dispose_engine()

    records, total = asyncio.run(_run())
    if not records:
        console.print("[green]No failed messages.[/]")
        return
    table = Table(title=f"Failed messages ({len(records)} of {total})")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Sender")
    table.add_column("Attempts")
    table.add_column("Next attempt")
    table.add_column("Error")
    for record in records:
        table.add_row(
            str(record.id),
            _stamp(record.created_at),
            record.username or record.sender_id or "",
            str(record.attempts),
            _stamp(record.next_attempt_at),
            (record.error or "")[:80],
        )
    console.print(table)


@failures_app.command("replay")
def failures_replay(
    limit: Optional[int] = typer.Option(None, help="Stop after this many records"),
) -> None:
    """Replay eligible failed forwards once through the Chatwoot pipeline."""
    settings = get_settings()
    if not settings.chatwoot.configured:
        console.print("[red]CHATWOOT_URL and CHATWOOT_API_KEY must be set.[/]")
        raise typer.Exit(code=1)
    configure_logging(settings)

    async def _run():
        bridge = build_bridge(settings)
        try:
            return await bridge.replayer.run_once(limit=limit)
        finally:
            await bridge.directory.aclose()
            await dispose_engine()

    summary = asyncio.run(_run())
    console.print(
        f"[green]Replayed {summary.replayed}[/], [yellow]failed {summary.failed}[/], [red]parked {summary.parked}[/]"
    )


@failures_app.command("purge")
def failures_purge(
    yes: bool = typer.Option(False, "--yes", help="Confirm deletion of every record"),
) -> None:
    """Delete every failed-message record."""
    if not yes:
        console.print("[yellow]Refusing to purge without --yes.[/]")
        raise typer.Exit(code=1)

    async def _run() -> int:
        try:
            return await FailureLedger().purge()
        finally:
            await dispose_engine()

    removed = asyncio.run(_run())
    console.print(f"[green]Removed {removed} record(s).[/]")
