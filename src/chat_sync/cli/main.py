import asyncio
import os
import logging
import signal
import time
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chat_sync.config import DEFAULT_DB_PATH, ENV_DB_PATH, ENV_RELAY_ID, SYNC_INTERVAL_SECONDS
from chat_sync.db.connection import verify_integrity
from chat_sync.db.migrations import get_schema_version
from chat_sync.errors import ChatSyncError
from chat_sync.location import StaticLocationProvider
from chat_sync.metrics import configure_logging
from chat_sync.processor import RequestProcessor
from chat_sync.scheduler import ChatScheduler, SyncStatus
from chat_sync.store import ChatStore
from chat_sync.transport.websocket_transport import WebSocketTransport

app = typer.Typer(help="Chat Sync CLI")
console = Console()
logger = logging.getLogger("cli")

DbPath = typer.Option(DEFAULT_DB_PATH, "--db", envvar=ENV_DB_PATH, help="Path to the device database")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log as JSON lines"),
):
    configure_logging(level=log_level, json_format=json_logs)


def get_processor(
    db_path: str,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None
) -> RequestProcessor:
    return RequestProcessor(
        ChatStore(db_path),
        WebSocketTransport(),
        StaticLocationProvider(latitude, longitude),
    )


@app.command()
def register(
    server_uri: str = typer.Argument(..., help="Relay server address, e.g. http://localhost:8000"),
    chat_name: str = typer.Argument(..., help="Chat name to register under"),
    latitude: Optional[float] = typer.Option(None, "--lat", help="Current latitude"),
    longitude: Optional[float] = typer.Option(None, "--lon", help="Current longitude"),
    db_path: str = DbPath
):
    """Register this device with a relay server."""
    processor = get_processor(db_path, latitude, longitude)
    scheduler = ChatScheduler(processor)
    try:
        response = asyncio.run(scheduler.run_registration(server_uri, chat_name))
    except ChatSyncError as e:
        console.print(f"[red]Registration failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    finally:
        processor.store.close()

    console.print(f"[green]Registered as {response.chat_name}[/green]")
    console.print(f"App ID: {response.app_id}")
    console.print(f"Server: {response.server_id}")


@app.command()
def post(
    chatroom: str = typer.Argument(..., help="Chatroom name"),
    text: str = typer.Argument(..., help="Message text"),
    latitude: Optional[float] = typer.Option(None, "--lat", help="Current latitude"),
    longitude: Optional[float] = typer.Option(None, "--lon", help="Current longitude"),
    db_path: str = DbPath
):
    """Queue a message; it is sent on the next sync."""
    processor = get_processor(db_path, latitude, longitude)
    try:
        response = asyncio.run(ChatScheduler(processor).run_post_message(chatroom, text))
    except ChatSyncError as e:
        console.print(f"[red]Post failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    finally:
        processor.store.close()

    console.print(f"Queued message {response.message.id} in {chatroom}")


@app.command()
def sync(
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Keep syncing every N seconds"),
    db_path: str = DbPath
):
    """Run one sync session, or sync periodically with --interval."""
    processor = get_processor(db_path)
    scheduler = ChatScheduler(processor, interval_seconds=interval or SYNC_INTERVAL_SECONDS)

    if interval:
        console.print(f"[bold green]Syncing every {interval}s. Press Ctrl+C to stop.[/bold green]")
        stop_requested = [False]

        def handle_signal(signum, frame):
            console.print("\n[yellow]Shutdown signal received. Stopping gracefully...[/yellow]")
            stop_requested[0] = True

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        scheduler.start(in_background=True)
        try:
            while not stop_requested[0] and scheduler.running:
                time.sleep(1)
        finally:
            scheduler.stop()
            processor.store.close()

        if scheduler.status == SyncStatus.ERROR:
            console.print(f"[red]Sync loop stopped: {escape(scheduler.last_error or '')}[/red]")
            raise typer.Exit(code=1)
        console.print("[green]Stopped.[/green]")
        return

    try:
        ok = asyncio.run(scheduler.run_sync_once())
    except ChatSyncError as e:
        console.print(f"[red]Sync failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    finally:
        processor.store.close()

    if not ok:
        console.print(f"[red]Sync failed: {escape(scheduler.last_error or '')}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Sync completed successfully[/green]")


@app.command()
def status(db_path: str = DbPath):
    """Show registration and sync state."""
    processor = get_processor(db_path)
    settings = processor.settings
    store = processor.store

    with store:
        table = Table(title="Chat Sync Status")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="magenta")

        table.add_row("App ID", str(settings.get_app_id()))
        table.add_row("Chat Name", settings.get_chat_name() or "(not registered)")
        table.add_row("Server", settings.get_server_uri() or "-")
        if settings.is_registered():
            table.add_row("Last Seq Num", str(store.get_last_seq_num()))
        table.add_row("Unsent Messages", str(store.count_unsent_messages()))
        table.add_row("Chatrooms", str(len(store.get_all_chatrooms())))
        table.add_row("Schema Version", str(get_schema_version(store.connection)))
        table.add_row("Integrity", "ok" if verify_integrity(store.connection) else "[red]FAILED[/red]")

        console.print(table)


@app.command()
def messages(
    room: Optional[str] = typer.Option(None, "--room", "-r", help="Only this chatroom"),
    db_path: str = DbPath
):
    """List messages in display order."""
    processor = get_processor(db_path)

    with processor.store as store:
        table = Table(title="Messages")
        table.add_column("Seq")
        table.add_column("Room", style="cyan")
        table.add_column("Sender", style="green")
        table.add_column("Sent At")
        table.add_column("Text")

        for message in store.get_messages(room):
            table.add_row(
                str(message.seq_num) if message.is_settled else "[yellow]unsent[/yellow]",
                message.chatroom,
                message.sender,
                message.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                escape(message.text)
            )

        console.print(table)


@app.command()
def peers(db_path: str = DbPath):
    """List known peers and where they were last seen."""
    processor = get_processor(db_path)

    with processor.store as store:
        table = Table(title="Peers")
        table.add_column("Name", style="cyan")
        table.add_column("Last Seen")
        table.add_column("Location")

        for peer in store.get_all_peers():
            location = (
                f"{peer.latitude:.5f}, {peer.longitude:.5f}"
                if peer.latitude is not None and peer.longitude is not None
                else "-"
            )
            table.add_row(peer.name, peer.timestamp.strftime("%Y-%m-%d %H:%M:%S"), location)

        console.print(table)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    server_id: Optional[str] = typer.Option(None, "--server-id", help="Relay identifier"),
    reload: bool = typer.Option(False, help="Enable auto-reload")
):
    """Start the reference relay server."""
    if server_id:
        os.environ[ENV_RELAY_ID] = server_id
    console.print(f"[bold green]Starting relay server on http://{host}:{port}[/bold green]")
    uvicorn.run("chat_sync.relay.server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
