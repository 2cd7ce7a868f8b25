"""
main.py - Command-line client.

Every command builds its own AACSyncApp from AAC_SYNC_* environment
variables, so state lives in the configured database and credential file.
"""

import asyncio
import json
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from aac_sync.api.dto import SendInstructionRequest
from aac_sync.app import AACSyncApp
from aac_sync.config import ClientConfig
from aac_sync.errors import AACSyncError
from aac_sync.metrics import configure_logging, get_registry
from aac_sync.server.dev_server import create_app

app = typer.Typer(help="AAC offline-first sync client")
console = Console()


def _config(db_path: Optional[str], api_url: Optional[str]) -> ClientConfig:
    overrides = {}
    if db_path:
        overrides["db_path"] = db_path
    if api_url:
        overrides["api_url"] = api_url
    config = ClientConfig.from_env(**overrides)
    configure_logging(config.log_level, json_format=config.log_json)
    return config


def _run(coro):
    try:
        return asyncio.run(coro)
    except AACSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


DbOption = typer.Option(None, "--db", help="Path to the local SQLite database")
ApiOption = typer.Option(None, "--api-url", help="Backend base URL")


@app.command()
def login(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
):
    """Log in and store the session token."""
    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        user = await client.api.login(email, password)
        await client.api.aclose()
        console.print(f"[green]Logged in as {user.email}[/green]")

    _run(main())


@app.command()
def logout(db_path: Optional[str] = DbOption, api_url: Optional[str] = ApiOption):
    """Forget the stored session."""
    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        await client.api.logout()
        await client.api.aclose()
        console.print("Logged out")

    _run(main())


@app.command()
def whoami(db_path: Optional[str] = DbOption, api_url: Optional[str] = ApiOption):
    """Show the account the backend associates with the stored token."""
    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        try:
            return await client.api.get_profile()
        finally:
            await client.api.aclose()

    user = _run(main())
    name = f" ({user.full_name})" if user.full_name else ""
    console.print(f"{user.email}{name} [dim]{user.id}[/dim]")


@app.command("register-device")
def register_device(
    token: str = typer.Argument(..., help="Push token issued to this device"),
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
):
    """Register a push token; logout unregisters it again."""
    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        try:
            await client.api.register_device_token(token)
        finally:
            await client.api.aclose()

    _run(main())
    console.print("[green]Device registered[/green]")


@app.command()
def send(
    target_user_id: str = typer.Argument(..., help="Account id of the receiving device"),
    instruction_type: str = typer.Argument(..., help="Instruction type, e.g. speak_message"),
    payload: Optional[str] = typer.Option(None, "--payload", "-p", help="Payload as JSON object"),
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
):
    """Send an instruction to another account's device, as a caregiver."""
    data = None
    if payload is not None:
        try:
            data = json.loads(payload)
        except ValueError as e:
            console.print(f"[red]Invalid JSON: {e}[/red]")
            raise typer.Exit(code=1)
        if not isinstance(data, dict):
            console.print("[red]Payload must be a JSON object[/red]")
            raise typer.Exit(code=1)

    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        try:
            await client.api.send_instruction(SendInstructionRequest(
                target_user_id=target_user_id, type=instruction_type, payload=data or {},
            ))
        finally:
            await client.api.aclose()

    _run(main())
    console.print(f"[green]Sent {instruction_type} to {target_user_id}[/green]")


@app.command()
def sync(db_path: Optional[str] = DbOption, api_url: Optional[str] = ApiOption):
    """Run one sync pass now."""
    async def main():
        async with AACSyncApp(_config(db_path, api_url)) as client:
            report = await client.scheduler.sync_now()
            await client.dispatcher.poll_pending()
        return report

    report = _run(main())
    if not report.ran:
        console.print(f"[yellow]Sync skipped: {report.skipped_reason}[/yellow]")
        raise typer.Exit(code=1)
    if report.failed:
        console.print(f"[red]Sync failed: {report.error}[/red]")
        raise typer.Exit(code=1)
    for entity in sorted(report.unauthenticated):
        console.print(f"[yellow]{entity}: not logged in[/yellow]")

    table = Table(title="Sync Pass")
    table.add_column("Step", style="cyan")
    table.add_column("Count", style="magenta")
    for key, count in sorted(report.counts.items()):
        table.add_row(key, str(count))
    console.print(table)
    console.print(f"Pending changes: {report.pending_changes}")


@app.command()
def status(
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
    metrics: bool = typer.Option(False, "--metrics", help="Also print metrics as JSON"),
):
    """Show local sync state."""
    async def main():
        client = AACSyncApp(_config(db_path, api_url), probe_reachability=False)
        await client.start(background=False)
        try:
            settings = client.settings.get()
            return (
                client.engine.status,
                await client.api.credentials.get_user_email(),
                client.store.visible_phrases(),
                len(client.store.pending_logs()),
                client.store.recent_instructions(5),
                settings,
            )
        finally:
            await client.stop()

    sync_status, email, phrases, pending_logs, instructions, settings = _run(main())

    table = Table(title="AAC Sync Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Account", email or "Not logged in")
    table.add_row("Pending changes", str(sync_status.pending_changes))
    table.add_row("Visible phrases", str(len(phrases)))
    table.add_row("Pending usage logs", str(pending_logs))
    table.add_row("Language", f"{settings.language} ({settings.language_code})")
    table.add_row("Voice speed", f"{settings.voice_speed:g}")
    table.add_row("AI enabled", str(settings.ai_enabled))
    table.add_row("Response mode", settings.response_mode)
    table.add_row("Settings state", settings.sync_state.value)
    console.print(table)

    if instructions:
        audit = Table(title="Recent Instructions")
        audit.add_column("Type")
        audit.add_column("Source")
        audit.add_column("State")
        audit.add_column("Received")
        for row in instructions:
            audit.add_row(
                row["instruction_type"] or "unknown",
                row["source"],
                row["state"],
                row["received_at"],
            )
        console.print(audit)

    if metrics:
        console.print_json(json.dumps(get_registry().export_json()))


@app.command()
def phrases(db_path: Optional[str] = DbOption):
    """List the phrase board."""
    async def main():
        client = AACSyncApp(_config(db_path, None), probe_reachability=False)
        await client.start(background=False)
        try:
            return client.store.visible_phrases()
        finally:
            await client.stop()

    table = Table(title="Phrases")
    table.add_column("#", style="dim")
    table.add_column("Text", style="bold")
    table.add_column("Uses")
    table.add_column("Fav")
    table.add_column("State", style="cyan")
    for i, phrase in enumerate(_run(main()), start=1):
        table.add_row(
            str(i),
            phrase.text,
            str(phrase.usage_count),
            "★" if phrase.is_favorite else "",
            phrase.sync_state.value,
        )
    console.print(table)


@app.command()
def add(
    text: str = typer.Argument(..., help="Phrase text"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    db_path: Optional[str] = DbOption,
):
    """Add a phrase to the board."""
    async def main():
        client = AACSyncApp(_config(db_path, None), probe_reachability=False)
        await client.start(background=False)
        try:
            return client.board.create(text, category)
        finally:
            await client.stop()

    phrase = _run(main())
    console.print(f"[green]Added[/green] {phrase.text!r} ({phrase.sync_state.value})")


@app.command()
def speak(
    text: str = typer.Argument(..., help="Phrase text or free text"),
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
):
    """Speak a board phrase (counting its use) or free text."""
    async def main():
        async with AACSyncApp(_config(db_path, api_url)) as client:
            match = next(
                (p for p in client.store.visible_phrases() if p.text.lower() == text.lower()),
                None,
            )
            if match is not None:
                await client.speak_phrase(match)
            else:
                await client.speak_custom_text(text)

    _run(main())


@app.command()
def instruct(
    payload: str = typer.Argument(..., help="Instruction as JSON, e.g. '{\"type\": \"emergency\"}'"),
    db_path: Optional[str] = DbOption,
    api_url: Optional[str] = ApiOption,
):
    """Apply a raw instruction locally, as if pushed."""
    try:
        raw = json.loads(payload)
    except ValueError as e:
        console.print(f"[red]Invalid JSON: {e}[/red]")
        raise typer.Exit(code=1)

    async def main():
        async with AACSyncApp(_config(db_path, api_url)) as client:
            return await client.dispatcher.handle(raw, source="cli")

    console.print(f"Instruction {_run(main())}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
):
    """Start the in-memory development backend."""
    configure_logging(ClientConfig.from_env().log_level)
    console.print(f"[bold green]Starting development backend on http://{host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def run(db_path: Optional[str] = DbOption, api_url: Optional[str] = ApiOption):
    """Run the client with background sync until interrupted."""
    async def main():
        async with AACSyncApp(_config(db_path, api_url)) as client:
            report = await client.scheduler.on_foreground()
            if not report.ran:
                console.print(f"[yellow]Initial sync skipped: {report.skipped_reason}[/yellow]")
            console.print("[green]Client running. Press Ctrl+C to stop.[/green]")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                pass

    try:
        _run(main())
    except KeyboardInterrupt:
        pass
    console.print("[green]Client stopped.[/green]")


if __name__ == "__main__":
    app()
