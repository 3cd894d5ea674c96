"""guildvault CLI - verify, restore and replay community backups."""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.table import Table

from guildvault.config import Config, get_config_value, load_config, set_config_value
from guildvault.errors import GuildVaultError
from guildvault.logging_setup import setup_logging

app = typer.Typer(name="guildvault", help="Verify, restore and replay exported community backups")
config_app = typer.Typer(help="Inspect configuration")
app.add_typer(config_app, name="config")

console = Console()
_config: Config | None = None
_config_path: Optional[Path] = None

_SECRET_FIELDS = {"store.dsn", "auth.jwt_secret"}


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config(_config_path)
    return _config


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to config.yaml (default: ~/.guildvault/config.yaml)",
    ),
):
    """Verify, restore and replay exported community backups."""
    global _config_path, _config
    if config is not None:
        _config_path = config
        _config = None
    setup_logging(_get_config())


def _with_store(fn: Callable[[Any], Awaitable[Any]]) -> Any:
    """Open the configured store, run fn(store), always close it."""
    from guildvault.store import create_store

    async def _go() -> Any:
        store = create_store(_get_config().store)
        await store.initialize()
        try:
            return await fn(store)
        finally:
            await store.close()

    try:
        return asyncio.run(_go())
    except GuildVaultError as exc:
        console.print(f"[red]{exc.code.value}:[/red] {exc.message}")
        raise typer.Exit(1)


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label}:[/red] {value}")
        raise typer.Exit(1)


def _load_json(path: Path) -> Any:
    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(1)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        console.print(f"[red]Invalid JSON in {path}:[/red] {exc}")
        raise typer.Exit(1)


# === Server ===


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    host: Optional[str] = typer.Option(None, "--host"),
):
    """Start the HTTP API."""
    from guildvault.server import run_server

    cfg = _get_config()
    if port:
        cfg.serve.port = port
    if host:
        cfg.serve.host = host
    run_server(cfg)


@app.command("init-db")
def init_db():
    """Create store tables if they don't exist."""
    async def _noop(store: Any) -> None:
        return None

    _with_store(_noop)
    console.print(f"[green]Store ready[/green] ({_get_config().store.provider})")


@app.command()
def token(user_id: str = typer.Argument(..., help="Platform user id (token subject)")):
    """Mint a bearer token for a user (local administration)."""
    from guildvault.auth import check_auth_config, issue_token

    cfg = _get_config()
    try:
        check_auth_config(cfg)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    typer.echo(issue_token(_parse_uuid(user_id, "user id"), cfg))


# === Backup operations ===


@app.command()
def verify(
    manifest: Path = typer.Argument(..., help="Manifest JSON file"),
    signature: str = typer.Option(..., "--signature", "-s", help="Base64 Ed25519 signature"),
):
    """Check a manifest's signature against its exporter's registered key."""
    from guildvault.verify import ManifestVerifier

    document = _load_json(manifest)
    if not isinstance(document, dict):
        console.print("[red]Manifest must be a JSON object[/red]")
        raise typer.Exit(1)

    async def _go(store: Any):
        return await ManifestVerifier(store).verify(document, signature)

    result = _with_store(_go)
    signer = result.signer
    who = f"{signer.username} ({signer.user_id})" if signer else "unknown"
    if result.valid:
        console.print(f"[green]Valid signature[/green] by {who}")
    else:
        console.print(f"[red]Signature does not match[/red] key of {who}")
        raise typer.Exit(2)


@app.command()
def restore(
    server_id: str = typer.Argument(..., help="Target server id"),
    backup: Path = typer.Argument(..., help="Backup JSON (categories, channels, roles, permission_overwrites)"),
    as_user: str = typer.Option(..., "--as", help="Acting user id (owner or MANAGE_SERVER)"),
    map_out: Optional[Path] = typer.Option(None, "--map-out", help="Write the channel id map here"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Replace a server's structure with a backup's content."""
    from guildvault.audit import AuditLogger
    from guildvault.events import BackgroundDispatcher, EventBus
    from guildvault.models import RestoreServerRequest
    from guildvault.restore import StructuralRestorer

    sid = _parse_uuid(server_id, "server id")
    uid = _parse_uuid(as_user, "user id")
    try:
        request = RestoreServerRequest.model_validate(_load_json(backup))
    except ValueError as exc:
        console.print(f"[red]Invalid backup:[/red] {exc}")
        raise typer.Exit(1)

    if not yes:
        confirmed = typer.confirm(
            f"Restore {backup} into server {sid}? All existing channels, categories and roles are deleted."
        )
        if not confirmed:
            console.print("[yellow]Restore cancelled.[/yellow]")
            raise typer.Exit(0)

    cfg = _get_config()

    async def _go(store: Any):
        dispatcher = BackgroundDispatcher()
        restorer = StructuralRestorer(
            store, AuditLogger(store, cfg.audit.enabled), EventBus(), dispatcher, cfg.limits
        )
        try:
            return await restorer.restore(uid, sid, request)
        finally:
            await dispatcher.drain()

    result = _with_store(_go)

    table = Table(title="Restore complete")
    table.add_column("Item")
    table.add_column("Count", justify="right")
    table.add_row("categories created", str(result.categories_created))
    table.add_row("channels created", str(result.channels_created))
    table.add_row("roles created", str(result.roles_created))
    table.add_row("roles updated", str(result.roles_updated))
    table.add_row("overwrites applied", str(result.overwrites_applied))
    console.print(table)

    if map_out is not None:
        map_out.write_text(json.dumps(result.channel_id_map, indent=2), encoding="utf-8")
        console.print(f"Channel id map written to {map_out}")


@app.command("import-messages")
def import_messages(
    channel_id: str = typer.Argument(..., help="Target channel id"),
    messages: Path = typer.Argument(..., help="JSON list of message records (or {\"messages\": [...]})"),
    as_user: str = typer.Option(..., "--as", help="Acting user id (owner or MANAGE_SERVER)"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Records per batch"),
):
    """Replay historical messages into a channel, one transaction per batch."""
    from guildvault.importer import MessageImporter
    from guildvault.models import MessageRecord

    cid = _parse_uuid(channel_id, "channel id")
    uid = _parse_uuid(as_user, "user id")
    data = _load_json(messages)
    raw = data if isinstance(data, list) else data.get("messages", []) if isinstance(data, dict) else []
    try:
        records = [MessageRecord.model_validate(r) for r in raw]
    except ValueError as exc:
        console.print(f"[red]Invalid message record:[/red] {exc}")
        raise typer.Exit(1)

    cfg = _get_config()
    size = min(batch_size or cfg.limits.max_import_batch, cfg.limits.max_import_batch)

    async def _go(store: Any) -> int:
        importer = MessageImporter(store, cfg.limits)
        total = 0
        for start in range(0, len(records), size):
            result = await importer.import_batch(uid, cid, records[start:start + size])
            total += result.imported
            console.print(f"  batch {start // size + 1}: {result.imported} imported")
        return total

    total = _with_store(_go)
    console.print(f"[green]Imported {total} messages[/green] into {cid}")


# === Config ===


@config_app.command("show")
def config_show():
    """Print the effective configuration (secrets masked)."""
    cfg = _get_config()
    table = Table(title="guildvault config")
    table.add_column("Key")
    table.add_column("Value")
    for section, fields in cfg.model_dump().items():
        for name in fields:
            key = f"{section}.{name}"
            value = get_config_value(cfg, key)
            shown = "****" if key in _SECRET_FIELDS and value else str(value)
            table.add_row(key, shown)
    console.print(table)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dot notation, e.g. limits.max_import_batch"),
    value: str = typer.Argument(...),
):
    """Set a config value in the config file."""
    global _config
    try:
        _config = set_config_value(key, value, _config_path)
    except ValueError as exc:
        console.print(f"[red]Invalid config value:[/red] {exc}")
        raise typer.Exit(1)
    shown = "****" if key in _SECRET_FIELDS else value
    console.print(f"[green]Set[/green] {key} = {shown}")
