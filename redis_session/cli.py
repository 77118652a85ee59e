"""Command-line tool for inspecting and editing stored sessions.

Operator tooling on top of RedisStore:
- Check connectivity and list server modules
- Read, write, expire and delete individual sessions

Connection settings come from a config file (--config), REDIS_SESSION_*
environment variables and the command-line overrides below.
"""

import asyncio
import json
import sys
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError
from redis.exceptions import RedisError
from rich.console import Console
from rich.table import Table

from redis_session import __version__
from redis_session.config import StoreSettings, load_settings_from_file
from redis_session.exceptions import SessionStoreError
from redis_session.observability.logging import set_correlation_id, setup_logging
from redis_session.store import RedisStore

console = Console()


def load_settings(config_path: str | None, **overrides: Any) -> StoreSettings:
    """Load settings from config file or environment, applying CLI overrides.

    Args:
        config_path: Optional path to config file
        **overrides: Setting values given on the command line (None = unset)

    Returns:
        StoreSettings instance
    """
    settings = load_settings_from_file(Path(config_path)) if config_path else StoreSettings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return settings
    return StoreSettings(**{**settings.model_dump(), **updates})


def run_with_store(ctx: click.Context, operation: Callable[[RedisStore], Awaitable[Any]]) -> Any:
    """Connect a store, run one operation on it and close it again.

    Exits with status 1 on store or Redis errors.
    """
    settings: StoreSettings = ctx.obj["settings"]

    async def _execute() -> Any:
        async with RedisStore(settings.to_options()) as store:
            return await operation(store)

    try:
        return asyncio.run(_execute())
    except (SessionStoreError, RedisError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def parse_value(value: str) -> Any:
    """Parse a command-line session value as JSON, falling back to the raw string."""
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=str),
    help="Path to configuration file (YAML or TOML)",
)
@click.option("--url", help="Redis connection URL (overrides config)")
@click.option("--key-prefix", help="Session key prefix (overrides config)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Logging level",
)
@click.option("--log-format", type=click.Choice(["json", "text"]), help="Log output format")
@click.version_option(__version__, prog_name="redis-session")
@click.pass_context
def cli(
    ctx: click.Context,
    config: str | None,
    url: str | None,
    key_prefix: str | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Redis session store CLI - inspect and manage stored sessions."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings(
            config,
            url=url,
            key_prefix=key_prefix,
            log_level=log_level,
            log_format=log_format,
        )
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error: Invalid configuration: {e}[/red]")
        sys.exit(1)

    # One correlation ID per invocation ties its log lines together
    set_correlation_id(str(uuid.uuid4()))
    setup_logging(level=settings.log_level, json_format=settings.log_format == "json")
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def ping(ctx: click.Context) -> None:
    """Check that the server answers."""
    reply = run_with_store(ctx, lambda store: store.ping())
    console.print(f"[green]{reply}[/green]")


@cli.command()
@click.pass_context
def modules(ctx: click.Context) -> None:
    """List the modules loaded on the server."""
    names = run_with_store(ctx, lambda store: store.modules())

    if not names:
        console.print("[yellow]No server modules loaded[/yellow]")
        return

    table = Table(title="Server modules")
    table.add_column("Module", style="cyan")
    for name in sorted(names):
        table.add_row(name)
    console.print(table)


@cli.command("get")
@click.argument("sid")
@click.pass_context
def get_session(ctx: click.Context, sid: str) -> None:
    """Print the value stored for session SID."""
    value = run_with_store(ctx, lambda store: store.get(sid))

    if value is None:
        console.print(f"[yellow]Session not found: {sid}[/yellow]")
        sys.exit(1)

    click.echo(json.dumps(value, indent=2, default=str))


@cli.command("set")
@click.argument("sid")
@click.argument("value")
@click.option("--ttl", type=float, help="Lifetime in seconds (rounded up)")
@click.pass_context
def set_session(ctx: click.Context, sid: str, value: str, ttl: float | None) -> None:
    """Store VALUE (JSON or plain text) for session SID."""
    payload = parse_value(value)
    run_with_store(ctx, lambda store: store.set(sid, payload, ttl))
    suffix = f" (ttl {ttl}s)" if ttl else ""
    console.print(f"[green]✓ Session stored: {sid}{suffix}[/green]")


@cli.command("ttl")
@click.argument("sid")
@click.pass_context
def ttl_session(ctx: click.Context, sid: str) -> None:
    """Print the remaining lifetime of session SID."""
    remaining = run_with_store(ctx, lambda store: store.ttl(sid))

    if remaining == -2:
        console.print(f"[yellow]Session not found: {sid}[/yellow]")
        sys.exit(1)
    if remaining == -1:
        console.print(f"{sid}: no expiry")
        return
    console.print(f"{sid}: {remaining}s remaining")


@cli.command("destroy")
@click.argument("sid")
@click.pass_context
def destroy_session(ctx: click.Context, sid: str) -> None:
    """Delete session SID."""
    deleted = run_with_store(ctx, lambda store: store.destroy(sid))

    if deleted:
        console.print(f"[green]✓ Session deleted: {sid}[/green]")
    else:
        console.print(f"[yellow]Session not found: {sid}[/yellow]")


def main() -> None:  # pragma: no cover
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover
    main()
