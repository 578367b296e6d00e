"""Command-line entry point: authorization wizard, daemon and API queries."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.syntax import Syntax

from uplinkbridge.bridge import MessageBridge
from uplinkbridge.client import UplinkClient
from uplinkbridge.codec import parse_status, split_into_batches
from uplinkbridge.config import Config, ConfigSource
from uplinkbridge.errors import (
    AuthorizationRequired,
    BridgeError,
    ConfigError,
    TokenRefreshError,
)
from uplinkbridge.scheduler import Scheduler

app = typer.Typer(help="Bridge a heat pump's Uplink account to MQTT.", invoke_without_command=True)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/uplinkbridge.yaml")

MODES: dict[str, str] = {
    "home": "DEFAULT_OPERATION",
    "away": "AWAY_FROM_HOME",
    "vacation": "VACATION",
}


def _config_option() -> Any:
    return typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to the YAML config file")


@app.callback()
def main(ctx: typer.Context) -> None:
    """Bridge a heat pump's Uplink account to MQTT."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _load_config(path: Path) -> Config:
    try:
        return Config.load(path)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None


def _make_client(config: Config) -> UplinkClient:
    return UplinkClient(
        config.client_id,
        config.client_secret,
        config.system_id,
        token_dir=config.token_dir,
    )


def _call(coro: Coroutine[Any, Any, object]) -> object:
    """Run an API coroutine, turning bridge errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except AuthorizationRequired:
        typer.echo("No valid token. Run `uplinkbridge authorize` first.", err=True)
        raise typer.Exit(1) from None
    except (BridgeError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _setup_logging(level: str | int) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def authorize(
    config_path: Path = _config_option(),
    client_id: str = typer.Option(..., prompt="Client id", help="OAuth client id"),
    client_secret: str = typer.Option(
        ..., prompt="Client secret", hide_input=True, help="OAuth client secret"
    ),
    callback_url: str = typer.Option(..., prompt="Callback URL", help="OAuth redirect URI"),
) -> None:
    """Authorize the bridge against Uplink and write the config file."""
    existing: dict[str, object] = {}
    if config_path.exists():
        existing = _load_config(config_path).to_mapping()

    config = Config.from_mapping({**existing, "client_id": client_id, "client_secret": client_secret})
    client = _make_client(config)
    typer.echo("Open the following URL in your browser and follow the instructions:")
    typer.echo(client.authorization_url(callback_url))
    code = typer.prompt("Paste the returned authorization code")

    _call(client.authorize(code, callback_url))
    systems = _call(client.systems())
    objects = systems.get("objects", []) if isinstance(systems, dict) else []

    if not objects:
        typer.echo("Authorized, but no systems are connected to this account.", err=True)
        system_id: object = None
    elif len(objects) == 1:
        system_id = objects[0]["systemId"]
        typer.echo(f"Selected system {system_id} ({objects[0].get('name', '')})")
    else:
        typer.echo("Select default system:")
        typer.echo("  ID:\tName:")
        for obj in objects:
            typer.echo(f"  {obj['systemId']}\t({obj.get('name', '')})")
        system_id = typer.prompt("System ID", type=int)

    config = Config.from_mapping({**config.to_mapping(), "system_id": system_id})
    config.save(config_path)
    typer.echo("Authorization completed!")


@app.command("run")
def run_daemon(
    config_path: Path = _config_option(),
    debug: bool = typer.Option(False, "--debug", "-d", help="Log at DEBUG level"),
) -> None:
    """Run the bridge daemon until SIGINT/SIGTERM."""
    try:
        source = ConfigSource(config_path)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None

    config = source.current
    _setup_logging(logging.DEBUG if debug else config.log_level)
    config.log_summary()

    client = _make_client(config)
    bridge = MessageBridge(config.mqtt_settings)
    scheduler = Scheduler(source, client, bridge)
    try:
        asyncio.run(_run_async(client, scheduler))
    except AuthorizationRequired as e:
        typer.echo(f"{e} Run `uplinkbridge authorize` first.", err=True)
        raise typer.Exit(1) from None


async def _run_async(client: UplinkClient, scheduler: Scheduler) -> None:
    try:
        await client.tokens.current_token()
    except TokenRefreshError as e:
        # Transient; every poll retries the refresh.
        logger.warning("%s", e)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.request_stop)
    await scheduler.run()


@app.command()
def systems(config_path: Path = _config_option()) -> None:
    """List all systems connected to the account."""
    client = _make_client(_load_config(config_path))
    _print_json(_call(client.systems()))


@app.command()
def system(config_path: Path = _config_option()) -> None:
    """Show info on the configured system."""
    client = _make_client(_load_config(config_path))
    _print_json(_call(client.system()))


@app.command()
def status(config_path: Path = _config_option()) -> None:
    """Show which subsystems are currently active."""
    client = _make_client(_load_config(config_path))
    _print_json(parse_status(_call(client.status())))


@app.command()
def notifications(config_path: Path = _config_option()) -> None:
    """Show active alarms on the system."""
    client = _make_client(_load_config(config_path))
    _print_json(_call(client.notifications()))


@app.command()
def software(config_path: Path = _config_option()) -> None:
    """Show installed software and available upgrades."""
    client = _make_client(_load_config(config_path))
    _print_json(_call(client.software()))


@app.command()
def mode(
    value: str | None = typer.Argument(None, help="home | away | vacation"),
    config_path: Path = _config_option(),
) -> None:
    """Get the smart-home mode, or set it when a value is given."""
    client = _make_client(_load_config(config_path))
    if value is None:
        _print_json(_call(client.mode()))
        return
    if value not in MODES:
        typer.echo(f"Invalid mode '{value}'. Expected: {' | '.join(MODES)}", err=True)
        raise typer.Exit(1)
    _call(client.set_mode(MODES[value]))
    typer.echo(f"Mode set to {value}.")


@app.command()
def parameters(
    ids: list[str] = typer.Argument(..., help="Parameter ids to read, or id=value to write"),
    config_path: Path = _config_option(),
) -> None:
    """Read parameter values; arguments of the form ``id=value`` are written first."""
    client = _make_client(_load_config(config_path))
    writes = dict(item.split("=", 1) for item in ids if "=" in item)
    reads = [item for item in ids if "=" not in item]

    async def _query() -> list[object]:
        results: list[object] = []
        if writes:
            written = await client.set_parameters(dict(writes))
            if isinstance(written, list):
                results.extend(written)
        for batch in split_into_batches(reads):
            page = await client.parameters(batch)
            if isinstance(page, list):
                results.extend(page)
        return results

    _print_json(_call(_query()))
