"""Command-line interface for gmail-relay.

This module provides a small operator tool to run the relay and to inspect
or stop a running instance over HTTP.

Usage:
    gmail-relay serve --port 3001
    gmail-relay status --url http://localhost:3001
    gmail-relay stop --url http://localhost:3001
    gmail-relay config

Example:
    $ gmail-relay --config /etc/gmail-relay/config.ini serve -p 8080

    $ gmail-relay status --json
"""

from __future__ import annotations

import json
import sys
from typing import Any, Dict, Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

from gmail_relay.api import build_app
from gmail_relay.config_loader import load_settings
from gmail_relay.logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, default=str))


def _default_url(settings: Dict[str, Any]) -> str:
    """Build the base URL of the local instance from settings."""
    host = str(settings.get("http_host") or "127.0.0.1")
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{settings.get('http_port')}"


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to the INI configuration file (default: $GMR_CONFIG or config.ini).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """gmail-relay - single-flight Gmail relay service."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: 3001).")
@click.option("--log-level", default=None, help="Logging level (default: INFO).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], log_level: Optional[str]) -> None:
    """Run the relay HTTP server.

    Example:

        gmail-relay serve -p 8080
    """
    import uvicorn

    settings = dict(ctx.obj["settings"])
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    if log_level:
        settings["log_level"] = log_level.upper()

    configure_logging(settings["log_level"])
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))


@main.command("status")
@click.option("--url", default=None, help="Base URL of the relay (default: from settings).")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of a table.")
@click.pass_context
def status(ctx: click.Context, url: Optional[str], as_json: bool) -> None:
    """Show the status of a running relay.

    Example:

        gmail-relay status --url http://localhost:3001
    """
    base = (url or _default_url(ctx.obj["settings"])).rstrip("/")
    try:
        with httpx.Client(timeout=10) as client:
            sending_resp = client.get(f"{base}/sending-status")
            sending_resp.raise_for_status()
            server_resp = client.get(f"{base}/status")
            server_resp.raise_for_status()
    except httpx.HTTPError as e:
        print_error(f"Failed to reach {base}: {e}")
        sys.exit(1)

    sending = sending_resp.json()
    server = server_resp.json()
    if as_json:
        print_json({"server": server, "sending": sending})
        return

    table = Table(title=f"gmail-relay @ {base}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", str(server.get("status")))
    table.add_row("Port", str(server.get("port")))
    table.add_row("Started", str(server.get("startTime")))
    table.add_row("Uptime (s)", f"{float(server.get('uptime') or 0):.0f}")
    table.add_row("Sending", "[yellow]yes[/yellow]" if sending.get("isSending") else "no")
    table.add_row("Stop requested", "yes" if sending.get("stopRequested") else "no")
    emails = server.get("emails") or {}
    table.add_row("E-mails today", str(emails.get("today", 0)))
    table.add_row("E-mails total", str(sending.get("emailCount", 0)))
    console.print(table)


@main.command("stop")
@click.option("--url", default=None, help="Base URL of the relay (default: from settings).")
@click.pass_context
def stop(ctx: click.Context, url: Optional[str]) -> None:
    """Ask the running send to stop at its next checkpoint.

    Example:

        gmail-relay stop
    """
    base = (url or _default_url(ctx.obj["settings"])).rstrip("/")
    try:
        with httpx.Client(timeout=10) as client:
            resp = client.post(f"{base}/stop-sending")
            resp.raise_for_status()
            result = resp.json()
    except httpx.HTTPError as e:
        print_error(f"Failed to reach {base}: {e}")
        sys.exit(1)

    if result.get("success"):
        print_success(result.get("message", "Stop requested"))
    else:
        console.print(f"[yellow]{result.get('message', 'No send in progress')}[/yellow]")


@main.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the resolved settings as JSON."""
    print_json(ctx.obj["settings"])


if __name__ == "__main__":
    main()
