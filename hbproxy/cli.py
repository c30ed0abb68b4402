"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path

import typer

from hbproxy.api import Bridge, login
from hbproxy.core.config_loader import load_config, redacted
from hbproxy.core.errors import HbproxyError
from hbproxy.core.model import BridgeConfig

app = typer.Typer(help="Bridge a home-automation hub's accessory events to controller clients")

_LOG_LEVELS = ("debug", "info", "warning", "error")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(
    config: Path | None,
    *,
    host: str | None = None,
    port: int | None = None,
    username: str | None = None,
    password: str | None = None,
    otp: str | None = None,
    listen_port: int | None = None,
    inspect_port: int | None = None,
) -> BridgeConfig:
    overrides = {
        "hub": {"host": host, "port": port, "username": username, "password": password, "otp": otp},
        "listen": {"port": listen_port, "inspect_port": inspect_port},
    }
    return load_config(config, overrides)


ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML config file")
HostOption = typer.Option(None, "--host", help="Hub host name or address")
PortOption = typer.Option(None, "--port", help="Hub UI port")
UsernameOption = typer.Option(None, "--username", help="Hub login user")
PasswordOption = typer.Option(None, "--password", envvar="HBPROXY_PASSWORD", help="Hub login password")
OtpOption = typer.Option(None, "--otp", help="One-time code, if the hub requires one")


@app.command("run")
def run_bridge(
    config: Path | None = ConfigOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    username: str | None = UsernameOption,
    password: str | None = PasswordOption,
    otp: str | None = OtpOption,
    listen_port: int | None = typer.Option(None, "--listen-port", help="Controller WebSocket port"),
    inspect_port: int | None = typer.Option(None, "--inspect-port", help="Read-only HTTP port"),
    log_level: str = typer.Option("info", "--log-level", help="debug, info, warning or error"),
) -> None:
    """Run the bridge until interrupted."""
    if log_level.lower() not in _LOG_LEVELS:
        typer.echo(f"Error: unknown log level '{log_level}'. Allowed: {', '.join(_LOG_LEVELS)}", err=True)
        raise typer.Exit(code=1)
    try:
        settings = _load(
            config,
            host=host,
            port=port,
            username=username,
            password=password,
            otp=otp,
            listen_port=listen_port,
            inspect_port=inspect_port,
        )
        _configure_logging(log_level)
        asyncio.run(Bridge(settings).serve_forever())
    except HbproxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except OSError as exc:
        typer.echo(f"Error: could not start listeners: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("check-config")
def check_config(config: Path | None = ConfigOption) -> None:
    """Validate configuration and print the effective settings."""
    try:
        settings = _load(config)
    except HbproxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(json.dumps(redacted(settings), indent=2))


@app.command("login")
def login_command(
    config: Path | None = ConfigOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    username: str | None = UsernameOption,
    password: str | None = PasswordOption,
    otp: str | None = OtpOption,
) -> None:
    """Exchange credentials with the hub once and report the token."""
    try:
        settings = _load(config, host=host, port=port, username=username, password=password, otp=otp)
        token = asyncio.run(login(settings))
    except HbproxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    remaining = token.expires_at - time.time()
    typer.echo(
        f"Logged in to {settings.credentials.host}:{settings.credentials.port} "
        f"token={token.value[:12]}... expires_in={remaining:.0f}s"
    )


def run() -> None:
    app()


if __name__ == "__main__":
    run()
