#!/usr/bin/env python3
"""ci-ssh-relay - CLI entry point."""

import asyncio
import logging
import os
import platform
import shutil
import signal
import sys
from pathlib import Path

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .config import SetupSettings, load_settings
from .errors import ConfigurationError, SetupError
from .log_filter import mask_auth_in_url, mask_token, redact_sensitive_data
from .process import IS_WINDOWS, ProcessRunner
from .relay import RunContext, run_relay
from .tunnels.base import read_pid_file

PID_FILES = ("sshd", "pinggy", "sshj", "cloudflared")


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking when SENTRY_DSN is set."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "ci")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"ci-ssh-relay@{__version__}",
        traces_sample_rate=0.2,
        integrations=[
            AsyncioIntegration(),
            HttpxIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="ci-ssh-relay",
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "ci-ssh-relay")
    return True


# Initialize Sentry at module load time
_sentry_enabled = _init_sentry()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output on stderr (stdout carries pipeline commands)."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_sensitive_data,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=lambda *_: structlog.PrintLogger(sys.stderr),
        cache_logger_on_first_use=False,
    )


def _fail(message: str) -> None:
    click.echo(click.style("Error: ", fg="red", bold=True) + message, err=True)
    sys.exit(1)


def _pid_dirs() -> list[Path]:
    ssh_dir = Path.home() / ".ssh"
    return [ssh_dir / "ci-sshd", ssh_dir]


def _find_pid_files() -> dict[str, Path]:
    found: dict[str, Path] = {}
    for directory in _pid_dirs():
        for name in PID_FILES:
            path = directory / f"{name}.pid"
            if name not in found and path.exists():
                found[name] = path
    return found


@click.group()
@click.version_option(version=__version__, prog_name="ci-ssh-relay")
def cli() -> None:
    """ci-ssh-relay - SSH access into CI runners.

    Brings up an SSH server on the build agent and exposes it through
    Pinggy, SSH-J and Cloudflare tunnels so a developer can log in to a
    running job.
    """
    pass


@cli.command()
@click.option("--port", type=int, default=None, help="SSH port (overrides SSH_PORT)")
@click.option(
    "--mode",
    type=click.Choice(["auto", "user", "root"], case_sensitive=False),
    default=None,
    help="SSH mode (overrides SSH_MODE)",
)
@click.option("--pubkey", default=None, help="Authorized public key(s) (overrides PIPELINE_SSH_PUBKEY)")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to a TOML config file",
)
@click.option("--log-level", default=None, help="Log level (overrides LOG_LEVEL)")
@click.option("--dry-run", is_flag=True, default=None, help="Log system changes instead of making them")
def up(
    port: int | None,
    mode: str | None,
    pubkey: str | None,
    config_file: Path | None,
    log_level: str | None,
    dry_run: bool | None,
) -> None:
    """Bring up SSH and start every enabled tunnel.

    Configuration is loaded from (in priority order):
    1. Command line arguments
    2. Environment variables (SSH_PORT, PINGGY_ENABLE, ...)
    3. Config file (--config)
    """
    try:
        settings = load_settings(
            config_file,
            ssh_port=port,
            ssh_mode=mode,
            ssh_public_key=pubkey,
            log_level=log_level,
            dry_run=dry_run or None,
        )
    except ConfigurationError as e:
        _fail(e.message)
        return

    configure_logging(settings.log_level)
    context = RunContext.create(settings)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    task = loop.create_task(run_relay(context))

    def signal_handler() -> None:
        click.echo("\nInterrupted, stopping tunnels...", err=True)
        context.orchestrator.stop_all()
        task.cancel()

    if not IS_WINDOWS:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(task)
    except asyncio.CancelledError:
        exit_code = 130
    except SetupError as e:
        if _sentry_enabled:
            sentry_sdk.capture_exception(e)
        click.echo(click.style("Setup failed: ", fg="red", bold=True) + e.message, err=True)
        exit_code = 1
    finally:
        if not IS_WINDOWS:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
        # Flush Sentry events before shutdown
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)
        loop.close()
        asyncio.set_event_loop(None)

    if exit_code:
        sys.exit(exit_code)


@cli.command()
def status() -> None:
    """Show whether the SSH daemon and tunnels from a previous run are alive."""
    runner = ProcessRunner()
    pid_files = _find_pid_files()

    click.echo(click.style("Relay Status", fg="cyan", bold=True))
    click.echo()

    if not pid_files:
        click.echo(click.style("  Nothing running (no PID files found).", fg="yellow"))
        return

    for name, path in pid_files.items():
        pid = read_pid_file(path)
        if pid is not None and runner.is_alive(pid):
            state = click.style("Running", fg="green") + f" (pid {pid})"
        else:
            state = click.style("Not running", fg="red")
        click.echo(click.style(f"  {name}: ", bold=True) + state)
        log_file = path.with_suffix(".log")
        if log_file.exists():
            click.echo(f"    Log: {log_file}")


@cli.command()
def down() -> None:
    """Stop the SSH daemon and tunnels started by a previous run."""
    runner = ProcessRunner()
    pid_files = _find_pid_files()

    if not pid_files:
        click.echo("Nothing to stop.")
        return

    for name, path in pid_files.items():
        pid = read_pid_file(path)
        if pid is not None and runner.is_alive(pid) and runner.terminate(pid):
            click.echo(f"Stopped {name} (pid {pid})")
        else:
            click.echo(f"{name} was not running")
        path.unlink(missing_ok=True)


@cli.command()
def check() -> None:
    """Check system requirements for bringing up SSH and tunnels."""
    runner = ProcessRunner()

    click.echo(click.style("System Check", fg="cyan", bold=True))
    click.echo()

    all_ok = True

    for command, required in (("ssh", True), ("sshd", True), ("ssh-keygen", True), ("cloudflared", False)):
        path = shutil.which(command)
        if path:
            click.echo(
                click.style(f"  {command}: ", bold=True) + click.style("OK", fg="green") + f" ({path})"
            )
        elif required:
            click.echo(click.style(f"  {command}: ", bold=True) + click.style("NOT FOUND", fg="red"))
            all_ok = False
        else:
            click.echo(
                click.style(f"  {command}: ", bold=True)
                + click.style("NOT FOUND", fg="yellow")
                + " (downloaded on demand)"
            )

    if runner.is_root():
        privilege = click.style("root", fg="green")
    elif asyncio.run(runner.has_passwordless_sudo()):
        privilege = click.style("passwordless sudo", fg="green")
    else:
        privilege = click.style("none", fg="yellow") + " (user mode only)"
    click.echo(click.style("  Privilege: ", bold=True) + privilege)

    click.echo(click.style("  Platform: ", bold=True) + f"{platform.system()} {platform.release()}")
    click.echo(click.style("  Architecture: ", bold=True) + platform.machine())
    click.echo()

    if all_ok:
        click.echo(click.style("All checks passed!", fg="green", bold=True))
    else:
        click.echo(click.style("Some checks failed.", fg="red", bold=True))
        sys.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"ci-ssh-relay v{__version__}")


# =============================================================================
# CONFIG COMMANDS
# =============================================================================


@cli.group()
def config() -> None:
    """Inspect relay configuration."""
    pass


def _show_settings(settings: SetupSettings) -> None:
    def row(label: str, value: object) -> None:
        click.echo(click.style(f"  {label}: ", bold=True) + str(value))

    click.echo(click.style("Configuration", fg="cyan", bold=True))
    click.echo()
    click.echo(click.style("[SSH]", fg="cyan"))
    row("Port", settings.ssh_port)
    row("Mode", settings.ssh_mode)
    row("Listen address", settings.ssh_listen_address)
    row("Allowed users", ", ".join(settings.allowed_users) or "(current user)")
    row("Public keys", "set" if settings.ssh_public_key else click.style("missing", fg="red"))
    row("Force working directory", "no" if settings.ssh_disable_force_cwd else "yes")
    click.echo()
    click.echo(click.style("[Tunnels]", fg="cyan"))
    row("Pinggy", "enabled" if settings.pinggy_enabled else "disabled")
    row("SSH-J", "enabled" if settings.sshj_enabled else "disabled")
    row("Cloudflare", "enabled" if settings.cf_enabled else "disabled")
    if settings.cloudflared_api_key:
        row("Cloudflare token", mask_token(settings.cloudflared_api_key))
    click.echo()
    click.echo(click.style("[Persistence]", fg="cyan"))
    row("RTDB", mask_auth_in_url(settings.rtdb_url) if settings.rtdb_enabled else "disabled")
    row("ntfy", f"{settings.ntfy_url}/{settings.ntfy_topic}" if settings.ntfy_enabled else "disabled")
    click.echo()
    click.echo(click.style("[Timeouts]", fg="cyan"))
    timeouts = settings.timeouts
    row("Port wait", f"{timeouts.port_wait:g}s")
    row("Tunnel startup", f"{timeouts.tunnel_startup:g}s")
    row("Cloudflare endpoint", f"{timeouts.cf_endpoint:g}s")
    row("HTTP request", f"{timeouts.http_request:g}s")


@config.command("show")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to a TOML config file",
)
def config_show(config_file: Path | None) -> None:
    """Display the effective configuration (secrets masked)."""
    try:
        settings = load_settings(config_file)
    except ConfigurationError as e:
        _fail(e.message)
        return
    _show_settings(settings)


if __name__ == "__main__":
    cli()
