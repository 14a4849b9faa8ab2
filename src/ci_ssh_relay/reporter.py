"""Human-readable run summary and pipeline variable export."""

import os
import platform
import sys
from collections.abc import Sequence

import click
import structlog

from .ci import CIEnvironment, PipelineExporter
from .models import SettledOutcome, SshBringupResult

logger = structlog.get_logger()

RULE = "═" * 60


def pipeline_variables(results: Sequence[SettledOutcome]) -> dict[str, str]:
    """Flat name/value map from every successful tunnel."""
    variables: dict[str, str] = {}
    for result in results:
        if result.status == "fulfilled":
            variables.update(result.outcome.pipeline_vars)
    return variables


class ResultReporter:
    """Prints the run summary and hands variables to the CI exporter."""

    def __init__(self, ci: CIEnvironment, exporter: PipelineExporter, user: str) -> None:
        self.ci = ci
        self.exporter = exporter
        self.user = user

    def export(self, results: Sequence[SettledOutcome]) -> dict[str, str]:
        variables = pipeline_variables(results)
        if variables:
            logger.info("Exporting pipeline variables", names=sorted(variables))
            self.exporter.export(variables)
        return variables

    def print_banner(self, version: str) -> None:
        click.echo()
        click.echo(RULE)
        click.echo(click.style(f"🔐 SSH Tunnel Setup v{version}", fg="cyan", bold=True))
        click.echo(RULE)
        click.echo()

    def print_summary(self, ssh: SshBringupResult, results: Sequence[SettledOutcome]) -> None:
        click.echo()
        click.echo(click.style("Setup Summary", fg="cyan", bold=True))
        click.echo()

        click.echo("📌 SSH Server:")
        click.echo("   Status: " + click.style("✅ Running", fg="green"))
        click.echo(f"   Mode: {ssh.mode.value}")
        click.echo(f"   Port: {ssh.port}")
        click.echo(f"   User: {self.user}")
        if ssh.log_path:
            click.echo(f"   Log: {ssh.log_path}")

        click.echo()
        click.echo("🚇 Tunnels:")
        if not results:
            click.echo("   ℹ️  No tunnels configured")

        for result in results:
            outcome = result.outcome
            if result.status == "fulfilled":
                click.echo("   " + click.style(f"✅ {outcome.kind.display_name}", fg="green"))
                if outcome.endpoint:
                    click.echo(f"      Endpoint: {outcome.endpoint}")
                elif not outcome.connect_command:
                    click.echo(click.style("      Endpoint: not discovered yet", fg="yellow"))
                if outcome.connect_command:
                    click.echo(f"      Connect: {outcome.connect_command}")
                if outcome.log_file:
                    click.echo(f"      Log: {outcome.log_file}")
            else:
                click.echo("   " + click.style(f"❌ {outcome.kind.display_name}", fg="red"))
                message = outcome.error.message if outcome.error else "Unknown error"
                click.echo(f"      Error: {message}")

        click.echo()
        click.echo("🔗 Local Connection:")
        click.echo(f"   ssh -p {ssh.port} {self.user}@127.0.0.1 -i <your-private-key>")

        click.echo()
        click.echo("📋 Debug Info:")
        click.echo(f"   Platform: {platform.system()} {platform.machine()}")
        click.echo(f"   Python: {sys.version.split()[0]}")
        click.echo(f"   CI: {self.ci.detect_platform() if self.ci.is_likely_ci() else 'No'}")
        click.echo(f"   CWD: {os.getcwd()}")
        click.echo()
        click.echo(RULE)
        click.echo()
