"""One ci-ssh-relay run: validate, bring up sshd, start tunnels, report."""

import time
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from . import __version__
from .ci import CIEnvironment, PipelineExporter
from .config import SetupSettings
from .models import SettledOutcome, SshBringupResult
from .orchestrator import TunnelOrchestrator, log_dir_for
from .persistence import PersistResult, ResultPersister
from .process import ProcessRunner
from .reporter import ResultReporter
from .retry import BackoffExecutor, BackoffPolicy
from .sshd import SshServerSetup
from .tunnels import TunnelPlugin, build_tunnels

logger = structlog.get_logger()


@dataclass
class RunContext:
    """Everything a run needs, built once by the CLI (or a test)."""

    settings: SetupSettings
    runner: ProcessRunner
    ci: CIEnvironment
    exporter: PipelineExporter
    executor: BackoffExecutor = field(default_factory=lambda: BackoffExecutor(BackoffPolicy()))
    home: Path | None = None
    platform: str | None = None
    orchestrator: TunnelOrchestrator = field(default_factory=TunnelOrchestrator)

    @classmethod
    def create(cls, settings: SetupSettings) -> "RunContext":
        ci = CIEnvironment()
        return cls(
            settings=settings,
            runner=ProcessRunner(dry_run=settings.dry_run),
            ci=ci,
            exporter=PipelineExporter(ci),
        )


@dataclass
class RunResult:
    ssh: SshBringupResult
    tunnels: list[SettledOutcome]
    persistence: PersistResult
    pipeline_vars: dict[str, str]
    duration: float


async def run_relay(context: RunContext, plugins: list[TunnelPlugin] | None = None) -> RunResult:
    """Run the whole bring-up.

    Configuration and SSH daemon errors propagate (the run has failed);
    tunnel and persistence failures are reported in the result.
    """
    started = time.monotonic()
    settings = context.settings
    user = context.runner.current_user()
    reporter = ResultReporter(context.ci, context.exporter, user)

    reporter.print_banner(__version__)

    logger.info("Validating configuration")
    settings.validate_for_run()

    setup = SshServerSetup(
        settings, context.runner, context.ci, home=context.home, platform=context.platform
    )
    ssh = await setup.bring_up()

    if plugins is None:
        plugins = build_tunnels(settings, context.runner, context.ci, context.executor)

    log_dir = log_dir_for(ssh, context.home)
    tunnels = await context.orchestrator.run(plugins, ssh, log_dir)

    persister = ResultPersister(settings, context.executor, user=user)
    persistence = await persister.persist(tunnels)

    pipeline_vars = reporter.export(tunnels)
    reporter.print_summary(ssh, tunnels)

    duration = time.monotonic() - started
    logger.info("Setup completed", duration=f"{duration:.1f}s")

    return RunResult(
        ssh=ssh,
        tunnels=tunnels,
        persistence=persistence,
        pipeline_vars=pipeline_vars,
        duration=duration,
    )
