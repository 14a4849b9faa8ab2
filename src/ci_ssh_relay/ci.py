"""CI runner context: identity of the job and pipeline variable export.

Supports Azure Pipelines (``##vso`` logging commands) and GitHub Actions
(``$GITHUB_ENV`` file); other platforms are detected for reporting only.
"""

import os
import re
import time
from collections.abc import Mapping
from pathlib import Path
from typing import TextIO

import click
import structlog

logger = structlog.get_logger()

_CWD_CANDIDATES = (
    "SYSTEM_DEFAULTWORKINGDIRECTORY",
    "BUILD_SOURCESDIRECTORY",
    "BUILD_REPOSITORY_LOCALPATH",
    "AGENT_BUILDDIRECTORY",
    "GITHUB_WORKSPACE",
)

_RUNNER_ID_VARS = (
    "AGENT_ID",
    "BUILD_BUILDID",
    "BUILD_BUILDNUMBER",
    "GITHUB_RUN_ID",
    "GITHUB_RUN_NUMBER",
    "RUNNER_NAME",
)


def sanitize_id(value: str | None, max_len: int = 28) -> str:
    """Turn arbitrary text into a short identifier safe for hostnames.

    Lowercases, collapses runs of other characters to ``-`` and trims
    leading/trailing dots and dashes. Falls back to ``ci``.
    """
    cleaned = re.sub(r"[^\w.-]+", "-", str(value or "").lower())
    cleaned = re.sub(r"-+", "-", cleaned)
    cleaned = re.sub(r"^[.-]+|[.-]+$", "", cleaned)
    return cleaned[:max_len] or "ci"


class CIEnvironment:
    """Read-only view of the CI job's environment."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._env = dict(os.environ if environ is None else environ)

    def get(self, name: str) -> str | None:
        value = self._env.get(name)
        return value if value else None

    def is_likely_ci(self) -> bool:
        return any(
            self.get(name) for name in ("CI", "GITHUB_ACTIONS", "TF_BUILD", "AGENT_ID", "BUILD_BUILDID")
        )

    def detect_platform(self) -> str:
        if self.get("GITHUB_ACTIONS"):
            return "github"
        if self.get("TF_BUILD"):
            return "azure"
        if self.get("CIRCLECI"):
            return "circleci"
        if self.get("GITLAB_CI"):
            return "gitlab"
        if self.get("JENKINS_URL"):
            return "jenkins"
        return "unknown"

    def default_cwd(self) -> str:
        """Checkout directory of the job, falling back to the current directory."""
        for name in _CWD_CANDIDATES:
            candidate = self.get(name)
            if candidate and Path(candidate).is_dir():
                logger.debug("Detected default working directory", path=candidate, source=name)
                return candidate
        return os.getcwd()

    def repo_name(self) -> str:
        azure = self.get("BUILD_REPOSITORY_NAME")
        if azure:
            return azure

        github = self.get("GITHUB_REPOSITORY")
        if github and "/" in github:
            return github.rsplit("/", 1)[-1]

        return Path(os.getcwd()).name

    def runner_id(self) -> str:
        for name in _RUNNER_ID_VARS:
            value = self.get(name)
            if value:
                return value
        return str(int(time.time() * 1000))


class PipelineExporter:
    """Surfaces name/value pairs to later steps of the pipeline."""

    def __init__(self, ci: CIEnvironment, stream: TextIO | None = None) -> None:
        self.ci = ci
        self._stream = stream

    def set_var(self, name: str, value: object) -> None:
        text = "" if value is None else str(value)

        if self.ci.get("TF_BUILD"):
            click.echo(f"##vso[task.setvariable variable={name}]{text}", file=self._stream)
            logger.debug("Set Azure pipeline variable", name=name)

        github_env = self.ci.get("GITHUB_ENV")
        if github_env:
            try:
                with open(github_env, "a", encoding="utf-8") as f:
                    f.write(f"{name}={text}\n")
                logger.debug("Set GitHub Actions variable", name=name)
            except OSError as e:
                logger.warning("Failed to set GitHub variable", name=name, error=str(e))

    def export(self, variables: Mapping[str, str]) -> None:
        for name, value in variables.items():
            self.set_var(name, value)
