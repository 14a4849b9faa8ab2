"""Tests for CI context detection and pipeline variable export."""

import io
from pathlib import Path

import pytest

from ci_ssh_relay.ci import CIEnvironment, PipelineExporter, sanitize_id


class TestSanitizeId:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("My Project!", "my-project"),
            ("foo---bar", "foo-bar"),
            ("---foo---", "foo"),
            ("my.project-name", "my.project-name"),
            ("", "ci"),
            (None, "ci"),
            ("!!!", "ci"),
        ],
    )
    def test_cases(self, value: str | None, expected: str) -> None:
        assert sanitize_id(value) == expected

    def test_max_len(self) -> None:
        assert sanitize_id("a" * 40, 10) == "a" * 10


class TestCIEnvironment:
    """Tests for CIEnvironment."""

    def test_detect_platform(self) -> None:
        assert CIEnvironment({"GITHUB_ACTIONS": "true"}).detect_platform() == "github"
        assert CIEnvironment({"TF_BUILD": "True"}).detect_platform() == "azure"
        assert CIEnvironment({"GITLAB_CI": "true"}).detect_platform() == "gitlab"
        assert CIEnvironment({}).detect_platform() == "unknown"

    def test_is_likely_ci(self) -> None:
        assert CIEnvironment({"CI": "true"}).is_likely_ci() is True
        assert CIEnvironment({"CI": ""}).is_likely_ci() is False

    def test_repo_name(self) -> None:
        assert CIEnvironment({"BUILD_REPOSITORY_NAME": "azure-repo"}).repo_name() == "azure-repo"
        assert CIEnvironment({"GITHUB_REPOSITORY": "octo/gh-repo"}).repo_name() == "gh-repo"
        assert CIEnvironment({}).repo_name() == Path.cwd().name

    def test_runner_id(self) -> None:
        assert CIEnvironment({"AGENT_ID": "7", "GITHUB_RUN_ID": "9"}).runner_id() == "7"
        assert CIEnvironment({"GITHUB_RUN_ID": "9"}).runner_id() == "9"
        assert CIEnvironment({}).runner_id().isdigit()

    def test_default_cwd(self, tmp_path: Path) -> None:
        env = CIEnvironment({"BUILD_SOURCESDIRECTORY": "/does/not/exist", "GITHUB_WORKSPACE": str(tmp_path)})
        assert env.default_cwd() == str(tmp_path)
        assert CIEnvironment({}).default_cwd() == str(Path.cwd())


class TestPipelineExporter:
    """Tests for PipelineExporter."""

    def test_azure_logging_command(self) -> None:
        stream = io.StringIO()
        PipelineExporter(CIEnvironment({"TF_BUILD": "True"}), stream=stream).set_var("SSHJ_HOST", "ssh-j.com")
        assert stream.getvalue() == "##vso[task.setvariable variable=SSHJ_HOST]ssh-j.com\n"

    def test_github_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / "github_env"
        exporter = PipelineExporter(CIEnvironment({"GITHUB_ENV": str(env_file)}), stream=io.StringIO())

        exporter.export({"CF_TUNNEL_URL": "https://x.cfargotunnel.com", "SSHJ_DEVICE_PORT": "22"})

        assert env_file.read_text() == "CF_TUNNEL_URL=https://x.cfargotunnel.com\nSSHJ_DEVICE_PORT=22\n"

    def test_no_ci_writes_nothing(self) -> None:
        stream = io.StringIO()
        PipelineExporter(CIEnvironment({}), stream=stream).set_var("NAME", "value")
        assert stream.getvalue() == ""
