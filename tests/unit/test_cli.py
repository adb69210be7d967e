"""Unit tests for faultline.cli - commands over fake services."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import pytest
import structlog
from typer.testing import CliRunner

from faultline import __version__
from faultline.cli import app
from faultline.models import EventStatus
from faultline.timeline import TimelineStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from faultline.config import Settings
    from faultline.context import FaultlineContext
    from tests.conftest import FakeRuntime

runner = CliRunner()


@pytest.fixture()
def cli_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    runtime: FakeRuntime,
    context_factory: Callable[[Settings], FaultlineContext],
) -> FakeRuntime:
    """Route every CLI command to one fake runtime and a temp data dir."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FAULTLINE_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("FAULTLINE_STORAGE__DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("FAULTLINE_PIPELINE__WORKSPACE_DIR", str(tmp_path / "ci"))
    monkeypatch.setenv("FAULTLINE_LOGGING__LEVEL", "WARNING")

    monkeypatch.setattr("faultline.cli.context_factory", context_factory)
    return runtime


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


def _store(tmp_path: Path) -> TimelineStore:
    return TimelineStore(tmp_path / "data" / "timelines")


# ---- Version and help -------------------------------------------------------


class TestVersionAndHelp:
    """Version flag and help text output."""

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_groups(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for group in ("inject", "timeline", "pipeline", "recovery", "doctor"):
            assert group in result.output


# ---- Workload commands ------------------------------------------------------


class TestWorkloadCommands:
    """deploy, containers, health, logs."""

    def test_deploy(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(
            app, ["deploy", "nginx:1.27", "web1", "--port", "8080:80", "--env", "MODE=prod"]
        )
        assert result.exit_code == 0, result.output
        assert "Deployed" in result.output
        assert cli_env.pulled == ["nginx:1.27"]
        assert cli_env.created_options["web1"] == {
            "ports": {"8080": "80"},
            "env": {"MODE": "prod"},
        }

    def test_deploy_conflict(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        result = runner.invoke(app, ["deploy", "nginx:1.27", "web1"])
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert cli_env.pulled == []

    def test_deploy_bad_port(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["deploy", "nginx:1.27", "web1", "--port", "8080"])
        assert result.exit_code != 0

    def test_containers(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        cli_env.add("stopped", running=False)
        result = runner.invoke(app, ["containers"])
        assert result.exit_code == 0
        assert "web1" in result.output
        assert "stopped" not in result.output

        result = runner.invoke(app, ["containers", "--all"])
        assert "stopped" in result.output

    def test_containers_empty(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["containers"])
        assert result.exit_code == 0
        assert "No containers found" in result.output

    def test_health(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        result = runner.invoke(app, ["health", "web1"])
        assert result.exit_code == 0
        assert "running" in result.output

    def test_health_missing(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["health", "ghost"])
        assert result.exit_code == 1
        assert "NotFoundError" in result.output

    def test_logs(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        result = runner.invoke(app, ["logs", "web1", "--tail", "5"])
        assert result.exit_code == 0
        assert "server listening" in result.output


# ---- Failure injection ------------------------------------------------------


class TestInjectCommands:
    """inject kill / latency / memory."""

    def test_kill(self, cli_env: FakeRuntime, tmp_path: Path) -> None:
        cli_env.add("web1")
        result = runner.invoke(app, ["inject", "kill", "web1"])
        assert result.exit_code == 0, result.output
        assert "Killed" in result.output
        statuses = [e.status for e in _store(tmp_path).events("web1")]
        assert statuses == [EventStatus.SCHEDULED, EventStatus.EXECUTED]

    def test_kill_missing(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["inject", "kill", "ghost"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_kill_and_wait(self, cli_env: FakeRuntime, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FAULTLINE_DETECTOR__POLL_INTERVAL_MS", "10")
        monkeypatch.setenv("FAULTLINE_DETECTOR__HEALTHY_THRESHOLD", "2")
        cli_env.add("web1")
        cli_env.script_health("web1", [True, True])
        result = runner.invoke(app, ["inject", "kill", "web1", "--wait", "--wait-timeout-s", "5"])
        assert result.exit_code == 0, result.output
        assert "Recovered" in result.output

    def test_kill_wait_timeout(self, cli_env: FakeRuntime, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FAULTLINE_DETECTOR__POLL_INTERVAL_MS", "10")
        cli_env.add("web1")
        result = runner.invoke(
            app, ["inject", "kill", "web1", "--wait", "--wait-timeout-s", "0.1"]
        )
        assert result.exit_code == 1
        assert "did not recover" in result.output

    def test_latency(self, cli_env: FakeRuntime, tmp_path: Path) -> None:
        result = runner.invoke(
            app, ["inject", "latency", "web1", "--latency-ms", "250", "--duration-ms", "20"]
        )
        assert result.exit_code == 0, result.output
        assert "expired" in result.output
        events = _store(tmp_path).events("web1")
        assert [e.status for e in events] == [EventStatus.SCHEDULED, EventStatus.RECOVERED]
        assert cli_env.calls == []

    def test_memory_invalid_limit(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["inject", "memory", "web1", "--limit", "lots"])
        assert result.exit_code == 1
        assert "Invalid memory limit" in result.output


# ---- Timeline ---------------------------------------------------------------


class TestTimelineCommands:
    """timeline show / list / clear."""

    def _seed(self) -> None:
        runner.invoke(app, ["inject", "latency", "web1", "--duration-ms", "10"])

    def test_show(self, cli_env: FakeRuntime) -> None:
        self._seed()
        result = runner.invoke(app, ["timeline", "show", "web1"])
        assert result.exit_code == 0
        assert "latency" in result.output
        assert "Recoveries" in result.output

    def test_show_json(self, cli_env: FakeRuntime) -> None:
        self._seed()
        result = runner.invoke(app, ["timeline", "show", "web1", "--json"])
        assert result.exit_code == 0
        assert '"totalRecoveries": 1' in result.output

    def test_show_empty(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["timeline", "show", "web1"])
        assert "No events recorded" in result.output

    def test_list(self, cli_env: FakeRuntime) -> None:
        self._seed()
        result = runner.invoke(app, ["timeline", "list"])
        assert result.exit_code == 0
        assert "web1" in result.output

    def test_clear(self, cli_env: FakeRuntime, tmp_path: Path) -> None:
        self._seed()
        result = runner.invoke(app, ["timeline", "clear", "web1", "--yes"])
        assert result.exit_code == 0
        assert _store(tmp_path).events("web1") == []

    def test_clear_aborted(self, cli_env: FakeRuntime, tmp_path: Path) -> None:
        self._seed()
        result = runner.invoke(app, ["timeline", "clear", "web1"], input="n\n")
        assert result.exit_code == 1
        assert len(_store(tmp_path).events("web1")) == 2


# ---- Pipelines --------------------------------------------------------------


class TestPipelineCommands:
    """pipeline run / deploy / history."""

    def test_run_success(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["pipeline", "run", "acme/shop", "web1"])
        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output
        assert "web1" in cli_env.containers

    def test_run_conflict(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        result = runner.invoke(app, ["pipeline", "run", "acme/shop", "web1"])
        assert result.exit_code == 1
        assert "ConflictError" in result.output

    def test_deploy_and_history(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["pipeline", "deploy", "acme/shop", "web1", "-b", "main"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["pipeline", "history", "web1"])
        assert "No pipeline runs recorded" in result.output

        cli_env.containers.clear()
        runner.invoke(app, ["pipeline", "run", "acme/shop", "web1"])
        result = runner.invoke(app, ["pipeline", "history", "web1"])
        assert result.exit_code == 0
        assert "Pipeline history" in result.output


# ---- Recovery ---------------------------------------------------------------


class TestRecoveryCommands:
    """recovery watch / report."""

    def test_report_empty(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["recovery", "report", "web1"])
        assert result.exit_code == 0
        assert "Recovery SLIs" in result.output
        assert "No recovery policy registered" in result.output

    def test_watch_healthy(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1")
        result = runner.invoke(
            app,
            ["recovery", "watch", "web1", "--interval-ms", "10", "--duration-s", "0.1"],
        )
        assert result.exit_code == 0, result.output
        assert "Monitoring" in result.output

    def test_watch_exhausted(self, cli_env: FakeRuntime) -> None:
        cli_env.add("web1", running=False)
        cli_env.start_brings_up = False
        result = runner.invoke(
            app,
            [
                "recovery",
                "watch",
                "web1",
                "--strategy",
                "restart",
                "--interval-ms",
                "10",
                "--max-retries",
                "1",
                "--retry-delay-ms",
                "0",
                "--duration-s",
                "5",
            ],
        )
        assert result.exit_code == 1
        assert "exhausted" in result.output
        assert cli_env.count("start", "web1") == 1

        report = runner.invoke(app, ["recovery", "report", "web1"])
        assert "0.00%" in report.output


# ---- Doctor and configuration -----------------------------------------------


class TestDoctorAndConfig:
    """doctor and configuration errors."""

    def test_doctor_without_binaries(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["doctor", "--no-binaries"])
        assert result.exit_code == 0
        assert "config-schema" in result.output

    def test_doctor_quiet(self, cli_env: FakeRuntime) -> None:
        result = runner.invoke(app, ["doctor", "--no-binaries", "--quiet"])
        assert result.exit_code == 0
        assert result.output.strip() == ""

    def test_invalid_config(self, cli_env: FakeRuntime, tmp_path: Path) -> None:
        config = tmp_path / "bad.yaml"
        config.write_text("detector:\n  poll_interval_ms: 0\n", encoding="utf-8")
        result = runner.invoke(app, ["containers", "--config", str(config)])
        assert result.exit_code == 1
        assert "Configuration Error" in result.output
