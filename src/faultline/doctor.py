"""Health checks and self-diagnostics for faultline."""

from __future__ import annotations

import shutil
import subprocess
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from faultline.config import Settings

if TYPE_CHECKING:
    from pathlib import Path


class CheckStatus(StrEnum):
    """Severity of a probe result."""

    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


class CheckResult(BaseModel):
    """Outcome of one environment probe."""

    name: str
    status: CheckStatus
    message: str
    details: dict[str, str] = Field(default_factory=dict)


class DoctorReport(BaseModel):
    """Every probe result; unhealthy if any probe failed."""

    checks: list[CheckResult]

    @property
    def healthy(self) -> bool:
        return all(check.status != CheckStatus.FAIL for check in self.checks)

    @property
    def exit_code(self) -> int:
        return 0 if self.healthy else 1


def _check_config_schema(config_path: Path | None) -> CheckResult:
    try:
        Settings.load(config_path=config_path)
        return CheckResult(
            name="config-schema",
            status=CheckStatus.OK,
            message="Settings resolved from every layer.",
        )
    except ValidationError as exc:
        return CheckResult(
            name="config-schema",
            status=CheckStatus.FAIL,
            message="Settings failed validation.",
            details={"error": str(exc).splitlines()[0]},
        )


def _check_writable_directory(name: str, path: Path, label: str) -> CheckResult:
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / ".doctor-write-test"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink(missing_ok=True)
        return CheckResult(
            name=name,
            status=CheckStatus.OK,
            message=f"{label} is writable.",
            details={"path": str(path)},
        )
    except OSError as exc:
        return CheckResult(
            name=name,
            status=CheckStatus.FAIL,
            message=f"{label} is not writable.",
            details={"path": str(path), "error": str(exc)},
        )


def _check_binary(
    name: str,
    binary: str,
    version_args: list[str],
    *,
    missing_status: CheckStatus = CheckStatus.FAIL,
    timeout: float = 10.0,
) -> CheckResult:
    resolved = shutil.which(binary)
    if resolved is None:
        return CheckResult(
            name=name,
            status=missing_status,
            message=f"{binary!r} was not found on PATH.",
        )
    try:
        result = subprocess.run(
            [resolved, *version_args],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return CheckResult(
            name=name,
            status=CheckStatus.FAIL,
            message=f"{binary!r} could not be executed.",
            details={"path": resolved, "error": str(exc)},
        )
    if result.returncode != 0:
        return CheckResult(
            name=name,
            status=CheckStatus.WARN,
            message=f"{binary!r} is installed but not responding.",
            details={"path": resolved, "error": result.stderr.strip()[:200]},
        )
    version = next(iter(result.stdout.strip().splitlines()), "")
    return CheckResult(
        name=name,
        status=CheckStatus.OK,
        message=f"{binary!r} is available.",
        details={"path": resolved, "version": version[:120]},
    )


def run_doctor(
    settings: Settings,
    config_path: Path | None = None,
    check_binaries: bool = True,
) -> DoctorReport:
    """Check whether the engine can run on this host."""
    checks = [
        _check_config_schema(config_path),
        _check_writable_directory(
            "data-directory", settings.storage.timelines_dir, "Timeline data directory"
        ),
        _check_writable_directory(
            "pipeline-workspace", settings.pipeline.workspace_dir, "Pipeline workspace"
        ),
    ]

    if check_binaries:
        checks.append(
            _check_binary(
                "docker",
                settings.runtime.docker_binary,
                ["version", "--format", "{{.Server.Version}}"],
            )
        )
        checks.append(
            _check_binary("git", "git", ["--version"], missing_status=CheckStatus.WARN)
        )
    else:
        checks.append(
            CheckResult(
                name="binaries",
                status=CheckStatus.WARN,
                message="docker and git checks were skipped.",
            )
        )

    return DoctorReport(checks=checks)
