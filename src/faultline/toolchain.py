"""Source control and image build client.

``BuildToolchain`` is what the pipeline sequencer depends on;
``GitDockerToolchain`` implements it with the ``git`` and ``docker``
command-line tools.  Clones land in isolated temporary workspaces under
``pipeline.workspace_dir`` and are retried with tenacity on transient
tool failures (timeouts are never retried).
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from faultline.exceptions import ExternalTimeoutError, ExternalToolError, NotFoundError
from faultline.models import BuildResult, CommandResult

if TYPE_CHECKING:
    from faultline.config import PipelineSettings, RuntimeSettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SHORTHAND_RE = re.compile(r"^[A-Za-z0-9-]+/[A-Za-z0-9-._]+$")
_PLACEHOLDER_TEST_SCRIPT = 'echo "Error: no test specified"'
_LINT_TOOLS = ("eslint", "prettier")


def normalize_repo_url(url: str) -> str:
    """Expand repository shorthands into a clonable URL.

    ``owner/repo`` becomes ``https://github.com/owner/repo.git`` and GitHub
    URLs gain a ``.git`` suffix.  SSH (``git@``) and other URLs pass through.
    """
    url = url.strip()
    if url.startswith("git@"):
        return url
    if "github.com" in url:
        if "://" not in url:
            url = f"https://{url}"
        return url if url.endswith(".git") else f"{url}.git"
    if _SHORTHAND_RE.match(url):
        return f"https://github.com/{url}.git"
    return url


def _tail(text: str, limit: int = 500) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


class BuildToolchain(Protocol):
    """Operations the pipeline needs to fetch and build a repository."""

    async def clone(
        self, url: str, branch: str, depth: int, timeout_s: float
    ) -> Path: ...

    def locate_build_descriptor(self, workspace: Path) -> Path: ...

    async def build(
        self,
        workspace: Path,
        image_tag: str,
        timeout_s: float,
        *,
        descriptor: Path | None = None,
    ) -> BuildResult: ...

    def detect_lint_command(self, workspace: Path) -> list[str] | None: ...

    def detect_test_command(self, workspace: Path) -> list[str] | None: ...

    async def run_command(
        self, argv: list[str], workspace: Path, timeout_s: float
    ) -> CommandResult: ...


class GitDockerToolchain:
    """``BuildToolchain`` backed by ``git`` and ``docker build``."""

    def __init__(
        self,
        settings: PipelineSettings,
        runtime_settings: RuntimeSettings,
        *,
        git_binary: str = "git",
    ) -> None:
        self._settings = settings
        self._docker = runtime_settings.docker_binary
        self._git = git_binary

    # ------------------------------------------------------------------
    # Clone
    # ------------------------------------------------------------------

    async def clone(self, url: str, branch: str, depth: int, timeout_s: float) -> Path:
        """Shallow-clone ``url`` into a fresh workspace.

        Args:
            url: Repository URL or ``owner/repo`` shorthand.
            branch: Branch to check out.
            depth: Clone depth.
            timeout_s: Per-attempt timeout in seconds.

        Returns:
            Path of the new workspace.

        Raises:
            ExternalTimeoutError: If an attempt exceeds ``timeout_s``.
            ExternalToolError: If every attempt fails.
        """
        remote = normalize_repo_url(url)
        self._settings.workspace_dir.mkdir(parents=True, exist_ok=True)
        workspace = Path(
            tempfile.mkdtemp(prefix="ws-", dir=str(self._settings.workspace_dir))
        )
        argv = [
            self._git,
            "clone",
            "--depth",
            str(depth),
            "--branch",
            branch,
            remote,
            str(workspace),
        ]

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ExternalToolError)
                & retry_if_not_exception_type(ExternalTimeoutError),
                stop=stop_after_attempt(self._settings.clone_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True,
            ):
                with attempt:
                    attempt_no = attempt.retry_state.attempt_number
                    if attempt_no > 1:
                        logger.warning("clone_retry", repo_url=remote, attempt=attempt_no)
                        self._reset_workspace(workspace)
                    result = await self._execute(argv, cwd=None, timeout_s=timeout_s)
                    if not result.ok:
                        msg = f"Failed to clone repository: {_tail(result.output)}"
                        raise ExternalToolError(
                            msg,
                            tool="git",
                            returncode=result.returncode,
                            stderr=_tail(result.output),
                        )
        except BaseException:
            shutil.rmtree(workspace, ignore_errors=True)
            raise

        logger.info("repo_cloned", repo_url=remote, branch=branch, workspace=str(workspace))
        return workspace

    @staticmethod
    def _reset_workspace(workspace: Path) -> None:
        shutil.rmtree(workspace, ignore_errors=True)
        workspace.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def locate_build_descriptor(self, workspace: Path) -> Path:
        """Return the first configured build descriptor present in ``workspace``.

        Raises:
            NotFoundError: If none of the candidate paths exist.
        """
        for candidate in self._settings.descriptor_candidates:
            path = workspace / candidate
            if path.is_file():
                logger.debug("build_descriptor_found", path=candidate)
                return path
        looked_for = ", ".join(self._settings.descriptor_candidates)
        raise NotFoundError(f"no build descriptor found (looked for {looked_for})")

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(
        self,
        workspace: Path,
        image_tag: str,
        timeout_s: float,
        *,
        descriptor: Path | None = None,
    ) -> BuildResult:
        argv = [self._docker, "build", "--tag", image_tag]
        if descriptor is not None:
            argv += ["--file", str(descriptor)]
        argv.append(str(workspace))

        logger.info("image_build_start", image=image_tag)
        result = await self._execute(argv, cwd=workspace, timeout_s=timeout_s)
        if not result.ok:
            msg = f"Failed to build image: {_tail(result.output)}"
            raise ExternalToolError(
                msg, tool="docker", returncode=result.returncode, stderr=_tail(result.output)
            )
        logger.info("image_built", image=image_tag)
        return BuildResult(image_tag=image_tag, build_output=result.output)

    # ------------------------------------------------------------------
    # Lint / test detection
    # ------------------------------------------------------------------

    @staticmethod
    def _read_package_json(workspace: Path) -> dict | None:
        path = workspace / "package.json"
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("package_json_unreadable", error=str(exc))
            return None
        return data if isinstance(data, dict) else None

    def detect_lint_command(self, workspace: Path) -> list[str] | None:
        package = self._read_package_json(workspace)
        if package is None:
            return None
        dev_deps = package.get("devDependencies") or {}
        if any(tool in dev_deps for tool in _LINT_TOOLS):
            return ["npm", "run", "lint", "--prefix", str(workspace)]
        return None

    def detect_test_command(self, workspace: Path) -> list[str] | None:
        package = self._read_package_json(workspace)
        if package is None:
            return None
        script = (package.get("scripts") or {}).get("test")
        if script and script != _PLACEHOLDER_TEST_SCRIPT:
            return ["npm", "test", "--prefix", str(workspace)]
        return None

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    async def run_command(
        self, argv: list[str], workspace: Path, timeout_s: float
    ) -> CommandResult:
        """Run ``argv`` inside ``workspace``; a non-zero exit is not an error."""
        return await self._execute(argv, cwd=workspace, timeout_s=timeout_s)

    async def _execute(
        self, argv: list[str], *, cwd: Path | None, timeout_s: float
    ) -> CommandResult:
        return await asyncio.to_thread(self._execute_sync, argv, cwd, timeout_s)

    @staticmethod
    def _execute_sync(argv: list[str], cwd: Path | None, timeout_s: float) -> CommandResult:
        try:
            result = subprocess.run(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"{' '.join(argv[:2])} timed out after {timeout_s}s"
            raise ExternalTimeoutError(msg, tool=argv[0]) from exc
        except OSError as exc:
            msg = f"Could not execute {argv[0]!r}: {exc}"
            raise ExternalToolError(msg, tool=argv[0]) from exc
        return CommandResult(
            argv=argv, returncode=result.returncode, output=result.stdout + result.stderr
        )
