"""Container runtime client.

``ContainerRuntime`` is the seam every engine component talks to;
``DockerCLIRuntime`` implements it by shelling out to the ``docker`` CLI.
Each call is a blocking subprocess executed with ``asyncio.to_thread``
and bounded by ``runtime.command_timeout``.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from faultline.exceptions import ExternalTimeoutError, ExternalToolError, NotFoundError
from faultline.models import WorkloadHealth, WorkloadSummary

if TYPE_CHECKING:
    from faultline.config import RuntimeSettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_NOT_FOUND_MARKERS = ("No such container", "No such object", "No such image")


class ContainerRuntime(Protocol):
    """Operations the engine needs from a container runtime."""

    async def inspect(self, name: str) -> WorkloadHealth: ...

    async def kill(self, name: str) -> None: ...

    async def start(self, name: str) -> None: ...

    async def stop(self, name: str, grace_seconds: int = 10) -> None: ...

    async def remove(self, name: str, *, force: bool = False) -> None: ...

    async def create(
        self, image: str, name: str, options: dict[str, Any] | None = None
    ) -> str: ...

    async def logs(self, name: str, tail_lines: int = 100) -> str: ...

    async def list(self, *, all: bool = False) -> list[WorkloadSummary]: ...

    async def pull(self, image: str) -> None: ...


class DockerCLIRuntime:
    """``ContainerRuntime`` backed by the ``docker`` command-line client."""

    def __init__(self, settings: RuntimeSettings) -> None:
        self._settings = settings

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    def _run_sync(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        subject: str = "",
        merge_stderr: bool = False,
    ) -> str:
        command = [self._settings.docker_binary, *args]
        budget = timeout if timeout is not None else self._settings.command_timeout
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=budget,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"docker {args[0]} timed out after {budget}s"
            raise ExternalTimeoutError(msg, tool="docker") from exc
        except OSError as exc:
            msg = f"Could not execute {command[0]!r}: {exc}"
            raise ExternalToolError(msg, tool="docker") from exc

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
                raise NotFoundError(f"Workload not found: {subject or args[-1]}")
            msg = f"docker {args[0]} failed: {stderr or f'exit status {result.returncode}'}"
            raise ExternalToolError(
                msg, tool="docker", returncode=result.returncode, stderr=stderr
            )
        if merge_stderr:
            return result.stdout + result.stderr
        return result.stdout

    async def _run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        subject: str = "",
        merge_stderr: bool = False,
    ) -> str:
        return await asyncio.to_thread(
            self._run_sync,
            args,
            timeout=timeout,
            subject=subject,
            merge_stderr=merge_stderr,
        )

    # ------------------------------------------------------------------
    # ContainerRuntime
    # ------------------------------------------------------------------

    async def inspect(self, name: str) -> WorkloadHealth:
        """Return the runtime state of ``name``.

        Raises:
            NotFoundError: If no container with that name exists.
        """
        stdout = await self._run(
            ["inspect", "--type", "container", name], subject=name
        )
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            msg = f"Unreadable inspect output for {name}"
            raise ExternalToolError(msg, tool="docker") from exc
        if not payload:
            raise NotFoundError(f"Workload not found: {name}")

        data = payload[0]
        state = data.get("State") or {}
        return WorkloadHealth(
            name=str(data.get("Name", name)).lstrip("/"),
            state=str(state.get("Status", "")),
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
            finished_at=state.get("FinishedAt"),
            image_ref=str((data.get("Config") or {}).get("Image", "")),
        )

    async def kill(self, name: str) -> None:
        logger.info("container_kill", workload=name)
        await self._run(["kill", name], subject=name)

    async def start(self, name: str) -> None:
        logger.info("container_start", workload=name)
        await self._run(["start", name], subject=name)

    async def stop(self, name: str, grace_seconds: int = 10) -> None:
        logger.info("container_stop", workload=name, grace_seconds=grace_seconds)
        await self._run(
            ["stop", "--time", str(grace_seconds), name],
            timeout=self._settings.command_timeout + grace_seconds,
            subject=name,
        )

    async def remove(self, name: str, *, force: bool = False) -> None:
        logger.info("container_remove", workload=name, force=force)
        args = ["rm", "--force", name] if force else ["rm", name]
        await self._run(args, subject=name)

    async def create(
        self, image: str, name: str, options: dict[str, Any] | None = None
    ) -> str:
        """Create and start a detached container.

        Args:
            image: Image reference to run.
            name: Container name.
            options: Optional ``ports`` (host -> container), ``env`` mapping
                and ``restart_max_retries`` override.

        Returns:
            The new container id.
        """
        options = options or {}
        retries = options.get("restart_max_retries", self._settings.restart_max_retries)
        args = ["run", "--detach", "--name", name, "--restart", f"on-failure:{retries}"]
        for host_port, container_port in (options.get("ports") or {}).items():
            args += ["--publish", f"{host_port}:{container_port}"]
        for key, value in (options.get("env") or {}).items():
            args += ["--env", f"{key}={value}"]
        args.append(image)

        logger.info("container_create", workload=name, image=image)
        stdout = await self._run(args, subject=image)
        container_id = stdout.strip()
        logger.info("container_created", workload=name, container_id=container_id[:12])
        return container_id

    async def logs(self, name: str, tail_lines: int = 100) -> str:
        # docker logs replays the container's stderr stream on its own stderr
        return await self._run(
            ["logs", "--tail", str(tail_lines), name],
            subject=name,
            merge_stderr=True,
        )

    async def list(self, *, all: bool = False) -> list[WorkloadSummary]:
        args = ["ps", "--no-trunc", "--format", "{{json .}}"]
        if all:
            args.append("--all")
        stdout = await self._run(args)

        summaries: list[WorkloadSummary] = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            summaries.append(
                WorkloadSummary(
                    id=str(row.get("ID", ""))[:12],
                    name=str(row.get("Names", "")).split(",")[0],
                    image=str(row.get("Image", "")),
                    status=str(row.get("Status", "")),
                    state=str(row.get("State", "")),
                )
            )
        return summaries

    async def pull(self, image: str) -> None:
        logger.info("image_pull", image=image)
        await self._run(
            ["pull", "--quiet", image],
            timeout=self._settings.command_timeout * 10,
            subject=image,
        )
        logger.info("image_pulled", image=image)
