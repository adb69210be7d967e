"""Build, deploy and verify pipeline.

A run walks six strictly sequential steps against a source repository:

1. clone    -- shallow clone into an isolated workspace (fatal)
2. validate -- locate a build descriptor (fatal)
3. lint     -- configured or auto-detected lint command (warning only)
4. test     -- configured or auto-detected test command (warning only)
5. build    -- build ``<prefix><workload>:latest`` (fatal)
6. deploy   -- create the workload and smoke test it (fatal)

Every step appends exactly one line to the run's step log.  Runs never
raise for step failures: the returned ``PipelineRun`` (also recorded on
the workload's timeline) is the authority on the outcome.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from faultline.exceptions import (
    ConflictError,
    FaultlineError,
    InputValidationError,
    NotFoundError,
    SmokeTestError,
)
from faultline.logging import pipeline_step
from faultline.models import (
    PipelineEvent,
    PipelineRun,
    PipelineStatus,
    TimelineEvent,
    validate_workload_name,
)
from faultline.toolchain import normalize_repo_url

if TYPE_CHECKING:
    from pathlib import Path

    from faultline.config import PipelineSettings
    from faultline.injector import FailureInjector
    from faultline.runtime import ContainerRuntime
    from faultline.scheduler import Scheduler
    from faultline.timeline import TimelineStore
    from faultline.toolchain import BuildToolchain

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PipelineTicket:
    """Handle for a pipeline running in the background.

    Awaiting ``task`` yields the finished ``PipelineRun``; it never raises
    for pipeline failures.
    """

    pipeline_id: str
    workload_name: str
    task: asyncio.Task[PipelineRun]


@dataclass
class _RunContext:
    pipeline_id: str
    repo_url: str
    workload_name: str
    branch: str
    workspace: Path | None = None
    descriptor: Path | None = None
    image_name: str | None = None
    build_output: str = ""

    def require_workspace(self) -> Path:
        if self.workspace is None:
            raise FaultlineError(f"Pipeline {self.pipeline_id} has no cloned workspace")
        return self.workspace

    def require_image(self) -> str:
        if self.image_name is None:
            raise FaultlineError(f"Pipeline {self.pipeline_id} has no built image")
        return self.image_name


_Step = tuple[str, Callable[[_RunContext], Awaitable[str]]]


class PipelineSequencer:
    """Runs repository pipelines and keeps their run records."""

    def __init__(
        self,
        store: TimelineStore,
        runtime: ContainerRuntime,
        toolchain: BuildToolchain,
        injector: FailureInjector,
        scheduler: Scheduler,
        settings: PipelineSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._toolchain = toolchain
        self._injector = injector
        self._scheduler = scheduler
        self._settings = settings
        self._runs: dict[str, PipelineRun] = {}
        self._logs: dict[str, tuple[str, ...]] = {}
        self._tasks: dict[str, asyncio.Task[PipelineRun]] = {}
        # Workload names with a run between admission and completion.
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self, repo_url: str, workload_name: str, branch: str = "main"
    ) -> PipelineRun:
        """Run the full six-step pipeline and return its record.

        Raises:
            InputValidationError: If an argument is missing or malformed.
            ConflictError: If the workload exists or a run for it is in flight.
        """
        repo_url, name, branch = await self._admit(repo_url, workload_name, branch)
        try:
            return await self._run(
                self._new_context(repo_url, name, branch), self._full_steps()
            )
        finally:
            self._in_flight.discard(name)

    async def submit(
        self, repo_url: str, workload_name: str, branch: str = "main"
    ) -> PipelineTicket:
        """Validate the request and run the pipeline in the background.

        Raises:
            InputValidationError: If an argument is missing or malformed.
            ConflictError: If the workload exists or a run for it is in flight.
        """
        repo_url, name, branch = await self._admit(repo_url, workload_name, branch)
        ctx = self._new_context(repo_url, name, branch)
        task = asyncio.create_task(
            self._run_guarded(ctx, self._full_steps()), name=f"pipeline:{ctx.pipeline_id}"
        )
        self._tasks[ctx.pipeline_id] = task
        task.add_done_callback(lambda _: self._release(ctx))
        logger.info("pipeline_submitted", pipeline_id=ctx.pipeline_id, workload=name)
        return PipelineTicket(pipeline_id=ctx.pipeline_id, workload_name=name, task=task)

    async def deploy(
        self, repo_url: str, workload_name: str, branch: str = "main"
    ) -> PipelineRun:
        """Clone, validate, build and deploy without lint, test or smoke test.

        A successful deployment is recorded as a ``github-deployment`` event.

        Raises:
            InputValidationError: If an argument is missing or malformed.
            ConflictError: If the workload exists or a run for it is in flight.
        """
        repo_url, name, branch = await self._admit(repo_url, workload_name, branch)
        ctx = self._new_context(repo_url, name, branch)
        steps: list[_Step] = [
            ("clone", self._clone),
            ("validate", self._validate),
            ("build", self._build),
            ("deploy", self._create),
        ]
        try:
            run = await self._run(ctx, steps, record_pipeline_event=False)
        finally:
            self._in_flight.discard(name)
        if run.status is PipelineStatus.SUCCESS and run.image_name:
            self._injector.record_deployment(
                name, ctx.repo_url, branch, run.image_name, ctx.build_output
            )
        return run

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, pipeline_id: str) -> PipelineRun | None:
        return self._runs.get(pipeline_id)

    def runs(self) -> list[PipelineRun]:
        return sorted(self._runs.values(), key=lambda run: run.start_time, reverse=True)

    def logs(self, workload_name: str) -> list[str]:
        """Step log of the latest run for ``workload_name``."""
        return list(self._logs.get(workload_name, ()))

    def history(self, workload_name: str) -> list[TimelineEvent]:
        name = validate_workload_name(workload_name)
        return [event for event in self._store.events(name) if event.type == "pipeline"]

    async def shutdown(self) -> None:
        """Wait for in-flight background runs to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _admit(
        self, repo_url: str, workload_name: str, branch: str
    ) -> tuple[str, str, str]:
        if not (repo_url or "").strip():
            raise InputValidationError("Missing required field: repository URL")
        name = validate_workload_name(workload_name)
        branch = (branch or "").strip()
        if not branch or branch.startswith("-"):
            raise InputValidationError(f"Invalid branch: {branch!r}")

        self._check_not_running(name)
        try:
            await self._runtime.inspect(name)
        except NotFoundError:
            pass
        else:
            raise ConflictError(f"Workload {name!r} already exists")
        # Another admission may have finished while inspect was awaited.
        self._check_not_running(name)
        self._in_flight.add(name)
        return normalize_repo_url(repo_url), name, branch

    def _check_not_running(self, name: str) -> None:
        if name in self._in_flight:
            raise ConflictError(f"A pipeline for workload {name!r} is already running")

    def _release(self, ctx: _RunContext) -> None:
        self._tasks.pop(ctx.pipeline_id, None)
        self._in_flight.discard(ctx.workload_name)

    @staticmethod
    def _new_context(repo_url: str, workload_name: str, branch: str) -> _RunContext:
        return _RunContext(
            pipeline_id=f"pipeline-{uuid.uuid4().hex[:12]}",
            repo_url=repo_url,
            workload_name=workload_name,
            branch=branch,
        )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _full_steps(self) -> list[_Step]:
        return [
            ("clone", self._clone),
            ("validate", self._validate),
            ("lint", self._lint),
            ("test", self._test),
            ("build", self._build),
            ("deploy", self._deploy_and_smoke_test),
        ]

    async def _run_guarded(self, ctx: _RunContext, steps: list[_Step]) -> PipelineRun:
        try:
            return await self._run(ctx, steps)
        except Exception as exc:
            return self._crashed(ctx, exc)
        finally:
            self._in_flight.discard(ctx.workload_name)

    def _crashed(self, ctx: _RunContext, exc: Exception) -> PipelineRun:
        logger.error(
            "pipeline_crashed", pipeline_id=ctx.pipeline_id, error=str(exc), exc_info=exc
        )
        now = self._scheduler.now().isoformat()
        run = PipelineRun(
            pipeline_id=ctx.pipeline_id,
            status=PipelineStatus.FAILED,
            repo_url=ctx.repo_url,
            workload_name=ctx.workload_name,
            branch=ctx.branch,
            start_time=now,
            end_time=now,
            error=f"Pipeline crashed: {exc}",
        )
        self._runs[run.pipeline_id] = run
        self._logs[ctx.workload_name] = run.step_log
        self._record(run)
        return run

    async def _run(
        self,
        ctx: _RunContext,
        steps: list[_Step],
        *,
        record_pipeline_event: bool = True,
    ) -> PipelineRun:
        start_time = self._scheduler.now()
        started = self._scheduler.monotonic()
        total = len(steps)
        step_log: list[str] = []
        steps_completed = 0
        error: str | None = None

        logger.info(
            "pipeline_started",
            pipeline_id=ctx.pipeline_id,
            workload=ctx.workload_name,
            repo_url=ctx.repo_url,
            branch=ctx.branch,
        )
        try:
            for index, (step_name, action) in enumerate(steps, start=1):
                try:
                    with pipeline_step(
                        ctx.pipeline_id, ctx.workload_name, step_name, index, total
                    ):
                        outcome = await action(ctx)
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                    self._log_step(step_log, index, total, step_name, f"failed: {error}")
                    break
                self._log_step(step_log, index, total, step_name, outcome)
                steps_completed = index
        finally:
            if ctx.workspace is not None:
                await self._cleanup(ctx.workspace)

        status = PipelineStatus.FAILED if error else PipelineStatus.SUCCESS
        run = PipelineRun(
            pipeline_id=ctx.pipeline_id,
            status=status,
            repo_url=ctx.repo_url,
            workload_name=ctx.workload_name,
            branch=ctx.branch,
            image_name=ctx.image_name if status is PipelineStatus.SUCCESS else None,
            start_time=start_time.isoformat(),
            end_time=self._scheduler.now().isoformat(),
            duration_ms=int((self._scheduler.monotonic() - started) * 1000),
            steps_completed=steps_completed,
            step_log=tuple(step_log),
            error=error,
        )
        self._runs[run.pipeline_id] = run
        self._logs[ctx.workload_name] = run.step_log

        if record_pipeline_event:
            self._record(run)

        if status is PipelineStatus.SUCCESS:
            logger.info(
                "pipeline_succeeded",
                pipeline_id=run.pipeline_id,
                image=run.image_name,
                duration_ms=run.duration_ms,
            )
        else:
            logger.error(
                "pipeline_failed",
                pipeline_id=run.pipeline_id,
                steps_completed=steps_completed,
                error=error,
            )
        return run

    def _log_step(
        self, step_log: list[str], index: int, total: int, step_name: str, outcome: str
    ) -> None:
        stamp = self._scheduler.now().isoformat()
        step_log.append(f"[{stamp}] [{index}/{total}] {step_name}: {outcome}")

    async def _cleanup(self, workspace: Path) -> None:
        if self._settings.keep_workspace:
            logger.info("workspace_kept", workspace=str(workspace))
            return
        await asyncio.to_thread(shutil.rmtree, workspace, True)

    def _record(self, run: PipelineRun) -> None:
        event = PipelineEvent(
            timestamp=run.end_time,
            pipeline_id=run.pipeline_id,
            status=run.status,
            repo_url=run.repo_url,
            branch=run.branch,
            duration_ms=run.duration_ms,
            steps_completed=run.steps_completed,
            error=run.error,
        )
        try:
            self._store.append_event(run.workload_name, event)
        except (OSError, FaultlineError) as exc:
            logger.error(
                "timeline_write_failed", workload=run.workload_name, error=str(exc)
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _clone(self, ctx: _RunContext) -> str:
        ctx.workspace = await self._toolchain.clone(
            ctx.repo_url,
            ctx.branch,
            self._settings.clone_depth,
            self._settings.clone_timeout,
        )
        return f"cloned {ctx.repo_url}@{ctx.branch}"

    async def _validate(self, ctx: _RunContext) -> str:
        workspace = ctx.require_workspace()
        ctx.descriptor = self._toolchain.locate_build_descriptor(workspace)
        return f"found {ctx.descriptor.relative_to(workspace)}"

    async def _lint(self, ctx: _RunContext) -> str:
        workspace = ctx.require_workspace()
        command = self._settings.lint_command or self._toolchain.detect_lint_command(
            workspace
        )
        return await self._soft_check("lint", command, workspace, self._settings.lint_timeout)

    async def _test(self, ctx: _RunContext) -> str:
        workspace = ctx.require_workspace()
        command = self._settings.test_command or self._toolchain.detect_test_command(
            workspace
        )
        return await self._soft_check("test", command, workspace, self._settings.test_timeout)

    async def _soft_check(
        self, kind: str, command: list[str] | None, workspace: Path, timeout_s: int
    ) -> str:
        if not command:
            return f"skipped (no {kind} command configured)"
        try:
            result = await self._toolchain.run_command(command, workspace, timeout_s)
        except FaultlineError as exc:
            logger.warning(f"{kind}_error", error=str(exc))
            return f"warning: {exc} (non-fatal)"
        if not result.ok:
            logger.warning(f"{kind}_failed", returncode=result.returncode)
            return f"warning: exit status {result.returncode} (non-fatal)"
        return "passed"

    async def _build(self, ctx: _RunContext) -> str:
        image = f"{self._settings.image_prefix}{ctx.workload_name}:latest"
        result = await self._toolchain.build(
            ctx.require_workspace(),
            image,
            self._settings.build_timeout,
            descriptor=ctx.descriptor,
        )
        ctx.image_name = result.image_tag
        ctx.build_output = result.build_output
        return f"built {result.image_tag}"

    async def _create(self, ctx: _RunContext) -> str:
        container_id = await self._runtime.create(ctx.require_image(), ctx.workload_name)
        return f"created {ctx.workload_name} ({container_id[:12]})"

    async def _deploy_and_smoke_test(self, ctx: _RunContext) -> str:
        created = await self._create(ctx)
        health = await self._runtime.inspect(ctx.workload_name)
        if not health.running:
            raise SmokeTestError(
                f"Smoke test failed: {ctx.workload_name} is not running (state {health.state!r})"
            )
        output = await self._runtime.logs(ctx.workload_name, self._settings.smoke_log_lines)
        if not output.strip():
            raise SmokeTestError(f"Smoke test failed: {ctx.workload_name} produced no logs")
        return f"{created}, smoke test passed"
