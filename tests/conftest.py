"""Shared test fixtures for faultline tests."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from faultline.config import (
    DetectorSettings,
    PipelineSettings,
    RecoverySettings,
    RuntimeSettings,
    Settings,
    StorageSettings,
)
from faultline.context import FaultlineContext
from faultline.exceptions import ExternalToolError, NotFoundError
from faultline.models import BuildResult, CommandResult, WorkloadHealth, WorkloadSummary
from faultline.timeline import TimelineStore
from faultline.toolchain import GitDockerToolchain

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from faultline.scheduler import TickCallback

EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------


class VirtualTimer:
    """Cancellation handle for a virtual timer."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class VirtualScheduler:
    """Scheduler whose clock only moves when ``advance`` is awaited.

    Due timers and sleepers fire in deadline order; a repeating timer is
    re-armed before its callback runs so the callback may cancel it.
    """

    def __init__(self, start: datetime = EPOCH) -> None:
        self._start = start
        self.elapsed = 0.0
        self._queue: list[tuple[float, int, Any]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._queue, (self.elapsed + seconds, next(self._seq), future))
        await future

    def call_later(
        self, delay_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> VirtualTimer:
        timer = VirtualTimer()
        entry = (timer, callback, None)
        heapq.heappush(self._queue, (self.elapsed + delay_seconds, next(self._seq), entry))
        return timer

    def call_every(
        self, interval_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> VirtualTimer:
        timer = VirtualTimer()
        entry = (timer, callback, interval_seconds)
        heapq.heappush(
            self._queue, (self.elapsed + interval_seconds, next(self._seq), entry)
        )
        return timer

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing everything that falls due."""
        target = self.elapsed + seconds
        await _settle()
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, item = heapq.heappop(self._queue)
            self.elapsed = max(self.elapsed, when)
            if isinstance(item, asyncio.Future):
                if not item.done():
                    item.set_result(None)
            else:
                timer, callback, interval = item
                if timer.cancelled:
                    continue
                if interval is not None:
                    heapq.heappush(self._queue, (when + interval, next(self._seq), item))
                await callback()
            await _settle()
        self.elapsed = target
        await _settle()


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fake container runtime
# ---------------------------------------------------------------------------


@dataclass
class FakeContainer:
    name: str
    image: str
    running: bool = True
    logs: str = "server listening on :8080\n"
    container_id: str = ""

    @property
    def state(self) -> str:
        return "running" if self.running else "exited"


class FakeRuntime:
    """In-memory ``ContainerRuntime`` recording every call.

    ``script_health`` queues observations returned by successive
    ``inspect`` calls; an exception in the queue is raised instead.
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.scripts: dict[str, deque[bool | Exception]] = {}
        self.pulled: list[str] = []
        self.created_options: dict[str, dict[str, Any]] = {}
        self.start_brings_up = True
        self.create_running = True
        self.default_logs = "server listening on :8080\n"
        self._ids = itertools.count(1)

    def add(self, name: str, *, image: str = "nginx:latest", running: bool = True) -> FakeContainer:
        container = FakeContainer(
            name=name,
            image=image,
            running=running,
            logs=self.default_logs,
            container_id=f"{next(self._ids):064x}",
        )
        self.containers[name] = container
        return container

    def script_health(self, name: str, observations: list[bool | Exception]) -> None:
        self.scripts[name] = deque(observations)

    def fail_on(self, operation: str, exc: Exception) -> None:
        self.failures[operation] = exc

    def count(self, operation: str, name: str | None = None) -> int:
        return sum(
            1 for op, subject in self.calls if op == operation and name in (None, subject)
        )

    def _enter(self, operation: str, subject: str) -> None:
        self.calls.append((operation, subject))
        if operation in self.failures:
            raise self.failures[operation]

    def _get(self, name: str) -> FakeContainer:
        try:
            return self.containers[name]
        except KeyError:
            raise NotFoundError(f"Workload not found: {name}") from None

    async def inspect(self, name: str) -> WorkloadHealth:
        self._enter("inspect", name)
        container = self._get(name)
        script = self.scripts.get(name)
        if script:
            observation = script.popleft()
            if isinstance(observation, Exception):
                raise observation
            container.running = observation
        return WorkloadHealth(
            name=name,
            state=container.state,
            running=container.running,
            exit_code=None if container.running else 137,
            image_ref=container.image,
        )

    async def kill(self, name: str) -> None:
        self._enter("kill", name)
        self._get(name).running = False

    async def start(self, name: str) -> None:
        self._enter("start", name)
        container = self._get(name)
        if self.start_brings_up:
            container.running = True

    async def stop(self, name: str, grace_seconds: int = 10) -> None:
        self._enter("stop", name)
        self._get(name).running = False

    async def remove(self, name: str, *, force: bool = False) -> None:
        self._enter("remove", name)
        self._get(name)
        del self.containers[name]

    async def create(
        self, image: str, name: str, options: dict[str, Any] | None = None
    ) -> str:
        self._enter("create", name)
        if name in self.containers:
            msg = f"docker run failed: Conflict. The container name /{name} is already in use"
            raise ExternalToolError(msg, tool="docker", returncode=125)
        container = self.add(name, image=image, running=self.create_running)
        self.created_options[name] = dict(options or {})
        return container.container_id

    async def logs(self, name: str, tail_lines: int = 100) -> str:
        self._enter("logs", name)
        return self._get(name).logs

    async def list(self, *, all: bool = False) -> list[WorkloadSummary]:
        self._enter("list", "")
        return [
            WorkloadSummary(
                id=c.container_id[:12],
                name=c.name,
                image=c.image,
                status="Up 1 minute" if c.running else "Exited (137)",
                state=c.state,
            )
            for c in self.containers.values()
            if all or c.running
        ]

    async def pull(self, image: str) -> None:
        self._enter("pull", image)
        self.pulled.append(image)


# ---------------------------------------------------------------------------
# Fake build toolchain
# ---------------------------------------------------------------------------


class FakeToolchain(GitDockerToolchain):
    """Toolchain that fabricates workspaces instead of cloning and building.

    Descriptor lookup and lint/test detection are the real implementations.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        runtime_settings: RuntimeSettings | None = None,
    ) -> None:
        super().__init__(settings, runtime_settings or RuntimeSettings())
        self.files: dict[str, str] = {"Dockerfile": "FROM node:20-alpine\n"}
        self.command_results: dict[tuple[str, ...], int] = {}
        self.clone_error: Exception | None = None
        self.build_error: Exception | None = None
        self.workspaces: list[Path] = []
        self.commands: list[list[str]] = []
        self.builds: list[str] = []

    async def clone(self, url: str, branch: str, depth: int, timeout_s: float) -> Path:
        if self.clone_error is not None:
            raise self.clone_error
        self._settings.workspace_dir.mkdir(parents=True, exist_ok=True)
        workspace = self._settings.workspace_dir / f"ws-{len(self.workspaces)}"
        workspace.mkdir()
        for relative, content in self.files.items():
            path = workspace / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        self.workspaces.append(workspace)
        return workspace

    async def build(
        self,
        workspace: Path,
        image_tag: str,
        timeout_s: float,
        *,
        descriptor: Path | None = None,
    ) -> BuildResult:
        if self.build_error is not None:
            raise self.build_error
        self.builds.append(image_tag)
        return BuildResult(image_tag=image_tag, build_output=f"Successfully tagged {image_tag}")

    async def run_command(
        self, argv: list[str], workspace: Path, timeout_s: float
    ) -> CommandResult:
        self.commands.append(argv)
        returncode = self.command_results.get(tuple(argv), 0)
        return CommandResult(argv=argv, returncode=returncode, output="")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory with fast test cadences."""
    return Settings(
        storage=StorageSettings(data_dir=tmp_path / "data"),
        pipeline=PipelineSettings(workspace_dir=tmp_path / "workspaces"),
        detector=DetectorSettings(poll_interval_ms=2000, healthy_threshold=5),
        recovery=RecoverySettings(
            health_check_interval_ms=5000, max_retries=3, retry_delay_ms=10_000
        ),
    )


@pytest.fixture()
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def toolchain(settings: Settings) -> FakeToolchain:
    return FakeToolchain(settings.pipeline, settings.runtime)


@pytest.fixture()
def store(settings: Settings) -> TimelineStore:
    return TimelineStore(settings.storage.timelines_dir)


@pytest.fixture()
def context(
    settings: Settings,
    scheduler: VirtualScheduler,
    runtime: FakeRuntime,
    toolchain: FakeToolchain,
) -> FaultlineContext:
    """A fully wired service context over the fakes."""
    return FaultlineContext.from_settings(
        settings, scheduler=scheduler, runtime=runtime, toolchain=toolchain
    )


@pytest.fixture()
def context_factory(runtime: FakeRuntime) -> Callable[[Settings], FaultlineContext]:
    """Wall-clock context builder sharing one fake runtime across invocations."""

    def _factory(settings: Settings) -> FaultlineContext:
        return FaultlineContext.from_settings(
            settings,
            runtime=runtime,
            toolchain=FakeToolchain(settings.pipeline, settings.runtime),
        )

    return _factory
