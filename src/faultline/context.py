"""Service context owning every faultline component.

Components receive their collaborators through their constructors; the
context builds the production wiring once and tears it down in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from faultline.autorecovery import AutoRecoveryController
from faultline.detector import RecoveryDetector
from faultline.injector import FailureInjector
from faultline.pipeline import PipelineSequencer
from faultline.runtime import DockerCLIRuntime
from faultline.scheduler import AsyncioScheduler
from faultline.timeline import TimelineStore
from faultline.toolchain import GitDockerToolchain

if TYPE_CHECKING:
    from faultline.config import Settings
    from faultline.runtime import ContainerRuntime
    from faultline.scheduler import Scheduler
    from faultline.toolchain import BuildToolchain

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass
class FaultlineContext:
    """All engine services wired together for one process."""

    settings: Settings
    scheduler: Scheduler
    store: TimelineStore
    runtime: ContainerRuntime
    toolchain: BuildToolchain
    detector: RecoveryDetector
    injector: FailureInjector
    recovery: AutoRecoveryController
    pipeline: PipelineSequencer

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        scheduler: Scheduler | None = None,
        runtime: ContainerRuntime | None = None,
        toolchain: BuildToolchain | None = None,
    ) -> FaultlineContext:
        """Build the service graph.

        Args:
            settings: Resolved application settings.
            scheduler: Clock and timers; wall clock by default.
            runtime: Container runtime; the docker CLI by default.
            toolchain: Clone and build client; git and docker by default.

        Returns:
            A ready-to-use context.
        """
        scheduler = scheduler or AsyncioScheduler()
        runtime = runtime or DockerCLIRuntime(settings.runtime)
        toolchain = toolchain or GitDockerToolchain(settings.pipeline, settings.runtime)
        store = TimelineStore(settings.storage.timelines_dir)

        detector = RecoveryDetector(store, runtime, scheduler, settings.detector)
        injector = FailureInjector(store, runtime, detector, scheduler, settings.injection)
        recovery = AutoRecoveryController(
            store, runtime, scheduler, settings.recovery, settings.runtime
        )
        pipeline = PipelineSequencer(
            store, runtime, toolchain, injector, scheduler, settings.pipeline
        )
        logger.debug("context_built", data_dir=str(settings.storage.data_dir))
        return cls(
            settings=settings,
            scheduler=scheduler,
            store=store,
            runtime=runtime,
            toolchain=toolchain,
            detector=detector,
            injector=injector,
            recovery=recovery,
            pipeline=pipeline,
        )

    async def shutdown(self) -> None:
        """Stop every timer and wait for background pipeline runs."""
        self.recovery.shutdown()
        self.detector.shutdown()
        self.injector.shutdown()
        await self.pipeline.shutdown()
        logger.debug("context_shutdown")
