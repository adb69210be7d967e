"""Sustained-health recovery detection.

After a kill failure, a detector polls the workload's runtime state on a
fixed cadence and declares recovery only once the workload has been seen
running for ``healthy_threshold`` consecutive polls.  Any unhealthy
observation, or a failed poll, resets the streak.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from faultline.exceptions import FaultlineError
from faultline.models import (
    DetectorInfo,
    EventStatus,
    FailureEvent,
    FailureType,
    validate_workload_name,
)

if TYPE_CHECKING:
    from datetime import datetime

    from faultline.config import DetectorSettings
    from faultline.runtime import ContainerRuntime
    from faultline.scheduler import Scheduler, TimerHandle
    from faultline.timeline import TimelineStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass
class _Watch:
    workload_name: str
    failure_time: datetime
    handle: TimerHandle | None = None
    consecutive_healthy: int = 0
    recovered: bool = False
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class RecoveryDetector:
    """Watches killed workloads until they have been healthy long enough.

    At most one detector runs per workload; starting a new one replaces
    the previous watch.
    """

    def __init__(
        self,
        store: TimelineStore,
        runtime: ContainerRuntime,
        scheduler: Scheduler,
        settings: DetectorSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._scheduler = scheduler
        self._settings = settings
        self._watches: dict[str, _Watch] = {}

    def start(self, workload_name: str, failure_time: datetime) -> None:
        """Begin polling ``workload_name`` for recovery.

        Args:
            workload_name: The workload that was failed.
            failure_time: When the failure was scheduled; recovery duration
                is measured from this instant.
        """
        name = validate_workload_name(workload_name)
        self.stop(name)

        watch = _Watch(workload_name=name, failure_time=failure_time)
        self._watches[name] = watch
        watch.handle = self._scheduler.call_every(
            self._settings.poll_interval_ms / 1000,
            lambda: self._poll(watch),
            name=f"detector:{name}",
        )
        logger.info(
            "detector_started",
            workload=name,
            poll_interval_ms=self._settings.poll_interval_ms,
            healthy_threshold=self._settings.healthy_threshold,
        )

    def stop(self, workload_name: str) -> bool:
        """Cancel the detector for ``workload_name``.

        Returns:
            ``True`` if a detector was running.
        """
        watch = self._watches.pop(workload_name, None)
        if watch is None:
            return False
        self._finish(watch)
        logger.info("detector_stopped", workload=workload_name)
        return True

    def is_active(self, workload_name: str) -> bool:
        return workload_name in self._watches

    def active(self) -> list[DetectorInfo]:
        return [
            DetectorInfo(
                workload_name=watch.workload_name,
                failure_time=watch.failure_time.isoformat(),
                consecutive_healthy=watch.consecutive_healthy,
            )
            for watch in self._watches.values()
        ]

    async def wait(self, workload_name: str) -> bool:
        """Wait until the detector for ``workload_name`` ends.

        Returns:
            ``True`` if the workload recovered, ``False`` if the detector was
            stopped first or none was running.
        """
        watch = self._watches.get(workload_name)
        if watch is None:
            return False
        await watch.finished.wait()
        return watch.recovered

    def shutdown(self) -> None:
        for name in list(self._watches):
            self.stop(name)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll(self, watch: _Watch) -> None:
        try:
            health = await self._runtime.inspect(watch.workload_name)
            healthy = health.running
        except Exception as exc:
            logger.debug("detector_poll_failed", workload=watch.workload_name, error=str(exc))
            healthy = False

        # A replaced or stopped watch may still have a poll in flight.
        if self._watches.get(watch.workload_name) is not watch:
            return

        if not healthy:
            watch.consecutive_healthy = 0
            return

        watch.consecutive_healthy += 1
        logger.debug(
            "detector_healthy_poll",
            workload=watch.workload_name,
            streak=watch.consecutive_healthy,
            threshold=self._settings.healthy_threshold,
        )
        if watch.consecutive_healthy < self._settings.healthy_threshold:
            return

        recovery_time = self._scheduler.now()
        duration_ms = int((recovery_time - watch.failure_time).total_seconds() * 1000)
        self._record(
            watch.workload_name,
            FailureEvent(
                timestamp=recovery_time.isoformat(),
                type=FailureType.KILL.value,
                status=EventStatus.RECOVERED,
                metadata={
                    "failureTime": watch.failure_time.isoformat(),
                    "recoveryTime": recovery_time.isoformat(),
                    "recoveryDurationMs": duration_ms,
                },
            ),
        )
        logger.info(
            "workload_recovered", workload=watch.workload_name, recovery_duration_ms=duration_ms
        )

        watch.recovered = True
        del self._watches[watch.workload_name]
        self._finish(watch)

    @staticmethod
    def _finish(watch: _Watch) -> None:
        if watch.handle is not None:
            watch.handle.cancel()
        watch.finished.set()

    def _record(self, workload_name: str, event: FailureEvent) -> None:
        try:
            self._store.append_event(workload_name, event)
        except (OSError, FaultlineError) as exc:
            logger.error("timeline_write_failed", workload=workload_name, error=str(exc))
