"""Failure injection.

Kill failures stop a running workload through the container runtime and
hand it to the ``RecoveryDetector``.  Latency and memory failures are a
simulation: their lifecycle is recorded on the timeline and expires after
the requested duration, but no traffic shaping or cgroup limit is applied.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Any

import structlog

from faultline.exceptions import FaultlineError, InputValidationError
from faultline.models import (
    DeploymentEvent,
    EventStatus,
    FailureEvent,
    FailureType,
    InjectionResult,
    PipelineStatus,
    TimelineEvent,
    TimelineSummary,
    validate_workload_name,
)

if TYPE_CHECKING:
    from datetime import datetime

    from faultline.config import InjectionSettings
    from faultline.detector import RecoveryDetector
    from faultline.runtime import ContainerRuntime
    from faultline.scheduler import Scheduler, TimerHandle
    from faultline.timeline import TimelineStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_MEMORY_LIMIT_RE = re.compile(r"^\d+[bkmgBKMG]?$")


def summarize_timeline(workload_name: str, events: list[TimelineEvent]) -> TimelineSummary:
    """Count executed failures and recoveries in a workload's timeline."""
    statuses = [str(getattr(event, "status", "")) for event in events]
    return TimelineSummary(
        workload=workload_name,
        events=events,
        total_failures=statuses.count(EventStatus.EXECUTED),
        total_recoveries=statuses.count(EventStatus.RECOVERED),
    )


class FailureInjector:
    """Schedules failures against workloads and records their lifecycle."""

    def __init__(
        self,
        store: TimelineStore,
        runtime: ContainerRuntime,
        detector: RecoveryDetector,
        scheduler: Scheduler,
        settings: InjectionSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._detector = detector
        self._scheduler = scheduler
        self._settings = settings
        self._expiries: dict[int, tuple[TimerHandle, asyncio.Event]] = {}
        self._expiry_seq = 0

    # ------------------------------------------------------------------
    # Kill
    # ------------------------------------------------------------------

    async def inject_kill(self, workload_name: str, delay_ms: int = 0) -> InjectionResult:
        """Kill a workload, optionally after a delay, then watch for recovery.

        The ``scheduled`` event is recorded immediately and its timestamp is
        the failure time the detector measures recovery from.

        Args:
            workload_name: Workload to kill.
            delay_ms: Milliseconds to wait before killing.

        Returns:
            An acknowledgement carrying the scheduled failure time.

        Raises:
            InputValidationError: If the name is invalid or the delay negative.
            FaultlineError: If the runtime fails to kill the workload.
        """
        name = validate_workload_name(workload_name)
        if delay_ms < 0:
            raise InputValidationError(f"delay_ms must be >= 0 (got {delay_ms})")

        failure_time = self._scheduler.now()
        logger.info("kill_scheduled", workload=name, delay_ms=delay_ms)
        self._record(
            name,
            FailureType.KILL,
            EventStatus.SCHEDULED,
            {"failureTime": failure_time.isoformat(), "delayMs": delay_ms},
            at=failure_time,
        )

        if delay_ms > 0:
            await self._scheduler.sleep(delay_ms / 1000)

        try:
            await self._runtime.kill(name)
        except FaultlineError as exc:
            logger.error("kill_failed", workload=name, error=str(exc))
            self._record(name, FailureType.KILL, EventStatus.FAILED, {"error": str(exc)})
            raise

        self._record(
            name,
            FailureType.KILL,
            EventStatus.EXECUTED,
            {"failureTime": failure_time.isoformat()},
        )
        self._detector.start(name, failure_time)

        return InjectionResult(
            failure=FailureType.KILL,
            workload=name,
            timestamp=failure_time.isoformat(),
            message=f"Kill failure injected on {name}",
        )

    # ------------------------------------------------------------------
    # Simulated failures
    # ------------------------------------------------------------------

    async def inject_latency(
        self,
        workload_name: str,
        latency_ms: int | None = None,
        duration_ms: int | None = None,
    ) -> InjectionResult:
        """Record a simulated latency failure that expires after ``duration_ms``."""
        name = validate_workload_name(workload_name)
        latency_ms = self._settings.latency_ms if latency_ms is None else latency_ms
        duration_ms = self._settings.duration_ms if duration_ms is None else duration_ms
        if latency_ms <= 0:
            raise InputValidationError(f"latency_ms must be > 0 (got {latency_ms})")
        self._check_duration(duration_ms)

        failure_time = self._schedule_simulated(
            name,
            FailureType.LATENCY,
            duration_ms,
            {"latencyMs": latency_ms},
        )
        return InjectionResult(
            failure=FailureType.LATENCY,
            workload=name,
            timestamp=failure_time.isoformat(),
            latency_ms=latency_ms,
            duration_ms=duration_ms,
            message=f"Latency failure injected on {name}",
        )

    async def inject_memory(
        self,
        workload_name: str,
        limit: str | None = None,
        duration_ms: int | None = None,
    ) -> InjectionResult:
        """Record a simulated memory-pressure failure that expires after ``duration_ms``."""
        name = validate_workload_name(workload_name)
        limit = (limit or self._settings.memory_limit).strip()
        duration_ms = self._settings.duration_ms if duration_ms is None else duration_ms
        if not _MEMORY_LIMIT_RE.match(limit):
            raise InputValidationError(f"Invalid memory limit: {limit!r}")
        self._check_duration(duration_ms)

        failure_time = self._schedule_simulated(
            name,
            FailureType.MEMORY,
            duration_ms,
            {"memoryLimit": limit},
        )
        return InjectionResult(
            failure=FailureType.MEMORY,
            workload=name,
            timestamp=failure_time.isoformat(),
            memory_limit=limit,
            duration_ms=duration_ms,
            message=f"Memory failure injected on {name}",
        )

    @staticmethod
    def _check_duration(duration_ms: int) -> None:
        if duration_ms <= 0:
            raise InputValidationError(f"duration_ms must be > 0 (got {duration_ms})")

    def _schedule_simulated(
        self,
        name: str,
        failure_type: FailureType,
        duration_ms: int,
        magnitude: dict[str, Any],
    ) -> datetime:
        failure_time = self._scheduler.now()
        logger.info(
            "simulated_failure_scheduled",
            workload=name,
            failure_type=str(failure_type),
            duration_ms=duration_ms,
            **magnitude,
        )
        self._record(
            name,
            failure_type,
            EventStatus.SCHEDULED,
            {"failureTime": failure_time.isoformat(), **magnitude, "durationMs": duration_ms},
            at=failure_time,
        )

        self._expiry_seq += 1
        key = self._expiry_seq
        done = asyncio.Event()

        async def _expire() -> None:
            try:
                recovery_time = self._scheduler.now()
                self._record(
                    name,
                    failure_type,
                    EventStatus.RECOVERED,
                    {
                        "failureTime": failure_time.isoformat(),
                        "recoveryTime": recovery_time.isoformat(),
                        "recoveryDurationMs": duration_ms,
                    },
                    at=recovery_time,
                )
                logger.info(
                    "simulated_failure_expired",
                    workload=name,
                    failure_type=str(failure_type),
                )
            finally:
                self._expiries.pop(key, None)
                done.set()

        handle = self._scheduler.call_later(
            duration_ms / 1000, _expire, name=f"expire:{failure_type}:{name}"
        )
        self._expiries[key] = (handle, done)
        return failure_time

    async def wait_for_expiries(self) -> None:
        """Wait until every pending simulated failure has expired."""
        while self._expiries:
            events = [done for _, done in self._expiries.values()]
            await asyncio.gather(*(done.wait() for done in events))

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def record_deployment(
        self,
        workload_name: str,
        repo_url: str,
        branch: str,
        image_name: str,
        build_log: str = "",
    ) -> None:
        """Record a workload deployed from a source repository."""
        event = DeploymentEvent(
            timestamp=self._scheduler.now().isoformat(),
            status=PipelineStatus.SUCCESS,
            metadata={
                "repoUrl": repo_url,
                "branch": branch,
                "imageName": image_name,
                "buildLog": build_log,
            },
        )
        self._append(workload_name, event)
        logger.info("deployment_recorded", workload=workload_name, image=image_name)

    def timeline(self, workload_name: str) -> TimelineSummary:
        name = validate_workload_name(workload_name)
        return summarize_timeline(name, self._store.events(name))

    def all_timelines(self) -> dict[str, TimelineSummary]:
        return {
            name: summarize_timeline(name, events)
            for name, events in self._store.load().items()
        }

    def clear_timeline(self, workload_name: str) -> None:
        self._store.clear(validate_workload_name(workload_name))

    def shutdown(self) -> None:
        """Cancel pending simulated-failure expiries."""
        for handle, done in list(self._expiries.values()):
            handle.cancel()
            done.set()
        self._expiries.clear()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _record(
        self,
        workload_name: str,
        failure_type: FailureType,
        status: EventStatus,
        metadata: dict[str, Any],
        *,
        at: datetime | None = None,
    ) -> None:
        event = FailureEvent(
            timestamp=(at or self._scheduler.now()).isoformat(),
            type=failure_type.value,
            status=status,
            metadata=metadata,
        )
        self._append(workload_name, event)

    def _append(self, workload_name: str, event: TimelineEvent) -> None:
        try:
            self._store.append_event(workload_name, event)
        except (OSError, FaultlineError) as exc:
            logger.error("timeline_write_failed", workload=workload_name, error=str(exc))
