"""Auto-recovery controller.

Monitors a workload on a fixed cadence and, while it is unhealthy, applies
a recovery strategy (restart, rebuild, or a manual-intervention marker) up
to a retry budget.  Each recovered incident produces a ``RecoveryMetric``;
exhausting the budget records a failed metric and stops the monitor.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field

from faultline.exceptions import FaultlineError, InputValidationError
from faultline.models import (
    CamelModel,
    MetricEvent,
    RecoveryAttemptEvent,
    RecoveryMetric,
    RecoveryPolicy,
    RecoveryProcessInfo,
    RecoveryStrategy,
    TimelineEvent,
    WorkloadHealth,
    validate_workload_name,
)
from faultline.sli import SLIReport, calculate_sli

if TYPE_CHECKING:
    from datetime import datetime

    from faultline.config import RecoverySettings, RuntimeSettings
    from faultline.runtime import ContainerRuntime
    from faultline.scheduler import Scheduler, TimerHandle
    from faultline.timeline import TimelineStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

LOW_SUCCESS_RATE = 50
SLOW_MTTR_MS = 30_000
FREQUENT_RECOVERIES = 10


def parse_strategy(value: RecoveryStrategy | str) -> RecoveryStrategy:
    """Coerce ``value`` to a ``RecoveryStrategy``.

    Raises:
        InputValidationError: If ``value`` names no known strategy.
    """
    try:
        return RecoveryStrategy(value)
    except ValueError:
        raise InputValidationError(f"Unknown recovery strategy: {value}") from None


class RecoveryReport(CamelModel):
    """SLIs, policy and recommendations for one workload."""

    workload_name: str
    policy: RecoveryPolicy | None = None
    metrics: SLIReport
    recommendations: list[str] = Field(default_factory=list)


def recommend(metrics: SLIReport, policy: RecoveryPolicy | None) -> list[str]:
    """Turn SLIs into operator-facing recommendations."""
    recommendations: list[str] = []
    if metrics.success_rate < LOW_SUCCESS_RATE:
        recommendations.append(
            "Low success rate: consider manual recovery or a different strategy"
        )
    if metrics.avg_mttr_ms > SLOW_MTTR_MS:
        recommendations.append("High average MTTR: recovery is slow and may need tuning")
    if metrics.total_recoveries > FREQUENT_RECOVERIES:
        recommendations.append(
            "Workload is recovering frequently: this may indicate a deeper issue"
        )
    if policy is None:
        recommendations.append("No recovery policy registered: configure automated recovery")
    if not recommendations:
        recommendations.append("System is healthy and recovering well")
    return recommendations


@dataclass
class _Process:
    workload_name: str
    strategy: RecoveryStrategy
    max_retries: int
    retry_delay_s: float
    start_time: datetime
    started_mono: float
    handle: TimerHandle | None = None
    retry_count: int = 0
    attempts_in_incident: int = 0
    incident_started_mono: float | None = None
    last_attempt_mono: float | None = None
    exhausted: bool = False
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class AutoRecoveryController:
    """Health monitors with strategy execution and a per-workload retry budget."""

    def __init__(
        self,
        store: TimelineStore,
        runtime: ContainerRuntime,
        scheduler: Scheduler,
        settings: RecoverySettings,
        runtime_settings: RuntimeSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._scheduler = scheduler
        self._settings = settings
        self._stop_grace = runtime_settings.stop_grace_seconds
        self._processes: dict[str, _Process] = {}
        self._policies: dict[str, RecoveryPolicy] = {}
        self._metrics: defaultdict[str, deque[RecoveryMetric]] = defaultdict(
            lambda: deque(maxlen=settings.metric_history_size)
        )

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def register_policy(
        self,
        workload_name: str,
        strategy: RecoveryStrategy | str,
        options: dict[str, Any] | None = None,
    ) -> RecoveryPolicy:
        """Register (or replace) the recovery policy for a workload."""
        name = validate_workload_name(workload_name)
        policy = RecoveryPolicy(
            strategy=parse_strategy(strategy),
            options=dict(options or {}),
            created_at=self._scheduler.now().isoformat(),
        )
        self._policies[name] = policy
        logger.info("recovery_policy_registered", workload=name, strategy=str(policy.strategy))
        return policy

    def policy(self, workload_name: str) -> RecoveryPolicy | None:
        return self._policies.get(workload_name)

    # ------------------------------------------------------------------
    # Monitor lifecycle
    # ------------------------------------------------------------------

    def start_auto_recovery(
        self,
        workload_name: str,
        *,
        health_check_interval_ms: int | None = None,
        strategy: RecoveryStrategy | str | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> bool:
        """Start monitoring ``workload_name``.

        Unset arguments fall back to the workload's registered policy options,
        then to the configured defaults.

        Args:
            workload_name: Workload to monitor.
            health_check_interval_ms: Tick cadence.
            strategy: Strategy applied while unhealthy.
            max_retries: Strategy executions allowed before giving up.
            retry_delay_ms: Minimum spacing between two executions.

        Returns:
            ``False`` if a monitor was already active for the workload.

        Raises:
            InputValidationError: On an invalid name, unknown strategy or
                out-of-range timing values.
        """
        name = validate_workload_name(workload_name)
        policy = self._policies.get(name)
        options = policy.options if policy else {}

        interval_ms = _pick(
            health_check_interval_ms,
            options.get("health_check_interval_ms"),
            self._settings.health_check_interval_ms,
        )
        resolved_strategy = parse_strategy(
            _pick(strategy, policy.strategy if policy else None, self._settings.strategy)
        )
        retries = _pick(max_retries, options.get("max_retries"), self._settings.max_retries)
        delay_ms = _pick(
            retry_delay_ms, options.get("retry_delay_ms"), self._settings.retry_delay_ms
        )
        if interval_ms <= 0:
            raise InputValidationError(
                f"health_check_interval_ms must be > 0 (got {interval_ms})"
            )
        if retries < 0:
            raise InputValidationError(f"max_retries must be >= 0 (got {retries})")
        if delay_ms < 0:
            raise InputValidationError(f"retry_delay_ms must be >= 0 (got {delay_ms})")

        if name in self._processes:
            logger.warning("auto_recovery_already_active", workload=name)
            return False

        started_mono = self._scheduler.monotonic()
        process = _Process(
            workload_name=name,
            strategy=resolved_strategy,
            max_retries=retries,
            retry_delay_s=delay_ms / 1000,
            start_time=self._scheduler.now(),
            started_mono=started_mono,
            incident_started_mono=started_mono,
        )
        self._processes[name] = process
        process.handle = self._scheduler.call_every(
            interval_ms / 1000,
            lambda: self._tick(process),
            name=f"auto-recovery:{name}",
        )
        logger.info(
            "auto_recovery_started",
            workload=name,
            strategy=str(resolved_strategy),
            interval_ms=interval_ms,
            max_retries=retries,
            retry_delay_ms=delay_ms,
        )
        return True

    def stop_auto_recovery(self, workload_name: str) -> bool:
        """Stop monitoring ``workload_name``.

        Returns:
            ``True`` if a monitor was active.
        """
        process = self._processes.pop(workload_name, None)
        if process is None:
            return False
        self._finish(process)
        logger.info("auto_recovery_stopped", workload=workload_name)
        return True

    def is_active(self, workload_name: str) -> bool:
        return workload_name in self._processes

    def active_processes(self) -> list[RecoveryProcessInfo]:
        now = self._scheduler.monotonic()
        return [
            RecoveryProcessInfo(
                workload_name=p.workload_name,
                strategy=p.strategy,
                retry_count=p.retry_count,
                max_retries=p.max_retries,
                start_time=p.start_time.isoformat(),
                uptime_ms=int((now - p.started_mono) * 1000),
            )
            for p in self._processes.values()
        ]

    async def wait(self, workload_name: str) -> bool:
        """Wait until the monitor for ``workload_name`` ends.

        Returns:
            ``True`` if it ended by exhausting its retry budget.
        """
        process = self._processes.get(workload_name)
        if process is None:
            return False
        await process.finished.wait()
        return process.exhausted

    def shutdown(self) -> None:
        for name in list(self._processes):
            self.stop_auto_recovery(name)

    # ------------------------------------------------------------------
    # Metrics and reporting
    # ------------------------------------------------------------------

    def metrics(self, workload_name: str) -> list[RecoveryMetric]:
        return list(self._history(workload_name))

    def sli(self, workload_name: str) -> SLIReport:
        return calculate_sli(self.metrics(workload_name))

    def report(self, workload_name: str) -> RecoveryReport:
        metrics = self.sli(workload_name)
        policy = self.policy(workload_name)
        return RecoveryReport(
            workload_name=workload_name,
            policy=policy,
            metrics=metrics,
            recommendations=recommend(metrics, policy),
        )

    def recovery_history(self, workload_name: str) -> list[TimelineEvent]:
        """Recovery attempts and metrics recorded on the workload's timeline."""
        name = validate_workload_name(workload_name)
        return [e for e in self._store.events(name) if e.type in ("recovery", "metric")]

    # ------------------------------------------------------------------
    # Monitoring tick
    # ------------------------------------------------------------------

    async def _tick(self, process: _Process) -> None:
        name = process.workload_name
        try:
            health = await self._runtime.inspect(name)
        except Exception as exc:
            logger.error("auto_recovery_health_check_failed", workload=name, error=str(exc))
            return

        if self._processes.get(name) is not process:
            return

        now = self._scheduler.monotonic()
        if health.running:
            if process.attempts_in_incident > 0:
                self._record_success(process, now)
            return

        if process.incident_started_mono is None:
            process.incident_started_mono = now

        if process.retry_count >= process.max_retries:
            self._exhaust(process)
            return

        if (
            process.last_attempt_mono is not None
            and now - process.last_attempt_mono < process.retry_delay_s
        ):
            logger.debug("auto_recovery_waiting_retry_delay", workload=name)
            return

        process.retry_count += 1
        process.attempts_in_incident += 1
        process.last_attempt_mono = now
        await self._execute(process, health)

    def _record_success(self, process: _Process, now: float) -> None:
        started = process.incident_started_mono
        mttr_ms = int((now - started) * 1000) if started is not None else 0
        attempts = process.attempts_in_incident
        self._record_metric(
            process.workload_name,
            RecoveryMetric(
                timestamp=self._scheduler.now().isoformat(),
                recovered=True,
                strategy=process.strategy,
                mttr_ms=mttr_ms,
                attempts_needed=attempts,
            ),
        )
        process.attempts_in_incident = 0
        process.incident_started_mono = None
        logger.info(
            "auto_recovery_succeeded",
            workload=process.workload_name,
            mttr_ms=mttr_ms,
            attempts=attempts,
        )

    def _exhaust(self, process: _Process) -> None:
        name = process.workload_name
        process.exhausted = True
        del self._processes[name]
        self._finish(process)
        self._record_metric(
            name,
            RecoveryMetric(
                timestamp=self._scheduler.now().isoformat(),
                recovered=False,
                strategy=process.strategy,
                attempts_needed=process.attempts_in_incident,
            ),
        )
        logger.error(
            "auto_recovery_exhausted", workload=name, max_retries=process.max_retries
        )

    @staticmethod
    def _finish(process: _Process) -> None:
        if process.handle is not None:
            process.handle.cancel()
        process.finished.set()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _execute(self, process: _Process, health: WorkloadHealth) -> None:
        name = process.workload_name
        strategy = process.strategy
        attempt = process.retry_count
        logger.info(
            "recovery_attempt",
            workload=name,
            strategy=str(strategy),
            attempt=attempt,
            max_retries=process.max_retries,
        )

        if strategy is RecoveryStrategy.MANUAL:
            logger.warning("manual_recovery_required", workload=name, state=health.state)
            self._append(
                name,
                RecoveryAttemptEvent(
                    timestamp=self._scheduler.now().isoformat(),
                    strategy=strategy,
                    reason=f"Workload health: {health.model_dump_json()}",
                    requires_manual_intervention=True,
                ),
            )
            return

        try:
            if strategy is RecoveryStrategy.RESTART:
                await self._restart(name)
            else:
                await self._rebuild(name)
        except Exception as exc:
            logger.error(
                "recovery_attempt_failed",
                workload=name,
                strategy=str(strategy),
                attempt=attempt,
                error=str(exc),
            )
            self._append(
                name,
                RecoveryAttemptEvent(
                    timestamp=self._scheduler.now().isoformat(),
                    strategy=strategy,
                    succeeded=False,
                    reason=f"{strategy} attempt {attempt}",
                    error=str(exc),
                ),
            )
            return

        self._append(
            name,
            RecoveryAttemptEvent(
                timestamp=self._scheduler.now().isoformat(),
                strategy=strategy,
                reason=f"{strategy} attempt {attempt}",
            ),
        )

    async def _restart(self, name: str) -> None:
        try:
            health = await self._runtime.inspect(name)
            if health.running:
                await self._runtime.stop(name, self._stop_grace)
        except FaultlineError as exc:
            logger.warning("graceful_stop_failed", workload=name, error=str(exc))
        await self._runtime.start(name)
        logger.info("workload_restarted", workload=name)

    async def _rebuild(self, name: str) -> None:
        health = await self._runtime.inspect(name)
        image = health.image_ref
        if not image:
            raise FaultlineError(f"No image reference recorded for {name}")
        try:
            await self._runtime.remove(name, force=True)
        except FaultlineError as exc:
            logger.warning("remove_before_rebuild_failed", workload=name, error=str(exc))
        await self._runtime.create(image, name)
        logger.info("workload_rebuilt", workload=name, image=image)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _history(self, workload_name: str) -> deque[RecoveryMetric]:
        """Return the metric history, seeding it from the timeline on first use."""
        name = validate_workload_name(workload_name)
        if name not in self._metrics:
            history = self._metrics[name]
            for event in self._store.events(name):
                if isinstance(event, MetricEvent):
                    history.append(
                        RecoveryMetric(
                            timestamp=event.timestamp,
                            recovered=event.recovered,
                            strategy=event.strategy,
                            mttr_ms=event.mttr_ms,
                            attempts_needed=event.attempts_needed,
                        )
                    )
        return self._metrics[name]

    def _record_metric(self, workload_name: str, metric: RecoveryMetric) -> None:
        self._history(workload_name).append(metric)
        self._append(
            workload_name,
            MetricEvent(
                timestamp=metric.timestamp,
                recovered=metric.recovered,
                strategy=metric.strategy,
                mttr_ms=metric.mttr_ms,
                attempts_needed=metric.attempts_needed,
            ),
        )

    def _append(self, workload_name: str, event: TimelineEvent) -> None:
        try:
            self._store.append_event(workload_name, event)
        except (OSError, FaultlineError) as exc:
            logger.error("timeline_write_failed", workload=workload_name, error=str(exc))


def _pick(*values: Any) -> Any:
    """Return the first value that is not ``None``."""
    return next(v for v in values if v is not None)
