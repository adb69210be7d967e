"""Shared event, record, and runtime models.

Timeline events form a closed set discriminated by their ``type`` field.
Persisted records serialize with camelCase keys (``by_alias=True``) so the
on-disk timeline keeps the field names operators and dashboards expect.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from faultline.exceptions import InputValidationError


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class FailureType(StrEnum):
    """Kinds of failure a workload can be subjected to."""

    KILL = "kill"
    LATENCY = "latency"
    MEMORY = "memory"
    GITHUB_DEPLOYMENT = "github-deployment"


class EventStatus(StrEnum):
    """Lifecycle states of an injected failure."""

    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    RECOVERED = "recovered"
    FAILED = "failed"


class PipelineStatus(StrEnum):
    """Terminal outcome of a pipeline run or repository deployment."""

    SUCCESS = "success"
    FAILED = "failed"


class RecoveryStrategy(StrEnum):
    """Actions the auto-recovery controller may take on an unhealthy workload."""

    RESTART = "restart"
    REBUILD = "rebuild"
    MANUAL = "manual"


class CamelModel(BaseModel):
    """Immutable record serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Timeline events
# ---------------------------------------------------------------------------


class FailureEvent(CamelModel):
    """One lifecycle transition of an injected failure."""

    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["kill", "latency", "memory"]
    status: EventStatus
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeploymentEvent(CamelModel):
    """A workload deployed straight from a source repository."""

    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["github-deployment"] = "github-deployment"
    status: PipelineStatus = PipelineStatus.SUCCESS
    metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineEvent(CamelModel):
    """Summary of a finished pipeline run."""

    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["pipeline"] = "pipeline"
    pipeline_id: str
    status: PipelineStatus
    repo_url: str
    branch: str
    duration_ms: int = Field(default=0, ge=0)
    steps_completed: int = Field(default=0, ge=0)
    error: str | None = None


class RecoveryAttemptEvent(CamelModel):
    """One execution of a recovery strategy."""

    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["recovery"] = "recovery"
    strategy: RecoveryStrategy
    succeeded: bool = True
    reason: str = ""
    requires_manual_intervention: bool = False
    error: str | None = None


class MetricEvent(CamelModel):
    """A recovery metric mirrored into the timeline."""

    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["metric"] = "metric"
    recovered: bool
    strategy: RecoveryStrategy
    mttr_ms: int = Field(default=0, ge=0)
    attempts_needed: int = Field(default=0, ge=0)


TimelineEvent = Annotated[
    FailureEvent | DeploymentEvent | PipelineEvent | RecoveryAttemptEvent | MetricEvent,
    Field(discriminator="type"),
]

timeline_event_adapter: TypeAdapter[TimelineEvent] = TypeAdapter(TimelineEvent)


def dump_event(event: TimelineEvent) -> dict[str, Any]:
    """Serialize a timeline event to its persisted JSON-compatible form."""
    return event.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Recovery records
# ---------------------------------------------------------------------------


class RecoveryMetric(CamelModel):
    """Outcome of one recovery incident handled by the controller."""

    timestamp: str = Field(default_factory=utc_now_iso)
    recovered: bool
    strategy: RecoveryStrategy
    mttr_ms: int = Field(default=0, ge=0)
    attempts_needed: int = Field(default=0, ge=0)


class RecoveryPolicy(CamelModel):
    """Registered recovery policy for a workload."""

    strategy: RecoveryStrategy
    options: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)


class RecoveryProcessInfo(CamelModel):
    """Read-only view of an active auto-recovery monitor."""

    workload_name: str
    strategy: RecoveryStrategy
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=0, ge=0)
    start_time: str
    uptime_ms: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


class InjectionResult(CamelModel):
    """Acknowledgement returned when a failure is injected."""

    failure: FailureType
    workload: str
    timestamp: str
    latency_ms: int | None = None
    memory_limit: str | None = None
    duration_ms: int | None = None
    message: str = ""


class TimelineSummary(CamelModel):
    """A workload's events with failure and recovery counts."""

    workload: str
    events: list[TimelineEvent] = Field(default_factory=list)
    total_failures: int = 0
    total_recoveries: int = 0


class DetectorInfo(CamelModel):
    """Read-only view of an active recovery detector."""

    workload_name: str
    failure_time: str
    consecutive_healthy: int = 0


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------


class PipelineRun(CamelModel):
    """Immutable record of one pipeline execution."""

    pipeline_id: str
    status: PipelineStatus
    repo_url: str
    workload_name: str
    branch: str
    image_name: str | None = None
    start_time: str
    end_time: str
    duration_ms: int = Field(default=0, ge=0)
    steps_completed: int = Field(default=0, ge=0)
    step_log: tuple[str, ...] = ()
    error: str | None = None


# ---------------------------------------------------------------------------
# External client results
# ---------------------------------------------------------------------------


class WorkloadHealth(BaseModel):
    """Container state as reported by the runtime."""

    name: str
    state: str = ""
    running: bool = False
    exit_code: int | None = None
    started_at: str | None = None
    finished_at: str | None = None
    image_ref: str = ""


class WorkloadSummary(BaseModel):
    """One entry of a runtime container listing."""

    id: str = ""
    name: str
    image: str = ""
    status: str = ""
    state: str = ""


class BuildResult(BaseModel):
    """Result of building an image from a workspace."""

    image_tag: str
    build_output: str = ""


class CommandResult(BaseModel):
    """Outcome of a command run inside a workspace."""

    argv: list[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

_WORKLOAD_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_workload_name(name: str | None) -> str:
    """Return ``name`` stripped, or raise if it is not a valid container name.

    Raises:
        InputValidationError: If the name is missing or contains characters
            the container runtime would reject.
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise InputValidationError("Missing required field: workload name")
    if not _WORKLOAD_NAME_RE.match(cleaned):
        raise InputValidationError(f"Invalid workload name: {cleaned!r}")
    return cleaned
