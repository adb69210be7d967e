"""Unit tests for faultline.models - events, records and validation helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from faultline.exceptions import InputValidationError
from faultline.models import (
    CommandResult,
    DeploymentEvent,
    EventStatus,
    FailureEvent,
    MetricEvent,
    PipelineEvent,
    PipelineRun,
    PipelineStatus,
    RecoveryAttemptEvent,
    RecoveryMetric,
    RecoveryStrategy,
    dump_event,
    timeline_event_adapter,
    utc_now_iso,
    validate_workload_name,
)

# ---- Enumerations ------------------------------------------------------------


class TestEnums:
    """String values persisted on disk."""

    def test_event_status_values(self) -> None:
        assert [s.value for s in EventStatus] == [
            "scheduled",
            "executed",
            "recovered",
            "failed",
        ]

    def test_strategy_values(self) -> None:
        assert RecoveryStrategy("restart") is RecoveryStrategy.RESTART
        assert RecoveryStrategy.MANUAL == "manual"


# ---- Timeline events ---------------------------------------------------------


class TestTimelineEvents:
    """Discriminated union serialization."""

    def test_failure_event_dumps_camel_case(self) -> None:
        event = FailureEvent(
            timestamp="2026-01-01T00:00:00+00:00",
            type="kill",
            status=EventStatus.SCHEDULED,
            metadata={"delayMs": 0},
        )
        assert dump_event(event) == {
            "timestamp": "2026-01-01T00:00:00+00:00",
            "type": "kill",
            "status": "scheduled",
            "metadata": {"delayMs": 0},
        }

    def test_pipeline_event_aliases(self) -> None:
        event = PipelineEvent(
            pipeline_id="pipeline-abc",
            status=PipelineStatus.FAILED,
            repo_url="https://github.com/acme/app.git",
            branch="main",
            steps_completed=1,
            error="no build descriptor found",
        )
        data = dump_event(event)
        assert data["type"] == "pipeline"
        assert data["pipelineId"] == "pipeline-abc"
        assert data["repoUrl"] == "https://github.com/acme/app.git"
        assert data["stepsCompleted"] == 1

    def test_parse_dispatches_on_type(self) -> None:
        parsed = timeline_event_adapter.validate_python(
            {"timestamp": "t", "type": "latency", "status": "recovered", "metadata": {}}
        )
        assert isinstance(parsed, FailureEvent)
        assert parsed.type == "latency"

        deployment = timeline_event_adapter.validate_python(
            {"timestamp": "t", "type": "github-deployment", "status": "success"}
        )
        assert isinstance(deployment, DeploymentEvent)

        metric = timeline_event_adapter.validate_python(
            {
                "timestamp": "t",
                "type": "metric",
                "recovered": True,
                "strategy": "restart",
                "mttrMs": 1500,
                "attemptsNeeded": 1,
            }
        )
        assert isinstance(metric, MetricEvent)
        assert metric.mttr_ms == 1500

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            timeline_event_adapter.validate_python(
                {"timestamp": "t", "type": "meteor", "status": "executed"}
            )

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FailureEvent(type="kill", status="exploded")

    def test_recovery_attempt_defaults(self) -> None:
        event = RecoveryAttemptEvent(strategy=RecoveryStrategy.MANUAL)
        assert event.succeeded is True
        assert event.requires_manual_intervention is False
        assert dump_event(event)["requiresManualIntervention"] is False

    def test_events_are_frozen(self) -> None:
        event = FailureEvent(type="kill", status=EventStatus.EXECUTED)
        with pytest.raises(ValidationError):
            event.status = EventStatus.RECOVERED  # type: ignore[misc]

    def test_timestamp_defaults_to_utc_iso(self) -> None:
        event = FailureEvent(type="memory", status=EventStatus.SCHEDULED)
        assert "T" in event.timestamp
        assert event.timestamp.endswith("+00:00")
        assert utc_now_iso().endswith("+00:00")


# ---- Records -----------------------------------------------------------------


class TestRecords:
    """Recovery and pipeline records."""

    def test_metric_rejects_negative_mttr(self) -> None:
        with pytest.raises(ValidationError):
            RecoveryMetric(recovered=True, strategy=RecoveryStrategy.RESTART, mttr_ms=-1)

    def test_pipeline_run_by_name_and_alias(self) -> None:
        run = PipelineRun(
            pipelineId="pipeline-1",
            status=PipelineStatus.SUCCESS,
            repo_url="r",
            workload_name="web1",
            branch="main",
            start_time="a",
            end_time="b",
            step_log=("one", "two"),
        )
        assert run.pipeline_id == "pipeline-1"
        assert run.model_dump(by_alias=True)["stepLog"] == ("one", "two")

    def test_command_result_ok(self) -> None:
        assert CommandResult(argv=["true"], returncode=0).ok
        assert not CommandResult(argv=["false"], returncode=1).ok


# ---- Workload names ----------------------------------------------------------


class TestValidateWorkloadName:
    """Container-name validation."""

    @pytest.mark.parametrize("name", ["web1", "api-gateway", "svc_2.blue", " padded "])
    def test_valid(self, name: str) -> None:
        assert validate_workload_name(name) == name.strip()

    @pytest.mark.parametrize("name", [None, "", "   "])
    def test_missing(self, name: str | None) -> None:
        with pytest.raises(InputValidationError, match="Missing required field"):
            validate_workload_name(name)

    @pytest.mark.parametrize("name", ["-web", "../etc", "a b", "web/1", "x" * 200])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(InputValidationError, match="Invalid workload name"):
            validate_workload_name(name)
