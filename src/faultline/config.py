"""FaultLine settings: defaults, then YAML, then `FAULTLINE_` env vars, then CLI flags.

Nested sections are overridden from the environment with a `__` delimiter,
e.g. `FAULTLINE_DETECTOR__POLL_INTERVAL_MS=500`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from faultline.models import RecoveryStrategy

# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class RuntimeSettings(BaseModel):
    """Container runtime (docker CLI) configuration."""

    docker_binary: str = "docker"
    command_timeout: int = Field(
        default=30, gt=0, description="Timeout in seconds for one runtime call."
    )
    stop_grace_seconds: int = Field(default=10, ge=0)
    restart_max_retries: int = Field(
        default=5,
        ge=0,
        description="on-failure restart policy applied to created containers.",
    )


class DetectorSettings(BaseModel):
    """Recovery detection cadence."""

    poll_interval_ms: int = Field(default=2000, gt=0)
    healthy_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive healthy polls required to declare recovery.",
    )


class RecoverySettings(BaseModel):
    """Auto-recovery controller defaults."""

    health_check_interval_ms: int = Field(default=5000, gt=0)
    strategy: RecoveryStrategy = RecoveryStrategy.RESTART
    max_retries: int = Field(default=3, ge=0, le=100)
    retry_delay_ms: int = Field(default=10_000, ge=0)
    metric_history_size: int = Field(default=100, ge=1, le=10_000)


class InjectionSettings(BaseModel):
    """Defaults for simulated latency and memory failures."""

    latency_ms: int = Field(default=1000, gt=0)
    memory_limit: str = "256m"
    duration_ms: int = Field(default=60_000, gt=0)


class PipelineSettings(BaseModel):
    """Build pipeline configuration."""

    workspace_dir: Path = Path("/tmp/faultline-ci")
    keep_workspace: bool = False
    clone_depth: int = Field(default=1, ge=1)
    clone_timeout: int = Field(default=120, gt=0, description="Seconds.")
    clone_attempts: int = Field(default=2, ge=1, le=10)
    lint_timeout: int = Field(default=60, gt=0, description="Seconds.")
    test_timeout: int = Field(default=120, gt=0, description="Seconds.")
    build_timeout: int = Field(default=300, gt=0, description="Seconds.")
    descriptor_candidates: list[str] = Field(
        default_factory=lambda: ["Dockerfile", "dockerfile", "docker/Dockerfile"]
    )
    image_prefix: str = "faultline-"
    lint_command: list[str] | None = None
    test_command: list[str] | None = None
    smoke_log_lines: int = Field(default=10, ge=1)


class StorageSettings(BaseModel):
    """Timeline persistence configuration."""

    data_dir: Path = Path("./data")

    @property
    def timelines_dir(self) -> Path:
        return self.data_dir / "timelines"


class LoggingSettings(BaseModel):
    """structlog output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Every tunable of the engine, one section per service."""

    model_config = SettingsConfigDict(
        env_prefix="FAULTLINE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="faultline.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    injection: InjectionSettings = Field(default_factory=InjectionSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources win; the YAML file sits just above field defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Resolve settings from every layer.

        Args:
            config_path: YAML file to read instead of ``./faultline.yaml``.
            **overrides: Section values taken from CLI flags; highest priority.

        Raises:
            ValidationError: If any layer supplies an invalid value.
        """
        if config_path is None:
            return cls(**overrides)
        pinned = type(
            cls.__name__,
            (cls,),
            {"model_config": SettingsConfigDict(yaml_file=config_path)},
        )
        return pinned(**overrides)


def format_validation_error(exc: ValidationError) -> str:
    """Render a settings ``ValidationError`` as one dotted path per line."""
    lines = ["Configuration error:"]
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "<root>"
        line = f"  {path}: {error['msg']}"
        if error.get("input") is not None:
            line += f" (got {error['input']!r})"
        lines.append(line)
    return "\n".join(lines)
