"""structlog setup and per-step log context for pipeline runs."""

from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from faultline.config import LoggingSettings

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Keys bound by ``pipeline_step`` for the duration of one step.
_STEP_KEYS = ("pipeline_id", "workload", "step", "step_index", "step_total")


def configure_logging(settings: LoggingSettings) -> None:
    """Route structlog through stdlib logging to stderr and an optional file.

    Safe to call repeatedly; previous root handlers are replaced.

    Raises:
        ValueError: If the configured level is not a known level name.
    """
    level_name = settings.level.upper()
    if level_name not in _LEVELS:
        msg = f"Invalid log level: {settings.level!r}. Must be one of {list(_LEVELS)}"
        raise ValueError(msg)
    level = getattr(logging, level_name)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        settings.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.file, encoding="utf-8"))

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if settings.format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def pipeline_step(
    pipeline_id: str,
    workload: str,
    step: str,
    index: int,
    total: int,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind one pipeline step's identity to every log entry emitted inside it.

    Emits ``step_started`` on entry and ``step_finished`` or ``step_failed``
    with the elapsed milliseconds on exit. Exceptions propagate; the caller
    decides whether a failed step ends the run.

    Example::

        with pipeline_step(run_id, "web1", "build", 5, 6) as log:
            log.info("building_image", tag=tag)
    """
    structlog.contextvars.bind_contextvars(
        pipeline_id=pipeline_id,
        workload=workload,
        step=step,
        step_index=index,
        step_total=total,
    )
    log: structlog.stdlib.BoundLogger = structlog.get_logger(f"faultline.pipeline.{step}")
    started = time.monotonic()
    log.info("step_started")
    try:
        yield log
    except Exception as exc:
        log.warning("step_failed", error=str(exc), elapsed_ms=_elapsed_ms(started))
        raise
    else:
        log.info("step_finished", elapsed_ms=_elapsed_ms(started))
    finally:
        structlog.contextvars.unbind_contextvars(*_STEP_KEYS)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
