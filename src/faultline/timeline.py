"""Sharded, append-only event timeline store.

Each workload owns one JSON-lines file under the timelines directory.
Appending writes a single line to that workload's shard under a
per-workload lock, so concurrent writers for different workloads never
touch the same file and writers for the same workload are serialised.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections import defaultdict
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from faultline.models import (
    TimelineEvent,
    dump_event,
    timeline_event_adapter,
    validate_workload_name,
)

if TYPE_CHECKING:
    from pathlib import Path

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SHARD_SUFFIX = ".jsonl"


class TimelineStore:
    """Per-workload JSONL event timelines.

    Attributes:
        directory: Directory holding one ``<workload>.jsonl`` shard per workload.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize the store.

        Args:
            directory: Shard directory (created if needed).
        """
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, workload_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[workload_name]

    def _shard_path(self, workload_name: str) -> Path:
        return self.directory / f"{validate_workload_name(workload_name)}{_SHARD_SUFFIX}"

    def append_event(self, workload_name: str, event: TimelineEvent) -> None:
        """Append one event to a workload's timeline.

        Args:
            workload_name: Workload the event belongs to.
            event: The event to record.
        """
        path = self._shard_path(workload_name)
        line = json.dumps(dump_event(event), separators=(",", ":")) + "\n"
        with self._lock_for(workload_name), path.open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()

        logger.debug(
            "timeline_event_appended",
            workload=workload_name,
            event_type=event.type,
            status=str(getattr(event, "status", "")),
        )

    def events(self, workload_name: str) -> list[TimelineEvent]:
        """Read one workload's timeline in insertion order.

        Returns:
            The recorded events; empty if the workload has no timeline.
        """
        path = self._shard_path(workload_name)
        with self._lock_for(workload_name):
            if not path.exists():
                return []
            raw = path.read_text(encoding="utf-8")
        return self._parse_shard(workload_name, raw)

    def load(self) -> dict[str, list[TimelineEvent]]:
        """Read every workload's timeline.

        Returns:
            Mapping of workload name to its events.
        """
        timelines: dict[str, list[TimelineEvent]] = {}
        for path in sorted(self.directory.glob(f"*{_SHARD_SUFFIX}")):
            name = path.name[: -len(_SHARD_SUFFIX)]
            timelines[name] = self.events(name)
        return timelines

    def save(self, timelines: dict[str, list[TimelineEvent]]) -> None:
        """Replace the whole store with ``timelines``.

        Each shard is rewritten atomically; shards for workloads absent
        from ``timelines`` are removed.
        """
        for name, events in timelines.items():
            self._replace_shard(name, events)

        keep = {validate_workload_name(name) for name in timelines}
        for path in self.directory.glob(f"*{_SHARD_SUFFIX}"):
            name = path.name[: -len(_SHARD_SUFFIX)]
            if name not in keep:
                self.clear(name)

    def clear(self, workload_name: str) -> None:
        """Delete a workload's timeline."""
        path = self._shard_path(workload_name)
        with self._lock_for(workload_name):
            path.unlink(missing_ok=True)
        logger.info("timeline_cleared", workload=workload_name)

    def _replace_shard(self, workload_name: str, events: list[TimelineEvent]) -> None:
        path = self._shard_path(workload_name)
        payload = "".join(
            json.dumps(dump_event(event), separators=(",", ":")) + "\n"
            for event in events
        )
        with self._lock_for(workload_name):
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.directory), prefix=f".{path.stem}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    @staticmethod
    def _parse_shard(workload_name: str, raw: str) -> list[TimelineEvent]:
        events: list[TimelineEvent] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                events.append(timeline_event_adapter.validate_json(stripped))
            except ValidationError as exc:
                logger.warning(
                    "timeline_line_skipped",
                    workload=workload_name,
                    line=lineno,
                    error=str(exc).splitlines()[0],
                )
        return events
