"""Run metadata and event persistence."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from insight_pipeline.errors import RunNotFoundError
from insight_pipeline.io.save import append_jsonl, ensure_directory, save_json
from insight_pipeline.schemas import PipelineEvent, PipelineRun

if TYPE_CHECKING:
    from insight_pipeline.config import RunConfig

logger = logging.getLogger(__name__)

RUN_MANIFEST_FILENAME = "run_manifest.json"
EVENTS_FILENAME = "events.jsonl"


def new_run_id() -> str:
    return str(uuid.uuid4())


def _initial_run(run_id: str, config: RunConfig) -> PipelineRun:
    return PipelineRun(
        id=run_id,
        company_id=config.company_id,
        product_id=config.product_id,
        started_at=datetime.now(UTC),
        input_count=len(config.items),
        metadata={"successThreshold": config.success_threshold},
    )


def _apply_patch(run: PipelineRun, patch: Mapping[str, Any]) -> PipelineRun:
    unknown = set(patch) - set(PipelineRun.model_fields)
    if unknown:
        raise ValueError(f"Unknown run fields in patch: {sorted(unknown)}")
    return PipelineRun.model_validate({**dict(run), **dict(patch)})


class RunStore(Protocol):
    """Append/read persistence for runs and their events."""

    def create_run(self, config: RunConfig) -> str:
        """Persist a new run in its initial state and return its id."""

    def update_run(self, run_id: str, patch: Mapping[str, Any]) -> PipelineRun:
        """Apply a field patch to a run and return the updated run."""

    def append_event(self, run_id: str, event: PipelineEvent) -> None:
        """Append one sequenced event to the run's log."""

    def read_events(self, run_id: str, after_sequence: int = 0) -> list[PipelineEvent]:
        """Return the run's events with sequence_number > after_sequence, in order."""

    def get_run(self, run_id: str) -> PipelineRun:
        """Return the run, raising RunNotFoundError when unknown."""


class InMemoryRunStore:
    """Process-local store used by tests and short-lived runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, PipelineRun] = {}
        self._events: dict[str, list[PipelineEvent]] = {}

    def create_run(self, config: RunConfig) -> str:
        run_id = new_run_id()
        with self._lock:
            self._runs[run_id] = _initial_run(run_id, config)
            self._events[run_id] = []
        return run_id

    def update_run(self, run_id: str, patch: Mapping[str, Any]) -> PipelineRun:
        with self._lock:
            run = self._require(run_id)
            updated = _apply_patch(run, patch)
            self._runs[run_id] = updated
        return updated

    def append_event(self, run_id: str, event: PipelineEvent) -> None:
        with self._lock:
            self._require(run_id)
            self._events[run_id].append(event)

    def read_events(self, run_id: str, after_sequence: int = 0) -> list[PipelineEvent]:
        with self._lock:
            self._require(run_id)
            return [e for e in self._events[run_id] if e.sequence_number > after_sequence]

    def get_run(self, run_id: str) -> PipelineRun:
        with self._lock:
            return self._require(run_id)

    def run_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def _require(self, run_id: str) -> PipelineRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"Run '{run_id}' not found.") from None


class JsonlRunStore:
    """Directory-per-run store.

    Layout under ``root``::

        <run_id>/run_manifest.json   atomically rewritten on every update
        <run_id>/events.jsonl        append-only, one camelCase event per line
    """

    def __init__(self, root: str | Path) -> None:
        self._root = ensure_directory(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def run_root(self, run_id: str) -> Path:
        return self._root / run_id

    def create_run(self, config: RunConfig) -> str:
        run_id = new_run_id()
        run = _initial_run(run_id, config)
        ensure_directory(self.run_root(run_id))
        self._write_manifest(run)
        logger.info("Created run %s under %s", run_id, self.run_root(run_id))
        return run_id

    def update_run(self, run_id: str, patch: Mapping[str, Any]) -> PipelineRun:
        with self._lock:
            updated = _apply_patch(self.get_run(run_id), patch)
            self._write_manifest(updated)
        return updated

    def append_event(self, run_id: str, event: PipelineEvent) -> None:
        events_path = self._require_root(run_id) / EVENTS_FILENAME
        append_jsonl(events_path, [event.to_wire()])

    def read_events(self, run_id: str, after_sequence: int = 0) -> list[PipelineEvent]:
        events_path = self._require_root(run_id) / EVENTS_FILENAME
        if not events_path.exists():
            return []
        events: list[PipelineEvent] = []
        lines = events_path.read_text(encoding="utf-8").splitlines()
        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = PipelineEvent.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError):
                if line_number == len(lines):
                    logger.warning("Ignoring truncated last event line in %s", events_path)
                    continue
                raise
            if event.sequence_number > after_sequence:
                events.append(event)
        return events

    def get_run(self, run_id: str) -> PipelineRun:
        manifest_path = self._require_root(run_id) / RUN_MANIFEST_FILENAME
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        return PipelineRun.model_validate(payload["run"])

    def _require_root(self, run_id: str) -> Path:
        run_root = self.run_root(run_id)
        if not (run_root / RUN_MANIFEST_FILENAME).exists():
            raise RunNotFoundError(f"Run '{run_id}' not found under {self._root}.")
        return run_root

    def _write_manifest(self, run: PipelineRun) -> None:
        save_json(
            self.run_root(run.id) / RUN_MANIFEST_FILENAME,
            {
                "run_id": run.id,
                "status": str(run.status),
                "created_at_utc": run.started_at.isoformat(),
                "updated_at_utc": datetime.now(UTC).isoformat(),
                "run": run.to_wire(),
            },
        )
