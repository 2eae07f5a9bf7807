"""Run discovery, inspection, and pruning for run directories written by JsonlRunStore."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from insight_pipeline.schemas import PipelineRun
from insight_pipeline.store import EVENTS_FILENAME, RUN_MANIFEST_FILENAME

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredRun:
    """A run directory whose manifest parsed into a PipelineRun."""

    root: Path
    manifest: dict[str, Any]
    run: PipelineRun

    @property
    def updated_at(self) -> datetime | None:
        raw = self.manifest.get("updated_at_utc")
        if not isinstance(raw, str) or not raw.strip():
            return self.run.completed_at or self.run.started_at
        try:
            value = datetime.fromisoformat(raw.strip())
        except ValueError:
            return None
        return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)


def load_stored_run(run_root: Path) -> StoredRun | None:
    """Parse ``run_root``'s manifest, or return None when it is missing or unreadable."""

    manifest_path = run_root / RUN_MANIFEST_FILENAME
    if not manifest_path.is_file():
        return None
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        run = PipelineRun.model_validate(manifest["run"])
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
        logger.debug("Skipping run directory %s: %s", run_root, exc)
        return None
    return StoredRun(root=run_root, manifest=manifest, run=run)


def _event_count(run_root: Path) -> int:
    events_path = run_root / EVENTS_FILENAME
    if not events_path.exists():
        return 0
    with events_path.open(encoding="utf-8") as handle:
        return sum(1 for line in handle if line.strip())


@dataclass(frozen=True)
class RunSummary:
    """Compact, user-facing summary for one run directory."""

    run_id: str
    run_root: str
    status: str
    company_id: str
    product_id: str
    created_at_utc: str
    updated_at_utc: str
    input_count: int
    output_count: int
    item_error_count: int
    event_count: int
    error_stage: str | None
    active: bool

    @classmethod
    def from_stored(cls, stored: StoredRun) -> RunSummary:
        run = stored.run
        return cls(
            run_id=run.id,
            run_root=stored.root.as_posix(),
            status=str(run.status),
            company_id=run.company_id,
            product_id=run.product_id,
            created_at_utc=str(stored.manifest.get("created_at_utc") or run.started_at.isoformat()),
            updated_at_utc=str(stored.manifest.get("updated_at_utc", "")),
            input_count=run.input_count,
            output_count=run.output_count or 0,
            item_error_count=len(run.item_errors),
            event_count=_event_count(stored.root),
            error_stage=str(run.error_stage) if run.error_stage is not None else None,
            active=not run.status.is_terminal,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _stored_runs(runs_root: Path) -> list[StoredRun]:
    """Every parseable run under ``runs_root``, most recently updated first."""

    if not runs_root.is_dir():
        return []
    stored: list[StoredRun] = []
    for child in runs_root.iterdir():
        if not child.is_dir() or child.name.startswith(("_", ".")):
            continue
        parsed = load_stored_run(child)
        if parsed is not None:
            stored.append(parsed)
    stored.sort(
        key=lambda item: (
            str(item.manifest.get("updated_at_utc", "")),
            item.run.started_at.isoformat(),
            item.run.id,
        ),
        reverse=True,
    )
    return stored


def discover_run_summaries(runs_root: Path) -> list[RunSummary]:
    """Return run summaries sorted by last update, newest first."""

    return [RunSummary.from_stored(item) for item in _stored_runs(runs_root)]


def resolve_run_root(runs_root: Path, run_id: str) -> Path:
    """Return the directory holding ``run_id``. Raises ValueError when it is unknown."""

    wanted = run_id.strip()
    if not wanted:
        raise ValueError("run_id must not be empty.")
    direct = load_stored_run(runs_root / wanted)
    if direct is not None and direct.run.id == wanted:
        return direct.root
    for item in _stored_runs(runs_root):
        if item.run.id == wanted:
            return item.root
    raise ValueError(f"Run '{wanted}' not found under {runs_root}.")


def inspect_run(runs_root: Path, run_id: str) -> dict[str, Any]:
    """Return one run's manifest with its summary and per-stage item error counts."""

    stored = load_stored_run(resolve_run_root(runs_root, run_id))
    if stored is None:
        raise ValueError(f"Run '{run_id}' has an unreadable manifest.")
    return {
        "summary": RunSummary.from_stored(stored).to_dict(),
        "error_counts": stored.run.error_counts(),
        "manifest": stored.manifest,
    }


@dataclass
class PruneReport:
    runs_root: Path
    dry_run: bool
    keep_last: int
    max_age_days: int | None
    total_runs: int = 0
    planned: list[dict[str, Any]] = field(default_factory=list)
    deleted: list[dict[str, Any]] = field(default_factory=list)
    skipped_active: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs_root": self.runs_root.as_posix(),
            "dry_run": self.dry_run,
            "total_runs": self.total_runs,
            "keep_last": self.keep_last,
            "max_age_days": self.max_age_days,
            "planned_count": len(self.planned),
            "deleted_count": len(self.deleted),
            "skipped_active_count": len(self.skipped_active),
            "error_count": len(self.errors),
            "planned": self.planned,
            "deleted": self.deleted,
            "skipped_active": self.skipped_active,
            "errors": self.errors,
        }


def prune_runs(
    runs_root: Path,
    *,
    keep_last: int = 20,
    max_age_days: int | None = None,
    dry_run: bool = True,
) -> dict[str, Any]:
    """Plan or apply run pruning by count and optional age.

    Runs beyond the newest ``keep_last``, or last updated more than
    ``max_age_days`` ago, are candidates. Runs that have not reached a terminal
    status are never deleted.
    """

    if keep_last < 0:
        raise ValueError("keep_last must be >= 0.")
    if max_age_days is not None and max_age_days < 0:
        raise ValueError("max_age_days must be >= 0 when provided.")

    stored = _stored_runs(runs_root)
    report = PruneReport(
        runs_root=runs_root,
        dry_run=dry_run,
        keep_last=keep_last,
        max_age_days=max_age_days,
        total_runs=len(stored),
    )
    cutoff = datetime.now(UTC) - timedelta(days=max_age_days) if max_age_days is not None else None

    for position, item in enumerate(stored):
        updated = item.updated_at
        expired = cutoff is not None and updated is not None and updated < cutoff
        if position < keep_last and not expired:
            continue

        row = RunSummary.from_stored(item).to_dict()
        if not item.run.status.is_terminal:
            report.skipped_active.append(row)
        elif dry_run:
            report.planned.append(row)
        else:
            try:
                shutil.rmtree(item.root)
            except OSError as exc:
                logger.warning("Failed to delete run directory %s: %s", item.root, exc)
                report.errors.append({**row, "error": str(exc)})
            else:
                report.deleted.append(row)

    if not dry_run:
        logger.info("Pruned %d of %d runs under %s", len(report.deleted), len(stored), runs_root)
    return report.to_dict()
