"""Tests for run discovery and pruning utilities."""

from __future__ import annotations

from pathlib import Path

import pytest

from insight_pipeline.io import ensure_directory, save_json
from insight_pipeline.runs import discover_run_summaries, inspect_run, prune_runs


def _write_manifest(
    run_root: Path,
    *,
    run_id: str,
    created_at: str,
    updated_at: str,
    status: str = "completed",
    item_errors: list[dict] | None = None,
) -> None:
    save_json(
        run_root / "run_manifest.json",
        {
            "run_id": run_id,
            "status": status,
            "created_at_utc": created_at,
            "updated_at_utc": updated_at,
            "run": {
                "id": run_id,
                "companyId": "acme",
                "productId": "prod-1",
                "status": status,
                "startedAt": created_at,
                "inputCount": 20,
                "outputCount": 4,
                "errorStage": "enrichment" if status == "failed" else None,
                "itemErrors": item_errors or [],
            },
        },
    )


def _three_runs(runs_root: Path, *, oldest_status: str = "completed") -> None:
    for index, (run_id, status) in enumerate(
        [("run-a", oldest_status), ("run-b", "completed"), ("run-c", "failed")]
    ):
        _write_manifest(
            ensure_directory(runs_root / run_id),
            run_id=run_id,
            created_at=f"2026-02-10T{8 + index:02d}:00:00+00:00",
            updated_at=f"2026-02-10T{8 + index:02d}:01:00+00:00",
            status=status,
        )


def test_discover_run_summaries_sorts_and_skips_special_dirs(tmp_path: Path):
    runs_root = ensure_directory(tmp_path / "runs")
    ensure_directory(runs_root / "_uploads")
    ensure_directory(runs_root / "no-manifest")
    (ensure_directory(runs_root / "broken") / "run_manifest.json").write_text("{", encoding="utf-8")
    _three_runs(runs_root)
    (runs_root / "run-a" / "events.jsonl").write_text("{}\n{}\n", encoding="utf-8")

    rows = discover_run_summaries(runs_root)
    assert [item.run_id for item in rows] == ["run-c", "run-b", "run-a"]
    assert rows[0].error_stage == "enrichment"
    assert rows[2].event_count == 2
    assert rows[2].company_id == "acme"
    assert rows[2].active is False


def test_discover_run_summaries_missing_root(tmp_path: Path):
    assert discover_run_summaries(tmp_path / "missing") == []


def test_inspect_run_returns_summary_and_error_counts(tmp_path: Path):
    runs_root = ensure_directory(tmp_path / "runs")
    _write_manifest(
        ensure_directory(runs_root / "run-a"),
        run_id="run-a",
        created_at="2026-02-10T08:00:00+00:00",
        updated_at="2026-02-10T08:01:00+00:00",
        status="failed",
        item_errors=[
            {"itemId": "fb-1", "stage": "enrichment", "reason": "bad"},
            {"itemId": "fb-2", "stage": "enrichment", "reason": "bad"},
            {"itemId": "fb-3", "stage": "validation", "reason": "blank"},
        ],
    )

    payload = inspect_run(runs_root, "run-a")
    assert payload["summary"]["run_id"] == "run-a"
    assert payload["summary"]["item_error_count"] == 3
    assert payload["error_counts"] == {"enrichment": 2, "validation": 1}
    assert payload["manifest"]["run_id"] == "run-a"


def test_inspect_unknown_run_raises(tmp_path: Path):
    with pytest.raises(ValueError, match="not found"):
        inspect_run(ensure_directory(tmp_path / "runs"), "run-x")


def test_prune_runs_dry_run_respects_keep_last_and_active_runs(tmp_path: Path):
    runs_root = ensure_directory(tmp_path / "runs")
    _three_runs(runs_root, oldest_status="enriching")

    result = prune_runs(runs_root, keep_last=1, dry_run=True)
    assert result["planned_count"] == 1
    assert result["skipped_active_count"] == 1
    assert result["planned"][0]["run_id"] == "run-b"
    assert (runs_root / "run-b").exists() is True


def test_prune_runs_applies_deletion(tmp_path: Path):
    runs_root = ensure_directory(tmp_path / "runs")
    _three_runs(runs_root)

    result = prune_runs(runs_root, keep_last=1, dry_run=False)
    assert result["deleted_count"] == 2
    assert (runs_root / "run-c").exists() is True
    assert (runs_root / "run-a").exists() is False
    assert (runs_root / "run-b").exists() is False


def test_prune_runs_by_age(tmp_path: Path):
    runs_root = ensure_directory(tmp_path / "runs")
    _three_runs(runs_root)

    result = prune_runs(runs_root, keep_last=10, max_age_days=0, dry_run=True)
    assert result["planned_count"] == 3


def test_prune_runs_rejects_negative_limits(tmp_path: Path):
    with pytest.raises(ValueError):
        prune_runs(tmp_path, keep_last=-1)
    with pytest.raises(ValueError):
        prune_runs(tmp_path, max_age_days=-1)
