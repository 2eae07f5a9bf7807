"""Tests for run stores."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from insight_pipeline.config import RunConfig
from insight_pipeline.errors import RunNotFoundError
from insight_pipeline.schemas import EventType, PipelineEvent, RunStatus, StageName
from insight_pipeline.store import (
    EVENTS_FILENAME,
    RUN_MANIFEST_FILENAME,
    InMemoryRunStore,
    JsonlRunStore,
)


def _config() -> RunConfig:
    return RunConfig.parse(
        {
            "company_id": "acme",
            "product_id": "prod-1",
            "items": [
                {"id": "fb-1", "text": "x", "timestamp": "2025-03-01T00:00:00Z"},
                {"id": "fb-2", "text": "y", "timestamp": "2025-03-02T00:00:00Z"},
            ],
            "success_threshold": 0.9,
        }
    )


def _event(run_id: str, sequence: int) -> PipelineEvent:
    return PipelineEvent(
        run_id=run_id,
        type=EventType.STAGE_PROGRESS,
        stage=StageName.ENRICHMENT,
        timestamp=datetime(2025, 3, 1, tzinfo=UTC),
        sequence_number=sequence,
        payload={"itemId": f"fb-{sequence}", "itemStatus": "started"},
    )


@pytest.fixture(params=["memory", "jsonl"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonlRunStore(tmp_path / "runs")


def test_create_run_starts_validating(store):
    run_id = store.create_run(_config())
    run = store.get_run(run_id)
    assert run.id == run_id
    assert run.status == RunStatus.VALIDATING
    assert run.input_count == 2
    assert run.company_id == "acme"
    assert run.metadata["successThreshold"] == 0.9


def test_update_run_applies_patch(store):
    run_id = store.create_run(_config())
    updated = store.update_run(
        run_id, {"status": RunStatus.ENRICHING, "error_message": None, "output_count": 0}
    )
    assert updated.status == RunStatus.ENRICHING
    assert store.get_run(run_id).status == RunStatus.ENRICHING


def test_update_run_rejects_unknown_fields(store):
    run_id = store.create_run(_config())
    with pytest.raises(ValueError, match="Unknown run fields"):
        store.update_run(run_id, {"phase": "done"})


def test_unknown_run_raises_not_found(store):
    with pytest.raises(RunNotFoundError):
        store.get_run("missing")
    with pytest.raises(RunNotFoundError):
        store.read_events("missing")
    with pytest.raises(LookupError):
        store.update_run("missing", {"status": RunStatus.FAILED})


def test_events_are_read_back_in_order(store):
    run_id = store.create_run(_config())
    events = [_event(run_id, sequence) for sequence in (1, 2, 3)]
    for event in events:
        store.append_event(run_id, event)
    assert store.read_events(run_id) == events
    assert [event.sequence_number for event in store.read_events(run_id, 2)] == [3]


def test_jsonl_store_layout(tmp_path: Path):
    store = JsonlRunStore(tmp_path / "runs")
    run_id = store.create_run(_config())
    store.append_event(run_id, _event(run_id, 1))

    run_root = store.run_root(run_id)
    manifest = json.loads((run_root / RUN_MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert manifest["run_id"] == run_id
    assert manifest["status"] == "validating"
    assert manifest["run"]["companyId"] == "acme"

    lines = (run_root / EVENTS_FILENAME).read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["pipelineId"] == run_id


def test_jsonl_store_skips_truncated_last_line(tmp_path: Path):
    store = JsonlRunStore(tmp_path / "runs")
    run_id = store.create_run(_config())
    store.append_event(run_id, _event(run_id, 1))
    events_path = store.run_root(run_id) / EVENTS_FILENAME
    with events_path.open("a", encoding="utf-8") as handle:
        handle.write('{"pipelineId": "')

    events = store.read_events(run_id)
    assert [event.sequence_number for event in events] == [1]


def test_jsonl_store_survives_reopen(tmp_path: Path):
    first = JsonlRunStore(tmp_path / "runs")
    run_id = first.create_run(_config())
    first.update_run(run_id, {"status": RunStatus.FAILED, "error_stage": StageName.ENRICHMENT})

    reopened = JsonlRunStore(tmp_path / "runs")
    run = reopened.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.error_stage == StageName.ENRICHMENT


def test_memory_store_lists_run_ids():
    store = InMemoryRunStore()
    first = store.create_run(_config())
    second = store.create_run(_config())
    assert store.run_ids() == [first, second]
    assert first != second
