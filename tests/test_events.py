"""Tests for the per-run event bus and SSE formatting."""

from __future__ import annotations

import asyncio
import json

import pytest

from insight_pipeline.config import RunConfig, StageWeights
from insight_pipeline.events import RunEventBus, to_sse
from insight_pipeline.schemas import EventType, ItemError, PipelineEvent, StageName
from insight_pipeline.store import InMemoryRunStore


def _bus(run_id: str = "run-1", store=None) -> RunEventBus:
    return RunEventBus(run_id, weights=StageWeights().as_mapping(), store=store)


def _drive_full_run(bus: RunEventBus) -> None:
    bus.pipeline_started(inputCount=2)
    bus.stage_started(StageName.VALIDATION, 2)
    for item_id in ("fb-1", "fb-2"):
        bus.item_started(StageName.VALIDATION, item_id)
        bus.item_succeeded(StageName.VALIDATION, item_id)
    bus.stage_complete(StageName.VALIDATION)
    for stage in (
        StageName.ENRICHMENT,
        StageName.CLUSTERING,
        StageName.INSIGHT_GENERATION,
        StageName.SCORING,
    ):
        bus.stage_started(stage, 2)
        bus.item_started(stage, "fb-1")
        bus.item_succeeded(stage, "fb-1")
        bus.item_started(stage, "fb-2")
        bus.item_failed(ItemError(item_id="fb-2", stage=stage, reason="bad", retriable=True))
        bus.stage_complete(stage)
    bus.pipeline_complete(summary={"insightCount": 1})


def test_sequence_numbers_are_contiguous_and_progress_monotonic():
    async def _go() -> list[PipelineEvent]:
        bus = _bus()
        bus.start()
        _drive_full_run(bus)
        await bus.close()
        return bus.history

    events = asyncio.run(_go())
    assert [event.sequence_number for event in events] == list(range(1, len(events) + 1))

    progress = [event.payload["progress"] for event in events if "progress" in event.payload]
    assert progress == sorted(progress)
    assert all(0.0 <= value <= 1.0 for value in progress)
    assert events[-1].type == EventType.PIPELINE_COMPLETE
    assert events[-1].payload["progress"] == 1.0


def test_stage_complete_reports_weighted_progress():
    async def _go() -> list[PipelineEvent]:
        bus = _bus()
        bus.start()
        bus.stage_started(StageName.ENRICHMENT, 1)
        bus.item_started(StageName.ENRICHMENT, "fb-1")
        bus.item_succeeded(StageName.ENRICHMENT, "fb-1")
        bus.stage_complete(StageName.ENRICHMENT)
        await bus.close()
        return bus.history

    events = asyncio.run(_go())
    complete = events[-1]
    assert complete.type == EventType.STAGE_COMPLETE
    assert complete.payload["progress"] == pytest.approx(0.4)


def test_item_events_carry_status():
    async def _go() -> list[PipelineEvent]:
        bus = _bus()
        bus.start()
        bus.stage_started(StageName.ENRICHMENT, 2)
        bus.item_succeeded(StageName.ENRICHMENT, "fb-1")
        bus.item_failed(
            ItemError(item_id="fb-2", stage=StageName.ENRICHMENT, reason="bad", retriable=True)
        )
        bus.warning(StageName.ENRICHMENT, "heads up", droppedItemIds=["fb-3"])
        await bus.close()
        return bus.history

    _, succeeded, failed, warning = asyncio.run(_go())
    assert succeeded.type == EventType.STAGE_PROGRESS
    assert succeeded.payload["itemStatus"] == "succeeded"
    assert succeeded.payload["itemsDone"] == 1
    assert failed.type == EventType.ERROR
    assert failed.payload["itemStatus"] == "failed"
    assert failed.payload["reason"] == "bad"
    assert failed.payload["retriable"] is True
    assert failed.payload["itemsDone"] == 2
    assert warning.type == EventType.WARNING
    assert warning.payload == {"message": "heads up", "droppedItemIds": ["fb-3"]}


def test_pipeline_failed_is_not_recoverable():
    async def _go() -> PipelineEvent:
        bus = _bus()
        bus.start()
        bus.pipeline_failed(StageName.ENRICHMENT, "too many failures")
        await bus.close()
        return bus.history[0]

    event = asyncio.run(_go())
    assert event.type == EventType.PIPELINE_FAILED
    assert event.payload["stage"] == "enrichment"
    assert event.payload["error"] == "too many failures"
    assert event.payload["recoverable"] is False


def test_live_subscriber_sees_history_then_live_events():
    async def _go() -> tuple[list[PipelineEvent], list[PipelineEvent]]:
        bus = _bus()
        bus.start()
        bus.pipeline_started()
        await asyncio.sleep(0.01)

        async def _consume() -> list[PipelineEvent]:
            return [event async for event in bus.subscribe()]

        consumer = asyncio.create_task(_consume())
        await asyncio.sleep(0)
        _drive_full_run(bus)
        await bus.close()
        return await consumer, bus.history

    received, history = asyncio.run(_go())
    assert received == history
    assert received[0].type == EventType.PIPELINE_STARTED


def test_stream_after_close_replays_history():
    async def _go() -> tuple[list[PipelineEvent], list[PipelineEvent]]:
        bus = _bus()
        bus.start()
        _drive_full_run(bus)
        await bus.close()
        return [event async for event in bus.stream()], bus.history

    replayed, history = asyncio.run(_go())
    assert replayed == history


def test_publish_after_close_is_rejected():
    async def _go() -> None:
        bus = _bus()
        bus.start()
        await bus.close()
        bus.pipeline_started()

    with pytest.raises(RuntimeError, match="closed"):
        asyncio.run(_go())


def test_events_are_persisted_to_store():
    store = InMemoryRunStore()
    config = RunConfig.parse(
        {
            "company_id": "acme",
            "product_id": "prod-1",
            "items": [{"id": "fb-1", "text": "x", "timestamp": "2025-03-01T00:00:00Z"}],
        }
    )
    run_id = store.create_run(config)

    async def _go() -> list[PipelineEvent]:
        bus = _bus(run_id, store=store)
        bus.start()
        _drive_full_run(bus)
        await bus.close()
        return bus.history

    history = asyncio.run(_go())
    assert store.read_events(run_id) == history
    assert store.read_events(run_id, after_sequence=5) == history[5:]


def test_to_sse_formats_camel_case_frame():
    async def _go() -> PipelineEvent:
        bus = _bus()
        bus.start()
        bus.stage_started(StageName.CLUSTERING, 3)
        await bus.close()
        return bus.history[0]

    frame = to_sse(asyncio.run(_go()))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    body = json.loads(frame[len("data: ") :])
    assert body["pipelineId"] == "run-1"
    assert body["sequenceNumber"] == 1
    assert body["stage"] == "clustering"
    assert body["payload"]["itemsTotal"] == 3


class _UnwritableStore:
    def __init__(self) -> None:
        self.attempts = 0

    def append_event(self, run_id: str, event: PipelineEvent) -> None:
        self.attempts += 1
        raise OSError("read-only file system")


def test_store_append_failures_do_not_stop_the_stream():
    store = _UnwritableStore()

    async def _go() -> tuple[RunEventBus, list[PipelineEvent]]:
        bus = _bus(store=store)
        bus.start()
        streamed: list[PipelineEvent] = []

        async def _consume() -> None:
            async for event in bus.stream():
                streamed.append(event)

        consumer = asyncio.create_task(_consume())
        await asyncio.sleep(0)
        _drive_full_run(bus)
        await bus.close()
        await consumer
        return bus, streamed

    bus, streamed = asyncio.run(_go())
    assert bus.closed is True
    assert streamed == bus.history
    assert bus.history[-1].type == EventType.PIPELINE_COMPLETE
    assert bus.persist_failure_count == store.attempts == len(bus.history)
