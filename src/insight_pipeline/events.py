"""Ordered, replayable run event stream.

Stage workers never touch shared counters. They publish drafts onto a per-run
queue, and one aggregator task assigns sequence numbers, updates progress,
persists each event, and fans it out to live subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from insight_pipeline.progress import ProgressTracker
from insight_pipeline.schemas import EventType, ItemError, PipelineEvent, StageName
from insight_pipeline.store import RunStore

logger = logging.getLogger(__name__)

_TRACK_STAGE_STARTED = "stage_started"
_TRACK_ITEM_DONE = "item_done"
_TRACK_STAGE_COMPLETE = "stage_complete"
_TRACK_FINISH = "finish"


@dataclass(frozen=True)
class _EventDraft:
    type: EventType
    stage: StageName | None
    payload: dict[str, Any] = field(default_factory=dict)
    track: str | None = None
    items_total: int = 0
    with_progress: bool = False


_CLOSE = _EventDraft(type=EventType.WARNING, stage=None, track="__close__")


def to_sse(event: PipelineEvent) -> str:
    """Render one event as a server-sent-events data frame."""

    return "data: " + json.dumps(event.to_wire(), ensure_ascii=True) + "\n\n"


class RunEventBus:
    """Single-writer event channel for one run."""

    def __init__(
        self,
        run_id: str,
        *,
        weights: Mapping[StageName, float],
        store: RunStore | None = None,
    ) -> None:
        self._run_id = run_id
        self._store = store
        self._tracker = ProgressTracker(weights)
        self._queue: asyncio.Queue[_EventDraft] = asyncio.Queue()
        self._history: list[PipelineEvent] = []
        self._subscribers: list[asyncio.Queue[PipelineEvent | None]] = []
        self._sequence = 0
        self._task: asyncio.Task | None = None
        self._closing = False
        self._finished = False
        self._persist_failures = 0

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def history(self) -> list[PipelineEvent]:
        return list(self._history)

    @property
    def progress(self) -> float:
        return self._tracker.progress

    @property
    def closed(self) -> bool:
        """True once the bus stops accepting new events."""
        return self._closing or self._finished

    @property
    def persist_failure_count(self) -> int:
        return self._persist_failures

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._aggregate(), name=f"events-{self._run_id}")

    async def close(self) -> None:
        """Flush every queued draft, then stop the aggregator and release subscribers."""

        if self._task is None:
            self._finished = True
            return
        if not self._closing:
            self._closing = True
            self._queue.put_nowait(_CLOSE)
        await self._task

    # Publishing ---------------------------------------------------------

    def publish(
        self,
        event_type: EventType,
        stage: StageName | None = None,
        payload: Mapping[str, Any] | None = None,
        *,
        track: str | None = None,
        items_total: int = 0,
        with_progress: bool = False,
    ) -> None:
        if self._closing:
            raise RuntimeError(f"Event bus for run '{self._run_id}' is closed.")
        self._queue.put_nowait(
            _EventDraft(
                type=event_type,
                stage=stage,
                payload=dict(payload or {}),
                track=track,
                items_total=items_total,
                with_progress=with_progress or track is not None,
            )
        )

    def pipeline_started(self, **payload: Any) -> None:
        self.publish(EventType.PIPELINE_STARTED, payload=payload, with_progress=True)

    def stage_started(self, stage: StageName, items_total: int, **payload: Any) -> None:
        self.publish(
            EventType.STAGE_STARTED,
            stage,
            payload,
            track=_TRACK_STAGE_STARTED,
            items_total=items_total,
        )

    def item_started(self, stage: StageName, item_id: str) -> None:
        self.publish(
            EventType.STAGE_PROGRESS,
            stage,
            {"itemId": item_id, "itemStatus": "started"},
            with_progress=True,
        )

    def item_succeeded(self, stage: StageName, item_id: str) -> None:
        self.publish(
            EventType.STAGE_PROGRESS,
            stage,
            {"itemId": item_id, "itemStatus": "succeeded"},
            track=_TRACK_ITEM_DONE,
        )

    def item_failed(self, error: ItemError) -> None:
        self.publish(
            EventType.ERROR,
            error.stage,
            {
                "itemId": error.item_id,
                "itemStatus": "failed",
                "reason": error.reason,
                "retriable": error.retriable,
            },
            track=_TRACK_ITEM_DONE,
        )

    def warning(self, stage: StageName | None, message: str, **payload: Any) -> None:
        self.publish(EventType.WARNING, stage, {"message": message, **payload})

    def stage_complete(self, stage: StageName, **payload: Any) -> None:
        self.publish(EventType.STAGE_COMPLETE, stage, payload, track=_TRACK_STAGE_COMPLETE)

    def pipeline_complete(self, **payload: Any) -> None:
        self.publish(EventType.PIPELINE_COMPLETE, payload=payload, track=_TRACK_FINISH)

    def pipeline_failed(self, stage: StageName | None, error: str, **payload: Any) -> None:
        body = {
            "stage": str(stage) if stage is not None else "unknown",
            "error": error,
            "recoverable": False,
            **payload,
        }
        self.publish(EventType.PIPELINE_FAILED, stage, body, with_progress=True)

    # Consuming ----------------------------------------------------------

    def subscribe(self) -> AsyncIterator[PipelineEvent]:
        return self.stream()

    async def stream(self) -> AsyncIterator[PipelineEvent]:
        """Yield every event of the run: history first, then live events until close."""

        backlog = list(self._history)
        if self._finished:
            for event in backlog:
                yield event
            return

        queue: asyncio.Queue[PipelineEvent | None] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            for event in backlog:
                yield event
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    # Aggregation --------------------------------------------------------

    def _apply_tracking(self, draft: _EventDraft) -> None:
        if draft.track == _TRACK_STAGE_STARTED and draft.stage is not None:
            self._tracker.begin_stage(draft.stage, draft.items_total)
        elif draft.track == _TRACK_ITEM_DONE and draft.stage is not None:
            self._tracker.item_done(draft.stage)
        elif draft.track == _TRACK_STAGE_COMPLETE and draft.stage is not None:
            self._tracker.complete_stage(draft.stage)
        elif draft.track == _TRACK_FINISH:
            self._tracker.finish()

    def _sequence_draft(self, draft: _EventDraft) -> PipelineEvent:
        self._apply_tracking(draft)
        payload = dict(draft.payload)
        if draft.with_progress:
            payload.update(self._tracker.snapshot())
        self._sequence += 1
        return PipelineEvent(
            run_id=self._run_id,
            type=draft.type,
            stage=draft.stage,
            timestamp=datetime.now(UTC),
            sequence_number=self._sequence,
            payload=payload,
        )

    async def _persist(self, event: PipelineEvent) -> None:
        """Append one event to the store. A failed write is logged and counted, never fatal."""

        try:
            await asyncio.to_thread(self._store.append_event, self._run_id, event)
        except Exception:
            self._persist_failures += 1
            logger.exception(
                "Failed to persist event %d for run %s", event.sequence_number, self._run_id
            )

    async def _aggregate(self) -> None:
        try:
            while True:
                draft = await self._queue.get()
                if draft is _CLOSE:
                    return
                event = self._sequence_draft(draft)
                if self._store is not None:
                    await self._persist(event)
                self._history.append(event)
                for queue in list(self._subscribers):
                    queue.put_nowait(event)
        except Exception:
            logger.exception("Event aggregation failed for run %s", self._run_id)
            self._closing = True
            raise
        finally:
            self._finished = True
            for queue in list(self._subscribers):
                queue.put_nowait(None)
