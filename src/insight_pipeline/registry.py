"""Explicit registry of live and recently finished runs."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from insight_pipeline.errors import RunNotFoundError

if TYPE_CHECKING:
    from insight_pipeline.config import RunConfig
    from insight_pipeline.events import RunEventBus
    from insight_pipeline.schemas import PipelineResult, PipelineRun, StageName

logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    """In-process state for one run: its config, event bus, task, and cancel signal."""

    run_id: str
    config: RunConfig
    bus: RunEventBus
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    run: PipelineRun | None = None
    current_stage: StageName | None = None
    result: PipelineResult | None = None

    @property
    def finished(self) -> bool:
        return self.task is not None and self.task.done()

    def request_cancel(self) -> bool:
        if self.finished:
            return False
        self.cancel_event.set()
        return True


class RunRegistry:
    """Tracks run handles for one orchestrator.

    Finished runs stay addressable (for ``wait`` and ``stream``) until more
    than ``retain_finished`` have accumulated, oldest first, or until they are
    evicted explicitly.
    """

    def __init__(self, retain_finished: int = 50) -> None:
        if retain_finished < 0:
            raise ValueError("retain_finished must be >= 0.")
        self._retain_finished = retain_finished
        self._handles: dict[str, RunHandle] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def register(self, handle: RunHandle) -> None:
        if handle.run_id in self._handles:
            raise ValueError(f"Run '{handle.run_id}' is already registered.")
        self._handles[handle.run_id] = handle

    def get(self, run_id: str) -> RunHandle:
        try:
            return self._handles[run_id]
        except KeyError:
            raise RunNotFoundError(f"Run '{run_id}' is not registered.") from None

    def active(self) -> list[RunHandle]:
        return [h for h in self._handles.values() if h.run_id not in self._finished]

    def mark_finished(self, run_id: str) -> None:
        if run_id not in self._handles:
            return
        self._finished[run_id] = None
        self._finished.move_to_end(run_id)
        while len(self._finished) > self._retain_finished:
            oldest, _ = self._finished.popitem(last=False)
            self._handles.pop(oldest, None)
            logger.debug("Evicted finished run %s from registry", oldest)

    def evict(self, run_id: str) -> bool:
        """Drop a finished run. Active runs are never evicted."""

        if run_id not in self._finished:
            return False
        del self._finished[run_id]
        self._handles.pop(run_id, None)
        return True
