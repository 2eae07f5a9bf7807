"""Uniform stage execution over a bounded asyncio worker pool.

Every stage runs through the same ``StageExecutor``. What differs between
stages is the injected ``StageStrategy``: how an item is identified, how one
item is processed, and how the per-item results are finalized into the batch
handed to the next stage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from insight_pipeline.config import ConcurrencyLimits
from insight_pipeline.errors import (
    CapabilityError,
    CapabilityUnavailableError,
    DataInvariantError,
    RunCancelledError,
    StageError,
)
from insight_pipeline.schemas import ItemError, StageName

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")
OutputT = TypeVar("OutputT")


class EventSink(Protocol):
    """The subset of the run event bus a stage is allowed to use."""

    def item_started(self, stage: StageName, item_id: str) -> None: ...

    def item_succeeded(self, stage: StageName, item_id: str) -> None: ...

    def item_failed(self, error: ItemError) -> None: ...

    def warning(self, stage: StageName | None, message: str, **payload: Any) -> None: ...


@dataclass
class StageContext:
    """Per-invocation state shared by a strategy's process and finalize calls."""

    stage: StageName
    emit: EventSink
    run_id: str = ""
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str, **payload: Any) -> None:
        self.warnings.append(message)
        self.emit.warning(self.stage, message, **payload)


class StageStrategy(Protocol[ItemT, ResultT, OutputT]):
    """Stage-specific behavior injected into the executor."""

    stage: StageName

    def item_id(self, item: ItemT) -> str:
        """Return the id used for events and error accounting."""

    async def process(self, item: ItemT, context: StageContext) -> ResultT:
        """Process one item. Raising records an ItemError for it."""

    def finalize(self, results: list[ResultT], context: StageContext) -> list[OutputT]:
        """Turn successful per-item results, in input order, into the stage output."""


@dataclass
class StageOutcome(Generic[OutputT]):
    """Result of one stage invocation."""

    stage: StageName
    outputs: list[OutputT]
    succeeded_ids: list[str]
    failed: list[ItemError]
    input_count: int
    warnings: list[str] = field(default_factory=list)
    capability_errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded_ids)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def processed_count(self) -> int:
        return self.succeeded_count + self.failed_count

    @property
    def success_ratio(self) -> float:
        if self.input_count == 0:
            return 1.0
        return self.succeeded_count / self.input_count


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, CapabilityError):
        return f"capability call failed ({type(exc).__name__})"
    return f"{type(exc).__name__}: {exc}"


class StageExecutor(Generic[ItemT, ResultT, OutputT]):
    """Runs one strategy over one batch with at most ``max_concurrent`` items outstanding."""

    def __init__(self, strategy: StageStrategy[ItemT, ResultT, OutputT]) -> None:
        self.strategy = strategy

    @property
    def stage(self) -> StageName:
        return self.strategy.stage

    async def run(
        self,
        batch: Sequence[ItemT],
        emit: EventSink,
        limits: ConcurrencyLimits,
        cancel_event: asyncio.Event | None = None,
        *,
        run_id: str = "",
    ) -> StageOutcome[OutputT]:
        stage = self.strategy.stage
        context = StageContext(stage=stage, emit=emit, run_id=run_id)
        max_concurrent = limits.for_stage(stage)
        slots = asyncio.Semaphore(max_concurrent)

        results: dict[int, ResultT] = {}
        item_ids: dict[int, str] = {}
        failures: dict[int, ItemError] = {}
        capability_errors: list[dict[str, str]] = []
        abort: list[Exception] = []

        async def _work(index: int, item: ItemT, item_id: str) -> None:
            try:
                emit.item_started(stage, item_id)
                try:
                    result = await self.strategy.process(item, context)
                except DataInvariantError as exc:
                    abort.append(exc)
                    raise
                except Exception as exc:
                    if isinstance(exc, CapabilityError):
                        capability_errors.append(
                            {
                                "itemId": item_id,
                                "stage": str(stage),
                                "errorType": type(exc).__name__,
                                "message": str(exc),
                            }
                        )
                    if isinstance(exc, CapabilityUnavailableError):
                        abort.append(exc)
                    error = ItemError(
                        item_id=item_id,
                        stage=stage,
                        reason=_failure_reason(exc),
                        retriable=bool(getattr(exc, "retriable", False)),
                    )
                    failures[index] = error
                    logger.debug("Item %s failed in %s: %s", item_id, stage, exc)
                    emit.item_failed(error)
                    return
                results[index] = result
                emit.item_succeeded(stage, item_id)
            finally:
                slots.release()

        tasks: list[asyncio.Task] = []
        cancelled = False
        for index, item in enumerate(batch):
            await slots.acquire()
            if cancel_event is not None and cancel_event.is_set():
                slots.release()
                cancelled = True
                break
            if abort:
                slots.release()
                break
            item_id = self.strategy.item_id(item)
            item_ids[index] = item_id
            tasks.append(asyncio.create_task(_work(index, item, item_id)))

        # In-flight items always run to completion before the stage reports.
        gathered = await asyncio.gather(*tasks, return_exceptions=True)
        for task_result in gathered:
            if isinstance(task_result, BaseException):
                raise task_result

        unavailable = next((e for e in abort if isinstance(e, CapabilityUnavailableError)), None)
        if unavailable is not None:
            raise StageError(
                str(stage),
                f"Stage '{stage}' aborted: analysis capability unavailable.",
                cause_message=str(unavailable),
                item_errors=[failures[i] for i in sorted(failures)],
            ) from unavailable
        if cancelled:
            logger.info(
                "Stage %s stopped dispatch on cancel after %d of %d items",
                stage,
                len(tasks),
                len(batch),
            )
            raise RunCancelledError(f"Run cancelled during stage '{stage}'.")

        ordered = sorted(results)
        outputs = self.strategy.finalize([results[i] for i in ordered], context)
        outcome = StageOutcome(
            stage=stage,
            outputs=outputs,
            succeeded_ids=[item_ids[i] for i in ordered],
            failed=[failures[i] for i in sorted(failures)],
            input_count=len(batch),
            warnings=list(context.warnings),
            capability_errors=capability_errors,
        )
        logger.info(
            "Stage %s finished: %d succeeded, %d failed of %d (ratio %.3f)",
            stage,
            outcome.succeeded_count,
            outcome.failed_count,
            outcome.input_count,
            outcome.success_ratio,
        )
        return outcome
