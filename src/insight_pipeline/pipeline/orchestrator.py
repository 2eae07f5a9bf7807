"""Run orchestration: state machine, stage sequencing, and failure policy.

The orchestrator is the only writer of a run's ``PipelineRun`` record. Stages
report back through ``StageOutcome`` objects and the run event bus; they never
touch the run directly.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from insight_pipeline.config import RunConfig, Settings
from insight_pipeline.errors import (
    DataInvariantError,
    RunCancelledError,
    RunNotFoundError,
    StageError,
)
from insight_pipeline.events import RunEventBus
from insight_pipeline.models.capability import (
    AIAnalysisCapability,
    CapabilityLimiter,
    LLMAnalysisCapability,
)
from insight_pipeline.models.openai_client import LLMJsonClient, OpenAIJsonClient
from insight_pipeline.observability import export_tracing_env, tracing_status
from insight_pipeline.pipeline.clustering import (
    ClusteringStageStrategy,
    ClusteringStrategy,
    ThemeBucketClusteringStrategy,
)
from insight_pipeline.pipeline.enrichment import EnrichmentStrategy
from insight_pipeline.pipeline.executor import StageExecutor, StageOutcome, StageStrategy
from insight_pipeline.pipeline.insights import InsightGenerationStrategy
from insight_pipeline.pipeline.scoring import ScoringEngine, ScoringStrategy
from insight_pipeline.pipeline.validation import ValidationStrategy
from insight_pipeline.registry import RunHandle, RunRegistry
from insight_pipeline.schemas import (
    Cluster,
    EnrichedItem,
    FeedbackItem,
    Insight,
    PipelineEvent,
    PipelineResult,
    PipelineRun,
    RunStatus,
    ScoredInsight,
    StageName,
    StageSummary,
)
from insight_pipeline.store import InMemoryRunStore, JsonlRunStore, RunStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Run cancelled."

_NON_TERMINAL_EXITS = frozenset({RunStatus.FAILED, RunStatus.CANCELLED})

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.VALIDATING: frozenset({RunStatus.ENRICHING}) | _NON_TERMINAL_EXITS,
    RunStatus.ENRICHING: frozenset({RunStatus.CLUSTERING}) | _NON_TERMINAL_EXITS,
    RunStatus.CLUSTERING: frozenset({RunStatus.GENERATING_INSIGHTS}) | _NON_TERMINAL_EXITS,
    RunStatus.GENERATING_INSIGHTS: frozenset({RunStatus.SCORING}) | _NON_TERMINAL_EXITS,
    RunStatus.SCORING: frozenset({RunStatus.COMPLETED}) | _NON_TERMINAL_EXITS,
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

STAGE_STATUS: dict[StageName, RunStatus] = {
    StageName.VALIDATION: RunStatus.VALIDATING,
    StageName.ENRICHMENT: RunStatus.ENRICHING,
    StageName.CLUSTERING: RunStatus.CLUSTERING,
    StageName.INSIGHT_GENERATION: RunStatus.GENERATING_INSIGHTS,
    StageName.SCORING: RunStatus.SCORING,
}

ClusteringFactory = Callable[[RunConfig], ClusteringStrategy]


def check_transition(current: RunStatus, target: RunStatus) -> None:
    """Raise DataInvariantError unless ``current -> target`` is a legal run transition."""

    if target not in RUN_TRANSITIONS[current]:
        raise DataInvariantError(f"Illegal run transition: {current} -> {target}.")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _default_clustering(config: RunConfig) -> ClusteringStrategy:
    return ThemeBucketClusteringStrategy(config.clustering, config.product_areas)


class PipelineOrchestrator:
    """Starts, sequences, and tracks pipeline runs.

    One orchestrator shares one analysis capability, and therefore one
    in-flight call limiter, across every run it starts.
    """

    def __init__(
        self,
        capability: AIAnalysisCapability,
        *,
        store: RunStore | None = None,
        registry: RunRegistry | None = None,
        clustering_factory: ClusteringFactory | None = None,
    ) -> None:
        self.capability = capability
        self.store: RunStore = store if store is not None else InMemoryRunStore()
        self.registry = registry if registry is not None else RunRegistry()
        self._clustering_factory = clustering_factory or _default_clustering

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client: LLMJsonClient | None = None,
        store: RunStore | None = None,
    ) -> PipelineOrchestrator:
        """Wire an orchestrator from process settings.

        Without an explicit client, an OpenAI-backed client is built from the
        settings' credentials, traced to LangSmith when tracing is configured.
        """

        if client is None:
            export_tracing_env(settings)
            client = OpenAIJsonClient(
                api_key=settings.openai_api_key,
                model=settings.openai_model,
                base_url=settings.openai_base_url or None,
                temperature=settings.openai_temperature,
                timeout=settings.capability_timeout_seconds,
                tracing=tracing_status(settings),
            )
        capability = LLMAnalysisCapability(
            client,
            CapabilityLimiter(settings.capability_max_in_flight),
            timeout_seconds=settings.capability_timeout_seconds,
            max_retries=settings.capability_max_retries,
            backoff_base_seconds=settings.capability_backoff_base_seconds,
            backoff_factor=settings.capability_backoff_factor,
            backoff_jitter=settings.capability_backoff_jitter,
        )
        if store is None:
            if settings.store_backend == "memory":
                store = InMemoryRunStore()
            elif settings.store_backend == "jsonl":
                store = JsonlRunStore(settings.output_dir)
            else:
                raise ValueError(
                    f"Unsupported store_backend '{settings.store_backend}'. "
                    "Expected one of: jsonl, memory."
                )
        return cls(
            capability,
            store=store,
            registry=RunRegistry(retain_finished=settings.retain_finished_runs),
        )

    # Public API ---------------------------------------------------------

    async def start(self, config: RunConfig | Mapping[str, Any]) -> str:
        """Validate the config, create and register the run, and schedule it."""

        parsed = RunConfig.parse(config)
        run_id = await asyncio.to_thread(self.store.create_run, parsed)
        run = await asyncio.to_thread(self.store.get_run, run_id)

        bus = RunEventBus(run_id, weights=parsed.stage_weights.as_mapping(), store=self.store)
        handle = RunHandle(run_id=run_id, config=parsed, bus=bus, run=run)
        self.registry.register(handle)
        bus.start()
        handle.task = asyncio.create_task(self._execute(handle), name=f"run-{run_id}")
        logger.info(
            "Started run %s for company=%s product=%s with %d items",
            run_id,
            parsed.company_id,
            parsed.product_id,
            len(parsed.items),
        )
        return run_id

    async def wait(self, run_id: str) -> PipelineResult:
        handle = self.registry.get(run_id)
        if handle.task is None:
            raise RunNotFoundError(f"Run '{run_id}' was never scheduled.")
        return await asyncio.shield(handle.task)

    async def run(self, config: RunConfig | Mapping[str, Any]) -> PipelineResult:
        return await self.wait(await self.start(config))

    def cancel(self, run_id: str) -> bool:
        """Signal a run to stop at its next checkpoint. Returns False if it already finished."""

        requested = self.registry.get(run_id).request_cancel()
        if requested:
            logger.info("Cancellation requested for run %s", run_id)
        return requested

    async def get_run(self, run_id: str) -> PipelineRun:
        if run_id in self.registry:
            handle = self.registry.get(run_id)
            if handle.run is not None:
                return handle.run
        return await asyncio.to_thread(self.store.get_run, run_id)

    async def stream(self, run_id: str) -> AsyncIterator[PipelineEvent]:
        """Live event stream for a registered run, or a stored replay for an evicted one."""

        if run_id in self.registry:
            async for event in self.registry.get(run_id).bus.stream():
                yield event
            return
        for event in await self.replay(run_id):
            yield event

    async def replay(self, run_id: str, after_sequence: int = 0) -> list[PipelineEvent]:
        return await asyncio.to_thread(self.store.read_events, run_id, after_sequence)

    async def shutdown(self) -> None:
        """Cancel every active run and wait for each to reach a terminal state."""

        handles = self.registry.active()
        for handle in handles:
            handle.request_cancel()
        tasks = [handle.task for handle in handles if handle.task is not None]
        await asyncio.gather(*tasks, return_exceptions=True)

    # Execution ----------------------------------------------------------

    async def _execute(self, handle: RunHandle) -> PipelineResult:
        config = handle.config
        bus = handle.bus
        try:
            bus.pipeline_started(
                companyId=config.company_id,
                productId=config.product_id,
                inputCount=len(config.items),
                successThreshold=config.success_threshold,
            )
            result = await self._run_stages(handle)
        except RunCancelledError:
            await self._finish_cancelled(handle)
            result = PipelineResult(run=handle.run, item_errors=handle.run.item_errors)
        except StageError as exc:
            await self._finish_failed(
                handle, StageName(exc.stage), str(exc), cause_message=exc.cause_message
            )
            result = PipelineResult(run=handle.run, item_errors=handle.run.item_errors)
        except DataInvariantError as exc:
            logger.error("Run %s violated a data invariant: %s", handle.run_id, exc)
            await self._finish_failed(handle, handle.current_stage, str(exc))
            result = PipelineResult(run=handle.run, item_errors=handle.run.item_errors)
        except Exception as exc:
            logger.exception("Run %s failed unexpectedly", handle.run_id)
            await self._finish_failed(
                handle, handle.current_stage, f"Unexpected error: {type(exc).__name__}: {exc}"
            )
            result = PipelineResult(run=handle.run, item_errors=handle.run.item_errors)
        finally:
            try:
                await bus.close()
            except Exception:
                logger.exception("Event bus for run %s did not close cleanly", handle.run_id)
            finally:
                self.registry.mark_finished(handle.run_id)

        handle.result = result
        logger.info("Run %s finished with status %s", handle.run_id, handle.run.status)
        return result

    async def _run_stages(self, handle: RunHandle) -> PipelineResult:
        config = handle.config

        validated: list[FeedbackItem] = await self._run_stage(
            handle, ValidationStrategy(), config.items
        )
        enriched: list[EnrichedItem] = await self._run_stage(
            handle,
            EnrichmentStrategy(self.capability, config.product_areas),
            validated,
        )
        clusters: list[Cluster] = await self._run_stage(
            handle,
            ClusteringStageStrategy(self._clustering_factory(config)),
            enriched,
        )
        items_by_id = {item.id: item for item in enriched}
        insights: list[Insight] = await self._run_stage(
            handle,
            InsightGenerationStrategy(self.capability, items_by_id),
            clusters,
        )
        engine = ScoringEngine(config.scoring, reference_time=handle.run.started_at)
        scored: list[ScoredInsight] = await self._run_stage(
            handle,
            ScoringStrategy(engine, {cluster.id: cluster for cluster in clusters}, items_by_id),
            insights,
        )

        await self._transition(
            handle,
            RunStatus.COMPLETED,
            completed_at=_utc_now(),
            output_count=len(scored),
        )
        handle.bus.pipeline_complete(
            summary={
                "feedbackCount": len(config.items),
                "validCount": len(validated),
                "enrichedCount": len(enriched),
                "clusterCount": len(clusters),
                "insightCount": len(scored),
            },
            errorCounts=handle.run.error_counts(),
            topInsightIds=[insight.id for insight in scored[:5]],
        )
        return PipelineResult(
            run=handle.run,
            clusters=clusters,
            insights=scored,
            item_errors=handle.run.item_errors,
        )

    async def _run_stage(
        self,
        handle: RunHandle,
        strategy: StageStrategy,
        batch: Sequence[Any],
    ) -> list[Any]:
        stage = strategy.stage
        if handle.cancel_event.is_set():
            raise RunCancelledError(f"Run cancelled before stage '{stage}'.")

        handle.current_stage = stage
        summary = StageSummary(name=stage, input_count=len(batch), started_at=_utc_now())
        await self._transition(
            handle, STAGE_STATUS[stage], stages=[*handle.run.stages, summary]
        )
        handle.bus.stage_started(stage, len(batch))

        executor = StageExecutor(strategy)
        try:
            outcome = await executor.run(
                batch,
                handle.bus,
                handle.config.concurrency,
                handle.cancel_event,
                run_id=handle.run_id,
            )
        except StageError as exc:
            await self._close_stage(handle, summary, "failed", failed=exc.item_errors)
            raise
        except RunCancelledError:
            await self._close_stage(handle, summary, "cancelled")
            raise

        threshold = handle.config.success_threshold
        passed = outcome.success_ratio >= threshold
        await self._close_stage(
            handle, summary, "completed" if passed else "failed", outcome=outcome
        )
        if not passed:
            raise StageError(
                str(stage),
                (
                    f"Stage '{stage}' succeeded for {outcome.succeeded_count} of "
                    f"{outcome.input_count} items ({outcome.success_ratio:.0%}), "
                    f"below the {threshold:.0%} success threshold."
                ),
                success_ratio=outcome.success_ratio,
            )

        handle.bus.stage_complete(
            stage,
            succeeded=outcome.succeeded_count,
            failed=outcome.failed_count,
            successRatio=outcome.success_ratio,
            outputCount=len(outcome.outputs),
            warnings=outcome.warnings,
        )
        return outcome.outputs

    # Run record updates -------------------------------------------------

    async def _update(self, handle: RunHandle, **patch: Any) -> PipelineRun:
        handle.run = await asyncio.to_thread(self.store.update_run, handle.run_id, patch)
        return handle.run

    async def _transition(self, handle: RunHandle, target: RunStatus, **patch: Any) -> None:
        current = handle.run.status
        if current != target:
            check_transition(current, target)
            logger.debug("Run %s: %s -> %s", handle.run_id, current, target)
        await self._update(handle, status=target, **patch)

    async def _close_stage(
        self,
        handle: RunHandle,
        summary: StageSummary,
        status: str,
        *,
        outcome: StageOutcome | None = None,
        failed: Sequence[Any] = (),
    ) -> None:
        item_errors = list(outcome.failed) if outcome is not None else list(failed)
        closed = summary.model_copy(
            update={
                "status": status,
                "succeeded_count": outcome.succeeded_count if outcome is not None else 0,
                "failed_count": len(item_errors),
                "success_ratio": outcome.success_ratio if outcome is not None else None,
                "completed_at": _utc_now(),
            }
        )
        metadata = dict(handle.run.metadata)
        if outcome is not None and outcome.capability_errors:
            metadata["capabilityErrors"] = [
                *metadata.get("capabilityErrors", []),
                *outcome.capability_errors,
            ]
        if outcome is not None and outcome.warnings:
            metadata["warnings"] = [
                *metadata.get("warnings", []),
                *({"stage": str(summary.name), "message": w} for w in outcome.warnings),
            ]
        await self._update(
            handle,
            stages=[*handle.run.stages[:-1], closed],
            item_errors=[*handle.run.item_errors, *item_errors],
            metadata=metadata,
        )

    async def _record_terminal(self, handle: RunHandle, target: RunStatus, **patch: Any) -> None:
        """Move the run to a terminal status even when the store rejects the write.

        A failed write is logged and the patch is applied to the in-memory run
        so that waiters and status readers still see the run finish.
        """

        if handle.run.status.is_terminal:
            logger.warning(
                "Run %s is already %s; not recording %s", handle.run_id, handle.run.status, target
            )
            return
        try:
            await self._transition(handle, target, **patch)
        except Exception:
            logger.exception("Could not persist %s status for run %s", target, handle.run_id)
            handle.run = handle.run.model_copy(update={"status": target, **patch})

    def _publish_terminal(
        self, handle: RunHandle, stage: StageName | None, message: str, **payload: Any
    ) -> None:
        if handle.bus.closed:
            logger.warning("Event bus for run %s is closed; dropping terminal event", handle.run_id)
            return
        handle.bus.pipeline_failed(stage, message, **payload)

    async def _finish_failed(
        self,
        handle: RunHandle,
        stage: StageName | None,
        message: str,
        *,
        cause_message: str | None = None,
    ) -> None:
        metadata = dict(handle.run.metadata)
        if cause_message:
            metadata["capabilityErrors"] = [
                *metadata.get("capabilityErrors", []),
                {"stage": str(stage), "message": cause_message},
            ]
        await self._record_terminal(
            handle,
            RunStatus.FAILED,
            completed_at=_utc_now(),
            error_stage=stage,
            error_message=message,
            metadata=metadata,
        )
        logger.warning("Run %s failed at stage %s: %s", handle.run_id, stage, message)
        self._publish_terminal(handle, stage, message, errorCounts=handle.run.error_counts())

    async def _finish_cancelled(self, handle: RunHandle) -> None:
        stage = handle.current_stage
        await self._record_terminal(
            handle,
            RunStatus.CANCELLED,
            completed_at=_utc_now(),
            error_stage=stage,
            error_message=CANCELLED_MESSAGE,
        )
        logger.info("Run %s cancelled during stage %s", handle.run_id, stage)
        self._publish_terminal(
            handle,
            stage,
            CANCELLED_MESSAGE,
            cancelled=True,
            errorCounts=handle.run.error_counts(),
        )
