"""Pipeline stages, stage executor, and run orchestrator."""

from insight_pipeline.pipeline.clustering import (
    ClusteringError,
    ClusteringStageStrategy,
    ClusteringStrategy,
    ThemeBucketClusteringStrategy,
    ThemeCandidate,
)
from insight_pipeline.pipeline.enrichment import EnrichmentError, EnrichmentStrategy
from insight_pipeline.pipeline.executor import (
    EventSink,
    StageContext,
    StageExecutor,
    StageOutcome,
    StageStrategy,
)
from insight_pipeline.pipeline.insights import (
    InsightGenerationError,
    InsightGenerationStrategy,
    validate_insight_evidence,
)
from insight_pipeline.pipeline.orchestrator import (
    RUN_TRANSITIONS,
    PipelineOrchestrator,
    check_transition,
)
from insight_pipeline.pipeline.scoring import ScoringEngine, ScoringStrategy, rank_insights
from insight_pipeline.pipeline.validation import InvalidFeedbackError, ValidationStrategy

__all__ = [
    "RUN_TRANSITIONS",
    "ClusteringError",
    "ClusteringStageStrategy",
    "ClusteringStrategy",
    "EnrichmentError",
    "EnrichmentStrategy",
    "EventSink",
    "InsightGenerationError",
    "InsightGenerationStrategy",
    "InvalidFeedbackError",
    "PipelineOrchestrator",
    "ScoringEngine",
    "ScoringStrategy",
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "StageStrategy",
    "ThemeBucketClusteringStrategy",
    "ThemeCandidate",
    "ValidationStrategy",
    "check_transition",
    "rank_insights",
    "validate_insight_evidence",
]
