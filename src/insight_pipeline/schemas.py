"""Core data schemas for the feedback insight pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SentimentLabel = Literal["positive", "negative", "neutral"]
Urgency = Literal["low", "medium", "high"]
Severity = Literal["low", "medium", "high", "critical"]
PlanTier = Literal["free", "pro", "enterprise"]
UsageTier = Literal["low", "medium", "high"]
Priority = Literal["low", "medium", "high", "critical"]


class StageName(StrEnum):
    """Pipeline stages in execution order."""

    VALIDATION = "validation"
    ENRICHMENT = "enrichment"
    CLUSTERING = "clustering"
    INSIGHT_GENERATION = "insight_generation"
    SCORING = "scoring"


class RunStatus(StrEnum):
    """Run state machine states."""

    VALIDATING = "validating"
    ENRICHING = "enriching"
    CLUSTERING = "clustering"
    GENERATING_INSIGHTS = "generating_insights"
    SCORING = "scoring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}


class EventType(StrEnum):
    """Event types carried on the run event stream."""

    PIPELINE_STARTED = "pipeline_started"
    STAGE_STARTED = "stage_started"
    STAGE_PROGRESS = "stage_progress"
    STAGE_COMPLETE = "stage_complete"
    PIPELINE_COMPLETE = "pipeline_complete"
    PIPELINE_FAILED = "pipeline_failed"
    WARNING = "warning"
    ERROR = "error"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class WireModel(BaseModel):
    """Base model serialized with camelCase keys on the wire and in storage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UserMetadata(WireModel):
    """Account attributes of the user who left a feedback item."""

    plan: PlanTier | None = None
    usage: UsageTier | None = None
    segment: str | None = None
    team_size: int | None = Field(default=None, ge=0)


class FeedbackItem(WireModel):
    """A raw feedback record. Immutable once ingested."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    text: str
    user_id: str = ""
    product_id: str = ""
    timestamp: datetime
    source: str = "other"
    tags: tuple[str, ...] = ()
    user_metadata: UserMetadata | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ProductArea(WireModel):
    """A known product area the enrichment capability may link feedback to."""

    id: str = Field(min_length=1)
    name: str
    keywords: list[str] = Field(default_factory=list)


class ProductAreaLink(WireModel):
    """A product area linked to one feedback item."""

    id: str = Field(min_length=1)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class Sentiment(WireModel):
    label: SentimentLabel
    score: float = Field(ge=-1.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)


class EnrichedItem(FeedbackItem):
    """Feedback item plus the fields produced by enrichment."""

    product_areas: tuple[ProductAreaLink, ...] = ()
    sentiment: Sentiment
    extracted_features: tuple[str, ...] = ()
    urgency: Urgency = "low"
    categories: tuple[str, ...] = ()

    @property
    def product_area_ids(self) -> list[str]:
        return [link.id for link in self.product_areas]


class Cluster(WireModel):
    """A group of enriched items sharing a theme."""

    id: str
    theme: str
    description: str
    member_item_ids: list[str] = Field(min_length=1)
    dominant_sentiment: SentimentLabel
    keywords: list[str] = Field(default_factory=list)
    product_areas: list[str] = Field(default_factory=list)
    urgency_distribution: dict[Urgency, int] = Field(default_factory=dict)
    user_segments: list[str] = Field(default_factory=list)
    theme_key: str = ""
    unclustered: bool = False

    @property
    def size(self) -> int:
        return len(self.member_item_ids)


class Insight(WireModel):
    """One business insight derived from one cluster."""

    id: str
    cluster_id: str
    title: str
    summary: str
    pain_point: str
    severity: Severity
    affected_user_estimate: int = Field(ge=0)
    evidence_item_ids: list[str] = Field(min_length=1)
    recommended_actions: list[str] = Field(default_factory=list)
    user_wants: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    user_segments: list[str] = Field(default_factory=list)
    product_areas: list[str] = Field(default_factory=list)


class ScoreBreakdown(WireModel):
    volume: float = Field(ge=0.0, le=100.0)
    value: float = Field(ge=0.0, le=100.0)
    recency: float = Field(ge=0.0, le=100.0)
    strategic: float = Field(ge=0.0, le=100.0)
    urgency: float = Field(ge=0.0, le=100.0)


class ScoredInsight(Insight):
    """Insight plus its composite priority score."""

    score: float = Field(ge=0.0, le=100.0)
    breakdown: ScoreBreakdown
    priority: Priority
    business_impact: str


class ItemError(WireModel):
    """Failure of one item within one stage."""

    item_id: str
    stage: StageName
    reason: str
    retriable: bool = False


class StageSummary(WireModel):
    """Per-stage accounting attached to a run."""

    name: StageName
    status: Literal["running", "completed", "failed", "cancelled"] = "running"
    input_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    success_ratio: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PipelineRun(WireModel):
    """Metadata for one pipeline execution. Written only by the orchestrator."""

    id: str
    company_id: str
    product_id: str
    status: RunStatus = RunStatus.VALIDATING
    stages: list[StageSummary] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    input_count: int
    output_count: int | None = None
    error_stage: StageName | None = None
    error_message: str | None = None
    item_errors: list[ItemError] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def error_counts(self) -> dict[str, int]:
        """Return item error counts keyed by stage name."""

        counts: dict[str, int] = {}
        for error in self.item_errors:
            counts[str(error.stage)] = counts.get(str(error.stage), 0) + 1
        return counts


class PipelineEvent(WireModel):
    """One sequenced event on a run's stream."""

    run_id: str = Field(alias="pipelineId")
    type: EventType
    stage: StageName | None = None
    timestamp: datetime
    sequence_number: int = Field(ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class PipelineResult(WireModel):
    """Final output of a run."""

    run: PipelineRun
    clusters: list[Cluster] = Field(default_factory=list)
    insights: list[ScoredInsight] = Field(default_factory=list)
    item_errors: list[ItemError] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_rank_order(self) -> PipelineResult:
        scores = [insight.score for insight in self.insights]
        if scores != sorted(scores, reverse=True):
            raise ValueError("insights must be ranked by descending score.")
        return self
