"""Scoring stage: deterministic composite priority scores for insights."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime

from insight_pipeline.config import ScoringOptions
from insight_pipeline.errors import DataInvariantError
from insight_pipeline.pipeline.clustering import normalize_theme_key
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.schemas import (
    Cluster,
    EnrichedItem,
    Insight,
    ScoreBreakdown,
    ScoredInsight,
    StageName,
    UserMetadata,
)

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class ScoringEngine:
    """Pure scoring over an insight's evidence.

    score = clamp(w_volume*volume + w_value*value + w_recency*recency
                  + w_strategic*strategic + w_urgency*urgency, 0, 100)

    Every component is in [0, 100]. The engine holds no mutable state and
    makes no external calls, so identical inputs give identical scores.
    """

    def __init__(
        self,
        options: ScoringOptions | None = None,
        *,
        reference_time: datetime | None = None,
    ) -> None:
        self.options = options or ScoringOptions()
        resolved = self.options.reference_time or reference_time or datetime.now(UTC)
        if resolved.tzinfo is None:
            resolved = resolved.replace(tzinfo=UTC)
        self.reference_time = resolved

    def volume(self, cluster_size: int) -> float:
        if cluster_size < 0:
            raise ValueError(f"cluster_size must be >= 0, got {cluster_size}.")
        return min(cluster_size / self.options.volume_saturation_point, 1.0) * 100.0

    def value(self, evidence_metadata: Sequence[UserMetadata | None]) -> float:
        """Average per-item plan/usage value; items without known tiers are skipped."""

        options = self.options
        item_values: list[float] = []
        for metadata in evidence_metadata:
            if metadata is None:
                continue
            weighted = 0.0
            total_weight = 0.0
            if metadata.plan is not None and metadata.plan in options.plan_values:
                weighted += options.plan_values[metadata.plan] * options.plan_weight
                total_weight += options.plan_weight
            if metadata.usage is not None and metadata.usage in options.usage_values:
                weighted += options.usage_values[metadata.usage] * options.usage_weight
                total_weight += options.usage_weight
            if total_weight > 0:
                item_values.append(weighted / total_weight)
        if not item_values:
            return options.default_value
        return _clamp(sum(item_values) / len(item_values))

    def recency(self, most_recent_timestamp: datetime) -> float:
        if most_recent_timestamp.tzinfo is None:
            most_recent_timestamp = most_recent_timestamp.replace(tzinfo=UTC)
        age_seconds = (self.reference_time - most_recent_timestamp).total_seconds()
        age_days = max(0.0, age_seconds / _SECONDS_PER_DAY)
        return 100.0 * math.exp(-age_days / self.options.half_life_days)

    def strategic_alignment(self, theme: str, keywords: Sequence[str] = ()) -> float:
        """Best configured priority-theme score matching the theme or any keyword."""

        priorities = {
            normalize_theme_key(key): score for key, score in self.options.priority_themes.items()
        }
        if not priorities:
            return self.options.default_strategic
        terms = {normalize_theme_key(theme), *(normalize_theme_key(k) for k in keywords)}
        matches = [score for key, score in priorities.items() if key in terms]
        return max(matches, default=0.0)

    def urgency(self, severity: str) -> float:
        try:
            return self.options.severity_values[severity]
        except KeyError:
            raise ValueError(f"No urgency value configured for severity '{severity}'.") from None

    def priority(self, score: float) -> str:
        options = self.options
        if score >= options.critical_threshold:
            return "critical"
        if score >= options.high_threshold:
            return "high"
        if score >= options.medium_threshold:
            return "medium"
        return "low"

    def score(
        self,
        insight: Insight,
        *,
        cluster_size: int,
        most_recent_timestamp: datetime,
        strategic_weight: float | None = None,
        evidence_metadata: Sequence[UserMetadata | None] = (),
    ) -> ScoredInsight:
        strategic = (
            self.options.default_strategic
            if strategic_weight is None
            else _clamp(strategic_weight)
        )
        breakdown = ScoreBreakdown(
            volume=self.volume(cluster_size),
            value=self.value(evidence_metadata),
            recency=self.recency(most_recent_timestamp),
            strategic=strategic,
            urgency=self.urgency(insight.severity),
        )
        weights = self.options.weights
        composite = (
            weights.volume * breakdown.volume
            + weights.value * breakdown.value
            + weights.recency * breakdown.recency
            + weights.strategic * breakdown.strategic
            + weights.urgency * breakdown.urgency
        )
        score = _clamp(composite)
        return ScoredInsight(
            **dict(insight),
            score=score,
            breakdown=breakdown,
            priority=self.priority(score),
            business_impact=f"Impact score: {round(score)}/100",
        )


def rank_insights(insights: list[ScoredInsight]) -> list[ScoredInsight]:
    """Order by score descending; equal scores fall back to insight id."""

    return sorted(insights, key=lambda insight: (-insight.score, insight.id))


class ScoringStrategy:
    """Scores each insight against its cluster and evidence, then ranks the batch."""

    stage = StageName.SCORING

    def __init__(
        self,
        engine: ScoringEngine,
        clusters_by_id: Mapping[str, Cluster],
        items_by_id: Mapping[str, EnrichedItem],
    ) -> None:
        self.engine = engine
        self.clusters_by_id = dict(clusters_by_id)
        self.items_by_id = dict(items_by_id)

    def item_id(self, insight: Insight) -> str:
        return insight.id

    async def process(self, insight: Insight, context: StageContext) -> ScoredInsight:
        cluster = self.clusters_by_id.get(insight.cluster_id)
        if cluster is None:
            raise DataInvariantError(
                f"Insight '{insight.id}' references unknown cluster '{insight.cluster_id}'."
            )
        members = [self.items_by_id[item_id] for item_id in cluster.member_item_ids]
        evidence = [self.items_by_id[item_id] for item_id in insight.evidence_item_ids]
        return self.engine.score(
            insight,
            cluster_size=cluster.size,
            most_recent_timestamp=max(item.timestamp for item in members),
            strategic_weight=self.engine.strategic_alignment(
                cluster.theme, [cluster.theme_key, *cluster.keywords]
            ),
            evidence_metadata=[item.user_metadata for item in evidence],
        )

    def finalize(
        self, results: list[ScoredInsight], context: StageContext
    ) -> list[ScoredInsight]:
        ranked = rank_insights(results)
        if ranked:
            logger.info("Top insight %s scored %.2f", ranked[0].id, ranked[0].score)
        return ranked
