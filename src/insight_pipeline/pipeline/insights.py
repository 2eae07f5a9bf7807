"""Insight generation stage: one capability call per cluster."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from insight_pipeline.errors import DataInvariantError
from insight_pipeline.models.capability import AIAnalysisCapability, CapabilityRequest
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.prompts import INSIGHT_SYSTEM_PROMPT, build_insight_user_prompt
from insight_pipeline.schemas import Cluster, EnrichedItem, Insight, StageName

logger = logging.getLogger(__name__)


class InsightGenerationError(ValueError):
    """Raised when an insight payload fails validation."""


MAX_TITLE_LENGTH = 200


class _InsightPayload(BaseModel):
    """Structured insight output. Every property is required; optional values are nullable."""

    model_config = ConfigDict(extra="forbid")

    title: str
    summary: str
    pain_point: str
    user_wants: str
    severity: Literal["low", "medium", "high", "critical"]
    affected_user_estimate: int | None = Field(ge=0)
    evidence_item_ids: list[str]
    recommended_actions: list[str]
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("title", "summary", "pain_point")
    @classmethod
    def _require_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be blank")
        return text

    @field_validator("title")
    @classmethod
    def _limit_title(cls, value: str) -> str:
        if len(value.strip()) > MAX_TITLE_LENGTH:
            raise ValueError(f"must be at most {MAX_TITLE_LENGTH} characters")
        return value


def insight_id_for_cluster(cluster_id: str) -> str:
    return f"insight-{cluster_id}"


def estimate_affected_users(members: list[EnrichedItem]) -> int:
    """Count distinct users; items without a user id count individually."""

    return len({item.user_id or f"item:{item.id}" for item in members})


def validate_insight_evidence(insight: Insight, cluster: Cluster) -> None:
    """Reject an insight whose evidence is empty or reaches outside its cluster."""

    if insight.cluster_id != cluster.id:
        raise DataInvariantError(
            f"Insight '{insight.id}' references cluster '{insight.cluster_id}', "
            f"expected '{cluster.id}'."
        )
    if not insight.evidence_item_ids:
        raise DataInvariantError(f"Insight '{insight.id}' has no evidence.")
    outside = sorted(set(insight.evidence_item_ids) - set(cluster.member_item_ids))
    if outside:
        raise DataInvariantError(
            f"Insight '{insight.id}' cites evidence outside cluster '{cluster.id}': {outside}"
        )


def build_insight(
    cluster: Cluster,
    payload: dict,
    members: list[EnrichedItem],
) -> Insight:
    """Validate one capability payload and bind its evidence to the cluster.

    Only cited ids that belong to the cluster are kept. A payload that cites
    none of them fails the cluster rather than borrowing uncited evidence.
    """

    try:
        parsed = _InsightPayload.model_validate(payload)
    except Exception as exc:
        raise InsightGenerationError(
            f"Insight payload failed validation for cluster '{cluster.id}': {exc}"
        ) from exc

    member_ids = set(cluster.member_item_ids)
    evidence: list[str] = []
    for item_id in parsed.evidence_item_ids:
        cited = item_id.strip()
        if cited in member_ids and cited not in evidence:
            evidence.append(cited)
    if not evidence:
        raise InsightGenerationError(
            f"Insight for cluster '{cluster.id}' cites no feedback from the cluster "
            f"(cited {parsed.evidence_item_ids})."
        )

    affected = parsed.affected_user_estimate
    if affected is None:
        affected = estimate_affected_users(members)
    actions = [action.strip() for action in parsed.recommended_actions if action.strip()]

    return Insight(
        id=insight_id_for_cluster(cluster.id),
        cluster_id=cluster.id,
        title=parsed.title,
        summary=parsed.summary,
        pain_point=parsed.pain_point,
        severity=parsed.severity,
        affected_user_estimate=affected,
        evidence_item_ids=evidence,
        recommended_actions=actions,
        user_wants=parsed.user_wants.strip(),
        confidence=parsed.confidence,
        user_segments=list(cluster.user_segments),
        product_areas=list(cluster.product_areas),
    )


class InsightGenerationStrategy:
    """Turns each cluster into exactly one evidence-linked insight."""

    stage = StageName.INSIGHT_GENERATION

    def __init__(
        self,
        capability: AIAnalysisCapability,
        items_by_id: Mapping[str, EnrichedItem],
        *,
        sample_size: int = 12,
    ) -> None:
        if sample_size <= 0:
            raise ValueError(f"sample_size must be positive, got {sample_size}.")
        self.capability = capability
        self.items_by_id = dict(items_by_id)
        self.sample_size = sample_size
        self._clusters: dict[str, Cluster] = {}

    def item_id(self, cluster: Cluster) -> str:
        return cluster.id

    async def process(self, cluster: Cluster, context: StageContext) -> Insight:
        self._clusters[cluster.id] = cluster
        missing = [item_id for item_id in cluster.member_item_ids if item_id not in self.items_by_id]
        if missing:
            raise DataInvariantError(
                f"Cluster '{cluster.id}' references unknown enriched items: {missing}"
            )
        members = [self.items_by_id[item_id] for item_id in cluster.member_item_ids]
        sampled = members[: self.sample_size]

        payload = await self.capability.invoke(
            CapabilityRequest(
                item_id=cluster.id,
                system_prompt=INSIGHT_SYSTEM_PROMPT,
                user_prompt=build_insight_user_prompt(cluster, sampled),
                schema_name="insight_payload",
                json_schema=_InsightPayload.model_json_schema(),
            )
        )
        return build_insight(cluster, payload, members)

    def finalize(self, results: list[Insight], context: StageContext) -> list[Insight]:
        for insight in results:
            cluster = self._clusters.get(insight.cluster_id)
            if cluster is None:
                raise DataInvariantError(
                    f"Insight '{insight.id}' references unknown cluster '{insight.cluster_id}'."
                )
            validate_insight_evidence(insight, cluster)
        return results
