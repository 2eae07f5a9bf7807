"""Enrichment stage: one capability call per feedback item."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from insight_pipeline.models.capability import AIAnalysisCapability, CapabilityRequest
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.prompts import ENRICHMENT_SYSTEM_PROMPT, build_enrichment_user_prompt
from insight_pipeline.schemas import (
    EnrichedItem,
    FeedbackItem,
    ProductArea,
    ProductAreaLink,
    Sentiment,
    StageName,
)

logger = logging.getLogger(__name__)


class EnrichmentError(ValueError):
    """Raised when an enrichment payload fails validation."""


class _ProductAreaPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("id")
    @classmethod
    def _require_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("product area id must not be blank")
        return value


class _SentimentPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: Literal["positive", "negative", "neutral"]
    score: float = Field(ge=-1.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)


class _EnrichmentPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_areas: list[_ProductAreaPayload]
    sentiment: _SentimentPayload
    extracted_features: list[str]
    urgency: Literal["low", "medium", "high"]
    categories: list[str]


def _normalize_terms(values: list[str]) -> tuple[str, ...]:
    """Lowercase, strip, and de-duplicate terms while keeping their order."""

    seen: dict[str, None] = {}
    for value in values:
        term = " ".join(value.strip().lower().split())
        if term:
            seen.setdefault(term, None)
    return tuple(seen)


def build_enriched_item(
    item: FeedbackItem,
    payload: dict,
    product_areas: list[ProductArea],
) -> EnrichedItem:
    """Validate one capability payload and merge it onto its feedback item."""

    try:
        parsed = _EnrichmentPayload.model_validate(payload)
    except Exception as exc:
        raise EnrichmentError(
            f"Enrichment payload failed validation for feedback '{item.id}': {exc}"
        ) from exc

    known_area_ids = {area.id for area in product_areas}
    links: dict[str, float] = {}
    for area in parsed.product_areas:
        area_id = area.id.strip()
        if known_area_ids and area_id not in known_area_ids:
            logger.debug("Dropping unknown product area %r for feedback %s", area_id, item.id)
            continue
        links[area_id] = max(area.confidence, links.get(area_id, 0.0))

    return EnrichedItem(
        **dict(item),
        product_areas=tuple(
            ProductAreaLink(id=area_id, confidence=confidence)
            for area_id, confidence in links.items()
        ),
        sentiment=Sentiment(
            label=parsed.sentiment.label,
            score=parsed.sentiment.score,
            confidence=parsed.sentiment.confidence,
        ),
        extracted_features=_normalize_terms(parsed.extracted_features),
        urgency=parsed.urgency,
        categories=_normalize_terms(parsed.categories),
    )


class EnrichmentStrategy:
    """Links each feedback item to product areas and extracts sentiment and themes."""

    stage = StageName.ENRICHMENT

    def __init__(
        self,
        capability: AIAnalysisCapability,
        product_areas: list[ProductArea] | None = None,
    ) -> None:
        self.capability = capability
        self.product_areas = list(product_areas or [])

    def item_id(self, item: FeedbackItem) -> str:
        return item.id

    async def process(self, item: FeedbackItem, context: StageContext) -> EnrichedItem:
        payload = await self.capability.invoke(
            CapabilityRequest(
                item_id=item.id,
                system_prompt=ENRICHMENT_SYSTEM_PROMPT,
                user_prompt=build_enrichment_user_prompt(item, self.product_areas),
                schema_name="enrichment_payload",
                json_schema=_EnrichmentPayload.model_json_schema(),
            )
        )
        return build_enriched_item(item, payload, self.product_areas)

    def finalize(self, results: list[EnrichedItem], context: StageContext) -> list[EnrichedItem]:
        return results
