"""Prompt builders for the feedback insight pipeline."""

from insight_pipeline.prompts.enrichment_prompts import (
    ENRICHMENT_SYSTEM_PROMPT,
    build_enrichment_user_prompt,
)
from insight_pipeline.prompts.insight_prompts import (
    INSIGHT_SYSTEM_PROMPT,
    build_insight_user_prompt,
)

__all__ = [
    "ENRICHMENT_SYSTEM_PROMPT",
    "INSIGHT_SYSTEM_PROMPT",
    "build_enrichment_user_prompt",
    "build_insight_user_prompt",
]
