"""Prompts for insight generation."""

from __future__ import annotations

from insight_pipeline.schemas import Cluster, EnrichedItem

INSIGHT_SYSTEM_PROMPT = """You are a product insights analyst.
You receive one cluster of related customer feedback.

Return strict JSON with exactly these keys:
{
  "title": "<short action-oriented insight title, max 12 words>",
  "summary": "<two or three sentence executive summary>",
  "pain_point": "<the underlying user problem in one sentence>",
  "user_wants": "<what users are asking for, in one sentence>",
  "severity": "<low|medium|high|critical>",
  "affected_user_estimate": <integer number of affected users, or null if unknown>,
  "evidence_item_ids": ["<feedback_id copied exactly from the input>"],
  "recommended_actions": ["<concrete next step>"],
  "confidence": <number from 0 to 1 for how well the evidence supports the insight>
}

Requirements:
- Cite only feedback_id values that appear in the input as evidence.
- Cite at least one feedback item.
- Base severity on urgency and sentiment of the evidence, not on volume alone.
- Do not include personally identifying details.
"""


def build_insight_user_prompt(cluster: Cluster, members: list[EnrichedItem]) -> str:
    """Render one cluster and a sample of its member feedback for insight generation."""

    lines = [
        f"- feedback_id={item.id}; sentiment={item.sentiment.label}; "
        f"urgency={item.urgency}; text={item.text}"
        for item in members
    ]
    keywords = ", ".join(cluster.keywords) or "-"
    areas = ", ".join(cluster.product_areas) or "-"
    segments = ", ".join(cluster.user_segments) or "-"
    urgency = (
        ", ".join(f"{level}={count}" for level, count in cluster.urgency_distribution.items())
        or "-"
    )
    return (
        "Generate one insight for this feedback cluster.\n"
        f"cluster_id: {cluster.id}\n"
        f"theme: {cluster.theme}\n"
        f"cluster_size: {cluster.size}\n"
        f"dominant_sentiment: {cluster.dominant_sentiment}\n"
        f"keywords: {keywords}\n"
        f"product_areas: {areas}\n"
        f"urgency_distribution: {urgency}\n"
        f"user_segments: {segments}\n"
        "Member feedback:\n"
        + "\n".join(lines)
        + "\n"
    )
