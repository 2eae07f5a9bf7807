"""Prompts for feedback enrichment."""

from __future__ import annotations

from insight_pipeline.schemas import FeedbackItem, ProductArea

ENRICHMENT_SYSTEM_PROMPT = """You are a feedback enrichment specialist.
Analyze one piece of customer feedback and link it to existing product areas.

Analyze these aspects:
- Product area linking: match the feedback to the listed product areas using their exact IDs.
- Sentiment: positive, negative, or neutral, with a score in [-1, 1] and a confidence in [0, 1].
- Feature extraction: specific product features mentioned in the feedback.
- Urgency: low, medium, or high based on language indicators.
- Categories: short lowercase classification tags, most relevant first.

Language patterns to recognize:
- Urgency indicators: "urgent", "immediately", "ASAP", "critical", "broken", "emergency".
- Positive sentiment: "love", "great", "awesome", "perfect", "works well", "excellent".
- Negative sentiment: "hate", "terrible", "broken", "frustrated", "annoying", "awful".

Return strict JSON with exactly these keys:
{
  "product_areas": [{"id": "<product area id>", "confidence": <float 0-1>}],
  "sentiment": {"label": "<positive|negative|neutral>", "score": <float>, "confidence": <float>},
  "extracted_features": ["<feature>"],
  "urgency": "<low|medium|high>",
  "categories": ["<category>"]
}

Only use product area IDs from the provided list. Return an empty list when none apply.
"""


def build_enrichment_user_prompt(item: FeedbackItem, product_areas: list[ProductArea]) -> str:
    """Render one feedback item and the known product areas for enrichment."""

    if product_areas:
        area_lines = "\n".join(
            f"- id={area.id}; name={area.name}; keywords={', '.join(area.keywords) or '-'}"
            for area in product_areas
        )
    else:
        area_lines = "- (no product areas configured)"
    tags = ", ".join(item.tags) or "-"
    return (
        "Enrich this customer feedback and return the required JSON.\n\n"
        f"feedback_id: {item.id}\n"
        f"source: {item.source}\n"
        f"tags: {tags}\n"
        f"timestamp: {item.timestamp.isoformat()}\n\n"
        "Product areas:\n"
        f"{area_lines}\n\n"
        "Feedback:\n"
        f"{item.text}\n"
    )
