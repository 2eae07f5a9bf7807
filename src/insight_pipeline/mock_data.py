"""Synthetic feedback and a deterministic offline analysis client for development and testing."""

from __future__ import annotations

import random
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path

from insight_pipeline.io.save import save_jsonl


def _scenario(*, theme: str, source: str, templates: list[str]) -> dict:
    return {"theme": theme, "source": source, "templates": templates}


_SCENARIOS: list[dict] = [
    _scenario(
        theme="billing",
        source="support_ticket",
        templates=[
            "I was charged twice on my last invoice, please refund the duplicate payment.",
            "The billing page is confusing and the invoice total never matches my plan.",
            "Urgent: our payment failed and the account was locked, billing support is slow.",
        ],
    ),
    _scenario(
        theme="onboarding",
        source="survey",
        templates=[
            "Onboarding took forever, the setup wizard skipped the team invite step.",
            "The tutorial during signup was great, setup felt easy for our team.",
            "I got lost in onboarding, the setup checklist never marked steps complete.",
        ],
    ),
    _scenario(
        theme="performance",
        source="app_review",
        templates=[
            "Dashboards are slow to load and the page hits a timeout every morning.",
            "Search lag makes the app frustrating, loading spinners everywhere.",
            "Reports are broken and painfully slow, we need this fixed immediately.",
        ],
    ),
    _scenario(
        theme="integrations",
        source="sales_call",
        templates=[
            "We need a Slack integration so alerts reach the team channel.",
            "The Salesforce integration sync drops contacts, annoying to repair by hand.",
            "Love the new webhook integration, it works well with our pipeline.",
        ],
    ),
    _scenario(
        theme="reporting",
        source="in_app",
        templates=[
            "Please add CSV export to reporting so finance can reuse the data.",
            "The reporting charts are excellent but export to PDF is missing.",
        ],
    ),
]

_PLANS = ("free", "pro", "enterprise")
_USAGE = ("low", "medium", "high")

_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "billing": ("billing", "invoice", "charged", "refund", "payment"),
    "onboarding": ("onboarding", "setup", "signup", "tutorial", "checklist"),
    "performance": ("slow", "lag", "timeout", "loading", "performance"),
    "integrations": ("integration", "webhook", "sync", "slack", "salesforce"),
    "reporting": ("reporting", "report", "export", "csv", "charts"),
}
_POSITIVE_WORDS = ("love", "great", "awesome", "perfect", "works well", "excellent", "easy")
_NEGATIVE_WORDS = (
    "hate",
    "terrible",
    "broken",
    "frustrat",
    "annoying",
    "awful",
    "confusing",
    "slow",
    "failed",
    "lost",
    "charged twice",
)
_URGENT_WORDS = ("urgent", "immediately", "asap", "critical", "broken", "emergency", "locked")

_FEEDBACK_ID_RE = re.compile(r"^feedback_id:\s*(\S+)\s*$", re.MULTILINE)
_CLUSTER_ID_RE = re.compile(r"^cluster_id:\s*(\S+)\s*$", re.MULTILINE)
_THEME_RE = re.compile(r"^theme:\s*(.+?)\s*$", re.MULTILINE)
_AREA_LINE_RE = re.compile(r"^- id=(?P<id>[^;]+); name=(?P<name>[^;]*); keywords=(?P<kw>.*)$")
_MEMBER_LINE_RE = re.compile(
    r"^- feedback_id=(?P<id>[^;]+); sentiment=(?P<sentiment>[^;]+); "
    r"urgency=(?P<urgency>[^;]+); text=(?P<text>.*)$"
)


def _timestamp_for_index(index: int) -> str:
    """Return deterministic timestamp for feedback index."""

    start = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)
    return (start + timedelta(hours=index * 5)).isoformat().replace("+00:00", "Z")


def generate_mock_feedback(
    count: int = 60,
    seed: int = 7,
    *,
    product_id: str = "prod-demo",
) -> list[dict]:
    """Generate a deterministic list of camelCase feedback records."""

    if count <= 0:
        raise ValueError(f"count must be positive, got {count}.")

    rng = random.Random(seed)
    output: list[dict] = []
    for index in range(count):
        scenario = _SCENARIOS[index % len(_SCENARIOS)]
        templates = scenario["templates"]
        text = templates[rng.randrange(len(templates))]
        output.append(
            {
                "id": f"fb-{index + 1:04d}",
                "text": text,
                "userId": f"user-{rng.randrange(1, 41):03d}",
                "productId": product_id,
                "timestamp": _timestamp_for_index(index),
                "source": scenario["source"],
                "tags": [scenario["theme"], "mock"],
                "userMetadata": {
                    "plan": _PLANS[rng.randrange(len(_PLANS))],
                    "usage": _USAGE[rng.randrange(len(_USAGE))],
                    "segment": "smb" if rng.random() < 0.6 else "mid_market",
                    "teamSize": rng.randrange(1, 200),
                },
            }
        )
    return output


def write_mock_feedback(path: str | Path, records: list[dict]) -> Path:
    """Write generated feedback records to JSONL."""

    return save_jsonl(path, records)


def _section(prompt: str, header: str) -> str:
    """Return the text after a ``header`` line, up to the next blank line."""

    marker = f"{header}\n"
    start = prompt.find(marker)
    if start < 0:
        return ""
    body = prompt[start + len(marker) :]
    end = body.find("\n\n")
    return body if end < 0 else body[:end]


def _sentiment_for(text: str) -> dict:
    lowered = text.lower()
    positive = sum(lowered.count(word) for word in _POSITIVE_WORDS)
    negative = sum(lowered.count(word) for word in _NEGATIVE_WORDS)
    if negative > positive:
        label, score = "negative", -min(1.0, 0.4 + 0.2 * (negative - positive))
    elif positive > negative:
        label, score = "positive", min(1.0, 0.4 + 0.2 * (positive - negative))
    else:
        label, score = "neutral", 0.0
    confidence = 0.6 if label == "neutral" else min(0.95, 0.7 + 0.1 * abs(positive - negative))
    return {"label": label, "score": round(score, 3), "confidence": round(confidence, 3)}


class KeywordAnalysisClient:
    """Deterministic offline stand-in for an LLM JSON client.

    Routes on ``schema_name`` and answers enrichment and insight prompts with
    keyword heuristics, so a full run needs no network access.
    """

    def __init__(self) -> None:
        self.call_count = 0

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        self.call_count += 1
        if schema_name == "enrichment_payload":
            return self._enrich(user_prompt)
        if schema_name == "insight_payload":
            return self._insight(user_prompt)
        raise ValueError(f"Unsupported schema_name for offline analysis: {schema_name!r}")

    def metrics_snapshot(self) -> dict:
        return {"call_count": self.call_count}

    def _enrich(self, prompt: str) -> dict:
        text = prompt.split("Feedback:\n", 1)[-1].strip()
        lowered = text.lower()

        categories = [
            category
            for category, words in _CATEGORY_KEYWORDS.items()
            if any(word in lowered for word in words)
        ]
        features = [
            word
            for category in categories
            for word in _CATEGORY_KEYWORDS[category]
            if word in lowered and word != category
        ]

        product_areas: list[dict] = []
        for line in _section(prompt, "Product areas:").splitlines():
            match = _AREA_LINE_RE.match(line.strip())
            if match is None:
                continue
            keywords = [kw.strip().lower() for kw in match["kw"].split(",") if kw.strip() != "-"]
            terms = [*keywords, match["id"].strip().lower(), match["name"].strip().lower()]
            hits = sum(1 for term in terms if term and term in lowered)
            if hits:
                confidence = min(0.95, 0.6 + 0.1 * hits)
                product_areas.append({"id": match["id"].strip(), "confidence": confidence})

        urgency = "low"
        urgent_hits = sum(1 for word in _URGENT_WORDS if word in lowered)
        if urgent_hits >= 2:
            urgency = "high"
        elif urgent_hits == 1:
            urgency = "medium"

        return {
            "product_areas": product_areas,
            "sentiment": _sentiment_for(text),
            "extracted_features": features,
            "urgency": urgency,
            "categories": categories,
        }

    def _insight(self, prompt: str) -> dict:
        cluster_match = _CLUSTER_ID_RE.search(prompt)
        theme_match = _THEME_RE.search(prompt)
        cluster_id = cluster_match.group(1) if cluster_match else "cluster"
        theme = theme_match.group(1) if theme_match else "feedback"

        members = []
        for line in _section(prompt, "Member feedback:").splitlines():
            match = _MEMBER_LINE_RE.match(line.strip())
            if match is not None:
                members.append(match.groupdict())

        negative = sum(1 for member in members if member["sentiment"] == "negative")
        high_urgency = sum(1 for member in members if member["urgency"] == "high")
        if high_urgency and negative * 2 >= len(members):
            severity = "critical" if high_urgency * 2 >= len(members) else "high"
        elif negative * 2 >= len(members) and members:
            severity = "medium"
        else:
            severity = "low"

        return {
            "title": f"Improve {theme.lower()} experience",
            "summary": (
                f"{len(members)} sampled feedback items in {cluster_id} discuss {theme.lower()}. "
                f"{negative} of them are negative."
            ),
            "pain_point": f"Users report friction with {theme.lower()}.",
            "user_wants": f"A smoother {theme.lower()} workflow.",
            "severity": severity,
            "affected_user_estimate": None,
            "evidence_item_ids": [member["id"].strip() for member in members[:5]],
            "recommended_actions": [
                f"Review the top {theme.lower()} complaints with the owning team.",
                "Follow up with affected accounts once a fix ships.",
            ],
            "confidence": round(min(0.9, 0.5 + 0.05 * len(members)), 2),
        }


def feedback_id_from_prompt(prompt: str) -> str | None:
    """Extract the feedback id an enrichment prompt was built for."""

    match = _FEEDBACK_ID_RE.search(prompt)
    return match.group(1) if match else None


def cluster_id_from_prompt(prompt: str) -> str | None:
    """Extract the cluster id an insight prompt was built for."""

    match = _CLUSTER_ID_RE.search(prompt)
    return match.group(1) if match else None
