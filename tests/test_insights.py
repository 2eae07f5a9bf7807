"""Tests for insight generation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from insight_pipeline.errors import DataInvariantError
from insight_pipeline.models import CapabilityRequest
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.pipeline.insights import (
    InsightGenerationError,
    InsightGenerationStrategy,
    _InsightPayload,
    build_insight,
    estimate_affected_users,
    validate_insight_evidence,
)
from insight_pipeline.schemas import Cluster, EnrichedItem, Insight, Sentiment, StageName


def _member(item_id: str, user_id: str = "") -> EnrichedItem:
    return EnrichedItem(
        id=item_id,
        text=f"Billing problem {item_id}",
        user_id=user_id,
        timestamp=datetime(2025, 3, 1, tzinfo=UTC),
        sentiment=Sentiment(label="negative", score=-0.5, confidence=0.8),
        urgency="high",
        categories=("billing",),
    )


_MEMBERS = [_member("fb-1", "u1"), _member("fb-2", "u1"), _member("fb-3", "u2")]
_CLUSTER = Cluster(
    id="cluster-billing",
    theme="Billing",
    description="3 feedback items about Billing.",
    member_item_ids=[item.id for item in _MEMBERS],
    dominant_sentiment="negative",
    keywords=["billing"],
    product_areas=["billing"],
    urgency_distribution={"low": 0, "medium": 0, "high": 3},
    user_segments=["smb"],
    theme_key="billing",
)


def _payload(**overrides) -> dict:
    payload = {
        "title": "Stop duplicate charges",
        "summary": "Customers are charged twice.",
        "pain_point": "Duplicate billing.",
        "user_wants": "One charge per invoice.",
        "severity": "high",
        "affected_user_estimate": 7,
        "evidence_item_ids": ["fb-2", "fb-1"],
        "recommended_actions": ["Audit the billing job", "  "],
        "confidence": 0.8,
    }
    payload.update(overrides)
    return payload



class _FakeCapability:
    def __init__(self, payload: dict) -> None:
        self.payload = payload
        self.requests: list[CapabilityRequest] = []

    async def invoke(self, request: CapabilityRequest) -> dict:
        self.requests.append(request)
        return self.payload


class _NullSink:
    def item_started(self, stage, item_id) -> None:
        pass

    def item_succeeded(self, stage, item_id) -> None:
        pass

    def item_failed(self, error) -> None:
        pass

    def warning(self, stage, message, **payload) -> None:
        pass


def _context() -> StageContext:
    return StageContext(stage=StageName.INSIGHT_GENERATION, emit=_NullSink())


def test_build_insight_keeps_cited_members():
    insight = build_insight(_CLUSTER, _payload(), _MEMBERS)
    assert insight.id == "insight-cluster-billing"
    assert insight.cluster_id == "cluster-billing"
    assert insight.evidence_item_ids == ["fb-2", "fb-1"]
    assert insight.affected_user_estimate == 7
    assert insight.recommended_actions == ["Audit the billing job"]
    assert insight.user_wants == "One charge per invoice."
    assert insight.confidence == 0.8
    assert insight.user_segments == ["smb"]
    assert insight.product_areas == ["billing"]


def test_citations_outside_cluster_are_dropped():
    payload = _payload(evidence_item_ids=["fb-9", "fb-3", "fb-3"])
    insight = build_insight(_CLUSTER, payload, _MEMBERS)
    assert insight.evidence_item_ids == ["fb-3"]


def test_payload_without_valid_citation_fails_the_cluster():
    payload = _payload(evidence_item_ids=["ghost", " "])
    with pytest.raises(InsightGenerationError, match="cites no feedback"):
        build_insight(_CLUSTER, payload, _MEMBERS)
    with pytest.raises(InsightGenerationError, match="cites no feedback"):
        build_insight(_CLUSTER, _payload(evidence_item_ids=[]), _MEMBERS)


def test_missing_estimate_counts_distinct_users():
    insight = build_insight(_CLUSTER, _payload(affected_user_estimate=None), _MEMBERS)
    assert insight.affected_user_estimate == 2
    assert estimate_affected_users([_member("a"), _member("b")]) == 2


def test_invalid_payload_raises():
    with pytest.raises(InsightGenerationError, match="cluster-billing"):
        build_insight(_CLUSTER, _payload(severity="extreme"), _MEMBERS)


def test_validate_evidence_rejects_outside_members():
    insight = Insight(
        id="insight-cluster-billing",
        cluster_id="cluster-billing",
        title="t",
        summary="s",
        pain_point="p",
        severity="low",
        affected_user_estimate=1,
        evidence_item_ids=["fb-1", "fb-99"],
    )
    with pytest.raises(DataInvariantError, match="outside"):
        validate_insight_evidence(insight, _CLUSTER)


def test_validate_evidence_rejects_wrong_cluster():
    insight = build_insight(_CLUSTER, _payload(), _MEMBERS)
    other = _CLUSTER.model_copy(update={"id": "cluster-other"})
    with pytest.raises(DataInvariantError):
        validate_insight_evidence(insight, other)


def test_strategy_samples_members_and_validates_on_finalize():
    capability = _FakeCapability(_payload(evidence_item_ids=["fb-1"]))
    strategy = InsightGenerationStrategy(
        capability, {item.id: item for item in _MEMBERS}, sample_size=2
    )
    context = _context()

    insight = asyncio.run(strategy.process(_CLUSTER, context))

    assert insight.evidence_item_ids == ["fb-1"]
    request = capability.requests[0]
    assert request.item_id == "cluster-billing"
    assert request.schema_name == "insight_payload"
    assert request.strict_schema is True
    assert "feedback_id=fb-1" in request.user_prompt
    assert "feedback_id=fb-3" not in request.user_prompt
    assert "urgency_distribution: low=0, medium=0, high=3" in request.user_prompt
    assert strategy.finalize([insight], context) == [insight]


def test_strategy_fails_cluster_when_nothing_valid_is_cited():
    strategy = InsightGenerationStrategy(
        _FakeCapability(_payload(evidence_item_ids=[])), {item.id: item for item in _MEMBERS}
    )
    with pytest.raises(InsightGenerationError):
        asyncio.run(strategy.process(_CLUSTER, _context()))


def test_payload_schema_is_strict_mode_compatible():
    request = CapabilityRequest(
        item_id="cluster-billing",
        system_prompt="s",
        user_prompt="u",
        schema_name="insight_payload",
        json_schema=_InsightPayload.model_json_schema(),
    )
    schema = request.json_schema

    assert schema["additionalProperties"] is False
    assert sorted(schema["required"]) == sorted(schema["properties"])
    assert "minLength" not in str(schema)
    assert "maxLength" not in str(schema)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"title": "   "}, "must not be blank"),
        ({"summary": ""}, "must not be blank"),
        ({"title": "x" * 201}, "at most 200"),
        ({"confidence": 1.5}, "confidence"),
    ],
)
def test_payload_text_rules_are_enforced_locally(overrides: dict, message: str):
    with pytest.raises(InsightGenerationError, match=message):
        build_insight(_CLUSTER, _payload(**overrides), _MEMBERS)


def test_payload_must_state_the_estimate_even_when_unknown():
    payload = _payload()
    del payload["affected_user_estimate"]
    with pytest.raises(InsightGenerationError, match="affected_user_estimate"):
        build_insight(_CLUSTER, payload, _MEMBERS)


def test_strategy_rejects_cluster_with_unknown_members():
    strategy = InsightGenerationStrategy(_FakeCapability(_payload()), {})
    with pytest.raises(DataInvariantError, match="unknown enriched items"):
        asyncio.run(strategy.process(_CLUSTER, _context()))


def test_strategy_rejects_non_positive_sample_size():
    with pytest.raises(ValueError):
        InsightGenerationStrategy(_FakeCapability(_payload()), {}, sample_size=0)
