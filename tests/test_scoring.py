"""Tests for the scoring engine and scoring stage."""

from __future__ import annotations

import asyncio
import math
from datetime import UTC, datetime, timedelta

import pytest

from insight_pipeline.config import ScoringOptions
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.pipeline.scoring import ScoringEngine, ScoringStrategy, rank_insights
from insight_pipeline.schemas import (
    Cluster,
    EnrichedItem,
    Insight,
    ScoreBreakdown,
    ScoredInsight,
    Sentiment,
    StageName,
    UserMetadata,
)

_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def _insight(insight_id: str = "insight-a", severity: str = "high") -> Insight:
    return Insight(
        id=insight_id,
        cluster_id="cluster-a",
        title="Fix billing",
        summary="Duplicate charges.",
        pain_point="Charged twice.",
        severity=severity,
        affected_user_estimate=3,
        evidence_item_ids=["fb-1"],
    )


def _engine(**options) -> ScoringEngine:
    return ScoringEngine(ScoringOptions(**options), reference_time=_NOW)


class TestComponents:
    def test_volume_saturates(self):
        engine = _engine()
        assert engine.volume(0) == 0.0
        assert engine.volume(5) == 50.0
        assert engine.volume(10) == 100.0
        assert engine.volume(40) == 100.0

    def test_value_blends_plan_and_usage(self):
        engine = _engine()
        assert engine.value([UserMetadata(plan="enterprise", usage="high")]) == 100.0
        assert engine.value([UserMetadata(plan="pro", usage="low")]) == pytest.approx(44.0)
        assert engine.value([UserMetadata(plan="pro")]) == pytest.approx(60.0)
        assert engine.value(
            [UserMetadata(plan="enterprise", usage="high"), UserMetadata(plan="free", usage="low")]
        ) == pytest.approx(60.0)

    def test_value_defaults_without_metadata(self):
        engine = _engine()
        assert engine.value([]) == 50.0
        assert engine.value([None, UserMetadata(segment="smb")]) == 50.0

    def test_recency_decays_with_half_life(self):
        engine = _engine(half_life_days=14.0)
        assert engine.recency(_NOW) == 100.0
        assert engine.recency(_NOW - timedelta(days=14)) == pytest.approx(100.0 * math.exp(-1))
        assert engine.recency(_NOW + timedelta(days=2)) == 100.0

    def test_strategic_alignment(self):
        assert _engine().strategic_alignment("Billing") == 50.0
        engine = _engine(priority_themes={"Billing": 90.0, "refund": 70.0})
        assert engine.strategic_alignment("billing") == 90.0
        assert engine.strategic_alignment("Payments", ["refund", "billing"]) == 90.0
        assert engine.strategic_alignment("Payments", ["refund"]) == 70.0
        assert engine.strategic_alignment("Onboarding") == 0.0

    def test_urgency_maps_severity(self):
        engine = _engine()
        assert engine.urgency("low") == 25.0
        assert engine.urgency("critical") == 100.0


def test_composite_score_matches_weighted_sum():
    scored = _engine().score(
        _insight(severity="high"),
        cluster_size=10,
        most_recent_timestamp=_NOW,
    )
    assert scored.breakdown == ScoreBreakdown(
        volume=100.0, value=50.0, recency=100.0, strategic=50.0, urgency=75.0
    )
    assert scored.score == pytest.approx(0.25 * 100 + 0.2 * 50 + 0.15 * 100 + 0.2 * 50 + 0.2 * 75)
    assert scored.id == "insight-a"
    assert scored.priority == "high"
    assert scored.business_impact == "Impact score: 75/100"


@pytest.mark.parametrize(
    ("score", "priority"),
    [
        (100.0, "critical"),
        (80.0, "critical"),
        (79.9, "high"),
        (65.0, "high"),
        (45.0, "medium"),
        (44.9, "low"),
    ],
)
def test_priority_tiers(score: float, priority: str):
    assert _engine().priority(score) == priority


def test_priority_thresholds_are_configurable_and_ordered():
    engine = _engine(critical_threshold=90.0, high_threshold=70.0, medium_threshold=20.0)
    assert engine.priority(85.0) == "high"
    assert engine.priority(25.0) == "medium"
    with pytest.raises(ValueError, match="Priority thresholds"):
        ScoringOptions(high_threshold=90.0, critical_threshold=80.0)


def test_strategic_weight_is_clamped():
    scored = _engine().score(
        _insight(), cluster_size=1, most_recent_timestamp=_NOW, strategic_weight=250.0
    )
    assert scored.breakdown.strategic == 100.0


def test_scores_stay_in_bounds():
    engine = _engine()
    for severity in ("low", "critical"):
        for size in (0, 1, 500):
            for age_days in (0, 365):
                scored = engine.score(
                    _insight(severity=severity),
                    cluster_size=size,
                    most_recent_timestamp=_NOW - timedelta(days=age_days),
                    evidence_metadata=[UserMetadata(plan="enterprise", usage="high")],
                )
                assert 0.0 <= scored.score <= 100.0


def test_scoring_is_deterministic():
    args = {
        "cluster_size": 4,
        "most_recent_timestamp": _NOW - timedelta(days=3),
        "evidence_metadata": [UserMetadata(plan="pro", usage="medium")],
    }
    first = _engine().score(_insight(), **args)
    second = _engine().score(_insight(), **args)
    assert first == second


def test_reference_time_from_options_takes_precedence():
    pinned = datetime(2025, 1, 1, tzinfo=UTC)
    engine = ScoringEngine(ScoringOptions(reference_time=pinned), reference_time=_NOW)
    assert engine.reference_time == pinned


def test_rank_insights_orders_by_score_then_id():
    breakdown = ScoreBreakdown(volume=0, value=0, recency=0, strategic=0, urgency=0)

    def _scored(insight_id: str, score: float) -> ScoredInsight:
        return ScoredInsight(
            **dict(_insight(insight_id)),
            score=score,
            breakdown=breakdown,
            priority="medium",
            business_impact=f"Impact score: {round(score)}/100",
        )

    ranked = rank_insights([_scored("b", 50.0), _scored("c", 80.0), _scored("a", 50.0)])
    assert [insight.id for insight in ranked] == ["c", "a", "b"]


class _NullSink:
    def item_started(self, stage, item_id) -> None:
        pass

    def item_succeeded(self, stage, item_id) -> None:
        pass

    def item_failed(self, error) -> None:
        pass

    def warning(self, stage, message, **payload) -> None:
        pass


def test_scoring_strategy_uses_cluster_and_evidence():
    items = {
        f"fb-{index}": EnrichedItem(
            id=f"fb-{index}",
            text="Billing issue",
            timestamp=_NOW - timedelta(days=14 - index),
            sentiment=Sentiment(label="negative", score=-0.5, confidence=0.8),
            user_metadata=UserMetadata(plan="enterprise", usage="high") if index == 1 else None,
        )
        for index in range(1, 5)
    }
    cluster = Cluster(
        id="cluster-a",
        theme="Billing",
        description="d",
        member_item_ids=list(items),
        dominant_sentiment="negative",
        keywords=["refund"],
        theme_key="billing",
    )
    engine = _engine(priority_themes={"refund": 80.0}, volume_saturation_point=8)
    strategy = ScoringStrategy(engine, {"cluster-a": cluster}, items)
    context = StageContext(stage=StageName.SCORING, emit=_NullSink())

    scored = asyncio.run(strategy.process(_insight(), context))

    assert scored.breakdown.volume == 50.0
    assert scored.breakdown.value == 100.0
    assert scored.breakdown.strategic == 80.0
    assert scored.breakdown.recency == pytest.approx(100.0 * math.exp(-10 / 14))
