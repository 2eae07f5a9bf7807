"""Clustering stage: group enriched feedback into themed clusters."""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from insight_pipeline.config import ClusteringOptions
from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.schemas import Cluster, EnrichedItem, ProductArea, StageName

logger = logging.getLogger(__name__)

UNCLUSTERED_CLUSTER_ID = "cluster-unclustered"
UNCLUSTERED_THEME = "Unclustered"
_SENTIMENT_ORDER = ("positive", "negative", "neutral")
_URGENCY_LEVELS = ("low", "medium", "high")

WarningCallback = Callable[..., None]


class ClusteringError(ValueError):
    """Raised when clustering inputs are invalid."""


@dataclass(frozen=True, slots=True)
class ThemeCandidate:
    """One theme an item qualifies for, with the enrichment confidence behind it."""

    key: str
    label: str
    confidence: float


class ClusteringStrategy(Protocol):
    """Maps a set of enriched items to a set of clusters.

    ``theme_candidates`` runs once per item inside the worker pool.
    ``build_clusters`` runs once per batch, with items and their candidates in
    input order. An embedding-similarity implementation can ignore the theme
    candidates and group on vectors in ``build_clusters`` instead.
    """

    def theme_candidates(self, item: EnrichedItem) -> list[ThemeCandidate]: ...

    def build_clusters(
        self,
        items: list[EnrichedItem],
        candidates: list[list[ThemeCandidate]],
        warn: WarningCallback,
    ) -> list[Cluster]: ...


def normalize_theme_key(value: str) -> str:
    return " ".join(value.strip().lower().split())


def cluster_id_for_theme(theme_key: str) -> str:
    digest = hashlib.sha1(theme_key.encode("utf-8")).hexdigest()[:10]
    return f"cluster-{digest}"


def dominant_sentiment(items: list[EnrichedItem]) -> str:
    counts = Counter(item.sentiment.label for item in items)
    return max(_SENTIMENT_ORDER, key=lambda label: (counts[label], -_SENTIMENT_ORDER.index(label)))


def cluster_keywords(items: list[EnrichedItem], *, limit: int) -> list[str]:
    """Most frequent categories and features across members, first-seen order on ties."""

    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for item in items:
        for term in (*item.categories, *item.extracted_features):
            counts[term] += 1
            first_seen.setdefault(term, len(first_seen))
    ranked = sorted(counts, key=lambda term: (-counts[term], first_seen[term]))
    return ranked[:limit]


def urgency_distribution(items: list[EnrichedItem]) -> dict[str, int]:
    counts = Counter(item.urgency for item in items)
    return {level: counts[level] for level in _URGENCY_LEVELS}


def member_profile(items: list[EnrichedItem]) -> dict[str, Any]:
    """Product areas, urgency counts, and user segments across members, first-seen order."""

    areas: dict[str, None] = {}
    segments: dict[str, None] = {}
    for item in items:
        for area_id in item.product_area_ids:
            areas.setdefault(area_id, None)
        metadata = item.user_metadata
        if metadata is not None and metadata.segment:
            segments.setdefault(metadata.segment, None)
    return {
        "product_areas": list(areas),
        "urgency_distribution": urgency_distribution(items),
        "user_segments": list(segments),
    }


def assign_theme_keys(
    candidates: list[list[ThemeCandidate]],
) -> list[ThemeCandidate | None]:
    """Pick one candidate per item.

    The highest confidence wins. Equal confidences go to the key that first
    appeared anywhere in the batch, scanning items in input order.
    """

    first_seen: dict[str, int] = {}
    for item_candidates in candidates:
        for candidate in item_candidates:
            first_seen.setdefault(candidate.key, len(first_seen))

    assignments: list[ThemeCandidate | None] = []
    for item_candidates in candidates:
        if not item_candidates:
            assignments.append(None)
            continue
        best = max(
            item_candidates,
            key=lambda candidate: (candidate.confidence, -first_seen[candidate.key]),
        )
        assignments.append(best)
    return assignments


class ThemeBucketClusteringStrategy:
    """Deterministic theme-bucket clustering.

    Candidates come from linked product areas when an item has any. Otherwise
    they come from its categories, then its extracted features, all at the
    item's sentiment confidence. Groups below ``min_cluster_size`` are merged
    into one unclustered bucket that is kept only with ``include_singletons``.
    """

    def __init__(
        self,
        options: ClusteringOptions | None = None,
        product_areas: list[ProductArea] | None = None,
    ) -> None:
        self.options = options or ClusteringOptions()
        self._area_names = {area.id: area.name for area in product_areas or []}

    def theme_candidates(self, item: EnrichedItem) -> list[ThemeCandidate]:
        if item.product_areas:
            return [
                ThemeCandidate(
                    key=normalize_theme_key(link.id),
                    label=self._area_names.get(link.id, link.id),
                    confidence=link.confidence,
                )
                for link in item.product_areas
            ]

        candidates: list[ThemeCandidate] = []
        seen: set[str] = set()
        for term in (*item.categories, *item.extracted_features):
            key = normalize_theme_key(term)
            if not key or key in seen:
                continue
            seen.add(key)
            candidates.append(
                ThemeCandidate(key=key, label=key.title(), confidence=item.sentiment.confidence)
            )
        return candidates

    def build_clusters(
        self,
        items: list[EnrichedItem],
        candidates: list[list[ThemeCandidate]],
        warn: WarningCallback,
    ) -> list[Cluster]:
        if len(items) != len(candidates):
            raise ClusteringError(
                f"Expected one candidate list per item, got {len(candidates)} for {len(items)}."
            )

        groups: dict[str, list[EnrichedItem]] = {}
        labels: dict[str, str] = {}
        leftovers: list[EnrichedItem] = []
        for item, choice in zip(items, assign_theme_keys(candidates), strict=True):
            if choice is None:
                leftovers.append(item)
                continue
            groups.setdefault(choice.key, []).append(item)
            labels.setdefault(choice.key, choice.label)

        clusters: list[Cluster] = []
        for key, members in groups.items():
            if len(members) < self.options.min_cluster_size:
                leftovers.extend(members)
                continue
            theme = labels[key]
            clusters.append(
                Cluster(
                    id=cluster_id_for_theme(key),
                    theme=theme,
                    description=f"{len(members)} feedback items about {theme}.",
                    member_item_ids=[item.id for item in members],
                    dominant_sentiment=dominant_sentiment(members),
                    keywords=cluster_keywords(members, limit=self.options.max_keywords),
                    theme_key=key,
                    **member_profile(members),
                )
            )

        if leftovers:
            order = {item.id: index for index, item in enumerate(items)}
            leftovers.sort(key=lambda item: order[item.id])
            leftover_ids = [item.id for item in leftovers]
            if self.options.include_singletons:
                clusters.append(
                    Cluster(
                        id=UNCLUSTERED_CLUSTER_ID,
                        theme=UNCLUSTERED_THEME,
                        description=(
                            f"{len(leftovers)} feedback items that did not share a theme "
                            f"with at least {self.options.min_cluster_size} items."
                        ),
                        member_item_ids=leftover_ids,
                        dominant_sentiment=dominant_sentiment(leftovers),
                        keywords=cluster_keywords(leftovers, limit=self.options.max_keywords),
                        unclustered=True,
                        **member_profile(leftovers),
                    )
                )
            else:
                warn(
                    f"{len(leftovers)} feedback items were not clustered and were dropped.",
                    droppedItemIds=leftover_ids,
                    minClusterSize=self.options.min_cluster_size,
                )

        logger.info(
            "Built %d clusters from %d items (%d unclustered)",
            len(clusters),
            len(items),
            len(leftovers),
        )
        return clusters


@dataclass(frozen=True, slots=True)
class _CandidateResult:
    item: EnrichedItem
    candidates: list[ThemeCandidate]


class ClusteringStageStrategy:
    """Executor strategy wrapping any ClusteringStrategy."""

    stage = StageName.CLUSTERING

    def __init__(self, strategy: ClusteringStrategy) -> None:
        self.strategy = strategy

    def item_id(self, item: EnrichedItem) -> str:
        return item.id

    async def process(self, item: EnrichedItem, context: StageContext) -> _CandidateResult:
        return _CandidateResult(item=item, candidates=self.strategy.theme_candidates(item))

    def finalize(self, results: list[_CandidateResult], context: StageContext) -> list[Cluster]:
        return self.strategy.build_clusters(
            [result.item for result in results],
            [result.candidates for result in results],
            context.warn,
        )
