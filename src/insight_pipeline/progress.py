"""Weighted run progress across stages of unequal cost."""

from __future__ import annotations

from collections.abc import Mapping

from insight_pipeline.schemas import StageName


class ProgressTracker:
    """Tracks overall run progress as a non-decreasing value in [0, 1].

    progress = sum(weights of completed stages) + weight_current * done / total

    Stages without a weight (validation) contribute nothing. The tracker is
    owned by a single writer, the run's event aggregator.
    """

    def __init__(self, weights: Mapping[StageName, float]) -> None:
        self._weights = dict(weights)
        self._completed: set[StageName] = set()
        self._completed_weight = 0.0
        self._current: StageName | None = None
        self._done = 0
        self._total = 0
        self._progress = 0.0

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def current_stage(self) -> StageName | None:
        return self._current

    def begin_stage(self, stage: StageName, items_total: int) -> None:
        self._current = stage
        self._done = 0
        self._total = max(0, items_total)
        self._recompute()

    def item_done(self, stage: StageName) -> None:
        if stage != self._current:
            return
        self._done = min(self._done + 1, self._total)
        self._recompute()

    def complete_stage(self, stage: StageName) -> None:
        if stage not in self._completed:
            self._completed.add(stage)
            self._completed_weight += self._weights.get(stage, 0.0)
        if stage == self._current:
            self._done = self._total
            self._current = None
        self._recompute()

    def finish(self) -> None:
        self._current = None
        self._progress = 1.0

    def stage_fraction(self) -> float:
        if self._total == 0:
            return 1.0 if self._current is None else 0.0
        return self._done / self._total

    def snapshot(self) -> dict:
        return {
            "progress": self._progress,
            "stageProgress": round(self.stage_fraction(), 6),
            "itemsDone": self._done,
            "itemsTotal": self._total,
        }

    def _recompute(self) -> None:
        value = self._completed_weight
        if self._current is not None and self._total > 0:
            value += self._weights.get(self._current, 0.0) * (self._done / self._total)
        self._progress = min(1.0, max(self._progress, round(value, 6)))
