"""Validation stage: rejects unusable feedback items before any capability call."""

from __future__ import annotations

from insight_pipeline.pipeline.executor import StageContext
from insight_pipeline.schemas import FeedbackItem, StageName


class InvalidFeedbackError(ValueError):
    """Raised for a feedback item that cannot enter the pipeline."""


class ValidationStrategy:
    """Fails blank and duplicate feedback items. The first occurrence of an id wins."""

    stage = StageName.VALIDATION

    def __init__(self) -> None:
        self._seen_ids: set[str] = set()

    def item_id(self, item: FeedbackItem) -> str:
        return item.id

    async def process(self, item: FeedbackItem, context: StageContext) -> FeedbackItem:
        if item.id in self._seen_ids:
            raise InvalidFeedbackError(f"duplicate feedback id '{item.id}'")
        self._seen_ids.add(item.id)
        if not item.text.strip():
            raise InvalidFeedbackError("feedback text is blank")
        return item

    def finalize(self, results: list[FeedbackItem], context: StageContext) -> list[FeedbackItem]:
        return results
