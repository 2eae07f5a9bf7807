"""Loaders for feedback datasets."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from insight_pipeline.schemas import FeedbackItem


class FeedbackDatasetError(ValueError):
    """Raised when a feedback dataset fails schema checks."""


@dataclass(frozen=True)
class DatasetSummary:
    """Aggregate summary for a set of feedback items."""

    feedback_count: int
    unique_user_count: int
    earliest_timestamp: str | None
    latest_timestamp: str | None
    source_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "feedback_count": self.feedback_count,
            "unique_user_count": self.unique_user_count,
            "earliest_timestamp": self.earliest_timestamp,
            "latest_timestamp": self.latest_timestamp,
            "source_counts": dict(self.source_counts),
        }


def load_feedback_jsonl(path: str | Path) -> list[FeedbackItem]:
    """Load and validate feedback records from a JSONL file.

    Each non-empty line must be a JSON object conforming to `FeedbackItem`
    (camelCase or snake_case keys). Duplicate ids and blank texts are left for
    the pipeline's validation stage to account for.
    """

    file_path = Path(path)
    if not file_path.exists():
        raise FeedbackDatasetError(f"Feedback file does not exist: {file_path}")

    items: list[FeedbackItem] = []
    with file_path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped:
                continue

            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise FeedbackDatasetError(
                    f"Invalid JSON on line {line_number} of {file_path}: {exc.msg}"
                ) from exc

            if not isinstance(payload, dict):
                raise FeedbackDatasetError(
                    f"Expected object on line {line_number} of {file_path}, "
                    f"got {type(payload).__name__}."
                )

            try:
                items.append(FeedbackItem.model_validate(payload))
            except Exception as exc:
                raise FeedbackDatasetError(
                    f"Feedback schema validation failed on line {line_number} of "
                    f"{file_path}: {exc}"
                ) from exc

    if not items:
        raise FeedbackDatasetError(f"No feedback items found in file: {file_path}")

    return items


def summarize_feedback(items: list[FeedbackItem]) -> DatasetSummary:
    """Compute basic summary stats for a feedback list."""

    if not items:
        return DatasetSummary(
            feedback_count=0,
            unique_user_count=0,
            earliest_timestamp=None,
            latest_timestamp=None,
        )

    timestamps = sorted(item.timestamp for item in items)
    return DatasetSummary(
        feedback_count=len(items),
        unique_user_count=len({item.user_id for item in items if item.user_id}),
        earliest_timestamp=timestamps[0].isoformat(),
        latest_timestamp=timestamps[-1].isoformat(),
        source_counts=dict(sorted(Counter(item.source for item in items).items())),
    )
