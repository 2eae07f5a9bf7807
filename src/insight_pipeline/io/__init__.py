"""I/O utilities for reading feedback and writing run artifacts."""

from insight_pipeline.io.load import (
    DatasetSummary,
    FeedbackDatasetError,
    load_feedback_jsonl,
    summarize_feedback,
)
from insight_pipeline.io.save import (
    append_jsonl,
    ensure_directory,
    save_json,
    save_jsonl,
)

__all__ = [
    "DatasetSummary",
    "FeedbackDatasetError",
    "append_jsonl",
    "ensure_directory",
    "load_feedback_jsonl",
    "save_json",
    "save_jsonl",
    "summarize_feedback",
]
