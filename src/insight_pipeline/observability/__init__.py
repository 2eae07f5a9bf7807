"""Observability helpers."""

from insight_pipeline.observability.tracing import (
    TracingStatus,
    export_tracing_env,
    maybe_wrap_openai_client,
    tracing_status,
)

__all__ = [
    "TracingStatus",
    "export_tracing_env",
    "maybe_wrap_openai_client",
    "tracing_status",
]
