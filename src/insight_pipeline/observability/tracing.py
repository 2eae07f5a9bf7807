"""LangSmith tracing for capability calls."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any

from langsmith.wrappers import wrap_openai

from insight_pipeline.config import Settings

logger = logging.getLogger(__name__)

# Settings field -> environment variable the langsmith client reads.
_EXPORTED_ENV = {
    "langsmith_tracing": "LANGSMITH_TRACING",
    "langsmith_endpoint": "LANGSMITH_ENDPOINT",
    "langsmith_api_key": "LANGSMITH_API_KEY",
    "langsmith_project": "LANGSMITH_PROJECT",
}


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TracingStatus:
    enabled: bool
    tracing_value: str = ""
    endpoint: str = ""
    project: str = ""
    api_key_present: bool = False

    @property
    def active(self) -> bool:
        """Tracing is requested and a key is available to send traces with."""
        return self.enabled and self.api_key_present

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def tracing_status(settings: Settings) -> TracingStatus:
    """Effective LangSmith status from settings (env vars and .env, legacy LANGCHAIN_* included)."""

    return TracingStatus(
        enabled=_is_truthy(settings.langsmith_tracing),
        tracing_value=settings.langsmith_tracing,
        endpoint=settings.langsmith_endpoint,
        project=settings.langsmith_project,
        api_key_present=bool(settings.langsmith_api_key),
    )


def export_tracing_env(settings: Settings) -> None:
    """Copy tracing settings into the process env when missing, for the langsmith client."""

    for field_name, env_key in _EXPORTED_ENV.items():
        value = getattr(settings, field_name)
        if value and not os.getenv(env_key):
            os.environ[env_key] = value


def maybe_wrap_openai_client(client: Any, status: TracingStatus | None) -> tuple[Any, bool]:
    """Wrap an OpenAI client with the LangSmith tracer when tracing is active."""

    if status is None or not status.active:
        return client, False
    logger.info("LangSmith tracing enabled for project %s", status.project or "(default)")
    return wrap_openai(client), True
