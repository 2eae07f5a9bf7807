"""OpenAI client wrapper used by the AI analysis capability."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from openai import BadRequestError, OpenAI

from insight_pipeline.observability import TracingStatus, maybe_wrap_openai_client

logger = logging.getLogger(__name__)

# Substrings of a 400 error that mean the endpoint cannot do json_schema output.
_SCHEMA_UNSUPPORTED_MARKERS = (
    "json_schema",
    "response_format",
    "unsupported",
    "not supported",
    "invalid schema",
)


class LLMJsonClient(Protocol):
    """Protocol for clients that return structured JSON."""

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        """Generate a JSON object for the given prompts."""


@dataclass
class UsageCounters:
    request_count: int = 0
    schema_fallback_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add_usage(self, usage: Any) -> None:
        self.request_count += 1
        if usage is None:
            return
        self.prompt_tokens += int(getattr(usage, "prompt_tokens", 0) or 0)
        self.completion_tokens += int(getattr(usage, "completion_tokens", 0) or 0)
        self.total_tokens += int(getattr(usage, "total_tokens", 0) or 0)


def response_format_for(
    schema_name: str | None, json_schema: dict | None, strict_schema: bool
) -> dict:
    if json_schema is None:
        return {"type": "json_object"}
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema_name or "structured_output",
            "schema": json_schema,
            "strict": bool(strict_schema),
        },
    }


def parse_json_object(content: str | None) -> dict:
    """Parse a completion's text as one JSON object. Raises ValueError otherwise."""

    if content is None:
        raise ValueError("Model returned empty content for JSON response.")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Model response was not valid JSON: {content[:200]}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object, got {type(payload).__name__}.")
    return payload


class OpenAIJsonClient:
    """JSON-focused wrapper around OpenAI chat completions.

    One request per call, plus a single ``json_object`` retry when the endpoint
    rejects ``json_schema`` output. The SDK's own retries are disabled and retry
    policy belongs to ``LLMAnalysisCapability``. ``timeout`` bounds the HTTP
    request itself so a worker thread abandoned by a capability timeout returns
    its limiter slot. With an active ``tracing`` status every request is
    traced to LangSmith.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.0,
        timeout: float | None = None,
        tracing: TracingStatus | None = None,
    ) -> None:
        options: dict[str, Any] = {
            "api_key": api_key,
            "base_url": base_url or None,
            "max_retries": 0,
        }
        if timeout is not None:
            options["timeout"] = timeout
        self._client, self._traced = maybe_wrap_openai_client(OpenAI(**options), tracing)
        self._model = model
        self._temperature = temperature
        self._lock = threading.Lock()
        self._usage = UsageCounters()

    def _request(self, system_prompt: str, user_prompt: str, response_format: dict) -> str | None:
        response = self._client.chat.completions.create(
            model=self._model,
            temperature=self._temperature,
            response_format=response_format,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        with self._lock:
            self._usage.add_usage(getattr(response, "usage", None))
        return response.choices[0].message.content

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        response_format = response_format_for(schema_name, json_schema, strict_schema)
        try:
            content = self._request(system_prompt, user_prompt, response_format)
        except BadRequestError as exc:
            message = str(exc).lower()
            if json_schema is None or not any(m in message for m in _SCHEMA_UNSUPPORTED_MARKERS):
                raise
            logger.info("Endpoint rejected json_schema for %s; retrying as json_object", schema_name)
            with self._lock:
                self._usage.schema_fallback_count += 1
            content = self._request(system_prompt, user_prompt, {"type": "json_object"})
        return parse_json_object(content)

    def metrics_snapshot(self) -> dict:
        with self._lock:
            return {**asdict(self._usage), "model": self._model, "traced": self._traced}
