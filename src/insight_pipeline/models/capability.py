"""AI analysis capability: timeout, retry, and global concurrency policy around an LLM client."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Protocol

from openai import (
    APIConnectionError,
    APITimeoutError,
    AuthenticationError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from insight_pipeline.errors import (
    CapabilityError,
    CapabilityTimeoutError,
    CapabilityUnavailableError,
)
from insight_pipeline.models.openai_client import LLMJsonClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityRequest:
    """One structured analysis request for one item."""

    item_id: str
    system_prompt: str
    user_prompt: str
    schema_name: str
    json_schema: dict | None = field(default=None, compare=False)
    strict_schema: bool = True


class AIAnalysisCapability(Protocol):
    """Opaque analysis capability invoked by stages."""

    async def invoke(self, request: CapabilityRequest) -> dict:
        """Return a structured response or raise."""


class CapabilityLimiter:
    """Bounds concurrent in-flight capability calls across every run that shares it."""

    def __init__(self, max_in_flight: int) -> None:
        if max_in_flight <= 0:
            raise ValueError(f"max_in_flight must be positive, got {max_in_flight}.")
        self._max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    def release(self) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> CapabilityLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


def classify_capability_exception(exc: BaseException) -> CapabilityError | None:
    """Map a client exception onto the capability error taxonomy.

    Returns None for failures that are specific to the item (bad payloads,
    validation errors); those are handled by the calling stage.
    """

    if isinstance(exc, CapabilityError):
        return exc
    # APITimeoutError subclasses APIConnectionError, so it must be checked first.
    if isinstance(exc, (TimeoutError, APITimeoutError)):
        return CapabilityTimeoutError(f"Capability call timed out: {exc}")
    if isinstance(exc, RateLimitError):
        return CapabilityError(f"Capability rate limited: {exc}", retriable=True)
    if isinstance(
        exc,
        (AuthenticationError, PermissionDeniedError, APIConnectionError, InternalServerError),
    ):
        return CapabilityUnavailableError(f"Capability unavailable: {exc}")
    return None


def _is_retriable(exc: BaseException) -> bool:
    return isinstance(exc, CapabilityError) and exc.retriable


class LLMAnalysisCapability:
    """Capability backed by an `LLMJsonClient`, with timeout and retry semantics."""

    def __init__(
        self,
        client: LLMJsonClient,
        limiter: CapabilityLimiter,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        backoff_factor: float = 2.0,
        backoff_jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}.")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}.")
        if not 0.0 <= backoff_jitter < 1.0:
            raise ValueError(f"backoff_jitter must be within [0, 1), got {backoff_jitter}.")
        self._client = client
        self._limiter = limiter
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_factor = backoff_factor
        self._backoff_jitter = backoff_jitter
        self._rng = rng or random.Random()
        self._request_count = 0
        self._retry_count = 0
        self._timeout_count = 0
        self._failure_count = 0

    @property
    def limiter(self) -> CapabilityLimiter:
        return self._limiter

    def backoff_seconds(self, retry_state: RetryCallState) -> float:
        """Exponential backoff with proportional jitter for the next attempt."""

        exponent = max(0, retry_state.attempt_number - 1)
        delay = self._backoff_base_seconds * (self._backoff_factor**exponent)
        jitter = self._rng.uniform(-self._backoff_jitter, self._backoff_jitter)
        return max(0.0, delay * (1.0 + jitter))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self._retry_count += 1
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        logger.warning(
            "Retrying capability call (attempt %d failed): %s",
            retry_state.attempt_number,
            error,
        )

    def _release_slot(self, call: asyncio.Future) -> None:
        if not call.cancelled():
            # Marks a late failure as retrieved once its caller has timed out.
            call.exception()
        self._limiter.release()

    async def _invoke_once(self, request: CapabilityRequest) -> dict:
        """Run one client call in a worker thread under the shared limiter.

        A call that outlives ``timeout_seconds`` raises CapabilityTimeoutError
        to the caller, but its worker thread cannot be interrupted, so the
        limiter slot stays held until that thread actually returns.
        """

        await self._limiter.acquire()
        self._request_count += 1
        call = asyncio.ensure_future(
            asyncio.to_thread(
                self._client.complete_json,
                system_prompt=request.system_prompt,
                user_prompt=request.user_prompt,
                schema_name=request.schema_name,
                json_schema=request.json_schema,
                strict_schema=request.strict_schema,
            )
        )
        call.add_done_callback(self._release_slot)
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=self._timeout_seconds)
        except Exception as exc:
            classified = classify_capability_exception(exc)
            if classified is None:
                raise
            if isinstance(classified, CapabilityTimeoutError):
                self._timeout_count += 1
            if classified is exc:
                raise
            raise classified from exc

    async def invoke(self, request: CapabilityRequest) -> dict:
        """Invoke the capability, retrying retriable failures up to `max_retries` times."""

        retryer = AsyncRetrying(
            retry=retry_if_exception(_is_retriable),
            wait=self.backoff_seconds,
            stop=stop_after_attempt(self._max_retries + 1),
            before_sleep=self._log_retry,
            reraise=True,
        )
        payload: dict | None = None
        try:
            async for attempt in retryer:
                with attempt:
                    payload = await self._invoke_once(request)
        except Exception:
            self._failure_count += 1
            raise
        if payload is None:
            raise CapabilityError(f"Capability returned no payload for item '{request.item_id}'.")
        return payload

    def metrics_snapshot(self) -> dict:
        """Return cumulative call metrics for this capability instance."""

        return {
            "request_count": self._request_count,
            "retry_count": self._retry_count,
            "timeout_count": self._timeout_count,
            "failure_count": self._failure_count,
            "peak_in_flight": self._limiter.peak_in_flight,
        }
