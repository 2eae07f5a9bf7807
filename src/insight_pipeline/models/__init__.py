"""Model client and capability abstractions."""

from insight_pipeline.models.capability import (
    AIAnalysisCapability,
    CapabilityLimiter,
    CapabilityRequest,
    LLMAnalysisCapability,
    classify_capability_exception,
)
from insight_pipeline.models.openai_client import LLMJsonClient, OpenAIJsonClient

__all__ = [
    "AIAnalysisCapability",
    "CapabilityLimiter",
    "CapabilityRequest",
    "LLMAnalysisCapability",
    "LLMJsonClient",
    "OpenAIJsonClient",
    "classify_capability_exception",
]
