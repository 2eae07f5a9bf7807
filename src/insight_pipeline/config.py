"""Configuration management for the feedback insight pipeline."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from insight_pipeline.errors import ConfigError
from insight_pipeline.schemas import FeedbackItem, ProductArea, StageName

_WEIGHT_TOLERANCE = 1e-6


class Settings(BaseSettings):
    """Process settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Capability client
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = ""
    openai_temperature: float = 0.0

    # Capability call policy
    capability_timeout_seconds: float = 30.0
    capability_max_retries: int = 2
    capability_backoff_base_seconds: float = 0.5
    capability_backoff_factor: float = 2.0
    capability_backoff_jitter: float = 0.2
    capability_max_in_flight: int = 8

    # Run defaults
    success_threshold: float = 0.8
    enrichment_max_concurrency: int = 3
    clustering_max_concurrency: int = 8
    insight_max_concurrency: int = 3
    scoring_max_concurrency: int = 8
    min_cluster_size: int = 2
    include_singletons: bool = False
    volume_saturation_point: int = 10
    half_life_days: float = 14.0

    # LangSmith tracing (LANGSMITH_* env vars, or the legacy LANGCHAIN_* names)
    langsmith_tracing: str = Field(
        default="", validation_alias=AliasChoices("langsmith_tracing", "langchain_tracing_v2")
    )
    langsmith_endpoint: str = Field(
        default="", validation_alias=AliasChoices("langsmith_endpoint", "langchain_endpoint")
    )
    langsmith_api_key: str = Field(
        default="", validation_alias=AliasChoices("langsmith_api_key", "langchain_api_key")
    )
    langsmith_project: str = Field(
        default="", validation_alias=AliasChoices("langsmith_project", "langchain_project")
    )

    # Storage and logging
    store_backend: str = "jsonl"
    output_dir: Path = Field(default=Path("runs"))
    retain_finished_runs: int = 50
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> Settings:
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)


class ConcurrencyLimits(BaseModel):
    """Maximum outstanding items per stage."""

    model_config = ConfigDict(extra="forbid")

    validation: int = Field(default=16, ge=1)
    enrichment: int = Field(default=3, ge=1)
    clustering: int = Field(default=8, ge=1)
    insight_generation: int = Field(default=3, ge=1)
    scoring: int = Field(default=8, ge=1)

    def for_stage(self, stage: StageName) -> int:
        return int(getattr(self, stage.value))


class StageWeights(BaseModel):
    """Share of overall progress contributed by each weighted stage."""

    model_config = ConfigDict(extra="forbid")

    enrichment: float = Field(default=0.4, ge=0.0, le=1.0)
    clustering: float = Field(default=0.2, ge=0.0, le=1.0)
    insight_generation: float = Field(default=0.25, ge=0.0, le=1.0)
    scoring: float = Field(default=0.15, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_total(self) -> StageWeights:
        total = self.enrichment + self.clustering + self.insight_generation + self.scoring
        if not math.isclose(total, 1.0, abs_tol=_WEIGHT_TOLERANCE):
            raise ValueError(f"stage weights must sum to 1.0, got {total:.6f}.")
        return self

    def as_mapping(self) -> dict[StageName, float]:
        return {
            StageName.ENRICHMENT: self.enrichment,
            StageName.CLUSTERING: self.clustering,
            StageName.INSIGHT_GENERATION: self.insight_generation,
            StageName.SCORING: self.scoring,
        }


class ClusteringOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_cluster_size: int = Field(default=2, ge=1)
    include_singletons: bool = False
    max_keywords: int = Field(default=10, ge=1)


class ScoringWeights(BaseModel):
    """Composite score weights. Must sum to 1.0."""

    model_config = ConfigDict(extra="forbid")

    volume: float = Field(default=0.25, ge=0.0, le=1.0)
    value: float = Field(default=0.2, ge=0.0, le=1.0)
    recency: float = Field(default=0.15, ge=0.0, le=1.0)
    strategic: float = Field(default=0.2, ge=0.0, le=1.0)
    urgency: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_total(self) -> ScoringWeights:
        total = self.volume + self.value + self.recency + self.strategic + self.urgency
        if not math.isclose(total, 1.0, abs_tol=_WEIGHT_TOLERANCE):
            raise ValueError(f"scoring weights must sum to 1.0, got {total:.6f}.")
        return self


def _default_plan_values() -> dict[str, float]:
    return {"enterprise": 100.0, "pro": 60.0, "free": 20.0}


def _default_usage_values() -> dict[str, float]:
    return {"high": 100.0, "medium": 60.0, "low": 20.0}


def _default_severity_values() -> dict[str, float]:
    return {"low": 25.0, "medium": 50.0, "high": 75.0, "critical": 100.0}


class ScoringOptions(BaseModel):
    """Inputs to the scoring engine. All constants are overridable per run."""

    model_config = ConfigDict(extra="forbid")

    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    volume_saturation_point: int = Field(default=10, ge=1)
    half_life_days: float = Field(default=14.0, gt=0.0)
    plan_values: dict[str, float] = Field(default_factory=_default_plan_values)
    usage_values: dict[str, float] = Field(default_factory=_default_usage_values)
    plan_weight: float = Field(default=0.6, ge=0.0)
    usage_weight: float = Field(default=0.4, ge=0.0)
    default_value: float = Field(default=50.0, ge=0.0, le=100.0)
    severity_values: dict[str, float] = Field(default_factory=_default_severity_values)
    priority_themes: dict[str, float] = Field(default_factory=dict)
    default_strategic: float = Field(default=50.0, ge=0.0, le=100.0)
    critical_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    high_threshold: float = Field(default=65.0, ge=0.0, le=100.0)
    medium_threshold: float = Field(default=45.0, ge=0.0, le=100.0)
    reference_time: datetime | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> ScoringOptions:
        tables = {
            "plan_values": self.plan_values,
            "usage_values": self.usage_values,
            "severity_values": self.severity_values,
            "priority_themes": self.priority_themes,
        }
        for name, table in tables.items():
            for key, value in table.items():
                if not 0.0 <= value <= 100.0:
                    raise ValueError(f"{name}[{key!r}] must be within [0, 100], got {value}.")
        if self.plan_weight + self.usage_weight <= 0:
            raise ValueError("plan_weight + usage_weight must be positive.")
        if not self.medium_threshold <= self.high_threshold <= self.critical_threshold:
            raise ValueError(
                "Priority thresholds must satisfy medium_threshold <= high_threshold "
                "<= critical_threshold."
            )
        return self


class RunConfig(BaseModel):
    """Configuration for one pipeline run."""

    model_config = ConfigDict(extra="forbid")

    company_id: str
    product_id: str
    items: list[FeedbackItem]
    concurrency: ConcurrencyLimits = Field(default_factory=ConcurrencyLimits)
    success_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    stage_weights: StageWeights = Field(default_factory=StageWeights)
    clustering: ClusteringOptions = Field(default_factory=ClusteringOptions)
    scoring: ScoringOptions = Field(default_factory=ScoringOptions)
    product_areas: list[ProductArea] = Field(default_factory=list)

    @classmethod
    def parse(cls, config: RunConfig | Mapping[str, Any]) -> RunConfig:
        """Validate a run configuration, raising ConfigError on any problem."""

        if isinstance(config, RunConfig):
            parsed = config
        else:
            try:
                parsed = cls.model_validate(dict(config))
            except ValidationError as exc:
                raise ConfigError(f"Invalid run configuration: {exc}") from exc

        if not parsed.company_id.strip():
            raise ConfigError("companyId is required.")
        if not parsed.product_id.strip():
            raise ConfigError("productId is required.")
        if not parsed.items:
            raise ConfigError("Input batch must contain at least one feedback item.")
        return parsed

    @classmethod
    def from_settings(cls, settings: Settings, **fields: Any) -> RunConfig:
        """Build a run configuration whose defaults come from process settings."""

        defaults: dict[str, Any] = {
            "success_threshold": settings.success_threshold,
            "concurrency": {
                "enrichment": settings.enrichment_max_concurrency,
                "clustering": settings.clustering_max_concurrency,
                "insight_generation": settings.insight_max_concurrency,
                "scoring": settings.scoring_max_concurrency,
            },
            "clustering": {
                "min_cluster_size": settings.min_cluster_size,
                "include_singletons": settings.include_singletons,
            },
            "scoring": {
                "volume_saturation_point": settings.volume_saturation_point,
                "half_life_days": settings.half_life_days,
            },
        }
        return cls.parse({**defaults, **fields})
