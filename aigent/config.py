"""Configuration loader: reads config.yaml, validates with Pydantic.

Sections: models (what the engine can think with), tools (which builtin
tools are enabled), engine limits, broker limits, and scheduled goals.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class ModelSettings(BaseModel):
    """One named model the engine can use."""

    model_config = ConfigDict(protected_namespaces=())

    name: str
    provider: str = "anthropic"
    model_id: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout_seconds: float = 120


class RecoverySettings(BaseModel):
    """Knobs of the fallback heuristics used when a step fails."""

    query_trim_chars: int = Field(5, ge=1)
    min_query_length: int = Field(10, ge=0)
    retrieval_top_k: int = Field(3, ge=1)
    history_fragment_chars: int = Field(200, ge=1)


class EngineSettings(BaseModel):
    max_iterations: int = Field(10, ge=1)
    timeout_seconds: float = Field(300, gt=0)
    plan_attempts: int = Field(3, ge=1)
    relevance_threshold: float = Field(0.3, ge=0, le=1)
    default_top_k: int = Field(5, ge=1)
    recovery: RecoverySettings = RecoverySettings()


class BrokerSettings(BaseModel):
    client_queue_size: int = Field(100, ge=1)
    inbox_size: int = Field(1000, ge=1)
    subscription_lifetime_seconds: float = Field(1800, gt=0)
    retry_ms: int = Field(5000, ge=0)
    send_connected_event: bool = True


class ScheduleConfig(BaseModel):
    """Cron-style schedule for scheduled goals."""

    frequency: Literal["daily", "weekly", "monthly"]
    hour: int = Field(..., ge=0, le=23)
    day_of_week: str | None = None  # required for weekly (e.g. "mon", "0")
    day_of_month: int | None = None # required for monthly (1-31)

    @model_validator(mode="after")
    def validate_schedule_fields(self) -> ScheduleConfig:
        if self.frequency == "weekly" and self.day_of_week is None:
            raise ValueError("day_of_week is required for weekly schedules")
        if self.frequency == "monthly" and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly schedules")
        return self


class ScheduledGoalConfig(BaseModel):
    """A goal the engine runs on a cron schedule."""

    name: str
    goal: str
    model: str | None = None
    schedule: ScheduleConfig


class AppConfig(BaseModel):
    """Top-level service configuration."""

    models: list[ModelSettings] = Field(default_factory=list, validate_default=True)
    default_model: str | None = None
    tools: list[str] = ["calculate"]
    engine: EngineSettings = EngineSettings()
    broker: BrokerSettings = BrokerSettings()
    scheduled_goals: list[ScheduledGoalConfig] = []

    allowed_origins: list[str] = ["*"]
    debug: bool = False

    @field_validator("models")
    @classmethod
    def default_models(cls, v: list[ModelSettings]) -> list[ModelSettings]:
        if not v:
            logger.warning("No models configured, using the default Anthropic model")
            return [ModelSettings(name="default")]
        return v

    @model_validator(mode="after")
    def validate_references(self) -> AppConfig:
        from aigent.tools import builtin_tools

        model_names = [m.name for m in self.models]
        if len(set(model_names)) != len(model_names):
            raise ValueError(f"Duplicate model names: {model_names}")

        if self.default_model is None:
            self.default_model = model_names[0]
        elif self.default_model not in model_names:
            raise ValueError(
                f"default_model '{self.default_model}' is not configured. "
                f"Available: {model_names}"
            )

        for goal in self.scheduled_goals:
            if goal.model is not None and goal.model not in model_names:
                raise ValueError(
                    f"Scheduled goal '{goal.name}' references unknown model '{goal.model}'. "
                    f"Available: {model_names}"
                )

        available = builtin_tools()
        unknown = [t for t in self.tools if t not in available]
        if unknown:
            raise ValueError(
                f"Unknown tool(s) {unknown}. Available: {sorted(available)}"
            )

        return self

    def get_model(self, name: str | None = None) -> ModelSettings:
        """Return model settings by name (default model when None). Raises ValueError if not found."""
        wanted = name or self.default_model
        for model in self.models:
            if model.name == wanted:
                return model
        raise ValueError(
            f"Model '{wanted}' not found. "
            f"Available: {[m.name for m in self.models]}"
        )


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: AppConfig | None = None
_config_path: str = "config.yaml"


def load_config(path: str = "config.yaml") -> AppConfig:
    """Read config.yaml from disk, validate, and cache."""
    global _config, _config_path
    _config_path = path

    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")

    raw = yaml.safe_load(config_file.read_text()) or {}
    _config = AppConfig(**raw)

    logger.info(
        f"Loaded config: "
        f"models={len(_config.models)}, tools={_config.tools}, "
        f"scheduled_goals={len(_config.scheduled_goals)}"
    )
    return _config


def get_config() -> AppConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded, call load_config() first")
    return _config


def reload_config() -> AppConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path}")
    return load_config(_config_path)
