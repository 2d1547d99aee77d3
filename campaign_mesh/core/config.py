from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulingSettings(BaseModel):
    max_concurrency_per_agent: int = Field(3, ge=1, description="Default in-flight invocation cap per agent type.")
    agent_concurrency: dict[str, int] = Field(
        default_factory=dict,
        description="Per-agent-type overrides of the in-flight invocation cap (e.g. {'ad_agent': 1}).",
    )
    default_max_retries: int = Field(3, ge=0)
    base_backoff_seconds: float = Field(5.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(60.0, ge=0.0)
    invocation_timeout_seconds: float = Field(300.0, gt=0.0)

    def concurrency_for(self, agent_type: str) -> int:
        return max(1, self.agent_concurrency.get(agent_type, self.max_concurrency_per_agent))


class TriggerSettings(BaseModel):
    default_cooldown_seconds: float = Field(300.0, ge=0.0)
    poll_interval_seconds: float = Field(300.0, gt=0.0)
    max_log_entries: int = Field(200, ge=1)


class PlanningSettings(BaseModel):
    quorum_threshold: float = Field(0.6, ge=0.0, le=1.0)
    relaxed_retry_enabled: bool = Field(True)
    max_concurrent_plans: int = Field(10, ge=1)
    estimated_seconds_per_goal: int = Field(30, ge=0)
    max_goals_per_cycle: int = Field(5, ge=1)
    complexity_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"low": 1.0, "medium": 1.15, "high": 1.3, "critical": 1.5},
        description="Risk adjustment applied to summed phase estimates, keyed by complexity.",
    )
    replan_buffer: float = Field(1.2, ge=1.0, description="Time buffer applied per replanning generation.")
    max_fallbacks_per_phase: int = Field(3, ge=0)
    activity_log_size: int = Field(100, ge=1)


class MonitorSettings(BaseModel):
    blocker_timeout_seconds: float = Field(900.0, gt=0.0)
    max_replans: int = Field(3, ge=0)
    success_window: int = Field(50, ge=1)


class RunnerSettings(BaseModel):
    enabled: bool = Field(True)
    interval_seconds: float = Field(5.0, gt=0.0)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)  # type: ignore[arg-type]
    planning: PlanningSettings = Field(default_factory=PlanningSettings)  # type: ignore[arg-type]
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)  # type: ignore[arg-type]
    runner: RunnerSettings = Field(default_factory=RunnerSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="CAMPAIGN_MESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
