from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..orchestration.enums import CampaignStage, TaskPriority, TaskSource, TaskStatus


def new_task_id() -> str:
    return f"task-{uuid4().hex[:12]}"


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        cleaned = value.strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            ordered.append(cleaned)
    return ordered


class TaskSubmission(BaseModel):
    id: str | None = Field(default=None, min_length=1)
    agent_type: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    stage: CampaignStage = CampaignStage.OPTIMIZE
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration_minutes: float = Field(15.0, ge=0.0)
    max_retries: int | None = Field(default=None, ge=0)

    @field_validator("dependencies")
    @classmethod
    def _normalize_dependencies(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    def to_task(
        self,
        campaign_id: str,
        *,
        created_at: datetime,
        default_max_retries: int,
        source: TaskSource = TaskSource.MANUAL,
    ) -> "AgentTask":
        return AgentTask(
            id=self.id or new_task_id(),
            campaign_id=campaign_id,
            agent_type=self.agent_type,
            stage=self.stage,
            description=self.description,
            priority=self.priority,
            dependencies=list(self.dependencies),
            estimated_duration_minutes=self.estimated_duration_minutes,
            max_retries=default_max_retries if self.max_retries is None else self.max_retries,
            created_at=created_at,
            source=source,
        )


class AgentResult(BaseModel):
    """Outcome reported by an agent invocation; the payload is opaque to the scheduler."""

    score: float = Field(ge=0.0, le=1.0)
    output: Any = None


class AgentTask(BaseModel):
    id: str = Field(default_factory=new_task_id, min_length=1)
    campaign_id: str = Field(..., min_length=1)
    agent_type: str = Field(..., min_length=1)
    stage: CampaignStage = CampaignStage.OPTIMIZE
    description: str = Field(..., min_length=1)
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration_minutes: float = Field(15.0, ge=0.0)
    actual_duration_minutes: float | None = None
    result_score: float | None = Field(default=None, ge=0.0, le=1.0)
    output: Any = None
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_at: datetime | None = None
    error: str | None = None
    source: TaskSource = TaskSource.MANUAL
    plan_id: str | None = None
    phase_index: int | None = None
    trigger_id: str | None = None

    @field_validator("dependencies")
    @classmethod
    def _normalize_dependencies(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    def record_completion(self, result: AgentResult, *, completed_at: datetime) -> None:
        if self.status is TaskStatus.COMPLETED:
            raise ValueError(f"Task {self.id} is already completed")
        started = self.started_at or completed_at
        self.status = TaskStatus.COMPLETED
        self.completed_at = completed_at
        self.actual_duration_minutes = max(0.0, (completed_at - started).total_seconds() / 60.0)
        self.result_score = result.score
        self.output = result.output
        self.retry_at = None
        self.error = None
