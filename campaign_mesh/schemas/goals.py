from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..orchestration.enums import (
    CampaignStage,
    Complexity,
    GoalCategory,
    GoalPriority,
    MeshActivityType,
    PlanStatus,
    RiskLevel,
)
from .negotiation import ConsensusDecision


def new_plan_id() -> str:
    return f"plan-{uuid4().hex[:12]}"


class GoalConstraints(BaseModel):
    budget: float | None = Field(default=None, ge=0.0)
    timeframe: str | None = None
    resources: list[str] = Field(default_factory=list)
    avoid_agent_types: list[str] = Field(default_factory=list)
    max_phases: int | None = Field(default=None, ge=1)
    notes: list[str] = Field(default_factory=list)

    def with_replan(self, reason: str, avoid: list[str]) -> "GoalConstraints":
        merged_avoid = list(dict.fromkeys([*self.avoid_agent_types, *avoid]))
        return self.model_copy(update={"avoid_agent_types": merged_avoid, "notes": [*self.notes, reason]})


class GoalPlanRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: GoalCategory | None = None
    priority: GoalPriority = GoalPriority.MEDIUM
    constraints: GoalConstraints = Field(default_factory=GoalConstraints)
    target_metrics: dict[str, float] = Field(default_factory=dict)
    campaign_id: str | None = Field(default=None, min_length=1)


class GoalSubmissionOptions(BaseModel):
    priority: Literal["normal", "high"] = "normal"
    campaign_id: str | None = Field(default=None, min_length=1)


class GoalSubmission(BaseModel):
    request_id: str
    plan_id: str
    queue_position: int = Field(ge=1)
    estimated_processing_seconds: int = Field(ge=0)


class Subgoal(BaseModel):
    id: str = Field(..., min_length=1)
    title: str
    description: str
    required_capabilities: list[str] = Field(default_factory=list)
    priority: int = Field(5, ge=1, le=10)
    estimated_minutes: float = Field(ge=0.0)
    success_criteria: list[str] = Field(default_factory=list)
    produces: str
    consumes: list[str] = Field(default_factory=list)
    stage: CampaignStage = CampaignStage.LAUNCH


class AgentPhase(BaseModel):
    index: int = Field(ge=0)
    subgoal_id: str
    agent_type: str
    tasks: list[str] = Field(default_factory=list)
    depends_on: list[int] = Field(default_factory=list)
    estimated_minutes: float = Field(ge=0.0)
    fallback_agent_types: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    stage: CampaignStage = CampaignStage.LAUNCH

    @field_validator("tasks")
    @classmethod
    def _require_tasks(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("phases require at least one task")
        return value


class RiskAssessment(BaseModel):
    level: RiskLevel = RiskLevel.LOW
    factors: list[str] = Field(default_factory=list)
    mitigations: list[str] = Field(default_factory=list)


class PlanEvent(BaseModel):
    status: PlanStatus
    at: datetime
    note: str | None = None


class GoalPlan(BaseModel):
    id: str = Field(default_factory=new_plan_id)
    request_id: str
    campaign_id: str
    title: str
    description: str
    request: GoalPlanRequest
    category: GoalCategory | None = None
    subgoals: list[Subgoal] = Field(default_factory=list)
    agent_sequence: list[AgentPhase] = Field(default_factory=list)
    complexity: Complexity | None = None
    risk_factors: list[str] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    success_metrics: list[str] = Field(default_factory=list)
    estimated_minutes: float = 0.0
    consensus: ConsensusDecision | None = None
    consensus_score: float | None = Field(default=None, ge=0.0, le=1.0)
    relaxed: bool = False
    status: PlanStatus = PlanStatus.QUEUED
    failure_reason: str | None = None
    supersedes: str | None = None
    superseded_by: str | None = None
    superseded_reason: str | None = None
    replan_generation: int = 0
    task_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    planning_started_at: datetime | None = None
    consensus_reached_at: datetime | None = None
    completed_at: datetime | None = None
    history: list[PlanEvent] = Field(default_factory=list)

    def transition(self, status: PlanStatus, *, at: datetime, note: str | None = None) -> None:
        self.status = status
        self.updated_at = at
        self.history.append(PlanEvent(status=status, at=at, note=note))


class MeshActivity(BaseModel):
    type: MeshActivityType
    plan_id: str
    at: datetime
    details: dict[str, Any] = Field(default_factory=dict)
