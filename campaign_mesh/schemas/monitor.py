from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..orchestration.enums import ExecutionStatus, PlanStatus, ReplanSource


class Blocker(BaseModel):
    code: str = Field(min_length=1)
    agent_type: str | None = None
    task_id: str | None = None
    since: datetime


class ExecutionMonitorEntry(BaseModel):
    plan_id: str
    campaign_id: str
    current_phase: int = 0
    executing_agent: str | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    progress: float = Field(0.0, ge=0.0, le=1.0)
    blockers: list[str] = Field(default_factory=list)
    fallbacks_available: list[str] = Field(default_factory=list)
    started_at: datetime
    updated_at: datetime
    expected_completion: datetime | None = None


class BlockerReport(BaseModel):
    plan_id: str
    blockers: list[Blocker] = Field(default_factory=list)
    fallbacks_available: list[str] = Field(default_factory=list)


class ReplanRequest(BaseModel):
    plan_id: str
    reason: str
    source: ReplanSource
    avoid_agent_types: list[str] = Field(default_factory=list)


class CoordinationFailures(BaseModel):
    tasks: int = 0
    plans: int = 0
    trigger_rejections: int = 0


class CoordinationState(BaseModel):
    """Derived snapshot; recomputed on demand and never persisted."""

    active_plans: int = 0
    queued_requests: int = 0
    agents_in_use: dict[str, int] = Field(default_factory=dict)
    load_ratio: float = Field(0.0, ge=0.0, le=1.0)
    success_rate: float = Field(1.0, ge=0.0, le=1.0)
    plans_by_status: dict[PlanStatus, int] = Field(default_factory=dict)
    failures: CoordinationFailures = Field(default_factory=CoordinationFailures)
    average_consensus_seconds: float | None = None
    halted_scopes: list[str] = Field(default_factory=list)
    generated_at: datetime
