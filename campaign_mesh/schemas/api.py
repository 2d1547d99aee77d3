from __future__ import annotations

from pydantic import BaseModel, Field

from .goals import GoalPlanRequest, GoalSubmissionOptions
from .tasks import TaskSubmission


class TaskBatchRequest(BaseModel):
    tasks: list[TaskSubmission] = Field(..., min_length=1)


class TaskBatchResponse(BaseModel):
    campaign_id: str
    task_ids: list[str]


class TickResponse(BaseModel):
    campaign_id: str
    started: list[str]


class TriggerToggleRequest(BaseModel):
    active: bool


class GoalSubmitRequest(BaseModel):
    goal: GoalPlanRequest
    options: GoalSubmissionOptions | None = None


class ReplanBody(BaseModel):
    reason: str = Field(..., min_length=1)
    avoid_agent_types: list[str] = Field(default_factory=list)


class ReplanResponse(BaseModel):
    plan_id: str
    new_plan_id: str


class BlockerBody(BaseModel):
    code: str = Field(..., min_length=1)
    agent_type: str | None = None


class EmergencyStopRequest(BaseModel):
    scope: str | None = Field(default=None, description="Campaign id to halt; omit to halt the whole system.")
    reason: str | None = None


class EmergencyStopResponse(BaseModel):
    scope: str
    stopped: int
