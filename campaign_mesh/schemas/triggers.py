from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from ..orchestration.enums import Comparator, EvaluationOutcome


class TriggerCondition(BaseModel):
    metric: str = Field(..., min_length=1)
    comparator: Comparator
    threshold: float

    def holds(self, value: float) -> bool:
        return self.comparator.holds(value, self.threshold)


class TriggerDefinition(BaseModel):
    """Registration payload for a standing campaign rule."""

    id: str | None = Field(default=None, min_length=1)
    name: str = Field(..., min_length=1)
    condition: TriggerCondition
    action: str = Field(..., min_length=1)
    target_agent: str = Field(..., min_length=1)
    active: bool = True
    cooldown_seconds: float | None = Field(default=None, ge=0.0)


class Trigger(BaseModel):
    id: str = Field(default_factory=lambda: f"trigger-{uuid4().hex[:12]}")
    campaign_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    condition: TriggerCondition
    action: str = Field(..., min_length=1)
    target_agent: str = Field(..., min_length=1)
    active: bool = True
    cooldown_seconds: float | None = Field(default=None, ge=0.0)
    last_fired_at: datetime | None = None


class EvaluationResult(BaseModel):
    trigger_id: str
    campaign_id: str
    outcome: EvaluationOutcome
    triggered: bool
    current_value: float | None = None
    evaluated_at: datetime
    next_evaluation_at: datetime | None = None
    task_id: str | None = None
    reason: str | None = None
