from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class PhaseProposal(BaseModel):
    """An agent's view of a plan: its confidence and, when it disagrees, the phase order it prefers."""

    agent_type: str = Field(min_length=1)
    phase_index: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    alternative_order: list[int] | None = None
    rationale: str | None = None


class ConsensusDecision(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    threshold: float = Field(ge=0.0, le=1.0)
    reached: bool
    relaxed: bool = False
    agreeing_fraction: float = Field(0.0, ge=0.0, le=1.0)
    mean_confidence: float = Field(0.0, ge=0.0, le=1.0)
    supporting_agents: list[str] = Field(default_factory=list)
    dissenting_agents: list[str] = Field(default_factory=list)
    proposals: list[PhaseProposal] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
