from __future__ import annotations

import asyncio
import zlib
from typing import TYPE_CHECKING, Protocol

from ..schemas.negotiation import PhaseProposal
from ..schemas.tasks import AgentResult, AgentTask

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..schemas.goals import AgentPhase, GoalPlan


class AgentInvoker(Protocol):
    async def invoke(self, task: AgentTask) -> AgentResult:
        ...


class AgentProposer(Protocol):
    async def propose(self, agent_type: str, plan: "GoalPlan", phase: "AgentPhase") -> PhaseProposal | None:
        ...


class AgentGateway(AgentInvoker, AgentProposer, Protocol):
    """Whatever executes agent work: runs tasks and votes on decomposed plans."""


def _stable_fraction(*parts: str) -> float:
    return (zlib.crc32("|".join(parts).encode("utf-8")) % 1000) / 1000.0


class SimulatedAgentGateway:
    """Deterministic stand-in for real agent executors.

    Scores and confidences are derived from stable hashes of the task or plan ids so repeated
    runs behave identically. Used by the default service wiring until a real gateway is injected.
    """

    def __init__(
        self,
        *,
        latency_seconds: float = 0.0,
        min_score: float = 0.6,
        min_confidence: float = 0.7,
    ) -> None:
        self._latency_seconds = latency_seconds
        self._min_score = min_score
        self._min_confidence = min_confidence

    async def invoke(self, task: AgentTask) -> AgentResult:
        if self._latency_seconds:
            await asyncio.sleep(self._latency_seconds)
        spread = 1.0 - self._min_score
        score = round(self._min_score + spread * _stable_fraction(task.id, task.agent_type), 3)
        return AgentResult(
            score=score,
            output={"agent_type": task.agent_type, "summary": f"Simulated result for: {task.description}"},
        )

    async def propose(self, agent_type: str, plan: "GoalPlan", phase: "AgentPhase") -> PhaseProposal | None:
        spread = 1.0 - self._min_confidence
        confidence = round(self._min_confidence + spread * _stable_fraction(plan.id, agent_type), 3)
        return PhaseProposal(
            agent_type=agent_type,
            phase_index=phase.index,
            confidence=confidence,
            rationale=f"{agent_type} can deliver {', '.join(phase.required_capabilities) or 'its phase'}",
        )


__all__ = ["AgentInvoker", "AgentProposer", "AgentGateway", "SimulatedAgentGateway"]
