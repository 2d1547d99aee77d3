from __future__ import annotations

import asyncio
from collections.abc import Sequence

from pydantic import ValidationError

from ..agents.base import AgentProposer
from ..core.logging import get_logger
from ..core.metrics import observe_consensus_score
from ..schemas.goals import AgentPhase, GoalPlan
from ..schemas.negotiation import ConsensusDecision, PhaseProposal
from .decomposer import is_valid_order

logger = get_logger(name=__name__)


class ConsensusEngine:
    """Scores agreement among the agent types able to work on a plan.

    Every distinct capable agent type (a phase's primary plus its fallbacks) proposes once,
    for the first phase it can serve. A proposal agrees when it keeps the chosen phase order;
    in relaxed rounds any proposed order that still satisfies the phase dependencies agrees.

    score = mean confidence of all proposals × fraction of agreeing proposals
    """

    def __init__(self, *, proposer: AgentProposer, quorum_threshold: float = 0.6) -> None:
        self._proposer = proposer
        self.quorum_threshold = quorum_threshold

    async def decide(self, plan: GoalPlan, *, relaxed: bool = False) -> ConsensusDecision:
        chosen = [phase.index for phase in plan.agent_sequence]
        assignments = self._proposers(plan.agent_sequence)
        gathered = await asyncio.gather(
            *(self._ask(agent_type, plan, phase) for agent_type, phase in assignments)
        )
        proposals = [proposal for proposal in gathered if proposal is not None]
        mode = "relaxed" if relaxed else "strict"
        if not proposals:
            logger.warning("consensus_no_proposals", plan_id=plan.id, mode=mode)
            observe_consensus_score(mode=mode, score=0.0)
            return ConsensusDecision(
                score=0.0,
                threshold=self.quorum_threshold,
                reached=False,
                relaxed=relaxed,
                metadata={"reason": "no proposals"},
            )

        supporting = [item for item in proposals if self._agrees(item, chosen, plan.agent_sequence, relaxed)]
        dissenting = [item for item in proposals if item not in supporting]
        mean_confidence = sum(item.confidence for item in proposals) / len(proposals)
        agreeing_fraction = len(supporting) / len(proposals)
        score = max(0.0, min(1.0, mean_confidence * agreeing_fraction))
        reached = score >= self.quorum_threshold
        observe_consensus_score(mode=mode, score=score)
        logger.info(
            "consensus_scored",
            plan_id=plan.id,
            mode=mode,
            score=round(score, 4),
            threshold=self.quorum_threshold,
            proposals=len(proposals),
            supporting=len(supporting),
        )
        return ConsensusDecision(
            score=score,
            threshold=self.quorum_threshold,
            reached=reached,
            relaxed=relaxed,
            agreeing_fraction=agreeing_fraction,
            mean_confidence=mean_confidence,
            supporting_agents=[item.agent_type for item in supporting],
            dissenting_agents=[item.agent_type for item in dissenting],
            proposals=proposals,
            metadata={"chosen_order": chosen},
        )

    @staticmethod
    def _proposers(phases: Sequence[AgentPhase]) -> list[tuple[str, AgentPhase]]:
        assignments: dict[str, AgentPhase] = {}
        for phase in phases:
            for agent_type in (phase.agent_type, *phase.fallback_agent_types):
                assignments.setdefault(agent_type, phase)
        return list(assignments.items())

    async def _ask(self, agent_type: str, plan: GoalPlan, phase: AgentPhase) -> PhaseProposal | None:
        try:
            proposal = await self._proposer.propose(agent_type, plan, phase)
        except ValidationError as exc:
            logger.warning("consensus_proposal_invalid", plan_id=plan.id, agent_type=agent_type, error=str(exc))
            return None
        except Exception as exc:
            logger.warning("consensus_proposal_failed", plan_id=plan.id, agent_type=agent_type, error=str(exc))
            return None
        if proposal is None:
            return None
        if proposal.agent_type != agent_type:
            proposal = proposal.model_copy(update={"agent_type": agent_type})
        return proposal

    @staticmethod
    def _agrees(proposal: PhaseProposal, chosen: list[int], phases: Sequence[AgentPhase], relaxed: bool) -> bool:
        alternative = proposal.alternative_order
        if alternative is None or list(alternative) == chosen:
            return True
        if relaxed:
            return is_valid_order(alternative, phases)
        return False
