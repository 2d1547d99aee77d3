from __future__ import annotations

import pytest

from campaign_mesh.orchestration.negotiation import ConsensusEngine
from tests.helpers.stubs import StubGateway, make_plan, phase


@pytest.mark.asyncio
async def test_disagreeing_low_confidence_vote_misses_quorum() -> None:
    plan = make_plan([phase(0, "trend_agent"), phase(1, "content_agent", depends_on=[0])])
    gateway = StubGateway(
        confidences={"trend_agent": 0.9, "content_agent": 0.5},
        alternatives={"content_agent": [1, 0]},
    )

    decision = await ConsensusEngine(proposer=gateway, quorum_threshold=0.6).decide(plan)

    assert decision.mean_confidence == pytest.approx(0.7)
    assert decision.agreeing_fraction == pytest.approx(0.5)
    assert decision.score == pytest.approx(0.35)
    assert decision.reached is False
    assert decision.supporting_agents == ["trend_agent"]
    assert decision.dissenting_agents == ["content_agent"]


@pytest.mark.asyncio
async def test_unanimous_confident_vote_reaches_quorum() -> None:
    plan = make_plan([phase(0, "trend_agent"), phase(1, "content_agent", depends_on=[0])])
    gateway = StubGateway(confidences={"trend_agent": 0.9, "content_agent": 0.5})

    decision = await ConsensusEngine(proposer=gateway, quorum_threshold=0.6).decide(plan)

    assert decision.score == pytest.approx(0.7)
    assert decision.reached is True


@pytest.mark.asyncio
async def test_relaxed_round_accepts_alternative_respecting_dependencies() -> None:
    plan = make_plan([phase(0, "trend_agent"), phase(1, "seo_agent"), phase(2, "content_agent", depends_on=[0, 1])])
    gateway = StubGateway(default_confidence=0.8, alternatives={"seo_agent": [1, 0, 2]})
    engine = ConsensusEngine(proposer=gateway, quorum_threshold=0.6)

    strict = await engine.decide(plan)
    relaxed = await engine.decide(plan, relaxed=True)

    assert strict.reached is False
    assert strict.score == pytest.approx(0.8 * 2 / 3)
    assert relaxed.reached is True
    assert relaxed.relaxed is True
    assert relaxed.score == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_each_capable_agent_votes_once() -> None:
    plan = make_plan(
        [
            phase(0, "trend_agent", fallbacks=["insight_agent"]),
            phase(1, "insight_agent", depends_on=[0], fallbacks=["metric_agent"]),
        ]
    )
    gateway = StubGateway()

    decision = await ConsensusEngine(proposer=gateway).decide(plan)

    assert sorted(agent for _, agent in gateway.proposals) == ["insight_agent", "metric_agent", "trend_agent"]
    assert len(decision.proposals) == 3


@pytest.mark.asyncio
async def test_failed_proposals_are_skipped() -> None:
    class FlakyGateway(StubGateway):
        async def propose(self, agent_type, plan, phase):
            if agent_type == "content_agent":
                raise RuntimeError("agent offline")
            return await super().propose(agent_type, plan, phase)

    plan = make_plan([phase(0, "trend_agent"), phase(1, "content_agent", depends_on=[0])])

    decision = await ConsensusEngine(proposer=FlakyGateway()).decide(plan)

    assert [proposal.agent_type for proposal in decision.proposals] == ["trend_agent"]
    assert decision.reached is True
