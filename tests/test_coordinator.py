from __future__ import annotations

import asyncio

import pytest

from campaign_mesh.agents.registry import default_registry
from campaign_mesh.orchestration.clock import ManualClock
from campaign_mesh.orchestration.coordinator import CampaignCoordinator
from campaign_mesh.orchestration.enums import (
    Comparator,
    EvaluationOutcome,
    GoalCategory,
    GoalPriority,
    PlanStatus,
    TaskPriority,
    TaskSource,
    TaskStatus,
)
from campaign_mesh.orchestration.exceptions import EmergencyStopInProgress
from campaign_mesh.orchestration.triggers import InMemoryMetricsProvider
from campaign_mesh.schemas.goals import GoalPlanRequest, GoalSubmissionOptions
from campaign_mesh.schemas.tasks import AgentResult, TaskSubmission
from campaign_mesh.schemas.triggers import TriggerCondition, TriggerDefinition
from tests.helpers.stubs import ALWAYS, StubGateway, settings_for

CAMPAIGN = "campaign-1"


class BlockingGateway(StubGateway):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def invoke(self, task):
        self.calls.append(task.id)
        await self.release.wait()
        return AgentResult(score=0.8)


def _coordinator(gateway=None, *, clock=None, metrics=None, **sections) -> CampaignCoordinator:
    return CampaignCoordinator(
        settings=settings_for(**sections),
        registry=default_registry(),
        gateway=gateway or StubGateway(),
        metrics_provider=metrics or InMemoryMetricsProvider(),
        clock=clock or ManualClock(),
    )


def _goal(**overrides) -> GoalPlanRequest:
    payload = {
        "title": "Spring launch",
        "description": "Grow awareness for the spring collection",
        "category": GoalCategory.AWARENESS,
        "campaign_id": CAMPAIGN,
    }
    payload.update(overrides)
    return GoalPlanRequest(**payload)


async def _drain(coordinator: CampaignCoordinator, clock: ManualClock, cycles: int = 30) -> None:
    for _ in range(cycles):
        await coordinator.tick_all()
        await coordinator.scheduler.wait_idle()
        clock.advance(seconds=60)


@pytest.mark.asyncio
async def test_goal_runs_end_to_end() -> None:
    clock = ManualClock()
    coordinator = _coordinator(clock=clock)
    submission = coordinator.submit_goal(_goal(priority=GoalPriority.HIGH))

    await coordinator.process_goals()
    plan = coordinator.get_goal_plan(submission.plan_id)
    assert plan.status is PlanStatus.EXECUTING
    assert plan.task_ids
    assert [entry.plan_id for entry in coordinator.get_execution_monitors()] == [plan.id]

    tasks = [coordinator.get_task_status(task_id) for task_id in plan.task_ids]
    assert all(task.source is TaskSource.PLAN and task.plan_id == plan.id for task in tasks)
    assert all(task.priority is TaskPriority.HIGH for task in tasks)
    first_phase = [task for task in tasks if task.phase_index == 0]
    assert first_phase and all(task.dependencies == [] for task in first_phase)
    strategy_ids = {task.id for task in tasks if task.phase_index == 1}
    assert all(strategy_ids <= set(task.dependencies) for task in tasks if task.phase_index == 2)

    await _drain(coordinator, clock)

    assert plan.status is PlanStatus.COMPLETED
    assert all(coordinator.get_task_status(task_id).status is TaskStatus.COMPLETED for task_id in plan.task_ids)
    assert coordinator.get_execution_monitors() == []
    state = coordinator.get_coordination_state()
    assert state.active_plans == 0
    assert state.success_rate == pytest.approx(1.0)
    assert state.plans_by_status == {PlanStatus.COMPLETED: 1}


@pytest.mark.asyncio
async def test_manual_tasks_are_scheduled_and_traceable() -> None:
    coordinator = _coordinator()
    first = await coordinator.submit_task(CAMPAIGN, TaskSubmission(agent_type="content_agent", description="Write copy"))
    second = await coordinator.submit_task(
        CAMPAIGN,
        TaskSubmission(agent_type="seo_agent", description="Optimize landing page", dependencies=[first]),
    )

    assert await coordinator.tick(CAMPAIGN) == [first]
    await coordinator.scheduler.wait_idle()
    assert await coordinator.tick(CAMPAIGN) == [second]
    await coordinator.scheduler.wait_idle()

    assert coordinator.get_task_status(second).status is TaskStatus.COMPLETED
    assert [event.status for event in coordinator.get_task_history(first)] == [
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_emergency_stop_fails_running_work_without_retry() -> None:
    gateway = BlockingGateway()
    coordinator = _coordinator(gateway, scheduling={"agent_concurrency": {"trend_agent": 2}})
    submission = coordinator.submit_goal(_goal())
    await coordinator.process_goals()
    running = await coordinator.tick(CAMPAIGN)
    assert len(running) == 2

    stopped = await coordinator.emergency_stop(CAMPAIGN)

    assert stopped == 3
    for task_id in running:
        task = coordinator.get_task_status(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.retry_count == 0
    plan = coordinator.get_goal_plan(submission.plan_id)
    assert plan.status is PlanStatus.FAILED
    leftovers = [coordinator.get_task_status(task_id) for task_id in plan.task_ids if task_id not in running]
    assert leftovers and all(task.status is TaskStatus.CANCELLED for task in leftovers)
    assert coordinator.get_execution_monitors() == []

    with pytest.raises(EmergencyStopInProgress):
        await coordinator.submit_task(CAMPAIGN, TaskSubmission(agent_type="ad_agent", description="Pause ads"))
    with pytest.raises(EmergencyStopInProgress):
        coordinator.submit_goal(_goal())
    assert await coordinator.tick(CAMPAIGN) == []
    other = await coordinator.submit_task("campaign-2", TaskSubmission(agent_type="ad_agent", description="Bid"))
    assert coordinator.get_task_status(other).status is TaskStatus.PENDING
    assert coordinator.get_coordination_state().halted_scopes == [CAMPAIGN]

    coordinator.release_emergency_stop(CAMPAIGN)
    await coordinator.submit_task(CAMPAIGN, TaskSubmission(agent_type="ad_agent", description="Resume ads"))
    gateway.release.set()
    await coordinator.scheduler.wait_idle()


@pytest.mark.asyncio
async def test_system_stop_halts_every_campaign() -> None:
    coordinator = _coordinator()
    coordinator.submit_goal(_goal())
    coordinator.submit_goal(_goal(campaign_id=None), GoalSubmissionOptions(campaign_id="campaign-2"))

    stopped = await coordinator.emergency_stop()

    assert stopped == 2
    assert coordinator.health_check()["status"] == "halted"
    with pytest.raises(EmergencyStopInProgress):
        coordinator.submit_goal(_goal(campaign_id="campaign-3"))

    coordinator.release_emergency_stop()
    assert coordinator.health_check()["status"] == "healthy"


@pytest.mark.asyncio
async def test_triggers_feed_the_scheduler_and_respect_halts() -> None:
    metrics = InMemoryMetricsProvider({CAMPAIGN: {"ctr": 2.5}})
    clock = ManualClock()
    coordinator = _coordinator(clock=clock, metrics=metrics)
    coordinator.register_trigger(
        CAMPAIGN,
        TriggerDefinition(
            name="Low CTR",
            condition=TriggerCondition(metric="ctr", comparator=Comparator.LT, threshold=3),
            action="Refresh ad creative",
            target_agent="ad_agent",
            cooldown_seconds=60,
        ),
    )

    (fired,) = await coordinator.evaluate_triggers(CAMPAIGN)
    assert fired.outcome is EvaluationOutcome.FIRED
    task = coordinator.get_task_status(fired.task_id)
    assert task.priority is TaskPriority.URGENT
    assert task.source is TaskSource.TRIGGER

    await coordinator.emergency_stop(CAMPAIGN)
    clock.advance(seconds=120)
    (rejected,) = await coordinator.evaluate_triggers(CAMPAIGN)
    assert rejected.outcome is EvaluationOutcome.REJECTED
    assert coordinator.get_coordination_state().failures.trigger_rejections == 1
    assert len(coordinator.get_trigger_log(CAMPAIGN)) == 2


@pytest.mark.asyncio
async def test_stalled_plan_is_replanned_around_failing_agent() -> None:
    clock = ManualClock()
    gateway = StubGateway(failures={"trend_agent": ALWAYS})
    coordinator = _coordinator(gateway, clock=clock, scheduling={"base_backoff_seconds": 1.0})
    submission = coordinator.submit_goal(_goal())
    await coordinator.process_goals()

    for _ in range(4):
        await coordinator.tick_all()
        await coordinator.scheduler.wait_idle()
        clock.advance(seconds=30)
    original = coordinator.get_goal_plan(submission.plan_id)
    assert [blocker.code for blocker in coordinator.get_blockers(original.id).blockers] == [
        "retry_exhausted:trend_agent"
    ]

    clock.advance(minutes=15)
    (new_plan_id,) = coordinator.check_stalled()

    assert original.status is PlanStatus.SUPERSEDED
    assert original.superseded_by == new_plan_id
    pending = [coordinator.get_task_status(task_id) for task_id in original.task_ids]
    assert all(task.status in {TaskStatus.FAILED, TaskStatus.CANCELLED} for task in pending)

    await coordinator.process_goals()
    replacement = coordinator.get_goal_plan(new_plan_id)
    assert replacement.status is PlanStatus.EXECUTING
    assert replacement.agent_sequence[0].agent_type == "insight_agent"
    assert coordinator.check_stalled() == []


@pytest.mark.asyncio
async def test_replan_budget_exhaustion_fails_plan() -> None:
    clock = ManualClock()
    coordinator = _coordinator(clock=clock, monitor={"max_replans": 0, "blocker_timeout_seconds": 60})
    submission = coordinator.submit_goal(_goal())
    await coordinator.process_goals()
    coordinator.report_blocker(submission.plan_id, "api_quota", agent_type="trend_agent")

    clock.advance(seconds=60)

    assert coordinator.check_stalled() == []
    plan = coordinator.get_goal_plan(submission.plan_id)
    assert plan.status is PlanStatus.FAILED
    assert "replanning limit" in (plan.failure_reason or "")
    assert all(coordinator.get_task_status(task_id).status is TaskStatus.CANCELLED for task_id in plan.task_ids)


@pytest.mark.asyncio
async def test_coordination_state_counts_executing_plans_and_load() -> None:
    gateway = BlockingGateway()
    coordinator = _coordinator(gateway)
    coordinator.submit_goal(_goal())
    coordinator.submit_goal(_goal(campaign_id="campaign-2"))
    coordinator.submit_goal(_goal(campaign_id="campaign-3"))
    await coordinator.process_goals()
    await coordinator.tick(CAMPAIGN)

    state = coordinator.get_coordination_state()

    assert state.active_plans == coordinator.mesh.executing_count == 3
    assert state.agents_in_use == {"trend_agent": 3}
    assert state.load_ratio == pytest.approx(3 / coordinator.scheduler.total_capacity)
    assert state.average_consensus_seconds == pytest.approx(0.0)

    gateway.release.set()
    await coordinator.scheduler.wait_idle()


@pytest.mark.asyncio
async def test_manual_replanning_withdraws_pending_tasks() -> None:
    coordinator = _coordinator()
    submission = coordinator.submit_goal(_goal())
    await coordinator.process_goals()
    plan = coordinator.get_goal_plan(submission.plan_id)

    new_id = coordinator.trigger_replanning(plan.id, "brief changed")

    assert coordinator.trigger_replanning(plan.id, "brief changed") == new_id
    assert all(coordinator.get_task_status(task_id).status is TaskStatus.CANCELLED for task_id in plan.task_ids)
    assert [activity.type.value for activity in coordinator.get_mesh_activity(limit=1)] == ["replanning_triggered"]
