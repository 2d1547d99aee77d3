from __future__ import annotations

import random
from datetime import timedelta

import pytest

from campaign_mesh.core.config import SchedulingSettings
from campaign_mesh.orchestration.clock import ManualClock
from campaign_mesh.orchestration.enums import TaskPriority, TaskStatus
from campaign_mesh.orchestration.exceptions import (
    CyclicDependencyError,
    DuplicateTaskError,
    MissingDependencyError,
    TaskNotFoundError,
    UnknownAgentTypeError,
)
from campaign_mesh.orchestration.scheduler import RetryPolicy, TaskDependencyScheduler
from tests.helpers.stubs import ALWAYS, BlockingInvoker, ScriptedInvoker, build_registry, make_task

CAMPAIGN = "campaign-1"


def _scheduler(invoker, *, clock=None, concurrency=None, **settings) -> TaskDependencyScheduler:
    return TaskDependencyScheduler(
        registry=build_registry(concurrency),
        invoker=invoker,
        settings=SchedulingSettings(**settings),
        clock=clock or ManualClock(),
    )


@pytest.mark.asyncio
async def test_dependents_start_only_after_dependency_completes() -> None:
    invoker = ScriptedInvoker()
    scheduler = _scheduler(invoker)
    await scheduler.submit_many(
        CAMPAIGN,
        [make_task("A"), make_task("B", dependencies=["A"]), make_task("C", "seo_agent", dependencies=["A"])],
    )

    assert await scheduler.tick(CAMPAIGN) == ["A"]
    await scheduler.wait_idle()
    assert sorted(await scheduler.tick(CAMPAIGN)) == ["B", "C"]
    await scheduler.wait_idle()

    for task_id in ("A", "B", "C"):
        task = scheduler.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert task.result_score == pytest.approx(0.9)
    assert invoker.calls[0] == "A"


@pytest.mark.asyncio
async def test_exhausted_retries_leave_dependents_pending() -> None:
    clock = ManualClock()
    invoker = ScriptedInvoker(failures={"A": ALWAYS})
    scheduler = _scheduler(invoker, clock=clock, default_max_retries=3)
    await scheduler.submit_many(
        CAMPAIGN,
        [
            make_task("A", max_retries=3),
            make_task("B", dependencies=["A"]),
            make_task("C", dependencies=["A"]),
        ],
    )

    for _ in range(5):
        await scheduler.tick(CAMPAIGN)
        await scheduler.wait_idle()
        clock.advance(seconds=60)

    task_a = scheduler.get_task("A")
    assert task_a.status is TaskStatus.FAILED
    assert task_a.retry_count == 3
    assert invoker.calls.count("A") == 3
    assert "A unavailable" in (task_a.error or "")
    assert scheduler.get_task("B").status is TaskStatus.PENDING
    assert scheduler.get_task("C").status is TaskStatus.PENDING
    assert [event.status for event in scheduler.get_task_history("A")] == [
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.RETRYING,
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.RETRYING,
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
    ]


@pytest.mark.asyncio
async def test_zero_retries_fail_after_first_attempt() -> None:
    invoker = ScriptedInvoker(failures={"A": ALWAYS})
    scheduler = _scheduler(invoker)
    await scheduler.submit(CAMPAIGN, make_task("A", max_retries=0))

    await scheduler.tick(CAMPAIGN)
    await scheduler.wait_idle()

    task = scheduler.get_task("A")
    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 0
    assert invoker.calls == ["A"]


@pytest.mark.asyncio
async def test_retry_waits_for_backoff_before_becoming_eligible() -> None:
    clock = ManualClock()
    invoker = ScriptedInvoker(failures={"A": 1})
    scheduler = _scheduler(invoker, clock=clock, base_backoff_seconds=5.0)
    await scheduler.submit(CAMPAIGN, make_task("A"))

    await scheduler.tick(CAMPAIGN)
    await scheduler.wait_idle()
    task = scheduler.get_task("A")
    assert task.status is TaskStatus.RETRYING
    assert task.retry_at == clock.now() + timedelta(seconds=5)

    clock.advance(seconds=4)
    assert await scheduler.tick(CAMPAIGN) == []
    assert task.status is TaskStatus.RETRYING

    clock.advance(seconds=1)
    assert await scheduler.tick(CAMPAIGN) == ["A"]
    await scheduler.wait_idle()
    assert task.status is TaskStatus.COMPLETED
    assert task.retry_count == 1


def test_backoff_grows_exponentially_and_caps() -> None:
    policy = RetryPolicy(max_retries=5, base_backoff_seconds=5.0, backoff_multiplier=2.0, max_backoff_seconds=60.0)

    assert policy.backoff_seconds(1) == pytest.approx(5.0)
    assert policy.backoff_seconds(2) == pytest.approx(10.0)
    assert policy.backoff_seconds(3) == pytest.approx(20.0)
    assert policy.backoff_seconds(5) == pytest.approx(60.0)
    assert policy.backoff_seconds(1) == pytest.approx(5.0)
    assert RetryPolicy.from_settings(SchedulingSettings(default_max_retries=5)) == policy


@pytest.mark.asyncio
async def test_cyclic_batch_is_rejected_atomically() -> None:
    scheduler = _scheduler(ScriptedInvoker())

    with pytest.raises(CyclicDependencyError) as exc_info:
        await scheduler.submit_many(
            CAMPAIGN,
            [
                make_task("X", dependencies=["Z"]),
                make_task("Y", dependencies=["X"]),
                make_task("Z", dependencies=["Y"]),
                make_task("free"),
            ],
        )

    assert set(exc_info.value.task_ids) == {"X", "Y", "Z"}
    assert scheduler.tasks_for(CAMPAIGN) == []
    with pytest.raises(TaskNotFoundError):
        scheduler.get_task("free")


@pytest.mark.asyncio
async def test_invalid_submissions_are_rejected() -> None:
    scheduler = _scheduler(ScriptedInvoker())
    await scheduler.submit(CAMPAIGN, make_task("A"))

    with pytest.raises(MissingDependencyError):
        await scheduler.submit(CAMPAIGN, make_task("B", dependencies=["ghost"]))
    with pytest.raises(CyclicDependencyError):
        await scheduler.submit(CAMPAIGN, make_task("C", dependencies=["C"]))
    with pytest.raises(DuplicateTaskError):
        await scheduler.submit(CAMPAIGN, make_task("A"))
    with pytest.raises(UnknownAgentTypeError):
        await scheduler.submit(CAMPAIGN, make_task("D", "video_agent"))

    assert [task.id for task in scheduler.tasks_for(CAMPAIGN)] == ["A"]


@pytest.mark.asyncio
async def test_priority_order_respects_agent_concurrency_limit() -> None:
    invoker = BlockingInvoker()
    scheduler = _scheduler(invoker, concurrency={"content_agent": 1})
    await scheduler.submit_many(
        CAMPAIGN,
        [
            make_task("low", priority=TaskPriority.LOW),
            make_task("medium", priority=TaskPriority.MEDIUM),
            make_task("urgent", priority=TaskPriority.URGENT),
        ],
    )

    assert await scheduler.tick(CAMPAIGN) == ["urgent"]
    assert scheduler.inflight == {"content_agent": 1}

    invoker.release.set()
    await scheduler.wait_idle()
    assert await scheduler.tick(CAMPAIGN) == ["medium"]
    await scheduler.wait_idle()
    assert await scheduler.tick(CAMPAIGN) == ["low"]
    await scheduler.wait_idle()
    assert invoker.started == ["urgent", "medium", "low"]
    assert scheduler.inflight == {}


@pytest.mark.asyncio
async def test_repeated_tick_does_not_restart_running_tasks() -> None:
    invoker = BlockingInvoker()
    scheduler = _scheduler(invoker)
    await scheduler.submit(CAMPAIGN, make_task("A"))

    assert await scheduler.tick(CAMPAIGN) == ["A"]
    assert await scheduler.tick(CAMPAIGN) == []

    invoker.release.set()
    await scheduler.wait_idle()
    assert invoker.started == ["A"]
    assert scheduler.get_task("A").status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_random_dags_never_start_before_dependencies() -> None:
    rng = random.Random(20240101)
    agents = ["content_agent", "seo_agent", "ad_agent"]
    invoker = ScriptedInvoker()
    scheduler = _scheduler(invoker, max_concurrency_per_agent=2)

    tasks = []
    for index in range(40):
        earlier = [f"t{i}" for i in range(index)]
        dependencies = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 3)))
        tasks.append(make_task(f"t{index}", rng.choice(agents), dependencies=dependencies))
    rng.shuffle(tasks)
    await scheduler.submit_many(CAMPAIGN, tasks)

    await scheduler.run_until_idle(CAMPAIGN)

    completed_at = {}
    started_at = {}
    for event in scheduler.lifecycle.events:
        if event.status is TaskStatus.COMPLETED:
            completed_at[event.task_id] = event.sequence
        elif event.status is TaskStatus.RUNNING:
            started_at[event.task_id] = event.sequence

    for task in tasks:
        assert task.status is TaskStatus.COMPLETED
        for dependency in task.dependencies:
            assert completed_at[dependency] < started_at[task.id]
    assert all(peak <= 2 for peak in invoker.peak.values())


@pytest.mark.asyncio
async def test_invocation_timeout_counts_as_failure() -> None:
    scheduler = _scheduler(BlockingInvoker(), invocation_timeout_seconds=0.01)
    await scheduler.submit(CAMPAIGN, make_task("slow", max_retries=1))

    await scheduler.tick(CAMPAIGN)
    await scheduler.wait_idle()

    task = scheduler.get_task("slow")
    assert task.status is TaskStatus.FAILED
    assert "timed out" in (task.error or "")


@pytest.mark.asyncio
async def test_cancel_running_fails_without_consuming_retry() -> None:
    invoker = BlockingInvoker()
    scheduler = _scheduler(invoker)
    await scheduler.submit_many(CAMPAIGN, [make_task("A"), make_task("B", "seo_agent")])
    await scheduler.submit("campaign-2", make_task("other", campaign_id="campaign-2"))
    await scheduler.tick_all()

    cancelled = await scheduler.cancel_running([CAMPAIGN], reason="Emergency stop")

    assert cancelled == 2
    for task_id in ("A", "B"):
        task = scheduler.get_task(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.retry_count == 0
        assert task.error == "Emergency stop"
    assert scheduler.get_task("other").status is TaskStatus.RUNNING

    invoker.release.set()
    await scheduler.wait_idle()
    assert scheduler.get_task("A").status is TaskStatus.FAILED
    assert scheduler.get_task("other").status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_listeners_see_only_settled_failures() -> None:
    clock = ManualClock()
    scheduler = _scheduler(ScriptedInvoker(failures={"A": ALWAYS}), clock=clock)
    seen: list[TaskStatus] = []
    scheduler.add_listener(lambda task: seen.append(task.status))
    await scheduler.submit(CAMPAIGN, make_task("A", max_retries=2))

    for _ in range(3):
        await scheduler.tick(CAMPAIGN)
        await scheduler.wait_idle()
        clock.advance(seconds=60)

    assert seen == [
        TaskStatus.RUNNING,
        TaskStatus.RETRYING,
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
    ]
