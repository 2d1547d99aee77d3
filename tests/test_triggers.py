from __future__ import annotations

import asyncio

import pytest

from campaign_mesh.core.config import TriggerSettings
from campaign_mesh.orchestration.clock import ManualClock
from campaign_mesh.orchestration.enums import Comparator, EvaluationOutcome, TaskPriority, TaskSource
from campaign_mesh.orchestration.exceptions import EmergencyStopInProgress, UnknownAgentTypeError
from campaign_mesh.orchestration.triggers import InMemoryMetricsProvider, TriggerEvaluationEngine
from campaign_mesh.schemas.tasks import AgentTask
from campaign_mesh.schemas.triggers import TriggerCondition, TriggerDefinition
from tests.helpers.stubs import build_registry

CAMPAIGN = "campaign-1"


class RecordingSink:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.tasks: list[AgentTask] = []
        self._error = error

    async def __call__(self, campaign_id: str, task: AgentTask) -> str:
        await asyncio.sleep(0)
        if self._error is not None:
            raise self._error
        self.tasks.append(task)
        return task.id


def _low_ctr(**overrides) -> TriggerDefinition:
    payload = {
        "name": "Low CTR",
        "condition": TriggerCondition(metric="ctr", comparator=Comparator.LT, threshold=3),
        "action": "Refresh ad creative",
        "target_agent": "ad_agent",
    }
    payload.update(overrides)
    return TriggerDefinition(**payload)


def _engine(metrics: InMemoryMetricsProvider, sink: RecordingSink, clock: ManualClock) -> TriggerEvaluationEngine:
    return TriggerEvaluationEngine(
        registry=build_registry(),
        metrics=metrics,
        task_sink=sink,
        settings=TriggerSettings(default_cooldown_seconds=300),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_condition_met_emits_one_urgent_task() -> None:
    clock = ManualClock()
    sink = RecordingSink()
    engine = _engine(InMemoryMetricsProvider({CAMPAIGN: {"ctr": 2.5}}), sink, clock)
    trigger = engine.register(CAMPAIGN, _low_ctr())

    results = await engine.evaluate(CAMPAIGN)

    assert len(results) == 1
    result = results[0]
    assert result.outcome is EvaluationOutcome.FIRED
    assert result.triggered is True
    assert result.current_value == pytest.approx(2.5)
    assert len(sink.tasks) == 1
    task = sink.tasks[0]
    assert task.priority is TaskPriority.URGENT
    assert task.agent_type == "ad_agent"
    assert task.source is TaskSource.TRIGGER
    assert task.trigger_id == trigger.id
    assert result.task_id == task.id
    assert trigger.last_fired_at == clock.now()


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_firing() -> None:
    clock = ManualClock()
    sink = RecordingSink()
    engine = _engine(InMemoryMetricsProvider({CAMPAIGN: {"ctr": 2.5}}), sink, clock)
    trigger = engine.register(CAMPAIGN, _low_ctr())
    await engine.evaluate(CAMPAIGN)
    fired_at = trigger.last_fired_at

    clock.advance(seconds=299)
    (result,) = await engine.evaluate(CAMPAIGN)
    assert result.outcome is EvaluationOutcome.COOLDOWN_ACTIVE
    assert result.triggered is False
    assert trigger.last_fired_at == fired_at
    assert len(sink.tasks) == 1

    clock.advance(seconds=1)
    (result,) = await engine.evaluate(CAMPAIGN)
    assert result.outcome is EvaluationOutcome.FIRED
    assert len(sink.tasks) == 2


@pytest.mark.asyncio
async def test_concurrent_evaluations_fire_once() -> None:
    clock = ManualClock()
    sink = RecordingSink()
    engine = _engine(InMemoryMetricsProvider({CAMPAIGN: {"ctr": 1.0}}), sink, clock)
    engine.register(CAMPAIGN, _low_ctr())

    batches = await asyncio.gather(*(engine.evaluate(CAMPAIGN) for _ in range(10)))

    outcomes = [result.outcome for batch in batches for result in batch]
    assert outcomes.count(EvaluationOutcome.FIRED) == 1
    assert outcomes.count(EvaluationOutcome.COOLDOWN_ACTIVE) == 9
    assert len(sink.tasks) == 1


@pytest.mark.asyncio
async def test_non_firing_outcomes() -> None:
    clock = ManualClock()
    sink = RecordingSink()
    metrics = InMemoryMetricsProvider({CAMPAIGN: {"ctr": 3.5}})
    engine = _engine(metrics, sink, clock)
    ctr = engine.register(CAMPAIGN, _low_ctr())
    paused = engine.register(CAMPAIGN, _low_ctr(name="Paused", active=False))
    missing = engine.register(
        CAMPAIGN,
        _low_ctr(name="ROAS", condition=TriggerCondition(metric="roas", comparator=Comparator.GTE, threshold=4)),
    )

    results = {result.trigger_id: result for result in await engine.evaluate(CAMPAIGN)}

    assert results[ctr.id].outcome is EvaluationOutcome.CONDITION_NOT_MET
    assert results[paused.id].outcome is EvaluationOutcome.INACTIVE
    assert results[missing.id].outcome is EvaluationOutcome.METRIC_UNAVAILABLE
    assert results[missing.id].current_value is None
    assert sink.tasks == []
    assert all(trigger.last_fired_at is None for trigger in (ctr, paused, missing))
    assert results[ctr.id].next_evaluation_at > results[ctr.id].evaluated_at


@pytest.mark.asyncio
async def test_rejected_task_does_not_start_cooldown() -> None:
    clock = ManualClock()
    sink = RecordingSink(error=EmergencyStopInProgress(CAMPAIGN))
    engine = _engine(InMemoryMetricsProvider({CAMPAIGN: {"ctr": 2.0}}), sink, clock)
    trigger = engine.register(CAMPAIGN, _low_ctr())

    (result,) = await engine.evaluate(CAMPAIGN)

    assert result.outcome is EvaluationOutcome.REJECTED
    assert "Emergency stop" in (result.reason or "")
    assert result.triggered is False
    assert trigger.last_fired_at is None
    assert engine.rejections == 1


def test_register_validates_target_agent_and_id() -> None:
    engine = _engine(InMemoryMetricsProvider(), RecordingSink(), ManualClock())

    with pytest.raises(UnknownAgentTypeError):
        engine.register(CAMPAIGN, _low_ctr(target_agent="video_agent"))

    engine.register(CAMPAIGN, _low_ctr(id="ctr-watch"))
    with pytest.raises(ValueError):
        engine.register(CAMPAIGN, _low_ctr(id="ctr-watch"))


@pytest.mark.asyncio
async def test_evaluation_log_keeps_latest_results() -> None:
    clock = ManualClock()
    metrics = InMemoryMetricsProvider({CAMPAIGN: {"ctr": 5.0}})
    engine = _engine(metrics, RecordingSink(), clock)
    engine.register(CAMPAIGN, _low_ctr())

    await engine.evaluate(CAMPAIGN)
    metrics.update(CAMPAIGN, {"ctr": 1.0})
    clock.advance(minutes=5)
    await engine.evaluate(CAMPAIGN)

    log = engine.evaluation_log(CAMPAIGN)
    assert [entry.outcome for entry in log] == [EvaluationOutcome.CONDITION_NOT_MET, EvaluationOutcome.FIRED]
    assert engine.evaluation_log(CAMPAIGN, limit=1) == log[-1:]
