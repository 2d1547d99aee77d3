from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta
from typing import Protocol

from ..agents.registry import CapabilityRegistry
from ..core.config import TriggerSettings
from ..core.logging import get_logger
from ..core.metrics import record_trigger_evaluation
from ..schemas.tasks import AgentTask, new_task_id
from ..schemas.triggers import EvaluationResult, Trigger, TriggerDefinition
from .clock import Clock, SystemClock
from .enums import CampaignStage, EvaluationOutcome, TaskPriority, TaskSource
from .exceptions import OrchestrationError, TriggerNotFoundError

logger = get_logger(name=__name__)

TaskSink = Callable[[str, AgentTask], Awaitable[str]]


class MetricsProvider(Protocol):
    async def snapshot(self, campaign_id: str) -> Mapping[str, float | None]:
        ...


class InMemoryMetricsProvider:
    """Metric snapshots pushed by an external collector."""

    def __init__(self, initial: Mapping[str, Mapping[str, float]] | None = None) -> None:
        self._snapshots: dict[str, dict[str, float]] = {
            campaign_id: dict(values) for campaign_id, values in (initial or {}).items()
        }

    def update(self, campaign_id: str, values: Mapping[str, float]) -> None:
        self._snapshots.setdefault(campaign_id, {}).update(values)

    async def snapshot(self, campaign_id: str) -> Mapping[str, float | None]:
        return dict(self._snapshots.get(campaign_id, {}))


class TriggerEvaluationEngine:
    """Poll-and-debounce evaluation of campaign triggers.

    Evaluations of the same campaign serialize on a per-campaign lock so the cooldown
    check and the ``last_fired_at`` update behave as a single compare-and-swap. Different
    campaigns evaluate concurrently.
    """

    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        metrics: MetricsProvider,
        task_sink: TaskSink,
        settings: TriggerSettings,
        clock: Clock | None = None,
        task_max_retries: int = 3,
    ) -> None:
        self._registry = registry
        self._metrics = metrics
        self._task_sink = task_sink
        self._settings = settings
        self._clock = clock or SystemClock()
        self._task_max_retries = task_max_retries
        self._triggers: dict[str, Trigger] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._logs: dict[str, deque[EvaluationResult]] = {}
        self.rejections = 0

    @property
    def campaigns(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(trigger.campaign_id for trigger in self._triggers.values()))

    def register(self, campaign_id: str, definition: TriggerDefinition) -> Trigger:
        self._registry.require(definition.target_agent)
        payload = definition.model_dump(exclude_none=True)
        trigger = Trigger(campaign_id=campaign_id, **payload)
        if trigger.id in self._triggers:
            raise ValueError(f"Trigger {trigger.id} is already registered")
        self._triggers[trigger.id] = trigger
        logger.info(
            "trigger_registered",
            trigger_id=trigger.id,
            campaign_id=campaign_id,
            metric=trigger.condition.metric,
            comparator=trigger.condition.comparator.value,
            threshold=trigger.condition.threshold,
        )
        return trigger

    def get(self, trigger_id: str) -> Trigger:
        try:
            return self._triggers[trigger_id]
        except KeyError:
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found") from None

    def triggers_for(self, campaign_id: str) -> list[Trigger]:
        return [trigger for trigger in self._triggers.values() if trigger.campaign_id == campaign_id]

    def set_active(self, trigger_id: str, active: bool) -> Trigger:
        trigger = self.get(trigger_id)
        trigger.active = active
        return trigger

    def cooldown_for(self, trigger: Trigger) -> timedelta:
        seconds = trigger.cooldown_seconds
        if seconds is None:
            seconds = self._settings.default_cooldown_seconds
        return timedelta(seconds=seconds)

    def evaluation_log(self, campaign_id: str, *, limit: int | None = None) -> list[EvaluationResult]:
        entries = list(self._logs.get(campaign_id, ()))
        return entries[-limit:] if limit else entries

    async def evaluate(self, campaign_id: str) -> list[EvaluationResult]:
        lock = self._locks.setdefault(campaign_id, asyncio.Lock())
        async with lock:
            triggers = self.triggers_for(campaign_id)
            if not triggers:
                return []
            snapshot = await self._metrics.snapshot(campaign_id)
            now = self._clock.now()
            results = [await self._evaluate_trigger(trigger, snapshot, now) for trigger in triggers]
            log = self._logs.setdefault(campaign_id, deque(maxlen=self._settings.max_log_entries))
            log.extend(results)
        return results

    async def _evaluate_trigger(
        self,
        trigger: Trigger,
        snapshot: Mapping[str, float | None],
        now: datetime,
    ) -> EvaluationResult:
        raw_value = snapshot.get(trigger.condition.metric)
        value = float(raw_value) if raw_value is not None else None
        result = EvaluationResult(
            trigger_id=trigger.id,
            campaign_id=trigger.campaign_id,
            outcome=EvaluationOutcome.CONDITION_NOT_MET,
            triggered=False,
            current_value=value,
            evaluated_at=now,
            next_evaluation_at=now + timedelta(seconds=self._settings.poll_interval_seconds),
        )
        if not trigger.active:
            result.outcome = EvaluationOutcome.INACTIVE
        elif value is None:
            result.outcome = EvaluationOutcome.METRIC_UNAVAILABLE
            result.reason = f"Metric {trigger.condition.metric} missing from snapshot"
        elif trigger.condition.holds(value):
            await self._fire(trigger, result, now)
        record_trigger_evaluation(outcome=result.outcome.value)
        return result

    async def _fire(self, trigger: Trigger, result: EvaluationResult, now: datetime) -> None:
        if trigger.last_fired_at is not None and now - trigger.last_fired_at < self.cooldown_for(trigger):
            result.outcome = EvaluationOutcome.COOLDOWN_ACTIVE
            result.reason = f"Cooling down until {(trigger.last_fired_at + self.cooldown_for(trigger)).isoformat()}"
            return
        task = AgentTask(
            id=new_task_id(),
            campaign_id=trigger.campaign_id,
            agent_type=trigger.target_agent,
            stage=CampaignStage.OPTIMIZE,
            description=trigger.action,
            priority=TaskPriority.URGENT,
            dependencies=[],
            max_retries=self._task_max_retries,
            created_at=now,
            source=TaskSource.TRIGGER,
            trigger_id=trigger.id,
        )
        try:
            task_id = await self._task_sink(trigger.campaign_id, task)
        except OrchestrationError as exc:
            self.rejections += 1
            result.outcome = EvaluationOutcome.REJECTED
            result.reason = str(exc)
            logger.warning("trigger_task_rejected", trigger_id=trigger.id, campaign_id=trigger.campaign_id, error=str(exc))
            return
        trigger.last_fired_at = now
        result.outcome = EvaluationOutcome.FIRED
        result.triggered = True
        result.task_id = task_id
        logger.info(
            "trigger_fired",
            trigger_id=trigger.id,
            campaign_id=trigger.campaign_id,
            metric=trigger.condition.metric,
            value=result.current_value,
            threshold=trigger.condition.threshold,
            task_id=task_id,
        )
