from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import ValidationError
from tenacity import RetryCallState, Retrying, wait_exponential

from ..agents.base import AgentInvoker
from ..agents.registry import CapabilityRegistry
from ..core.config import SchedulingSettings
from ..core.logging import get_logger
from ..core.metrics import (
    increment_task_rejection,
    increment_task_submission,
    observe_task_duration,
    record_task_transition,
    set_agent_inflight,
)
from ..schemas.tasks import AgentResult, AgentTask
from .clock import Clock, SystemClock
from .enums import TaskStatus
from .exceptions import (
    CyclicDependencyError,
    DuplicateTaskError,
    MissingDependencyError,
    RetryExhaustedError,
    TaskGraphError,
    TaskNotFoundError,
    UnknownAgentTypeError,
)
from .lifecycle import LifecycleEvent, TaskLifecycleLog

logger = get_logger(name=__name__)

TransitionListener = Callable[[AgentTask], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int
    base_backoff_seconds: float
    backoff_multiplier: float
    max_backoff_seconds: float
    _wait: wait_exponential = field(init=False, repr=False, compare=False)
    _state: RetryCallState = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._wait = wait_exponential(
            multiplier=self.base_backoff_seconds,
            exp_base=self.backoff_multiplier,
            max=self.max_backoff_seconds,
        )
        self._state = RetryCallState(retry_object=Retrying(wait=self._wait), fn=None, args=(), kwargs={})

    @classmethod
    def from_settings(cls, settings: SchedulingSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.default_max_retries,
            base_backoff_seconds=settings.base_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the ``retry_count``-th retry: base * multiplier ** (retry_count - 1), capped."""
        self._state.attempt_number = max(1, retry_count)
        return float(self._wait(self._state))


@dataclass(slots=True)
class CampaignGraph:
    campaign_id: str
    tasks: dict[str, AgentTask] = field(default_factory=dict)
    sequence: dict[str, int] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def dependencies_completed(self, task: AgentTask) -> bool:
        return all(self.tasks[dep].status is TaskStatus.COMPLETED for dep in task.dependencies)


class TaskDependencyScheduler:
    """Owns the per-campaign task DAGs and drives the task status state machine.

    ``tick`` starts every eligible task (dependencies completed, agent type below its in-flight cap)
    in priority order and returns immediately; invocations run as background asyncio tasks so one
    campaign's slow agents never block another campaign's tick. Invocation errors are absorbed
    into the retry state machine and never raised out of ``tick``.
    """

    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        invoker: AgentInvoker,
        settings: SchedulingSettings,
        clock: Clock | None = None,
        lifecycle: TaskLifecycleLog | None = None,
    ) -> None:
        self._registry = registry
        self._invoker = invoker
        self._settings = settings
        self._clock = clock or SystemClock()
        self._lifecycle = lifecycle or TaskLifecycleLog()
        self._retry_policy = RetryPolicy.from_settings(settings)
        self._graphs: dict[str, CampaignGraph] = {}
        self._index: dict[str, str] = {}
        self._inflight: dict[str, int] = defaultdict(int)
        self._running: dict[str, asyncio.Task[None]] = {}
        self._listeners: list[TransitionListener] = []
        self._sequence = 0

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def lifecycle(self) -> TaskLifecycleLog:
        return self._lifecycle

    @property
    def campaigns(self) -> tuple[str, ...]:
        return tuple(self._graphs)

    @property
    def inflight(self) -> dict[str, int]:
        return {agent: count for agent, count in self._inflight.items() if count > 0}

    @property
    def total_capacity(self) -> int:
        return sum(self.concurrency_limit(agent) for agent in self._registry.agent_types)

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def concurrency_limit(self, agent_type: str) -> int:
        profile = self._registry.get(agent_type)
        if profile.max_concurrency is not None:
            return max(1, profile.max_concurrency)
        return self._settings.concurrency_for(agent_type)

    async def submit(self, campaign_id: str, task: AgentTask) -> str:
        return (await self.submit_many(campaign_id, [task]))[0]

    async def submit_many(self, campaign_id: str, tasks: Sequence[AgentTask]) -> list[str]:
        """Validate and enqueue a batch atomically; nothing is enqueued if any task is rejected."""
        graph = self._graphs.setdefault(campaign_id, CampaignGraph(campaign_id=campaign_id))
        async with graph.lock:
            try:
                self._validate_batch(graph, tasks)
            except (TaskGraphError, UnknownAgentTypeError) as exc:
                increment_task_rejection(reason=type(exc).__name__)
                logger.warning(
                    "task_submission_rejected",
                    campaign_id=campaign_id,
                    task_ids=[task.id for task in tasks],
                    error=str(exc),
                )
                raise
            now = self._clock.now()
            for task in tasks:
                task.campaign_id = campaign_id
                self._sequence += 1
                graph.tasks[task.id] = task
                graph.sequence[task.id] = self._sequence
                self._index[task.id] = campaign_id
                self._record(task, now=now)
            sources = {task.source.value for task in tasks}
            for source in sources:
                increment_task_submission(source=source, count=sum(1 for task in tasks if task.source.value == source))
            logger.info("tasks_submitted", campaign_id=campaign_id, task_ids=[task.id for task in tasks])
        return [task.id for task in tasks]

    def _validate_batch(self, graph: CampaignGraph, tasks: Sequence[AgentTask]) -> None:
        batch_ids: dict[str, AgentTask] = {}
        for task in tasks:
            self._registry.require(task.agent_type)
            if task.status is not TaskStatus.PENDING:
                raise TaskGraphError(f"Task {task.id} must be submitted as pending, not {task.status.value}")
            if task.id in batch_ids or task.id in self._index:
                raise DuplicateTaskError(f"Task {task.id} already exists")
            batch_ids[task.id] = task
        for task in tasks:
            for dependency in task.dependencies:
                if dependency == task.id:
                    raise CyclicDependencyError([task.id])
                if dependency not in batch_ids and dependency not in graph.tasks:
                    raise MissingDependencyError(task.id, dependency)
        self._ensure_acyclic(batch_ids)

    @staticmethod
    def _ensure_acyclic(batch: dict[str, AgentTask]) -> None:
        # Existing tasks cannot depend on new ones, so any cycle lies within the batch.
        indegree = {task_id: 0 for task_id in batch}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in batch}
        for task_id, task in batch.items():
            for dependency in task.dependencies:
                if dependency in batch:
                    indegree[task_id] += 1
                    dependents[dependency].append(task_id)
        ready = [task_id for task_id, degree in indegree.items() if degree == 0]
        visited = 0
        while ready:
            current = ready.pop()
            visited += 1
            for child in dependents[current]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
        if visited != len(batch):
            raise CyclicDependencyError(task_id for task_id, degree in indegree.items() if degree > 0)

    def get_task(self, task_id: str) -> AgentTask:
        campaign_id = self._index.get(task_id)
        if campaign_id is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return self._graphs[campaign_id].tasks[task_id]

    def get_task_history(self, task_id: str) -> list[LifecycleEvent]:
        self.get_task(task_id)
        return self._lifecycle.history(task_id)

    def tasks_for(self, campaign_id: str) -> list[AgentTask]:
        graph = self._graphs.get(campaign_id)
        return list(graph.tasks.values()) if graph else []

    def tasks_for_plan(self, plan_id: str) -> list[AgentTask]:
        return [task for graph in self._graphs.values() for task in graph.tasks.values() if task.plan_id == plan_id]

    def running_tasks(self) -> list[AgentTask]:
        return [self.get_task(task_id) for task_id in self._running]

    async def tick(self, campaign_id: str) -> list[str]:
        graph = self._graphs.get(campaign_id)
        if graph is None:
            return []
        started: list[str] = []
        async with graph.lock:
            now = self._clock.now()
            for task in graph.tasks.values():
                if task.status is TaskStatus.RETRYING and task.retry_at is not None and task.retry_at <= now:
                    task.retry_at = None
                    self._transition(task, TaskStatus.PENDING, now=now)

            eligible = [
                task
                for task in graph.tasks.values()
                if task.status is TaskStatus.PENDING and graph.dependencies_completed(task)
            ]
            eligible.sort(key=lambda item: (-item.priority.rank, item.created_at, graph.sequence[item.id]))
            for task in eligible:
                if self._inflight[task.agent_type] >= self.concurrency_limit(task.agent_type):
                    continue
                self._start(task, now=now)
                started.append(task.id)
        if started:
            logger.info("tick_started_tasks", campaign_id=campaign_id, task_ids=started)
        return started

    async def tick_all(self) -> dict[str, list[str]]:
        results: dict[str, list[str]] = {}
        for campaign_id in list(self._graphs):
            started = await self.tick(campaign_id)
            if started:
                results[campaign_id] = started
        return results

    def _start(self, task: AgentTask, *, now: datetime) -> None:
        task.started_at = now
        task.error = None
        self._inflight[task.agent_type] += 1
        set_agent_inflight(agent_type=task.agent_type, count=self._inflight[task.agent_type])
        self._transition(task, TaskStatus.RUNNING, now=now)
        handle = asyncio.create_task(self._execute(task), name=f"agent-task-{task.id}")
        handle.add_done_callback(lambda _: self._release(task))
        self._running[task.id] = handle

    def _release(self, task: AgentTask) -> None:
        self._running.pop(task.id, None)
        self._inflight[task.agent_type] = max(0, self._inflight[task.agent_type] - 1)
        set_agent_inflight(agent_type=task.agent_type, count=self._inflight[task.agent_type])

    async def _execute(self, task: AgentTask) -> None:
        error: str | None = None
        result: AgentResult | None = None
        try:
            raw = await asyncio.wait_for(
                self._invoker.invoke(task),
                timeout=self._settings.invocation_timeout_seconds,
            )
            result = raw if isinstance(raw, AgentResult) else AgentResult.model_validate(raw)
        except asyncio.TimeoutError:
            error = f"Agent invocation timed out after {self._settings.invocation_timeout_seconds:g}s"
        except ValidationError as exc:
            error = f"Invalid agent result: {exc.errors()[0].get('msg', 'validation error')}"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__

        if task.status is not TaskStatus.RUNNING:
            # Stopped while the invocation was finishing.
            return
        now = self._clock.now()
        if result is not None:
            self._complete(task, result, now=now)
        else:
            self._fail_attempt(task, error or "Agent invocation failed", now=now)

    def _complete(self, task: AgentTask, result: AgentResult, *, now: datetime) -> None:
        task.record_completion(result, completed_at=now)
        if task.started_at is not None:
            observe_task_duration(agent_type=task.agent_type, seconds=(now - task.started_at).total_seconds())
        self._transition(task, TaskStatus.COMPLETED, now=now)
        logger.info(
            "task_completed",
            task_id=task.id,
            campaign_id=task.campaign_id,
            agent_type=task.agent_type,
            score=task.result_score,
        )

    def _fail_attempt(self, task: AgentTask, error: str, *, now: datetime) -> None:
        task.error = error
        self._transition(task, TaskStatus.FAILED, now=now, notify=False)
        if task.retry_count + 1 < task.max_retries:
            task.retry_count += 1
            delay = self._retry_policy.backoff_seconds(task.retry_count)
            task.retry_at = now + timedelta(seconds=delay)
            self._transition(task, TaskStatus.RETRYING, now=now)
            logger.warning(
                "task_retry_scheduled",
                task_id=task.id,
                campaign_id=task.campaign_id,
                agent_type=task.agent_type,
                retry_count=task.retry_count,
                backoff_seconds=delay,
                error=error,
            )
            return
        task.retry_count = min(task.retry_count + 1, task.max_retries)
        task.completed_at = now
        task.error = str(RetryExhaustedError(task.id, task.retry_count or 1, error))
        self._notify(task)
        logger.warning(
            "task_retry_exhausted",
            task_id=task.id,
            campaign_id=task.campaign_id,
            agent_type=task.agent_type,
            retry_count=task.retry_count,
            error=error,
        )

    async def cancel_running(self, campaign_ids: Iterable[str] | None, *, reason: str) -> int:
        """Abort in-flight invocations without consuming a retry. ``None`` targets every campaign."""
        scope = set(campaign_ids) if campaign_ids is not None else None
        now = self._clock.now()
        cancelled: list[asyncio.Task[None]] = []
        for task_id, handle in list(self._running.items()):
            task = self.get_task(task_id)
            if scope is not None and task.campaign_id not in scope:
                continue
            if task.status is not TaskStatus.RUNNING:
                continue
            task.error = reason
            task.completed_at = now
            self._transition(task, TaskStatus.FAILED, now=now)
            handle.cancel()
            cancelled.append(handle)
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        return len(cancelled)

    def withdraw_plan(self, plan_id: str, *, reason: str) -> int:
        """Cancel the not-yet-running tasks of a plan that was superseded or failed."""
        now = self._clock.now()
        withdrawn = 0
        for task in self.tasks_for_plan(plan_id):
            if task.status in {TaskStatus.PENDING, TaskStatus.RETRYING}:
                task.error = reason
                task.retry_at = None
                task.completed_at = now
                self._transition(task, TaskStatus.CANCELLED, now=now)
                withdrawn += 1
        return withdrawn

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def run_until_idle(self, campaign_id: str, *, max_cycles: int = 1000) -> None:
        """Alternate ticks and waits until the campaign has nothing startable and nothing running."""
        for _ in range(max_cycles):
            started = await self.tick(campaign_id)
            if not started and not self._running:
                return
            await self.wait_idle()

    def _transition(self, task: AgentTask, status: TaskStatus, *, now: datetime, notify: bool = True) -> None:
        task.status = status
        self._record(task, now=now)
        record_task_transition(agent_type=task.agent_type, status=status.value)
        if notify:
            self._notify(task)

    def _record(self, task: AgentTask, *, now: datetime) -> None:
        self._lifecycle.record(
            LifecycleEvent(
                task_id=task.id,
                campaign_id=task.campaign_id,
                status=task.status,
                agent_type=task.agent_type,
                at=now,
                attempt=task.retry_count,
                plan_id=task.plan_id,
                error=task.error,
            )
        )

    def _notify(self, task: AgentTask) -> None:
        for listener in list(self._listeners):
            try:
                listener(task)
            except Exception as exc:  # pragma: no cover - listener bugs must not break scheduling
                logger.exception("task_listener_failed", task_id=task.id, error=str(exc))
