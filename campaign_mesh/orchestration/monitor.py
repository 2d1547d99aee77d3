"""
Execution Monitor

Tracks every executing goal plan: which phase is live, how far along it is, and
what is blocking it. Blockers that outlive the configured timeout are turned into
replanning requests so a plan never stalls indefinitely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from ..agents.registry import CapabilityRegistry
from ..core.config import MonitorSettings
from ..core.logging import get_logger
from ..schemas.goals import GoalPlan
from ..schemas.monitor import Blocker, BlockerReport, ExecutionMonitorEntry, ReplanRequest
from ..schemas.tasks import AgentTask
from .clock import Clock, SystemClock
from .enums import ExecutionStatus, ReplanSource, TaskStatus
from .exceptions import PlanNotFoundError

logger = get_logger(name=__name__)

RETRYING_PREFIX = "retrying"
EXHAUSTED_PREFIX = "retry_exhausted"


class ReplanPolicy:
    """
    Policy governing when a stalled plan is handed back to the mesh.

    ``blocker_timeout`` is how long any blocker may persist before a replan is
    requested; ``max_replans`` bounds automatic replans per goal lineage, after
    which the plan is failed instead.
    """

    def __init__(self, blocker_timeout_seconds: float = 900.0, max_replans: int = 3):
        self.blocker_timeout = timedelta(seconds=blocker_timeout_seconds)
        self.max_replans = max_replans

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> "ReplanPolicy":
        return cls(blocker_timeout_seconds=settings.blocker_timeout_seconds, max_replans=settings.max_replans)

    def allows(self, plan: GoalPlan) -> bool:
        return plan.replan_generation < self.max_replans


@dataclass(slots=True)
class _TrackedPlan:
    entry: ExecutionMonitorEntry
    phase_of: dict[str, int]
    weights: dict[str, float]
    statuses: dict[str, TaskStatus]
    phase_fallbacks: dict[int, list[str]]
    phase_count: int
    blockers: dict[str, Blocker] = field(default_factory=dict)
    # blocker code -> task id -> first time that task raised it
    holders: dict[str, dict[str, datetime]] = field(default_factory=dict)
    replan_requested: bool = False


class ExecutionMonitor:
    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        settings: MonitorSettings,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._clock = clock or SystemClock()
        self.policy = ReplanPolicy.from_settings(settings)
        self._tracked: dict[str, _TrackedPlan] = {}

    def track(self, plan: GoalPlan, tasks: Sequence[AgentTask]) -> ExecutionMonitorEntry:
        now = self._clock.now()
        entry = ExecutionMonitorEntry(
            plan_id=plan.id,
            campaign_id=plan.campaign_id,
            current_phase=0,
            executing_agent=plan.agent_sequence[0].agent_type if plan.agent_sequence else None,
            started_at=now,
            updated_at=now,
            expected_completion=now + timedelta(minutes=plan.estimated_minutes),
        )
        self._tracked[plan.id] = _TrackedPlan(
            entry=entry,
            phase_of={task.id: task.phase_index or 0 for task in tasks},
            weights={task.id: max(task.estimated_duration_minutes, 1.0) for task in tasks},
            statuses={task.id: task.status for task in tasks},
            phase_fallbacks={phase.index: list(phase.fallback_agent_types) for phase in plan.agent_sequence},
            phase_count=max(1, len(plan.agent_sequence)),
        )
        logger.info("monitor_tracking_started", plan_id=plan.id, tasks=len(tasks))
        return entry

    def untrack(self, plan_id: str) -> None:
        if self._tracked.pop(plan_id, None) is not None:
            logger.info("monitor_tracking_stopped", plan_id=plan_id)

    def is_tracking(self, plan_id: str) -> bool:
        return plan_id in self._tracked

    def entries(self) -> list[ExecutionMonitorEntry]:
        return [tracked.entry for tracked in self._tracked.values()]

    def get(self, plan_id: str) -> ExecutionMonitorEntry:
        return self._require(plan_id).entry

    def on_task_transition(self, plan_id: str, task: AgentTask) -> ExecutionStatus:
        tracked = self._require(plan_id)
        if task.id not in tracked.statuses:
            return tracked.entry.status
        now = self._clock.now()
        tracked.statuses[task.id] = task.status

        if task.status is TaskStatus.RUNNING:
            tracked.entry.executing_agent = task.agent_type
            self._release_task(tracked, task.id, prefix=RETRYING_PREFIX)
        elif task.status is TaskStatus.PENDING:
            self._release_task(tracked, task.id, prefix=RETRYING_PREFIX)
        elif task.status is TaskStatus.RETRYING:
            self._add_blocker(tracked, f"{RETRYING_PREFIX}:{task.agent_type}", task, now)
        elif task.status is TaskStatus.FAILED:
            self._release_task(tracked, task.id)
            self._add_blocker(tracked, f"{EXHAUSTED_PREFIX}:{task.agent_type}", task, now)
        elif task.status in {TaskStatus.COMPLETED, TaskStatus.CANCELLED}:
            self._release_task(tracked, task.id)

        self._refresh(tracked, now)
        return tracked.entry.status

    def report_blocker(
        self,
        plan_id: str,
        code: str,
        *,
        agent_type: str | None = None,
        task_id: str | None = None,
    ) -> ExecutionMonitorEntry:
        tracked = self._require(plan_id)
        now = self._clock.now()
        if code not in tracked.blockers:
            tracked.blockers[code] = Blocker(code=code, agent_type=agent_type, task_id=task_id, since=now)
            logger.warning("monitor_blocker_reported", plan_id=plan_id, code=code, agent_type=agent_type)
        self._refresh(tracked, now)
        return tracked.entry

    def clear_blocker(self, plan_id: str, code: str) -> ExecutionMonitorEntry:
        tracked = self._require(plan_id)
        tracked.blockers.pop(code, None)
        tracked.holders.pop(code, None)
        self._refresh(tracked, self._clock.now())
        return tracked.entry

    def get_blockers(self, plan_id: str) -> BlockerReport:
        tracked = self._require(plan_id)
        return BlockerReport(
            plan_id=plan_id,
            blockers=list(tracked.blockers.values()),
            fallbacks_available=list(tracked.entry.fallbacks_available),
        )

    def check_stalled(self) -> list[ReplanRequest]:
        """Replanning requests for plans whose blockers outlived the timeout; each plan is reported once."""
        now = self._clock.now()
        requests: list[ReplanRequest] = []
        for plan_id, tracked in self._tracked.items():
            if tracked.replan_requested or not tracked.blockers:
                continue
            stale = [blocker for blocker in tracked.blockers.values() if now - blocker.since >= self.policy.blocker_timeout]
            if not stale:
                continue
            tracked.replan_requested = True
            exhausted = any(blocker.code.startswith(EXHAUSTED_PREFIX) for blocker in stale)
            avoid = list(dict.fromkeys(blocker.agent_type for blocker in stale if blocker.agent_type))
            codes = ", ".join(blocker.code for blocker in stale)
            requests.append(
                ReplanRequest(
                    plan_id=plan_id,
                    reason=f"Blocked by {codes} for over {int(self.policy.blocker_timeout.total_seconds())}s",
                    source=ReplanSource.RETRY_EXHAUSTED if exhausted else ReplanSource.BLOCKER_TIMEOUT,
                    avoid_agent_types=avoid,
                )
            )
            logger.warning("monitor_plan_stalled", plan_id=plan_id, blockers=codes)
        return requests

    def _require(self, plan_id: str) -> _TrackedPlan:
        tracked = self._tracked.get(plan_id)
        if tracked is None:
            raise PlanNotFoundError(f"Goal plan {plan_id} is not being monitored")
        return tracked

    @staticmethod
    def _add_blocker(tracked: _TrackedPlan, code: str, task: AgentTask, now: datetime) -> None:
        tracked.holders.setdefault(code, {}).setdefault(task.id, now)
        if code not in tracked.blockers:
            tracked.blockers[code] = Blocker(code=code, agent_type=task.agent_type, task_id=task.id, since=now)
            logger.warning("monitor_blocker_added", plan_id=tracked.entry.plan_id, code=code, task_id=task.id)

    @staticmethod
    def _release_task(tracked: _TrackedPlan, task_id: str, *, prefix: str | None = None) -> None:
        """Drop the task's hold on its blockers; a blocker clears once no task holds it."""
        for code, holders in list(tracked.holders.items()):
            if prefix is not None and not code.startswith(f"{prefix}:"):
                continue
            if holders.pop(task_id, None) is None:
                continue
            if holders:
                holder, since = min(holders.items(), key=lambda item: item[1])
                tracked.blockers[code] = tracked.blockers[code].model_copy(update={"task_id": holder, "since": since})
            else:
                del tracked.holders[code]
                tracked.blockers.pop(code, None)

    def _refresh(self, tracked: _TrackedPlan, now: datetime) -> None:
        entry = tracked.entry
        totals: dict[int, float] = {}
        done: dict[int, float] = {}
        for task_id, phase in tracked.phase_of.items():
            weight = tracked.weights[task_id]
            totals[phase] = totals.get(phase, 0.0) + weight
            if tracked.statuses[task_id] is TaskStatus.COMPLETED:
                done[phase] = done.get(phase, 0.0) + weight

        open_phases = sorted(phase for phase, total in totals.items() if done.get(phase, 0.0) < total)
        if open_phases:
            entry.current_phase = open_phases[0]
        fraction = sum(done.get(phase, 0.0) / total for phase, total in totals.items() if total > 0)
        entry.progress = max(entry.progress, min(1.0, fraction / tracked.phase_count))

        fallbacks: list[str] = []
        for blocker in tracked.blockers.values():
            candidates: list[str] = []
            if blocker.task_id and blocker.task_id in tracked.phase_of:
                candidates.extend(tracked.phase_fallbacks.get(tracked.phase_of[blocker.task_id], ()))
            if blocker.agent_type and blocker.agent_type in self._registry:
                candidates.extend(self._registry.fallbacks_for(blocker.agent_type))
            for candidate in candidates:
                if candidate != blocker.agent_type and candidate not in fallbacks:
                    fallbacks.append(candidate)
        entry.fallbacks_available = fallbacks
        entry.blockers = list(tracked.blockers)

        if not open_phases and totals:
            entry.status = ExecutionStatus.COMPLETED
            entry.progress = 1.0
        elif tracked.blockers:
            entry.status = ExecutionStatus.BLOCKED
        else:
            entry.status = ExecutionStatus.RUNNING
        entry.updated_at = now
