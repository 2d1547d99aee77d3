from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from statistics import mean

from ..agents.base import AgentGateway, SimulatedAgentGateway
from ..agents.registry import CapabilityRegistry, default_registry
from ..core.config import Settings
from ..core.logging import bind_campaign_context, clear_campaign_context, get_logger
from ..core.metrics import record_coordination_state, record_emergency_stop
from ..schemas.goals import GoalPlan, GoalPlanRequest, GoalSubmission, GoalSubmissionOptions, MeshActivity
from ..schemas.monitor import (
    BlockerReport,
    CoordinationFailures,
    CoordinationState,
    ExecutionMonitorEntry,
)
from ..schemas.tasks import AgentTask, TaskSubmission
from ..schemas.triggers import EvaluationResult, Trigger, TriggerDefinition
from .clock import Clock, SystemClock
from .decomposer import GoalDecomposer
from .enums import ExecutionStatus, PlanStatus, ReplanSource, TaskSource, TaskStatus
from .exceptions import EmergencyStopInProgress, PlanStateError
from .lifecycle import LifecycleEvent
from .mesh import GoalPlanningMesh
from .monitor import ExecutionMonitor
from .negotiation import ConsensusEngine
from .scheduler import TaskDependencyScheduler
from .triggers import InMemoryMetricsProvider, MetricsProvider, TriggerEvaluationEngine

logger = get_logger(name=__name__)

SYSTEM_SCOPE = "system"


class CampaignCoordinator:
    """Boundary of the orchestration core.

    Wires the registry, scheduler, trigger engine, planning mesh and execution monitor
    together and exposes the operations external collaborators call. Cross-component
    writes happen only through the hand-offs wired here: accepted plans become task DAGs,
    task transitions feed the monitor, and stalled plans go back to the mesh.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        registry: CapabilityRegistry,
        gateway: AgentGateway,
        metrics_provider: MetricsProvider,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.clock = clock or SystemClock()
        self.scheduler = TaskDependencyScheduler(
            registry=registry,
            invoker=gateway,
            settings=settings.scheduling,
            clock=self.clock,
        )
        self.triggers = TriggerEvaluationEngine(
            registry=registry,
            metrics=metrics_provider,
            task_sink=self._submit_trigger_task,
            settings=settings.triggers,
            clock=self.clock,
            task_max_retries=settings.scheduling.default_max_retries,
        )
        self.mesh = GoalPlanningMesh(
            decomposer=GoalDecomposer(registry=registry, settings=settings.planning),
            consensus=ConsensusEngine(proposer=gateway, quorum_threshold=settings.planning.quorum_threshold),
            settings=settings.planning,
            clock=self.clock,
        )
        self.monitor = ExecutionMonitor(registry=registry, settings=settings.monitor, clock=self.clock)
        self._halted_campaigns: set[str] = set()
        self._system_halted = False

        self.scheduler.add_listener(self._on_task_transition)
        self.mesh.add_acceptance_handler(self._start_plan_execution)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: CapabilityRegistry | None = None,
        gateway: AgentGateway | None = None,
        metrics_provider: MetricsProvider | None = None,
        clock: Clock | None = None,
    ) -> "CampaignCoordinator":
        return cls(
            settings=settings,
            registry=registry or default_registry(),
            gateway=gateway or SimulatedAgentGateway(),
            metrics_provider=metrics_provider or InMemoryMetricsProvider(),
            clock=clock,
        )

    # Tasks

    async def submit_task(self, campaign_id: str, task: TaskSubmission | AgentTask) -> str:
        return (await self.submit_tasks(campaign_id, [task]))[0]

    async def submit_tasks(self, campaign_id: str, tasks: Sequence[TaskSubmission | AgentTask]) -> list[str]:
        self._ensure_not_halted(campaign_id)
        now = self.clock.now()
        materialized = [
            item
            if isinstance(item, AgentTask)
            else item.to_task(
                campaign_id,
                created_at=now,
                default_max_retries=self.settings.scheduling.default_max_retries,
            )
            for item in tasks
        ]
        return await self.scheduler.submit_many(campaign_id, materialized)

    async def tick(self, campaign_id: str) -> list[str]:
        if self.is_halted(campaign_id):
            logger.debug("tick_skipped_halted", campaign_id=campaign_id)
            return []
        bind_campaign_context(campaign_id=campaign_id)
        try:
            return await self.scheduler.tick(campaign_id)
        finally:
            clear_campaign_context()

    async def tick_all(self) -> dict[str, list[str]]:
        started: dict[str, list[str]] = {}
        for campaign_id in self.scheduler.campaigns:
            ids = await self.tick(campaign_id)
            if ids:
                started[campaign_id] = ids
        return started

    def get_task_status(self, task_id: str) -> AgentTask:
        return self.scheduler.get_task(task_id)

    def get_task_history(self, task_id: str) -> list[LifecycleEvent]:
        return self.scheduler.get_task_history(task_id)

    async def _submit_trigger_task(self, campaign_id: str, task: AgentTask) -> str:
        self._ensure_not_halted(campaign_id)
        return await self.scheduler.submit(campaign_id, task)

    # Triggers

    def register_trigger(self, campaign_id: str, definition: TriggerDefinition) -> str:
        return self.triggers.register(campaign_id, definition).id

    def get_trigger(self, trigger_id: str) -> Trigger:
        return self.triggers.get(trigger_id)

    def set_trigger_active(self, trigger_id: str, active: bool) -> Trigger:
        return self.triggers.set_active(trigger_id, active)

    async def evaluate_triggers(self, campaign_id: str) -> list[EvaluationResult]:
        return await self.triggers.evaluate(campaign_id)

    def get_trigger_log(self, campaign_id: str, *, limit: int | None = None) -> list[EvaluationResult]:
        return self.triggers.evaluation_log(campaign_id, limit=limit)

    # Goals

    def submit_goal(
        self,
        request: GoalPlanRequest,
        options: GoalSubmissionOptions | None = None,
    ) -> GoalSubmission:
        campaign_id = (options.campaign_id if options else None) or request.campaign_id
        if self._system_halted:
            raise EmergencyStopInProgress(SYSTEM_SCOPE)
        if campaign_id is not None:
            self._ensure_not_halted(campaign_id)
        return self.mesh.submit_goal(request, options)

    def get_goal_plan(self, plan_id: str) -> GoalPlan:
        return self.mesh.get_plan(plan_id)

    async def process_goals(self) -> list[GoalPlan]:
        return await self.mesh.process_queue()

    def trigger_replanning(
        self,
        plan_id: str,
        reason: str,
        *,
        avoid_agent_types: Iterable[str] = (),
        source: ReplanSource = ReplanSource.MANUAL,
    ) -> str:
        new_plan_id = self.mesh.trigger_replanning(
            plan_id,
            reason,
            avoid_agent_types=avoid_agent_types,
            source=source,
        )
        self.scheduler.withdraw_plan(plan_id, reason=f"Plan superseded: {reason}")
        self.monitor.untrack(plan_id)
        return new_plan_id

    def get_mesh_activity(self, *, limit: int | None = None) -> list[MeshActivity]:
        return self.mesh.activity(limit=limit)

    async def _start_plan_execution(self, plan: GoalPlan) -> None:
        self._ensure_not_halted(plan.campaign_id)
        now = self.clock.now()
        priority = plan.request.priority.to_task_priority()
        phase_tasks: dict[int, list[str]] = {}
        tasks: list[AgentTask] = []
        for phase in sorted(plan.agent_sequence, key=lambda item: item.index):
            dependencies = [task_id for index in phase.depends_on for task_id in phase_tasks.get(index, [])]
            share = phase.estimated_minutes / len(phase.tasks)
            phase_tasks[phase.index] = []
            for description in phase.tasks:
                task = AgentTask(
                    campaign_id=plan.campaign_id,
                    agent_type=phase.agent_type,
                    stage=phase.stage,
                    description=description,
                    priority=priority,
                    dependencies=dependencies,
                    estimated_duration_minutes=share,
                    max_retries=self.settings.scheduling.default_max_retries,
                    created_at=now,
                    source=TaskSource.PLAN,
                    plan_id=plan.id,
                    phase_index=phase.index,
                )
                phase_tasks[phase.index].append(task.id)
                tasks.append(task)
        plan.task_ids = await self.scheduler.submit_many(plan.campaign_id, tasks)
        self.monitor.track(plan, tasks)
        logger.info("plan_execution_started", plan_id=plan.id, campaign_id=plan.campaign_id, tasks=len(tasks))

    # Monitoring

    def get_execution_monitors(self) -> list[ExecutionMonitorEntry]:
        return self.monitor.entries()

    def get_blockers(self, plan_id: str) -> BlockerReport:
        return self.monitor.get_blockers(plan_id)

    def report_blocker(self, plan_id: str, code: str, *, agent_type: str | None = None) -> ExecutionMonitorEntry:
        return self.monitor.report_blocker(plan_id, code, agent_type=agent_type)

    def _on_task_transition(self, task: AgentTask) -> None:
        if not task.plan_id or not self.monitor.is_tracking(task.plan_id):
            return
        status = self.monitor.on_task_transition(task.plan_id, task)
        if status is ExecutionStatus.COMPLETED:
            self.monitor.untrack(task.plan_id)
            self.mesh.mark_completed(task.plan_id)

    def check_stalled(self) -> list[str]:
        """Send stalled plans back to the mesh, or fail them once their replan budget is spent."""
        replacements: list[str] = []
        for request in self.monitor.check_stalled():
            plan = self.mesh.get_plan(request.plan_id)
            if plan.status is not PlanStatus.EXECUTING:
                self.monitor.untrack(plan.id)
                continue
            if not self.monitor.policy.allows(plan):
                reason = f"{request.reason}; replanning limit of {self.monitor.policy.max_replans} reached"
                self._fail_plan(plan.id, reason)
                continue
            try:
                replacements.append(
                    self.trigger_replanning(
                        plan.id,
                        request.reason,
                        avoid_agent_types=request.avoid_agent_types,
                        source=request.source,
                    )
                )
            except PlanStateError as exc:
                logger.warning("stalled_plan_replan_rejected", plan_id=plan.id, error=str(exc))
        return replacements

    def _fail_plan(self, plan_id: str, reason: str) -> None:
        self.mesh.mark_failed(plan_id, reason)
        self.scheduler.withdraw_plan(plan_id, reason=reason)
        self.monitor.untrack(plan_id)

    async def run_cycle(self) -> None:
        await self.process_goals()
        await self.tick_all()
        self.check_stalled()

    # Emergency stop

    def is_halted(self, campaign_id: str) -> bool:
        return self._system_halted or campaign_id in self._halted_campaigns

    def _ensure_not_halted(self, campaign_id: str) -> None:
        if self._system_halted:
            raise EmergencyStopInProgress(SYSTEM_SCOPE)
        if campaign_id in self._halted_campaigns:
            raise EmergencyStopInProgress(campaign_id)

    async def emergency_stop(self, scope: str | None = None, *, reason: str | None = None) -> int:
        """Halt a campaign (or everything when ``scope`` is None) until released.

        Running invocations are cancelled and their tasks fail without consuming a retry;
        every active plan in scope fails. Returns cancelled invocations plus failed plans.
        """
        label = scope or SYSTEM_SCOPE
        if scope is None:
            self._system_halted = True
        else:
            self._halted_campaigns.add(scope)
        message = reason or f"Emergency stop ({label})"
        campaigns = [scope] if scope is not None else None
        cancelled = await self.scheduler.cancel_running(campaigns, reason=message)
        failed_plans = self.mesh.fail_active_plans(campaigns, message)
        for plan_id in failed_plans:
            self.scheduler.withdraw_plan(plan_id, reason=message)
            self.monitor.untrack(plan_id)
        stopped = cancelled + len(failed_plans)
        record_emergency_stop(scope="campaign" if scope else SYSTEM_SCOPE, stopped=stopped)
        logger.warning("emergency_stop", scope=label, cancelled_tasks=cancelled, failed_plans=len(failed_plans))
        return stopped

    def release_emergency_stop(self, scope: str | None = None) -> None:
        if scope is None:
            self._system_halted = False
            self._halted_campaigns.clear()
        else:
            self._halted_campaigns.discard(scope)
        logger.info("emergency_stop_released", scope=scope or SYSTEM_SCOPE)

    @property
    def halted_scopes(self) -> list[str]:
        scopes = sorted(self._halted_campaigns)
        return [SYSTEM_SCOPE, *scopes] if self._system_halted else scopes

    # Observation

    def get_coordination_state(self) -> CoordinationState:
        plans = self.mesh.plans
        by_status = Counter(plan.status for plan in plans)
        inflight = self.scheduler.inflight
        capacity = self.scheduler.total_capacity
        load = min(1.0, sum(inflight.values()) / capacity) if capacity else 0.0

        finished = sorted(
            (plan for plan in plans if plan.status in {PlanStatus.COMPLETED, PlanStatus.FAILED}),
            key=lambda plan: plan.completed_at or plan.updated_at,
        )[-self.settings.monitor.success_window :]
        completed = sum(1 for plan in finished if plan.status is PlanStatus.COMPLETED)
        success_rate = completed / len(finished) if finished else 1.0

        durations = [
            (plan.consensus_reached_at - plan.planning_started_at).total_seconds()
            for plan in plans
            if plan.consensus_reached_at is not None and plan.planning_started_at is not None
        ]
        failed_tasks = sum(
            1
            for campaign_id in self.scheduler.campaigns
            for task in self.scheduler.tasks_for(campaign_id)
            if task.status is TaskStatus.FAILED
        )
        state = CoordinationState(
            active_plans=by_status.get(PlanStatus.EXECUTING, 0),
            queued_requests=self.mesh.queued_count,
            agents_in_use=inflight,
            load_ratio=load,
            success_rate=success_rate,
            plans_by_status=dict(by_status),
            failures=CoordinationFailures(
                tasks=failed_tasks,
                plans=by_status.get(PlanStatus.FAILED, 0),
                trigger_rejections=self.triggers.rejections,
            ),
            average_consensus_seconds=mean(durations) if durations else None,
            halted_scopes=self.halted_scopes,
            generated_at=self.clock.now(),
        )
        record_coordination_state(
            active_plans=state.active_plans,
            queued_goals=state.queued_requests,
            load_ratio=state.load_ratio,
            success_rate=state.success_rate,
        )
        return state

    def health_check(self) -> dict[str, object]:
        state = self.get_coordination_state()
        if state.halted_scopes:
            status = "halted" if SYSTEM_SCOPE in state.halted_scopes else "degraded"
        elif state.load_ratio >= 0.9:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "registry_version": self.registry.version,
            "agent_types": len(self.registry),
            "campaigns": len(self.scheduler.campaigns),
            "active_plans": state.active_plans,
            "queued_requests": state.queued_requests,
            "load_ratio": state.load_ratio,
            "halted_scopes": state.halted_scopes,
        }
