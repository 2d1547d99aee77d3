from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from uuid import uuid4

from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..core.metrics import increment_replan, observe_plan_phases, record_plan_status
from ..queue.manager import GoalQueue
from ..schemas.goals import (
    GoalPlan,
    GoalPlanRequest,
    GoalSubmission,
    GoalSubmissionOptions,
    MeshActivity,
)
from ..schemas.negotiation import ConsensusDecision
from .clock import Clock, SystemClock
from .decomposer import Decomposition, GoalDecomposer
from .enums import MeshActivityType, PlanStatus, ReplanSource
from .exceptions import ConsensusNotReachedError, DecompositionError, PlanNotFoundError, PlanStateError
from .negotiation import ConsensusEngine

logger = get_logger(name=__name__)

AcceptanceHandler = Callable[[GoalPlan], Awaitable[None]]

_ACTIVE_STATUSES = {PlanStatus.QUEUED, PlanStatus.PLANNING, PlanStatus.CONSENSUS, PlanStatus.EXECUTING}


class GoalPlanningMesh:
    """Accepts goals, decomposes them, runs consensus and hands accepted plans to execution.

    Plans are never deleted. Replanning marks the old plan ``superseded`` and links both
    directions (``superseded_by`` / ``supersedes``) so the lineage stays auditable.
    """

    def __init__(
        self,
        *,
        decomposer: GoalDecomposer,
        consensus: ConsensusEngine,
        settings: PlanningSettings,
        clock: Clock | None = None,
    ) -> None:
        self._decomposer = decomposer
        self._consensus = consensus
        self._settings = settings
        self._clock = clock or SystemClock()
        self._plans: dict[str, GoalPlan] = {}
        self._queue = GoalQueue()
        self._in_progress: set[str] = set()
        self._activity: deque[MeshActivity] = deque(maxlen=settings.activity_log_size)
        self._acceptance_handlers: list[AcceptanceHandler] = []

    def add_acceptance_handler(self, handler: AcceptanceHandler) -> None:
        self._acceptance_handlers.append(handler)

    @property
    def plans(self) -> list[GoalPlan]:
        return list(self._plans.values())

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def executing_count(self) -> int:
        return sum(1 for plan in self._plans.values() if plan.status is PlanStatus.EXECUTING)

    def get_plan(self, plan_id: str) -> GoalPlan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise PlanNotFoundError(f"Goal plan {plan_id} not found") from None

    def activity(self, *, limit: int | None = None) -> list[MeshActivity]:
        entries = list(self._activity)
        return entries[-limit:] if limit else entries

    def submit_goal(
        self,
        request: GoalPlanRequest,
        options: GoalSubmissionOptions | None = None,
    ) -> GoalSubmission:
        options = options or GoalSubmissionOptions()
        now = self._clock.now()
        request_id = f"goal-{uuid4().hex[:12]}"
        plan = GoalPlan(
            request_id=request_id,
            campaign_id=options.campaign_id or request.campaign_id or f"campaign-{request_id}",
            title=request.title,
            description=request.description,
            request=request,
            created_at=now,
            updated_at=now,
        )
        plan.transition(PlanStatus.QUEUED, at=now, note="goal submitted")
        self._plans[plan.id] = plan
        position = self._queue.enqueue(plan.id, front=options.priority == "high")
        self._log(MeshActivityType.GOAL_SUBMITTED, plan, title=plan.title, position=position)
        record_plan_status(status=PlanStatus.QUEUED.value)
        return GoalSubmission(
            request_id=request_id,
            plan_id=plan.id,
            queue_position=position,
            estimated_processing_seconds=position * self._settings.estimated_seconds_per_goal,
        )

    def has_capacity(self) -> bool:
        return self.executing_count + len(self._in_progress) < self._settings.max_concurrent_plans

    async def process_queue(self, *, max_items: int | None = None) -> list[GoalPlan]:
        """Decompose queued goals concurrently while execution capacity remains."""
        limit = max_items if max_items is not None else self._settings.max_goals_per_cycle
        batch: list[GoalPlan] = []
        while len(batch) < limit and self.has_capacity():
            plan_id = self._queue.pop()
            if plan_id is None:
                break
            plan = self._plans[plan_id]
            if plan.status is not PlanStatus.QUEUED:
                continue
            self._in_progress.add(plan_id)
            batch.append(plan)
        if not batch:
            return []
        await asyncio.gather(*(self._plan(plan) for plan in batch))
        return batch

    async def process_next(self) -> GoalPlan | None:
        processed = await self.process_queue(max_items=1)
        return processed[0] if processed else None

    async def _plan(self, plan: GoalPlan) -> None:
        try:
            await self._run_planning(plan)
        except Exception as exc:  # pragma: no cover - unexpected failure must still settle the plan
            logger.exception("plan_processing_failed", plan_id=plan.id, error=str(exc))
            if not plan.status.is_terminal:
                self.mark_failed(plan.id, f"Planning failed: {exc}")
        finally:
            self._in_progress.discard(plan.id)

    async def _run_planning(self, plan: GoalPlan) -> None:
        plan.planning_started_at = self._clock.now()
        plan.transition(PlanStatus.PLANNING, at=plan.planning_started_at)
        try:
            decision = await self._decompose_and_vote(plan, relaxed=False)
            if not decision.reached and self._settings.relaxed_retry_enabled and plan.status is PlanStatus.CONSENSUS:
                logger.info("plan_consensus_retry_relaxed", plan_id=plan.id, score=decision.score)
                plan.transition(PlanStatus.PLANNING, at=self._clock.now(), note="retrying with relaxed constraints")
                decision = await self._decompose_and_vote(plan, relaxed=True)
        except DecompositionError as exc:
            self.mark_failed(plan.id, str(exc))
            return

        if plan.status is not PlanStatus.CONSENSUS:
            # Superseded or stopped while planning.
            return
        if not decision.reached:
            error = ConsensusNotReachedError(decision.score, decision.threshold, relaxed=decision.relaxed)
            self._log(MeshActivityType.CONSENSUS_FAILED, plan, score=decision.score)
            self.mark_failed(plan.id, str(error))
            return

        now = self._clock.now()
        plan.consensus_score = decision.score
        plan.consensus_reached_at = now
        self._log(MeshActivityType.CONSENSUS_REACHED, plan, score=decision.score, relaxed=decision.relaxed)
        plan.transition(PlanStatus.EXECUTING, at=now, note=f"consensus {decision.score:.2f}")
        record_plan_status(status=PlanStatus.EXECUTING.value)
        for handler in list(self._acceptance_handlers):
            try:
                await handler(plan)
            except Exception as exc:
                logger.warning("plan_handoff_failed", plan_id=plan.id, error=str(exc))
                self.mark_failed(plan.id, f"Execution hand-off failed: {exc}")
                return
        self._log(MeshActivityType.EXECUTION_STARTED, plan, tasks=len(plan.task_ids))

    async def _decompose_and_vote(self, plan: GoalPlan, *, relaxed: bool) -> ConsensusDecision:
        decomposition = self._decomposer.decompose(plan, relaxed=relaxed)
        self._apply(plan, decomposition, relaxed=relaxed)
        plan.transition(PlanStatus.CONSENSUS, at=self._clock.now())
        self._log(
            MeshActivityType.PLAN_PROPOSED,
            plan,
            phases=len(plan.agent_sequence),
            complexity=decomposition.complexity.value,
            relaxed=relaxed,
        )
        decision = await self._consensus.decide(plan, relaxed=relaxed)
        plan.consensus = decision
        return decision

    @staticmethod
    def _apply(plan: GoalPlan, decomposition: Decomposition, *, relaxed: bool) -> None:
        plan.category = decomposition.category
        plan.subgoals = decomposition.subgoals
        plan.agent_sequence = decomposition.phases
        plan.complexity = decomposition.complexity
        plan.risk_assessment = decomposition.risk
        plan.risk_factors = list(decomposition.risk.factors)
        plan.success_metrics = decomposition.success_metrics
        plan.estimated_minutes = decomposition.estimated_minutes
        plan.relaxed = relaxed
        observe_plan_phases(complexity=decomposition.complexity.value, phases=len(decomposition.phases))

    def trigger_replanning(
        self,
        plan_id: str,
        reason: str,
        *,
        avoid_agent_types: Iterable[str] = (),
        source: ReplanSource = ReplanSource.MANUAL,
    ) -> str:
        plan = self.get_plan(plan_id)
        if plan.status is PlanStatus.SUPERSEDED:
            if plan.superseded_reason == reason and plan.superseded_by:
                return plan.superseded_by
            raise PlanStateError(f"Goal plan {plan_id} was already superseded by {plan.superseded_by}")
        if plan.status is PlanStatus.COMPLETED:
            raise PlanStateError(f"Goal plan {plan_id} already completed")

        now = self._clock.now()
        avoid = list(avoid_agent_types)
        request = plan.request.model_copy(
            update={"constraints": plan.request.constraints.with_replan(reason, avoid)},
        )
        replacement = GoalPlan(
            request_id=plan.request_id,
            campaign_id=plan.campaign_id,
            title=plan.title,
            description=plan.description,
            request=request,
            supersedes=plan.id,
            replan_generation=plan.replan_generation + 1,
            created_at=now,
            updated_at=now,
        )
        replacement.transition(PlanStatus.QUEUED, at=now, note=f"replanning: {reason}")
        self._plans[replacement.id] = replacement

        self._queue.remove(plan.id)
        plan.superseded_by = replacement.id
        plan.superseded_reason = reason
        plan.transition(PlanStatus.SUPERSEDED, at=now, note=reason)
        record_plan_status(status=PlanStatus.SUPERSEDED.value)
        increment_replan(source=source.value)
        self._queue.enqueue(replacement.id, front=True)
        self._log(
            MeshActivityType.REPLANNING_TRIGGERED,
            plan,
            reason=reason,
            new_plan_id=replacement.id,
            source=source.value,
        )
        logger.info(
            "plan_replanning_triggered",
            plan_id=plan.id,
            new_plan_id=replacement.id,
            reason=reason,
            source=source.value,
            avoid_agent_types=avoid,
        )
        return replacement.id

    def mark_completed(self, plan_id: str) -> GoalPlan:
        plan = self.get_plan(plan_id)
        if plan.status is not PlanStatus.EXECUTING:
            raise PlanStateError(f"Goal plan {plan_id} is {plan.status.value}, not executing")
        now = self._clock.now()
        plan.completed_at = now
        plan.transition(PlanStatus.COMPLETED, at=now)
        record_plan_status(status=PlanStatus.COMPLETED.value)
        self._log(MeshActivityType.PLAN_COMPLETED, plan)
        logger.info("plan_completed", plan_id=plan_id, campaign_id=plan.campaign_id)
        return plan

    def mark_failed(self, plan_id: str, reason: str) -> GoalPlan:
        plan = self.get_plan(plan_id)
        if plan.status.is_terminal:
            return plan
        now = self._clock.now()
        self._queue.remove(plan_id)
        plan.failure_reason = reason
        plan.completed_at = now
        plan.transition(PlanStatus.FAILED, at=now, note=reason)
        record_plan_status(status=PlanStatus.FAILED.value)
        self._log(MeshActivityType.PLAN_FAILED, plan, reason=reason)
        logger.warning("plan_failed", plan_id=plan_id, campaign_id=plan.campaign_id, reason=reason)
        return plan

    def fail_active_plans(self, campaign_ids: Iterable[str] | None, reason: str) -> list[str]:
        """Fail every non-terminal plan in scope; ``None`` means every campaign."""
        scope = set(campaign_ids) if campaign_ids is not None else None
        failed: list[str] = []
        for plan in list(self._plans.values()):
            if plan.status not in _ACTIVE_STATUSES:
                continue
            if scope is not None and plan.campaign_id not in scope:
                continue
            self.mark_failed(plan.id, reason)
            failed.append(plan.id)
        return failed

    def _log(self, activity: MeshActivityType, plan: GoalPlan, **details: object) -> None:
        self._activity.append(
            MeshActivity(type=activity, plan_id=plan.id, at=self._clock.now(), details=dict(details))
        )
