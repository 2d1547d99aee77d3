from __future__ import annotations

from dataclasses import asdict
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.logging import get_logger
from ..dependencies import get_coordinator
from ..orchestration.coordinator import SYSTEM_SCOPE, CampaignCoordinator
from ..orchestration.exceptions import (
    EmergencyStopInProgress,
    OrchestrationError,
    PlanNotFoundError,
    PlanStateError,
    TaskGraphError,
    TaskNotFoundError,
    TriggerNotFoundError,
    UnknownAgentTypeError,
)
from ..schemas.api import (
    BlockerBody,
    EmergencyStopRequest,
    EmergencyStopResponse,
    GoalSubmitRequest,
    ReplanBody,
    ReplanResponse,
    TaskBatchRequest,
    TaskBatchResponse,
    TickResponse,
    TriggerToggleRequest,
)
from ..schemas.goals import GoalPlan, GoalSubmission, MeshActivity
from ..schemas.monitor import BlockerReport, CoordinationState, ExecutionMonitorEntry
from ..schemas.tasks import AgentTask
from ..schemas.triggers import EvaluationResult, Trigger, TriggerDefinition

logger = get_logger(name=__name__)

router = APIRouter()


def _raise_http(exc: OrchestrationError) -> NoReturn:
    if isinstance(exc, (TaskNotFoundError, TriggerNotFoundError, PlanNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (PlanStateError, EmergencyStopInProgress)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (TaskGraphError, UnknownAgentTypeError)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=str(exc)) from exc


@router.get("/health", tags=["health"])
async def health(coordinator: CampaignCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return coordinator.health_check()


@router.post("/campaigns/{campaign_id}/tasks", response_model=TaskBatchResponse, tags=["tasks"])
async def submit_tasks(
    campaign_id: str,
    payload: TaskBatchRequest,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> TaskBatchResponse:
    try:
        task_ids = await coordinator.submit_tasks(campaign_id, payload.tasks)
    except OrchestrationError as exc:
        _raise_http(exc)
    return TaskBatchResponse(campaign_id=campaign_id, task_ids=task_ids)


@router.post("/campaigns/{campaign_id}/tick", response_model=TickResponse, tags=["tasks"])
async def tick_campaign(
    campaign_id: str,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> TickResponse:
    started = await coordinator.tick(campaign_id)
    return TickResponse(campaign_id=campaign_id, started=started)


@router.get("/tasks/{task_id}", response_model=AgentTask, tags=["tasks"])
async def get_task(task_id: str, coordinator: CampaignCoordinator = Depends(get_coordinator)) -> AgentTask:
    try:
        return coordinator.get_task_status(task_id)
    except OrchestrationError as exc:
        _raise_http(exc)


@router.get("/tasks/{task_id}/history", tags=["tasks"])
async def get_task_history(
    task_id: str,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> list[dict[str, Any]]:
    try:
        events = coordinator.get_task_history(task_id)
    except OrchestrationError as exc:
        _raise_http(exc)
    return [asdict(event) for event in events]


@router.post("/campaigns/{campaign_id}/triggers", response_model=Trigger, status_code=status.HTTP_201_CREATED, tags=["triggers"])
async def register_trigger(
    campaign_id: str,
    definition: TriggerDefinition,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> Trigger:
    try:
        trigger_id = coordinator.register_trigger(campaign_id, definition)
    except OrchestrationError as exc:
        _raise_http(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return coordinator.get_trigger(trigger_id)


@router.post(
    "/campaigns/{campaign_id}/triggers/evaluate",
    response_model=list[EvaluationResult],
    tags=["triggers"],
)
async def evaluate_triggers(
    campaign_id: str,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> list[EvaluationResult]:
    return await coordinator.evaluate_triggers(campaign_id)


@router.get("/campaigns/{campaign_id}/triggers/log", response_model=list[EvaluationResult], tags=["triggers"])
async def get_trigger_log(
    campaign_id: str,
    limit: int | None = Query(default=None, ge=1),
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> list[EvaluationResult]:
    return coordinator.get_trigger_log(campaign_id, limit=limit)


@router.patch("/triggers/{trigger_id}", response_model=Trigger, tags=["triggers"])
async def toggle_trigger(
    trigger_id: str,
    payload: TriggerToggleRequest,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> Trigger:
    try:
        return coordinator.set_trigger_active(trigger_id, payload.active)
    except OrchestrationError as exc:
        _raise_http(exc)


@router.post("/goals", response_model=GoalSubmission, status_code=status.HTTP_202_ACCEPTED, tags=["goals"])
async def submit_goal(
    payload: GoalSubmitRequest,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> GoalSubmission:
    try:
        submission = coordinator.submit_goal(payload.goal, payload.options)
    except OrchestrationError as exc:
        _raise_http(exc)
    logger.info("goal_submitted", plan_id=submission.plan_id, queue_position=submission.queue_position)
    return submission


@router.get("/goals/{plan_id}", response_model=GoalPlan, tags=["goals"])
async def get_goal_plan(plan_id: str, coordinator: CampaignCoordinator = Depends(get_coordinator)) -> GoalPlan:
    try:
        return coordinator.get_goal_plan(plan_id)
    except OrchestrationError as exc:
        _raise_http(exc)


@router.post("/goals/{plan_id}/replan", response_model=ReplanResponse, tags=["goals"])
async def replan_goal(
    plan_id: str,
    payload: ReplanBody,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> ReplanResponse:
    try:
        new_plan_id = coordinator.trigger_replanning(
            plan_id,
            payload.reason,
            avoid_agent_types=payload.avoid_agent_types,
        )
    except OrchestrationError as exc:
        _raise_http(exc)
    return ReplanResponse(plan_id=plan_id, new_plan_id=new_plan_id)


@router.get("/goals/{plan_id}/blockers", response_model=BlockerReport, tags=["monitoring"])
async def get_blockers(plan_id: str, coordinator: CampaignCoordinator = Depends(get_coordinator)) -> BlockerReport:
    try:
        return coordinator.get_blockers(plan_id)
    except OrchestrationError as exc:
        _raise_http(exc)


@router.post("/goals/{plan_id}/blockers", response_model=ExecutionMonitorEntry, tags=["monitoring"])
async def report_blocker(
    plan_id: str,
    payload: BlockerBody,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> ExecutionMonitorEntry:
    try:
        return coordinator.report_blocker(plan_id, payload.code, agent_type=payload.agent_type)
    except OrchestrationError as exc:
        _raise_http(exc)


@router.get("/monitors", response_model=list[ExecutionMonitorEntry], tags=["monitoring"])
async def list_monitors(coordinator: CampaignCoordinator = Depends(get_coordinator)) -> list[ExecutionMonitorEntry]:
    return coordinator.get_execution_monitors()


@router.get("/coordination/state", response_model=CoordinationState, tags=["monitoring"])
async def coordination_state(coordinator: CampaignCoordinator = Depends(get_coordinator)) -> CoordinationState:
    return coordinator.get_coordination_state()


@router.get("/mesh/activity", response_model=list[MeshActivity], tags=["goals"])
async def mesh_activity(
    limit: int | None = Query(default=50, ge=1),
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> list[MeshActivity]:
    return coordinator.get_mesh_activity(limit=limit)


@router.post("/emergency-stop", response_model=EmergencyStopResponse, tags=["control"])
async def emergency_stop(
    payload: EmergencyStopRequest,
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> EmergencyStopResponse:
    stopped = await coordinator.emergency_stop(payload.scope, reason=payload.reason)
    return EmergencyStopResponse(scope=payload.scope or SYSTEM_SCOPE, stopped=stopped)


@router.delete("/emergency-stop", status_code=status.HTTP_204_NO_CONTENT, tags=["control"])
async def release_emergency_stop(
    scope: str | None = Query(default=None),
    coordinator: CampaignCoordinator = Depends(get_coordinator),
) -> None:
    coordinator.release_emergency_stop(scope)
