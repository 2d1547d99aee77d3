from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}


class CampaignStage(str, Enum):
    CREATIVE = "creative"
    LAUNCH = "launch"
    FEEDBACK = "feedback"
    OPTIMIZE = "optimize"
    ANALYZE = "analyze"


class TaskSource(str, Enum):
    MANUAL = "manual"
    TRIGGER = "trigger"
    PLAN = "plan"


class Comparator(str, Enum):
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"

    def holds(self, value: float, threshold: float) -> bool:
        if self is Comparator.LT:
            return value < threshold
        if self is Comparator.LTE:
            return value <= threshold
        if self is Comparator.GT:
            return value > threshold
        return value >= threshold


class EvaluationOutcome(str, Enum):
    FIRED = "fired"
    COOLDOWN_ACTIVE = "cooldown_active"
    CONDITION_NOT_MET = "condition_not_met"
    INACTIVE = "inactive"
    METRIC_UNAVAILABLE = "metric_unavailable"
    REJECTED = "rejected"


class GoalCategory(str, Enum):
    AWARENESS = "awareness"
    ENGAGEMENT = "engagement"
    CONVERSION = "conversion"
    RETENTION = "retention"
    GROWTH = "growth"


class GoalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def to_task_priority(self) -> TaskPriority:
        return {
            GoalPriority.LOW: TaskPriority.LOW,
            GoalPriority.MEDIUM: TaskPriority.MEDIUM,
            GoalPriority.HIGH: TaskPriority.HIGH,
            GoalPriority.CRITICAL: TaskPriority.URGENT,
        }[self]


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PlanStatus(str, Enum):
    QUEUED = "queued"
    PLANNING = "planning"
    CONSENSUS = "consensus"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in {PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.SUPERSEDED}


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class ReplanSource(str, Enum):
    MANUAL = "manual"
    BLOCKER_TIMEOUT = "blocker_timeout"
    RETRY_EXHAUSTED = "retry_exhausted"


class MeshActivityType(str, Enum):
    GOAL_SUBMITTED = "goal_submitted"
    PLAN_PROPOSED = "plan_proposed"
    CONSENSUS_REACHED = "consensus_reached"
    CONSENSUS_FAILED = "consensus_failed"
    EXECUTION_STARTED = "execution_started"
    REPLANNING_TRIGGERED = "replanning_triggered"
    PLAN_COMPLETED = "plan_completed"
    PLAN_FAILED = "plan_failed"


__all__ = [
    "TaskStatus",
    "TaskPriority",
    "CampaignStage",
    "TaskSource",
    "Comparator",
    "EvaluationOutcome",
    "GoalCategory",
    "GoalPriority",
    "Complexity",
    "RiskLevel",
    "PlanStatus",
    "ExecutionStatus",
    "ReplanSource",
    "MeshActivityType",
]
