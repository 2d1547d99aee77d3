from __future__ import annotations

from collections.abc import Iterable


class OrchestrationError(RuntimeError):
    """Base class for campaign orchestration failures."""


class TaskGraphError(OrchestrationError):
    """Raised when a submission would corrupt a campaign's task graph."""


class CyclicDependencyError(TaskGraphError):
    """Raised when submitted tasks form a dependency cycle."""

    def __init__(self, task_ids: Iterable[str]) -> None:
        self.task_ids = tuple(task_ids)
        super().__init__(f"Cyclic dependency detected between tasks: {', '.join(self.task_ids)}")


class MissingDependencyError(TaskGraphError):
    """Raised when a task depends on an id unknown to its campaign."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"Task {task_id} depends on unknown task {dependency_id}")


class DuplicateTaskError(TaskGraphError):
    """Raised when a task id is submitted twice."""


class UnknownAgentTypeError(OrchestrationError):
    """Raised when an agent type is absent from the capability registry."""

    def __init__(self, agent_type: str) -> None:
        self.agent_type = agent_type
        super().__init__(f"Unknown agent type: {agent_type}")


class TaskNotFoundError(OrchestrationError):
    """Raised when a task id cannot be resolved."""


class TriggerNotFoundError(OrchestrationError):
    """Raised when a trigger id cannot be resolved."""


class RetryExhaustedError(OrchestrationError):
    """Terminal task failure after the retry cap was reached.

    Never raised out of the scheduler; its message is recorded as the failed task's reason.
    """

    def __init__(self, task_id: str, attempts: int, last_error: str | None) -> None:
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Task {task_id} failed after {attempts} attempt(s){detail}")


class PlanningError(OrchestrationError):
    """Base class for goal planning failures."""


class DecompositionError(PlanningError):
    """Raised when a goal cannot be decomposed into a valid agent sequence."""


class ConsensusNotReachedError(PlanningError):
    """Raised when proposing agents do not reach the quorum threshold."""

    def __init__(self, score: float, threshold: float, *, relaxed: bool = False) -> None:
        self.score = score
        self.threshold = threshold
        self.relaxed = relaxed
        mode = "relaxed" if relaxed else "strict"
        super().__init__(f"Consensus score {score:.2f} below quorum {threshold:.2f} ({mode} round)")


class PlanNotFoundError(PlanningError):
    """Raised when a goal plan id cannot be resolved."""


class PlanStateError(PlanningError):
    """Raised when an operation is not valid for the plan's current status."""


class EmergencyStopInProgress(OrchestrationError):
    """Raised when work is submitted to a halted campaign or a halted system."""

    def __init__(self, scope: str) -> None:
        self.scope = scope
        super().__init__(f"Emergency stop active for {scope}")


__all__ = [
    "OrchestrationError",
    "TaskGraphError",
    "CyclicDependencyError",
    "MissingDependencyError",
    "DuplicateTaskError",
    "UnknownAgentTypeError",
    "TaskNotFoundError",
    "TriggerNotFoundError",
    "RetryExhaustedError",
    "PlanningError",
    "DecompositionError",
    "ConsensusNotReachedError",
    "PlanNotFoundError",
    "PlanStateError",
    "EmergencyStopInProgress",
]
