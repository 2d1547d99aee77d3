from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASK_TRANSITIONS_TOTAL = Counter(
    "campaign_mesh_task_transitions_total",
    "Task status transitions grouped by agent type and target status",
    labelnames=("agent_type", "status"),
)

TASK_DURATION_SECONDS = Histogram(
    "campaign_mesh_task_duration_seconds",
    "Wall-clock duration of successful agent task attempts",
    labelnames=("agent_type",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 1800, float("inf")),
)

AGENT_INFLIGHT_GAUGE = Gauge(
    "campaign_mesh_agent_inflight",
    "Agent invocations currently in flight per agent type",
    labelnames=("agent_type",),
)

TASK_SUBMISSIONS_TOTAL = Counter(
    "campaign_mesh_task_submissions_total",
    "Tasks accepted into a campaign DAG grouped by source",
    labelnames=("source",),
)

TASK_REJECTIONS_TOTAL = Counter(
    "campaign_mesh_task_rejections_total",
    "Task submissions rejected at submission time grouped by reason",
    labelnames=("reason",),
)

TRIGGER_EVALUATIONS_TOTAL = Counter(
    "campaign_mesh_trigger_evaluations_total",
    "Trigger evaluations grouped by outcome",
    labelnames=("outcome",),
)

PLAN_OUTCOMES_TOTAL = Counter(
    "campaign_mesh_plan_outcomes_total",
    "Goal plan status changes grouped by status",
    labelnames=("status",),
)

PLAN_PHASES = Histogram(
    "campaign_mesh_plan_phases",
    "Number of phases produced per decomposed goal plan",
    labelnames=("complexity",),
    buckets=(0, 1, 2, 3, 4, 5, 6, 8, 10, 13),
)

CONSENSUS_SCORE = Histogram(
    "campaign_mesh_consensus_score",
    "Consensus score per consensus round",
    labelnames=("mode",),
    buckets=(0.0, 0.2, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

REPLANS_TOTAL = Counter(
    "campaign_mesh_replans_total",
    "Replanning requests grouped by source",
    labelnames=("source",),
)

EMERGENCY_STOPS_TOTAL = Counter(
    "campaign_mesh_emergency_stops_total",
    "Emergency stops grouped by scope",
    labelnames=("scope",),
)

EMERGENCY_STOPPED_OPERATIONS_TOTAL = Counter(
    "campaign_mesh_emergency_stopped_operations_total",
    "Operations halted by emergency stops",
)

COORDINATION_ACTIVE_PLANS = Gauge(
    "campaign_mesh_active_plans",
    "Goal plans currently executing",
)

COORDINATION_QUEUED_GOALS = Gauge(
    "campaign_mesh_queued_goals",
    "Goal submissions waiting for decomposition",
)

COORDINATION_LOAD_RATIO = Gauge(
    "campaign_mesh_load_ratio",
    "In-flight invocations relative to total agent concurrency",
)

COORDINATION_SUCCESS_RATE = Gauge(
    "campaign_mesh_plan_success_rate",
    "Rolling success rate over recently finished goal plans",
)


def record_task_transition(*, agent_type: str, status: str) -> None:
    TASK_TRANSITIONS_TOTAL.labels(agent_type=agent_type, status=status).inc()


def observe_task_duration(*, agent_type: str, seconds: float) -> None:
    TASK_DURATION_SECONDS.labels(agent_type=agent_type).observe(max(0.0, seconds))


def set_agent_inflight(*, agent_type: str, count: int) -> None:
    AGENT_INFLIGHT_GAUGE.labels(agent_type=agent_type).set(count)


def increment_task_submission(*, source: str, count: int = 1) -> None:
    if count > 0:
        TASK_SUBMISSIONS_TOTAL.labels(source=source).inc(count)


def increment_task_rejection(*, reason: str) -> None:
    TASK_REJECTIONS_TOTAL.labels(reason=reason).inc()


def record_trigger_evaluation(*, outcome: str) -> None:
    TRIGGER_EVALUATIONS_TOTAL.labels(outcome=outcome).inc()


def record_plan_status(*, status: str) -> None:
    PLAN_OUTCOMES_TOTAL.labels(status=status).inc()


def observe_plan_phases(*, complexity: str, phases: int) -> None:
    PLAN_PHASES.labels(complexity=complexity).observe(phases)


def observe_consensus_score(*, mode: str, score: float) -> None:
    CONSENSUS_SCORE.labels(mode=mode).observe(score)


def increment_replan(*, source: str) -> None:
    REPLANS_TOTAL.labels(source=source).inc()


def record_emergency_stop(*, scope: str, stopped: int) -> None:
    EMERGENCY_STOPS_TOTAL.labels(scope=scope).inc()
    if stopped > 0:
        EMERGENCY_STOPPED_OPERATIONS_TOTAL.inc(stopped)


def record_coordination_state(
    *,
    active_plans: int,
    queued_goals: int,
    load_ratio: float,
    success_rate: float,
) -> None:
    COORDINATION_ACTIVE_PLANS.set(active_plans)
    COORDINATION_QUEUED_GOALS.set(queued_goals)
    COORDINATION_LOAD_RATIO.set(load_ratio)
    COORDINATION_SUCCESS_RATE.set(success_rate)
