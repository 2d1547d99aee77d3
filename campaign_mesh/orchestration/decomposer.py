from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ..agents.registry import CapabilityRegistry
from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..schemas.goals import AgentPhase, GoalPlan, GoalPlanRequest, RiskAssessment, Subgoal
from .enums import CampaignStage, Complexity, GoalCategory, GoalPriority, RiskLevel
from .exceptions import DecompositionError

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class SubgoalTemplate:
    key: str
    title: str
    description: str
    capabilities: tuple[str, ...]
    priority: int
    minutes: float
    success_criteria: tuple[str, ...]
    produces: str
    consumes: tuple[str, ...] = ()
    stage: CampaignStage = CampaignStage.LAUNCH
    categories: frozenset[GoalCategory] | None = None


_RESEARCH = SubgoalTemplate(
    key="research_analysis",
    title="Market research & analysis",
    description="Analyze market conditions, competitors and the target audience",
    capabilities=("trend_analysis", "market_intelligence", "competitive_research"),
    priority=10,
    minutes=60,
    success_criteria=("Market landscape mapped", "Target audience defined", "Competitor benchmarks collected"),
    produces="market_insights",
    stage=CampaignStage.ANALYZE,
)

_STRATEGY = SubgoalTemplate(
    key="strategy_development",
    title="Strategy development",
    description="Turn research insights into a campaign strategy and messaging",
    capabilities=("strategic_planning", "brand_alignment", "goal_optimization"),
    priority=9,
    minutes=90,
    success_criteria=("Channel strategy approved", "Messaging aligned with brand", "Measurable objectives set"),
    produces="strategy",
    consumes=("market_insights",),
    stage=CampaignStage.CREATIVE,
)

_CONTENT = SubgoalTemplate(
    key="content_strategy",
    title="Content strategy & creation",
    description="Plan and produce the campaign content across platforms",
    capabilities=("content_creation", "creative_planning", "platform_optimization"),
    priority=8,
    minutes=120,
    success_criteria=("Content calendar ready", "Assets produced for every platform"),
    produces="content_assets",
    consumes=("strategy",),
    stage=CampaignStage.CREATIVE,
    categories=frozenset({GoalCategory.AWARENESS, GoalCategory.ENGAGEMENT}),
)

_SETUP = SubgoalTemplate(
    key="campaign_setup",
    title="Campaign setup",
    description="Configure campaigns, tracking and automation",
    capabilities=("campaign_management", "analytics_setup", "automation_config"),
    priority=8,
    minutes=90,
    success_criteria=("Tracking verified", "Campaign structure configured", "Automations tested"),
    produces="tracking",
    consumes=("strategy",),
    stage=CampaignStage.LAUNCH,
    categories=frozenset({GoalCategory.CONVERSION, GoalCategory.GROWTH}),
)

_LAUNCH = SubgoalTemplate(
    key="execution_launch",
    title="Execution & launch",
    description="Launch the campaign and run quality checks",
    capabilities=("campaign_execution", "quality_assurance"),
    priority=7,
    minutes=240,
    success_criteria=("Campaign live on all planned channels", "Launch checklist passed"),
    produces="launch",
    consumes=("strategy", "content_assets", "tracking"),
    stage=CampaignStage.LAUNCH,
)

_MONITORING = SubgoalTemplate(
    key="monitoring_optimization",
    title="Monitoring & optimization",
    description="Track performance and tune the running campaign",
    capabilities=("performance_monitoring", "data_analysis", "optimization_tuning"),
    priority=6,
    minutes=180,
    success_criteria=("KPIs tracked daily", "Optimizations applied from performance data"),
    produces="performance_report",
    consumes=("launch",),
    stage=CampaignStage.OPTIMIZE,
)

DEFAULT_TEMPLATES: tuple[SubgoalTemplate, ...] = (_RESEARCH, _STRATEGY, _CONTENT, _SETUP, _LAUNCH, _MONITORING)

_CATEGORY_CAPABILITIES: dict[GoalCategory, tuple[str, ...]] = {
    GoalCategory.AWARENESS: ("brand_amplification", "reach_optimization"),
    GoalCategory.ENGAGEMENT: ("community_engagement", "interaction_optimization"),
    GoalCategory.CONVERSION: ("conversion_optimization", "funnel_management"),
    GoalCategory.RETENTION: ("relationship_building", "customer_nurturing"),
    GoalCategory.GROWTH: ("scale_management", "growth_hacking"),
}

_LAUNCH_MINUTES: dict[GoalPriority, float] = {
    GoalPriority.CRITICAL: 60,
    GoalPriority.HIGH: 120,
    GoalPriority.MEDIUM: 240,
    GoalPriority.LOW: 480,
}

_SUCCESS_METRICS: dict[GoalCategory, tuple[str, ...]] = {
    GoalCategory.AWARENESS: ("Brand reach increased", "Impressions grow week over week"),
    GoalCategory.ENGAGEMENT: ("Engagement rate above baseline", "Community interactions increase"),
    GoalCategory.CONVERSION: ("Conversion rate improves", "Cost per acquisition decreases"),
    GoalCategory.RETENTION: ("Churn rate decreases", "Repeat purchase rate increases"),
    GoalCategory.GROWTH: ("Active customers grow", "Market share expands"),
}

_RISK_MITIGATIONS: dict[str, str] = {
    "tight_timeline": "Stage deliverables and pre-approve creative to protect quality",
    "missing_targets": "Agree measurable conversion targets before launch",
    "high_complexity": "Add review checkpoints between dependent phases",
    "human_oversight": "Route key approvals to the campaign owner",
    "limited_budget": "Prioritize organic channels and cap paid spend",
    "avoided_agents": "Give fallback agents' output an extra review",
    "replanned": "Monitor the previously blocked step closely",
}


class GoalAnalyzer(Protocol):
    def categorize(self, request: GoalPlanRequest) -> GoalCategory:
        ...


class KeywordGoalAnalyzer:
    """Deterministic category inference for goals submitted without an explicit category."""

    KEYWORDS: Mapping[GoalCategory, tuple[str, ...]] = {
        GoalCategory.CONVERSION: ("conversion", "sales", "leads", "revenue", "signup", "purchase"),
        GoalCategory.RETENTION: ("retention", "loyalty", "churn", "repeat", "renewal"),
        GoalCategory.GROWTH: ("growth", "scale", "expand", "market share", "new market"),
        GoalCategory.ENGAGEMENT: ("engagement", "interaction", "community", "followers", "comments"),
        GoalCategory.AWARENESS: ("awareness", "visibility", "reach", "brand", "impressions"),
    }

    def categorize(self, request: GoalPlanRequest) -> GoalCategory:
        if request.category is not None:
            return request.category
        text = f"{request.title} {request.description}".lower()
        scores = {
            category: sum(1 for keyword in keywords if keyword in text)
            for category, keywords in self.KEYWORDS.items()
        }
        best = max(scores.items(), key=lambda item: item[1])
        return best[0] if best[1] > 0 else GoalCategory.AWARENESS


@dataclass(slots=True)
class Decomposition:
    category: GoalCategory
    subgoals: list[Subgoal]
    phases: list[AgentPhase]
    complexity: Complexity
    risk: RiskAssessment
    success_metrics: list[str]
    estimated_minutes: float
    notes: list[str] = field(default_factory=list)


def topological_order(phases: Sequence[AgentPhase]) -> list[int]:
    """Kahn ordering of phase indices; raises when the dependencies contain a cycle."""
    indices = [phase.index for phase in phases]
    indegree = {index: 0 for index in indices}
    dependents: dict[int, list[int]] = {index: [] for index in indices}
    for phase in phases:
        for dependency in phase.depends_on:
            if dependency not in indegree:
                raise DecompositionError(f"Phase {phase.index} depends on unknown phase {dependency}")
            indegree[phase.index] += 1
            dependents[dependency].append(phase.index)
    ready = [index for index in indices if indegree[index] == 0]
    ordered: list[int] = []
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if len(ordered) != len(indices):
        raise DecompositionError("Agent sequence contains a dependency cycle")
    return ordered


def is_valid_order(order: Sequence[int], phases: Sequence[AgentPhase]) -> bool:
    """True when ``order`` lists every phase once and respects every phase dependency."""
    if sorted(order) != sorted(phase.index for phase in phases):
        return False
    position = {index: slot for slot, index in enumerate(order)}
    return all(position[dependency] < position[phase.index] for phase in phases for dependency in phase.depends_on)


class GoalDecomposer:
    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        settings: PlanningSettings,
        analyzer: GoalAnalyzer | None = None,
        templates: Sequence[SubgoalTemplate] = DEFAULT_TEMPLATES,
    ) -> None:
        self._registry = registry
        self._settings = settings
        self._analyzer = analyzer or KeywordGoalAnalyzer()
        self._templates = tuple(templates)

    def decompose(self, plan: GoalPlan, *, relaxed: bool = False) -> Decomposition:
        request = plan.request
        category = self._analyzer.categorize(request)
        subgoals = self._build_subgoals(request, category, relaxed=relaxed)
        if not subgoals:
            raise DecompositionError(f"No subgoals apply to goal '{request.title}'")
        avoid = list(request.constraints.avoid_agent_types)
        phases = self._build_phases(subgoals, avoid=avoid)
        order = topological_order(phases)
        phases = self._reindex(phases, order)

        base_minutes = sum(phase.estimated_minutes for phase in phases)
        complexity = self._classify(len(subgoals), len(phases), base_minutes)
        multiplier = self._settings.complexity_multipliers.get(complexity.value, 1.0)
        estimated = base_minutes * multiplier * (self._settings.replan_buffer ** plan.replan_generation)
        risk = self._assess_risk(request, category, complexity, subgoals, avoid)
        notes = ["relaxed constraints"] if relaxed else []
        logger.info(
            "goal_decomposed",
            plan_id=plan.id,
            category=category.value,
            subgoals=len(subgoals),
            phases=len(phases),
            complexity=complexity.value,
            relaxed=relaxed,
        )
        return Decomposition(
            category=category,
            subgoals=subgoals,
            phases=phases,
            complexity=complexity,
            risk=risk,
            success_metrics=self._success_metrics(category, request.target_metrics),
            estimated_minutes=round(estimated, 2),
            notes=notes,
        )

    def _build_subgoals(self, request: GoalPlanRequest, category: GoalCategory, *, relaxed: bool) -> list[Subgoal]:
        selected = [
            template
            for template in self._templates
            if template.categories is None or category in template.categories
        ]
        max_phases = request.constraints.max_phases
        if max_phases is not None and not relaxed and len(selected) > max_phases:
            keep = sorted(selected, key=lambda template: -template.priority)[:max_phases]
            selected = [template for template in selected if template in keep]

        subgoals: list[Subgoal] = []
        for template in selected:
            capabilities = list(template.capabilities)
            minutes = template.minutes
            if template.key == _LAUNCH.key:
                capabilities.extend(_CATEGORY_CAPABILITIES.get(category, ()))
                minutes = _LAUNCH_MINUTES[request.priority]
            subgoals.append(
                Subgoal(
                    id=template.key,
                    title=template.title,
                    description=template.description,
                    required_capabilities=capabilities,
                    priority=template.priority,
                    estimated_minutes=minutes,
                    success_criteria=list(template.success_criteria),
                    produces=template.produces,
                    consumes=list(template.consumes),
                    stage=template.stage,
                )
            )
        return subgoals

    def _build_phases(self, subgoals: Sequence[Subgoal], *, avoid: Iterable[str]) -> list[AgentPhase]:
        avoided = set(avoid)
        producers: dict[str, int] = {}
        phases: list[AgentPhase] = []
        for index, subgoal in enumerate(subgoals):
            candidates = self._registry.capable_agents(subgoal.required_capabilities, exclude=avoided)
            if not candidates:
                raise DecompositionError(
                    f"No available agent type covers {', '.join(subgoal.required_capabilities)} for {subgoal.id}"
                )
            primary = candidates[0]
            fallbacks: list[str] = []
            for name in [*primary.fallbacks, *(candidate.agent_type for candidate in candidates[1:])]:
                if name != primary.agent_type and name not in avoided and name not in fallbacks:
                    fallbacks.append(name)
            tasks = primary.tasks_for(subgoal.required_capabilities) or [subgoal.description]
            depends_on = sorted({producers[artifact] for artifact in subgoal.consumes if artifact in producers})
            phases.append(
                AgentPhase(
                    index=index,
                    subgoal_id=subgoal.id,
                    agent_type=primary.agent_type,
                    tasks=tasks,
                    depends_on=depends_on,
                    estimated_minutes=subgoal.estimated_minutes,
                    fallback_agent_types=fallbacks[: self._settings.max_fallbacks_per_phase],
                    required_capabilities=list(subgoal.required_capabilities),
                    stage=subgoal.stage,
                )
            )
            producers[subgoal.produces] = index
        return phases

    @staticmethod
    def _reindex(phases: list[AgentPhase], order: list[int]) -> list[AgentPhase]:
        if order == [phase.index for phase in phases]:
            return phases
        remap = {old: new for new, old in enumerate(order)}
        by_index = {phase.index: phase for phase in phases}
        return [
            by_index[old].model_copy(
                update={"index": remap[old], "depends_on": sorted(remap[dep] for dep in by_index[old].depends_on)}
            )
            for old in order
        ]

    @staticmethod
    def _classify(subgoal_count: int, phase_count: int, minutes: float) -> Complexity:
        if subgoal_count <= 3 and phase_count <= 3 and minutes <= 180:
            return Complexity.LOW
        if subgoal_count <= 5 and phase_count <= 6 and minutes <= 360:
            return Complexity.MEDIUM
        if subgoal_count <= 8 and phase_count <= 10 and minutes <= 900:
            return Complexity.HIGH
        return Complexity.CRITICAL

    @staticmethod
    def _assess_risk(
        request: GoalPlanRequest,
        category: GoalCategory,
        complexity: Complexity,
        subgoals: Sequence[Subgoal],
        avoid: Sequence[str],
    ) -> RiskAssessment:
        factors: list[tuple[str, str]] = []
        if request.priority is GoalPriority.CRITICAL:
            factors.append(("tight_timeline", "Tight timeline may impact quality"))
        if category in {GoalCategory.CONVERSION, GoalCategory.GROWTH} and not request.target_metrics:
            factors.append(("missing_targets", "No specific conversion targets defined"))
        if complexity is Complexity.CRITICAL or len(subgoals) > 6:
            factors.append(("high_complexity", "High plan complexity increases coordination overhead"))
        if request.priority is GoalPriority.CRITICAL or category is GoalCategory.CONVERSION:
            factors.append(("human_oversight", "Requires human oversight for critical decisions"))
        budget = request.constraints.budget
        if budget is not None and budget < 1000:
            factors.append(("limited_budget", "Limited budget constrains paid reach"))
        if avoid:
            factors.append(("avoided_agents", f"Operating without agent types: {', '.join(avoid)}"))
        for note in request.constraints.notes:
            factors.append(("replanned", f"Adjusted after replanning: {note}"))

        if len(factors) >= 4:
            level = RiskLevel.HIGH
        elif len(factors) >= 2:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW
        mitigations = list(dict.fromkeys(_RISK_MITIGATIONS[code] for code, _ in factors))
        return RiskAssessment(level=level, factors=[text for _, text in factors], mitigations=mitigations)

    @staticmethod
    def _success_metrics(category: GoalCategory, targets: Mapping[str, float]) -> list[str]:
        metrics = list(_SUCCESS_METRICS.get(category, ()))
        metrics.extend(f"{name} reaches {value:g}" for name, value in targets.items())
        return metrics
