from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..orchestration.exceptions import UnknownAgentTypeError


@dataclass(frozen=True, slots=True)
class AgentProfile:
    agent_type: str
    description: str
    capabilities: frozenset[str]
    fallbacks: tuple[str, ...] = ()
    max_concurrency: int | None = None
    tasks: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def covers(self, capabilities: Iterable[str]) -> int:
        return sum(1 for capability in capabilities if capability in self.capabilities)

    def tasks_for(self, capabilities: Iterable[str]) -> list[str]:
        """Concrete task descriptions this agent performs for the requested capabilities."""
        collected: list[str] = []
        for capability in capabilities:
            for task in self.tasks.get(capability, ()):
                if task not in collected:
                    collected.append(task)
        return collected


class CapabilityRegistry:
    """Immutable snapshot mapping agent types to capabilities and fallbacks.

    Built once from deployment configuration and injected into the scheduler, trigger engine,
    decomposer and monitor. Nothing mutates it at runtime; a new configuration produces a new
    snapshot with a bumped ``version``.
    """

    def __init__(self, profiles: Iterable[AgentProfile], *, version: str = "1") -> None:
        ordered: dict[str, AgentProfile] = {}
        for profile in profiles:
            if profile.agent_type in ordered:
                raise ValueError(f"Duplicate agent type in registry: {profile.agent_type}")
            ordered[profile.agent_type] = profile
        for profile in ordered.values():
            for fallback in profile.fallbacks:
                if fallback not in ordered:
                    raise ValueError(f"Fallback {fallback} of {profile.agent_type} is not registered")
        self._profiles: Mapping[str, AgentProfile] = MappingProxyType(ordered)
        self.version = version

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Mapping[str, Any]], *, version: str = "1") -> "CapabilityRegistry":
        profiles = []
        for agent_type, entry in payload.items():
            tasks = {key: tuple(value) for key, value in (entry.get("tasks") or {}).items()}
            profiles.append(
                AgentProfile(
                    agent_type=agent_type,
                    description=str(entry.get("description") or agent_type),
                    capabilities=frozenset(entry.get("capabilities") or ()),
                    fallbacks=tuple(entry.get("fallbacks") or ()),
                    max_concurrency=entry.get("max_concurrency"),
                    tasks=MappingProxyType(tasks),
                )
            )
        return cls(profiles, version=version)

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def agent_types(self) -> tuple[str, ...]:
        return tuple(self._profiles)

    def get(self, agent_type: str) -> AgentProfile:
        try:
            return self._profiles[agent_type]
        except KeyError:
            raise UnknownAgentTypeError(agent_type) from None

    def require(self, agent_type: str) -> None:
        self.get(agent_type)

    def fallbacks_for(self, agent_type: str) -> tuple[str, ...]:
        return self.get(agent_type).fallbacks

    def agents_for_capability(self, capability: str) -> list[str]:
        return [name for name, profile in self._profiles.items() if capability in profile.capabilities]

    def capable_agents(self, capabilities: Iterable[str], *, exclude: Iterable[str] = ()) -> list[AgentProfile]:
        """Agents covering at least one capability, best coverage first, registry order on ties."""
        wanted = list(capabilities)
        excluded = set(exclude)
        ranked = [
            (profile.covers(wanted), position, profile)
            for position, profile in enumerate(self._profiles.values())
            if profile.agent_type not in excluded
        ]
        ranked = [item for item in ranked if item[0] > 0]
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [profile for _, _, profile in ranked]


def _profile(
    agent_type: str,
    description: str,
    tasks: Mapping[str, tuple[str, ...]],
    fallbacks: tuple[str, ...],
) -> AgentProfile:
    return AgentProfile(
        agent_type=agent_type,
        description=description,
        capabilities=frozenset(tasks),
        fallbacks=fallbacks,
        tasks=MappingProxyType(dict(tasks)),
    )


def default_registry() -> CapabilityRegistry:
    """Marketing agent roster used when no registry configuration is supplied."""
    return CapabilityRegistry(
        [
            _profile(
                "trend_agent",
                "Tracks market trends and competitor movements.",
                {
                    "trend_analysis": ("Identify trending topics for the target audience",),
                    "market_intelligence": ("Summarize market signals",),
                    "competitive_research": ("Benchmark competitor campaigns",),
                },
                ("insight_agent",),
            ),
            _profile(
                "insight_agent",
                "Analyzes campaign performance and audience data.",
                {
                    "market_intelligence": ("Segment the target audience",),
                    "data_analysis": ("Analyze campaign performance data",),
                    "performance_monitoring": ("Track KPI movement against targets",),
                    "competitive_research": ("Compare performance with industry benchmarks",),
                },
                ("trend_agent", "metric_agent"),
            ),
            _profile(
                "goal_planner_agent",
                "Turns business goals into campaign strategy.",
                {
                    "strategic_planning": ("Draft campaign strategy and channel mix",),
                    "goal_optimization": ("Set measurable objectives and milestones",),
                },
                ("insight_agent",),
            ),
            _profile(
                "brand_voice_agent",
                "Keeps messaging aligned with brand guidelines.",
                {
                    "brand_alignment": ("Define messaging pillars and tone of voice",),
                    "brand_amplification": ("Review outgoing content for brand consistency",),
                },
                ("content_agent",),
            ),
            _profile(
                "content_agent",
                "Produces campaign copy and content calendars.",
                {
                    "content_creation": ("Write campaign copy variations",),
                    "creative_planning": ("Build the content calendar",),
                    "platform_optimization": ("Adapt content to each platform",),
                    "campaign_execution": ("Publish scheduled content",),
                    "brand_amplification": ("Produce brand storytelling pieces",),
                },
                ("design_agent", "social_agent"),
            ),
            _profile(
                "design_agent",
                "Produces visual assets.",
                {
                    "content_creation": ("Create visual assets for each channel",),
                    "creative_planning": ("Prepare creative briefs",),
                },
                ("content_agent",),
            ),
            _profile(
                "ad_agent",
                "Manages paid campaigns, budgets and bidding.",
                {
                    "campaign_management": ("Configure paid campaign structure and budgets",),
                    "conversion_optimization": ("Optimize bids for conversion",),
                    "funnel_management": ("Build retargeting funnels",),
                    "campaign_execution": ("Launch paid campaigns",),
                    "reach_optimization": ("Expand audience reach",),
                    "scale_management": ("Scale winning ad sets",),
                    "growth_hacking": ("Run growth experiments",),
                },
                ("seo_agent",),
            ),
            _profile(
                "seo_agent",
                "Optimizes organic discovery and tracking.",
                {
                    "analytics_setup": ("Configure conversion tracking",),
                    "platform_optimization": ("Optimize landing pages for search",),
                    "optimization_tuning": ("Tune keywords from performance data",),
                    "reach_optimization": ("Improve organic visibility",),
                },
                ("ad_agent",),
            ),
            _profile(
                "social_agent",
                "Publishes and engages on social channels.",
                {
                    "campaign_execution": ("Schedule social posts",),
                    "community_engagement": ("Respond to community conversations",),
                    "brand_amplification": ("Coordinate influencer amplification",),
                    "interaction_optimization": ("Optimize posting times for engagement",),
                },
                ("content_agent",),
            ),
            _profile(
                "email_agent",
                "Runs lifecycle email programs.",
                {
                    "campaign_execution": ("Send campaign email sequences",),
                    "relationship_building": ("Build nurture sequences",),
                    "customer_nurturing": ("Personalize retention offers",),
                    "automation_config": ("Configure marketing automation workflows",),
                },
                ("content_agent",),
            ),
            _profile(
                "support_agent",
                "Handles customer conversations and quality checks.",
                {
                    "relationship_building": ("Follow up with engaged customers",),
                    "customer_nurturing": ("Resolve customer questions during the campaign",),
                    "quality_assurance": ("Run pre-launch quality checks",),
                },
                ("email_agent",),
            ),
            _profile(
                "metric_agent",
                "Collects and reports campaign metrics.",
                {
                    "performance_monitoring": ("Monitor live campaign metrics",),
                    "data_analysis": ("Report on metric anomalies",),
                    "optimization_tuning": ("Recommend optimizations from metric trends",),
                    "analytics_setup": ("Set up campaign dashboards",),
                },
                ("insight_agent",),
            ),
        ],
        version="default-1",
    )


__all__ = ["AgentProfile", "CapabilityRegistry", "default_registry"]
