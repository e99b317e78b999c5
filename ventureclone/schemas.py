"""Pydantic request/response schemas for the VentureClone API.

Wire names are camelCase; stored JSON uses the same names so a model can be
rebuilt from a ``*_json`` column with ``model_validate``.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ventureclone.utils import is_valid_http_url

Level = Literal["low", "medium", "high"]
Priority = Literal["high", "medium", "low"]
StageStatus = Literal["pending", "in_progress", "completed", "failed"]
ProviderName = Literal["openai", "anthropic", "gemini", "grok"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        """Serialize with wire names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# First-party data and structured analysis
# ---------------------------------------------------------------------------


class FirstPartyData(CamelModel):
    title: str = ""
    description: str = ""
    h1: str = ""
    text_snippet: str = ""
    url: str = ""


class Source(CamelModel):
    url: str
    excerpt: str = Field(min_length=10, max_length=300)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        if not is_valid_http_url(v):
            raise ValueError("source url must be an http(s) URL")
        return v


class Competitor(CamelModel):
    name: str
    url: str | None = None
    notes: str | None = None


class Swot(CamelModel):
    strengths: list[str] = []
    weaknesses: list[str] = []
    opportunities: list[str] = []
    threats: list[str] = []


class Overview(CamelModel):
    value_proposition: str
    target_audience: str
    monetization: str


class Market(CamelModel):
    competitors: list[Competitor] = []
    swot: Swot


class DetectedTechnology(CamelModel):
    name: str
    categories: list[str] = []
    confidence: int = Field(default=100, ge=0, le=100)
    version: str | None = None
    website: str | None = None
    icon: str | None = None


class TechDetectionResult(CamelModel):
    technologies: list[DetectedTechnology] = []
    content_type: str | None = None
    detected_at: str
    success: bool


class Technical(CamelModel):
    tech_stack: list[str] | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    ui_colors: list[str] | None = None
    key_pages: list[str] | None = None
    detected_technologies: list[DetectedTechnology] | None = None
    detection_attempted: bool | None = None
    detection_failed: bool | None = None


class TrafficEstimate(CamelModel):
    value: str
    source: str | None = None


class KeyMetric(CamelModel):
    name: str
    value: str
    source: str | None = None
    as_of: str | None = None


class DataSection(CamelModel):
    traffic_estimates: TrafficEstimate | None = None
    key_metrics: list[KeyMetric] | None = None


class Synthesis(CamelModel):
    summary: str
    key_insights: list[str] = []
    next_actions: list[str] = []


class StructuredAnalysis(CamelModel):
    overview: Overview
    market: Market
    technical: Technical | None = None
    data: DataSection | None = None
    synthesis: Synthesis
    sources: list[Source] = []


# ---------------------------------------------------------------------------
# Workflow stages
# ---------------------------------------------------------------------------


class StageData(CamelModel):
    stage_number: int = Field(ge=1, le=6)
    stage_name: str
    status: StageStatus
    content: dict[str, Any]
    generated_at: str
    completed_at: str | None = None


class AutomationPotential(CamelModel):
    score: float = Field(ge=0, le=1)
    opportunities: list[str]


class ResourceRequirements(CamelModel):
    time: str
    money: str
    skills: list[str]


class EffortRewardContent(CamelModel):
    effort_score: float = Field(ge=1, le=10)
    reward_score: float = Field(ge=1, le=10)
    recommendation: Literal["go", "no-go", "maybe"]
    reasoning: str
    automation_potential: AutomationPotential
    resource_requirements: ResourceRequirements
    next_steps: list[str]


class MvpTechStack(CamelModel):
    frontend: list[str]
    backend: list[str]
    infrastructure: list[str]


class MvpPhase(CamelModel):
    phase: str
    duration: str
    deliverables: list[str]


class MvpPlanContent(CamelModel):
    core_features: list[str]
    nice_to_haves: list[str]
    tech_stack: MvpTechStack
    timeline: list[MvpPhase]
    estimated_cost: str


class ValidationMethod(CamelModel):
    method: str
    description: str
    cost: str
    timeline: str


class SuccessMetric(CamelModel):
    metric: str
    target: str
    measurement: str


class BudgetItem(CamelModel):
    item: str
    cost: str


class ValidationBudget(CamelModel):
    total: str
    breakdown: list[BudgetItem]


class DemandTestingContent(CamelModel):
    testing_methods: list[ValidationMethod]
    success_metrics: list[SuccessMetric]
    budget: ValidationBudget
    timeline: str


class GrowthChannel(CamelModel):
    channel: str
    strategy: str
    priority: Priority


class Milestone(CamelModel):
    milestone: str
    timeline: str
    metrics: list[str]


class ResourceScaling(CamelModel):
    phase: str
    team: list[str]
    infrastructure: str


class ScalingContent(CamelModel):
    growth_channels: list[GrowthChannel]
    milestones: list[Milestone]
    resource_scaling: list[ResourceScaling]


class AutomationOpportunity(CamelModel):
    process: str
    tool: str
    roi: str
    priority: int = Field(ge=1, le=10)


class ImplementationPhase(CamelModel):
    phase: str
    automations: list[str]
    timeline: str


class AutomationContent(CamelModel):
    automation_opportunities: list[AutomationOpportunity]
    implementation_plan: list[ImplementationPhase]
    estimated_savings: str


STAGE_CONTENT_MODELS: dict[int, type[CamelModel]] = {
    2: EffortRewardContent,
    3: MvpPlanContent,
    4: DemandTestingContent,
    5: ScalingContent,
    6: AutomationContent,
}


# ---------------------------------------------------------------------------
# Complexity, clonability, insights
# ---------------------------------------------------------------------------


class ComplexityFactors(CamelModel):
    custom_code: bool
    framework_complexity: Level
    infrastructure_complexity: Level


class ComplexityResult(CamelModel):
    score: int = Field(ge=1, le=10)
    factors: ComplexityFactors


class LayerScore(CamelModel):
    score: int
    max: int
    technologies: list[str] = []


class ComplexityBreakdown(CamelModel):
    frontend: LayerScore
    backend: LayerScore
    infrastructure: LayerScore


class EnhancedComplexityFactors(ComplexityFactors):
    technology_count: int
    licensing_complexity: bool


class EnhancedComplexityResult(CamelModel):
    score: int = Field(ge=1, le=10)
    breakdown: ComplexityBreakdown
    factors: EnhancedComplexityFactors
    explanation: str


class ScoreComponent(CamelModel):
    score: int
    weight: float


class ClonabilityComponents(CamelModel):
    technical_complexity: ScoreComponent
    market_opportunity: ScoreComponent
    resource_requirements: ScoreComponent
    time_to_market: ScoreComponent


class ClonabilityScore(CamelModel):
    score: int = Field(ge=1, le=10)
    rating: Literal["very-difficult", "difficult", "moderate", "easy", "very-easy"]
    components: ClonabilityComponents
    recommendation: str
    confidence: float = Field(ge=0, le=1)


class TimeEstimate(CamelModel):
    minimum: str
    maximum: str
    realistic: str


class CostEstimate(CamelModel):
    development: str
    infrastructure: str
    maintenance: str
    total: str


class TeamSize(CamelModel):
    minimum: int
    recommended: int


class ProjectEstimates(CamelModel):
    time_estimate: TimeEstimate
    cost_estimate: CostEstimate
    team_size: TeamSize


class SkillRequirement(CamelModel):
    skill: str
    proficiency: Literal["beginner", "intermediate", "advanced", "expert"]
    category: str
    estimated_learning_time: str | None = None


class BuildBuyCost(CamelModel):
    build: str
    buy: str


class BuildVsBuyRecommendation(CamelModel):
    technology: str
    recommendation: Literal["build", "buy", "hybrid"]
    reasoning: str
    alternatives: list[str] = []
    estimated_cost: BuildBuyCost | None = None


class Recommendation(CamelModel):
    priority: Priority
    category: str
    title: str
    description: str
    impact: str


class TechnologyInsights(CamelModel):
    alternatives: dict[str, list[str]] = {}
    build_vs_buy: list[BuildVsBuyRecommendation] = []
    skills: list[SkillRequirement] = []
    estimates: ProjectEstimates
    recommendations: list[Recommendation] = []
    summary: str


class DayPlan(CamelModel):
    day: int = Field(ge=1, le=7)
    tasks: list[str] = Field(min_length=1, max_length=3)


class BusinessImprovement(CamelModel):
    twists: list[str] = Field(min_length=3, max_length=3)
    seven_day_plan: list[DayPlan] = Field(min_length=7, max_length=7)
    generated_at: str

    @field_validator("seven_day_plan")
    @classmethod
    def days_in_order(cls, v: list[DayPlan]) -> list[DayPlan]:
        if [d.day for d in v] != list(range(1, 8)):
            raise ValueError("seven day plan must cover days 1 through 7 in order")
        return v


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------


class AnalyzeRequest(CamelModel):
    url: str = Field(min_length=1, max_length=2048)
    goal: str | None = None


class ImproveRequest(CamelModel):
    goal: str | None = Field(default=None, max_length=500)


class StageRequest(CamelModel):
    user_input: str | None = None
    regenerate: bool = False


class AIProviderCreate(CamelModel):
    provider: ProviderName
    api_key: str = Field(min_length=1)
    model: str = ""
    is_active: bool = True


class AIProviderUpdate(CamelModel):
    api_key: str | None = None
    model: str | None = None
    is_active: bool | None = None


class AIProviderCheck(CamelModel):
    provider: ProviderName
    api_key: str | None = None
    model: str = ""


class AIProviderCheckOut(CamelModel):
    success: bool
    message: str


class AIProviderOut(CamelModel):
    id: int
    provider: str
    model: str
    api_key: str  # masked
    is_active: bool
    created_at: str | None = None


class AnalysisOut(CamelModel):
    id: str
    url: str
    summary: str
    model: str
    business_model: str = ""
    revenue_stream: str = ""
    target_market: str = ""
    overall_score: float | None = None
    structured: dict[str, Any] | None = None
    first_party_data: dict[str, Any] | None = None
    current_stage: int
    stages: dict[str, Any] = {}
    clonability_score: dict[str, Any] | None = None
    enhanced_complexity: dict[str, Any] | None = None
    insights: dict[str, Any] | None = None
    improvements: dict[str, Any] | None = None
    detection_status: str
    created_at: str | None = None
    updated_at: str | None = None


class ProgressOut(CamelModel):
    current_stage: int
    completed_stages: list[int]
    total_stages: int
    is_complete: bool
    next_stage: int | None = None


class StagesOut(CamelModel):
    stages: dict[str, Any]
    progress: ProgressOut


class StageOut(CamelModel):
    stage_number: int
    stage_name: str
    status: str
    content: dict[str, Any]
    generated_at: str
    completed_at: str | None = None
    current_stage: int


class InsightsOut(CamelModel):
    insights: TechnologyInsights
    enhanced_complexity: EnhancedComplexityResult
    cached: bool = False


class CacheStatsOut(CamelModel):
    hits: int
    misses: int
    evictions: int
    size: int
    hit_rate: float


class HealthOut(CamelModel):
    ok: bool
    storage: str
    providers: dict[str, bool]


class ErrorOut(BaseModel):
    error: str
    code: str
    requestId: str
