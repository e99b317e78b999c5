"""Technology insights: alternatives, build-vs-buy, skills, estimates, recommendations.

Everything here is derived from the knowledge base; no LLM is involved.
``TechnologyInsightsService.generate_insights`` never raises: a failed
generation degrades to fallback insights and then to a minimal stub.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Sequence

from ventureclone.insights_cache import InsightsCache, insights_cache
from ventureclone.knowledge_base import TechnologyKnowledgeBase, TechnologyProfile, knowledge_base
from ventureclone.retry import retry_call
from ventureclone.schemas import (
    BuildBuyCost,
    BuildVsBuyRecommendation,
    CostEstimate,
    DetectedTechnology,
    ProjectEstimates,
    Recommendation,
    SkillRequirement,
    TeamSize,
    TechnologyInsights,
    TimeEstimate,
)
from ventureclone.utils import format_weeks, round_half_up

log = logging.getLogger(__name__)

SLOW_GENERATION_MS = 500

_PROFICIENCY = {
    "very-easy": "beginner",
    "easy": "beginner",
    "medium": "intermediate",
    "hard": "advanced",
    "very-hard": "expert",
}
_LEARNING_TIME = {
    "very-easy": "1-2 weeks",
    "easy": "2-4 weeks",
    "medium": "1-2 months",
    "hard": "2-4 months",
    "very-hard": "4-6 months",
}
_PROFICIENCY_ORDER = {"expert": 0, "advanced": 1, "intermediate": 2, "beginner": 3}
_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

_COST_VALUES = {
    "very-low": 1,
    "low": 2,
    "low-to-medium": 2.5,
    "medium": 3,
    "medium-to-high": 3.5,
    "high": 4,
    "very-high": 5,
    "free-to-low": 1.5,
    "free-to-medium": 2,
    "variable": 3,
}
_COST_TIERS = ["very-low", "low", "medium", "high", "very-high"]

COST_RANGES = {
    "development": {
        "very-low": "$5,000-$15,000",
        "low": "$15,000-$30,000",
        "medium": "$30,000-$75,000",
        "high": "$75,000-$150,000",
        "very-high": "$150,000+",
    },
    "infrastructure": {
        "very-low": "$0-$50/month",
        "low": "$50-$200/month",
        "medium": "$200-$1,000/month",
        "high": "$1,000-$5,000/month",
        "very-high": "$5,000+/month",
    },
    "maintenance": {
        "very-low": "$500-$2,000/month",
        "low": "$2,000-$5,000/month",
        "medium": "$5,000-$15,000/month",
        "high": "$15,000-$30,000/month",
        "very-high": "$30,000+/month",
    },
}

_DOLLAR_RE = re.compile(r"\$([0-9,]+)")


def _skill(skill: str, proficiency: str, category: str, learning: str) -> SkillRequirement:
    return SkillRequirement(skill=skill, proficiency=proficiency, category=category,
                            estimated_learning_time=learning)


def normalize_category_name(category: str) -> str:
    """``frontend-framework`` -> ``Frontend Framework``."""
    return " ".join(w[:1].upper() + w[1:] for w in category.split("-"))


def build_vs_buy_decision(profile: TechnologyProfile) -> tuple[str, str]:
    """Return ``(recommendation, reasoning)`` for one knowledge-base profile."""
    category = profile.category.lower()
    difficulty = profile.difficulty.lower()

    if "auth" in category:
        return "buy", ("Authentication is security-critical and better handled by specialized "
                       "services. Building custom auth increases security risks and maintenance burden.")
    if "hosting" in category or "platform" in category:
        return "buy", ("Infrastructure and hosting are best left to specialized providers. Building "
                       "your own hosting infrastructure is not cost-effective for most projects.")
    if "payment" in category or "commerce" in category:
        return "buy", ("Payment processing requires PCI compliance and is highly regulated. Use "
                       "established payment providers to ensure security and compliance.")
    if "email" in category or "messaging" in category:
        return "buy", ("Email deliverability is complex. Using established email services ensures "
                       "better inbox placement and reduces spam issues.")
    if "database" in category:
        if difficulty in ("hard", "very-hard"):
            return "buy", ("Complex database setups benefit from managed services. They provide "
                           "automatic backups, scaling, and maintenance.")
        return "hybrid", ("Consider managed database services for production reliability, but "
                          "self-hosting is viable for simpler setups or development.")
    if any(k in category for k in ("framework", "frontend", "backend")):
        if difficulty in ("very-easy", "easy"):
            return "build", ("This framework is beginner-friendly and well-documented. Building "
                             "with it gives you full control and customization.")
        if difficulty in ("hard", "very-hard"):
            return "hybrid", ("Consider using templates, boilerplates, or hiring experienced "
                              "developers to accelerate development with this complex framework.")
        return "build", ("Building with this framework provides flexibility and control. The "
                         "learning curve is manageable with available resources.")
    return "build", ("This technology is best implemented as part of your custom solution to "
                     "maintain flexibility and control.")


def estimate_saas_cost(profile: TechnologyProfile) -> str:
    category = profile.category.lower()
    if "authentication" in category:
        return "free-to-medium ($0-$100/month for small apps)"
    if "hosting" in category:
        return profile.cost_estimate.get("hosting", "variable")
    if "database" in category:
        return "low-to-medium ($10-$200/month depending on scale)"
    if "email" in category:
        return "low ($10-$50/month for moderate volume)"
    return "variable (depends on usage and provider)"


def related_skills(profile: TechnologyProfile) -> list[SkillRequirement]:
    category = profile.category.lower()
    name = profile.name.lower()
    skills: list[SkillRequirement] = []

    if "frontend" in category:
        skills.append(_skill("JavaScript/TypeScript", "intermediate", "Programming Language", "1-2 months"))
        skills.append(_skill("HTML/CSS", "intermediate", "Web Fundamentals", "2-4 weeks"))

    if "backend" in category:
        if "express" in name or "node" in name:
            skills.append(_skill("Node.js", "intermediate", "Backend Runtime", "1-2 months"))
        if "django" in name or "flask" in name:
            skills.append(_skill("Python", "intermediate", "Programming Language", "1-2 months"))
        if "rails" in name:
            skills.append(_skill("Ruby", "intermediate", "Programming Language", "1-2 months"))
        if "laravel" in name:
            skills.append(_skill("PHP", "intermediate", "Programming Language", "1-2 months"))
        skills.append(_skill("REST API Design", "intermediate", "Architecture", "2-4 weeks"))

    if "database" in category:
        if "mongo" in name or "couch" in name:
            skills.append(_skill("NoSQL Concepts", "beginner", "Database", "1-2 weeks"))
        else:
            skills.append(_skill("SQL", "intermediate", "Database", "2-4 weeks"))

    if "hosting" in category or "platform" in category:
        skills.append(_skill("DevOps Basics", "beginner", "Infrastructure", "2-4 weeks"))
        if profile.difficulty in ("hard", "very-hard"):
            skills.append(_skill("Cloud Architecture", "advanced", "Infrastructure", "2-4 months"))

    return skills


def average_cost_level(levels: Sequence[str]) -> str:
    values = [_COST_VALUES.get(level.lower(), 3) for level in levels]
    index = round_half_up(sum(values) / len(values)) - 1
    return _COST_TIERS[index] if 0 <= index < len(_COST_TIERS) else "medium"


def raise_cost_level(level: str) -> str:
    if level not in _COST_TIERS or level == _COST_TIERS[-1]:
        return level
    return _COST_TIERS[_COST_TIERS.index(level) + 1]


def first_year_total(development: str, infrastructure: str, maintenance: str) -> str:
    def minimum(text: str) -> int:
        m = _DOLLAR_RE.search(text)
        return int(m.group(1).replace(",", "")) if m else 0

    total = minimum(development) + 12 * minimum(infrastructure) + 12 * minimum(maintenance)
    if total < 50_000:
        return "$25,000-$75,000 (first year)"
    if total < 150_000:
        return "$75,000-$200,000 (first year)"
    if total < 300_000:
        return "$200,000-$500,000 (first year)"
    return "$500,000+ (first year)"


def estimate_savings(count: int) -> str:
    if count == 1:
        return "$5,000-$15,000"
    if count == 2:
        return "$15,000-$30,000"
    if count >= 3:
        return "$30,000-$50,000"
    return "$5,000+"


class TechnologyInsightsService:
    max_attempts = 2
    retry_delay = 0.1

    def __init__(self, kb: TechnologyKnowledgeBase | None = None, cache: InsightsCache | None = None):
        self.kb = kb or knowledge_base
        self.cache = cache if cache is not None else insights_cache

    def generate_insights(self, technologies: Sequence[DetectedTechnology],
                          complexity: int) -> TechnologyInsights:
        start = time.monotonic()
        try:
            names = [t.name for t in technologies]
            cached = self.cache.get(names)
            if cached is not None:
                log.info("Insights served from cache for %d technologies", len(names))
                return cached
            if not self.kb.loaded:
                self.kb.load()
            insights = retry_call(
                lambda: self.build_insights(technologies, complexity),
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                label="Insights generation",
            )
            self.cache.set(names, insights, "generated")
        except Exception:
            log.exception("Insights generation failed for %d technologies", len(technologies))
            return self.fallback_insights(technologies, complexity)

        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > SLOW_GENERATION_MS:
            log.warning("Insights generation took %.0fms (target: <%dms)", elapsed_ms, SLOW_GENERATION_MS)
        log.info("Generated insights for %d technologies in %.0fms", len(technologies), elapsed_ms)
        return insights

    def build_insights(self, technologies: Sequence[DetectedTechnology],
                       complexity: int) -> TechnologyInsights:
        """Generate insights from the knowledge base. May raise."""
        alternatives = {}
        for tech in technologies:
            profile = self.kb.get(tech.name)
            if profile is not None and profile.alternatives:
                alternatives[tech.name] = list(profile.alternatives)

        build_vs_buy = self.analyze_build_vs_buy(technologies)
        skills = self.extract_skill_requirements(technologies)
        estimates = self.calculate_estimates(technologies, complexity)
        recommendations = self.generate_recommendations(build_vs_buy, skills, complexity)
        return TechnologyInsights(
            alternatives=alternatives,
            build_vs_buy=build_vs_buy,
            skills=skills,
            estimates=estimates,
            recommendations=recommendations,
            summary=self.summarize(len(technologies), complexity, recommendations),
        )

    def analyze_build_vs_buy(self, technologies: Sequence[DetectedTechnology]) -> list[BuildVsBuyRecommendation]:
        result = []
        for tech in technologies:
            profile = self.kb.get(tech.name)
            if profile is None:
                continue
            decision, reasoning = build_vs_buy_decision(profile)
            result.append(BuildVsBuyRecommendation(
                technology=tech.name,
                recommendation=decision,
                reasoning=reasoning,
                alternatives=list(profile.alternatives),
                estimated_cost=BuildBuyCost(
                    build=profile.cost_estimate.get("development", "medium"),
                    buy=estimate_saas_cost(profile),
                ),
            ))
        return result

    def extract_skill_requirements(self, technologies: Sequence[DetectedTechnology]) -> list[SkillRequirement]:
        skills: dict[str, SkillRequirement] = {}
        for tech in technologies:
            profile = self.kb.get(tech.name)
            if profile is None:
                continue
            key = f"{profile.name}-{normalize_category_name(profile.category)}"
            if key not in skills:
                skills[key] = _skill(
                    profile.name,
                    _PROFICIENCY.get(profile.difficulty.lower(), "intermediate"),
                    normalize_category_name(profile.category),
                    _LEARNING_TIME.get(profile.difficulty.lower(), "1-2 months"),
                )
            for extra in related_skills(profile):
                skills.setdefault(f"{extra.skill}-{extra.category}", extra)
        return sorted(skills.values(),
                      key=lambda s: (_PROFICIENCY_ORDER[s.proficiency], s.category))

    def calculate_estimates(self, technologies: Sequence[DetectedTechnology],
                            complexity: int) -> ProjectEstimates:
        return ProjectEstimates(
            time_estimate=self._estimate_time(complexity, len(technologies)),
            cost_estimate=self._estimate_cost(complexity, technologies),
            team_size=self._estimate_team_size(complexity, technologies),
        )

    def _estimate_time(self, complexity: int, tech_count: int) -> TimeEstimate:
        if complexity <= 3:
            weeks = 4
        elif complexity <= 6:
            weeks = 12
        else:
            weeks = 24
        weeks = round_half_up(weeks * (1 + min(tech_count / 10, 2) * 0.3))
        return TimeEstimate(
            minimum=format_weeks(round_half_up(weeks * 0.7)),
            maximum=format_weeks(round_half_up(weeks * 1.5)),
            realistic=format_weeks(weeks),
        )

    def _estimate_cost(self, complexity: int, technologies: Sequence[DetectedTechnology]) -> CostEstimate:
        profiles = [p for p in (self.kb.get(t.name) for t in technologies) if p is not None]
        dev = infra = maint = "medium"
        if profiles:
            dev = average_cost_level([p.cost_estimate.get("development", "medium") for p in profiles])
            infra = average_cost_level([p.cost_estimate.get("hosting", "medium") for p in profiles])
            maint = average_cost_level([p.cost_estimate.get("maintenance", "medium") for p in profiles])
        if complexity >= 8:
            dev = raise_cost_level(dev)
            maint = raise_cost_level(maint)

        development = COST_RANGES["development"][dev]
        infrastructure = COST_RANGES["infrastructure"][infra]
        maintenance = COST_RANGES["maintenance"][maint]
        return CostEstimate(
            development=development,
            infrastructure=infrastructure,
            maintenance=maintenance,
            total=first_year_total(development, infrastructure, maintenance),
        )

    def _estimate_team_size(self, complexity: int, technologies: Sequence[DetectedTechnology]) -> TeamSize:
        if complexity <= 3:
            minimum, recommended = 1, 1
        elif complexity <= 6:
            minimum, recommended = 1, 2
        elif complexity <= 8:
            minimum, recommended = 2, 3
        else:
            minimum, recommended = 3, 5
        categories = {p.category for p in (self.kb.get(t.name) for t in technologies) if p is not None}
        if len(categories) > 5:
            recommended += 1
        return TeamSize(minimum=minimum, recommended=recommended)

    def generate_recommendations(self, build_vs_buy: Sequence[BuildVsBuyRecommendation],
                                 skills: Sequence[SkillRequirement],
                                 complexity: int) -> list[Recommendation]:
        recs: list[Recommendation] = []

        buy = [b.technology for b in build_vs_buy if b.recommendation == "buy"]
        if buy:
            recs.append(Recommendation(
                priority="high", category="Architecture", title="Leverage SaaS Solutions",
                description=f"Use managed services for {', '.join(buy)} to reduce development "
                            "time and maintenance burden.",
                impact=f"Could save {estimate_savings(len(buy))} in development costs and reduce "
                       "time to market by 30-50%.",
            ))
        if complexity >= 7:
            recs.append(Recommendation(
                priority="high", category="Strategy", title="Build an MVP First",
                description="Given the high complexity, start with a Minimum Viable Product focusing "
                            "on core features. This reduces risk and allows for faster validation.",
                impact="Reduces initial development time by 40-60% and allows for early user feedback.",
            ))
        advanced = [s.skill for s in skills if s.proficiency in ("advanced", "expert")]
        if advanced:
            recs.append(Recommendation(
                priority="high", category="Team", title="Address Skill Gaps",
                description=f"Consider hiring or training for: {', '.join(advanced[:3])}. "
                            "These are critical for successful implementation.",
                impact="Proper expertise can reduce development time by 30% and improve code "
                       "quality significantly.",
            ))
        if complexity >= 5:
            recs.append(Recommendation(
                priority="medium", category="Development", title="Use Starter Templates",
                description="Leverage existing templates and boilerplates for your tech stack to "
                            "accelerate initial setup and follow best practices.",
                impact="Can save 1-2 weeks of initial setup time and ensure proper project structure.",
            ))
        if complexity >= 6:
            recs.append(Recommendation(
                priority="medium", category="Infrastructure", title="Implement Infrastructure as Code",
                description="Use tools like Terraform or AWS CDK to manage infrastructure. This "
                            "ensures reproducibility and easier scaling.",
                impact="Reduces deployment errors by 70% and makes scaling much easier.",
            ))
        if complexity >= 5:
            recs.append(Recommendation(
                priority="medium", category="Quality", title="Invest in Automated Testing",
                description="Set up comprehensive testing (unit, integration, e2e) early. This is "
                            "crucial for maintaining quality as complexity grows.",
                impact="Reduces bugs in production by 60% and makes refactoring safer.",
            ))
        if complexity >= 6:
            recs.append(Recommendation(
                priority="medium", category="Operations", title="Set Up Monitoring Early",
                description="Implement logging, monitoring, and error tracking from day one. Tools "
                            "like Sentry, DataDog, or New Relic are essential.",
                impact="Reduces mean time to resolution (MTTR) by 50% and improves user experience.",
            ))
        with_alts = [b for b in build_vs_buy if b.alternatives]
        if with_alts:
            example = with_alts[0]
            recs.append(Recommendation(
                priority="low", category="Technology", title="Evaluate Technology Alternatives",
                description=f"Consider alternatives like {' or '.join(example.alternatives[:2])} for "
                            f"{example.technology}. They might better fit your team's expertise or "
                            "project requirements.",
                impact="Could reduce learning curve and improve development velocity.",
            ))

        return sorted(recs, key=lambda r: _PRIORITY_ORDER[r.priority])

    @staticmethod
    def summarize(tech_count: int, complexity: int, recommendations: Sequence[Recommendation]) -> str:
        if complexity <= 3:
            parts = ["This is a relatively simple stack that can be cloned with basic development skills."]
        elif complexity <= 6:
            parts = ["This is a moderately complex stack requiring solid full-stack development experience."]
        else:
            parts = ["This is a highly complex stack that will require an experienced team and "
                     "significant resources."]
        parts.append(f"The stack uses {tech_count} detected technologies across multiple categories.")
        if recommendations:
            top = recommendations[0]
            parts.append(f"Key recommendation: {top.title} - {top.description}")
        return " ".join(parts)

    # -- degraded output ----------------------------------------------------

    def fallback_insights(self, technologies: Sequence[DetectedTechnology],
                          complexity: int) -> TechnologyInsights:
        log.info("Generating fallback insights")
        try:
            level = "simple" if complexity <= 3 else "moderate" if complexity <= 6 else "complex"
            return TechnologyInsights(
                skills=basic_skills(technologies),
                estimates=default_estimates(complexity),
                recommendations=FALLBACK_RECOMMENDATIONS,
                summary=(f"This stack uses {len(technologies)} detected technologies with {level} "
                         "complexity. Detailed insights are limited, but the analysis suggests careful "
                         "planning and potentially consulting with experienced developers for "
                         "successful implementation."),
            )
        except Exception:
            log.exception("Fallback insights generation failed")
            return minimal_insights()


FALLBACK_RECOMMENDATIONS = [
    Recommendation(
        priority="high", category="Notice", title="Limited Insights Available",
        description="Detailed technology insights could not be generated. The analysis continues "
                    "with basic recommendations.",
        impact="Some advanced recommendations may not be available. Consider manual research for "
               "specific technologies.",
    ),
    Recommendation(
        priority="medium", category="Strategy", title="Start with MVP",
        description="Focus on core features first to validate the concept before building the full solution.",
        impact="Reduces initial development time and allows for early user feedback.",
    ),
    Recommendation(
        priority="medium", category="Development", title="Use Established Technologies",
        description="Stick to well-documented, popular technologies to ensure good community support.",
        impact="Easier to find resources, tutorials, and developers familiar with the stack.",
    ),
]


def basic_skills(technologies: Sequence[DetectedTechnology]) -> list[SkillRequirement]:
    """Name-based skills used when the knowledge base is unavailable."""
    skills: dict[str, SkillRequirement] = {}
    for tech in technologies:
        name = tech.name.lower()
        if any(k in name for k in ("react", "vue", "angular")):
            skills.setdefault("Frontend Development", _skill(
                "Frontend Development", "intermediate", "Frontend", "2-3 months"))
        if any(k in name for k in ("node", "express", "django")):
            skills.setdefault("Backend Development", _skill(
                "Backend Development", "intermediate", "Backend", "2-3 months"))
        if any(k in name for k in ("postgres", "mysql", "mongo")):
            skills.setdefault("Database Management", _skill(
                "Database Management", "beginner", "Database", "1-2 months"))
    if not skills:
        return [_skill("Full-Stack Development", "intermediate", "General", "3-6 months")]
    return list(skills.values())


def default_estimates(complexity: int) -> ProjectEstimates:
    weeks = round_half_up(12 * complexity / 5)
    simple = complexity <= 5
    return ProjectEstimates(
        time_estimate=TimeEstimate(
            minimum=format_weeks(round_half_up(weeks * 0.7)),
            maximum=format_weeks(round_half_up(weeks * 1.5)),
            realistic=format_weeks(weeks),
        ),
        cost_estimate=CostEstimate(
            development="$15,000-$50,000" if simple else "$50,000-$150,000",
            infrastructure="$100-$500/month",
            maintenance="$2,000-$10,000/month",
            total="$50,000-$150,000 (first year)" if simple else "$150,000-$500,000 (first year)",
        ),
        team_size=TeamSize(minimum=1 if simple else 2, recommended=2 if simple else 3),
    )


def minimal_insights() -> TechnologyInsights:
    return TechnologyInsights(
        estimates=ProjectEstimates(
            time_estimate=TimeEstimate(minimum="3 months", maximum="12 months", realistic="6 months"),
            cost_estimate=CostEstimate(
                development="$30,000-$100,000",
                infrastructure="$100-$1,000/month",
                maintenance="$5,000-$20,000/month",
                total="$100,000-$300,000 (first year)",
            ),
            team_size=TeamSize(minimum=1, recommended=2),
        ),
        recommendations=[Recommendation(
            priority="high", category="Notice", title="Insights Unavailable",
            description="Technology insights could not be generated. Please review the detected "
                        "technologies manually.",
            impact="Manual analysis required for accurate planning.",
        )],
        summary="Technology insights are temporarily unavailable. The analysis continues with basic information.",
    )


insights_service = TechnologyInsightsService()


def warm_insights_cache(complexity: int = 5) -> int:
    """Pre-generate insights for common stacks into the shared cache."""
    def generate(names: list[str]) -> TechnologyInsights:
        techs = [DetectedTechnology(name=n) for n in names]
        return insights_service.build_insights(techs, complexity)

    return insights_service.cache.warm(generate)
