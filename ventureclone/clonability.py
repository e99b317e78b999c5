"""Clonability score: a weighted 1..10 rating of how feasible a business is to replicate.

Four component scores, each 1..10, are combined with fixed weights. Missing
inputs give the neutral score 5 instead of raising.
"""
from __future__ import annotations

from ventureclone.schemas import (
    ClonabilityComponents,
    ClonabilityScore,
    ProjectEstimates,
    ScoreComponent,
    StructuredAnalysis,
)
from ventureclone.utils import first_dollar_amount, parse_time_to_weeks, round_half_up

WEIGHTS = {
    "technical_complexity": 0.4,
    "market_opportunity": 0.3,
    "resource_requirements": 0.2,
    "time_to_market": 0.1,
}

NEUTRAL = 5

RECOMMENDATIONS = {
    "very-easy": (
        "Excellent cloning opportunity! This business has low technical complexity, good market "
        "opportunity, and reasonable resource requirements. Start with an MVP to validate the "
        "concept quickly."
    ),
    "easy": (
        "Good cloning opportunity. The business is feasible to clone with moderate effort. Focus on "
        "building an MVP first and leverage SaaS solutions to reduce complexity."
    ),
    "moderate": (
        "Moderate cloning opportunity. This will require significant effort and resources. Consider "
        "starting with a simplified version focusing on core features, and evaluate if you have the "
        "necessary skills and budget."
    ),
    "difficult-technical": (
        "Challenging opportunity due to high technical complexity. Consider partnering with "
        "experienced developers or finding a simpler business to clone. If you proceed, plan for a "
        "longer timeline and higher costs."
    ),
    "difficult-market": (
        "Challenging opportunity due to difficult market conditions. The market may be crowded or "
        "have significant barriers. Consider if you can bring unique value or find a niche angle "
        "before proceeding."
    ),
    "difficult": (
        "Challenging opportunity. This business will require substantial resources, time, and "
        "expertise. Carefully evaluate if you have the necessary commitment before proceeding."
    ),
    "very-difficult": (
        "Not recommended for cloning. This business has very high complexity, significant resource "
        "requirements, or unfavorable market conditions. Consider finding a simpler opportunity that "
        "better matches your resources and timeline."
    ),
}


def _clamp(value: float, low: int = 1, high: int = 10) -> int:
    return max(low, min(high, round_half_up(value)))


def technical_score(complexity: int | None) -> int:
    """Inverted complexity: complexity 1 scores 10, complexity 10 scores 1."""
    if complexity is None:
        complexity = NEUTRAL
    return 11 - max(1, min(10, int(complexity)))


def market_score(analysis: StructuredAnalysis | None) -> int:
    if analysis is None or analysis.market is None:
        return NEUTRAL
    swot = analysis.market.swot
    score = float(NEUTRAL)
    score += min(len(swot.opportunities) * 0.5, 2)
    score -= min(len(swot.strengths) * 0.3, 1.5)
    score += min(len(swot.weaknesses) * 0.3, 1.5)
    score -= min(len(swot.threats) * 0.4, 2)

    competitors = len(analysis.market.competitors)
    if competitors == 0:
        score += 2
    elif competitors <= 3:
        score += 1
    elif competitors > 5:
        score -= 1
    return _clamp(round(score, 6))


def resource_score(estimates: ProjectEstimates | None) -> int:
    if estimates is None:
        return NEUTRAL
    score = NEUTRAL

    dev = first_dollar_amount(estimates.cost_estimate.development, 50_000)
    if dev < 20_000:
        score += 3
    elif dev < 50_000:
        score += 2
    elif dev < 100_000:
        pass
    elif dev < 200_000:
        score -= 2
    else:
        score -= 3

    infra = first_dollar_amount(estimates.cost_estimate.infrastructure, 200)
    if infra < 100:
        score += 1
    elif infra < 500:
        pass
    elif infra < 2000:
        score -= 1
    else:
        score -= 2

    if estimates.team_size.minimum == 1:
        score += 1
    elif estimates.team_size.minimum >= 3:
        score -= 1
    return _clamp(score)


def time_score(estimates: ProjectEstimates | None) -> int:
    if estimates is None:
        return NEUTRAL
    weeks = parse_time_to_weeks(estimates.time_estimate.realistic)
    if weeks <= 4:
        return 10
    if weeks <= 12:
        return 8
    if weeks <= 24:
        return 6
    if weeks <= 48:
        return 4
    return 2


def rating_for(score: int) -> str:
    if score >= 9:
        return "very-easy"
    if score >= 7:
        return "easy"
    if score >= 5:
        return "moderate"
    if score >= 3:
        return "difficult"
    return "very-difficult"


def recommendation_for(score: int, tech: int, market: int) -> str:
    rating = rating_for(score)
    if rating == "difficult":
        if tech <= 4:
            return RECOMMENDATIONS["difficult-technical"]
        if market <= 4:
            return RECOMMENDATIONS["difficult-market"]
    return RECOMMENDATIONS[rating]


def confidence_for(analysis: StructuredAnalysis | None, estimates: ProjectEstimates | None) -> float:
    confidence = 0.5
    if analysis is not None and analysis.market is not None:
        confidence += 0.2
        swot = analysis.market.swot
        items = len(swot.strengths) + len(swot.weaknesses) + len(swot.opportunities) + len(swot.threats)
        if items >= 12:
            confidence += 0.1
        if analysis.market.competitors:
            confidence += 0.1
    if estimates is not None:
        confidence += 0.1
    return round(max(0.0, min(1.0, confidence)), 2)


def calculate_clonability(
    complexity: int | None,
    analysis: StructuredAnalysis | None,
    estimates: ProjectEstimates | None,
) -> ClonabilityScore:
    scores = {
        "technical_complexity": technical_score(complexity),
        "market_opportunity": market_score(analysis),
        "resource_requirements": resource_score(estimates),
        "time_to_market": time_score(estimates),
    }
    total = sum(scores[name] * weight for name, weight in WEIGHTS.items())
    final = _clamp(round(total, 6))
    return ClonabilityScore(
        score=final,
        rating=rating_for(final),
        components=ClonabilityComponents(**{
            name: ScoreComponent(score=scores[name], weight=WEIGHTS[name]) for name in WEIGHTS
        }),
        recommendation=recommendation_for(
            final, scores["technical_complexity"], scores["market_opportunity"]),
        confidence=confidence_for(analysis, estimates),
    )
