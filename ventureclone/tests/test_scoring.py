"""Tests for complexity and clonability scoring."""
from __future__ import annotations

import pytest

from ventureclone.clonability import (
    RECOMMENDATIONS,
    WEIGHTS,
    calculate_clonability,
    market_score,
    technical_score,
)
from ventureclone.complexity import calculate_complexity, calculate_enhanced_complexity
from ventureclone.schemas import (
    Competitor,
    CostEstimate,
    DetectedTechnology,
    Market,
    Overview,
    ProjectEstimates,
    StructuredAnalysis,
    Swot,
    Synthesis,
    TeamSize,
    TimeEstimate,
)


def _techs(*names: str) -> list[DetectedTechnology]:
    return [DetectedTechnology(name=n) for n in names]


def make_analysis(opportunities=0, strengths=0, weaknesses=0, threats=0, competitors=0):
    return StructuredAnalysis(
        overview=Overview(value_proposition="Invoices for freelancers",
                          target_audience="Freelancers", monetization="Subscription"),
        market=Market(
            competitors=[Competitor(name=f"Rival {i}") for i in range(competitors)],
            swot=Swot(
                strengths=[f"s{i}" for i in range(strengths)],
                weaknesses=[f"w{i}" for i in range(weaknesses)],
                opportunities=[f"o{i}" for i in range(opportunities)],
                threats=[f"t{i}" for i in range(threats)],
            ),
        ),
        synthesis=Synthesis(summary="Simple SaaS"),
    )


def make_estimates(development, infrastructure, realistic, team_min):
    return ProjectEstimates(
        time_estimate=TimeEstimate(minimum=realistic, maximum=realistic, realistic=realistic),
        cost_estimate=CostEstimate(development=development, infrastructure=infrastructure,
                                   maintenance="$500-$2,000/month", total="$25,000-$75,000 (first year)"),
        team_size=TeamSize(minimum=team_min, recommended=team_min + 1),
    )


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------


class TestBasicComplexity:
    def test_no_code_platform_is_simple(self):
        result = calculate_complexity(_techs("Webflow"))
        assert result.score == 2
        assert result.factors.custom_code is False
        assert result.factors.framework_complexity == "low"

    def test_modern_stack(self):
        result = calculate_complexity(_techs("React", "Node.js"))
        assert result.score == 8
        assert result.factors.custom_code is True
        assert result.factors.framework_complexity == "high"
        assert result.factors.infrastructure_complexity == "low"

    def test_score_is_clamped(self):
        result = calculate_complexity(_techs("React", "Django", "Kubernetes", "AWS"))
        assert result.score == 10
        assert result.factors.infrastructure_complexity == "high"

    def test_names_match_whole_words(self):
        assert calculate_complexity(_techs("Preact")).score == 5
        assert calculate_complexity(_techs("Springboard", "Sapling", "Lawson")).score == 5
        assert calculate_complexity(_techs("React.js")).score == 6
        assert calculate_complexity(_techs("AWS Lambda")).factors.infrastructure_complexity == "medium"


class TestEnhancedComplexity:
    def test_no_code_only(self):
        result = calculate_enhanced_complexity(_techs("Webflow"))
        assert result.score == 1
        assert result.breakdown.frontend.technologies == ["Webflow"]
        assert "no-code platform" in result.explanation

    def test_react_and_node(self):
        result = calculate_enhanced_complexity(_techs("React", "Node.js"))
        assert result.breakdown.frontend.score == 2
        assert result.breakdown.backend.score == 3
        assert result.breakdown.infrastructure.score == 0
        assert result.score == 5
        assert result.factors.technology_count == 2

    def test_heavy_stack(self):
        result = calculate_enhanced_complexity(_techs("Angular", "Node.js", "Kubernetes", "AWS"))
        assert result.breakdown.frontend.score == 3
        assert result.breakdown.backend.score == 4
        assert result.breakdown.infrastructure.score == 3
        assert result.score == 10
        assert "Kubernetes" in result.breakdown.infrastructure.technologies
        assert result.explanation.startswith("High technical complexity (10/10).")

    def test_layer_scores_never_exceed_max(self):
        result = calculate_enhanced_complexity(_techs("Spring", "Kubernetes", "Docker", "AWS", "Angular"))
        for layer in (result.breakdown.frontend, result.breakdown.backend, result.breakdown.infrastructure):
            assert layer.score <= layer.max

    def test_technology_count_bonus(self):
        techs = _techs("React", "Node.js") + _techs(*(f"Zzq{i}" for i in range(9)))
        result = calculate_enhanced_complexity(techs)
        assert result.score == 6
        assert "11 technologies" in result.explanation

    def test_licensing_flag(self):
        result = calculate_enhanced_complexity(_techs("Oracle Database", "Java"))
        assert result.factors.licensing_complexity is True

    def test_detected_categories_place_unknown_technologies(self):
        tech = DetectedTechnology(name="Caddy", categories=["Web servers"])
        result = calculate_enhanced_complexity([tech])
        assert result.breakdown.infrastructure.technologies == ["Caddy"]

    def test_empty_stack_is_neutral(self):
        result = calculate_enhanced_complexity([])
        assert result.score == 5
        assert "No frontend, backend or infrastructure" in result.explanation

    def test_unplaced_technologies_are_neutral(self):
        result = calculate_enhanced_complexity(_techs("Stripe"))
        assert result.breakdown.frontend.technologies == []
        assert result.score == 5
        score = calculate_clonability(result.score, None, None)
        assert score.components.technical_complexity.score == 6
        assert score.rating == "moderate"


# ---------------------------------------------------------------------------
# Clonability
# ---------------------------------------------------------------------------


class TestClonability:
    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)

    def test_missing_inputs_are_neutral(self):
        score = calculate_clonability(None, None, None)
        assert score.components.technical_complexity.score == 6
        assert score.components.market_opportunity.score == 5
        assert score.components.resource_requirements.score == 5
        assert score.components.time_to_market.score == 5
        assert score.score == 5
        assert score.rating == "moderate"
        assert score.confidence == 0.5

    def test_technical_score_inverts_complexity(self):
        assert technical_score(1) == 10
        assert technical_score(10) == 1
        assert technical_score(15) == 1

    def test_very_easy(self):
        score = calculate_clonability(
            1, make_analysis(opportunities=4),
            make_estimates("$5,000-$15,000", "$0-$50/month", "4 weeks", 1),
        )
        assert score.components.market_opportunity.score == 9
        assert score.components.resource_requirements.score == 10
        assert score.components.time_to_market.score == 10
        assert score.score == 10
        assert score.rating == "very-easy"
        assert score.recommendation == RECOMMENDATIONS["very-easy"]
        assert score.confidence == pytest.approx(0.8)

    def test_half_rounds_up(self):
        # 6*0.4 + 7*0.3 + 6*0.2 + 8*0.1 = 6.5
        score = calculate_clonability(
            5, make_analysis(opportunities=4, competitors=4),
            make_estimates("$60,000", "$150/month", "3 months", 1),
        )
        assert score.components.technical_complexity.score == 6
        assert score.components.market_opportunity.score == 7
        assert score.components.resource_requirements.score == 6
        assert score.components.time_to_market.score == 8
        assert score.score == 7
        assert score.rating == "easy"

    def test_difficult_for_technical_reasons(self):
        score = calculate_clonability(9, None, None)
        assert score.score == 4
        assert score.rating == "difficult"
        assert score.recommendation == RECOMMENDATIONS["difficult-technical"]

    def test_difficult_for_market_reasons(self):
        score = calculate_clonability(
            6, make_analysis(strengths=5, threats=5, competitors=6),
            make_estimates("$200,000", "$5,000+/month", "2 years", 3),
        )
        assert score.components.market_opportunity.score == 1
        assert score.components.resource_requirements.score == 1
        assert score.components.time_to_market.score == 2
        assert score.score == 3
        assert score.recommendation == RECOMMENDATIONS["difficult-market"]

    def test_very_difficult(self):
        score = calculate_clonability(
            10, make_analysis(strengths=5, threats=5, competitors=6),
            make_estimates("$200,000", "$5,000+/month", "2 years", 3),
        )
        assert score.score == 1
        assert score.rating == "very-difficult"

    def test_market_score_competitor_bands(self):
        assert market_score(make_analysis()) == 7
        assert market_score(make_analysis(competitors=2)) == 6
        assert market_score(make_analysis(competitors=8)) == 4

    def test_confidence_with_rich_market_data(self):
        score = calculate_clonability(
            5, make_analysis(opportunities=3, strengths=3, weaknesses=3, threats=3, competitors=1), None)
        assert score.confidence == pytest.approx(0.9)

    def test_serializes_with_wire_names(self):
        data = calculate_clonability(5, None, None).dump()
        assert set(data["components"]) == {
            "technicalComplexity", "marketOpportunity", "resourceRequirements", "timeToMarket"}
        assert data["components"]["technicalComplexity"]["weight"] == 0.4
