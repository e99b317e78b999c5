"""Tests for the analysis pipeline and improvement generation."""
from __future__ import annotations

import asyncio
import copy
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ventureclone.analyzer import (
    add_target_source,
    analysis_prompt,
    first_party_excerpt,
    generate_improvements,
    improvement_prompt,
    merge_tech_detection,
    run_analysis,
    scoring_technologies,
    summary_text,
    validate_enhanced_analysis,
    validate_goal,
)
from ventureclone.errors import AppError, LLMCallError, ValidationFailed
from ventureclone.fetcher import FetchedPage
from ventureclone.models import Base, BusinessAnalysis, User
from ventureclone.schemas import DetectedTechnology, FirstPartyData, TechDetectionResult

URL = "https://invoicely.example.com"

RAW_ANALYSIS = {
    "overview": {
        "valueProposition": "Invoicing for freelancers",
        "targetAudience": "Freelance designers",
        "monetization": "Monthly subscription",
    },
    "market": {
        "competitors": [{"name": "FreshBooks", "url": "https://www.freshbooks.com"}],
        "swot": {
            "strengths": ["Simple onboarding"],
            "weaknesses": ["No mobile app"],
            "opportunities": ["Agencies", "Recurring billing"],
            "threats": ["Bundled accounting suites"],
        },
    },
    "technical": {"techStack": ["react", "Stripe"], "confidence": 1.7, "keyPages": ["/pricing"]},
    "data": {
        "trafficEstimates": {"value": "50k visits/month", "source": "similarweb"},
        "keyMetrics": [{"name": "Customers", "value": "2,000", "source": "ftp://files.example.com"}],
    },
    "synthesis": {
        "summary": "A focused invoicing tool.",
        "keyInsights": ["Niche audience", "Low price point"],
        "nextActions": ["Interview agencies"],
    },
    "sources": [{"url": "https://news.example.org/invoicely", "excerpt": "Invoicely raised a seed round in 2023."}],
}

IMPROVEMENT = {
    "twists": ["Agency plan", "Mobile receipts", "Late-fee automation"],
    "sevenDayPlan": [{"day": d, "tasks": [f"Task for day {d}"]} for d in range(1, 8)],
}

FIRST_PARTY = FirstPartyData(
    title="Invoicely",
    description="Send invoices in seconds and get paid faster.",
    h1="Get paid faster",
    text_snippet="Invoicely helps freelancers send invoices.",
    url=URL,
)

PAGE = FetchedPage(
    url=URL,
    status_code=200,
    content_type="text/html; charset=utf-8",
    html=('<html><head><script src="https://js.stripe.com/v3/"></script></head>'
          '<body><script id="__NEXT_DATA__" type="application/json">{}</script></body></html>'),
    headers={"x-powered-by": "Next.js"},
)


def _client(**kwargs):
    client = MagicMock()
    client.provider = "openai"
    client.model = "gpt-4o"
    client.call = AsyncMock(**kwargs)
    return client


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestPrompts:
    def test_analysis_prompt_with_first_party_data(self):
        prompt = analysis_prompt(URL, FIRST_PARTY)
        assert "FIRST-PARTY WEBSITE CONTEXT:" in prompt
        assert "- Description: Send invoices in seconds and get paid faster." in prompt
        assert f"TARGET URL: {URL}" in prompt

    def test_analysis_prompt_without_first_party_data(self):
        prompt = analysis_prompt(URL, None)
        assert "SITE CONTEXT unavailable" in prompt
        assert "FIRST-PARTY WEBSITE CONTEXT" not in prompt

    def test_improvement_prompt_goal(self):
        analysis = validate_enhanced_analysis(RAW_ANALYSIS, URL)
        assert "IMPROVEMENT GOAL" not in improvement_prompt(analysis)
        prompt = improvement_prompt(analysis, "Win design agencies")
        assert "IMPROVEMENT GOAL: Win design agencies" in prompt
        assert "- Competitors: FreshBooks" in prompt
        assert "- Tech Stack: react, Stripe" in prompt


# ---------------------------------------------------------------------------
# Validation and merge
# ---------------------------------------------------------------------------


class TestValidateEnhancedAnalysis:
    def test_cleans_invalid_optional_fields(self):
        analysis = validate_enhanced_analysis(RAW_ANALYSIS, URL, FIRST_PARTY)
        assert analysis.technical.confidence is None
        assert analysis.data.traffic_estimates.source is None
        assert analysis.data.traffic_estimates.value == "50k visits/month"
        assert analysis.data.key_metrics[0].source is None

    def test_input_is_not_modified(self):
        raw = copy.deepcopy(RAW_ANALYSIS)
        validate_enhanced_analysis(raw, URL, FIRST_PARTY)
        assert raw == RAW_ANALYSIS

    def test_target_site_is_added_as_source(self):
        analysis = validate_enhanced_analysis(RAW_ANALYSIS, URL, FIRST_PARTY)
        assert analysis.sources[0].url == URL
        assert analysis.sources[0].excerpt == "Send invoices in seconds and get paid faster."
        assert len(analysis.sources) == 2

    def test_invalid_sources_are_discarded(self):
        raw = {**RAW_ANALYSIS, "sources": [{"url": "https://x.example.org", "excerpt": "short"}]}
        analysis = validate_enhanced_analysis(raw, URL, None)
        assert analysis.sources == []

    def test_missing_section_fails(self):
        raw = {k: v for k, v in RAW_ANALYSIS.items() if k != "synthesis"}
        with pytest.raises(ValidationFailed, match="must have synthesis section"):
            validate_enhanced_analysis(raw, URL)

    def test_non_object_fails(self):
        with pytest.raises(ValidationFailed, match="must be an object"):
            validate_enhanced_analysis(["not", "a", "dict"], URL)

    def test_cited_target_is_not_duplicated(self):
        sources = [{"url": "https://INVOICELY.example.com/about", "excerpt": "About Invoicely and the team."}]
        assert add_target_source(list(sources), URL, FIRST_PARTY) == sources

    def test_first_party_excerpt_prefers_description(self):
        assert first_party_excerpt(FIRST_PARTY) == FIRST_PARTY.description
        short = FirstPartyData(description="tiny", h1="A heading that is long enough")
        assert first_party_excerpt(short) == "A heading that is long enough"
        long = FirstPartyData(description="x" * 400)
        assert first_party_excerpt(long) == "x" * 297 + "..."


class TestMergeTechDetection:
    def _analysis(self):
        return validate_enhanced_analysis(RAW_ANALYSIS, URL)

    def _detection(self, success=True):
        return TechDetectionResult(
            technologies=[DetectedTechnology(name="React"), DetectedTechnology(name="Node.js")],
            detected_at="2025-01-01T00:00:00+00:00",
            success=success,
        )

    def test_success_merges_and_deduplicates(self):
        analysis = self._analysis()
        assert merge_tech_detection(analysis, self._detection()) == "success"
        assert analysis.technical.tech_stack == ["React", "Node.js", "Stripe"]
        assert [t.name for t in analysis.technical.detected_technologies] == ["React", "Node.js"]
        assert analysis.technical.detection_failed is False

    def test_failure_flags_analysis(self):
        analysis = self._analysis()
        assert merge_tech_detection(analysis, None) == "failed"
        assert analysis.technical.detection_attempted is True
        assert analysis.technical.detection_failed is True
        assert analysis.technical.tech_stack == ["react", "Stripe"]

    def test_disabled(self):
        analysis = self._analysis()
        assert merge_tech_detection(analysis, self._detection(), enabled=False) == "disabled"
        assert analysis.technical.detection_attempted is None

    def test_scoring_falls_back_to_ai_stack(self):
        techs = scoring_technologies(self._analysis())
        assert [(t.name, t.confidence) for t in techs] == [("react", 50), ("Stripe", 50)]

    def test_summary_text(self):
        text = summary_text(self._analysis())
        assert text.startswith("Invoicing for freelancers")
        assert "Key Insights: Niche audience, Low price point" in text


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestRunAnalysis:
    @pytest.mark.asyncio
    async def test_full_pipeline(self, session):
        client = _client(return_value=copy.deepcopy(RAW_ANALYSIS))
        with patch("ventureclone.analyzer.fetch_with_page", new_callable=AsyncMock,
                   return_value=(FIRST_PARTY, PAGE)), \
             patch("ventureclone.analyzer.detection_enabled", return_value=True):
            record = await run_analysis(session, "user-1", "invoicely.example.com", client)

        assert record.url == URL
        assert record.model == "openai:gpt-4o"
        assert record.detection_status == "success"
        assert record.business_model == "Invoicing for freelancers"
        assert record.current_stage == 1
        assert session.get(User, "user-1") is not None

        structured = json.loads(record.structured_json)
        stack = structured["technical"]["techStack"]
        assert {"Next.js", "Stripe", "React", "Node.js"} <= set(stack)
        assert stack.count("React") == 1

        clonability = json.loads(record.clonability_json)
        assert record.overall_score == float(clonability["score"])
        assert json.loads(record.complexity_json)["factors"]["technologyCount"] >= 4
        assert "estimates" in json.loads(record.insights_json)
        assert json.loads(record.first_party_json)["title"] == "Invoicely"

    @pytest.mark.asyncio
    async def test_detection_disabled(self, session):
        client = _client(return_value=copy.deepcopy(RAW_ANALYSIS))
        with patch("ventureclone.analyzer.fetch_with_page", new_callable=AsyncMock,
                   return_value=(None, None)), \
             patch("ventureclone.analyzer.detection_enabled", return_value=False):
            record = await run_analysis(session, "user-1", URL, client)
        assert record.detection_status == "disabled"
        assert record.first_party_json is None
        assert "SITE CONTEXT unavailable" in client.call.await_args.args[1]

    @pytest.mark.asyncio
    async def test_invalid_url(self, session):
        client = _client(return_value={})
        with pytest.raises(AppError) as exc_info:
            await run_analysis(session, "user-1", "http://127.0.0.1/admin", client)
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "VALIDATION_ERROR"
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_timeout(self, session):
        client = _client(side_effect=LLMCallError("AI provider openai timeout after 120s", retryable=True))
        with patch("ventureclone.analyzer.fetch_with_page", new_callable=AsyncMock,
                   return_value=(None, None)), \
             patch("ventureclone.analyzer.detection_enabled", return_value=False):
            with pytest.raises(AppError) as exc_info:
                await run_analysis(session, "user-1", URL, client)
        assert exc_info.value.status_code == 504
        assert session.query(BusinessAnalysis).count() == 0

    @pytest.mark.asyncio
    async def test_invalid_model_output(self, session):
        client = _client(return_value={"overview": RAW_ANALYSIS["overview"]})
        with patch("ventureclone.analyzer.fetch_with_page", new_callable=AsyncMock,
                   return_value=(None, None)), \
             patch("ventureclone.analyzer.detection_enabled", return_value=False):
            with pytest.raises(AppError) as exc_info:
                await run_analysis(session, "user-1", URL, client)
        assert exc_info.value.status_code == 502
        assert exc_info.value.code == "AI_VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_failed_detection_still_saves(self, session):
        client = _client(return_value=copy.deepcopy(RAW_ANALYSIS))
        detector = MagicMock()
        detector.detect_technologies = AsyncMock(return_value=None)
        with patch("ventureclone.analyzer.fetch_with_page", new_callable=AsyncMock,
                   return_value=(None, None)), \
             patch("ventureclone.analyzer.detection_enabled", return_value=True):
            record = await run_analysis(session, "user-1", URL, client, detector=detector)
        assert record.detection_status == "failed"
        complexity = json.loads(record.complexity_json)
        assert complexity["factors"]["technologyCount"] == 2


# ---------------------------------------------------------------------------
# Improvements
# ---------------------------------------------------------------------------


def _record(structured=None) -> BusinessAnalysis:
    return BusinessAnalysis(id="a-1", user_id="user-1", url=URL,
                            structured_json=json.dumps(structured or RAW_ANALYSIS))


class TestImprovements:
    @pytest.mark.asyncio
    async def test_generates_improvements(self):
        client = _client(return_value=copy.deepcopy(IMPROVEMENT))
        improvement = await generate_improvements(_record(), client, "  Win design agencies ")
        assert improvement.twists == IMPROVEMENT["twists"]
        assert [d.day for d in improvement.seven_day_plan] == list(range(1, 8))
        assert improvement.generated_at
        assert "IMPROVEMENT GOAL: Win design agencies" in client.call.await_args.args[1]

    @pytest.mark.parametrize("goal", ["   ", "x" * 501, "<script>alert(1)</script>", "onload=steal()"])
    def test_rejected_goals(self, goal):
        with pytest.raises(ValidationFailed):
            validate_goal(goal)

    def test_goal_is_optional(self):
        assert validate_goal(None) is None

    @pytest.mark.asyncio
    async def test_requires_key_insights(self):
        structured = copy.deepcopy(RAW_ANALYSIS)
        structured["synthesis"]["keyInsights"] = []
        client = _client(return_value=IMPROVEMENT)
        with pytest.raises(ValidationFailed, match="key insights"):
            await generate_improvements(_record(structured), client)
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(*args):
            await asyncio.sleep(1)
            return IMPROVEMENT

        client = _client()
        client.call = slow
        with pytest.raises(AppError) as exc_info:
            await generate_improvements(_record(), client, timeout=0.01)
        assert exc_info.value.status_code == 504
        assert exc_info.value.user_message == "Business improvement generation timed out. Please try again."

    @pytest.mark.asyncio
    @pytest.mark.parametrize("output", [
        {**IMPROVEMENT, "twists": ["only", "two"]},
        {**IMPROVEMENT, "sevenDayPlan": list(reversed(IMPROVEMENT["sevenDayPlan"]))},
        {**IMPROVEMENT, "sevenDayPlan": [{"day": d, "tasks": ["a", "b", "c", "d"]} for d in range(1, 8)]},
    ])
    async def test_invalid_output(self, output):
        client = _client(return_value=output)
        with pytest.raises(AppError) as exc_info:
            await generate_improvements(_record(), client)
        assert exc_info.value.status_code == 502
        assert exc_info.value.code == "AI_VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_provider_failure(self):
        client = _client(side_effect=LLMCallError("LLM API call failed: connection refused", retryable=True))
        with pytest.raises(AppError) as exc_info:
            await generate_improvements(_record(), client)
        assert exc_info.value.status_code == 502
        assert exc_info.value.code == "AI_PROVIDER_DOWN"
