"""Business analysis pipeline: fetch, LLM analysis, detection, scoring, persistence.

Also generates improvement suggestions (three twists and a 7-day plan) for
an existing analysis.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import re
import time
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ventureclone.clonability import calculate_clonability
from ventureclone.complexity import calculate_enhanced_complexity
from ventureclone.errors import AppError, LLMCallError, ValidationFailed, error_guidance
from ventureclone.fetcher import FetchedPage, fetch_with_page
from ventureclone.insights import insights_service
from ventureclone.llm import LLMClient
from ventureclone.models import BusinessAnalysis, User
from ventureclone.schemas import (
    BusinessImprovement,
    DetectedTechnology,
    FirstPartyData,
    Source,
    StructuredAnalysis,
    TechDetectionResult,
    Technical,
)
from ventureclone.tech_detection import TechDetectionService, detection_enabled
from ventureclone.utils import (
    is_valid_http_url,
    json_dump,
    json_parse,
    normalize_url,
    sanitize_url,
    url_origin,
    utcnow_iso,
)

log = logging.getLogger(__name__)

FIRST_PARTY_WAIT = 6.0
FIRST_PARTY_TIMEOUT = 8.0
IMPROVEMENT_TIMEOUT = 30.0
MAX_GOAL_LENGTH = 500
AI_TECH_CONFIDENCE = 50

_HARMFUL_GOAL_RE = re.compile(r"<script|javascript:|on\w+\s*=|<iframe|eval\s*\(", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

EVIDENCE_SYSTEM_PROMPT = """\
You are a business analyst who provides evidence-based analysis without hedging language.

CRITICAL REQUIREMENTS:
- Make definitive statements only when you have concrete evidence
- Use "unknown" instead of guessing or speculating
- Include confidence scores (0-1) for technical claims
- Provide source URLs and excerpts for all factual claims
- Never use hedging language like "could", "possibly", "appears to", "seems like"
- If you cannot find evidence for a claim, do not include that claim

CONFIDENCE SCORING:
- Only provide confidence scores for technical stack claims
- 0.8-1.0: Direct evidence (visible in code, explicit mentions)
- 0.6-0.79: Strong indicators (job postings, documentation patterns)
- 0.4-0.59: Moderate indicators (common patterns, indirect evidence)
- 0.0-0.39: Weak indicators (speculation based on limited evidence)

SOURCE ATTRIBUTION:
- Every factual claim must include a source URL and 10-300 character excerpt
- Sources must be real, accessible URLs
- Excerpts must be direct quotes from the source
- If no source exists, state "unknown" instead of making the claim

Respond only with valid JSON in the exact format requested."""

ANALYSIS_EXAMPLE = """\
{
  "overview": {
    "valueProposition": "Definitive statement based on actual site content",
    "targetAudience": "Specific audience based on site evidence",
    "monetization": "Concrete monetization model or 'unknown' if not evident"
  },
  "market": {
    "competitors": [
      {"name": "Competitor name", "url": "competitor URL", "notes": "relationship notes"}
    ],
    "swot": {
      "strengths": ["evidence-based strength 1", "evidence-based strength 2"],
      "weaknesses": ["observable weakness 1", "observable weakness 2"],
      "opportunities": ["market opportunity 1", "market opportunity 2"],
      "threats": ["competitive threat 1", "competitive threat 2"]
    }
  },
  "technical": {
    "techStack": ["technology 1", "technology 2"],
    "confidence": 0.85,
    "uiColors": ["#color1", "#color2"],
    "keyPages": ["/page1", "/page2"]
  },
  "data": {
    "trafficEstimates": {"value": "specific estimate or 'unknown'", "source": "https://source-url.com"},
    "keyMetrics": [
      {"name": "metric name", "value": "specific value or 'unknown'",
       "source": "https://source-url.com", "asOf": "date if available"}
    ]
  },
  "synthesis": {
    "summary": "Evidence-based 100-150 word summary without hedging language",
    "keyInsights": ["definitive insight 1", "definitive insight 2", "definitive insight 3"],
    "nextActions": ["specific action 1", "specific action 2", "specific action 3"]
  },
  "sources": [
    {"url": "https://source-url.com", "excerpt": "Direct quote from source (10-300 characters)"}
  ]
}"""

ANALYSIS_REQUIREMENTS = """\
REQUIREMENTS:
- Include confidence score only for technical stack claims (0-1 range)
- All data claims must include source URLs
- Use "unknown" for any information not directly observable
- Include the target site as a source for claims made about it
- No hedging language - make definitive statements or use "unknown"
- Sources array must contain real URLs with actual excerpts"""

IMPROVEMENT_SYSTEM_PROMPT = """\
You are a business strategy consultant who generates actionable improvement suggestions for existing businesses.

CRITICAL REQUIREMENTS:
- Generate exactly 3 distinct business improvement angles
- Create a 7-day shipping plan with at most 3 tasks per day
- Focus on lean scope, quick validation, and measurable KPIs
- Tasks should build incrementally from day 1 to day 7
- Include validation and measurement tasks throughout the plan

TASK REQUIREMENTS:
- Each task must be specific and completable within a single day
- Include both building and validation activities
- Build toward a shippable prototype by day 7

Respond only with valid JSON in the exact format requested."""

IMPROVEMENT_EXAMPLE = """\
{
  "twists": [
    "Improvement angle 1: Specific, actionable twist that addresses a key weakness or opportunity",
    "Improvement angle 2: Different approach focusing on competitive differentiation",
    "Improvement angle 3: Technical, operational, or user experience improvement"
  ],
  "sevenDayPlan": [
    {"day": 1, "tasks": ["Research and validate core assumption", "Set up basic project structure", "Define success metrics and KPIs"]},
    {"day": 2, "tasks": ["Build minimum viable feature", "Create user feedback collection system", "Test core functionality"]},
    {"day": 3, "tasks": ["Implement key differentiator", "Gather initial user feedback", "Iterate based on feedback"]},
    {"day": 4, "tasks": ["Add essential integrations", "Optimize user experience", "Measure key performance indicators"]},
    {"day": 5, "tasks": ["Polish user interface", "Implement analytics tracking", "Prepare for user testing"]},
    {"day": 6, "tasks": ["Conduct user testing sessions", "Fix critical issues", "Prepare launch materials"]},
    {"day": 7, "tasks": ["Launch prototype to target audience", "Monitor key metrics", "Plan next iteration based on results"]}
  ]
}"""


def analysis_prompt(url: str, first_party: FirstPartyData | None = None) -> str:
    if first_party is not None:
        context = (
            "FIRST-PARTY WEBSITE CONTEXT:\n"
            f"- Title: {first_party.title}\n"
            f"- Description: {first_party.description}\n"
            f"- Main Heading: {first_party.h1}\n"
            f"- Content Sample: {first_party.text_snippet}\n"
            f"- Source URL: {first_party.url}\n\n"
            "Use this actual website content as the primary source for your analysis. "
            "Anchor all insights to what is actually present on the site."
        )
    else:
        context = ("FIRST-PARTY CONTEXT: SITE CONTEXT unavailable - analysis will be limited "
                   "to general knowledge.")
    return "\n\n".join([
        "Analyze this business URL and provide a structured JSON response with evidence-based analysis.",
        context,
        f"TARGET URL: {url}",
        f"Provide analysis in this exact JSON format:\n\n{ANALYSIS_EXAMPLE}",
        ANALYSIS_REQUIREMENTS,
        "Respond ONLY with valid JSON. Do not include any text before or after the JSON.",
    ])


def improvement_prompt(analysis: StructuredAnalysis, goal: str | None = None) -> str:
    overview, market, synthesis = analysis.overview, analysis.market, analysis.synthesis
    swot = market.swot
    if analysis.technical is not None:
        technical = (
            f"- Tech Stack: {', '.join(analysis.technical.tech_stack or []) or 'Unknown'}\n"
            f"- Key Pages: {', '.join(analysis.technical.key_pages or []) or 'Unknown'}"
        )
    else:
        technical = "- Technical details not available"

    sections = [
        "Based on this business analysis, generate 3 distinct improvement angles and a 7-day shipping plan.",
        "BUSINESS ANALYSIS:\n"
        f"Value Proposition: {overview.value_proposition}\n"
        f"Target Audience: {overview.target_audience}\n"
        f"Monetization: {overview.monetization}",
        "Market Analysis:\n"
        f"- Competitors: {', '.join(c.name for c in market.competitors)}\n"
        f"- Strengths: {', '.join(swot.strengths)}\n"
        f"- Weaknesses: {', '.join(swot.weaknesses)}\n"
        f"- Opportunities: {', '.join(swot.opportunities)}\n"
        f"- Threats: {', '.join(swot.threats)}",
        f"Technical Details:\n{technical}",
        f"Key Insights: {', '.join(synthesis.key_insights)}\nSummary: {synthesis.summary}",
    ]
    if goal:
        sections.append(f"IMPROVEMENT GOAL: {goal}\n\nFocus the improvements on achieving this "
                        "specific goal while maintaining the core business model.")
    sections += [
        "Generate improvements that:\n"
        "1. Address identified weaknesses and threats\n"
        "2. Leverage opportunities and strengths\n"
        "3. Differentiate from existing competitors\n"
        "4. Improve user experience and engagement\n"
        "5. Optimize revenue generation",
        f"Provide response in this exact JSON format:\n\n{IMPROVEMENT_EXAMPLE}",
        "REQUIREMENTS:\n"
        "- Exactly 3 twists\n"
        "- Exactly 7 days, numbered 1 to 7\n"
        "- Each day has 1 to 3 tasks",
        "Respond ONLY with valid JSON.",
    ]
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Validation of the raw LLM analysis
# ---------------------------------------------------------------------------


def first_party_excerpt(first_party: FirstPartyData) -> str:
    """Best quotable excerpt: description, then h1, title, text snippet."""
    for candidate in (first_party.description, first_party.h1,
                      first_party.title, first_party.text_snippet):
        text = (candidate or "").strip()
        if 10 <= len(text) <= 300:
            return text
        if len(text) > 300:
            return text[:297] + "..."
    return ""


def _validate_sources(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationFailed("sources must be an array")
    return [Source.model_validate(item).dump() for item in raw]


def add_target_source(sources: list[dict[str, Any]], url: str,
                      first_party: FirstPartyData | None) -> list[dict[str, Any]]:
    """Prepend the analyzed site as a source when it is not cited yet."""
    target = url_origin(url)
    cited = any(is_valid_http_url(s.get("url")) and url_origin(s["url"]) == target for s in sources)
    if cited or first_party is None:
        return sources
    excerpt = first_party_excerpt(first_party)
    if 10 <= len(excerpt) <= 300:
        sources.insert(0, {"url": url, "excerpt": excerpt})
    return sources


def validate_enhanced_analysis(
    raw: Any, url: str, first_party: FirstPartyData | None = None,
) -> StructuredAnalysis:
    """Clean up an LLM analysis and parse it.

    Bad optional fields are dropped rather than failing the analysis; a
    missing required section raises ``ValidationFailed``.
    """
    if not isinstance(raw, dict):
        raise ValidationFailed("Analysis must be an object")
    data = copy.deepcopy(raw)

    technical = data.get("technical")
    if isinstance(technical, dict) and "confidence" in technical:
        conf = technical["confidence"]
        if isinstance(conf, bool) or not isinstance(conf, (int, float)) or not 0 <= conf <= 1:
            log.warning("Dropping invalid technical confidence: %r", conf)
            del technical["confidence"]

    section = data.get("data")
    if isinstance(section, dict):
        traffic = section.get("trafficEstimates")
        if isinstance(traffic, dict) and traffic.get("source") and not is_valid_http_url(traffic["source"]):
            log.warning("Invalid traffic estimates source URL: %s", traffic["source"])
            del traffic["source"]
        metrics = section.get("keyMetrics")
        if isinstance(metrics, list):
            for i, metric in enumerate(metrics):
                if isinstance(metric, dict) and metric.get("source") and not is_valid_http_url(metric["source"]):
                    log.warning("Invalid key metric source URL at index %d: %s", i, metric["source"])
                    del metric["source"]

    if data.get("sources") is None:
        data["sources"] = []
    else:
        try:
            data["sources"] = _validate_sources(data["sources"])
        except (ValidationFailed, ValidationError) as exc:
            log.warning("Sources validation failed, discarding sources: %s", exc)
            data["sources"] = []
    data["sources"] = add_target_source(data["sources"], url, first_party)

    for required in ("overview", "market", "synthesis"):
        if not isinstance(data.get(required), dict):
            raise ValidationFailed(f"validation failed: analysis must have {required} section")
    try:
        return StructuredAnalysis.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(f"validation failed: {exc.error_count()} invalid analysis fields") from exc


# ---------------------------------------------------------------------------
# Technology detection merge
# ---------------------------------------------------------------------------


def merge_tech_detection(
    analysis: StructuredAnalysis,
    detection: TechDetectionResult | None,
    enabled: bool = True,
) -> str:
    """Fold detected technologies into ``technical``; return the detection status."""
    if not enabled:
        return "disabled"
    if detection is None or not detection.success:
        if analysis.technical is not None:
            analysis.technical.detection_attempted = True
            analysis.technical.detection_failed = True
        return "failed"

    if analysis.technical is None:
        analysis.technical = Technical()
    technical = analysis.technical
    merged: list[str] = []
    seen: set[str] = set()
    for name in [t.name for t in detection.technologies] + list(technical.tech_stack or []):
        key = name.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(name.strip())
    technical.tech_stack = merged
    technical.detected_technologies = detection.technologies
    technical.detection_attempted = True
    technical.detection_failed = False
    return "success"


def scoring_technologies(analysis: StructuredAnalysis) -> list[DetectedTechnology]:
    """Detected technologies, or the LLM's tech stack when detection had none."""
    technical = analysis.technical
    if technical is None:
        return []
    if technical.detected_technologies:
        return list(technical.detected_technologies)
    return [DetectedTechnology(name=name, confidence=AI_TECH_CONFIDENCE)
            for name in technical.tech_stack or [] if name.strip()]


def summary_text(analysis: StructuredAnalysis) -> str:
    parts = [
        analysis.overview.value_proposition,
        f"Target Audience: {analysis.overview.target_audience}",
        f"Monetization: {analysis.overview.monetization}",
    ]
    if analysis.synthesis.key_insights:
        parts.append(f"Key Insights: {', '.join(analysis.synthesis.key_insights)}")
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _provider_error(exc: LLMCallError) -> AppError:
    guidance = error_guidance(exc, "analyzing the website")
    if "timeout" in str(exc).lower():
        return AppError(str(exc), 504, "GATEWAY_TIMEOUT", guidance["userMessage"])
    return AppError(str(exc), 502, "AI_PROVIDER_DOWN", guidance["userMessage"],
                    details={"retryable": guidance["retryable"]})


async def _first_party(url: str) -> tuple[FirstPartyData | None, FetchedPage | None]:
    try:
        return await asyncio.wait_for(fetch_with_page(url, FIRST_PARTY_TIMEOUT), FIRST_PARTY_WAIT)
    except asyncio.TimeoutError:
        log.warning("First-party fetch for %s exceeded %.0fs, continuing without it", url, FIRST_PARTY_WAIT)
        return None, None


async def _detect(url: str, page: FetchedPage | None,
                  detector: TechDetectionService) -> TechDetectionResult | None:
    try:
        return await detector.detect_technologies(url, page)
    except Exception:
        log.exception("Technology detection crashed for %s", url)
        return None


def ensure_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
        session.flush()
    return user


async def run_analysis(
    session: Session,
    user_id: str,
    url: str,
    client: LLMClient,
    detector: TechDetectionService | None = None,
) -> BusinessAnalysis:
    """Analyze *url* end to end and persist the result for *user_id*."""
    try:
        url = sanitize_url(normalize_url(url))
    except ValueError as exc:
        raise AppError.validation(str(exc), "Please enter a valid public http(s) URL.") from exc

    start = time.monotonic()
    first_party, page = await _first_party(url)

    enabled = detection_enabled()
    llm_call = client.call(EVIDENCE_SYSTEM_PROMPT, analysis_prompt(url, first_party))
    detection: TechDetectionResult | None = None
    try:
        if enabled:
            raw, detection = await asyncio.gather(
                llm_call, _detect(url, page, detector or TechDetectionService()))
        else:
            raw = await llm_call
    except LLMCallError as exc:
        log.error("AI analysis of %s failed: %s", url, exc)
        raise _provider_error(exc) from exc

    try:
        structured = validate_enhanced_analysis(raw, url, first_party)
    except ValidationFailed as exc:
        log.error("Analysis for %s failed validation: %s", url, exc)
        raise AppError(str(exc), 502, "AI_VALIDATION_ERROR",
                       "The AI generated invalid data. Please try again.") from exc

    status = merge_tech_detection(structured, detection, enabled)
    technologies = scoring_technologies(structured)
    complexity = calculate_enhanced_complexity(technologies)
    insights = insights_service.generate_insights(technologies, complexity.score)
    clonability = calculate_clonability(complexity.score, structured, insights.estimates)

    ensure_user(session, user_id)
    record = BusinessAnalysis(
        user_id=user_id,
        url=url,
        summary=summary_text(structured),
        model=f"{client.provider}:{client.model}",
        business_model=structured.overview.value_proposition,
        revenue_stream=structured.overview.monetization,
        target_market=structured.overview.target_audience,
        overall_score=float(clonability.score),
        structured_json=json_dump(structured.dump()),
        first_party_json=json_dump(first_party.dump()) if first_party else None,
        stages_json=None,
        current_stage=1,
        clonability_json=json_dump(clonability.dump()),
        complexity_json=json_dump(complexity.dump()),
        insights_json=json_dump(insights.dump()),
        detection_status=status,
    )
    session.add(record)
    session.commit()
    log.info("Analyzed %s in %.1fs (detection %s, clonability %d/10)",
             url, time.monotonic() - start, status, clonability.score)
    return record


# ---------------------------------------------------------------------------
# Improvements
# ---------------------------------------------------------------------------


def validate_goal(goal: str | None) -> str | None:
    """Return the trimmed goal, or None when no goal was given."""
    if goal is None:
        return None
    if not isinstance(goal, str):
        raise ValidationFailed("validation failed: goal must be a string")
    goal = goal.strip()
    if not goal:
        raise ValidationFailed("validation failed: goal cannot be empty")
    if len(goal) > MAX_GOAL_LENGTH:
        raise ValidationFailed(f"validation failed: goal cannot exceed {MAX_GOAL_LENGTH} characters")
    if _HARMFUL_GOAL_RE.search(goal):
        raise ValidationFailed("validation failed: goal contains potentially harmful content")
    return goal


def structured_for_improvement(record: BusinessAnalysis) -> StructuredAnalysis:
    raw = json_parse(record.structured_json, {}) or {}
    if not isinstance(raw.get("overview"), dict):
        raise ValidationFailed("validation failed: analysis must have overview section")
    if not isinstance(raw.get("market"), dict):
        raise ValidationFailed("validation failed: analysis must have market section")
    synthesis = raw.get("synthesis")
    if not isinstance(synthesis, dict) or not synthesis.get("keyInsights"):
        raise ValidationFailed("validation failed: analysis must have synthesis with key insights")
    try:
        return StructuredAnalysis.model_validate(raw)
    except ValidationError as exc:
        raise ValidationFailed(f"validation failed: stored analysis is invalid ({exc.error_count()} errors)") from exc


async def generate_improvements(
    record: BusinessAnalysis,
    client: LLMClient,
    goal: str | None = None,
    timeout: float = IMPROVEMENT_TIMEOUT,
) -> BusinessImprovement:
    """Generate three twists and a 7-day plan for an analyzed business.

    Raises ``ValidationFailed`` for a bad analysis or goal, ``AppError`` 504
    on timeout and 502 when the provider fails or returns malformed output.
    """
    goal = validate_goal(goal)
    analysis = structured_for_improvement(record)

    start = time.monotonic()
    try:
        raw = await asyncio.wait_for(
            client.call(IMPROVEMENT_SYSTEM_PROMPT, improvement_prompt(analysis, goal)), timeout)
    except asyncio.TimeoutError as exc:
        raise AppError(f"Improvement generation timed out after {timeout:.0f}s", 504,
                       "GATEWAY_TIMEOUT",
                       "Business improvement generation timed out. Please try again.") from exc
    except LLMCallError as exc:
        raise _provider_error(exc) from exc

    try:
        improvement = BusinessImprovement.model_validate({**raw, "generatedAt": utcnow_iso()})
    except ValidationError as exc:
        log.error("Improvement output for %s failed validation: %s", record.id, exc)
        raise AppError("Generated improvements are invalid", 502, "AI_VALIDATION_ERROR",
                       "The AI generated invalid data. Please try again.") from exc
    log.info("Generated improvements for %s in %.1fs", record.id, time.monotonic() - start)
    return improvement
