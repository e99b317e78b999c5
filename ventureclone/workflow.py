"""Six-stage guided workflow: stage gate, progress bookkeeping and stage generation.

Stage 1 (Discovery & Selection) is the initial analysis itself. Stages 2..6
are generated by the LLM, each one only after the previous stage is
``completed``. Regenerating a completed stage overwrites that stage only.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ventureclone.errors import AppError, error_guidance
from ventureclone.llm import LLMClient
from ventureclone.models import BusinessAnalysis
from ventureclone.retry import retry_with_backoff
from ventureclone.schemas import STAGE_CONTENT_MODELS
from ventureclone.utils import json_dump, json_parse, utcnow_iso

log = logging.getLogger(__name__)

STAGE_NAMES = {
    1: "Discovery & Selection",
    2: "Lazy-Entrepreneur Filter",
    3: "MVP Launch Planning",
    4: "Demand Testing Strategy",
    5: "Scaling & Growth",
    6: "AI Automation Mapping",
}
TOTAL_STAGES = len(STAGE_NAMES)

STAGE_MAX_ATTEMPTS = 3
STAGE_RETRY_DELAY = 2.0

Stages = dict[int, dict[str, Any]]


# ---------------------------------------------------------------------------
# Stage map bookkeeping
# ---------------------------------------------------------------------------


def stages_from_analysis(analysis: BusinessAnalysis) -> Stages:
    """Stage map of *analysis*, keyed by stage number.

    Records created before stages were stored get a synthesized, completed
    stage 1 built from the analysis itself.
    """
    raw = json_parse(analysis.stages_json, None)
    if isinstance(raw, dict) and raw:
        return {int(k): v for k, v in raw.items()}

    created = analysis.created_at.isoformat() if analysis.created_at else utcnow_iso()
    return {
        1: {
            "stageNumber": 1,
            "stageName": STAGE_NAMES[1],
            "status": "completed",
            "content": {
                "analysis": json_parse(analysis.structured_json, {}),
                "summary": analysis.summary,
                "url": analysis.url,
            },
            "generatedAt": created,
            "completedAt": created,
        },
    }


def save_stages(analysis: BusinessAnalysis, stages: Stages) -> None:
    analysis.stages_json = json_dump({str(k): v for k, v in sorted(stages.items())})
    analysis.current_stage = current_stage(stages)


def completed_stages(stages: Stages | None) -> list[int]:
    if not stages:
        return []
    return sorted(s["stageNumber"] for s in stages.values() if s.get("status") == "completed")


def current_stage(stages: Stages | None) -> int:
    done = completed_stages(stages)
    if not done:
        return 1
    return min(max(done) + 1, TOTAL_STAGES)


def next_stage(stages: Stages | None) -> int | None:
    if is_workflow_complete(stages):
        return None
    return current_stage(stages)


def can_regenerate_stage(stages: Stages | None, stage_number: int) -> bool:
    if not stages:
        return False
    stage = stages.get(stage_number)
    return stage is not None and stage.get("status") == "completed"


def is_workflow_complete(stages: Stages | None) -> bool:
    done = completed_stages(stages)
    return len(done) == TOTAL_STAGES and TOTAL_STAGES in done


def progress_summary(stages: Stages | None) -> dict[str, Any]:
    return {
        "currentStage": current_stage(stages),
        "completedStages": completed_stages(stages),
        "totalStages": TOTAL_STAGES,
        "isComplete": is_workflow_complete(stages),
        "nextStage": next_stage(stages),
    }


def validate_stage_progression(
    analysis: BusinessAnalysis | None,
    target_stage: int,
    regenerate: bool = False,
) -> tuple[bool, str | None]:
    """Return ``(valid, reason)``. Stage N needs stage N-1 completed."""
    if target_stage not in STAGE_NAMES:
        return False, f"Invalid stage number: {target_stage}. Must be between 1 and {TOTAL_STAGES}."
    if analysis is None:
        return False, "Analysis not found"
    if target_stage == 1:
        return True, None

    stages = stages_from_analysis(analysis)
    if regenerate and can_regenerate_stage(stages, target_stage):
        return True, None
    previous = target_stage - 1
    if previous not in completed_stages(stages):
        return False, (f"Stage {previous} ({STAGE_NAMES[previous]}) must be completed "
                       f"before accessing Stage {target_stage}")
    return True, None


def validate_stage_data(stage_number: int, content: Any) -> tuple[bool, list[str]]:
    if not isinstance(content, dict):
        return False, ["Stage content must be an object"]
    if not content:
        return False, ["Stage content cannot be empty"]
    return True, []


def create_stage_data(stage_number: int, content: dict[str, Any], status: str = "completed") -> dict[str, Any]:
    if stage_number not in STAGE_NAMES:
        raise ValueError(f"Invalid stage number: {stage_number}")
    now = utcnow_iso()
    data = {
        "stageNumber": stage_number,
        "stageName": STAGE_NAMES[stage_number],
        "status": status,
        "content": content,
        "generatedAt": now,
    }
    if status == "completed":
        data["completedAt"] = now
    return data


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

STAGE2_SYSTEM = (
    "You are a business efficiency analyst specializing in effort-reward analysis and automation "
    "potential assessment. Provide realistic, evidence-based evaluations without hedging language."
)
STAGE3_SYSTEM = (
    "You are a product strategy expert specializing in MVP development and lean startup methodology. "
    "Provide specific, actionable recommendations for building a minimum viable product."
)
STAGE4_SYSTEM = (
    "You are a lean startup expert specializing in demand validation and market testing. Provide "
    "specific, actionable testing strategies that minimize investment while maximizing learning."
)
STAGE5_SYSTEM = (
    "You are a growth strategist specializing in scaling bootstrapped online businesses. Provide "
    "concrete channels, milestones and resourcing plans tied to measurable targets."
)
STAGE6_SYSTEM = (
    "You are an automation architect specializing in AI tools and no-code workflows for small teams. "
    "Identify the processes that give the highest return when automated and name specific tools."
)

STAGE2_EXAMPLE = """\
{
  "effortScore": 5,
  "rewardScore": 7,
  "recommendation": "go",
  "reasoning": "Clear explanation of why this is or isn't worth pursuing based on effort/reward ratio",
  "automationPotential": {
    "score": 0.75,
    "opportunities": [
      "Specific automation opportunity 1",
      "Specific automation opportunity 2",
      "Specific automation opportunity 3"
    ]
  },
  "resourceRequirements": {
    "time": "Specific time estimate (e.g., '3-6 months to MVP')",
    "money": "Specific budget estimate (e.g., '$5,000-$10,000 initial investment')",
    "skills": ["Required skill 1", "Required skill 2", "Required skill 3"]
  },
  "nextSteps": [
    "Specific actionable step 1",
    "Specific actionable step 2",
    "Specific actionable step 3"
  ]
}"""

STAGE2_GUIDE = """\
SCORING GUIDELINES:
- effortScore: 1-10 (1 = minimal effort, 10 = maximum effort)
  - Consider technical complexity, time investment, skill requirements
- rewardScore: 1-10 (1 = minimal reward, 10 = maximum reward)
  - Consider market size, revenue potential, scalability
- recommendation: "go" | "no-go" | "maybe"
  - "go": High reward, low-to-medium effort (reward > effort by 2+ points)
  - "no-go": Low reward or extremely high effort (effort > reward)
  - "maybe": Balanced or uncertain (within 1 point difference)
- automationPotential.score: 0-1 (0 = no automation, 1 = fully automatable)
  - Consider AI tools, no-code platforms, existing APIs

REQUIREMENTS:
- Be specific and actionable in all recommendations
- Base estimates on the actual business model and tech stack
- Identify concrete automation opportunities using modern tools
- Provide realistic resource requirements
- Make a clear go/no-go recommendation with solid reasoning"""

STAGE3_EXAMPLE = """\
{
  "coreFeatures": [
    "Essential feature 1 that delivers core value",
    "Essential feature 2 that enables monetization",
    "Essential feature 3 for user experience"
  ],
  "niceToHaves": [
    "Feature that can wait for v2",
    "Enhancement for future iteration",
    "Advanced feature for later"
  ],
  "techStack": {
    "frontend": ["React", "Tailwind CSS"],
    "backend": ["Node.js", "Express"],
    "infrastructure": ["Vercel", "PostgreSQL"]
  },
  "timeline": [
    {
      "phase": "Phase 1: Foundation",
      "duration": "2 weeks",
      "deliverables": ["User authentication", "Basic UI/UX", "Database setup"]
    },
    {
      "phase": "Phase 2: Core Features",
      "duration": "4 weeks",
      "deliverables": ["Core feature 1 implementation", "Core feature 2 implementation", "Payment integration"]
    },
    {
      "phase": "Phase 3: Launch Prep",
      "duration": "2 weeks",
      "deliverables": ["Testing and bug fixes", "Performance optimization", "Launch marketing materials"]
    }
  ],
  "estimatedCost": "$5,000-$10,000 (including hosting, tools, and initial marketing)"
}"""

STAGE3_GUIDE = """\
REQUIREMENTS:
- Core features: 3-5 features that are ABSOLUTELY ESSENTIAL for the business to function
- Nice-to-haves: 3-5 features that add value but can wait for v2
- Tech stack: modern, proven technologies for frontend, backend and infrastructure
- Timeline: 3-4 phases with realistic durations, each with 3-5 specific deliverables
  - Total timeline should be 2-6 months for MVP
- Estimated cost: realistic range covering tools, hosting, initial marketing and integrations

GUIDELINES:
- Focus on the MINIMUM viable product: the smallest version that delivers value
- Prioritize features that enable monetization and user validation
- Choose the tech stack for speed to market and developer availability
- Consider the effort score from Stage 2 when estimating the timeline
- Recommend no-code/low-code solutions where appropriate to reduce effort"""

STAGE4_EXAMPLE = """\
{
  "testingMethods": [
    {
      "method": "Landing Page + Ads",
      "description": "Create a simple landing page describing the product and run targeted ads to measure interest",
      "cost": "$500-$1,000",
      "timeline": "1-2 weeks"
    },
    {
      "method": "Customer Interviews",
      "description": "Conduct 15-20 interviews with target customers to validate problem and solution",
      "cost": "$0-$200",
      "timeline": "2-3 weeks"
    }
  ],
  "successMetrics": [
    {
      "metric": "Landing Page Conversion Rate",
      "target": "5-10% of visitors sign up for waitlist",
      "measurement": "Track email signups vs. unique visitors"
    }
  ],
  "budget": {
    "total": "$1,000-$2,500",
    "breakdown": [
      { "item": "Landing page design and hosting", "cost": "$200-$500" },
      { "item": "Paid advertising (Google/Facebook)", "cost": "$500-$1,000" }
    ]
  },
  "timeline": "4-6 weeks total for comprehensive testing"
}"""

STAGE4_GUIDE = """\
REQUIREMENTS:
- Testing methods: 3-5 low-cost, high-signal approaches with description, cost and timeline
- Success metrics: 3-5 measurable indicators with target and measurement method
- Budget: 10-30% of the MVP development cost, broken into line items with cost ranges
- Timeline: overall testing duration, typically 4-8 weeks

GUIDELINES:
- Validate demand BEFORE building the full product
- Mix quantitative (ads, landing pages) and qualitative (interviews) methods
- Pick channels that fit the target audience (B2B vs B2C)
- Include at least one method that tests willingness to pay
- Metrics should support a clear go/no-go decision"""

STAGE5_EXAMPLE = """\
{
  "growthChannels": [
    {"channel": "SEO content", "strategy": "Publish comparison pages for high-intent keywords", "priority": "high"},
    {"channel": "Partnerships", "strategy": "Integrate with two adjacent tools and co-market", "priority": "medium"}
  ],
  "milestones": [
    {"milestone": "First 100 paying customers", "timeline": "Month 3", "metrics": ["MRR $5,000", "Churn < 5%"]},
    {"milestone": "Product-market fit", "timeline": "Month 6", "metrics": ["40% 'very disappointed' survey score"]}
  ],
  "resourceScaling": [
    {"phase": "0-100 customers", "team": ["Founder", "Part-time support"], "infrastructure": "Managed hosting on a single region"},
    {"phase": "100-1,000 customers", "team": ["Founder", "Full-stack developer", "Marketer"], "infrastructure": "Autoscaling with a managed database"}
  ]
}"""

STAGE5_GUIDE = """\
REQUIREMENTS:
- Growth channels: 3-5 channels with a concrete strategy and a priority of high, medium or low
- Milestones: 3-5 milestones with a timeline and 1-3 measurable metrics each
- Resource scaling: 2-4 phases describing team composition and infrastructure

GUIDELINES:
- Start from the validation results expected in Stage 4
- Prefer channels a small team can run without large budgets
- Tie every milestone to numbers that can be tracked"""

STAGE6_EXAMPLE = """\
{
  "automationOpportunities": [
    {"process": "Customer support triage", "tool": "AI helpdesk assistant", "roi": "Saves 10 hours/week", "priority": 9},
    {"process": "Lead qualification", "tool": "CRM workflow with enrichment API", "roi": "2x sales throughput", "priority": 7}
  ],
  "implementationPlan": [
    {"phase": "Phase 1: Quick wins", "automations": ["Support triage", "Invoice reminders"], "timeline": "Weeks 1-2"},
    {"phase": "Phase 2: Core operations", "automations": ["Lead qualification", "Onboarding emails"], "timeline": "Weeks 3-6"}
  ],
  "estimatedSavings": "$3,000-$5,000/month in labor costs"
}"""

STAGE6_GUIDE = """\
REQUIREMENTS:
- Automation opportunities: 4-6 processes, each with a specific tool, an ROI estimate and a priority from 1 (low) to 10 (high)
- Implementation plan: 2-4 phases listing the automations and a timeline
- Estimated savings: a monthly range in time or money

GUIDELINES:
- Focus on repetitive work that blocks a solo founder or small team
- Prefer off-the-shelf AI and no-code tools over custom development
- Order the plan so the highest-ROI automations come first"""


def _overview(analysis: BusinessAnalysis) -> dict[str, Any]:
    structured = json_parse(analysis.structured_json, {}) or {}
    return {
        "overview": structured.get("overview") or {},
        "technical": structured.get("technical") or {},
    }


def _business_context(analysis: BusinessAnalysis, with_tech: bool = True) -> str:
    parts = _overview(analysis)
    overview, technical = parts["overview"], parts["technical"]
    lines = [
        f"- Business: {analysis.business_model or analysis.url}",
        f"- Value Proposition: {overview.get('valueProposition') or 'Unknown'}",
        f"- Monetization: {overview.get('monetization') or 'Unknown'}",
    ]
    if with_tech:
        lines.append(f"- Tech Stack: {', '.join(technical.get('techStack') or []) or 'Unknown'}")
    lines.append(f"- Target Audience: {overview.get('targetAudience') or 'Unknown'}")
    lines.append(f"- URL: {analysis.url}")
    return "BUSINESS CONTEXT:\n" + "\n".join(lines)


def _content(stages: Stages, number: int) -> dict[str, Any]:
    stage = stages.get(number) or {}
    return stage.get("content") or {}


def _previous_context(stage_number: int, stages: Stages) -> str:
    s2, s3, s4, s5 = (_content(stages, n) for n in (2, 3, 4, 5))
    blocks = []
    if stage_number >= 3:
        lines = [f"- Effort Score: {s2.get('effortScore', 'Unknown')}/10"]
        if stage_number == 3:
            lines.append(f"- Recommendation: {s2.get('recommendation', 'Unknown')}")
        else:
            lines.append(f"- Reward Score: {s2.get('rewardScore', 'Unknown')}/10")
        blocks.append(f"STAGE 2 CONTEXT ({STAGE_NAMES[2]}):\n" + "\n".join(lines))
    if stage_number >= 4:
        blocks.append(
            f"STAGE 3 CONTEXT ({STAGE_NAMES[3]}):\n"
            f"- Core Features: {', '.join(s3.get('coreFeatures') or []) or 'Unknown'}\n"
            f"- Estimated MVP Cost: {s3.get('estimatedCost', 'Unknown')}"
        )
    if stage_number >= 5:
        methods = [m.get("method", "") for m in s4.get("testingMethods") or []]
        blocks.append(
            f"STAGE 4 CONTEXT ({STAGE_NAMES[4]}):\n"
            f"- Testing Methods: {', '.join(methods) or 'Unknown'}\n"
            f"- Validation Budget: {(s4.get('budget') or {}).get('total', 'Unknown')}"
        )
    if stage_number >= 6:
        channels = [c.get("channel", "") for c in s5.get("growthChannels") or []]
        blocks.append(
            f"STAGE 5 CONTEXT ({STAGE_NAMES[5]}):\n"
            f"- Growth Channels: {', '.join(channels) or 'Unknown'}"
        )
    return "\n\n".join(blocks)


_STAGE_PROMPTS = {
    2: (STAGE2_SYSTEM, "Analyze this business opportunity for effort vs. reward and automation potential.",
        'a "Lazy-Entrepreneur Filter" analysis', STAGE2_EXAMPLE, STAGE2_GUIDE),
    3: (STAGE3_SYSTEM, "Create an MVP launch plan for this business opportunity.",
        "an MVP Launch Plan", STAGE3_EXAMPLE, STAGE3_GUIDE),
    4: (STAGE4_SYSTEM, "Create a demand testing strategy for this business opportunity.",
        "a Demand Testing Strategy", STAGE4_EXAMPLE, STAGE4_GUIDE),
    5: (STAGE5_SYSTEM, "Create a scaling and growth plan for this business opportunity.",
        "a Scaling & Growth plan", STAGE5_EXAMPLE, STAGE5_GUIDE),
    6: (STAGE6_SYSTEM, "Map the AI automation opportunities for this business.",
        "an AI Automation Map", STAGE6_EXAMPLE, STAGE6_GUIDE),
}


def stage_prompt(
    stage_number: int,
    analysis: BusinessAnalysis,
    stages: Stages | None = None,
    user_input: str | None = None,
) -> tuple[str, str]:
    """Return ``(prompt, system_prompt)`` for generating *stage_number*."""
    if stage_number not in _STAGE_PROMPTS:
        raise ValueError(f"Stage {stage_number} has no generation prompt")
    stages = stages if stages is not None else stages_from_analysis(analysis)
    system, task, label, example, guide = _STAGE_PROMPTS[stage_number]

    sections = [task, _business_context(analysis, with_tech=stage_number != 4)]
    previous = _previous_context(stage_number, stages)
    if previous:
        sections.append(previous)
    if user_input and user_input.strip():
        sections.append(f"ADDITIONAL CONTEXT FROM THE USER:\n{user_input.strip()}")
    sections.append(f"Provide {label} in this exact JSON format:\n\n{example}")
    sections.append(guide)
    sections.append("Respond ONLY with valid JSON.")
    return "\n\n".join(sections), system


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def _provider_failure(exc: BaseException, stage_number: int, attempts: int) -> AppError:
    guidance = error_guidance(exc, f"generating {STAGE_NAMES[stage_number]}")
    message = str(exc).lower()
    if "timeout" in message:
        status, code = 504, "GATEWAY_TIMEOUT"
    elif "rate limit" in message or "quota" in message:
        status, code = 429, "RATE_LIMITED"
    else:
        status, code = 502, "AI_PROVIDER_DOWN"
    return AppError(
        f"Failed to generate Stage {stage_number} content after {attempts} attempts",
        status, code, guidance["userMessage"],
        details={"stageNumber": stage_number, "attempts": attempts,
                 "nextSteps": guidance["nextSteps"], "retryable": guidance["retryable"]},
    )


def _record_failure(session: Session, analysis: BusinessAnalysis, stages: Stages,
                    stage_number: int, error: str) -> None:
    if can_regenerate_stage(stages, stage_number):
        # a failed regeneration keeps the previous good content
        return
    stages[stage_number] = create_stage_data(stage_number, {"error": error}, "failed")
    save_stages(analysis, stages)
    session.commit()


async def generate_stage(
    session: Session,
    analysis: BusinessAnalysis,
    stage_number: int,
    client: LLMClient,
    user_input: str | None = None,
    regenerate: bool = False,
    *,
    max_attempts: int = STAGE_MAX_ATTEMPTS,
    retry_delay: float = STAGE_RETRY_DELAY,
) -> dict[str, Any]:
    """Generate (or regenerate) one stage and persist it on *analysis*.

    Raises ``AppError``: 400 when the stage is locked, 502/504/429 when the
    provider fails, 502 ``AI_VALIDATION_ERROR`` when the output does not fit
    the stage schema.
    """
    valid, reason = validate_stage_progression(analysis, stage_number, regenerate)
    if not valid:
        raise AppError(reason or "Invalid stage", 400, "BAD_REQUEST")
    if stage_number == 1:
        raise AppError.bad_request("Stage 1 is produced by the initial analysis and cannot be generated")

    stages = stages_from_analysis(analysis)
    prompt, system = stage_prompt(stage_number, analysis, stages, user_input)

    log.info("Generating stage %d for analysis %s", stage_number, analysis.id)
    result = await retry_with_backoff(
        lambda: client.call(system, prompt),
        max_attempts=max_attempts,
        delay=retry_delay,
        on_retry=lambda exc, attempt: log.info(
            "Retry attempt %d for stage %d after error: %s", attempt, stage_number, exc),
    )
    if not result.success:
        log.error("Stage %d generation failed after %d attempts: %s",
                  stage_number, result.attempts, result.error)
        _record_failure(session, analysis, stages, stage_number, str(result.error))
        raise _provider_failure(result.error, stage_number, result.attempts)

    model = STAGE_CONTENT_MODELS[stage_number]
    try:
        content = model.model_validate(result.data).dump()
    except ValidationError as exc:
        log.error("Stage %d content failed validation: %s", stage_number, exc)
        _record_failure(session, analysis, stages, stage_number, "Generated content was invalid")
        raise AppError(
            f"Generated Stage {stage_number} content is invalid", 502, "AI_VALIDATION_ERROR",
            "The AI generated invalid data. Please try again.",
            details={"stageNumber": stage_number},
        ) from exc

    ok, errors = validate_stage_data(stage_number, content)
    if not ok:
        raise AppError(f"Stage {stage_number} content rejected: {'; '.join(errors)}", 502,
                       "AI_VALIDATION_ERROR", "The AI generated invalid data. Please try again.")

    stages[stage_number] = create_stage_data(stage_number, content)
    save_stages(analysis, stages)
    session.commit()
    log.info("Stage %d for analysis %s saved (%d bytes)", stage_number, analysis.id,
             len(json.dumps(content)))
    return stages[stage_number]
