"""Shared business logic for the VentureClone API and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ventureclone.analyzer import ensure_user, generate_improvements, scoring_technologies
from ventureclone.clonability import calculate_clonability
from ventureclone.complexity import calculate_enhanced_complexity
from ventureclone.config import get_settings
from ventureclone.errors import AppError, LLMCallError
from ventureclone.insights import insights_service
from ventureclone.insights_cache import insights_cache
from ventureclone.llm import LLMClient
from ventureclone.models import AIProvider, BusinessAnalysis
from ventureclone.schemas import (
    ClonabilityScore,
    EnhancedComplexityResult,
    StructuredAnalysis,
    TechnologyInsights,
)
from ventureclone.utils import json_dump, json_parse, mask_secret
from ventureclone.workflow import progress_summary, stages_from_analysis

log = logging.getLogger(__name__)

PROVIDER_UPDATABLE = ("api_key", "model", "is_active")
PROVIDER_CHECK_TIMEOUT = 10.0

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def analysis_summary(record: BusinessAnalysis) -> dict[str, Any]:
    clonability = json_parse(record.clonability_json, None)
    return {
        "id": record.id,
        "url": record.url,
        "summary": record.summary,
        "model": record.model,
        "businessModel": record.business_model,
        "overallScore": record.overall_score,
        "clonabilityRating": clonability.get("rating") if clonability else None,
        "currentStage": record.current_stage,
        "detectionStatus": record.detection_status,
        "createdAt": _iso(record.created_at),
    }


def analysis_detail(record: BusinessAnalysis) -> dict[str, Any]:
    return {
        "id": record.id,
        "url": record.url,
        "summary": record.summary,
        "model": record.model,
        "businessModel": record.business_model,
        "revenueStream": record.revenue_stream,
        "targetMarket": record.target_market,
        "overallScore": record.overall_score,
        "structured": json_parse(record.structured_json, None),
        "firstPartyData": json_parse(record.first_party_json, None),
        "currentStage": record.current_stage,
        "stages": {str(k): v for k, v in stages_from_analysis(record).items()},
        "clonabilityScore": json_parse(record.clonability_json, None),
        "enhancedComplexity": json_parse(record.complexity_json, None),
        "insights": json_parse(record.insights_json, None),
        "improvements": json_parse(record.improvements_json, None),
        "detectionStatus": record.detection_status,
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
    }


def provider_out(provider: AIProvider) -> dict[str, Any]:
    return {
        "id": provider.id,
        "provider": provider.provider,
        "model": provider.model or "",
        "apiKey": mask_secret(provider.api_key),
        "isActive": provider.is_active,
        "createdAt": _iso(provider.created_at),
    }


def structured_of(record: BusinessAnalysis) -> StructuredAnalysis | None:
    raw = json_parse(record.structured_json, None)
    if not raw:
        return None
    try:
        return StructuredAnalysis.model_validate(raw)
    except ValidationError as exc:
        log.warning("Stored analysis %s does not parse: %d errors", record.id, exc.error_count())
        return None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def list_analyses(session: Session, user_id: str | None = None) -> list[BusinessAnalysis]:
    """Analyses newest first; all users when *user_id* is None."""
    query = select(BusinessAnalysis).order_by(BusinessAnalysis.created_at.desc())
    if user_id is not None:
        query = query.where(BusinessAnalysis.user_id == user_id)
    return list(session.execute(query).scalars().all())


def get_analysis(session: Session, analysis_id: str, user_id: str | None = None) -> BusinessAnalysis:
    """Raises ``AppError`` 404 when missing or owned by someone else."""
    record = session.get(BusinessAnalysis, analysis_id)
    if record is None or (user_id is not None and record.user_id != user_id):
        raise AppError("Analysis not found", 404, "NOT_FOUND",
                       "The requested analysis could not be found.")
    return record


def list_providers(session: Session, user_id: str) -> list[AIProvider]:
    return list(session.execute(
        select(AIProvider).where(AIProvider.user_id == user_id).order_by(AIProvider.created_at)
    ).scalars().all())


def get_provider(session: Session, provider_id: int, user_id: str) -> AIProvider:
    provider = session.get(AIProvider, provider_id)
    if provider is None or provider.user_id != user_id:
        raise AppError.not_found("AI provider")
    return provider


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def deactivate_other_providers(session: Session, user_id: str, keep_id: int | None = None) -> None:
    """At most one provider per user is active."""
    for provider in list_providers(session, user_id):
        if provider.id != keep_id and provider.is_active:
            provider.is_active = False


def create_provider(session: Session, user_id: str, provider: str, api_key: str,
                    model: str = "", is_active: bool = True) -> AIProvider:
    ensure_user(session, user_id)
    record = AIProvider(user_id=user_id, provider=provider, api_key=api_key.strip(),
                        model=model, is_active=is_active)
    session.add(record)
    session.flush()
    if is_active:
        deactivate_other_providers(session, user_id, keep_id=record.id)
    session.commit()
    log.info("Added %s provider for user %s", provider, user_id)
    return record


def update_provider(session: Session, record: AIProvider, updates: dict[str, Any]) -> AIProvider:
    """Apply non-None values from *updates* (caller must commit)."""
    for field in PROVIDER_UPDATABLE:
        value = updates.get(field)
        if value is not None:
            setattr(record, field, value.strip() if isinstance(value, str) else value)
    if updates.get("is_active"):
        deactivate_other_providers(session, record.user_id, keep_id=record.id)
    return record


async def check_provider(provider: str, api_key: str | None = None, model: str = "") -> dict[str, Any]:
    """Try one small completion with *api_key*, or the environment key for *provider*.

    Failures are reported in the result, not raised.
    """
    key = (api_key or "").strip() or get_settings().provider_keys.get(provider, "")
    if not key:
        return {"success": False, "message": f"No API key available for {provider}"}
    client = LLMClient(provider, model or None, key, timeout=PROVIDER_CHECK_TIMEOUT)
    try:
        ok = await client.check_connection()
    except LLMCallError as exc:
        log.warning("Connection check for %s failed: %s", provider, exc)
        return {"success": False, "message": str(exc)}
    if not ok:
        return {"success": False, "message": f"Unexpected reply from {provider}"}
    return {"success": True, "message": f"Connected to {provider} ({client.model})"}


# ---------------------------------------------------------------------------
# Derived results
# ---------------------------------------------------------------------------


def complexity_of(record: BusinessAnalysis, analysis: StructuredAnalysis | None) -> EnhancedComplexityResult:
    stored = json_parse(record.complexity_json, None)
    if stored:
        try:
            return EnhancedComplexityResult.model_validate(stored)
        except ValidationError:
            log.warning("Recomputing invalid stored complexity for %s", record.id)
    return calculate_enhanced_complexity(scoring_technologies(analysis) if analysis else [])


def recompute_clonability(session: Session, record: BusinessAnalysis) -> ClonabilityScore:
    """Score from stored analysis, complexity and insight estimates; persisted on the record."""
    analysis = structured_of(record)
    complexity = complexity_of(record, analysis)
    insights = json_parse(record.insights_json, None)
    estimates = None
    if insights:
        try:
            estimates = TechnologyInsights.model_validate(insights).estimates
        except ValidationError:
            log.warning("Stored insights for %s are invalid, scoring without estimates", record.id)
    score = calculate_clonability(complexity.score, analysis, estimates)
    record.clonability_json = json_dump(score.dump())
    record.overall_score = float(score.score)
    session.commit()
    return score


def insights_for(session: Session, record: BusinessAnalysis) -> dict[str, Any]:
    """Technology insights and enhanced complexity, generated when missing."""
    analysis = structured_of(record)
    complexity = complexity_of(record, analysis)
    technologies = scoring_technologies(analysis) if analysis else []

    stored = json_parse(record.insights_json, None)
    if stored:
        try:
            insights = TechnologyInsights.model_validate(stored)
            return {"insights": insights.dump(), "enhancedComplexity": complexity.dump(), "cached": True}
        except ValidationError:
            log.warning("Regenerating invalid stored insights for %s", record.id)

    cached = insights_cache.has([t.name for t in technologies])
    insights = insights_service.generate_insights(technologies, complexity.score)
    record.insights_json = json_dump(insights.dump())
    record.complexity_json = json_dump(complexity.dump())
    session.commit()
    return {"insights": insights.dump(), "enhancedComplexity": complexity.dump(), "cached": cached}


def stage_overview(record: BusinessAnalysis) -> dict[str, Any]:
    stages = stages_from_analysis(record)
    return {"stages": {str(k): v for k, v in stages.items()}, "progress": progress_summary(stages)}


async def run_improvements(session: Session, record: BusinessAnalysis, client: LLMClient,
                           goal: str | None = None) -> dict[str, Any]:
    improvement = await generate_improvements(record, client, goal)
    data = improvement.dump()
    record.improvements_json = json_dump(data)
    session.commit()
    return data


def cache_stats() -> dict[str, Any]:
    return insights_cache.stats()
