from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from ventureclone import export, services
from ventureclone.analyzer import run_analysis
from ventureclone.config import configure_logging, get_settings
from ventureclone.db import init_db, session_scope, storage_ok
from ventureclone.errors import (
    AppError,
    VentureCloneError,
    error_body,
    error_code_for_status,
    resolve_error,
)
from ventureclone.insights import warm_insights_cache
from ventureclone.llm import active_provider, client_for_user
from ventureclone.middleware import RateLimiter, identity_middleware, request_id_of, user_id_of
from ventureclone.schemas import (
    AIProviderCheck,
    AIProviderCheckOut,
    AIProviderCreate,
    AIProviderOut,
    AIProviderUpdate,
    AnalysisOut,
    AnalyzeRequest,
    CacheStatsOut,
    HealthOut,
    ImproveRequest,
    StageOut,
    StageRequest,
    StagesOut,
)
from ventureclone.workflow import current_stage, generate_stage, stages_from_analysis, validate_stage_progression

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    if get_settings().warm_insights_cache:
        await asyncio.to_thread(warm_insights_cache)
    yield


app = FastAPI(
    title="VentureClone",
    version="0.1.0",
    description=(
        "Business clonability analysis API. Analyze a website, score how feasible it is "
        "to replicate, and walk a six-stage plan from discovery to automation. "
        "Users are identified by the venture_user_id cookie."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Liveness and configuration check."},
        {"name": "AI Providers", "description": "Manage per-user LLM provider credentials."},
        {"name": "Analyses", "description": "Run and browse business analyses."},
        {"name": "Workflow", "description": "Generate and inspect the six workflow stages."},
        {"name": "Scoring", "description": "Clonability score and technology insights."},
        {"name": "Export", "description": "Download stages or the complete plan."},
        {"name": "Cache", "description": "Technology insights cache statistics."},
    ],
)
app.middleware("http")(identity_middleware)

rate_limiter = RateLimiter()


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


def _error_response(request: Request, exc: BaseException) -> JSONResponse:
    status, code, message = resolve_error(exc)
    headers = None
    if isinstance(exc, AppError) and "retryAfter" in exc.details:
        headers = {"Retry-After": str(exc.details["retryAfter"])}
    if status >= 500:
        log.error("%s %s failed with %d %s: %s", request.method, request.url.path, status, code, exc)
    return JSONResponse(error_body(message, code, request_id_of(request)), status_code=status,
                        headers=headers)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return _error_response(request, exc)


@app.exception_handler(VentureCloneError)
async def domain_error_handler(request: Request, exc: VentureCloneError):
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error_response(request, exc)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        error_body(str(exc.detail), error_code_for_status(exc.status_code), request_id_of(request)),
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return _error_response(request, exc)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session


def current_user(request: Request) -> str:
    return user_id_of(request)


def _download(body: str, media_type: str, filename: str) -> Response:
    return Response(body, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/healthz", response_model=HealthOut, tags=["Health"], summary="Service health")
async def healthz():
    ok = storage_ok()
    return {"ok": ok, "storage": "ok" if ok else "error",
            "providers": get_settings().configured_providers()}


# ---------------------------------------------------------------------------
# Routes: AI Providers
# ---------------------------------------------------------------------------


@app.get("/api/ai-providers", response_model=list[AIProviderOut],
         tags=["AI Providers"], summary="List your AI providers (keys masked)")
async def list_ai_providers(session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    return [services.provider_out(p) for p in services.list_providers(session, user_id)]


@app.get("/api/ai-providers/active", response_model=AIProviderOut,
         tags=["AI Providers"], summary="Get the active AI provider")
async def get_active_provider(session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    provider = active_provider(session, user_id)
    if provider is None:
        raise AppError.not_found("Active AI provider")
    return services.provider_out(provider)


@app.post("/api/ai-providers", response_model=AIProviderOut,
          status_code=201, tags=["AI Providers"], summary="Add an AI provider")
async def create_ai_provider(body: AIProviderCreate, session: Session = Depends(db_session),
                             user_id: str = Depends(current_user)):
    provider = services.create_provider(session, user_id, body.provider, body.api_key,
                                        body.model, body.is_active)
    return services.provider_out(provider)


@app.post("/api/ai-providers/test", response_model=AIProviderCheckOut,
          tags=["AI Providers"], summary="Check that a provider key can reach the provider")
async def check_ai_provider(body: AIProviderCheck):
    return await services.check_provider(body.provider, body.api_key, body.model)


@app.patch("/api/ai-providers/{provider_id}", response_model=AIProviderOut,
           tags=["AI Providers"], summary="Activate, deactivate or rotate a provider key")
async def update_ai_provider(provider_id: int, body: AIProviderUpdate,
                             session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    provider = services.get_provider(session, provider_id, user_id)
    services.update_provider(session, provider, body.model_dump(exclude_unset=True))
    session.commit()
    return services.provider_out(provider)


@app.delete("/api/ai-providers/{provider_id}", tags=["AI Providers"], summary="Remove an AI provider")
async def delete_ai_provider(provider_id: int, session: Session = Depends(db_session),
                             user_id: str = Depends(current_user)):
    provider = services.get_provider(session, provider_id, user_id)
    session.delete(provider)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Analyses
# ---------------------------------------------------------------------------


@app.get("/api/business-analyses", tags=["Analyses"], summary="List your analyses, newest first")
async def list_business_analyses(session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    return [services.analysis_summary(a) for a in services.list_analyses(session, user_id)]


@app.post("/api/business-analyses/analyze", response_model=AnalysisOut,
          response_model_exclude_none=True, dependencies=[Depends(rate_limiter)],
          tags=["Analyses"], summary="Analyze a business website")
async def analyze(body: AnalyzeRequest, session: Session = Depends(db_session),
                  user_id: str = Depends(current_user)):
    client = client_for_user(session, user_id)
    record = await run_analysis(session, user_id, body.url, client)
    return services.analysis_detail(record)


@app.get("/api/business-analyses/{analysis_id}", response_model=AnalysisOut,
         response_model_exclude_none=True, tags=["Analyses"], summary="Get one analysis")
async def get_business_analysis(analysis_id: str, session: Session = Depends(db_session),
                                user_id: str = Depends(current_user)):
    return services.analysis_detail(services.get_analysis(session, analysis_id, user_id))


@app.delete("/api/business-analyses/{analysis_id}", tags=["Analyses"], summary="Delete an analysis")
async def delete_business_analysis(analysis_id: str, session: Session = Depends(db_session),
                                   user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    session.delete(record)
    session.commit()
    return {"ok": True}


@app.post("/api/business-analyses/{analysis_id}/improve", dependencies=[Depends(rate_limiter)],
          tags=["Analyses"], summary="Generate three twists and a 7-day plan")
async def improve(analysis_id: str, body: ImproveRequest | None = None,
                  session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    client = client_for_user(session, user_id)
    return await services.run_improvements(session, record, client, body.goal if body else None)


# ---------------------------------------------------------------------------
# Routes: Workflow
# ---------------------------------------------------------------------------


@app.get("/api/business-analyses/{analysis_id}/stages", response_model=StagesOut,
         tags=["Workflow"], summary="Stage map and progress")
async def get_stages(analysis_id: str, session: Session = Depends(db_session),
                     user_id: str = Depends(current_user)):
    return services.stage_overview(services.get_analysis(session, analysis_id, user_id))


@app.post("/api/business-analyses/{analysis_id}/stages/{stage_number}", response_model=StageOut,
          response_model_exclude_none=True,
          dependencies=[Depends(rate_limiter)], tags=["Workflow"],
          summary="Generate or regenerate stage 2..6")
async def post_stage(analysis_id: str, stage_number: int, body: StageRequest | None = None,
                     session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    body = body or StageRequest()
    record = services.get_analysis(session, analysis_id, user_id)
    valid, reason = validate_stage_progression(record, stage_number, body.regenerate)
    if not valid:
        raise AppError.bad_request(reason or "Invalid stage")
    client = client_for_user(session, user_id)
    stage = await generate_stage(session, record, stage_number, client, body.user_input, body.regenerate)
    return {**stage, "currentStage": current_stage(stages_from_analysis(record))}


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.get("/api/business-analyses/{analysis_id}/clonability", tags=["Scoring"],
         summary="Recompute the clonability score")
async def get_clonability(analysis_id: str, session: Session = Depends(db_session),
                          user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    return services.recompute_clonability(session, record).dump()


@app.get("/api/business-analyses/{analysis_id}/insights", tags=["Scoring"],
         summary="Technology insights and enhanced complexity")
async def get_insights(analysis_id: str, session: Session = Depends(db_session),
                       user_id: str = Depends(current_user)):
    return services.insights_for(session, services.get_analysis(session, analysis_id, user_id))


@app.get("/api/insights-cache/stats", response_model=CacheStatsOut,
         tags=["Cache"], summary="Insights cache statistics")
async def insights_cache_stats():
    return services.cache_stats()


# ---------------------------------------------------------------------------
# Routes: Export
# ---------------------------------------------------------------------------


@app.post("/api/business-analyses/{analysis_id}/stages/{stage_number}/export", tags=["Export"],
          summary="Export one stage as json, markdown, csv or html")
async def export_stage(analysis_id: str, stage_number: int, fmt: str = Query("json", alias="format"),
                       session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    return _download(*export.export_stage(record, stage_number, fmt))


@app.post("/api/business-analyses/{analysis_id}/export-complete", tags=["Export"],
          summary="Export the complete plan as json, markdown, csv or html")
async def export_complete(analysis_id: str, fmt: str = Query("json", alias="format"),
                          session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    return _download(*export.export_complete_plan(record, fmt))


@app.post("/api/business-analyses/{analysis_id}/improvements/export",
          dependencies=[Depends(rate_limiter)], tags=["Export"],
          summary="Export the improvement plan as json or html")
async def export_improvements(analysis_id: str, fmt: str = Query("json", alias="format"),
                              session: Session = Depends(db_session), user_id: str = Depends(current_user)):
    record = services.get_analysis(session, analysis_id, user_id)
    return _download(*export.export_improvements(record, fmt))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    uvicorn.run("ventureclone.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
