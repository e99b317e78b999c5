from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from ventureclone import services
from ventureclone.config import configure_logging
from ventureclone.db import init_db, session_scope
from ventureclone.errors import AppError
from ventureclone.workflow import STAGE_NAMES

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def ventureclone_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "VentureClone",
    instructions=(
        "VentureClone scores how feasible it is to clone a business website and tracks a "
        "six-stage plan for each analysis. Start with list_analyses() to browse, then "
        "get_analysis(id) for details, get_clonability(id) for the score breakdown and "
        "get_stage_progress(id) for workflow status."
    ),
    lifespan=ventureclone_lifespan,
    json_response=True,
)


def _not_found(exc: AppError, analysis_id: str) -> dict:
    return {"error": f"Analysis {analysis_id} not found", "code": exc.code}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("ventureclone://overview")
def ventureclone_overview() -> str:
    """Overview of VentureClone: data model, scores and workflow stages."""
    return json.dumps({
        "system": "VentureClone - business clonability analysis",
        "data_model": {
            "analysis": "One analyzed website: structured SWOT/market/technical analysis, "
                        "clonability score, enhanced complexity, technology insights and stages.",
            "clonability": "Weighted 1-10 score; higher means easier to clone.",
            "complexity": "Technical complexity 1-10 with a frontend/backend/infrastructure breakdown.",
        },
        "stages": {str(k): v for k, v in STAGE_NAMES.items()},
        "ratings": ["very-easy", "easy", "moderate", "difficult", "very-difficult"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_analyses(limit: int = 50) -> list[dict]:
    """List business analyses, newest first.

    Args:
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        records = services.list_analyses(session)[:max(1, min(limit, 500))]
        return [services.analysis_summary(r) for r in records]


@mcp.tool()
def get_analysis(analysis_id: str) -> dict:
    """Get one analysis with structured data, scores, insights and stages."""
    with session_scope() as session:
        try:
            return services.analysis_detail(services.get_analysis(session, analysis_id))
        except AppError as exc:
            return _not_found(exc, analysis_id)


@mcp.tool()
def get_clonability(analysis_id: str) -> dict:
    """Recompute and return the clonability score with its four weighted components."""
    with session_scope() as session:
        try:
            record = services.get_analysis(session, analysis_id)
        except AppError as exc:
            return _not_found(exc, analysis_id)
        return services.recompute_clonability(session, record).dump()


@mcp.tool()
def get_stage_progress(analysis_id: str) -> dict:
    """Stage map and progress (current, completed, next stage) for an analysis."""
    with session_scope() as session:
        try:
            return services.stage_overview(services.get_analysis(session, analysis_id))
        except AppError as exc:
            return _not_found(exc, analysis_id)


@mcp.tool()
def get_insights_cache_stats() -> dict:
    """Hits, misses, evictions, size and hit rate of the technology insights cache."""
    return services.cache_stats()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the VentureClone MCP server over stdio."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
