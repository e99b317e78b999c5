"""Integration tests for the FastAPI endpoints and the MCP tools.

Uses TestClient against an in-memory database; LLM clients are mocked.
"""
from __future__ import annotations

import dataclasses
import json
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ventureclone.config import get_settings
from ventureclone.errors import STATUS_CODES, AppError, LLMCallError
from ventureclone.llm import LLMClient
from ventureclone.models import Base, BusinessAnalysis, User
from ventureclone.workflow import create_stage_data

STRUCTURED = {
    "overview": {
        "valueProposition": "Invoicing for freelancers",
        "targetAudience": "Freelance designers",
        "monetization": "Monthly subscription",
    },
    "market": {"competitors": [{"name": "FreshBooks"}], "swot": {"strengths": ["Simple"]}},
    "technical": {"techStack": ["React", "Node.js", "Stripe"]},
    "synthesis": {"summary": "Small SaaS", "keyInsights": ["Niche audience"]},
}

STAGE2 = {
    "effortScore": 4,
    "rewardScore": 7,
    "recommendation": "go",
    "reasoning": "Low effort relative to a clear willingness to pay.",
    "automationPotential": {"score": 0.7, "opportunities": ["Invoice reminders"]},
    "resourceRequirements": {"time": "2-3 months", "money": "$5,000", "skills": ["React"]},
    "nextSteps": ["Interview 10 freelancers"],
}

USER = "user-1"


@pytest.fixture()
def test_db():
    """In-memory SQLite shared by every connection through StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    """TestClient identified as ``user-1`` with a fresh rate limiter."""
    engine, TestSession = test_db
    from ventureclone.app import app, db_session, rate_limiter

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    rate_limiter.reset()
    with patch("ventureclone.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            c.cookies.set("venture_user_id", USER)
            yield c, TestSession
    app.dependency_overrides.clear()
    rate_limiter.reset()


def _seed(TestSession, user_id: str = USER, **fields) -> str:
    session = TestSession()
    if session.get(User, user_id) is None:
        session.add(User(id=user_id))
    record = BusinessAnalysis(
        user_id=user_id,
        url="https://invoicely.example.com",
        summary="Invoicing for freelancers",
        model="openai:gpt-4o",
        business_model="Invoicely",
        structured_json=json.dumps(STRUCTURED),
        **fields,
    )
    session.add(record)
    session.commit()
    analysis_id = record.id
    session.close()
    return analysis_id


@pytest.fixture()
def seeded_client(client):
    c, TestSession = client
    return c, TestSession, _seed(TestSession)


def _llm(result: dict) -> MagicMock:
    llm = MagicMock()
    llm.call = AsyncMock(return_value=result)
    return llm


class TestHealthAndIdentity:
    def test_healthz(self, client):
        c, _ = client
        with patch("ventureclone.app.storage_ok", return_value=True):
            resp = c.get("/api/healthz")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["storage"] == "ok"
        assert set(data["providers"]) == {"openai", "anthropic", "gemini", "grok"}

    def test_request_id_is_echoed(self, client):
        c, _ = client
        resp = c.get("/api/business-analyses", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"

    def test_first_visit_sets_user_cookie(self, client):
        c, _ = client
        c.cookies.clear()
        resp = c.get("/api/business-analyses")
        assert resp.status_code == 200
        assert resp.cookies.get("venture_user_id")
        assert resp.headers["X-Request-ID"]


class TestProviderEndpoints:
    def test_create_masks_key(self, client):
        c, _ = client
        resp = c.post("/api/ai-providers", json={"provider": "openai", "apiKey": "sk-test-1234567890"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["apiKey"] == "sk-t...7890"
        assert data["isActive"] is True
        assert "sk-test-1234567890" not in resp.text

    def test_single_active_provider(self, client):
        c, _ = client
        first = c.post("/api/ai-providers", json={"provider": "openai", "apiKey": "sk-openai-key"}).json()
        second = c.post("/api/ai-providers", json={"provider": "anthropic", "apiKey": "sk-ant-key"}).json()

        active = c.get("/api/ai-providers/active").json()
        assert active["id"] == second["id"]

        resp = c.patch(f"/api/ai-providers/{first['id']}", json={"isActive": True})
        assert resp.status_code == 200
        states = {p["id"]: p["isActive"] for p in c.get("/api/ai-providers").json()}
        assert states == {first["id"]: True, second["id"]: False}

    def test_delete_and_missing_active(self, client):
        c, _ = client
        created = c.post("/api/ai-providers", json={"provider": "grok", "apiKey": "xai-key-123456"}).json()
        assert c.delete(f"/api/ai-providers/{created['id']}").json() == {"ok": True}

        resp = c.get("/api/ai-providers/active")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Active AI provider not found"

    def test_unknown_provider_is_rejected(self, client):
        c, _ = client
        resp = c.post("/api/ai-providers", json={"provider": "mystery", "apiKey": "key"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_check_provider_key(self, client):
        c, _ = client
        with patch.object(LLMClient, "check_connection", AsyncMock(return_value=True)) as check:
            resp = c.post("/api/ai-providers/test", json={"provider": "anthropic", "apiKey": "sk-ant-test"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True,
                               "message": "Connected to anthropic (claude-haiku-4-5-20251001)"}
        check.assert_awaited_once()
        assert "sk-ant-test" not in resp.text

    def test_check_provider_failure_is_reported(self, client):
        c, _ = client
        failure = LLMCallError("LLM API call failed: 401 unauthorized", retryable=True)
        with patch.object(LLMClient, "check_connection", AsyncMock(side_effect=failure)):
            resp = c.post("/api/ai-providers/test", json={"provider": "openai", "apiKey": "sk-bad"})
        assert resp.status_code == 200
        assert resp.json()["success"] is False
        assert "401" in resp.json()["message"]

    def test_check_provider_without_any_key(self, client):
        c, _ = client
        settings = dataclasses.replace(get_settings(), provider_keys={"grok": ""})
        with patch("ventureclone.services.get_settings", return_value=settings), \
                patch.object(LLMClient, "check_connection") as check:
            resp = c.post("/api/ai-providers/test", json={"provider": "grok"})
        assert resp.json() == {"success": False, "message": "No API key available for grok"}
        check.assert_not_called()

    def test_other_users_provider_is_hidden(self, client):
        c, _ = client
        created = c.post("/api/ai-providers", json={"provider": "openai", "apiKey": "sk-openai-key"}).json()
        c.cookies.set("venture_user_id", "someone-else")
        assert c.delete(f"/api/ai-providers/{created['id']}").status_code == 404


class TestAnalysisEndpoints:
    def test_analyze(self, client):
        c, _ = client

        async def fake_run(session, user_id, url, llm):
            session.add(User(id=user_id))
            record = BusinessAnalysis(user_id=user_id, url=url, summary="Invoicing",
                                      model="openai:gpt-4o", business_model="Invoicely",
                                      structured_json=json.dumps(STRUCTURED))
            session.add(record)
            session.commit()
            return record

        with patch("ventureclone.app.client_for_user", return_value=_llm({})), \
                patch("ventureclone.app.run_analysis", side_effect=fake_run) as run:
            resp = c.post("/api/business-analyses/analyze", json={"url": "invoicely.example.com"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["businessModel"] == "Invoicely"
        assert data["currentStage"] == 1
        assert data["stages"]["1"]["status"] == "completed"
        assert run.call_args.args[1] == USER

    def test_analyze_validation(self, client):
        c, _ = client
        resp = c.post("/api/business-analyses/analyze", json={"url": ""}, headers={"X-Request-ID": "req-7"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["requestId"] == "req-7"

    def test_missing_provider_config(self, client):
        c, _ = client
        with patch("ventureclone.app.client_for_user",
                   side_effect=AppError.config_missing("No AI provider configured")):
            resp = c.post("/api/business-analyses/analyze", json={"url": "https://x.example.com"})
        assert resp.status_code == 500
        assert resp.json()["code"] == "CONFIG_MISSING"

    def test_list_and_get(self, seeded_client):
        c, TestSession, analysis_id = seeded_client
        _seed(TestSession, user_id="someone-else")
        listed = c.get("/api/business-analyses").json()
        assert [a["id"] for a in listed] == [analysis_id]
        detail = c.get(f"/api/business-analyses/{analysis_id}").json()
        assert detail["structured"]["overview"]["targetAudience"] == "Freelance designers"

    def test_not_found_error_shape(self, client):
        c, _ = client
        resp = c.get("/api/business-analyses/nope", headers={"X-Request-ID": "req-404"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Analysis not found", "code": "NOT_FOUND", "requestId": "req-404"}

    def test_other_users_analysis_is_hidden(self, client):
        c, TestSession = client
        other = _seed(TestSession, user_id="someone-else")
        assert c.get(f"/api/business-analyses/{other}").status_code == 404

    def test_delete(self, seeded_client):
        c, _, analysis_id = seeded_client
        assert c.delete(f"/api/business-analyses/{analysis_id}").json() == {"ok": True}
        assert c.get(f"/api/business-analyses/{analysis_id}").status_code == 404

    def test_improve(self, seeded_client):
        c, _, analysis_id = seeded_client
        improvement = {
            "twists": ["Agency plan", "Mobile receipts", "Late-fee automation"],
            "sevenDayPlan": [{"day": d, "tasks": [f"Task {d}"]} for d in range(1, 8)],
        }
        llm = _llm(improvement)
        with patch("ventureclone.app.client_for_user", return_value=llm):
            resp = c.post(f"/api/business-analyses/{analysis_id}/improve", json={"goal": "Reach agencies"})
        assert resp.status_code == 200
        assert len(resp.json()["sevenDayPlan"]) == 7
        assert "Reach agencies" in llm.call.call_args.args[1]

    def test_harmful_goal_is_a_validation_error(self, seeded_client):
        c, _, analysis_id = seeded_client
        llm = _llm({})
        with patch("ventureclone.app.client_for_user", return_value=llm):
            resp = c.post(f"/api/business-analyses/{analysis_id}/improve",
                          json={"goal": "<script>alert(1)"}, headers={"X-Request-ID": "req-9"})
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "validation failed: goal contains potentially harmful content",
            "code": "VALIDATION_ERROR",
            "requestId": "req-9",
        }
        assert resp.headers["X-Request-ID"] == "req-9"
        llm.call.assert_not_called()

    def test_unhandled_error_is_generic(self, client):
        c, _ = client
        from ventureclone.app import app

        quiet = TestClient(app, raise_server_exceptions=False)
        quiet.cookies.set("venture_user_id", USER)
        with patch("ventureclone.app.services.list_analyses", side_effect=RuntimeError("db exploded")):
            resp = quiet.get("/api/business-analyses")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"
        assert "exploded" not in resp.text


class TestErrorMapping:
    @pytest.mark.parametrize("status", sorted(STATUS_CODES) + [418])
    def test_status_sets_code(self, client, status):
        c, _ = client
        with patch("ventureclone.app.services.list_analyses", side_effect=AppError("boom", status)):
            resp = c.get("/api/business-analyses", headers={"X-Request-ID": f"req-{status}"})
        assert resp.status_code == status
        assert resp.json() == {
            "error": "boom",
            "code": STATUS_CODES.get(status, "UNKNOWN"),
            "requestId": f"req-{status}",
        }

    @pytest.mark.parametrize("message,status,code", [
        ("upstream rate limit hit", 429, "RATE_LIMITED"),
        ("upstream timeout after 30s", 504, "GATEWAY_TIMEOUT"),
    ])
    def test_message_overrides(self, client, message, status, code):
        from ventureclone.app import app

        quiet = TestClient(app, raise_server_exceptions=False)
        quiet.cookies.set("venture_user_id", USER)
        with patch("ventureclone.app.services.list_analyses", side_effect=RuntimeError(message)):
            resp = quiet.get("/api/business-analyses")
        assert resp.status_code == status
        assert resp.json()["code"] == code
        assert message not in resp.text

    def test_unknown_route(self, client):
        c, _ = client
        resp = c.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"


class TestWorkflowEndpoints:
    def test_stage_overview(self, seeded_client):
        c, _, analysis_id = seeded_client
        data = c.get(f"/api/business-analyses/{analysis_id}/stages").json()
        assert list(data["stages"]) == ["1"]
        assert data["progress"]["currentStage"] == 2
        assert data["progress"]["nextStage"] == 2

    def test_generate_stage(self, seeded_client):
        c, _, analysis_id = seeded_client
        with patch("ventureclone.app.client_for_user", return_value=_llm(STAGE2)):
            resp = c.post(f"/api/business-analyses/{analysis_id}/stages/2", json={"userInput": "Agencies"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["stageNumber"] == 2
        assert data["status"] == "completed"
        assert data["currentStage"] == 3
        progress = c.get(f"/api/business-analyses/{analysis_id}/stages").json()["progress"]
        assert progress["completedStages"] == [1, 2]

    def test_locked_stage(self, seeded_client):
        c, _, analysis_id = seeded_client
        with patch("ventureclone.app.client_for_user") as factory:
            resp = c.post(f"/api/business-analyses/{analysis_id}/stages/4")
        assert resp.status_code == 400
        assert "must be completed" in resp.json()["error"]
        factory.assert_not_called()

    def test_rate_limited(self, seeded_client):
        c, _, analysis_id = seeded_client
        from ventureclone.app import rate_limiter

        with patch.object(rate_limiter, "max_requests", 1):
            c.post(f"/api/business-analyses/{analysis_id}/stages/4")
            resp = c.post(f"/api/business-analyses/{analysis_id}/stages/4")
        assert resp.status_code == 429
        assert resp.json()["code"] == "RATE_LIMITED"
        assert int(resp.headers["Retry-After"]) > 0

    def test_cookieless_callers_are_limited(self, client):
        c, _ = client
        from ventureclone.app import rate_limiter

        codes = []
        with patch.object(rate_limiter, "max_requests", 2):
            for _ in range(4):
                c.cookies.clear()
                codes.append(c.post("/api/business-analyses/analyze", json={"url": ""}).status_code)
        assert codes == [400, 400, 429, 429]
        assert rate_limiter.tracked_keys() == 1


class TestScoringEndpoints:
    def test_clonability(self, seeded_client):
        c, TestSession, analysis_id = seeded_client
        resp = c.get(f"/api/business-analyses/{analysis_id}/clonability")
        assert resp.status_code == 200
        data = resp.json()
        assert 1 <= data["score"] <= 10
        assert set(data["components"]) == {
            "technicalComplexity", "marketOpportunity", "resourceRequirements", "timeToMarket"}
        session = TestSession()
        assert session.get(BusinessAnalysis, analysis_id).overall_score == data["score"]
        session.close()

    def test_insights_are_stored(self, seeded_client):
        c, _, analysis_id = seeded_client
        first = c.get(f"/api/business-analyses/{analysis_id}/insights").json()
        assert set(first) == {"insights", "enhancedComplexity", "cached"}
        assert first["insights"]["buildVsBuy"]
        second = c.get(f"/api/business-analyses/{analysis_id}/insights").json()
        assert second["cached"] is True
        assert second["insights"] == first["insights"]

    def test_cache_stats(self, client):
        c, _ = client
        data = c.get("/api/insights-cache/stats").json()
        assert set(data) == {"hits", "misses", "evictions", "size", "hitRate"}


class TestExportEndpoints:
    def test_export_stage(self, client):
        c, TestSession = client
        stages = {"1": create_stage_data(1, {"summary": "Invoicing"}), "2": create_stage_data(2, STAGE2)}
        analysis_id = _seed(TestSession, stages_json=json.dumps(stages), current_stage=3)
        resp = c.post(f"/api/business-analyses/{analysis_id}/stages/2/export?format=markdown")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/markdown")
        assert 'filename="Invoicely-Stage-2-Lazy-Entrepreneur-Filter.md"' in resp.headers["content-disposition"]
        assert resp.text.startswith("# Stage 2: Lazy-Entrepreneur Filter")

    def test_export_missing_stage(self, seeded_client):
        c, _, analysis_id = seeded_client
        resp = c.post(f"/api/business-analyses/{analysis_id}/stages/3/export")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Stage 3 not found"

    def test_export_bad_format(self, seeded_client):
        c, _, analysis_id = seeded_client
        resp = c.post(f"/api/business-analyses/{analysis_id}/export-complete?format=docx")
        assert resp.status_code == 400

    def test_export_complete(self, seeded_client):
        c, _, analysis_id = seeded_client
        resp = c.post(f"/api/business-analyses/{analysis_id}/export-complete")
        assert resp.status_code == 200
        plan = resp.json()
        assert plan["metadata"]["analysisId"] == analysis_id
        assert set(plan) == {"metadata", "stage1"}

    def test_export_improvements(self, client):
        c, TestSession = client
        improvements = {
            "twists": ["Agency plan", "Mobile receipts", "Late-fee automation"],
            "sevenDayPlan": [{"day": d, "tasks": [f"Task {d}"]} for d in range(1, 8)],
            "generatedAt": "2026-01-01T00:00:00Z",
        }
        analysis_id = _seed(TestSession, improvements_json=json.dumps(improvements))
        resp = c.post(f"/api/business-analyses/{analysis_id}/improvements/export?format=html")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert 'filename="Invoicely-Improvement-Plan.html"' in resp.headers["content-disposition"]
        assert "Late-fee automation" in resp.text
        assert c.post(f"/api/business-analyses/{analysis_id}/improvements/export").json() == improvements

    def test_export_improvements_before_generating(self, seeded_client):
        c, _, analysis_id = seeded_client
        resp = c.post(f"/api/business-analyses/{analysis_id}/improvements/export")
        assert resp.status_code == 404
        assert resp.json()["error"] == "No improvements found"


class TestMcpTools:
    @pytest.fixture()
    def scope(self, test_db):
        _, TestSession = test_db

        @contextmanager
        def fake_scope():
            session = TestSession()
            try:
                yield session
            finally:
                session.close()

        with patch("ventureclone.mcp_server.session_scope", fake_scope):
            yield TestSession

    def test_list_and_get(self, scope):
        from ventureclone import mcp_server

        analysis_id = _seed(scope)
        listed = mcp_server.list_analyses()
        assert [a["id"] for a in listed] == [analysis_id]
        assert mcp_server.get_analysis(analysis_id)["businessModel"] == "Invoicely"

    def test_missing_analysis(self, scope):
        from ventureclone import mcp_server

        assert mcp_server.get_clonability("nope") == {"error": "Analysis nope not found", "code": "NOT_FOUND"}

    def test_stage_progress(self, scope):
        from ventureclone import mcp_server

        analysis_id = _seed(scope)
        assert mcp_server.get_stage_progress(analysis_id)["progress"]["nextStage"] == 2

    def test_overview_resource(self):
        from ventureclone import mcp_server

        overview = json.loads(mcp_server.ventureclone_overview())
        assert overview["stages"]["6"] == "AI Automation Mapping"
