"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database and a deterministic panel.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from council.panel import Council, default_agents
from council.tests.conftest import StubRegistrar

WATER_PUMP = {
    "title": "Emergency Water Pump Repair",
    "description": "Restore clean water to 150 families.",
    "amount": 0.05,
    "urgency": "Critical",
}


@pytest.fixture()
def client(engine, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database and a panel that always stakes."""
    monkeypatch.setenv("COUNCIL_DB_PATH", str(tmp_path / "council.db"))
    monkeypatch.delenv("COUNCIL_WATCH_CHAIN", raising=False)
    for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GROQ_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    council = Council(agents=default_agents(), registrar=StubRegistrar())
    from council.app import app, db_session, get_council

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
    app.dependency_overrides[get_council] = lambda: council
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


class TestProposalEndpoints:
    def test_submit(self, client):
        resp = client.post("/api/proposals", json=WATER_PUMP)
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "awaiting_analysis"
        assert [p["agent_name"] for p in data["participants"]] == ["RiskBot", "CommunityBot", "TechBot"]
        assert data["consensus"] is None

    def test_submit_and_analyze(self, client):
        resp = client.post("/api/proposals?analyze=true", json=WATER_PUMP)
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "decided"
        assert data["consensus"]["decision"] == "APPROVED"
        assert len(data["analyses"]) == 3

    @pytest.mark.parametrize("body", [
        {"title": "", "amount": 1.0},
        {"title": "   ", "amount": 1.0},
        {"title": "Negative", "amount": -1},
        {"description": "no title"},
    ])
    def test_submit_invalid(self, client, body):
        assert client.post("/api/proposals", json=body).status_code == 422

    def test_duplicate_id(self, client):
        assert client.post("/api/proposals", json={**WATER_PUMP, "id": 5}).status_code == 201
        assert client.post("/api/proposals", json={**WATER_PUMP, "id": 5}).status_code == 409

    def test_analyze_then_consensus(self, client):
        pid = client.post("/api/proposals", json=WATER_PUMP).json()["id"]
        resp = client.post(f"/api/proposals/{pid}/analyze")
        assert resp.status_code == 200
        assert resp.json()["status"] == "decided"

        consensus = client.get(f"/api/proposals/{pid}/consensus").json()
        assert consensus["decision"] == "APPROVED"
        assert consensus["approval_rate"] == 100.0
        assert consensus["complete"] is True

    def test_get_and_list(self, client):
        pid = client.post("/api/proposals", json=WATER_PUMP).json()["id"]
        assert client.get(f"/api/proposals/{pid}").json()["title"] == WATER_PUMP["title"]
        listed = client.get("/api/proposals").json()
        assert [p["id"] for p in listed] == [pid]
        assert client.get("/api/proposals?status=decided").json() == []

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/proposals/999"),
        ("post", "/api/proposals/999/analyze"),
        ("get", "/api/proposals/999/consensus"),
    ])
    def test_not_found(self, client, method, path):
        assert getattr(client, method)(path).status_code == 404

    def test_demo_and_stats(self, client):
        resp = client.post("/api/demo")
        assert resp.status_code == 200
        assert [p["consensus"]["decision"] for p in resp.json()] == ["APPROVED", "APPROVED"]
        stats = client.get("/api/stats").json()
        assert stats["total"] == 2
        assert stats["by_source"] == {"demo": 2}


class TestAgentAndActivityEndpoints:
    def test_agents(self, client):
        client.post("/api/proposals", json=WATER_PUMP)
        agents = {a["name"]: a for a in client.get("/api/agents").json()}
        assert set(agents) == {"RiskBot", "FinanceBot", "CommunityBot", "TechBot"}
        assert agents["FinanceBot"]["registered_proposals"] == []
        assert len(agents["RiskBot"]["registered_proposals"]) == 1

    def test_logs(self, client):
        client.post("/api/proposals", json=WATER_PUMP)
        data = client.get("/api/logs").json()
        assert data["ok"] is True
        assert any("Evaluating proposal" in e["text"] for e in data["logs"])
        assert client.get(f"/api/logs?since={data['now'] + 60_000}").json()["logs"] == []

    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["ok"] is True
        assert data["oracle"] is None
        assert data["agents"] == 4
        assert data["watching"] is False

    def test_cors(self, client):
        resp = client.options("/api/proposals", headers={
            "Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST",
        })
        assert resp.headers.get("access-control-allow-origin") == "*"


class IdleRegistry:
    """Registry with no proposals, so the watcher only polls."""

    async def block_number(self) -> int:
        return 1

    async def proposal_count(self) -> int:
        return 0

    async def submitted_ids(self, from_block: int, to_block: int) -> list[int]:
        return []

    async def get_proposal(self, proposal_id: int) -> dict:
        raise LookupError(proposal_id)


class TestLifespan:
    def test_watcher_stopped_on_shutdown(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COUNCIL_DB_PATH", str(tmp_path / "council.db"))
        monkeypatch.setenv("COUNCIL_WATCH_CHAIN", "1")
        monkeypatch.setenv("COUNCIL_POLL_INTERVAL", "0.01")
        for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GROQ_API_KEY"):
            monkeypatch.delenv(key, raising=False)
        monkeypatch.setattr("council.chain.ProposalRegistry", IdleRegistry)
        from council.app import app

        with TestClient(app) as c:
            assert c.get("/api/status").json()["watching"] is True
            task = app.state.watcher
            assert not task.done()
        assert task.cancelled()
