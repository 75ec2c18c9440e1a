from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from council import services
from council.activity import setup_logging
from council.db import get_session, init_db
from council.panel import Council, SimulatedRegistrar, default_agents
from council.scorer import oracle_from_env

log = logging.getLogger(__name__)

_council: Council | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def council_lifespan(server: FastMCP) -> AsyncIterator[None]:
    setup_logging()
    init_db()
    yield


mcp = FastMCP(
    "Council",
    instructions=(
        "Council evaluates community funding proposals with a panel of specialised AI agents. "
        "Submit a proposal with submit_proposal(), trigger begin_analysis(id) once agents have "
        "staked, then read get_consensus(id). Start with get_stats() for an overview."
    ),
    lifespan=council_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_council() -> Council:
    global _council
    if _council is None:
        _council = Council(agents=default_agents(), registrar=SimulatedRegistrar(), oracle=oracle_from_env())
    return _council


def _not_found(proposal_id: int) -> dict:
    return {"error": f"Proposal {proposal_id} not found"}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("council://overview")
def council_overview() -> str:
    """Overview of Council: data model, workflow and decision rules."""
    return json.dumps({
        "system": "Council: proposal evaluation by specialised AI agents",
        "data_model": {
            "proposal": "A funding request: title, description, amount, optional category/urgency/recipient.",
            "registration": "An agent that found the proposal relevant (score > 6 of 10) and staked on it.",
            "analysis": "One agent's recommendation (-1 reject, 0 neutral, 1 approve) with confidence 0-100.",
        },
        "workflow": [
            "1. submit_proposal(title, description, amount, ...): agents decide whether to stake.",
            "2. begin_analysis(proposal_id): every staked agent analyses the proposal.",
            "3. get_consensus(proposal_id): confidence-weighted approval rate and decision.",
        ],
        "decisions": {
            "APPROVED": "Weighted approval rate >= 70%.",
            "REJECTED": "Weighted approval rate <= 30% (also when every analysis is neutral).",
            "MIXED": "Anything in between; needs manual review.",
        },
        "agents": [services.agent_summary(a) for a in _get_council().agents],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def submit_proposal(
    title: str, description: str = "", amount: float = 0.0,
    category: str | None = None, urgency: str | None = None, recipient: str | None = None,
    analyze: bool = False,
) -> dict:
    """Submit a funding proposal. Agents evaluate relevance and stake if interested.

    Args:
        title: Short proposal title.
        description: What the money is for.
        amount: Requested amount (non-negative).
        category: Optional category, e.g. "Emergency Infrastructure".
        urgency: Optional urgency tag, e.g. "Critical".
        recipient: Optional recipient identifier.
        analyze: Run the analysis immediately after registration.
    """
    if not title.strip():
        return {"error": "title is required"}
    if amount < 0:
        return {"error": "amount must be non-negative"}
    with _session() as session:
        proposal = await services.submit_proposal(session, _get_council(), {
            "title": title.strip(), "description": description, "amount": amount,
            "category": category, "urgency": urgency, "recipient": recipient,
        }, source="mcp", analyze=analyze)
        session.commit()
        return services.proposal_detail(proposal)


@mcp.tool()
async def begin_analysis(proposal_id: int) -> dict:
    """Have every agent staked on the proposal analyse it, then compute consensus."""
    with _session() as session:
        proposal = services.get_proposal(session, proposal_id)
        if proposal is None:
            return _not_found(proposal_id)
        await services.begin_analysis(session, _get_council(), proposal_id)
        session.commit()
        return services.proposal_detail(proposal)


@mcp.tool()
def get_consensus(proposal_id: int) -> dict:
    """Recompute the confidence-weighted consensus for a proposal."""
    with _session() as session:
        try:
            return services.get_consensus(session, proposal_id)
        except services.ProposalNotFound:
            return _not_found(proposal_id)


@mcp.tool()
def list_proposals(status: str | None = None, limit: int = 50) -> list[dict]:
    """List proposals, newest first.

    Args:
        status: Comma-separated filter from: submitted, awaiting_analysis, unresolved, decided.
        limit: Max results (default 50, max 500).
    """
    with _session() as session:
        return services.list_proposals(session, status=status, limit=max(1, min(limit, 500)))


@mcp.tool()
def get_proposal(proposal_id: int) -> dict:
    """Full proposal detail: participants, analyses and consensus."""
    with _session() as session:
        proposal = services.get_proposal(session, proposal_id)
        return services.proposal_detail(proposal) if proposal else _not_found(proposal_id)


@mcp.tool()
def list_agents() -> list[dict]:
    """List the scorer panel and the proposals each agent is registered for."""
    return [services.agent_summary(a) for a in _get_council().agents]


@mcp.tool()
def get_stats() -> dict:
    """Summary statistics: proposals by status, decision and source."""
    with _session() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Council MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
