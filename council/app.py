from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager, suppress
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from council import services
from council.activity import get_activity_log, setup_logging
from council.db import get_session, init_db, session_scope
from council.panel import Council, SimulatedRegistrar, default_agents
from council.schemas import (
    AgentOut,
    ConsensusOut,
    LogsOut,
    ProposalCreate,
    ProposalDetail,
    ProposalOut,
    StatsOut,
)
from council.scorer import oracle_from_env

log = logging.getLogger(__name__)


def build_council() -> Council:
    return Council(agents=default_agents(), registrar=SimulatedRegistrar(), oracle=oracle_from_env())


def _start_watcher(council: Council) -> asyncio.Task | None:
    if os.environ.get("COUNCIL_WATCH_CHAIN", "").strip().lower() not in ("1", "true", "yes", "on"):
        return None
    from council.chain import ProposalRegistry
    from council.watcher import ChainWatcher

    async def handle(data: dict) -> None:
        with session_scope() as session:
            try:
                await services.submit_proposal(session, council, data, source="chain", analyze=True)
            except services.DuplicateProposal:
                log.info("Proposal %s already evaluated, skipping", data.get("id"))
                return
            session.commit()

    watcher = ChainWatcher(ProposalRegistry(), handle)
    return asyncio.create_task(watcher.run())


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    council = build_council()
    app.state.council = council
    for agent in council.agents:
        log.info("%s (%s) ready, %s", agent.name, agent.specialization,
                 "LLM" if council.oracle else "fallback rules")
    watcher = _start_watcher(council)
    app.state.watcher = watcher
    yield
    if watcher is not None:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


app = FastAPI(
    title="Council",
    version="0.1.0",
    description=(
        "Proposal evaluation by a panel of specialised AI agents. "
        "Submit a funding proposal, let interested agents stake and analyse it, "
        "and read back the confidence-weighted consensus."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Proposals", "description": "Submit proposals, trigger analysis, read consensus."},
        {"name": "Agents", "description": "The scorer panel."},
        {"name": "Activity", "description": "Recent activity log and service status."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_council(request: Request) -> Council:
    return request.app.state.council


def _get_or_404(session: Session, proposal_id: int):
    proposal = services.get_proposal(session, proposal_id)
    if proposal is None:
        raise HTTPException(404, "Proposal not found")
    return proposal


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.post("/api/proposals", response_model=ProposalDetail, status_code=201,
          tags=["Proposals"], summary="Submit a proposal; interested agents stake on it")
async def submit_proposal(
    body: ProposalCreate,
    analyze: bool = Query(False, description="Run the analysis right after registration"),
    session: Session = Depends(db_session),
    council: Council = Depends(get_council),
):
    try:
        proposal = await services.submit_proposal(session, council, body.model_dump(), analyze=analyze)
    except services.DuplicateProposal as exc:
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return services.proposal_detail(proposal)


@app.get("/api/proposals", response_model=list[ProposalOut],
         tags=["Proposals"], summary="List proposals, newest first")
async def list_proposals(
    status: str | None = Query(None, description="Comma-separated: submitted, awaiting_analysis, unresolved, decided"),
    limit: int = Query(200, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    return services.list_proposals(session, status=status, limit=limit)


@app.get("/api/proposals/{proposal_id}", response_model=ProposalDetail,
         tags=["Proposals"], summary="Proposal with participants, analyses and consensus")
async def get_proposal(proposal_id: int, session: Session = Depends(db_session)):
    return services.proposal_detail(_get_or_404(session, proposal_id))


@app.post("/api/proposals/{proposal_id}/analyze", response_model=ProposalDetail,
          tags=["Proposals"], summary="Begin analysis by every registered agent")
async def begin_analysis(
    proposal_id: int,
    session: Session = Depends(db_session),
    council: Council = Depends(get_council),
):
    proposal = _get_or_404(session, proposal_id)
    await services.begin_analysis(session, council, proposal_id)
    session.commit()
    return services.proposal_detail(proposal)


@app.get("/api/proposals/{proposal_id}/consensus", response_model=ConsensusOut,
         tags=["Proposals"], summary="Recompute the weighted consensus now")
async def get_consensus(proposal_id: int, session: Session = Depends(db_session)):
    try:
        return services.get_consensus(session, proposal_id)
    except services.ProposalNotFound as exc:
        raise HTTPException(404, "Proposal not found") from exc


@app.post("/api/demo", response_model=list[ProposalDetail],
          tags=["Proposals"], summary="Submit and analyse the demo proposals")
async def run_demo(session: Session = Depends(db_session), council: Council = Depends(get_council)):
    proposals = await services.run_demo(session, council)
    session.commit()
    return [services.proposal_detail(p) for p in proposals]


@app.get("/api/stats", response_model=StatsOut, tags=["Proposals"], summary="Aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Routes: Agents & activity
# ---------------------------------------------------------------------------


@app.get("/api/agents", response_model=list[AgentOut], tags=["Agents"], summary="List the scorer panel")
async def list_agents(council: Council = Depends(get_council)):
    return [services.agent_summary(a) for a in council.agents]


@app.get("/api/logs", response_model=LogsOut, tags=["Activity"],
         summary="Recent activity; use since=<ms> to poll for new entries")
async def get_logs(
    since: int | None = Query(None, ge=0),
    limit: int = Query(200, ge=1, le=1000),
):
    entries = get_activity_log().entries(since=since, limit=limit)
    return {"ok": True, "logs": [e.as_dict() for e in entries], "now": int(time.time() * 1000)}


@app.get("/api/status", tags=["Activity"], summary="Service status")
async def status(request: Request, council: Council = Depends(get_council)):
    return {
        "ok": True,
        "oracle": council.oracle.provider if council.oracle else None,
        "agents": len(council.agents),
        "watching": getattr(request.app.state, "watcher", None) is not None,
    }


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run(
        "council.app:app",
        host=os.environ.get("COUNCIL_HOST", "127.0.0.1"),
        port=int(os.environ.get("COUNCIL_PORT", "4001")),
    )


if __name__ == "__main__":
    main()
