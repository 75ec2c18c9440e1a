"""Shared business logic for the Council API, MCP server and chain watcher."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from council.consensus import ConsensusOutcome, Decision, reduce_consensus
from council.models import Analysis, Proposal, Registration
from council.panel import Council, ScorerAgent, admit_participants, run_analyses
from council.scorer import RECOMMENDATIONS

log = logging.getLogger(__name__)


class ProposalNotFound(LookupError):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} not found")
        self.proposal_id = proposal_id


class DuplicateProposal(ValueError):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} already exists")
        self.proposal_id = proposal_id


# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

PROPOSAL_FIELDS = (
    "title", "description", "amount", "category", "urgency", "recipient", "submitter",
)

DEMO_PROPOSALS: list[dict[str, Any]] = [
    {
        "title": "Emergency Water Pump Repair",
        "description": "Restore clean water to 150 families. Local technician available, just need parts.",
        "amount": 0.05,
        "category": "Emergency Infrastructure",
        "urgency": "Critical",
    },
    {
        "title": "Solar Panel Installation for School",
        "description": "Install 20kW rooftop solar on the community school.",
        "amount": 1.25,
        "category": "Infrastructure",
        "urgency": "Normal",
    },
]

_OUTCOME_MESSAGES = {
    Decision.APPROVED: "APPROVED, treasury can execute",
    Decision.REJECTED: "REJECTED, no payment",
    Decision.MIXED: "MIXED, needs manual review",
}


# ---------------------------------------------------------------------------
# Lookup & serialization helpers
# ---------------------------------------------------------------------------


def get_proposal(session: Session, proposal_id: int) -> Proposal | None:
    return session.execute(select(Proposal).where(Proposal.id == proposal_id)).scalars().first()


def require_proposal(session: Session, proposal_id: int) -> Proposal:
    proposal = get_proposal(session, proposal_id)
    if proposal is None:
        raise ProposalNotFound(proposal_id)
    return proposal


def proposal_summary(p: Proposal) -> dict:
    return {
        "id": p.id, "title": p.title, "description": p.description or "",
        "amount": float(p.amount or 0), "category": p.category, "urgency": p.urgency,
        "recipient": p.recipient, "submitter": p.submitter,
        "source": p.source, "status": p.status,
        "submitted_at": p.submitted_at.isoformat() if p.submitted_at else None,
        "participant_count": len(p.registrations),
        "analysis_count": len(p.analyses),
    }


def analysis_summary(a: Analysis) -> dict:
    return {
        "agent_name": a.agent_name, "specialization": a.specialization,
        "recommendation": a.recommendation, "decision": RECOMMENDATIONS[a.recommendation],
        "confidence": a.confidence, "reasoning": a.reasoning, "source": a.source,
    }


def consensus_summary(p: Proposal, outcome: ConsensusOutcome | None = None) -> dict:
    outcome = outcome or reduce_consensus(p.analyses)
    analysed = {a.agent_name for a in p.analyses}
    participants = [r.agent_name for r in p.registrations]
    return {
        "proposal_id": p.id,
        "total_count": outcome.total_count,
        "considered_count": outcome.considered_count,
        "approval_weight": round(outcome.approval_weight, 4),
        "total_weight": round(outcome.total_weight, 4),
        "approval_rate": round(outcome.approval_rate, 2),
        "decision": outcome.decision.value,
        "participants": len(participants),
        "complete": bool(participants) and all(name in analysed for name in participants),
    }


def proposal_detail(p: Proposal) -> dict:
    base = proposal_summary(p)
    base["participants"] = [
        {"agent_name": r.agent_name, "specialization": r.specialization} for r in p.registrations
    ]
    base["analyses"] = [analysis_summary(a) for a in p.analyses]
    base["consensus"] = consensus_summary(p) if p.analyses else None
    return base


def agent_summary(agent: ScorerAgent) -> dict:
    return {
        "name": agent.name, "specialization": agent.specialization,
        "registered_proposals": sorted(agent.registered),
    }


def list_proposals(session: Session, status: str | None = None, limit: int = 200) -> list[dict]:
    query = select(Proposal).order_by(Proposal.id.desc()).limit(limit)
    if status:
        query = query.where(Proposal.status.in_({s.strip() for s in status.split(",")}))
    return [proposal_summary(p) for p in session.execute(query).scalars().all()]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def submit_proposal(
    session: Session,
    council: Council,
    data: dict[str, Any],
    *,
    source: str = "api",
    analyze: bool = False,
) -> Proposal:
    """Store a proposal and let the panel decide who participates.

    The proposal row is committed before the panel runs, so no write
    transaction is open while scorers wait on the oracle.  Registrations (and,
    with ``analyze=True``, analyses) are flushed afterwards; caller must commit.
    """
    proposal_id = data.get("id")
    if proposal_id is not None and get_proposal(session, proposal_id) is not None:
        raise DuplicateProposal(proposal_id)

    proposal = Proposal(
        id=proposal_id, source=source, status="submitted",
        **{f: data.get(f) for f in PROPOSAL_FIELDS if data.get(f) is not None},
    )
    session.add(proposal)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if proposal_id is None:
            raise
        raise DuplicateProposal(proposal_id) from exc
    log.info("Evaluating proposal %s %r (%s requested)", proposal.id, proposal.title, proposal.amount)

    participants = await admit_participants(proposal, council.agents, council.registrar, council.oracle)
    for agent in participants:
        proposal.registrations.append(
            Registration(agent_name=agent.name, specialization=agent.specialization)
        )
    if participants:
        proposal.status = "awaiting_analysis"
    else:
        proposal.status = "unresolved"
        log.warning("No agents staked on proposal %s, it stays unresolved", proposal.id)

    if analyze and participants:
        await begin_analysis(session, council, proposal.id)
    session.flush()
    return proposal


def _pending_agents(council: Council, proposal: Proposal) -> list[ScorerAgent]:
    done = {a.agent_name for a in proposal.analyses}
    pending: list[ScorerAgent] = []
    for reg in proposal.registrations:
        if reg.agent_name in done:
            continue
        agent = council.agent(reg.agent_name)
        if agent is None:
            log.warning("Registered agent %s for proposal %s is not on the panel", reg.agent_name, proposal.id)
            continue
        pending.append(agent)
    return pending


def _stored_analysts(session: Session, proposal_id: int) -> set[str]:
    return set(session.execute(
        select(Analysis.agent_name).where(Analysis.proposal_id == proposal_id)
    ).scalars())


async def begin_analysis(
    session: Session, council: Council, proposal_id: int,
) -> ConsensusOutcome | None:
    """Run every outstanding participant analysis, then compute consensus (caller must commit).

    Nothing is written until the analyses are back.  An analysis stored in the
    meantime by an overlapping call wins over the one just computed.  Returns
    None when the proposal has no participants.
    """
    with session.no_autoflush:
        proposal = require_proposal(session, proposal_id)
        if not proposal.registrations:
            log.warning("No agents registered for proposal %s, cannot begin analysis", proposal_id)
            return None
        pending = _pending_agents(council, proposal)

    if pending:
        log.info("Beginning analysis for proposal %s with %d agents", proposal_id, len(pending))
        results = await run_analyses(proposal, pending, council.oracle)
        stored = _stored_analysts(session, proposal_id)
        for agent, result in zip(pending, results):
            if agent.name in stored:
                log.info("%s already has an analysis for proposal %s, keeping the stored one",
                         agent.name, proposal_id)
                continue
            proposal.analyses.append(Analysis(
                agent_name=agent.name, specialization=agent.specialization,
                recommendation=result.recommendation, confidence=result.confidence,
                reasoning=result.reasoning, source=result.source,
            ))
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            log.info("Analyses for proposal %s were stored concurrently, using the stored ones", proposal_id)
            proposal = require_proposal(session, proposal_id)
        # pick up rows committed by overlapping calls
        session.expire(proposal, ["analyses"])

    analysed = {a.agent_name for a in proposal.analyses}
    if all(r.agent_name in analysed for r in proposal.registrations):
        proposal.status = "decided"
    session.flush()

    outcome = reduce_consensus(proposal.analyses)
    log_outcome(proposal, outcome)
    return outcome


def get_consensus(session: Session, proposal_id: int) -> dict:
    """Recompute the consensus for a proposal from its stored analyses."""
    return consensus_summary(require_proposal(session, proposal_id))


def log_outcome(proposal: Proposal, outcome: ConsensusOutcome) -> None:
    log.info("Consensus for proposal %s: %d analyses, %d non-neutral, weighted approval %.1f%%",
             proposal.id, outcome.total_count, outcome.considered_count, outcome.approval_rate)
    if outcome.decision is Decision.MIXED:
        log.warning("Proposal %s %s", proposal.id, _OUTCOME_MESSAGES[outcome.decision])
    else:
        log.info("Proposal %s %s", proposal.id, _OUTCOME_MESSAGES[outcome.decision])
    for a in proposal.analyses:
        log.info("  %s: %s (%.0f%%)", a.agent_name, RECOMMENDATIONS[a.recommendation], a.confidence)


async def run_demo(session: Session, council: Council) -> list[Proposal]:
    """Submit the demo proposals and analyse them immediately (caller must commit)."""
    submitted = []
    for data in DEMO_PROPOSALS:
        log.info("Demo proposal %r", data["title"])
        submitted.append(await submit_proposal(session, council, data, source="demo", analyze=True))
    return submitted


def compute_stats(session: Session) -> dict:
    proposals = session.execute(select(Proposal)).scalars().all()
    by_status: Counter[str] = Counter()
    by_decision: Counter[str] = Counter()
    by_source: Counter[str] = Counter()
    for p in proposals:
        by_status[p.status] += 1
        by_source[p.source] += 1
        if p.analyses:
            by_decision[reduce_consensus(p.analyses).decision.value] += 1
    return {
        "total": len(proposals), "by_status": dict(by_status),
        "by_decision": dict(by_decision), "by_source": dict(by_source),
    }
