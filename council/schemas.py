"""Pydantic request/response schemas for the Council API."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class ProposalCreate(BaseModel):
    id: int | None = Field(None, ge=1, description="Externally assigned id; generated when omitted")
    title: str = Field(..., min_length=1, max_length=300)
    description: str = ""
    amount: float = Field(0.0, ge=0)
    category: str | None = None
    urgency: str | None = None
    recipient: str | None = None
    submitter: str | None = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class ParticipantOut(BaseModel):
    agent_name: str
    specialization: str


class AnalysisOut(BaseModel):
    agent_name: str
    specialization: str
    recommendation: int
    decision: str
    confidence: float
    reasoning: str
    source: str


class ConsensusOut(BaseModel):
    proposal_id: int
    total_count: int
    considered_count: int
    approval_weight: float
    total_weight: float
    approval_rate: float
    decision: str
    participants: int
    complete: bool


class ProposalOut(BaseModel):
    id: int
    title: str
    description: str
    amount: float
    category: str | None = None
    urgency: str | None = None
    recipient: str | None = None
    submitter: str | None = None
    source: str
    status: str
    submitted_at: str | None = None
    participant_count: int = 0
    analysis_count: int = 0


class ProposalDetail(ProposalOut):
    participants: list[ParticipantOut] = []
    analyses: list[AnalysisOut] = []
    consensus: ConsensusOut | None = None


class AgentOut(BaseModel):
    name: str
    specialization: str
    registered_proposals: list[int] = []


class LogEntryOut(BaseModel):
    ts: int
    level: str
    logger: str
    text: str


class LogsOut(BaseModel):
    ok: bool = True
    logs: list[LogEntryOut]
    now: int


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    by_decision: dict[str, int]
    by_source: dict[str, int]
