from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Proposal(Base):
    __tablename__ = "proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    urgency: Mapped[str | None] = mapped_column(String(50), nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(200), nullable=True)
    submitter: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="api")  # "api" | "chain" | "demo" | "mcp"
    status: Mapped[str] = mapped_column(String(30), default="submitted")
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.now())

    registrations: Mapped[list[Registration]] = relationship(
        "Registration", back_populates="proposal", cascade="all, delete-orphan",
        order_by="Registration.id",
    )
    analyses: Mapped[list[Analysis]] = relationship(
        "Analysis", back_populates="proposal", cascade="all, delete-orphan",
        order_by="Analysis.id",
    )


class Registration(Base):
    """A scorer that passed the relevance filter and staked on a proposal."""
    __tablename__ = "registrations"
    __table_args__ = (UniqueConstraint("proposal_id", "agent_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    specialization: Mapped[str] = mapped_column(String(100), nullable=False)
    registered_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.now())

    proposal: Mapped[Proposal] = relationship("Proposal", back_populates="registrations")


class Analysis(Base):
    __tablename__ = "analyses"
    __table_args__ = (UniqueConstraint("proposal_id", "agent_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    specialization: Mapped[str] = mapped_column(String(100), nullable=False)
    recommendation: Mapped[int] = mapped_column(Integer, nullable=False)  # -1 | 0 | 1
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    source: Mapped[str] = mapped_column(String(20), default="fallback")  # "oracle" | "fallback"
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=func.now())

    proposal: Mapped[Proposal] = relationship("Proposal", back_populates="analyses")
