from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from council.models import Base, Proposal


class StubRegistrar:
    """Registration side effect that succeeds unless told otherwise."""

    def __init__(self, fail: tuple[str, ...] = (), explode: tuple[str, ...] = ()):
        self.fail = set(fail)
        self.explode = set(explode)
        self.calls: list[tuple[int, str]] = []

    async def register(self, proposal, agent) -> bool:
        self.calls.append((proposal.id, agent.name))
        if agent.name in self.explode:
            raise RuntimeError("rpc unavailable")
        return agent.name not in self.fail


def make_proposal(title: str, amount: float, description: str = "", id: int = 1, **extra) -> Proposal:
    return Proposal(id=id, title=title, description=description, amount=amount, **extra)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def water_pump() -> Proposal:
    return make_proposal(
        "Emergency Water Pump Repair", 0.05,
        "The main community water pump has broken down and needs immediate repair. "
        "This affects 150 families who currently have no access to clean water.",
    )


@pytest.fixture()
def quantum_lab() -> Proposal:
    return make_proposal(
        "Advanced Quantum Computing Research Lab", 5.0,
        "Establish a cutting-edge quantum computing research facility for the community. "
        "This experimental technology could revolutionize our local economy, though success "
        "is uncertain and costs are very high.",
        id=2,
    )
