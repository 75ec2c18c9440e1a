"""The scorer panel: agent roster, registration side effect and participation gate."""
from __future__ import annotations

import asyncio
import logging
import random
import secrets
from dataclasses import dataclass, field
from typing import Protocol

from council.models import Proposal
from council.scorer import AnalysisResult, LLMClient, Specialization, analyze, evaluate_relevance

log = logging.getLogger(__name__)

DEFAULT_ROSTER: list[tuple[str, Specialization]] = [
    ("RiskBot", Specialization.RISK),
    ("FinanceBot", Specialization.FINANCIAL),
    ("CommunityBot", Specialization.COMMUNITY),
    ("TechBot", Specialization.TECHNICAL),
]

# Chance that an interested agent commits its stake in the simulated registrar
STAKE_PROBABILITY: dict[str, float] = {
    Specialization.RISK.value: 0.8,
    Specialization.FINANCIAL.value: 0.7,
    Specialization.COMMUNITY.value: 0.75,
    Specialization.TECHNICAL.value: 0.65,
}
_DEFAULT_STAKE_PROBABILITY = 0.6


class Registrar(Protocol):
    async def register(self, proposal: Proposal, agent: ScorerAgent) -> bool:
        """Stake ``agent`` on ``proposal``. Return False (or raise) on failure."""
        ...


@dataclass(eq=False)
class ScorerAgent:
    """A named, specialization-tagged scorer.

    The only state carried across proposals is the set of proposal ids the
    agent is registered for, plus the registrations currently in flight.
    """
    name: str
    specialization: str
    registered: set[int] = field(default_factory=set)
    _inflight: dict[int, asyncio.Future[bool]] = field(default_factory=dict, repr=False)

    async def evaluate_relevance(self, proposal: Proposal, client: LLMClient | None = None) -> bool:
        return await evaluate_relevance(proposal, self.specialization, client)

    async def analyze(self, proposal: Proposal, client: LLMClient | None = None) -> AnalysisResult:
        log.info("%s analysing proposal %s %r", self.name, proposal.id, proposal.title)
        result = await analyze(proposal, self.specialization, client)
        log.info("%s: %s (%.0f%% confidence, %s)", self.name, result.decision, result.confidence, result.source)
        return result

    async def register(self, proposal: Proposal, registrar: Registrar) -> bool:
        """Register for ``proposal`` at most once.

        Already registered is a success without touching the registrar.  A call
        made while another registration for the same proposal is in flight
        waits for that attempt and shares its outcome.
        """
        if proposal.id in self.registered:
            return True
        pending = self._inflight.get(proposal.id)
        if pending is not None:
            log.info("%s already registering for proposal %s", self.name, proposal.id)
            return await asyncio.shield(pending)

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._inflight[proposal.id] = future
        ok = False
        try:
            ok = bool(await registrar.register(proposal, self))
        except Exception as exc:
            log.warning("%s registration for proposal %s failed: %s", self.name, proposal.id, exc)
        finally:
            del self._inflight[proposal.id]
            future.set_result(ok)

        if ok:
            self.registered.add(proposal.id)
            log.info("%s registered (staked) on proposal %s", self.name, proposal.id)
        else:
            log.warning("%s not registered on proposal %s", self.name, proposal.id)
        return ok


def default_agents() -> list[ScorerAgent]:
    return [ScorerAgent(name, spec.value) for name, spec in DEFAULT_ROSTER]


class SimulatedRegistrar:
    """Virtual staking: a specialization-weighted coin flip and a fake tx hash.

    ``latency`` is an optional ``(min, max)`` seconds range slept before the
    decision, for demos that want the panel to look busy.  Off by default.
    """

    def __init__(
        self,
        probabilities: dict[str, float] | None = None,
        rng: random.Random | None = None,
        latency: tuple[float, float] | None = None,
    ):
        self.probabilities = STAKE_PROBABILITY if probabilities is None else probabilities
        self.rng = rng or random.Random()
        self.latency = latency

    async def register(self, proposal: Proposal, agent: ScorerAgent) -> bool:
        if self.latency:
            await asyncio.sleep(self.rng.uniform(*self.latency))
        chance = self.probabilities.get(agent.specialization, _DEFAULT_STAKE_PROBABILITY)
        if self.rng.random() >= chance:
            log.warning("%s chose not to stake on proposal %s (insufficient conviction)",
                        agent.name, proposal.id)
            return False
        tx = "0x" + secrets.token_hex(32)
        log.info("%s staking on proposal %s, tx %s", agent.name, proposal.id, tx[:10])
        return True


@dataclass
class Council:
    """Everything the pipeline needs: the roster, the oracle and the registrar."""
    agents: list[ScorerAgent]
    registrar: Registrar
    oracle: LLMClient | None = None

    def agent(self, name: str) -> ScorerAgent | None:
        return next((a for a in self.agents if a.name == name), None)


# ---------------------------------------------------------------------------
# Participation gate
# ---------------------------------------------------------------------------


async def _admit_one(
    proposal: Proposal, agent: ScorerAgent, registrar: Registrar, client: LLMClient | None,
) -> bool:
    if not await agent.evaluate_relevance(proposal, client):
        return False
    log.info("%s relevance > 6, evaluating stake on proposal %s", agent.name, proposal.id)
    return await agent.register(proposal, registrar)


async def admit_participants(
    proposal: Proposal,
    agents: list[ScorerAgent],
    registrar: Registrar,
    client: LLMClient | None = None,
) -> list[ScorerAgent]:
    """Return the agents that are both interested in and registered for ``proposal``.

    Agents are evaluated concurrently; the result keeps roster order.
    """
    admitted = await asyncio.gather(*(_admit_one(proposal, a, registrar, client) for a in agents))
    participants = [a for a, ok in zip(agents, admitted) if ok]
    log.info("Participants for proposal %s: %d/%d %s", proposal.id, len(participants), len(agents),
             ", ".join(f"{a.name} ({a.specialization})" for a in participants))
    return participants


async def run_analyses(
    proposal: Proposal, participants: list[ScorerAgent], client: LLMClient | None = None,
) -> list[AnalysisResult]:
    """Have every participant analyse ``proposal`` in parallel; order follows ``participants``."""
    return list(await asyncio.gather(*(a.analyze(proposal, client) for a in participants)))
