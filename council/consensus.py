"""Confidence-weighted reduction of panel analyses to a single decision."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

APPROVE_THRESHOLD = 70.0
REJECT_THRESHOLD = 30.0


class Decision(StrEnum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MIXED = "MIXED"


class Scored(Protocol):
    recommendation: int
    confidence: float


@dataclass(frozen=True)
class ConsensusOutcome:
    total_count: int
    considered_count: int
    approval_weight: float
    total_weight: float
    approval_rate: float
    decision: Decision


def decide(approval_rate: float) -> Decision:
    if approval_rate >= APPROVE_THRESHOLD:
        return Decision.APPROVED
    if approval_rate <= REJECT_THRESHOLD:
        return Decision.REJECTED
    return Decision.MIXED


def reduce_consensus(results: Iterable[Scored]) -> ConsensusOutcome:
    """Reduce analyses to a weighted approval rate and a decision.

    Neutral results (recommendation 0) are left out of both sums.  Each
    remaining result weighs ``confidence / 100``.  With nothing left to weigh
    the rate is 0, which decides REJECTED.
    """
    results = list(results)
    considered = [r for r in results if r.recommendation != 0]
    total_weight = sum(r.confidence / 100 for r in considered)
    approval_weight = sum(r.confidence / 100 for r in considered if r.recommendation > 0)
    approval_rate = 100 * approval_weight / total_weight if total_weight > 0 else 0.0
    return ConsensusOutcome(
        total_count=len(results),
        considered_count=len(considered),
        approval_weight=approval_weight,
        total_weight=total_weight,
        approval_rate=approval_rate,
        decision=decide(approval_rate),
    )
