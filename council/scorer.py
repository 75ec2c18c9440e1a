"""Scoring engine: per-specialization relevance and analysis with deterministic fallbacks.

Architecture
------------
Every scorer on the panel carries a *specialization* that selects both the
prompt framing sent to the LLM and the rule-based heuristics used when the
LLM is unavailable:

- **Relevance**: the LLM rates 1–10 how relevant a proposal is to the
  specialization.  The scorer participates only when the rating is strictly
  greater than 6.
- **Analysis**: the LLM returns ``{"recommendation", "confidence",
  "reasoning"}``.  Anything malformed or out of range is discarded whole and
  the fallback heuristics answer instead.

The LLM is treated as an untrusted oracle: failed calls and bad output
are logged and degrade to the fallback, never propagated to the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from council.models import Proposal

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class Specialization(StrEnum):
    RISK = "Risk Assessment"
    FINANCIAL = "Financial Analysis"
    COMMUNITY = "Community Impact"
    TECHNICAL = "Technical Feasibility"


RELEVANCE_THRESHOLD = 6
RECOMMENDATIONS = {-1: "REJECT", 0: "NEUTRAL", 1: "APPROVE"}

_DEFAULT_TIMEOUT = 8.0
_GROQ_BASE_URL = "https://api.groq.com/openai/v1"

# Environment variable holding the API key for each provider
_PROVIDER_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openai_compatible": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
}


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic, OpenAI and Groq."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.timeout = timeout if timeout is not None else float(os.environ.get("LLM_TIMEOUT", _DEFAULT_TIMEOUT))
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible", "groq"):
            import openai
            kwargs: dict[str, Any] = {}
            if self.provider == "groq":
                self.model = self.model or "llama-3.1-8b-instant"
                kwargs["api_key"] = self._api_key or os.environ.get("GROQ_API_KEY")
                kwargs["base_url"] = self._base_url or _GROQ_BASE_URL
            else:
                self.model = self.model or "gpt-4o-mini"
                key = self._api_key or os.environ.get("OPENAI_API_KEY")
                if key:
                    kwargs["api_key"] = key
                url = self._base_url or os.environ.get("OPENAI_BASE_URL")
                if url:
                    kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _request(self, system: str, user: str, max_tokens: int, json_mode: bool) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=0.2,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return response.content[0].text.strip()
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=0.2,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **kwargs,
        )
        return (response.choices[0].message.content or "").strip()

    async def complete(
        self, system: str, user: str, max_tokens: int = 16, json_mode: bool = False,
    ) -> str:
        """Send system+user message to the LLM, return the raw reply text."""
        try:
            return await asyncio.wait_for(
                self._request(system, user, max_tokens, json_mode), timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LLMCallError(f"LLM call timed out after {self.timeout}s", retryable=True) from exc
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(self, system: str, user: str, max_tokens: int = 512) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        text = await self.complete(system, user, max_tokens=max_tokens, json_mode=True)
        m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
        if m:
            text = m.group(1)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned non-object JSON: {text[:200]}", retryable=False)
        return parsed


def oracle_from_env() -> LLMClient | None:
    """Build an LLMClient when the configured provider has an API key, else None.

    Without a key every scorer runs on its rule-based fallback.
    """
    provider = os.environ.get("LLM_PROVIDER", "anthropic")
    key_var = _PROVIDER_KEYS.get(provider)
    if key_var is None:
        log.warning("Unknown LLM provider %r, running on fallback rules", provider)
        return None
    if not os.environ.get(key_var):
        log.warning("No %s set, running on fallback rules", key_var)
        return None
    return LLMClient(provider=provider)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

RELEVANCE_SYSTEM_PROMPT = """\
You are a {specialization} AI agent deciding whether to participate in the \
analysis of a community funding proposal.
Rate relevance 1-10 (1 = not relevant, 10 = highly relevant to your specialization).
Respond only with a single integer from 1 to 10.
"""

ANALYSIS_SYSTEM_PROMPT = """\
You are a {specialization} AI agent analyzing community infrastructure proposals \
for a treasury. Provide a recommendation (-1 for reject, 0 for neutral, 1 for \
approve), a confidence score (0-100) and your reasoning.

Respond with ONLY valid JSON:
{{
  "recommendation": <-1|0|1>,
  "confidence": <0-100>,
  "reasoning": "<2-3 sentences explaining your decision>"
}}
"""

ANALYSIS_FOCUS: dict[str, str] = {
    Specialization.RISK.value: """\
As a Risk Assessment agent, evaluate:
1. Technical feasibility and complexity risks
2. Financial risk vs community benefit
3. Implementation timeline risks
4. Potential negative outcomes or failures
5. Regulatory or compliance issues

Focus on identifying potential problems and assessing overall risk level.""",
    Specialization.FINANCIAL.value: """\
As a Financial Analysis agent, evaluate:
1. Budget reasonableness and cost breakdown
2. Value for money
3. Comparison with similar projects
4. Long-term financial impact on the treasury
5. Return on community investment

Focus on ensuring efficient use of treasury funds.""",
    Specialization.COMMUNITY.value: """\
As a Community Impact agent, evaluate:
1. Number of community members who will benefit
2. Social and quality of life improvements
3. Equity and accessibility considerations
4. Community support and alignment with needs
5. Long-term community development impact

Focus on maximizing positive community outcomes.""",
    Specialization.TECHNICAL.value: """\
As a Technical Feasibility agent, evaluate:
1. Technical complexity and implementation requirements
2. Expertise and resources needed
3. Implementation methodology and timeline
4. Maintenance and sustainability needs
5. Probability of success

Focus on whether the project can realistically be completed.""",
}


def build_proposal_brief(proposal: Proposal) -> str:
    """Assemble the proposal fields every prompt starts from."""
    lines = [
        f"Title: {proposal.title}",
        f"Description: {proposal.description or ''}",
        f"Amount Requested: {float(proposal.amount or 0)}",
    ]
    if proposal.category:
        lines.append(f"Category: {proposal.category}")
    if proposal.urgency:
        lines.append(f"Urgency: {proposal.urgency}")
    return "\n".join(lines)


def build_analysis_prompt(proposal: Proposal, specialization: str) -> str:
    sections = ["PROPOSAL ANALYSIS REQUEST", "", build_proposal_brief(proposal)]
    focus = ANALYSIS_FOCUS.get(specialization)
    if focus:
        sections.extend(["", focus])
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------------

_COMMUNITY_RELEVANCE = ("community", "water", "school", "education", "health", "power", "electric", "solar")
_TECHNICAL_RELEVANCE = ("build", "repair", "install", "solar", "power", "electric", "maintenance")


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(k in text for k in keywords)


def fallback_relevance(proposal: Proposal, specialization: str) -> int:
    """Rule-based relevance score in [1, 10]."""
    text = f"{proposal.title or ''} {proposal.description or ''}".lower()
    amount = float(proposal.amount or 0)
    if specialization == Specialization.RISK:
        return 8  # risk is always relevant
    if specialization == Specialization.FINANCIAL:
        if amount > 1:
            return 9
        if amount > 0.5:
            return 7
        return 5
    if specialization == Specialization.COMMUNITY:
        return 9 if _matches(text, _COMMUNITY_RELEVANCE) else 6
    if specialization == Specialization.TECHNICAL:
        return 9 if _matches(text, _TECHNICAL_RELEVANCE) else 4
    return 5


def parse_relevance(text: str) -> int:
    """Parse a bare integer rating; raises ValueError unless it is within 1-10."""
    m = re.match(r"\s*(-?\d+)", text or "")
    if not m:
        raise ValueError(f"No integer in relevance reply: {text[:50]!r}")
    score = int(m.group(1))
    if not 1 <= score <= 10:
        raise ValueError(f"Relevance {score} outside 1-10")
    return score


async def relevance_score(
    proposal: Proposal, specialization: str, client: LLMClient | None = None,
) -> int:
    """Relevance in [1, 10] from the oracle, or the fallback rule on any failure."""
    if client is not None:
        try:
            reply = await client.complete(
                RELEVANCE_SYSTEM_PROMPT.format(specialization=specialization),
                build_proposal_brief(proposal),
                max_tokens=5,
            )
            return parse_relevance(reply)
        except (LLMCallError, ValueError) as exc:
            log.warning("Relevance oracle failed for %s on proposal %s: %s",
                        specialization, proposal.id, exc)
    return fallback_relevance(proposal, specialization)


async def evaluate_relevance(
    proposal: Proposal, specialization: str, client: LLMClient | None = None,
) -> bool:
    """Whether a scorer with this specialization should take part in the proposal."""
    score = await relevance_score(proposal, specialization, client)
    interested = score > RELEVANCE_THRESHOLD
    log.info("%s relevance for proposal %s: %d/10 (%s)",
             specialization, proposal.id, score, "interested" if interested else "skip")
    return interested


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisResult:
    """One scorer's verdict on one proposal."""
    recommendation: int
    confidence: float
    reasoning: str
    source: str = "fallback"

    @property
    def decision(self) -> str:
        return RECOMMENDATIONS[self.recommendation]


def clamp_confidence(value: Any) -> float:
    """Coerce to float and clamp into [0, 100]; raises ValueError on non-numbers."""
    if isinstance(value, bool):
        raise ValueError(f"Confidence must be numeric, got {value!r}")
    conf = float(value)
    if conf != conf:  # NaN
        raise ValueError("Confidence is NaN")
    return max(0.0, min(100.0, conf))


def validate_analysis(raw: dict[str, Any]) -> AnalysisResult:
    """Validate an oracle analysis; raises ValueError if it must be discarded."""
    rec = raw.get("recommendation")
    if isinstance(rec, bool):
        raise ValueError(f"Invalid recommendation {rec!r}")
    try:
        rec_num = float(rec)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid recommendation {rec!r}") from exc
    if rec_num not in (-1.0, 0.0, 1.0):
        raise ValueError(f"Recommendation {rec!r} not in -1, 0, 1")
    try:
        confidence = clamp_confidence(raw.get("confidence"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid confidence {raw.get('confidence')!r}") from exc
    return AnalysisResult(
        recommendation=int(rec_num),
        confidence=confidence,
        reasoning=str(raw.get("reasoning", "")),
        source="oracle",
    )


def fallback_analysis(proposal: Proposal, specialization: str) -> AnalysisResult:
    """Rule-based analysis from title keywords and the requested amount."""
    title = (proposal.title or "").lower()
    amount = float(proposal.amount or 0)
    rec, conf = 0, 70.0
    prefix = f"{specialization} analysis: "

    if specialization == Specialization.RISK:
        if "emergency" in title:
            rec, conf = (1 if amount < 1 else 0), 80.0
            why = "Emergency request; acceptable risk." if rec else "Emergency request; risk elevated by amount."
        elif "experimental" in title:
            rec, conf = -1, 85.0
            why = "High uncertainty and risk."
        else:
            rec = 1 if amount < 0.5 else 0
            why = "Standard infrastructure; low risk." if rec else "Standard infrastructure; moderate risk."
    elif specialization == Specialization.FINANCIAL:
        if amount < 0.1:
            rec, conf = 1, 85.0
            why = "Low cost, good value."
        elif amount > 2.0:
            rec, conf = -1, 80.0
            why = "High cost needs more justification."
        elif "repair" in title:
            rec = 1
            why = "Maintenance cost is justified."
        else:
            why = "Needs a cost-benefit analysis."
    elif specialization == Specialization.COMMUNITY:
        if _matches(title, ("water", "health", "education", "school", "power", "electric", "solar")):
            rec, conf = 1, 90.0
            why = "Essential services; high community impact."
        elif "community" in title:
            rec, conf = 1, 75.0
            why = "Community-focused initiative."
        else:
            why = "Moderate impact; needs more community input."
    elif specialization == Specialization.TECHNICAL:
        if _matches(title, ("repair", "maintenance")):
            rec, conf = 1, 90.0
            why = "High feasibility."
        elif _matches(title, ("experimental", "research")):
            rec, conf = -1, 85.0
            why = "Low feasibility."
        elif _matches(title, ("install", "solar", "power", "electric")):
            rec = 1
            why = "Feasible installation."
        else:
            why = "Needs a technical assessment."
    else:
        why = "No rules for this specialization."

    return AnalysisResult(recommendation=rec, confidence=conf, reasoning=prefix + why)


async def analyze(
    proposal: Proposal, specialization: str, client: LLMClient | None = None,
) -> AnalysisResult:
    """Analyse a proposal from one specialization's point of view."""
    if client is not None:
        try:
            raw = await client.call(
                ANALYSIS_SYSTEM_PROMPT.format(specialization=specialization),
                build_analysis_prompt(proposal, specialization),
            )
            return validate_analysis(raw)
        except (LLMCallError, ValueError) as exc:
            log.warning("Analysis oracle failed for %s on proposal %s, using fallback: %s",
                        specialization, proposal.id, exc)
    return fallback_analysis(proposal, specialization)
