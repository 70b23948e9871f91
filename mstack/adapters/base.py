"""
Adapter Interfaces
===================

Capability interfaces for every external collaborator. Each interface
has exactly one method; production adapters (OpenAI, heuristics) and
test adapters (scripted / fixed scores) implement the same contract,
so the controller can be unit-tested without live models.

    Generator           generate(query, context, k) → list[Candidate]
    EntailmentAdapter   entail(claim_a, claim_b)    → EntailmentResult
    Scorer              score(candidate, context)   → float in [0, 1]
    RetrievalAdapter    coverage(claim, context)    → float in [0, 1]

All methods are coroutines: the pipeline fans calls out with
asyncio.gather and bounds them with asyncio.wait_for.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from mstack.schemas.claim_graph import Claim, EntailmentResult
from mstack.schemas.request import Candidate, ContextBundle


class AdapterError(Exception):
    """An external collaborator failed to produce a usable result."""


class GenerationTimeout(AdapterError):
    """The generator did not return within the latency cap."""


class BudgetExceeded(Exception):
    """The request's token or latency budget ran out mid-pipeline."""


class Generator(ABC):
    """Samples candidate answers for a query."""

    @abstractmethod
    async def generate(
        self,
        query: str,
        context: Optional[ContextBundle],
        k: int,
    ) -> list[Candidate]:
        """
        Return exactly k candidates or raise GenerationTimeout.

        Implementations may return fewer than k only by raising;
        the pipeline calls this once per sample so a slow sample
        is dropped on its own.
        """
        ...


class EntailmentAdapter(ABC):
    """Labels an ordered claim pair as entail / neutral / contradict."""

    @abstractmethod
    async def entail(self, claim_a: Claim, claim_b: Claim) -> EntailmentResult:
        ...


class Scorer(ABC):
    """Scores a candidate against the context (judge, PRM, citation alignment)."""

    name: str = "scorer"

    @abstractmethod
    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        ...


class RetrievalAdapter(ABC):
    """Measures how well the context supports a claim."""

    @abstractmethod
    async def coverage(self, claim: Claim, context: ContextBundle) -> float:
        ...
