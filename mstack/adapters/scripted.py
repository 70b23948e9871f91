"""
Scripted / Fixed Adapters
==========================

Deterministic adapters that replay scripted outputs. Used by the unit
and integration tests (no live models) and by the offline benchmark kit
to drive the pipeline from synthetic data.

Each adapter records its calls so tests can assert on what the
pipeline asked for (e.g. that no claim pair was compared twice).
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence, Union

from mstack.adapters.base import (
    AdapterError,
    EntailmentAdapter,
    Generator,
    GenerationTimeout,
    RetrievalAdapter,
    Scorer,
)
from mstack.schemas.claim_graph import Claim, EdgeLabel, EntailmentResult, pair_key
from mstack.schemas.request import Candidate, ContextBundle

ScriptEntry = Union[Candidate, Exception]


class ScriptedGenerator(Generator):
    """
    Replays a script of candidates, one entry per sample, cycling.

    An Exception entry is raised instead of returned (e.g. GenerationTimeout).
    `delays` (seconds, aligned with the script) simulate slow samples.
    Alternatively `factory(query, call_index)` produces each sample.

    Usage:
        gen = ScriptedGenerator([Candidate(text="Paris."), GenerationTimeout("slow")])
    """

    def __init__(
        self,
        script: Sequence[ScriptEntry] = (),
        delays: Optional[Sequence[float]] = None,
        factory: Optional[Callable[[str, int], ScriptEntry]] = None,
    ):
        if not script and factory is None:
            raise ValueError("ScriptedGenerator needs a script or a factory")
        self.script = list(script)
        self.delays = list(delays) if delays else []
        self.factory = factory
        self.calls: list[tuple[str, int]] = []

    async def generate(
        self,
        query: str,
        context: Optional[ContextBundle],
        k: int,
    ) -> list[Candidate]:
        out: list[Candidate] = []
        for _ in range(k):
            index = len(self.calls)
            self.calls.append((query, k))
            if self.factory is not None:
                entry = self.factory(query, index)
            else:
                entry = self.script[index % len(self.script)]
            if self.delays:
                delay = self.delays[index % len(self.delays)]
                if delay > 0:
                    await asyncio.sleep(delay)
            if isinstance(entry, Exception):
                raise entry
            out.append(entry)
        return out


class EmptyGenerator(Generator):
    """Every sample times out."""

    async def generate(self, query, context, k):
        raise GenerationTimeout("generator unavailable")


class FixedScorer(Scorer):
    """Returns a fixed value, or raises a fixed exception."""

    def __init__(self, value: Union[float, Exception], name: str = "scorer", delay_s: float = 0.0):
        self.value = value
        self.name = name
        self.delay_s = delay_s
        self.calls = 0

    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


class TableEntailment(EntailmentAdapter):
    """
    Looks up claim-text pairs in a table (order-independent).

    Unknown pairs are neutral with weight 0. Raising pairs can be
    configured with `fail_on` to exercise the fail-safe path.
    """

    def __init__(
        self,
        table: Optional[dict[tuple[str, str], EntailmentResult]] = None,
        default: Optional[EntailmentResult] = None,
        fail_on: Optional[set[tuple[str, str]]] = None,
    ):
        self.table = {pair_key(a, b): r for (a, b), r in (table or {}).items()}
        self.default = default or EntailmentResult(label=EdgeLabel.NEUTRAL, weight=0.0)
        self.fail_on = {pair_key(a, b) for a, b in (fail_on or set())}
        self.calls: list[tuple[str, str]] = []

    async def entail(self, claim_a: Claim, claim_b: Claim) -> EntailmentResult:
        self.calls.append((claim_a.id, claim_b.id))
        key = pair_key(claim_a.text, claim_b.text)
        if key in self.fail_on:
            raise AdapterError(f"entailment failed for {claim_a.id} / {claim_b.id}")
        return self.table.get(key, self.default)


class FixedCoverage(RetrievalAdapter):
    """Same coverage for every (claim, span); or raises."""

    def __init__(self, value: Union[float, Exception]):
        self.value = value
        self.calls = 0

    async def coverage(self, claim: Claim, context: ContextBundle) -> float:
        self.calls += 1
        if isinstance(self.value, Exception):
            raise self.value
        return self.value
