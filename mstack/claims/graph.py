"""
Claim Graph Builder
====================

Builds the per-request ClaimGraph and computes the maximum consistent
subgraph used by the contradiction_mass signal.

Pipeline:
    1. Extract claims from each candidate (pluggable extractor)
    2. Apply the per-candidate cap (earliest-extracted claims kept)
    3. Compare every cross-candidate claim pair exactly once via the
       entailment adapter, concurrently, bounded by a semaphore
    4. Greedy maximum-consistent-subgraph over high-confidence
       contradiction edges

Complexity: O(K²·C²) adapter calls for K candidates with at most C
claims each; the cap bounds C.

Maximum consistent subgraph:
    The largest claim subset with no two claims joined by a contradict
    edge at or above the threshold is a maximum independent set on the
    contradiction subgraph, NP-hard in general. We use the greedy
    approximation: repeatedly drop the claim with the highest incident
    contradiction weight until no such edge remains. Its approximation
    ratio is not bounded here; contradiction_mass is therefore an upper
    estimate of the true minimum removed fraction.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from mstack.adapters.base import EntailmentAdapter
from mstack.claims.extractor import ClaimExtractor, PatternClaimExtractor
from mstack.config import MStackConfig
from mstack.schemas.claim_graph import Claim, ClaimGraph, EntailmentResult
from mstack.schemas.request import Candidate

logger = logging.getLogger("mstack.claims.graph")


@dataclass
class ConsistencyResult:
    """Outcome of the greedy maximum-consistent-subgraph step."""
    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.kept) + len(self.removed)

    @property
    def contradiction_mass(self) -> float:
        """1 − |kept| / |total|; 0 for an empty graph."""
        if self.total == 0:
            return 0.0
        return 1.0 - len(self.kept) / self.total


def max_consistent_subgraph(graph: ClaimGraph, threshold: float) -> ConsistencyResult:
    """
    Greedy highest-weight removal over contradict edges ≥ threshold.

    Ties on incident weight remove the later-extracted claim first, so
    the result is deterministic and favours earlier claims.
    """
    order = {c.id: c.order for c in graph.claims}
    active = graph.contradiction_edges(threshold)
    removed: list[str] = []

    while active:
        incident: dict[str, float] = defaultdict(float)
        for edge in active:
            incident[edge.source] += edge.weight
            incident[edge.target] += edge.weight
        victim = max(incident, key=lambda cid: (incident[cid], order[cid]))
        removed.append(victim)
        active = [e for e in active if victim not in (e.source, e.target)]

    removed_set = set(removed)
    kept = [c.id for c in graph.claims if c.id not in removed_set]
    return ConsistencyResult(kept=kept, removed=removed)


class ClaimGraphBuilder:
    """
    Builds a fresh ClaimGraph per request.

    Usage:
        builder = ClaimGraphBuilder(entailment=OverlapEntailment())
        graph = await builder.build(candidates)
        consistency = builder.consistent_subgraph(graph)

    Args:
        entailment: External entailment adapter.
        extractor: Claim extractor (pattern segmentation by default).
        max_claims_per_candidate: Cap on claims per candidate.
        contradiction_threshold: Edge weight at which a contradiction counts.
        max_concurrency: Concurrent entailment calls (adapter rate limit).
    """

    def __init__(
        self,
        entailment: EntailmentAdapter,
        extractor: Optional[ClaimExtractor] = None,
        max_claims_per_candidate: int = 8,
        contradiction_threshold: float = 0.5,
        max_concurrency: int = 8,
    ):
        self.entailment = entailment
        self.extractor = extractor or PatternClaimExtractor()
        self.max_claims_per_candidate = max_claims_per_candidate
        self.contradiction_threshold = contradiction_threshold
        self.max_concurrency = max_concurrency

    @classmethod
    def from_config(
        cls,
        config: MStackConfig,
        entailment: EntailmentAdapter,
        extractor: Optional[ClaimExtractor] = None,
    ) -> "ClaimGraphBuilder":
        """Create a builder from M-Stack config."""
        cfg = config.claims
        return cls(
            entailment=entailment,
            extractor=extractor or PatternClaimExtractor(
                min_words=cfg.min_claim_words,
                split_conjunctions=cfg.split_conjunctions,
            ),
            max_claims_per_candidate=cfg.max_claims_per_candidate,
            contradiction_threshold=cfg.contradiction_threshold,
            max_concurrency=cfg.max_concurrency,
        )

    def extract_claims(self, candidates: list[Candidate]) -> tuple[list[Claim], int]:
        """
        Extract and cap claims for all candidates.

        Returns:
            (claims in global extraction order, number of claims truncated)
        """
        claims: list[Claim] = []
        truncated = 0
        for candidate in candidates:
            spans = self.extractor.extract(candidate.text)
            if len(spans) > self.max_claims_per_candidate:
                truncated += len(spans) - self.max_claims_per_candidate
                spans = spans[:self.max_claims_per_candidate]
            for n, (start, end, text) in enumerate(spans):
                claims.append(Claim(
                    id=f"{candidate.candidate_id}:c{n}",
                    source_candidate_id=candidate.candidate_id,
                    text=text,
                    start=start,
                    end=end,
                    order=len(claims),
                ))
        if truncated:
            logger.warning(
                f"Claim cap: dropped {truncated} claims beyond "
                f"{self.max_claims_per_candidate} per candidate"
            )
        return claims, truncated

    @staticmethod
    def candidate_pairs(claims: list[Claim]) -> list[tuple[Claim, Claim]]:
        """Every unordered cross-candidate pair once, earlier claim first."""
        pairs = []
        for i, a in enumerate(claims):
            for b in claims[i + 1:]:
                if a.source_candidate_id != b.source_candidate_id:
                    pairs.append((a, b))
        return pairs

    async def build(self, candidates: list[Candidate]) -> ClaimGraph:
        """
        Extract claims and label every cross-candidate pair.

        Failed adapter calls are counted in graph.failed_pairs; the
        Signal Extractor then treats contradiction_mass as worst case.
        """
        claims, truncated = self.extract_claims(candidates)
        graph = ClaimGraph(claims=claims, truncated_claims=truncated)
        pairs = self.candidate_pairs(claims)
        if not pairs:
            return graph

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def compare(a: Claim, b: Claim) -> EntailmentResult:
            async with semaphore:
                return await self.entailment.entail(a, b)

        results = await asyncio.gather(
            *(compare(a, b) for a, b in pairs),
            return_exceptions=True,
        )

        for (a, b), result in zip(pairs, results):
            if isinstance(result, EntailmentResult):
                graph.add_edge(a.id, b.id, result)
            elif isinstance(result, Exception):
                graph.failed_pairs += 1
                logger.warning(f"Entailment failed for ({a.id}, {b.id}): {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                graph.failed_pairs += 1
                logger.warning(f"Entailment adapter returned {type(result).__name__} for ({a.id}, {b.id})")

        logger.info(
            f"Claim graph: {graph.num_claims} claims, {len(graph.edges)} edges, "
            f"{graph.failed_pairs} failed pairs"
        )
        return graph

    def consistent_subgraph(self, graph: ClaimGraph) -> ConsistencyResult:
        return max_consistent_subgraph(graph, self.contradiction_threshold)
