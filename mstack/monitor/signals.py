"""
Signal Extractor (Monitor)
===========================

Computes the four Monitor signals for one round of candidates:

    k_sample_variance     1 − mean pairwise token-overlap (Jaccard) of the
                          candidates' final answers; 0 when K ≤ 1
    entropy_prefix_slope  least-squares slope of per-token surprisal over the
                          first N tokens of the most confident candidate,
                          squashed by sigmoid(gain · slope + bias)
    contradiction_mass    fraction of claims removed by the greedy
                          maximum-consistent-subgraph step
    rag_coverage          fraction of kept claims with at least one context
                          span whose retrieval coverage meets the minimum

Given adapter outputs the signals are deterministic. Coverage is the
only signal that calls an adapter, so it is measured first
(`measure_coverage`) and the rest is a pure function of its result.

Fail-safe:
    - any failed entailment pair → contradiction_mass = 1.0
    - a failed retrieval call counts as coverage 0 for that (claim, span)
    - fewer than two log-probs → entropy_prefix_slope = 1.0 (flat)
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from itertools import combinations
from typing import Optional

import numpy as np

from mstack.adapters.base import RetrievalAdapter
from mstack.claims.graph import ConsistencyResult
from mstack.config import SignalConfig
from mstack.schemas.claim_graph import Claim, ClaimGraph
from mstack.schemas.request import Candidate, ContextBundle
from mstack.schemas.signals import Signals
from mstack.utils import clip01, jaccard, tokenize

logger = logging.getLogger("mstack.monitor.signals")

_FINAL_ANSWER_RE = re.compile(r"(?:final\s+)?answer\s*:\s*", re.IGNORECASE)


# ── Pure signal functions ──────────────────────────────────────────

def final_answer(text: str) -> str:
    """Text after the last 'Answer:' label, or the whole text."""
    matches = list(_FINAL_ANSWER_RE.finditer(text))
    if matches:
        tail = text[matches[-1].end():].strip()
        if tail:
            return tail
    return text


def k_sample_variance(candidates: list[Candidate]) -> float:
    if len(candidates) <= 1:
        return 0.0
    token_sets = [set(tokenize(final_answer(c.text))) for c in candidates]
    sims = [jaccard(a, b) for a, b in combinations(token_sets, 2)]
    return clip01(1.0 - float(np.mean(sims)))


def most_confident(candidates: list[Candidate]) -> Optional[Candidate]:
    """Highest heuristic confidence; the earliest candidate wins ties."""
    best = None
    for candidate in candidates:
        if best is None or candidate.heuristic_confidence > best.heuristic_confidence:
            best = candidate
    return best


def entropy_prefix_slope(
    candidate: Optional[Candidate],
    n_tokens: int = 32,
    gain: float = 4.0,
    bias: float = 0.0,
) -> float:
    """
    Sigmoid-normalized slope of surprisal (−log p) over the prefix.

    A steeply falling surprisal maps toward 0 (low risk); a flat or
    rising one maps to 0.5 or above.
    """
    if candidate is None:
        return 1.0
    prefix = [lp for lp in candidate.token_log_probs[:n_tokens] if math.isfinite(lp)]
    if len(prefix) < 2:
        return 1.0
    surprisal = -np.asarray(prefix, dtype=float)
    positions = np.arange(len(surprisal), dtype=float)
    slope = float(np.polyfit(positions, surprisal, 1)[0])
    z = gain * slope + bias
    return clip01(1.0 / (1.0 + math.exp(-max(-60.0, min(60.0, z)))))


# ── Coverage ───────────────────────────────────────────────────────

@dataclass
class CoverageReport:
    """Per-round retrieval coverage over the kept claims."""
    fraction: float = 0.0
    covered_claims: list[str] = field(default_factory=list)
    citations: list[str] = field(default_factory=list)
    failed_calls: int = 0

    @property
    def degraded(self) -> bool:
        return self.failed_calls > 0


async def measure_coverage(
    claims: list[Claim],
    context: Optional[ContextBundle],
    retrieval: RetrievalAdapter,
    min_overlap: float = 0.5,
    max_spans_per_claim: int = 20,
    max_concurrency: int = 16,
) -> CoverageReport:
    """
    Check every kept claim against every context span (capped).

    Each span is submitted as a single-span bundle so the report can
    name the supporting spans, which become the answer's citations.
    """
    if context is None or not context.spans or not claims:
        return CoverageReport()

    spans = context.spans[:max_spans_per_claim]
    semaphore = asyncio.Semaphore(max_concurrency)

    async def check(claim: Claim, span_index: int) -> float:
        async with semaphore:
            single = ContextBundle(spans=(spans[span_index],))
            return await retrieval.coverage(claim, single)

    jobs = [(claim, i) for claim in claims for i in range(len(spans))]
    results = await asyncio.gather(*(check(c, i) for c, i in jobs), return_exceptions=True)

    report = CoverageReport()
    supporting: set[str] = set()
    covered: set[str] = set()
    for (claim, i), result in zip(jobs, results):
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
        if isinstance(result, Exception):
            report.failed_calls += 1
            logger.warning(f"Coverage check failed for {claim.id} / {spans[i].span_id}: {result}")
            continue
        if clip01(result) >= min_overlap:
            covered.add(claim.id)
            supporting.add(spans[i].span_id)

    report.covered_claims = [c.id for c in claims if c.id in covered]
    report.citations = [s.span_id for s in spans if s.span_id in supporting]
    report.fraction = len(report.covered_claims) / len(claims)
    return report


# ── Extractor ──────────────────────────────────────────────────────

class SignalExtractor:
    """
    Produces Signals for one round.

    Usage:
        extractor = SignalExtractor(config.signals, retrieval=LexicalCoverage())
        signals, coverage = await extractor.extract(candidates, graph, consistency, context)
    """

    def __init__(self, config: Optional[SignalConfig] = None, retrieval: Optional[RetrievalAdapter] = None):
        self.config = config or SignalConfig()
        self.retrieval = retrieval

    async def extract(
        self,
        candidates: list[Candidate],
        graph: ClaimGraph,
        consistency: ConsistencyResult,
        context: Optional[ContextBundle],
    ) -> tuple[Signals, CoverageReport]:
        kept_ids = set(consistency.kept)
        kept = [c for c in graph.claims if c.id in kept_ids]
        if self.retrieval is None:
            coverage = CoverageReport()
        else:
            coverage = await measure_coverage(
                kept,
                context,
                self.retrieval,
                min_overlap=self.config.coverage_min_overlap,
                max_spans_per_claim=self.config.max_spans_per_claim,
                max_concurrency=self.config.max_concurrency,
            )
        return self.compute(candidates, graph, consistency, coverage), coverage

    def compute(
        self,
        candidates: list[Candidate],
        graph: ClaimGraph,
        consistency: ConsistencyResult,
        coverage: CoverageReport,
    ) -> Signals:
        """Pure part: signals from candidates, graph and measured coverage."""
        degraded = []

        if graph.degraded:
            contradiction = 1.0
            degraded.append("contradiction_mass")
            logger.warning(
                f"{graph.failed_pairs} entailment calls failed; contradiction_mass set to 1.0"
            )
        else:
            contradiction = consistency.contradiction_mass

        if coverage.degraded:
            degraded.append("rag_coverage")

        best = most_confident(candidates)
        return Signals(
            k_sample_variance=k_sample_variance(candidates),
            entropy_prefix_slope=entropy_prefix_slope(
                best,
                n_tokens=self.config.entropy_prefix_tokens,
                gain=self.config.entropy_gain,
                bias=self.config.entropy_bias,
            ),
            contradiction_mass=clip01(contradiction),
            rag_coverage=clip01(coverage.fraction),
            num_candidates=len(candidates),
            num_claims=graph.num_claims,
            num_kept_claims=len(consistency.kept),
            degraded=degraded,
        )
