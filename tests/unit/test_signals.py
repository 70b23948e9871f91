"""
Signal Extractor Tests
========================

Each Monitor signal in isolation, then the fail-safe substitutions:
    - a failed entailment pair forces contradiction_mass = 1.0
    - a failed retrieval call is counted and marks rag_coverage degraded
"""

from __future__ import annotations

import pytest

from mstack.adapters.base import AdapterError
from mstack.adapters.scripted import FixedCoverage
from mstack.claims.graph import ConsistencyResult
from mstack.monitor.signals import (
    CoverageReport,
    SignalExtractor,
    entropy_prefix_slope,
    final_answer,
    k_sample_variance,
    measure_coverage,
    most_confident,
)
from mstack.schemas.claim_graph import ClaimGraph

from tests.conftest import make_candidate, make_claim, make_context

pytestmark = pytest.mark.unit


class TestFinalAnswer:

    def test_last_label_wins(self):
        assert final_answer("Answer: 3. Rechecking. Final answer: 4") == "4"

    def test_no_label_returns_text(self):
        assert final_answer("Paris.") == "Paris."


class TestKSampleVariance:

    def test_single_candidate_is_zero(self):
        assert k_sample_variance([make_candidate("Answer: Paris")]) == 0.0

    def test_agreement_is_zero(self):
        candidates = [make_candidate("Because x. Answer: Paris"), make_candidate("Since y. Answer: Paris")]
        assert k_sample_variance(candidates) == 0.0

    def test_disjoint_answers_is_one(self):
        candidates = [make_candidate("Answer: Paris"), make_candidate("Answer: Lyon")]
        assert k_sample_variance(candidates) == 1.0


class TestEntropySlope:

    def test_falling_surprisal_is_low(self):
        candidate = make_candidate(log_probs=(-2.0, -1.5, -1.0, -0.5))
        assert entropy_prefix_slope(candidate) < 0.5

    def test_rising_surprisal_is_high(self):
        candidate = make_candidate(log_probs=(-0.5, -1.0, -1.5, -2.0))
        assert entropy_prefix_slope(candidate) > 0.5

    def test_flat_surprisal_is_half(self):
        candidate = make_candidate(log_probs=(-1.0, -1.0, -1.0))
        assert entropy_prefix_slope(candidate) == pytest.approx(0.5)

    def test_missing_log_probs_is_worst_case(self):
        assert entropy_prefix_slope(make_candidate()) == 1.0
        assert entropy_prefix_slope(make_candidate(log_probs=(-1.0,))) == 1.0
        assert entropy_prefix_slope(None) == 1.0

    def test_only_prefix_is_used(self):
        rising_tail = (-2.0, -1.5, -1.0, -0.5) + tuple(-5.0 - i for i in range(20))
        candidate = make_candidate(log_probs=rising_tail)
        assert entropy_prefix_slope(candidate, n_tokens=4) < 0.5


class TestMostConfident:

    def test_highest_confidence(self):
        candidates = [make_candidate("a", confidence=0.2), make_candidate("b", confidence=0.8)]
        assert most_confident(candidates).text == "b"

    def test_tie_goes_to_earliest(self):
        candidates = [make_candidate("a", confidence=0.5), make_candidate("b", confidence=0.5)]
        assert most_confident(candidates).text == "a"

    def test_empty(self):
        assert most_confident([]) is None


class TestCoverage:

    async def test_all_claims_covered(self):
        claims = [make_claim("Paris is the capital.", "a:c0")]
        report = await measure_coverage(claims, make_context(["x y z", "p q r"]), FixedCoverage(0.9))
        assert report.fraction == 1.0
        assert report.citations == ["s0", "s1"]
        assert not report.degraded

    async def test_below_minimum_is_uncovered(self):
        claims = [make_claim("Paris is the capital.", "a:c0")]
        report = await measure_coverage(claims, make_context(["x y z"]), FixedCoverage(0.2), min_overlap=0.5)
        assert report.fraction == 0.0
        assert report.citations == []

    async def test_no_context(self):
        report = await measure_coverage([make_claim()], None, FixedCoverage(0.9))
        assert report == CoverageReport()

    async def test_failures_counted(self):
        retrieval = FixedCoverage(AdapterError("index down"))
        report = await measure_coverage([make_claim()], make_context(["x y z", "p q r"]), retrieval)
        assert report.failed_calls == 2
        assert report.degraded
        assert report.fraction == 0.0


class TestSignalExtractor:

    async def test_healthy_round(self):
        candidates = [make_candidate("Paris is the capital.", candidate_id="c0", log_probs=(-0.5, -0.3, -0.1))]
        claim = make_claim("Paris is the capital.", "c0:c0")
        graph = ClaimGraph(claims=[claim])
        consistency = ConsistencyResult(kept=[claim.id])
        extractor = SignalExtractor(retrieval=FixedCoverage(0.9))

        signals, coverage = await extractor.extract(candidates, graph, consistency, make_context(["x y z"]))
        assert signals.contradiction_mass == 0.0
        assert signals.rag_coverage == 1.0
        assert signals.k_sample_variance == 0.0
        assert signals.num_kept_claims == 1
        assert signals.degraded == []
        assert coverage.citations == ["s0"]

    def test_degraded_graph_forces_worst_contradiction(self):
        claim = make_claim("Paris is the capital.", "c0:c0")
        graph = ClaimGraph(claims=[claim], failed_pairs=1)
        signals = SignalExtractor().compute(
            [make_candidate()], graph, ConsistencyResult(kept=[claim.id]), CoverageReport()
        )
        assert signals.contradiction_mass == 1.0
        assert "contradiction_mass" in signals.degraded

    def test_degraded_coverage_is_flagged(self):
        claim = make_claim("Paris is the capital.", "c0:c0")
        signals = SignalExtractor().compute(
            [make_candidate()],
            ClaimGraph(claims=[claim]),
            ConsistencyResult(kept=[claim.id]),
            CoverageReport(failed_calls=1),
        )
        assert signals.rag_coverage == 0.0
        assert signals.degraded == ["rag_coverage"]

    async def test_deterministic(self):
        candidates = [
            make_candidate("Answer: Paris", candidate_id="c0", log_probs=(-0.4, -0.2)),
            make_candidate("Answer: Lyon", candidate_id="c1", log_probs=(-0.9, -0.8)),
        ]
        graph = ClaimGraph()
        extractor = SignalExtractor(retrieval=FixedCoverage(0.9))
        first, _ = await extractor.extract(candidates, graph, ConsistencyResult(), None)
        second, _ = await extractor.extract(candidates, graph, ConsistencyResult(), None)
        assert first == second
