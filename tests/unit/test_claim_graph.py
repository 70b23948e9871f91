"""
Claim Graph Builder Tests
===========================

Checks the graph invariants and the consistency step:
    - no edge joins claims of the same candidate
    - every cross-candidate pair is compared exactly once
    - the per-candidate cap keeps the earliest claims
    - a failed entailment call is counted, never silently dropped
    - greedy removal is deterministic and yields contradiction_mass
"""

from __future__ import annotations

import pytest

from mstack.adapters.scripted import TableEntailment
from mstack.claims.graph import ClaimGraphBuilder, ConsistencyResult, max_consistent_subgraph
from mstack.schemas.claim_graph import ClaimGraph, EdgeLabel, EntailmentResult, pair_key

from tests.conftest import make_candidate, make_claim

pytestmark = pytest.mark.unit

CONTRADICT = EntailmentResult(label=EdgeLabel.CONTRADICT, weight=0.9)
TOWERS = [
    "The tower is 300 meters tall.",
    "The tower is 200 meters tall.",
    "The tower is 100 meters tall.",
]


def _candidates(texts: list[str]):
    return [make_candidate(text, candidate_id=f"r1-c{i}") for i, text in enumerate(texts)]


def _all_contradict(texts: list[str]) -> TableEntailment:
    table = {}
    for i, a in enumerate(texts):
        for b in texts[i + 1:]:
            table[(a, b)] = CONTRADICT
    return TableEntailment(table)


class TestExtraction:

    def test_ids_and_global_order(self):
        builder = ClaimGraphBuilder(TableEntailment())
        claims, truncated = builder.extract_claims(_candidates([
            "Paris is in France. Paris is very old.",
            "Berlin is in Germany.",
        ]))
        assert [c.id for c in claims] == ["r1-c0:c0", "r1-c0:c1", "r1-c1:c0"]
        assert [c.order for c in claims] == [0, 1, 2]
        assert truncated == 0

    def test_cap_keeps_earliest_claims(self):
        builder = ClaimGraphBuilder(TableEntailment(), max_claims_per_candidate=2)
        claims, truncated = builder.extract_claims(_candidates([
            "Claim number one here. Claim number two here. Claim number three here. Claim number four here.",
        ]))
        assert [c.text for c in claims] == ["Claim number one here.", "Claim number two here."]
        assert truncated == 2

    def test_candidate_pairs_skip_same_candidate(self):
        claims = [
            make_claim("a one two", "a:c0", order=0),
            make_claim("a three four", "a:c1", order=1),
            make_claim("b one two", "b:c0", order=2),
        ]
        pairs = ClaimGraphBuilder.candidate_pairs(claims)
        assert [(a.id, b.id) for a, b in pairs] == [("a:c0", "b:c0"), ("a:c1", "b:c0")]


class TestBuild:

    async def test_each_cross_pair_compared_once(self):
        entailment = TableEntailment()
        builder = ClaimGraphBuilder(entailment)
        graph = await builder.build(_candidates([
            "Paris is in France. Paris is very old.",
            "Paris is in Europe. Paris has a river.",
        ]))
        assert len(entailment.calls) == 4
        assert len({pair_key(a, b) for a, b in entailment.calls}) == 4
        for a, b in entailment.calls:
            assert graph.get_claim(a).source_candidate_id != graph.get_claim(b).source_candidate_id
        assert len(graph.edges) == 4
        assert not graph.degraded

    async def test_single_candidate_makes_no_calls(self):
        entailment = TableEntailment()
        graph = await ClaimGraphBuilder(entailment).build(_candidates(["Paris is in France. Paris is old."]))
        assert entailment.calls == []
        assert graph.edges == []

    async def test_failed_pair_is_counted(self):
        entailment = TableEntailment(fail_on={(TOWERS[0], TOWERS[1])})
        graph = await ClaimGraphBuilder(entailment).build(_candidates(TOWERS))
        assert graph.failed_pairs == 1
        assert graph.degraded
        assert len(graph.edges) == 2

    async def test_rebuilt_per_request(self):
        builder = ClaimGraphBuilder(TableEntailment())
        first = await builder.build(_candidates(TOWERS[:2]))
        second = await builder.build(_candidates(TOWERS[:2]))
        assert first is not second
        assert len(second.edges) == 1

    async def test_concurrency_bound_is_respected(self):
        import asyncio

        class CountingEntailment(TableEntailment):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.peak = 0

            async def entail(self, claim_a, claim_b):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return await super().entail(claim_a, claim_b)

        entailment = CountingEntailment()
        builder = ClaimGraphBuilder(entailment, max_concurrency=2)
        await builder.build(_candidates(TOWERS + ["The tower is 400 meters tall."]))
        assert len(entailment.calls) == 6
        assert entailment.peak <= 2


class TestConsistency:

    async def test_triangle_keeps_earliest_claim(self):
        builder = ClaimGraphBuilder(_all_contradict(TOWERS))
        graph = await builder.build(_candidates(TOWERS))
        result = builder.consistent_subgraph(graph)
        assert result.kept == ["r1-c0:c0"]
        assert sorted(result.removed) == ["r1-c1:c0", "r1-c2:c0"]
        assert result.contradiction_mass == pytest.approx(2 / 3)

    def test_weak_contradictions_ignored(self):
        graph = ClaimGraph(claims=[make_claim("x y z", "a:c0"), make_claim("x y w", "b:c0", order=1)])
        graph.add_edge("a:c0", "b:c0", EntailmentResult(label=EdgeLabel.CONTRADICT, weight=0.3))
        result = max_consistent_subgraph(graph, threshold=0.5)
        assert result.removed == []
        assert result.contradiction_mass == 0.0

    def test_highest_weight_removed_first(self):
        graph = ClaimGraph(claims=[
            make_claim("hub claim here", "a:c0", order=0),
            make_claim("left claim here", "b:c0", order=1),
            make_claim("right claim here", "c:c0", order=2),
        ])
        graph.add_edge("a:c0", "b:c0", CONTRADICT)
        graph.add_edge("a:c0", "c:c0", CONTRADICT)
        result = max_consistent_subgraph(graph, threshold=0.5)
        assert result.removed == ["a:c0"]
        assert result.kept == ["b:c0", "c:c0"]
        assert result.contradiction_mass == pytest.approx(1 / 3)

    def test_empty_graph(self):
        result = max_consistent_subgraph(ClaimGraph(), threshold=0.5)
        assert result == ConsistencyResult()
        assert result.contradiction_mass == 0.0
