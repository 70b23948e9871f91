"""
Heuristic Adapter Tests
=========================

The LITE-mode adapters must separate the obvious cases:
    - same statement → entail; same statement with another number → contradict
    - a span stating another number covers a claim only weakly
    - hedged steps lower the process-reward proxy
"""

from __future__ import annotations

import pytest

from mstack.adapters.heuristic import (
    HedgeStepPRM,
    LexicalCoverage,
    LexicalJudge,
    OverlapCitationAligner,
    OverlapEntailment,
    conflicts,
    content_words,
    overlap_ratio,
)
from mstack.schemas.claim_graph import EdgeLabel

from tests.conftest import make_candidate, make_claim, make_context

pytestmark = pytest.mark.unit


class TestHelpers:

    def test_content_words_drop_stopwords_and_numbers(self):
        assert content_words("The tower is 300 meters tall.") == {"tower", "meters", "tall"}

    def test_overlap_ratio(self):
        assert overlap_ratio("The tower is tall.", "A tall tower stands here.") == 1.0
        assert overlap_ratio("", "anything") == 0.0

    def test_conflicts(self):
        assert conflicts("The tower is 300 meters.", "The tower is 200 meters.")
        assert conflicts("The tower is tall.", "The tower is not tall.")
        assert not conflicts("The tower is 300 meters.", "The tower is 300 meters and 20 years old.")
        assert not conflicts("The tower is tall.", "The tower stands in 1889.")


class TestOverlapEntailment:

    async def test_same_statement_entails(self):
        result = await OverlapEntailment().entail(
            make_claim("The tower is 300 meters tall.", "a:c0"),
            make_claim("The tower is 300 meters tall.", "b:c0"),
        )
        assert result.label == EdgeLabel.ENTAIL

    async def test_number_mismatch_contradicts(self):
        result = await OverlapEntailment().entail(
            make_claim("The tower is 300 meters tall.", "a:c0"),
            make_claim("The tower is 200 meters tall.", "b:c0"),
        )
        assert result.label == EdgeLabel.CONTRADICT
        assert result.weight >= 0.5

    async def test_unrelated_is_neutral(self):
        result = await OverlapEntailment().entail(
            make_claim("The tower is 300 meters tall.", "a:c0"),
            make_claim("Rivers carry sediment downstream.", "b:c0"),
        )
        assert result.label == EdgeLabel.NEUTRAL


class TestLexicalCoverage:

    async def test_supporting_span(self):
        context = make_context(["The tower is 300 meters tall."])
        assert await LexicalCoverage().coverage(make_claim("The tower is 300 meters tall."), context) == 1.0

    async def test_conflicting_span_is_penalized(self):
        context = make_context(["The tower is 200 meters tall."])
        score = await LexicalCoverage().coverage(make_claim("The tower is 300 meters tall."), context)
        assert score == pytest.approx(0.3)


class TestLexicalJudge:

    async def test_grounded_beats_conflicting(self):
        context = make_context(["The tower is 300 meters tall.", "The bridge is 40 meters long."])
        judge = LexicalJudge()
        right = await judge.score(make_candidate("The tower is 300 meters tall. Answer: 300"), context)
        wrong = await judge.score(make_candidate("The tower is 200 meters tall. Answer: 200"), context)
        assert right == 1.0
        assert wrong == pytest.approx(0.3)

    async def test_without_context_uses_candidate_confidence(self):
        score = await LexicalJudge().score(make_candidate("The tower is tall.", confidence=0.65), None)
        assert score == 0.65

    async def test_empty_text_scores_zero(self):
        assert await LexicalJudge().score(make_candidate("Answer: 300"), make_context(["x y z"])) == 0.0


class TestStepScorers:

    async def test_prm_penalizes_hedging(self):
        prm = HedgeStepPRM()
        firm = await prm.score(make_candidate("The tower is tall. It is old."), None)
        hedged = await prm.score(make_candidate("The tower might be tall. It is old."), None)
        assert firm == 1.0
        assert hedged == 0.5

    async def test_citation_alignment(self):
        context = make_context(["The tower is 300 meters tall."])
        aligner = OverlapCitationAligner(min_overlap=0.5)
        score = await aligner.score(make_candidate("The tower is 300 meters tall. Bananas grow quickly."), context)
        assert score == 0.5
        assert await aligner.score(make_candidate("The tower is tall."), None) == 0.0
