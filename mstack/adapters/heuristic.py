"""
Heuristic Adapters (LITE mode)
===============================

Word-overlap implementations of the entailment, retrieval and scorer
interfaces. They need no model weights and no network, which makes them
the default in LITE mode, in CI and in the offline benchmark kit.

They are NOT a substitute for a trained NLI model or judge; they exist
so that the full pipeline runs end-to-end on a laptop.

Signals used:
    - content-word overlap (stopwords removed)
    - negation mismatch ("is" vs "is not")
    - numeric mismatch (same statement, different numbers)
    - hedging language for the process-reward proxy
"""

from __future__ import annotations

import re
from typing import Optional

from mstack.adapters.base import EntailmentAdapter, RetrievalAdapter, Scorer
from mstack.claims.extractor import HEDGE_REGEX, split_sentences
from mstack.schemas.claim_graph import Claim, EdgeLabel, EntailmentResult
from mstack.schemas.request import Candidate, ContextBundle
from mstack.utils import tokenize

STOPWORDS = frozenset({
    "a", "an", "the", "of", "in", "on", "at", "to", "for", "by", "with",
    "and", "or", "is", "are", "was", "were", "be", "been", "it", "its",
    "this", "that", "as", "from", "which", "has", "have", "had",
    "answer", "final",
})

NEGATION_WORDS = frozenset({
    "not", "no", "never", "neither", "nor", "isn't", "wasn't",
    "doesn't", "don't", "didn't", "aren't", "weren't", "cannot",
})

_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")


def content_words(text: str) -> set[str]:
    """Tokens minus stopwords, negations and numbers."""
    return {
        t for t in tokenize(text)
        if t not in STOPWORDS and t not in NEGATION_WORDS and not _NUMBER_RE.match(t)
    }


def numbers_in(text: str) -> set[str]:
    return {t for t in tokenize(text) if _NUMBER_RE.match(t)}


def has_negation(text: str) -> bool:
    return bool(set(tokenize(text)) & NEGATION_WORDS)


def conflicts(claim_text: str, evidence_text: str) -> bool:
    """Negation mismatch, or both sides state numbers and they differ."""
    if has_negation(claim_text) != has_negation(evidence_text):
        return True
    nums_claim, nums_evidence = numbers_in(claim_text), numbers_in(evidence_text)
    return bool(nums_claim) and bool(nums_evidence) and not nums_claim <= nums_evidence


def overlap_ratio(claim_text: str, evidence_text: str) -> float:
    """Fraction of the claim's content words found in the evidence."""
    claim_words = content_words(claim_text)
    if not claim_words:
        return 0.0
    return len(claim_words & content_words(evidence_text)) / len(claim_words)


class OverlapEntailment(EntailmentAdapter):
    """
    Overlap + negation/number mismatch entailment heuristic.

    Usage:
        nli = OverlapEntailment()
        result = await nli.entail(claim_a, claim_b)

    Args:
        entail_overlap: Symmetric overlap at which a pair counts as entailment.
        contradict_overlap: Overlap above which a negation/number mismatch is a contradiction.
    """

    def __init__(self, entail_overlap: float = 0.6, contradict_overlap: float = 0.5):
        self.entail_overlap = entail_overlap
        self.contradict_overlap = contradict_overlap

    async def entail(self, claim_a: Claim, claim_b: Claim) -> EntailmentResult:
        words_a = content_words(claim_a.text)
        words_b = content_words(claim_b.text)
        if not words_a or not words_b:
            return EntailmentResult(label=EdgeLabel.NEUTRAL, weight=0.0)

        overlap = len(words_a & words_b) / min(len(words_a), len(words_b))

        negation_mismatch = has_negation(claim_a.text) != has_negation(claim_b.text)
        nums_a, nums_b = numbers_in(claim_a.text), numbers_in(claim_b.text)
        number_mismatch = bool(nums_a) and bool(nums_b) and nums_a != nums_b

        if (negation_mismatch or number_mismatch) and overlap >= self.contradict_overlap:
            return EntailmentResult(label=EdgeLabel.CONTRADICT, weight=min(overlap * 0.9, 0.95))
        if overlap >= self.entail_overlap:
            return EntailmentResult(label=EdgeLabel.ENTAIL, weight=min(overlap, 0.95))
        return EntailmentResult(label=EdgeLabel.NEUTRAL, weight=1.0 - overlap)


class LexicalCoverage(RetrievalAdapter):
    """Best content-word overlap between a claim and any span of the context."""

    async def coverage(self, claim: Claim, context: ContextBundle) -> float:
        best = 0.0
        for span in context.spans:
            score = overlap_ratio(claim.text, span.text)
            if conflicts(claim.text, span.text):
                score *= 0.3
            best = max(best, score)
        return best


class LexicalJudge(Scorer):
    """
    Grounding judge: mean best-span overlap of the candidate's sentences.

    A sentence whose best-matching span conflicts with it (negation or a
    different number) is penalized. Without context, falls back to the
    candidate's heuristic confidence.
    """

    name = "judge"

    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        sentences = [s for _, _, s in split_sentences(candidate.text) if content_words(s)]
        if not sentences:
            return 0.0
        if context is None or not context.spans:
            return candidate.heuristic_confidence
        per_sentence = []
        for sentence in sentences:
            best_span = max(context.spans, key=lambda span: overlap_ratio(sentence, span.text))
            best = overlap_ratio(sentence, best_span.text)
            if best >= 0.5 and conflicts(sentence, best_span.text):
                best *= 0.3
            per_sentence.append(best)
        return sum(per_sentence) / len(per_sentence)


class HedgeStepPRM(Scorer):
    """
    Process-reward proxy: fraction of reasoning steps (sentences)
    stated without hedging language.
    """

    name = "prm"

    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        sentences = split_sentences(candidate.text)
        if not sentences:
            return 0.0
        firm = sum(1 for _, _, s in sentences if not HEDGE_REGEX.search(s))
        return firm / len(sentences)


class OverlapCitationAligner(Scorer):
    """Fraction of candidate sentences with a context span covering them."""

    name = "citation"

    def __init__(self, min_overlap: float = 0.5):
        self.min_overlap = min_overlap

    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        if context is None or not context.spans:
            return 0.0
        sentences = split_sentences(candidate.text)
        if not sentences:
            return 0.0
        aligned = sum(
            1 for _, _, s in sentences
            if max(overlap_ratio(s, span.text) for span in context.spans) >= self.min_overlap
        )
        return aligned / len(sentences)
