"""
Claim Extractor
================

Decomposes a candidate's text into atomic claims by pattern
segmentation:

1. Sentence segmentation with stable character offsets
2. Conjunction splitting of compound sentences into independent facts
3. Filtering of questions and fragments below a minimum word count
4. Per-candidate deduplication of identical claims

This step applies deterministic rules (no model calls), so the same
candidate always yields the same claims in the same order. The
extractor is pluggable: anything implementing ClaimExtractor can
replace it (e.g. a lightweight extraction model).

Data Flow:
    Candidate.text → ClaimExtractor → [(start, end, text)] → ClaimGraphBuilder
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

from mstack.utils import normalize_whitespace

logger = logging.getLogger("mstack.claims.extractor")


# ── Hedge Detection ────────────────────────────────────────────────

# Words/phrases that indicate hedging (uncertainty)
HEDGE_PATTERNS = [
    r"\bmay\b", r"\bmight\b", r"\bcould\b", r"\bpossibly\b",
    r"\bperhaps\b", r"\bprobably\b", r"\blikely\b", r"\bunlikely\b",
    r"\bapparently\b", r"\ballegedly\b", r"\breportedly\b",
    r"\bsome suggest\b", r"\bit is believed\b", r"\bit seems\b",
    r"\bit appears\b", r"\bi think\b", r"\bnot sure\b",
]

HEDGE_REGEX = re.compile("|".join(HEDGE_PATTERNS), re.IGNORECASE)


# ── Segmentation Patterns ──────────────────────────────────────────

# Sentence boundary: terminal punctuation followed by whitespace, or a newline.
# Decimals ("2.1 million") survive because the period is not followed by space.
_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+|\n+")

# Independent clauses joined by conjunctions. Entity lists ("cats and dogs")
# are not split because the right-hand side must start a new clause.
CONJUNCTION_SPLIT_PATTERNS = [
    r",\s+and\s+(?=[A-Z])",    # ", and The..."
    r",\s+but\s+(?=[A-Z])",    # ", but The..."
    r";\s+",                    # semicolons always separate independent facts
    r",\s+which also\s+",      # ", which also ..."
    r"\s+because\s+",          # "X because Y" → X and Y
]

_CONJUNCTION_RE = re.compile("|".join(CONJUNCTION_SPLIT_PATTERNS))

_ANSWER_LABEL_RE = re.compile(r"^\s*(?:final\s+)?answer\s*:\s*", re.IGNORECASE)


def _segments(text: str, boundary: re.Pattern, offset: int = 0) -> list[tuple[int, int, str]]:
    """Split on a boundary pattern, keeping stripped segments with absolute offsets."""
    out: list[tuple[int, int, str]] = []
    start = 0
    cuts = [(m.start(), m.end()) for m in boundary.finditer(text)]
    cuts.append((len(text), len(text)))
    for cut_start, cut_end in cuts:
        segment = text[start:cut_start]
        stripped = segment.strip()
        if stripped:
            lead = len(segment) - len(segment.lstrip())
            s = offset + start + lead
            out.append((s, s + len(stripped), stripped))
        start = cut_end
    return out


def split_sentences(text: str) -> list[tuple[int, int, str]]:
    """Sentence spans as (start, end, sentence)."""
    return _segments(text, _BOUNDARY_RE)


class ClaimExtractor(ABC):
    """Turns a candidate's text into an ordered list of claim spans."""

    @abstractmethod
    def extract(self, text: str) -> list[tuple[int, int, str]]:
        """
        Returns:
            (start, end, claim_text) triples in extraction order.
        """
        ...


class PatternClaimExtractor(ClaimExtractor):
    """
    Rule-based claim segmentation.

    Usage:
        extractor = PatternClaimExtractor(min_words=3)
        spans = extractor.extract("Paris is in France; it has 2.1 million people.")

    Args:
        min_words: Fragments with fewer words are dropped.
        split_conjunctions: Split compound sentences into independent claims.
    """

    def __init__(self, min_words: int = 3, split_conjunctions: bool = True):
        self.min_words = min_words
        self.split_conjunctions = split_conjunctions

    def extract(self, text: str) -> list[tuple[int, int, str]]:
        claims: list[tuple[int, int, str]] = []
        seen: set[str] = set()

        for start, end, sentence in split_sentences(text):
            if sentence.endswith("?"):
                continue

            label = _ANSWER_LABEL_RE.match(sentence)
            if label:
                start += label.end()
                sentence = sentence[label.end():]

            if self.split_conjunctions:
                pieces = _segments(sentence, _CONJUNCTION_RE, offset=start)
            else:
                pieces = [(start, start + len(sentence), sentence)]

            for p_start, p_end, piece in pieces:
                if len(piece.split()) < self.min_words:
                    continue
                key = normalize_whitespace(piece.lower().rstrip(".!;,"))
                if key in seen:
                    continue
                seen.add(key)
                claims.append((p_start, p_end, piece))

        logger.debug(f"Extracted {len(claims)} claims from {len(text)} chars")
        return claims
