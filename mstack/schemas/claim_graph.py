"""
Claim Graph Schema
===================

Claims are atomic, checkable propositions extracted from candidates.
The ClaimGraph holds one node per claim (across all K candidates) and
one labeled, weighted edge per cross-candidate claim pair.

Invariants (enforced by ClaimGraph.add_edge):
    - No edge joins two claims of the same candidate
    - Every unordered claim pair is compared at most once
    - The graph is rebuilt per request; nothing persists across requests

Edges are directed for entailment (source → target, in the order the
pair was submitted to the adapter) and treated as undirected for
contradiction.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator


class EdgeLabel(str, Enum):
    """Three-way entailment label."""
    ENTAIL = "entail"
    NEUTRAL = "neutral"
    CONTRADICT = "contradict"


class Claim(BaseModel):
    """
    An atomic claim with its location in the source candidate.

    Schema:
        {"id": "cand-1:c0", "source_candidate_id": "cand-1",
         "text": "Paris is the capital of France.", "start": 0, "end": 31}
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique claim ID (format: '{candidate_id}:c{N}')")
    source_candidate_id: str
    text: str
    start: int = Field(ge=0, description="Start character offset in the candidate text")
    end: int = Field(gt=0, description="End character offset (exclusive)")
    order: int = Field(default=0, ge=0, description="Global extraction order across candidates")

    @field_validator("text")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Claim text cannot be empty")
        return v.strip()


class EntailmentResult(BaseModel):
    """Output of the external entailment adapter for one ordered pair."""
    model_config = ConfigDict(frozen=True)

    label: EdgeLabel
    weight: float = Field(ge=0.0, le=1.0)


class EntailmentEdge(BaseModel):
    """A labeled edge between two claims from different candidates."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Claim id passed first to the adapter")
    target: str = Field(description="Claim id passed second to the adapter")
    label: EdgeLabel
    weight: float = Field(ge=0.0, le=1.0)

    @property
    def pair_key(self) -> tuple[str, str]:
        return pair_key(self.source, self.target)


def pair_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent key for an unordered claim pair."""
    return (a, b) if a <= b else (b, a)


class ClaimGraph(BaseModel):
    """
    Claims of one request and their pairwise entailment edges.
    """
    claims: list[Claim] = Field(default_factory=list)
    edges: list[EntailmentEdge] = Field(default_factory=list)
    failed_pairs: int = Field(default=0, ge=0, description="Pairs whose adapter call failed")
    truncated_claims: int = Field(default=0, ge=0, description="Claims dropped by the per-candidate cap")

    _index: dict[str, Claim] = PrivateAttr(default_factory=dict)
    _pairs: set[tuple[str, str]] = PrivateAttr(default_factory=set)

    def model_post_init(self, __context) -> None:
        self._index = {c.id: c for c in self.claims}
        self._pairs = set()
        for edge in self.edges:
            self._check_pair(edge.source, edge.target)
            self._pairs.add(edge.pair_key)

    @property
    def num_claims(self) -> int:
        return len(self.claims)

    @property
    def degraded(self) -> bool:
        """True when at least one entailment call failed."""
        return self.failed_pairs > 0

    def get_claim(self, claim_id: str) -> Claim | None:
        return self._index.get(claim_id)

    def has_pair(self, a: str, b: str) -> bool:
        return pair_key(a, b) in self._pairs

    def _check_pair(self, a: str, b: str) -> None:
        ca, cb = self._index.get(a), self._index.get(b)
        if ca is None or cb is None:
            raise ValueError(f"Edge references unknown claim: {a!r} / {b!r}")
        if ca.source_candidate_id == cb.source_candidate_id:
            raise ValueError(
                f"Claims {a!r} and {b!r} come from the same candidate; "
                f"intra-candidate pairs are never compared"
            )
        if pair_key(a, b) in self._pairs:
            raise ValueError(f"Pair ({a!r}, {b!r}) already compared")

    def add_edge(self, source: str, target: str, result: EntailmentResult) -> EntailmentEdge:
        """Add the edge for an unordered pair, rejecting self and duplicate pairs."""
        self._check_pair(source, target)
        edge = EntailmentEdge(source=source, target=target, label=result.label, weight=result.weight)
        self.edges.append(edge)
        self._pairs.add(edge.pair_key)
        return edge

    def contradiction_edges(self, threshold: float) -> list[EntailmentEdge]:
        """Contradict edges whose confidence is at or above `threshold`."""
        return [
            e for e in self.edges
            if e.label == EdgeLabel.CONTRADICT and e.weight >= threshold
        ]

    def claims_of(self, candidate_id: str) -> list[Claim]:
        return [c for c in self.claims if c.source_candidate_id == candidate_id]
