"""
Request / Candidate / Response Schema
======================================

The per-request contracts at the edge of the pipeline:

1. Request   — what the caller asks for, with budget and risk cap (immutable)
2. ContextBundle — optional structured evidence supplied with the request
3. Candidate — one sampled generation from the external generator
4. Response  — what the caller gets back (always emit or abstain)

Data Flow:
    Request → Generator → [Candidate] → ... → Decision → Response
"""

from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mstack.schemas.decision import Action
from mstack.utils import count_tokens


class Budget(BaseModel):
    """Hard per-request resource caps."""
    model_config = ConfigDict(frozen=True)

    token_cap: int = Field(gt=0, description="Max generated tokens across all rounds")
    latency_cap_ms: int = Field(gt=0, description="Wall-clock deadline for the whole request")


class SourceInfo(BaseModel):
    """Provenance metadata for an evidence span."""
    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", description="Document title")
    url_or_path: str = Field(default="", description="URL or file path to source")


class EvidenceSpan(BaseModel):
    """
    A retrieval span supplied as context.

    Spans are the unit the retrieval adapter measures coverage against
    and the unit cited in an emitted answer.
    """
    model_config = ConfigDict(frozen=True)

    span_id: str = Field(description="Unique span identifier within the bundle")
    text: str = Field(description="Verbatim span text")
    source: SourceInfo = Field(default_factory=SourceInfo)

    @field_validator("text")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Evidence span text cannot be empty")
        return v


class ContextBundle(BaseModel):
    """Structured evidence bundle attached to a request."""
    model_config = ConfigDict(frozen=True)

    spans: tuple[EvidenceSpan, ...] = Field(default_factory=tuple)

    @property
    def num_spans(self) -> int:
        return len(self.spans)

    def get_span(self, span_id: str) -> Optional[EvidenceSpan]:
        for span in self.spans:
            if span.span_id == span_id:
                return span
        return None


class Request(BaseModel):
    """
    A caller request. Immutable once accepted.

    Schema:
        {
          "query": "...",
          "context": {"spans": [{"span_id": "s1", "text": "..."}]},
          "route": "medical",
          "budget": {"token_cap": 4000, "latency_cap_ms": 20000},
          "risk_cap": 0.2
        }
    """
    model_config = ConfigDict(frozen=True)

    query: str = Field(description="User query text")
    context: Optional[ContextBundle] = Field(default=None, description="Optional evidence bundle")
    route: str = Field(default="general", description="Domain/route tag")
    budget: Budget
    risk_cap: float = Field(gt=0.0, lt=1.0, description="Maximum acceptable risk")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Query cannot be empty")
        return v

    @property
    def has_context(self) -> bool:
        """Context counts as supplied only when it carries at least one span."""
        return self.context is not None and self.context.num_spans > 0


class Candidate(BaseModel):
    """
    One sampled output of the external generator.

    `token_log_probs` are the log-probabilities of the emitted tokens in
    order; they drive the entropy-slope signal and the heuristic confidence
    used to pick the best candidate.
    """
    model_config = ConfigDict(frozen=True)

    candidate_id: str = Field(default="", description="Assigned by the pipeline on receipt")
    text: str = Field(description="Generated text")
    token_log_probs: tuple[float, ...] = Field(default_factory=tuple)
    self_reported_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def n_tokens(self) -> int:
        """Tokens spent on this candidate."""
        if self.token_log_probs:
            return len(self.token_log_probs)
        return count_tokens(self.text)

    @property
    def heuristic_confidence(self) -> float:
        """
        Judge-free confidence: self-reported if present, else the
        geometric-mean token probability, else 0.
        """
        if self.self_reported_confidence is not None:
            return self.self_reported_confidence
        if self.token_log_probs:
            mean_lp = sum(self.token_log_probs) / len(self.token_log_probs)
            return float(min(1.0, math.exp(min(0.0, mean_lp))))
        return 0.0


class Response(BaseModel):
    """
    The caller-facing result. The action is always terminal.

    Schema:
        {"action": "emit", "text": "...", "citations": ["s1"],
         "confidence": 0.82, "log_id": "q-...", "rationale": "..."}
    """
    action: Action
    text: Optional[str] = None
    citations: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    log_id: str
    rationale: str = ""

    @field_validator("action")
    @classmethod
    def validate_terminal(cls, v: Action) -> Action:
        if not v.is_terminal:
            raise ValueError(f"Response action must be emit or abstain, got {v.value}")
        return v
