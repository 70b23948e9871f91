"""
Signals / Scores Schema
========================

Outputs of the Monitor (Signals) and the Evaluator (Scores).
Every value is normalized to [0, 1] before it reaches the controller.

Fail-safe convention:
    When an external call behind a value fails, the value is replaced
    by its worst case (contradiction_mass=1, coverage=0, judge=0) and
    the name is recorded in `degraded` / `failed`.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Signals(BaseModel):
    """
    Monitor signals for one request round.

    Schema:
        {
          "k_sample_variance": 0.12,
          "entropy_prefix_slope": 0.31,
          "contradiction_mass": 0.0,
          "rag_coverage": 0.9,
          "num_candidates": 3,
          "num_claims": 7,
          "num_kept_claims": 7,
          "degraded": []
        }
    """
    model_config = ConfigDict(frozen=True)

    k_sample_variance: float = Field(ge=0.0, le=1.0)
    entropy_prefix_slope: float = Field(ge=0.0, le=1.0)
    contradiction_mass: float = Field(ge=0.0, le=1.0)
    rag_coverage: float = Field(ge=0.0, le=1.0)
    num_candidates: int = Field(default=0, ge=0)
    num_claims: int = Field(default=0, ge=0)
    num_kept_claims: int = Field(default=0, ge=0)
    degraded: list[str] = Field(
        default_factory=list,
        description="Signals replaced by their worst case after an adapter failure"
    )


class Scores(BaseModel):
    """Evaluator scores for the best candidate."""
    model_config = ConfigDict(frozen=True)

    judge: float = Field(ge=0.0, le=1.0)
    prm: float = Field(ge=0.0, le=1.0)
    citation_score: float = Field(ge=0.0, le=1.0)
    best_candidate_id: str = Field(default="")
    failed: list[str] = Field(
        default_factory=list,
        description="Scorers that failed or timed out (scored 0.0)"
    )


WORST_SCORES = Scores(judge=0.0, prm=0.0, citation_score=0.0, failed=["judge", "prm", "citation"])
